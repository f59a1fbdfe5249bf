"""
RuntimeContext: the shared state of one runtime, built once and passed to constructors.

Holds the configuration, the model catalog, the session-approval cache, the
tool registry, the agent definitions and the background task manager. Nothing
in the engine reaches for module-level singletons; tests build isolated
contexts with their own config and tasks dir.
"""

import dataclasses
import logging
import os
from typing import List, Optional

from config import AppConfig, ModelCatalog, ModelConfig, app_config, model_config
from providers import ProviderAdapter, create_provider
from tools import ToolRegistry, build_default_registry

from .background import BackgroundTaskManager
from .core import TurnExecutor
from .events import EventCallback
from .permissions import (
    ConfirmCallback, PermissionGate, PermissionRule, SessionApprovals,
    checker_for_mode, common_deny_rules, load_rules,
)
from .subagent import AgentRegistry

logger = logging.getLogger(__name__)

_DEFAULT_PERMISSIONS = ("ask", "allow", "deny")


class RuntimeContext:
    def __init__(
        self,
        config: AppConfig,
        model_config: ModelConfig,
        models: ModelCatalog,
        approvals: SessionApprovals,
        tools: ToolRegistry,
        agents: AgentRegistry,
        rules: List[PermissionRule],
        default_mode: str = "ask",
        confirm_callback: Optional[ConfirmCallback] = None,
    ):
        self.config = config
        self.model_config = model_config
        self.models = models
        self.approvals = approvals
        self.tools = tools
        self.agents = agents
        self.rules = rules
        self.default_mode = default_mode
        self.confirm_callback = confirm_callback
        self.tasks = BackgroundTaskManager(config, runtime=self)

    @classmethod
    def create(
        cls,
        config: Optional[AppConfig] = None,
        model_cfg: Optional[ModelConfig] = None,
        working_directory: Optional[str] = None,
        confirm_callback: Optional[ConfirmCallback] = None,
        tools: Optional[ToolRegistry] = None,
        agents: Optional[AgentRegistry] = None,
        models: Optional[ModelCatalog] = None,
    ) -> "RuntimeContext":
        """Build a context, loading permission rules from the project's settings file."""
        config = config or app_config
        if working_directory:
            config = dataclasses.replace(config, working_directory=os.path.abspath(working_directory))
        model_cfg = model_cfg or model_config

        settings_path = config.settings_path
        if settings_path and not os.path.isabs(settings_path):
            settings_path = os.path.join(config.working_directory, settings_path)
        rules, file_default = load_rules(settings_path, config.permission_allow, config.permission_deny)
        if config.common_deny_rules:
            rules = common_deny_rules() + rules
        default_mode = file_default or config.default_permission
        if default_mode not in _DEFAULT_PERMISSIONS:
            logger.warning(f"Unknown default permission '{default_mode}', using 'ask'")
            default_mode = "ask"
        logger.info(f"Loaded {len(rules)} permission rule(s); default={default_mode}")

        return cls(
            config=config,
            model_config=model_cfg,
            models=models or ModelCatalog(reserved_output_tokens=config.reserved_output_tokens),
            approvals=SessionApprovals(),
            tools=tools if tools is not None else build_default_registry(),
            agents=agents or AgentRegistry(),
            rules=rules,
            default_mode=default_mode,
            confirm_callback=confirm_callback,
        )

    def create_gate(self, mode: Optional[str] = None, interactive: bool = True,
                    confirm_callback: Optional[ConfirmCallback] = None) -> PermissionGate:
        """Gate for `mode` (default: the configured mode), sharing this runtime's approvals.

        Non-interactive gates have no confirm callback, so PROMPT becomes a rejection.
        """
        checker = checker_for_mode(
            mode or self.config.permission_mode,
            rules=self.rules,
            default_mode=self.default_mode,
            approvals=self.approvals,
        )
        if interactive:
            confirm_callback = confirm_callback or self.confirm_callback
        else:
            confirm_callback = None
        return PermissionGate(checker, confirm_callback, approvals=self.approvals)

    def create_provider(self, name: Optional[str] = None, model_id: Optional[str] = None) -> ProviderAdapter:
        kwargs = {"model_id": model_id or self.model_config.model_id}
        name = (name or self.model_config.provider).lower()
        if name == "anthropic" and self.model_config.anthropic_base_url:
            kwargs["base_url"] = self.model_config.anthropic_base_url
        return create_provider(name, **kwargs)

    def create_executor(self, provider: Optional[ProviderAdapter] = None,
                        on_event: Optional[EventCallback] = None,
                        mode: Optional[str] = None, **kwargs) -> TurnExecutor:
        """TurnExecutor for a top-level session."""
        return TurnExecutor(
            self,
            provider=provider or self.create_provider(),
            gate=self.create_gate(mode),
            on_event=on_event,
            **kwargs,
        )

    def shutdown(self) -> None:
        self.tasks.shutdown()
