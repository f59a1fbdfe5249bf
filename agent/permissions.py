"""
Permission gate: decides whether a tool call runs, is rejected, or needs approval.

Policies:
- PermitAll / ReadOnly / DenyAll presets
- RuleBased: deny rules > allow rules > destructive-command prompt > session
  approvals > default mode

Rules are written like ``Bash(git status:*)`` or ``Edit(src/**)``.
"""

import asyncio
import enum
import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import urlparse

from backend import Backend
from tools.file_ops import preview_change
from tools.schemas import READ_ONLY_TOOL_NAMES

from .cancel import CancelSignal, race_cancel

logger = logging.getLogger(__name__)


class PermissionDecision(enum.Enum):
    PERMIT = "permit"
    REJECT = "reject"
    PROMPT = "prompt"


class ApprovalAction(enum.Enum):
    ALLOW_ONCE = "allow_once"
    ALLOW_ALWAYS = "allow_always"
    DENY = "deny"


ConfirmCallback = Callable[[str, Dict[str, Any], str], Union[ApprovalAction, Awaitable[ApprovalAction]]]

RULE_ALLOW = "allow"
RULE_DENY = "deny"
RULE_ASK = "ask"

_PATH_TOOLS = {"Read", "Write", "Edit"}
_SEARCH_TOOLS = {"Glob", "Grep"}
_SHELL_OPERATOR_RE = re.compile(r"&&|\|\||;|\|")
_RULE_RE = re.compile(r"^\s*([A-Za-z_][\w\-]*)\s*(?:\((.*)\))?\s*$", re.DOTALL)


# ============================================================
# Rule matching
# ============================================================

@dataclass(frozen=True)
class PermissionRule:
    """A tool name plus an optional semantic pattern. Empty pattern = whole tool."""
    tool: str
    mode: str
    pattern: str = ""

    def __str__(self) -> str:
        return f"{self.tool}({self.pattern})" if self.pattern else self.tool


def parse_rule(text: str, mode: str) -> PermissionRule:
    """Parse ``Tool`` or ``Tool(pattern)``."""
    m = _RULE_RE.match(text or "")
    if not m:
        raise ValueError(f"Invalid permission rule: {text!r}")
    return PermissionRule(tool=m.group(1), mode=mode, pattern=(m.group(2) or "").strip())


def rule_subject(tool_name: str, params: Dict[str, Any]) -> str:
    """The string a rule pattern is matched against for this call."""
    if tool_name == "Bash":
        return str(params.get("command", "")).strip()
    if tool_name in _PATH_TOOLS:
        return _normalize_path(str(params.get("file_path", "")))
    if tool_name in _SEARCH_TOOLS:
        return _normalize_path(str(params.get("path") or params.get("pattern") or ""))
    if tool_name == "WebFetch":
        host = urlparse(str(params.get("url", ""))).hostname or ""
        return f"domain:{host}"
    if tool_name == "Task":
        return str(params.get("subagent_type", ""))
    return ""


def _normalize_path(path: str) -> str:
    path = path.replace(os.sep, "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def contains_shell_operators(command: str) -> bool:
    return bool(_SHELL_OPERATOR_RE.search(command))


def split_commands(command: str) -> List[str]:
    return [part.strip() for part in _SHELL_OPERATOR_RE.split(command) if part.strip()]


def _command_regex(pattern: str) -> "re.Pattern[str]":
    """``:`` separates words (whitespace or end of command), ``*`` is any run."""
    out = []
    for ch in pattern:
        if ch == ":":
            out.append(r"(?:\s+|$)")
        elif ch == "*":
            out.append(".*")
        elif ch.isspace():
            out.append(r"\s+")
        else:
            out.append(re.escape(ch))
    return re.compile("^" + "".join(out) + "$", re.IGNORECASE | re.DOTALL)


def match_glob(pattern: str, path: str) -> bool:
    """Glob match where ``**`` spans directories and ``*``/``?`` do not."""
    regex = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if pattern.startswith("**/", i):
            regex.append("(?:.*/)?")
            i += 3
            continue
        if pattern.startswith("**", i):
            regex.append(".*")
            i += 2
            continue
        if ch == "*":
            regex.append("[^/]*")
        elif ch == "?":
            regex.append("[^/]")
        else:
            regex.append(re.escape(ch))
        i += 1
    return re.match("^" + "".join(regex) + "$", path) is not None


# Commands that always need confirmation unless an explicit allow rule covers them
_DESTRUCTIVE_COMMAND_RES = [re.compile(p, re.IGNORECASE) for p in (
    r"\brm\s+(?:-\w+\s+)*-\w*r",           # recursive rm
    r"\bgit\s+reset\s+--hard\b",
    r"\bgit\s+clean\s+(?:-\w+\s+)*-\w*f",
    r"\bgit\s+push\b.*(?:--force\b|\s-f\b)",
    r"\bchmod\s+(?:-r\s+)?777\b",
    r":\(\)\s*\{\s*:\|:&\s*\};:",          # fork bomb
    r">\s*/dev/(?!null\b)",
    r"\bdd\s+if=",
    r"\bmkfs\b",
    r"\bfdisk\b",
)]

COMMON_DENY_RULES = (
    "Read(**/.env)",
    "Read(**/.env.*)",
    "Read(**/secrets/**)",
    "Read(**/*credentials*)",
    "Read(**/*password*)",
    "Read(**/.aws/**)",
    "Read(**/.ssh/**)",
    "Edit(**/.env)",
    "Edit(**/.env.*)",
    "Write(**/.env)",
    "Write(**/.env.*)",
)


def is_destructive_command(command: str) -> bool:
    normalized = " ".join(command.split())
    return any(r.search(normalized) for r in _DESTRUCTIVE_COMMAND_RES)


def common_deny_rules() -> List[PermissionRule]:
    return [parse_rule(text, RULE_DENY) for text in COMMON_DENY_RULES]


def rule_matches(rule: PermissionRule, tool_name: str, params: Dict[str, Any]) -> bool:
    if rule.tool != tool_name:
        return False
    if not rule.pattern or rule.pattern in ("*", "**"):
        return True
    subject = rule_subject(tool_name, params)
    if tool_name == "Bash":
        regex = _command_regex(rule.pattern)
        if rule.mode == RULE_DENY:
            # A denied command stays denied when chained behind another one
            return any(regex.match(part) for part in [subject] + split_commands(subject))
        if contains_shell_operators(subject):
            return False
        return regex.match(subject) is not None
    if tool_name in _PATH_TOOLS or tool_name in _SEARCH_TOOLS:
        return match_glob(_normalize_path(rule.pattern), subject)
    return match_glob(rule.pattern, subject)


# ============================================================
# Session approvals (shared across subagents, lock-guarded)
# ============================================================

def approval_key(tool_name: str, params: Dict[str, Any]) -> str:
    return f"{tool_name}({rule_subject(tool_name, params)})"


class SessionApprovals:
    """Approvals granted with ALLOW_ALWAYS, valid until cleared or session end."""

    def __init__(self):
        self._lock = threading.Lock()
        self._keys: set = set()
        self._tools: set = set()

    def remember(self, tool_name: str, params: Optional[Dict[str, Any]] = None,
                 whole_tool: bool = False) -> None:
        with self._lock:
            if whole_tool or params is None:
                self._tools.add(tool_name)
            else:
                self._keys.add(approval_key(tool_name, params))

    def is_approved(self, tool_name: str, params: Dict[str, Any]) -> bool:
        key = approval_key(tool_name, params)
        with self._lock:
            return tool_name in self._tools or key in self._keys

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()
            self._tools.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys) + len(self._tools)


# ============================================================
# Checkers
# ============================================================

class PermissionChecker(ABC):
    """Pure policy: same state + same call => same decision."""

    @abstractmethod
    def check(self, tool_name: str, params: Dict[str, Any]) -> PermissionDecision:
        ...


class PermitAll(PermissionChecker):
    def check(self, tool_name, params):
        return PermissionDecision.PERMIT


class DenyAll(PermissionChecker):
    def check(self, tool_name, params):
        return PermissionDecision.REJECT


class ReadOnly(PermissionChecker):
    def __init__(self, tools: Iterable[str] = READ_ONLY_TOOL_NAMES):
        self.tools = frozenset(tools)

    def check(self, tool_name, params):
        if tool_name in self.tools:
            return PermissionDecision.PERMIT
        return PermissionDecision.REJECT


_DEFAULT_MODES = {
    "ask": PermissionDecision.PROMPT,
    "allow": PermissionDecision.PERMIT,
    "deny": PermissionDecision.REJECT,
}


class RuleBased(PermissionChecker):
    """Deny rules, then allow rules, then session approvals, then the default.

    A destructive Bash command that no allow rule names always prompts:
    session approvals and permissive defaults do not apply to it.
    """

    def __init__(self, rules: Iterable[PermissionRule] = (), default_mode: str = "ask",
                 approvals: Optional[SessionApprovals] = None,
                 auto_permit: Iterable[str] = READ_ONLY_TOOL_NAMES):
        if default_mode not in _DEFAULT_MODES:
            raise ValueError(f"Unknown default permission mode: {default_mode}")
        rules = list(rules)
        self.deny_rules = [r for r in rules if r.mode == RULE_DENY]
        self.allow_rules = [r for r in rules if r.mode == RULE_ALLOW]
        self.ask_rules = [r for r in rules if r.mode == RULE_ASK]
        self.default_mode = default_mode
        self.approvals = approvals if approvals is not None else SessionApprovals()
        self.auto_permit = frozenset(auto_permit)

    def check(self, tool_name, params):
        for rule in self.deny_rules:
            if rule_matches(rule, tool_name, params):
                return PermissionDecision.REJECT
        for rule in self.allow_rules:
            if rule_matches(rule, tool_name, params):
                return PermissionDecision.PERMIT
        if tool_name == "Bash" and is_destructive_command(str(params.get("command", ""))):
            return PermissionDecision.PROMPT
        if self.approvals.is_approved(tool_name, params):
            return PermissionDecision.PERMIT
        for rule in self.ask_rules:
            if rule_matches(rule, tool_name, params):
                return PermissionDecision.PROMPT
        if tool_name in self.auto_permit:
            return PermissionDecision.PERMIT
        return _DEFAULT_MODES[self.default_mode]


def load_rules(settings_path: Optional[str] = None, allow: str = "", deny: str = "") -> Tuple[List[PermissionRule], Optional[str]]:
    """Read rules from a JSON settings file plus comma-separated env lists.

    Returns (rules, defaultMode from the file or None).
    """
    rules: List[PermissionRule] = []
    default_mode = None
    if settings_path and os.path.isfile(settings_path):
        try:
            with open(settings_path, "r", encoding="utf-8") as f:
                perms = (json.load(f) or {}).get("permissions", {}) or {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable settings file {settings_path}: {e}")
            perms = {}
        for mode in (RULE_ALLOW, RULE_DENY, RULE_ASK):
            for text in perms.get(mode, []) or []:
                try:
                    rules.append(parse_rule(text, mode))
                except ValueError as e:
                    logger.warning(str(e))
        default_mode = perms.get("defaultMode")
    for mode, raw in ((RULE_ALLOW, allow), (RULE_DENY, deny)):
        for text in _split_rule_list(raw):
            try:
                rules.append(parse_rule(text, mode))
            except ValueError as e:
                logger.warning(str(e))
    return rules, default_mode


def _split_rule_list(raw: str) -> List[str]:
    """Split on commas that are not inside parentheses."""
    items, depth, current = [], 0, []
    for ch in raw or "":
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(depth - 1, 0)
        if ch == "," and depth == 0:
            items.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    items.append("".join(current).strip())
    return [i for i in items if i]


def checker_for_mode(mode: str, rules: Iterable[PermissionRule] = (), default_mode: str = "ask",
                     approvals: Optional[SessionApprovals] = None) -> PermissionChecker:
    """Map a permission mode name onto a checker."""
    if mode in ("plan", "read_only"):
        return ReadOnly()
    if mode in ("yolo", "dont_ask", "bypass"):
        return PermitAll()
    if mode == "deny":
        return DenyAll()
    if mode == "default":
        return RuleBased(rules, default_mode=default_mode, approvals=approvals)
    raise ValueError(f"Unknown permission mode: {mode}")


# ============================================================
# Gate
# ============================================================

class PermissionGate:
    """Applies a checker and resolves PROMPT through the confirm callback.

    Without a callback PROMPT resolves to a rejection, never to execution.
    """

    def __init__(self, checker: PermissionChecker, confirm_callback: Optional[ConfirmCallback] = None,
                 approvals: Optional[SessionApprovals] = None, backend: Optional[Backend] = None):
        self.checker = checker
        self.confirm_callback = confirm_callback
        if approvals is None:
            approvals = getattr(checker, "approvals", None)
        self.approvals = approvals if approvals is not None else SessionApprovals()
        self.backend = backend

    def with_checker(self, checker: PermissionChecker) -> "PermissionGate":
        """Same callback and shared approvals, different policy."""
        return PermissionGate(checker, self.confirm_callback, self.approvals, self.backend)

    def check(self, tool_name: str, params: Dict[str, Any]) -> PermissionDecision:
        return self.checker.check(tool_name, params)

    def diff_context(self, tool_name: str, params: Dict[str, Any]) -> str:
        if tool_name == "Bash":
            return str(params.get("command", ""))
        if tool_name in ("Write", "Edit") and self.backend is not None:
            return preview_change(tool_name, params, self.backend)
        return json.dumps(params, indent=2, default=str)

    async def authorize(self, tool_name: str, params: Dict[str, Any],
                        cancel: Optional[CancelSignal] = None) -> Tuple[bool, str]:
        """Returns (allowed, reason). Raises RunCancelled if cancelled while prompting."""
        decision = self.check(tool_name, params)
        if decision == PermissionDecision.PERMIT:
            return True, ""
        if decision == PermissionDecision.REJECT:
            return False, f"Permission denied: tool {tool_name} is not allowed"

        if self.confirm_callback is None:
            logger.info(f"No confirmation handler; rejecting {tool_name}")
            return False, f"Permission denied: tool {tool_name} requires approval"

        diff = self.diff_context(tool_name, params)
        action = await race_cancel(self._ask(tool_name, params, diff), cancel)
        if action == ApprovalAction.ALLOW_ALWAYS:
            self.approvals.remember(tool_name, params)
            return True, ""
        if action == ApprovalAction.ALLOW_ONCE:
            return True, ""
        return False, f"User denied {tool_name}"

    async def _ask(self, tool_name: str, params: Dict[str, Any], diff: str) -> ApprovalAction:
        if asyncio.iscoroutinefunction(self.confirm_callback):
            action = await self.confirm_callback(tool_name, params, diff)
        else:
            action = await asyncio.to_thread(self.confirm_callback, tool_name, params, diff)
        if isinstance(action, str):
            action = ApprovalAction(action)
        return action
