"""
Context window management for the turn executor.
Handles token estimation, tool-output pruning, LLM summarization and history repair.
"""

import logging
from typing import List, Optional, Tuple

from conversation import (
    Message, ToolCallResult, Usage,
    ROLE_ASSISTANT, ROLE_TOOL_RESULT, ROLE_USER,
    summary_message, tool_result_message,
)
from providers import ProviderAdapter, ProviderError

from .cancel import CancelSignal, race_cancel
from .events import AgentEvent

logger = logging.getLogger(__name__)

PRUNED_MARKER = "[Old tool result content cleared]"
TOOL_RESULT_PREVIEW_CHARS = 500

COMPACT_SYSTEM_PROMPT = (
    "You are a conversation summarizer for a coding assistant. Produce a structured summary "
    "that lets the assistant continue the work without the original messages. Preserve: the "
    "task goal, files read and modified and how, key decisions, commands run and their "
    "results, and any unresolved issues or next steps."
)


class CompactionError(Exception):
    """Summarization failed; the history it was meant to replace is left untouched."""
    pass


# ------------------------------------------------------------------
# Token estimation
# ------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Token estimate: ~3.5 chars per token for mixed English/code."""
    if not text:
        return 0
    return max(1, int(len(text) / 3.5))


def message_tokens(msg: Message) -> int:
    """Estimate tokens in a single message (5 tokens of framing overhead)."""
    total = 5 + estimate_tokens(msg.content) + estimate_tokens(msg.thinking)
    for call in msg.tool_calls or []:
        total += 10 + estimate_tokens(call.input)
    if msg.tool_result is not None:
        total += 10 + estimate_tokens(msg.tool_result.content)
    total += 1500 * len(msg.images)
    return total


def conversation_tokens(messages: List[Message]) -> int:
    return sum(message_tokens(m) for m in messages)


def needs_compaction(input_tokens: int, input_limit: int, threshold_percent: float = 95.0) -> bool:
    """True once input usage reaches `threshold_percent` of the limit (inclusive)."""
    if input_limit <= 0 or input_tokens <= 0:
        return False
    return input_tokens / input_limit * 100 >= threshold_percent


# ------------------------------------------------------------------
# Layer 1: tool-output pruning
# ------------------------------------------------------------------

def prune_tool_outputs(messages: List[Message], protect_tokens: int, minimum_tokens: int) -> int:
    """Clear old tool results outside the most recent `protect_tokens` of tool output.

    Nothing is changed unless at least `minimum_tokens` would be freed.
    Returns the estimated number of tokens freed.
    """
    seen = 0
    candidates: List[int] = []
    freeable = 0
    for idx in range(len(messages) - 1, -1, -1):
        result = messages[idx].tool_result
        if messages[idx].role != ROLE_TOOL_RESULT or result is None:
            continue
        if result.content == PRUNED_MARKER:
            # Everything older was already cleared by a previous pass
            break
        size = estimate_tokens(result.content)
        seen += size
        if seen > protect_tokens:
            candidates.append(idx)
            freeable += size - estimate_tokens(PRUNED_MARKER)

    if not candidates or freeable < minimum_tokens:
        return 0

    for idx in candidates:
        old = messages[idx].tool_result
        messages[idx].tool_result = ToolCallResult(
            tool_call_id=old.tool_call_id, content=PRUNED_MARKER, is_error=old.is_error,
        )
    logger.info(f"Pruned {len(candidates)} old tool results (~{freeable} tokens)")
    return freeable


# ------------------------------------------------------------------
# Layer 2: LLM summarization
# ------------------------------------------------------------------

def build_conversation_text(messages: List[Message], focus: Optional[str] = None) -> str:
    """Render messages as the plain-text transcript sent to the summarizer."""
    tool_names = {}
    for msg in messages:
        for call in msg.tool_calls or []:
            tool_names[call.id] = call.name

    parts = ["Please summarize this coding conversation:\n"]
    for msg in messages:
        if msg.role == ROLE_TOOL_RESULT:
            name = tool_names.get(msg.tool_result.tool_call_id, "unknown")
            content = msg.tool_result.content
            if len(content) > TOOL_RESULT_PREVIEW_CHARS:
                content = content[:TOOL_RESULT_PREVIEW_CHARS] + "...[truncated]"
            parts.append(f"[Tool Result: {name}]\n{content}")
        elif msg.role == ROLE_ASSISTANT:
            if msg.content:
                parts.append(f"Assistant: {msg.content}")
            for call in msg.tool_calls or []:
                parts.append(f"[Tool Call: {call.name}]")
        else:
            label = "Earlier summary" if msg.is_summary else "User"
            parts.append(f"{label}: {msg.content}")

    text = "\n\n".join(parts)
    if focus:
        text += f"\n\n**Important**: Focus the summary on: {focus}"
    return text


async def compact(
    provider: ProviderAdapter,
    messages: List[Message],
    focus: Optional[str] = None,
    model_id: Optional[str] = None,
    max_tokens: int = 2048,
    usage: Optional[Usage] = None,
) -> Tuple[str, int]:
    """Summarize `messages` with one non-tool completion call.

    Returns (summary_text, covered_message_count). An empty list is still
    sent and yields a count of 0. Raises CompactionError on failure.
    """
    prompt = build_conversation_text(messages, focus)
    try:
        result = await provider.complete(
            [Message(role=ROLE_USER, content=prompt)],
            system_prompt=COMPACT_SYSTEM_PROMPT,
            model_id=model_id,
            max_tokens=max_tokens,
        )
    except ProviderError as e:
        raise CompactionError(f"Summarization request failed: {e}") from e
    if usage is not None:
        usage.add(result.usage)
    summary = result.content.strip()
    if not summary:
        raise CompactionError("Summarization returned no text")
    return summary, len(messages)


def protected_suffix_start(messages: List[Message], keep_recent_tokens: int) -> int:
    """Index where the protected suffix of recent messages begins.

    The suffix holds as many trailing messages as fit in `keep_recent_tokens`
    (at least one), and never starts on a tool result, so every tool result
    stays next to the call that produced it.
    """
    if not messages:
        return 0
    start = len(messages) - 1
    budget = keep_recent_tokens - message_tokens(messages[start])
    while start > 0:
        cost = message_tokens(messages[start - 1])
        if cost > budget:
            break
        budget -= cost
        start -= 1
    while start > 0 and messages[start].role == ROLE_TOOL_RESULT:
        start -= 1
    return start


class HistoryMixin:
    """Mixin providing context budget management: estimation, pruning,
    summarization and repair.

    Expects the host class to provide:
    - self.provider (ProviderAdapter)
    - self.messages (list of Message)
    - self.model_id (str)
    - self.config (AppConfig)
    - self.catalog (ModelCatalog)
    - self.system_prompt (str)
    - self.tokens (Usage)
    - self._last_input_tokens (int)
    - self._history_len_at_last_call (int)
    - self._emit(event) coroutine
    """

    def _current_token_estimate(self) -> int:
        """Last reported prompt size plus an estimate for messages added since."""
        added = self.messages[self._history_len_at_last_call:]
        if self._last_input_tokens:
            return self._last_input_tokens + conversation_tokens(added)
        return estimate_tokens(self.system_prompt) + conversation_tokens(self.messages)

    def _over_budget(self, tokens: int) -> bool:
        return needs_compaction(
            tokens, self.catalog.input_limit(self.model_id), self.config.compaction_threshold_percent,
        )

    async def _manage_context(self, cancel: Optional[CancelSignal] = None) -> None:
        """Two-layer strategy: prune old tool output, summarize only if still over."""
        used = self._current_token_estimate()
        if not self._over_budget(used):
            return

        freed = prune_tool_outputs(
            self.messages, self.config.prune_protect_tokens, self.config.prune_minimum_tokens,
        )
        if freed:
            used = max(used - freed, 0)
            await self._emit(AgentEvent(
                type="compaction", content="pruned",
                data={"strategy": "prune", "tokens_freed": freed},
            ))
            if not self._over_budget(used):
                self._last_input_tokens = used
                self._history_len_at_last_call = len(self.messages)
                return

        await race_cancel(self.compact_history(), cancel)

    async def compact_history(self, focus: Optional[str] = None) -> bool:
        """Replace everything before the protected suffix with one summary message.

        Returns False (history untouched) when summarization fails.
        """
        start = protected_suffix_start(self.messages, self.config.keep_recent_tokens)
        if start == 0:
            logger.info("Nothing to compact outside the protected suffix")
            return False
        prefix = self.messages[:start]
        try:
            summary, covered = await compact(
                self.provider, prefix, focus=focus, model_id=self.model_id,
                max_tokens=self.config.summary_max_tokens, usage=self.tokens,
            )
        except CompactionError as e:
            logger.warning(f"Compaction failed, keeping full history: {e}")
            await self._emit(AgentEvent(type="compaction_failed", content=str(e)))
            return False

        self.messages[:start] = [summary_message(summary)]
        self._last_input_tokens = 0
        self._history_len_at_last_call = 0
        logger.info(f"Compacted {covered} messages into a {len(summary)}-char summary")
        await self._emit(AgentEvent(
            type="compaction", content="summarized",
            data={"strategy": "summarize", "covered_messages": covered},
        ))
        return True

    def _repair_history(self) -> None:
        """Give every tool call without a result a synthetic error result.

        Happens when a turn ended with tool calls but a non tool_use stop
        reason, or after an interrupted dispatch.
        """
        repaired = 0
        i = 0
        while i < len(self.messages):
            msg = self.messages[i]
            if msg.role != ROLE_ASSISTANT or not msg.tool_calls:
                i += 1
                continue
            j = i + 1
            answered = set()
            while j < len(self.messages) and self.messages[j].role == ROLE_TOOL_RESULT:
                answered.add(self.messages[j].tool_result.tool_call_id)
                j += 1
            for call in msg.tool_calls:
                if call.id not in answered:
                    self.messages.insert(j, tool_result_message(
                        call.id, "Tool call was not executed", is_error=True,
                    ))
                    j += 1
                    repaired += 1
            i = j
        if repaired:
            logger.warning(f"Repaired {repaired} orphaned tool call(s) in history")
