"""
LLM provider adapters.
Turns a canonical conversation + tool schemas into an ordered stream of chunks
for one turn. Two variants share the Anthropic Messages wire shape: Amazon
Bedrock (boto3) and the Anthropic API (anthropic SDK).
"""

import asyncio
import json
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Type

import anthropic
import boto3
from botocore.exceptions import ClientError, NoCredentialsError

from config import aws_config, model_config
from conversation import (
    Message, ToolCall, TurnResult, Usage,
    ROLE_ASSISTANT, ROLE_TOOL_RESULT,
    STOP_END_TURN, STOP_ERROR,
)

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Custom exception for provider errors. Fatal to the current run."""
    pass


@dataclass
class GenerationConfig:
    """Configuration for a single generation request"""
    max_tokens: int = 16000
    temperature: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    # Throughput settings (Bedrock only)
    throughput_mode: str = "cross-region"


# ============================================================
# Stream chunks
# ============================================================

CHUNK_TEXT = "text"
CHUNK_THINKING = "thinking"
CHUNK_TOOL_START = "tool_start"
CHUNK_TOOL_INPUT = "tool_input"
CHUNK_DONE = "done"
CHUNK_ERROR = "error"

TERMINAL_CHUNKS = frozenset({CHUNK_DONE, CHUNK_ERROR})


@dataclass
class StreamChunk:
    """One element of a provider stream. Exactly one done or error ends it."""
    type: str
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    stop_reason: Optional[str] = None
    usage: Optional[Usage] = None
    error: Optional[str] = None
    # A done chunk may carry a complete result, overriding what was accumulated
    response: Optional[TurnResult] = None


class TurnCollector:
    """Accumulates stream chunks into a TurnResult."""

    def __init__(self):
        self._text: List[str] = []
        self._thinking: List[str] = []
        self._tool_calls: List[ToolCall] = []
        self._inputs: Dict[str, List[str]] = {}
        self._result: Optional[TurnResult] = None

    def feed(self, chunk: StreamChunk) -> None:
        if self._result is not None:
            return
        if chunk.type == CHUNK_TEXT:
            self._text.append(chunk.text)
        elif chunk.type == CHUNK_THINKING:
            self._thinking.append(chunk.text)
        elif chunk.type == CHUNK_TOOL_START:
            self._tool_calls.append(ToolCall(id=chunk.tool_id, name=chunk.tool_name, input=""))
            self._inputs[chunk.tool_id] = []
        elif chunk.type == CHUNK_TOOL_INPUT:
            tool_id = chunk.tool_id or (self._tool_calls[-1].id if self._tool_calls else "")
            if tool_id in self._inputs:
                self._inputs[tool_id].append(chunk.text)
        elif chunk.type == CHUNK_DONE:
            if chunk.response is not None:
                self._result = chunk.response
                return
            self._result = self._build(chunk.stop_reason or STOP_END_TURN, chunk.usage or Usage())
        elif chunk.type == CHUNK_ERROR:
            self._result = self._build(STOP_ERROR, chunk.usage or Usage())
            self._result.error = chunk.error or "provider stream error"

    def _build(self, stop_reason: str, usage: Usage) -> TurnResult:
        for call in self._tool_calls:
            call.input = "".join(self._inputs.get(call.id, [])) or "{}"
        return TurnResult(
            content="".join(self._text),
            thinking="".join(self._thinking),
            tool_calls=list(self._tool_calls),
            stop_reason=stop_reason,
            usage=usage,
        )

    @property
    def finished(self) -> bool:
        return self._result is not None

    def result(self) -> TurnResult:
        if self._result is None:
            return TurnResult(stop_reason=STOP_ERROR, error="stream ended without a done chunk")
        return self._result


class ChunkStream:
    """Bounded async iterator over chunks produced on a worker thread.

    The provider's synchronous generator runs in a daemon thread and feeds a
    bounded queue; the event loop awaits each chunk via run_in_executor.
    Iterate with `async for` to forward chunks live, or call collect().
    """

    def __init__(self, producer: Callable[[], Iterable[StreamChunk]], maxsize: int = 256):
        self._producer = producer
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._finished = False

    def _put(self, item: Optional[StreamChunk]) -> bool:
        while not self._closed.is_set():
            try:
                self._queue.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def _run_producer(self) -> None:
        """Run the sync generator in a background thread, forwarding chunks to the queue."""
        try:
            for chunk in self._producer():
                if not self._put(chunk):
                    return
                if chunk.type in TERMINAL_CHUNKS:
                    return
            self._put(StreamChunk(type=CHUNK_ERROR, error="provider stream ended unexpectedly"))
        except ProviderError as e:
            self._put(StreamChunk(type=CHUNK_ERROR, error=str(e)))
        except Exception as e:
            logger.exception("Provider stream failed")
            self._put(StreamChunk(type=CHUNK_ERROR, error=f"Provider stream failed: {e}"))

    def _start(self) -> None:
        if self._thread is None:
            self._thread = threading.Thread(target=self._run_producer, daemon=True)
            self._thread.start()

    def __aiter__(self) -> "ChunkStream":
        return self

    async def __anext__(self) -> StreamChunk:
        if self._finished or self._closed.is_set():
            raise StopAsyncIteration
        self._start()
        loop = asyncio.get_running_loop()
        chunk = await loop.run_in_executor(None, self._queue.get)
        if chunk is None:
            self._finished = True
            raise StopAsyncIteration
        if chunk.type in TERMINAL_CHUNKS:
            self._finished = True
        return chunk

    def close(self) -> None:
        """Stop the producer and wake any consumer blocked on the queue."""
        self._closed.set()
        try:
            while True:
                self._queue.get_nowait()
        except queue.Empty:
            pass
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass

    async def collect(self, on_chunk: Optional[Callable[[StreamChunk], Any]] = None) -> TurnResult:
        collector = TurnCollector()
        try:
            async for chunk in self:
                if on_chunk is not None:
                    ret = on_chunk(chunk)
                    if asyncio.iscoroutine(ret):
                        await ret
                collector.feed(chunk)
        finally:
            self.close()
        return collector.result()


# ============================================================
# Anthropic Messages wire shape (shared by both variants)
# ============================================================

def format_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """Translate canonical messages into Anthropic Messages API dicts.

    Consecutive user-side messages (text, summaries, tool results) are merged,
    since the API requires strict user/assistant alternation.
    """
    formatted: List[Dict[str, Any]] = []

    def _append_user_blocks(blocks: List[Dict[str, Any]]) -> None:
        if formatted and formatted[-1]["role"] == "user":
            formatted[-1]["content"].extend(blocks)
        else:
            formatted.append({"role": "user", "content": blocks})

    for msg in messages:
        if msg.role == ROLE_TOOL_RESULT:
            result = msg.tool_result
            _append_user_blocks([{
                "type": "tool_result",
                "tool_use_id": result.tool_call_id,
                "content": result.content or "(no output)",
                "is_error": result.is_error,
            }])
        elif msg.role == ROLE_ASSISTANT:
            blocks: List[Dict[str, Any]] = []
            if msg.content.strip():
                blocks.append({"type": "text", "text": msg.content})
            for call in msg.tool_calls or []:
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.arguments(),
                })
            if not blocks:
                blocks.append({"type": "text", "text": "(no content)"})
            formatted.append({"role": "assistant", "content": blocks})
        else:
            blocks = []
            for image in msg.images:
                blocks.append({
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": image.get("media_type", "image/png"),
                        "data": image.get("data", ""),
                    },
                })
            text = msg.content
            if msg.is_summary:
                text = f"[Summary of earlier conversation]\n{text}"
            blocks.append({"type": "text", "text": text or "(empty)"})
            _append_user_blocks(blocks)
    return formatted


def translate_stream_events(events: Iterable[Dict[str, Any]]) -> Iterator[StreamChunk]:
    """Map Anthropic streaming events (as dicts) onto canonical chunks."""
    usage = Usage()
    stop_reason: Optional[str] = None
    current_tool_id = ""

    for event in events:
        event_type = event.get("type", "")

        if event_type == "message_start":
            # Extract input token usage from message_start (includes cache metrics)
            msg_usage = (event.get("message") or {}).get("usage") or {}
            usage.input_tokens = (
                (msg_usage.get("input_tokens") or 0)
                + (msg_usage.get("cache_read_input_tokens") or 0)
                + (msg_usage.get("cache_creation_input_tokens") or 0)
            )
            usage.output_tokens = msg_usage.get("output_tokens") or 0

        elif event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                current_tool_id = block.get("id", "")
                yield StreamChunk(type=CHUNK_TOOL_START, tool_id=current_tool_id,
                                  tool_name=block.get("name", ""))

        elif event_type == "content_block_delta":
            delta = event.get("delta") or {}
            delta_type = delta.get("type", "")
            if delta_type == "text_delta" and delta.get("text"):
                yield StreamChunk(type=CHUNK_TEXT, text=delta["text"])
            elif delta_type == "thinking_delta" and delta.get("thinking"):
                yield StreamChunk(type=CHUNK_THINKING, text=delta["thinking"])
            elif delta_type == "input_json_delta" and delta.get("partial_json"):
                yield StreamChunk(type=CHUNK_TOOL_INPUT, tool_id=current_tool_id,
                                  text=delta["partial_json"])

        elif event_type == "message_delta":
            stop_reason = (event.get("delta") or {}).get("stop_reason") or stop_reason
            delta_usage = event.get("usage") or {}
            if delta_usage.get("output_tokens") is not None:
                usage.output_tokens = delta_usage["output_tokens"]

        elif event_type == "message_stop":
            yield StreamChunk(type=CHUNK_DONE, stop_reason=stop_reason or STOP_END_TURN, usage=usage)
            return

        elif event_type == "error":
            err = event.get("error") or {}
            yield StreamChunk(type=CHUNK_ERROR, error=err.get("message", "provider error"), usage=usage)
            return

    if stop_reason is not None:
        yield StreamChunk(type=CHUNK_DONE, stop_reason=stop_reason, usage=usage)
    else:
        yield StreamChunk(type=CHUNK_ERROR, error="stream ended before message_stop", usage=usage)


# ============================================================
# Adapter interface
# ============================================================

class ProviderAdapter(ABC):
    """One provider variant behind the common streaming interface."""

    name = ""

    def __init__(self, model_id: Optional[str] = None):
        self.model_id = model_id or model_config.model_id

    @abstractmethod
    def _iter_events(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        system_prompt: Optional[str],
        model_id: str,
        config: GenerationConfig,
    ) -> Iterator[Dict[str, Any]]:
        """Yield raw Anthropic-shaped stream events for one request."""

    def _iter_chunks(
        self,
        messages: List[Message],
        tools: List[Dict[str, Any]],
        system_prompt: Optional[str],
        model_id: str,
        config: GenerationConfig,
    ) -> Iterator[StreamChunk]:
        events = self._iter_events(format_messages(messages), tools, system_prompt, model_id, config)
        return translate_stream_events(events)

    def stream(
        self,
        messages: List[Message],
        tools: Optional[List[Dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
    ) -> ChunkStream:
        """Start one turn. The returned stream ends with exactly one done or error."""
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig()
        snapshot = list(messages)
        return ChunkStream(lambda: self._iter_chunks(
            snapshot, list(tools or []), system_prompt, current_model, gen_config,
        ))

    async def complete(
        self,
        messages: List[Message],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        max_tokens: int = 2048,
    ) -> TurnResult:
        """Non-tool completion, fully collected. Raises ProviderError on failure."""
        result = await self.stream(
            messages, tools=[], system_prompt=system_prompt, model_id=model_id,
            config=GenerationConfig(max_tokens=max_tokens),
        ).collect()
        if result.stop_reason == STOP_ERROR:
            raise ProviderError(result.error or "completion failed")
        return result


# ============================================================
# Amazon Bedrock
# ============================================================

_RETRYABLE_CODES = {"ThrottlingException", "ServiceUnavailableException", "ModelNotReadyException"}


class BedrockProvider(ProviderAdapter):
    """Anthropic Claude models served by Amazon Bedrock."""

    name = "bedrock"

    def __init__(self, model_id: Optional[str] = None, region: Optional[str] = None,
                 max_retries: int = 3, retry_backoff: float = 2.0):
        super().__init__(model_id)
        self.region = region or aws_config.region
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.client = self._create_client()
        logger.info(f"BedrockProvider initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise ProviderError("AWS credentials not configured.")
        except Exception as e:
            raise ProviderError(f"Failed to initialize Bedrock client: {e}")

    def _get_model_identifier(self, model_id: str, config: GenerationConfig) -> str:
        """Map a model id onto a Bedrock identifier, adding the cross-region prefix."""
        if model_id.startswith(("us.", "eu.", "ap.")):
            return model_id
        if model_id.startswith("claude-"):
            model_id = f"anthropic.{model_id}-v1:0"
        if config.throughput_mode == "cross-region" and model_id.startswith("anthropic."):
            region_prefix = "eu" if self.region.startswith("eu-") else "ap" if self.region.startswith("ap-") else "us"
            return f"{region_prefix}.{model_id}"
        return model_id

    def _format_request_body(self, messages, tools, system_prompt, config) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": config.max_tokens,
            "messages": messages,
        }
        if system_prompt:
            body["system"] = system_prompt
        if tools:
            body["tools"] = tools
        if config.temperature is not None:
            body["temperature"] = config.temperature
        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences
        return body

    def _invoke_with_retry(self, model_identifier: str, body: Dict[str, Any]) -> Any:
        for attempt in range(1, self.max_retries + 1):
            try:
                return self.client.invoke_model_with_response_stream(
                    modelId=model_identifier,
                    body=json.dumps(body),
                    contentType="application/json",
                    accept="application/json",
                )
            except ClientError as e:
                error_code = e.response.get("Error", {}).get("Code", "Unknown")
                error_message = e.response.get("Error", {}).get("Message", str(e))
                if error_code in _RETRYABLE_CODES and attempt < self.max_retries:
                    delay = self.retry_backoff * attempt
                    logger.warning(f"Bedrock {error_code}, retrying in {delay}s ({attempt}/{self.max_retries})")
                    time.sleep(delay)
                    continue
                logger.error(f"Bedrock API error: {error_code} - {error_message}")
                if error_code in ("ExpiredTokenException", "InvalidSignatureException"):
                    raise ProviderError("AWS credentials expired. Please refresh.")
                raise ProviderError(f"Bedrock API error: {error_message}")
        raise ProviderError("Bedrock API error: retries exhausted")

    def _iter_events(self, messages, tools, system_prompt, model_id, config):
        model_identifier = self._get_model_identifier(model_id, config)
        body = self._format_request_body(messages, tools, system_prompt, config)
        logger.info(f"Streaming from model: {model_identifier}")
        response = self._invoke_with_retry(model_identifier, body)
        try:
            for event in response["body"]:
                if "chunk" not in event:
                    # Modeled exceptions arrive as their own event keys
                    name, detail = next(iter(event.items()))
                    raise ProviderError(f"Streaming error: {name}: {detail.get('message', '')}")
                yield json.loads(event["chunk"]["bytes"])
        except ClientError as e:
            error_message = e.response.get("Error", {}).get("Message", str(e))
            logger.error(f"Bedrock streaming error: {error_message}")
            raise ProviderError(f"Streaming error: {error_message}")


# ============================================================
# Anthropic API
# ============================================================

class AnthropicProvider(ProviderAdapter):
    """Anthropic Claude models served by the Anthropic API."""

    name = "anthropic"

    def __init__(self, model_id: Optional[str] = None, base_url: Optional[str] = None,
                 api_key: Optional[str] = None, max_retries: int = 3):
        super().__init__(model_id)
        self.client = anthropic.Anthropic(
            base_url=base_url or model_config.anthropic_base_url or None,
            api_key=api_key,
            max_retries=max_retries,
        )
        logger.info(f"AnthropicProvider initialized with model: {self.model_id}")

    def _iter_events(self, messages, tools, system_prompt, model_id, config):
        kwargs: Dict[str, Any] = {
            "model": model_id,
            "max_tokens": config.max_tokens,
            "messages": messages,
            "stream": True,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if tools:
            kwargs["tools"] = tools
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature
        if config.stop_sequences:
            kwargs["stop_sequences"] = config.stop_sequences
        logger.info(f"Streaming from model: {model_id}")
        try:
            for event in self.client.messages.create(**kwargs):
                yield event.model_dump()
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise ProviderError(f"Anthropic API error: {e}")


# Static registration table, built once at import
PROVIDERS: Dict[str, Type[ProviderAdapter]] = {
    BedrockProvider.name: BedrockProvider,
    AnthropicProvider.name: AnthropicProvider,
}


def create_provider(name: Optional[str] = None, **kwargs: Any) -> ProviderAdapter:
    """Instantiate a provider variant by name (default from LLM_PROVIDER)."""
    key = (name or model_config.provider).lower()
    cls = PROVIDERS.get(key)
    if cls is None:
        raise ProviderError(f"Unknown provider: {key} (available: {', '.join(sorted(PROVIDERS))})")
    return cls(**kwargs)
