"""
StreamCoordinator: one LLM request in, exactly one outcome out.

The client's event stream (text, tool-call start/delta/end, usage, done,
error) is demultiplexed into a single LLMOutcome or a single TransportError.
The activity timeout is re-armed on every event, so a model that keeps
emitting may run arbitrarily long while a silent connection is detected.
"""

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, Protocol, Union

from config import agent_config

from .errors import StreamCancelledError, TransportError
from .messages import ToolCall

logger = logging.getLogger(__name__)

# Substrings of an exception message that mark a transient failure
_RETRYABLE_KEYWORDS = [
    "timeout", "timed out", "connection", "reset by peer",
    "broken pipe", "eof", "throttl", "serviceunav",
    "endpoint url", "network", "socket",
]

_EVENT = "event"
_FAILURE = "failure"
_END = "end"


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class LLMRequest:
    """One request to the model. ``config`` is opaque to the orchestrator."""
    messages: List[Dict[str, Any]]
    tools: Optional[List[Dict[str, Any]]] = None
    system_prompt: Optional[str] = None
    config: Any = None


@dataclass
class LLMOutcome:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    stop_reason: Optional[str] = None


class LLMClient(Protocol):
    def stream(self, request: LLMRequest) -> Union[Iterator[Dict[str, Any]], AsyncIterator[Dict[str, Any]]]:
        ...


def classify_exception(exc: BaseException) -> TransportError:
    """Map a producer exception to a TransportError with a retryability verdict."""
    if isinstance(exc, TransportError):
        return exc
    code = getattr(exc, "code", None)
    text = str(exc).lower()
    if code not in (TransportError.TIMEOUT, TransportError.NETWORK, TransportError.THROTTLED, TransportError.API):
        if "throttl" in text or "too many requests" in text:
            code = TransportError.THROTTLED
        elif "timeout" in text or "timed out" in text:
            code = TransportError.TIMEOUT
        elif any(kw in text for kw in _RETRYABLE_KEYWORDS):
            code = TransportError.NETWORK
        else:
            code = TransportError.API
    retryable = code != TransportError.API or any(kw in text for kw in _RETRYABLE_KEYWORDS)
    return TransportError(str(exc) or type(exc).__name__, code=code, retryable=retryable)


class _ToolArgumentBuffer:
    """Accumulates one tool call's argument string.

    A failed json.loads means "not complete yet". Incremental attempts stop
    after ``max_attempts``; the buffer refuses to grow past ``max_chars``.
    """

    def __init__(self, call_id: str, name: str, max_chars: int, max_attempts: int):
        self.call_id = call_id
        self.name = name
        self.max_chars = max_chars
        self.max_attempts = max_attempts
        self.chunks: List[str] = []
        self.size = 0
        self.attempts = 0
        self.parsed: Optional[Dict[str, Any]] = None
        self.error: Optional[str] = None
        self.finished: Optional[ToolCall] = None

    @property
    def raw(self) -> str:
        return "".join(self.chunks)

    def feed(self, delta: str) -> None:
        if self.error:
            return
        if self.size + len(delta) > self.max_chars:
            self.error = f"Tool arguments exceeded {self.max_chars} characters"
            logger.warning(f"Tool call {self.call_id} ({self.name}): argument buffer overflow, dropping further deltas")
            return
        self.chunks.append(delta)
        self.size += len(delta)
        self.parsed = None
        if self.attempts < self.max_attempts:
            self.attempts += 1
            self.parsed = self._parse(self.raw)

    @staticmethod
    def _parse(raw: str) -> Optional[Dict[str, Any]]:
        try:
            value = json.loads(raw)
        except ValueError:
            return None
        return value if isinstance(value, dict) else None

    def finish(self, arguments: Optional[Dict[str, Any]] = None) -> ToolCall:
        if self.finished is not None:
            return self.finished
        call = ToolCall(id=self.call_id, name=self.name, raw_arguments=self.raw)
        if arguments is not None:
            call.arguments = dict(arguments)
        elif self.error:
            call.parse_error = self.error
        elif self.parsed is not None:
            call.arguments = self.parsed
        elif not self.raw.strip():
            call.arguments = {}
        else:
            # One last attempt past the incremental budget
            parsed = self._parse(self.raw)
            if parsed is None:
                call.parse_error = f"Could not parse tool arguments as a JSON object ({self.size} chars)"
            else:
                call.arguments = parsed
        if call.parse_error:
            logger.warning(f"Tool call {call.id} ({call.name}): {call.parse_error}")
        self.finished = call
        return call


class StreamCoordinator:
    """Sends one request at a time and resolves it exactly once."""

    def __init__(
        self,
        client: LLMClient,
        activity_timeout: Optional[float] = None,
        max_tool_args_chars: Optional[int] = None,
        max_parse_attempts: Optional[int] = None,
    ):
        self.client = client
        self.activity_timeout = activity_timeout if activity_timeout is not None else agent_config.stream_timeout
        self.max_tool_args_chars = max_tool_args_chars or agent_config.max_tool_args_chars
        self.max_parse_attempts = max_parse_attempts or agent_config.max_parse_attempts
        self._in_flight = False
        self._abort_event: Optional[asyncio.Event] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def abort(self) -> None:
        """Cancel the in-flight send, if any."""
        if self._abort_event is not None:
            self._abort_event.set()

    async def send(
        self,
        request: LLMRequest,
        on_text: Optional[Callable[[str], Any]] = None,
        on_tool_start: Optional[Callable[[str, str], Any]] = None,
        abort_event: Optional[asyncio.Event] = None,
    ) -> LLMOutcome:
        """Run one request to completion. Raises TransportError (StreamCancelledError on abort)."""
        if self._in_flight:
            raise RuntimeError("StreamCoordinator.send is already in flight")
        abort_event = abort_event or asyncio.Event()
        if abort_event.is_set():
            raise StreamCancelledError()

        self._in_flight = True
        self._abort_event = abort_event
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()
        producer: Optional[asyncio.Task] = None
        try:
            producer = await self._start_producer(request, queue, stop)
            return await self._consume(queue, abort_event, on_text, on_tool_start)
        finally:
            stop.set()
            if producer is not None and not producer.done():
                producer.cancel()
            self._drop_late_events(queue)
            self._abort_event = None
            self._in_flight = False

    async def _start_producer(self, request: LLMRequest, queue: asyncio.Queue,
                              stop: threading.Event) -> Optional[asyncio.Task]:
        try:
            stream = self.client.stream(request)
            if asyncio.iscoroutine(stream):
                stream = await stream
        except Exception as exc:
            queue.put_nowait((_FAILURE, exc))
            return None

        if hasattr(stream, "__aiter__"):
            return asyncio.ensure_future(self._pump_async(stream, queue))

        loop = asyncio.get_event_loop()

        def _stream_producer():
            """Run the blocking iterator in a background thread, forwarding events to the queue."""
            def _put(item):
                try:
                    loop.call_soon_threadsafe(queue.put_nowait, item)
                except RuntimeError:
                    # Event loop already closed
                    stop.set()

            try:
                for event in stream:
                    if stop.is_set():
                        break
                    _put((_EVENT, event))
                _put((_END, None))
            except Exception as exc:
                _put((_FAILURE, exc))

        threading.Thread(target=_stream_producer, daemon=True).start()
        return None

    @staticmethod
    async def _pump_async(stream: AsyncIterator[Dict[str, Any]], queue: asyncio.Queue) -> None:
        try:
            async for event in stream:
                queue.put_nowait((_EVENT, event))
            queue.put_nowait((_END, None))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            queue.put_nowait((_FAILURE, exc))

    async def _next_item(self, queue: asyncio.Queue, abort_event: asyncio.Event):
        """Wait for the next queue item, the abort signal or the activity timeout."""
        get_task = asyncio.ensure_future(queue.get())
        abort_task = asyncio.ensure_future(abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {get_task, abort_task},
                timeout=self.activity_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            abort_task.cancel()
        if abort_event.is_set():
            get_task.cancel()
            raise StreamCancelledError()
        if get_task not in done:
            get_task.cancel()
            logger.error(f"LLM stream idle for {self.activity_timeout:.1f}s, giving up")
            raise TransportError(
                f"No activity from the model for {self.activity_timeout:g}s",
                code=TransportError.TIMEOUT,
                retryable=True,
            )
        return get_task.result()

    async def _consume(self, queue, abort_event, on_text, on_tool_start) -> LLMOutcome:
        outcome = LLMOutcome()
        text_parts: List[str] = []
        buffers: Dict[str, _ToolArgumentBuffer] = {}
        order: List[str] = []
        current_id: Optional[str] = None

        while True:
            kind, payload = await self._next_item(queue, abort_event)

            if kind == _FAILURE:
                err = classify_exception(payload)
                logger.error(f"LLM stream failed: {err.message} (code={err.code}, retryable={err.retryable})")
                raise err
            if kind == _END:
                break

            event = payload if isinstance(payload, dict) else {}
            etype = event.get("type", "")

            if etype == "text":
                delta = event.get("text", "")
                if delta:
                    text_parts.append(delta)
                    if on_text is not None:
                        await _maybe_await(on_text(delta))

            elif etype == "tool_call_start":
                call_id = event.get("id") or f"call_{len(order)}"
                if call_id not in buffers:
                    buffers[call_id] = _ToolArgumentBuffer(
                        call_id, event.get("name", ""), self.max_tool_args_chars, self.max_parse_attempts,
                    )
                    order.append(call_id)
                current_id = call_id
                if on_tool_start is not None:
                    await _maybe_await(on_tool_start(call_id, buffers[call_id].name))

            elif etype == "tool_call_delta":
                call_id = event.get("id") or current_id
                buf = buffers.get(call_id) if call_id else None
                if buf is None:
                    logger.warning(f"Dropping argument delta for unknown tool call {call_id!r}")
                    continue
                buf.feed(event.get("delta", ""))

            elif etype == "tool_call_end":
                call_id = event.get("id") or current_id
                arguments = event.get("arguments")
                if call_id not in buffers:
                    if not event.get("name"):
                        logger.warning(f"Dropping end event for unknown tool call {call_id!r}")
                        continue
                    # Non-streamed call delivered in one piece
                    call_id = call_id or f"call_{len(order)}"
                    buffers[call_id] = _ToolArgumentBuffer(
                        call_id, event["name"], self.max_tool_args_chars, self.max_parse_attempts,
                    )
                    order.append(call_id)
                    if on_tool_start is not None:
                        await _maybe_await(on_tool_start(call_id, event["name"]))
                buffers[call_id].finish(arguments if isinstance(arguments, dict) else None)
                current_id = None

            elif etype == "usage":
                if "input_tokens" in event:
                    outcome.usage.input_tokens = int(event["input_tokens"] or 0)
                if "output_tokens" in event:
                    outcome.usage.output_tokens = int(event["output_tokens"] or 0)

            elif etype == "done":
                outcome.stop_reason = event.get("stop_reason")
                break

            elif etype == "error":
                err = TransportError(
                    event.get("message", "LLM stream error"),
                    code=event.get("code") or TransportError.API,
                    retryable=bool(event.get("retryable", False)),
                )
                logger.error(f"LLM stream reported error: {err.message} (code={err.code})")
                raise err

            else:
                logger.debug(f"Ignoring stream event type {etype!r}")

        outcome.text = "".join(text_parts)
        # Calls still open at the end are parsed (or flagged) now, never dropped
        outcome.tool_calls = [buffers[cid].finish() for cid in order]
        return outcome

    @staticmethod
    def _drop_late_events(queue: asyncio.Queue) -> None:
        while not queue.empty():
            kind, payload = queue.get_nowait()
            if kind == _EVENT:
                etype = payload.get("type") if isinstance(payload, dict) else payload
                logger.debug(f"Dropping late stream event after resolution: {etype}")
            elif kind == _FAILURE:
                logger.debug(f"Dropping late stream failure after resolution: {payload}")


async def _maybe_await(value: Any) -> None:
    if asyncio.iscoroutine(value):
        await value
