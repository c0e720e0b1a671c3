"""Event stream wrapper and response assembly shared by provider adapters."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Iterable

from polycodex.core.items import ContentPart, ConversationItem, FunctionCallItem, MessageItem, new_item_id
from polycodex.core.llm.types import StreamingEvent


class EventStream:
    """Lazy, finite, single-use async iterator of `StreamingEvent`.

    `aclose()` releases the underlying HTTP response; the agent loop calls it
    when a run is cancelled mid-stream.
    """

    def __init__(
        self,
        events: AsyncIterator[StreamingEvent],
        *,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._events = events
        self._on_close = on_close
        self._started = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> EventStream:
        if self._started:
            raise RuntimeError("EventStream cannot be restarted")
        self._started = True
        return self

    async def __anext__(self) -> StreamingEvent:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._events.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        closer = getattr(self._events, "aclose", None)
        try:
            if closer is not None:
                await closer()
        finally:
            if self._on_close is not None:
                await self._on_close()


def stream_from_events(events: Iterable[StreamingEvent]) -> EventStream:
    """Wrap an already materialised event list (non-streaming backends)."""

    async def _generate() -> AsyncIterator[StreamingEvent]:
        for event in events:
            yield event

    return EventStream(_generate())


class ResponseAssembler:
    """Turns backend fragments into the common start/delta/done/completed sequence.

    One assistant message collects all text fragments; function calls are
    emitted as their own `done` items. The `completed` output lists every
    `done` item in emission order.
    """

    def __init__(self, response_id: str | None = None) -> None:
        self.response_id = response_id or new_item_id("resp")
        self.output: list[ConversationItem] = []
        self._message: MessageItem | None = None
        self._fragments: list[str] = []
        self._finished = False

    @property
    def text(self) -> str:
        return "".join(self._fragments)

    def _open_message(self) -> list[StreamingEvent]:
        if self._message is not None:
            return []
        self._message = MessageItem(
            role="assistant",
            content=[ContentPart(type="output_text", text="")],
            id=new_item_id("msg"),
        )
        return [StreamingEvent.start(self._message)]

    def add_text(self, fragment: str) -> list[StreamingEvent]:
        if not fragment:
            return []
        events = self._open_message()
        assert self._message is not None
        self._fragments.append(fragment)
        events.append(StreamingEvent.text_delta(self._message.id, fragment))
        return events

    def add_function_call(self, call: FunctionCallItem) -> list[StreamingEvent]:
        self.output.append(call)
        return [StreamingEvent.done(call)]

    def finish(self, status: str = "completed") -> list[StreamingEvent]:
        if self._finished:
            return []
        self._finished = True
        events: list[StreamingEvent] = []
        if self._message is not None or not self.output:
            events.extend(self._open_message())
            assert self._message is not None
            self._message.content = [ContentPart(type="output_text", text=self.text)]
            self.output.append(self._message)
            events.append(StreamingEvent.done(self._message))
        events.append(StreamingEvent.completed(self.response_id, self.output, status))
        return events


__all__ = ["EventStream", "ResponseAssembler", "stream_from_events"]
