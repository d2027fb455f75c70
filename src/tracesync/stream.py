"""
Server-Sent Events client for the execution engine's push feed.

Opens one HTTP event-stream, decodes ``text/event-stream`` frames into
:class:`~tracesync.bus.Event` objects and dispatches them to named handlers.
All handlers of one connection run inside the single reader task, in arrival
order, so they never interleave. There is no automatic reconnection: an
unexpected close is reported through ``on_error`` only.
"""

import json
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx
import trio
from loguru import logger

from .bus import ErrorHandlerType, Event, EventDispatcher, EventMetadata, EventType, HandlerType
from .errors import ConnectionState, TransportError

STREAM_TIMEOUT = httpx.Timeout(10.0, read=None)


@dataclass
class ServerSentEvent:
    """One decoded text/event-stream frame."""

    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


class SSEDecoder:
    """Incremental decoder for the text/event-stream line protocol."""

    def __init__(self):
        self._event = ""
        self._data: list[str] = []
        self._last_event_id: Optional[str] = None
        self._retry: Optional[int] = None

    @property
    def last_event_id(self) -> Optional[str]:
        return self._last_event_id

    def decode(self, line: str) -> Optional[ServerSentEvent]:
        """Feed one line (without terminator); return an event on blank line."""
        line = line.rstrip("\r\n")

        if not line:
            if not self._event and not self._data:
                return None
            sse = ServerSentEvent(
                event=self._event or "message",
                data="\n".join(self._data),
                id=self._last_event_id,
                retry=self._retry,
            )
            self._event = ""
            self._data = []
            self._retry = None
            return sse

        if line.startswith(":"):
            return None

        fieldname, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if fieldname == "event":
            self._event = value
        elif fieldname == "data":
            self._data.append(value)
        elif fieldname == "id":
            if "\0" not in value:
                self._last_event_id = value
        elif fieldname == "retry":
            try:
                self._retry = int(value)
            except ValueError:
                pass

        return None


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Decode an async iterator of lines into server-sent events."""
    decoder = SSEDecoder()
    async for line in lines:
        sse = decoder.decode(line)
        if sse is not None:
            yield sse
    # Flush a trailing frame that was not followed by a blank line.
    sse = decoder.decode("")
    if sse is not None:
        yield sse


class EventStreamClient:
    """
    Thin async event source over an HTTP event-stream.

    Usage::

        stream = EventStreamClient(url)
        stream.on("node.start", handle_start)
        stream.on_error(handle_error)
        await stream.connect(nursery)
        ...
        stream.disconnect()
    """

    def __init__(
        self,
        url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        headers: Optional[dict[str, str]] = None,
        stream_id: Optional[str] = None,
    ):
        self.url = url
        self.stream_id = stream_id or url
        self._http_client = http_client
        self._owns_client = http_client is None
        self._headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if headers:
            self._headers.update(headers)

        self._dispatcher = EventDispatcher()
        self._error_handlers: list[ErrorHandlerType] = []
        self._cancel_scope: Optional[trio.CancelScope] = None
        self.state = ConnectionState.IDLE
        self.last_error: Optional[TransportError] = None

        self.stats = {
            "events_received": 0,
            "parse_errors": 0,
            "unknown_events": 0,
        }

    @property
    def closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def on(self, event_name: str | EventType, handler: HandlerType) -> None:
        """Register a handler for a named event."""
        self._dispatcher.subscribe(event_name, handler)

    def on_any(self, handler: HandlerType) -> None:
        self._dispatcher.subscribe_all(handler)

    def on_error(self, handler: ErrorHandlerType) -> None:
        """Register a handler for transport failures."""
        self._error_handlers.append(handler)

    async def connect(self, nursery: trio.Nursery) -> None:
        """Open the transport and begin dispatch in a task of ``nursery``."""
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.warning(f"Event stream already connected: {self.url}")
            return
        if self.closed:
            logger.warning(f"Event stream was disconnected, not reconnecting: {self.url}")
            return

        self.state = ConnectionState.CONNECTING
        self._cancel_scope = trio.CancelScope()
        nursery.start_soon(self._run, self._cancel_scope)

    def disconnect(self) -> None:
        """Halt all dispatch and close the transport. Safe to call twice."""
        if self.closed:
            return

        logger.info(f"Disconnecting event stream: {self.url}")
        self.state = ConnectionState.CLOSED
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()
        self._dispatcher.clear()
        self._error_handlers.clear()

    def dispatch(self, event: Event) -> None:
        """Deliver ``event`` to its handlers unless the stream is closed."""
        if self.closed:
            return
        self.stats["events_received"] += 1
        self._dispatcher.dispatch(event)

    def dispatch_raw(self, sse: ServerSentEvent) -> None:
        """Parse a decoded frame and dispatch it."""
        try:
            event_type = EventType.from_name(sse.event)
        except ValueError:
            self.stats["unknown_events"] += 1
            logger.debug(f"Ignoring unknown stream event: {sse.event}")
            return

        try:
            data = json.loads(sse.data) if sse.data else {}
        except json.JSONDecodeError as e:
            self.stats["parse_errors"] += 1
            logger.error(f"Failed to parse {sse.event} event: {e}")
            return

        if not isinstance(data, dict):
            data = {"value": data}

        metadata = EventMetadata(stream_id=self.stream_id, source=sse.id)
        self.dispatch(Event(type=event_type, data=data, metadata=metadata))

    def get_stats(self) -> dict:
        return {
            **self.stats,
            **self._dispatcher.get_stats(),
            "state": self.state.value,
        }

    async def _run(self, cancel_scope: trio.CancelScope) -> None:
        client = self._http_client or httpx.AsyncClient(timeout=STREAM_TIMEOUT)
        try:
            with cancel_scope:
                await self._read(client)
        finally:
            if self._owns_client:
                await client.aclose()

    async def _read(self, client: httpx.AsyncClient) -> None:
        logger.info(f"Connecting to event stream: {self.url}")
        try:
            async with client.stream(
                "GET", self.url, headers=self._headers, timeout=STREAM_TIMEOUT
            ) as response:
                if response.status_code >= 400:
                    raise TransportError(
                        f"Event stream returned HTTP {response.status_code}", url=self.url
                    )
                if self.closed:
                    return
                self.state = ConnectionState.CONNECTED
                logger.success(f"Event stream connected: {self.url}")

                async for sse in iter_sse(response.aiter_lines()):
                    if self.closed:
                        return
                    self.dispatch_raw(sse)

            if not self.closed:
                raise TransportError("Event stream closed by server", url=self.url)
        except TransportError as e:
            self._fail(e)
        except httpx.HTTPError as e:
            self._fail(TransportError(f"Event stream connection error: {e}", url=self.url))

    def _fail(self, error: TransportError) -> None:
        if self.closed:
            return
        self.state = ConnectionState.ERROR
        self.last_error = error
        logger.error(f"Event stream error: {error}")
        for handler in list(self._error_handlers):
            try:
                handler(error)
            except Exception as e:
                logger.error(f"Error in stream error handler: {e}")
