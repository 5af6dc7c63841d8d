"""
Transport Channel

Owns one duplex connection to the backend. The abstract base class provides
everything that does not depend on the socket library: event listeners,
envelope decoding, open/closed bookkeeping and the fire-and-forget ``send``
contract. Concrete channels implement ``_connect``, ``_disconnect`` and
``_write``.

Events:
- on_open()
- on_message(envelope)   decoded InboundMessage
- on_close(code)         close code or None
- on_error(error)        TransportError or ProtocolError
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..errors import ProtocolError, TransportError
from .protocol import InboundMessage, decode_envelope, encode_frame

logger = logging.getLogger(__name__)

OpenHandler = Callable[[], Any]
MessageHandler = Callable[[InboundMessage], Any]
CloseHandler = Callable[[Optional[int]], Any]
ErrorHandler = Callable[[Exception], Any]


def running_in(loop: Optional[asyncio.AbstractEventLoop]) -> bool:
    """True when called from the thread currently running ``loop``."""
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class TransportChannel(ABC):
    """
    Abstract duplex channel.

    A channel is opened and closed many times over its life; it is owned
    exclusively by the ReconnectSupervisor.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {
            "open": [],
            "message": [],
            "close": [],
            "error": [],
        }
        self._open = False
        self._closed_event: Optional[asyncio.Event] = None
        self._close_code: Optional[int] = None
        self.url: Optional[str] = None
        self.frames_sent = 0
        self.frames_received = 0
        self.frames_dropped = 0

    # ------------------------------------------------------------------ events

    def on_open(self, handler: OpenHandler) -> None:
        self._handlers["open"].append(handler)

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers["message"].append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        self._handlers["close"].append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        self._handlers["error"].append(handler)

    def _emit(self, event: str, *args) -> None:
        for handler in list(self._handlers[event]):
            try:
                handler(*args)
            except Exception as e:
                logger.error(f"Error in channel {event} handler: {e}", exc_info=True)

    # --------------------------------------------------------------- lifecycle

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def close_code(self) -> Optional[int]:
        return self._close_code

    async def open(self, url: str) -> None:
        """
        Establish the connection.

        Raises:
            TransportError: If the connection cannot be established
        """
        if self._open:
            raise TransportError(f"Channel already open to {self.url}")

        self.url = url
        self._close_code = None
        self._closed_event = asyncio.Event()
        try:
            await self._connect(url)
        except TransportError as e:
            self._closed_event.set()
            self._emit("error", e)
            raise

        self._open = True
        logger.info(f"Channel open: {url}")
        self._emit("open")

    async def close(self) -> None:
        """Close the connection if open. Safe to call repeatedly."""
        if not self._open:
            return
        try:
            await self._disconnect()
        finally:
            self._mark_closed(self._close_code)

    async def shutdown(self) -> None:
        """Close the connection and release any resources held across connections."""
        await self.close()

    async def wait_closed(self) -> Optional[int]:
        """Wait until the current connection is closed and return its close code."""
        if self._closed_event is None:
            return self._close_code
        await self._closed_event.wait()
        return self._close_code

    # ------------------------------------------------------------------- I/O

    def send(self, message: Mapping[str, Any]) -> bool:
        """
        Fire-and-forget send.

        Never raises. Returns False when the channel is not open or the frame
        cannot be encoded; callers are expected to check state first. May be
        called from any thread.
        """
        if not self._open:
            logger.debug(f"Dropping outbound {message.get('type')!r} frame: channel not open")
            return False
        try:
            frame = encode_frame(message)
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot encode outbound {message.get('type')!r} frame: {e}")
            return False
        try:
            self._write(frame)
        except TransportError as e:
            logger.warning(f"Send failed: {e}")
            self._emit("error", e)
            return False
        self.frames_sent += 1
        return True

    def _handle_text(self, raw: Union[str, bytes]) -> None:
        """Decode one inbound frame and dispatch it; bad frames are dropped."""
        self.frames_received += 1
        try:
            envelope = decode_envelope(raw)
        except ProtocolError as e:
            self.frames_dropped += 1
            logger.warning(f"Dropping inbound frame: {e}")
            self._emit("error", e)
            return
        self._emit("message", envelope)

    def _mark_closed(self, code: Optional[int] = None) -> None:
        """Record loss of the connection; emits on_close exactly once per connection."""
        if not self._open:
            return
        self._open = False
        self._close_code = code
        if self._closed_event is not None:
            self._closed_event.set()
        logger.info(f"Channel closed: {self.url} (code={code})")
        self._emit("close", code)

    # --------------------------------------------------------- implementation

    @abstractmethod
    async def _connect(self, url: str) -> None:
        """Open the underlying socket; raise TransportError on failure."""
        pass

    @abstractmethod
    async def _disconnect(self) -> None:
        """Close the underlying socket."""
        pass

    @abstractmethod
    def _write(self, frame: str) -> None:
        """Queue one encoded frame for transmission, preserving order."""
        pass
