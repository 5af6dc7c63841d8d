"""
aiohttp WebSocket channel.

One reader task feeds inbound frames into the channel's decoder; one writer
task drains an ordered outbox so ``send`` stays synchronous and never blocks
the caller. Frames sent from other threads are handed to the event loop with
``call_soon_threadsafe`` before they touch the outbox.
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from ..errors import TransportError
from .channel import TransportChannel, running_in

logger = logging.getLogger(__name__)


class WebSocketChannel(TransportChannel):
    """TransportChannel backed by ``aiohttp.ClientSession.ws_connect``."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        open_timeout: float = 10.0,
        outbox_size: int = 1000,
    ):
        super().__init__()
        self._session = session
        self._owns_session = session is None
        self.open_timeout = open_timeout
        self.outbox_size = outbox_size

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None

    async def _connect(self, url: str) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        try:
            ws = await asyncio.wait_for(
                self._session.ws_connect(url, autoping=True),
                timeout=self.open_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out connecting to {url}") from e
        except (aiohttp.ClientError, OSError) as e:
            raise TransportError(f"Cannot connect to {url}: {e}") from e

        self._loop = asyncio.get_running_loop()
        self._ws = ws
        self._outbox = asyncio.Queue(maxsize=self.outbox_size)
        writer = asyncio.create_task(self._write_loop(ws, self._outbox))
        self._writer_task = writer
        self._reader_task = asyncio.create_task(self._read_loop(ws, writer))

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse, writer: asyncio.Task) -> None:
        try:
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = TransportError(f"WebSocket error: {ws.exception()}")
                    logger.warning(str(error))
                    self._emit("error", error)
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"WebSocket reader failed: {e}", exc_info=True)
            self._emit("error", TransportError(str(e)))
        finally:
            writer.cancel()
            self._connection_ended(ws)

    async def _write_loop(self, ws: aiohttp.ClientWebSocketResponse, outbox: asyncio.Queue) -> None:
        while True:
            frame = await outbox.get()
            try:
                await ws.send_str(frame)
            except (ConnectionError, aiohttp.ClientError, RuntimeError) as e:
                error = TransportError(f"WebSocket write failed: {e}")
                logger.warning(str(error))
                self._emit("error", error)
                break

        # Closing ends the reader, which reports the close
        if not ws.closed:
            await asyncio.shield(ws.close())
        self._connection_ended(ws)

    def _connection_ended(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        self._outbox = None
        self._mark_closed(ws.close_code)

    def _write(self, frame: str) -> None:
        outbox = self._outbox
        if outbox is None:
            raise TransportError("Channel has no outbox")
        if running_in(self._loop):
            self._enqueue(outbox, frame)
            return
        try:
            self._loop.call_soon_threadsafe(self._enqueue_from_thread, outbox, frame)
        except RuntimeError as e:
            raise TransportError(f"Event loop unavailable: {e}") from e

    def _enqueue(self, outbox: asyncio.Queue, frame: str) -> None:
        try:
            outbox.put_nowait(frame)
        except asyncio.QueueFull as e:
            raise TransportError(f"Outbox full ({self.outbox_size} frames)") from e

    def _enqueue_from_thread(self, outbox: asyncio.Queue, frame: str) -> None:
        if outbox is not self._outbox:
            logger.debug("Dropping frame queued from another thread: connection already closed")
            return
        try:
            self._enqueue(outbox, frame)
        except TransportError as e:
            logger.warning(f"Send failed: {e}")
            self._emit("error", e)

    async def _disconnect(self) -> None:
        ws = self._ws
        if self._writer_task is not None:
            self._writer_task.cancel()
        if ws is not None and not ws.closed:
            await ws.close()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        self._writer_task = None
        self._outbox = None
        self._ws = None

    async def shutdown(self) -> None:
        await super().shutdown()
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
