import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, List

from chunk_text import normalize

logger = logging.getLogger(__name__)

STREAM_ERROR_MARKER = "\n[Stream ended with an error]\n"

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    # keeps nginx-style proxies from buffering the body
    "X-Accel-Buffering": "no",
}


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "loading"
    COMPLETED = "done"
    CANCELLED = "cancelled"
    FAILED = "error"


class UpstreamRelay:
    """
    Forwards one upstream chunk stream to one HTTP caller.

    `open()` pulls the first chunk so that a failing upstream is reported
    before any response bytes exist. `stream()` then yields cleaned text,
    checking for a gone caller before every further pull.
    """

    def __init__(self, upstream: AsyncIterator[Any]):
        self._upstream = upstream
        self._pending: List[Any] = []
        self._exhausted = False
        self._closed = False
        self.state = StreamState.IDLE
        self.pulled = 0

    async def open(self) -> "UpstreamRelay":
        try:
            first = await self._upstream.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
        except BaseException:
            await self.aclose()
            raise
        else:
            self.pulled += 1
            self._pending.append(first)
        return self

    async def _next_chunk(self) -> Any:
        if self._pending:
            return self._pending.pop(0)
        if self._exhausted:
            raise StopAsyncIteration
        chunk = await self._upstream.__anext__()
        self.pulled += 1
        return chunk

    async def stream(self, is_disconnected: Callable[[], Awaitable[bool]]) -> AsyncIterator[str]:
        self.state = StreamState.STREAMING
        try:
            while True:
                if await is_disconnected():
                    logger.info("Client disconnected: stopping upstream stream")
                    self.state = StreamState.CANCELLED
                    break
                try:
                    chunk = await self._next_chunk()
                except StopAsyncIteration:
                    self.state = StreamState.COMPLETED
                    break
                text = normalize(chunk)
                if text:
                    yield text
        except Exception:
            logger.exception("Stream iteration error")
            self.state = StreamState.FAILED
            yield STREAM_ERROR_MARKER
        finally:
            if self.state is StreamState.STREAMING:
                # torn down by the server while suspended at a yield
                self.state = StreamState.CANCELLED
            # cleanup must finish even while the response task is being cancelled
            await asyncio.shield(self.aclose())

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._upstream, "aclose", None)
        if aclose is not None:
            await aclose()


async def open_relay(upstream: AsyncIterator[Any]) -> UpstreamRelay:
    return await UpstreamRelay(upstream).open()
