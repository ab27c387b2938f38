"""Debounced batching of streamed text for the UI."""
import asyncio
from typing import Callable, List, Optional

from gradewise.core.config import settings
from gradewise.core.logging import get_logger

logger = get_logger(__name__)


class ChunkBatcher:
    """Coalesce text chunks and deliver them after a quiet period.

    Every ``add`` restarts the timer; when ``delay_ms`` passes without a new
    chunk the buffer is joined and passed to ``on_flush``. ``flush`` delivers
    whatever is left (end of stream) and ``discard`` drops it (abort). The
    concatenation of everything delivered equals the concatenation of
    everything added before the final flush.

    Must be used from a running event loop.
    """

    def __init__(self, on_flush: Callable[[str], None], delay_ms: Optional[int] = None):
        self.on_flush = on_flush
        self.delay = (delay_ms if delay_ms is not None else settings.chunk_batch_delay_ms) / 1000
        self._buffer: List[str] = []
        self._handle: Optional[asyncio.TimerHandle] = None
        self._closed = False

    def add(self, text: str) -> None:
        if self._closed or not text:
            return
        self._buffer.append(text)
        self._cancel_timer()
        self._handle = asyncio.get_running_loop().call_later(self.delay, self._deliver)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _deliver(self) -> None:
        self._handle = None
        if not self._buffer:
            return
        text = "".join(self._buffer)
        self._buffer.clear()
        try:
            self.on_flush(text)
        except Exception:
            logger.exception("Chunk consumer raised while receiving a batch")

    def flush(self) -> None:
        """Deliver any buffered text now and stop accepting chunks."""
        self._cancel_timer()
        self._deliver()
        self._closed = True

    def discard(self) -> None:
        """Drop buffered text without delivering it."""
        self._cancel_timer()
        self._buffer.clear()
        self._closed = True
