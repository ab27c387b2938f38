"""Unit tests for chunk batching."""
import asyncio

import pytest

from gradewise.services.streaming import ChunkBatcher

pytestmark = pytest.mark.asyncio


class TestChunkBatcher:
    """Test debounced delivery."""

    async def test_chunks_coalesced_within_window(self):
        """Test chunks arriving quickly are delivered together."""
        delivered = []
        batcher = ChunkBatcher(delivered.append, delay_ms=20)

        for piece in ("Frac", "tions ", "are "):
            batcher.add(piece)
        await asyncio.sleep(0.06)

        assert delivered == ["Fractions are "]

    async def test_each_chunk_restarts_window(self):
        """Test a steady stream is held until a pause."""
        delivered = []
        batcher = ChunkBatcher(delivered.append, delay_ms=100)

        for piece in "abcde":
            batcher.add(piece)
            await asyncio.sleep(0.01)
        assert delivered == []

        await asyncio.sleep(0.2)
        assert delivered == ["abcde"]

    async def test_concatenation_equals_full_text(self):
        """Test batched output concatenates to the original text."""
        delivered = []
        batcher = ChunkBatcher(delivered.append, delay_ms=5)
        pieces = [f"word{i} " for i in range(30)]

        for i, piece in enumerate(pieces):
            batcher.add(piece)
            if i % 7 == 0:
                await asyncio.sleep(0.02)
        batcher.flush()

        assert "".join(delivered) == "".join(pieces)

    async def test_flush_delivers_remainder_immediately(self):
        """Test flush at end of stream."""
        delivered = []
        batcher = ChunkBatcher(delivered.append, delay_ms=1000)
        batcher.add("tail")

        batcher.flush()

        assert delivered == ["tail"]

    async def test_discard_drops_buffer(self):
        """Test abort drops unflushed text and later timers do nothing."""
        delivered = []
        batcher = ChunkBatcher(delivered.append, delay_ms=10)
        batcher.add("never shown")

        batcher.discard()
        batcher.add("ignored")
        await asyncio.sleep(0.03)

        assert delivered == []

    async def test_consumer_error_does_not_break_stream(self):
        """Test a failing consumer is logged and batching continues."""
        calls = []

        def flaky(text):
            calls.append(text)
            if len(calls) == 1:
                raise RuntimeError("ui closed")

        batcher = ChunkBatcher(flaky, delay_ms=5)
        batcher.add("one")
        await asyncio.sleep(0.02)
        batcher.add("two")
        batcher.flush()

        assert calls == ["one", "two"]
