import asyncio

import pytest

from relay import STREAM_ERROR_MARKER, StreamState, open_relay


class CountingUpstream:
    """Upstream stand-in that records how many chunks were requested."""

    def __init__(self, chunks, fail_at=None):
        self.chunks = list(chunks)
        self.fail_at = fail_at
        self.pulled = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.fail_at is not None and self.pulled == self.fail_at:
            raise RuntimeError("upstream blew up")
        if self.pulled >= len(self.chunks):
            raise StopAsyncIteration
        chunk = self.chunks[self.pulled]
        self.pulled += 1
        return chunk

    async def aclose(self):
        self.closed = True


async def _never_disconnected():
    return False


async def _collect(relay, is_disconnected=_never_disconnected):
    return [text async for text in relay.stream(is_disconnected)]


def test_streams_cleaned_chunks_in_order():
    upstream = CountingUpstream(["**Two**", "", {"text": " plus"}, r'{"text":" two\\n"}'])

    async def scenario():
        relay = await open_relay(upstream)
        return relay, await _collect(relay)

    relay, received = asyncio.run(scenario())
    assert received == ["Two", " plus", " two\n"]
    assert relay.state is StreamState.COMPLETED
    assert upstream.closed


def test_stops_pulling_after_client_disconnects():
    upstream = CountingUpstream(["a", "b", "c", "d", "e"])
    received = []

    async def is_disconnected():
        return len(received) >= 2

    async def scenario():
        relay = await open_relay(upstream)
        async for text in relay.stream(is_disconnected):
            received.append(text)
        return relay

    relay = asyncio.run(scenario())
    assert received == ["a", "b"]
    assert upstream.pulled == 2
    assert relay.pulled == 2
    assert upstream.closed
    assert relay.state is StreamState.CANCELLED


def test_mid_stream_error_appends_marker_and_ends():
    upstream = CountingUpstream(["Hello ", "world", "never"], fail_at=2)

    async def scenario():
        relay = await open_relay(upstream)
        return relay, await _collect(relay)

    relay, received = asyncio.run(scenario())
    assert received == ["Hello ", "world", STREAM_ERROR_MARKER]
    assert relay.state is StreamState.FAILED
    assert upstream.closed


def test_error_before_first_chunk_raises_from_open():
    upstream = CountingUpstream(["x"], fail_at=0)

    with pytest.raises(RuntimeError):
        asyncio.run(open_relay(upstream))
    assert upstream.closed


def test_empty_upstream_completes_without_output():
    upstream = CountingUpstream([])

    async def scenario():
        relay = await open_relay(upstream)
        return relay, await _collect(relay)

    relay, received = asyncio.run(scenario())
    assert received == []
    assert relay.state is StreamState.COMPLETED
