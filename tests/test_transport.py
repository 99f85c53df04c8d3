"""Tests for the aiohttp transport glue."""

import asyncio
from datetime import timedelta
from types import SimpleNamespace

import pytest
from aiohttp import web

from asyncsse.decoder import decode
from asyncsse.encoder import channel
from asyncsse.errors import Disconnected
from asyncsse.message import Message, Retry
import asyncsse.transport as transport
from asyncsse.transport import open_stream, pipe, respond


async def _greetings(sender):
    await sender.send("greeting", "hello", id="1")
    await sender.send_retry(timedelta(seconds=3))
    await sender.send("greeting", "multi\nline")


@pytest.fixture
def disconnected():
    return asyncio.Event()


@pytest.fixture
async def client(aiohttp_client, disconnected):
    async def events(request: web.Request) -> web.StreamResponse:
        return await respond(request, _greetings)

    async def endless(request: web.Request) -> web.StreamResponse:
        async def producer(sender):
            i = 0
            try:
                while True:
                    await sender.send("tick", str(i), id=str(i))
                    i += 1
                    await asyncio.sleep(0.01)
            except Disconnected:
                disconnected.set()
                raise

        return await respond(request, producer)

    async def empty(request: web.Request) -> web.StreamResponse:
        response = await open_stream(request, headers={"X-Stream": "empty"})
        await response.write_eof()
        return response

    async def failing(request: web.Request) -> web.StreamResponse:
        async def producer(sender):
            await sender.send("a", "1")
            raise RuntimeError("producer failed")

        try:
            return await respond(request, producer)
        except RuntimeError:
            request.app["failed"].set()
            raise

    app = web.Application()
    app["failed"] = asyncio.Event()
    app.router.add_get("/events", events)
    app.router.add_get("/endless", endless)
    app.router.add_get("/empty", empty)
    app.router.add_get("/failing", failing)
    return await aiohttp_client(app)


class TestOpenStream:
    async def test_headers(self, client):
        resp = await client.get("/empty")
        assert resp.status == 200
        assert resp.content_type == "text/event-stream"
        assert resp.headers["Cache-Control"] == "no-cache"
        assert resp.headers["X-Stream"] == "empty"
        assert await resp.read() == b""


class TestRespond:
    async def test_events_reach_client(self, client):
        resp = await client.get("/events")
        events = [event async for event in decode(resp.content)]
        assert events == [
            Message(id="1", event="greeting", data=b"hello"),
            Retry(timedelta(seconds=3), id="1"),
            Message(id="1", event="greeting", data=b"multi\nline"),
        ]

    async def test_client_disconnect_stops_producer(self, client, disconnected):
        resp = await client.get("/endless")
        decoder = decode(resp.content)
        first = await decoder.__anext__()
        assert first.text == "0"
        resp.close()
        await asyncio.wait_for(disconnected.wait(), timeout=5)

    async def test_producer_error_propagates(self, client):
        resp = await client.get("/failing")
        assert await resp.read() == b"event:a\ndata:1\n\n"
        await asyncio.wait_for(client.server.app["failed"].wait(), timeout=1)


class _Response:
    def __init__(self, fail_after=None):
        self.chunks = []
        self.eof = False
        self._fail_after = fail_after

    async def write(self, chunk):
        if self._fail_after is not None and len(self.chunks) >= self._fail_after:
            raise ConnectionResetError("Cannot write to closing transport")
        self.chunks.append(chunk)

    async def write_eof(self):
        self.eof = True


class TestPipe:
    async def test_forwards_until_senders_finish(self):
        sender, receiver = channel()
        response = _Response()

        async def produce():
            async with sender:
                await sender.send("a", "1")
                await sender.send("b", "2")

        task = asyncio.create_task(produce())
        total = await pipe(receiver, response)
        await task
        assert response.chunks == [b"event:a\ndata:1\n\n", b"event:b\ndata:2\n\n"]
        assert total == sum(len(c) for c in response.chunks)
        assert response.eof
        assert receiver.disconnected

    async def test_connection_reset_releases_receiver(self):
        sender, receiver = channel()
        response = _Response(fail_after=1)

        async def produce():
            async with sender:
                with pytest.raises(Disconnected):
                    while True:
                        await sender.send("tick", "x")

        task = asyncio.create_task(produce())
        total = await pipe(receiver, response)
        await asyncio.wait_for(task, timeout=1)
        assert total == len(b"event:tick\ndata:x\n\n")
        assert not response.eof
        assert sender.disconnected


class TestRespondCancelled:
    """Handler cancellation, which is how aiohttp reports a vanished client."""

    @pytest.fixture
    def response(self, monkeypatch):
        response = _Response()

        async def fake_open_stream(request, *, headers=None):
            return response

        monkeypatch.setattr(transport, "open_stream", fake_open_stream)
        return response

    async def test_producer_sees_disconnected(self, response):
        first_sent = asyncio.Event()
        disconnected = asyncio.Event()

        async def producer(sender):
            try:
                while True:
                    await sender.send("tick", "x")
                    first_sent.set()
                    await asyncio.sleep(0.01)
            except Disconnected:
                disconnected.set()
                raise

        handler = asyncio.create_task(
            respond(SimpleNamespace(path="/events"), producer)
        )
        await asyncio.wait_for(first_sent.wait(), timeout=1)
        handler.cancel()
        with pytest.raises(asyncio.CancelledError):
            await handler
        assert disconnected.is_set()
        assert not response.eof

    async def test_stuck_producer_cancelled_after_grace(self, response):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def producer(sender):
            started.set()
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        handler = asyncio.create_task(
            respond(SimpleNamespace(path="/stuck"), producer, grace=0.05)
        )
        await asyncio.wait_for(started.wait(), timeout=1)
        handler.cancel()
        with pytest.raises(asyncio.CancelledError):
            await handler
        await asyncio.wait_for(cancelled.wait(), timeout=1)
