"""aiohttp glue: serve a channel's events as a text/event-stream response."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping

import structlog
from aiohttp import web

from .encoder import Receiver, Sender, channel
from .errors import Disconnected
from .handshake import upgrade

log = structlog.get_logger()

DISCONNECT_GRACE = 1.0


async def open_stream(
    request: web.Request,
    *,
    status: int = 200,
    headers: Mapping[str, str] | None = None,
) -> web.StreamResponse:
    """Prepare a streaming response marked as an event stream."""
    response = web.StreamResponse(status=status, headers=headers)
    upgrade(response.headers)
    await response.prepare(request)
    log.debug("sse_stream_opened", path=request.path, status=status)
    return response


async def pipe(receiver: Receiver, response: web.StreamResponse) -> int:
    """Forward chunks from ``receiver`` to ``response`` until the senders finish.

    Returns the number of bytes forwarded. The receiver is always released
    on the way out, so senders still running see Disconnected.
    """
    total_bytes = 0
    try:
        async for chunk in receiver:
            await response.write(chunk)
            total_bytes += len(chunk)
    except ConnectionResetError:
        log.info("sse_client_disconnected", total_bytes=total_bytes)
        return total_bytes
    finally:
        receiver.close()

    await response.write_eof()
    log.debug("sse_stream_complete", total_bytes=total_bytes)
    return total_bytes


async def respond(
    request: web.Request,
    producer: Callable[[Sender], Awaitable[None]],
    *,
    headers: Mapping[str, str] | None = None,
    grace: float = DISCONNECT_GRACE,
) -> web.StreamResponse:
    """Run ``producer`` against a fresh channel and stream its events to the client.

    The producer's sender is released when it returns. Once the client goes
    away its next send raises Disconnected, which ends it quietly; any other
    producer error propagates. The producer is cancelled only if forwarding
    itself fails, or if it is still running ``grace`` seconds after the
    handler was cancelled.
    """
    response = await open_stream(request, headers=headers)
    sender, receiver = channel()

    async def produce() -> None:
        async with sender:
            try:
                await producer(sender)
            except Disconnected:
                log.debug("sse_producer_disconnected", path=request.path)

    task = asyncio.create_task(produce())
    try:
        await pipe(receiver, response)
    except asyncio.CancelledError:
        # pipe released the receiver, so the producer's next send disconnects
        try:
            await asyncio.wait({task}, timeout=grace)
        finally:
            if not task.done():
                log.info("sse_producer_cancelled", path=request.path, grace=grace)
                task.cancel()
        if task.done() and not task.cancelled() and task.exception() is not None:
            log.warning(
                "sse_producer_failed",
                path=request.path,
                error=repr(task.exception()),
            )
        raise
    except BaseException:
        task.cancel()
        raise
    await task
    return response
