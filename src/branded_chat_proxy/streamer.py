import asyncio
import logging
import dataclasses
from typing import Any, Awaitable, Optional, TypeVar

from aiohttp import web

from .sse import SSEFrameParser


STREAM_HEADERS = {
    "Content-Type": "text/plain; charset=utf-8",
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}
UPSTREAM_ERROR_SENTINEL = "\n\n[error] Something went wrong."

T = TypeVar("T")


class ClientAbort(Exception):
    """The client went away before the response finished."""


@dataclasses.dataclass
class StreamSession:
    """Everything one streamed request owns. Never shared between requests."""

    request_id: str
    parser: SSEFrameParser = dataclasses.field(default_factory=SSEFrameParser)
    aborted: asyncio.Event = dataclasses.field(default_factory=asyncio.Event)
    response: Optional[web.StreamResponse] = None

    @property
    def prepared(self) -> bool:
        return self.response is not None and self.response.prepared


class ResponseStreamer:
    """Writes filtered text to the client as an unbuffered plain-text stream."""

    def __init__(self, request: web.Request, session: StreamSession) -> None:
        self.request = request
        self.session = session
        self.logger = logging.getLogger(__package__).getChild(self.__class__.__qualname__)

    async def prepare(self) -> web.StreamResponse:
        response = web.StreamResponse(headers=STREAM_HEADERS)
        self.session.response = response
        await response.prepare(self.request)
        return response

    async def write_delta(self, text: str) -> None:
        if text:
            await self._write(text.encode("utf-8"))

    async def write_error(self) -> None:
        await self._write(UPSTREAM_ERROR_SENTINEL.encode("utf-8"))

    async def close(self) -> None:
        if self.session.aborted.is_set():
            return
        try:
            await self.session.response.write_eof()
        except ConnectionResetError as error:
            self.session.aborted.set()
            raise ClientAbort() from error

    async def _write(self, data: bytes) -> None:
        if self.session.aborted.is_set():
            raise ClientAbort()
        try:
            await self.session.response.write(data)
        except ConnectionResetError as error:
            self.session.aborted.set()
            raise ClientAbort() from error


class AbortCoordinator:
    """
    Runs the streaming work for one request as its own task and cancels it
    when the client connection closes. Cancelling the task unwinds the
    upstream call, which releases the outbound connection.
    """

    def __init__(
        self, request: web.Request, session: StreamSession, poll_interval: float = 0.05
    ) -> None:
        self.request = request
        self.session = session
        self.poll_interval = poll_interval

    def client_disconnected(self) -> bool:
        transport = self.request.transport
        return transport is None or transport.is_closing()

    async def wait_for_disconnect(self) -> None:
        while not self.client_disconnected():
            await asyncio.sleep(self.poll_interval)

    async def run(self, coro: Awaitable[T]) -> T:
        task = asyncio.ensure_future(coro)
        watcher = asyncio.ensure_future(self.wait_for_disconnect())
        try:
            await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            # aiohttp cancelled the handler itself
            self.session.aborted.set()
            await _cancel_and_wait(task)
            raise
        finally:
            await _cancel_and_wait(watcher)

        if not task.done():
            self.session.aborted.set()
            await _cancel_and_wait(task)
            raise ClientAbort()
        return task.result()


async def _cancel_and_wait(task: "asyncio.Future[Any]") -> None:
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
