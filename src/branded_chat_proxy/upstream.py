import asyncio
import logging
import contextlib
from typing import AsyncIterator, Optional

import aiohttp

from .config import ProxyConfig
from .normalize import NormalizedRequest


MAX_LOGGED_ERROR_CHARS = 5_000


class UpstreamUnavailable(Exception):
    """
    The upstream call did not produce a readable stream. Carries the detail
    for server-side logs only.
    """

    def __init__(self, status: Optional[int], detail: str = "") -> None:
        super().__init__(f"upstream unavailable (status={status})")
        self.status = status
        self.detail = detail


class UpstreamStreamClient:
    def __init__(self, config: ProxyConfig, session: aiohttp.ClientSession) -> None:
        self.config = config
        self.session = session
        self.logger = logging.getLogger(__package__).getChild(self.__class__.__qualname__)

    def headers(self, request_id: str) -> dict:
        return {
            "content-type": "application/json",
            "x-api-key": self.config.api_key,
            "anthropic-version": self.config.anthropic_version,
            "x-request-id": request_id,
        }

    @contextlib.asynccontextmanager
    async def stream(
        self, request: NormalizedRequest, request_id: str
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        """
        Open the streaming upstream call and yield the response once it is
        known to carry a body worth reading.

        If the consumer stops early (client gone, task cancelled, failure)
        the connection is closed instead of being handed back to the pool.
        """
        try:
            response = await self.session.post(
                self.config.upstream_url,
                json=request.to_upstream_json(),
                headers=self.headers(request_id),
                allow_redirects=False,
            )
        except aiohttp.ClientError as error:
            self.logger.error(
                "rid=%s upstream connection failed: %s",
                request_id,
                str(error)[:MAX_LOGGED_ERROR_CHARS],
            )
            raise UpstreamUnavailable(None, str(error)) from error

        try:
            if not 200 <= response.status < 300 or response.content.at_eof():
                detail = await self._read_error_body(response)
                self.logger.error(
                    "rid=%s upstream_status=%d upstream_error=%s",
                    request_id,
                    response.status,
                    detail,
                )
                raise UpstreamUnavailable(response.status, detail)
            self.logger.debug(
                "rid=%s upstream stream open (status %d)", request_id, response.status
            )
            yield response
        except BaseException:
            response.close()
            raise
        else:
            response.release()

    async def _read_error_body(self, response: aiohttp.ClientResponse) -> str:
        try:
            body = await response.text(errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return ""
        return body[:MAX_LOGGED_ERROR_CHARS]
