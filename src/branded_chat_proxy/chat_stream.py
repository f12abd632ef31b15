import json
import logging
from http import HTTPStatus

from aiohttp import web

from .config import ProxyConfig
from .identity import branded_reply, is_identity_probe
from .middleware import REQUEST_ID_KEY
from .normalize import InvalidRequest, NormalizedRequest, normalize_request
from .rewrite import ContentRewriter
from .sse import TextDelta, UpstreamError, aiter_events
from .streamer import AbortCoordinator, ClientAbort, ResponseStreamer, StreamSession
from .upstream import UpstreamStreamClient, UpstreamUnavailable


# nginx convention, never actually seen by the departed client
CLIENT_CLOSED_REQUEST = 499


class RequestLogger(logging.LoggerAdapter):
    """Prefixes every line with the request's correlation id."""

    def process(self, msg, kwargs):
        return "rid=%s %s" % (self.extra["rid"], msg), kwargs


class ChatStreamHandler:
    """
    POST /chat/stream: normalize the turn, answer identity probes locally,
    otherwise relay the upstream SSE stream as filtered plain text.
    """

    def __init__(
        self,
        config: ProxyConfig,
        upstream: UpstreamStreamClient,
        rewriter: ContentRewriter,
    ) -> None:
        self.config = config
        self.upstream = upstream
        self.rewriter = rewriter
        self.logger = logging.getLogger(__package__).getChild(self.__class__.__qualname__)

    async def handle(self, request: web.Request) -> web.StreamResponse:
        request_id = request.get(REQUEST_ID_KEY, "-")
        logger = RequestLogger(self.logger, {"rid": request_id})
        session = StreamSession(request_id=request_id)
        try:
            body = await self._read_body(request)
            try:
                normalized = normalize_request(body, self.config)
            except InvalidRequest as error:
                logger.info("rejected request: %s", error)
                return web.json_response(
                    {"error": "Invalid messages format"}, status=HTTPStatus.BAD_REQUEST
                )

            if self.config.identity_override_enabled and is_identity_probe(
                normalized.messages
            ):
                logger.info("identity probe answered locally")
                return await self._reply_locally(request, session, branded_reply(self.config))

            coordinator = AbortCoordinator(request, session)
            return await coordinator.run(self._relay(request, session, normalized, logger))
        except web.HTTPException:
            raise
        except ClientAbort:
            logger.info("client disconnected, upstream call cancelled")
            if session.response is not None:
                return session.response
            return web.Response(status=CLIENT_CLOSED_REQUEST, reason="Client Closed Request")
        except Exception:
            logger.exception("unexpected failure while handling chat stream")
            if session.prepared:
                # Headers are gone, all that is left is ending the stream
                return session.response
            return web.Response(
                status=HTTPStatus.INTERNAL_SERVER_ERROR, text="Server error"
            )

    async def _read_body(self, request: web.Request):
        raw = await request.read()
        try:
            return json.loads(raw) if raw else {}
        except ValueError:
            return {}

    async def _reply_locally(
        self, request: web.Request, session: StreamSession, text: str
    ) -> web.StreamResponse:
        streamer = ResponseStreamer(request, session)
        await streamer.prepare()
        await streamer.write_delta(text)
        await streamer.close()
        return session.response

    async def _relay(
        self,
        request: web.Request,
        session: StreamSession,
        normalized: NormalizedRequest,
        logger: logging.LoggerAdapter,
    ) -> web.StreamResponse:
        try:
            async with self.upstream.stream(normalized, session.request_id) as upstream:
                streamer = ResponseStreamer(request, session)
                await streamer.prepare()
                deltas = 0
                async for event in aiter_events(upstream.content, session.parser):
                    if isinstance(event, TextDelta):
                        deltas += 1
                        await streamer.write_delta(self.rewriter.rewrite(event.text))
                    elif isinstance(event, UpstreamError):
                        logger.warning("upstream sent an error event mid-stream")
                        await streamer.write_error()
                await streamer.close()
                logger.debug("stream complete after %d deltas", deltas)
                return session.response
        except UpstreamUnavailable:
            return web.Response(status=HTTPStatus.BAD_GATEWAY, text="Upstream error")
