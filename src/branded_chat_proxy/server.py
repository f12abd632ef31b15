import sys
import asyncio
import logging
import pathlib
import contextlib
from typing import Optional

import aiohttp
from aiohttp import web
from dotenv import find_dotenv, load_dotenv

from .config import ConfigError, ProxyConfig, load_config
from .rewrite import ContentRewriter
from .upstream import UpstreamStreamClient
from .chat_stream import ChatStreamHandler
from .middleware import (
    RateLimiter,
    on_response_prepare,
    origin_lock_middleware,
    rate_limit_middleware,
    request_id_middleware,
)


ROUTE_PREFIXES = ("", "/api")
UPSTREAM_CONNECT_TIMEOUT = 10


async def health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True})


class StaticFiles:
    """
    Serve the browser client. "/" maps to index.html and extensionless paths
    fall back to "<path>.html".
    """

    def __init__(self, root: pathlib.Path) -> None:
        self.root = pathlib.Path(root).resolve()

    def candidates(self, relative: str):
        if not relative or relative.endswith("/"):
            yield relative + "index.html"
            return
        yield relative
        if not pathlib.PurePosixPath(relative).suffix:
            yield relative + ".html"

    async def handle(self, request: web.Request) -> web.StreamResponse:
        for candidate in self.candidates(request.match_info.get("path", "")):
            path = self.root.joinpath(candidate).resolve()
            if not path.is_relative_to(self.root):
                raise web.HTTPNotFound()
            if path.is_file():
                return web.FileResponse(path)
        raise web.HTTPNotFound()


def upstream_client_session() -> aiohttp.ClientSession:
    return aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=None, sock_connect=UPSTREAM_CONNECT_TIMEOUT),
        auto_decompress=True,
    )


def create_app(
    config: ProxyConfig, session: Optional[aiohttp.ClientSession] = None
) -> web.Application:
    """
    Build the aiohttp application. Without a session, the app opens its own
    upstream session on startup and closes it on cleanup.
    """
    middlewares = [request_id_middleware, origin_lock_middleware(config.allowed_origins)]
    if config.rate_limit_per_minute:
        middlewares.append(rate_limit_middleware(RateLimiter(config.rate_limit_per_minute)))

    app = web.Application(client_max_size=config.max_body_bytes, middlewares=middlewares)
    app.on_response_prepare.append(on_response_prepare)

    upstream = UpstreamStreamClient(config, session)
    if session is None:

        async def upstream_session_ctx(_app):
            async with upstream_client_session() as upstream.session:
                yield

        app.cleanup_ctx.append(upstream_session_ctx)

    chat_stream = ChatStreamHandler(config, upstream, ContentRewriter.from_config(config))
    for prefix in ROUTE_PREFIXES:
        app.router.add_get(f"{prefix}/health", health)
        app.router.add_post(f"{prefix}/chat/stream", chat_stream.handle)

    if config.static_dir and pathlib.Path(config.static_dir).is_dir():
        static_files = StaticFiles(pathlib.Path(config.static_dir))
        app.router.add_get("/{path:.*}", static_files.handle)
    return app


class ChatProxyHandlerContext(object):
    def __init__(
        self,
        parent: "ChatProxyHandler",
        config: ProxyConfig,
        *,
        address: str = "127.0.0.1",
        port: int = 0,
        unix_socket_path: str = None,
    ) -> None:
        self.parent = parent
        self.config = config
        self.address = address
        self.port = port
        self.unix_socket_path = unix_socket_path
        self.logger = logging.getLogger(__package__).getChild(self.__class__.__qualname__)

    async def __aenter__(self) -> "ChatProxyHandlerContext":
        self.astack = await contextlib.AsyncExitStack().__aenter__()
        self.session = await self.astack.enter_async_context(upstream_client_session())
        self.app = create_app(self.config, self.session)
        self.runner = web.AppRunner(self.app, handler_cancellation=True)
        await self.runner.setup()
        if self.unix_socket_path is not None:
            self.site = web.UnixSite(self.runner, self.unix_socket_path)
        else:
            self.site = web.TCPSite(self.runner, self.address, self.port)
        await self.site.start()
        if self.unix_socket_path is None:
            self.address, self.port = self.site._server.sockets[0].getsockname()[:2]
            self.logger.info(f"started chat proxy on {self.address}:{self.port}")
        else:
            self.logger.info(f"started chat proxy on {self.unix_socket_path}")
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.site.stop()
        await self.runner.cleanup()
        await self.astack.__aexit__(exc_type, exc_value, traceback)


class ChatProxyHandler(object):
    def __init__(self, config: ProxyConfig) -> None:
        self.config = config
        self.logger = logging.getLogger(__package__).getChild(self.__class__.__qualname__)

    def __call__(
        self, address="127.0.0.1", port=0, unix_socket_path=None,
    ) -> "ChatProxyHandlerContext":
        return ChatProxyHandlerContext(
            self, self.config, address=address, port=port, unix_socket_path=unix_socket_path,
        )

    def log_banner(self, ctx: ChatProxyHandlerContext) -> None:
        config = self.config
        self.logger.info("streaming endpoint: POST /chat/stream (also /api/chat/stream)")
        if config.static_dir and pathlib.Path(config.static_dir).is_dir():
            self.logger.info("static: %s", config.static_dir)
        self.logger.info("default model: %s", config.default_model)
        self.logger.info("rewrite policy: %s", config.rewrite_policy.value)
        self.logger.info("brand: %s, made by %s", config.brand_model, config.brand_maker)
        self.logger.info(
            "identity override: %s", "on" if config.identity_override_enabled else "off"
        )
        if config.allowed_origins:
            self.logger.info("origin-locked: %s", ", ".join(config.allowed_origins))
        else:
            self.logger.warning(
                "origin lock disabled (set ALLOWED_ORIGINS in .env for production)"
            )


async def main(config: ProxyConfig):
    try:
        handler = ChatProxyHandler(config)
        async with handler(
            address=config.host,
            port=config.port,
            unix_socket_path=config.unix_socket_path,
        ) as ctx:
            handler.log_banner(ctx)
            while True:
                await asyncio.sleep(100)
    except KeyboardInterrupt:
        return


def cli():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # A .env in the working directory fills in, real environment wins
    load_dotenv(find_dotenv(usecwd=True))
    try:
        config = load_config()
    except ConfigError as error:
        logging.getLogger(__package__).error("%s", error)
        sys.exit(1)
    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
