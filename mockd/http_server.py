#!/usr/bin/env python3

import asyncio
import ssl
from typing import Any, Dict, List, Mapping, Optional, Tuple

from aiohttp import hdrs, web
from aiohttp.web_runner import AppRunner, TCPSite
from multidict import CIMultiDict

from .configuration import HttpSettings, ResponseSpec, parse_http
from .logger import log
from .server import SHUTDOWN_TIMEOUT, MockServer
from .tables import RouteTable
from .template import StructuredBody, render, render_body

BACKLOG = 128
ERROR_HEADER = "Mockd-Error"
FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")
# set by aiohttp itself
SKIPPED_HEADERS = {"content-length", "transfer-encoding", "connection"}


def valid_header(key: str, value: str) -> bool:
    if not key or any(c in key for c in " \t\r\n:"):
        return False
    return "\r" not in value and "\n" not in value


class HttpServer(MockServer[HttpSettings, RouteTable]):
    name = "http"

    def __init__(self) -> None:
        super().__init__()
        self.runner: Optional[AppRunner] = None

    def parse(self, config: dict) -> HttpSettings:
        return parse_http(config)

    def build_table(self, settings: HttpSettings) -> RouteTable:
        return RouteTable.build(settings.routes)

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.handle)
        return app

    async def handle(self, request: web.Request) -> web.Response:
        table = self.table
        if table is None:
            raise web.HTTPNotFound()

        match = table.lookup(request.method, request.path)
        if match is None:
            allowed = table.allowed_methods(request.path)
            if allowed:
                raise web.HTTPMethodNotAllowed(request.method, allowed)
            raise web.HTTPNotFound()

        log(__name__).debug("%s %s matched %s", request.method, request.path, match.route.uri)
        context, error = await self.request_context(request, match.params)
        return await self.respond(match.route.response, context, error)

    async def request_context(
        self, request: web.Request, params: Mapping[str, str]
    ) -> Tuple[Dict[str, Any], Optional[str]]:
        """Merge path, query/form and JSON body parameters, later ones win"""

        context: Dict[str, Any] = dict(params)
        try:
            for key in request.query:
                context[key] = request.query.get(key)

            if request.content_type in FORM_TYPES:
                form = await request.post()
                for key in form:
                    value = form.get(key)
                    if isinstance(value, str):
                        context[key] = value

            if request.content_type == "application/json" and request.body_exists:
                data = await request.json()
                if not isinstance(data, dict):
                    raise ValueError("JSON body is not an object")
                context.update(data)
        except Exception as e:
            log(__name__).error("read request params error: %s", e)
            message = " ".join(str(e).split()) or e.__class__.__name__
            return context, message

        return context, None

    def render_headers(
        self, response: ResponseSpec, context: Mapping[str, Any]
    ) -> "CIMultiDict[str]":
        headers: CIMultiDict[str] = CIMultiDict()
        for key, value in response.headers:
            rk = render(key, context)
            if not rk.ok:
                log(__name__).error("render header key %s error: %s", key, rk.error)
                continue
            rv = render(value, context)
            if not rv.ok:
                log(__name__).error("render header value %s error: %s", value, rv.error)
                continue
            if rk.text.lower() in SKIPPED_HEADERS:
                continue
            if not valid_header(rk.text, rv.text):
                log(__name__).error("invalid header %r: %r, skipped", rk.text, rv.text)
                continue
            headers[rk.text] = rv.text
        return headers

    async def respond(
        self, response: ResponseSpec, context: Mapping[str, Any], error: Optional[str] = None
    ) -> web.Response:
        headers = self.render_headers(response, context)
        if error is not None:
            headers[ERROR_HEADER] = error
        if hdrs.CONTENT_TYPE not in headers:
            if isinstance(response.body, StructuredBody):
                headers[hdrs.CONTENT_TYPE] = "application/json"
            else:
                headers[hdrs.CONTENT_TYPE] = "text/plain; charset=utf-8"

        body = render_body(response.body, context)
        if not body.ok:
            log(__name__).error("render response template error: %s", body.error)

        if response.delay_ms > 0:
            await asyncio.sleep(response.delay_ms / 1000)

        # configured headers are sent as they are, so no text= here
        return web.Response(
            status=response.status_code, body=body.text.encode("utf-8"), headers=headers
        )

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        settings = self.settings
        if settings is None or not settings.tls:
            return None
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(settings.cert, settings.key)
        return context

    @property
    def addresses(self) -> List[Any]:
        return self.runner.addresses if self.runner is not None else []

    async def start(self) -> None:
        settings = self.settings
        if settings is None:
            raise RuntimeError("start() before init()")

        self.runner = AppRunner(self.make_app(), shutdown_timeout=SHUTDOWN_TIMEOUT)
        await self.runner.setup()

        ssl_context = self.ssl_context()
        site = TCPSite(
            self.runner,
            settings.host,
            settings.port,
            ssl_context=ssl_context,
            backlog=BACKLOG,
            reuse_address=True,
        )
        await site.start()
        log(__name__).info(
            "start %s server on %s", "HTTPS" if ssl_context else "HTTP", self.addresses
        )

    async def stop(self) -> None:
        if self.runner is not None:
            log(__name__).info("shutting down server on %s", self.addresses)
            await self.runner.cleanup()
            self.runner = None
