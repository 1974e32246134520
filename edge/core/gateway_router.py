import asyncio
import httpx
import os
import re
import time
import logging
from starlette.datastructures import Headers
from starlette.types import Scope, Receive, Send
from starlette.responses import FileResponse, PlainTextResponse, Response, StreamingResponse
from typing import Any, Iterable, Optional
from urllib.parse import quote
from edge.config.routes import ROUTE_TABLE, API, FRONTEND, ACME_CHALLENGE_PREFIX, HEALTH_PATH
from edge.config.settings import Settings
from edge.core.metrics import REQUEST_COUNT, REQUEST_DURATION, ACTIVE_REQUESTS, UPSTREAM_ERRORS
from .cors import CorsPolicy
from .errors import (
    EdgeError,
    BadRequest,
    BadGateway,
    ClientRedirectRequired,
    Forbidden,
    GatewayTimeout,
    NotFound,
)
from .header_rewrite import HeaderRewriter, encode_headers, split_host
from .routing_table import PathRouter, RouteRule, build_rules
from .trace import request_id_var, resolve_request_id
from .upstreams import UpstreamResolver, UpstreamTarget


logger = logging.getLogger(__name__)

# dotfiles and dot directories, except the ACME/.well-known tree
SENSITIVE_PATH = re.compile(r"(^|/)\.(?!well-known(/|$))|\.(env|git)$")
ACME_TOKEN = re.compile(r"^[A-Za-z0-9_-]+$")
PATH_SAFE = "/:@!$&'()*+,;=~"


class ClientDisconnected(EdgeError):
    status_code = 499
    detail = "Client Closed Request"


def build_upstreams(settings: Settings) -> UpstreamResolver:
    targets = {
        API: UpstreamTarget.parse(API, settings.api_upstream, settings.upstream_scheme),
        FRONTEND: UpstreamTarget.parse(FRONTEND, settings.frontend_upstream, settings.upstream_scheme),
    }
    return UpstreamResolver(targets, ttl=settings.dns_ttl)


def raw_request_path(scope: Scope) -> str:
    """The request path exactly as the client encoded it, without the query."""
    raw_path = scope.get("raw_path")
    if raw_path is None:
        return quote(scope["path"], safe=PATH_SAFE)
    return raw_path.split(b"?", 1)[0].decode("latin-1")


def build_timeout(settings: Settings) -> httpx.Timeout:
    return httpx.Timeout(
        connect=settings.connect_timeout,
        write=settings.send_timeout,
        read=settings.read_timeout,
        pool=settings.connect_timeout,
    )


class EdgeRouter:
    def __init__(
        self,
        route_table: Optional[Iterable[dict[str, Any]]] = None,
        path_router: Optional[PathRouter] = None,
        upstreams: Optional[UpstreamResolver] = None,
        cors: Optional[CorsPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[httpx.Timeout] = None,
        header_rewriter: Optional[HeaderRewriter] = None,
        acme_webroot: str = "/var/www/html",
        https_port: int = 443,
    ):
        defaults = Settings()
        self.path_router = path_router or PathRouter(
            ROUTE_TABLE if route_table is None else route_table
        )
        self.upstreams = upstreams or build_upstreams(defaults)
        self.cors = cors or CorsPolicy(defaults.allowed_origins)
        self.timeout = timeout or build_timeout(defaults)
        self.client = client or httpx.AsyncClient(timeout=self.timeout)
        self.header_rewriter = header_rewriter or HeaderRewriter()
        self.acme_webroot = acme_webroot
        self.https_port = https_port

        self.cleanup_callbacks: list[callable] = []
        self.add_cleanup_callback(self.upstreams.stop)
        self.add_cleanup_callback(self.client.aclose)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        route_table: Optional[Iterable[dict[str, Any]]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "EdgeRouter":
        timeout = build_timeout(settings)
        return cls(
            route_table=route_table,
            upstreams=build_upstreams(settings),
            cors=CorsPolicy(
                settings.allowed_origins,
                allowed_methods=settings.allowed_methods,
                allowed_headers=settings.allowed_headers,
                max_age=settings.cors_max_age,
            ),
            client=client or httpx.AsyncClient(timeout=timeout),
            timeout=timeout,
            acme_webroot=settings.acme_webroot,
            https_port=settings.https_port,
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] == "lifespan":
            await self._handle_lifespan(scope, receive, send)
            return

        if scope["type"] != "http":
            await PlainTextResponse("Unsupported", status_code=400)(scope, receive, send)
            return

        await self._handle_http(scope, receive, send)

    async def _handle_http(self, scope: Scope, receive: Receive, send: Send):
        token = request_id_var.set(resolve_request_id(scope))
        try:
            response = await self.handle_request(scope, receive)
            await response(scope, receive, send)
        finally:
            request_id_var.reset(token)

    async def handle_request(self, scope: Scope, receive: Receive) -> Response:
        path = scope["path"]
        method = scope["method"]
        headers = Headers(scope=scope)
        rule = None

        try:
            host = headers.get("host", "").strip()
            if not host:
                raise BadRequest("Missing Host header")

            if path.startswith(ACME_CHALLENGE_PREFIX):
                return self._acme_response(path)

            if scope.get("scheme", "http") == "http":
                raise ClientRedirectRequired(self._https_location(scope, host))

            if SENSITIVE_PATH.search(path):
                raise Forbidden()

            if path == HEALTH_PATH:
                return self._local(method, PlainTextResponse("healthy\n"))

            logger.info(f"Incoming request: {method} {path}")
            # routing works on the encoded path so escaped '?', '#' and '/' stay data
            rule, upstream_path = self.path_router.match(raw_request_path(scope))
            if rule is None:
                raise NotFound("Route not found")

            if method == "OPTIONS" and rule.cors:
                logger.info(f"Answering CORS preflight for {path}")
                return self._local(method, Response(
                    status_code=204,
                    headers=self.cors.preflight_headers(headers.get("origin")),
                ))

            return await self._proxy(scope, receive, rule, upstream_path, headers)
        except EdgeError as e:
            if not isinstance(e, (Forbidden, ClientRedirectRequired)):
                logger.warning(f"{method} {path} -> {e.status_code} {e.detail}")
            return self._local(method, PlainTextResponse(
                e.body, status_code=e.status_code, headers=e.headers
            ), upstream=rule.upstream if rule else "edge")

    def _local(self, method: str, response: Response, upstream: str = "edge") -> Response:
        REQUEST_COUNT.labels(method=method, upstream=upstream,
                             status=str(response.status_code)).inc()
        return response

    def _https_location(self, scope: Scope, host: str) -> str:
        name, _ = split_host(host)
        port = "" if self.https_port == 443 else f":{self.https_port}"
        path = raw_request_path(scope)
        query = scope.get("query_string", b"").decode("latin-1")
        return f"https://{name}{port}{path}" + (f"?{query}" if query else "")

    def _acme_response(self, path: str) -> Response:
        challenge = path[len(ACME_CHALLENGE_PREFIX):]
        if not ACME_TOKEN.match(challenge):
            raise NotFound()
        file_path = os.path.join(self.acme_webroot, ".well-known", "acme-challenge", challenge)
        if not os.path.isfile(file_path):
            raise NotFound()
        logger.info(f"Serving ACME challenge {challenge}")
        return FileResponse(file_path, media_type="text/plain")

    async def _proxy(
        self,
        scope: Scope,
        receive: Receive,
        rule: RouteRule,
        upstream_path: str,
        inbound: Headers,
    ) -> Response:
        method = scope["method"]
        target = self.upstreams.get(rule.upstream)
        if target is None:
            logger.error(f"Route {rule.prefix} points at unknown upstream {rule.upstream}")
            raise BadGateway()

        query = scope.get("query_string", b"").decode("latin-1")
        target_url = target.base_url + upstream_path + (f"?{query}" if query else "")
        headers = self.header_rewriter.rewrite(
            scope.get("headers", []), scope, request_id_var.get()
        )
        # resolved addresses replace the host name in the URL; TLS still checks the name
        extensions = {"sni_hostname": target.host} if target.scheme == "https" else None
        body = await self._read_body(receive)
        request = self.client.build_request(
            method,
            target_url,
            headers=encode_headers(headers),
            content=body,
            timeout=self.timeout,
            extensions=extensions,
        )
        logger.info(f"Proxying request to {rule.upstream}: {method} {target_url}")

        ACTIVE_REQUESTS.inc()
        start = time.time()
        try:
            backend_response = await self._send_or_abort(request, receive)
        except httpx.TimeoutException as e:
            UPSTREAM_ERRORS.labels(upstream=rule.upstream, kind="timeout").inc()
            logger.error(f"Upstream {rule.upstream} timed out for {target_url}: {e!r}")
            raise GatewayTimeout()
        except httpx.ConnectError as e:
            UPSTREAM_ERRORS.labels(upstream=rule.upstream, kind="connect").inc()
            logger.error(f"Upstream {rule.upstream} unreachable for {target_url}: {e}")
            raise BadGateway()
        except httpx.RequestError as e:
            UPSTREAM_ERRORS.labels(upstream=rule.upstream, kind="transport").inc()
            logger.error(f"Upstream {rule.upstream} failed for {target_url}: {e!r}")
            raise BadGateway()
        finally:
            ACTIVE_REQUESTS.dec()
            REQUEST_DURATION.labels(upstream=rule.upstream).observe(time.time() - start)

        REQUEST_COUNT.labels(method=method, upstream=rule.upstream,
                             status=str(backend_response.status_code)).inc()
        logger.info(f"Response from {rule.upstream}: {target_url} ({backend_response.status_code})")
        return self._stream_response(backend_response, rule, inbound.get("origin"))

    async def _read_body(self, receive: Receive) -> bytes:
        body = b""
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                raise ClientDisconnected()
            body += message.get("body", b"")
            more_body = message.get("more_body", False)
        return body

    async def _wait_for_disconnect(self, receive: Receive):
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return

    async def _send_or_abort(self, request: httpx.Request, receive: Receive) -> httpx.Response:
        send_task = asyncio.ensure_future(self.client.send(request, stream=True))
        disconnect_task = asyncio.ensure_future(self._wait_for_disconnect(receive))
        try:
            done, _ = await asyncio.wait(
                {send_task, disconnect_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            send_task.cancel()
            disconnect_task.cancel()
            raise

        if send_task in done:
            disconnect_task.cancel()
            await asyncio.gather(disconnect_task, return_exceptions=True)
            return send_task.result()

        send_task.cancel()
        await asyncio.gather(send_task, return_exceptions=True)
        logger.info(f"Client went away, abandoning upstream request to {request.url}")
        raise ClientDisconnected()

    def _stream_response(
        self,
        backend_response: httpx.Response,
        rule: RouteRule,
        origin: Optional[str],
    ) -> Response:
        headers = self.header_rewriter.filter_response(backend_response.headers.raw)
        if rule.cors:
            cors_headers = self.cors.response_headers(origin)
            headers = [(k, v) for k, v in headers if k not in cors_headers]
            headers.extend(cors_headers.items())
            headers.append(("vary", "Origin"))

        async def body():
            try:
                async for chunk in backend_response.aiter_raw():
                    yield chunk
            except httpx.RequestError as e:
                logger.error(f"Upstream {rule.upstream} broke off mid-response: {e!r}")
            finally:
                await backend_response.aclose()

        response = StreamingResponse(body(), status_code=backend_response.status_code)
        response.raw_headers = encode_headers(headers)
        return response

    async def reload_routes(self, route_table: Iterable[dict[str, Any]]) -> list[str]:
        rules = build_rules(route_table)
        unknown = {r.upstream for r in rules} - set(self.upstreams.snapshot)
        if unknown:
            raise ValueError(f"Unknown upstream(s) in route table: {sorted(unknown)}")
        await self.path_router.swap_rules(rules)
        logger.info(f"Route table reloaded: {[r.prefix for r in self.path_router.rules]}")
        return [r.prefix for r in self.path_router.rules]

    def add_cleanup_callback(self, cb: callable) -> None:
        self.cleanup_callbacks.append(cb)

    async def _handle_lifespan(self, scope: Scope, receive: Receive, send: Send):
        while True:
            message = await receive()
            if message["type"] == "lifespan.startup":
                self.upstreams.start()
                await send({"type": "lifespan.startup.complete"})
            elif message["type"] == "lifespan.shutdown":
                for cb in self.cleanup_callbacks:
                    result = cb()
                    if asyncio.iscoroutine(result): await result
                logger.info("[edge] Shutdown complete. All resources closed.")
                await send({"type": "lifespan.shutdown.complete"})
                return
