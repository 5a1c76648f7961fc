import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Tuple

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import Response, StreamingResponse
from opentelemetry import trace
from starlette.requests import ClientDisconnect

from cdn_proxy.app_proxy.headers import (
    build_client_headers,
    build_upstream_headers,
    redact_headers,
)
from cdn_proxy.app_proxy.rewrite import build_upstream_url, normalize_prefix, rewrite_path
from cdn_proxy.cors import CorsPolicy
from cdn_proxy.errors import (
    ClientDisconnected,
    NotProxyRoute,
    ProxyError,
    UpstreamMalformedResponse,
    UpstreamRedirectRefused,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from cdn_proxy.telemetry import UPSTREAM_ERRORS
from cdn_proxy.utils.exception_logging import log_exception_with_details
from cdn_proxy.utils.traced_requests import traced_request

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
DISCONNECT_POLL_INTERVAL = 0.1
DECODED_BODY_DROPPED_HEADERS = frozenset({"content-encoding", "content-length"})


def request_path(request: Request, prefix: Optional[str] = None) -> str:
    """The path as the client sent it, percent-encoding intact below ``prefix``."""
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return request.url.path
    path = raw_path.decode("latin-1")
    if prefix:
        path = normalize_prefix(path, prefix)
    return path


@dataclass(frozen=True)
class InFlightRequest:
    """Snapshot of one inbound request, alive for one request/response cycle."""

    method: str
    path: str
    query: str
    headers: Tuple[Tuple[str, str], ...]
    client_host: Optional[str]
    scheme: str
    body: Optional[AsyncIterator[bytes]] = field(default=None, compare=False)

    @classmethod
    def from_request(
        cls,
        request: Request,
        body: Optional[AsyncIterator[bytes]] = None,
        prefix: Optional[str] = None,
    ) -> "InFlightRequest":
        return cls(
            method=request.method,
            path=request_path(request, prefix),
            query=request.url.query,
            headers=tuple(request.headers.items()),
            client_host=request.client.host if request.client else None,
            scheme=request.url.scheme,
            body=body,
        )


def has_body(request: Request) -> bool:
    if "transfer-encoding" in request.headers:
        return True
    return request.headers.get("content-length", "0").strip() not in ("", "0")


def build_upstream_client(config) -> httpx.AsyncClient:
    """The pooled client shared by all in-flight requests."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.timeout),
        limits=httpx.Limits(
            max_connections=config.max_connections,
            max_keepalive_connections=min(20, config.max_connections),
        ),
        # Redirects are followed by the handler so the target host can be checked
        follow_redirects=False,
    )


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


class ProxyHandler:
    """
    Forward requests under the proxy prefix to the upstream CDN.

    Holds only immutable configuration and the shared upstream client; all
    per-request data stays local to ``handle``.
    """

    def __init__(self, config, proxy_cors: CorsPolicy, client: httpx.AsyncClient):
        self.config = config
        self.proxy_cors = proxy_cors
        self.client = client

    def preflight(self) -> Response:
        decision = self.proxy_cors.evaluate(None, preflight=True)
        return Response(status_code=204, headers=dict(decision.headers))

    async def handle(self, request: Request) -> Response:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.timeout

        path = request_path(request, self.config.path_prefix)
        upstream_path = rewrite_path(path, self.config)
        if upstream_path is None:
            raise NotProxyRoute(f"{path} is not under {self.config.path_prefix}")

        if request.method == "OPTIONS":
            return self.preflight()

        body_consumed = asyncio.Event()
        body = self._stream_body(request, body_consumed) if has_body(request) else None
        if body is None:
            body_consumed.set()

        inflight = InFlightRequest.from_request(request, body, self.config.path_prefix)
        target_url = build_upstream_url(
            self.config.upstream_base_url, upstream_path, inflight.query
        )
        headers = build_upstream_headers(
            inflight.headers,
            self.config.outgoing_headers,
            client_host=inflight.client_host,
            scheme=inflight.scheme,
            prefix=self.config.path_prefix,
        )

        with traced_request(
            tracer,
            "proxy_request",
            f"Proxying {inflight.method} {inflight.path} -> {target_url} "
            f"headers={redact_headers(headers)}",
            {"proxy.target_url": target_url, "proxy.method": inflight.method},
        ) as span:
            try:
                upstream = await self._send(
                    request, inflight, target_url, headers, body_consumed, deadline
                )
            except ProxyError as e:
                span.set_attribute("proxy.error", type(e).__name__)
                UPSTREAM_ERRORS.labels(kind=type(e).__name__).inc()
                raise
            span.set_attribute("proxy.status_code", upstream.status_code)

        client_headers = build_client_headers(
            upstream.headers.multi_items(), upstream_path, self.config.incoming_headers
        )
        if upstream.is_stream_consumed:
            # Only the decoded body of an eagerly read response is left
            client_headers = [
                (name, value)
                for name, value in client_headers
                if name.lower() not in DECODED_BODY_DROPPED_HEADERS
            ]

        response = StreamingResponse(
            self._relay(upstream, target_url, deadline),
            status_code=upstream.status_code,
        )
        for name, value in client_headers:
            response.headers.append(name, value)
        return response

    @staticmethod
    async def _stream_body(
        request: Request, consumed: asyncio.Event
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in request.stream():
                if chunk:
                    yield chunk
        finally:
            consumed.set()

    @staticmethod
    async def _wait_for_disconnect(request: Request, body_consumed: asyncio.Event) -> None:
        # Polling receive() before the body is read would steal body chunks
        await body_consumed.wait()
        while not await request.is_disconnected():
            await asyncio.sleep(DISCONNECT_POLL_INTERVAL)

    async def _send(
        self,
        request: Request,
        inflight: InFlightRequest,
        target_url: str,
        headers,
        body_consumed: asyncio.Event,
        deadline: float,
    ) -> httpx.Response:
        """
        Send upstream and wait for the response headers.

        The wait ends at the deadline or when the client goes away; in both
        cases the upstream call is cancelled and its connection released.
        """
        loop = asyncio.get_running_loop()
        upstream_request = self.client.build_request(
            inflight.method, target_url, headers=headers, content=inflight.body
        )

        send_task = asyncio.ensure_future(self._send_following_redirects(upstream_request))
        disconnect_task = asyncio.ensure_future(
            self._wait_for_disconnect(request, body_consumed)
        )
        try:
            done, _ = await asyncio.wait(
                {send_task, disconnect_task},
                timeout=max(deadline - loop.time(), 0),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            disconnect_task.cancel()
            if not send_task.done():
                send_task.cancel()
                await asyncio.gather(send_task, return_exceptions=True)

        if send_task in done:
            try:
                return send_task.result()
            except ProxyError as e:
                log_exception_with_details(
                    logger, f"[Proxy] {inflight.method} {target_url} failed:", e, logging.WARNING
                )
                raise
            except Exception as e:
                error = self._map_upstream_error(e, target_url)
                if error is None:
                    raise
                log_exception_with_details(
                    logger, f"[Proxy] {inflight.method} {target_url} failed:", e
                )
                raise error from e

        await self._release_late_response(send_task)

        if disconnect_task in done:
            logger.info(
                f"[Proxy] Client disconnected before upstream responded, cancelled {target_url}"
            )
            raise ClientDisconnected("client disconnected", target_url)

        logger.error(
            f"[Proxy] No response from {target_url} within {self.config.timeout}s, request cancelled"
        )
        raise UpstreamTimeout(f"deadline of {self.config.timeout}s exceeded", target_url)

    @staticmethod
    async def _release_late_response(send_task: asyncio.Future) -> None:
        """Close a response that arrived after the wait had already given up."""
        if send_task.cancelled() or send_task.exception() is not None:
            return
        await send_task.result().aclose()

    @staticmethod
    def _map_upstream_error(exc: Exception, target_url: str) -> Optional[ProxyError]:
        if isinstance(exc, httpx.TimeoutException):
            return UpstreamTimeout(str(exc), target_url)
        if isinstance(exc, (httpx.RemoteProtocolError, httpx.DecodingError)):
            return UpstreamMalformedResponse(str(exc), target_url)
        if isinstance(exc, httpx.RequestError):
            return UpstreamUnavailable(str(exc), target_url)
        if isinstance(exc, httpx.StreamError):
            # A streamed body cannot be replayed for a 307/308 redirect
            return UpstreamRedirectRefused(str(exc), target_url)
        if isinstance(exc, ClientDisconnect):
            return ClientDisconnected("client disconnected while uploading", target_url)
        return None

    async def _send_following_redirects(
        self, upstream_request: httpx.Request
    ) -> httpx.Response:
        response = await self.client.send(upstream_request, stream=True)
        redirects = 0
        while response.next_request is not None:
            next_request = response.next_request
            await response.aclose()
            if next_request.url.host != self.config.upstream_host:
                raise UpstreamRedirectRefused(
                    f"refusing redirect to foreign host {next_request.url.host}",
                    str(next_request.url),
                )
            if redirects >= self.config.max_redirects:
                raise UpstreamRedirectRefused(
                    f"more than {self.config.max_redirects} redirects",
                    str(next_request.url),
                )
            redirects += 1
            logger.debug(f"[Proxy] Following upstream redirect to {next_request.url}")
            response = await self.client.send(next_request, stream=True)
        return response

    async def _relay(
        self, upstream: httpx.Response, target_url: str, deadline: float
    ) -> AsyncIterator[bytes]:
        """Stream the raw upstream body, still bound by the request deadline."""
        loop = asyncio.get_running_loop()
        try:
            if upstream.is_stream_consumed:
                if upstream.content:
                    yield upstream.content
                return
            chunks = upstream.aiter_raw()
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                chunk = await asyncio.wait_for(_next_chunk(chunks), remaining)
                if chunk is None:
                    break
                yield chunk
        except asyncio.TimeoutError:
            logger.error(f"[Proxy] Deadline exceeded while streaming {target_url}, response truncated")
            UPSTREAM_ERRORS.labels(kind="BodyTimeout").inc()
        except httpx.HTTPError as e:
            log_exception_with_details(
                logger, f"[Proxy] Upstream body stream from {target_url} failed:", e
            )
            UPSTREAM_ERRORS.labels(kind=type(e).__name__).inc()
        finally:
            await asyncio.shield(upstream.aclose())


def build_router(prefix: str) -> APIRouter:
    """Catch-all routes for the prefix itself and everything below it."""
    router = APIRouter(prefix=prefix)

    @router.api_route("", methods=PROXY_METHODS, include_in_schema=False)
    @router.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy_all(request: Request, path: str = ""):
        """Catch-all route that proxies all requests to the upstream."""
        handler: ProxyHandler = request.app.state.proxy_handler
        return await handler.handle(request)

    return router
