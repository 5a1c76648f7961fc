"""
CORS policies.

Two policies coexist and are never merged: the credentialed policy reflects
an exact allow-listed origin for the application's own routes, the public
policy answers ``*`` without credentials for the CDN passthrough.
"""

import logging
from dataclasses import dataclass
from typing import FrozenSet, Optional, Sequence, Tuple

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from cdn_proxy.app_proxy.rewrite import is_proxy_path

logger = logging.getLogger("uvicorn.error")

WILDCARD = "*"


@dataclass(frozen=True)
class CorsDecision:
    allow: bool
    headers: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class CorsPolicy:
    allowed_origins: FrozenSet[str]
    allowed_methods: Tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "OPTIONS")
    allowed_headers: Tuple[str, ...] = ("Content-Type", "Authorization")
    allow_credentials: bool = True
    max_age: Optional[int] = None

    @classmethod
    def public(
        cls, allowed_methods: Sequence[str], allowed_headers: Sequence[str]
    ) -> "CorsPolicy":
        return cls(
            allowed_origins=frozenset({WILDCARD}),
            allowed_methods=tuple(allowed_methods),
            allowed_headers=tuple(allowed_headers),
            allow_credentials=False,
        )

    @property
    def is_public(self) -> bool:
        return WILDCARD in self.allowed_origins

    def _allow_lists(self):
        return (
            ("Access-Control-Allow-Methods", ", ".join(self.allowed_methods)),
            ("Access-Control-Allow-Headers", ", ".join(self.allowed_headers)),
        )

    def evaluate(self, origin: Optional[str], preflight: bool = False) -> CorsDecision:
        """Decide whether ``origin`` is allowed and which headers to emit."""
        if self.is_public:
            return CorsDecision(
                True, (("Access-Control-Allow-Origin", WILDCARD),) + self._allow_lists()
            )

        if not origin or origin not in self.allowed_origins:
            return CorsDecision(False)

        headers = [("Access-Control-Allow-Origin", origin), ("Vary", "Origin")]
        if self.allow_credentials:
            headers.append(("Access-Control-Allow-Credentials", "true"))
        if preflight:
            headers.extend(self._allow_lists())
            if self.max_age is not None:
                headers.append(("Access-Control-Max-Age", str(self.max_age)))
        return CorsDecision(True, tuple(headers))


class CorsMiddleware:
    """
    Apply the credentialed policy to every route outside ``exempt_prefixes``.

    Preflights are answered here with 204 and never reach the routes; the
    allow headers are only present for allow-listed origins.
    """

    def __init__(
        self, app: ASGIApp, policy: CorsPolicy, exempt_prefixes: Sequence[str] = ()
    ) -> None:
        self.app = app
        self.policy = policy
        self.exempt_prefixes = tuple(exempt_prefixes)

    def _is_exempt(self, path: str) -> bool:
        return any(is_proxy_path(path, prefix) for prefix in self.exempt_prefixes)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or self._is_exempt(scope["path"]):
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        origin = headers.get("origin")

        if scope["method"] == "OPTIONS" and "access-control-request-method" in headers:
            decision = self.policy.evaluate(origin, preflight=True)
            if not decision.allow:
                logger.info(f"Rejected CORS preflight from origin {origin!r}")
            response = Response(status_code=204, headers=dict(decision.headers))
            await response(scope, receive, send)
            return

        decision = self.policy.evaluate(origin)
        if not decision.allow:
            await self.app(scope, receive, send)
            return

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                for name, value in decision.headers:
                    if name == "Vary":
                        response_headers.add_vary_header(value)
                    else:
                        response_headers[name] = value
            await send(message)

        await self.app(scope, receive, send_with_cors)
