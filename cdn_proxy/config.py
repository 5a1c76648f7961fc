import math
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

import httpx

from cdn_proxy.app_proxy.headers import IncomingHeaderRules, OutgoingHeaderRules
from cdn_proxy.cors import WILDCARD, CorsPolicy
from cdn_proxy.errors import ConfigError
from cdn_proxy.vars import (
    DEFAULT_ALLOWED_ORIGINS,
    DEFAULT_CONTENT_TYPE_OVERRIDES,
    DEFAULT_PROXY_PREFIX,
    DEFAULT_STATIC_DIR,
    DEFAULT_UPSTREAM_BASE_URL,
    DEFAULT_USER_AGENT,
    SERVICE_NAME,
)


@dataclass(frozen=True)
class ProxyConfig:
    upstream_base_url: str
    path_prefix: str
    path_rewrite_rules: Tuple[Tuple[str, str], ...] = ()
    timeout: float = 30.0
    max_redirects: int = 5
    max_connections: int = 100
    outgoing_headers: OutgoingHeaderRules = OutgoingHeaderRules()
    incoming_headers: IncomingHeaderRules = IncomingHeaderRules()

    @property
    def upstream_host(self) -> str:
        return httpx.URL(self.upstream_base_url).host


@dataclass(frozen=True)
class Settings:
    proxy: ProxyConfig
    cors: CorsPolicy
    proxy_cors: CorsPolicy
    service_name: str = SERVICE_NAME
    host: str = "0.0.0.0"
    port: int = 3001
    health_path: str = "/api/health"
    serve_static: bool = False
    static_dir: str = DEFAULT_STATIC_DIR


def _parse_list(raw: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _parse_pairs(name: str, raw: str) -> Tuple[Tuple[str, str], ...]:
    """Parse ``key=value,key=value`` keeping order; malformed entries are fatal."""
    pairs = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key, sep, val = entry.partition("=")
        key = key.strip()
        val = val.strip()
        if not sep or not key or not val:
            raise ConfigError(f"{name}: expected 'name=value', got {entry!r}")
        pairs.append((key, val))
    return tuple(pairs)


def _parse_int(name: str, raw: str, minimum: int, maximum: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
        raise ConfigError(f"{name} must be {bounds}, got {value}")
    return value


def _parse_upstream_url(raw: str) -> str:
    try:
        url = httpx.URL(raw)
    except (httpx.InvalidURL, TypeError) as e:
        raise ConfigError(f"UPSTREAM_BASE_URL is not a valid URL: {raw!r} ({e})") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigError(f"UPSTREAM_BASE_URL must be an absolute http(s) URL, got {raw!r}")
    return raw.rstrip("/")


def _parse_prefix(raw: str) -> str:
    prefix = raw.rstrip("/")
    if not raw.startswith("/") or not prefix:
        raise ConfigError(f"PROXY_PREFIX must start with '/' and not be the root, got {raw!r}")
    return prefix


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build the immutable process settings from environment variables."""
    env = os.environ if environ is None else environ

    port = _parse_int("PORT", env.get("PORT", "3001"), 1, 65535)
    upstream_base_url = _parse_upstream_url(env.get("UPSTREAM_BASE_URL", DEFAULT_UPSTREAM_BASE_URL))
    prefix = _parse_prefix(env.get("PROXY_PREFIX", DEFAULT_PROXY_PREFIX))

    rewrite_rules = _parse_pairs("PATH_REWRITE_RULES", env.get("PATH_REWRITE_RULES", ""))
    for match, replacement in rewrite_rules:
        if not match.startswith("/") or not replacement.startswith("/"):
            raise ConfigError(f"PATH_REWRITE_RULES entries must be absolute paths: {match}={replacement}")

    try:
        timeout = float(env.get("PROXY_TIMEOUT", "30"))
    except ValueError:
        raise ConfigError(f"PROXY_TIMEOUT must be a number, got {env.get('PROXY_TIMEOUT')!r}") from None
    if not math.isfinite(timeout) or timeout <= 0:
        raise ConfigError(f"PROXY_TIMEOUT must be a positive number of seconds, got {timeout}")

    max_redirects = _parse_int("PROXY_MAX_REDIRECTS", env.get("PROXY_MAX_REDIRECTS", "5"), 0)
    max_connections = _parse_int("PROXY_MAX_CONNECTIONS", env.get("PROXY_MAX_CONNECTIONS", "100"), 1)

    request_headers = (("User-Agent", env.get("PROXY_USER_AGENT", DEFAULT_USER_AGENT)),)
    request_headers += _parse_pairs("PROXY_REQUEST_HEADERS", env.get("PROXY_REQUEST_HEADERS", ""))

    methods = _parse_list(env.get("CORS_ALLOWED_METHODS", "GET,POST,PUT,DELETE,OPTIONS"))
    allow_headers = _parse_list(env.get("CORS_ALLOWED_HEADERS", "Content-Type,Authorization"))
    origins = _parse_list(env.get("ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS))
    if WILDCARD in origins:
        raise ConfigError("ALLOWED_ORIGINS must list exact origins; '*' cannot be used with credentials")

    max_age = env.get("CORS_MAX_AGE")
    cors = CorsPolicy(
        allowed_origins=frozenset(origins),
        allowed_methods=methods,
        allowed_headers=allow_headers,
        allow_credentials=True,
        max_age=_parse_int("CORS_MAX_AGE", max_age, 0) if max_age else None,
    )
    proxy_cors = CorsPolicy.public(methods, allow_headers)

    proxy = ProxyConfig(
        upstream_base_url=upstream_base_url,
        path_prefix=prefix,
        path_rewrite_rules=rewrite_rules,
        timeout=timeout,
        max_redirects=max_redirects,
        max_connections=max_connections,
        outgoing_headers=OutgoingHeaderRules(
            set_headers=request_headers,
            forward_client_address=env.get("PROXY_FORWARDED_HEADERS", "false").lower() == "true",
        ),
        incoming_headers=IncomingHeaderRules(
            set_headers=proxy_cors.evaluate(None).headers,
            content_type_overrides=_parse_pairs(
                "CONTENT_TYPE_OVERRIDES",
                env.get("CONTENT_TYPE_OVERRIDES", DEFAULT_CONTENT_TYPE_OVERRIDES),
            ),
        ),
    )

    environment = env.get("ENVIRONMENT") or env.get("NODE_ENV") or ""
    return Settings(
        proxy=proxy,
        cors=cors,
        proxy_cors=proxy_cors,
        service_name=env.get("SERVICE_NAME", SERVICE_NAME),
        host=env.get("HOST", "0.0.0.0"),
        port=port,
        health_path=env.get("HEALTH_PATH", "/api/health"),
        serve_static=environment.lower() == "production",
        static_dir=env.get("STATIC_DIR", DEFAULT_STATIC_DIR),
    )
