"""
Header transformation rules for the proxied request and response.

Both directions are plain data plus a pure function; nothing here touches
the network or keeps state between requests.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

HeaderPairs = Tuple[Tuple[str, str], ...]

# Hop-by-hop headers that should NOT be forwarded (RFC 7230 section 6.1)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Header values never written to the logs verbatim
SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie", "proxy-authorization"}


@dataclass(frozen=True)
class OutgoingHeaderRules:
    """Fixed headers forced on every upstream request."""

    set_headers: HeaderPairs = ()
    forward_client_address: bool = False


@dataclass(frozen=True)
class IncomingHeaderRules:
    """Headers forced on every proxied response.

    ``content_type_overrides`` holds ``(suffix, content_type)`` pairs matched
    against the rewritten upstream path; the first match wins.
    """

    set_headers: HeaderPairs = ()
    content_type_overrides: HeaderPairs = ()


def _connection_tokens(headers: Iterable[Tuple[str, str]]) -> set:
    tokens = set()
    for name, value in headers:
        if name.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def strip_hop_by_hop(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Drop hop-by-hop headers, including any named by ``Connection``."""
    headers = list(headers)
    excluded = HOP_BY_HOP_HEADERS | _connection_tokens(headers)
    return [(name, value) for name, value in headers if name.lower() not in excluded]


def _override(
    headers: List[Tuple[str, str]], name: str, value: str
) -> List[Tuple[str, str]]:
    lowered = name.lower()
    result = [(n, v) for n, v in headers if n.lower() != lowered]
    result.append((name, value))
    return result


def _get(headers: Sequence[Tuple[str, str]], name: str) -> str:
    lowered = name.lower()
    for n, v in headers:
        if n.lower() == lowered:
            return v
    return ""


def build_upstream_headers(
    headers: Iterable[Tuple[str, str]],
    rules: OutgoingHeaderRules,
    client_host: Optional[str] = None,
    scheme: str = "http",
    prefix: str = "",
) -> List[Tuple[str, str]]:
    """
    Clone inbound headers for the upstream request.

    Hop-by-hop headers and ``Host`` are dropped (the client sets ``Host``
    from the upstream URL), then the fixed rules overwrite or insert.
    """
    inbound = list(headers)
    result = [(n, v) for n, v in strip_hop_by_hop(inbound) if n.lower() != "host"]

    if rules.forward_client_address:
        client_ip = client_host or "unknown"
        existing_xff = _get(result, "x-forwarded-for")
        result = _override(
            result, "x-forwarded-for", f"{existing_xff}, {client_ip}".strip(", ")
        )
        result = _override(result, "x-forwarded-host", _get(inbound, "host"))
        result = _override(result, "x-forwarded-proto", scheme)
        result = _override(result, "x-forwarded-prefix", prefix)
        result = _override(result, "x-real-ip", client_ip)

    for name, value in rules.set_headers:
        result = _override(result, name, value)
    return result


def content_type_override(path: str, rules: IncomingHeaderRules) -> Optional[str]:
    for suffix, content_type in rules.content_type_overrides:
        if path.endswith(suffix):
            return content_type
    return None


def build_client_headers(
    headers: Iterable[Tuple[str, str]],
    upstream_path: str,
    rules: IncomingHeaderRules,
) -> List[Tuple[str, str]]:
    """Response headers for the client: upstream minus hop-by-hop, plus rules."""
    result = strip_hop_by_hop(headers)
    for name, value in rules.set_headers:
        result = _override(result, name, value)

    content_type = content_type_override(upstream_path, rules)
    if content_type:
        result = _override(result, "Content-Type", content_type)
    return result


def redact_headers(headers: Iterable[Tuple[str, str]]) -> dict:
    """Headers safe to log."""
    return {
        name: ("****" if name.lower() in SENSITIVE_HEADERS else value)
        for name, value in headers
    }
