from typing import Optional, Sequence, Tuple
from urllib.parse import unquote

RewriteRule = Tuple[str, str]


def is_proxy_path(path: str, prefix: str) -> bool:
    """True for the prefix itself and anything below it, not for lookalikes."""
    return path == prefix or path.startswith(prefix + "/")


def normalize_prefix(raw_path: str, prefix: str) -> str:
    """
    Spell the leading prefix segments of a raw path in decoded form.

    Routing matches the decoded path, so ``/api/%6Fptimizely/x`` is a proxy
    route; only the remainder after the prefix keeps its percent-encoding.
    """
    prefix_segments = prefix.strip("/").split("/")
    if prefix_segments == [""]:
        return raw_path
    head = raw_path.split("/")[1:len(prefix_segments) + 1]
    if [unquote(segment) for segment in head] != prefix_segments:
        return raw_path
    return prefix + raw_path[len("/" + "/".join(head)):]


def strip_prefix(path: str, prefix: str) -> Optional[str]:
    """
    Remove the proxy prefix from the request path exactly once.

    Returns None when the path is not under the prefix; that is a routing
    decision for the caller, never an error. An exact prefix match maps to
    the upstream root.
    """
    if not is_proxy_path(path, prefix):
        return None
    remainder = path[len(prefix):]
    return remainder or "/"


def apply_rewrite_rules(path: str, rules: Sequence[RewriteRule]) -> str:
    """Replace the leading match of the first matching rule."""
    for match, replacement in rules:
        match = match.rstrip("/")
        if path == match or path.startswith(match + "/"):
            rewritten = replacement.rstrip("/") + path[len(match):]
            if not rewritten.startswith("/"):
                rewritten = "/" + rewritten
            return rewritten
    return path


def rewrite_path(path: str, config) -> Optional[str]:
    """Upstream path for an inbound path, or None when it is not proxied."""
    stripped = strip_prefix(path, config.path_prefix)
    if stripped is None:
        return None
    return apply_rewrite_rules(stripped, config.path_rewrite_rules)


def build_upstream_url(base_url: str, upstream_path: str, query: str = "") -> str:
    """Join the upstream base URL with the rewritten path, keeping the query."""
    base = base_url.rstrip("/")
    url = f"{base}{upstream_path}"
    if query:
        url = f"{url}?{query}"
    return url
