class ProxyError(Exception):
    """Base class for failures that are turned into an HTTP response."""

    status_code = 500
    public_message = "Internal proxy error"

    def __init__(self, message: str = "", target_url: str = ""):
        super().__init__(message or self.public_message)
        self.target_url = target_url


class NotProxyRoute(ProxyError):
    """The request path is not under the proxy prefix. A routing miss."""

    status_code = 404
    public_message = "Not Found"


class UpstreamError(ProxyError):
    status_code = 502
    public_message = "Bad gateway"


class UpstreamUnavailable(UpstreamError):
    """Connection refused, DNS failure or another transport failure."""

    public_message = "Bad gateway - upstream unavailable"


class UpstreamTimeout(UpstreamUnavailable):
    status_code = 504
    public_message = "Gateway timeout"


class UpstreamMalformedResponse(UpstreamError):
    public_message = "Bad gateway - invalid upstream response"


class UpstreamRedirectRefused(UpstreamError):
    """Upstream redirected off the configured host or too many times."""

    public_message = "Bad gateway - upstream redirect refused"


class ClientDisconnected(ProxyError):
    # nginx convention, the client is gone and never sees it
    status_code = 499
    public_message = "Client closed request"


class ConfigError(Exception):
    """Invalid startup configuration. Fatal before the socket is bound."""
