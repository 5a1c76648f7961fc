import asyncio
import inspect
from typing import Callable, List

import httpx


class BodyStream(httpx.AsyncByteStream):
    """A response body that is only read when iterated, like one off the network."""

    def __init__(self, content: bytes, chunk_size: int = 64 * 1024):
        self.content = content
        self.chunk_size = chunk_size

    async def __aiter__(self):
        for start in range(0, len(self.content), self.chunk_size):
            yield self.content[start:start + self.chunk_size]


def cdn_response(status_code: int = 200, content: bytes = b"", headers=None) -> httpx.Response:
    """An upstream response whose body is still unread when it reaches the proxy."""
    return httpx.Response(status_code, headers=headers, stream=BodyStream(content))


class UpstreamDouble:
    """
    Stand-in for the CDN behind an ``httpx.MockTransport``.

    Records every request it receives and answers with ``responder``, which
    may be sync or async. ``cancelled`` flips when an in-flight request is
    cancelled by the proxy.
    """

    def __init__(self, responder: Callable = None):
        self.requests: List[httpx.Request] = []
        self.bodies: List[bytes] = []
        self.cancelled = False
        self.responder = responder or (lambda request: cdn_response(200))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.bodies.append(await request.aread())
        try:
            result = self.responder(request)
            if inspect.isawaitable(result):
                result = await result
            return result
        except asyncio.CancelledError:
            self.cancelled = True
            raise

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def never_responds(delay: float = 30.0):
    async def _respond(request):
        await asyncio.sleep(delay)
        return cdn_response(200)

    return _respond
