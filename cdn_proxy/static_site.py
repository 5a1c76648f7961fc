import os

from starlette.exceptions import HTTPException
from starlette.responses import FileResponse
from starlette.staticfiles import StaticFiles
from starlette.types import Scope

from cdn_proxy.errors import ConfigError

INDEX_DOCUMENT = "index.html"


class SinglePageApplication(StaticFiles):
    """Static files with the index document as fallback for client-side routes."""

    def __init__(self, directory: str, index_document: str = INDEX_DOCUMENT):
        super().__init__(directory=directory, html=True)
        self.index_document = index_document

    async def get_response(self, path: str, scope: Scope):
        try:
            return await super().get_response(path, scope)
        except HTTPException as exc:
            if exc.status_code != 404:
                raise
        return FileResponse(os.path.join(self.directory, self.index_document))


def build_static_app(directory: str) -> SinglePageApplication:
    if not os.path.isdir(directory):
        raise ConfigError(f"STATIC_DIR {directory!r} does not exist")
    if not os.path.isfile(os.path.join(directory, INDEX_DOCUMENT)):
        raise ConfigError(f"STATIC_DIR {directory!r} has no {INDEX_DOCUMENT}")
    return SinglePageApplication(directory)
