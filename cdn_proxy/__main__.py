import logging
import sys

import uvicorn

from cdn_proxy.config import load_settings
from cdn_proxy.errors import ConfigError
from cdn_proxy.server import create_app
from cdn_proxy.vars import LOG_LEVEL

logger = logging.getLogger("uvicorn.error")


def main() -> int:
    """Run the proxy. Exits non-zero on bad configuration or a port that cannot be bound."""
    try:
        settings = load_settings()
        app = create_app(settings)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    # uvicorn exits with a non-zero status itself when binding fails
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=LOG_LEVEL)
    return 0


if __name__ == "__main__":
    sys.exit(main())
