import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "Optimizely Proxy Server")
LOG_LEVEL = os.getenv("LOG_LEVEL", "info").lower()

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

DEFAULT_UPSTREAM_BASE_URL = "https://cdn.optimizely.com"
DEFAULT_PROXY_PREFIX = "/api/optimizely"
DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
DEFAULT_CONTENT_TYPE_OVERRIDES = ".js=application/javascript; charset=utf-8"
DEFAULT_ALLOWED_ORIGINS = "http://localhost:4200,https://jamesshebester.github.io"
DEFAULT_STATIC_DIR = os.path.join("dist", "angular-site", "browser")
