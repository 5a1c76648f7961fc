from datetime import datetime, timezone

from fastapi import APIRouter


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_router(health_path: str, service_name: str) -> APIRouter:
    """
    Liveness endpoint. Reports that the process is up and never probes the
    upstream, so a CDN outage does not mark this service unhealthy.
    """
    router = APIRouter()

    @router.get(health_path)
    async def health():
        return {
            "status": "OK",
            "timestamp": utc_timestamp(),
            "service": service_name,
        }

    return router
