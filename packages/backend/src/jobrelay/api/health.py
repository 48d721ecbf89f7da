"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and the
broker and dedup backends are reachable.
"""

from fastapi import APIRouter, Depends

from jobrelay import __version__
from jobrelay.api.dependencies import get_runtime
from jobrelay.runtime import RelayRuntime

router = APIRouter()


@router.get("/health")
async def health_check(runtime: RelayRuntime = Depends(get_runtime)):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    try:
        checks["broker"] = "ok" if await runtime.broker.ping() else "error: unreachable"
    except Exception as e:
        checks["broker"] = f"error: {e}"

    try:
        checks["dedup"] = "ok" if await runtime.dedup.ping() else "error: unreachable"
    except Exception as e:
        checks["dedup"] = f"error: {e}"

    checks["consumer"] = "ok" if runtime.consumer.running or not runtime.settings.run_consumer else "stopped"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks}
