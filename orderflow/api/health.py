"""
Order Pipeline — Health endpoint
"""
import asyncio

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from orderflow.api.deps import get_services
from orderflow.services.container import ServiceContainer

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(services: ServiceContainer = Depends(get_services)):
    settings = services.settings
    deps: dict[str, str] = {}
    healthy = True

    try:
        await asyncio.wait_for(services.store.ping(), timeout=settings.HEALTH_CHECK_TIMEOUT)
        deps["postgresql"] = "ok"
    except Exception as e:
        deps["postgresql"] = f"error: {str(e)[:100]}"
        healthy = False

    try:
        await asyncio.wait_for(services.redis.ping(), timeout=settings.HEALTH_CHECK_TIMEOUT)
        deps["redis"] = "ok"
    except Exception as e:
        deps["redis"] = f"error: {str(e)[:100]}"
        healthy = False

    for name, value in [
        ("payment_gateway", settings.MERCADOPAGO_ACCESS_TOKEN),
        ("messaging", settings.MESSAGING_API_KEY),
    ]:
        deps[name] = "configured" if value else "missing credentials"
        if not value:
            healthy = False

    return JSONResponse(
        content={
            "status": "healthy" if healthy else "degraded",
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "dependencies": deps,
        },
        status_code=200 if healthy else 503,
    )
