"""
Order Pipeline — Idempotency Key Middleware

A counter tablet on bad Wi-Fi resends order creation, item addition and
payment creation. When the request carries an Idempotency-Key header, the
first definite answer (anything below 500) is kept in Redis and replayed for
repeats of the same key on the same path; the handler runs once.
"""
import json
import logging
import re

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

KEY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "X-Idempotency-Replay"
CACHE_PREFIX = "idempotent:"
REPLAYABLE = re.compile(
    r"^/orders/?$"
    r"|^/orders/[^/]+/items/?$"
    r"|^/orders/[^/]+/payments/(pix|card)/?$"
)


def cache_key(path: str, key: str) -> str:
    return f"{CACHE_PREFIX}{path.rstrip('/')}:{key}"


def _replay(cached: str) -> Response:
    entry = json.loads(cached)
    return JSONResponse(
        content=entry["body"],
        status_code=entry["status_code"],
        headers={REPLAY_HEADER: "true"},
    )


class IdempotencyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        key = request.headers.get(KEY_HEADER)
        services = getattr(request.app.state, "services", None)
        if (
            not key
            or services is None
            or request.method != "POST"
            or not REPLAYABLE.match(request.url.path)
        ):
            return await call_next(request)

        redis_key = cache_key(request.url.path, key)
        cached = await services.redis.get(redis_key)
        if cached:
            logger.info("Replaying %s for idempotency key %s", request.url.path, key)
            return _replay(cached)

        response = await call_next(request)
        body = b"".join([chunk async for chunk in response.body_iterator])

        if response.status_code < 500:
            try:
                content = json.loads(body)
            except ValueError:
                content = body.decode("utf-8", errors="replace")
            await services.redis.setex(
                redis_key,
                services.settings.IDEMPOTENCY_KEY_TTL_SECONDS,
                json.dumps({"body": content, "status_code": response.status_code}),
            )

        return Response(
            content=body,
            status_code=response.status_code,
            media_type=response.media_type,
            headers=dict(response.headers),
        )
