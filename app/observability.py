import logging
import time
import uuid

from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.config import settings
from app.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = logging.getLogger(__name__)


def _extract_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("authorization")
    if not auth:
        return None
    parts = auth.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def _extract_actor_id_from_jwt(token: str | None) -> str | None:
    if not token:
        return None
    secret = settings.identity_jwt_secret
    if not secret:
        return None
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[settings.identity_jwt_algorithm],
            options={"verify_aud": False},
        )
    except JWTError:
        return None
    subject = payload.get("sub")
    if subject:
        return str(subject)
    return None


def _route_path(request: Request) -> str:
    # Templated route keeps metric label cardinality bounded
    route = request.scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return request.url.path


def _observe(request: Request, status_code: int, started: float) -> dict:
    duration_ms = (time.monotonic() - started) * 1000.0
    path = _route_path(request)
    labels = (request.method, path, str(status_code))
    REQUEST_COUNT.labels(*labels).inc()
    REQUEST_LATENCY.labels(*labels).observe(duration_ms / 1000.0)
    if status_code >= 500:
        REQUEST_ERRORS.labels(*labels).inc()
    return {
        "request_id": request.state.request_id,
        "actor_id": getattr(request.state, "actor_id", None)
        or _extract_actor_id_from_jwt(_extract_bearer_token(request)),
        "path": path,
        "method": request.method,
        "status": status_code,
        "duration_ms": round(duration_ms, 2),
    }


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Request id propagation, per-request metrics and one access log line."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed", extra=_observe(request, 500, started))
            raise
        logger.info(
            "request_completed", extra=_observe(request, response.status_code, started)
        )
        response.headers["x-request-id"] = request_id
        return response
