import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api.routes.audit import router as audit_router
from backend.app.api.routes.groups import router as groups_router
from backend.app.api.routes.notifications import router as notifications_router
from backend.app.api.routes.signals import router as signals_router
from backend.app.api.routes.subscriptions import (
    pricing_router,
    profile_router,
    router as subscriptions_router,
)
from backend.app.api.routes.webhooks import router as webhooks_router
from backend.app.domain.errors import DomainError


logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if raw is None:
        origins = ["http://localhost:5173", "http://127.0.0.1:5173"]
    else:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not origins:
        raise RuntimeError("CORS_ALLOW_ORIGINS must not be empty.")
    if not any(origin in origins for origin in ("http://localhost:5173", "http://127.0.0.1:5173")):
        logger.warning("CORS allowlist does not include local dev origins: %s", origins)
    return origins


app = FastAPI(title="Signal Distribution API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
def _domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(signals_router)
app.include_router(subscriptions_router)
app.include_router(pricing_router)
app.include_router(profile_router)
app.include_router(groups_router)
app.include_router(notifications_router)
app.include_router(audit_router)
app.include_router(webhooks_router)
