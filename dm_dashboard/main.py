from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, settings as default_settings
from .store import MemoryStore
from .services.discord_rest import DiscordRestClient
from .services.dispatcher import BulkDispatcher
from .services.relay import Relay
from .services.user_refresh import UserRefresher

from .api.discord import router as discord_router
from .api.realtime import router as realtime_router

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[MemoryStore] = None,
    discord: Optional[DiscordRestClient] = None,
) -> FastAPI:
    """
    Build the dashboard app.

    Every stateful component is constructed here once and hung off app.state;
    routes reach them through the get_* dependencies. Pass store / discord to
    substitute them (tests, alternative backends).
    """
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.discord.aclose()

    app = FastAPI(
        title="Discord DM Dashboard API",
        version=cfg.app_version,
        lifespan=lifespan,
    )

    app.state.settings = cfg
    app.state.store = store or MemoryStore()
    app.state.discord = discord or DiscordRestClient(settings=cfg)
    app.state.refresher = UserRefresher(app.state.store, app.state.discord, settings=cfg)
    app.state.dispatcher = BulkDispatcher(app.state.store, app.state.discord)
    app.state.relay = Relay(app.state.store)

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Error envelope: {success: false, message, details?} ---
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail
        body: Dict[str, Any] = {"success": False}
        if isinstance(detail, dict):
            body["message"] = detail.get("message") or "HTTP error"
            if "details" in detail:
                body["details"] = detail["details"]
        else:
            body["message"] = str(detail) if detail else "HTTP error"
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(body))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": "Invalid input data",
                "details": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Internal server error", "details": str(exc)},
        )

    # --- Health / meta ---
    @app.get("/health", tags=["meta"])
    def health() -> Dict[str, Any]:
        return {"ok": True, "env": cfg.env}

    @app.get("/version", tags=["meta"])
    def version() -> Dict[str, Any]:
        return {"version": cfg.app_version}

    # --- API routers ---
    app.include_router(discord_router)
    app.include_router(realtime_router)

    return app


app = create_app()


def run() -> None:
    logging.basicConfig(level=getattr(logging, str(default_settings.log_level).upper(), logging.INFO))
    import uvicorn

    # reload should be True in local dev, False in prod.
    uvicorn.run(
        "dm_dashboard.main:app",
        host=default_settings.host,
        port=int(default_settings.port),
        reload=bool(default_settings.reload),
    )
