"""FastAPI interface serving cached Dropbox images and overlay pairs."""

from __future__ import annotations

import traceback
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..app_context import AppContext, determine_paths, load_context, resolve_config_dir
from ..config import CorsSettings
from ..errors import AggregateFetchError, DropfolioError, EmptyBucketError
from ..logging import configure_logging, get_logger
from ..models import ImageAsset, timestamp_iso

CORS_METHODS = "GET, POST, OPTIONS"
CORS_HEADERS = "Content-Type"
CORS_MAX_AGE = "86400"

AVAILABLE_ENDPOINTS = ["/api/health", "/api/images", "/api/generateOverlay", "/api/debug"]

logger = get_logger("dropfolio.web")


def is_allowed_origin(origin: Optional[str], settings: CorsSettings) -> bool:
    """Exact allow-list match, or an http(s) origin whose host ends with an allowed suffix."""

    if not origin:
        return False
    if origin in settings.allowed_origins:
        return True
    parsed = urlparse(origin)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    host = parsed.hostname.lower()
    for suffix in settings.allowed_suffixes:
        suffix = suffix.lower()
        if host.endswith(suffix) or host == suffix.lstrip("."):
            return True
    return False


def cors_headers(origin: str) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": CORS_METHODS,
        "Access-Control-Allow-Headers": CORS_HEADERS,
        "Access-Control-Max-Age": CORS_MAX_AGE,
    }


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def _assets(assets: Sequence[ImageAsset]) -> List[Dict[str, Any]]:
    return [asset.to_dict() for asset in assets]


def _oldest_fetch(context: AppContext, names: Sequence[str]) -> Optional[str]:
    fetched = [context.cache.bucket(name).last_fetch for name in names]
    if any(value is None for value in fetched):
        return None
    return timestamp_iso(min(fetched))


def _pair_counts(context: AppContext) -> Dict[str, int]:
    base, overlay = context.config.pair_buckets
    return {
        "baseImagesCount": len(context.cache.get(base)),
        "overlayImagesCount": len(context.cache.get(overlay)),
    }


def _ensure_pair_buckets_populated(context: AppContext) -> None:
    counts = _pair_counts(context)
    if not counts["baseImagesCount"] or not counts["overlayImagesCount"]:
        raise EmptyBucketError("No images found in Dropbox folders", counts=counts)


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Build the API around ``context``.

    Without a context, one is loaded from ``DROPFOLIO_CONFIG_DIR`` (or the
    default config dir) when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.context is None
        if owned:
            loaded = load_context(determine_paths(resolve_config_dir()))
            configure_logging(
                level=loaded.config.runtime.log_level,
                json_output=loaded.config.runtime.json_logs,
            )
            app.state.context = loaded
        active: AppContext = app.state.context
        if active.scheduler is not None:
            active.scheduler.start()
        logger.info(
            "api.startup",
            buckets=active.cache.names,
            pairing=active.config.pairing.mode,
            scheduled=active.scheduler is not None,
        )
        try:
            yield
        finally:
            await active.aclose()
            logger.info("api.shutdown")
            if owned:
                app.state.context = None

    app = FastAPI(title="Dropfolio API", version=__version__, lifespan=lifespan)
    app.state.context = context

    # ------------------------------------------------------------------
    # CORS and error mapping
    # ------------------------------------------------------------------
    @app.middleware("http")
    async def cors(request: Request, call_next):
        origin = request.headers.get("origin")
        active: Optional[AppContext] = request.app.state.context
        settings = active.config.cors if active is not None else CorsSettings()
        allowed = is_allowed_origin(origin, settings)

        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)

        if allowed:
            response.headers.update(cors_headers(origin))
        response.headers["Vary"] = "Origin"
        return response

    @app.exception_handler(DropfolioError)
    async def dropfolio_error_handler(request: Request, exc: DropfolioError):
        payload = exc.to_payload()
        if isinstance(exc, EmptyBucketError):
            payload.update(exc.counts)
            active: Optional[AppContext] = request.app.state.context
            if active is not None:
                payload["recentErrors"] = active.cache.diagnostics.recent_errors()
        elif isinstance(exc, AggregateFetchError):
            payload["failures"] = exc.failures
        logger.warning("api.request_failed", path=request.url.path, error=exc.code, details=exc.message)
        return JSONResponse(status_code=exc.status_code, content=payload)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            content: Dict[str, Any] = {
                "error": "Not found",
                "details": f"No route for {request.method} {request.url.path}",
                "availableEndpoints": AVAILABLE_ENDPOINTS,
            }
        else:
            content = {"error": "http_error", "details": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------
    @app.get("/api/health")
    async def health(context: AppContext = Depends(get_context)):
        cache_settings = context.config.cache
        payload: Dict[str, Any] = {
            "status": "OK",
            "message": "Dropfolio image API is running",
            "buckets": context.cache.summary(),
            "pairingMode": context.engine.mode,
            "cache": {
                "timeoutSeconds": cache_settings.timeout_seconds,
                "staleAfterSeconds": cache_settings.stale_after_seconds,
                "store": cache_settings.store,
                "pendingRefreshes": len(context.cache.pending_refreshes),
            },
        }
        if context.scheduler is not None:
            payload["schedule"] = context.scheduler.snapshot()
        return payload

    @app.get("/api/images")
    async def images(context: AppContext = Depends(get_context)):
        names = context.config.pair_buckets
        cached = await context.cache.ensure_fresh(names)
        _ensure_pair_buckets_populated(context)

        base, overlay = (context.cache.get(name) for name in names)
        return {
            "baseImages": _assets(base),
            "overlayImages": _assets(overlay),
            "totalCounts": {"base": len(base), "overlay": len(overlay)},
            "lastFetch": _oldest_fetch(context, names),
            "cached": cached,
        }

    @app.get("/api/generateOverlay")
    async def generate_overlay(context: AppContext = Depends(get_context)):
        names = context.config.pair_buckets
        await context.cache.ensure_fresh(names)
        _ensure_pair_buckets_populated(context)

        base, overlay = (context.cache.get(name) for name in names)
        pair = context.engine.next_pair(base, overlay, context.source_generations())
        logger.info("api.pair_served", base=pair.base.name, overlay=pair.overlay.name)
        return {
            "baseImage": pair.base.to_dict(),
            "overlayImage": pair.overlay.to_dict(),
            "totalCounts": {"base": len(base), "overlay": len(overlay)},
            "mode": context.engine.mode,
            "position": {"index": pair.index, "queueLength": pair.queue_length},
        }

    @app.get("/api/debug")
    async def debug(context: AppContext = Depends(get_context)):
        account: Optional[Dict[str, Any]] = None
        try:
            profile = await context.service.current_account()
            account = {
                "name": (profile.get("name") or {}).get("display_name"),
                "email": profile.get("email"),
            }
            refreshed = await context.cache.refresh()
        except Exception as exc:
            logger.exception("api.debug_failed", error=str(exc))
            code = exc.code if isinstance(exc, DropfolioError) else "debug_scan_failed"
            return JSONResponse(
                status_code=500,
                content={
                    "dropboxConnected": account is not None,
                    "error": code,
                    "details": str(exc),
                    "traceback": traceback.format_exc(),
                    "scan": context.cache.diagnostics.to_dict(),
                },
            )

        return {
            "status": "DEBUG_COMPLETE",
            "dropboxConnected": True,
            "accountInfo": account,
            "scan": context.cache.diagnostics.to_dict(),
            "refresh": {
                name: {
                    "images": result.images,
                    "ok": result.ok,
                    "errors": result.errors,
                    "keptPrevious": result.kept_previous,
                }
                for name, result in refreshed.items()
            },
            "buckets": {
                name: [
                    {"name": asset.name, "path": asset.path, "size": asset.size}
                    for asset in context.cache.get(name)
                ]
                for name in context.cache.names
            },
        }

    @app.get("/api/{collection}")
    async def collection(
        collection: str,
        refresh: bool = Query(default=False),
        context: AppContext = Depends(get_context),
    ):
        exposed = context.config.collections or context.cache.names
        if collection not in exposed:
            raise StarletteHTTPException(status_code=404)

        cached = await context.cache.ensure_fresh([collection], force=refresh)
        assets = context.cache.get(collection)
        return {
            "images": _assets(assets),
            "totalCount": len(assets),
            "cached": cached,
        }

    return app


app = create_app()
