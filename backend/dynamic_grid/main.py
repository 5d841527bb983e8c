import logging
import uuid

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dynamic_grid.config import settings
from dynamic_grid.dependencies import get_database_router
from dynamic_grid.routers import dynamic_grid, grid_admin
from dynamic_grid.services.database_router import DatabaseRouter
from dynamic_grid.services.exceptions import GridError
from dynamic_grid.utils.logger import logger, mask_url

app = FastAPI(title="Dynamic Grid API", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logging.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


@app.exception_handler(GridError)
async def grid_error_handler(request: Request, exc: GridError):
    rid = getattr(request.state, "rid", None)
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(level, "grid_error path=%s code=%s status=%s rid=%s: %s",
               request.url.path, exc.code, exc.status_code, rid, exc.message)
    body = exc.to_dict()
    body["rid"] = rid
    return JSONResponse(body, status_code=exc.status_code)


app.include_router(dynamic_grid.router)
app.include_router(grid_admin.router)
app.include_router(grid_admin.config_router)


@app.on_event("startup")
async def startup_event():
    logger.info("Dynamic Grid API starting up...")
    logger.info(f"📊 Database URL: {mask_url(settings.DATABASE_URL)}")
    for name, url in settings.GRID_DATABASES.items():
        logger.info(f"📊 Grid database {name}: {mask_url(url)}")
    logger.info(
        "Grid settings: timeout=%ss cache_ttl=%ss strict_filters=%s drill_down_max_depth=%s",
        settings.GRID_QUERY_TIMEOUT_SECONDS,
        settings.GRID_METADATA_CACHE_TTL_SECONDS,
        settings.GRID_STRICT_FILTERS,
        settings.drill_down_max_depth,
    )


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
def healthz_db(router: DatabaseRouter = Depends(get_database_router)):
    """Database health check endpoint"""
    try:
        router.check_default()
    except GridError as e:
        logger.error("Database health check failed: %s", e.message)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {e.message}",
        )
    return {"status": "ok", "database": "connected"}


@app.get("/")
async def root():
    return {
        "message": "Dynamic Grid API",
        "version": "1.0.0",
        "docs": "/docs"
    }
