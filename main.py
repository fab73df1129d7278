# main.py
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from settings import validate_env_settings
from middleware import RequestContextMiddleware
from routes.health import router as health_router
from routes.pools import router as pools_router
from routes.disbursements import router as disbursements_router
from app.pools.errors import PoolGrantError, ValidationError
from services.observability import configure_logging

logger = logging.getLogger("kanzu.http")


def create_app() -> FastAPI:
    configure_logging()
    validate_env_settings()

    app = FastAPI(title="Kanzu Pools API", version="1.0.0")
    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(pools_router)
    app.include_router(disbursements_router)

    @app.exception_handler(PoolGrantError)
    async def pool_grant_error_handler(request: Request, exc: PoolGrantError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.to_detail()},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", ""), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        detail = ValidationError("; ".join(e["msg"] for e in errors) or "Invalid request").to_detail()
        detail["errors"] = errors
        return JSONResponse(status_code=ValidationError.status_code, content={"detail": detail})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error path=%s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


app = create_app()
