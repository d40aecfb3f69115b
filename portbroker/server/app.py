import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import uvicorn

from .api import api_router, get_controller, set_controller
from .config import Config
from .controller import LifecycleController
from .database import Database
from .errors import TunnelError
from .ip_lookup import get_external_ip


logger = logging.getLogger("portbroker-server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    controller = get_controller()
    await controller.reconcile()

    external_ip = None
    url = controller.config.external_ip_url()
    if url:
        external_ip = await get_external_ip(url)
    logger.info(
        f"     Tunneling server is running with external IP {external_ip or 'unknown'}, "
        f"public ports {controller.allocator.base_port}-{controller.allocator.end_port}"
    )

    try:
        yield
    finally:
        await controller.shutdown()


app = FastAPI(title="portbroker", lifespan=lifespan)


@app.exception_handler(TunnelError)
async def tunnel_error_handler(request: Request, exc: TunnelError):
    if exc.status_code >= 500:
        logger.error(f"     {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"     Unexpected error handling {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


app.include_router(api_router)


def run_server(host: Optional[str] = None, port: Optional[int] = None, db_path: Optional[str] = None,
               config_path: Optional[str] = None, base_port: Optional[int] = None,
               region: Optional[str] = None):
    # The config document is read once, command-line values override it
    if config_path:
        Config.load_file(config_path)
    if host:
        Config.HOST = host
    if port:
        Config.PORT = port
    if db_path:
        Config.DATABASE_FILE = db_path
    if base_port:
        Config.INITIAL_PUBLIC_PORT = base_port
    if region:
        Config.REGION = region

    # Validate configuration
    Config.validate()

    db = Database(Config.DATABASE_FILE)
    set_controller(LifecycleController(db, Config))

    logger.info(f"     Address mode: {Config.ADDRESS_MODE}, region: {Config.REGION}")
    logger.info(f"     Starting control plane on {Config.HOST}:{Config.PORT}")

    # Keep the level chosen by --log-level; uvicorn reapplies logging config
    log_level = logging.getLevelName(logging.getLogger().getEffectiveLevel())

    # Configure uvicorn with custom logging
    uvicorn.run(
        app,
        host=Config.HOST,
        port=Config.PORT,
        access_log=False,  # Disable default HTTP access logs
        log_config={
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                },
            },
            "handlers": {
                "default": {
                    "formatter": "default",
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                },
            },
            "root": {
                "level": log_level,
                "handlers": ["default"],
            },
            "loggers": {
                "portbroker-server": {"handlers": ["default"], "level": log_level, "propagate": False},
                "uvicorn": {"handlers": ["default"], "level": "WARNING"},
                "uvicorn.error": {"handlers": ["default"], "level": "WARNING"},
                "uvicorn.access": {"handlers": [], "level": "INFO"},
            },
        }
    )
