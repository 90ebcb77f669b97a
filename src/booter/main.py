"""FastAPI application for the bootstrap control API."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
import uvicorn

from booter.api.routes import router
from booter.config import BooterConfig
from booter.services.pivot import PivotController
from booter.utils.logging import setup_logger

VERSION = "1.0.0"


def _attach(app: FastAPI, controller: PivotController) -> None:
    app.state.controller = controller
    app.state.reader = controller.store.reader()
    app.state.bus = controller.bus


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    When the app runs inside `booter serve` the controller is attached
    already. Standalone startup:
    - Initialize logger
    - Create the state directory
    - Load persistent state, resetting an interrupted pivot to bootstrap
    - Create the control channel FIFO
    """
    logger = logging.getLogger("booter")
    if getattr(app.state, "controller", None) is None:
        config = BooterConfig.load()
        logger = setup_logger(
            "booter", config.log_file, level=getattr(logging, config.log_level)
        )
        logger.info("Bootstrap API starting up...")

        config.state_dir.mkdir(parents=True, exist_ok=True)
        controller = PivotController(config)
        state = controller.recover()
        logger.info(f"Phase: {state.phase.value}")
        controller.bus.ensure()
        _attach(app, controller)

    logger.info(f"Bootstrap API ready on port {app.state.controller.config.api_port}")

    yield

    logger.info("Bootstrap API shutting down...")


def create_app(controller: Optional[PivotController] = None) -> FastAPI:
    """Build the API app, bound to controller when given."""
    app = FastAPI(
        title="Chroot Booter",
        description="Control API for the bootstrap pivot/return service",
        version=VERSION,
        lifespan=lifespan,
    )
    app.include_router(router)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "chroot-booter", "version": VERSION}

    if controller is not None:
        _attach(app, controller)
    return app


app = create_app()


def main():
    """Main entry point for running the API alone (no channel consumer)."""
    config = BooterConfig.load()
    uvicorn.run(
        app,
        host=config.api_host,
        port=config.api_port,
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    main()
