"""FeedRelay entry point: FastAPI app, uvicorn server and process signals."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from pydantic import ValidationError

from .config import RelaySettings
from .market.lifecycle import ShutdownReason
from .market.runtime import RelayRuntime
from .market.server import create_relay_router

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def create_app(settings: RelaySettings | None = None, runtime: RelayRuntime | None = None) -> FastAPI:
    """Build the FastAPI app. The runtime starts and stops with the app lifespan."""
    settings = settings or RelaySettings()
    runtime = runtime or RelayRuntime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            await runtime.start()
        except Exception as exc:
            runtime.lifecycle.fail(exc)
            await runtime.stop()
            raise
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title="FeedRelay", lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(create_relay_router(runtime))
    return app


async def serve(settings: RelaySettings) -> int:
    """Run the relay until shutdown and return the exit status.

    uvicorn turns SIGINT/SIGTERM into a lifespan shutdown. SIGUSR2 (sent by
    process supervisors before a restart) and unhandled faults go through
    the lifecycle controller, which stops the server the same way.
    """
    app = create_app(settings)
    runtime: RelayRuntime = app.state.runtime
    server = uvicorn.Server(uvicorn.Config(app, host=settings.host, port=settings.port))

    def stop_server() -> None:
        server.should_exit = True

    runtime.lifecycle.on_exit(stop_server)

    loop = asyncio.get_running_loop()
    loop.set_exception_handler(runtime.lifecycle.handle_loop_exception)
    restart_signal = getattr(signal, "SIGUSR2", None)
    if restart_signal is not None:
        loop.add_signal_handler(restart_signal, runtime.lifecycle.trigger, ShutdownReason.RESTART)

    await server.serve()
    if not server.started and runtime.lifecycle.reason is None:
        runtime.lifecycle.trigger(ShutdownReason.FAULT)
    return runtime.lifecycle.exit_status


def main() -> None:
    try:
        settings = RelaySettings()
    except ValidationError as e:
        logging.basicConfig(format=LOG_FORMAT)
        logger.error("Invalid relay settings: %s", e)
        sys.exit(ShutdownReason.FAULT.exit_code)

    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO), format=LOG_FORMAT)
    try:
        status = asyncio.run(serve(settings))
    except KeyboardInterrupt:
        # uvicorn re-raises the captured SIGINT after its lifespan shutdown ran
        status = ShutdownReason.INTERRUPT.exit_code
    sys.exit(status)


if __name__ == "__main__":
    main()
