from contextlib import asynccontextmanager, suppress
import asyncio, logging, sys
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from rich.console import Console
from rich.logging import RichHandler
import uvicorn

from .config import ConfigError, load_settings
from .relay import RelayContext, build_context, run_relay, shutdown

GREETING = "Whats up!"


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)-12s %(levelname)-8s %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def create_app(ctx: Optional[RelayContext] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # the listener comes up without waiting on subscriptions
        relay_task = asyncio.create_task(run_relay(ctx)) if ctx is not None else None
        try:
            yield
        finally:
            if relay_task is not None:
                relay_task.cancel()
                with suppress(asyncio.CancelledError):
                    await relay_task
                await shutdown(ctx)

    app = FastAPI(lifespan=lifespan)
    app.state.relay = ctx

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return GREETING

    return app


class RelayServer(uvicorn.Server):
    async def startup(self, sockets=None):
        await super().startup(sockets=sockets)
        if self.started:
            logging.getLogger("relay").info(f"Server running on port: {self.config.port}")


def run():
    setup_logging()
    log = logging.getLogger("relay")
    try:
        settings = load_settings()
    except ConfigError as e:
        log.error(str(e))
        sys.exit(1)
    logging.getLogger().setLevel(settings.log_level)

    ctx = build_context(settings)
    config = uvicorn.Config(create_app(ctx), host=settings.host, port=settings.port, log_config=None)
    RelayServer(config).run()


if __name__ == "__main__":
    run()
