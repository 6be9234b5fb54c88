import logging
from typing import Optional

from .connection import ChainConnection


def attach_lifecycle_logging(connection: ChainConnection, log: Optional[logging.Logger] = None) -> None:
    log = log or logging.getLogger("provider")
    connection.on("connect", lambda: log.info("Connected to provider"))
    connection.on("disconnect", lambda: log.info("Disconnected from provider"))
    connection.on("error", lambda error: log.error(f"Provider error: {error}"))
