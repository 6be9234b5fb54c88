import json, logging, os
from typing import Any, List, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

import dotenv
from pydantic import BaseModel, ConfigDict
from web3 import Web3

DEFAULT_PORT = 3000
DEFAULT_HOST = "0.0.0.0"

_WS_SCHEMES = {"http": "wss", "https": "wss", "ws": "ws", "wss": "wss"}


class ConfigError(Exception):
    def __init__(self, variable: str, message: str):
        super().__init__(message)
        self.variable = variable


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    rpc_url: str
    ws_url: str
    contract_address: Optional[str] = None
    contract_abi: List[Any] = []
    event_names: List[str] = []
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    log_level: str = "INFO"


def to_websocket_url(url: str) -> str:
    """
    Rewrite an HTTP-family endpoint to its WebSocket equivalent.
    Only the scheme component is changed, the rest of the URL is kept as is.
    """
    parts = urlsplit(url.strip())
    scheme = _WS_SCHEMES.get(parts.scheme.lower())
    if scheme is None or not parts.netloc:
        raise ConfigError("RPC_URL", f"RPC_URL is not an http(s) or ws(s) URL: {url!r}")
    return urlunsplit(parts._replace(scheme=scheme))


def _parse_json(variable: str, raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(variable, f"{variable} is not valid JSON: {e}") from e


def parse_contract_abi(raw: Optional[str]) -> List[Any]:
    if raw is None or not raw.strip():
        return []
    abi = _parse_json("CONTRACT_ABI", raw)
    if isinstance(abi, dict):
        # compiler artifacts carry the ABI under "abi"
        abi = abi["abi"] if "abi" in abi else [abi]
    if not isinstance(abi, list):
        raise ConfigError("CONTRACT_ABI", "CONTRACT_ABI must be a JSON array or object")
    return abi


def parse_event_names(raw: Optional[str]) -> List[str]:
    if raw is None or not raw.strip():
        return []
    names = _parse_json("EVENT_NAMES", raw)
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise ConfigError("EVENT_NAMES", "EVENT_NAMES must be a JSON array of strings")
    return names


def parse_contract_address(raw: Optional[str]) -> Optional[str]:
    if raw is None or not raw.strip():
        return None
    if not Web3.is_address(raw.strip()):
        raise ConfigError("CONTRACT_ADDRESS", f"CONTRACT_ADDRESS is not a valid address: {raw!r}")
    return Web3.to_checksum_address(raw.strip())


def parse_port(raw: Optional[str]) -> int:
    if raw is None or not raw.strip():
        return DEFAULT_PORT
    try:
        port = int(raw)
    except ValueError as e:
        raise ConfigError("PORT", f"PORT must be an integer: {raw!r}") from e
    if not 0 < port < 65536:
        raise ConfigError("PORT", f"PORT out of range: {port}")
    return port


def parse_log_level(raw: Optional[str]) -> str:
    level = (raw or "INFO").strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigError("LOG_LEVEL", f"LOG_LEVEL is not a logging level: {raw!r}")
    return level


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    if environ is None:
        dotenv.load_dotenv()
        environ = os.environ

    rpc_url = (environ.get("RPC_URL") or "").strip()
    if not rpc_url:
        raise ConfigError("RPC_URL", "No RPC_URL found in environment")

    settings = Settings(
        rpc_url=rpc_url,
        ws_url=to_websocket_url(rpc_url),
        contract_address=parse_contract_address(environ.get("CONTRACT_ADDRESS")),
        contract_abi=parse_contract_abi(environ.get("CONTRACT_ABI")),
        event_names=parse_event_names(environ.get("EVENT_NAMES")),
        port=parse_port(environ.get("PORT")),
        host=environ.get("HOST") or DEFAULT_HOST,
        log_level=parse_log_level(environ.get("LOG_LEVEL")),
    )
    logging.getLogger("config").debug(
        f"Loaded settings for {settings.ws_url} ({len(settings.event_names)} event(s))"
    )
    return settings
