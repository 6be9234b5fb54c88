from typing import Any, Dict, List, Optional
import logging

from attr import dataclass
from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import Web3RPCError

from .connection import ChainConnection, ConnectionLost, Subscription


class SubscriptionError(Exception):
    pass


@dataclass
class EventResult:
    event_name: str
    event: Any = None
    error: Optional[BaseException] = None


def _parse_int(value: Any) -> Any:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return value


def normalize_log(log: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a raw JSON-RPC log into the shape web3's decoders expect."""
    out = dict(log)
    for key in ("data", "transactionHash", "blockHash"):
        if isinstance(out.get(key), str):
            out[key] = HexBytes(out[key])
    if isinstance(out.get("topics"), list):
        out["topics"] = [HexBytes(t) if isinstance(t, str) else t for t in out["topics"]]
    for key in ("blockNumber", "transactionIndex", "logIndex"):
        if key in out:
            out[key] = _parse_int(out[key])
    if isinstance(out.get("address"), str):
        out["address"] = Web3.to_checksum_address(out["address"])
    return out


class EventSubscription:
    def __init__(self, event_name: str, contract_event, subscription: Subscription, options: Dict[str, Any]):
        self.event_name = event_name
        self.id = subscription.id
        self.options = options
        self._event = contract_event
        self._queue = subscription.queue
        self.log = logging.getLogger("ContractBinding")

    async def watch_events(self):
        while True:
            item = await self._queue.get()
            if isinstance(item, ConnectionLost):
                yield EventResult(self.event_name, error=item)
                return
            try:
                decoded = self._event.process_log(normalize_log(item))
            except Exception as e:
                self.log.debug(f"Could not decode {self.event_name} log {item}: {e}")
                yield EventResult(self.event_name, error=e)
                continue
            # fields web3 does not decode (removed, data, topics) are kept from the log
            yield EventResult(self.event_name, event={**item, **decoded})


class ContractBinding:
    def __init__(self, abi: List[Any], address: Optional[str], connection: ChainConnection):
        self.w3 = Web3()
        self.abi = abi
        self.address = address
        self.connection = connection
        if address:
            self.contract = self.w3.eth.contract(abi=abi, address=address)
        else:
            self.contract = self.w3.eth.contract(abi=abi)

    def event_abi(self, event_name: str) -> Dict[str, Any]:
        for entry in self.abi:
            if isinstance(entry, dict) and entry.get("type") == "event" and entry.get("name") == event_name:
                return entry
        raise SubscriptionError(f"Event {event_name} not found in contract ABI")

    def log_filter(self, event_name: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        event_abi = self.event_abi(event_name)
        log_filter: Dict[str, Any] = {}
        if self.address:
            log_filter["address"] = self.address
        if not event_abi.get("anonymous", False):
            log_filter["topics"] = [Web3.to_hex(event_abi_to_log_topic(event_abi))]
        log_filter.update(options or {})
        return log_filter

    async def subscribe(self, event_name: str, options: Optional[Dict[str, Any]] = None) -> EventSubscription:
        options = options or {}
        log_filter = self.log_filter(event_name, options)
        try:
            subscription = await self.connection.subscribe("logs", log_filter)
        except Web3RPCError as e:
            raise SubscriptionError(f"eth_subscribe rejected for {event_name}: {e}") from e
        return EventSubscription(event_name, self.contract.events[event_name](), subscription, options)
