import asyncio

import pytest
from eth_utils import event_abi_to_log_topic
from web3 import Web3
from web3.exceptions import Web3RPCError

from event_relay.config import Settings
from event_relay.connection import ChainConnection

CONTRACT_ADDRESS = "0x" + "22" * 20
SENDER = "0x" + "11" * 20
RECEIVER = "0x" + "33" * 20

TRANSFER_EVENT = {
    "anonymous": False,
    "inputs": [
        {"indexed": True, "name": "from", "type": "address"},
        {"indexed": True, "name": "to", "type": "address"},
        {"indexed": False, "name": "value", "type": "uint256"},
    ],
    "name": "Transfer",
    "type": "event",
}
APPROVAL_EVENT = {
    "anonymous": False,
    "inputs": [
        {"indexed": True, "name": "owner", "type": "address"},
        {"indexed": True, "name": "spender", "type": "address"},
        {"indexed": False, "name": "value", "type": "uint256"},
    ],
    "name": "Approval",
    "type": "event",
}
ERC20_ABI = [
    TRANSFER_EVENT,
    APPROVAL_EVENT,
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


def topic_of(event_abi) -> str:
    return Web3.to_hex(event_abi_to_log_topic(event_abi))


def _address_topic(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


def make_log(event_abi=TRANSFER_EVENT, sender=SENDER, receiver=RECEIVER, value=1000, log_index=0):
    return {
        "address": CONTRACT_ADDRESS,
        "topics": [topic_of(event_abi), _address_topic(sender), _address_topic(receiver)],
        "data": "0x" + format(value, "064x"),
        "blockNumber": "0x10",
        "blockHash": "0x" + "cd" * 32,
        "transactionHash": "0x" + "ab" * 32,
        "transactionIndex": "0x1",
        "logIndex": hex(log_index),
        "removed": False,
    }


class FakeProvider:
    def __init__(self, error=None):
        self.error = error
        self.connected = False
        self.disconnects = 0

    async def connect(self):
        if self.error is not None:
            raise self.error
        self.connected = True

    async def disconnect(self):
        self.connected = False
        self.disconnects += 1

    async def is_connected(self):
        return self.connected


class FakeEth:
    def __init__(self, w3, reject=()):
        self.w3 = w3
        self.reject = set(reject)
        self.count = 0
        self.before_reply = []

    async def subscribe(self, subscription_type, subscription_arg=None):
        self.w3.subscribe_requests.append((subscription_type, subscription_arg))
        topics = (subscription_arg or {}).get("topics", [])
        if topics and topics[0] in self.reject:
            raise Web3RPCError("rejected")
        self.count += 1
        subscription_id = hex(self.count)
        # let the reader see these before the id is handed back
        for result in self.before_reply:
            self.w3.notify(subscription_id, result)
        while not self.w3.incoming.empty():
            await asyncio.sleep(0)
        return subscription_id


class FakeSubscriptionStream:
    def __init__(self, w3):
        self.w3 = w3

    async def process_subscriptions(self):
        while True:
            item = await self.w3.incoming.get()
            if isinstance(item, Exception):
                raise item
            yield item


class FakeWeb3:
    """In-memory stand-in for AsyncWeb3 on a persistent WebSocket provider."""

    def __init__(self, reject=(), connect_error=None):
        self.provider = FakeProvider(connect_error)
        self.eth = FakeEth(self, reject)
        self.socket = FakeSubscriptionStream(self)
        self.incoming = asyncio.Queue()
        self.subscribe_requests = []

    def feed(self, item):
        self.incoming.put_nowait(item)

    def notify(self, subscription_id, result):
        self.feed({"subscription": subscription_id, "result": result})

    def drop(self, error):
        self.provider.connected = False
        self.feed(error)


def fake_connection(w3, url="wss://node.example"):
    connection = ChainConnection(url, w3=w3)
    connection.error_delay = 0
    return connection


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def fake_w3():
    return FakeWeb3()


@pytest.fixture
def make_settings():
    def _make(**overrides):
        values = dict(
            rpc_url="https://node.example/rpc",
            ws_url="wss://node.example/rpc",
            contract_address=CONTRACT_ADDRESS,
            contract_abi=ERC20_ABI,
            event_names=["Transfer"],
        )
        values.update(overrides)
        return Settings(**values)

    return _make
