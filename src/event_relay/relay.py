import asyncio, logging
from typing import List, Optional

import attr
from attr import dataclass

from .config import Settings
from .connection import ChainConnection
from .ethereum_watcher import ContractBinding, EventSubscription
from .lifecycle import attach_lifecycle_logging

log = logging.getLogger("relay")


@dataclass
class RelayContext:
    settings: Settings
    connection: ChainConnection
    queue: asyncio.Queue = attr.Factory(asyncio.Queue)
    producers: List[asyncio.Task] = attr.Factory(list)
    consumer: Optional[asyncio.Task] = None


def build_context(settings: Settings, connection: Optional[ChainConnection] = None) -> RelayContext:
    connection = connection or ChainConnection(settings.ws_url)
    attach_lifecycle_logging(connection)
    return RelayContext(settings=settings, connection=connection)


async def produce(subscription: EventSubscription, queue: asyncio.Queue):
    async for result in subscription.watch_events():
        await queue.put(result)


async def log_results(queue: asyncio.Queue):
    while True:
        result = await queue.get()
        if result.error is not None:
            log.error(f"Error listening to events ({result.event_name}): {result.error}")
        else:
            log.info(f"Received event: {result.event}")


async def listen_to_events(ctx: RelayContext):
    if not ctx.connection.connected:
        await ctx.connection.connect()
    settings = ctx.settings
    binding = ContractBinding(settings.contract_abi, settings.contract_address, ctx.connection)
    if not settings.event_names:
        log.warning("EVENT_NAMES is empty, nothing to subscribe to")

    for event_name in settings.event_names:
        subscription = await binding.subscribe(event_name, {})
        log.info(f"Subscribed to {event_name} ({subscription.id})")
        ctx.producers.append(asyncio.create_task(produce(subscription, ctx.queue)))


async def run_relay(ctx: RelayContext):
    """
    Register every subscription and log whatever they deliver.

    A failed registration is logged once; subscriptions registered before it
    keep delivering. This coroutine only returns when cancelled.
    """
    ctx.consumer = asyncio.create_task(log_results(ctx.queue))
    try:
        await listen_to_events(ctx)
    except Exception as e:
        log.error(f"Error listening to events: {e}")
    await ctx.consumer


async def shutdown(ctx: RelayContext):
    tasks = list(ctx.producers)
    if ctx.consumer is not None:
        tasks.append(ctx.consumer)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await ctx.connection.close()
