import asyncio
import logging
import json

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from common.adapter import adapter
from common.alexa import alexa_adapter
from common.bridge import ShoppingListBridge, build_blob_namespace
from common.config import settings
from common.jobs import (
    TOPIC_FULL_SYNC, TOPIC_MESSAGE_UPDATED, TOPIC_PRUNE, TOPIC_SNAPSHOT_CHANGED
)
from common.models import init_models
from common.persistence import SqlStateBlobStore
from common.schemas import BridgeOptions, ListItem
from common.store import SqlMessageStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("worker")

# DB Setup
engine = create_async_engine(settings.DATABASE_URL)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

DEFAULT_QUEUE = settings.SYNC_QUEUE
DLQ = f"{settings.SYNC_QUEUE}:dead_letter"
MAX_ATTEMPTS = 3


def build_bridge() -> ShoppingListBridge:
    options = BridgeOptions.from_settings(settings)
    return ShoppingListBridge(
        store=SqlMessageStore(AsyncSessionLocal),
        blobs=SqlStateBlobStore(AsyncSessionLocal, namespace=build_blob_namespace(options.instance_id)),
        transport=alexa_adapter,
        options=options,
        classifier=adapter,
    )


async def handle_snapshot_changed(bridge: ShoppingListBridge, payload: dict):
    await bridge.on_snapshot_changed(payload.get("state_id"), payload.get("raw"))


async def handle_message_updated(bridge: ShoppingListBridge, payload: dict):
    raw_items = payload.get("items")
    items = None
    if isinstance(raw_items, list):
        items = [ListItem.model_validate(it) for it in raw_items]
    await bridge.on_message_updated(payload.get("ref"), items)


async def handle_prune(bridge: ShoppingListBridge, payload: dict):
    pruned = await bridge.prune_completed()
    if pruned:
        await bridge.sync_to_external()


async def process_job(job_data: dict, bridge: ShoppingListBridge):
    topic = job_data.get("topic")
    payload = job_data.get("payload") or {}
    job_id = job_data.get("job_id")
    attempt = job_data.get("attempt", 1)

    logger.info(f"Processing job: {topic} (id: {job_id}, attempt: {attempt})")

    try:
        if topic == TOPIC_SNAPSHOT_CHANGED:
            await handle_snapshot_changed(bridge, payload)
        elif topic == TOPIC_MESSAGE_UPDATED:
            await handle_message_updated(bridge, payload)
        elif topic == TOPIC_FULL_SYNC:
            await bridge.full_sync()
        elif topic == TOPIC_PRUNE:
            await handle_prune(bridge, payload)
        else:
            logger.warning(f"Unknown topic: {topic}")
            return
    except Exception as e:
        logger.error(f"Job failed (attempt {attempt}): {e}")
        if attempt < MAX_ATTEMPTS:
            job_data["attempt"] = attempt + 1
            if topic == TOPIC_SNAPSHOT_CHANGED:
                # newer snapshots may run first; the retry reads the current one
                job_data["payload"] = {k: v for k, v in payload.items() if k != "raw"}
            wait_time = min(2 ** attempt, 30)
            logger.info(f"Retrying in {wait_time}s...")
            await asyncio.sleep(wait_time)
            await redis_client.rpush(DEFAULT_QUEUE, json.dumps(job_data))
        else:
            logger.error(f"Job exceeded max attempts, moving to DLQ: {job_id}")
            await redis_client.rpush(DLQ, json.dumps(job_data))


async def worker_loop(bridge: ShoppingListBridge | None = None):
    await init_models(engine)
    bridge = bridge or build_bridge()
    await bridge.start()
    logger.info("Worker started, listening for jobs...")
    try:
        while True:
            try:
                result = await redis_client.blpop(DEFAULT_QUEUE, timeout=settings.WORKER_POLL_TIMEOUT_SECONDS)
                if result:
                    _, raw_data = result
                    job_data = json.loads(raw_data)
                    await process_job(job_data, bridge)
                await bridge.run_due_timers()
            except Exception as e:
                logger.error(f"Error in worker loop: {e}")
                await asyncio.sleep(5)
    finally:
        bridge.stop()

if __name__ == "__main__":
    asyncio.run(worker_loop())
