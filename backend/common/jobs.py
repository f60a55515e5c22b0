import json
import uuid
from typing import Any, Dict, Optional

TOPIC_SNAPSHOT_CHANGED = "sync.snapshot_changed"
TOPIC_MESSAGE_UPDATED = "sync.message_updated"
TOPIC_FULL_SYNC = "sync.full"
TOPIC_PRUNE = "sync.prune"

SYNC_TOPICS = {TOPIC_SNAPSHOT_CHANGED, TOPIC_MESSAGE_UPDATED, TOPIC_FULL_SYNC, TOPIC_PRUNE}


def build_job(topic: str, payload: Optional[Dict[str, Any]] = None, job_id: Optional[str] = None) -> Dict[str, Any]:
    if topic not in SYNC_TOPICS:
        raise ValueError(f"Unsupported topic: {topic}")
    return {
        "job_id": job_id or str(uuid.uuid4()),
        "topic": topic,
        "payload": payload or {},
        "attempt": 1,
    }


async def enqueue_job(redis_client: Any, queue: str, topic: str, payload: Optional[Dict[str, Any]] = None) -> str:
    job = build_job(topic, payload)
    await redis_client.rpush(queue, json.dumps(job))
    return job["job_id"]
