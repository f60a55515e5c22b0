import uuid
import logging

from fastapi import FastAPI, Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text

import redis.asyncio as redis

from common.config import settings
from common.bridge import build_blob_namespace, status_from_record
from common.jobs import (
    TOPIC_FULL_SYNC, TOPIC_MESSAGE_UPDATED, TOPIC_PRUNE, TOPIC_SNAPSHOT_CHANGED, enqueue_job
)
from common.mapping import MappingStore
from common.persistence import SqlStateBlobStore
from api.schemas import (
    MessageUpdatedRequest, SnapshotChangedRequest, SyncStatusResponse, SyncTriggerResponse
)

logger = logging.getLogger(__name__)
app = FastAPI(title="Shopping List Bridge API")

# DB Setup
engine = create_async_engine(settings.DATABASE_URL, echo=settings.APP_ENV == "dev")
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

def get_mapping_store() -> MappingStore:
    blobs = SqlStateBlobStore(AsyncSessionLocal, namespace=build_blob_namespace(settings.BRIDGE_INSTANCE_ID))
    return MappingStore(blobs)

# --- Middleware & Dependencies ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

async def get_authenticated_user(request: Request):
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid authorization header")
    token = auth_header.split(" ")[1]
    if token not in settings.auth_tokens:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return "operator"

async def _enqueue(topic: str, payload: dict) -> SyncTriggerResponse:
    job_id = await enqueue_job(redis_client, settings.SYNC_QUEUE, topic, payload)
    logger.info(f"Enqueued {topic} job {job_id}")
    return SyncTriggerResponse(status="ok", job_id=job_id, enqueued=True)


@app.get("/health/live")
async def health_live():
    return {"status": "ok"}

@app.get("/health/ready")
async def health_ready(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        await redis_client.ping()
    except Exception:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Infrastructure unreachable")
    return {"status": "ready"}


# --- Sync triggers ---

@app.post("/v1/sync/snapshot", response_model=SyncTriggerResponse, dependencies=[Depends(get_authenticated_user)])
async def trigger_snapshot_sync(payload: SnapshotChangedRequest):
    if payload.state_id and payload.state_id != settings.JSON_STATE_ID:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown state id: {payload.state_id}")
    return await _enqueue(TOPIC_SNAPSHOT_CHANGED, payload.model_dump())

@app.post("/v1/sync/message", response_model=SyncTriggerResponse, dependencies=[Depends(get_authenticated_user)])
async def trigger_message_sync(payload: MessageUpdatedRequest):
    body = {"ref": payload.ref}
    if payload.items is not None:
        body["items"] = [it.model_dump(by_alias=True) for it in payload.items]
    return await _enqueue(TOPIC_MESSAGE_UPDATED, body)

@app.post("/v1/sync/full", response_model=SyncTriggerResponse, dependencies=[Depends(get_authenticated_user)])
async def trigger_full_sync():
    return await _enqueue(TOPIC_FULL_SYNC, {})

@app.post("/v1/sync/prune", response_model=SyncTriggerResponse, dependencies=[Depends(get_authenticated_user)])
async def trigger_prune():
    return await _enqueue(TOPIC_PRUNE, {})

@app.get("/v1/sync/status", response_model=SyncStatusResponse, dependencies=[Depends(get_authenticated_user)])
async def get_sync_status(mapping: MappingStore = Depends(get_mapping_store)):
    await mapping.load()
    return status_from_record(mapping, settings.JSON_STATE_ID)
