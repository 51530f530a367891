"""Share Receiver - FastAPI application."""

import asyncio
import logging
import sys
import os
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request, status, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import httpx

from shared.config import (
    get_aws_config,
    get_empty_file_policy,
    get_ingest_config,
    get_redirect_root,
    get_sync_config,
)
from shared.db_operations import ShareQueue, StorageUnavailable
from shared.models import ShareOutcome, TriggerKind
from services.share_receiver.delivery import DeliveryClient
from services.share_receiver.notifications import NotificationBus
from services.share_receiver.parser import CapturedBody, ParseFailure, SharePayloadParser
from services.share_receiver.receiver import ShareReceiver
from services.share_receiver.s3_client import S3Client
from services.share_receiver.scheduler import ConnectivityTrigger, PeriodicTrigger, SyncScheduler
from services.share_receiver.uploader import UploadStrategySelector

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

PROCESS_SHARE_QUEUE = "PROCESS_SHARE_QUEUE"

# Global instances
share_queue: Optional[ShareQueue] = None
ingest_client: Optional[httpx.AsyncClient] = None
probe_client: Optional[httpx.AsyncClient] = None
notification_bus: Optional[NotificationBus] = None
share_receiver: Optional[ShareReceiver] = None
sync_scheduler: Optional[SyncScheduler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global share_queue, ingest_client, probe_client, notification_bus, share_receiver, sync_scheduler

    logger.info("Share Receiver starting up...")

    share_queue = ShareQueue()
    share_queue.create_tables()
    logger.info(f"Share queue initialized at {share_queue.database_url}")

    aws_config = get_aws_config()
    s3_client = S3Client(
        bucket_name=aws_config["s3_bucket"],
        region=aws_config["region"],
        access_key_id=aws_config["access_key_id"],
        secret_access_key=aws_config["secret_access_key"],
        endpoint_url=aws_config["endpoint_url"]
    )
    logger.info(f"S3 client initialized for bucket {aws_config['s3_bucket']}")

    ingest_config = get_ingest_config()
    ingest_client = httpx.AsyncClient(timeout=ingest_config["timeout"])
    probe_client = httpx.AsyncClient(timeout=5.0)
    logger.info(f"HTTP clients initialized - Ingest: {ingest_config['url']}")

    notification_bus = NotificationBus()
    delivery_client = DeliveryClient(
        ingest_client=ingest_client,
        uploader=UploadStrategySelector(s3_client),
        queue=share_queue,
        notification_bus=notification_bus,
        ingest_url=ingest_config["url"],
        empty_file_policy=get_empty_file_policy()
    )

    sync_config = get_sync_config()
    sync_scheduler = SyncScheduler(
        queue=share_queue,
        delivery=delivery_client,
        sources=[
            ConnectivityTrigger(probe_client, ingest_config["health_url"], sync_config["connectivity_poll"]),
            PeriodicTrigger(sync_config["interval"]),
        ]
    )
    share_receiver = ShareReceiver(
        parser=SharePayloadParser(),
        delivery=delivery_client,
        queue=share_queue,
        scheduler=sync_scheduler
    )
    sync_scheduler.start()

    yield

    # Cleanup
    await sync_scheduler.stop()
    await ingest_client.aclose()
    await probe_client.aclose()
    logger.info("Share Receiver shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Share Receiver",
    description="Receives shared content and delivers it, queueing shares while offline",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


def build_redirect_url(root: str, outcome: ShareOutcome) -> str:
    """Append the outcome query string to the application root."""
    separator = "&" if "?" in root else "?"
    return f"{root}{separator}{outcome.query_string()}"


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    queue_healthy = False
    pending = None
    try:
        pending = await asyncio.to_thread(share_queue.count)
        queue_healthy = True
    except StorageUnavailable as e:
        logger.error(f"Share queue health check failed: {e}")

    return {
        "status": "healthy" if queue_healthy else "degraded",
        "service": "share_receiver",
        "version": "0.1.0",
        "dependencies": {
            "share_queue": "up" if queue_healthy else "down"
        },
        "pending_shares": pending,
        "notification_listeners": notification_bus.listener_count
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Share Receiver",
        "version": "0.1.0",
        "status": "running"
    }


@app.post("/share-target")
async def share_target(request: Request):
    """
    Receive a share from the OS share sheet.

    The body is read exactly once and handed to the receiver. The sender is
    always redirected back to the application root with the outcome in the
    query string:

    - ``shared=success``: delivered now
    - ``shared=pending``: queued, delivered on the next sync
    - ``shared=error&reason=parse_failed|upload_failed|unknown``
    """
    try:
        body = await CapturedBody.capture(request)
    except ParseFailure as e:
        logger.warning(f"Share body could not be read: {e}")
        outcome = ShareOutcome.error("parse_failed")
    else:
        outcome = await share_receiver.handle(body)

    logger.info(f"Share handled: {outcome.query_string()}")
    return RedirectResponse(
        url=build_redirect_url(get_redirect_root(), outcome),
        status_code=status.HTTP_303_SEE_OTHER
    )


# Request/Response models
class ProcessQueueResponse(BaseModel):
    """Response model for an explicit drain command."""
    status: str
    trigger: str


class QueuedFileResponse(BaseModel):
    """File metadata of a queued share; the file data is never listed."""
    name: str
    type: str
    size: int


class QueuedShareResponse(BaseModel):
    """Response model for a queued share."""
    id: int
    title: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None
    files: List[QueuedFileResponse]
    timestamp: int
    stale: bool


class QueueListResponse(BaseModel):
    """Response model for the queue listing."""
    count: int
    entries: List[QueuedShareResponse]


@app.post(
    "/internal/share-queue/process",
    response_model=ProcessQueueResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def process_share_queue():
    """
    Drain the offline share queue now.

    Returns immediately; the drain runs in a scheduler task that shutdown
    waits for.
    """
    logger.info("Received share queue drain command")
    sync_scheduler.trigger(TriggerKind.COMMAND)
    return ProcessQueueResponse(status="queued", trigger=TriggerKind.COMMAND.value)


@app.get("/internal/share-queue", response_model=QueueListResponse)
async def list_share_queue():
    """
    List queued shares without their file data.

    Entries older than SHARE_QUEUE_STALE_AFTER_HOURS are flagged ``stale``.
    They stay queued; nothing is removed without a successful delivery.
    """
    try:
        entries = await asyncio.to_thread(share_queue.list_all)
    except StorageUnavailable as e:
        logger.error(f"Failed to list share queue: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "Share queue unavailable", "detail": str(e)}
        )

    stale_after_ms = int(get_sync_config()["stale_after_hours"] * 3600 * 1000)
    now_ms = int(time.time() * 1000)

    items = []
    for entry in entries:
        stale = now_ms - entry.timestamp > stale_after_ms
        if stale:
            logger.warning(f"Queued share {entry.id} has been pending since {entry.timestamp}")
        items.append(QueuedShareResponse(
            id=entry.id,
            title=entry.title,
            text=entry.text,
            url=entry.url,
            files=[
                QueuedFileResponse(name=f.name, type=f.type, size=f.size)
                for f in entry.files
            ],
            timestamp=entry.timestamp,
            stale=stale
        ))

    return QueueListResponse(count=len(items), entries=items)


@app.websocket("/internal/share-queue/events")
async def share_queue_events(websocket: WebSocket):
    """
    Stream SHARE_SYNCED events to a foreground client.

    The client may send ``{"type": "PROCESS_SHARE_QUEUE"}`` to request a drain.
    """
    await websocket.accept()
    listener = websocket.send_json
    notification_bus.connect(listener)
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                logger.warning("Ignoring malformed WebSocket message")
                continue
            if isinstance(message, dict) and message.get("type") == PROCESS_SHARE_QUEUE:
                logger.info("Received share queue drain command over WebSocket")
                sync_scheduler.trigger(TriggerKind.COMMAND)
            else:
                logger.debug(f"Ignoring WebSocket message: {message!r}")
    except WebSocketDisconnect:
        logger.debug("Notification WebSocket disconnected")
    finally:
        notification_bus.disconnect(listener)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("SHARE_RECEIVER_PORT", 8006))
    uvicorn.run(app, host="0.0.0.0", port=port)
