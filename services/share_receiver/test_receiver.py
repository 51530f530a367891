"""Unit tests for the share receiver and its HTTP routes.

Tests cover:
- Online, offline and unparseable shares
- Storage and ingestion rejections
- Queue store failures
- Share target redirect, queue listing, drain command and WebSocket events
"""

import time
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from shared.db_operations import ShareQueue, StorageUnavailable
from shared.models import DeliveryOutcome, DeliveryResult, ShareOutcome, TriggerKind
from services.share_receiver.parser import CapturedBody, SharePayloadParser
from services.share_receiver.receiver import ShareReceiver

BOUNDARY = "----shareboundary"


def multipart(fields, files=(), boundary=BOUNDARY):
    """Build a multipart/form-data body from text fields and (name, filename, type, data) files."""
    data = b""
    for name, value in fields.items():
        data += (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
            f"{value}\r\n"
        ).encode("utf-8")
    for name, filename, content_type, content in files:
        data += (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode("utf-8") + content + b"\r\n"
    data += f"--{boundary}--\r\n".encode("utf-8")
    return data


def captured(fields, files=()):
    return CapturedBody(
        content_type=f"multipart/form-data; boundary={BOUNDARY}",
        data=multipart(fields, files)
    )


@pytest.fixture
def queue(tmp_path):
    """Create a test share queue in a temporary SQLite file."""
    share_queue = ShareQueue(database_url=f"sqlite:///{tmp_path / 'queue.db'}")
    share_queue.create_tables()
    return share_queue


@pytest.fixture
def mock_delivery():
    delivery = Mock()
    delivery.deliver = AsyncMock(
        return_value=DeliveryResult(outcome=DeliveryOutcome.SUCCESS, stage="ingest")
    )
    delivery.discard_stored = AsyncMock()
    return delivery


@pytest.fixture
def mock_scheduler():
    return Mock()


@pytest.fixture
def receiver(mock_delivery, queue, mock_scheduler):
    return ShareReceiver(
        parser=SharePayloadParser(),
        delivery=mock_delivery,
        queue=queue,
        scheduler=mock_scheduler
    )


@pytest.mark.asyncio
async def test_online_share_succeeds(receiver, mock_delivery, queue, mock_scheduler):
    """Scenario: a text share while online is delivered and not queued."""
    outcome = await receiver.handle(captured({"text": "hello"}))

    assert outcome == ShareOutcome.success()
    assert mock_delivery.deliver.call_args[0][0].text == "hello"
    assert queue.list_all() == []
    mock_scheduler.register_sync.assert_not_called()


@pytest.mark.asyncio
async def test_offline_share_is_queued(receiver, mock_delivery, queue, mock_scheduler):
    """Scenario: a text share while offline is queued and a sync is registered."""
    mock_delivery.deliver.return_value = DeliveryResult(
        outcome=DeliveryOutcome.NETWORK_FAILURE, stage="ingest", detail="Connection refused"
    )

    outcome = await receiver.handle(captured({"text": "hello"}))

    entries = queue.list_all()
    assert len(entries) == 1
    assert entries[0].text == "hello"
    assert outcome == ShareOutcome.pending(entries[0].id)
    assert outcome.query_string() == "shared=pending"
    mock_scheduler.register_sync.assert_called_once()


@pytest.mark.asyncio
async def test_offline_file_share_is_queued_with_data(receiver, mock_delivery, queue):
    mock_delivery.deliver.return_value = DeliveryResult(
        outcome=DeliveryOutcome.NETWORK_FAILURE, stage="storage"
    )
    content = bytes(range(256)) * 4

    outcome = await receiver.handle(
        captured({"title": "Scan"}, files=[("file", "scan.png", "image/png", content)])
    )

    assert outcome.status == "pending"
    entry = queue.list_all()[0]
    assert entry.title == "Scan"
    assert entry.files[0].name == "scan.png"
    assert entry.to_payload().file.data == content


@pytest.mark.asyncio
async def test_offline_share_queues_every_file(receiver, mock_delivery, queue):
    mock_delivery.deliver.return_value = DeliveryResult(
        outcome=DeliveryOutcome.NETWORK_FAILURE, stage="ingest"
    )

    outcome = await receiver.handle(captured(
        {"text": "album"},
        files=[
            ("media", "a.png", "image/png", b"first"),
            ("media", "b.mp4", "video/mp4", b"second"),
        ]
    ))

    assert outcome.status == "pending"
    payload = queue.list_all()[0].to_payload()
    assert [(f.name, f.mime_type, f.data) for f in payload.files] == [
        ("a.png", "image/png", b"first"),
        ("b.mp4", "video/mp4", b"second"),
    ]


@pytest.mark.asyncio
async def test_queued_share_discards_unreferenced_objects(receiver, mock_delivery, queue):
    """Scenario: a file is stored, the record write fails, the share is queued."""
    mock_delivery.deliver.return_value = DeliveryResult(
        outcome=DeliveryOutcome.NETWORK_FAILURE,
        stage="ingest",
        keys=["shares/1a2b-a.png"],
        orphaned_keys=["shares/1a2b-a.png"]
    )

    outcome = await receiver.handle(captured({}, files=[("file", "a.png", "image/png", b"png")]))

    assert outcome.status == "pending"
    mock_delivery.discard_stored.assert_awaited_once_with(["shares/1a2b-a.png"])
    assert queue.count() == 1


@pytest.mark.asyncio
async def test_upload_failure_discards_earlier_objects(receiver, mock_delivery, queue):
    mock_delivery.deliver.return_value = DeliveryResult(
        outcome=DeliveryOutcome.SERVER_REJECTED,
        stage="storage",
        keys=["shares/1a2b-a.png"],
        orphaned_keys=["shares/1a2b-a.png"]
    )

    outcome = await receiver.handle(captured({}, files=[
        ("file", "a.png", "image/png", b"1"),
        ("file", "b.png", "image/png", b"2"),
    ]))

    assert outcome == ShareOutcome.error("upload_failed")
    mock_delivery.discard_stored.assert_awaited_once_with(["shares/1a2b-a.png"])
    assert queue.count() == 0


@pytest.mark.asyncio
async def test_missing_boundary_is_parse_failure(receiver, mock_delivery, queue):
    """Scenario: a body without a boundary is reported and nothing is queued."""
    body = CapturedBody(content_type="multipart/form-data", data=multipart({"text": "hello"}))

    outcome = await receiver.handle(body)

    assert outcome.query_string() == "shared=error&reason=parse_failed"
    mock_delivery.deliver.assert_not_called()
    assert queue.list_all() == []


@pytest.mark.asyncio
async def test_share_without_content_is_parse_failure(receiver, mock_delivery):
    outcome = await receiver.handle(captured({"other": "value", "text": "   "}))

    assert outcome == ShareOutcome.error("parse_failed")
    mock_delivery.deliver.assert_not_called()


@pytest.mark.asyncio
async def test_storage_rejection_is_upload_failure(receiver, mock_delivery, queue):
    mock_delivery.deliver.return_value = DeliveryResult(
        outcome=DeliveryOutcome.SERVER_REJECTED, stage="storage", detail="AccessDenied"
    )

    outcome = await receiver.handle(
        captured({}, files=[("file", "a.pdf", "application/pdf", b"%PDF")])
    )

    assert outcome.query_string() == "shared=error&reason=upload_failed"
    assert queue.list_all() == []


@pytest.mark.asyncio
async def test_ingest_rejection_is_queued(receiver, mock_delivery, queue):
    mock_delivery.deliver.return_value = DeliveryResult(
        outcome=DeliveryOutcome.SERVER_REJECTED, stage="ingest", detail="503: unavailable"
    )

    outcome = await receiver.handle(captured({"url": "https://example.com"}))

    assert outcome.status == "pending"
    assert queue.list_all()[0].url == "https://example.com"


@pytest.mark.asyncio
async def test_queue_unavailable_is_unknown_error(mock_delivery):
    mock_delivery.deliver.return_value = DeliveryResult(
        outcome=DeliveryOutcome.NETWORK_FAILURE, stage="ingest"
    )
    broken_queue = Mock()
    broken_queue.enqueue.side_effect = StorageUnavailable("disk full")
    receiver = ShareReceiver(parser=SharePayloadParser(), delivery=mock_delivery, queue=broken_queue)

    outcome = await receiver.handle(captured({"text": "hello"}))

    assert outcome.query_string() == "shared=error&reason=unknown"


@pytest.mark.asyncio
async def test_unexpected_error_is_unknown_error(receiver, mock_delivery, queue):
    mock_delivery.deliver.side_effect = RuntimeError("boom")

    outcome = await receiver.handle(captured({"text": "hello"}))

    assert outcome == ShareOutcome.error("unknown")
    assert queue.list_all() == []


# HTTP routes

@pytest.fixture
def app_client(tmp_path, monkeypatch):
    """Run the service against a file-backed queue with a mocked ingestion API."""
    monkeypatch.setenv("SHARE_QUEUE_DATABASE_URL", f"sqlite:///{tmp_path / 'queue.db'}")
    monkeypatch.setenv("INGEST_API_URL", "http://ingest.test/api/share")
    monkeypatch.setenv("INGEST_HEALTH_URL", "http://ingest.test/api/health")
    monkeypatch.setenv("SHARE_REDIRECT_ROOT", "/app")
    monkeypatch.setenv("AWS_REGION", "us-east-1")

    from services.share_receiver import main

    ingest_client = AsyncMock(spec=httpx.AsyncClient)
    ingest_client.post.return_value = Mock(status_code=200, text="ok")

    with patch.object(main.ConnectivityTrigger, "probe", AsyncMock(return_value=True)):
        with TestClient(main.app) as client:
            monkeypatch.setattr(main.share_receiver.delivery, "ingest_client", ingest_client)
            yield client, main, ingest_client


def wait_for(condition, timeout=2.0):
    """Poll until the condition holds; drains run in the app's event loop."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


def post_share(client, fields, files=()):
    return client.post(
        "/share-target",
        content=multipart(fields, files),
        headers={"Content-Type": f"multipart/form-data; boundary={BOUNDARY}"},
        follow_redirects=False
    )


def test_share_target_redirects_on_success(app_client):
    client, main, ingest_client = app_client

    response = post_share(client, {"title": "Hi", "text": "hello"})

    assert response.status_code == 303
    assert response.headers["location"] == "/app?shared=success"
    assert ingest_client.post.call_args[0][0] == "http://ingest.test/api/share"
    assert main.share_queue.count() == 0


def test_share_target_queues_when_offline_then_drains(app_client):
    client, main, ingest_client = app_client
    ingest_client.post.side_effect = httpx.ConnectError("offline")

    response = post_share(client, {"text": "hello"})

    assert response.status_code == 303
    assert response.headers["location"] == "/app?shared=pending"

    listing = client.get("/internal/share-queue").json()
    assert listing["count"] == 1
    assert listing["entries"][0]["text"] == "hello"
    assert listing["entries"][0]["stale"] is False

    ingest_client.post.side_effect = None
    response = client.post("/internal/share-queue/process")

    assert response.status_code == 202
    assert response.json() == {"status": "queued", "trigger": "command"}
    assert wait_for(lambda: client.get("/internal/share-queue").json()["count"] == 0)


def test_drain_command_uses_scheduler_trigger(app_client, monkeypatch):
    client, main, ingest_client = app_client
    trigger = Mock()
    monkeypatch.setattr(main.sync_scheduler, "trigger", trigger)

    response = client.post("/internal/share-queue/process")

    assert response.status_code == 202
    trigger.assert_called_once_with(TriggerKind.COMMAND)


def test_share_target_parse_failure(app_client):
    client, main, ingest_client = app_client

    response = client.post(
        "/share-target",
        content=b"not multipart",
        headers={"Content-Type": "text/plain"},
        follow_redirects=False
    )

    assert response.status_code == 303
    assert response.headers["location"] == "/app?shared=error&reason=parse_failed"
    ingest_client.post.assert_not_called()


def test_queue_listing_omits_file_data(app_client):
    client, main, ingest_client = app_client
    ingest_client.post.side_effect = httpx.ConnectError("offline")

    post_share(client, {}, files=[("media", "a.txt", "text/plain", b"secret bytes")])

    entry = client.get("/internal/share-queue").json()["entries"][0]
    assert entry["files"] == [{"name": "a.txt", "type": "text/plain", "size": 12}]


def test_websocket_receives_share_synced(app_client):
    client, main, ingest_client = app_client
    ingest_client.post.side_effect = httpx.ConnectError("offline")
    post_share(client, {"text": "queued"})
    queue_id = main.share_queue.list_all()[0].id
    ingest_client.post.side_effect = None

    with client.websocket_connect("/internal/share-queue/events") as websocket:
        websocket.send_json({"type": "PROCESS_SHARE_QUEUE"})
        message = websocket.receive_json()

    assert message == {"type": "SHARE_SYNCED", "id": queue_id}
    assert main.share_queue.count() == 0


def test_health_reports_pending_shares(app_client):
    client, main, ingest_client = app_client

    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["pending_shares"] == 0
    assert body["dependencies"]["share_queue"] == "up"


def test_build_redirect_url():
    from services.share_receiver.main import build_redirect_url

    assert build_redirect_url("/", ShareOutcome.success()) == "/?shared=success"
    assert build_redirect_url("/app?src=pwa", ShareOutcome.error("upload_failed")) == (
        "/app?src=pwa&shared=error&reason=upload_failed"
    )
