import pytest
from fastapi.testclient import TestClient

import chunk_uploader.main as main
from chunk_uploader.handler import UploadHandler

from conftest import FILENAME, IDENTIFIER


def _fields(chunk_number: int, current: int = 100, **overrides) -> dict:
    fields = {
        "flowChunkNumber": str(chunk_number),
        "flowTotalChunks": "2",
        "flowChunkSize": "100",
        "flowTotalSize": "200",
        "flowIdentifier": IDENTIFIER,
        "flowFilename": FILENAME,
        "flowRelativePath": FILENAME,
        "flowCurrentChunkSize": str(current),
    }
    fields.update(overrides)
    return fields


def _file(data: bytes) -> dict:
    return {"file": ("blob", data, "application/octet-stream")}


@pytest.fixture
def client(monkeypatch, store, lock, notifier):
    monkeypatch.setattr(main, "handler", UploadHandler(store=store, lock=lock, notifier=notifier))
    with TestClient(main.app) as test_client:
        yield test_client


def test_probe_then_upload_then_merge(client, store, notifier, payload) -> None:
    probe = client.get("/upload", params=_fields(1))
    assert probe.status_code == 204

    first = client.post("/upload", data=_fields(1), files=_file(payload[:100]))
    assert first.status_code == 200, first.text
    assert first.json() == {"done": 50}

    assert client.get("/upload", params=_fields(1)).status_code == 200
    assert client.get("/upload", params=_fields(2)).status_code == 204

    second = client.post("/upload", data=_fields(2), files=_file(payload[100:]))
    assert second.status_code == 200, second.text
    body = second.json()
    assert body["done"] == 100
    assert body["disk"] == "local"
    assert body["file"].startswith("merged/")
    assert body["file"].endswith(".txt")
    assert store.read(body["file"]) == payload
    assert len(notifier.events) == 1


def test_resent_chunk_is_accepted(client, payload) -> None:
    client.post("/upload", data=_fields(1), files=_file(payload[:100]))
    again = client.post("/upload", data=_fields(1), files=_file(payload[:100]))

    assert again.status_code == 200
    assert again.json() == {"done": 50}


def test_missing_file_part_is_rejected(client) -> None:
    response = client.post("/upload", data=_fields(1))

    assert response.status_code == 400
    assert response.json()["error_code"] == "bad_request"


def test_missing_field_is_validation_failed(client, payload) -> None:
    fields = _fields(1)
    del fields["flowTotalSize"]

    response = client.post("/upload", data=fields, files=_file(payload[:100]))

    assert response.status_code == 422
    body = response.json()
    assert body["error_code"] == "validation_failed"
    assert "flowTotalSize" in body["detail"]
    assert body["identifier"] == IDENTIFIER


def test_probe_with_bad_fields_is_validation_failed(client) -> None:
    response = client.get("/upload", params=_fields(1, flowChunkNumber="0"))

    assert response.status_code == 422
    assert response.json()["error_code"] == "validation_failed"


def test_payload_size_mismatch(client, store, payload) -> None:
    response = client.post("/upload", data=_fields(2), files=_file(payload[100:150]))

    assert response.status_code == 400
    assert response.json()["error_code"] == "size_mismatch"
    assert store.list_keys("chunks/") == []


def test_overlapping_chunk_is_conflict(client, payload) -> None:
    client.post("/upload", data=_fields(1), files=_file(payload[:100]))

    response = client.post(
        "/upload",
        data=_fields(1, flowChunkSize="50", flowTotalChunks="4"),
        files=_file(payload[:50]),
    )

    assert response.status_code == 409
    assert response.json()["error_code"] == "inconsistent_rewrite"


@pytest.mark.parametrize("method", ["PUT", "DELETE", "PATCH", "OPTIONS", "TRACE", "CONNECT"])
def test_other_methods_are_not_allowed(client, method: str) -> None:
    response = client.request(method, "/upload")

    assert response.status_code == 405
    assert response.json()["error_code"] == "method_not_allowed"


def test_head_is_not_allowed(client) -> None:
    response = client.head("/upload", params=_fields(1))

    assert response.status_code == 405
    assert response.content == b""


def test_health_version_and_metrics(client, payload) -> None:
    assert client.get("/health").json() == {"status": "ok"}

    version = client.get("/version")
    assert version.status_code == 200
    assert version.json()["upload_protocol"] == "flow-js"
    assert version.headers["X-Chunk-Uploader-Version"]

    client.post("/upload", data=_fields(1), files=_file(payload[:100]))
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "chunks_stored_total" in metrics.text
    assert "http_request_duration_seconds" in metrics.text
