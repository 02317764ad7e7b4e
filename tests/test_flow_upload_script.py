import pytest
from fastapi.testclient import TestClient

import chunk_uploader.main as main
from chunk_uploader.handler import UploadHandler
from scripts.flow_upload import chunk_bounds, flow_identifier, total_chunks_for, upload_file


def test_identifier_and_chunk_math(tmp_path) -> None:
    assert flow_identifier(tmp_path / "my file (1).txt", 250) == "250-myfile1txt"
    assert total_chunks_for(250, 100, force_chunk_size=False) == 2
    assert total_chunks_for(250, 100, force_chunk_size=True) == 3
    assert total_chunks_for(50, 100, force_chunk_size=False) == 1
    assert chunk_bounds(2, 2, 100, 250) == (100, 250)
    assert chunk_bounds(3, 3, 100, 250) == (200, 250)


@pytest.mark.parametrize("force_chunk_size", [False, True])
def test_upload_file_against_app(tmp_path, monkeypatch, store, lock, notifier, force_chunk_size: bool) -> None:
    monkeypatch.setattr(main, "handler", UploadHandler(store=store, lock=lock, notifier=notifier))
    source = tmp_path / "report.csv"
    source.write_bytes(bytes(i % 256 for i in range(250)))

    with TestClient(main.app) as client:
        summary = upload_file(client, "/upload", source, chunk_size=100, workers=1, force_chunk_size=force_chunk_size)

    assert summary["identifier"] == "250-reportcsv"
    assert summary["chunks_skipped"] == 0
    assert summary["disk"] == "local"
    assert store.read(summary["artifact"]) == source.read_bytes()
    assert len(notifier.events) == 1
