from pathlib import Path

import pytest

from chunk_uploader.exceptions import StoreUnavailable
from chunk_uploader.storage import LocalChunkStore


def test_local_store_write_and_read(tmp_path: Path) -> None:
    store = LocalChunkStore(str(tmp_path))

    store.write("chunks/upload-123/000-099", b"payload")
    assert store.read("chunks/upload-123/000-099") == b"payload"
    assert store.size("chunks/upload-123/000-099") == 7
    assert store.exists("chunks/upload-123/000-099")
    assert not store.exists("chunks/upload-123/100-199")


def test_local_store_lists_entries_under_prefix(tmp_path: Path) -> None:
    store = LocalChunkStore(str(tmp_path))
    store.write("chunks/a/000-001", b"ab")
    store.write("chunks/b/000-002", b"abc")

    entries = store.list_entries("chunks/a/")
    assert [entry.key for entry in entries] == ["chunks/a/000-001"]
    assert entries[0].size == 2
    assert entries[0].last_modified.tzinfo is not None
    assert sorted(store.list_keys("chunks/")) == ["chunks/a/000-001", "chunks/b/000-002"]
    assert store.list_entries("chunks/missing/") == []


def test_write_stream_counts_bytes_and_leaves_no_temp_files(tmp_path: Path) -> None:
    store = LocalChunkStore(str(tmp_path))

    written = store.write_stream("merged/file.bin", iter([b"abc", b"", b"defg"]))

    assert written == 7
    assert store.read("merged/file.bin") == b"abcdefg"
    assert store.list_keys("merged/") == ["merged/file.bin"]


def test_failed_stream_does_not_publish_partial_object(tmp_path: Path) -> None:
    store = LocalChunkStore(str(tmp_path))

    def _blocks():
        yield b"abc"
        raise StoreUnavailable("chunk vanished")

    with pytest.raises(StoreUnavailable):
        store.write_stream("merged/file.bin", _blocks())

    assert not store.exists("merged/file.bin")
    assert store.list_keys("merged/") == []


def test_create_exclusive_only_succeeds_once(tmp_path: Path) -> None:
    store = LocalChunkStore(str(tmp_path))

    assert store.create_exclusive("claims/abc", b"first") is True
    assert store.create_exclusive("claims/abc", b"second") is False
    assert store.read("claims/abc") == b"first"


def test_delete_missing_key_is_a_noop(tmp_path: Path) -> None:
    store = LocalChunkStore(str(tmp_path))
    store.delete_key("chunks/nothing/000-001")


def test_read_missing_key_raises_store_unavailable(tmp_path: Path) -> None:
    store = LocalChunkStore(str(tmp_path))
    with pytest.raises(StoreUnavailable):
        store.read("chunks/nothing/000-001")
