import pytest

from chunk_uploader.descriptor import ChunkDescriptor
from chunk_uploader.events import FileUploaded, Notifier
from chunk_uploader.handler import UploadHandler
from chunk_uploader.locks import StoreMergeLock
from chunk_uploader.storage import LocalChunkStore

IDENTIFIER = "200-0jWZTB1ZDfRQU6VTcXy0mJnL9xKMeEz3HoSPU0Zftxt"
FILENAME = "0jWZTB1ZDfRQU6VTcXy0mJnL9xKMeEz3HoSPU0Zf.txt"


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.events: list[FileUploaded] = []

    def notify(self, event: FileUploaded) -> None:
        self.events.append(event)


@pytest.fixture
def store(tmp_path) -> LocalChunkStore:
    return LocalChunkStore(str(tmp_path / "disk"))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def lock(store) -> StoreMergeLock:
    return StoreMergeLock(store, ttl_seconds=60)


@pytest.fixture
def handler(store, lock, notifier) -> UploadHandler:
    return UploadHandler(store=store, lock=lock, notifier=notifier)


@pytest.fixture
def payload() -> bytes:
    return bytes(range(200))


@pytest.fixture
def make_descriptor():
    def _make(
        chunk_number: int,
        total_chunks: int = 2,
        chunk_size: int = 100,
        total_size: int = 200,
        current_chunk_size: int | None = None,
        identifier: str = IDENTIFIER,
        filename: str = FILENAME,
    ) -> ChunkDescriptor:
        if current_chunk_size is None:
            start = (chunk_number - 1) * chunk_size
            current_chunk_size = total_size - start if chunk_number == total_chunks else chunk_size
        return ChunkDescriptor(
            identifier=identifier,
            chunk_number=chunk_number,
            total_chunks=total_chunks,
            chunk_size=chunk_size,
            total_size=total_size,
            current_chunk_size=current_chunk_size,
            filename=filename,
            relative_path=filename,
        )

    return _make
