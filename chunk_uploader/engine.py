import time
from dataclasses import dataclass

from chunk_uploader.descriptor import ChunkDescriptor, ChunkRange, chunk_key, session_prefix
from chunk_uploader.exceptions import InconsistentRewrite, SizeMismatch
from chunk_uploader.logs import ENGINE_LOGGER, get_event_logger, log_event
from chunk_uploader.metrics import (
    chunk_bytes_stored_total,
    chunk_rewrites_total,
    chunk_store_write_latency_seconds,
    chunks_stored_total,
    resume_probes_total,
)
from chunk_uploader.storage import ChunkStore
from chunk_uploader.tracing import get_tracer

engine_logger = get_event_logger(ENGINE_LOGGER)
tracer = get_tracer(__name__)


@dataclass(frozen=True)
class StoredChunk:
    key: str
    byte_range: ChunkRange
    size: int


@dataclass(frozen=True)
class WriteOutcome:
    key: str
    created: bool

    @property
    def status(self) -> str:
        return "stored" if self.created else "existing"


def list_chunks(store: ChunkStore, identifier: str, chunks_directory: str) -> list[StoredChunk]:
    """Stored chunks of one upload, sorted by start offset."""
    prefix = session_prefix(identifier, chunks_directory)
    chunks: list[StoredChunk] = []
    for entry in store.list_entries(prefix):
        name = entry.key[len(prefix) :]
        if "/" in name:
            continue
        byte_range = ChunkRange.parse(name)
        if byte_range is None:
            continue
        chunks.append(StoredChunk(key=entry.key, byte_range=byte_range, size=entry.size))
    chunks.sort(key=lambda chunk: (chunk.byte_range.start, chunk.byte_range.end))
    return chunks


class ResumeChecker:
    def __init__(self, store: ChunkStore, chunks_directory: str = "chunks") -> None:
        self.storage = store
        self.chunks_directory = chunks_directory

    def exists(self, descriptor: ChunkDescriptor) -> bool:
        stored_size = self.storage.size(chunk_key(descriptor, self.chunks_directory))
        present = stored_size == descriptor.current_chunk_size
        resume_probes_total.labels(result="present" if present else "absent").inc()
        return present


class ChunkWriter:
    def __init__(self, store: ChunkStore, chunks_directory: str = "chunks") -> None:
        self.storage = store
        self.chunks_directory = chunks_directory

    def store(self, descriptor: ChunkDescriptor, data: bytes) -> WriteOutcome:
        if len(data) != descriptor.current_chunk_size:
            raise SizeMismatch(
                f"chunk payload has {len(data)} bytes, expected {descriptor.current_chunk_size}",
                identifier=descriptor.identifier,
            )

        key = chunk_key(descriptor, self.chunks_directory)
        wanted = descriptor.byte_range
        for chunk in list_chunks(self.storage, descriptor.identifier, self.chunks_directory):
            if chunk.byte_range == wanted:
                if chunk.size != descriptor.current_chunk_size:
                    raise InconsistentRewrite(
                        f"stored chunk {chunk.key} has {chunk.size} bytes", identifier=descriptor.identifier
                    )
                chunk_rewrites_total.inc()
                return WriteOutcome(key=key, created=False)
            if chunk.byte_range.overlaps(wanted):
                raise InconsistentRewrite(
                    f"chunk range {wanted.name()} overlaps stored chunk {chunk.byte_range.name()}",
                    identifier=descriptor.identifier,
                )

        with tracer.start_as_current_span("chunk.store") as span:
            span.set_attribute("upload.identifier", descriptor.identifier)
            span.set_attribute("upload.chunk_number", descriptor.chunk_number)
            start = time.perf_counter()
            self.storage.write(key, data)
            chunk_store_write_latency_seconds.observe(time.perf_counter() - start)
        chunks_stored_total.inc()
        chunk_bytes_stored_total.inc(len(data))
        log_event(
            engine_logger,
            {
                "event": "chunk_stored",
                "identifier": descriptor.identifier,
                "chunk_number": descriptor.chunk_number,
                "total_chunks": descriptor.total_chunks,
                "key": key,
                "size": len(data),
            },
        )
        return WriteOutcome(key=key, created=True)


class CompletionDetector:
    def __init__(self, store: ChunkStore, chunks_directory: str = "chunks") -> None:
        self.storage = store
        self.chunks_directory = chunks_directory

    def ranges(self, identifier: str) -> list[ChunkRange]:
        return [chunk.byte_range for chunk in list_chunks(self.storage, identifier, self.chunks_directory)]

    def is_complete(self, identifier: str, total_chunks: int, total_size: int) -> bool:
        return tiles_exactly(self.ranges(identifier), total_chunks, total_size)

    def missing(self, identifier: str, total_size: int) -> list[ChunkRange]:
        """Gaps in ``[0, total_size)`` not covered by any stored chunk."""
        gaps: list[ChunkRange] = []
        cursor = 0
        for byte_range in self.ranges(identifier):
            if byte_range.start > cursor:
                gaps.append(ChunkRange(start=cursor, end=min(byte_range.start, total_size) - 1))
            cursor = max(cursor, byte_range.end + 1)
        if cursor < total_size:
            gaps.append(ChunkRange(start=cursor, end=total_size - 1))
        return gaps


def tiles_exactly(ranges: list[ChunkRange], total_chunks: int, total_size: int) -> bool:
    if len(ranges) != total_chunks or not ranges:
        return False
    cursor = 0
    for byte_range in sorted(ranges, key=lambda r: r.start):
        if byte_range.start != cursor:
            return False
        cursor = byte_range.end + 1
    return cursor == total_size
