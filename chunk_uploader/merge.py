"""Assembly of a completed chunk set into the final artifact.

Only the caller holding the merge claim for an identifier assembles it. A
caller that loses the claim, or that gets the claim after the winner already
removed the chunks, gets ``AlreadyMerging``.
"""

import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass

from chunk_uploader.descriptor import artifact_key
from chunk_uploader.engine import StoredChunk, list_chunks, tiles_exactly
from chunk_uploader.events import FileUploaded, Notifier
from chunk_uploader.exceptions import AlreadyMerging, IncompleteUpload, SizeMismatch, StoreUnavailable
from chunk_uploader.locks import MergeLock
from chunk_uploader.logs import ENGINE_LOGGER, get_event_logger, log_event
from chunk_uploader.metrics import (
    merge_duration_seconds,
    merge_failures_total,
    merge_races_lost_total,
    merges_total,
    orphaned_chunks_total,
)
from chunk_uploader.storage import ChunkStore
from chunk_uploader.tracing import get_tracer

engine_logger = get_event_logger(ENGINE_LOGGER)
tracer = get_tracer(__name__)


@dataclass(frozen=True)
class Artifact:
    disk: str
    key: str
    size: int


class MergeEngine:
    def __init__(
        self,
        store: ChunkStore,
        lock: MergeLock,
        notifier: Notifier,
        chunks_directory: str = "chunks",
        merged_directory: str = "merged",
    ) -> None:
        self.storage = store
        self.lock = lock
        self.notifier = notifier
        self.chunks_directory = chunks_directory
        self.merged_directory = merged_directory

    def artifact_key(self, identifier: str, filename: str) -> str:
        return artifact_key(identifier, filename, self.merged_directory)

    def _complete_chunks(self, identifier: str, total_chunks: int, total_size: int) -> list[StoredChunk] | None:
        chunks = list_chunks(self.storage, identifier, self.chunks_directory)
        if not tiles_exactly([chunk.byte_range for chunk in chunks], total_chunks, total_size):
            return None
        return chunks

    def _stream(self, chunks: list[StoredChunk]) -> Iterator[bytes]:
        for chunk in chunks:
            yield self.storage.read(chunk.key)

    def merge(self, identifier: str, total_chunks: int, total_size: int, filename: str) -> Artifact:
        if self._complete_chunks(identifier, total_chunks, total_size) is None:
            # The winner writes the artifact before it deletes any chunk.
            if self.storage.exists(self.artifact_key(identifier, filename)):
                merge_races_lost_total.inc()
                raise AlreadyMerging("upload was already merged", identifier=identifier)
            raise IncompleteUpload("not every chunk has been received", identifier=identifier)

        if not self.lock.acquire(identifier):
            merge_races_lost_total.inc()
            log_event(engine_logger, {"event": "merge_lost", "identifier": identifier, "reason": "claim_held"})
            raise AlreadyMerging("merge already claimed by another request", identifier=identifier)

        release_claim = True
        try:
            chunks = self._complete_chunks(identifier, total_chunks, total_size)
            if chunks is None:
                merge_races_lost_total.inc()
                log_event(engine_logger, {"event": "merge_lost", "identifier": identifier, "reason": "already_merged"})
                raise AlreadyMerging("chunks were merged by another request", identifier=identifier)

            artifact, release_claim = self._assemble(identifier, chunks, total_size, filename)
        except (AlreadyMerging, IncompleteUpload):
            raise
        except Exception:
            merge_failures_total.inc()
            raise
        finally:
            if release_claim:
                self.lock.release(identifier)

        event = FileUploaded(
            disk=artifact.disk,
            file=artifact.key,
            identifier=identifier,
            filename=filename,
            size=artifact.size,
        )
        try:
            self.notifier.notify(event)
        except Exception as exc:
            # the artifact is already stored
            log_event(
                engine_logger,
                {
                    "event": "notify_failed",
                    "identifier": identifier,
                    "artifact": artifact.key,
                    "error_class": type(exc).__name__,
                    "detail": str(exc),
                },
                level=logging.ERROR,
            )
        return artifact

    def _assemble(
        self, identifier: str, chunks: list[StoredChunk], total_size: int, filename: str
    ) -> tuple[Artifact, bool]:
        key = self.artifact_key(identifier, filename)
        log_event(
            engine_logger,
            {"event": "merge_started", "identifier": identifier, "chunks": len(chunks), "artifact": key},
        )
        started = time.perf_counter()
        with tracer.start_as_current_span("upload.merge") as span:
            span.set_attribute("upload.identifier", identifier)
            span.set_attribute("upload.total_chunks", len(chunks))
            written = self.storage.write_stream(key, self._stream(chunks))
            if written != total_size:
                self.storage.delete_key(key)
                raise SizeMismatch(
                    f"merged {written} bytes, expected {total_size}",
                    identifier=identifier,
                )
            orphaned = self._delete_chunks(chunks)
        merge_duration_seconds.observe(time.perf_counter() - started)
        merges_total.inc()

        if orphaned:
            orphaned_chunks_total.inc(len(orphaned))
            log_event(
                engine_logger,
                {
                    "event": "orphaned_chunks",
                    "identifier": identifier,
                    "artifact": key,
                    "keys": orphaned,
                },
                level=logging.WARNING,
            )
        log_event(
            engine_logger,
            {"event": "merge_completed", "identifier": identifier, "artifact": key, "size": written},
        )
        # Leftover chunks keep the claim alive until it expires so no peer
        # merges the same upload again from them.
        return Artifact(disk=self.storage.disk, key=key, size=written), not orphaned

    def _delete_chunks(self, chunks: list[StoredChunk]) -> list[str]:
        orphaned: list[str] = []
        for chunk in chunks:
            try:
                self.storage.delete_key(chunk.key)
            except StoreUnavailable:
                orphaned.append(chunk.key)
        return orphaned
