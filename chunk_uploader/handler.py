import math
from collections.abc import Callable
from dataclasses import dataclass

from chunk_uploader.config import settings
from chunk_uploader.descriptor import ChunkDescriptor
from chunk_uploader.engine import ChunkWriter, CompletionDetector, ResumeChecker
from chunk_uploader.events import LoggingNotifier, Notifier
from chunk_uploader.exceptions import AlreadyMerging, IncompleteUpload
from chunk_uploader.locks import MergeLock, build_merge_lock
from chunk_uploader.merge import Artifact, MergeEngine
from chunk_uploader.protocols import FlowJsProtocol, build_protocol
from chunk_uploader.storage import ChunkStore, build_store

CompletionCallback = Callable[[str, str], None]


@dataclass(frozen=True)
class UploadProgress:
    done: int
    status: str
    artifact: Artifact | None = None
    merged_by_peer: bool = False


def progress_percent(chunk_number: int, total_chunks: int) -> int:
    # Half-up rounding; 100 is reserved for a merged upload.
    return min(99, math.floor(chunk_number * 100 / total_chunks + 0.5))


class UploadHandler:
    def __init__(
        self,
        store: ChunkStore,
        lock: MergeLock,
        notifier: Notifier,
        protocol: FlowJsProtocol | None = None,
        chunks_directory: str = "chunks",
        merged_directory: str = "merged",
    ) -> None:
        self.storage = store
        self.protocol = protocol or FlowJsProtocol()
        self.resume_checker = ResumeChecker(store, chunks_directory)
        self.writer = ChunkWriter(store, chunks_directory)
        self.detector = CompletionDetector(store, chunks_directory)
        self.merger = MergeEngine(store, lock, notifier, chunks_directory, merged_directory)

    def probe(self, descriptor: ChunkDescriptor) -> bool:
        return self.resume_checker.exists(descriptor)

    def handle(
        self, descriptor: ChunkDescriptor, data: bytes, on_complete: CompletionCallback | None = None
    ) -> UploadProgress:
        outcome = self.writer.store(descriptor, data)
        if not self.detector.is_complete(descriptor.identifier, descriptor.total_chunks, descriptor.total_size):
            return UploadProgress(
                done=progress_percent(descriptor.chunk_number, descriptor.total_chunks),
                status=outcome.status,
            )

        try:
            artifact = self.merger.merge(
                descriptor.identifier, descriptor.total_chunks, descriptor.total_size, descriptor.filename
            )
        except AlreadyMerging:
            return UploadProgress(
                done=100,
                status="completed",
                artifact=Artifact(
                    disk=self.storage.disk,
                    key=self.merger.artifact_key(descriptor.identifier, descriptor.filename),
                    size=descriptor.total_size,
                ),
                merged_by_peer=True,
            )
        except IncompleteUpload:
            # chunks changed between detection and merge
            return UploadProgress(
                done=progress_percent(descriptor.chunk_number, descriptor.total_chunks),
                status=outcome.status,
            )

        if on_complete is not None:
            on_complete(artifact.disk, artifact.key)
        return UploadProgress(done=100, status="completed", artifact=artifact)


def build_handler(store: ChunkStore | None = None, notifier: Notifier | None = None) -> UploadHandler:
    store = store or build_store()
    return UploadHandler(
        store=store,
        lock=build_merge_lock(store),
        notifier=notifier or LoggingNotifier(),
        protocol=build_protocol(settings.upload_protocol),
        chunks_directory=settings.chunks_directory,
        merged_directory=settings.merged_directory,
    )
