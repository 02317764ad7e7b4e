import hashlib
import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from chunk_uploader.exceptions import ValidationFailed

IDENTIFIER_PATTERN = re.compile(r"^[0-9A-Za-z_-]+$")
RANGE_NAME_PATTERN = re.compile(r"^(\d+)-(\d+)$")
EXTENSION_PATTERN = re.compile(r"^[0-9a-z]{1,16}$")


@dataclass(frozen=True)
class ChunkRange:
    """Inclusive byte range of one stored chunk."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def name(self) -> str:
        return f"{self.start:03d}-{self.end:03d}"

    def overlaps(self, other: "ChunkRange") -> bool:
        return self.start <= other.end and other.start <= self.end

    @classmethod
    def parse(cls, name: str) -> "ChunkRange | None":
        match = RANGE_NAME_PATTERN.match(name)
        if not match:
            return None
        start, end = int(match.group(1)), int(match.group(2))
        if end < start:
            return None
        return cls(start=start, end=end)


@dataclass(frozen=True)
class ChunkDescriptor:
    """Metadata of one chunk request, validated on construction."""

    identifier: str
    chunk_number: int
    total_chunks: int
    chunk_size: int
    total_size: int
    current_chunk_size: int
    filename: str
    relative_path: str

    def __post_init__(self) -> None:
        if not IDENTIFIER_PATTERN.match(self.identifier or ""):
            raise ValidationFailed("identifier must match [0-9A-Za-z_-]+", identifier=self.identifier or None)
        for field_name in ("chunk_number", "total_chunks", "chunk_size", "total_size", "current_chunk_size"):
            value = getattr(self, field_name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValidationFailed(f"{field_name} must be a positive integer", identifier=self.identifier)
        if not self.filename:
            raise ValidationFailed("filename must not be empty", identifier=self.identifier)
        if self.chunk_number > self.total_chunks:
            raise ValidationFailed("chunk_number exceeds total_chunks", identifier=self.identifier)
        if self.is_last:
            if self.start_offset + self.current_chunk_size != self.total_size:
                raise ValidationFailed("last chunk does not end at total_size", identifier=self.identifier)
        elif self.current_chunk_size != self.chunk_size:
            raise ValidationFailed("only the last chunk may differ from chunk_size", identifier=self.identifier)
        elif self.end_offset >= self.total_size - 1:
            raise ValidationFailed("chunk range exceeds total_size", identifier=self.identifier)

    @property
    def is_last(self) -> bool:
        return self.chunk_number == self.total_chunks

    @property
    def start_offset(self) -> int:
        return (self.chunk_number - 1) * self.chunk_size

    @property
    def end_offset(self) -> int:
        return self.start_offset + self.current_chunk_size - 1

    @property
    def byte_range(self) -> ChunkRange:
        return ChunkRange(start=self.start_offset, end=self.end_offset)


def session_prefix(identifier: str, chunks_directory: str) -> str:
    return f"{chunks_directory}/{identifier}/"


def chunk_key(descriptor: ChunkDescriptor, chunks_directory: str) -> str:
    return session_prefix(descriptor.identifier, chunks_directory) + descriptor.byte_range.name()


def claim_prefix(identifier: str, claims_directory: str) -> str:
    return f"{claims_directory}/{identifier}/"


def claim_key(identifier: str, generation: int, claims_directory: str) -> str:
    return f"{claim_prefix(identifier, claims_directory)}{generation:08d}"


def artifact_key(identifier: str, filename: str, merged_directory: str) -> str:
    # Same identifier always lands on the same artifact name; the extension is
    # kept so the stored file stays recognizable.
    digest = hashlib.sha1(identifier.encode("utf-8")).hexdigest()
    suffix = PurePosixPath(filename.replace("\\", "/")).suffix.lower().lstrip(".")
    if suffix and EXTENSION_PATTERN.match(suffix):
        return f"{merged_directory}/{digest}.{suffix}"
    return f"{merged_directory}/{digest}"
