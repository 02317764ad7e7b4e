import os
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from botocore.exceptions import BotoCoreError, ClientError

from chunk_uploader.config import settings
from chunk_uploader.exceptions import StoreUnavailable

S3_CONDITIONAL_WRITE_CONFLICTS = ("PreconditionFailed", "ConditionalRequestConflict")
S3_MISSING_KEY_CODES = ("404", "NoSuchKey", "NotFound")


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int
    last_modified: datetime


class ChunkStore:
    """Byte store addressed by slash separated keys.

    Implementations must make ``write`` atomic per key, reflect their own
    writes in ``list_entries`` and make ``create_exclusive`` fail when the key
    already exists.
    """

    disk: str = "default"

    def size(self, key: str) -> int | None:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        return self.size(key) is not None

    def write(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def read(self, key: str) -> bytes:
        raise NotImplementedError

    def write_stream(self, key: str, blocks: Iterable[bytes]) -> int:
        raise NotImplementedError

    def list_entries(self, prefix: str = "") -> list[StoredObject]:
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> list[str]:
        return [entry.key for entry in self.list_entries(prefix)]

    def delete_key(self, key: str) -> None:
        raise NotImplementedError

    def create_exclusive(self, key: str, data: bytes) -> bool:
        raise NotImplementedError


@contextmanager
def _os_errors(operation: str, key: str) -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise StoreUnavailable(f"{operation} failed for {key}: {exc}") from exc


class LocalChunkStore(ChunkStore):
    def __init__(self, root: str, disk: str = "local") -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.disk = disk

    def path(self, key: str) -> Path:
        return self.root / key

    def size(self, key: str) -> int | None:
        with _os_errors("stat", key):
            try:
                return self.path(key).stat().st_size
            except FileNotFoundError:
                return None

    def write(self, key: str, data: bytes) -> None:
        self.write_stream(key, [data])

    def read(self, key: str) -> bytes:
        with _os_errors("read", key):
            return self.path(key).read_bytes()

    def write_stream(self, key: str, blocks: Iterable[bytes]) -> int:
        target = self.path(key)
        written = 0
        with _os_errors("write", key):
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".part", dir=str(target.parent))
            temp_path = Path(tmp)
            try:
                with os.fdopen(fd, "wb") as handle:
                    for block in blocks:
                        handle.write(block)
                        written += len(block)
                os.replace(temp_path, target)
            except BaseException:
                temp_path.unlink(missing_ok=True)
                raise
        return written

    def list_entries(self, prefix: str = "") -> list[StoredObject]:
        base = self.root / prefix if prefix else self.root
        if not base.exists():
            return []
        root = self.root
        entries: list[StoredObject] = []
        with _os_errors("list", prefix):
            for path in base.rglob("*"):
                try:
                    stat = path.stat()
                except FileNotFoundError:
                    # removed by a concurrent merge or sweep
                    continue
                if not path.is_file():
                    continue
                entries.append(
                    StoredObject(
                        key=str(path.relative_to(root)).replace("\\", "/"),
                        size=stat.st_size,
                        last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    )
                )
        return entries

    def delete_key(self, key: str) -> None:
        with _os_errors("delete", key):
            self.path(key).unlink(missing_ok=True)

    def create_exclusive(self, key: str, data: bytes) -> bool:
        target = self.path(key)
        with _os_errors("claim", key):
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".claim", dir=str(target.parent))
            temp_path = Path(tmp)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                # atomic create, fails when the target exists
                os.link(temp_path, target)
            except FileExistsError:
                return False
            finally:
                temp_path.unlink(missing_ok=True)
        return True


@contextmanager
def _s3_errors(operation: str, key: str) -> Iterator[None]:
    try:
        yield
    except (BotoCoreError, ClientError) as exc:
        raise StoreUnavailable(f"{operation} failed for {key}: {exc}") from exc


def _client_error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class S3ChunkStore(ChunkStore):
    # Merges are sent as multipart parts of at least this size; S3 needs 5 MiB
    # for every part but the last.
    PART_SIZE = 8 * 1024 * 1024

    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        disk: str = "s3",
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        self.disk = disk
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    def size(self, key: str) -> int | None:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _client_error_code(exc) in S3_MISSING_KEY_CODES:
                return None
            raise StoreUnavailable(f"stat failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailable(f"stat failed for {key}: {exc}") from exc
        return int(response["ContentLength"])

    def write(self, key: str, data: bytes) -> None:
        with _s3_errors("write", key):
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data)

    def read(self, key: str) -> bytes:
        with _s3_errors("read", key):
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
            return obj["Body"].read()

    def write_stream(self, key: str, blocks: Iterable[bytes]) -> int:
        buffer = bytearray()
        parts: list[dict] = []
        multipart_upload_id = None
        written = 0
        try:
            for block in blocks:
                buffer.extend(block)
                written += len(block)
                if len(buffer) >= self.PART_SIZE:
                    if multipart_upload_id is None:
                        multipart_upload_id = self._start_multipart(key)
                    parts.append(self._upload_part(key, multipart_upload_id, len(parts) + 1, bytes(buffer)))
                    buffer.clear()
            if multipart_upload_id is None:
                self.write(key, bytes(buffer))
                return written
            if buffer:
                parts.append(self._upload_part(key, multipart_upload_id, len(parts) + 1, bytes(buffer)))
            with _s3_errors("write", key):
                self.client.complete_multipart_upload(
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=multipart_upload_id,
                    MultipartUpload={"Parts": parts},
                )
        except BaseException:
            if multipart_upload_id is not None:
                self._abort_multipart(key, multipart_upload_id)
            raise
        return written

    def _start_multipart(self, key: str) -> str:
        with _s3_errors("write", key):
            result = self.client.create_multipart_upload(Bucket=self.bucket, Key=key)
        return result["UploadId"]

    def _upload_part(self, key: str, multipart_upload_id: str, part_number: int, data: bytes) -> dict:
        with _s3_errors("write", key):
            result = self.client.upload_part(
                Bucket=self.bucket,
                Key=key,
                PartNumber=part_number,
                UploadId=multipart_upload_id,
                Body=data,
            )
        return {"PartNumber": part_number, "ETag": result.get("ETag")}

    def _abort_multipart(self, key: str, multipart_upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=multipart_upload_id)
        except (BotoCoreError, ClientError):
            # the error that stopped the merge is the one raised
            return

    def list_entries(self, prefix: str = "") -> list[StoredObject]:
        entries: list[StoredObject] = []
        continuation_token = None
        with _s3_errors("list", prefix):
            while True:
                params = {"Bucket": self.bucket, "Prefix": prefix}
                if continuation_token:
                    params["ContinuationToken"] = continuation_token
                response = self.client.list_objects_v2(**params)
                for item in response.get("Contents", []):
                    key = item.get("Key")
                    if key:
                        entries.append(
                            StoredObject(
                                key=key,
                                size=int(item.get("Size", 0)),
                                last_modified=item.get("LastModified") or datetime.now(timezone.utc),
                            )
                        )
                if not response.get("IsTruncated"):
                    break
                continuation_token = response.get("NextContinuationToken")
        return entries

    def delete_key(self, key: str) -> None:
        with _s3_errors("delete", key):
            self.client.delete_object(Bucket=self.bucket, Key=key)

    def create_exclusive(self, key: str, data: bytes) -> bool:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, IfNoneMatch="*")
        except ClientError as exc:
            if _client_error_code(exc) in S3_CONDITIONAL_WRITE_CONFLICTS:
                return False
            raise StoreUnavailable(f"claim failed for {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailable(f"claim failed for {key}: {exc}") from exc
        return True


def build_store() -> ChunkStore:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalChunkStore(settings.storage_root, disk=settings.disk_name)
    if backend == "s3":
        return S3ChunkStore(settings.s3_bucket, settings.aws_region, disk=settings.disk_name)
    if backend == "r2":
        if not settings.r2_bucket:
            raise ValueError("r2_bucket must be set when storage_backend=r2")
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when storage_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"

        return S3ChunkStore(
            bucket=settings.r2_bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
            disk=settings.disk_name,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
