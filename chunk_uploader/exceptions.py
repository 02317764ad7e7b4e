"""Errors raised by the chunk engine.

Every error carries the upload identifier when it is known so the HTTP layer
can echo it back in the error body.
"""


class UploadError(Exception):
    """Base class for chunk upload failures."""

    error_code = "upload_error"

    def __init__(self, detail: str, identifier: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.identifier = identifier


class ValidationFailed(UploadError):
    """Descriptor fields are missing, malformed or inconsistent."""

    error_code = "validation_failed"


class SizeMismatch(UploadError):
    """Payload or merged length disagrees with the declared size."""

    error_code = "size_mismatch"


class InconsistentRewrite(UploadError):
    """A chunk range was resent with metadata that contradicts the stored one."""

    error_code = "inconsistent_rewrite"


class IncompleteUpload(UploadError):
    """Merge requested before every chunk is present."""

    error_code = "incomplete_upload"


class AlreadyMerging(UploadError):
    """Another caller holds the merge claim for this identifier."""

    error_code = "already_merging"


class StoreUnavailable(UploadError):
    """The chunk store failed an I/O operation."""

    error_code = "store_unavailable"
