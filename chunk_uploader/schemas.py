from pydantic import BaseModel, ConfigDict, Field


class FlowJsChunkParams(BaseModel):
    """The eight fields every Flow.js chunk request carries."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    chunk_number: int = Field(alias="flowChunkNumber", gt=0)
    total_chunks: int = Field(alias="flowTotalChunks", gt=0)
    chunk_size: int = Field(alias="flowChunkSize", gt=0)
    total_size: int = Field(alias="flowTotalSize", gt=0)
    identifier: str = Field(alias="flowIdentifier", min_length=1, pattern=r"^[0-9A-Za-z_-]+$")
    filename: str = Field(alias="flowFilename", min_length=1)
    relative_path: str = Field(alias="flowRelativePath", min_length=1)
    current_chunk_size: int = Field(alias="flowCurrentChunkSize", gt=0)


class UploadProgressResponse(BaseModel):
    done: int
    file: str | None = None
    disk: str | None = None


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    identifier: str | None = None
    trace_id: str | None = None
