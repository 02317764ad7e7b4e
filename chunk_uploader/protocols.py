import enum
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from chunk_uploader.descriptor import ChunkDescriptor
from chunk_uploader.exceptions import ValidationFailed
from chunk_uploader.schemas import FlowJsChunkParams


class UploadProtocol(str, enum.Enum):
    flow_js = "flow-js"


class FlowJsProtocol:
    """Field names and status codes of the Flow.js client.

    Flow.js counts 200/201/202 on a test request as "chunk present" and 204 as
    "send it"; 404 is one of its permanent errors and would abort the upload.
    """

    name = UploadProtocol.flow_js
    file_field = "file"
    present_status = 200
    absent_status = 204

    def parse(self, params: Mapping[str, Any]) -> ChunkDescriptor:
        try:
            parsed = FlowJsChunkParams.model_validate(dict(params))
        except ValidationError as exc:
            fields = sorted({str(error["loc"][0]) for error in exc.errors() if error.get("loc")})
            raise ValidationFailed(
                f"invalid or missing fields: {', '.join(fields)}",
                identifier=params.get("flowIdentifier") or None,
            ) from exc
        return ChunkDescriptor(**parsed.model_dump())

    def probe_status(self, present: bool) -> int:
        return self.present_status if present else self.absent_status


def build_protocol(name: str) -> FlowJsProtocol:
    try:
        protocol = UploadProtocol(name.lower())
    except ValueError:
        raise ValueError(f"unsupported upload protocol: {name}") from None
    if protocol is UploadProtocol.flow_js:
        return FlowJsProtocol()
    raise ValueError(f"unsupported upload protocol: {name}")
