import pytest

from chunk_uploader.exceptions import ValidationFailed
from chunk_uploader.protocols import FlowJsProtocol, UploadProtocol, build_protocol

from conftest import FILENAME, IDENTIFIER


def _params(**overrides) -> dict:
    params = {
        "flowChunkNumber": "2",
        "flowTotalChunks": "2",
        "flowChunkSize": "100",
        "flowTotalSize": "200",
        "flowIdentifier": IDENTIFIER,
        "flowFilename": FILENAME,
        "flowRelativePath": FILENAME,
        "flowCurrentChunkSize": "100",
    }
    params.update(overrides)
    return {key: value for key, value in params.items() if value is not None}


def test_parse_flow_fields() -> None:
    descriptor = FlowJsProtocol().parse(_params())

    assert descriptor.identifier == IDENTIFIER
    assert descriptor.chunk_number == 2
    assert descriptor.total_chunks == 2
    assert descriptor.current_chunk_size == 100
    assert descriptor.relative_path == FILENAME
    assert descriptor.is_last is True


def test_parse_ignores_unknown_fields() -> None:
    descriptor = FlowJsProtocol().parse(_params(flowExtra="x"))
    assert descriptor.chunk_number == 2


@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"flowIdentifier": None}, "flowIdentifier"),
        ({"flowChunkNumber": "two"}, "flowChunkNumber"),
        ({"flowTotalSize": "0"}, "flowTotalSize"),
        ({"flowIdentifier": "../escape"}, "flowIdentifier"),
    ],
)
def test_invalid_fields_are_rejected(overrides: dict, field: str) -> None:
    with pytest.raises(ValidationFailed) as exc_info:
        FlowJsProtocol().parse(_params(**overrides))
    assert field in exc_info.value.detail


def test_descriptor_rules_apply_after_parsing() -> None:
    with pytest.raises(ValidationFailed):
        FlowJsProtocol().parse(_params(flowChunkNumber="3"))


def test_probe_status_codes() -> None:
    protocol = FlowJsProtocol()
    assert protocol.probe_status(True) == 200
    assert protocol.probe_status(False) == 204


def test_build_protocol() -> None:
    assert build_protocol("flow-js").name is UploadProtocol.flow_js
    assert build_protocol("Flow-JS").name is UploadProtocol.flow_js
    with pytest.raises(ValueError):
        build_protocol("resumable-js")
