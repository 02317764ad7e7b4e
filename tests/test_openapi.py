from fastapi.testclient import TestClient

from chunk_uploader.main import app


def test_openapi_includes_standard_error_schema() -> None:
    with TestClient(app) as client:
        spec = client.get("/openapi.json").json()

    components = spec.get("components", {}).get("schemas", {})
    assert "ErrorResponse" in components
    assert "UploadProgressResponse" in components

    post_responses = spec["paths"]["/upload"]["post"]["responses"]
    assert "409" in post_responses
    assert post_responses["409"]["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")

    get_responses = spec["paths"]["/upload"]["get"]["responses"]
    assert "204" in get_responses
