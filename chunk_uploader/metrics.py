from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

chunks_stored_total = Counter("chunks_stored_total", "Total chunks written to the chunk store")
chunk_bytes_stored_total = Counter("chunk_bytes_stored_total", "Total chunk bytes written to the chunk store")
chunk_rewrites_total = Counter("chunk_rewrites_total", "Total chunk re-sends answered without a write")
resume_probes_total = Counter("resume_probes_total", "Total resume probes", ["result"])
merges_total = Counter("merges_total", "Total completed merges")
merge_races_lost_total = Counter("merge_races_lost_total", "Total merge attempts that lost the claim")
merge_failures_total = Counter("merge_failures_total", "Total merges aborted with an error")
orphaned_chunks_total = Counter("orphaned_chunks_total", "Total chunks left behind after a merge")
swept_keys_total = Counter("swept_keys_total", "Total stale keys removed by the sweeper")

chunk_store_write_latency_seconds = Histogram(
    "chunk_store_write_latency_seconds", "Chunk store write latency in seconds"
)
merge_duration_seconds = Histogram("merge_duration_seconds", "Merge duration in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
