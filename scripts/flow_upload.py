import argparse
import math
import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import httpx


def flow_identifier(path: Path, size: int) -> str:
    # Same scheme as the Flow.js default generateUniqueIdentifier.
    return f"{size}-{re.sub(r'[^0-9a-zA-Z_-]', '', path.name)}"


def total_chunks_for(size: int, chunk_size: int, force_chunk_size: bool) -> int:
    if force_chunk_size:
        return max(math.ceil(size / chunk_size), 1)
    return max(size // chunk_size, 1)


def chunk_bounds(number: int, total_chunks: int, chunk_size: int, size: int) -> tuple[int, int]:
    start = (number - 1) * chunk_size
    end = size if number == total_chunks else min(start + chunk_size, size)
    return start, end


def _fields(path: Path, identifier: str, number: int, total_chunks: int, chunk_size: int, size: int, current: int) -> dict:
    return {
        "flowChunkNumber": str(number),
        "flowTotalChunks": str(total_chunks),
        "flowChunkSize": str(chunk_size),
        "flowTotalSize": str(size),
        "flowIdentifier": identifier,
        "flowFilename": path.name,
        "flowRelativePath": path.name,
        "flowCurrentChunkSize": str(current),
    }


def upload_file(
    client: httpx.Client,
    url: str,
    path: Path,
    chunk_size: int,
    workers: int,
    force_chunk_size: bool = False,
) -> dict:
    payload = path.read_bytes()
    size = len(payload)
    identifier = flow_identifier(path, size)
    total_chunks = total_chunks_for(size, chunk_size, force_chunk_size)
    results: dict[int, dict] = {}
    skipped = 0

    def _send(number: int) -> tuple[int, dict | None]:
        start, end = chunk_bounds(number, total_chunks, chunk_size, size)
        fields = _fields(path, identifier, number, total_chunks, chunk_size, size, end - start)
        probe = client.get(url, params=fields, timeout=30.0)
        if probe.status_code == 200:
            return number, None
        if probe.status_code != 204:
            probe.raise_for_status()
        resp = client.post(
            url,
            data=fields,
            files={"file": (path.name, payload[start:end], "application/octet-stream")},
            timeout=60.0,
        )
        resp.raise_for_status()
        return number, resp.json()

    started = time.perf_counter()
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = [pool.submit(_send, number) for number in range(1, total_chunks + 1)]
        for fut in as_completed(futures):
            number, body = fut.result()
            if body is None:
                skipped += 1
            else:
                results[number] = body

    completed = [body for body in results.values() if body.get("done") == 100 and body.get("file")]
    return {
        "identifier": identifier,
        "file_bytes": size,
        "total_chunks": total_chunks,
        "chunks_skipped": skipped,
        "artifact": completed[0]["file"] if completed else None,
        "disk": completed[0]["disk"] if completed else None,
        "elapsed_ms": round((time.perf_counter() - started) * 1000, 2),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Upload a file the way the Flow.js client does.")
    parser.add_argument("path", type=Path)
    parser.add_argument("--url", default="http://localhost:8000/upload")
    parser.add_argument("--chunk-size", type=int, default=1024 * 1024)
    parser.add_argument("--workers", type=int, default=3)
    parser.add_argument("--force-chunk-size", action="store_true")
    args = parser.parse_args()

    with httpx.Client() as client:
        summary = upload_file(client, args.url, args.path, args.chunk_size, args.workers, args.force_chunk_size)
    for key, value in summary.items():
        print(f"{key}: {value}")


if __name__ == "__main__":
    main()
