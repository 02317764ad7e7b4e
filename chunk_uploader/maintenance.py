from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from chunk_uploader.config import settings
from chunk_uploader.exceptions import StoreUnavailable
from chunk_uploader.locks import GENERATION_PATTERN
from chunk_uploader.logs import ENGINE_LOGGER, get_event_logger, log_event
from chunk_uploader.metrics import swept_keys_total
from chunk_uploader.storage import ChunkStore, StoredObject

engine_logger = get_event_logger(ENGINE_LOGGER)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _delete_older(store: ChunkStore, entries: list[StoredObject], older_than: datetime) -> tuple[int, int]:
    deleted = 0
    failed = 0
    for entry in entries:
        if entry.last_modified >= older_than:
            continue
        try:
            store.delete_key(entry.key)
            deleted += 1
        except StoreUnavailable as exc:
            failed += 1
            log_event(
                engine_logger,
                {"event": "sweep_delete_failed", "key": entry.key, "detail": exc.detail},
                level=logging.WARNING,
            )
    return deleted, failed


def _sweep_claims(store: ChunkStore, older_than: datetime) -> tuple[int, int]:
    # The newest marker of an identifier carries its claim generation.
    prefix = f"{settings.claims_directory}/"
    entries = store.list_entries(prefix)
    latest: dict[str, tuple[int, str]] = {}
    for entry in entries:
        identifier, _, name = entry.key[len(prefix) :].rpartition("/")
        if not GENERATION_PATTERN.match(name):
            continue
        generation = int(name)
        if identifier not in latest or generation > latest[identifier][0]:
            latest[identifier] = (generation, entry.key)
    keep = {key for _, key in latest.values()}
    return _delete_older(store, [entry for entry in entries if entry.key not in keep], older_than)


def sweep_once(store: ChunkStore, now: datetime | None = None) -> dict[str, int]:
    """Delete chunks of abandoned uploads and superseded merge claim markers."""
    now = now or _utc_now()
    chunks_deleted, chunk_failures = _delete_older(
        store,
        store.list_entries(f"{settings.chunks_directory}/"),
        now - timedelta(seconds=settings.stale_chunk_ttl_seconds),
    )
    claims_deleted, claim_failures = _sweep_claims(
        store,
        now - timedelta(seconds=settings.merge_claim_ttl_seconds),
    )
    swept_keys_total.inc(chunks_deleted + claims_deleted)
    stats = {
        "chunks_deleted": chunks_deleted,
        "claims_deleted": claims_deleted,
        "failed": chunk_failures + claim_failures,
    }
    log_event(engine_logger, {"event": "sweep_completed", **stats})
    return stats
