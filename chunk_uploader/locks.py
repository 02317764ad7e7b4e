"""Per-identifier merge claims.

A claim is held by at most one caller at a time. Claims carry a TTL so a
process that died mid-merge does not block the identifier forever.
"""

import json
import re
import time
import uuid
from threading import Lock

from chunk_uploader.config import settings
from chunk_uploader.descriptor import claim_key, claim_prefix
from chunk_uploader.exceptions import StoreUnavailable
from chunk_uploader.storage import ChunkStore, StoredObject

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

GENERATION_PATTERN = re.compile(r"^\d+$")
HELD = "held"
RELEASED = "released"


class MergeLock:
    def acquire(self, identifier: str) -> bool:
        raise NotImplementedError

    def release(self, identifier: str) -> None:
        raise NotImplementedError

    def held(self, identifier: str) -> bool:
        raise NotImplementedError


class StoreMergeLock(MergeLock):
    """Claim markers written into the chunk store with exclusive creates.

    Each claim change writes the next generation marker under
    ``claims/{identifier}/``. Taking over a stale claim and releasing a claim
    both create generation ``n + 1`` of the marker that was read, so at most
    one caller succeeds against a given generation. The latest generation of
    an identifier is never deleted.
    """

    ATTEMPTS = 3

    def __init__(self, store: ChunkStore, ttl_seconds: int, claims_directory: str = "claims") -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.claims_directory = claims_directory
        self._held: dict[str, tuple[int, str]] = {}
        self._lock = Lock()

    def _marker(self, token: str, state: str) -> bytes:
        return json.dumps({"token": token, "state": state, "claimed_at": time.time()}).encode("utf-8")

    def generations(self, identifier: str) -> list[tuple[int, StoredObject]]:
        prefix = claim_prefix(identifier, self.claims_directory)
        found = []
        for entry in self.store.list_entries(prefix):
            name = entry.key[len(prefix) :]
            if GENERATION_PATTERN.match(name):
                found.append((int(name), entry))
        found.sort(key=lambda item: item[0])
        return found

    def _read(self, entry: StoredObject) -> dict | None:
        try:
            payload = json.loads(self.store.read(entry.key).decode("utf-8"))
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None

    def _claimable(self, entry: StoredObject) -> bool:
        payload = self._read(entry)
        if payload is not None and payload.get("state") == RELEASED:
            return True
        try:
            claimed_at = float(payload["claimed_at"])
        except (TypeError, KeyError, ValueError):
            # unreadable marker, age it by the store timestamp
            claimed_at = entry.last_modified.timestamp()
        return time.time() - claimed_at > self.ttl_seconds

    def acquire(self, identifier: str) -> bool:
        token = uuid.uuid4().hex
        for _ in range(self.ATTEMPTS):
            generations = self.generations(identifier)
            generation = 0
            if generations:
                latest, entry = generations[-1]
                try:
                    if not self._claimable(entry):
                        return False
                except StoreUnavailable:
                    # superseded and pruned after the listing
                    if self.store.exists(entry.key):
                        raise
                    continue
                generation = latest + 1
            key = claim_key(identifier, generation, self.claims_directory)
            if not self.store.create_exclusive(key, self._marker(token, HELD)):
                continue
            # a pruned generation can be written again, the claim only counts
            # when nothing newer exists
            if self.generations(identifier)[-1][0] != generation:
                continue
            with self._lock:
                self._held[identifier] = (generation, token)
            self._prune(identifier, generation)
            return True
        return False

    def release(self, identifier: str) -> None:
        with self._lock:
            held = self._held.pop(identifier, None)
        if held is None:
            return
        generation, token = held
        key = claim_key(identifier, generation + 1, self.claims_directory)
        # fails when a peer already took the expired claim over
        if self.store.create_exclusive(key, self._marker(token, RELEASED)):
            self._prune(identifier, generation + 1)

    def held(self, identifier: str) -> bool:
        generations = self.generations(identifier)
        return bool(generations) and not self._claimable(generations[-1][1])

    def _prune(self, identifier: str, latest: int) -> None:
        for generation, entry in self.generations(identifier):
            if generation >= latest:
                continue
            try:
                self.store.delete_key(entry.key)
            except StoreUnavailable:
                # left for the sweeper
                continue


class RedisMergeLock(MergeLock):
    """SET NX EX claim shared by every instance pointed at the same Redis."""

    def __init__(self, redis_url: str, ttl_seconds: int, prefix: str) -> None:
        import redis

        self._client = redis.Redis.from_url(redis_url, decode_responses=True)
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._tokens: dict[str, str] = {}
        self._lock = Lock()

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}:{identifier}"

    def acquire(self, identifier: str) -> bool:
        token = uuid.uuid4().hex
        try:
            acquired = self._client.set(self._key(identifier), token, nx=True, ex=max(1, self.ttl_seconds))
        except Exception as exc:
            raise StoreUnavailable(f"merge claim failed: {exc}", identifier=identifier) from exc
        if not acquired:
            return False
        with self._lock:
            self._tokens[identifier] = token
        return True

    def release(self, identifier: str) -> None:
        with self._lock:
            token = self._tokens.pop(identifier, None)
        if token is None:
            return
        try:
            self._client.eval(RELEASE_SCRIPT, 1, self._key(identifier), token)
        except Exception as exc:
            raise StoreUnavailable(f"merge claim release failed: {exc}", identifier=identifier) from exc

    def held(self, identifier: str) -> bool:
        try:
            return bool(self._client.exists(self._key(identifier)))
        except Exception as exc:
            raise StoreUnavailable(f"merge claim lookup failed: {exc}", identifier=identifier) from exc


def build_merge_lock(store: ChunkStore) -> MergeLock:
    backend = settings.merge_lock_backend.lower()
    if backend == "store":
        return StoreMergeLock(store, settings.merge_claim_ttl_seconds, settings.claims_directory)
    if backend == "redis":
        return RedisMergeLock(settings.redis_url, settings.merge_claim_ttl_seconds, settings.redis_lock_prefix)
    raise ValueError(f"unsupported merge lock backend: {settings.merge_lock_backend}")
