"""
Helpers shared by the rebuild and compaction engines.

Collection/index name matching, size formatting, cluster naming, and
``IndexInspector`` which reads index definitions, sizes and build state.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

from pymongo.errors import OperationFailure, PyMongoError

from observability import get_logger
from resilience import RetryPolicy, poll_until

from .models import KNOWN_INDEX_OPTIONS, IndexDescriptor

UNKNOWN_CLUSTER = "unknown-cluster"
BYTES_PER_MB = 1024 * 1024

INDEX_NOT_FOUND_CODE = 27
UNAUTHORIZED_CODE = 13


def is_ignored(name: str, patterns: Iterable[str]) -> bool:
    """Exact match, or prefix match for patterns ending with ``*``."""
    for pattern in patterns or ():
        if not pattern:
            continue
        if pattern.endswith("*"):
            if name.startswith(pattern[:-1]):
                return True
        elif name == pattern:
            return True
    return False


def select_collections(
    names: Iterable[str],
    specified: Sequence[str] = (),
    ignored: Sequence[str] = (),
) -> List[str]:
    """Apply include/exclude rules; an explicit include wins over exclusion."""
    candidates = [n for n in names if not n.startswith("system.")]
    if specified:
        return [n for n in candidates if is_ignored(n, specified)]
    return [n for n in candidates if not is_ignored(n, ignored)]


def bytes_to_mb(value: Any) -> float:
    try:
        return float(value or 0) / BYTES_PER_MB
    except (TypeError, ValueError):
        return 0.0


def format_duration(seconds: float) -> str:
    seconds = max(0.0, float(seconds or 0.0))
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {secs}s"


def is_permission_error(e: BaseException) -> bool:
    """True for authorization failures (restricted tiers, missing roles)."""
    if isinstance(e, OperationFailure) and e.code == UNAUTHORIZED_CODE:
        return True
    error_str = str(e).lower()
    permission_indicators = [
        "not authorized",
        "unauthorized",
        "permission denied",
        "requires authentication",
        "not allowed",
    ]
    return any(indicator in error_str for indicator in permission_indicators)


def is_index_not_found(e: BaseException) -> bool:
    if isinstance(e, OperationFailure) and e.code == INDEX_NOT_FOUND_CODE:
        return True
    return "index not found" in str(e).lower()


def cluster_name_from_uri(uri: str) -> Optional[str]:
    """First DNS label of the first host, e.g. ``prod-shard`` for SRV URIs."""
    try:
        netloc = urlparse(uri).netloc
    except ValueError:
        return None
    host = netloc.rsplit("@", 1)[-1].split(",")[0].split(":")[0]
    if not host or host.replace(".", "").isdigit() or host == "localhost":
        return None
    return host.split(".")[0] or None


async def resolve_cluster_name(db: Any, configured: Optional[str] = None, logger: Any = None) -> str:
    if configured:
        return configured
    log = logger or get_logger("cluster")
    try:
        hello = await db.client.admin.command({"hello": 1})
        set_name = (hello or {}).get("setName")
        if set_name:
            return str(set_name)
    except PyMongoError as exc:
        log.warning("cluster_name_lookup_failed", error=str(exc))
    return UNKNOWN_CLUSTER


def key_matches(found: Sequence[Tuple[str, Any]], expected: Sequence[Tuple[str, Any]]) -> bool:
    return [(str(k), v) for k, v in found] == [(str(k), v) for k, v in expected]


def options_match(found: Mapping[str, Any], expected: Mapping[str, Any]) -> bool:
    found_known = {k: found[k] for k in KNOWN_INDEX_OPTIONS if k in found}
    expected_known = {k: expected[k] for k in KNOWN_INDEX_OPTIONS if k in expected}
    return found_known == expected_known


class IndexInspector:
    """Read-only view of a database's indexes."""

    def __init__(self, db: Any, logger: Any = None, sleep=asyncio.sleep):
        self._db = db
        self._log = logger or get_logger("index_inspector")
        self._sleep = sleep
        self._index_stats_denied = False

    async def list_descriptors(self, collection: str) -> List[IndexDescriptor]:
        docs = await self._db[collection].list_indexes().to_list(length=None)
        return [IndexDescriptor.from_document(doc) for doc in docs]

    async def find(self, collection: str, name: str) -> Optional[IndexDescriptor]:
        for descriptor in await self.list_descriptors(collection):
            if descriptor.name == name:
                return descriptor
        return None

    async def index_sizes(self, collection: str) -> Dict[str, int]:
        stats = await self._db.command({"collStats": collection})
        return {str(k): int(v or 0) for k, v in ((stats or {}).get("indexSizes") or {}).items()}

    async def _index_stats_building(self, collection: str, name: str) -> Optional[bool]:
        """``building`` flag from ``$indexStats``; None when unavailable."""
        if self._index_stats_denied:
            return None
        pipeline = [{"$indexStats": {}}, {"$match": {"name": name}}]
        try:
            entries = await self._db[collection].aggregate(pipeline).to_list(length=None)
        except PyMongoError as exc:
            if is_permission_error(exc):
                # Restricted tiers reject $indexStats; stop asking for this run
                self._index_stats_denied = True
                self._log.debug("index_stats_denied", collection=collection)
            else:
                self._log.debug("index_stats_failed", collection=collection, error=str(exc))
            return None
        for entry in entries or []:
            if entry.get("name") == name:
                return bool(entry.get("building"))
        return None

    async def is_index_ready(self, collection: str, name: str) -> bool:
        descriptor = await self.find(collection, name)
        if descriptor is None:
            return False
        if descriptor.building:
            return False
        building = await self._index_stats_building(collection, name)
        return building is not True

    async def wait_until_ready(self, collection: str, name: str, policy: RetryPolicy) -> bool:
        async def _check() -> bool:
            return await self.is_index_ready(collection, name)

        ready = await poll_until(_check, policy, sleep=self._sleep)
        if not ready:
            self._log.warning(
                "index_not_ready",
                collection=collection,
                index=name,
                timeout_seconds=policy.timeout_seconds,
            )
        return ready

    async def verify_index(
        self,
        collection: str,
        name: str,
        expected_key: Sequence[Tuple[str, Any]],
        expected_options: Mapping[str, Any],
    ) -> Tuple[bool, str]:
        """Check existence, readiness, exact key order and known options."""
        descriptor = await self.find(collection, name)
        if descriptor is None:
            return False, "index not found"
        if descriptor.building:
            return False, "index build still in progress"
        if await self._index_stats_building(collection, name):
            return False, "index build still in progress"
        if not key_matches(descriptor.key, expected_key):
            return False, f"key mismatch: expected {list(expected_key)}, found {descriptor.key}"
        if not options_match(descriptor.options, expected_options):
            return False, (
                f"options mismatch: expected {dict(expected_options)}, found {descriptor.options}"
            )
        return True, ""

    async def drop_index_if_exists(self, collection: str, name: str) -> bool:
        try:
            await self._db[collection].drop_index(name)
            return True
        except OperationFailure as exc:
            if is_index_not_found(exc):
                return False
            raise
