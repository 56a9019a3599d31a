"""
Online rebuild of a single secondary index.

The index is never missing while it is rebuilt: a covering index (the
original key plus one synthetic trailing field) is built first, then the
original is dropped and recreated, and only after the new index is verified
is the covering index dropped::

    PLANNING -> COVERING -> COVERED -> SWAPPING -> SWAPPED -> VERIFYING -> DONE
                                  (any step) -> FAILED

A covering index found from an earlier, interrupted run is reused when it
is ready and has the expected shape. The definition of the original is
checkpointed before it is dropped, so a run that dies between the drop and
the recreate can still rebuild it later.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Dict, List, Tuple

from database.exceptions import IndexVerificationError, UserAbortError
from database.models import IndexDescriptor, IndexLog, utc_now_iso
from database.mongo_utils import IndexInspector
from database.version import OptionFilter
from observability import get_logger
from resilience import DEFAULT_INDEX_READY_POLICY, DEFAULT_INDEX_RETRY_POLICY, RetryPolicy, run_with_retry


class RebuildPhase(str, Enum):
    PLANNING = "planning"
    COVERING = "covering"
    COVERED = "covered"
    SWAPPING = "swapping"
    SWAPPED = "swapped"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


def _is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, (IndexVerificationError, UserAbortError))


class IndexRebuildEngine:
    def __init__(
        self,
        db: Any,
        inspector: IndexInspector,
        option_filter: OptionFilter,
        state_store: Any,
        *,
        cover_suffix: str,
        cheap_suffix_field: str,
        retry_policy: RetryPolicy = DEFAULT_INDEX_RETRY_POLICY,
        ready_policy: RetryPolicy = DEFAULT_INDEX_READY_POLICY,
        sleep=asyncio.sleep,
        logger: Any = None,
    ):
        self._db = db
        self._inspector = inspector
        self._option_filter = option_filter
        self._state_store = state_store
        self._cover_suffix = cover_suffix
        self._cheap_field = cheap_suffix_field
        self._retry_policy = retry_policy
        self._ready_policy = ready_policy
        self._sleep = sleep
        self._log = logger or get_logger("index_rebuild")

    def covering_name(self, descriptor: IndexDescriptor) -> str:
        return descriptor.name + self._cover_suffix

    def covering_key(self, descriptor: IndexDescriptor) -> List[Tuple[str, Any]]:
        return list(descriptor.key) + [(self._cheap_field, 1)]

    def covering_options(self, descriptor: IndexDescriptor) -> Dict[str, Any]:
        if "partialFilterExpression" in descriptor.options:
            return {"partialFilterExpression": descriptor.options["partialFilterExpression"]}
        return {}

    def _enter(self, index_log: IndexLog, phase: RebuildPhase, collection: str, index: str) -> None:
        index_log.phase = phase.value
        self._log.debug("rebuild_phase", collection=collection, index=index, phase=phase.value)

    async def _require_valid(self, collection: str, name: str, key, options: Dict[str, Any]) -> None:
        await self._inspector.wait_until_ready(collection, name, self._ready_policy)
        ok, reason = await self._inspector.verify_index(collection, name, key, options)
        if not ok:
            raise IndexVerificationError(collection, name, reason)

    async def _reuse_covering(self, collection: str, descriptor: IndexDescriptor) -> bool:
        """True when a usable covering index from an earlier run already exists."""
        cover_name = self.covering_name(descriptor)
        existing = await self._inspector.find(collection, cover_name)
        if existing is None:
            return False
        ok, reason = await self._inspector.verify_index(
            collection, cover_name, self.covering_key(descriptor), self.covering_options(descriptor)
        )
        if ok:
            self._log.info("covering_index_reused", collection=collection, index=cover_name)
            return True
        self._log.warning(
            "covering_index_discarded", collection=collection, index=cover_name, reason=reason
        )
        await self._inspector.drop_index_if_exists(collection, cover_name)
        return False

    async def _attempt(self, collection: str, descriptor: IndexDescriptor, index_log: IndexLog) -> None:
        coll = self._db[collection]
        name = descriptor.name
        cover_name = self.covering_name(descriptor)
        cover_key = self.covering_key(descriptor)
        cover_options = self.covering_options(descriptor)

        self._enter(index_log, RebuildPhase.PLANNING, collection, name)
        if not await self._reuse_covering(collection, descriptor):
            self._enter(index_log, RebuildPhase.COVERING, collection, name)
            await coll.create_index(cover_key, name=cover_name, **cover_options)
            await self._require_valid(collection, cover_name, cover_key, cover_options)
        self._enter(index_log, RebuildPhase.COVERED, collection, name)

        self._enter(index_log, RebuildPhase.SWAPPING, collection, name)
        # Past this point only the checkpoint remembers how to recreate the index
        self._state_store.mark_in_flight(collection, descriptor)
        if not await self._inspector.drop_index_if_exists(collection, name):
            self._log.warning("original_index_already_dropped", collection=collection, index=name)
        self._enter(index_log, RebuildPhase.SWAPPED, collection, name)

        final_options = self._option_filter.filter(descriptor.options)
        await coll.create_index(list(descriptor.key), name=name, **final_options)

        self._enter(index_log, RebuildPhase.VERIFYING, collection, name)
        await self._require_valid(collection, name, descriptor.key, final_options)

        await self._inspector.drop_index_if_exists(collection, cover_name)
        self._enter(index_log, RebuildPhase.DONE, collection, name)

    async def _cleanup_before_retry(self, collection: str, descriptor: IndexDescriptor) -> None:
        # Without the original the covering index is all that serves queries
        if await self._inspector.find(collection, descriptor.name) is None:
            self._log.info(
                "covering_index_kept_for_retry",
                collection=collection,
                index=self.covering_name(descriptor),
            )
            return
        try:
            await self._inspector.drop_index_if_exists(collection, self.covering_name(descriptor))
        except Exception as exc:
            self._log.warning(
                "covering_index_cleanup_failed",
                collection=collection,
                index=self.covering_name(descriptor),
                error=str(exc),
            )

    async def rebuild(
        self, collection: str, descriptor: IndexDescriptor, initial_size_mb: float = 0.0
    ) -> IndexLog:
        """Rebuild one index; failures are recorded in the returned log, not raised.

        ``UserAbortError`` is the exception: it propagates to the caller.
        """
        index_log = IndexLog(start_time=utc_now_iso(), initial_size_mb=initial_size_mb)
        started = time.monotonic()
        attempts = 0

        async def _operation(attempt: int) -> None:
            nonlocal attempts
            attempts = attempt
            await self._attempt(collection, descriptor, index_log)

        async def _before_retry(attempt: int) -> None:
            await self._cleanup_before_retry(collection, descriptor)

        try:
            await run_with_retry(
                _operation,
                self._retry_policy,
                before_retry=_before_retry,
                is_retryable=_is_retryable,
                sleep=self._sleep,
                logger=self._log,
                context={"collection": collection, "index": descriptor.name},
            )
        except UserAbortError:
            raise
        except Exception as exc:
            failed_phase = index_log.phase
            index_log.phase = RebuildPhase.FAILED.value
            index_log.status = "failed"
            index_log.retries = max(0, attempts - 1)
            index_log.error = f"{failed_phase}: {exc}"
            index_log.time_seconds = time.monotonic() - started
            self._log.error(
                "index_rebuild_failed",
                collection=collection,
                index=descriptor.name,
                phase=failed_phase,
                retries=index_log.retries,
                error=str(exc),
            )
            return index_log

        index_log.status = "completed"
        index_log.retries = max(0, attempts - 1)
        index_log.time_seconds = time.monotonic() - started
        self._state_store.mark_completed(collection, descriptor.name)
        self._log.info(
            "index_rebuilt",
            collection=collection,
            index=descriptor.name,
            seconds=round(index_log.time_seconds, 3),
            retries=index_log.retries,
        )
        return index_log
