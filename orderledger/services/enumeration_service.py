"""
Counting and export over arbitrarily large filtered sets of ledger rows.

Large offsets are slow against the store and shift under concurrent inserts,
so both operations walk a keyset cursor over (createdAt, _id) in descending
order instead. The _id tie-breaker keeps the walk strictly monotonic when
several rows share a creation timestamp.

Counts are cached for a short TTL in the shared count cache, keyed by the
filter set and tagged so ledger writes drop only the counts they can change.
"""

import asyncio
import logging
import math
import os
import resource
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from orderledger.core.cache import TaggedTTLCache, count_cache
from orderledger.core.config import EnumerationConfig
from orderledger.core.exceptions import ResourceExhaustedError
from orderledger.core.monitoring import error_monitor, monitor_errors
from orderledger.models import TRANSACTIONS, OrderStatus, Transaction, utc_now
from orderledger.schemas.transaction import TransactionFilters
from orderledger.services.store import ResilientStore

logger = logging.getLogger(__name__)

DESCENDING = [("createdAt", -1), ("_id", -1)]
CURSOR_PROJECTION = {"_id": 1, "createdAt": 1}

STANDARD_MODE = "standard"
LARGE_MODE = "large"


def current_rss_bytes() -> int:
    """
    Resident set size of this process, read from /proc/self/statm.

    Where /proc is unavailable this falls back to getrusage, which reports the
    peak RSS of the process rather than the current one, so the value never
    drops after memory has been freed.
    """
    try:
        with open("/proc/self/statm") as statm:
            resident_pages = int(statm.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError):
        # ru_maxrss is in KiB on Linux
        return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss * 1024


def keyset_query(query: Dict[str, Any], cursor: Optional[Tuple[datetime, str]]) -> Dict[str, Any]:
    """Restrict `query` to rows strictly after `cursor` in descending (createdAt, _id) order."""
    if cursor is None:
        return query

    created_at, record_id = cursor
    after_cursor = {
        "$or": [
            {"createdAt": {"$lt": created_at}},
            {"createdAt": created_at, "_id": {"$lt": record_id}},
        ]
    }
    if not query:
        return after_cursor
    return {"$and": [query, after_cursor]}


def standard_batch_size(total: int) -> int:
    return min(2000, max(500, math.ceil(total / 8)))


@dataclass
class ExportReport:
    rows: List[Transaction]
    mode: str
    estimated: int
    filename: str
    errors: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.rows)


class EnumerationService:
    """Cursor-based counting and export of ledger rows"""

    def __init__(
        self,
        store: ResilientStore,
        config: EnumerationConfig = None,
        cache: TaggedTTLCache = count_cache,
        memory_probe: Callable[[], int] = current_rss_bytes,
    ):
        self.store = store
        self.config = config or EnumerationConfig()
        self.cache = cache
        self.memory_probe = memory_probe

    async def _keyset_batch(
        self,
        query: Dict[str, Any],
        cursor: Optional[Tuple[datetime, str]],
        limit: int,
        tag: str,
        projection: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        return await self.store.read(
            TRANSACTIONS,
            keyset_query(query, cursor),
            tag=tag,
            sort=DESCENDING,
            limit=limit,
            projection=projection,
        )

    # Counting

    @monitor_errors("count_matching")
    async def count_matching(self, filters: TransactionFilters) -> int:
        """
        Exact number of rows matching `filters`.

        Served from the count cache when a fresh entry exists.
        """
        return await self.cache.get_or_compute(
            filters.cache_key(),
            filters.cache_tags(),
            lambda: self._count(filters.build_query()),
            ttl_seconds=self.config.count_cache_ttl_seconds,
        )

    async def _count(self, query: Dict[str, Any]) -> int:
        fast_limit = self.config.count_fast_path_limit
        head = await self.store.read(
            TRANSACTIONS, query, tag="count_fast", projection={"_id": 1}, limit=fast_limit
        )
        if len(head) < fast_limit:
            return len(head)

        batch_size = self.config.count_batch_size
        total = 0
        cursor = None
        rounds = 0
        while True:
            batch = await self._keyset_batch(query, cursor, batch_size, "count_walk", CURSOR_PROJECTION)
            total += len(batch)
            rounds += 1
            if len(batch) < batch_size:
                break
            cursor = (batch[-1]["createdAt"], batch[-1]["_id"])

        logger.debug(f"Counted {total} rows in {rounds} cursor batches")
        return total

    async def status_breakdown(self, filters: TransactionFilters) -> Dict[str, int]:
        """Count per status for the other filters in the set."""
        statuses = [status.value for status in OrderStatus]
        counts = await asyncio.gather(
            *(self.count_matching(filters.model_copy(update={"status": status})) for status in statuses)
        )
        return dict(zip(statuses, counts))

    # Export

    def select_mode(self, estimated: int) -> str:
        return LARGE_MODE if estimated >= self.config.export_large_threshold else STANDARD_MODE

    async def export_matching(self, filters: TransactionFilters) -> AsyncIterator[Transaction]:
        """
        Yield every row matching `filters`, newest first, each exactly once.

        Rows that no longer parse as a Transaction are logged and skipped.
        """
        estimated = await self.count_matching(filters)
        async for document in self._documents(filters.build_query(), estimated):
            try:
                yield Transaction.from_document(document)
            except ValidationError as e:
                error_monitor.log_error(e, {"operation": "export_matching", "record_id": document.get("_id")})

    async def _documents(self, query: Dict[str, Any], estimated: int) -> AsyncIterator[Dict[str, Any]]:
        if self.select_mode(estimated) == LARGE_MODE:
            source = self._export_large(query)
        else:
            source = self._export_standard(query, estimated)
        async for document in source:
            yield document

    async def _export_standard(self, query: Dict[str, Any], estimated: int) -> AsyncIterator[Dict[str, Any]]:
        """
        Parallel offset batches inside the estimated range, then a keyset tail walk.

        Each offset range is small. Rows inserted after the estimate push older
        rows past it; the tail walk picks those up and the seen-set drops the
        duplicates the shift causes.
        """
        batch_size = standard_batch_size(estimated)
        semaphore = asyncio.Semaphore(self.config.export_concurrency)

        async def fetch(offset: int) -> List[Dict[str, Any]]:
            async with semaphore:
                return await self.store.read(
                    TRANSACTIONS,
                    query,
                    tag=f"export_batch:{offset}",
                    sort=DESCENDING,
                    skip=offset,
                    limit=batch_size,
                )

        batches = await asyncio.gather(*(fetch(offset) for offset in range(0, estimated, batch_size)))

        seen = set()
        cursor = None
        for batch in batches:
            for document in batch:
                if document["_id"] not in seen:
                    seen.add(document["_id"])
                    yield document
            if batch:
                cursor = (batch[-1]["createdAt"], batch[-1]["_id"])

        tail = 0
        while True:
            batch = await self._keyset_batch(query, cursor, batch_size, "export_tail")
            for document in batch:
                if document["_id"] not in seen:
                    seen.add(document["_id"])
                    tail += 1
                    yield document
            if len(batch) < batch_size:
                break
            cursor = (batch[-1]["createdAt"], batch[-1]["_id"])

        if tail:
            logger.info(f"Export tail walk picked up {tail} rows beyond the estimate of {estimated}")

    async def _export_large(self, query: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        """Strictly sequential keyset batches with a pause and a memory check before each."""
        batch_size = self.config.export_large_batch_size
        delay = self.config.export_batch_delay_ms / 1000
        ceiling = self.config.export_memory_ceiling_mb * 1024 * 1024
        cursor = None

        while True:
            used = self.memory_probe()
            if used > ceiling:
                raise ResourceExhaustedError(
                    f"Export aborted: memory use {used // (1024 * 1024)} MB exceeds "
                    f"{self.config.export_memory_ceiling_mb} MB",
                    used_bytes=used,
                    limit_bytes=ceiling,
                )

            batch = await self._keyset_batch(query, cursor, batch_size, "export_large")
            for document in batch:
                yield document

            if len(batch) < batch_size:
                break
            cursor = (batch[-1]["createdAt"], batch[-1]["_id"])
            if delay > 0:
                await asyncio.sleep(delay)

    @monitor_errors("export_report")
    async def export_report(self, filters: TransactionFilters) -> ExportReport:
        """Materialize an export, collecting rows that fail to parse instead of aborting."""
        estimated = await self.count_matching(filters)
        mode = self.select_mode(estimated)
        report = ExportReport(
            rows=[],
            mode=mode,
            estimated=estimated,
            filename=f"transactions_{filters.status}_{utc_now().strftime('%Y%m%d_%H%M%S')}.ndjson",
        )

        async for document in self._documents(filters.build_query(), estimated):
            try:
                report.rows.append(Transaction.from_document(document))
            except ValidationError as e:
                report.errors.append(f"{document.get('_id')}: {e.error_count()} validation errors")

        logger.info(
            f"Exported {report.count} rows in {mode} mode (estimated {estimated}, "
            f"{len(report.errors)} unreadable)"
        )
        return report
