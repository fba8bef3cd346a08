"""
Resilient access layer over the MongoDB collections.

Every read and write goes through a bounded tenacity retry. Transient driver
errors are retried, and so is "record not yet visible" for keyed operations:
a settlement report can arrive a few hundred milliseconds before the order
insert that it refers to has propagated. Once attempts run out the caller gets
NotFoundError or StoreError, never a raw driver exception.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from pymongo import ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    PyMongoError,
    WTimeoutError,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from orderledger.core.exceptions import NotFoundError, StoreError, VersionConflictError

logger = logging.getLogger(__name__)

# AutoReconnect and NetworkTimeout are ConnectionFailure subclasses
TRANSIENT_ERRORS = (ConnectionFailure, ExecutionTimeout, WTimeoutError)


class RecordNotVisible(Exception):
    """A keyed lookup found nothing; retried because the record may still be propagating"""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not visible")


class ResilientStore:
    """Retrying wrapper around a motor database"""

    def __init__(self, database, attempts: int = 3, base_delay: float = 0.1, max_delay: float = 1.0):
        self._database = database
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def collection(self, kind: str):
        return self._database[kind]

    def _log_retry(self, tag: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            logger.warning(
                f"[{tag}] attempt {retry_state.attempt_number}/{self.attempts} failed "
                f"({type(error).__name__}), retrying"
            )

        return before_sleep

    async def _run(
        self,
        tag: str,
        operation: Callable[[], Awaitable[Any]],
        retry_not_visible: bool = False,
    ) -> Any:
        retry_on: Tuple[type, ...] = TRANSIENT_ERRORS
        if retry_not_visible:
            retry_on = retry_on + (RecordNotVisible,)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.base_delay, min=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(retry_on),
            before_sleep=self._log_retry(tag),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await operation()

        except RecordNotVisible as e:
            logger.info(f"[{tag}] {e.kind} {e.identifier} still missing after {self.attempts} attempts")
            raise NotFoundError(e.kind, e.identifier)

        except DuplicateKeyError:
            raise

        except TRANSIENT_ERRORS as e:
            logger.error(f"[{tag}] store unavailable after {self.attempts} attempts", exc_info=True)
            raise StoreError(
                "Store operation failed after retries",
                operation=tag,
                database_error=type(e).__name__,
            ) from e

        except PyMongoError as e:
            logger.error(f"[{tag}] store operation rejected", exc_info=True)
            raise StoreError(
                "Store operation failed",
                operation=tag,
                database_error=type(e).__name__,
            ) from e

    async def read(
        self,
        kind: str,
        query: Dict[str, Any],
        *,
        tag: str,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        skip: int = 0,
        limit: int = 0,
        projection: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Run a filtered query and return the matching documents.

        An empty result is a valid answer here and is not retried.
        """

        async def fetch():
            cursor = self.collection(kind).find(query, projection)
            if sort:
                cursor = cursor.sort(list(sort))
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(length=limit or None)

        return await self._run(tag, fetch)

    async def read_one(
        self,
        kind: str,
        query: Dict[str, Any],
        *,
        tag: str,
        required: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """
        Fetch a single document by key.

        Args:
            kind: Collection name
            query: Keyed filter, e.g. {"odrId": ...}
            tag: Label used in retry logs
            required: Retry while the document is missing, then raise NotFoundError

        Returns:
            The document, or None when not required and absent
        """
        identifier = str(next(iter(query.values()), "")) if query else ""

        async def fetch():
            document = await self.collection(kind).find_one(query)
            if document is None and required:
                raise RecordNotVisible(kind, identifier)
            return document

        return await self._run(tag, fetch, retry_not_visible=required)

    async def insert(self, kind: str, document: Dict[str, Any], *, tag: str) -> Dict[str, Any]:
        """Insert a document; DuplicateKeyError is passed through for the caller to map."""

        async def put():
            await self.collection(kind).insert_one(document)
            return document

        return await self._run(tag, put)

    async def write(
        self,
        kind: str,
        record_id: str,
        mutation: Dict[str, Any],
        *,
        tag: str,
        expected_version: Optional[int] = None,
        upsert: bool = False,
    ) -> Dict[str, Any]:
        """
        Apply an update to one document and return it as it is after the update.

        Args:
            kind: Collection name
            record_id: Document _id
            mutation: Update document ($set, $inc, ...)
            tag: Label used in retry logs
            expected_version: When given, the update only applies at this version
            upsert: Create the document when missing

        Returns:
            The updated document

        Raises:
            VersionConflictError: The document exists at another version (not retried)
            NotFoundError: The document never became visible
            StoreError: The store kept failing
        """
        query: Dict[str, Any] = {"_id": record_id}
        if expected_version is not None:
            query["version"] = expected_version

        async def update():
            collection = self.collection(kind)
            document = await collection.find_one_and_update(
                query,
                mutation,
                return_document=ReturnDocument.AFTER,
                upsert=upsert,
            )
            if document is not None:
                return document

            if expected_version is not None:
                current = await collection.find_one({"_id": record_id}, {"_id": 1, "version": 1})
                if current is not None:
                    raise VersionConflictError(kind, record_id, expected_version)

            raise RecordNotVisible(kind, record_id)

        return await self._run(tag, update, retry_not_visible=True)

    async def delete(self, kind: str, record_id: str, *, tag: str) -> bool:
        """Remove one document by _id; returns whether anything was removed."""

        async def remove():
            result = await self.collection(kind).delete_one({"_id": record_id})
            return result.deleted_count > 0

        return await self._run(tag, remove)

    async def write_many(self, kind: str, query: Dict[str, Any], mutation: Dict[str, Any], *, tag: str) -> int:
        """Apply an update to every matching document; returns the modified count."""

        async def update():
            result = await self.collection(kind).update_many(query, mutation)
            return result.modified_count

        return await self._run(tag, update)
