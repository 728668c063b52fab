"""
Run one prune cycle against a storage adapter.

Listing -> Deciding -> Deleting -> Done, with Failed reachable from every
state. Listing must complete before any decision is made. Deletes are
independent per key: a failing key is reported, never fatal to the run.
Nothing about a run is persisted; an interrupted run is recovered by simply
running again.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Set, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from backup_catalog import BackupCatalog, Catalog
from retention import PolicyParams, RetentionDecision, RetentionStrategy
from storage import (
    PermanentListError,
    StorageAdapter,
    StorageError,
    StoredObject,
    TransientStorageError,
    describe_location,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ListingUnavailable(Exception):
    """Raised when the listing could not be completed."""


class PruneState(str, Enum):
    LISTING = "listing"
    DECIDING = "deciding"
    DELETING = "deleting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient store failures.

    max_attempts counts every try, so 3 means one call and two retries.
    """

    max_attempts: int = 5
    base_delay: float = 0.5  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must not be negative")

    def call(
        self,
        operation: Callable[[], T],
        *,
        description: str,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Run ``operation``, retrying TransientStorageError.

        The last TransientStorageError is re-raised once attempts run out;
        any other exception propagates on the first occurrence.
        """

        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "%s failed (attempt %d of %d): %s",
                description,
                retry_state.attempt_number,
                self.max_attempts,
                error,
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.base_delay,
                max=self.max_delay,
                exp_base=self.exponential_base,
            ),
            retry=retry_if_exception_type(TransientStorageError),
            before_sleep=log_retry,
            sleep=sleep,
            reraise=True,
        )
        return retrying(operation)


@dataclass(frozen=True)
class DeleteFailure:
    key: str
    error: str


@dataclass(frozen=True)
class PruneReport:
    kept: FrozenSet[str] = frozenset()
    deleted: FrozenSet[str] = frozenset()
    skipped: FrozenSet[str] = frozenset()
    failed: FrozenSet[DeleteFailure] = frozenset()
    dry_run: bool = False

    @property
    def failed_keys(self) -> FrozenSet[str]:
        return frozenset(failure.key for failure in self.failed)

    @property
    def succeeded(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PruneRunner:
    def __init__(
        self,
        strategy: RetentionStrategy,
        *,
        catalog_builder: Optional[BackupCatalog] = None,
        retry: Optional[RetryPolicy] = None,
        max_workers: int = 8,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.strategy = strategy
        self.catalog_builder = catalog_builder or BackupCatalog()
        self.retry = retry or RetryPolicy()
        self.max_workers = max_workers
        self.clock = clock
        self.sleep = sleep
        self.state: Optional[PruneState] = None

    def run(
        self,
        adapter: StorageAdapter,
        prefix: str,
        params: PolicyParams,
        dry_run: bool = False,
        *,
        confirm: Optional[Callable[[RetentionDecision], bool]] = None,
    ) -> PruneReport:
        try:
            self.state = PruneState.LISTING
            raw_objects = self._list_all(adapter, prefix)

            self.state = PruneState.DECIDING
            catalog = self.catalog_builder.build(raw_objects)
            decision = self.strategy.decide(catalog, self.clock(), params)
            logger.info(
                "Found %d backups under %r; keeping %d, %d expendable.",
                len(catalog),
                prefix,
                len(decision.keep),
                len(decision.delete),
            )

            if decision.delete and not dry_run and confirm is not None and not confirm(decision):
                logger.info("Deletion not confirmed; nothing was deleted.")
                dry_run = True

            self.state = PruneState.DELETING
            report = self._apply(adapter, catalog, decision, dry_run=dry_run)
        except BaseException:
            self.state = PruneState.FAILED
            raise

        self.state = PruneState.DONE
        return report

    def _list_all(self, adapter: StorageAdapter, prefix: str) -> List[StoredObject]:
        objects: List[StoredObject] = []
        token: Optional[str] = None
        pages = 0
        while True:
            # A retried page reuses its token.
            current = token
            try:
                page = self.retry.call(
                    lambda: adapter.list_page(prefix, current),
                    description=f"Listing page {pages + 1} of {prefix!r}",
                    sleep=self.sleep,
                )
            except TransientStorageError as error:
                raise ListingUnavailable(
                    f"Listing {prefix!r} failed after {self.retry.max_attempts} attempts: {error}"
                ) from error
            except PermanentListError as error:
                raise ListingUnavailable(f"Listing {prefix!r} failed: {error}") from error

            pages += 1
            objects.extend(page.objects)
            if not page.next_token:
                break
            if page.next_token == current:
                raise ListingUnavailable(
                    f"Listing {prefix!r} did not advance past page {pages}: "
                    f"the store returned the same continuation token."
                )
            token = page.next_token

        logger.debug("Listed %d objects in %d page(s)", len(objects), pages)
        return objects

    def _delete_one(self, adapter: StorageAdapter, key: str) -> None:
        self.retry.call(
            lambda: adapter.delete(key),
            description=f"Deleting {describe_location(adapter, key)}",
            sleep=self.sleep,
        )

    def _apply(
        self,
        adapter: StorageAdapter,
        catalog: Catalog,
        decision: RetentionDecision,
        *,
        dry_run: bool,
    ) -> PruneReport:
        # Deletes are issued in catalog order.
        to_delete = [record.key for record in catalog if record.key in decision.delete]
        action = "Would delete" if dry_run else "Deleting"
        for key in to_delete:
            logger.info(
                "%s %s: %s",
                action,
                describe_location(adapter, key),
                decision.reasons.get(key, "expendable"),
            )

        if dry_run or not to_delete:
            return PruneReport(
                kept=decision.keep,
                skipped=frozenset(to_delete) if dry_run else frozenset(),
                dry_run=dry_run,
            )

        deleted: Set[str] = set()
        failed: Set[DeleteFailure] = set()
        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(to_delete)))
        futures: Dict[Future, str] = {}
        try:
            futures = {executor.submit(self._delete_one, adapter, key): key for key in to_delete}
            pending = set(futures)
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    key = futures[future]
                    try:
                        future.result()
                    except StorageError as error:
                        logger.error(
                            "Failed to delete %s: %s", describe_location(adapter, key), error
                        )
                        failed.add(DeleteFailure(key, str(error)))
                    else:
                        deleted.add(key)
        except BaseException:
            for future in futures:
                future.cancel()
            raise
        finally:
            executor.shutdown(wait=True)

        logger.info(
            "Deleted %d of %d expendable backups; %d failed.",
            len(deleted),
            len(to_delete),
            len(failed),
        )
        return PruneReport(
            kept=decision.keep,
            deleted=frozenset(deleted),
            failed=frozenset(failed),
        )
