"""
Retention strategies.

A strategy is any object with ``decide(catalog, now, params)`` returning a
RetentionDecision that partitions the catalog's keys into keep and delete.
Strategies never talk to the store.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Protocol, Set, Tuple, Type

from backup_catalog import BackupRecord, Catalog


logger = logging.getLogger(__name__)


class InvalidPolicy(Exception):
    """Raised when policy parameters contradict each other."""


class InvalidDecision(Exception):
    """Raised when a strategy's keep and delete sets do not partition the catalog."""


class AgeBand(str, Enum):
    RECENT = "recent"
    THINNING = "thinning"
    EXPIRED = "expired"


def format_duration(value: timedelta) -> str:
    seconds = int(value.total_seconds())
    units = [
        (7 * 24 * 60 * 60, "week"),
        (24 * 60 * 60, "day"),
        (60 * 60, "hour"),
        (60, "minute"),
        (1, "second"),
    ]
    for unit_seconds, label in units:
        if seconds >= unit_seconds and seconds % unit_seconds == 0:
            amount = seconds // unit_seconds
            name = label if amount == 1 else f"{label}s"
            return f"{amount} {name}"
    return f"{seconds} seconds"


@dataclass(frozen=True)
class PolicyParams:
    keep_all_within: timedelta
    one_per_month_within: timedelta
    keep_last: int = 0

    def validate(self) -> None:
        if self.keep_all_within < timedelta(0):
            raise InvalidPolicy("keep_all_within must not be negative.")
        if self.one_per_month_within < self.keep_all_within:
            raise InvalidPolicy(
                "one_per_month_within "
                f"({format_duration(self.one_per_month_within)}) must not be shorter than "
                f"keep_all_within ({format_duration(self.keep_all_within)})."
            )

    def band(self, record: BackupRecord, now: datetime) -> AgeBand:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        age = now - record.timestamp
        if age < self.keep_all_within:
            return AgeBand.RECENT
        if age < self.one_per_month_within:
            return AgeBand.THINNING
        return AgeBand.EXPIRED


@dataclass(frozen=True)
class RetentionDecision:
    keep: FrozenSet[str] = frozenset()
    delete: FrozenSet[str] = frozenset()
    reasons: Mapping[str, str] = field(default_factory=dict, compare=False)

    def check_partition(self, catalog: Catalog) -> None:
        overlap = self.keep & self.delete
        if overlap:
            raise InvalidDecision(f"Keys both kept and deleted: {sorted(overlap)}")
        if self.keep | self.delete != catalog.keys():
            raise InvalidDecision("Decision does not cover exactly the catalog's keys.")


class RetentionStrategy(Protocol):
    name: str

    def decide(self, catalog: Catalog, now: datetime, params: PolicyParams) -> RetentionDecision:
        ...


def _finish(
    catalog: Catalog, keep: Set[str], delete: Dict[str, str]
) -> RetentionDecision:
    decision = RetentionDecision(
        keep=frozenset(keep),
        delete=frozenset(delete),
        reasons=MappingProxyType(dict(delete)),
    )
    decision.check_partition(catalog)
    logger.debug(
        "Retention decision: keep %d, delete %d of %d backups",
        len(decision.keep),
        len(decision.delete),
        len(catalog),
    )
    return decision


def _thin_by_month(
    catalog: Catalog, now: datetime, params: PolicyParams, *, delete_expired: bool
) -> RetentionDecision:
    keep: Set[str] = set()
    delete: Dict[str, str] = {}
    representatives: Dict[Tuple[int, int], str] = {}

    # Catalog order is ascending, so the first record seen per month is its earliest.
    for record in catalog:
        band = params.band(record, now)
        if band is AgeBand.RECENT:
            keep.add(record.key)
        elif band is AgeBand.THINNING:
            month = (record.timestamp.year, record.timestamp.month)
            representative = representatives.get(month)
            if representative is None:
                representatives[month] = record.key
                keep.add(record.key)
            else:
                delete[record.key] = (
                    f"{month[0]:04d}-{month[1]:02d} is already covered by {representative}."
                )
        elif delete_expired:
            delete[record.key] = (
                f"Older than {format_duration(params.one_per_month_within)}."
            )
        else:
            keep.add(record.key)

    return _finish(catalog, keep, delete)


class OlderThanButKeepOnePerMonth:
    """Keep everything recent, one backup per calendar month after that.

    Backups younger than ``keep_all_within`` are kept. Backups between
    ``keep_all_within`` and ``one_per_month_within`` are grouped by the month
    of their own timestamp and only the earliest of each month survives.
    Anything older than ``one_per_month_within`` is deleted.
    """

    name = "older_than_but_keep_one_per_month"

    def decide(self, catalog: Catalog, now: datetime, params: PolicyParams) -> RetentionDecision:
        params.validate()
        return _thin_by_month(catalog, now, params, delete_expired=True)


class KeepOnePerMonthRetainExpired:
    """Like OlderThanButKeepOnePerMonth, but never touches expired backups."""

    name = "keep_one_per_month_retain_expired"

    def decide(self, catalog: Catalog, now: datetime, params: PolicyParams) -> RetentionDecision:
        params.validate()
        return _thin_by_month(catalog, now, params, delete_expired=False)


class OlderThan:
    """Delete every backup at least ``keep_all_within`` old."""

    name = "older_than"

    def decide(self, catalog: Catalog, now: datetime, params: PolicyParams) -> RetentionDecision:
        params.validate()
        keep: Set[str] = set()
        delete: Dict[str, str] = {}
        for record in catalog:
            if params.band(record, now) is AgeBand.RECENT:
                keep.add(record.key)
            else:
                delete[record.key] = f"Older than {format_duration(params.keep_all_within)}."
        return _finish(catalog, keep, delete)


class KeepLast:
    name = "keep_last"

    def decide(self, catalog: Catalog, now: datetime, params: PolicyParams) -> RetentionDecision:
        params.validate()
        if params.keep_last < 1:
            raise InvalidPolicy("keep_last must be at least 1.")
        records = catalog.records
        cutoff = max(len(records) - params.keep_last, 0)
        keep = {record.key for record in records[cutoff:]}
        delete = {
            record.key: f"Not among the newest {params.keep_last} backups."
            for record in records[:cutoff]
        }
        return _finish(catalog, keep, delete)


class KeepAll:
    name = "keep_all"

    def decide(self, catalog: Catalog, now: datetime, params: PolicyParams) -> RetentionDecision:
        params.validate()
        return _finish(catalog, catalog.keys(), {})


STRATEGIES: Dict[str, Type[RetentionStrategy]] = {
    strategy.name: strategy
    for strategy in (
        OlderThanButKeepOnePerMonth,
        KeepOnePerMonthRetainExpired,
        OlderThan,
        KeepLast,
        KeepAll,
    )
}

DEFAULT_STRATEGY = OlderThanButKeepOnePerMonth.name


def get_strategy(name: str) -> RetentionStrategy:
    try:
        return STRATEGIES[name]()
    except KeyError as error:
        raise InvalidPolicy(
            f"Unknown strategy {name!r}. Choose one of: {', '.join(sorted(STRATEGIES))}."
        ) from error
