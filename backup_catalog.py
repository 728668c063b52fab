"""
Normalise listed store objects into an ordered catalog of backups.

Which timestamp a backup carries is decided by a timestamp rule: either the
store's own metadata (``last_modified``) or a date encoded in the key name.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Mapping, Optional, Protocol, Set, Tuple


BACKUP_FORMAT = "%Y-%m-%d-%H-%M-%S"

logger = logging.getLogger(__name__)


class MalformedEntry(Exception):
    """Raised when a listed object yields no usable timestamp."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Cannot derive a timestamp for {key!r}: {reason}")
        self.key = key
        self.reason = reason


class DuplicateKey(Exception):
    """Raised when the same key shows up twice in one listing."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Key {key!r} was listed more than once.")
        self.key = key


@dataclass(frozen=True)
class BackupRecord:
    key: str
    timestamp: datetime


@dataclass(frozen=True)
class Catalog:
    """Backups sorted ascending by (timestamp, key)."""

    records: Tuple[BackupRecord, ...] = ()

    def __iter__(self) -> Iterator[BackupRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def keys(self) -> Set[str]:
        return {record.key for record in self.records}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimestampRule(Protocol):
    def timestamp_for(self, key: str, metadata: Mapping[str, Any]) -> datetime:
        ...


@dataclass(frozen=True)
class MetadataTimestampRule:
    """Take the timestamp from a metadata field (default ``last_modified``)."""

    field: str = "last_modified"

    def timestamp_for(self, key: str, metadata: Mapping[str, Any]) -> datetime:
        value = metadata.get(self.field)
        if value is None:
            raise MalformedEntry(key, f"metadata has no {self.field!r}")
        if isinstance(value, datetime):
            return _as_utc(value)
        if isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                return _as_utc(datetime.fromisoformat(text))
            except ValueError as error:
                raise MalformedEntry(key, f"{self.field!r} is not ISO-8601: {value!r}") from error
        raise MalformedEntry(key, f"{self.field!r} has unsupported type {type(value).__name__}")


@dataclass(frozen=True)
class KeyTimestampRule:
    """Parse the timestamp from the key's file name.

    The final path segment is cut at its first ``.`` and parsed with
    ``strptime(fmt)``; ``backups/2024-01-31-03-00-00.sql.gz`` yields
    2024-01-31 03:00:00 UTC.
    """

    fmt: str = BACKUP_FORMAT

    def timestamp_for(self, key: str, metadata: Mapping[str, Any]) -> datetime:
        name = key.rstrip("/").rsplit("/", 1)[-1]
        stem = name.split(".", 1)[0]
        try:
            return _as_utc(datetime.strptime(stem, self.fmt))
        except ValueError as error:
            raise MalformedEntry(key, f"name does not match {self.fmt!r}") from error


class BackupCatalog:
    def __init__(self, timestamp_rule: Optional[TimestampRule] = None) -> None:
        self.timestamp_rule = timestamp_rule or MetadataTimestampRule()

    def build(self, raw_objects: Iterable[Tuple[str, Mapping[str, Any]]]) -> Catalog:
        seen: Set[str] = set()
        records = []
        for key, metadata in raw_objects:
            if key in seen:
                raise DuplicateKey(key)
            seen.add(key)
            records.append(BackupRecord(key, self.timestamp_rule.timestamp_for(key, metadata)))

        records.sort(key=lambda record: (record.timestamp, record.key))
        logger.debug("Catalog holds %d backups", len(records))
        return Catalog(tuple(records))
