#!/usr/bin/env python3
"""
Seed a local directory with a history of mock backup archives.

Each archive is named after its timestamp and gets a matching modification
time, so the directory can be pruned with either timestamp source, e.g.
``prune_backups.py --storage ./mock --keep-all-within 14 --dry-run``.
"""
from __future__ import annotations

import argparse
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional
from zipfile import ZIP_DEFLATED, ZipFile

from backup_catalog import BACKUP_FORMAT
from prune_backups import ConfigurationError, parse_duration


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create mock backup ZIPs stepping back in time from now."
    )
    parser.add_argument(
        "--backup-dir",
        type=Path,
        required=True,
        help="Directory where the backup ZIPs should be placed.",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of backups to create (default: 1).",
    )
    parser.add_argument(
        "--timestamp-step",
        default="1d",
        help="Age difference between successive backups (e.g. 6h, 1d; default: 1d).",
    )
    parser.add_argument(
        "--suffix",
        default=".zip",
        help="File name suffix of the archives (default: .zip).",
    )
    return parser.parse_args(argv)


def make_mock_backup(backup_dir: Path, timestamp: datetime, suffix: str = ".zip") -> Path:
    backup_dir.mkdir(parents=True, exist_ok=True)
    archive_path = backup_dir / f"{timestamp.strftime(BACKUP_FORMAT)}{suffix}"

    with ZipFile(archive_path, mode="w", compression=ZIP_DEFLATED) as zip_file:
        zip_file.writestr("backup.txt", f"mock backup taken {timestamp.isoformat()}")

    epoch_seconds = timestamp.timestamp()
    os.utime(archive_path, (epoch_seconds, epoch_seconds))
    return archive_path


def make_backup_history(
    backup_dir: Path,
    *,
    count: int,
    step: timedelta,
    now: Optional[datetime] = None,
    suffix: str = ".zip",
) -> List[Path]:
    if count <= 0:
        raise ValueError("count must be a positive integer.")
    if step <= timedelta(0):
        raise ValueError("step must be positive.")
    newest = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    return [make_mock_backup(backup_dir, newest - index * step, suffix) for index in range(count)]


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        step = parse_duration(args.timestamp_step)
        paths = make_backup_history(
            args.backup_dir.resolve(), count=args.count, step=step, suffix=args.suffix
        )
    except (ConfigurationError, ValueError) as error:
        print(f"Error: {error}")
        return 2

    for path in paths:
        print(f"Created mock backup: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
