#!/usr/bin/env python3
"""
Backups cleaner.

Lists the backups stored under a bucket prefix (or a local directory),
decides which of them are expendable under a retention policy and deletes
those.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional
from urllib.parse import urlparse

from backup_catalog import (
    BACKUP_FORMAT,
    BackupCatalog,
    DuplicateKey,
    KeyTimestampRule,
    MalformedEntry,
    MetadataTimestampRule,
)
from prune_runner import ListingUnavailable, PruneReport, PruneRunner, RetryPolicy
from retention import (
    DEFAULT_STRATEGY,
    STRATEGIES,
    InvalidDecision,
    InvalidPolicy,
    PolicyParams,
    RetentionDecision,
    get_strategy,
)
from storage import LocalStorageAdapter, S3StorageAdapter, StorageAdapter, quiet_external_loggers


CONFIG_SECTION = "prune"
TIMESTAMP_SOURCES = ("metadata", "key")
AGELESS_STRATEGIES = ("keep_last", "keep_all")


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass
class StorageTarget:
    kind: str  # 's3' or 'local'
    bucket: Optional[str] = None
    prefix: str = ""
    path: Optional[Path] = None


@dataclass
class PruneConfig:
    target: StorageTarget
    params: PolicyParams
    strategy: str = DEFAULT_STRATEGY
    timestamp_source: str = "metadata"
    key_format: str = BACKUP_FORMAT
    aws_profile: Optional[str] = None
    aws_region: Optional[str] = None
    max_attempts: int = 5
    workers: int = 8
    dry_run: bool = False
    assume_yes: bool = False


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Delete expendable backups under a retention policy."
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI config file with a [prune] section.",
    )
    parser.add_argument(
        "-r",
        "--region",
        help="AWS region the bucket is located in.",
    )
    parser.add_argument(
        "-b",
        "--bucket",
        help="Name of the S3 bucket holding the backups.",
    )
    parser.add_argument(
        "-p",
        "--prefix",
        help="Key prefix (directory) of the backups.",
    )
    parser.add_argument(
        "--storage",
        metavar="URI",
        help="Storage location instead of --bucket: s3://bucket/prefix or a local directory.",
    )
    parser.add_argument(
        "--aws-profile",
        help="Named AWS shared credentials profile.",
    )
    parser.add_argument(
        "--keep-all-within",
        "--keep_all_within",
        dest="keep_all_within",
        metavar="DURATION",
        help="Keep every backup younger than this (days, or e.g. 36h, 2w).",
    )
    parser.add_argument(
        "--one-per-month-within",
        "--one_per_month_within",
        dest="one_per_month_within",
        metavar="DURATION",
        help="Keep one backup per month younger than this (days, or e.g. 52w).",
    )
    parser.add_argument(
        "--keep-last",
        "--keep_last",
        dest="keep_last",
        type=int,
        help="Number of newest backups kept by the keep_last strategy.",
    )
    parser.add_argument(
        "--strategy",
        choices=sorted(STRATEGIES),
        help=f"Retention strategy (default: {DEFAULT_STRATEGY}).",
    )
    parser.add_argument(
        "--timestamp-source",
        choices=TIMESTAMP_SOURCES,
        help="Take backup times from store metadata or from the key name (default: metadata).",
    )
    parser.add_argument(
        "--key-format",
        help=f"strptime format of key names for --timestamp-source=key (default: {BACKUP_FORMAT}).",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        help="Attempts per store call before giving up (default: 5).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        help="Concurrent delete calls (default: 8).",
    )
    parser.add_argument(
        "--dry-run",
        "--dry_run",
        dest="dry_run",
        action="store_true",
        default=None,
        help="Show planned deletions without deleting anything.",
    )
    parser.add_argument(
        "-y",
        "--yes",
        dest="assume_yes",
        action="store_true",
        default=None,
        help="Skip asking for confirmation before deleting.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    return parser.parse_args(argv)


def read_config_file(config_path: Path) -> Dict[str, str]:
    parser = configparser.ConfigParser()
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")
    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )
    return {k: v for k, v in parser[CONFIG_SECTION].items()}


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value}")


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer.") from error


def parse_duration(value: str) -> timedelta:
    """Parse ``14``, ``14d``, ``36h`` or ``2w``; a bare number means days."""
    units = {
        "s": timedelta(seconds=1),
        "m": timedelta(minutes=1),
        "h": timedelta(hours=1),
        "d": timedelta(days=1),
        "w": timedelta(weeks=1),
    }

    normalized = value.strip().lower()
    if not normalized:
        raise ConfigurationError("Duration values must not be empty.")

    suffix = normalized[-1]
    if suffix.isalpha():
        if suffix not in units:
            raise ConfigurationError(
                "Unsupported duration suffix. Use one of s, m, h, d, w."
            )
        number_part = normalized[:-1]
    else:
        suffix = "d"
        number_part = normalized

    if not number_part:
        raise ConfigurationError(f"Missing numeric value for duration: {value}")

    try:
        amount = int(number_part)
    except ValueError as error:
        raise ConfigurationError(f"Invalid duration value: {value}") from error

    if amount < 0:
        raise ConfigurationError(f"Duration must not be negative: {value}")
    return amount * units[suffix]


def parse_storage(storage_uri: str) -> StorageTarget:
    parsed = urlparse(storage_uri)
    scheme = parsed.scheme.lower()

    if len(parsed.scheme) == 1 and storage_uri[1:2] == ":":
        # Handle Windows drive letter paths (e.g. C:\backups)
        scheme = ""

    if scheme == "s3":
        if not parsed.netloc:
            raise ConfigurationError("S3 URI must include a bucket name.")
        return StorageTarget(kind="s3", bucket=parsed.netloc, prefix=parsed.path.lstrip("/"))

    if scheme in ("", "file"):
        path_str = parsed.path if scheme == "file" else storage_uri
        path = Path(path_str).expanduser().resolve()
        return StorageTarget(kind="local", path=path)

    raise ConfigurationError(f"Unsupported storage scheme: {scheme}")


def merge_config(
    args: argparse.Namespace, file_config: Optional[Dict[str, str]]
) -> PruneConfig:
    file_cfg = file_config or {}

    def pick(name: str) -> Optional[str]:
        value = getattr(args, name)
        if value is not None:
            return value
        return file_cfg.get(name)

    bucket = pick("bucket")
    storage_uri = pick("storage")
    prefix = pick("prefix")
    if bucket and storage_uri:
        raise ConfigurationError("Use either bucket or storage, not both.")
    if bucket:
        target = StorageTarget(kind="s3", bucket=bucket, prefix=prefix or "")
    elif storage_uri:
        target = parse_storage(storage_uri)
        if prefix is not None:
            target.prefix = prefix
    else:
        raise ConfigurationError("A bucket or storage location must be supplied.")

    strategy = pick("strategy") or DEFAULT_STRATEGY
    if strategy not in STRATEGIES:
        raise ConfigurationError(f"Unknown strategy: {strategy}")

    keep_all_value = pick("keep_all_within")
    one_per_month_value = pick("one_per_month_within")
    if keep_all_value is not None:
        keep_all_within = parse_duration(keep_all_value)
    elif strategy in AGELESS_STRATEGIES:
        keep_all_within = timedelta(0)
    else:
        raise ConfigurationError("keep_all_within must be supplied via CLI or config file.")
    one_per_month_within = (
        parse_duration(one_per_month_value)
        if one_per_month_value is not None
        else keep_all_within
    )

    if args.keep_last is not None:
        keep_last = args.keep_last
    elif "keep_last" in file_cfg:
        keep_last = parse_int(file_cfg["keep_last"], "keep_last")
    else:
        keep_last = 0

    timestamp_source = pick("timestamp_source") or "metadata"
    if timestamp_source not in TIMESTAMP_SOURCES:
        raise ConfigurationError(
            f"timestamp_source must be one of {', '.join(TIMESTAMP_SOURCES)}."
        )

    if args.max_attempts is not None:
        max_attempts = args.max_attempts
    elif "max_attempts" in file_cfg:
        max_attempts = parse_int(file_cfg["max_attempts"], "max_attempts")
    else:
        max_attempts = 5
    if max_attempts <= 0:
        raise ConfigurationError("max_attempts must be a positive integer.")

    if args.workers is not None:
        workers = args.workers
    elif "workers" in file_cfg:
        workers = parse_int(file_cfg["workers"], "workers")
    else:
        workers = 8
    if workers <= 0:
        raise ConfigurationError("workers must be a positive integer.")

    def pick_flag(name: str) -> bool:
        value = getattr(args, name)
        if value is not None:
            return value
        if name in file_cfg:
            return parse_bool(file_cfg[name])
        return False

    return PruneConfig(
        target=target,
        params=PolicyParams(
            keep_all_within=keep_all_within,
            one_per_month_within=one_per_month_within,
            keep_last=keep_last,
        ),
        strategy=strategy,
        timestamp_source=timestamp_source,
        key_format=pick("key_format") or BACKUP_FORMAT,
        aws_profile=pick("aws_profile"),
        aws_region=pick("region"),
        max_attempts=max_attempts,
        workers=workers,
        dry_run=pick_flag("dry_run"),
        assume_yes=pick_flag("assume_yes"),
    )


def create_adapter(config: PruneConfig) -> StorageAdapter:
    target = config.target
    if target.kind == "s3":
        from botocore.exceptions import ProfileNotFound

        try:
            return S3StorageAdapter(
                target.bucket or "",
                aws_profile=config.aws_profile,
                aws_region=config.aws_region,
            )
        except ProfileNotFound as error:
            raise ConfigurationError(str(error)) from error
    if target.kind == "local":
        if target.path is None:
            raise ConfigurationError("Local storage requires a path.")
        return LocalStorageAdapter(target.path)
    raise ConfigurationError(f"Unsupported storage kind: {target.kind}")


def build_runner(config: PruneConfig) -> PruneRunner:
    if config.timestamp_source == "key":
        rule = KeyTimestampRule(config.key_format)
    else:
        rule = MetadataTimestampRule()
    return PruneRunner(
        get_strategy(config.strategy),
        catalog_builder=BackupCatalog(rule),
        retry=RetryPolicy(max_attempts=config.max_attempts),
        max_workers=config.workers,
    )


def ask_confirmation(
    input_func: Optional[Callable[[str], str]] = None,
) -> Callable[[RetentionDecision], bool]:
    def confirm(decision: RetentionDecision) -> bool:
        total = len(decision.keep) + len(decision.delete)
        read = input_func or input
        try:
            answer = read(
                f"This will delete {len(decision.delete)} of {total} backups. "
                "Do you want to proceed? (y) "
            )
        except EOFError:
            return False
        return answer.strip().lower() == "y"

    return confirm


def format_report(report: PruneReport) -> str:
    lines = []
    for key in sorted(report.kept):
        lines.append(f"kept     {key}")
    for key in sorted(report.deleted):
        lines.append(f"deleted  {key}")
    for key in sorted(report.skipped):
        lines.append(f"skipped  {key}")
    for failure in sorted(report.failed, key=lambda item: item.key):
        lines.append(f"failed   {failure.key}: {failure.error}")
    lines.append(
        f"{len(report.kept)} kept, {len(report.deleted)} deleted, "
        f"{len(report.skipped)} skipped, {len(report.failed)} failed"
    )
    return "\n".join(lines)


def configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level)
    quiet_external_loggers()


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as error:
        logging.error("%s", error)
        return 2

    try:
        file_config: Optional[Dict[str, str]] = None
        if args.config:
            file_config = read_config_file(args.config)
        config = merge_config(args, file_config)
        config.params.validate()
        adapter = create_adapter(config)
    except (ConfigurationError, InvalidPolicy) as error:
        logging.error("%s", error)
        return 2

    runner = build_runner(config)
    confirm = None if config.assume_yes else ask_confirmation()

    try:
        report = runner.run(
            adapter,
            config.target.prefix,
            config.params,
            dry_run=config.dry_run,
            confirm=confirm,
        )
    except (
        InvalidPolicy, InvalidDecision, MalformedEntry, DuplicateKey, ListingUnavailable
    ) as error:
        logging.error("Pruning aborted: %s", error)
        return 2

    print(format_report(report))
    if not report.succeeded:
        logging.error("%d backup(s) could not be deleted.", len(report.failed))
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
