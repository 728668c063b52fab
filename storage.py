"""
Storage adapters for backup pruning.

An adapter exposes exactly two operations to the pruning code: paginated
listing under a prefix and deletion of a single key. Vendor behaviour
(continuation tokens, error codes, credentials) stays behind this seam.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Protocol, Sequence, Tuple


logger = logging.getLogger(__name__)

NOISY_LOGGERS = ("boto", "boto3", "botocore", "urllib3", "s3transfer")

_S3_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_S3_TRANSIENT_CODES = {
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "ServiceUnavailable",
    "503",
    "500",
}


class StorageError(Exception):
    """Base class for failures reported by a storage adapter."""


class TransientStorageError(StorageError):
    """A store call failed in a way that may succeed when repeated."""


class TransientListError(TransientStorageError):
    """Listing a page failed; the same page may be requested again."""


class PermanentListError(StorageError):
    """Listing failed and retrying will not help (e.g. access denied)."""


class TransientDeleteError(TransientStorageError):
    """Deleting a key failed; the delete may be retried."""


class PermanentDeleteError(StorageError):
    """Deleting a key failed and retrying will not help."""


class StoredObject(NamedTuple):
    key: str
    metadata: Mapping[str, Any]


class ListPage(NamedTuple):
    objects: Sequence[StoredObject]
    next_token: Optional[str] = None


class StorageAdapter(Protocol):
    def list_page(self, prefix: str, token: Optional[str] = None) -> ListPage:
        ...

    def delete(self, key: str) -> None:
        ...


def quiet_external_loggers() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@dataclass
class InMemoryStorageAdapter:
    """Dictionary backed adapter with scripted failures.

    ``fail_list_with`` is consumed one exception per ``list_page`` call.
    ``fail_delete_with`` maps a key to the exceptions its successive delete
    calls raise before the delete goes through.
    """

    objects: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    page_size: int = 1000
    fail_list_with: List[Exception] = field(default_factory=list)
    fail_delete_with: Dict[str, List[Exception]] = field(default_factory=dict)
    list_calls: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    delete_calls: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            raise ValueError("page_size must be positive.")

    def put(self, key: str, last_modified: datetime, size: int = 0) -> None:
        self.objects[key] = {"last_modified": last_modified, "size": size}

    def list_page(self, prefix: str, token: Optional[str] = None) -> ListPage:
        self.list_calls.append((prefix, token))
        if self.fail_list_with:
            raise self.fail_list_with.pop(0)

        keys = sorted(key for key in self.objects if key.startswith(prefix))
        start = int(token) if token else 0
        chunk = keys[start : start + self.page_size]
        end = start + len(chunk)
        next_token = str(end) if end < len(keys) else None
        return ListPage(
            objects=[StoredObject(key, dict(self.objects[key])) for key in chunk],
            next_token=next_token,
        )

    def delete(self, key: str) -> None:
        self.delete_calls.append(key)
        pending = self.fail_delete_with.get(key)
        if pending:
            raise pending.pop(0)
        self.objects.pop(key, None)


class LocalStorageAdapter:
    """Backups stored as files below a directory.

    Keys are POSIX paths relative to ``root``. Pages are ``page_size`` keys
    long and the token is the last key of the previous page.
    """

    def __init__(self, root: Path, *, page_size: int = 1000) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive.")
        self.root = Path(root).expanduser().resolve()
        self.page_size = page_size

    def _all_keys(self, prefix: str) -> List[str]:
        if not self.root.exists():
            return []
        keys = []
        for candidate in self.root.rglob("*"):
            if not candidate.is_file():
                continue
            key = candidate.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        keys.sort()
        return keys

    def list_page(self, prefix: str, token: Optional[str] = None) -> ListPage:
        try:
            keys = self._all_keys(prefix)
        except OSError as error:
            raise TransientListError(f"Listing {self.root} failed: {error}") from error

        if token is not None:
            keys = [key for key in keys if key > token]
        chunk = keys[: self.page_size]
        next_token = chunk[-1] if len(keys) > self.page_size else None

        objects: List[StoredObject] = []
        for key in chunk:
            try:
                stat = (self.root / key).stat()
            except FileNotFoundError:
                continue
            except OSError as error:
                raise TransientListError(f"Reading {key} failed: {error}") from error
            objects.append(
                StoredObject(
                    key,
                    {
                        "last_modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                        "size": stat.st_size,
                    },
                )
            )
        return ListPage(objects=objects, next_token=next_token)

    def delete(self, key: str) -> None:
        path = self.root / key
        try:
            path.unlink(missing_ok=True)
        except PermissionError as error:
            raise PermanentDeleteError(f"Cannot delete {path}: {error}") from error
        except OSError as error:
            raise TransientDeleteError(f"Deleting {path} failed: {error}") from error


def create_s3_client(*, aws_profile: Optional[str], aws_region: Optional[str]):
    try:
        import boto3
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "boto3 is required for S3 operations. Install with `pip install boto3`."
        ) from exc
    quiet_external_loggers()
    session_kwargs = {}
    if aws_profile:
        session_kwargs["profile_name"] = aws_profile
    if aws_region:
        session_kwargs["region_name"] = aws_region
    session = boto3.Session(**session_kwargs)
    return session.client("s3")


def _client_error_details(error) -> Tuple[str, int]:
    response = getattr(error, "response", None) or {}
    code = str(response.get("Error", {}).get("Code", ""))
    status = int(response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
    return code, status


def _is_transient_s3_error(code: str, status: int) -> bool:
    return code in _S3_TRANSIENT_CODES or status >= 500 or status == 429


def _connection_errors() -> Tuple[type, ...]:
    from botocore.exceptions import (
        ConnectionClosedError,
        ConnectTimeoutError,
        EndpointConnectionError,
        ReadTimeoutError,
    )

    return (ConnectionClosedError, ConnectTimeoutError, EndpointConnectionError, ReadTimeoutError)


class S3StorageAdapter:
    """Adapter for an S3 bucket.

    Credentials are resolved by boto3 from the named profile or the process
    environment (``AWS_ACCESS_KEY_ID`` / ``AWS_SECRET_ACCESS_KEY``).
    """

    def __init__(
        self,
        bucket: str,
        *,
        client=None,
        aws_profile: Optional[str] = None,
        aws_region: Optional[str] = None,
        page_size: int = 1000,
    ) -> None:
        if not bucket:
            raise ValueError("S3 storage requires a bucket.")
        if not 0 < page_size <= 1000:
            raise ValueError("page_size must be between 1 and 1000.")
        self.bucket = bucket
        self.page_size = page_size
        self._client = client or create_s3_client(
            aws_profile=aws_profile, aws_region=aws_region
        )

    def list_page(self, prefix: str, token: Optional[str] = None) -> ListPage:
        from botocore.exceptions import BotoCoreError, ClientError

        list_kwargs: Dict[str, Any] = {"Bucket": self.bucket, "MaxKeys": self.page_size}
        if prefix:
            list_kwargs["Prefix"] = prefix
        if token:
            list_kwargs["ContinuationToken"] = token

        try:
            response = self._client.list_objects_v2(**list_kwargs)
        except ClientError as error:
            code, status = _client_error_details(error)
            if _is_transient_s3_error(code, status):
                raise TransientListError(
                    f"Listing s3://{self.bucket}/{prefix} failed: {code or status}"
                ) from error
            raise PermanentListError(
                f"Listing s3://{self.bucket}/{prefix} failed: {code or status}"
            ) from error
        except _connection_errors() as error:
            raise TransientListError(
                f"Listing s3://{self.bucket}/{prefix} failed: {error}"
            ) from error
        except BotoCoreError as error:
            # Missing or partial credentials and other client-side failures.
            raise PermanentListError(
                f"Listing s3://{self.bucket}/{prefix} failed: {error}"
            ) from error

        objects = [
            StoredObject(
                obj["Key"],
                {"last_modified": obj.get("LastModified"), "size": obj.get("Size", 0)},
            )
            for obj in response.get("Contents", [])
        ]
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ListPage(objects=objects, next_token=next_token)

    def delete(self, key: str) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as error:
            code, status = _client_error_details(error)
            if code in _S3_NOT_FOUND_CODES or status == 404:
                logger.debug("s3://%s/%s already gone", self.bucket, key)
                return
            if _is_transient_s3_error(code, status):
                raise TransientDeleteError(
                    f"Deleting s3://{self.bucket}/{key} failed: {code or status}"
                ) from error
            raise PermanentDeleteError(
                f"Deleting s3://{self.bucket}/{key} failed: {code or status}"
            ) from error
        except _connection_errors() as error:
            raise TransientDeleteError(
                f"Deleting s3://{self.bucket}/{key} failed: {error}"
            ) from error
        except BotoCoreError as error:
            raise PermanentDeleteError(
                f"Deleting s3://{self.bucket}/{key} failed: {error}"
            ) from error


def describe_location(adapter: StorageAdapter, key: str) -> str:
    if isinstance(adapter, S3StorageAdapter):
        return f"s3://{adapter.bucket}/{key}"
    if isinstance(adapter, LocalStorageAdapter):
        return os.fspath(adapter.root / key)
    return key
