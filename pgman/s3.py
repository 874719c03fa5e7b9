from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    NoCredentialsError,
    PartialCredentialsError,
)

from .config import S3Settings
from .errors import (
    DOWNLOAD_AUTH,
    DOWNLOAD_DISK_WRITE,
    DOWNLOAD_INTERRUPTED,
    DOWNLOAD_NETWORK,
    LIST_ACCESS_DENIED,
    LIST_NOT_FOUND,
    LIST_UNREACHABLE,
    DownloadCancelled,
    DownloadError,
    ListError,
)

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
LIST_PAGE_SIZE = 1000

ACCESS_DENIED_CODES = {
    "AccessDenied",
    "AllAccessDisabled",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "InvalidToken",
    "ExpiredToken",
    "401",
    "403",
}
NOT_FOUND_CODES = {"NoSuchBucket", "NoSuchKey", "NotFound", "404"}

ProgressCallback = Callable[[int, int], None]
CancelCheck = Callable[[], bool]


@dataclass(frozen=True)
class BackupEntry:
    key: str
    size: int
    last_modified: Optional[datetime]


def _timestamp(value: Optional[datetime]) -> float:
    if value is None:
        return 0.0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def sort_entries(entries: Iterable[BackupEntry]) -> list[BackupEntry]:
    by_key = sorted(entries, key=lambda entry: entry.key)
    return sorted(
        by_key,
        key=lambda entry: (
            entry.last_modified is not None,
            _timestamp(entry.last_modified),
        ),
        reverse=True,
    )


def _client_error_code(exc: ClientError) -> str:
    response = getattr(exc, "response", None) or {}
    code = str(response.get("Error", {}).get("Code", "") or "")
    if code:
        return code
    status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return str(status or "")


def classify_list_error(exc: Exception) -> ListError:
    if isinstance(exc, ListError):
        return exc
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return ListError(LIST_ACCESS_DENIED, f"Missing S3 credentials: {exc}")
    if isinstance(exc, ClientError):
        code = _client_error_code(exc)
        if code in NOT_FOUND_CODES:
            return ListError(LIST_NOT_FOUND, f"Bucket or prefix not found ({code})")
        if code in ACCESS_DENIED_CODES:
            return ListError(LIST_ACCESS_DENIED, f"Access denied ({code})")
        return ListError(LIST_UNREACHABLE, f"S3 request failed: {exc}")
    if isinstance(exc, (BotoConnectionError, HTTPClientError, BotoCoreError)):
        return ListError(LIST_UNREACHABLE, f"S3 endpoint unreachable: {exc}")
    return ListError(LIST_UNREACHABLE, f"S3 request failed: {exc}")


def classify_download_error(exc: Exception) -> DownloadError:
    if isinstance(exc, DownloadError):
        return exc
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return DownloadError(DOWNLOAD_AUTH, f"Missing S3 credentials: {exc}")
    if isinstance(exc, ClientError):
        code = _client_error_code(exc)
        if code in ACCESS_DENIED_CODES:
            return DownloadError(DOWNLOAD_AUTH, f"Access denied ({code})")
        return DownloadError(DOWNLOAD_NETWORK, f"Download request failed: {exc}")
    return DownloadError(DOWNLOAD_NETWORK, f"Download request failed: {exc}")


class S3Service:
    def __init__(self, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> None:
        self._clients: dict[tuple, object] = {}
        self._chunk_size = max(1, int(chunk_size))

    def _client_key(self, settings: S3Settings) -> tuple:
        return (
            settings.region,
            settings.endpoint_url,
            settings.access_key_id,
            settings.secret_access_key,
            settings.path_style,
        )

    def _client(self, settings: S3Settings):
        key = self._client_key(settings)
        if key in self._clients:
            return self._clients[key]
        if settings.access_key_id and settings.secret_access_key:
            session = boto3.session.Session(
                aws_access_key_id=settings.access_key_id,
                aws_secret_access_key=settings.secret_access_key,
            )
        else:
            session = boto3.session.Session()
        kwargs: dict[str, object] = {}
        if settings.region:
            kwargs["region_name"] = settings.region
        if settings.endpoint_url:
            kwargs["endpoint_url"] = settings.endpoint_url
        if settings.path_style:
            kwargs["config"] = Config(s3={"addressing_style": "path"})
        client = session.client("s3", **kwargs)
        self._clients[key] = client
        return client

    def list_backups(self, settings: S3Settings) -> list[BackupEntry]:
        logger.debug(
            "Listing backups in bucket %s under prefix %r",
            settings.bucket,
            settings.prefix,
        )
        try:
            client = self._client(settings)
            entries = self._list_objects(client, settings.bucket, settings.prefix)
        except Exception as exc:
            raise classify_list_error(exc) from exc
        logger.info("Found %d backups in bucket %s", len(entries), settings.bucket)
        return sort_entries(entries)

    def _list_objects(self, client, bucket: str, prefix: str) -> list[BackupEntry]:
        entries: list[BackupEntry] = []
        continuation: Optional[str] = None
        while True:
            kwargs = {
                "Bucket": bucket,
                "MaxKeys": LIST_PAGE_SIZE,
            }
            if prefix:
                kwargs["Prefix"] = prefix
            if continuation:
                kwargs["ContinuationToken"] = continuation
            response = client.list_objects_v2(**kwargs)
            for entry in response.get("Contents", []):
                key = entry.get("Key")
                if not key:
                    continue
                if key.endswith("/"):
                    continue
                entries.append(
                    BackupEntry(
                        key=key,
                        size=int(entry.get("Size", 0)),
                        last_modified=entry.get("LastModified"),
                    )
                )
            if response.get("IsTruncated"):
                continuation = response.get("NextContinuationToken")
            else:
                break
        return entries

    def check_connection(self, settings: S3Settings) -> str:
        try:
            client = self._client(settings)
            if settings.bucket:
                client.head_bucket(Bucket=settings.bucket)
                return f"bucket '{settings.bucket}' is reachable"
            response = client.list_buckets()
        except Exception as exc:
            raise classify_list_error(exc) from exc
        names = [bucket["Name"] for bucket in response.get("Buckets", [])]
        if not names:
            return "no buckets visible"
        return f"available buckets: {', '.join(names)}"

    def download_object(
        self,
        settings: S3Settings,
        key: str,
        destination: str,
        on_progress: Optional[ProgressCallback] = None,
        should_cancel: Optional[CancelCheck] = None,
    ) -> str:
        dest_path = Path(destination)
        logger.info("Downloading s3://%s/%s to %s", settings.bucket, key, dest_path)
        if should_cancel and should_cancel():
            raise DownloadCancelled()
        try:
            client = self._client(settings)
            response = client.get_object(Bucket=settings.bucket, Key=key)
        except Exception as exc:
            raise classify_download_error(exc) from exc
        body = response.get("Body")
        total = response.get("ContentLength")
        total = int(total) if isinstance(total, int) else 0
        completed = False
        try:
            try:
                dest_path.parent.mkdir(parents=True, exist_ok=True)
                handle = dest_path.open("wb")
            except OSError as exc:
                raise DownloadError(
                    DOWNLOAD_DISK_WRITE, f"Cannot write {dest_path}: {exc}"
                ) from exc
            try:
                with handle:
                    self._stream_body(
                        body, handle, dest_path, total, on_progress, should_cancel
                    )
            except OSError as exc:
                raise DownloadError(
                    DOWNLOAD_DISK_WRITE, f"Cannot write {dest_path}: {exc}"
                ) from exc
            completed = True
        finally:
            if body is not None:
                try:
                    body.close()
                except Exception as exc:
                    logger.debug("Closing response body for %s failed: %s", key, exc)
            if not completed:
                self._remove_partial(dest_path)
        logger.info("Download of %s completed", key)
        return str(dest_path)

    def _stream_body(
        self,
        body,
        handle,
        dest_path: Path,
        total: int,
        on_progress: Optional[ProgressCallback],
        should_cancel: Optional[CancelCheck],
    ) -> None:
        done = 0
        if on_progress:
            on_progress(done, total)
        if body is None:
            chunks = iter(())
        else:
            chunks = iter(body.iter_chunks(self._chunk_size))
        while True:
            if should_cancel and should_cancel():
                raise DownloadCancelled()
            try:
                chunk = next(chunks, None)
            except Exception as exc:
                raise DownloadError(
                    DOWNLOAD_INTERRUPTED, f"Transfer interrupted: {exc}"
                ) from exc
            if chunk is None:
                break
            if not chunk:
                continue
            try:
                handle.write(chunk)
            except OSError as exc:
                raise DownloadError(
                    DOWNLOAD_DISK_WRITE, f"Cannot write {dest_path}: {exc}"
                ) from exc
            done += len(chunk)
            if on_progress:
                on_progress(done, max(total, done))
        if total and done < total:
            raise DownloadError(
                DOWNLOAD_INTERRUPTED,
                f"Transfer ended early after {done} of {total} bytes",
            )

    def _remove_partial(self, dest_path: Path) -> None:
        try:
            os.remove(dest_path)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Could not remove partial download %s: %s", dest_path, exc)
            return
        logger.debug("Removed partial download %s", dest_path)
