from __future__ import annotations

from dataclasses import dataclass

from .s3 import BackupEntry

CHECK_S3 = "s3"
CHECK_POSTGRES = "postgres"


@dataclass(frozen=True)
class ListingLoaded:
    task_id: int
    entries: tuple[BackupEntry, ...]
    preserve_selection: bool = False


@dataclass(frozen=True)
class ListingFailed:
    task_id: int
    kind: str
    message: str


@dataclass(frozen=True)
class ConnectionChecked:
    task_id: int
    target: str
    ok: bool
    message: str


@dataclass(frozen=True)
class DownloadProgress:
    task_id: int
    bytes_done: int
    bytes_total: int


@dataclass(frozen=True)
class DownloadCompleted:
    task_id: int
    local_path: str


@dataclass(frozen=True)
class DownloadFailed:
    task_id: int
    kind: str
    message: str


@dataclass(frozen=True)
class DownloadCancelled:
    task_id: int


@dataclass(frozen=True)
class RestoreCompleted:
    task_id: int
    output: str


@dataclass(frozen=True)
class RestoreFailed:
    task_id: int
    exit_reason: str
    captured_output: str


DOWNLOAD_TERMINAL_EVENTS = (DownloadCompleted, DownloadFailed, DownloadCancelled)
