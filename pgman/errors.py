from __future__ import annotations

from typing import Optional

LIST_UNREACHABLE = "unreachable"
LIST_ACCESS_DENIED = "access_denied"
LIST_NOT_FOUND = "not_found"

DOWNLOAD_NETWORK = "network"
DOWNLOAD_AUTH = "auth"
DOWNLOAD_DISK_WRITE = "disk_write"
DOWNLOAD_INTERRUPTED = "interrupted"


class PgmanError(Exception):
    """Base exception for all pgman errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class ValidationError(PgmanError):
    """Raised when a configuration field value is rejected."""

    def __init__(self, field_id: str, message: str) -> None:
        self.field_id = field_id
        super().__init__(message)


class ListError(PgmanError):
    """Raised when listing backups in the object store fails."""

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        super().__init__(message)


class DownloadError(PgmanError):
    """Raised when a backup download fails."""

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        super().__init__(message)


class DownloadCancelled(DownloadError):
    """Raised inside a transfer once cancellation has been requested."""

    def __init__(self, message: str = "Download cancelled") -> None:
        super().__init__(DOWNLOAD_INTERRUPTED, message)


class RestoreError(PgmanError):
    """Raised when the restore pipeline exits unsuccessfully."""

    def __init__(self, exit_reason: str, captured_output: str = "") -> None:
        self.exit_reason = exit_reason
        self.captured_output = captured_output
        super().__init__(exit_reason)


class AlreadyInProgress(PgmanError):
    """Raised when a restore is started while another one is running."""

    def __init__(self, message: str = "A restore is already in progress") -> None:
        super().__init__(message)


class AdminCommandError(PgmanError):
    """Raised when a one-shot admin command fails."""

    def __init__(
        self, command: str, returncode: Optional[int], output: str = ""
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(f"{command} failed with status {returncode}")
