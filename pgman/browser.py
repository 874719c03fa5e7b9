from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Callable, Optional

from . import events
from .config import FIELDS, FIELDS_BY_ID, FIELDS_BY_SHORTCUT, SECTION_S3, ConfigStore
from .errors import AlreadyInProgress, ValidationError
from .s3 import BackupEntry

logger = logging.getLogger(__name__)

ERROR_OUTPUT_LINES = 20
PAGE_SIZE = 10
DEFAULT_DUMP_NAME = "backup.dump"
UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class Mode(Enum):
    BROWSING = "browsing"
    CONFIRMING_RESTORE = "confirming_restore"
    DOWNLOADING = "downloading"
    RESTORING = "restoring"
    EDITING_CONFIG = "editing_config"
    SHOWING_ERROR = "showing_error"


class Focus(Enum):
    LEFT = "left"
    RIGHT = "right"


class TaskStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class DownloadTask:
    task_id: int
    entry: BackupEntry
    local_path: str
    bytes_done: int = 0
    bytes_total: int = 0
    status: TaskStatus = TaskStatus.PENDING
    reason: Optional[str] = None


@dataclass
class RestoreTask:
    task_id: int
    source_path: str
    target_db: str
    status: TaskStatus = TaskStatus.PENDING
    reason: Optional[str] = None
    output: str = ""


@dataclass
class BrowserState:
    entries: tuple[BackupEntry, ...] = ()
    selected_index: int = 0
    focus: Focus = Focus.LEFT
    mode: Mode = Mode.BROWSING
    edit_field: Optional[str] = None
    edit_buffer: str = ""
    config_index: int = 0
    active_download: Optional[DownloadTask] = None
    active_restore: Optional[RestoreTask] = None
    last_error: Optional[str] = None
    status: str = ""
    listing_task: Optional[int] = None
    check_task: Optional[int] = None

    @property
    def selected_entry(self) -> Optional[BackupEntry]:
        if not self.entries:
            return None
        return self.entries[self.selected_index]

    @property
    def loading(self) -> bool:
        return self.listing_task is not None


def clamp_index(index: int, length: int) -> int:
    if length <= 0:
        return 0
    return max(0, min(index, length - 1))


def download_name(key: str) -> str:
    """Local file name for ``key``: a digest of the full key plus its basename."""
    basename = PurePosixPath(key).name
    basename = UNSAFE_NAME_CHARS.sub("_", basename) or DEFAULT_DUMP_NAME
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]
    return f"{digest}-{basename}"


def tail_lines(text: str, limit: int = ERROR_OUTPUT_LINES) -> str:
    lines = text.strip().splitlines()
    return "\n".join(lines[-limit:])


class BrowserMachine:
    """Owns the browser state and reacts to keys and coordinator events.

    Nothing else writes to ``state``. Coordinator events carry the id of the
    task that produced them; events for anything other than the current task
    are dropped.
    """

    def __init__(
        self,
        config: ConfigStore,
        lister,
        downloads,
        restores,
        checker=None,
        download_dir: str = ".",
        file_exists: Callable[[str], bool] = os.path.exists,
    ) -> None:
        self.config = config
        self.lister = lister
        self.downloads = downloads
        self.restores = restores
        self.checker = checker
        self.download_dir = download_dir
        self._file_exists = file_exists
        self.state = BrowserState()

    def start(self) -> None:
        self.refresh(preserve_selection=False)

    def refresh(self, preserve_selection: bool = True) -> None:
        s3 = self.config.get().s3
        if not s3.bucket:
            self.state.listing_task = None
            self.state.status = "Set a bucket (b) to list backups"
            return
        self.state.listing_task = self.lister.start(s3, preserve_selection)
        self.state.status = f"Loading backups from {s3.bucket}..."

    def handle_key(self, key: str, character: Optional[str] = None) -> None:
        if character is None and len(key) == 1:
            character = key
        mode = self.state.mode
        if mode is Mode.BROWSING:
            self._browsing_key(key, character)
        elif mode is Mode.CONFIRMING_RESTORE:
            self._confirming_key(key, character)
        elif mode is Mode.DOWNLOADING:
            if key == "escape":
                self._cancel_download()
        elif mode is Mode.EDITING_CONFIG:
            self._editing_key(key, character)
        elif mode is Mode.SHOWING_ERROR:
            self.state.last_error = None
            self.state.mode = Mode.BROWSING

    def _browsing_key(self, key: str, character: Optional[str]) -> None:
        state = self.state
        if key == "tab":
            state.focus = Focus.RIGHT if state.focus is Focus.LEFT else Focus.LEFT
            return
        if key in {"up", "down", "pageup", "pagedown", "home", "end"}:
            self._move_cursor(key)
            return
        if character == "r":
            self.refresh(preserve_selection=True)
            return
        if character == "t":
            self._check_connection()
            return
        if state.focus is Focus.LEFT:
            if character == "k":
                self._move_cursor("up")
            elif character == "j":
                self._move_cursor("down")
            elif key == "enter" and state.entries:
                state.mode = Mode.CONFIRMING_RESTORE
            return
        if key == "enter" or character == "e":
            self._begin_edit(FIELDS[state.config_index].field_id)
            return
        if character and character in FIELDS_BY_SHORTCUT:
            self._begin_edit(FIELDS_BY_SHORTCUT[character].field_id)

    def _move_cursor(self, key: str) -> None:
        state = self.state
        steps = {"up": -1, "down": 1, "pageup": -PAGE_SIZE, "pagedown": PAGE_SIZE}
        if state.focus is Focus.LEFT:
            length = len(state.entries)
            current = state.selected_index
        else:
            length = len(FIELDS)
            current = state.config_index
        if key == "home":
            target = 0
        elif key == "end":
            target = length - 1
        else:
            target = current + steps[key]
        target = clamp_index(target, length)
        if state.focus is Focus.LEFT:
            state.selected_index = target
        else:
            state.config_index = target

    def _begin_edit(self, field_id: str) -> None:
        state = self.state
        state.config_index = FIELDS.index(FIELDS_BY_ID[field_id])
        state.edit_field = field_id
        state.edit_buffer = self.config.edit_value(field_id)
        state.mode = Mode.EDITING_CONFIG

    def _editing_key(self, key: str, character: Optional[str]) -> None:
        state = self.state
        if key == "escape":
            self._end_edit()
            return
        if key == "enter":
            self._commit_edit()
            return
        if key == "backspace":
            state.edit_buffer = state.edit_buffer[:-1]
            return
        if character and character.isprintable():
            state.edit_buffer += character

    def _end_edit(self) -> None:
        self.state.edit_field = None
        self.state.edit_buffer = ""
        self.state.mode = Mode.BROWSING

    def _commit_edit(self) -> None:
        state = self.state
        field_id = state.edit_field
        if field_id is None:
            self._end_edit()
            return
        spec = FIELDS_BY_ID[field_id]
        try:
            self.config.set_field(field_id, state.edit_buffer)
        except ValidationError as exc:
            self._end_edit()
            self._show_error(exc.message)
            return
        logger.info("Configuration field %s updated", field_id)
        self._end_edit()
        state.status = f"{spec.label} updated"
        if spec.section == SECTION_S3:
            self.refresh(preserve_selection=False)

    def _confirming_key(self, key: str, character: Optional[str]) -> None:
        if character == "y":
            self._confirm_restore()
        elif character == "n" or key == "escape":
            self.state.mode = Mode.BROWSING

    def _confirm_restore(self) -> None:
        state = self.state
        entry = state.selected_entry
        if entry is None:
            state.mode = Mode.BROWSING
            return
        config = self.config.get()
        if not config.postgres.db_name:
            self._show_error(
                "A target database name is required before restoring (set it with n)"
            )
            return
        download = state.active_download
        if (
            download is not None
            and download.status is TaskStatus.COMPLETED
            and download.entry == entry
            and self._file_exists(download.local_path)
        ):
            logger.info("Reusing downloaded file %s", download.local_path)
            self._start_restore(download)
            return
        self._start_download(entry)

    def _start_download(self, entry: BackupEntry) -> None:
        state = self.state
        destination = os.path.join(self.download_dir, download_name(entry.key))
        handle = self.downloads.start(entry, destination, self.config.get().s3)
        state.active_restore = None
        state.active_download = DownloadTask(
            task_id=handle.task_id,
            entry=entry,
            local_path=destination,
            bytes_total=entry.size,
            status=TaskStatus.IN_PROGRESS,
        )
        state.mode = Mode.DOWNLOADING
        state.status = f"Downloading {entry.key}"

    def _cancel_download(self) -> None:
        if self.downloads.cancel():
            self.state.status = "Cancelling download..."

    def _start_restore(self, download: DownloadTask) -> None:
        state = self.state
        postgres = self.config.get().postgres
        try:
            handle = self.restores.start(
                download.local_path, postgres.db_name, postgres
            )
        except AlreadyInProgress as exc:
            self._show_error(exc.message)
            return
        state.active_restore = RestoreTask(
            task_id=handle.task_id,
            source_path=download.local_path,
            target_db=postgres.db_name,
            status=TaskStatus.IN_PROGRESS,
        )
        state.mode = Mode.RESTORING
        state.status = f"Restoring {download.entry.key} into {postgres.db_name}"

    def _check_connection(self) -> None:
        if self.checker is None:
            return
        state = self.state
        target = events.CHECK_S3
        if (
            state.focus is Focus.RIGHT
            and FIELDS[state.config_index].section != SECTION_S3
        ):
            target = events.CHECK_POSTGRES
        state.check_task = self.checker.start(target, self.config.get())
        state.status = f"Checking {target} connection..."

    def _show_error(self, message: str) -> None:
        self.state.last_error = message
        self.state.mode = Mode.SHOWING_ERROR

    def _report_background_error(self, message: str) -> None:
        if self.state.mode is Mode.BROWSING:
            self._show_error(message)
        else:
            self.state.status = message

    def handle_event(self, event: object) -> bool:
        handler = self._EVENT_HANDLERS.get(type(event))
        if handler is None:
            return False
        return handler(self, event)

    def _on_listing_loaded(self, event: events.ListingLoaded) -> bool:
        state = self.state
        if event.task_id != state.listing_task:
            return False
        state.listing_task = None
        state.entries = tuple(event.entries)
        if event.preserve_selection:
            state.selected_index = clamp_index(state.selected_index, len(state.entries))
        else:
            state.selected_index = 0
        count = len(state.entries)
        state.status = f"{count} backup{'s' if count != 1 else ''} found"
        return True

    def _on_listing_failed(self, event: events.ListingFailed) -> bool:
        if event.task_id != self.state.listing_task:
            return False
        self.state.listing_task = None
        self.state.status = ""
        self._report_background_error(f"Failed to list backups: {event.message}")
        return True

    def _on_connection_checked(self, event: events.ConnectionChecked) -> bool:
        state = self.state
        if event.task_id != state.check_task:
            return False
        state.check_task = None
        label = "S3" if event.target == events.CHECK_S3 else "PostgreSQL"
        if event.ok:
            state.status = f"{label} connection OK: {event.message}"
        else:
            state.status = ""
            self._report_background_error(
                f"{label} connection failed: {event.message}"
            )
        return True

    def _current_download(self, task_id: int) -> Optional[DownloadTask]:
        download = self.state.active_download
        if download is None or download.task_id != task_id:
            return None
        if download.status is not TaskStatus.IN_PROGRESS:
            return None
        return download

    def _on_download_progress(self, event: events.DownloadProgress) -> bool:
        download = self._current_download(event.task_id)
        if download is None:
            return False
        download.bytes_done = max(download.bytes_done, event.bytes_done)
        download.bytes_total = max(event.bytes_total, download.bytes_done)
        return True

    def _on_download_completed(self, event: events.DownloadCompleted) -> bool:
        download = self._current_download(event.task_id)
        if download is None:
            return False
        download.status = TaskStatus.COMPLETED
        download.local_path = event.local_path
        download.bytes_done = max(download.bytes_done, download.bytes_total)
        self._start_restore(download)
        return True

    def _on_download_failed(self, event: events.DownloadFailed) -> bool:
        download = self._current_download(event.task_id)
        if download is None:
            return False
        download.status = TaskStatus.FAILED
        download.reason = event.kind
        self.state.status = ""
        self._show_error(f"Download of {download.entry.key} failed: {event.message}")
        return True

    def _on_download_cancelled(self, event: events.DownloadCancelled) -> bool:
        download = self._current_download(event.task_id)
        if download is None:
            return False
        download.status = TaskStatus.CANCELLED
        self.state.mode = Mode.BROWSING
        self.state.status = "Download cancelled"
        return True

    def _current_restore(self, task_id: int) -> Optional[RestoreTask]:
        restore = self.state.active_restore
        if restore is None or restore.task_id != task_id:
            return None
        if restore.status is not TaskStatus.IN_PROGRESS:
            return None
        return restore

    def _on_restore_completed(self, event: events.RestoreCompleted) -> bool:
        restore = self._current_restore(event.task_id)
        if restore is None:
            return False
        state = self.state
        state.active_restore = None
        state.active_download = None
        state.mode = Mode.BROWSING
        state.status = f"Restored into {restore.target_db}"
        return True

    def _on_restore_failed(self, event: events.RestoreFailed) -> bool:
        restore = self._current_restore(event.task_id)
        if restore is None:
            return False
        restore.status = TaskStatus.FAILED
        restore.reason = event.exit_reason
        restore.output = event.captured_output
        message = f"Restore into {restore.target_db} failed: {event.exit_reason}"
        output = tail_lines(event.captured_output)
        if output:
            message = f"{message}\n{output}"
        self.state.status = ""
        self._show_error(message)
        return True

    _EVENT_HANDLERS = {
        events.ListingLoaded: _on_listing_loaded,
        events.ListingFailed: _on_listing_failed,
        events.ConnectionChecked: _on_connection_checked,
        events.DownloadProgress: _on_download_progress,
        events.DownloadCompleted: _on_download_completed,
        events.DownloadFailed: _on_download_failed,
        events.DownloadCancelled: _on_download_cancelled,
        events.RestoreCompleted: _on_restore_completed,
        events.RestoreFailed: _on_restore_failed,
    }
