from __future__ import annotations

import asyncio
import itertools
import logging
import os
import threading
from typing import Awaitable, Callable, Optional

from . import events
from .config import Configuration, PostgresSettings, S3Settings
from .errors import (
    DOWNLOAD_NETWORK,
    LIST_NOT_FOUND,
    AdminCommandError,
    AlreadyInProgress,
    DownloadCancelled,
    DownloadError,
    ListError,
    RestoreError,
)
from .pgadmin import PostgresAdmin
from .s3 import BackupEntry, S3Service, classify_list_error

logger = logging.getLogger(__name__)

Emitter = Callable[[object], None]
Runner = Callable[[Awaitable[None]], object]

_task_ids = itertools.count(1)
_background_tasks: set[asyncio.Task] = set()


def next_task_id() -> int:
    return next(_task_ids)


def spawn(coro: Awaitable[None]) -> asyncio.Task:
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


class BackupLister:
    def __init__(
        self, service: S3Service, emit: Emitter, run: Optional[Runner] = None
    ) -> None:
        self._service = service
        self._emit = emit
        self._run = run or spawn

    def start(self, settings: S3Settings, preserve_selection: bool = False) -> int:
        task_id = next_task_id()
        self._run(self._list(task_id, settings, preserve_selection))
        return task_id

    async def _list(
        self, task_id: int, settings: S3Settings, preserve_selection: bool
    ) -> None:
        try:
            entries = await asyncio.to_thread(self._service.list_backups, settings)
        except Exception as exc:
            error = classify_list_error(exc)
            if error.kind != LIST_NOT_FOUND:
                logger.warning("Listing %s failed: %s", task_id, error.message)
                self._emit(events.ListingFailed(task_id, error.kind, error.message))
                return
            logger.info("Prefix %r not found; treating as empty", settings.prefix)
            entries = []
        self._emit(events.ListingLoaded(task_id, tuple(entries), preserve_selection))


class ConnectionChecker:
    def __init__(
        self,
        service: S3Service,
        admin: PostgresAdmin,
        emit: Emitter,
        run: Optional[Runner] = None,
    ) -> None:
        self._service = service
        self._admin = admin
        self._emit = emit
        self._run = run or spawn

    def start(self, target: str, config: Configuration) -> int:
        task_id = next_task_id()
        self._run(self._check(task_id, target, config))
        return task_id

    async def _check(self, task_id: int, target: str, config: Configuration) -> None:
        try:
            if target == events.CHECK_POSTGRES:
                message = await asyncio.to_thread(
                    self._admin.check_connection, config.postgres
                )
            else:
                message = await asyncio.to_thread(
                    self._service.check_connection, config.s3
                )
        except AdminCommandError as exc:
            detail = exc.output or str(exc)
            self._emit(events.ConnectionChecked(task_id, target, False, detail))
            return
        except ListError as exc:
            self._emit(events.ConnectionChecked(task_id, target, False, exc.message))
            return
        except Exception as exc:
            logger.exception("Connection check for %s failed", target)
            self._emit(events.ConnectionChecked(task_id, target, False, str(exc)))
            return
        self._emit(events.ConnectionChecked(task_id, target, True, message))


class DownloadHandle:
    def __init__(self, task_id: int, entry: BackupEntry, local_path: str) -> None:
        self.task_id = task_id
        self.entry = entry
        self.local_path = local_path
        self.bytes_done = 0
        self.bytes_total = 0
        self.done = False
        self._cancel = threading.Event()
        self._finished = asyncio.Event()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def request_cancel(self) -> None:
        self._cancel.set()

    def mark_finished(self) -> None:
        self.done = True
        self._finished.set()

    async def wait_finished(self) -> None:
        await self._finished.wait()


class DownloadCoordinator:
    """Runs at most one backup download and reports it as tagged events.

    Progress reported by the transfer thread is marshalled onto the event loop
    so that progress and the terminal event arrive in the order they happened.
    """

    def __init__(
        self, service: S3Service, emit: Emitter, run: Optional[Runner] = None
    ) -> None:
        self._service = service
        self._emit = emit
        self._run = run or spawn
        self._active: Optional[DownloadHandle] = None

    @property
    def active(self) -> Optional[DownloadHandle]:
        return self._active

    def start(
        self, entry: BackupEntry, destination: str, settings: S3Settings
    ) -> DownloadHandle:
        previous = self._active
        if previous is not None and not previous.done:
            logger.info("Download %s superseded", previous.task_id)
            previous.request_cancel()
        else:
            previous = None
        handle = DownloadHandle(next_task_id(), entry, destination)
        self._active = handle
        self._run(self._transfer(handle, settings, previous))
        return handle

    def cancel(self, handle: Optional[DownloadHandle] = None) -> bool:
        target = handle or self._active
        if target is None or target.done:
            return False
        logger.info("Cancelling download %s", target.task_id)
        target.request_cancel()
        return True

    def shutdown(self) -> None:
        self.cancel()

    def _deliver_progress(self, handle: DownloadHandle, done: int, total: int) -> None:
        if handle.done or handle.cancel_requested:
            return
        if done < handle.bytes_done:
            return
        handle.bytes_done = done
        handle.bytes_total = max(total, done)
        self._emit(
            events.DownloadProgress(
                handle.task_id, handle.bytes_done, handle.bytes_total
            )
        )

    async def _transfer(
        self,
        handle: DownloadHandle,
        settings: S3Settings,
        previous: Optional[DownloadHandle],
    ) -> None:
        if previous is not None:
            await previous.wait_finished()
        loop = asyncio.get_running_loop()

        def on_progress(done: int, total: int) -> None:
            loop.call_soon_threadsafe(self._deliver_progress, handle, done, total)

        try:
            path = await asyncio.to_thread(
                self._service.download_object,
                settings,
                handle.entry.key,
                handle.local_path,
                on_progress,
                lambda: handle.cancel_requested,
            )
        except DownloadCancelled:
            event = events.DownloadCancelled(handle.task_id)
        except DownloadError as exc:
            if handle.cancel_requested:
                event = events.DownloadCancelled(handle.task_id)
            else:
                event = events.DownloadFailed(handle.task_id, exc.kind, exc.message)
        except asyncio.CancelledError:
            handle.request_cancel()
            handle.mark_finished()
            raise
        except Exception as exc:
            logger.exception("Unexpected error downloading %s", handle.entry.key)
            event = events.DownloadFailed(handle.task_id, DOWNLOAD_NETWORK, str(exc))
        else:
            if handle.cancel_requested:
                await self._discard(path)
                event = events.DownloadCancelled(handle.task_id)
            else:
                event = events.DownloadCompleted(handle.task_id, path)
        handle.done = True
        self._emit(event)
        handle.mark_finished()

    async def _discard(self, path: str) -> None:
        logger.info("Download finished after cancel; removing %s", path)
        try:
            await asyncio.to_thread(os.remove, path)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Could not remove cancelled download %s: %s", path, exc)


class RestoreHandle:
    def __init__(self, task_id: int, source_path: str, target_db: str) -> None:
        self.task_id = task_id
        self.source_path = source_path
        self.target_db = target_db
        self.done = False


class RestoreCoordinator:
    """Runs at most one restore. A second start is rejected, never queued."""

    def __init__(
        self,
        admin: PostgresAdmin,
        emit: Emitter,
        run: Optional[Runner] = None,
        remove_on_success: bool = True,
    ) -> None:
        self._admin = admin
        self._emit = emit
        self._run = run or spawn
        self._remove_on_success = remove_on_success
        self._active: Optional[RestoreHandle] = None

    @property
    def active(self) -> Optional[RestoreHandle]:
        return self._active

    def start(
        self, source_path: str, target_db: str, pg: PostgresSettings
    ) -> RestoreHandle:
        if self._active is not None and not self._active.done:
            raise AlreadyInProgress()
        handle = RestoreHandle(next_task_id(), source_path, target_db)
        self._active = handle
        self._run(self._restore(handle, pg))
        return handle

    async def _restore(self, handle: RestoreHandle, pg: PostgresSettings) -> None:
        try:
            result = await self._admin.run_restore(
                pg, handle.source_path, handle.target_db
            )
        except RestoreError as exc:
            event = events.RestoreFailed(
                handle.task_id, exc.exit_reason, exc.captured_output
            )
        except asyncio.CancelledError:
            handle.done = True
            raise
        except Exception as exc:
            logger.exception("Unexpected error restoring %s", handle.source_path)
            event = events.RestoreFailed(handle.task_id, str(exc), "")
        else:
            if self._remove_on_success:
                await self._remove_source(handle.source_path)
            event = events.RestoreCompleted(handle.task_id, result.output)
        handle.done = True
        self._emit(event)

    async def _remove_source(self, path: str) -> None:
        try:
            await asyncio.to_thread(os.remove, path)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Could not remove restored dump %s: %s", path, exc)
