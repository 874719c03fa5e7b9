import os
import unittest
from datetime import datetime, timezone

from pgman import events
from pgman.browser import (
    BrowserMachine,
    Focus,
    Mode,
    TaskStatus,
    clamp_index,
    download_name,
    tail_lines,
)
from pgman.config import FIELDS, ConfigStore
from pgman.errors import LIST_UNREACHABLE, AlreadyInProgress
from pgman.s3 import BackupEntry


class _Handle:
    def __init__(self, task_id: int) -> None:
        self.task_id = task_id


class _Ids:
    def __init__(self) -> None:
        self.value = 100

    def next(self) -> int:
        self.value += 1
        return self.value


class _Lister:
    def __init__(self, ids: _Ids) -> None:
        self._ids = ids
        self.calls: list[tuple[object, bool]] = []

    def start(self, settings, preserve_selection=False) -> int:
        self.calls.append((settings, preserve_selection))
        return self._ids.next()


class _Downloads:
    def __init__(self, ids: _Ids) -> None:
        self._ids = ids
        self.calls: list[tuple[BackupEntry, str]] = []
        self.cancel_calls = 0

    def start(self, entry, destination, settings) -> _Handle:
        self.calls.append((entry, destination))
        return _Handle(self._ids.next())

    def cancel(self, handle=None) -> bool:
        self.cancel_calls += 1
        return True


class _Restores:
    def __init__(self, ids: _Ids) -> None:
        self._ids = ids
        self.calls: list[tuple[str, str]] = []
        self.busy = False

    def start(self, source_path, target_db, pg) -> _Handle:
        if self.busy:
            raise AlreadyInProgress()
        self.calls.append((source_path, target_db))
        return _Handle(self._ids.next())


class _Checker:
    def __init__(self, ids: _Ids) -> None:
        self._ids = ids
        self.targets: list[str] = []

    def start(self, target, config) -> int:
        self.targets.append(target)
        return self._ids.next()


def _entry(key: str, day: int, size: int = 100) -> BackupEntry:
    return BackupEntry(key, size, datetime(2024, 1, day, tzinfo=timezone.utc))


ENTRIES = (
    _entry("backups/c.dump", 3),
    _entry("backups/b.dump", 2),
    _entry("backups/a.dump", 1),
)


class BrowserTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.store = ConfigStore()
        self.store.set_field("bucket", "backups")
        self.store.set_field("db_name", "app")
        ids = _Ids()
        self.lister = _Lister(ids)
        self.downloads = _Downloads(ids)
        self.restores = _Restores(ids)
        self.checker = _Checker(ids)
        self.existing: set[str] = set()
        self.machine = BrowserMachine(
            self.store,
            lister=self.lister,
            downloads=self.downloads,
            restores=self.restores,
            checker=self.checker,
            download_dir="/tmp/pgman-test",
            file_exists=lambda path: path in self.existing,
        )
        self.state = self.machine.state

    def load(self, entries=ENTRIES) -> None:
        self.machine.start()
        self.machine.handle_event(
            events.ListingLoaded(self.state.listing_task, tuple(entries))
        )

    def press(self, *keys: str) -> None:
        for key in keys:
            self.machine.handle_key(key)

    def start_download(self):
        self.load()
        self.press("enter", "y")
        return self.state.active_download


class TestListing(BrowserTestCase):
    def test_start_requests_listing_and_loads_entries(self) -> None:
        self.machine.start()
        self.assertTrue(self.state.loading)
        self.assertEqual(self.lister.calls[0][0].bucket, "backups")
        self.assertTrue(
            self.machine.handle_event(
                events.ListingLoaded(self.state.listing_task, ENTRIES)
            )
        )
        self.assertFalse(self.state.loading)
        self.assertEqual(self.state.entries, ENTRIES)
        self.assertEqual(self.state.selected_index, 0)
        self.assertEqual(self.state.status, "3 backups found")

    def test_without_bucket_nothing_is_listed(self) -> None:
        machine = BrowserMachine(
            ConfigStore(), self.lister, self.downloads, self.restores
        )
        machine.start()
        self.assertEqual(self.lister.calls, [])
        self.assertIn("bucket", machine.state.status)

    def test_stale_listing_is_ignored(self) -> None:
        self.machine.start()
        stale = self.state.listing_task
        self.press("r")
        self.assertFalse(
            self.machine.handle_event(events.ListingLoaded(stale, ENTRIES))
        )
        self.assertEqual(self.state.entries, ())
        self.assertTrue(self.state.loading)

    def test_refresh_keeps_selection_clamped(self) -> None:
        self.load()
        self.press("down", "down")
        self.press("r")
        self.assertEqual(self.lister.calls[-1][1], True)
        self.machine.handle_event(
            events.ListingLoaded(self.state.listing_task, ENTRIES[:2], True)
        )
        self.assertEqual(self.state.selected_index, 1)

    def test_listing_failure_while_browsing_shows_error(self) -> None:
        self.machine.start()
        self.machine.handle_event(
            events.ListingFailed(
                self.state.listing_task, LIST_UNREACHABLE, "S3 endpoint unreachable"
            )
        )
        self.assertIs(self.state.mode, Mode.SHOWING_ERROR)
        self.assertIn("S3 endpoint unreachable", self.state.last_error)
        self.press("x")
        self.assertIs(self.state.mode, Mode.BROWSING)
        self.assertIsNone(self.state.last_error)

    def test_listing_failure_while_downloading_only_sets_status(self) -> None:
        self.load()
        self.press("r", "enter", "y")
        self.assertIs(self.state.mode, Mode.DOWNLOADING)
        self.machine.handle_event(
            events.ListingFailed(
                self.state.listing_task, LIST_UNREACHABLE, "S3 endpoint unreachable"
            )
        )
        self.assertIs(self.state.mode, Mode.DOWNLOADING)
        self.assertIsNone(self.state.last_error)
        self.assertIn("S3 endpoint unreachable", self.state.status)


class TestNavigation(BrowserTestCase):
    def test_cursor_is_clamped(self) -> None:
        self.load()
        self.press("up")
        self.assertEqual(self.state.selected_index, 0)
        self.press("down", "down", "down", "down", "down")
        self.assertEqual(self.state.selected_index, 2)
        self.press("k")
        self.assertEqual(self.state.selected_index, 1)
        self.press("home")
        self.assertEqual(self.state.selected_index, 0)
        self.press("end")
        self.assertEqual(self.state.selected_index, 2)

    def test_moves_on_empty_listing_are_noops(self) -> None:
        self.load(entries=())
        self.press("down", "up", "enter")
        self.assertEqual(self.state.selected_index, 0)
        self.assertIs(self.state.mode, Mode.BROWSING)

    def test_tab_switches_focus_and_cursor_target(self) -> None:
        self.load()
        self.press("tab")
        self.assertIs(self.state.focus, Focus.RIGHT)
        self.press("down", "down")
        self.assertEqual(self.state.config_index, 2)
        self.assertEqual(self.state.selected_index, 0)
        self.press("end")
        self.assertEqual(self.state.config_index, len(FIELDS) - 1)
        self.press("tab")
        self.assertIs(self.state.focus, Focus.LEFT)

    def test_connection_check_targets_focused_section(self) -> None:
        self.load()
        self.press("t")
        self.press("tab", "end", "t")
        self.assertEqual(
            self.checker.targets, [events.CHECK_S3, events.CHECK_POSTGRES]
        )

    def test_connection_result_for_current_check_sets_status(self) -> None:
        self.load()
        self.press("t")
        self.machine.handle_event(
            events.ConnectionChecked(
                self.state.check_task, events.CHECK_S3, True, "bucket reachable"
            )
        )
        self.assertIn("bucket reachable", self.state.status)


class TestRestoreFlow(BrowserTestCase):
    def test_confirm_download_and_restore(self) -> None:
        self.load()
        self.press("down", "enter")
        self.assertIs(self.state.mode, Mode.CONFIRMING_RESTORE)
        self.press("y")

        self.assertIs(self.state.mode, Mode.DOWNLOADING)
        entry, destination = self.downloads.calls[0]
        self.assertEqual(entry, ENTRIES[1])
        self.assertEqual(
            destination,
            os.path.join("/tmp/pgman-test", download_name("backups/b.dump")),
        )
        download = self.state.active_download
        self.assertIs(download.status, TaskStatus.IN_PROGRESS)

        self.machine.handle_event(events.DownloadProgress(download.task_id, 50, 100))
        self.assertEqual(download.bytes_done, 50)
        self.machine.handle_event(events.DownloadProgress(download.task_id, 40, 100))
        self.assertEqual(download.bytes_done, 50)

        self.machine.handle_event(
            events.DownloadCompleted(download.task_id, destination)
        )
        self.assertIs(self.state.mode, Mode.RESTORING)
        self.assertEqual(self.restores.calls, [(destination, "app")])

        restore = self.state.active_restore
        self.machine.handle_event(events.RestoreCompleted(restore.task_id, ""))
        self.assertIs(self.state.mode, Mode.BROWSING)
        self.assertIsNone(self.state.active_restore)
        self.assertIsNone(self.state.active_download)

    def test_decline_returns_to_browsing(self) -> None:
        self.load()
        self.press("enter", "n")
        self.assertIs(self.state.mode, Mode.BROWSING)
        self.press("enter", "escape")
        self.assertIs(self.state.mode, Mode.BROWSING)
        self.assertEqual(self.downloads.calls, [])

    def test_missing_target_database_is_an_error(self) -> None:
        self.store.set_field("db_name", "")
        self.load()
        self.press("enter", "y")
        self.assertIs(self.state.mode, Mode.SHOWING_ERROR)
        self.assertEqual(self.downloads.calls, [])

    def test_cancel_download(self) -> None:
        download = self.start_download()
        self.press("q", "enter")
        self.assertIs(self.state.mode, Mode.DOWNLOADING)
        self.press("escape")
        self.assertEqual(self.downloads.cancel_calls, 1)
        self.machine.handle_event(events.DownloadCancelled(download.task_id))
        self.assertIs(self.state.mode, Mode.BROWSING)
        self.assertIs(download.status, TaskStatus.CANCELLED)
        self.assertEqual(self.restores.calls, [])

    def test_events_from_superseded_download_are_ignored(self) -> None:
        download = self.start_download()
        self.assertFalse(
            self.machine.handle_event(
                events.DownloadCompleted(download.task_id - 1, "/tmp/old.dump")
            )
        )
        self.assertFalse(
            self.machine.handle_event(
                events.DownloadProgress(download.task_id + 50, 10, 100)
            )
        )
        self.assertIs(self.state.mode, Mode.DOWNLOADING)
        self.assertEqual(download.bytes_done, 0)

    def test_download_failure_shows_error(self) -> None:
        download = self.start_download()
        self.machine.handle_event(
            events.DownloadFailed(download.task_id, "network", "connection reset")
        )
        self.assertIs(self.state.mode, Mode.SHOWING_ERROR)
        self.assertIn("connection reset", self.state.last_error)
        self.assertIs(download.status, TaskStatus.FAILED)
        self.assertEqual(download.reason, "network")

    def test_restore_failure_keeps_file_and_retry_skips_download(self) -> None:
        download = self.start_download()
        self.existing.add(download.local_path)
        self.machine.handle_event(
            events.DownloadCompleted(download.task_id, download.local_path)
        )
        restore = self.state.active_restore
        output = "\n".join(f"line {n}" for n in range(30))
        self.machine.handle_event(
            events.RestoreFailed(
                restore.task_id, "pg_restore exited with status 1", output
            )
        )

        self.assertIs(self.state.mode, Mode.SHOWING_ERROR)
        self.assertIn("line 29", self.state.last_error)
        self.assertNotIn("line 9\n", self.state.last_error)
        self.assertIs(self.state.active_download.status, TaskStatus.COMPLETED)

        self.press("space", "enter", "y")
        self.assertIs(self.state.mode, Mode.RESTORING)
        self.assertEqual(len(self.downloads.calls), 1)
        self.assertEqual(len(self.restores.calls), 2)

    def test_busy_restore_reports_error(self) -> None:
        download = self.start_download()
        self.restores.busy = True
        self.machine.handle_event(
            events.DownloadCompleted(download.task_id, download.local_path)
        )
        self.assertIs(self.state.mode, Mode.SHOWING_ERROR)
        self.assertIn("already in progress", self.state.last_error)


class TestConfigEditing(BrowserTestCase):
    def test_invalid_port_shows_error_and_keeps_value(self) -> None:
        self.load()
        self.press("tab", "p")
        self.assertIs(self.state.mode, Mode.EDITING_CONFIG)
        self.assertEqual(self.state.edit_buffer, "5432")
        self.press("backspace", "backspace", "backspace", "backspace", "a", "b", "c")
        self.assertEqual(self.state.edit_buffer, "abc")
        self.press("enter")
        self.assertIs(self.state.mode, Mode.SHOWING_ERROR)
        self.assertIn("abc", self.state.last_error)
        self.assertEqual(self.store.get().postgres.port, 5432)

    def test_escape_discards_edit(self) -> None:
        self.load()
        self.press("tab", "u", "b", "o", "b", "escape")
        self.assertIs(self.state.mode, Mode.BROWSING)
        self.assertEqual(self.store.get().postgres.username, "")

    def test_enter_edits_field_under_cursor(self) -> None:
        self.load()
        self.press("tab", "down", "enter")
        self.assertEqual(self.state.edit_field, FIELDS[1].field_id)

    def test_shortcuts_only_apply_to_config_pane(self) -> None:
        self.load()
        self.press("b")
        self.assertIs(self.state.mode, Mode.BROWSING)

    def test_s3_commit_triggers_refresh(self) -> None:
        self.load()
        self.press("tab", "x", "d", "b", "/", "enter")
        self.assertIs(self.state.mode, Mode.BROWSING)
        self.assertEqual(self.store.get().s3.prefix, "db/")
        self.assertEqual(len(self.lister.calls), 2)
        self.assertTrue(self.state.loading)

    def test_postgres_commit_does_not_refresh(self) -> None:
        self.load()
        self.press("tab", "n", "backspace", "backspace", "backspace", "x", "enter")
        self.assertEqual(self.store.get().postgres.db_name, "x")
        self.assertEqual(len(self.lister.calls), 1)


class TestHelpers(unittest.TestCase):
    def test_clamp_index(self) -> None:
        self.assertEqual(clamp_index(5, 0), 0)
        self.assertEqual(clamp_index(-1, 3), 0)
        self.assertEqual(clamp_index(9, 3), 2)

    def test_download_name(self) -> None:
        name = download_name("a/b/c.dump")
        self.assertTrue(name.endswith("-c.dump"))
        self.assertEqual(name, download_name("a/b/c.dump"))
        self.assertNotEqual(name, download_name("x/b/c.dump"))
        self.assertTrue(download_name("").endswith("-backup.dump"))
        self.assertNotIn("/", download_name("../../etc/p w.dump"))
        self.assertTrue(download_name("db/p w.dump").endswith("-p_w.dump"))

    def test_tail_lines(self) -> None:
        text = "\n".join(str(n) for n in range(25))
        self.assertEqual(tail_lines(text, 3), "22\n23\n24")


if __name__ == "__main__":
    unittest.main()
