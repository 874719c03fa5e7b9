from __future__ import annotations

import argparse
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Optional

from textual import events
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical
from textual.message import Message
from textual.screen import ModalScreen
from textual.widgets import Header, Static

from .browser import BrowserMachine, Focus, Mode
from .config import ConfigStore, load_configuration, parse_bool
from .errors import AdminCommandError, ValidationError
from .events import RestoreCompleted
from .pgadmin import (
    LIST_DATABASES_SQL,
    PostgresAdmin,
    clone_database_sql,
    create_database_sql,
    drop_database_sql,
    render_command,
    rename_database_sql,
    set_owner_sql,
)
from .render import render_frame
from .s3 import S3Service
from .tasks import (
    BackupLister,
    ConnectionChecker,
    DownloadCoordinator,
    RestoreCoordinator,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ADMIN_COMMANDS = (
    "list",
    "create",
    "clone",
    "drop",
    "rename",
    "set-owner",
    "dump",
    "restore",
)


class CoordinatorEvent(Message):
    """Carries a coordinator event onto the app's message queue."""

    def __init__(self, event: object) -> None:
        self.event = event
        super().__init__()


class BackupList(Static, can_focus=True):
    def on_key(self, event: events.Key) -> None:
        self.app.handle_browser_key(event.key, event.character)
        event.stop()
        event.prevent_default()


class ConfirmRestoreDialog(ModalScreen[None]):
    """Shown while a restore waits for y or n. Keys go back to the browser."""

    CSS = """
    ConfirmRestoreDialog {
        align: center middle;
    }

    #confirm-dialog {
        width: 60;
        max-width: 80;
        min-width: 40;
        height: auto;
        margin: 1 2;
        padding: 1 2;
        border: round $warning;
        background: $panel;
        color: $text;
    }
    """

    def __init__(self, prompt) -> None:
        super().__init__()
        self.prompt = prompt

    def compose(self) -> ComposeResult:
        yield Static(self.prompt, id="confirm-dialog")

    def on_mount(self) -> None:
        self.query_one("#confirm-dialog").border_title = "Confirm restore"

    def update_prompt(self, prompt) -> None:
        self.prompt = prompt
        if self.is_mounted:
            self.query_one("#confirm-dialog", Static).update(prompt)

    def on_key(self, event: events.Key) -> None:
        self.app.handle_browser_key(event.key, event.character)
        event.stop()
        event.prevent_default()


class BackupBrowser(App):
    CSS = """
    #body {
        height: 1fr;
    }

    #backups-pane {
        width: 3fr;
        border: round $panel;
        padding: 0 1;
    }

    #side-pane {
        width: 2fr;
    }

    #config-pane {
        height: 1fr;
        border: round $panel;
        padding: 0 1;
    }

    #status-pane {
        height: auto;
        min-height: 5;
        border: round $panel;
        padding: 0 1;
    }

    .pane-focused {
        border: round $accent;
    }

    #status-pane.status-error {
        border: round $error;
    }

    #backup-list {
        height: 1fr;
    }

    #help {
        height: 1;
        padding: 0 1;
        color: $text-muted;
    }
    """

    TITLE = "PostgreSQL S3 Backup Manager"

    def __init__(
        self,
        config: Optional[ConfigStore] = None,
        download_dir: Optional[str] = None,
    ) -> None:
        super().__init__()
        self.config_store = config or ConfigStore()
        self.download_dir = download_dir or default_download_dir()
        self.service = S3Service()
        self.admin = PostgresAdmin()
        self.machine: Optional[BrowserMachine] = None
        self.downloads: Optional[DownloadCoordinator] = None
        self._confirm_dialog: Optional[ConfirmRestoreDialog] = None

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal(id="body"):
            with Vertical(id="backups-pane"):
                yield BackupList("", id="backup-list")
            with Vertical(id="side-pane"):
                with Vertical(id="config-pane"):
                    yield Static("", id="config")
                with Vertical(id="status-pane"):
                    yield Static("", id="status")
        yield Static("", id="help")

    def on_mount(self) -> None:
        self.backup_list = self.query_one("#backup-list", BackupList)
        self.config_view = self.query_one("#config", Static)
        self.status_view = self.query_one("#status", Static)
        self.help_view = self.query_one("#help", Static)
        self.backups_pane = self.query_one("#backups-pane", Vertical)
        self.config_pane = self.query_one("#config-pane", Vertical)
        self.status_pane = self.query_one("#status-pane", Vertical)
        self.backups_pane.border_title = "Backups"
        self.config_pane.border_title = "Configuration"
        self.status_pane.border_title = "Status"
        self.downloads = DownloadCoordinator(
            self.service, self._emit, run=self._worker_runner("download")
        )
        self.machine = BrowserMachine(
            self.config_store,
            lister=BackupLister(
                self.service, self._emit, run=self._worker_runner("listing")
            ),
            downloads=self.downloads,
            restores=RestoreCoordinator(
                self.admin, self._emit, run=self._worker_runner("restore")
            ),
            checker=ConnectionChecker(
                self.service,
                self.admin,
                self._emit,
                run=self._worker_runner("check"),
            ),
            download_dir=self.download_dir,
        )
        self.set_focus(self.backup_list)
        self.machine.start()
        self._refresh_view()

    def on_unmount(self) -> None:
        if self.downloads is not None:
            self.downloads.shutdown()

    def _worker_runner(self, group: str):
        def run(coro) -> object:
            return self.run_worker(coro, group=group)

        return run

    def _emit(self, event: object) -> None:
        self.post_message(CoordinatorEvent(event))

    def on_coordinator_event(self, message: CoordinatorEvent) -> None:
        if self.machine is None:
            return
        event = message.event
        if not self.machine.handle_event(event):
            return
        if isinstance(event, RestoreCompleted):
            self.notify(self.machine.state.status, severity="information")
        self._refresh_view()

    def on_resize(self, event: events.Resize) -> None:
        self._refresh_view()

    def handle_browser_key(self, key: str, character: Optional[str]) -> None:
        machine = self.machine
        if machine is None:
            return
        if machine.state.mode is Mode.BROWSING and character == "q":
            self.exit()
            return
        machine.handle_key(key, character)
        self._refresh_view()

    def _list_height(self) -> Optional[int]:
        height = self.backup_list.content_size.height
        if height <= 1:
            return None
        return height - 1

    def _refresh_view(self) -> None:
        machine = self.machine
        if machine is None:
            return
        state = machine.state
        frame = render_frame(state, self.config_store.get(), self._list_height())
        self.backup_list.update(frame.backups)
        self.config_view.update(frame.config)
        self.status_view.update(frame.status)
        self.help_view.update(frame.help)
        self.backups_pane.set_class(state.focus is Focus.LEFT, "pane-focused")
        self.config_pane.set_class(state.focus is Focus.RIGHT, "pane-focused")
        self.status_pane.set_class(state.mode is Mode.SHOWING_ERROR, "status-error")
        self._sync_confirm_dialog(state.mode is Mode.CONFIRMING_RESTORE, frame.status)

    def _sync_confirm_dialog(self, confirming: bool, prompt) -> None:
        dialog = self._confirm_dialog
        if confirming:
            if dialog is None:
                self._confirm_dialog = ConfirmRestoreDialog(prompt)
                self.push_screen(self._confirm_dialog)
            else:
                dialog.update_prompt(prompt)
            return
        if dialog is None:
            return
        self._confirm_dialog = None
        if self.screen is dialog:
            self.pop_screen()


def default_download_dir() -> str:
    return str(Path(tempfile.gettempdir()) / "pgman-downloads")


def _config_base_dir() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME")
    if config_home:
        base = Path(config_home).expanduser()
    else:
        base = Path.home() / ".config"
    return base / "pgman"


def configure_logging(level: str, log_file: Optional[Path] = None) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    if log_file is None:
        logging.basicConfig(level=numeric, format=LOG_FORMAT, stream=sys.stderr)
        return
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=numeric,
        format=LOG_FORMAT,
        handlers=[logging.FileHandler(log_file)],
    )


def _parse_flag(value: str) -> bool:
    try:
        return parse_bool(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"expected true or false, got '{value}'"
        ) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgman", description="PostgreSQL database and S3 backup manager"
    )
    s3 = parser.add_argument_group("S3")
    s3.add_argument("--bucket", help="S3 bucket holding backups")
    s3.add_argument("--region", help="S3 region")
    s3.add_argument("--prefix", help="Key prefix to list backups under")
    s3.add_argument("--endpoint-url", help="Custom S3-compatible endpoint")
    s3.add_argument("--access-key-id", help="S3 access key ID")
    s3.add_argument("--secret-access-key", help="S3 secret access key")
    s3.add_argument(
        "--path-style",
        action="store_const",
        const=True,
        default=None,
        help="Use path-style S3 addressing",
    )
    pg = parser.add_argument_group("PostgreSQL")
    pg.add_argument("-a", "--address", "--host", dest="host", help="Database host")
    pg.add_argument("-p", "--port", help="Database port")
    pg.add_argument("-u", "--username", help="Database user")
    pg.add_argument("-P", "--password", help="Database password")
    pg.add_argument(
        "--use-ssl",
        type=_parse_flag,
        default=None,
        help="Enable SSL for the connection (true/false)",
    )
    pg.add_argument("--db-name", help="Target database for restores from the browser")
    parser.add_argument(
        "--download-dir",
        help="Directory for downloaded backups (defaults to a temp directory)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print admin commands instead of running them",
    )

    commands = parser.add_subparsers(dest="command", metavar="command")
    commands.add_parser("browse", help="Open the interactive backup browser")
    commands.add_parser("list", help="List all databases")
    create = commands.add_parser("create", help="Create a new database")
    create.add_argument("name", help="Name of the database to create")
    clone = commands.add_parser(
        "clone", help="Clone a database to '<name>-clone'"
    )
    clone.add_argument("name", help="Name of the database to clone from")
    drop = commands.add_parser("drop", help="Drop a database")
    drop.add_argument("name", help="Name of the database to drop")
    rename = commands.add_parser("rename", help="Rename a database")
    rename.add_argument("name", help="Current database name")
    rename.add_argument("new_name", help="New database name")
    set_owner = commands.add_parser("set-owner", help="Change a database owner")
    set_owner.add_argument("name", help="Database name")
    set_owner.add_argument("owner", help="New owner role")
    dump = commands.add_parser("dump", help="Dump a database")
    dump.add_argument("name", help="Name of the database to dump")
    dump.add_argument("output", help="Output file path")
    restore = commands.add_parser("restore", help="Restore a database from dump")
    restore.add_argument("name", help="Name of the database to restore to")
    restore.add_argument("input", help="Input dump file path")
    return parser


def _overrides(args: argparse.Namespace) -> dict[str, object]:
    return {
        "bucket": args.bucket,
        "region": args.region,
        "prefix": args.prefix,
        "endpoint_url": args.endpoint_url,
        "access_key_id": args.access_key_id,
        "secret_access_key": args.secret_access_key,
        "path_style": args.path_style,
        "host": args.host,
        "port": args.port,
        "username": args.username,
        "password": args.password,
        "use_ssl": args.use_ssl,
        "db_name": args.db_name,
    }


def _admin_command(
    args: argparse.Namespace, admin: PostgresAdmin, store: ConfigStore
) -> list[str]:
    pg = store.get().postgres
    if args.command == "create":
        return admin.sql_command(pg, create_database_sql(args.name))
    if args.command == "clone":
        _, sql = clone_database_sql(args.name)
        return admin.sql_command(pg, sql)
    if args.command == "drop":
        return admin.sql_command(pg, drop_database_sql(args.name))
    if args.command == "rename":
        return admin.sql_command(pg, rename_database_sql(args.name, args.new_name))
    if args.command == "set-owner":
        return admin.sql_command(pg, set_owner_sql(args.name, args.owner))
    if args.command == "dump":
        return admin.dump_command(pg, args.name, args.output)
    return admin.restore_command(pg, args.input, args.name)


def _run_admin_command(
    args: argparse.Namespace,
    store: ConfigStore,
    admin: Optional[PostgresAdmin] = None,
) -> int:
    admin = admin or PostgresAdmin()
    pg = store.get().postgres
    if args.command == "list":
        if args.dry_run:
            print(render_command(admin.sql_command(pg, LIST_DATABASES_SQL)))
            return 0
        try:
            names = admin.list_databases(pg)
        except AdminCommandError as exc:
            print(exc.output or str(exc), file=sys.stderr)
            return exc.returncode or 1
        print("Available databases:")
        for name in names:
            print(f"  - {name}")
        return 0

    command = _admin_command(args, admin, store)
    if args.dry_run:
        print(render_command(command))
        return 0
    logger.info("Running %s for database %s", args.command, args.name)
    code = admin.run_command(pg, command)
    if code == 0:
        logger.info("%s of database '%s' succeeded", args.command, args.name)
    else:
        logger.error(
            "%s of database '%s' failed with status %s", args.command, args.name, code
        )
    return code


def _run_browser_command(store: ConfigStore, download_dir: Optional[str]) -> int:
    app = BackupBrowser(config=store, download_dir=download_dir)
    app.run()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        store = load_configuration(_overrides(args))
    except ValidationError as exc:
        print(f"pgman: invalid configuration: {exc}", file=sys.stderr)
        return 2
    if args.command in ADMIN_COMMANDS:
        configure_logging(args.log_level)
        return _run_admin_command(args, store)
    configure_logging(args.log_level, _config_base_dir() / "pgman.log")
    return _run_browser_command(store, args.download_dir)


if __name__ == "__main__":
    sys.exit(main())
