from __future__ import annotations

from datetime import datetime
from typing import NamedTuple, Optional

from rich.console import Group
from rich.table import Table
from rich.text import Text

from .browser import BrowserState, Focus, Mode
from .config import FIELDS, SECTION_POSTGRES, SECTION_S3, Configuration
from .s3 import BackupEntry

SECRET_MASK = "********"
PROGRESS_WIDTH = 30

ONE_MB = 1024**2
HUNDRED_MB = 100 * ONE_MB
ONE_GB = 1024**3
TEN_GB = 10 * ONE_GB

SELECTED_STYLE = "bold white on #2f80ed"
SELECTED_UNFOCUSED_STYLE = "bold on #3a3a3a"
SECTION_TITLES = {SECTION_S3: "S3", SECTION_POSTGRES: "PostgreSQL"}


class Frame(NamedTuple):
    backups: Table
    config: Group
    status: Text
    help: Text


def format_size(size: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    value = float(size)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} PB"


def size_style(size: int) -> str:
    if size < ONE_MB:
        return "green"
    if size < HUNDRED_MB:
        return "#ffd700"
    if size < ONE_GB:
        return "#ff8c00"
    if size < TEN_GB:
        return "red"
    return "bold red"


def format_time(value: Optional[datetime]) -> str:
    if not value:
        return ""
    return value.strftime("%Y-%m-%d %H:%M")


def modified_style(value: Optional[datetime], now: Optional[datetime] = None) -> str:
    if not value:
        return ""
    if now is None:
        now = datetime.now(tz=value.tzinfo)
    age_days = max(0.0, (now - value).total_seconds()) / 86400.0
    thresholds = [1, 7, 30, 90, 180, 365]
    colors = [
        "#f0f0f0",
        "#dddddd",
        "#c7c7c7",
        "#b1b1b1",
        "#9b9b9b",
        "#858585",
        "#6f6f6f",
    ]
    index = 0
    for cutoff in thresholds:
        if age_days <= cutoff:
            break
        index += 1
    return colors[min(index, len(colors) - 1)]


def mask_secret(value: str) -> str:
    return SECRET_MASK if value else ""


def display_name(key: str, prefix: str = "") -> str:
    name = key[len(prefix) :] if prefix and key.startswith(prefix) else key
    return name.lstrip("/") or key


def progress_bar(done: int, total: int, width: int = PROGRESS_WIDTH) -> str:
    if total <= 0:
        return "░" * width
    ratio = min(1.0, max(0.0, done / total))
    filled = int(ratio * width)
    return "█" * filled + "░" * (width - filled)


def percent(done: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, int(done * 100 / total))


def visible_window(selected: int, length: int, height: Optional[int]) -> range:
    if not height or height <= 0 or length <= height:
        return range(length)
    start = min(max(0, selected - height // 2), length - height)
    return range(start, start + height)


def render_backups(
    state: BrowserState, config: Configuration, height: Optional[int] = None
) -> Table:
    table = Table(expand=True, box=None, show_edge=False, pad_edge=False)
    table.add_column("Name", ratio=1, no_wrap=True, overflow="ellipsis")
    table.add_column("Size", justify="right", no_wrap=True)
    table.add_column("Modified", no_wrap=True)
    if not state.entries:
        placeholder = "Loading backups..." if state.loading else "No backups found"
        table.add_row(Text(placeholder, style="dim italic"), "", "")
        return table
    highlight = (
        SELECTED_STYLE if state.focus is Focus.LEFT else SELECTED_UNFOCUSED_STYLE
    )
    for index in visible_window(
        state.selected_index, len(state.entries), height
    ):
        entry: BackupEntry = state.entries[index]
        if index == state.selected_index:
            table.add_row(
                Text(display_name(entry.key, config.s3.prefix)),
                Text(format_size(entry.size)),
                Text(format_time(entry.last_modified)),
                style=highlight,
            )
            continue
        table.add_row(
            Text(display_name(entry.key, config.s3.prefix)),
            Text(format_size(entry.size), style=size_style(entry.size)),
            Text(
                format_time(entry.last_modified),
                style=modified_style(entry.last_modified),
            ),
        )
    return table


def _field_value(config: Configuration, section: str, field_id: str) -> object:
    source = config.s3 if section == SECTION_S3 else config.postgres
    return getattr(source, field_id)


def _field_text(value: object, secret: bool) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if secret:
        return mask_secret(str(value))
    return str(value)


def render_config(config: Configuration, state: BrowserState) -> Group:
    tables: list[object] = []
    for section in (SECTION_S3, SECTION_POSTGRES):
        table = Table.grid(padding=(0, 1), expand=True)
        table.add_column(no_wrap=True)
        table.add_column(ratio=1, no_wrap=True, overflow="ellipsis")
        tables.append(Text(SECTION_TITLES[section], style="bold underline"))
        for index, spec in enumerate(FIELDS):
            if spec.section != section:
                continue
            label = Text.assemble((f"[{spec.shortcut}] ", "dim"), f"{spec.label}:")
            editing = (
                state.mode is Mode.EDITING_CONFIG and state.edit_field == spec.field_id
            )
            if editing:
                buffer = state.edit_buffer
                if spec.secret:
                    buffer = "*" * len(buffer)
                value = Text(f"{buffer}▏", style="bold #ffd700")
            else:
                raw = _field_value(config, section, spec.field_id)
                value = Text(_field_text(raw, spec.secret))
            row_style = None
            if state.focus is Focus.RIGHT and index == state.config_index:
                row_style = SELECTED_STYLE
            table.add_row(label, value, style=row_style)
        tables.append(table)
        tables.append(Text(""))
    return Group(*tables[:-1])


def render_status(state: BrowserState, config: Configuration) -> Text:
    mode = state.mode
    if mode is Mode.CONFIRMING_RESTORE and state.selected_entry is not None:
        entry = state.selected_entry
        target = config.postgres.db_name or "<no database set>"
        return Text.assemble(
            ("Restore ", "bold"),
            (display_name(entry.key, config.s3.prefix), "bold #2f80ed"),
            (" into ", "bold"),
            (target, "bold #ff8c00"),
            ("?\nThis overwrites the database and downloads ", ""),
            (format_size(entry.size), size_style(entry.size)),
            (". Press y to continue, n to cancel.", ""),
        )
    if mode is Mode.DOWNLOADING and state.active_download is not None:
        download = state.active_download
        done, total = download.bytes_done, download.bytes_total
        return Text.assemble(
            ("Downloading ", "bold"),
            (display_name(download.entry.key, config.s3.prefix), "bold #2f80ed"),
            "\n",
            (progress_bar(done, total), "#2f80ed"),
            f" {percent(done, total):3d}%  {format_size(done)} / {format_size(total)}",
            ("\nEsc to cancel", "dim"),
        )
    if mode is Mode.RESTORING and state.active_restore is not None:
        restore = state.active_restore
        return Text.assemble(
            ("Restoring into ", "bold"),
            (restore.target_db, "bold #ff8c00"),
            "...\n",
            (f"pg_restore is running on {config.postgres.host}", "dim"),
        )
    if mode is Mode.SHOWING_ERROR:
        return Text.assemble(
            ("Error: ", "bold red"),
            (state.last_error or "unknown error", "red"),
            ("\nPress any key to continue", "dim"),
        )
    if mode is Mode.EDITING_CONFIG and state.edit_field:
        label = next(
            spec.label for spec in FIELDS if spec.field_id == state.edit_field
        )
        return Text.assemble(
            ("Editing ", "bold"),
            (label, "bold #ffd700"),
            (" (Enter to save, Esc to discard)", "dim"),
        )
    return Text(state.status or "Ready")


HELP_TEXT = {
    Mode.BROWSING: (
        "↑/↓ move • Tab switch pane • Enter restore • r refresh • "
        "t test connection • q quit"
    ),
    Mode.CONFIRMING_RESTORE: "y confirm restore • n/Esc cancel",
    Mode.DOWNLOADING: "Esc cancel download",
    Mode.RESTORING: "Restore running, please wait",
    Mode.EDITING_CONFIG: "Enter save • Esc discard • Backspace delete",
    Mode.SHOWING_ERROR: "Any key to dismiss",
}
CONFIG_HELP_TEXT = (
    "↑/↓ move • Enter/e edit • [letter] edit field • Tab switch pane • "
    "t test connection • q quit"
)


def render_help(state: BrowserState) -> Text:
    if state.mode is Mode.BROWSING and state.focus is Focus.RIGHT:
        return Text(CONFIG_HELP_TEXT, style="dim")
    return Text(HELP_TEXT.get(state.mode, ""), style="dim")


def render_frame(
    state: BrowserState, config: Configuration, height: Optional[int] = None
) -> Frame:
    return Frame(
        backups=render_backups(state, config, height),
        config=render_config(config, state),
        status=render_status(state, config),
        help=render_help(state),
    )
