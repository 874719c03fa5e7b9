from __future__ import annotations

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional

from .config import PostgresSettings
from .errors import AdminCommandError, RestoreError

logger = logging.getLogger(__name__)

MAINTENANCE_DB = "postgres"
MISSING_BINARY_RETURNCODE = 127
LIST_DATABASES_SQL = "SELECT datname FROM pg_database WHERE datistemplate = false;"


@dataclass(frozen=True)
class RestoreOutput:
    returncode: int
    output: str


def quote_ident(name: str) -> str:
    escaped = name.replace('"', '""')
    return f'"{escaped}"'


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


class PostgresAdmin:
    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = dict(os.environ if environ is None else environ)

    def command_env(self, pg: PostgresSettings) -> dict[str, str]:
        env = dict(self._environ)
        if pg.password:
            env["PGPASSWORD"] = pg.password
        env["PGSSLMODE"] = "require" if pg.use_ssl else "disable"
        return env

    def connection_args(self, pg: PostgresSettings) -> list[str]:
        args = ["--host", pg.host, "--port", str(pg.port)]
        if pg.username:
            args.extend(["--username", pg.username])
        args.append("--no-password")
        return args

    def restore_command(
        self, pg: PostgresSettings, dump_path: str, target_db: str
    ) -> list[str]:
        return [
            "pg_restore",
            "--dbname",
            target_db,
            *self.connection_args(pg),
            dump_path,
        ]

    def dump_command(
        self, pg: PostgresSettings, name: str, output: str
    ) -> list[str]:
        return [
            "pg_dump",
            "--dbname",
            name,
            "--file",
            output,
            "--format",
            "custom",
            *self.connection_args(pg),
        ]

    def sql_command(self, pg: PostgresSettings, sql: str) -> list[str]:
        return [
            "psql",
            *self.connection_args(pg),
            "--dbname",
            MAINTENANCE_DB,
            "--set",
            "ON_ERROR_STOP=1",
            "--tuples-only",
            "--no-align",
            "--command",
            sql,
        ]

    async def run_restore(
        self, pg: PostgresSettings, dump_path: str, target_db: str
    ) -> RestoreOutput:
        command = self.restore_command(pg, dump_path, target_db)
        logger.info(
            "Restoring %s into database %s on %s:%s",
            dump_path,
            target_db,
            pg.host,
            pg.port,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.command_env(pg),
            )
        except FileNotFoundError:
            raise RestoreError("pg_restore not found on PATH") from None
        stdout, stderr = await process.communicate()
        output = "\n".join(
            part for part in (_decode(stdout).strip(), _decode(stderr).strip()) if part
        )
        if process.returncode != 0:
            logger.warning(
                "pg_restore exited with status %s for database %s",
                process.returncode,
                target_db,
            )
            raise RestoreError(
                f"pg_restore exited with status {process.returncode}", output
            )
        logger.info("Restore into %s completed", target_db)
        return RestoreOutput(returncode=process.returncode, output=output)

    def run_command(self, pg: PostgresSettings, command: list[str]) -> int:
        try:
            completed = subprocess.run(command, env=self.command_env(pg))
        except FileNotFoundError:
            logger.error("%s not found on PATH", command[0])
            return MISSING_BINARY_RETURNCODE
        return completed.returncode

    def query(self, pg: PostgresSettings, sql: str) -> list[str]:
        command = self.sql_command(pg, sql)
        try:
            completed = subprocess.run(
                command,
                env=self.command_env(pg),
                capture_output=True,
            )
        except FileNotFoundError:
            raise AdminCommandError("psql", MISSING_BINARY_RETURNCODE) from None
        if completed.returncode != 0:
            raise AdminCommandError(
                "psql", completed.returncode, _decode(completed.stderr).strip()
            )
        return [
            line.strip()
            for line in _decode(completed.stdout).splitlines()
            if line.strip()
        ]

    def list_databases(self, pg: PostgresSettings) -> list[str]:
        return self.query(pg, LIST_DATABASES_SQL)

    def check_connection(self, pg: PostgresSettings) -> str:
        rows = self.query(pg, "SELECT version();")
        if not rows:
            return f"connected to {pg.host}:{pg.port}"
        return rows[0]


def create_database_sql(name: str) -> str:
    return f"CREATE DATABASE {quote_ident(name)};"


def clone_database_sql(name: str) -> tuple[str, str]:
    new_name = f"{name}-clone"
    sql = (
        f"CREATE DATABASE {quote_ident(new_name)} WITH TEMPLATE {quote_ident(name)} "
        f"OWNER {quote_ident(name)};"
    )
    return new_name, sql


def drop_database_sql(name: str) -> str:
    return f"DROP DATABASE {quote_ident(name)} WITH (FORCE);"


def rename_database_sql(name: str, new_name: str) -> str:
    return f"ALTER DATABASE {quote_ident(name)} RENAME TO {quote_ident(new_name)};"


def set_owner_sql(name: str, owner: str) -> str:
    return f"ALTER DATABASE {quote_ident(name)} OWNER TO {quote_ident(owner)};"


def render_command(command: list[str]) -> str:
    return shlex.join(command)
