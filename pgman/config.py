from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional

from .errors import ValidationError

SECTION_S3 = "s3"
SECTION_POSTGRES = "postgres"

KIND_TEXT = "text"
KIND_REQUIRED = "required"
KIND_BOOL = "bool"
KIND_PORT = "port"
KIND_ENDPOINT = "endpoint"

DEFAULT_REGION = "us-east-1"
DEFAULT_PG_HOST = "localhost"
DEFAULT_PG_PORT = 5432

TRUE_VALUES = {"true", "yes", "on", "1"}
FALSE_VALUES = {"false", "no", "off", "0"}


@dataclass(frozen=True)
class S3Settings:
    bucket: str = ""
    region: str = DEFAULT_REGION
    prefix: str = ""
    endpoint_url: Optional[str] = None
    access_key_id: str = ""
    secret_access_key: str = ""
    path_style: bool = False


@dataclass(frozen=True)
class PostgresSettings:
    host: str = DEFAULT_PG_HOST
    port: int = DEFAULT_PG_PORT
    username: str = ""
    password: str = ""
    use_ssl: bool = True
    db_name: str = ""


@dataclass(frozen=True)
class Configuration:
    s3: S3Settings = field(default_factory=S3Settings)
    postgres: PostgresSettings = field(default_factory=PostgresSettings)


@dataclass(frozen=True)
class FieldSpec:
    field_id: str
    section: str
    label: str
    shortcut: str
    kind: str = KIND_TEXT
    secret: bool = False


FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("bucket", SECTION_S3, "Bucket", "b", KIND_REQUIRED),
    FieldSpec("region", SECTION_S3, "Region", "R"),
    FieldSpec("prefix", SECTION_S3, "Prefix", "x"),
    FieldSpec("endpoint_url", SECTION_S3, "Endpoint URL", "E", KIND_ENDPOINT),
    FieldSpec("access_key_id", SECTION_S3, "Access Key ID", "a", secret=True),
    FieldSpec(
        "secret_access_key", SECTION_S3, "Secret Access Key", "s", secret=True
    ),
    FieldSpec("path_style", SECTION_S3, "Path Style", "P", KIND_BOOL),
    FieldSpec("host", SECTION_POSTGRES, "Host", "h", KIND_REQUIRED),
    FieldSpec("port", SECTION_POSTGRES, "Port", "p", KIND_PORT),
    FieldSpec("username", SECTION_POSTGRES, "Username", "u"),
    FieldSpec("password", SECTION_POSTGRES, "Password", "f", secret=True),
    FieldSpec("use_ssl", SECTION_POSTGRES, "Use SSL", "l", KIND_BOOL),
    FieldSpec("db_name", SECTION_POSTGRES, "Database", "n"),
)
FIELDS_BY_ID = {spec.field_id: spec for spec in FIELDS}
FIELDS_BY_SHORTCUT = {spec.shortcut: spec for spec in FIELDS}

ENVIRONMENT_FIELDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("bucket", ("PGMAN_S3_BUCKET",)),
    ("region", ("AWS_REGION", "AWS_DEFAULT_REGION")),
    ("prefix", ("PGMAN_S3_PREFIX",)),
    ("endpoint_url", ("PGMAN_S3_ENDPOINT",)),
    ("access_key_id", ("AWS_ACCESS_KEY_ID",)),
    ("secret_access_key", ("AWS_SECRET_ACCESS_KEY",)),
    ("path_style", ("PGMAN_S3_PATH_STYLE",)),
    ("host", ("PGHOST",)),
    ("port", ("PGPORT",)),
    ("username", ("PGUSER",)),
    ("password", ("PGPASSWORD",)),
    ("use_ssl", ("PGMAN_PG_SSL",)),
    ("db_name", ("PGDATABASE",)),
)


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ValueError(value)


def normalize_endpoint(value: str) -> Optional[str]:
    endpoint = value.strip()
    if not endpoint:
        return None
    if not endpoint.startswith(("http://", "https://")):
        endpoint = f"http://{endpoint}"
    return endpoint


def field_spec(field_id: str) -> FieldSpec:
    spec = FIELDS_BY_ID.get(field_id)
    if spec is None:
        raise ValidationError(
            field_id, f"Unknown configuration field '{field_id}'"
        )
    return spec


def _coerce(spec: FieldSpec, value: object) -> object:
    if spec.kind == KIND_BOOL:
        if isinstance(value, bool):
            return value
        try:
            return parse_bool(str(value))
        except ValueError:
            raise ValidationError(
                spec.field_id, f"{spec.label} must be true or false"
            ) from None
    if spec.kind == KIND_PORT:
        text = str(value).strip()
        try:
            port = int(text)
        except ValueError:
            raise ValidationError(
                spec.field_id, f"Invalid port number '{text}'"
            ) from None
        if not 1 <= port <= 65535:
            raise ValidationError(
                spec.field_id, f"Port must be between 1 and 65535, got {port}"
            )
        return port
    text = "" if value is None else str(value)
    if spec.kind == KIND_ENDPOINT:
        return normalize_endpoint(text)
    if spec.kind == KIND_REQUIRED:
        text = text.strip()
        if not text:
            raise ValidationError(spec.field_id, f"{spec.label} is required")
        return text
    if spec.secret:
        return text
    return text.strip()


class ConfigStore:
    def __init__(self, configuration: Optional[Configuration] = None) -> None:
        self._config = configuration or Configuration()

    def get(self) -> Configuration:
        return self._config

    def set_field(self, field_id: str, value: object) -> None:
        spec = field_spec(field_id)
        coerced = _coerce(spec, value)
        if spec.section == SECTION_S3:
            s3 = replace(self._config.s3, **{field_id: coerced})
            self._config = replace(self._config, s3=s3)
        else:
            postgres = replace(self._config.postgres, **{field_id: coerced})
            self._config = replace(self._config, postgres=postgres)

    def value(self, field_id: str) -> object:
        spec = field_spec(field_id)
        if spec.section == SECTION_S3:
            return getattr(self._config.s3, field_id)
        return getattr(self._config.postgres, field_id)

    def edit_value(self, field_id: str) -> str:
        value = self.value(field_id)
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)


def load_configuration(
    overrides: Optional[Mapping[str, object]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ConfigStore:
    if environ is None:
        environ = os.environ
    store = ConfigStore()
    for field_id, names in ENVIRONMENT_FIELDS:
        for name in names:
            raw = environ.get(name)
            if raw:
                store.set_field(field_id, raw)
                break
    for field_id, value in (overrides or {}).items():
        if value is None:
            continue
        store.set_field(field_id, value)
    return store
