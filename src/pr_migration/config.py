"""pr_migration.config

YAML configuration for a migration run.

Example (config.example.yml):

    input_tsv_file_path: /data/input.tsv
    output_tsv_file_path: /data/output.tsv      # optional
    db_dsn: "host=localhost dbname=jellyfin"     # optional
    db_table_name: PlaybackActivity              # optional
    instance_old:
      base_url: jellyfin-old.local:8096
      api_token_env: JELLYFIN_OLD_TOKEN
    instance_new:
      base_url: https://jellyfin.example.org/
      api_token: 0123456789abcdef

Omitting output_tsv_file_path disables the TSV sink; omitting db_dsn
disables the database sink.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from pr_migration.activity_store import DEFAULT_TABLE_NAME, validate_table_name
from pr_migration.identity import InstanceConfig
from pr_migration.shared import ConfigError

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config.yml")
FALLBACK_CONFIG_PATH = Path("config.example.yml")

REQUIRED_KEYS = frozenset({"input_tsv_file_path", "instance_old", "instance_new"})


@dataclass
class MigrationConfig:
    input_tsv_file_path: Path
    instance_old: InstanceConfig
    instance_new: InstanceConfig
    output_tsv_file_path: Path | None = None
    db_dsn: str | None = None
    db_table_name: str = DEFAULT_TABLE_NAME
    source_path: Path | None = None

    @property
    def tsv_output_enabled(self) -> bool:
        return self.output_tsv_file_path is not None

    @property
    def db_output_enabled(self) -> bool:
        return self.db_dsn is not None


def normalize_base_url(base_url: str) -> str:
    """Default the scheme to http:// and drop one trailing slash."""
    url = base_url.strip()
    if "://" not in url:
        url = f"http://{url}"
    if url.endswith("/"):
        url = url[:-1]
    return url


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return value.strip()


def _parse_instance(key: str, data: Any) -> InstanceConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"{key} must be a mapping with base_url and api_token")
    base_url = _optional_str(data, "base_url")
    if base_url is None:
        raise ConfigError(f"{key}.base_url is required")

    token = _optional_str(data, "api_token")
    token_env = _optional_str(data, "api_token_env")
    if token is None and token_env is None:
        raise ConfigError(f"{key} requires api_token or api_token_env")
    if token is None:
        token = os.environ.get(token_env, "")
        if not token:
            raise ConfigError(f"{key}.api_token_env: env var {token_env} is not set")

    return InstanceConfig(base_url=normalize_base_url(base_url), api_token=token)


def parse_config(data: Any) -> MigrationConfig:
    """Validate a decoded YAML document and build a MigrationConfig."""
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a YAML mapping")
    missing = REQUIRED_KEYS - data.keys()
    if missing:
        raise ConfigError(f"missing required keys: {', '.join(sorted(missing))}")

    input_path = _optional_str(data, "input_tsv_file_path")
    if input_path is None:
        raise ConfigError("input_tsv_file_path is required")
    output_path = _optional_str(data, "output_tsv_file_path")

    table_name = _optional_str(data, "db_table_name") or DEFAULT_TABLE_NAME
    validate_table_name(table_name)

    return MigrationConfig(
        input_tsv_file_path=Path(input_path),
        output_tsv_file_path=Path(output_path) if output_path else None,
        db_dsn=_optional_str(data, "db_dsn"),
        db_table_name=table_name,
        instance_old=_parse_instance("instance_old", data["instance_old"]),
        instance_new=_parse_instance("instance_new", data["instance_new"]),
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> MigrationConfig:
    """Load and validate the YAML config at path.

    When path is the default and does not exist, config.example.yml in the
    working directory is tried instead.

    Raises:
        ConfigError: file missing, unreadable, not YAML, or invalid.
    """
    if not path.exists() and path == DEFAULT_CONFIG_PATH and FALLBACK_CONFIG_PATH.exists():
        log.warning("%s not found; falling back to %s", path, FALLBACK_CONFIG_PATH)
        path = FALLBACK_CONFIG_PATH

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read configuration {path}: {exc}") from exc
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"configuration {path} is not valid YAML: {exc}") from exc

    config = parse_config(data)
    config.source_path = path
    return config
