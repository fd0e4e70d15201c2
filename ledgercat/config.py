"""Configuration loading from TOML files with environment variable fallbacks."""

import os
from dataclasses import dataclass
from pathlib import Path

import tomli

DEFAULT_CONFIG_PATHS = [
    Path("config.toml"),
    Path.home() / ".config" / "ledgercat" / "config.toml",
]

DEFAULT_DB_PATH = "ledgercat.db"
DEFAULT_BANK_SOURCE = "sabadell"
DEFAULT_CURRENCY = "EUR"
DEFAULT_CHANNEL = "Sabadell"
DEFAULT_CHUNK_SIZE = 500


@dataclass(frozen=True)
class DatabaseConfig:
    """Database configuration."""

    path: Path


@dataclass(frozen=True)
class ImportConfig:
    """Defaults applied to statement imports."""

    bank_source: str = DEFAULT_BANK_SOURCE
    currency: str = DEFAULT_CURRENCY
    channel: str = DEFAULT_CHANNEL
    chunk_size: int = DEFAULT_CHUNK_SIZE


@dataclass(frozen=True)
class SecurityConfig:
    """Security configuration."""

    callback_secret: str | None


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    database: DatabaseConfig
    imports: ImportConfig
    security: SecurityConfig


def find_config_file() -> Path | None:
    """Find the first existing config file from default paths."""
    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path
    return None


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file with environment variable fallbacks."""
    path = config_path or find_config_file()
    toml_data = _load_toml_data(path)
    return _build_config(toml_data, path)


def _load_toml_data(config_path: Path | None) -> dict:
    """Load TOML data from file if it exists."""
    if config_path and config_path.exists():
        with open(config_path, "rb") as f:
            return tomli.load(f)
    return {}


def _build_config(toml_data: dict, config_path: Path | None) -> Config:
    """Build Config object from TOML data and environment variables."""
    db_config = _build_database_config(toml_data.get("database", {}), config_path)
    import_config = _build_import_config(toml_data.get("import", {}))
    security_config = _build_security_config(toml_data.get("security", {}))
    return Config(database=db_config, imports=import_config, security=security_config)


def _build_database_config(db_data: dict, config_path: Path | None) -> DatabaseConfig:
    """Build database config, resolving relative paths against config file location."""
    db_path_str = os.environ.get("LEDGERCAT_DB_PATH", db_data.get("path", DEFAULT_DB_PATH))
    db_path = Path(db_path_str)
    if not db_path.is_absolute() and config_path:
        db_path = config_path.parent / db_path
    return DatabaseConfig(path=db_path)


def _build_import_config(import_data: dict) -> ImportConfig:
    """Build import defaults from TOML data and env vars."""
    chunk_size = os.environ.get(
        "LEDGERCAT_CHUNK_SIZE", import_data.get("chunk_size", DEFAULT_CHUNK_SIZE)
    )
    return ImportConfig(
        bank_source=os.environ.get(
            "LEDGERCAT_BANK_SOURCE", import_data.get("bank_source", DEFAULT_BANK_SOURCE)
        ),
        currency=os.environ.get(
            "LEDGERCAT_CURRENCY", import_data.get("currency", DEFAULT_CURRENCY)
        ),
        channel=os.environ.get("LEDGERCAT_CHANNEL", import_data.get("channel", DEFAULT_CHANNEL)),
        chunk_size=max(int(chunk_size), 1),
    )


def _build_security_config(security_data: dict) -> SecurityConfig:
    """Build security config from TOML data and env vars."""
    callback_secret = os.environ.get(
        "LEDGERCAT_CALLBACK_SECRET", security_data.get("callback_secret") or None
    )
    return SecurityConfig(callback_secret=callback_secret)
