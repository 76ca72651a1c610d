"""
Server configuration management.

This module handles loading and accessing server configuration from multiple sources
with a clear priority order:

    1. Environment variables (highest priority) - for containerized deployments
    2. Config file (config/server.ini) - for static deployments
    3. Built-in defaults (lowest priority) - sensible fallbacks

Configuration is loaded once at module import time and cached. The ServerConfig
dataclass provides typed access to all settings.

Usage:
    from plate_server.config import config

    print(config.database.absolute_path)
    print(config.ledger.audit_page_size)
    print(config.sync.batch_size)

Environment Variable Mapping:
    PLATE_HOST                  -> server.host
    PLATE_PORT                  -> server.port
    PLATE_CORS_ORIGINS          -> security.cors_origins
    PLATE_DB_PATH               -> database.path
    PLATE_LOG_LEVEL             -> logging.level
    PLATE_DEFAULT_SESSION_NAME  -> ledger.default_session_name
    PLATE_AUDIT_PAGE_SIZE       -> ledger.audit_page_size
    PLATE_SYNC_BATCH_SIZE       -> sync.batch_size
    PLATE_SHEETS_RANGE          -> sync.sheets_range
    GOOGLE_SHEETS_ID            -> sync.sheets_id
    GOOGLE_SHEETS_API_KEY       -> sync.sheets_api_key
"""

import configparser
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root directory (contains src/, config/, data/)
PROJECT_ROOT = Path(__file__).parent.parent.parent

CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_FILE = CONFIG_DIR / "server.ini"
CONFIG_EXAMPLE = CONFIG_DIR / "server.example.ini"


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================


@dataclass
class ServerSettings:
    """Network server configuration."""

    host: str = "0.0.0.0"  # nosec B104 - intentional for server binding
    port: int = 8000


@dataclass
class SecuritySettings:
    """Cross-origin settings for the station frontends."""

    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class DatabaseSettings:
    """Database configuration."""

    path: str = "data/plates.db"

    @property
    def absolute_path(self) -> Path:
        """Get absolute path to database file."""
        p = Path(self.path)
        if p.is_absolute():
            return p
        return PROJECT_ROOT / p


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["simple", "detailed"] = "detailed"


@dataclass
class LedgerSettings:
    """Entitlement ledger behaviour knobs."""

    default_session_name: str = "Live Session"
    search_min_chars: int = 2
    search_limit: int = 30
    audit_page_size: int = 100
    audit_max_page_size: int = 500
    station_id_max_length: int = 12


@dataclass
class SyncSettings:
    """Roster reconciliation settings (Google Sheets source + batching)."""

    batch_size: int = 500
    sheets_id: str = ""
    sheets_api_key: str = ""
    sheets_range: str = "Sheet1!A2:F"
    timeout_seconds: float = 15.0

    @property
    def sheets_configured(self) -> bool:
        """True when both the sheet id and API key are present."""
        return bool(self.sheets_id and self.sheets_api_key)


@dataclass
class ServerConfig:
    """
    Complete server configuration.

    This is the main configuration object that aggregates all settings sections.
    Access via the module-level `config` singleton.
    """

    server: ServerSettings = field(default_factory=ServerSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def _parse_list(value: str) -> list[str]:
    """Parse a comma-separated string to list, stripping whitespace."""
    if not value or value.strip() == "":
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _load_from_ini(parser: configparser.ConfigParser, cfg: ServerConfig) -> None:
    """Load configuration from parsed INI file into ServerConfig."""
    if parser.has_section("server"):
        if parser.has_option("server", "host"):
            cfg.server.host = parser.get("server", "host")
        if parser.has_option("server", "port"):
            cfg.server.port = parser.getint("server", "port")

    if parser.has_section("security"):
        if parser.has_option("security", "cors_origins"):
            cfg.security.cors_origins = _parse_list(parser.get("security", "cors_origins"))

    if parser.has_section("database"):
        if parser.has_option("database", "path"):
            cfg.database.path = parser.get("database", "path")

    if parser.has_section("logging"):
        if parser.has_option("logging", "level"):
            cfg.logging.level = parser.get("logging", "level").upper()
        if parser.has_option("logging", "format"):
            val = parser.get("logging", "format").lower()
            if val in ("simple", "detailed"):
                cfg.logging.format = val  # type: ignore[assignment]

    if parser.has_section("ledger"):
        if parser.has_option("ledger", "default_session_name"):
            cfg.ledger.default_session_name = parser.get("ledger", "default_session_name")
        for key in (
            "search_min_chars",
            "search_limit",
            "audit_page_size",
            "audit_max_page_size",
            "station_id_max_length",
        ):
            if parser.has_option("ledger", key):
                setattr(cfg.ledger, key, parser.getint("ledger", key))

    if parser.has_section("sync"):
        if parser.has_option("sync", "batch_size"):
            cfg.sync.batch_size = parser.getint("sync", "batch_size")
        if parser.has_option("sync", "sheets_id"):
            cfg.sync.sheets_id = parser.get("sync", "sheets_id")
        if parser.has_option("sync", "sheets_api_key"):
            cfg.sync.sheets_api_key = parser.get("sync", "sheets_api_key")
        if parser.has_option("sync", "sheets_range"):
            cfg.sync.sheets_range = parser.get("sync", "sheets_range")
        if parser.has_option("sync", "timeout_seconds"):
            cfg.sync.timeout_seconds = parser.getfloat("sync", "timeout_seconds")


def _apply_env_overrides(cfg: ServerConfig) -> None:
    """Apply environment variable overrides to configuration."""
    if env_host := os.getenv("PLATE_HOST"):
        cfg.server.host = env_host
    if env_port := os.getenv("PLATE_PORT"):
        cfg.server.port = int(env_port)

    if env_cors := os.getenv("PLATE_CORS_ORIGINS"):
        cfg.security.cors_origins = _parse_list(env_cors)

    if env_db := os.getenv("PLATE_DB_PATH"):
        cfg.database.path = env_db

    if env_log := os.getenv("PLATE_LOG_LEVEL"):
        cfg.logging.level = env_log.upper()

    if env_session_name := os.getenv("PLATE_DEFAULT_SESSION_NAME"):
        cfg.ledger.default_session_name = env_session_name
    if env_page := os.getenv("PLATE_AUDIT_PAGE_SIZE"):
        cfg.ledger.audit_page_size = int(env_page)

    if env_batch := os.getenv("PLATE_SYNC_BATCH_SIZE"):
        cfg.sync.batch_size = int(env_batch)
    if env_range := os.getenv("PLATE_SHEETS_RANGE"):
        cfg.sync.sheets_range = env_range
    if env_sheet := os.getenv("GOOGLE_SHEETS_ID"):
        cfg.sync.sheets_id = env_sheet
    if env_key := os.getenv("GOOGLE_SHEETS_API_KEY"):
        cfg.sync.sheets_api_key = env_key


def load_config() -> ServerConfig:
    """
    Load configuration from all sources with proper priority.

    Priority (highest wins):
        1. Environment variables
        2. config/server.ini
        3. config/server.example.ini (fallback for development)
        4. Built-in defaults

    Returns:
        ServerConfig: Fully populated configuration object.
    """
    cfg = ServerConfig()

    config_file = None
    if CONFIG_FILE.exists():
        config_file = CONFIG_FILE
    elif CONFIG_EXAMPLE.exists():
        config_file = CONFIG_EXAMPLE

    if config_file:
        parser = configparser.ConfigParser()
        parser.read(config_file)
        _load_from_ini(parser, cfg)

    _apply_env_overrides(cfg)

    return cfg


def reload_config() -> "ServerConfig":
    """
    Reload configuration from disk and environment.

    This updates the module-level `config` singleton. Use sparingly as it
    doesn't update already-running server middleware.
    """
    global config
    config = load_config()
    return config


# =============================================================================
# MODULE-LEVEL SINGLETON
# =============================================================================

config = load_config()


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

_LOG_FORMATS = {
    "simple": "%(levelname)s %(message)s",
    "detailed": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
}


def configure_logging() -> None:
    """Apply the configured log level and format to the root logger."""
    level = getattr(logging, config.logging.level, logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMATS[config.logging.format], force=True)


def get_config_status() -> dict:
    """
    Get configuration status for diagnostics.

    The Sheets API key is reported only as configured/not configured.
    """
    return {
        "config_file_exists": CONFIG_FILE.exists(),
        "config_file_path": str(CONFIG_FILE),
        "using_example": not CONFIG_FILE.exists() and CONFIG_EXAMPLE.exists(),
        "database_path": str(config.database.absolute_path),
        "roster_source_configured": config.sync.sheets_configured,
        "sync_batch_size": config.sync.batch_size,
    }


def print_config_summary() -> None:
    """Print a summary of current configuration to stdout."""
    status = get_config_status()
    print("\n" + "=" * 60)
    print("SERVER CONFIGURATION")
    print("=" * 60)
    print(f"Config file: {status['config_file_path']}")
    print(f"File exists: {status['config_file_exists']}")
    if status["using_example"]:
        print("WARNING: Using example config (copy to server.ini for production)")
    print("-" * 60)
    print(f"Server:      {config.server.host}:{config.server.port}")
    print(f"Database:    {status['database_path']}")
    print(f"Roster sync: {'configured' if status['roster_source_configured'] else 'not configured'}")
    print(f"Log level:   {config.logging.level}")
    print("=" * 60 + "\n")


# =============================================================================
# TEST HELPERS
# =============================================================================


class use_test_database:
    """
    Context manager for using a temporary test database.

    Usage:
        from plate_server.config import use_test_database

        def test_something(tmp_path):
            with use_test_database(tmp_path / "test.db"):
                schema.init_database()

    Args:
        db_path: Path to the test database file
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.original_path: str | None = None

    def __enter__(self) -> Path:
        """Set up test database path."""
        self.original_path = config.database.path
        config.database.path = str(self.db_path)
        return self.db_path

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Restore original database path."""
        if self.original_path is not None:
            config.database.path = self.original_path
        return None
