#!/usr/bin/env python3
"""
Configuration management for the feed ingestion service.

This module centralizes configuration loading, validation and logging setup.
It handles environment variables, an optional .env file, an optional YAML
secrets file and the feeds.yaml seed list, and exposes immutable settings
objects that are passed explicitly into the fetcher, the scheduling engine
and the push subscription manager.
"""

from dataclasses import dataclass
from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOGGER_ROOT = "FeedIngest"


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    environ.setdefault("PYTHONUNBUFFERED", "1")

    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    # pytest swaps stdout for a capture object that has no reconfigure()
    for stream in (sys.stdout, sys.stderr):
        reconfigure = getattr(stream, "reconfigure", None)
        if callable(reconfigure):
            reconfigure(line_buffering=True)

    # aiohttp access logs are noisy at INFO when the callback server runs
    getLogger("aiohttp.access").setLevel(max(level, WARNING))

    return getLogger(LOGGER_ROOT)


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "scheduling", "websub")

    Returns:
        A logger named "FeedIngest.{name}"

    Example:
        logger = get_logger("mymodule")
        logger.info("This will appear as 'FeedIngest.mymodule - INFO - ...'")
    """
    return getLogger(f"{LOGGER_ROOT}.{name}")


logger = _setup_global_logger()


@dataclass(frozen=True)
class UserAgentSettings:
    """Identity fields rendered into the outbound User-Agent header."""
    app_name: str = "FeedIngest"
    app_version: str = "1.0"
    commit_sha: Optional[str] = None
    app_url: str = "https://localhost:8080"
    repo_url: str = "https://github.com/feed-ingest/feed-ingest"
    contact_email: Optional[str] = None


@dataclass(frozen=True)
class FetcherSettings:
    """Knobs for a single conditional GET."""
    timeout_seconds: float = 30.0
    max_redirects: int = 5
    max_response_bytes: int = 10 * 1024 * 1024
    follow_permanent_redirects: bool = True


@dataclass(frozen=True)
class SchedulerSettings:
    """Bounds used by the scheduling engine. All values are seconds."""
    default_interval: int = 60 * 60
    min_interval: int = 60 * 60
    cache_min_interval: int = 10 * 60
    push_backup_interval: int = 24 * 60 * 60
    max_interval: int = 7 * 24 * 60 * 60
    failure_base: int = 30 * 60
    failure_max_exponent: int = 10
    jitter_fraction: float = 0.1
    max_jitter: int = 30 * 60


@dataclass(frozen=True)
class WebSubSettings:
    """Push subscription toggles and timing."""
    enabled: bool = False
    callback_base_url: Optional[str] = None
    renewal_threshold_seconds: int = 24 * 60 * 60
    verify_window_seconds: int = 600
    hub_timeout_seconds: float = 30.0


class Config:
    """Configuration manager for the feed ingestion service.

    Values are loaded from, in order of increasing precedence:
    1. Process environment variables
    2. .env file next to this module (if present)
    3. YAML secrets file (if SECRETS_FILE is set)

    The feeds.yaml file (FEEDS_CONFIG_PATH) optionally lists feeds to
    register on startup:

    ```yaml
    feeds:
      example:
        url: "https://example.com/feed.xml"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_bool(self, env_var: str, default: bool) -> bool:
        raw = environ.get(env_var)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

        # HTTP request configuration
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.MAX_RESPONSE_BYTES = self._validate_positive_int("MAX_RESPONSE_BYTES", 10 * 1024 * 1024, 1024)
        self.FOLLOW_PERMANENT_REDIRECTS = self._validate_bool("FOLLOW_PERMANENT_REDIRECTS", True)

        # Scheduling configuration
        self.DEFAULT_INTERVAL_MINUTES = self._validate_positive_int("DEFAULT_INTERVAL_MINUTES", 60, 1)
        self.MIN_INTERVAL_MINUTES = self._validate_positive_int("MIN_INTERVAL_MINUTES", 60, 1)
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 10, 1)
        self.POLL_INTERVAL_SECONDS = self._validate_positive_int("POLL_INTERVAL_SECONDS", 30, 1)

        # User-Agent identity
        self.APP_NAME = environ.get("APP_NAME", "FeedIngest")
        self.APP_VERSION = environ.get("APP_VERSION", "1.0")
        self.GIT_COMMIT_SHA = environ.get("GIT_COMMIT_SHA") or None
        self.APP_URL = environ.get("APP_URL", "https://localhost:8080").rstrip("/")
        self.APP_REPO_URL = environ.get("APP_REPO_URL", "https://github.com/feed-ingest/feed-ingest")
        self.FETCHER_CONTACT_EMAIL = environ.get("FETCHER_CONTACT_EMAIL") or None

        # WebSub
        self.WEBSUB_ENABLED = self._validate_bool("WEBSUB_ENABLED", False)
        self.WEBSUB_CALLBACK_BASE_URL = (environ.get("WEBSUB_CALLBACK_BASE_URL") or self.APP_URL).rstrip("/")
        self.WEBSUB_RENEWAL_HOURS = self._validate_positive_int("WEBSUB_RENEWAL_HOURS", 24, 1)
        self.WEBSUB_VERIFY_WINDOW_SECONDS = self._validate_positive_int("WEBSUB_VERIFY_WINDOW_SECONDS", 600, 30)
        self.WEBSUB_LISTEN_HOST = environ.get("WEBSUB_LISTEN_HOST", "0.0.0.0")
        self.WEBSUB_LISTEN_PORT = self._validate_positive_int("WEBSUB_LISTEN_PORT", 8080, 1)

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the YAML mapping it points to and exports
        each key as an environment variable. Both a top-level mapping and a
        mapping nested under ``environment`` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.debug(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_feed_sources(self) -> None:
        """Populate self.FEED_SOURCES ({slug: url}) from feeds.yaml."""
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        self.FEED_SOURCES: Dict[str, str] = {}
        if not isinstance(config_data, dict):
            return

        feeds_section = config_data.get('feeds')
        if not isinstance(feeds_section, dict):
            logger.warning(f"No valid feeds found in {feeds_path}")
            return

        for feed_slug, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, dict) and isinstance(feed_cfg.get('url'), str):
                self.FEED_SOURCES[str(feed_slug)] = feed_cfg['url'].strip()
            elif isinstance(feed_cfg, str):
                self.FEED_SOURCES[str(feed_slug)] = feed_cfg.strip()
            else:
                logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")
        logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {feeds_path}")

    def fetcher_settings(self) -> FetcherSettings:
        return FetcherSettings(
            timeout_seconds=float(self.HTTP_TIMEOUT),
            max_redirects=self.MAX_REDIRECTS,
            max_response_bytes=self.MAX_RESPONSE_BYTES,
            follow_permanent_redirects=self.FOLLOW_PERMANENT_REDIRECTS,
        )

    def scheduler_settings(self) -> SchedulerSettings:
        return SchedulerSettings(
            default_interval=self.DEFAULT_INTERVAL_MINUTES * 60,
            min_interval=self.MIN_INTERVAL_MINUTES * 60,
        )

    def websub_settings(self) -> WebSubSettings:
        return WebSubSettings(
            enabled=self.WEBSUB_ENABLED,
            callback_base_url=self.WEBSUB_CALLBACK_BASE_URL or None,
            renewal_threshold_seconds=self.WEBSUB_RENEWAL_HOURS * 3600,
            verify_window_seconds=self.WEBSUB_VERIFY_WINDOW_SECONDS,
            hub_timeout_seconds=float(self.HTTP_TIMEOUT),
        )

    def user_agent_settings(self) -> UserAgentSettings:
        return UserAgentSettings(
            app_name=self.APP_NAME,
            app_version=self.APP_VERSION,
            commit_sha=self.GIT_COMMIT_SHA,
            app_url=self.APP_URL,
            repo_url=self.APP_REPO_URL,
            contact_email=self.FETCHER_CONTACT_EMAIL,
        )

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "follow_permanent_redirects": self.FOLLOW_PERMANENT_REDIRECTS,
            "default_interval_minutes": self.DEFAULT_INTERVAL_MINUTES,
            "min_interval_minutes": self.MIN_INTERVAL_MINUTES,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "feed_count": len(self.FEED_SOURCES),
            "websub_enabled": self.WEBSUB_ENABLED,
            "websub_callback_base_url": self.WEBSUB_CALLBACK_BASE_URL,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
