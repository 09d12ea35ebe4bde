#!/usr/bin/env python3
"""
Configuration management for the feed campaign engine.

This module centralizes configuration loading, validation and logging setup.
It handles environment variables, an optional .env file, an optional YAML
secrets file and the campaigns.yaml definitions file, and exposes a single
global ``config`` instance to the rest of the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOGGER_ROOT = "FeedCampaigns"

DEFAULT_ITEM_HTML_TEMPLATE = """
<a href="[URL]"><b>[TITLE]</b></a><br/>
[PUBLISHED]<br/>
[CONTENT]
<hr/>"""


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger writes to stdout with line buffering so progress output from the
    periodic jobs shows up immediately. Modules should use get_logger().
    """
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
    try:
        sys.stdout.reconfigure(line_buffering=True)
    except AttributeError:
        # Replaced stdout (e.g. captured by a test runner)
        pass

    # Keep the Azure exporter quiet unless explicitly overridden
    azure_level = level_map.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core", "azure.monitor"):
        getLogger(name).setLevel(azure_level)

    return getLogger(LOGGER_ROOT)


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "ingestion", "selector")

    Returns:
        A logger named "FeedCampaigns.{name}"
    """
    return getLogger(f"{LOGGER_ROOT}.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager.

    Values are loaded from, in order of increasing precedence:
    1. Process environment variables
    2. .env file next to this module (if present)
    3. YAML secrets file (if SECRETS_FILE is set)

    Campaign definitions and a few operator settings (custom elements, item
    template) are read from campaigns.yaml:

    ```yaml
    settings:
      custom_elements: |
        dc:creator
        media:thumbnail@url
    campaigns:
      weekly-digest:
        feed: https://example.com/feed.xml
        subject: "[RSSITEM:TITLE]"
        message: "<p>This week:</p>[RSS]"
        status: submitted
        embargo: "2024-01-01T09:00:00Z"
        repeat_interval: 10080
        repeat_until: "2025-01-01T00:00:00Z"
        order: latest
    ```
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_campaigns_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")
        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1, max_val: int | None = None) -> int:
        """Validate and parse a bounded integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            if max_val is not None and value > max_val:
                logger.warning(f"{env_var} must be at most {max_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
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
        value = raw.strip().lower()
        if value in ("1", "true", "yes", "on"):
            return True
        if value in ("0", "false", "no", "off", ""):
            return False
        logger.warning(f"Invalid {env_var} value '{raw}', using default {default}")
        return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)
        self.CAMPAIGNS_CONFIG_PATH = environ.get("CAMPAIGNS_CONFIG_PATH", path.join(base_dir, "campaigns.yaml"))

        # HTTP fetching
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedCampaigns/1.0)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 2, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        # Bounds memory use against pathological feeds (512 KiB .. 16 MiB)
        self.MAX_BODY_SIZE = self._validate_positive_int("MAX_BODY_SIZE", 2097152, 524288, 16777216)

        # Item content
        self.CONTENT_FILTERING = self._validate_bool("CONTENT_FILTERING", True)
        self.CONTENT_USE_SUMMARY = self._validate_bool("CONTENT_USE_SUMMARY", True)
        self.TRANSCODE_ASTRAL_CHARS = self._validate_bool("TRANSCODE_ASTRAL_CHARS", True)
        self.CUSTOM_ELEMENTS = self._split_lines(environ.get("CUSTOM_ELEMENTS", ""))

        # Selection and rendering
        self.RSS_MINIMUM = self._validate_positive_int("RSS_MINIMUM", 1, 1, 50)
        self.RSS_MAXIMUM = self._validate_positive_int("RSS_MAXIMUM", 30, 1, 50)
        self.ITEM_HTML_TEMPLATE = environ.get("ITEM_HTML_TEMPLATE", DEFAULT_ITEM_HTML_TEMPLATE)
        self.SUBJECT_SUFFIX = environ.get("SUBJECT_SUFFIX", "")
        self.DATE_FORMAT = environ.get("DATE_FORMAT", "%d %B %Y %H:%M")
        self.DISPLAY_TIMEZONE = environ.get("DISPLAY_TIMEZONE", "UTC")

        # Periodic jobs
        self.FETCH_INTERVAL_MINUTES = self._validate_positive_int("FETCH_INTERVAL_MINUTES", 60, 1)
        self.QUEUE_INTERVAL_MINUTES = self._validate_positive_int("QUEUE_INTERVAL_MINUTES", 5, 1)
        self.ITEM_EXPIRATION_DAYS = self._validate_positive_int("ITEM_EXPIRATION_DAYS", 0, 0)
        self.SCHEDULER_RUN_IMMEDIATELY = self._validate_bool("SCHEDULER_RUN_IMMEDIATELY", True)

    @staticmethod
    def _split_lines(value: Any) -> List[str]:
        """Split a newline separated setting into stripped, non-empty lines."""
        if not value:
            return []
        if isinstance(value, (list, tuple)):
            lines = [str(v) for v in value]
        else:
            lines = str(value).splitlines()
        return [line.strip() for line in lines if line.strip()]

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        The file may be a top-level mapping or nest the mapping under an
        ``environment`` key.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            return
        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config

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

        Returns:
            Parsed YAML or None on failure.
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

    def _load_campaigns_config(self) -> None:
        """Populate self.CAMPAIGNS and operator settings from campaigns.yaml.

        Any failure results in an empty campaign mapping; settings already
        taken from the environment are only overridden by valid YAML values.
        """
        self.CAMPAIGNS: Dict[str, Dict[str, Any]] = {}
        config_data = self._safe_read_yaml(self.CAMPAIGNS_CONFIG_PATH, 5 * 1024 * 1024, 'campaigns')
        if not isinstance(config_data, dict):
            return

        settings = config_data.get('settings')
        if isinstance(settings, dict):
            if settings.get('custom_elements') and not self.CUSTOM_ELEMENTS:
                self.CUSTOM_ELEMENTS = self._split_lines(settings['custom_elements'])
            if isinstance(settings.get('item_template'), str) and settings['item_template'].strip():
                self.ITEM_HTML_TEMPLATE = settings['item_template']
            if isinstance(settings.get('subject_suffix'), str):
                self.SUBJECT_SUFFIX = settings['subject_suffix']
        elif settings is not None:
            logger.warning(f"'settings' in {self.CAMPAIGNS_CONFIG_PATH} must be a mapping; ignoring")

        campaigns_section = config_data.get('campaigns')
        if not isinstance(campaigns_section, dict):
            logger.warning(f"No valid campaigns found in {self.CAMPAIGNS_CONFIG_PATH}")
            return
        for name, campaign_cfg in campaigns_section.items():
            if isinstance(campaign_cfg, dict) and campaign_cfg.get('feed'):
                self.CAMPAIGNS[str(name)] = campaign_cfg
            else:
                logger.warning(f"Skipping invalid campaign configuration for '{name}': {campaign_cfg}")
        logger.info(f"Loaded {len(self.CAMPAIGNS)} campaigns from {self.CAMPAIGNS_CONFIG_PATH}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "max_body_size": self.MAX_BODY_SIZE,
            "rss_minimum": self.RSS_MINIMUM,
            "rss_maximum": self.RSS_MAXIMUM,
            "content_use_summary": self.CONTENT_USE_SUMMARY,
            "custom_elements": len(self.CUSTOM_ELEMENTS),
            "fetch_interval_minutes": self.FETCH_INTERVAL_MINUTES,
            "queue_interval_minutes": self.QUEUE_INTERVAL_MINUTES,
            "campaign_count": len(self.CAMPAIGNS),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
