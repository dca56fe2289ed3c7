"""
Configuration Management Module
Handles loading configuration from environment variables, files, and defaults.
"""

import os
import json
import logging
import logging.handlers
from importlib import resources
from pathlib import Path
from typing import Dict, Any, Optional
from dotenv import load_dotenv
import colorlog

CHECKOUT_ROOT = Path(__file__).resolve().parents[2]

PATHS_TO_RESOLVE = (
    ("database", "path"),
    ("logging", "file_config", "path"),
    ("exports", "path"),
    ("jobs", "history_path"),
)


def find_project_root() -> Path:
    """LEDGER_HOME if set, the source checkout when running from one, else the working directory."""
    if os.getenv("LEDGER_HOME"):
        return Path(os.getenv("LEDGER_HOME")).expanduser().resolve()
    if (CHECKOUT_ROOT / "pyproject.toml").is_file() and (CHECKOUT_ROOT / "src" / "ledger_sync").is_dir():
        return CHECKOUT_ROOT
    return Path.cwd()


def load_default_config() -> Dict[str, Any]:
    """The defaults shipped inside the package."""
    return json.loads(resources.files("ledger_sync").joinpath("default_config.json").read_text(encoding="utf-8"))


def merge_config(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merge_config(base[key], value)
        else:
            base[key] = value
    return base


class ConfigManager:
    """Manages application configuration from multiple sources"""

    def __init__(self, config_path: Optional[str] = None, project_root: Optional[Path] = None):
        """Initialize configuration manager"""
        self.project_root = Path(project_root) if project_root else find_project_root()
        self.config_file_path = config_path or self.project_root / "config" / "config.json"
        self.env_path = self.project_root / ".env"
        load_dotenv(self.env_path)
        self.config = self._load_config()
        self._create_directories()

    def _resolve_paths(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Converts all relative paths in the config to absolute paths from the project root."""
        for path_keys in PATHS_TO_RESOLVE:
            section = config
            for key in path_keys[:-1]:
                section = section.get(key) if isinstance(section, dict) else None
            if isinstance(section, dict) and section.get(path_keys[-1]):
                original_path = Path(section[path_keys[-1]])
                if not original_path.is_absolute():
                    section[path_keys[-1]] = str(self.project_root / original_path)
        return config

    def _load_config(self) -> Dict[str, Any]:
        """Load the packaged defaults, overlay the config file, apply environment overrides, and resolve paths."""
        try:
            config = load_default_config()
        except (OSError, json.JSONDecodeError) as e:
            # Logging is not configured yet.
            raise SystemExit(f"Fatal: Default configuration is missing or corrupt: {e}") from e

        try:
            with open(self.config_file_path, 'r') as f:
                merge_config(config, json.load(f))
        except FileNotFoundError:
            pass
        except json.JSONDecodeError as e:
            raise SystemExit(f"Fatal: Configuration file {self.config_file_path} is corrupt: {e}") from e

        config = self._apply_env_overrides(config)
        config = self._resolve_paths(config)
        return config

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Override configuration with environment variables in a safe way."""
        # API Keys
        if os.getenv("KRAKEN_API_KEY"):
            config.setdefault("api_keys", {})["kraken_key"] = os.getenv("KRAKEN_API_KEY")
        if os.getenv("KRAKEN_API_SECRET"):
            config.setdefault("api_keys", {})["kraken_secret"] = os.getenv("KRAKEN_API_SECRET")

        account_config = config.setdefault("account", {})
        if os.getenv("LEDGER_ACCOUNT"):
            account_config["name"] = os.getenv("LEDGER_ACCOUNT")
        if os.getenv("LEDGER_QUOTE_CURRENCY"):
            account_config["quote_currency"] = os.getenv("LEDGER_QUOTE_CURRENCY").upper()

        if os.getenv("LEDGER_DB_PATH"):
            config.setdefault("database", {})["path"] = os.getenv("LEDGER_DB_PATH")

        # Logging Settings
        logging_config = config.setdefault("logging", {})

        if os.getenv("LOG_LEVEL"):
            logging_config["level"] = os.getenv("LOG_LEVEL")

        console_config = logging_config.setdefault("console_config", {})
        if os.getenv("LOG_TO_CONSOLE"):
            console_config["enabled"] = os.getenv("LOG_TO_CONSOLE").lower() == "true"

        file_config = logging_config.setdefault("file_config", {})
        if os.getenv("LOG_TO_FILE"):
            file_config["enabled"] = os.getenv("LOG_TO_FILE").lower() == "true"

        return config

    def _create_directories(self):
        """Create necessary directories based on config using absolute paths."""
        paths_to_create = []
        if self.get("database.path"):
            paths_to_create.append(Path(self.get("database.path")).parent)
        if self.get("logging.file_config.path"):
            paths_to_create.append(Path(self.get("logging.file_config.path")).parent)
        for key in ("exports.path", "jobs.history_path"):
            if self.get(key):
                paths_to_create.append(Path(self.get(key)))
        for path in paths_to_create:
            path.mkdir(parents=True, exist_ok=True)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation"""
        keys = key.split('.')
        value = self.config
        try:
            for k in keys:
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default


def setup_logging(level: str = "INFO", config: Optional[Dict[str, Any]] = None):
    """Setup application logging"""
    if config is None:
        config = ConfigManager().config.get("logging", {})

    log_level = getattr(logging, level.upper(), logging.INFO)
    log_format = config.get("format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    root_logger = logging.getLogger()

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    root_logger.setLevel(log_level)

    if config.get("console_config", {}).get("enabled", True):
        handler_format = colorlog.ColoredFormatter(
            f"%(log_color)s{log_format}",
            log_colors={
                'DEBUG': 'cyan', 'INFO': 'green', 'WARNING': 'yellow',
                'ERROR': 'red', 'CRITICAL': 'red,bg_white',
            }
        )
        console_handler = colorlog.StreamHandler()
        console_handler.setFormatter(handler_format)
        root_logger.addHandler(console_handler)

    file_config = config.get("file_config", {})
    if file_config.get("enabled", True):
        log_path = Path(file_config.get("path", "logs/ledger_sync.log"))
        log_path.parent.mkdir(parents=True, exist_ok=True)
        max_size = file_config.get("max_size_mb", 10) * 1024 * 1024
        backup_count = file_config.get("backup_count", 5)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_size, backupCount=backup_count
        )
        file_handler.setFormatter(logging.Formatter(log_format))
        root_logger.addHandler(file_handler)

    logging.info("Logging setup complete.")


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration for the application"""
    manager = ConfigManager(config_path)
    return manager.config
