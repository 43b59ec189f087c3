"""Configuration management for Grocery Inventory."""

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

SECRET_FILE_NAME = ".secret.local"


@dataclass
class DataConfig:
    """Data storage configuration."""

    storage_dir: Path
    backend: str = "sqlite"


@dataclass
class LLMConfig:
    """Language model configuration."""

    api_key: str | None = None
    model: str = "gpt-4o-mini"
    vision_model: str = "gpt-4o-mini"
    agent_model: str = "gpt-4o-mini"
    agent_max_turns: int = 12


@dataclass
class IngestionConfig:
    """Ingestion job configuration."""

    max_text_chars: int = 6000
    run_triggers: bool = True
    background_triggers: bool = True
    trigger_workers: int = 4


@dataclass
class UploadsConfig:
    """Upload handling configuration."""

    max_bytes: int = 25 * 1024 * 1024
    url_expiry_seconds: int = 900
    bucket: str = "grocery-inventory-uploads"
    signing_key: str = "local-development-signing-key"
    base_url: str = "http://127.0.0.1:8000"


@dataclass
class AuditConfig:
    """Audit log truncation limits."""

    max_item_ids: int = 100
    max_results: int = 50
    max_requested_updates: int = 50


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"


@dataclass
class Config:
    """Complete application configuration."""

    data: DataConfig
    llm: LLMConfig = field(default_factory=LLMConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    uploads: UploadsConfig = field(default_factory=UploadsConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    auth: dict[str, Any] = field(default_factory=dict)


class ConfigManager:
    """Manages application configuration from TOML files."""

    def __init__(self, config_path: Path | None = None):
        """Initialize configuration manager.

        Args:
            config_path: Optional explicit path to config file.
                        If not provided, searches standard locations.
        """
        self.config_path = config_path or self._find_config()
        self._config = self._load_config()

    @property
    def data(self) -> DataConfig:
        """Get data configuration."""
        return self._config.data

    @property
    def llm(self) -> LLMConfig:
        """Get language model configuration."""
        return self._config.llm

    @property
    def ingestion(self) -> IngestionConfig:
        """Get ingestion configuration."""
        return self._config.ingestion

    @property
    def uploads(self) -> UploadsConfig:
        """Get uploads configuration."""
        return self._config.uploads

    @property
    def audit(self) -> AuditConfig:
        """Get audit configuration."""
        return self._config.audit

    @property
    def logging(self) -> LoggingConfig:
        """Get logging configuration."""
        return self._config.logging

    @property
    def auth_tokens(self) -> dict[str, str]:
        """Get static bearer token to owner id mapping."""
        tokens = self._config.auth.get("tokens", {})
        return {str(token): str(uid) for token, uid in tokens.items()}

    def _find_config(self) -> Path:
        """Find config file in standard locations."""
        locations = [
            Path.cwd() / "config.toml",
            Path.home() / ".config" / "grocery-inventory" / "config.toml",
            Path.home() / ".grocery-inventory" / "config.toml",
        ]

        for loc in locations:
            if loc.exists():
                return loc

        return Path.home() / ".config" / "grocery-inventory" / "config.toml"

    def _load_config(self) -> Config:
        """Load configuration from TOML file."""
        if not self.config_path.exists():
            return self._default_config()

        with open(self.config_path, "rb") as f:
            data = tomllib.load(f)

        data_section = data.get("data", {})
        llm = data.get("llm", {})
        ingestion = data.get("ingestion", {})
        uploads = data.get("uploads", {})
        audit = data.get("audit", {})

        return Config(
            data=DataConfig(
                storage_dir=Path(
                    data_section.get("storage_dir", "~/grocery-inventory/data")
                ).expanduser(),
                backend=data_section.get("backend", "sqlite"),
            ),
            llm=LLMConfig(
                api_key=llm.get("api_key"),
                model=llm.get("model", "gpt-4o-mini"),
                vision_model=llm.get("vision_model", "gpt-4o-mini"),
                agent_model=llm.get("agent_model", "gpt-4o-mini"),
                agent_max_turns=int(llm.get("agent_max_turns", 12)),
            ),
            ingestion=IngestionConfig(
                max_text_chars=int(ingestion.get("max_text_chars", 6000)),
                run_triggers=bool(ingestion.get("run_triggers", True)),
                background_triggers=bool(ingestion.get("background_triggers", True)),
                trigger_workers=int(ingestion.get("trigger_workers", 4)),
            ),
            uploads=UploadsConfig(
                max_bytes=int(uploads.get("max_bytes", 25 * 1024 * 1024)),
                url_expiry_seconds=int(uploads.get("url_expiry_seconds", 900)),
                bucket=uploads.get("bucket", "grocery-inventory-uploads"),
                signing_key=uploads.get("signing_key", "local-development-signing-key"),
                base_url=uploads.get("base_url", "http://127.0.0.1:8000"),
            ),
            audit=AuditConfig(
                max_item_ids=int(audit.get("max_item_ids", 100)),
                max_results=int(audit.get("max_results", 50)),
                max_requested_updates=int(audit.get("max_requested_updates", 50)),
            ),
            logging=LoggingConfig(level=data.get("logging", {}).get("level", "INFO")),
            auth=data.get("auth", {}),
        )

    def _default_config(self) -> Config:
        """Return default configuration."""
        return Config(data=DataConfig(storage_dir=Path.home() / "grocery-inventory" / "data"))

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get config value by dot-notation path.

        Args:
            key_path: Dot-separated path like 'data.storage_dir'
            default: Default value if path not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split(".")
        value: Any = self._config

        for key in keys:
            if hasattr(value, key):
                value = getattr(value, key)
            elif isinstance(value, dict):
                value = value.get(key)
                if value is None:
                    return default
            else:
                return default

        return value if value is not None else default

    def get_secret(self, name: str) -> str | None:
        """Look up a secret.

        The environment wins, then ``.secret.local`` in the data directory
        (``NAME=value`` lines), then the config file.

        Args:
            name: Secret name such as OPENAI_API_KEY

        Returns:
            The secret value, or None if it is not configured anywhere
        """
        value = os.environ.get(name)
        if value:
            return value

        secret_file = self.data.storage_dir / SECRET_FILE_NAME
        if secret_file.exists():
            for line in secret_file.read_text(encoding="utf-8").splitlines():
                key, sep, raw = line.partition("=")
                if sep and key.strip() == name and raw.strip():
                    return raw.strip().strip('"').strip("'")

        if name == "OPENAI_API_KEY":
            return self.llm.api_key or None
        return self.get(name.lower())

    @property
    def openai_api_key(self) -> str | None:
        """Configured OpenAI API key, if any."""
        return self.get_secret("OPENAI_API_KEY")


def configure_logging(level: str = "INFO") -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
