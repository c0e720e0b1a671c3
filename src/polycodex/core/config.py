"""Configuration management for polycodex."""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from copy import deepcopy
from pathlib import Path
from typing import Any

import tomli_w
from pydantic import BaseModel, ValidationError, field_validator

from polycodex.core.approvals import ApprovalPolicy
from polycodex.core.llm.types import ProviderType

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(os.environ.get("POLYCODEX_HOME", Path.home() / ".polycodex"))
CONFIG_FILENAME = "config.toml"
PROJECT_CONFIG_DIRNAME = ".polycodex"

DEFAULT_PROVIDER_URLS: dict[str, str] = {
    ProviderType.OPENAI.value: "https://api.openai.com/v1",
    ProviderType.OLLAMA.value: "http://localhost:11434/api",
    ProviderType.HUGGINGFACE.value: "http://localhost:8080",
}

# Environment variable -> config field.
ENV_OVERRIDES: dict[str, str] = {
    "POLYCODEX_PROVIDER": "provider",
    "POLYCODEX_PROVIDER_URL": "provider_url",
    "POLYCODEX_MODEL": "model",
    "POLYCODEX_RATE_LIMIT_RETRY_WAIT_MS": "rate_limit_retry_wait_ms",
    "POLYCODEX_TIMEOUT_MS": "timeout_ms",
}

_API_KEY_ENV: dict[str, str] = {
    ProviderType.OPENAI.value: "OPENAI_API_KEY",
    ProviderType.HUGGINGFACE.value: "HUGGINGFACE_API_KEY",
}


class ConfigurationError(RuntimeError):
    """Raised when configuration loading fails."""


class PolycodexConfig(BaseModel):
    """Persisted polycodex configuration settings."""

    config_version: int = 1
    provider: str = ProviderType.OPENAI.value
    provider_url: str | None = None
    api_key: str | None = None
    model: str = "o4-mini"
    approval_mode: str = ApprovalPolicy.SUGGEST.value
    reasoning_effort: str | None = None
    timeout_ms: int = 60_000
    rate_limit_retry_wait_ms: int = 2_500
    exec_timeout_ms: int = 10_000
    max_output_lines: int = 256
    max_output_bytes: int = 10 * 1024
    instructions: str = ""
    history_file: str | None = None

    @field_validator("provider")
    @classmethod
    def _check_provider(cls, value: str) -> str:
        try:
            return ProviderType.parse(value).value
        except ValueError as exc:
            raise ValueError(f"unknown provider {value!r}") from exc

    @field_validator("approval_mode")
    @classmethod
    def _check_approval_mode(cls, value: str) -> str:
        return ApprovalPolicy.parse(value).value

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.parse(self.provider)

    @property
    def approval_policy(self) -> ApprovalPolicy:
        return ApprovalPolicy.parse(self.approval_mode)

    def resolved_provider_url(self, provider: ProviderType | str | None = None) -> str:
        if self.provider_url:
            return self.provider_url
        return DEFAULT_PROVIDER_URLS[ProviderType.parse(provider or self.provider).value]

    def resolved_api_key(
        self,
        provider: ProviderType | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> str | None:
        if self.api_key:
            return self.api_key
        environ = os.environ if env is None else env
        variable = _API_KEY_ENV.get(ProviderType.parse(provider or self.provider).value)
        return environ.get(variable) if variable else None


class ConfigManager:
    """Handles loading, merging and persisting polycodex configuration."""

    def __init__(
        self,
        config_dir: Path | None = None,
        project_config_path: Path | None = None,
        override_config_path: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.config_dir = config_dir or DEFAULT_CONFIG_DIR
        self.config_path = self.config_dir / CONFIG_FILENAME
        self.project_config_path = project_config_path
        self.override_config_path = override_config_path
        self._env = os.environ if env is None else env

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def load(self) -> PolycodexConfig:
        """Return the merged configuration, writing defaults on first use."""

        if not self.config_path.exists():
            self.save(PolycodexConfig())
            logger.info("Wrote default configuration to %s", self.config_path)
        data: dict[str, Any] = self._read_config_dict(self.config_path)
        if self.project_config_path:
            data = self._merge_dicts(data, self._read_config_dict(self.project_config_path))
        if self.override_config_path:
            if not self.override_config_path.exists():
                raise ConfigurationError(f"Config file not found: {self.override_config_path}")
            data = self._merge_dicts(data, self._read_config_dict(self.override_config_path))
        data = self._merge_dicts(data, self._env_overrides())
        try:
            return PolycodexConfig(**data)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

    def save(self, config: PolycodexConfig) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(tomli_w.dumps(config.model_dump(exclude_none=True)))
        except OSError as exc:
            raise ConfigurationError(f"Failed to write config to {self.config_path}: {exc}") from exc

    def update(self, **updates: object) -> PolycodexConfig:
        """Persist `updates` into the user-level file and return the merged result."""

        current = self._read_config_dict(self.config_path)
        current.update({key: value for key, value in updates.items() if value is not None})
        try:
            base_config = PolycodexConfig(**current)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc
        self.save(base_config)
        return self.load()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _env_overrides(self) -> dict[str, Any]:
        overrides: dict[str, Any] = {}
        for variable, key in ENV_OVERRIDES.items():
            value = self._env.get(variable)
            if not value:
                continue
            if key.endswith("_ms"):
                try:
                    overrides[key] = int(value)
                except ValueError as exc:
                    raise ConfigurationError(f"{variable} must be an integer, got {value!r}") from exc
            else:
                overrides[key] = value
        return overrides

    def _read_config_dict(self, path: Path | None) -> dict[str, Any]:
        if path is None:
            return {}
        if not path.exists():
            return {}
        try:
            return tomllib.loads(path.read_text())
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise ConfigurationError(f"Failed to load config from {path}: {exc}") from exc

    def _merge_dicts(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        result = deepcopy(base)
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_dicts(result[key], value)
            else:
                result[key] = value
        return result


def project_config_path(root: Path | None = None) -> Path:
    return (root or Path.cwd()) / PROJECT_CONFIG_DIRNAME / CONFIG_FILENAME


__all__ = [
    "CONFIG_FILENAME",
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_PROVIDER_URLS",
    "ConfigManager",
    "ConfigurationError",
    "PolycodexConfig",
    "project_config_path",
]
