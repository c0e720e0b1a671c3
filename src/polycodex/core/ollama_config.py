"""Per-model generation parameters for the Ollama provider."""

from __future__ import annotations

import logging
import tomllib
from copy import deepcopy
from pathlib import Path
from typing import Any

import tomli_w
from pydantic import BaseModel, Field, ValidationError

from polycodex.core.config import DEFAULT_CONFIG_DIR

logger = logging.getLogger(__name__)

OLLAMA_CONFIG_FILENAME = "ollama_config.toml"

DEFAULT_OLLAMA_PARAMS: dict[str, Any] = {
    "temperature": 0.7,
    "top_p": 0.9,
    "top_k": 40,
    "repeat_penalty": 1.1,
    "presence_penalty": 0,
    "frequency_penalty": 0,
    "mirostat": 0,
    "mirostat_tau": 5,
    "mirostat_eta": 0.1,
    "seed": -1,
    "num_ctx": 4096,
    "num_batch": 512,
    "num_gpu": 1,
    "num_thread": 4,
    "stop_sequences": [],
    "use_streaming": True,
}

# Keys forwarded verbatim into the request `options` block.
GENERATION_OPTION_KEYS: tuple[str, ...] = (
    "temperature",
    "top_p",
    "top_k",
    "repeat_penalty",
    "presence_penalty",
    "frequency_penalty",
    "mirostat",
    "mirostat_tau",
    "mirostat_eta",
    "num_ctx",
    "num_batch",
    "num_gpu",
    "num_thread",
    "seed",
)


class OllamaModelConfig(BaseModel):
    name: str
    description: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)


class OllamaConfig(BaseModel):
    default_model: str = "gemma3:4b"
    models: dict[str, OllamaModelConfig] = Field(default_factory=dict)
    global_params: dict[str, Any] = Field(default_factory=dict)


def default_ollama_config() -> OllamaConfig:
    return OllamaConfig(
        default_model="gemma3:4b",
        models={
            "gemma3:4b": OllamaModelConfig(
                name="gemma3:4b",
                description="Gemma 3 (4B), light and fast for everyday tasks",
                params={"temperature": 0.7, "top_p": 0.9, "num_ctx": 4096},
            ),
            "llama3": OllamaModelConfig(
                name="llama3",
                description="Llama 3, general purpose development model",
                params={"temperature": 0.8, "top_p": 0.95, "num_ctx": 8192},
            ),
            "codellama": OllamaModelConfig(
                name="codellama",
                description="CodeLlama, specialised for code",
                params={"temperature": 0.6, "top_p": 0.95, "repeat_penalty": 1.2, "num_ctx": 16384},
            ),
        },
        global_params={"use_streaming": True, "num_thread": 4},
    )


class OllamaConfigStore:
    """Loads and persists `ollama_config.toml`."""

    def __init__(self, config_dir: Path | None = None) -> None:
        self.config_dir = config_dir or DEFAULT_CONFIG_DIR
        self.path = self.config_dir / OLLAMA_CONFIG_FILENAME

    def load(self) -> OllamaConfig:
        if not self.path.exists():
            config = default_ollama_config()
            self.save(config)
            return config
        try:
            data = tomllib.loads(self.path.read_text(encoding="utf-8"))
            return OllamaConfig(**data)
        except (OSError, tomllib.TOMLDecodeError, ValidationError) as exc:
            logger.warning("Failed to load Ollama config from %s (%s); using defaults", self.path, exc)
            return default_ollama_config()

    def save(self, config: OllamaConfig) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self.path.write_text(tomli_w.dumps(config.model_dump(exclude_none=True)), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to save Ollama config to %s: %s", self.path, exc)

    def get_model_params(self, model: str) -> dict[str, Any]:
        """Merge defaults, then global params, then the model's own params."""

        config = self.load()
        params = deepcopy(DEFAULT_OLLAMA_PARAMS)
        params.update(config.global_params)
        model_config = config.models.get(model)
        if model_config is not None:
            params.update(model_config.params)
        return params

    def update_model_params(self, model: str, params: dict[str, Any]) -> None:
        config = self.load()
        model_config = config.models.get(model) or OllamaModelConfig(name=model)
        model_config.params = {**model_config.params, **params}
        config.models[model] = model_config
        self.save(config)

    def update_global_params(self, params: dict[str, Any]) -> None:
        config = self.load()
        config.global_params = {**config.global_params, **params}
        self.save(config)


def build_request_options(params: dict[str, Any]) -> dict[str, Any]:
    options = {key: params[key] for key in GENERATION_OPTION_KEYS if params.get(key) is not None}
    stop = params.get("stop_sequences") or []
    if stop:
        options["stop"] = list(stop)
    return options


__all__ = [
    "DEFAULT_OLLAMA_PARAMS",
    "GENERATION_OPTION_KEYS",
    "OLLAMA_CONFIG_FILENAME",
    "OllamaConfig",
    "OllamaConfigStore",
    "OllamaModelConfig",
    "build_request_options",
    "default_ollama_config",
]
