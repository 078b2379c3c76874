"""Shared blockflow configuration utilities.

Centralises reading of ~/.blockflow/configuration.json so the CLI, the
execution controller and the resource manager share one implementation.
Configuration is always passed explicitly into constructors; nothing in the
engine reads this file on its own.

A missing file, an unreadable file or a missing key never fails startup: the
documented default is used and a warning is logged.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from blockflow.graph.models import BlockType

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

BLOCKFLOW_CONFIG_FILE = Path.home() / ".blockflow" / "configuration.json"

DEFAULT_PROVIDER = "shenma"
DEFAULT_BASE_URL = "https://hk-api.gptbest.vip"
DEFAULT_TEXT_MODEL = "gpt-4o"
DEFAULT_IMAGE_MODEL = "nano-banana"
DEFAULT_VIDEO_MODEL = "sora_video2"


def get_config_path() -> Path:
    """Config file location; BLOCKFLOW_CONFIG overrides the default."""
    override = os.environ.get("BLOCKFLOW_CONFIG")
    return Path(override) if override else BLOCKFLOW_CONFIG_FILE


def get_blockflow_config(path: str | Path | None = None) -> dict[str, Any]:
    """Load blockflow configuration; empty dict when absent or unreadable."""
    config_path = Path(path) if path else get_config_path()
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Could not read configuration {config_path}: {e}; using defaults")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Configuration {config_path} is not a JSON object; using defaults")
        return {}
    return data


def _lookup(section: dict[str, Any], key: str, default: Any, where: str) -> Any:
    value = section.get(key)
    if value in (None, ""):
        logger.warning(f"Configuration key '{where}.{key}' not set; using default {default!r}")
        return default
    return value


# ---------------------------------------------------------------------------
# Model configuration
# ---------------------------------------------------------------------------


@dataclass
class ModelConfig:
    """Provider, credentials and per-type model identifiers."""

    provider: str = DEFAULT_PROVIDER
    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    text_model: str = DEFAULT_TEXT_MODEL
    image_model: str = DEFAULT_IMAGE_MODEL
    video_model: str = DEFAULT_VIDEO_MODEL

    def model_for(self, block_type: BlockType) -> str:
        if block_type == BlockType.TEXT:
            return self.text_model
        if block_type == BlockType.IMAGE:
            return self.image_model
        if block_type == BlockType.VIDEO:
            return self.video_model
        raise ValueError(f"Unsupported block type: {block_type}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModelConfig":
        """
        Build from either configuration layout.

        Nested layout:
            {"text": {"provider": "shenma", "model_id": "gpt-4o"},
             "image": {"model_id": "..."}, "video": {"model_id": "..."},
             "providers": {"shenma": {"api_key": "...", "base_url": "..."}}}

        Flat (legacy) layout:
            {"provider": "...", "api_key": "...", "base_url": "...",
             "text_model": "...", "image_model": "...", "video_model": "..."}
        """
        if not data:
            logger.warning("No model configuration found; API key not configured")
            return cls()

        if "providers" in data or "text" in data:
            text = data.get("text") or {}
            provider = _lookup(text, "provider", DEFAULT_PROVIDER, "text")
            credentials = (data.get("providers") or {}).get(provider) or {}
            image = data.get("image") or {}
            video = data.get("video") or {}
            return cls(
                provider=provider,
                api_key=_resolve_api_key(credentials),
                base_url=_lookup(
                    credentials, "base_url", DEFAULT_BASE_URL, f"providers.{provider}"
                ),
                text_model=_lookup(text, "model_id", DEFAULT_TEXT_MODEL, "text"),
                image_model=_lookup(image, "model_id", DEFAULT_IMAGE_MODEL, "image"),
                video_model=_lookup(video, "model_id", DEFAULT_VIDEO_MODEL, "video"),
            )

        return cls(
            provider=_lookup(data, "provider", DEFAULT_PROVIDER, "model"),
            api_key=_resolve_api_key(data),
            base_url=_lookup(data, "base_url", DEFAULT_BASE_URL, "model"),
            text_model=_lookup(data, "text_model", DEFAULT_TEXT_MODEL, "model"),
            image_model=_lookup(data, "image_model", DEFAULT_IMAGE_MODEL, "model"),
            video_model=_lookup(data, "video_model", DEFAULT_VIDEO_MODEL, "model"),
        )


def _resolve_api_key(section: dict[str, Any]) -> str:
    """API key from the section itself or from the env var it names."""
    api_key = section.get("api_key")
    if api_key:
        return api_key
    env_var = section.get("api_key_env_var")
    if env_var:
        return os.environ.get(env_var, "")
    logger.warning("API key not configured")
    return ""


# ---------------------------------------------------------------------------
# Resource limits
# ---------------------------------------------------------------------------


@dataclass
class ResourceLimits:
    """Hard limits enforced by the ResourceManager."""

    max_memory: float = 512  # MB
    max_cpu: float = 80  # percent
    max_connections: int = 10
    max_concurrent_executions: int = 3
    api_rate_limit: int = 60  # calls per minute

    def __post_init__(self) -> None:
        if self.api_rate_limit < 1:
            raise ValueError(f"api_rate_limit must be at least 1, got {self.api_rate_limit}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceLimits":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown resource limit keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


# ---------------------------------------------------------------------------
# EngineConfig – everything the engine needs, passed explicitly
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from ~/.blockflow/configuration.json."""

    model: ModelConfig = field(default_factory=ModelConfig)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    performance_connection_threshold: int = 20
    strict_variables: bool = True
    result_retention_max: int = 100

    @classmethod
    def load(cls, path: str | Path | None = None) -> "EngineConfig":
        data = get_blockflow_config(path)
        engine = data.get("engine") or {}
        return cls(
            model=ModelConfig.from_dict(data.get("model") or {}),
            limits=ResourceLimits.from_dict(data.get("limits") or {}),
            performance_connection_threshold=engine.get("performance_connection_threshold", 20),
            strict_variables=engine.get("strict_variables", True),
            result_retention_max=engine.get("result_retention_max", 100),
        )
