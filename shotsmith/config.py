"""Configuration loading.

The YAML file is parsed into an immutable ``Config`` value which is passed
explicitly to the resolver and the clients. Nothing here is a module-level
mutable singleton: a key change produces a new ``Config``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

_DEFAULT_CONFIG = "config.yaml"
_LEGACY_KEY_ENV_VARS = ("SHOTSMITH_API_KEY", "API_KEY")
_PLACEHOLDER_KEYS = {"", "YOUR_API_KEY"}


@dataclass(frozen=True)
class ProviderConfig:
    """An API provider (base URL plus an optional provider-wide key)."""
    id: str
    name: str
    base_url: str
    api_key: str | None = None
    is_default: bool = False


@dataclass(frozen=True)
class ModelDefinition:
    """A registered model.

    Attributes:
        id: Unique registry id, e.g. "gpt-5.1".
        type: "chat", "image" or "video".
        provider_id: Provider serving the model.
        name: Display name.
        api_model: Name sent in requests. Defaults to ``id``.
        endpoint: Path overriding the per-kind default endpoint.
        api_key: Model-specific key, checked before the provider key.
        enabled: Disabled models are never picked, by hint or as a fallback.
        params: Kind-specific parameters (mode, supported ratios,
            durations, temperature...).
    """
    id: str
    type: str
    provider_id: str
    name: str = ""
    api_model: str | None = None
    endpoint: str | None = None
    api_key: str | None = None
    enabled: bool = True
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EngineSettings:
    """Timing constants of the engine, all in seconds."""
    retry_max_attempts: int = 3
    retry_base_delay: float = 2.0
    chat_timeout: float = 600.0
    image_timeout: float = 600.0
    sync_video_timeout: float = 1200.0
    poll_interval: float = 5.0
    poll_max_wait: float = 1200.0
    download_max_attempts: int = 5
    download_timeout: float = 600.0
    download_backoff: float = 5.0
    batch_delay: float = 3.0


_CHAT_PARAMS = {"temperature": 0.7, "max_tokens": 8192}

BUILTIN_PROVIDERS: tuple[ProviderConfig, ...] = (
    ProviderConfig(
        id="antsk",
        name="BigBanana API (api.antsk.cn)",
        base_url="https://api.antsk.cn",
        is_default=True,
    ),
)

BUILTIN_MODELS: tuple[ModelDefinition, ...] = (
    ModelDefinition(id="gpt-5.1", type="chat", provider_id="antsk", name="GPT-5.1", params=dict(_CHAT_PARAMS)),
    ModelDefinition(id="gpt-5.2", type="chat", provider_id="antsk", name="GPT-5.2", params=dict(_CHAT_PARAMS)),
    ModelDefinition(id="gpt-41", type="chat", provider_id="antsk", name="GPT-4.1", params=dict(_CHAT_PARAMS)),
    ModelDefinition(
        id="claude-sonnet-4-5-20250929",
        type="chat",
        provider_id="antsk",
        name="Claude Sonnet 4.5",
        params=dict(_CHAT_PARAMS),
    ),
    ModelDefinition(
        id="gemini-3-pro-image-preview",
        type="image",
        provider_id="antsk",
        name="Gemini 3 Pro Image",
        endpoint="/v1beta/models/gemini-3-pro-image-preview:generateContent",
        params={"default_aspect_ratio": "16:9", "supported_aspect_ratios": ["16:9", "9:16"]},
    ),
    ModelDefinition(
        id="veo-3.1",
        type="video",
        provider_id="antsk",
        name="Veo 3.1",
        api_model="veo",
        endpoint="/v1/chat/completions",
        params={
            "mode": "sync",
            "default_aspect_ratio": "16:9",
            "supported_aspect_ratios": ["16:9", "9:16"],
            "default_duration": 8,
            "supported_durations": [8],
        },
    ),
    ModelDefinition(
        id="sora-2",
        type="video",
        provider_id="antsk",
        name="Sora-2",
        endpoint="/v1/videos",
        params={
            "mode": "async",
            "default_aspect_ratio": "16:9",
            "supported_aspect_ratios": ["16:9", "9:16", "1:1"],
            "default_duration": 8,
            "supported_durations": [4, 8, 12],
        },
    ),
)

DEFAULT_ACTIVE_MODELS = {
    "chat": "gpt-5.1",
    "image": "gemini-3-pro-image-preview",
    "video": "sora-2",
}


@dataclass(frozen=True)
class Config:
    """Everything the engine needs to pick a model and a key.

    Attributes:
        providers: Registered providers, built-ins first.
        models: Registered models, built-ins first.
        active_models: Kind -> model id used when a request names no model.
        global_api_key: Process-wide key from the config file.
        legacy_api_key: Key injected through the environment at start-up.
        engine: Timing constants.
    """
    providers: tuple[ProviderConfig, ...] = BUILTIN_PROVIDERS
    models: tuple[ModelDefinition, ...] = BUILTIN_MODELS
    active_models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ACTIVE_MODELS))
    global_api_key: str | None = None
    legacy_api_key: str | None = None
    engine: EngineSettings = field(default_factory=EngineSettings)

    def provider(self, provider_id: str) -> ProviderConfig | None:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def default_provider(self) -> ProviderConfig:
        for provider in self.providers:
            if provider.is_default:
                return provider
        return self.providers[0] if self.providers else BUILTIN_PROVIDERS[0]

    def model(self, model_id: str) -> ModelDefinition | None:
        for model in self.models:
            if model.id == model_id:
                return model
        return None

    def models_of(self, kind: str) -> list[ModelDefinition]:
        return [m for m in self.models if m.type == kind]

    def with_global_api_key(self, api_key: str) -> Config:
        return replace(self, global_api_key=api_key or None)

    def without_api_keys(self) -> Config:
        """Copy with the global and legacy keys cleared (session reset)."""
        return replace(self, global_api_key=None, legacy_api_key=None)

    @classmethod
    def from_dict(cls, raw: dict | None, environ: dict[str, str] | None = None) -> Config:
        """Build a Config from a parsed YAML mapping.

        Built-in providers and models are always present. A user model that
        reuses a built-in id may only change ``enabled`` and ``params``.
        """
        raw = raw or {}
        environ = os.environ if environ is None else environ

        providers = list(BUILTIN_PROVIDERS)
        for entry in raw.get("providers", []) or []:
            if not isinstance(entry, dict) or not entry.get("id"):
                raise ValueError("Each provider must be a mapping with an 'id' field")
            provider = ProviderConfig(
                id=str(entry["id"]),
                name=entry.get("name", entry["id"]),
                base_url=str(entry.get("base_url", "")).rstrip("/"),
                api_key=_clean_key(entry.get("api_key")),
                is_default=bool(entry.get("is_default", False)),
            )
            existing = [i for i, p in enumerate(providers) if p.id == provider.id]
            if existing:
                builtin = providers[existing[0]]
                providers[existing[0]] = replace(builtin, api_key=provider.api_key or builtin.api_key)
            else:
                if not provider.base_url:
                    raise ValueError(f"Provider '{provider.id}' has no base_url")
                providers.append(provider)

        models = list(BUILTIN_MODELS)
        for entry in raw.get("models", []) or []:
            if not isinstance(entry, dict) or not entry.get("id"):
                raise ValueError("Each model must be a mapping with an 'id' field")
            model_type = entry.get("type", "")
            existing = [i for i, m in enumerate(models) if m.id == entry["id"]]
            if existing:
                builtin = models[existing[0]]
                models[existing[0]] = replace(
                    builtin,
                    enabled=bool(entry.get("enabled", builtin.enabled)),
                    params={**builtin.params, **(entry.get("params") or {})},
                    api_key=_clean_key(entry.get("api_key")) or builtin.api_key,
                )
                continue
            if model_type not in ("chat", "image", "video"):
                raise ValueError(f"Model '{entry['id']}' has invalid type: {model_type!r}")
            models.append(ModelDefinition(
                id=str(entry["id"]),
                type=model_type,
                provider_id=str(entry.get("provider_id", BUILTIN_PROVIDERS[0].id)),
                name=entry.get("name", entry["id"]),
                api_model=entry.get("api_model"),
                endpoint=entry.get("endpoint"),
                api_key=_clean_key(entry.get("api_key")),
                enabled=bool(entry.get("enabled", True)),
                params=dict(entry.get("params") or {}),
            ))

        active = dict(DEFAULT_ACTIVE_MODELS)
        active.update({k: str(v) for k, v in (raw.get("active_models") or {}).items()})

        legacy_key = None
        for var in _LEGACY_KEY_ENV_VARS:
            legacy_key = _clean_key(environ.get(var))
            if legacy_key:
                break

        return cls(
            providers=tuple(providers),
            models=tuple(models),
            active_models=active,
            global_api_key=_clean_key((raw.get("api") or {}).get("api_key")),
            legacy_api_key=legacy_key,
            engine=_engine_settings(raw.get("engine") or {}),
        )


def _clean_key(value: Any) -> str | None:
    if value is None:
        return None
    key = str(value).strip()
    return None if key in _PLACEHOLDER_KEYS else key


def _engine_settings(raw: dict) -> EngineSettings:
    defaults = EngineSettings()
    retry = raw.get("retry", {})
    chat = raw.get("chat", {})
    image = raw.get("image", {})
    video = raw.get("video", {})
    polling = raw.get("polling", {})
    download = raw.get("download", {})
    batch = raw.get("batch", {})
    return EngineSettings(
        retry_max_attempts=int(retry.get("max_attempts", defaults.retry_max_attempts)),
        retry_base_delay=float(retry.get("base_delay_seconds", defaults.retry_base_delay)),
        chat_timeout=float(chat.get("timeout_seconds", defaults.chat_timeout)),
        image_timeout=float(image.get("timeout_seconds", defaults.image_timeout)),
        sync_video_timeout=float(video.get("sync_timeout_seconds", defaults.sync_video_timeout)),
        poll_interval=float(polling.get("interval_seconds", defaults.poll_interval)),
        poll_max_wait=float(polling.get("max_wait_seconds", defaults.poll_max_wait)),
        download_max_attempts=int(download.get("max_attempts", defaults.download_max_attempts)),
        download_timeout=float(download.get("timeout_seconds", defaults.download_timeout)),
        download_backoff=float(download.get("backoff_seconds", defaults.download_backoff)),
        batch_delay=float(batch.get("delay_seconds", defaults.batch_delay)),
    )


def load_config(config_path: str | Path | None = None) -> Config:
    """Load the YAML config file into a Config.

    Args:
        config_path: Path to the YAML file. Defaults to ./config.yaml.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a mapping or has invalid entries.
    """
    path = Path(config_path or _DEFAULT_CONFIG)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if raw is not None and not isinstance(raw, dict):
        raise ValueError(f"Config file must be a YAML mapping, got {type(raw).__name__}")
    return Config.from_dict(raw)
