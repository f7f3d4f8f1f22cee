"""Model and provider resolution.

Turns a (kind, optional model hint) pair into a concrete endpoint, API key
and request model name. Resolution reads the ``Config`` it was given at call
time, so a config edit is visible on the very next call.
"""

from __future__ import annotations

import logging

from shotsmith.config import Config, ModelDefinition
from shotsmith.errors import ApiKeyError, ConfigError
from shotsmith.models import MODEL_KINDS, ResolvedModel

logger = logging.getLogger(__name__)

_DEFAULT_ENDPOINTS = {
    "chat": "/v1/chat/completions",
    "image": "/v1beta/models/{api_model}:generateContent",
    "video_sync": "/v1/chat/completions",
    "video_async": "/v1/videos",
}

# Request names served under a sibling registry entry.
_MODEL_ALIASES = {"veo_3_1-fast-4k": "veo_3_1-fast"}


class ModelResolver:
    """Resolves models against a ``Config``.

    Usage::

        resolver = ModelResolver(config)
        model = resolver.resolve("video", model_hint="sora-2")
        print(model.url, model.mode)
    """

    def __init__(self, config: Config) -> None:
        self.config = config

    # ------------------------------------------------------------------
    # Model lookup
    # ------------------------------------------------------------------

    def _find(self, kind: str, model_hint: str | None) -> tuple[ModelDefinition, str | None]:
        """Return the matching definition and the request-name override."""
        candidates = self.config.models_of(kind)
        if not candidates:
            raise ConfigError(f"No {kind} model configured")

        if model_hint:
            enabled = [m for m in candidates if m.enabled]
            for model in enabled:
                if model.id == model_hint:
                    return model, None

            lookup = _MODEL_ALIASES.get(model_hint, model_hint)
            by_api_model = [m for m in enabled if (m.api_model or m.id) == lookup]
            if len(by_api_model) == 1:
                override = model_hint if lookup != model_hint else None
                return by_api_model[0], override
            for model in enabled:
                if model.id == lookup:
                    return model, model_hint if lookup != model_hint else None

            logger.warning("Model %r not found among enabled %s models, using active model", model_hint, kind)

        active_id = self.config.active_models.get(kind)
        if active_id:
            for model in candidates:
                if model.id == active_id and model.enabled:
                    return model, None

        for model in candidates:
            if model.enabled:
                return model, None

        raise ConfigError(f"No enabled {kind} model configured")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve_api_key(self, model_id: str) -> str:
        """Pick the API key for a model.

        Order: model key, provider key, global key, legacy runtime key.

        Raises:
            ApiKeyError: If no key is configured anywhere.
        """
        model = self.config.model(model_id)
        if model is not None:
            if model.api_key:
                return model.api_key
            provider = self.config.provider(model.provider_id)
            if provider is not None and provider.api_key:
                return provider.api_key
        if self.config.global_api_key:
            return self.config.global_api_key
        if self.config.legacy_api_key:
            return self.config.legacy_api_key
        raise ApiKeyError(f"No API key configured for model '{model_id}'")

    def resolve(self, kind: str, model_hint: str | None = None) -> ResolvedModel:
        """Resolve a model of ``kind`` into a concrete endpoint.

        Args:
            kind: "chat", "image" or "video".
            model_hint: Explicit model id or request name. Falls back to the
                active model of the kind when it matches nothing.

        Returns:
            A freshly built ResolvedModel.

        Raises:
            ConfigError: If no model of the kind exists.
            ApiKeyError: If no API key can be found.
        """
        if kind not in MODEL_KINDS:
            raise ValueError(f"Unknown model kind: {kind!r}")

        model, request_name = self._find(kind, model_hint)
        api_key = self.resolve_api_key(model.id)

        provider = self.config.provider(model.provider_id) or self.config.default_provider()
        api_model = request_name or model.api_model or model.id

        mode = "sync"
        if kind == "video":
            mode = str(model.params.get("mode", "sync"))
            if api_model == "sora-2" or api_model.startswith("veo_3_1-fast"):
                mode = "async"

        if model.endpoint:
            endpoint = model.endpoint
        elif kind == "video":
            endpoint = _DEFAULT_ENDPOINTS[f"video_{mode}"]
        else:
            endpoint = _DEFAULT_ENDPOINTS[kind]
        endpoint = endpoint.format(api_model=api_model)

        resolved = ResolvedModel(
            model_id=model.id,
            kind=kind,
            provider_id=provider.id,
            base_url=provider.base_url.rstrip("/"),
            api_key=api_key,
            api_model=api_model,
            endpoint_path=endpoint,
            mode=mode,
            supported_aspect_ratios=tuple(model.params.get("supported_aspect_ratios", ())),
            supported_durations=tuple(model.params.get("supported_durations", ())),
            temperature=float(model.params.get("temperature", 0.7)),
        )
        logger.debug("Resolved %s model %s -> %s (%s)", kind, model.id, resolved.url, mode)
        return resolved

    def list_models(self, kind: str | None = None) -> list[ModelDefinition]:
        """Registered models, optionally filtered by kind."""
        if kind is None:
            return list(self.config.models)
        return self.config.models_of(kind)
