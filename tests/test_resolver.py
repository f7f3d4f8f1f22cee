"""
Tests for model and API key resolution.
"""

import pytest

from shotsmith.config import Config, ModelDefinition
from shotsmith.errors import ApiKeyError, ConfigError
from shotsmith.resolver import ModelResolver


class TestModelLookup:
    """Which model answers a (kind, hint) pair."""

    def test_active_model_without_hint(self, resolver):
        assert resolver.resolve("chat").model_id == "gpt-5.1"
        assert resolver.resolve("image").model_id == "gemini-3-pro-image-preview"
        assert resolver.resolve("video").model_id == "sora-2"

    def test_exact_id(self, resolver):
        model = resolver.resolve("video", "veo-3.1")
        assert model.model_id == "veo-3.1"
        assert model.api_model == "veo"

    def test_hint_of_other_kind_falls_back(self, resolver):
        assert resolver.resolve("chat", "sora-2").model_id == "gpt-5.1"

    def test_api_model_match(self, resolver):
        assert resolver.resolve("video", "veo").model_id == "veo-3.1"

    def test_alias_keeps_request_name(self):
        config = Config.from_dict({
            "api": {"api_key": "k"},
            "models": [{"id": "veo-fast", "type": "video", "api_model": "veo_3_1-fast",
                        "params": {"mode": "async"}}],
        }, environ={})
        model = ModelResolver(config).resolve("video", "veo_3_1-fast-4k")
        assert model.model_id == "veo-fast"
        assert model.api_model == "veo_3_1-fast-4k"
        assert model.mode == "async"

    def test_unknown_hint_uses_active(self, resolver):
        assert resolver.resolve("image", "no-such-model").model_id == "gemini-3-pro-image-preview"

    def test_first_enabled_when_active_disabled(self):
        config = Config.from_dict({
            "api": {"api_key": "k"},
            "models": [{"id": "gpt-5.1", "enabled": False}],
        }, environ={})
        assert ModelResolver(config).resolve("chat").model_id == "gpt-5.2"

    def test_disabled_hint_uses_active(self):
        config = Config.from_dict({
            "api": {"api_key": "k"},
            "models": [{"id": "gpt-5.2", "enabled": False}],
        }, environ={})
        resolver = ModelResolver(config)
        assert resolver.resolve("chat", "gpt-5.2").model_id == "gpt-5.1"

    def test_disabled_api_model_hint_uses_active(self):
        config = Config.from_dict({
            "api": {"api_key": "k"},
            "models": [{"id": "veo-3.1", "enabled": False}],
        }, environ={})
        assert ModelResolver(config).resolve("video", "veo").model_id == "sora-2"

    def test_no_model_of_kind(self):
        config = Config(
            models=(ModelDefinition(id="only-chat", type="chat", provider_id="antsk"),),
            global_api_key="k",
        )
        with pytest.raises(ConfigError):
            ModelResolver(config).resolve("video")

    def test_unknown_kind(self, resolver):
        with pytest.raises(ValueError):
            resolver.resolve("audio")


class TestEndpointsAndModes:

    def test_chat_endpoint(self, resolver):
        model = resolver.resolve("chat")
        assert model.url == "https://api.antsk.cn/v1/chat/completions"
        assert model.temperature == 0.7

    def test_image_endpoint_default_uses_api_model(self):
        config = Config.from_dict({
            "api": {"api_key": "k"},
            "models": [{"id": "img", "type": "image", "api_model": "gemini-x"}],
        }, environ={})
        model = ModelResolver(config).resolve("image", "img")
        assert model.endpoint_path == "/v1beta/models/gemini-x:generateContent"

    def test_video_modes(self, resolver):
        sora = resolver.resolve("video", "sora-2")
        veo = resolver.resolve("video", "veo-3.1")
        assert sora.mode == "async"
        assert sora.endpoint_path == "/v1/videos"
        assert veo.mode == "sync"
        assert veo.endpoint_path == "/v1/chat/completions"
        assert "1:1" in sora.supported_aspect_ratios
        assert sora.supported_durations == (4, 8, 12)

    def test_sora_forced_async(self):
        config = Config.from_dict({
            "api": {"api_key": "k"},
            "models": [{"id": "my-sora", "type": "video", "api_model": "sora-2"}],
        }, environ={})
        model = ModelResolver(config).resolve("video", "my-sora")
        assert model.mode == "async"
        assert model.endpoint_path == "/v1/videos"


class TestApiKeyOrder:
    """Model key, then provider key, then global key, then legacy key."""

    def _config(self, **overrides) -> Config:
        raw = {
            "api": {"api_key": overrides.get("global_key")},
            "providers": [{"id": "antsk", "api_key": overrides.get("provider_key")}],
            "models": [{"id": "gpt-5.1", "api_key": overrides.get("model_key")}],
        }
        environ = {"API_KEY": overrides["legacy_key"]} if overrides.get("legacy_key") else {}
        return Config.from_dict(raw, environ=environ)

    def test_model_key_first(self):
        config = self._config(model_key="m", provider_key="p", global_key="g", legacy_key="l")
        assert ModelResolver(config).resolve("chat").api_key == "m"

    def test_provider_key_second(self):
        config = self._config(provider_key="p", global_key="g", legacy_key="l")
        assert ModelResolver(config).resolve("chat").api_key == "p"

    def test_global_key_third(self):
        config = self._config(global_key="g", legacy_key="l")
        assert ModelResolver(config).resolve("chat").api_key == "g"

    def test_legacy_key_last(self):
        config = self._config(legacy_key="l")
        assert ModelResolver(config).resolve("chat").api_key == "l"

    def test_no_key(self):
        with pytest.raises(ApiKeyError):
            ModelResolver(self._config()).resolve("chat")

    def test_resolution_reflects_new_config(self, config):
        resolver = ModelResolver(config.without_api_keys())
        with pytest.raises(ApiKeyError):
            resolver.resolve("chat")
        resolver.config = resolver.config.with_global_api_key("fresh")
        assert resolver.resolve("chat").api_key == "fresh"

    def test_list_models(self, resolver):
        kinds = {m.type for m in resolver.list_models()}
        assert kinds == {"chat", "image", "video"}
        assert all(m.type == "video" for m in resolver.list_models("video"))
