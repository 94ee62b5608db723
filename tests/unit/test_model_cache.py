"""Unit tests for the cloud model catalog cache."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from storyforge.credentials import StaticCredentialStore
from storyforge.error_handling import ProviderHTTPError
from storyforge.model_cache import (
    CACHE_KEY_PREFIX,
    CURATED_HF_IMAGE_MODELS,
    CURATED_HF_TEXT_MODELS,
    CURATED_OPENROUTER_TEXT_MODELS,
    HF_MODEL_QUERY,
    ModelListCache,
    fetch_model_catalog,
    parse_huggingface_text_models,
    parse_openrouter_models,
    parse_together_models,
)
from storyforge.models import CloudProvider

OPENROUTER_PAYLOAD = {
    "data": [
        {"id": "openai/gpt-5-mini", "name": "GPT-5 Mini (dup)", "architecture": {"modality": "text->text"}},
        {"id": "mistralai/mistral-small", "name": "Mistral Small", "architecture": {"modality": "text->text"}},
        {"id": "acme/painter", "name": "Painter", "architecture": {"modality": "text->image"}},
        {"id": "acme/vision", "architecture": {"modality": "text+image->text"}},
        {"name": "no id"},
    ]
}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _fake_client(payload):
    client = MagicMock()
    client.fetch_models = AsyncMock(return_value=payload)
    return client


class TestParsers:
    """Test per-provider catalog parsing."""

    def test_openrouter_curated_first_without_duplicates(self):
        text, image = parse_openrouter_models(OPENROUTER_PAYLOAD)
        text_ids = [m.id for m in text]

        assert text_ids[:len(CURATED_OPENROUTER_TEXT_MODELS)] == [m.id for m in CURATED_OPENROUTER_TEXT_MODELS]
        assert text_ids.count("openai/gpt-5-mini") == 1
        assert "mistralai/mistral-small" in text_ids
        assert "acme/vision" in text_ids
        assert "acme/painter" in [m.id for m in image]
        assert "acme/painter" not in text_ids

    def test_openrouter_bad_payload_returns_curated(self):
        text, image = parse_openrouter_models({"unexpected": True})
        assert [m.id for m in text] == [m.id for m in CURATED_OPENROUTER_TEXT_MODELS]
        assert image

    def test_together_types(self):
        payload = [
            {"id": "meta-llama/Llama-3-8b-chat", "display_name": "Llama 3 8B", "type": "chat"},
            {"id": "black-forest-labs/FLUX.1-schnell", "type": "image"},
            {"id": "BAAI/bge-large", "type": "embedding"},
        ]
        text, image = parse_together_models(payload)
        assert [m.display_name for m in text] == ["Llama 3 8B"]
        assert [m.id for m in image] == ["black-forest-labs/FLUX.1-schnell"]

    def test_huggingface_text(self):
        models = parse_huggingface_text_models([{"id": "org/new-model"}, {"id": CURATED_HF_TEXT_MODELS[0].id}])
        ids = [m.id for m in models]
        assert ids[:len(CURATED_HF_TEXT_MODELS)] == [m.id for m in CURATED_HF_TEXT_MODELS]
        assert ids[-1] == "org/new-model"
        assert len(ids) == len(CURATED_HF_TEXT_MODELS) + 1


class TestFetchModelCatalog:
    """Test provider-specific fetching."""

    @pytest.mark.asyncio
    async def test_huggingface_images_are_always_curated(self):
        client = _fake_client([{"id": "org/new-model"}])
        text, image = await fetch_model_catalog(client, CloudProvider.HUGGINGFACE, "hf-key")

        assert image == list(CURATED_HF_IMAGE_MODELS)
        assert text[-1].id == "org/new-model"
        client.fetch_models.assert_awaited_once_with(api_key="hf-key", params=HF_MODEL_QUERY)

    @pytest.mark.asyncio
    async def test_openrouter(self):
        client = _fake_client(OPENROUTER_PAYLOAD)
        text, image = await fetch_model_catalog(client, CloudProvider.OPENROUTER, "or-key")
        assert "acme/painter" in [m.id for m in image]


class TestModelListCache:
    """Test TTL caching and snapshots."""

    def _cache(self, tmp_path, payload, clock=None, tokens=None):
        client = _fake_client(payload)
        cache = ModelListCache(
            StaticCredentialStore(tokens if tokens is not None else {CloudProvider.TOGETHER: "tg-key"}),
            tmp_path / "catalog.json",
            clock=clock or FakeClock(),
            client_factory=lambda provider: client,
        )
        return cache, client

    def test_seeded_with_curated_lists(self, tmp_path):
        cache, _ = self._cache(tmp_path, [])
        assert cache.text_models[CloudProvider.HUGGINGFACE] == list(CURATED_HF_TEXT_MODELS)
        assert cache.image_models[CloudProvider.HUGGINGFACE] == list(CURATED_HF_IMAGE_MODELS)
        assert CloudProvider.TOGETHER not in cache.text_models

    @pytest.mark.asyncio
    async def test_ttl(self, tmp_path):
        """A fresh catalog is not refetched unless forced."""
        clock = FakeClock()
        cache, client = self._cache(tmp_path, [{"id": "m/chat", "type": "chat"}], clock=clock)

        await cache.refresh_models(CloudProvider.TOGETHER)
        await cache.refresh_models(CloudProvider.TOGETHER)
        assert client.fetch_models.await_count == 1

        await cache.refresh_models(CloudProvider.TOGETHER, force=True)
        assert client.fetch_models.await_count == 2

        clock.now += 601
        await cache.refresh_models(CloudProvider.TOGETHER)
        assert client.fetch_models.await_count == 3
        assert [m.id for m in cache.text_models[CloudProvider.TOGETHER]] == ["m/chat"]
        assert cache.is_loading[CloudProvider.TOGETHER] is False

    @pytest.mark.asyncio
    async def test_missing_key_records_error(self, tmp_path):
        cache, client = self._cache(tmp_path, [], tokens={})
        await cache.refresh_models(CloudProvider.OPENROUTER)

        assert "No API key" in cache.last_error[CloudProvider.OPENROUTER]
        client.fetch_models.assert_not_called()

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_previous_lists(self, tmp_path):
        cache, client = self._cache(tmp_path, [{"id": "m/chat", "type": "chat"}])
        await cache.refresh_models(CloudProvider.TOGETHER)

        client.fetch_models.side_effect = ProviderHTTPError("together", 503, "down")
        await cache.refresh_models(CloudProvider.TOGETHER, force=True)

        assert [m.id for m in cache.text_models[CloudProvider.TOGETHER]] == ["m/chat"]
        assert "503" in cache.last_error[CloudProvider.TOGETHER]

    @pytest.mark.asyncio
    async def test_snapshot_round_trip(self, tmp_path):
        """A new cache starts from the persisted snapshot."""
        cache, _ = self._cache(tmp_path, [{"id": "m/chat", "display_name": "Chat", "type": "chat"}])
        await cache.refresh_models(CloudProvider.TOGETHER)

        snapshot = json.loads((tmp_path / "catalog.json").read_text())
        blob = snapshot[CACHE_KEY_PREFIX + "together"]
        assert blob["textModelIDs"] == ["m/chat"]
        assert blob["textModelNames"] == ["Chat"]

        reloaded, _ = self._cache(tmp_path, [])
        assert [m.display_name for m in reloaded.text_models[CloudProvider.TOGETHER]] == ["Chat"]

    @pytest.mark.asyncio
    async def test_refresh_all_authenticated(self, tmp_path):
        cache, client = self._cache(
            tmp_path,
            [],
            tokens={CloudProvider.TOGETHER: "tg", CloudProvider.HUGGINGFACE: "hf"},
        )
        await cache.refresh_all_authenticated()
        assert client.fetch_models.await_count == 2
        assert cache.last_error.get(CloudProvider.OPENROUTER) is None

    def test_corrupt_snapshot_is_ignored(self, tmp_path):
        (tmp_path / "catalog.json").write_text("{not json")
        cache, _ = self._cache(tmp_path, [])
        assert cache.text_models[CloudProvider.HUGGINGFACE] == list(CURATED_HF_TEXT_MODELS)
