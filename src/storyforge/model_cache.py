"""TTL cache over the cloud providers' model catalogs.

Lists live in memory for ten minutes per provider and are persisted to a JSON
snapshot so a cold start can show the last known catalog without a network
round trip. Hugging Face and OpenRouter are seeded with curated lists that
always sort first. Hugging Face's image list is always the curated one,
whatever the API returns, because the hub's text-to-image listing includes
many models the inference router cannot serve.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from storyforge.cloud_client import OpenAICompatibleClient
from storyforge.credentials import CredentialStore
from storyforge.error_handling import MissingAPIKeyError, error_monitoring_context
from storyforge.models import CloudProvider

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 600
CACHE_KEY_PREFIX = "storyforge.cloudModels."


@dataclass(frozen=True)
class CloudModelInfo:
    id: str
    display_name: str
    provider: CloudProvider
    modality: str  # "text" or "image"


def _curated(provider: CloudProvider, modality: str, entries: List[Tuple[str, str]]) -> List[CloudModelInfo]:
    return [CloudModelInfo(model_id, name, provider, modality) for model_id, name in entries]


CURATED_HF_TEXT_MODELS = _curated(CloudProvider.HUGGINGFACE, "text", [
    ("openai/gpt-oss-120b", "GPT-OSS 120B"),
    ("openai/gpt-oss-20b", "GPT-OSS 20B"),
    ("Qwen/Qwen3-32B", "Qwen3 32B"),
    ("deepseek-ai/DeepSeek-V3", "DeepSeek V3"),
    ("meta-llama/Llama-3.1-8B-Instruct", "Llama 3.1 8B Instruct"),
    ("mistralai/Mistral-7B-Instruct-v0.2", "Mistral 7B Instruct"),
])

CURATED_HF_IMAGE_MODELS = _curated(CloudProvider.HUGGINGFACE, "image", [
    ("black-forest-labs/FLUX.1-schnell", "FLUX.1 schnell"),
    ("black-forest-labs/FLUX.1-dev", "FLUX.1 dev"),
    ("Tongyi-MAI/Z-Image-Turbo", "Z-Image Turbo"),
    ("tencent/HunyuanImage-3.0", "HunyuanImage 3.0"),
    ("stabilityai/stable-diffusion-3.5-medium", "Stable Diffusion 3.5 Medium"),
    ("HiDream-ai/HiDream-I1-Fast", "HiDream I1 Fast"),
    ("black-forest-labs/FLUX.1-Canny-dev", "FLUX.1 Canny dev"),
    ("black-forest-labs/FLUX.1-Depth-dev", "FLUX.1 Depth dev"),
])

CURATED_OPENROUTER_TEXT_MODELS = _curated(CloudProvider.OPENROUTER, "text", [
    ("google/gemini-3-flash-preview", "Gemini 3 Flash Preview"),
    ("openai/gpt-5-mini", "GPT-5 Mini"),
    ("anthropic/claude-sonnet-4.6", "Claude Sonnet 4.6"),
    ("openai/gpt-5.2", "GPT-5.2"),
    ("google/gemini-3.1-pro-preview", "Gemini 3.1 Pro Preview"),
])

CURATED_OPENROUTER_IMAGE_MODELS = _curated(CloudProvider.OPENROUTER, "image", [
    ("google/gemini-3-pro-image-preview", "Nano Banana Pro"),
    ("google/gemini-2.5-flash-image", "Nano Banana"),
    ("openai/gpt-5-image", "GPT-5 Image"),
    ("openai/gpt-5-image-mini", "GPT-5 Image Mini"),
])

_CURATED = {
    CloudProvider.HUGGINGFACE: (CURATED_HF_TEXT_MODELS, CURATED_HF_IMAGE_MODELS),
    CloudProvider.OPENROUTER: (CURATED_OPENROUTER_TEXT_MODELS, CURATED_OPENROUTER_IMAGE_MODELS),
}


def _merge_after_curated(curated: List[CloudModelInfo], extra: List[CloudModelInfo]) -> List[CloudModelInfo]:
    seen = {model.id for model in curated}
    merged = list(curated)
    for model in extra:
        if model.id not in seen:
            seen.add(model.id)
            merged.append(model)
    return merged


def parse_openrouter_models(payload: Any) -> Tuple[List[CloudModelInfo], List[CloudModelInfo]]:
    provider = CloudProvider.OPENROUTER
    models = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(models, list):
        return list(CURATED_OPENROUTER_TEXT_MODELS), list(CURATED_OPENROUTER_IMAGE_MODELS)

    text: List[CloudModelInfo] = []
    image: List[CloudModelInfo] = []
    for model in models:
        if not isinstance(model, dict) or not isinstance(model.get("id"), str):
            continue
        model_id = model["id"]
        name = model.get("name") or model_id
        modality = str((model.get("architecture") or {}).get("modality") or "")
        output_modalities = (model.get("architecture") or {}).get("output_modalities") or []

        is_image = (
            "image" in modality.split("->")[-1]
            or "image" in output_modalities
            or any(marker in model_id for marker in ("flux", "dall-e", "stable-diffusion", "image"))
        )
        if is_image:
            image.append(CloudModelInfo(model_id, name, provider, "image"))
        else:
            text.append(CloudModelInfo(model_id, name, provider, "text"))

    return (
        _merge_after_curated(CURATED_OPENROUTER_TEXT_MODELS, text),
        _merge_after_curated(CURATED_OPENROUTER_IMAGE_MODELS, image),
    )


def parse_together_models(payload: Any) -> Tuple[List[CloudModelInfo], List[CloudModelInfo]]:
    provider = CloudProvider.TOGETHER
    models = payload.get("data") if isinstance(payload, dict) else payload
    if not isinstance(models, list):
        return [], []

    text: List[CloudModelInfo] = []
    image: List[CloudModelInfo] = []
    for model in models:
        if not isinstance(model, dict) or not isinstance(model.get("id"), str):
            continue
        model_id = model["id"]
        name = model.get("display_name") or model_id
        model_type = model.get("type") or ""
        if model_type == "image" or "flux" in model_id.lower() or "stable-diffusion" in model_id.lower():
            image.append(CloudModelInfo(model_id, name, provider, "image"))
        elif model_type in ("chat", "language"):
            text.append(CloudModelInfo(model_id, name, provider, "text"))
    return text, image


def parse_huggingface_text_models(payload: Any) -> List[CloudModelInfo]:
    if not isinstance(payload, list):
        return list(CURATED_HF_TEXT_MODELS)
    dynamic = [
        CloudModelInfo(model["id"], model.get("modelId") or model["id"], CloudProvider.HUGGINGFACE, "text")
        for model in payload
        if isinstance(model, dict) and isinstance(model.get("id"), str)
    ]
    return _merge_after_curated(CURATED_HF_TEXT_MODELS, dynamic)


HF_MODEL_QUERY = {
    "pipeline_tag": "text-generation",
    "sort": "downloads",
    "direction": "-1",
    "limit": "50",
    "inference": "warm",
}


async def fetch_model_catalog(
    client: OpenAICompatibleClient, provider: CloudProvider, api_key: str
) -> Tuple[List[CloudModelInfo], List[CloudModelInfo]]:
    """Fetch and parse one provider's ``(text, image)`` model lists."""
    if provider is CloudProvider.OPENROUTER:
        return parse_openrouter_models(await client.fetch_models(api_key=api_key))

    if provider is CloudProvider.TOGETHER:
        return parse_together_models(await client.fetch_models(api_key=api_key))

    payload = await client.fetch_models(api_key=api_key, params=dict(HF_MODEL_QUERY))
    return parse_huggingface_text_models(payload), list(CURATED_HF_IMAGE_MODELS)


class ModelListCache:
    """Per-provider model catalog with a TTL and a persisted snapshot."""

    def __init__(
        self,
        credentials: CredentialStore,
        snapshot_path: Optional[Path] = None,
        *,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        client_factory: Callable[[CloudProvider], OpenAICompatibleClient] = OpenAICompatibleClient,
    ):
        self.credentials = credentials
        self.snapshot_path = Path(snapshot_path).expanduser() if snapshot_path else None
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._client_factory = client_factory

        self.text_models: Dict[CloudProvider, List[CloudModelInfo]] = {}
        self.image_models: Dict[CloudProvider, List[CloudModelInfo]] = {}
        self.is_loading: Dict[CloudProvider, bool] = {}
        self.last_error: Dict[CloudProvider, Optional[str]] = {}
        self._last_fetch: Dict[CloudProvider, float] = {}

        self._load_snapshot()

    def is_fresh(self, provider: CloudProvider) -> bool:
        fetched_at = self._last_fetch.get(provider)
        return fetched_at is not None and self._clock() - fetched_at < self.ttl_seconds

    async def refresh_models(self, provider: CloudProvider, force: bool = False) -> None:
        """Fetch the provider's catalog unless the cached copy is still fresh."""
        if not force and self.is_fresh(provider):
            return
        await self._fetch(provider)

    async def refresh_all_authenticated(self) -> None:
        """Refresh every provider that has credentials; failures stay per provider."""
        providers = [p for p in CloudProvider if self.credentials.is_authenticated(p)]
        if providers:
            async with error_monitoring_context("model catalog refresh"):
                await asyncio.gather(*(self._fetch(p) for p in providers))

    async def _fetch(self, provider: CloudProvider) -> None:
        api_key = self.credentials.bearer_token(provider)
        if not api_key:
            self.last_error[provider] = str(MissingAPIKeyError(provider.value))
            return

        self.is_loading[provider] = True
        self.last_error[provider] = None
        try:
            text, image = await self._fetch_and_parse(provider, api_key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error[provider] = str(e)
            logger.warning(f"Model fetch failed for {provider.value}: {e}")
        else:
            self.text_models[provider] = text
            self.image_models[provider] = image
            self._last_fetch[provider] = self._clock()
            self._save_snapshot(provider)
            logger.info(f"Fetched {len(text)} text + {len(image)} image models for {provider.value}")
        finally:
            self.is_loading[provider] = False

    async def _fetch_and_parse(
        self, provider: CloudProvider, api_key: str
    ) -> Tuple[List[CloudModelInfo], List[CloudModelInfo]]:
        return await fetch_model_catalog(self._client_factory(provider), provider, api_key)

    def _read_snapshot_file(self) -> Dict[str, Any]:
        if self.snapshot_path is None:
            return {}
        try:
            data = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable model snapshot {self.snapshot_path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _load_snapshot(self) -> None:
        for provider, (text, image) in _CURATED.items():
            self.text_models[provider] = list(text)
            self.image_models[provider] = list(image)

        snapshot = self._read_snapshot_file()
        for provider in CloudProvider:
            blob = snapshot.get(CACHE_KEY_PREFIX + provider.value)
            if not isinstance(blob, dict):
                continue
            text = [
                CloudModelInfo(model_id, name, provider, "text")
                for model_id, name in zip(blob.get("textModelIDs", []), blob.get("textModelNames", []))
            ]
            image = [
                CloudModelInfo(model_id, name, provider, "image")
                for model_id, name in zip(blob.get("imageModelIDs", []), blob.get("imageModelNames", []))
            ]

            if provider is CloudProvider.HUGGINGFACE:
                self.text_models[provider] = _merge_after_curated(CURATED_HF_TEXT_MODELS, text)
            elif provider is CloudProvider.OPENROUTER:
                self.text_models[provider] = _merge_after_curated(CURATED_OPENROUTER_TEXT_MODELS, text)
                self.image_models[provider] = _merge_after_curated(CURATED_OPENROUTER_IMAGE_MODELS, image)
            else:
                self.text_models[provider] = text
                self.image_models[provider] = image

    def _save_snapshot(self, provider: CloudProvider) -> None:
        if self.snapshot_path is None:
            return
        snapshot = self._read_snapshot_file()
        text = self.text_models.get(provider, [])
        image = self.image_models.get(provider, [])
        snapshot[CACHE_KEY_PREFIX + provider.value] = {
            "textModelIDs": [m.id for m in text],
            "textModelNames": [m.display_name for m in text],
            "imageModelIDs": [m.id for m in image],
            "imageModelNames": [m.display_name for m in image],
        }
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            self.snapshot_path.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not persist model snapshot: {e}")
