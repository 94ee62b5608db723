"""HTTP client for OpenAI-compatible cloud model APIs."""

import asyncio
import base64
import logging
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from storyforge.error_handling import (
    CloudProviderError,
    ImageDecodingError,
    ProviderHTTPError,
    ProviderTimeoutError,
    RateLimitedError,
    UnparsableResponseError,
)
from storyforge.models import CloudProvider


logger = logging.getLogger(__name__)

HF_INFERENCE_URL = "https://router.huggingface.co/hf-inference/models/{model}"
HF_MODEL_LIST_URL = "https://huggingface.co/api/models"


def chat_completion_url(provider: CloudProvider) -> str:
    return f"{provider.base_url}/chat/completions"


def image_generation_url(provider: CloudProvider) -> str:
    return f"{provider.base_url}/images/generations"


def model_list_url(provider: CloudProvider) -> str:
    if provider is CloudProvider.HUGGINGFACE:
        return HF_MODEL_LIST_URL
    return f"{provider.base_url}/models"


def extra_headers(provider: CloudProvider) -> Dict[str, str]:
    """Headers a provider expects on top of the bearer token."""
    if provider is CloudProvider.OPENROUTER:
        return {"HTTP-Referer": "https://storyforge.app", "X-Title": "StoryForge"}
    return {}


def _retry_after(headers: Mapping[str, str]) -> Optional[float]:
    value = headers.get("Retry-After")
    try:
        return float(value) if value else None
    except ValueError:
        return None


class OpenAICompatibleClient:
    """Thin aiohttp wrapper over chat, image and model-list endpoints."""

    def __init__(self, provider: CloudProvider, timeout: float = 120.0):
        self.provider = provider
        self.timeout = timeout

    def _headers(self, api_key: str, accept: str = "application/json") -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": accept,
            **extra_headers(self.provider),
        }

    async def _check_response(self, response: aiohttp.ClientResponse) -> None:
        if 200 <= response.status < 300:
            return
        if response.status == 429:
            raise RateLimitedError(self.provider.value, _retry_after(response.headers))
        detail = await response.text()
        raise ProviderHTTPError(self.provider.value, response.status, detail)

    async def _request_json(self, method: str, url: str, api_key: str, **kwargs: Any) -> Any:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, headers=self._headers(api_key), **kwargs) as response:
                    await self._check_response(response)
                    try:
                        return await response.json(content_type=None)
                    except ValueError as e:
                        raise UnparsableResponseError(self.provider.value, f"Invalid JSON: {e}") from e
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(self.provider.value, self.timeout) from e
        except aiohttp.ClientError as e:
            raise CloudProviderError(f"{self.provider.value} request failed: {e}", self.provider.value) from e

    async def chat_completion(
        self,
        *,
        api_key: str,
        model: str,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: float,
    ) -> str:
        payload = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        data = await self._request_json("POST", chat_completion_url(self.provider), api_key, json=payload)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise UnparsableResponseError(self.provider.value, "No message content in chat response") from e
        if isinstance(content, list):
            content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
        if not isinstance(content, str) or not content.strip():
            raise UnparsableResponseError(self.provider.value, "Empty chat response")
        return content

    async def image_generation(self, *, api_key: str, model: str, prompt: str, size: str) -> bytes:
        payload = {
            "model": model,
            "prompt": prompt,
            "size": size,
            "n": 1,
            "response_format": "b64_json",
        }
        data = await self._request_json("POST", image_generation_url(self.provider), api_key, json=payload)
        try:
            item = data["data"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise UnparsableResponseError(self.provider.value, "No image in response") from e

        if item.get("b64_json"):
            try:
                return base64.b64decode(item["b64_json"])
            except ValueError as e:
                raise ImageDecodingError(self.provider.value, f"Invalid base64 image: {e}") from e
        if item.get("url"):
            return await self._download(item["url"])
        raise UnparsableResponseError(self.provider.value, "Image response had neither b64_json nor url")

    async def hf_inference_image(self, *, api_key: str, model: str, prompt: str, width: int, height: int) -> bytes:
        """Hugging Face's native text-to-image route, which answers with raw image bytes."""
        payload = {"inputs": prompt, "parameters": {"width": width, "height": height}}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    HF_INFERENCE_URL.format(model=model),
                    headers=self._headers(api_key, accept="image/png"),
                    json=payload,
                ) as response:
                    await self._check_response(response)
                    return await response.read()
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(self.provider.value, self.timeout) from e
        except aiohttp.ClientError as e:
            raise CloudProviderError(f"{self.provider.value} request failed: {e}", self.provider.value) from e

    async def _download(self, url: str) -> bytes:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    await self._check_response(response)
                    return await response.read()
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(self.provider.value, self.timeout) from e
        except aiohttp.ClientError as e:
            raise CloudProviderError(f"{self.provider.value} request failed: {e}", self.provider.value) from e

    async def fetch_models(self, *, api_key: str, params: Optional[Dict[str, str]] = None) -> Any:
        return await self._request_json("GET", model_list_url(self.provider), api_key, params=params)
