"""Story text and illustration providers: on-device, local runtime, remote and cloud."""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp
from huggingface_hub import InferenceClient
from langchain_core.messages import HumanMessage, SystemMessage
from PIL import Image

from storyforge.cloud_client import OpenAICompatibleClient
from storyforge.context import GenerationConfig, RemoteModelConfig
from storyforge.credentials import CredentialStore
from storyforge.error_handling import (
    CloudProviderError,
    ErrorAnalyzer,
    GuardrailRejectedError,
    ImageDecodingError,
    ImageGenerationError,
    MalformedOutputError,
    MissingAPIKeyError,
    ModelUnavailableError,
    ProviderHTTPError,
    ProviderTimeoutError,
    UnparsableResponseError,
)
from storyforge.llm_factory import (
    StructuredCompletion,
    create_chat_model,
    create_structured_completion,
    stream_chat_text,
)
from storyforge.model_cache import CloudModelInfo, fetch_model_catalog
from storyforge.models import (
    NO_TEXT_IN_IMAGE,
    BookFormat,
    CloudProvider,
    IllustrationStyle,
    ImageProviderKind,
    StoryBook,
    TextProviderKind,
)
from storyforge.prompt_templates import (
    ART_DIRECTOR_INSTRUCTIONS,
    IMAGE_PROMPT_PASS_MAX_TOKENS,
    JSON_MODE_SYSTEM_INSTRUCTIONS,
    SYSTEM_INSTRUCTIONS,
    image_prompt_json_prompt,
    maximum_response_tokens,
    story_json_prompt,
    text_only_json_prompt,
)
from storyforge.story_decoding import (
    ImagePromptSheetDTO,
    TextOnlyStoryDTO,
    decode_image_prompt_sheet,
    decode_story,
    decode_story_payload,
    decode_text_only_story,
    merge_into_story_book,
    to_story_book,
)
from storyforge.utils import decode_image_bytes, prompt_preview


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], Awaitable[None]]

GUARDRAIL_RETRY_MESSAGE = "Safety filter triggered, retrying..."
GUARDRAIL_RETRY_PAUSE_SECONDS = 0.5
CLOUD_TEXT_TEMPERATURE = 0.7
IMAGE_FALLBACK_MESSAGE = "Cloud image generation failed, falling back to on-device images..."

_PAGE_TEXT_FIELD = re.compile(r'"text"\s*:\s*"((?:[^"\\]|\\.)*)')


async def _report(on_progress: Optional[ProgressCallback], message: str) -> None:
    if on_progress is not None and message:
        await on_progress(message)


def partial_story_preview(accumulated: str) -> str:
    """Readable page text from a JSON story that is still streaming in."""
    texts = [match.replace('\\"', '"').replace("\\n", " ") for match in _PAGE_TEXT_FIELD.findall(accumulated)]
    return "\n\n".join(text.strip() for text in texts if text.strip())


def _preview_callback(on_progress: Optional[ProgressCallback]):
    if on_progress is None:
        return None

    async def _on_text(accumulated: str) -> None:
        preview = partial_story_preview(accumulated)
        if preview:
            await on_progress(preview)

    return _on_text


# -----------------------
# Story text providers
# -----------------------

class StoryTextProvider(ABC):
    """Drafts a complete :class:`StoryBook` from a concept."""

    name: str = "text"

    def is_available(self) -> bool:
        return True

    @abstractmethod
    async def generate_story(
        self,
        concept: str,
        page_count: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StoryBook:
        """Generate the story; raises typed provider errors on failure."""


class OnDeviceTextProvider(StoryTextProvider):
    """Two structured passes through the default chat model: story text, then illustration prompts."""

    name = "on_device"

    def __init__(self, completion: Optional[StructuredCompletion], config: GenerationConfig):
        self.completion = completion
        self.config = config

    def is_available(self) -> bool:
        return self.completion is not None

    async def generate_story(
        self,
        concept: str,
        page_count: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StoryBook:
        if self.completion is None:
            raise ModelUnavailableError("No on-device model is configured.", provider=self.name)

        attempts = 1 + self.config.guardrail_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self._generate_once(concept, page_count, on_progress)
            except GuardrailRejectedError:
                if attempt >= attempts:
                    raise
                logger.warning(f"On-device guardrail rejection (attempt {attempt}/{attempts}), retrying")
                await _report(on_progress, GUARDRAIL_RETRY_MESSAGE)
                await asyncio.sleep(GUARDRAIL_RETRY_PAUSE_SECONDS)

        raise ModelUnavailableError("On-device generation produced no story.", provider=self.name)

    async def _generate_once(
        self,
        concept: str,
        page_count: int,
        on_progress: Optional[ProgressCallback],
    ) -> StoryBook:
        text_dto = await self.completion.complete(
            instructions=SYSTEM_INSTRUCTIONS,
            prompt=text_only_json_prompt(concept, page_count),
            schema=TextOnlyStoryDTO,
            temperature=self.config.temperature,
            max_tokens=maximum_response_tokens(page_count),
            on_text=_preview_callback(on_progress),
        )
        if not text_dto.pages:
            raise MalformedOutputError("Model response did not include valid pages.")

        prompt_sheet = None
        try:
            prompt_sheet = await self.completion.complete(
                instructions=ART_DIRECTOR_INSTRUCTIONS,
                prompt=image_prompt_json_prompt(
                    text_dto.character_descriptions or "",
                    [(p.page_number, p.text) for p in text_dto.pages],
                ),
                schema=ImagePromptSheetDTO,
                max_tokens=IMAGE_PROMPT_PASS_MAX_TOKENS,
            )
        except (MalformedOutputError, GuardrailRejectedError) as e:
            logger.warning(f"Illustration prompt pass failed, using fallback prompts: {e}")

        return merge_into_story_book(text_dto, prompt_sheet, page_count, concept)


class LocalRuntimeTextProvider(StoryTextProvider):
    """An open-weight model run locally through a transformers pipeline, in one JSON pass."""

    name = "local_runtime"

    def __init__(self, config: GenerationConfig, llm: Any = None):
        self.config = config
        self._llm = llm
        self._load_lock = asyncio.Lock()

    def is_available(self) -> bool:
        return self._llm is not None or bool(self.config.local_model_id)

    async def _model(self, on_progress: Optional[ProgressCallback]) -> Any:
        async with self._load_lock:
            if self._llm is None:
                await _report(on_progress, "Loading local model...")
                logger.info(f"Loading local model {self.config.local_model_id}")
                self._llm = await asyncio.to_thread(
                    create_chat_model,
                    provider="transformers",
                    model=self.config.local_model_id,
                    temperature=self.config.temperature,
                    max_tokens=maximum_response_tokens(self.config.max_pages),
                    huggingface_api_key=self.config.huggingface_api_key,
                )
        return self._llm

    async def generate_story(
        self,
        concept: str,
        page_count: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StoryBook:
        llm = await self._model(on_progress)
        await _report(on_progress, "Drafting story text...")

        messages = [
            SystemMessage(content=JSON_MODE_SYSTEM_INSTRUCTIONS),
            HumanMessage(content=story_json_prompt(concept, page_count)),
        ]
        try:
            text = await stream_chat_text(llm, messages, _preview_callback(on_progress))
        except (asyncio.CancelledError, ModelUnavailableError):
            raise
        except Exception as e:
            raise ModelUnavailableError(f"Local model failed: {e}", provider=self.name) from e

        logger.debug(f"Local model returned {len(text)} characters")
        return to_story_book(decode_story(text), page_count, concept)


class CloudTextProvider(StoryTextProvider):
    """Story drafting through a hosted chat API in two passes."""

    def __init__(
        self,
        cloud: CloudProvider,
        credentials: CredentialStore,
        config: GenerationConfig,
        client: Optional[OpenAICompatibleClient] = None,
    ):
        self.cloud = cloud
        self.credentials = credentials
        self.config = config
        self.client = client or OpenAICompatibleClient(cloud, timeout=config.cloud_timeout_seconds)
        self.name = cloud.value

    @property
    def model(self) -> str:
        return self.config.text_model_for(self.cloud)

    def is_available(self) -> bool:
        return self.credentials.is_authenticated(self.cloud)

    def _api_key(self) -> str:
        api_key = self.credentials.bearer_token(self.cloud)
        if not api_key:
            raise MissingAPIKeyError(self.cloud.display_name)
        return api_key

    async def fetch_model_catalog(self) -> Tuple[List[CloudModelInfo], List[CloudModelInfo]]:
        return await fetch_model_catalog(self.client, self.cloud, self._api_key())

    async def _chat(self, system: str, user: str, max_tokens: int) -> str:
        api_key = self._api_key()
        messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
        logger.debug(f"{self.cloud.display_name} chat request: model={self.model} max_tokens={max_tokens}")

        try:
            if self.cloud is CloudProvider.HUGGINGFACE:
                return await self._hf_chat(api_key, messages, max_tokens)
            return await self.client.chat_completion(
                api_key=api_key,
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=CLOUD_TEXT_TEMPERATURE,
            )
        except CloudProviderError as e:
            if ErrorAnalyzer.is_guardrail(e):
                raise GuardrailRejectedError(str(e), provider=self.name) from e
            raise

    async def _hf_chat(self, api_key: str, messages: List[Dict[str, str]], max_tokens: int) -> str:
        client = InferenceClient(token=api_key, timeout=self.config.cloud_timeout_seconds)
        try:
            response = await asyncio.to_thread(
                client.chat_completion,
                messages=messages,
                model=self.model,
                max_tokens=max_tokens,
                temperature=CLOUD_TEXT_TEMPERATURE,
            )
        except asyncio.CancelledError:
            raise
        except TimeoutError as e:
            raise ProviderTimeoutError(self.name, self.config.cloud_timeout_seconds) from e
        except Exception as e:
            status = getattr(getattr(e, "response", None), "status_code", None)
            if status is not None:
                raise ProviderHTTPError(self.name, status, str(e)) from e
            raise CloudProviderError(f"Hugging Face chat failed: {e}", self.name) from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise UnparsableResponseError(self.name, "No message content in chat response") from e
        if not content or not content.strip():
            raise UnparsableResponseError(self.name, "Empty chat response")
        return content

    async def generate_story(
        self,
        concept: str,
        page_count: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StoryBook:
        await _report(on_progress, f"Generating story text with {self.cloud.display_name}...")
        story_text = await self._chat(
            JSON_MODE_SYSTEM_INSTRUCTIONS,
            text_only_json_prompt(concept, page_count),
            maximum_response_tokens(page_count) * 2,
        )
        text_dto = decode_text_only_story(story_text)

        await _report(on_progress, "Generating illustration prompts...")
        prompts_text = await self._chat(
            ART_DIRECTOR_INSTRUCTIONS,
            image_prompt_json_prompt(
                text_dto.character_descriptions or "",
                [(p.page_number, p.text) for p in text_dto.pages],
            ),
            IMAGE_PROMPT_PASS_MAX_TOKENS,
        )

        await _report(on_progress, "Parsing story response...")
        try:
            prompt_sheet = decode_image_prompt_sheet(prompts_text)
        except MalformedOutputError as e:
            logger.warning(f"{self.cloud.display_name} illustration prompts unreadable, using fallbacks: {e}")
            prompt_sheet = None

        return merge_into_story_book(text_dto, prompt_sheet, page_count, concept)


class RemoteStoryProvider(StoryTextProvider):
    """A larger model behind a JSON endpoint, tried first for on-device drafting."""

    name = "remote"

    def __init__(self, remote: RemoteModelConfig):
        self.remote = remote

    def is_available(self) -> bool:
        return bool(self.remote.endpoint)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.remote.api_key:
            headers[self.remote.api_key_header] = f"{self.remote.api_key_prefix}{self.remote.api_key}"
        return headers

    async def generate_story(
        self,
        concept: str,
        page_count: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StoryBook:
        payload = {
            "model": self.remote.model_name,
            "concept": concept,
            "pageCount": page_count,
            "systemInstructions": JSON_MODE_SYSTEM_INSTRUCTIONS,
            "userPrompt": story_json_prompt(concept, page_count),
        }
        timeout = aiohttp.ClientTimeout(total=self.remote.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.remote.endpoint, json=payload, headers=self._headers()) as response:
                    if not 200 <= response.status < 300:
                        raise ProviderHTTPError(self.name, response.status, await response.text())
                    body = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(self.name, self.remote.timeout_seconds) from e
        except aiohttp.ClientError as e:
            raise CloudProviderError(f"Remote model request failed: {e}", self.name) from e
        except ValueError as e:
            raise UnparsableResponseError(self.name, f"Invalid JSON: {e}") from e

        return to_story_book(decode_story_payload(body), page_count, concept)


# -----------------------
# Illustration providers
# -----------------------

def styled_prompt(prompt: str, style: IllustrationStyle) -> str:
    return f"{prompt}{style.prompt_suffix}{NO_TEXT_IN_IMAGE}"


class ImageGenerationProvider(ABC):
    """Draws one illustration; every failure surfaces as :class:`ImageGenerationError`."""

    name: str = "image"

    def is_available(self) -> bool:
        return True

    async def generate_image(
        self,
        prompt: str,
        style: IllustrationStyle,
        book_format: BookFormat,
    ) -> Image.Image:
        try:
            return await self._generate(styled_prompt(prompt, style), book_format)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ImageGenerationError.from_exception(e, provider=self.name) from e

    @abstractmethod
    async def _generate(self, prompt: str, book_format: BookFormat) -> Image.Image:
        ...


class CloudImageProvider(ImageGenerationProvider):
    """Illustrations from a hosted image API."""

    def __init__(
        self,
        cloud: CloudProvider,
        credentials: CredentialStore,
        config: GenerationConfig,
        client: Optional[OpenAICompatibleClient] = None,
    ):
        self.cloud = cloud
        self.credentials = credentials
        self.config = config
        self.client = client or OpenAICompatibleClient(cloud, timeout=config.cloud_timeout_seconds)
        self.name = cloud.value

    @property
    def model(self) -> str:
        return self.config.image_model_for(self.cloud)

    def is_available(self) -> bool:
        return self.credentials.is_authenticated(self.cloud)

    async def fetch_model_catalog(self) -> Tuple[List[CloudModelInfo], List[CloudModelInfo]]:
        api_key = self.credentials.bearer_token(self.cloud)
        if not api_key:
            raise MissingAPIKeyError(self.cloud.display_name)
        return await fetch_model_catalog(self.client, self.cloud, api_key)

    async def _generate(self, prompt: str, book_format: BookFormat) -> Image.Image:
        api_key = self.credentials.bearer_token(self.cloud)
        if not api_key:
            raise MissingAPIKeyError(self.cloud.display_name)

        logger.debug(f"{self.cloud.display_name} image request: model={self.model} prompt={prompt_preview(prompt, 120)!r}")
        if self.cloud is CloudProvider.HUGGINGFACE:
            width, height = book_format.image_size
            data = await self.client.hf_inference_image(
                api_key=api_key, model=self.model, prompt=prompt, width=width, height=height
            )
        else:
            data = await self.client.image_generation(
                api_key=api_key, model=self.model, prompt=prompt, size=book_format.size_string
            )

        try:
            return decode_image_bytes(data)
        except ValueError as e:
            raise ImageDecodingError(self.name, str(e)) from e


class LocalImageProvider(ImageGenerationProvider):
    """Illustrations from a local or self-hosted text-to-image endpoint."""

    name = "on_device"

    def __init__(self, config: GenerationConfig, client: Optional[InferenceClient] = None):
        self.config = config
        self._client = client

    def is_available(self) -> bool:
        return self._client is not None or bool(self.config.local_image_endpoint or self.config.huggingface_api_key)

    @property
    def client(self) -> InferenceClient:
        if self._client is None:
            self._client = InferenceClient(
                model=self.config.local_image_endpoint or self.config.local_image_model,
                token=self.config.huggingface_api_key,
                timeout=self.config.cloud_timeout_seconds,
            )
        return self._client

    async def _generate(self, prompt: str, book_format: BookFormat) -> Image.Image:
        width, height = book_format.image_size
        return await asyncio.to_thread(self.client.text_to_image, prompt, width=width, height=height)


@dataclass(frozen=True)
class ImageOutcome:
    image: Image.Image
    provider_used: str
    did_fallback: bool = False


class ImageGenerationRouter:
    """Sends each illustration to the configured provider, falling back to the local one."""

    def __init__(
        self,
        config: GenerationConfig,
        cloud_provider: Optional[ImageGenerationProvider],
        local_provider: ImageGenerationProvider,
    ):
        self.config = config
        self.cloud_provider = cloud_provider
        self.local_provider = local_provider

    @property
    def primary_name(self) -> str:
        return (self.cloud_provider or self.local_provider).name

    async def generate_image(
        self,
        prompt: str,
        style: IllustrationStyle,
        book_format: BookFormat,
        on_status: Optional[ProgressCallback] = None,
    ) -> ImageOutcome:
        if self.cloud_provider is None:
            image = await self.local_provider.generate_image(prompt, style, book_format)
            return ImageOutcome(image, self.local_provider.name)

        try:
            image = await self.cloud_provider.generate_image(prompt, style, book_format)
            return ImageOutcome(image, self.cloud_provider.name)
        except ImageGenerationError as e:
            if not self.config.enable_image_fallback or not self.local_provider.is_available():
                raise
            logger.warning(f"{self.cloud_provider.name} image failed ({e}), falling back to local images")

        await _report(on_status, IMAGE_FALLBACK_MESSAGE)
        image = await self.local_provider.generate_image(prompt, style, book_format)
        return ImageOutcome(image, self.local_provider.name, did_fallback=True)


class ProviderFactory:
    """Builds providers from a configuration and a credential store."""

    def __init__(
        self,
        config: GenerationConfig,
        credentials: CredentialStore,
        completion: Optional[StructuredCompletion] = None,
    ):
        self.config = config
        self.credentials = credentials
        self._completion = completion
        self._completion_resolved = completion is not None

    def structured_completion(self) -> Optional[StructuredCompletion]:
        """The default chat model, shared by on-device drafting and enrichment."""
        if not self._completion_resolved:
            self._completion = create_structured_completion(self.config.on_device_model)
            self._completion_resolved = True
        return self._completion

    def on_device_text_provider(self) -> OnDeviceTextProvider:
        return OnDeviceTextProvider(self.structured_completion(), self.config)

    def remote_text_provider(self) -> Optional[RemoteStoryProvider]:
        if self.config.remote_model is None:
            return None
        return RemoteStoryProvider(self.config.remote_model)

    def create_text_provider(self, kind: TextProviderKind) -> StoryTextProvider:
        kind = TextProviderKind(kind)
        if kind is TextProviderKind.ON_DEVICE:
            return self.on_device_text_provider()
        if kind is TextProviderKind.LOCAL_RUNTIME:
            return LocalRuntimeTextProvider(self.config)
        return CloudTextProvider(kind.cloud_provider, self.credentials, self.config)

    def create_image_router(self, kind: Optional[ImageProviderKind] = None) -> ImageGenerationRouter:
        kind = ImageProviderKind(kind or self.config.image_provider)
        cloud = kind.cloud_provider
        cloud_provider = CloudImageProvider(cloud, self.credentials, self.config) if cloud else None
        return ImageGenerationRouter(self.config, cloud_provider, LocalImageProvider(self.config))

    def get_available_text_providers(self) -> List[TextProviderKind]:
        """Text providers that could run with the current configuration."""
        available = []
        if self.config.remote_model is not None or self.config.on_device_model:
            available.append(TextProviderKind.ON_DEVICE)
        if self.config.local_model_id:
            available.append(TextProviderKind.LOCAL_RUNTIME)
        for cloud in CloudProvider:
            if self.credentials.is_authenticated(cloud):
                available.append(TextProviderKind(cloud.value))
        return available

    def get_available_image_providers(self) -> List[ImageProviderKind]:
        """Image providers that could run with the current configuration."""
        available = []
        if LocalImageProvider(self.config).is_available():
            available.append(ImageProviderKind.ON_DEVICE)
        for cloud in CloudProvider:
            if self.credentials.is_authenticated(cloud):
                available.append(ImageProviderKind(cloud.value))
        return available
