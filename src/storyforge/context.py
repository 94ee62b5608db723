"""Generation configuration passed explicitly into each run."""

import os
from pathlib import Path

from pydantic import BaseModel, Field

from storyforge.models import CloudProvider, ImageProviderKind, TextProviderKind


DEFAULT_HOME = Path.home() / ".storyforge"


class RemoteModelConfig(BaseModel):
    """A larger remote model used first for story drafting when configured."""

    endpoint: str = Field(description="URL that accepts the story payload")
    api_key: str | None = Field(default=None, description="Secret sent in the auth header")
    model_name: str | None = Field(default=None, description="Model name forwarded in the payload")
    api_key_header: str = Field(default="Authorization", description="Header that carries the key")
    api_key_prefix: str = Field(default="Bearer ", description="Prefix placed before the key")
    timeout_seconds: float = Field(default=60.0, description="Request timeout")

    @classmethod
    def from_env(cls) -> "RemoteModelConfig | None":
        endpoint = (os.getenv("STORYFORGE_LARGE_MODEL_ENDPOINT") or "").strip()
        if not endpoint:
            return None

        timeout_raw = os.getenv("STORYFORGE_LARGE_MODEL_TIMEOUT_SECONDS")
        try:
            timeout = float(timeout_raw) if timeout_raw else 60.0
        except ValueError:
            timeout = 60.0

        return cls(
            endpoint=endpoint,
            api_key=os.getenv("STORYFORGE_LARGE_MODEL_API_KEY") or None,
            model_name=os.getenv("STORYFORGE_LARGE_MODEL_NAME") or None,
            api_key_header=os.getenv("STORYFORGE_LARGE_MODEL_API_HEADER") or "Authorization",
            api_key_prefix=os.getenv("STORYFORGE_LARGE_MODEL_API_PREFIX", "Bearer "),
            timeout_seconds=max(timeout, 1.0),
        )


class GenerationConfig(BaseModel):
    """Everything a generation run needs to know about providers and limits."""

    # Provider selection
    text_provider: TextProviderKind = Field(default=TextProviderKind.ON_DEVICE, description="Story text backend")
    image_provider: ImageProviderKind = Field(default=ImageProviderKind.ON_DEVICE, description="Illustration backend")
    enable_text_fallback: bool = Field(default=True, description="Reroute failed text generation to the default path")
    enable_image_fallback: bool = Field(default=True, description="Retry failed cloud images on the local provider")

    # Models
    text_models: dict[CloudProvider, str] = Field(
        default_factory=lambda: {p: p.default_text_model for p in CloudProvider},
        description="Text model id per cloud provider",
    )
    image_models: dict[CloudProvider, str] = Field(
        default_factory=lambda: {p: p.default_image_model for p in CloudProvider},
        description="Image model id per cloud provider",
    )
    on_device_model: str | None = Field(
        default=None,
        description="LangChain model string for the default chat model, e.g. 'ollama:llama3.2'",
    )
    local_model_id: str = Field(default="Qwen/Qwen3-1.7B", description="Hugging Face id run through transformers")
    local_image_model: str = Field(default="black-forest-labs/FLUX.1-schnell", description="Model for local images")
    local_image_endpoint: str | None = Field(default=None, description="Self-hosted inference endpoint for images")
    huggingface_api_key: str | None = Field(default=None, description="Token for the local image endpoint")
    remote_model: RemoteModelConfig | None = Field(default=None, description="Larger remote drafting model")

    # Story shape
    min_pages: int = Field(default=4, description="Fewest pages a book may have")
    max_pages: int = Field(default=16, description="Most pages a book may have")
    default_pages: int = Field(default=8, description="Page count when none is requested")
    temperature: float = Field(default=1.2, description="Sampling temperature for on-device drafting")
    max_concept_length: int = Field(default=220, description="Concepts are truncated to this length")

    # Illustration pipeline
    max_concurrent_images: int = Field(default=2, ge=1, description="Image generations in flight at once")
    guardrail_retry_attempts: int = Field(default=2, ge=0, description="Extra attempts on retryable failures")
    max_variant_index: int = Field(default=5, ge=0, description="Highest starting prompt variant")
    max_attempts_per_image: int = Field(default=18, ge=1, description="Attempt budget per image")
    image_recovery_passes: int = Field(default=2, ge=0, description="Sequential passes over missing images")
    retry_delay_seconds: float = Field(default=0.45, ge=0, description="Pause before retrying the same variant")
    recovery_pass_delay_seconds: float = Field(default=0.35, ge=0, description="Pause between recovery passes")
    cloud_timeout_seconds: float = Field(default=120.0, description="HTTP timeout for cloud calls")

    # Storage
    diagnostics_path: Path = Field(
        default=DEFAULT_HOME / "diagnostics" / "image-generation.jsonl",
        description="Diagnostics JSON Lines file",
    )
    model_cache_path: Path = Field(
        default=DEFAULT_HOME / "model-catalog.json",
        description="Persisted model catalog snapshot",
    )

    model_config = {"extra": "allow"}

    def clamp_page_count(self, page_count: int | None) -> int:
        if page_count is None:
            return self.default_pages
        return max(self.min_pages, min(self.max_pages, page_count))

    def text_model_for(self, provider: CloudProvider) -> str:
        return self.text_models.get(provider) or provider.default_text_model

    def image_model_for(self, provider: CloudProvider) -> str:
        return self.image_models.get(provider) or provider.default_image_model


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def get_default_config() -> GenerationConfig:
    """Get default configuration with environment variables."""
    text_models = {p: os.getenv(f"STORYFORGE_{p.name}_TEXT_MODEL") or p.default_text_model for p in CloudProvider}
    image_models = {p: os.getenv(f"STORYFORGE_{p.name}_IMAGE_MODEL") or p.default_image_model for p in CloudProvider}

    values = {
        "text_provider": os.getenv("STORYFORGE_TEXT_PROVIDER") or TextProviderKind.ON_DEVICE,
        "image_provider": os.getenv("STORYFORGE_IMAGE_PROVIDER") or ImageProviderKind.ON_DEVICE,
        "enable_text_fallback": _env_flag("STORYFORGE_TEXT_FALLBACK", True),
        "enable_image_fallback": _env_flag("STORYFORGE_IMAGE_FALLBACK", True),
        "text_models": text_models,
        "image_models": image_models,
        "on_device_model": os.getenv("STORYFORGE_ON_DEVICE_MODEL") or None,
        "local_image_endpoint": os.getenv("STORYFORGE_LOCAL_IMAGE_ENDPOINT") or None,
        "huggingface_api_key": os.getenv("HUGGINGFACE_API_KEY"),
        "remote_model": RemoteModelConfig.from_env(),
    }
    if os.getenv("STORYFORGE_LOCAL_MODEL"):
        values["local_model_id"] = os.getenv("STORYFORGE_LOCAL_MODEL")
    if os.getenv("STORYFORGE_LOCAL_IMAGE_MODEL"):
        values["local_image_model"] = os.getenv("STORYFORGE_LOCAL_IMAGE_MODEL")
    if os.getenv("STORYFORGE_HOME"):
        home = Path(os.environ["STORYFORGE_HOME"]).expanduser()
        values["diagnostics_path"] = home / "diagnostics" / "image-generation.jsonl"
        values["model_cache_path"] = home / "model-catalog.json"

    return GenerationConfig(**values)
