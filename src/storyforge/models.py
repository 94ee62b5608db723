"""Data models for story books, prompt analysis and generation state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TextProviderKind(str, Enum):
    """Backends that can draft the story text."""

    ON_DEVICE = "on_device"
    LOCAL_RUNTIME = "local_runtime"
    OPENROUTER = "openrouter"
    TOGETHER = "together"
    HUGGINGFACE = "huggingface"

    @property
    def cloud_provider(self) -> Optional["CloudProvider"]:
        try:
            return CloudProvider(self.value)
        except ValueError:
            return None


class ImageProviderKind(str, Enum):
    """Backends that can draw illustrations."""

    ON_DEVICE = "on_device"
    OPENROUTER = "openrouter"
    TOGETHER = "together"
    HUGGINGFACE = "huggingface"

    @property
    def cloud_provider(self) -> Optional["CloudProvider"]:
        try:
            return CloudProvider(self.value)
        except ValueError:
            return None


class CloudProvider(str, Enum):
    """Hosted model APIs reached with a bearer token."""

    OPENROUTER = "openrouter"
    TOGETHER = "together"
    HUGGINGFACE = "huggingface"

    @property
    def display_name(self) -> str:
        return _CLOUD_DISPLAY_NAMES[self]

    @property
    def base_url(self) -> str:
        return _CLOUD_BASE_URLS[self]

    @property
    def default_text_model(self) -> str:
        return _CLOUD_DEFAULT_MODELS[self][0]

    @property
    def default_image_model(self) -> str:
        return _CLOUD_DEFAULT_MODELS[self][1]


_CLOUD_DISPLAY_NAMES = {
    CloudProvider.OPENROUTER: "OpenRouter",
    CloudProvider.TOGETHER: "Together AI",
    CloudProvider.HUGGINGFACE: "Hugging Face",
}

_CLOUD_BASE_URLS = {
    CloudProvider.OPENROUTER: "https://openrouter.ai/api/v1",
    CloudProvider.TOGETHER: "https://api.together.xyz/v1",
    CloudProvider.HUGGINGFACE: "https://router.huggingface.co/v1",
}

_CLOUD_DEFAULT_MODELS = {
    CloudProvider.OPENROUTER: ("google/gemini-3-flash-preview", "google/gemini-3-pro-image-preview"),
    CloudProvider.TOGETHER: (
        "meta-llama/Llama-4-Maverick-17B-128E-Instruct-Turbo",
        "black-forest-labs/FLUX.1.1-pro",
    ),
    CloudProvider.HUGGINGFACE: ("openai/gpt-oss-120b", "black-forest-labs/FLUX.1-schnell"),
}


class BookFormat(str, Enum):
    """Page shapes a book can be printed in."""

    STANDARD = "standard"
    SMALL = "small"
    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"

    @property
    def image_size(self) -> Tuple[int, int]:
        """Pixel size requested from image providers as (width, height)."""
        if self is BookFormat.LANDSCAPE:
            return (1792, 1024)
        if self is BookFormat.PORTRAIT:
            return (1024, 1792)
        return (1024, 1024)

    @property
    def size_string(self) -> str:
        width, height = self.image_size
        return f"{width}x{height}"


class IllustrationStyle(str, Enum):
    """Visual styles the illustrations can be drawn in."""

    ILLUSTRATION = "illustration"
    ANIMATION = "animation"
    SKETCH = "sketch"

    @property
    def prompt_suffix(self) -> str:
        return _STYLE_SUFFIXES[self]


_STYLE_SUFFIXES = {
    IllustrationStyle.ILLUSTRATION: ", children's book illustration style, warm watercolor textures",
    IllustrationStyle.ANIMATION: ", 3D animated cartoon style, Pixar-inspired, soft lighting",
    IllustrationStyle.SKETCH: ", pencil sketch style, hand-drawn, delicate linework",
}

NO_TEXT_IN_IMAGE = ". Absolutely no text, words, letters, or numbers in the image."


class StoryPage(BaseModel):
    """A single page of the story."""

    model_config = ConfigDict(frozen=True)

    page_number: int = Field(ge=1, description="1-based page number")
    text: str = Field(description="Body text shown on the page")
    image_prompt: str = Field(description="Scene description used to illustrate the page")


class StoryBook(BaseModel):
    """A complete story. Edits produce a new instance."""

    model_config = ConfigDict(frozen=True)

    title: str
    author_line: str
    moral: str
    character_descriptions: str = ""
    pages: Tuple[StoryPage, ...] = Field(default_factory=tuple)

    @model_validator(mode="after")
    def _check_page_numbers(self) -> "StoryBook":
        for position, page in enumerate(self.pages, start=1):
            if page.page_number != position:
                raise ValueError(
                    f"page numbers must be dense and start at 1, got {page.page_number} at position {position}"
                )
        return self

    @property
    def page_count(self) -> int:
        return len(self.pages)

    def with_pages(self, pages: List[StoryPage]) -> "StoryBook":
        return self.model_copy(update={"pages": tuple(pages)})

    def with_image_prompt(self, page_number: int, prompt: str) -> "StoryBook":
        pages = [
            page.model_copy(update={"image_prompt": prompt}) if page.page_number == page_number else page
            for page in self.pages
        ]
        return self.with_pages(pages)


class CharacterAnalysis(BaseModel):
    """A character as seen in one illustration prompt."""

    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    species: str = ""
    appearance: str = ""

    @model_validator(mode="after")
    def _lowercase_species(self) -> "CharacterAnalysis":
        if self.species != self.species.lower():
            object.__setattr__(self, "species", self.species.lower())
        return self


class ParsedCharacter(BaseModel):
    """A character parsed from the book's character-description block."""

    model_config = ConfigDict(frozen=True)

    name: str
    species: str = ""
    visual_summary: str = ""
    injection_phrase: Optional[str] = None


class PromptAnalysis(BaseModel):
    """Structured reading of a free-text illustration prompt."""

    model_config = ConfigDict(frozen=True)

    characters: Tuple[CharacterAnalysis, ...] = Field(default_factory=tuple)
    scene_setting: str = ""
    main_action: str = ""
    mood: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.characters and not self.scene_setting and not self.main_action

    @property
    def all_species(self) -> str:
        """Species joined the way a sentence would list them."""
        species = [c.species for c in self.characters if c.species]
        if not species:
            return ""
        if len(species) == 1:
            return species[0]
        if len(species) == 2:
            return f"{species[0]} and {species[1]}"
        return f"{', '.join(species[:-1])}, and {species[-1]}"


class PhaseKind(str, Enum):
    IDLE = "idle"
    GENERATING_TEXT = "generating_text"
    GENERATING_IMAGES = "generating_images"
    COMPLETE = "complete"
    FAILED = "failed"


class GenerationPhase(BaseModel):
    """Snapshot of where a generation run stands."""

    model_config = ConfigDict(frozen=True)

    kind: PhaseKind = PhaseKind.IDLE
    partial_text: str = ""
    completed: int = 0
    total: int = 0
    reason: Optional[str] = None

    @classmethod
    def idle(cls) -> "GenerationPhase":
        return cls(kind=PhaseKind.IDLE)

    @classmethod
    def generating_text(cls, partial_text: str = "") -> "GenerationPhase":
        return cls(kind=PhaseKind.GENERATING_TEXT, partial_text=partial_text)

    @classmethod
    def generating_images(cls, completed: int, total: int) -> "GenerationPhase":
        return cls(kind=PhaseKind.GENERATING_IMAGES, completed=completed, total=total)

    @classmethod
    def complete(cls) -> "GenerationPhase":
        return cls(kind=PhaseKind.COMPLETE)

    @classmethod
    def failed(cls, reason: str) -> "GenerationPhase":
        return cls(kind=PhaseKind.FAILED, reason=reason)

    @property
    def is_working(self) -> bool:
        return self.kind in (PhaseKind.GENERATING_TEXT, PhaseKind.GENERATING_IMAGES)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (PhaseKind.COMPLETE, PhaseKind.FAILED)

    def can_transition_to(self, target: "GenerationPhase") -> bool:
        return target.kind in _ALLOWED_TRANSITIONS[self.kind]


_ALLOWED_TRANSITIONS = {
    PhaseKind.IDLE: {PhaseKind.GENERATING_TEXT, PhaseKind.FAILED},
    PhaseKind.GENERATING_TEXT: {
        PhaseKind.GENERATING_TEXT,
        PhaseKind.GENERATING_IMAGES,
        PhaseKind.FAILED,
        PhaseKind.IDLE,
    },
    PhaseKind.GENERATING_IMAGES: {
        PhaseKind.GENERATING_IMAGES,
        PhaseKind.COMPLETE,
        PhaseKind.FAILED,
        PhaseKind.IDLE,
    },
    PhaseKind.COMPLETE: {PhaseKind.IDLE},
    PhaseKind.FAILED: {PhaseKind.IDLE},
}


class GenerationEvent(BaseModel):
    """One update on a run's progress stream."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    phase: GenerationPhase
    message: Optional[str] = None
    image_index: Optional[int] = None


class BookSnapshot(BaseModel):
    """Finished book handed over to the persistence layer."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    book: StoryBook
    images: Dict[int, Any] = Field(default_factory=dict, description="Page index to PIL image, 0 is the cover")
    format: BookFormat = BookFormat.STANDARD
    style: IllustrationStyle = IllustrationStyle.ILLUSTRATION
    text_provider: str
    image_provider: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
