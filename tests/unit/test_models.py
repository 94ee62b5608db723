"""Unit tests for story and generation-state models."""

import pytest
from pydantic import ValidationError

from storyforge.models import (
    BookFormat,
    CharacterAnalysis,
    CloudProvider,
    GenerationPhase,
    IllustrationStyle,
    ImageProviderKind,
    PhaseKind,
    PromptAnalysis,
    StoryBook,
    StoryPage,
    TextProviderKind,
)


def _book(pages=3):
    return StoryBook(
        title="Luna's Lantern",
        author_line="Written by StoryForge",
        moral="Sharing light makes it brighter.",
        character_descriptions="Luna - a small orange fox, green scarf",
        pages=tuple(
            StoryPage(page_number=i, text=f"Page {i} text.", image_prompt=f"Luna in scene {i}")
            for i in range(1, pages + 1)
        ),
    )


class TestStoryBook:
    """Test the story book value type."""

    def test_page_count(self):
        """Page count follows the pages tuple."""
        assert _book(4).page_count == 4

    def test_rejects_sparse_page_numbers(self):
        """Page numbers must start at 1 and have no gaps."""
        with pytest.raises(ValidationError):
            StoryBook(
                title="T",
                author_line="A",
                moral="M",
                pages=(
                    StoryPage(page_number=1, text="a", image_prompt="a"),
                    StoryPage(page_number=3, text="b", image_prompt="b"),
                ),
            )

    def test_books_are_immutable(self):
        """Edits go through copies, never in-place assignment."""
        book = _book()
        with pytest.raises(ValidationError):
            book.title = "Other"

    def test_with_image_prompt_returns_new_book(self):
        """Replacing one prompt leaves the original untouched."""
        book = _book()
        updated = book.with_image_prompt(2, "Luna under the stars")

        assert updated.pages[1].image_prompt == "Luna under the stars"
        assert book.pages[1].image_prompt == "Luna in scene 2"
        assert updated.pages[0] == book.pages[0]


class TestPromptAnalysis:
    """Test prompt analysis helpers."""

    def test_species_are_lowercased(self):
        """Species is normalized to lowercase."""
        assert CharacterAnalysis(species="Fox").species == "fox"

    @pytest.mark.parametrize("species,expected", [
        ([], ""),
        (["fox"], "fox"),
        (["fox", "owl"], "fox and owl"),
        (["fox", "owl", "bear"], "fox, owl, and bear"),
    ])
    def test_all_species(self, species, expected):
        """Species are joined the way a sentence lists them."""
        analysis = PromptAnalysis(characters=tuple(CharacterAnalysis(species=s) for s in species))
        assert analysis.all_species == expected

    def test_is_empty(self):
        """An analysis with nothing extracted is empty."""
        assert PromptAnalysis().is_empty
        assert not PromptAnalysis(scene_setting="in a forest").is_empty


class TestGenerationPhase:
    """Test the phase state machine rules."""

    def test_idle_can_start_text_or_fail(self):
        """Idle may move to text generation or straight to failed."""
        idle = GenerationPhase.idle()
        assert idle.can_transition_to(GenerationPhase.generating_text())
        assert idle.can_transition_to(GenerationPhase.failed("blocked"))
        assert not idle.can_transition_to(GenerationPhase.generating_images(0, 3))
        assert not idle.can_transition_to(GenerationPhase.complete())

    def test_text_cannot_complete_directly(self):
        """Completion requires the image phase."""
        text = GenerationPhase.generating_text("draft")
        assert text.can_transition_to(GenerationPhase.generating_images(0, 3))
        assert not text.can_transition_to(GenerationPhase.complete())

    def test_terminal_phases_only_reset(self):
        """Complete and failed only return to idle."""
        for phase in (GenerationPhase.complete(), GenerationPhase.failed("x")):
            assert phase.is_terminal
            assert phase.can_transition_to(GenerationPhase.idle())
            assert not phase.can_transition_to(GenerationPhase.generating_text())

    def test_working_flags(self):
        """Only the two generating phases count as working."""
        assert GenerationPhase.generating_text().is_working
        assert GenerationPhase.generating_images(1, 3).is_working
        assert not GenerationPhase.idle().is_working
        assert GenerationPhase.failed("x").kind == PhaseKind.FAILED


class TestEnums:
    """Test provider and format enums."""

    def test_provider_kinds_map_to_cloud(self):
        """Cloud-backed kinds resolve to a cloud provider; local kinds do not."""
        assert TextProviderKind.OPENROUTER.cloud_provider is CloudProvider.OPENROUTER
        assert TextProviderKind.ON_DEVICE.cloud_provider is None
        assert TextProviderKind.LOCAL_RUNTIME.cloud_provider is None
        assert ImageProviderKind.HUGGINGFACE.cloud_provider is CloudProvider.HUGGINGFACE

    def test_cloud_provider_metadata(self):
        """Every cloud provider has a display name and defaults."""
        for provider in CloudProvider:
            assert provider.display_name
            assert provider.base_url.startswith("https://")
            assert provider.default_text_model
            assert provider.default_image_model

    def test_book_format_sizes(self):
        """Landscape and portrait swap dimensions."""
        assert BookFormat.LANDSCAPE.image_size == (1792, 1024)
        assert BookFormat.PORTRAIT.image_size == (1024, 1792)
        assert BookFormat.STANDARD.size_string == "1024x1024"

    def test_style_suffixes(self):
        """Each illustration style carries a prompt suffix."""
        for style in IllustrationStyle:
            assert style.prompt_suffix.startswith(", ")
