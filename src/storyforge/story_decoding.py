"""Decoding model output into :class:`StoryBook` values."""

import json
import logging
from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from storyforge.characters import CharacterDescriptionValidator
from storyforge.error_handling import MalformedOutputError
from storyforge.models import StoryBook, StoryPage
from storyforge.safety import safe_illustration_prompt
from storyforge.utils import clean_story_text, extract_text_content, parse_llm_json

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "StoryForge Book"
DEFAULT_AUTHOR_LINE = "Written by StoryForge"
DEFAULT_MORAL = "Kindness and curiosity guide every adventure."
DEFAULT_PAGE_TEXT = "A gentle moment unfolds."

DTOT = TypeVar("DTOT", bound=BaseModel)


class _DTO(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class StoryPageDTO(_DTO):
    page_number: int = 0
    text: str = ""
    image_prompt: str = ""


class StoryDTO(_DTO):
    title: str = ""
    author_line: str = ""
    moral: str = ""
    character_descriptions: Optional[str] = None
    pages: List[StoryPageDTO]


class TextOnlyPageDTO(_DTO):
    page_number: int = 0
    text: str = ""


class TextOnlyStoryDTO(_DTO):
    title: str = ""
    author_line: str = ""
    moral: str = ""
    character_descriptions: Optional[str] = None
    pages: List[TextOnlyPageDTO]


class ImagePromptDTO(_DTO):
    page_number: int = 0
    image_prompt: str = ""


class ImagePromptSheetDTO(_DTO):
    prompts: List[ImagePromptDTO]


def _decode(text: str, schema: Type[DTOT]) -> DTOT:
    if not (text or "").strip():
        raise MalformedOutputError("Model returned an empty response")
    try:
        data = parse_llm_json(text)
    except ValueError as e:
        raise MalformedOutputError(f"Model response could not be parsed: {e}") from e

    if isinstance(data, dict) and "story" in data and isinstance(data["story"], dict):
        data = data["story"]

    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise MalformedOutputError(f"Model response did not match {schema.__name__}") from e


def decode_story(text: str) -> StoryDTO:
    return _decode(text, StoryDTO)


def decode_text_only_story(text: str) -> TextOnlyStoryDTO:
    return _decode(text, TextOnlyStoryDTO)


def decode_image_prompt_sheet(text: str) -> ImagePromptSheetDTO:
    return _decode(text, ImagePromptSheetDTO)


def decode_story_payload(payload: Any) -> StoryDTO:
    """Decode a remote endpoint's JSON body: a bare story, a ``story`` envelope or a chat completion."""
    if isinstance(payload, dict):
        try:
            return StoryDTO.model_validate(payload.get("story", payload))
        except ValidationError:
            pass

    content = extract_text_content(payload)
    if content is None:
        content = payload if isinstance(payload, str) else json.dumps(payload)
    return decode_story(content)


def _fallback_prompt(concept: str) -> str:
    return safe_illustration_prompt(f"A gentle scene inspired by {concept}")


def _assemble(
    *,
    title: str,
    author_line: str,
    moral: str,
    character_descriptions: Optional[str],
    pages: List[tuple],
    page_count: int,
    fallback_concept: str,
) -> StoryBook:
    """Build a book with exactly ``page_count`` dense pages from ``(number, text, prompt)`` tuples."""
    if not pages:
        raise MalformedOutputError("Model response did not include valid pages.")

    ordered = sorted(pages, key=lambda p: p[0])[:page_count]
    if len(ordered) < page_count:
        logger.warning(f"Model returned {len(ordered)} of {page_count} pages, padding the rest")

    story_pages = []
    for position in range(1, page_count + 1):
        text, prompt = "", ""
        if position <= len(ordered):
            _, text, prompt = ordered[position - 1]
        story_pages.append(StoryPage(
            page_number=position,
            text=clean_story_text(text) or DEFAULT_PAGE_TEXT,
            image_prompt=(prompt or "").strip() or _fallback_prompt(fallback_concept),
        ))

    return StoryBook(
        title=clean_story_text(title) or DEFAULT_TITLE,
        author_line=clean_story_text(author_line) or DEFAULT_AUTHOR_LINE,
        moral=clean_story_text(moral) or DEFAULT_MORAL,
        character_descriptions=CharacterDescriptionValidator.normalize(character_descriptions or ""),
        pages=tuple(story_pages),
    )


def to_story_book(dto: StoryDTO, page_count: int, fallback_concept: str) -> StoryBook:
    return _assemble(
        title=dto.title,
        author_line=dto.author_line,
        moral=dto.moral,
        character_descriptions=dto.character_descriptions,
        pages=[(p.page_number, p.text, p.image_prompt) for p in dto.pages],
        page_count=page_count,
        fallback_concept=fallback_concept,
    )


def _distinct_page_numbers(items: List[Any]) -> bool:
    numbers = [item.page_number for item in items]
    return all(number > 0 for number in numbers) and len(set(numbers)) == len(numbers)


def merge_into_story_book(
    text_dto: TextOnlyStoryDTO,
    prompt_sheet: Optional[ImagePromptSheetDTO],
    page_count: int,
    fallback_concept: str,
) -> StoryBook:
    """Combine the story-text pass with the illustration-prompt pass.

    Prompts are matched to pages by page number when both passes number
    their pages distinctly, and by position otherwise.
    """
    text_pages = list(text_dto.pages)
    items = list(prompt_sheet.prompts) if prompt_sheet else []
    numbered = _distinct_page_numbers(text_pages)
    if numbered:
        text_pages.sort(key=lambda p: p.page_number)

    if numbered and _distinct_page_numbers(items):
        by_number = {item.page_number: item.image_prompt for item in items}
        prompts = [by_number.get(page.page_number, "") for page in text_pages]
    else:
        if items:
            logger.debug("Illustration prompts lack distinct page numbers, matching by position")
        prompts = [item.image_prompt for item in items]

    return _assemble(
        title=text_dto.title,
        author_line=text_dto.author_line,
        moral=text_dto.moral,
        character_descriptions=text_dto.character_descriptions,
        pages=[
            (position, page.text, prompts[position - 1] if position <= len(prompts) else "")
            for position, page in enumerate(text_pages, start=1)
        ],
        page_count=page_count,
        fallback_concept=fallback_concept,
    )
