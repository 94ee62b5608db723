"""Content safety checks for story concepts and illustration prompts."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field

from storyforge.llm_factory import StructuredCompletion
from storyforge.utils import collapse_whitespace

logger = logging.getLogger(__name__)

DEFAULT_CONCEPT_LENGTH = 220
PROMPT_LIMIT = 180
EXTENDED_PROMPT_LIMIT = 300

EMPTY_CONCEPT_REASON = "Please enter a story idea to get started."

BLOCKED_PATTERNS = [
    (
        re.compile(r"\b(kill|killing|murder|stab|stabbing|blood|gore|dismember|weapon|gun|knife|shoot|war|battle|terror)\b", re.IGNORECASE),
        "Please keep story concepts gentle and avoid violence or weapon themes for kids.",
    ),
    (
        re.compile(r"\b(sex|sexual|nude|nudity|porn|erotic|fetish|intimate)\b", re.IGNORECASE),
        "Please keep story concepts child-appropriate and avoid sexual content.",
    ),
    (
        re.compile(r"\b(drug|drugs|alcohol|beer|vodka|whiskey|cocaine|meth|opioid|smoking)\b", re.IGNORECASE),
        "Please avoid substance-related themes in story concepts for children.",
    ),
    (
        re.compile(r"\b(hate|racist|slur|abuse|self-harm|suicide)\b", re.IGNORECASE),
        "Please avoid harmful or abusive themes and try a kinder story concept.",
    ),
]

# None of the replacement phrases contains a pattern word, so reapplying is a no-op
PROMPT_REPLACEMENTS = [
    (re.compile(r"\b(weapon|gun|knife|sword)\b", re.IGNORECASE), "toy prop"),
    (re.compile(r"\b(kill|killing|murder|stab|stabbing|fight|battle|war)\b", re.IGNORECASE), "playful challenge"),
    (re.compile(r"\b(blood|gore|dismember)\b", re.IGNORECASE), "colorful confetti"),
    (re.compile(r"\b(demon|devil|zombie|horror)\b", re.IGNORECASE), "friendly fantasy creature"),
]

_STRIPPED_CHARACTERS = re.compile(r"[<>`\"']")


@dataclass(frozen=True)
class ConceptCheck:
    """Outcome of validating a story concept."""

    allowed: bool
    sanitized_concept: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, sanitized_concept: str) -> "ConceptCheck":
        return cls(allowed=True, sanitized_concept=sanitized_concept)

    @classmethod
    def blocked(cls, reason: str) -> "ConceptCheck":
        return cls(allowed=False, reason=reason)


class IllustrationPromptRewrite(BaseModel):
    """A child-safe rewrite of an illustration prompt."""

    prompt: str = Field(description="Short, gentle scene description that keeps the same characters and setting")


REWRITE_INSTRUCTIONS = (
    "You rewrite children's illustration prompts so they are gentle and family-friendly. "
    "Keep the same characters, species, colors and setting. Replace anything violent, scary "
    "or unsafe with a playful alternative. Return a short scene description under 100 characters."
)


def sanitize_text(text: str) -> str:
    """Collapse whitespace and drop characters that break prompts or markup."""
    return collapse_whitespace(_STRIPPED_CHARACTERS.sub("", text or ""))


def _truncate(text: str, limit: int) -> str:
    return text[:limit].rstrip()


def validate_concept(raw: str, max_length: int = DEFAULT_CONCEPT_LENGTH) -> ConceptCheck:
    """Check a user's story concept and return it sanitized, or the reason it is blocked."""
    normalized = sanitize_text(raw)
    if not normalized:
        return ConceptCheck.blocked(EMPTY_CONCEPT_REASON)

    for pattern, reason in BLOCKED_PATTERNS:
        if pattern.search(normalized):
            return ConceptCheck.blocked(reason)

    return ConceptCheck.ok(_truncate(normalized, max_length))


def contains_unsafe_terms(prompt: str) -> bool:
    return any(pattern.search(prompt or "") for pattern, _ in PROMPT_REPLACEMENTS)


def _apply_replacements(text: str) -> str:
    for pattern, replacement in PROMPT_REPLACEMENTS:
        text = pattern.sub(replacement, text)
    return text


def safe_illustration_prompt(prompt: str, extended_limit: bool = False) -> str:
    """Replace unsafe terms with gentle stand-ins and clamp the prompt length.

    The extended limit leaves room for a character-description prefix.
    """
    limit = EXTENDED_PROMPT_LIMIT if extended_limit else PROMPT_LIMIT
    sanitized = _truncate(_apply_replacements(sanitize_text(prompt)), limit)

    # Truncation can cut a longer word down to a listed one
    for _ in range(3):
        if not contains_unsafe_terms(sanitized):
            break
        sanitized = _truncate(collapse_whitespace(_apply_replacements(sanitized)), limit)
    return sanitized


async def safe_illustration_prompt_async(
    prompt: str,
    extended_limit: bool = False,
    completion: Optional[StructuredCompletion] = None,
) -> str:
    """Like :func:`safe_illustration_prompt`, but asks a model to rewrite unsafe prompts first."""
    if not contains_unsafe_terms(prompt) or completion is None:
        return safe_illustration_prompt(prompt, extended_limit)

    try:
        rewrite = await completion.complete(
            instructions=REWRITE_INSTRUCTIONS,
            prompt=f"Rewrite this illustration prompt: {sanitize_text(prompt)}",
            schema=IllustrationPromptRewrite,
            temperature=0.3,
            max_tokens=120,
        )
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(f"Prompt rewrite failed, using word replacements instead: {e}")
        return safe_illustration_prompt(prompt, extended_limit)

    rewritten = safe_illustration_prompt(rewrite.prompt, extended_limit)
    return rewritten or safe_illustration_prompt(prompt, extended_limit)


def safe_cover_prompt(title: str, concept: str) -> str:
    safe_title = _truncate(sanitize_text(title), DEFAULT_CONCEPT_LENGTH)
    safe_concept = _truncate(sanitize_text(concept), DEFAULT_CONCEPT_LENGTH)
    return (
        f'Children\'s book cover illustration for "{safe_title}". '
        f"Theme: {safe_concept}. "
        "Warm, whimsical, colorful, friendly characters, family-friendly tone, "
        "no violence, no scary imagery, no text in image."
    )
