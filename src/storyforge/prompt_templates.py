"""Prompt text shared by every story text provider."""

from typing import Iterable, Tuple

PER_PAGE_TOKENS = 150
TOKEN_OVERHEAD = 200
IMAGE_PROMPT_PASS_MAX_TOKENS = 600


def maximum_response_tokens(page_count: int) -> int:
    return PER_PAGE_TOKENS * page_count + TOKEN_OVERHEAD


SYSTEM_INSTRUCTIONS = (
    "You are an award-winning children's storybook writer and art director. "
    "You write engaging, age-appropriate stories for children ages 3-8. "
    "Your stories have clear beginnings, middles, and endings. "
    "Each page has vivid, simple prose that's fun to read aloud. "
    "You create detailed scene descriptions that would make beautiful illustrations. "
    "Stories should have a positive message or gentle moral. "
    "Safety requirements are strict and non-negotiable: "
    "never include violence, weapons, gore, horror, sexual content, nudity, "
    "substance use, hate, abuse, or self-harm. "
    "If the concept hints at unsafe content, reinterpret it into a gentle, child-safe adventure."
)

JSON_MODE_SYSTEM_INSTRUCTIONS = (
    SYSTEM_INSTRUCTIONS + "\nRespond with valid JSON only, with no extra text before or after."
)

ART_DIRECTOR_INSTRUCTIONS = (
    "You are an art director for a children's storybook. Respond with valid JSON only, with no extra text."
)


def _requirements(page_count: int) -> str:
    return (
        "Requirements:\n"
        f"- Exactly {page_count} pages, numbered 1 to {page_count}.\n"
        "- characterDescriptions: one line per character with name, species, colors, clothing "
        "and one unique feature, formatted as \"Name - species, details\".\n"
        "- Keep language warm, gentle, and easy to read aloud."
    )


_IMAGE_PROMPT_RULE = (
    "Every imagePrompt MUST describe the character by species and appearance, not just by name. "
    'Image models cannot look up who "Luna" is.\n'
    '  BAD: "Luna walking through a moonlit forest."\n'
    '  GOOD: "A small orange fox with a green scarf walks through a moonlit forest, '
    'curious expression, warm golden light."'
)


def story_json_prompt(concept: str, page_count: int) -> str:
    """Single-pass prompt asking for the whole story, illustration prompts included."""
    return (
        f'Create a {page_count}-page children\'s storybook from this concept: "{concept}".\n'
        "Return JSON with this exact shape:\n"
        "{\n"
        '  "title": "string",\n'
        '  "authorLine": "string",\n'
        '  "moral": "string",\n'
        '  "characterDescriptions": "Luna - small white rabbit, pink dress, floppy left ear",\n'
        '  "pages": [{"pageNumber": 1, "text": "2-4 child-friendly sentences", '
        '"imagePrompt": "species and appearance, then action, setting, mood, colors"}]\n'
        "}\n"
        f"{_requirements(page_count)}\n"
        f"- {_IMAGE_PROMPT_RULE}"
    )


def text_only_json_prompt(concept: str, page_count: int) -> str:
    """First pass: story text without illustration prompts."""
    return (
        f'Create a {page_count}-page children\'s storybook from this concept: "{concept}".\n'
        "Return JSON with this exact shape:\n"
        "{\n"
        '  "title": "string",\n'
        '  "authorLine": "string",\n'
        '  "moral": "string",\n'
        '  "characterDescriptions": "Luna - small white rabbit, pink dress, floppy left ear",\n'
        '  "pages": [{"pageNumber": 1, "text": "2-4 child-friendly sentences"}]\n'
        "}\n"
        f"{_requirements(page_count)}"
    )


def image_prompt_json_prompt(character_descriptions: str, pages: Iterable[Tuple[int, str]]) -> str:
    """Second pass: one illustration prompt per page, written with the whole story in view."""
    story = "\n".join(f"Page {number}: {text}" for number, text in pages)
    return (
        "Write one illustration prompt for each page of this children's story.\n\n"
        f"Characters:\n{character_descriptions or 'Not specified'}\n\n"
        f"Story:\n{story}\n\n"
        'Return JSON: {"prompts": [{"pageNumber": 1, "imagePrompt": "..."}]}\n'
        f"{_IMAGE_PROMPT_RULE}\n"
        "Include the setting, action, mood and colors. No text or lettering in the scene."
    )
