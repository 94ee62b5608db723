"""Character description repair, parsing and prompt injection.

Small models usually fill in a book's character sheet but often write
illustration prompts that mention characters by name only ("Luna walking
through a forest"). An image model cannot know who Luna is, so the helpers
here make sure every book has a usable character sheet, parse it into
:class:`ParsedCharacter` entries and inject each character's look into the
prompts that mention them: "Luna, a small orange fox with a green scarf,
walking through a forest".
"""

import asyncio
import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from storyforge.llm_factory import StructuredCompletion
from storyforge.models import ParsedCharacter, PromptAnalysis, StoryBook, StoryPage
from storyforge.utils import clean_story_text, collapse_whitespace

logger = logging.getLogger(__name__)


SPECIES_WORDS = frozenset({
    "fox", "rabbit", "bunny", "bear", "cat", "kitten", "dog", "puppy",
    "mouse", "owl", "deer", "bird", "dragon", "unicorn", "frog", "turtle",
    "squirrel", "hedgehog", "penguin", "lion", "wolf", "elephant",
    "butterfly", "otter", "raccoon", "badger", "monkey", "panda",
    "pig", "piglet", "horse", "pony", "duck", "duckling", "goose",
    "chicken", "rooster", "cow", "sheep", "lamb", "goat", "bee",
    "ladybug", "ant", "snail", "fish", "whale", "dolphin", "octopus",
    "crab", "starfish", "seahorse", "parrot", "flamingo", "peacock",
    "tiger", "leopard", "cheetah", "giraffe", "zebra", "hippo",
    "hippopotamus", "rhino", "rhinoceros", "koala", "kangaroo",
    "sloth", "armadillo", "chameleon", "gecko", "lizard", "snake",
    "robin", "sparrow", "eagle", "hawk", "fairy", "gnome", "elf",
    "wizard", "witch", "mermaid", "robot", "dinosaur", "caterpillar",
    "firefly", "dragonfly", "chipmunk", "hamster", "guinea pig",
    # dog breeds
    "dachshund", "corgi", "poodle", "beagle", "bulldog", "dalmatian",
    "retriever", "labrador", "terrier", "spaniel", "collie", "husky",
    "pug", "chihuahua", "schnauzer", "greyhound", "mastiff",
    # cat breeds
    "tabby", "siamese", "persian", "calico",
    "moose", "beaver", "wombat", "platypus", "alpaca", "llama",
    "ferret", "chinchilla", "toucan", "hummingbird", "stork", "pelican",
    "boy", "girl", "child", "kid", "person", "man", "woman",
})

# Longest first so "guinea pig" wins over "pig"
_SPECIES_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(w) for w in sorted(SPECIES_WORDS, key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)

NAME_SEPARATORS = (" - ", " – ", ": ")
BEHAVIORAL_STARTERS = (
    "loves", "likes", "enjoys", "helps", "always",
    "often", "can", "is known", "tends to", "known for",
)
SCENE_STARTERS = {"a", "an", "the", "in", "on", "at", "with", "under", "inside", "outside"}

DETAIL_COLOR_WORDS = {
    "red", "blue", "green", "yellow", "orange", "purple", "pink", "white",
    "black", "brown", "golden", "silver", "bright", "dark", "light",
    "spotted", "striped", "fluffy", "tiny", "small", "big", "tall",
}
DETAIL_CLOTHING_WORDS = {
    "dress", "hat", "scarf", "cape", "boots", "shirt", "coat", "crown",
    "ribbon", "bow", "glasses", "vest", "apron", "jacket",
}

DEFAULT_CHARACTER_SHEET = "Main character - a friendly storybook hero"
SPECIES_PROXIMITY_CHARS = 30
MAX_FEATURED_CHARACTERS = 2
MAX_PREFIX_LENGTH = 200
FEATURING_PREFIX = "Featuring "
LEGACY_PREFIX = "Characters: "
LEGACY_SCENE_MARKER = ". Scene: "


PARSE_INSTRUCTIONS = (
    "You are parsing a character description sheet from a children's storybook. "
    "Extract each character's name, species or breed (lowercase), visual details, "
    "and a natural injection phrase for image generation. "
    "The injection phrase should read naturally in a sentence, e.g. "
    '"a brown dachshund wearing a tiny cowboy hat" or "a small orange fox with a green scarf". '
    'Always start the injection phrase with "a" or "an".'
)

REPAIR_INSTRUCTIONS = (
    "You are analyzing a children's storybook to identify its characters. "
    "Read the image prompts below and produce a character description sheet. "
    'Format: one line per character, "Name - species/breed, visual details". '
    "Use lowercase for species. Include colors, clothing, and one distinguishing feature. "
    "Only list characters that appear in at least two prompts. "
    "Do NOT invent details not present in the prompts."
)


class ParsedCharacterSheet(BaseModel):
    """Model output for a parsed character sheet."""

    characters: List[ParsedCharacter] = Field(default_factory=list)


class RepairedCharacterDescriptions(BaseModel):
    """Model output for a rebuilt character sheet."""

    descriptions: str = Field(description='One line per character: "Name - species, visual details"')


def find_species(text: str) -> str:
    """The first species word mentioned in ``text``, lowercased, or an empty string."""
    match = _SPECIES_PATTERN.search(text or "")
    return match.group(1).lower() if match else ""


def _mentions(text: str, word: str) -> bool:
    if not word:
        return False
    return re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE) is not None


def _with_article(phrase: str) -> str:
    lowered = phrase.lower()
    return phrase if lowered.startswith(("a ", "an ")) else f"a {phrase}"


def build_injection_phrase(details: str) -> str:
    """Turn ``"small orange fox, green scarf, curious eyes"`` into ``"a small orange fox with a green scarf"``."""
    parts = [p.strip() for p in details.split(",") if p.strip()]
    if not parts:
        return details

    phrase = _with_article(parts[0])
    if len(parts) > 1:
        detail = parts[1]
        lowered = detail.lower()
        if not lowered.startswith(BEHAVIORAL_STARTERS):
            if lowered.startswith(("with ", "wearing ")):
                phrase += f" {detail}"
            else:
                phrase += f" with {detail}"
    return phrase


def _split_on_period_boundaries(segment: str) -> List[str]:
    """Split on ". " only where a new "Name - details" entry starts."""
    results = []
    start = 0
    search = 0
    while True:
        dot = segment.find(". ", search)
        if dot < 0:
            break
        after = segment[dot + 2:]
        if after[:1].isupper() and any(sep in after for sep in NAME_SEPARATORS):
            before = segment[start:dot].strip()
            if before:
                results.append(before)
            start = dot + 2
        search = dot + 2

    remainder = segment[start:].strip()
    if remainder:
        results.append(remainder)
    return results or [segment]


def _character_lines(descriptions: str) -> List[str]:
    lines = []
    for line in descriptions.splitlines():
        for part in line.split("; "):
            lines.extend(p.strip() for p in _split_on_period_boundaries(part))
    return [line for line in lines if line]


def split_character_prefix(prompt: str) -> Tuple[str, str]:
    """Split a prompt into its character prefix and the scene text.

    Recognizes ``"Featuring Luna, a fox. <scene>"`` and the older
    ``"Characters: ... . Scene: <scene>"`` form. Prompts without a prefix
    come back as ``("", prompt)``.
    """
    if prompt.startswith(FEATURING_PREFIX):
        dot = prompt.find(". ", len(FEATURING_PREFIX))
        if dot >= 0:
            return prompt[:dot + 2], prompt[dot + 2:]

    if prompt.startswith(LEGACY_PREFIX):
        marker = prompt.find(LEGACY_SCENE_MARKER)
        if marker >= 0:
            end = marker + len(LEGACY_SCENE_MARKER)
            return prompt[:end], prompt[end:]

    return "", prompt


def has_character_prefix(prompt: str) -> bool:
    return prompt.startswith(FEATURING_PREFIX) or prompt.startswith(LEGACY_PREFIX)


def _injection_for(character: ParsedCharacter) -> str:
    if character.injection_phrase:
        return _with_article(character.injection_phrase)
    if character.visual_summary:
        return build_injection_phrase(character.visual_summary)
    if character.species:
        return f"a {character.species}"
    return ""


def build_character_prefix(characters: Sequence[ParsedCharacter]) -> str:
    """``"Featuring Luna, a small orange fox and Ollie, a gray owl. "`` for the first two characters."""
    phrases = []
    for character in list(characters)[:MAX_FEATURED_CHARACTERS]:
        injection = _injection_for(character)
        phrases.append(f"{character.name}, {injection}" if injection else character.name)
    if not phrases:
        return ""

    body = collapse_whitespace(re.sub(r"[<>`\"']", "", " and ".join(phrases)))
    prefix = f"{FEATURING_PREFIX}{body}"[:MAX_PREFIX_LENGTH - 2].rstrip(" .,")
    return f"{prefix}. "


def enrich_prompt_with_characters(prompt: str, characters: Sequence[ParsedCharacter]) -> str:
    """Prepend a "Featuring ..." prefix unless the mentioned characters are already described inline."""
    if not characters or has_character_prefix(prompt):
        return prompt

    mentioned = [c for c in list(characters)[:MAX_FEATURED_CHARACTERS] if _mentions(prompt, c.name)]
    already_enriched = bool(mentioned) and all(
        c.species and _mentions(prompt, c.species) for c in mentioned
    )
    if already_enriched:
        return prompt
    return build_character_prefix(characters) + prompt


class ImagePromptEnricher:
    """Parses character sheets and injects character looks into illustration prompts."""

    def __init__(self, completion: Optional[StructuredCompletion] = None):
        self.completion = completion

    @staticmethod
    def parse_character_descriptions(descriptions: str) -> List[ParsedCharacter]:
        """Parse ``"Name - species, colors, clothing"`` lines into characters."""
        characters = []
        for line in _character_lines(descriptions or ""):
            name = details = None
            for sep in NAME_SEPARATORS:
                if sep in line:
                    name, details = (part.strip() for part in line.split(sep, 1))
                    break
            if not name or not details:
                continue

            details = details.rstrip(".!?;").strip()
            if not details:
                continue

            characters.append(ParsedCharacter(
                name=name,
                species=find_species(details),
                visual_summary=details,
                injection_phrase=build_injection_phrase(details),
            ))
        return characters

    async def parse_character_descriptions_async(self, descriptions: str) -> List[ParsedCharacter]:
        """Parse with the model when one is available, falling back to delimiter splitting."""
        if not (descriptions or "").strip():
            return []
        if self.completion is None:
            return self.parse_character_descriptions(descriptions)

        try:
            sheet = await self.completion.complete(
                instructions=PARSE_INSTRUCTIONS,
                prompt=f'Parse these character descriptions into structured entries:\n"{descriptions}"',
                schema=ParsedCharacterSheet,
                temperature=0.15,
                max_tokens=400,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Character sheet parsing failed, splitting on separators instead: {e}")
            return self.parse_character_descriptions(descriptions)

        parsed = [
            ParsedCharacter(
                name=c.name.strip(),
                species=c.species.strip().lower(),
                visual_summary=c.visual_summary.strip(),
                injection_phrase=(c.injection_phrase or "").strip() or None,
            )
            for c in sheet.characters
            if c.name.strip()
        ]
        if not parsed:
            return self.parse_character_descriptions(descriptions)
        return parsed

    @classmethod
    def enrich_image_prompts(
        cls,
        book: StoryBook,
        analyses: Optional[Dict[int, PromptAnalysis]] = None,
        parsed_characters: Optional[Sequence[ParsedCharacter]] = None,
    ) -> StoryBook:
        """Inject character descriptions into every page prompt that names a character."""
        characters = list(parsed_characters or []) or cls.parse_character_descriptions(book.character_descriptions)
        if not characters:
            return book

        analyses = analyses or {}
        pages = []
        for page in book.pages:
            analysis = analyses.get(page.page_number)
            if analysis is not None and analysis.characters:
                prompt = cls._enrich_with_analysis(page.image_prompt, analysis, characters)
            else:
                prompt = cls.enrich_prompt(page.image_prompt, characters)
            pages.append(page.model_copy(update={"image_prompt": prompt}))
        return book.with_pages(pages)

    @classmethod
    def enrich_prompt(cls, prompt: str, characters: Iterable[ParsedCharacter]) -> str:
        result = prompt
        for character in characters:
            if not _mentions(result, character.name):
                continue
            if character.species and _mentions(result, character.species):
                continue
            if cls._species_near_name(result, character.name, character.species):
                continue
            result = cls._inject(result, character.name, _injection_for(character))
        return result

    @classmethod
    def _enrich_with_analysis(
        cls,
        prompt: str,
        analysis: PromptAnalysis,
        characters: Iterable[ParsedCharacter],
    ) -> str:
        result = prompt
        for character in characters:
            if not _mentions(result, character.name):
                continue

            match = next((a for a in analysis.characters if a.species == character.species), None)
            species = (match.species if match else character.species).lower()
            if species and _mentions(result, species):
                continue

            if match is not None and match.appearance:
                injection = _with_article(match.appearance)
            else:
                injection = _injection_for(character)
            result = cls._inject(result, character.name, injection)
        return result

    @staticmethod
    def _species_near_name(prompt: str, name: str, species: str) -> bool:
        if not species:
            return False
        lowered = prompt.lower()
        idx = lowered.find(name.lower())
        if idx < 0:
            return False
        window = lowered[max(0, idx - SPECIES_PROXIMITY_CHARS):idx + len(name) + SPECIES_PROXIMITY_CHARS]
        return _mentions(window, species)

    @staticmethod
    def _inject(prompt: str, name: str, injection: str) -> str:
        """Turn the first bare mention of ``name`` into an appositive."""
        if not injection:
            return prompt
        match = re.search(rf"\b{re.escape(name)}\b", prompt, re.IGNORECASE)
        if match is None:
            return prompt

        original = match.group(0)
        rest = prompt[match.end():]
        if rest.lstrip().startswith(","):
            replacement = f"{original}, {injection}"
        else:
            replacement = f"{original}, {injection},"
        return prompt[:match.start()] + replacement + rest


class CharacterDescriptionValidator:
    """Makes sure a book ends up with a usable character sheet."""

    def __init__(self, completion: Optional[StructuredCompletion] = None):
        self.completion = completion
        self.last_repair_used_model = False

    @staticmethod
    def normalize(descriptions: str) -> str:
        cleaned = (descriptions or "").strip()
        if not cleaned:
            return ""

        # One long line of "A - x. B - y." entries becomes one line per character
        if "\n" not in cleaned and " - " in cleaned:
            cleaned = re.sub(r"\.\s+(?=[A-Z])", ".\n", cleaned)

        lines = [clean_story_text(line) for line in cleaned.splitlines()]
        return "\n".join(line for line in lines if line)

    @staticmethod
    def is_adequate(descriptions: str) -> bool:
        """True when some line names a character and carries some visual detail."""
        for line in descriptions.splitlines():
            words = line.split()
            if (" - " in line and len(words) >= 4) or len(words) >= 5:
                return True
        return False

    async def validate_async(self, descriptions: str, pages: Sequence[StoryPage], title: str) -> str:
        """Return the sheet as-is when adequate, else a model repair, else a heuristic one."""
        self.last_repair_used_model = False
        cleaned = self.normalize(descriptions)
        if self.is_adequate(cleaned):
            return cleaned

        repaired = await self._repair_with_model(pages, title)
        if repaired:
            normalized = self.normalize(repaired)
            if self.is_adequate(normalized):
                logger.info("Character descriptions repaired by the model")
                self.last_repair_used_model = True
                return normalized

        return self.validate(descriptions, pages)

    async def _repair_with_model(self, pages: Sequence[StoryPage], title: str) -> Optional[str]:
        if self.completion is None:
            return None

        summary = "\n".join(f"Page {p.page_number}: {p.image_prompt}" for p in list(pages)[:8])
        try:
            result = await self.completion.complete(
                instructions=REPAIR_INSTRUCTIONS,
                prompt=f'Story title: "{title}"\n\nImage prompts:\n{summary}\n\nGenerate the character description sheet:',
                schema=RepairedCharacterDescriptions,
                temperature=0.2,
                max_tokens=300,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Character description repair failed: {e}")
            return None
        return result.descriptions.strip() or None

    @classmethod
    def validate(cls, descriptions: str, pages: Sequence[StoryPage]) -> str:
        """Heuristic repair; always returns a non-empty sheet."""
        cleaned = cls.normalize(descriptions)
        if cls.is_adequate(cleaned):
            return cleaned

        extracted = cls._extract_from_image_prompts(pages)
        if extracted:
            return f"{cleaned}\n{extracted}" if cleaned else extracted
        if cleaned:
            return cleaned

        species = next((s for s in (find_species(p.image_prompt) for p in pages) if s), "")
        if species:
            return f"Main character - a friendly {species}"
        return DEFAULT_CHARACTER_SHEET

    @classmethod
    def _extract_from_image_prompts(cls, pages: Sequence[StoryPage]) -> str:
        names: List[str] = []
        for page in pages:
            prompt = page.image_prompt.strip()
            if "," not in prompt:
                continue
            candidate = collapse_whitespace(prompt.split(",", 1)[0])
            if cls._is_likely_character_name(candidate) and candidate not in names:
                names.append(candidate)

        lines = []
        for name in names[:4]:
            details = cls._find_appearance_details(name, pages)
            lines.append(f"{name} - {details}" if details else f"{name} - main character")
        return "\n".join(lines)

    @staticmethod
    def _is_likely_character_name(text: str) -> bool:
        words = text.split()
        if not words or len(words) > 5:
            return False
        if not text[0].isupper():
            return False
        return words[0].lower() not in SCENE_STARTERS

    @staticmethod
    def _find_appearance_details(name: str, pages: Sequence[StoryPage]) -> str:
        found: List[str] = []
        for page in pages:
            if not _mentions(page.image_prompt, name):
                continue
            words = re.sub(r"[^\w\s]", " ", page.image_prompt.lower()).split()
            for word in words:
                if word in found:
                    continue
                if word in SPECIES_WORDS:
                    found.insert(0, word)
                elif word in DETAIL_COLOR_WORDS or word in DETAIL_CLOTHING_WORDS:
                    found.append(word)
            if len(found) >= 3:
                break
        return ", ".join(found[:5])
