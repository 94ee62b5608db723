"""Structured reading of illustration prompts for building fallback variants."""

import asyncio
import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

from storyforge.characters import SPECIES_WORDS
from storyforge.llm_factory import StructuredCompletion
from storyforge.models import CharacterAnalysis, PromptAnalysis

logger = logging.getLogger(__name__)


ANALYSIS_INSTRUCTIONS = (
    "You are analyzing an image generation prompt for a children's storybook illustration. "
    "Extract the structured visual elements from the prompt. "
    "List every character visible in the scene, each one with their species and visual appearance. "
    "Also extract the scene setting, the main action, and the overall mood. "
    "Use lowercase for species. Keep all fields concise."
)

COLOR_WORDS = {
    "red", "orange", "yellow", "green", "blue", "purple", "pink",
    "white", "black", "brown", "gray", "grey", "golden", "silver",
    "teal", "coral", "turquoise", "amber", "cream", "ivory",
}

SIZE_WORDS = {
    "small", "tiny", "little", "big", "large", "tall", "short",
    "plump", "round", "fluffy", "slender",
}

MOOD_WORDS = {
    "warm", "cozy", "bright", "cheerful", "peaceful", "magical",
    "mysterious", "dreamy", "gentle", "joyful", "playful", "serene",
    "whimsical", "enchanting", "sunny", "starlit", "moonlit",
    "happy", "calm", "exciting", "adventurous", "sparkly",
}

ACTION_VERBS = {
    "running", "walking", "sitting", "standing", "flying", "jumping",
    "playing", "reading", "dancing", "singing", "swimming", "climbing",
    "sleeping", "eating", "looking", "holding", "carrying", "building",
    "painting", "exploring", "discovering", "gathering", "collecting",
    "hiding", "peeking", "waving", "hugging", "laughing", "smiling",
    "digging", "planting", "cooking", "baking", "writing", "drawing",
}

# A scene phrase runs from a place preposition to the next clause break
SCENE_PATTERN = re.compile(
    r"\b(?:in|at|by|near|under|beside|through|inside|outside|around)\s+"
    r"(?:(?:a|an|the)\s+)?[a-z][a-z\s]{2,40}",
    re.IGNORECASE,
)
MAX_SCENE_WORDS = 6
APPEARANCE_WINDOW = 4

_NON_WORD = re.compile(r"[^\w\s]")


def _words(prompt: str) -> List[str]:
    return _NON_WORD.sub(" ", prompt.lower()).split()


class PromptAnalysisEngine:
    """Extracts characters, setting, action and mood from illustration prompts."""

    def __init__(self, completion: Optional[StructuredCompletion] = None):
        self.completion = completion

    async def analyze_single(self, prompt: str) -> PromptAnalysis:
        """Analyze one prompt with the model, or heuristically when that is not possible."""
        if self.completion is None:
            return self.heuristic_analysis(prompt)

        try:
            analysis = await self.completion.complete(
                instructions=ANALYSIS_INSTRUCTIONS,
                prompt=f'Analyze this illustration prompt and extract the visual elements:\n"{prompt}"',
                schema=PromptAnalysis,
                temperature=0.2,
                max_tokens=250,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Prompt analysis failed, using heuristic analysis: {e}")
            return self.heuristic_analysis(prompt)

        logger.debug(
            f"Analysis: characters={[c.species for c in analysis.characters]} scene={analysis.scene_setting!r}"
        )
        return analysis

    async def analyze_prompts(self, prompts: Sequence[Tuple[int, str]]) -> Dict[int, PromptAnalysis]:
        """Analyze every ``(index, prompt)`` pair concurrently; index 0 is the cover."""
        if not prompts:
            return {}

        mode = "model" if self.completion is not None else "heuristic"
        logger.info(f"Analyzing {len(prompts)} prompts ({mode})")

        results = await asyncio.gather(
            *(self.analyze_single(prompt) for _, prompt in prompts),
            return_exceptions=True,
        )

        analyses: Dict[int, PromptAnalysis] = {}
        for (index, _), result in zip(prompts, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning(f"Analysis for page {index} failed: {result}")
                analyses[index] = PromptAnalysis()
            else:
                analyses[index] = result
        return analyses

    @staticmethod
    def heuristic_analysis(prompt: str) -> PromptAnalysis:
        """Keyword-based analysis used when no model is available."""
        words = _words(prompt)

        species: List[str] = []
        for word in words:
            if word in SPECIES_WORDS and word not in species:
                species.append(word)

        characters = tuple(
            CharacterAnalysis(species=sp, appearance=_extract_appearance(words, sp))
            for sp in species
        )

        return PromptAnalysis(
            characters=characters,
            scene_setting=_extract_scene(prompt),
            main_action=next((w for w in words if w in ACTION_VERBS), ""),
            mood=" ".join([w for w in words if w in MOOD_WORDS][:2]),
        )

    @staticmethod
    def heuristic_concepts(analysis: PromptAnalysis) -> List[str]:
        """Ranked concept labels for an analysis: characters, then setting, action and atmosphere."""
        labels = []
        for character in analysis.characters:
            if character.appearance or character.species:
                labels.append("CHARACTER")
        if analysis.scene_setting:
            labels.append("SETTING")
        if analysis.main_action:
            labels.append("ACTION")
        if analysis.mood:
            labels.append("ATMOSPHERE")
        return labels


def _extract_appearance(words: List[str], species: str) -> str:
    if species in words:
        idx = words.index(species)
        window = words[max(0, idx - APPEARANCE_WINDOW):idx + APPEARANCE_WINDOW]
    else:
        window = words

    parts = [w for w in window if w in SIZE_WORDS][:1]
    parts += [w for w in window if w in COLOR_WORDS][:2]
    if species:
        parts.append(species)
    return " ".join(parts)


def _extract_scene(prompt: str) -> str:
    # Clause punctuation ends the phrase
    for clause in re.split(r"[,.;:!?]", prompt.lower()):
        match = SCENE_PATTERN.search(clause)
        if match:
            return " ".join(match.group(0).split()[:MAX_SCENE_WORDS])
    return ""
