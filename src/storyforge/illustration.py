"""Illustration generation with prompt variant escalation and recovery passes.

Each image walks a chain of progressively simpler prompts. A variant is
repeated only while its failures look transient (timeouts, rate limits,
network errors); anything else, a guardrail rejection in particular, moves
straight on to the next, safer variant. The character prefix
("Featuring Luna, a small orange fox. ") is kept intact on every variant so
retries never lose character consistency.

After the concurrent pass, missing images get ``image_recovery_passes``
sequential passes that skip the variants most likely to have failed, then a
final rescue pass that goes straight to the safest variant.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

from PIL import Image

from storyforge.characters import has_character_prefix, split_character_prefix
from storyforge.context import GenerationConfig
from storyforge.diagnostics import DiagnosticsLogger
from storyforge.error_handling import ErrorAnalyzer, NoImageGeneratedError
from storyforge.llm_factory import StructuredCompletion
from storyforge.models import BookFormat, IllustrationStyle, PromptAnalysis, StoryPage
from storyforge.parallel_processor import BoundedWorkerPool
from storyforge.prompt_analysis import PromptAnalysisEngine
from storyforge.providers import ImageGenerationRouter, ProgressCallback
from storyforge.safety import (
    IllustrationPromptRewrite,
    safe_illustration_prompt,
    safe_illustration_prompt_async,
    sanitize_text,
)

logger = logging.getLogger(__name__)

SANITIZED = "sanitized"
LLM_REWRITTEN = "llm_rewritten"
SHORTENED = "shortened"
HIGH_RELIABILITY = "high_reliability"
FALLBACK = "fallback"
ULTRA_SAFE = "ultra_safe"

SHORTENED_KEYWORDS = 18
HIGH_RELIABILITY_KEYWORDS = 12
FALLBACK_KEYWORDS = 8
ULTRA_SAFE_KEYWORDS = 4

REWRITE_INSTRUCTIONS = (
    "You rewrite children's illustration prompts for safe image generation. "
    "Output ONLY a short scene description (under 100 characters). "
    "Describe what is visible: characters, setting, colors, mood. "
    'Do NOT include instructions like "Create" or "Draw" or "Illustrate". '
    "Keep it family-friendly, cheerful, and specific. "
    "Never include copyrighted character names."
)

_NON_KEYWORD = re.compile(r"[^\w\s]")

Variant = Tuple[str, str]


@dataclass(frozen=True)
class IllustrationUpdate:
    """One step of progress from :meth:`IllustrationGenerator.generate_illustrations`."""

    index: int
    image: Optional[Image.Image]
    completed: int
    total: int
    message: Optional[str] = None


def extract_keywords(text: str, count: int) -> str:
    return " ".join(_NON_KEYWORD.sub(" ", sanitize_text(text)).split()[:count])


def semantic_keywords(analysis: PromptAnalysis, count: int) -> str:
    """Keywords in order of visual importance: species, appearance, setting, then action."""
    keywords: List[str] = [c.species for c in analysis.characters if c.species]

    for character in analysis.characters:
        words = [w for w in character.appearance.split() if w not in keywords]
        keywords.extend(words[:2])

    keywords.extend(analysis.scene_setting.split()[:max(0, count - len(keywords))])

    if len(keywords) < count and analysis.main_action:
        keywords.extend(analysis.main_action.split()[:count - len(keywords)])

    return " ".join(keywords[:count])


def _has_characters(analysis: Optional[PromptAnalysis]) -> bool:
    return analysis is not None and bool(analysis.characters)


def shortened_scene_prompt(prompt: str, analysis: Optional[PromptAnalysis] = None) -> str:
    prefix, scene = split_character_prefix(prompt)
    if _has_characters(analysis):
        return prefix + semantic_keywords(analysis, SHORTENED_KEYWORDS)
    return prefix + (extract_keywords(scene, SHORTENED_KEYWORDS) or "friendly animals in a sunny meadow")


def high_reliability_prompt(prompt: str, analysis: Optional[PromptAnalysis] = None) -> str:
    prefix, scene = split_character_prefix(prompt)
    if _has_characters(analysis):
        return prefix + semantic_keywords(analysis, HIGH_RELIABILITY_KEYWORDS)
    return prefix + (extract_keywords(scene, HIGH_RELIABILITY_KEYWORDS) or "friendly animals playing together")


def fallback_prompt(prompt: str, analysis: Optional[PromptAnalysis] = None) -> str:
    prefix, scene = split_character_prefix(prompt)
    if _has_characters(analysis):
        setting = analysis.scene_setting or "a cheerful scene"
        return prefix + f"{analysis.all_species} {setting}"
    words = extract_keywords(scene, FALLBACK_KEYWORDS)
    return prefix + (f"{words} in a cheerful scene" if words else "happy animals in a garden")


def ultra_safe_prompt(prompt: str, analysis: Optional[PromptAnalysis] = None) -> str:
    prefix, scene = split_character_prefix(prompt)
    if _has_characters(analysis):
        return prefix + (
            f"friendly {analysis.all_species} in a colorful storybook scene, children's book illustration style"
        )
    words = extract_keywords(scene, ULTRA_SAFE_KEYWORDS)
    return prefix + (f"{words} sunny day" if words else "cute animals sunny day")


def build_variant_chain(safe_prompt: str, prompt: str, analysis: Optional[PromptAnalysis] = None) -> List[Variant]:
    """The base chain; an ``llm_rewritten`` variant may be inserted at position 1 later."""
    return [
        (SANITIZED, safe_prompt),
        (SHORTENED, shortened_scene_prompt(prompt, analysis)),
        (HIGH_RELIABILITY, high_reliability_prompt(prompt, analysis)),
        (FALLBACK, fallback_prompt(prompt, analysis)),
        (ULTRA_SAFE, ultra_safe_prompt(prompt, analysis)),
    ]


class IllustrationGenerator:
    """Generates a book's illustrations through an :class:`ImageGenerationRouter`."""

    def __init__(
        self,
        router: ImageGenerationRouter,
        diagnostics: DiagnosticsLogger,
        config: GenerationConfig,
        completion: Optional[StructuredCompletion] = None,
        on_status: Optional[ProgressCallback] = None,
    ):
        self.router = router
        self.diagnostics = diagnostics
        self.config = config
        self.completion = completion
        self.on_status = on_status

        self.generated_images: Dict[int, Image.Image] = {}
        self.variant_success_counts: Dict[str, int] = {}
        self.analyses: Dict[int, PromptAnalysis] = {}
        self.last_status_message: Optional[str] = None
        self.active_provider: Optional[str] = None

    def reset(self) -> None:
        self.generated_images = {}
        self.variant_success_counts = {}
        self.analyses = {}
        self.last_status_message = None
        self.active_provider = None

    async def _status(self, message: str) -> None:
        self.last_status_message = message
        if self.on_status is not None:
            await self.on_status(message)

    async def _rewrite_prompt(self, prompt: str) -> Optional[str]:
        """A model-written, child-safe rewording of the scene, with the character prefix kept."""
        if self.completion is None:
            return None

        prefix, scene = split_character_prefix(prompt)
        sanitized = sanitize_text(scene)
        if not sanitized:
            return None

        try:
            rewrite = await self.completion.complete(
                instructions=REWRITE_INSTRUCTIONS,
                prompt=(
                    "Rewrite this into a short, child-safe scene description under 100 characters.\n"
                    "Describe only what is visible in the scene. No instructions.\n"
                    f"Original: {sanitized}"
                ),
                schema=IllustrationPromptRewrite,
                temperature=0.35,
                max_tokens=120,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Prompt rewrite unavailable: {e}")
            return None

        candidate = rewrite.prompt.strip()
        if not candidate:
            return None
        return safe_illustration_prompt(prefix + candidate, extended_limit=bool(prefix))

    async def generate_single_image(
        self,
        prompt: str,
        style: IllustrationStyle,
        book_format: BookFormat = BookFormat.STANDARD,
        starting_variant_index: int = 0,
        page_index: Optional[int] = None,
        analysis: Optional[PromptAnalysis] = None,
        *,
        safest_only: bool = False,
    ) -> Image.Image:
        """Generate one illustration, escalating through safer prompt variants on failure.

        Raises the last attempt's error (or :class:`NoImageGeneratedError`) when
        every variant and the attempt budget are exhausted.
        """
        last_error: BaseException = NoImageGeneratedError()
        started = time.monotonic()

        if analysis is None and page_index is not None:
            analysis = self.analyses.get(page_index)
        concept_labels = PromptAnalysisEngine.heuristic_concepts(analysis) if analysis is not None else None

        safe_prompt = await safe_illustration_prompt_async(
            prompt, extended_limit=has_character_prefix(prompt), completion=self.completion
        )
        chain = build_variant_chain(safe_prompt, prompt, analysis)

        if safest_only:
            variant_index = len(chain) - 1
        else:
            variant_index = max(0, min(starting_variant_index, self.config.max_variant_index, len(chain) - 1))

        attempts_used = 0
        retries_per_variant = self.config.guardrail_retry_attempts

        while variant_index < len(chain) and attempts_used < self.config.max_attempts_per_image:
            label, variant = chain[variant_index]

            for attempt in range(retries_per_variant + 1):
                if attempts_used >= self.config.max_attempts_per_image:
                    break
                attempts_used += 1
                attempt_start = time.monotonic()
                try:
                    outcome = await self.router.generate_image(variant, style, book_format, on_status=self._status)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    duration = time.monotonic() - attempt_start
                    last_error = e
                    retryable = ErrorAnalyzer.is_retryable(e)
                    logger.warning(
                        f"Image failed: page={page_index} variant={label} attempt={attempt} "
                        f"retryable={retryable} duration={duration:.1f}s error={e}"
                    )
                    await self.diagnostics.log_attempt_failure(
                        provider=getattr(e, "provider", None) or self.router.primary_name,
                        prompt=variant,
                        error=e,
                        retryable=retryable,
                        variant_label=label,
                        variant_index=variant_index,
                        attempt_index=attempt,
                        page_index=page_index,
                        duration_seconds=duration,
                        concept_labels=concept_labels,
                    )
                    if retryable and attempt < retries_per_variant:
                        await asyncio.sleep(self.config.retry_delay_seconds)
                        continue
                    break

                duration = time.monotonic() - attempt_start
                logger.info(
                    f"Image succeeded: page={page_index} variant={label} attempt={attempt} duration={duration:.1f}s"
                )
                self.active_provider = outcome.provider_used
                await self.diagnostics.log_attempt_success(
                    provider=outcome.provider_used,
                    prompt=variant,
                    variant_label=label,
                    variant_index=variant_index,
                    attempt_index=attempt,
                    page_index=page_index,
                    duration_seconds=duration,
                    concept_labels=concept_labels,
                )
                self.variant_success_counts[label] = self.variant_success_counts.get(label, 0) + 1
                return outcome.image

            if variant_index == 0 and label == SANITIZED:
                rewritten = await self._rewrite_prompt(prompt)
                if rewritten and rewritten not in (p for _, p in chain):
                    chain.insert(1, (LLM_REWRITTEN, rewritten))
            variant_index += 1

        total = time.monotonic() - started
        logger.error(f"All variants exhausted for page {page_index} after {total:.1f}s ({attempts_used} attempts)")
        await self.diagnostics.log_final_failure(
            provider=self.router.primary_name,
            prompt=prompt,
            error=last_error,
            page_index=page_index,
            duration_seconds=total,
        )
        raise last_error

    async def generate_illustrations(
        self,
        pages: Sequence[StoryPage],
        cover_prompt: str,
        style: IllustrationStyle,
        book_format: BookFormat = BookFormat.STANDARD,
        analyses: Optional[Mapping[int, PromptAnalysis]] = None,
    ) -> AsyncIterator[IllustrationUpdate]:
        """Generate the cover (index 0) and every page, yielding progress as images land."""
        self.reset()
        self.analyses = dict(analyses or {})
        session_start = time.monotonic()

        prompts: Dict[int, str] = {0: cover_prompt}
        for page in pages:
            prompts[page.page_number] = page.image_prompt
        total = len(prompts)

        async def _worker(index: int) -> Image.Image:
            return await self.generate_single_image(
                prompts[index], style, book_format, page_index=index
            )

        pool = BoundedWorkerPool(self.config.max_concurrent_images)
        completed = 0
        async for result in pool.map_unordered(sorted(prompts), _worker):
            completed += 1
            if result.success:
                self.generated_images[result.task_id] = result.result
                yield IllustrationUpdate(result.task_id, result.result, completed, total)
            else:
                logger.warning(f"Page {result.task_id} failed in parallel pass: {result.error}")
                yield IllustrationUpdate(result.task_id, None, completed, total)

        pending = [index for index in sorted(prompts) if index not in self.generated_images]
        if pending:
            logger.info(f"Starting recovery passes for {len(pending)} missing image(s)")

        passes = self.config.image_recovery_passes
        for recovery_pass in range(1, passes + 1):
            if not pending:
                break
            start_variant = min(recovery_pass, self.config.max_variant_index)
            message = (
                f"Retrying {len(pending)} missing page(s) with safer prompts "
                f"(pass {recovery_pass}/{passes})..."
            )
            await self._status(message)

            still_missing = []
            for index in pending:
                try:
                    image = await self.generate_single_image(
                        prompts[index], style, book_format,
                        starting_variant_index=start_variant, page_index=index,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"Recovery pass {recovery_pass} failed for page {index}: {e}")
                    still_missing.append(index)
                    continue
                self.generated_images[index] = image
                yield IllustrationUpdate(index, image, completed, total, message)

            pending = still_missing
            if pending and recovery_pass < passes:
                await asyncio.sleep(self.config.recovery_pass_delay_seconds)

        for index in pending:
            message = "Retrying cover image with safest prompt..." if index == 0 else (
                f"Retrying page {index} with safest prompt..."
            )
            await self._status(message)
            try:
                image = await self.generate_single_image(
                    prompts[index], style, book_format, page_index=index, safest_only=True
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Final rescue failed for page {index}: {e}")
                continue
            self.generated_images[index] = image
            yield IllustrationUpdate(index, image, completed, total, message)

        duration = time.monotonic() - session_start
        success_count = len(self.generated_images)
        logger.info(
            f"Session complete: {success_count}/{total} succeeded in {duration:.1f}s. "
            f"Variant wins: {self.variant_success_counts}"
        )
        await self.diagnostics.log_session_summary(
            total_pages=total,
            success_count=success_count,
            failure_count=total - success_count,
            variant_success_counts=self.variant_success_counts,
            total_duration_seconds=duration,
        )
