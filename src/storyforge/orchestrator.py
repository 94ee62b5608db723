"""Creation state machine: story text, enrichment, illustrations and regeneration."""

import asyncio
import inspect
import logging
from types import MappingProxyType
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Set, Tuple

from PIL import Image

from storyforge.characters import (
    CharacterDescriptionValidator,
    ImagePromptEnricher,
    enrich_prompt_with_characters,
)
from storyforge.context import GenerationConfig, get_default_config
from storyforge.credentials import CredentialStore, EnvironmentCredentialStore
from storyforge.diagnostics import DiagnosticsLogger
from storyforge.error_handling import (
    GUARDRAIL_USER_MESSAGE,
    ContentBlockedError,
    ErrorAnalyzer,
    InvalidPhaseTransition,
    ModelUnavailableError,
    StoryForgeError,
    user_facing_error_message,
)
from storyforge.illustration import IllustrationGenerator
from storyforge.models import (
    BookFormat,
    BookSnapshot,
    GenerationEvent,
    GenerationPhase,
    IllustrationStyle,
    ParsedCharacter,
    PromptAnalysis,
    StoryBook,
    TextProviderKind,
)
from storyforge.parallel_processor import BoundedWorkerPool
from storyforge.prompt_analysis import PromptAnalysisEngine
from storyforge.providers import ProgressCallback, ProviderFactory
from storyforge.safety import safe_cover_prompt, validate_concept

logger = logging.getLogger(__name__)

REMOTE_DRAFTING_MESSAGE = "Using larger model for story drafting..."
REMOTE_FALLBACK_MESSAGE = "Large model unavailable, switching to on-device model..."
LOCAL_FALLBACK_MESSAGE = "Local model failed, falling back to the default model..."


class PersistenceCollaborator(Protocol):
    """Where finished books and later edits go. Methods may be sync or async."""

    def create_record(self, snapshot: BookSnapshot) -> Any: ...

    def on_text_edited(self, book: StoryBook) -> Any: ...

    def on_image_regenerated(self, index: int, image: Image.Image) -> Any: ...


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


_END = object()


class GenerationRun:
    """Handle on one creation run: a progress stream, cancellation and the final snapshot."""

    def __init__(self, orchestrator: "CreationOrchestrator"):
        self._orchestrator = orchestrator
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.task: Optional[asyncio.Task] = None
        self.snapshot: Optional[BookSnapshot] = None

    def _publish(self, event: GenerationEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def _close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_END)

    @property
    def done(self) -> bool:
        return self.task is None or self.task.done()

    async def events(self) -> AsyncIterator[GenerationEvent]:
        """Every event of the run, ending after the final one."""
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item

    async def wait(self) -> Optional[BookSnapshot]:
        """Wait for the run to finish; returns the snapshot, or None if it failed or was cancelled."""
        if self.task is not None:
            try:
                await self.task
            except asyncio.CancelledError:
                if not self.task.cancelled():
                    raise
        return self.snapshot

    async def cancel(self) -> None:
        """Stop the run and return the orchestrator to ``idle``."""
        if self.task is not None and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                if not self.task.cancelled():
                    raise
        self._orchestrator._finish_cancelled(self)


class CreationOrchestrator:
    """Owns one book at a time: its draft, its images and its retry counters."""

    def __init__(
        self,
        config: Optional[GenerationConfig] = None,
        credentials: Optional[CredentialStore] = None,
        *,
        factory: Optional[ProviderFactory] = None,
        persistence: Optional[PersistenceCollaborator] = None,
        diagnostics: Optional[DiagnosticsLogger] = None,
    ):
        self.config = config or get_default_config()
        self.credentials = credentials or EnvironmentCredentialStore()
        self.factory = factory or ProviderFactory(self.config, self.credentials)
        self.persistence = persistence
        self.diagnostics = diagnostics or DiagnosticsLogger(self.config.diagnostics_path)

        self._phase = GenerationPhase.idle()
        self._run: Optional[GenerationRun] = None

        self.concept: Optional[str] = None
        self.book: Optional[StoryBook] = None
        self.images: Dict[int, Image.Image] = {}
        self.style = IllustrationStyle.ILLUSTRATION
        self.book_format = BookFormat.STANDARD
        self.text_provider_used: Optional[str] = None
        self.image_provider_used: Optional[str] = None

        self._characters: List[ParsedCharacter] = []
        self._analyses: Dict[int, PromptAnalysis] = {}
        self._retry_counters: Dict[int, int] = {}
        self.regenerating: Set[int] = set()
        self.regeneration_errors: Dict[int, str] = {}

        self.illustrator = self._new_illustrator()

    # -----------------------
    # Phase state machine
    # -----------------------

    @property
    def phase(self) -> GenerationPhase:
        return self._phase

    @property
    def retry_counters(self) -> Mapping[int, int]:
        """Read-only snapshot of per-page regeneration counters."""
        return MappingProxyType(dict(self._retry_counters))

    def _set_phase(self, phase: GenerationPhase, message: Optional[str] = None, image_index: Optional[int] = None) -> None:
        if not self._phase.can_transition_to(phase):
            raise InvalidPhaseTransition(f"Cannot move from {self._phase.kind.value} to {phase.kind.value}")
        if phase.kind != self._phase.kind:
            logger.info(f"Phase {self._phase.kind.value} -> {phase.kind.value}")
        self._phase = phase
        if self._run is not None:
            self._run._publish(GenerationEvent(phase=phase, message=message, image_index=image_index))

    async def _emit_text_progress(self, text: str) -> None:
        self._set_phase(GenerationPhase.generating_text(text), message=text)

    async def _emit_status(self, message: str) -> None:
        # Regeneration runs outside a creation run and has no stream to report to
        if self._phase.is_working:
            self._set_phase(self._phase, message=message)
        else:
            logger.info(message)

    def _finish_cancelled(self, run: GenerationRun) -> None:
        if run is self._run and self._phase.is_working:
            self._set_phase(GenerationPhase.idle(), message="Cancelled")
        run._close()

    def _new_illustrator(self) -> IllustrationGenerator:
        return IllustrationGenerator(
            self.factory.create_image_router(),
            self.diagnostics,
            self.config,
            completion=self.factory.structured_completion(),
            on_status=self._emit_status,
        )

    def reset(self) -> None:
        """Forget the current book; only allowed while no run is working."""
        if self._phase.is_working:
            raise InvalidPhaseTransition("Cannot reset while a generation is running")
        if self._phase.is_terminal:
            self._set_phase(GenerationPhase.idle())
        self.concept = None
        self.book = None
        self.images = {}
        self._characters = []
        self._analyses = {}
        self._retry_counters = {}
        self.regeneration_errors = {}

    # -----------------------
    # Creation
    # -----------------------

    def start(
        self,
        concept: str,
        page_count: Optional[int] = None,
        style: IllustrationStyle = IllustrationStyle.ILLUSTRATION,
        book_format: BookFormat = BookFormat.STANDARD,
    ) -> GenerationRun:
        """Validate the concept and start a run on the current event loop."""
        if self._phase.is_working:
            raise StoryForgeError("A generation is already running")
        self.reset()

        run = GenerationRun(self)
        self._run = run
        self.style = IllustrationStyle(style)
        self.book_format = BookFormat(book_format)

        check = validate_concept(concept, self.config.max_concept_length)
        if not check.allowed:
            logger.info(f"Concept blocked: {check.reason}")
            self._set_phase(GenerationPhase.failed(check.reason), message=check.reason)
            run._close()
            return run

        self.concept = check.sanitized_concept
        pages = self.config.clamp_page_count(page_count)
        run.task = asyncio.create_task(self._run_creation(run, check.sanitized_concept, pages))
        return run

    async def create(
        self,
        concept: str,
        page_count: Optional[int] = None,
        style: IllustrationStyle = IllustrationStyle.ILLUSTRATION,
        book_format: BookFormat = BookFormat.STANDARD,
    ) -> BookSnapshot:
        """Run a whole creation and return the snapshot, raising on failure."""
        run = self.start(concept, page_count, style, book_format)
        if run.task is None:
            raise ContentBlockedError(self._phase.reason or "")
        snapshot = await run.wait()
        if snapshot is None:
            raise StoryForgeError(self._phase.reason or "Generation did not complete")
        return snapshot

    async def _run_creation(self, run: GenerationRun, concept: str, page_count: int) -> None:
        try:
            self._set_phase(GenerationPhase.generating_text())
            book = await self.generate_text(concept, page_count, self._emit_text_progress)
            book, cover_prompt = await self.enrich_book(book, concept)
            self.book = book

            await self._generate_images(book, cover_prompt)

            snapshot = BookSnapshot(
                book=book,
                images=dict(self.images),
                format=self.book_format,
                style=self.style,
                text_provider=self.text_provider_used or "unknown",
                image_provider=self.image_provider_used or self.illustrator.router.primary_name,
            )
            if self.persistence is not None:
                await _maybe_await(self.persistence.create_record(snapshot))
            run.snapshot = snapshot
            self._set_phase(GenerationPhase.complete(), message=f"Created {book.title!r}")

        except asyncio.CancelledError:
            logger.info("Generation cancelled")
            if self._phase.is_working:
                self._set_phase(GenerationPhase.idle(), message="Cancelled")
            raise
        except Exception as e:
            if ErrorAnalyzer.is_guardrail(e):
                reason = GUARDRAIL_USER_MESSAGE
            elif isinstance(e, ContentBlockedError):
                reason = e.reason
            else:
                reason = str(e) or type(e).__name__
            logger.error(f"Generation failed: {e}")
            self._set_phase(GenerationPhase.failed(reason), message=reason)
        finally:
            run._close()

    async def _generate_images(self, book: StoryBook, cover_prompt: str) -> None:
        total = book.page_count + 1
        self._set_phase(GenerationPhase.generating_images(0, total))
        self.images = {}

        async for update in self.illustrator.generate_illustrations(
            book.pages, cover_prompt, self.style, self.book_format, self._analyses
        ):
            if update.image is not None:
                self.images[update.index] = update.image
            self._set_phase(
                GenerationPhase.generating_images(update.completed, total),
                message=update.message,
                image_index=update.index,
            )
        self.image_provider_used = self.illustrator.active_provider

    # -----------------------
    # Text routing
    # -----------------------

    async def generate_text(
        self,
        concept: str,
        page_count: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StoryBook:
        """Draft the story with the configured provider, falling back to the default path."""
        kind = TextProviderKind(self.config.text_provider)
        if kind is TextProviderKind.ON_DEVICE:
            return await self._generate_default_text(concept, page_count, on_progress)

        provider = self.factory.create_text_provider(kind)
        if kind is TextProviderKind.LOCAL_RUNTIME:
            fallback_message = LOCAL_FALLBACK_MESSAGE
        else:
            fallback_message = f"{kind.cloud_provider.display_name} failed, falling back to the default model..."

        try:
            logger.info(f"Drafting story with {provider.name}")
            book = await provider.generate_story(concept, page_count, on_progress)
            self.text_provider_used = provider.name
            return book
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if ErrorAnalyzer.is_guardrail(e) or not self.config.enable_text_fallback:
                raise
            logger.warning(f"{provider.name} text generation failed, rerouting: {e}")
            if on_progress is not None:
                await on_progress(fallback_message)

        return await self._generate_default_text(concept, page_count, on_progress)

    async def _generate_default_text(
        self,
        concept: str,
        page_count: int,
        on_progress: Optional[ProgressCallback],
    ) -> StoryBook:
        remote = self.factory.remote_text_provider()
        on_device = self.factory.on_device_text_provider()

        if remote is not None and remote.is_available():
            if on_progress is not None:
                await on_progress(REMOTE_DRAFTING_MESSAGE)
            try:
                book = await remote.generate_story(concept, page_count, on_progress)
                self.text_provider_used = remote.name
                return book
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if ErrorAnalyzer.is_guardrail(e) or not on_device.is_available():
                    raise
                logger.warning(f"Remote model failed, switching to on-device model: {e}")
                if on_progress is not None:
                    await on_progress(REMOTE_FALLBACK_MESSAGE)

        if not on_device.is_available():
            raise ModelUnavailableError(
                "No story model is available. Configure an on-device model or a cloud provider.",
                provider=on_device.name,
            )

        book = await on_device.generate_story(concept, page_count, on_progress)
        self.text_provider_used = on_device.name
        return book

    # -----------------------
    # Enrichment
    # -----------------------

    async def enrich_book(self, book: StoryBook, concept: str) -> Tuple[StoryBook, str]:
        """Repair the character sheet, analyze prompts and inject character looks.

        Returns the enriched book and the enriched cover prompt. Every step
        falls back to its heuristic, so this never fails the run.
        """
        completion = self.factory.structured_completion()

        validator = CharacterDescriptionValidator(completion)
        descriptions = await validator.validate_async(book.character_descriptions, book.pages, book.title)
        book = book.model_copy(update={"character_descriptions": descriptions})

        characters = await ImagePromptEnricher(completion).parse_character_descriptions_async(descriptions)
        self._characters = characters
        logger.info(f"Parsed {len(characters)} character(s) from the character sheet")

        cover_prompt = safe_cover_prompt(book.title, concept)
        prompts = [(0, cover_prompt)] + [(p.page_number, p.image_prompt) for p in book.pages]
        self._analyses = await PromptAnalysisEngine(completion).analyze_prompts(prompts)

        book = ImagePromptEnricher.enrich_image_prompts(book, self._analyses, characters)
        book = book.with_pages([
            page.model_copy(update={"image_prompt": enrich_prompt_with_characters(page.image_prompt, characters)})
            for page in book.pages
        ])
        return book, enrich_prompt_with_characters(cover_prompt, characters)

    # -----------------------
    # Edits and regeneration
    # -----------------------

    async def update_story_text(self, book: StoryBook) -> None:
        self.book = book
        if self.persistence is not None:
            await _maybe_await(self.persistence.on_text_edited(book))

    async def update_image_prompt(self, page_number: int, prompt: str) -> StoryBook:
        """Replace one page's illustration prompt ahead of regenerating it."""
        if self.book is None:
            raise StoryForgeError("There is no book to edit")
        if not 1 <= page_number <= self.book.page_count:
            raise ValueError(f"Page number {page_number} is out of range")
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("Image prompt must not be empty")
        # The stored analysis describes the old prompt.
        self._analyses.pop(page_number, None)
        await self.update_story_text(self.book.with_image_prompt(page_number, prompt))
        return self.book

    def missing_image_indices(self) -> List[int]:
        if self.book is None:
            return []
        return [
            index for index in range(self.book.page_count + 1)
            if index not in self.images and index not in self.regenerating
        ]

    def _prompt_for(self, index: int) -> str:
        if index == 0:
            return enrich_prompt_with_characters(safe_cover_prompt(self.book.title, self.book.moral), self._characters)
        return self.book.pages[index - 1].image_prompt

    def _check_regeneration_index(self, index: int) -> None:
        if self.book is None:
            raise StoryForgeError("There is no book to regenerate images for")
        if not 0 <= index <= self.book.page_count:
            raise ValueError(f"Page index {index} is out of range")

    def _claim_regeneration(self, index: int) -> int:
        """Mark a page as regenerating and return the variant index to start from."""
        counter = self._retry_counters.get(index, 0)
        self._retry_counters[index] = counter + 1
        self.regenerating.add(index)
        self.regeneration_errors.pop(index, None)
        return min(counter, self.config.max_variant_index)

    async def _render_page(self, index: int, starting_variant: int) -> Image.Image:
        return await self.illustrator.generate_single_image(
            self._prompt_for(index),
            self.style,
            self.book_format,
            starting_variant_index=starting_variant,
            page_index=index,
            analysis=self._analyses.get(index),
        )

    async def _settle_regeneration(
        self, index: int, image: Optional[Image.Image], error: Optional[BaseException]
    ) -> Optional[Image.Image]:
        self.regenerating.discard(index)
        if error is not None:
            logger.warning(f"Regeneration failed for page {index}: {error}")
            self.regeneration_errors[index] = user_facing_error_message(error)
            return None
        self.images[index] = image
        if self.persistence is not None:
            await _maybe_await(self.persistence.on_image_regenerated(index, image))
        return image

    async def regenerate_page(self, index: int) -> Optional[Image.Image]:
        """Regenerate one image, starting further down the variant chain on each retry."""
        self._check_regeneration_index(index)
        if index in self.regenerating:
            return None

        starting_variant = self._claim_regeneration(index)
        try:
            image = await self._render_page(index, starting_variant)
        except asyncio.CancelledError:
            self.regenerating.discard(index)
            raise
        except Exception as e:
            return await self._settle_regeneration(index, None, e)
        return await self._settle_regeneration(index, image, None)

    async def regenerate_all_missing(self) -> Dict[int, Optional[Image.Image]]:
        """Regenerate every missing image through the bounded pool.

        Workers only render; page state is updated here as each result arrives.
        """
        missing = self.missing_image_indices()
        if not missing:
            return {}
        starting_variants = {index: self._claim_regeneration(index) for index in missing}

        async def _worker(index: int) -> Image.Image:
            return await self._render_page(index, starting_variants[index])

        pool = BoundedWorkerPool(self.config.max_concurrent_images)
        regenerated: Dict[int, Optional[Image.Image]] = {}
        try:
            async for result in pool.map_unordered(missing, _worker):
                regenerated[result.task_id] = await self._settle_regeneration(
                    result.task_id, result.result, None if result.success else result.error
                )
        finally:
            self.regenerating.difference_update(starting_variants)
        return regenerated
