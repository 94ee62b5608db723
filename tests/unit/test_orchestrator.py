"""Unit tests for the creation orchestrator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from storyforge.context import GenerationConfig
from storyforge.credentials import StaticCredentialStore
from storyforge.diagnostics import DiagnosticsLogger
from storyforge.error_handling import (
    GUARDRAIL_USER_MESSAGE,
    ContentBlockedError,
    GuardrailRejectedError,
    MalformedOutputError,
    ModelUnavailableError,
    ProviderHTTPError,
    StoryForgeError,
)
from storyforge.models import PhaseKind, StoryBook, StoryPage, TextProviderKind
from storyforge.orchestrator import (
    LOCAL_FALLBACK_MESSAGE,
    REMOTE_DRAFTING_MESSAGE,
    REMOTE_FALLBACK_MESSAGE,
    CreationOrchestrator,
)
from storyforge.providers import ImageOutcome


def _book(pages=4):
    return StoryBook(
        title="Luna's Lantern",
        author_line="Written by StoryForge",
        moral="Sharing light makes it brighter.",
        character_descriptions="Luna - a small orange fox, green scarf",
        pages=tuple(
            StoryPage(page_number=i, text=f"Page {i}.", image_prompt=f"Luna explores the meadow at dusk, scene {i}")
            for i in range(1, pages + 1)
        ),
    )


def _text_provider(name, result=None, error=None, available=True):
    provider = MagicMock()
    provider.name = name
    provider.is_available.return_value = available
    provider.generate_story = AsyncMock(return_value=result, side_effect=error)
    return provider


def _image_router(sample_image, error=None):
    router = MagicMock()
    router.primary_name = "together"
    if error is None:
        router.generate_image = AsyncMock(return_value=ImageOutcome(sample_image, "together"))
    else:
        router.generate_image = AsyncMock(side_effect=error)
    return router


def _factory(router, on_device=None, remote=None, text_providers=None):
    factory = MagicMock()
    factory.structured_completion.return_value = None
    factory.create_image_router.return_value = router
    factory.on_device_text_provider.return_value = on_device or _text_provider("on_device", available=False)
    factory.remote_text_provider.return_value = remote
    factory.create_text_provider.side_effect = lambda kind: (text_providers or {})[kind]
    return factory


def _orchestrator(config, factory, persistence=None):
    return CreationOrchestrator(
        config,
        StaticCredentialStore(),
        factory=factory,
        persistence=persistence,
        diagnostics=DiagnosticsLogger(config.diagnostics_path),
    )


class TestTextRouting:
    """Test provider selection and fallbacks for story text."""

    @pytest.mark.asyncio
    async def test_cloud_failure_falls_back_to_default(self, fast_config, sample_image):
        config = fast_config.model_copy(update={"text_provider": TextProviderKind.TOGETHER})
        cloud = _text_provider("together", error=ProviderHTTPError("together", 503, "down"))
        on_device = _text_provider("on_device", result=_book())
        factory = _factory(_image_router(sample_image), on_device=on_device,
                           text_providers={TextProviderKind.TOGETHER: cloud})
        orchestrator = _orchestrator(config, factory)
        progress = AsyncMock()

        book = await orchestrator.generate_text("a fox", 4, progress)

        assert book.title == "Luna's Lantern"
        assert orchestrator.text_provider_used == "on_device"
        progress.assert_any_await("Together AI failed, falling back to the default model...")

    @pytest.mark.asyncio
    async def test_guardrail_is_not_rerouted(self, fast_config, sample_image):
        config = fast_config.model_copy(update={"text_provider": TextProviderKind.OPENROUTER})
        cloud = _text_provider("openrouter", error=GuardrailRejectedError())
        on_device = _text_provider("on_device", result=_book())
        factory = _factory(_image_router(sample_image), on_device=on_device,
                           text_providers={TextProviderKind.OPENROUTER: cloud})

        with pytest.raises(GuardrailRejectedError):
            await _orchestrator(config, factory).generate_text("a fox", 4)
        on_device.generate_story.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fallback_disabled(self, fast_config, sample_image):
        config = fast_config.model_copy(update={
            "text_provider": TextProviderKind.TOGETHER,
            "enable_text_fallback": False,
        })
        cloud = _text_provider("together", error=ProviderHTTPError("together", 503, "down"))
        on_device = _text_provider("on_device", result=_book())
        factory = _factory(_image_router(sample_image), on_device=on_device,
                           text_providers={TextProviderKind.TOGETHER: cloud})

        with pytest.raises(ProviderHTTPError):
            await _orchestrator(config, factory).generate_text("a fox", 4)

    @pytest.mark.asyncio
    async def test_local_runtime_failure_message(self, fast_config, sample_image):
        config = fast_config.model_copy(update={"text_provider": TextProviderKind.LOCAL_RUNTIME})
        local = _text_provider("local_runtime", error=ModelUnavailableError("out of memory"))
        on_device = _text_provider("on_device", result=_book())
        factory = _factory(_image_router(sample_image), on_device=on_device,
                           text_providers={TextProviderKind.LOCAL_RUNTIME: local})
        progress = AsyncMock()

        await _orchestrator(config, factory).generate_text("a fox", 4, progress)

        progress.assert_any_await(LOCAL_FALLBACK_MESSAGE)

    @pytest.mark.asyncio
    async def test_remote_model_used_first(self, fast_config, sample_image):
        remote = _text_provider("remote", result=_book())
        on_device = _text_provider("on_device", result=_book())
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image), on_device, remote))
        progress = AsyncMock()

        await orchestrator.generate_text("a fox", 4, progress)

        assert orchestrator.text_provider_used == "remote"
        progress.assert_any_await(REMOTE_DRAFTING_MESSAGE)
        on_device.generate_story.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_remote_failure_switches_to_on_device(self, fast_config, sample_image):
        remote = _text_provider("remote", error=ProviderHTTPError("remote", 500, "oops"))
        on_device = _text_provider("on_device", result=_book())
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image), on_device, remote))
        progress = AsyncMock()

        await orchestrator.generate_text("a fox", 4, progress)

        assert orchestrator.text_provider_used == "on_device"
        progress.assert_any_await(REMOTE_FALLBACK_MESSAGE)

    @pytest.mark.asyncio
    async def test_remote_error_kept_without_on_device(self, fast_config, sample_image):
        remote = _text_provider("remote", error=ProviderHTTPError("remote", 500, "oops"))
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image), remote=remote))

        with pytest.raises(ProviderHTTPError):
            await orchestrator.generate_text("a fox", 4)

    @pytest.mark.asyncio
    async def test_no_model_available(self, fast_config, sample_image):
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image)))
        with pytest.raises(ModelUnavailableError):
            await orchestrator.generate_text("a fox", 4)


class TestCreation:
    """Test full runs through the phase state machine."""

    @pytest.mark.asyncio
    async def test_complete_run(self, fast_config, sample_image):
        on_device = _text_provider("on_device", result=_book())
        persistence = MagicMock()
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image), on_device), persistence)

        run = orchestrator.start("a fox who shares her lantern", 4)
        events = [event async for event in run.events()]
        snapshot = await run.wait()

        assert orchestrator.phase.kind is PhaseKind.COMPLETE
        assert events[0].phase.kind is PhaseKind.GENERATING_TEXT
        assert events[-1].phase.kind is PhaseKind.COMPLETE
        assert any(e.phase.kind is PhaseKind.GENERATING_IMAGES and e.image_index is not None for e in events)
        assert sorted(snapshot.images) == [0, 1, 2, 3, 4]
        assert snapshot.text_provider == "on_device"
        assert snapshot.image_provider == "together"
        persistence.create_record.assert_called_once_with(snapshot)

    @pytest.mark.asyncio
    async def test_page_count_is_clamped(self, fast_config, sample_image):
        on_device = _text_provider("on_device", result=_book())
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image), on_device))

        await orchestrator.create("a fox", 99)

        assert on_device.generate_story.call_args.args[1] == fast_config.max_pages

    @pytest.mark.asyncio
    async def test_blocked_concept(self, fast_config, sample_image):
        on_device = _text_provider("on_device", result=_book())
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image), on_device))

        run = orchestrator.start("a story about a gun")
        events = [event async for event in run.events()]

        assert run.task is None
        assert orchestrator.phase.kind is PhaseKind.FAILED
        assert "weapon" in orchestrator.phase.reason
        assert [e.phase.kind for e in events] == [PhaseKind.FAILED]
        on_device.generate_story.assert_not_awaited()

        with pytest.raises(ContentBlockedError):
            await orchestrator.create("a story about a gun")

    @pytest.mark.asyncio
    async def test_text_failure_fails_run(self, fast_config, sample_image):
        on_device = _text_provider("on_device", error=MalformedOutputError("Model response did not include valid pages."))
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image), on_device))

        with pytest.raises(StoryForgeError):
            await orchestrator.create("a fox")

        assert orchestrator.phase.kind is PhaseKind.FAILED
        assert orchestrator.phase.reason == "Model response did not include valid pages."

    @pytest.mark.asyncio
    async def test_guardrail_failure_message(self, fast_config, sample_image):
        on_device = _text_provider("on_device", error=GuardrailRejectedError())
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image), on_device))

        run = orchestrator.start("a fox")
        assert await run.wait() is None
        assert orchestrator.phase.reason == GUARDRAIL_USER_MESSAGE

    @pytest.mark.asyncio
    async def test_cancel_returns_to_idle(self, fast_config, sample_image):
        """Cancelling mid-draft stops the task and closes the event stream."""
        started = asyncio.Event()

        async def hang(*args, **kwargs):
            started.set()
            await asyncio.Event().wait()

        on_device = _text_provider("on_device")
        on_device.generate_story = AsyncMock(side_effect=hang)
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image), on_device))

        run = orchestrator.start("a fox")
        await started.wait()
        await run.cancel()

        events = [event async for event in run.events()]
        assert orchestrator.phase.kind is PhaseKind.IDLE
        assert events[-1].message == "Cancelled"
        assert run.done
        assert await run.wait() is None

    @pytest.mark.asyncio
    async def test_cancel_during_images(self, fast_config, sample_image):
        """No image succeeds after cancellation is acknowledged."""
        second_call = asyncio.Event()
        calls = {"count": 0}

        async def generate(prompt, style, book_format, on_status=None):
            calls["count"] += 1
            if calls["count"] == 1:
                return ImageOutcome(sample_image, "together")
            second_call.set()
            await asyncio.Event().wait()

        router = MagicMock()
        router.primary_name = "together"
        router.generate_image = AsyncMock(side_effect=generate)
        on_device = _text_provider("on_device", result=_book())
        orchestrator = _orchestrator(fast_config, _factory(router, on_device))
        diagnostics = orchestrator.diagnostics

        run = orchestrator.start("a fox")
        await second_call.wait()
        await asyncio.sleep(0.01)
        assert orchestrator.phase.kind is PhaseKind.GENERATING_IMAGES

        await run.cancel()
        successes = [e for e in diagnostics.read_entries() if e["event"] == "attempt_succeeded"]
        await asyncio.sleep(0.02)

        assert orchestrator.phase.kind is PhaseKind.IDLE
        assert [e for e in diagnostics.read_entries() if e["event"] == "attempt_succeeded"] == successes

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, fast_config, sample_image):
        started = asyncio.Event()

        async def hang(*args, **kwargs):
            started.set()
            await asyncio.Event().wait()

        on_device = _text_provider("on_device")
        on_device.generate_story = AsyncMock(side_effect=hang)
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image), on_device))

        run = orchestrator.start("a fox")
        await started.wait()
        with pytest.raises(StoryForgeError):
            orchestrator.start("another fox")
        await run.cancel()


class TestEnrichment:
    @pytest.mark.asyncio
    async def test_character_looks_injected(self, fast_config, sample_image):
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image)))

        book, cover_prompt = await orchestrator.enrich_book(_book(), "a fox who shares")

        assert all("fox" in page.image_prompt for page in book.pages)
        assert cover_prompt.startswith("Featuring Luna")
        assert "a fox who shares" in cover_prompt


class TestRegeneration:
    """Test per-page regeneration and its counters."""

    def _ready(self, config, sample_image, images=None, persistence=None):
        orchestrator = _orchestrator(config, _factory(_image_router(sample_image)), persistence)
        orchestrator.book = _book()
        orchestrator.images = dict(images or {})
        return orchestrator

    @pytest.mark.asyncio
    async def test_counter_moves_start_variant(self, fast_config, sample_image):
        orchestrator = self._ready(fast_config, sample_image)
        orchestrator.illustrator.generate_single_image = AsyncMock(return_value=sample_image)

        await orchestrator.regenerate_page(2)
        await orchestrator.regenerate_page(2)

        starts = [c.kwargs["starting_variant_index"] for c in orchestrator.illustrator.generate_single_image.call_args_list]
        assert starts == [0, 1]
        assert orchestrator.retry_counters[2] == 2
        assert orchestrator.images[2] is sample_image

    @pytest.mark.asyncio
    async def test_counter_start_is_capped(self, fast_config, sample_image):
        config = fast_config.model_copy(update={"max_variant_index": 1})
        orchestrator = self._ready(config, sample_image)
        orchestrator.illustrator.generate_single_image = AsyncMock(return_value=sample_image)

        for _ in range(3):
            await orchestrator.regenerate_page(1)

        starts = [c.kwargs["starting_variant_index"] for c in orchestrator.illustrator.generate_single_image.call_args_list]
        assert starts == [0, 1, 1]

    def test_counters_are_read_only(self, fast_config, sample_image):
        orchestrator = self._ready(fast_config, sample_image)
        with pytest.raises(TypeError):
            orchestrator.retry_counters[1] = 5

    @pytest.mark.asyncio
    async def test_failure_records_user_message(self, fast_config, sample_image):
        orchestrator = self._ready(fast_config, sample_image)
        orchestrator.illustrator.router.generate_image = AsyncMock(side_effect=GuardrailRejectedError())

        assert await orchestrator.regenerate_page(3) is None

        assert orchestrator.regeneration_errors[3].startswith("Image safety filter blocked")
        assert 3 not in orchestrator.regenerating
        assert orchestrator.missing_image_indices() == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_cover_uses_safe_cover_prompt(self, fast_config, sample_image):
        orchestrator = self._ready(fast_config, sample_image)
        orchestrator.illustrator.generate_single_image = AsyncMock(return_value=sample_image)

        await orchestrator.regenerate_page(0)

        prompt = orchestrator.illustrator.generate_single_image.call_args.args[0]
        assert "Luna's Lantern" in prompt or "Lunas Lantern" in prompt
        assert "Sharing light makes it brighter." in prompt

    @pytest.mark.asyncio
    async def test_regenerate_all_missing(self, fast_config, sample_image):
        persistence = MagicMock()
        persistence.on_image_regenerated = AsyncMock()
        orchestrator = self._ready(fast_config, sample_image, images={0: sample_image, 1: sample_image},
                                   persistence=persistence)

        results = await orchestrator.regenerate_all_missing()

        assert sorted(results) == [2, 3, 4]
        assert orchestrator.missing_image_indices() == []
        assert persistence.on_image_regenerated.await_count == 3

    @pytest.mark.asyncio
    async def test_regenerate_all_missing_bookkeeping(self, fast_config, sample_image):
        """Pages are claimed before any render and settled from each result."""
        persistence = MagicMock()
        persistence.on_image_regenerated = AsyncMock()
        orchestrator = self._ready(fast_config, sample_image, images={0: sample_image, 1: sample_image},
                                   persistence=persistence)
        counters_at_render = []

        async def render(prompt, style, book_format, *, starting_variant_index, page_index, analysis):
            counters_at_render.append(dict(orchestrator.retry_counters))
            if page_index == 3:
                raise GuardrailRejectedError()
            return sample_image

        orchestrator.illustrator.generate_single_image = AsyncMock(side_effect=render)

        results = await orchestrator.regenerate_all_missing()

        assert counters_at_render[0] == {2: 1, 3: 1, 4: 1}
        assert results == {2: sample_image, 3: None, 4: sample_image}
        assert sorted(orchestrator.images) == [0, 1, 2, 4]
        assert orchestrator.regeneration_errors[3].startswith("Image safety filter blocked")
        assert orchestrator.regenerating == set()
        regenerated = sorted(c.args[0] for c in persistence.on_image_regenerated.await_args_list)
        assert regenerated == [2, 4]

    @pytest.mark.asyncio
    async def test_regenerate_all_missing_respects_concurrency(self, fast_config, sample_image):
        config = fast_config.model_copy(update={"max_concurrent_images": 2})
        orchestrator = self._ready(config, sample_image)
        orchestrator.book = _book(pages=8)
        in_flight = {"now": 0, "peak": 0}

        async def render(prompt, style, book_format, **kwargs):
            in_flight["now"] += 1
            in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
            await asyncio.sleep(0.01)
            in_flight["now"] -= 1
            return sample_image

        orchestrator.illustrator.generate_single_image = AsyncMock(side_effect=render)

        await orchestrator.regenerate_all_missing()

        assert in_flight["peak"] == 2
        assert sorted(orchestrator.images) == list(range(9))

    @pytest.mark.asyncio
    async def test_image_prompt_edit_is_used_and_persisted(self, fast_config, sample_image):
        persistence = MagicMock()
        persistence.on_text_edited = AsyncMock()
        orchestrator = self._ready(fast_config, sample_image, persistence=persistence)
        orchestrator._analyses = {2: MagicMock(), 3: MagicMock()}
        orchestrator.illustrator.generate_single_image = AsyncMock(return_value=sample_image)

        book = await orchestrator.update_image_prompt(2, "  Luna naps under a willow  ")
        await orchestrator.regenerate_page(2)

        assert book.pages[1].image_prompt == "Luna naps under a willow"
        assert book.pages[0].image_prompt == _book().pages[0].image_prompt
        persistence.on_text_edited.assert_awaited_once_with(book)
        call = orchestrator.illustrator.generate_single_image.call_args
        assert call.args[0] == "Luna naps under a willow"
        assert call.kwargs["analysis"] is None
        assert 3 in orchestrator._analyses

    @pytest.mark.asyncio
    async def test_image_prompt_edit_rejects_bad_input(self, fast_config, sample_image):
        orchestrator = self._ready(fast_config, sample_image)
        with pytest.raises(ValueError):
            await orchestrator.update_image_prompt(0, "A cover")
        with pytest.raises(ValueError):
            await orchestrator.update_image_prompt(1, "   ")

    @pytest.mark.asyncio
    async def test_bad_index(self, fast_config, sample_image):
        orchestrator = self._ready(fast_config, sample_image)
        with pytest.raises(ValueError):
            await orchestrator.regenerate_page(9)

    @pytest.mark.asyncio
    async def test_no_book(self, fast_config, sample_image):
        orchestrator = _orchestrator(fast_config, _factory(_image_router(sample_image)))
        with pytest.raises(StoryForgeError):
            await orchestrator.regenerate_page(0)

    @pytest.mark.asyncio
    async def test_text_edit_is_persisted(self, fast_config, sample_image):
        persistence = MagicMock()
        persistence.on_text_edited = AsyncMock()
        orchestrator = self._ready(fast_config, sample_image, persistence=persistence)
        edited = _book().with_pages([StoryPage(page_number=1, text="New", image_prompt="A fox")])

        await orchestrator.update_story_text(edited)

        assert orchestrator.book is edited
        persistence.on_text_edited.assert_awaited_once_with(edited)


def test_default_config_builds_real_factory(tmp_path):
    config = GenerationConfig(diagnostics_path=tmp_path / "d.jsonl", model_cache_path=tmp_path / "m.json")
    orchestrator = CreationOrchestrator(config, StaticCredentialStore())
    assert orchestrator.phase.kind is PhaseKind.IDLE
    assert orchestrator.illustrator.router.primary_name == "on_device"
