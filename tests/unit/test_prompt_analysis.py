"""Unit tests for illustration prompt analysis."""

import asyncio

import pytest

from storyforge.error_handling import MalformedOutputError
from storyforge.models import CharacterAnalysis, PromptAnalysis
from storyforge.prompt_analysis import PromptAnalysisEngine


class TestHeuristicAnalysis:
    """Test keyword-based analysis."""

    def test_extracts_all_fields(self):
        analysis = PromptAnalysisEngine.heuristic_analysis(
            "A small orange fox walking in the forest, warm and cozy"
        )

        assert analysis.characters == (CharacterAnalysis(species="fox", appearance="small orange fox"),)
        assert analysis.scene_setting == "in the forest"
        assert analysis.main_action == "walking"
        assert analysis.mood == "warm cozy"

    def test_multiple_species_in_order(self):
        analysis = PromptAnalysisEngine.heuristic_analysis("An owl and a rabbit share tea with the owl")
        assert [c.species for c in analysis.characters] == ["owl", "rabbit"]

    def test_scene_stops_at_clause_break(self):
        """The setting never runs past punctuation."""
        analysis = PromptAnalysisEngine.heuristic_analysis("Luna sits under the old oak tree, reading a book")
        assert analysis.scene_setting == "under the old oak tree"

    def test_scene_needs_whole_preposition(self):
        """Words that merely contain a preposition do not start a scene."""
        analysis = PromptAnalysisEngine.heuristic_analysis("Painting rainbows together")
        assert analysis.scene_setting == ""

    def test_empty_prompt(self):
        assert PromptAnalysisEngine.heuristic_analysis("").is_empty

    def test_heuristic_concepts(self):
        analysis = PromptAnalysis(
            characters=(CharacterAnalysis(species="fox"), CharacterAnalysis(species="owl")),
            scene_setting="in the forest",
            mood="cozy",
        )
        assert PromptAnalysisEngine.heuristic_concepts(analysis) == ["CHARACTER", "CHARACTER", "SETTING", "ATMOSPHERE"]


class TestModelAnalysis:
    """Test model-backed analysis."""

    @pytest.mark.asyncio
    async def test_without_model_uses_heuristics(self):
        engine = PromptAnalysisEngine()
        analysis = await engine.analyze_single("A fox in the snow")
        assert analysis.characters[0].species == "fox"

    @pytest.mark.asyncio
    async def test_uses_model_result(self, scripted_completion):
        expected = PromptAnalysis(
            characters=(CharacterAnalysis(name="Luna", species="fox", appearance="orange fox"),),
            scene_setting="snowy hill",
        )
        completion = scripted_completion({PromptAnalysis: [expected]})

        analysis = await PromptAnalysisEngine(completion).analyze_single("Luna on a snowy hill")

        assert analysis == expected
        assert completion.calls[0]["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_model_failure_falls_back(self, scripted_completion):
        completion = scripted_completion({PromptAnalysis: [MalformedOutputError("bad")]})
        analysis = await PromptAnalysisEngine(completion).analyze_single("A fox in the snow")
        assert analysis.characters[0].species == "fox"

    @pytest.mark.asyncio
    async def test_analyze_prompts_keys_by_index(self):
        engine = PromptAnalysisEngine()
        analyses = await engine.analyze_prompts([(0, "A cover with a bear"), (1, "A fox"), (2, "An owl")])

        assert sorted(analyses) == [0, 1, 2]
        assert analyses[0].characters[0].species == "bear"
        assert analyses[2].characters[0].species == "owl"

    @pytest.mark.asyncio
    async def test_analyze_prompts_empty(self):
        assert await PromptAnalysisEngine().analyze_prompts([]) == {}

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, scripted_completion):
        completion = scripted_completion({PromptAnalysis: [asyncio.CancelledError()]})
        with pytest.raises(asyncio.CancelledError):
            await PromptAnalysisEngine(completion).analyze_single("A fox")
