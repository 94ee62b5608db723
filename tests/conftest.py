"""Test configuration for path setup.

Ensures the `src` directory is on sys.path so the `storyforge` package
can be imported without installing the project in editable mode.
"""

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import pytest
from PIL import Image

from storyforge.context import GenerationConfig
from storyforge.llm_factory import StructuredCompletion


class ScriptedCompletion(StructuredCompletion):
    """Structured completion that answers from a per-schema script.

    Each schema maps to a list of responses consumed in order; a response
    that is an exception instance is raised instead of returned.
    """

    def __init__(self, script=None):
        self.script = {schema: list(responses) for schema, responses in (script or {}).items()}
        self.calls = []

    async def complete(self, *, instructions, prompt, schema, temperature=None, max_tokens=None, on_text=None):
        self.calls.append({
            "instructions": instructions,
            "prompt": prompt,
            "schema": schema,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        responses = self.script.get(schema)
        if not responses:
            raise RuntimeError(f"No scripted response for {schema.__name__}")
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, BaseException):
            raise response
        if on_text is not None:
            await on_text(response.model_dump_json(by_alias=True))
        return response

    def calls_for(self, schema):
        return [call for call in self.calls if call["schema"] is schema]


@pytest.fixture
def fast_config(tmp_path):
    """Configuration with every delay removed and storage under tmp_path."""
    return GenerationConfig(
        retry_delay_seconds=0,
        recovery_pass_delay_seconds=0,
        diagnostics_path=tmp_path / "diagnostics" / "image-generation.jsonl",
        model_cache_path=tmp_path / "model-catalog.json",
    )


@pytest.fixture
def sample_image():
    return Image.new("RGB", (8, 8), color="orange")


@pytest.fixture
def scripted_completion():
    """Factory for :class:`ScriptedCompletion` instances."""
    return ScriptedCompletion
