"""Tests for chat model construction and structured completions."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from pydantic import BaseModel

from storyforge.error_handling import GuardrailRejectedError, MalformedOutputError, ModelUnavailableError
from storyforge.llm_factory import (
    ChatModelStructuredCompletion,
    HuggingFaceConfig,
    HuggingFacePipelineChatWrapper,
    StructuredCompletion,
    create_chat_model,
    create_structured_completion,
    split_model_string,
    stream_chat_text,
)


class Greeting(BaseModel):
    text: str


def _llm_returning(content):
    llm = MagicMock()
    llm.ainvoke = AsyncMock(return_value=AIMessage(content=content))
    del llm.astream
    return llm


class TestCreateChatModel:
    """Test chat model construction."""

    def test_init_chat_model_receives_settings(self):
        """Temperature and the output cap are forwarded to LangChain."""
        with patch("storyforge.llm_factory.init_chat_model") as mock_init:
            mock_init.return_value = MagicMock()
            create_chat_model(provider="openai", model="gpt-4o-mini", temperature=0.3, max_tokens=200)

        mock_init.assert_called_once_with(
            model="gpt-4o-mini", model_provider="openai", temperature=0.3, max_tokens=200
        )

    def test_ollama_uses_num_predict(self):
        with patch("storyforge.llm_factory.init_chat_model") as mock_init:
            create_chat_model(provider="ollama", model="llama3.2", max_tokens=120)

        assert mock_init.call_args.kwargs["num_predict"] == 120

    def test_init_failure_is_model_unavailable(self):
        with patch("storyforge.llm_factory.init_chat_model", side_effect=ImportError("missing package")):
            with pytest.raises(ModelUnavailableError):
                create_chat_model(provider="ollama", model="llama3.2")

    def test_transformers_pipeline(self):
        """The transformers provider wraps a local text-generation pipeline."""
        fake_pipeline = MagicMock()
        with patch("storyforge.llm_factory.hf_pipeline", return_value=fake_pipeline) as mock_pipeline:
            wrapper = create_chat_model(
                provider="transformers",
                model="Qwen/Qwen3-1.7B",
                temperature=0.5,
                max_tokens=300,
                huggingface_config=HuggingFaceConfig(pipeline_device="auto"),
            )

        assert isinstance(wrapper, HuggingFacePipelineChatWrapper)
        assert mock_pipeline.call_args.kwargs["device_map"] == "auto"
        assert wrapper._call_kwargs["max_new_tokens"] == 300
        assert wrapper._call_kwargs["do_sample"] is True

    def test_transformers_failure_is_model_unavailable(self):
        with patch("storyforge.llm_factory.hf_pipeline", side_effect=OSError("no weights")):
            with pytest.raises(ModelUnavailableError) as exc_info:
                create_chat_model(provider="transformers", model="missing/model")
        assert exc_info.value.provider == "local_runtime"

    @pytest.mark.parametrize("raw,expected", [
        ("ollama:llama3.2", ("ollama", "llama3.2")),
        ("OpenAI:gpt-4o-mini", ("openai", "gpt-4o-mini")),
        ("gpt-4o-mini", (None, "gpt-4o-mini")),
        ("meta-llama/Llama-3.1-8B:free", (None, "meta-llama/Llama-3.1-8B:free")),
    ])
    def test_split_model_string(self, raw, expected):
        assert split_model_string(raw) == expected


class TestPipelineWrapper:
    """Test the transformers pipeline chat wrapper."""

    @pytest.mark.asyncio
    async def test_ainvoke_formats_roles(self):
        pipe = MagicMock(return_value=[{"generated_text": " Hello there "}])
        wrapper = HuggingFacePipelineChatWrapper(pipe, {"max_new_tokens": 10})

        message = await wrapper.ainvoke([SystemMessage(content="Be kind"), HumanMessage(content="Hi")])

        assert message.content == "Hello there"
        prompt = pipe.call_args.args[0]
        assert prompt == "System: Be kind\nUser: Hi\nAssistant:"


class TestStreamChatText:
    """Test streaming text collection."""

    @pytest.mark.asyncio
    async def test_streams_accumulated_text(self):
        async def _astream(messages):
            for token in ["{\"te", "xt\": ", "\"hi\"}"]:
                yield AIMessage(content=token)

        llm = MagicMock()
        llm.astream = _astream
        seen = []

        async def on_text(text):
            seen.append(text)

        result = await stream_chat_text(llm, [HumanMessage(content="x")], on_text)

        assert result == '{"text": "hi"}'
        assert seen[-1] == result
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_without_callback_uses_ainvoke(self):
        llm = _llm_returning([{"type": "text", "text": "part one "}, "part two"])
        assert await stream_chat_text(llm, [HumanMessage(content="x")]) == "part one part two"


class TestChatModelStructuredCompletion:
    """Test schema-typed completions over a chat model."""

    def test_requires_model_or_factory(self):
        with pytest.raises(ValueError):
            ChatModelStructuredCompletion()

    def test_interface_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            StructuredCompletion()

    def test_subclass_must_implement_complete(self):
        class Incomplete(StructuredCompletion):
            pass

        with pytest.raises(TypeError):
            Incomplete()

    @pytest.mark.asyncio
    async def test_parses_schema(self):
        completion = ChatModelStructuredCompletion(_llm_returning('Sure! {"text": "Hello"}'))
        result = await completion.complete(instructions="Greet", prompt="Say hi", schema=Greeting)
        assert result == Greeting(text="Hello")

    @pytest.mark.asyncio
    async def test_schema_is_described_to_the_model(self):
        llm = _llm_returning('{"text": "Hello"}')
        completion = ChatModelStructuredCompletion(llm)
        await completion.complete(instructions="Greet", prompt="Say hi", schema=Greeting)

        system, human = llm.ainvoke.call_args.args[0]
        assert system.content.startswith("Greet")
        assert "JSON schema" in system.content
        assert human.content == "Say hi"

    @pytest.mark.asyncio
    async def test_refusal_is_guardrail(self):
        completion = ChatModelStructuredCompletion(_llm_returning("I'm sorry, but I can't write that."))
        with pytest.raises(GuardrailRejectedError):
            await completion.complete(instructions="Greet", prompt="x", schema=Greeting)

    @pytest.mark.asyncio
    async def test_wrong_shape_is_malformed(self):
        completion = ChatModelStructuredCompletion(_llm_returning('{"other": 1}'))
        with pytest.raises(MalformedOutputError):
            await completion.complete(instructions="Greet", prompt="x", schema=Greeting)

    @pytest.mark.asyncio
    async def test_empty_response_is_malformed(self):
        completion = ChatModelStructuredCompletion(_llm_returning("   "))
        with pytest.raises(MalformedOutputError):
            await completion.complete(instructions="Greet", prompt="x", schema=Greeting)

    @pytest.mark.asyncio
    async def test_provider_errors_are_classified(self):
        """Content-policy errors become guardrail rejections; others mean the model is unavailable."""
        llm = MagicMock()
        del llm.astream
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("blocked by content policy"))
        with pytest.raises(GuardrailRejectedError):
            await ChatModelStructuredCompletion(llm).complete(instructions="i", prompt="p", schema=Greeting)

        llm.ainvoke = AsyncMock(side_effect=RuntimeError("connection refused"))
        with pytest.raises(ModelUnavailableError):
            await ChatModelStructuredCompletion(llm).complete(instructions="i", prompt="p", schema=Greeting)

    @pytest.mark.asyncio
    async def test_factory_caches_per_settings(self):
        """One model is built per (temperature, max_tokens) pair."""
        factory = MagicMock(side_effect=lambda t, m: _llm_returning('{"text": "ok"}'))
        completion = ChatModelStructuredCompletion(factory=factory)

        await completion.complete(instructions="i", prompt="p", schema=Greeting, temperature=0.2, max_tokens=50)
        await completion.complete(instructions="i", prompt="p", schema=Greeting, temperature=0.2, max_tokens=50)
        await completion.complete(instructions="i", prompt="p", schema=Greeting, temperature=0.9, max_tokens=50)

        assert factory.call_count == 2


class TestCreateStructuredCompletion:
    """Test the default completion factory."""

    def test_none_without_model(self):
        assert create_structured_completion(None) is None
        assert create_structured_completion("") is None

    def test_lazy_model_creation(self):
        """The chat model is only built on first use."""
        with patch("storyforge.llm_factory.create_chat_model") as mock_create:
            completion = create_structured_completion("ollama:llama3.2")
            assert completion is not None
            mock_create.assert_not_called()
            completion._model_for(0.2, 100)

        mock_create.assert_called_once_with(provider="ollama", model="llama3.2", temperature=0.2, max_tokens=100)
