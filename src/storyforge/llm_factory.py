"""Chat model construction and schema-typed ("structured") completions."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Sequence, Type, TypeVar

from langchain.chat_models import init_chat_model
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, ValidationError
from transformers import pipeline as hf_pipeline

from storyforge.error_handling import (
    ErrorAnalyzer,
    ErrorCategory,
    GuardrailRejectedError,
    MalformedOutputError,
    ModelUnavailableError,
    StructuredCompletionError,
)
from storyforge.utils import parse_llm_json

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)
TextCallback = Callable[[str], Awaitable[None] | None]

# Providers whose LangChain chat class names the output cap differently
_MAX_TOKENS_FIELD = {"ollama": "num_predict"}

_REFUSAL_OPENINGS = (
    "i'm sorry",
    "i am sorry",
    "i can't help",
    "i cannot help",
    "i can't assist",
    "i cannot assist",
    "i'm unable to",
    "i am unable to",
)


def _coerce_message_content(content: Any) -> str:
    """Convert LangChain message content (which may be structured) into text."""

    if content is None:
        return ""

    if isinstance(content, str):
        return content

    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if item is None:
                continue
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict):
                text = item.get("text") or item.get("content") or item.get("generated_text")
                if text:
                    parts.append(str(text))
            else:
                parts.append(str(item))
        return "".join(part for part in parts if part)

    return str(content)


def _messages_to_prompt(messages: Sequence[BaseMessage]) -> str:
    """Convert chat messages to a single prompt string suitable for text-generation models."""

    lines: list[str] = []
    for message in messages:
        if isinstance(message, SystemMessage):
            prefix = "System"
        elif isinstance(message, HumanMessage):
            prefix = "User"
        else:
            prefix = "Assistant"
        normalized_content = _coerce_message_content(getattr(message, "content", ""))
        lines.append(f"{prefix}: {normalized_content}".strip())

    # Encourage the model to respond in the assistant role
    lines.append("Assistant:")
    return "\n".join(lines)


@dataclass(slots=True)
class HuggingFaceConfig:
    """Configuration for local transformers pipelines."""

    max_new_tokens: int = 2048
    temperature: float = 0.7
    model_kwargs: dict[str, Any] | None = None
    pipeline_task: str = "text-generation"
    pipeline_device: str | int | None = None
    pipeline_kwargs: dict[str, Any] | None = None


class HuggingFacePipelineChatWrapper:
    """Wrapper that exposes transformers pipelines through the LangChain chat APIs."""

    def __init__(
        self,
        pipe,
        call_kwargs: dict[str, Any],
        *,
        stream_callback: TextCallback | None = None,
    ) -> None:
        self._pipeline = pipe
        self._call_kwargs = call_kwargs
        self._stream_callback = stream_callback

    def _extract_text(self, output: Any) -> str:
        if output is None:
            return ""

        if isinstance(output, str):
            return output

        if isinstance(output, dict):
            for key in ("generated_text", "text"):
                value = output.get(key)
                if value:
                    return str(value)
            return ""

        if isinstance(output, Iterable):
            first = next(iter(output), None)
            if first is None:
                return ""
            if isinstance(first, dict):
                for key in ("generated_text", "text"):
                    value = first.get(key)
                    if value:
                        return str(value)
            return str(first)

        return str(output)

    async def ainvoke(self, messages: Sequence[BaseMessage], **overrides: Any) -> AIMessage:
        prompt = _messages_to_prompt(messages)
        call_kwargs = {**self._call_kwargs, **overrides}

        def _run_pipeline() -> str:
            output = self._pipeline(prompt, **call_kwargs)
            return self._extract_text(output).strip()

        text = await asyncio.to_thread(_run_pipeline)

        if text and self._stream_callback:
            result = self._stream_callback(text)
            if inspect.isawaitable(result):
                await result

        return AIMessage(content=text)


def _partition_pipeline_kwargs(
    config: HuggingFaceConfig,
    huggingface_api_key: str | None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split configuration into pipeline init kwargs and generation kwargs."""

    init_kwargs: dict[str, Any] = dict(config.pipeline_kwargs or {})
    generation_kwargs: dict[str, Any] = {
        "max_new_tokens": config.max_new_tokens,
        "temperature": config.temperature,
        "do_sample": config.temperature > 0,
        "return_full_text": False,
    }

    extra_model_kwargs = dict(config.model_kwargs or {})
    for key in ("device_map", "torch_dtype", "trust_remote_code", "revision"):
        if key in extra_model_kwargs:
            init_kwargs[key] = extra_model_kwargs.pop(key)

    device = config.pipeline_device
    if device is not None:
        if isinstance(device, str) and device.strip().lower() == "auto":
            init_kwargs.setdefault("device_map", "auto")
        else:
            init_kwargs["device"] = device

    if huggingface_api_key:
        init_kwargs.setdefault("token", huggingface_api_key)

    generation_kwargs.update(extra_model_kwargs)
    return init_kwargs, generation_kwargs


def split_model_string(model: str) -> tuple[str | None, str]:
    """Split 'provider:model' into its parts; the provider may be absent."""
    if ":" in model:
        provider, name = model.split(":", 1)
        if provider and "/" not in provider:
            return provider.strip().lower(), name.strip()
    return None, model.strip()


def create_chat_model(
    *,
    provider: str | None,
    model: str,
    temperature: float | None = None,
    max_tokens: int | None = None,
    huggingface_api_key: str | None = None,
    huggingface_config: HuggingFaceConfig | None = None,
    stream_callback: TextCallback | None = None,
) -> Any:
    """Instantiate a chat-capable model for the requested provider.

    ``provider="transformers"`` loads a local text-generation pipeline. Any
    other value is handed to LangChain's ``init_chat_model``. Failures are
    reported as :class:`ModelUnavailableError`.
    """

    if provider == "transformers":
        config = huggingface_config or HuggingFaceConfig()
        if temperature is not None:
            config.temperature = temperature
        if max_tokens is not None:
            config.max_new_tokens = max_tokens
        init_kwargs, generation_kwargs = _partition_pipeline_kwargs(config, huggingface_api_key)

        try:
            pipeline_instance = hf_pipeline(task=config.pipeline_task, model=model, **init_kwargs)
        except Exception as exc:
            raise ModelUnavailableError(
                f"Failed to initialize local model {model}: {exc}", provider="local_runtime"
            ) from exc

        return HuggingFacePipelineChatWrapper(
            pipeline_instance,
            generation_kwargs,
            stream_callback=stream_callback,
        )

    model_kwargs: dict[str, Any] = {}
    if temperature is not None:
        model_kwargs["temperature"] = temperature
    if max_tokens is not None:
        model_kwargs[_MAX_TOKENS_FIELD.get(provider or "", "max_tokens")] = max_tokens

    try:
        return init_chat_model(model=model, model_provider=provider, **model_kwargs)
    except Exception as exc:
        raise ModelUnavailableError(
            f"Could not initialise chat model {provider or ''}:{model}: {exc}", provider="on_device"
        ) from exc


async def stream_chat_text(
    llm: Any,
    messages: Sequence[BaseMessage],
    on_text: TextCallback | None = None,
) -> str:
    """Run a chat model and return its text, reporting accumulated text while it streams."""

    if on_text is None or not hasattr(llm, "astream"):
        response = await llm.ainvoke(messages)
        text = _coerce_message_content(getattr(response, "content", response))
        if on_text is not None and text:
            result = on_text(text)
            if inspect.isawaitable(result):
                await result
        return text

    collected: list[str] = []
    async for chunk in llm.astream(messages):
        token = _coerce_message_content(getattr(chunk, "content", chunk))
        if not token:
            continue
        collected.append(token)
        result = on_text("".join(collected))
        if inspect.isawaitable(result):
            await result
    return "".join(collected)


def _looks_like_refusal(text: str) -> bool:
    lowered = text.strip().lower()
    return "{" not in lowered and lowered.startswith(_REFUSAL_OPENINGS)


def schema_instructions(schema: Type[BaseModel]) -> str:
    """Describe the expected JSON shape to a model that has no native schema support."""
    schema_json = json.dumps(schema.model_json_schema(by_alias=True), separators=(",", ":"))
    return (
        "Respond with a single JSON object and nothing else. "
        f"It must validate against this JSON schema: {schema_json}"
    )


class StructuredCompletion(ABC):
    """Turns instructions and a prompt into an instance of a pydantic schema.

    Implementations raise :class:`GuardrailRejectedError`,
    :class:`MalformedOutputError` or :class:`ModelUnavailableError`.
    """

    @abstractmethod
    async def complete(
        self,
        *,
        instructions: str,
        prompt: str,
        schema: Type[SchemaT],
        temperature: float | None = None,
        max_tokens: int | None = None,
        on_text: TextCallback | None = None,
    ) -> SchemaT:
        """Return the model's answer validated against ``schema``."""
        pass


class ChatModelStructuredCompletion(StructuredCompletion):
    """Structured completion backed by any LangChain-style chat model."""

    def __init__(
        self,
        llm: Any = None,
        *,
        factory: Callable[[float | None, int | None], Any] | None = None,
        provider_name: str = "on_device",
    ) -> None:
        if llm is None and factory is None:
            raise ValueError("Either a chat model or a model factory is required")
        self._llm = llm
        self._factory = factory
        self._models: dict[tuple[float | None, int | None], Any] = {}
        self.provider_name = provider_name

    def _model_for(self, temperature: float | None, max_tokens: int | None) -> Any:
        if self._factory is None:
            return self._llm
        key = (temperature, max_tokens)
        if key not in self._models:
            self._models[key] = self._factory(temperature, max_tokens)
        return self._models[key]

    async def complete(
        self,
        *,
        instructions: str,
        prompt: str,
        schema: Type[SchemaT],
        temperature: float | None = None,
        max_tokens: int | None = None,
        on_text: TextCallback | None = None,
    ) -> SchemaT:
        llm = self._model_for(temperature, max_tokens)
        messages = [
            SystemMessage(content=f"{instructions}\n\n{schema_instructions(schema)}"),
            HumanMessage(content=prompt),
        ]

        try:
            text = await stream_chat_text(llm, messages, on_text)
        except StructuredCompletionError:
            raise
        except Exception as exc:
            category = ErrorAnalyzer.categorize_error(exc)
            if category == ErrorCategory.GUARDRAIL:
                raise GuardrailRejectedError(str(exc), provider=self.provider_name) from exc
            raise ModelUnavailableError(
                f"{self.provider_name} model call failed: {exc}", provider=self.provider_name
            ) from exc

        if not text.strip():
            raise MalformedOutputError("Model returned an empty response")
        if _looks_like_refusal(text):
            raise GuardrailRejectedError(text.strip()[:200], provider=self.provider_name)

        try:
            data = parse_llm_json(text)
            return schema.model_validate(data)
        except (ValueError, ValidationError) as exc:
            logger.debug("Structured output did not match %s: %s", schema.__name__, exc)
            raise MalformedOutputError(f"Response did not match {schema.__name__}: {exc}") from exc


def create_structured_completion(model_string: str | None) -> StructuredCompletion | None:
    """Structured completion over the configured default chat model, if any."""
    if not model_string:
        return None
    provider, model = split_model_string(model_string)

    def _factory(temperature: float | None, max_tokens: int | None) -> Any:
        return create_chat_model(
            provider=provider,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    return ChatModelStructuredCompletion(factory=_factory)
