from __future__ import annotations

import json
import os
import re
import sys
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from .config import DEFAULT_MODEL
from .errors import GenerationParseError, PipelineCancelled, TransientGenerationError

_REASONING_MODEL_RE = re.compile(r"^(o\d|gpt-5)", re.IGNORECASE)
_FENCE_RE = re.compile(r"^```(?:json|JSON)?\s*\n?(.*?)\n?```\s*$", re.DOTALL)

REASONING_LEVELS = ("low", "medium", "high")


@dataclass(frozen=True)
class GenerationOptions:
    temperature: float = 0.5
    max_output_tokens: int = 8192
    response_format: str = "json"
    reasoning_level: Optional[str] = None


class GenerationClient(Protocol):
    def generate(self, prompt: str, options: GenerationOptions) -> str: ...


def is_reasoning_model_name(model_name: str) -> bool:
    return bool(_REASONING_MODEL_RE.match(model_name.strip()))


def build_chat_model(
    model_name: str,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
):
    try:
        from langchain_openai import ChatOpenAI  # type: ignore
    except Exception:
        print(
            "Generation requested but langchain-openai is unavailable. "
            "Install with: python -m pip install langchain-openai",
            file=sys.stderr,
        )
        return None
    base_url = os.getenv("OPENAI_BASE_URL") or os.getenv("OPENAI_API_BASE")
    kwargs: dict[str, Any] = {"model": model_name}
    if max_tokens:
        kwargs["max_tokens"] = max_tokens
    if temperature is not None and not is_reasoning_model_name(model_name):
        kwargs["temperature"] = temperature
    if base_url:
        try:
            return ChatOpenAI(**kwargs, base_url=base_url)
        except TypeError:
            try:
                return ChatOpenAI(**kwargs, openai_api_base=base_url)
            except TypeError:
                kwargs.pop("temperature", None)
                return ChatOpenAI(**kwargs, openai_api_base=base_url)
    try:
        return ChatOpenAI(**kwargs)
    except TypeError:
        kwargs.pop("temperature", None)
        return ChatOpenAI(**kwargs)


def extract_text(result: object) -> str:
    content = getattr(result, "content", None)
    if content is None and isinstance(result, dict):
        content = result.get("content")
    if content is None:
        return str(result)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text") or ""))
            else:
                parts.append(str(part))
        return "".join(parts)
    return str(content)


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def parse_json_response(text: str) -> Any:
    cleaned = strip_code_fences(text or "")
    if not cleaned:
        raise GenerationParseError("generator returned an empty response", text or "")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as exc:
            raise GenerationParseError(f"invalid JSON from generator: {exc}", text) from exc
    raise GenerationParseError("no JSON object found in generator response", text)


class OpenAICompatClient:
    """Generation client backed by ``ChatOpenAI``.

    Works against any OpenAI-compatible endpoint; ``OPENAI_BASE_URL`` (or
    ``OPENAI_API_BASE``) selects the server. Token usage of the most recent
    call on the current thread is available as ``last_usage``.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        *,
        cancel_token: Any = None,
        model_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.model_name = model
        self.cancel_token = cancel_token
        self._factory = model_factory or build_chat_model
        self._models: dict[tuple[float, int], Any] = {}
        self._models_lock = threading.Lock()
        self._local = threading.local()

    @property
    def last_usage(self) -> dict[str, int]:
        return getattr(self._local, "usage", {"prompt_tokens": 0, "completion_tokens": 0})

    def _model_for(self, options: GenerationOptions):
        key = (options.temperature, options.max_output_tokens)
        with self._models_lock:
            model = self._models.get(key)
            if model is None:
                model = self._factory(
                    self.model_name,
                    temperature=options.temperature,
                    max_tokens=options.max_output_tokens,
                )
                if model is None:
                    raise TransientGenerationError(f"could not build chat model {self.model_name}")
                self._models[key] = model
        return model

    def generate(self, prompt: str, options: GenerationOptions) -> str:
        if self.cancel_token is not None and self.cancel_token.cancelled:
            raise PipelineCancelled("cancelled before generation call")
        model = self._model_for(options)
        bind_kwargs: dict[str, Any] = {}
        if options.response_format == "json":
            bind_kwargs["response_format"] = {"type": "json_object"}
        if options.reasoning_level in REASONING_LEVELS and is_reasoning_model_name(self.model_name):
            bind_kwargs["reasoning_effort"] = options.reasoning_level
        runnable = model.bind(**bind_kwargs) if bind_kwargs else model
        self._local.usage = {"prompt_tokens": 0, "completion_tokens": 0}
        try:
            message = runnable.invoke(prompt)
        except Exception as exc:
            raise TransientGenerationError(f"generation call failed: {exc}") from exc
        usage = getattr(message, "usage_metadata", None) or {}
        self._local.usage = {
            "prompt_tokens": int(usage.get("input_tokens") or 0),
            "completion_tokens": int(usage.get("output_tokens") or 0),
        }
        return extract_text(message)
