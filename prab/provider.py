"""Model provider boundary and the LiteLLM-backed Groq implementation."""

import json
import logging
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterator

from .report import AgentError, ProviderError
from .tools import ToolCall

logger = logging.getLogger(__name__)

GROQ_MODELS_URL = "https://api.groq.com/openai/v1/models"
DEFAULT_MODEL_ID = "openai/gpt-oss-20b"


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class StreamChunk:
    """One item from ``stream_chat``.

    A chunk may carry a text delta, the finalized tool-call list for the
    response, usage numbers, or any combination.
    """

    content: str = ""
    tool_calls: list[ToolCall] | None = None
    usage: Usage | None = None


@dataclass
class ModelInfo:
    id: str
    provider: str
    capabilities: list[str] = field(default_factory=list)
    description: str = ""
    context_window: int | None = None

    @property
    def supports_tools(self) -> bool:
        return "function_calling" in self.capabilities

    @property
    def context_label(self) -> str:
        return format_context_window(self.context_window) if self.context_window else "?"


_CHAT_CAPS = ["chat", "streaming", "function_calling"]

MODEL_CATALOG: dict[str, ModelInfo] = {
    m.id: m
    for m in [
        ModelInfo(
            "openai/gpt-oss-20b", "groq", _CHAT_CAPS,
            "GPT-OSS 20B, OpenAI open-weight model with solid function calling", 131072,
        ),
        ModelInfo(
            "openai/gpt-oss-120b", "groq", _CHAT_CAPS,
            "GPT-OSS 120B, larger open-weight model for harder tasks", 131072,
        ),
        ModelInfo(
            "llama-3.3-70b-versatile", "groq", _CHAT_CAPS,
            "Llama 3.3 70B, fast and versatile, good for coding tasks", 131072,
        ),
        ModelInfo(
            "llama-3.1-8b-instant", "groq", _CHAT_CAPS,
            "Llama 3.1 8B, fast and efficient for quick responses", 131072,
        ),
        ModelInfo(
            "moonshotai/kimi-k2-instruct", "groq", _CHAT_CAPS,
            "Kimi K2, agentic model with long context", 131072,
        ),
        ModelInfo(
            "qwen/qwen3-32b", "groq", _CHAT_CAPS,
            "Qwen3 32B, reasoning model with tool use", 131072,
        ),
    ]
}


def format_context_window(tokens: int) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.0f}M"
    if tokens >= 1000:
        return f"{tokens / 1000:.0f}K"
    return str(tokens)


def validate_model_id(model_id: str) -> tuple[bool, str | None, str | None]:
    """Check ``model_id`` against the catalog.

    Returns (valid, error, suggestion). The suggestion is the first
    catalog id containing ``model_id`` case-insensitively.
    """
    if model_id in MODEL_CATALOG:
        return True, None, None
    needle = model_id.lower()
    suggestion = next((m for m in MODEL_CATALOG if needle and needle in m.lower()), None)
    return False, f"Invalid model ID: {model_id}", suggestion


@dataclass
class RemoteModel:
    id: str
    owned_by: str
    context_window: int | None
    active: bool = True


def fetch_available_models(api_key: str, url: str = GROQ_MODELS_URL) -> list[RemoteModel]:
    """List models from the Groq API, active ones only, sorted by id."""
    req = urllib.request.Request(url, headers={"Authorization": f"Bearer {api_key}"})
    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            data = json.loads(resp.read().decode())
    except urllib.error.URLError as e:
        raise ProviderError(f"could not list models from {url}: {e}")
    except json.JSONDecodeError as e:
        raise ProviderError(f"invalid JSON from {url}: {e}")

    models = [
        RemoteModel(
            id=entry["id"],
            owned_by=entry.get("owned_by") or "Other",
            context_window=entry.get("context_window"),
            active=entry.get("active", True) is not False,
        )
        for entry in data.get("data", [])
        if "id" in entry
    ]
    return sorted((m for m in models if m.active), key=lambda m: m.id)


def group_models_by_owner(models: list[RemoteModel]) -> dict[str, list[RemoteModel]]:
    groups: dict[str, list[RemoteModel]] = {}
    for m in models:
        groups.setdefault(m.owned_by, []).append(m)
    return groups


class ModelProvider(ABC):
    """What the conversation loop needs from a chat model.

    Switching models is ``set_model``; history lives with the caller.
    """

    name: str = "abstract"

    @abstractmethod
    def initialize(self, api_key: str | None, model_id: str | None = None) -> None: ...

    @abstractmethod
    def stream_chat(self, messages: list[dict], tools: list[dict]) -> Iterator[StreamChunk]: ...

    @abstractmethod
    def get_info(self) -> ModelInfo: ...

    @property
    @abstractmethod
    def model_id(self) -> str: ...

    def set_model(self, model_id: str) -> None:
        raise NotImplementedError


def _get(obj, key, default=None):
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def parse_tool_arguments(raw: str, name: str) -> dict:
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("malformed arguments for %s: %s", name, e)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def accumulate_tool_call_deltas(acc: list[dict], deltas) -> None:
    """Fold streamed tool-call fragments into ``acc`` by their index."""
    for fragment in deltas:
        idx = _get(fragment, "index", None)
        if idx is None:
            idx = len(acc)
        while len(acc) <= idx:
            acc.append({"id": "", "name": "", "arguments": ""})
        slot = acc[idx]
        if _get(fragment, "id"):
            slot["id"] = _get(fragment, "id")
        fn = _get(fragment, "function")
        if fn is not None:
            if _get(fn, "name"):
                slot["name"] = _get(fn, "name")
            if _get(fn, "arguments"):
                slot["arguments"] += _get(fn, "arguments")


def finalize_tool_calls(acc: list[dict]) -> list[ToolCall]:
    calls = []
    for i, slot in enumerate(acc):
        if not slot["name"]:
            continue
        call_id = slot["id"] or f"call-{int(time.time() * 1000)}-{i}"
        calls.append(ToolCall(call_id, slot["name"], parse_tool_arguments(slot["arguments"], slot["name"])))
    return calls


class LiteLLMProvider(ModelProvider):
    """Groq chat models through ``litellm.completion(stream=True)``."""

    name = "groq"

    def __init__(
        self,
        *,
        temperature: float | None = 0.7,
        max_tokens: int | None = None,
        api_base: str | None = None,
    ):
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_base = api_base
        self.api_key: str | None = None
        self._model_id: str | None = None

    @property
    def model_id(self) -> str:
        return self._model_id or DEFAULT_MODEL_ID

    @property
    def initialized(self) -> bool:
        return self._model_id is not None

    def initialize(self, api_key: str | None, model_id: str | None = None) -> None:
        if not api_key:
            raise AgentError("no API key: set GROQ_API_KEY, pass --api-key or use /api-key")
        self.api_key = api_key
        self._model_id = model_id or self.model_id

    def set_model(self, model_id: str) -> None:
        self._model_id = model_id

    def get_info(self) -> ModelInfo:
        known = MODEL_CATALOG.get(self.model_id)
        if known is not None:
            return known
        return ModelInfo(self.model_id, self.name, _CHAT_CAPS, "Groq-hosted model")

    def stream_chat(self, messages: list[dict], tools: list[dict]) -> Iterator[StreamChunk]:
        if not self.initialized:
            raise AgentError("model not initialized, call initialize() first")

        import litellm

        litellm.suppress_debug_info = True

        kwargs = dict(
            model=f"groq/{self.model_id}",
            messages=messages,
            stream=True,
            stream_options={"include_usage": True},
            api_key=self.api_key,
        )
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        if self.api_base:
            kwargs["api_base"] = self.api_base

        try:
            stream = litellm.completion(**kwargs)
            acc: list[dict] = []
            for chunk in stream:
                usage = _get(chunk, "usage")
                if usage is not None and _get(usage, "total_tokens"):
                    yield StreamChunk(
                        usage=Usage(
                            input_tokens=_get(usage, "prompt_tokens", 0) or 0,
                            output_tokens=_get(usage, "completion_tokens", 0) or 0,
                            total_tokens=_get(usage, "total_tokens", 0) or 0,
                        )
                    )
                choices = _get(chunk, "choices") or []
                if not choices:
                    continue
                delta = _get(choices[0], "delta")
                if delta is None:
                    continue
                text = _get(delta, "content")
                if text:
                    yield StreamChunk(content=text)
                fragments = _get(delta, "tool_calls")
                if fragments:
                    accumulate_tool_call_deltas(acc, fragments)
        except AgentError:
            raise
        except Exception as e:
            raise ProviderError(f"{type(e).__name__}: {e}") from e

        calls = finalize_tool_calls(acc)
        if calls:
            yield StreamChunk(tool_calls=calls)
