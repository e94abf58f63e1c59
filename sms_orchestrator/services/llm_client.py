"""Multi-provider chat completion with a deterministic fallback chain.

``ResponseGenerator.generate`` tries the requested model first and then a
fixed list of alternates (Claude first, OpenAI after), stopping at the
first candidate whose output passes validation.  It never raises: when
every candidate fails it returns a safe canned reply with
``success=False`` so a turn can still answer the customer.

LLM clients are built lazily per model and cached for the lifetime of the
generator.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from sms_orchestrator.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Model registry ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ModelConfig:
    provider: str  # "anthropic" | "openai"
    model: str
    max_tokens: int = 1000


MODEL_REGISTRY: dict[str, ModelConfig] = {
    "claude-sonnet-4-5": ModelConfig("anthropic", "claude-sonnet-4-5"),
    "claude-haiku-4-5": ModelConfig("anthropic", "claude-haiku-4-5"),
    "gpt-4o": ModelConfig("openai", "gpt-4o"),
    "gpt-4o-mini": ModelConfig("openai", "gpt-4o-mini"),
}

FALLBACK_MODELS = ["claude-sonnet-4-5", "claude-haiku-4-5", "gpt-4o", "gpt-4o-mini"]

BACKOFF_SECONDS = 0.5

SAFE_FALLBACK_REPLY = (
    "Thanks for your message. I'm having trouble answering right now, "
    "but a member of our team will get back to you shortly."
)

JSON_ONLY_SUFFIX = "\n\nIMPORTANT: You must respond with valid JSON only. No other text or explanations."

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class ProviderUnavailableError(RuntimeError):
    """The candidate model is unknown or its provider has no credentials."""


@dataclass
class ChatRequest:
    system_prompt: str
    user_prompt: str
    requested_model: str | None = None
    expect_json: bool = False
    max_retries: int = 3
    # Raises (any exception) to reject otherwise well-formed content.
    validator: Callable[[str], Any] | None = None


@dataclass
class ChatResult:
    content: str
    model_used: str
    provider: str
    fallbacks_used: int
    success: bool
    total_time_ms: float
    errors: list[str] = field(default_factory=list)


def build_fallback_chain(requested_model: str | None, max_retries: int) -> list[str]:
    """Requested model then the fixed alternates, de-duplicated, capped."""
    chain: list[str] = []
    for name in [requested_model, *FALLBACK_MODELS]:
        if name and name not in chain:
            chain.append(name)
    return chain[: max(1, max_retries)]


# ── LLM builders ────────────────────────────────────────────────────


def _build_anthropic_llm(config: ModelConfig, api_key: str) -> BaseChatModel:
    return ChatAnthropic(
        model=config.model,
        api_key=api_key,
        temperature=0.1,
        max_tokens=config.max_tokens,
    )


def _build_openai_llm(config: ModelConfig, api_key: str, expect_json: bool) -> BaseChatModel:
    kwargs: dict[str, Any] = {}
    if expect_json:
        kwargs["model_kwargs"] = {"response_format": {"type": "json_object"}}
    return ChatOpenAI(
        model=config.model,
        api_key=api_key,
        temperature=0.1,
        max_tokens=config.max_tokens,
        **kwargs,
    )


def _text_of(response: Any) -> str:
    """Flatten a LangChain message's content into plain text."""
    content = response.content
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return (content or "").strip()


def _strip_code_fence(text: str) -> str:
    match = _CODE_FENCE.match(text)
    return match.group(1) if match else text


# ── Generator ───────────────────────────────────────────────────────


class ResponseGenerator:
    def __init__(
        self,
        anthropic_api_key: str | None = None,
        openai_api_key: str | None = None,
        default_model: str = "claude-sonnet-4-5",
    ) -> None:
        self._keys = {"anthropic": anthropic_api_key, "openai": openai_api_key}
        self._default_model = default_model
        self._clients: dict[tuple[str, bool], BaseChatModel] = {}

    def _client_for(self, model_name: str, expect_json: bool) -> tuple[ModelConfig, BaseChatModel]:
        config = MODEL_REGISTRY.get(model_name)
        if config is None:
            raise ProviderUnavailableError(f"Unknown model {model_name}")
        api_key = self._keys.get(config.provider)
        if not api_key:
            raise ProviderUnavailableError(f"No credentials for {config.provider}")

        cache_key = (model_name, expect_json and config.provider == "openai")
        if cache_key not in self._clients:
            if config.provider == "anthropic":
                self._clients[cache_key] = _build_anthropic_llm(config, api_key)
            else:
                self._clients[cache_key] = _build_openai_llm(config, api_key, expect_json)
        return config, self._clients[cache_key]

    def _invoke(self, request: ChatRequest, model_name: str) -> tuple[ModelConfig, str]:
        config, llm = self._client_for(model_name, request.expect_json)

        system_prompt = request.system_prompt
        if request.expect_json and config.provider == "anthropic":
            system_prompt += JSON_ONLY_SUFFIX

        response = llm.invoke(
            [SystemMessage(content=system_prompt), HumanMessage(content=request.user_prompt)]
        )
        content = _text_of(response)
        if not content:
            raise ValueError(f"Empty response from {model_name}")
        if request.expect_json:
            content = _strip_code_fence(content)
            json.loads(content)
        if request.validator is not None:
            request.validator(content)
        return config, content

    def generate(self, request: ChatRequest) -> ChatResult:
        """Return the first valid completion along the fallback chain."""
        started = time.perf_counter()
        chain = build_fallback_chain(request.requested_model or self._default_model, request.max_retries)
        errors: list[str] = []

        for index, model_name in enumerate(chain):
            t0 = time.perf_counter()
            provider = MODEL_REGISTRY[model_name].provider if model_name in MODEL_REGISTRY else "unknown"
            try:
                config, content = self._invoke(request, model_name)
            except Exception as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_failure(
                    provider, model_name, error_type=type(exc).__name__, latency_ms=elapsed,
                )
                errors.append(f"{model_name}: {type(exc).__name__}: {exc}")
                logger.warning("LLM candidate %s failed: %s", model_name, exc)
                if index < len(chain) - 1:
                    time.sleep(BACKOFF_SECONDS)
                continue

            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_success(config.provider, model_name, latency_ms=elapsed)
            logger.info(
                "LLM success with %s/%s (fallbacks=%d, %.0fms)",
                config.provider, model_name, index, elapsed,
            )
            return ChatResult(
                content=content,
                model_used=model_name,
                provider=config.provider,
                fallbacks_used=index,
                success=True,
                total_time_ms=(time.perf_counter() - started) * 1000,
                errors=errors,
            )

        logger.error("All LLM candidates failed (%s): %s", ", ".join(chain), errors)
        return ChatResult(
            content=SAFE_FALLBACK_REPLY,
            model_used="fallback",
            provider="fallback",
            fallbacks_used=len(chain),
            success=False,
            total_time_ms=(time.perf_counter() - started) * 1000,
            errors=errors,
        )
