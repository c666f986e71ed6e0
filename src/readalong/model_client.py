"""
Language-model transport for the engines.

Wraps any LangChain runnable (chat model or plain LLM) so that every call is
cancellable, timed, and fails with GenerationError instead of a provider
specific exception.
"""
from __future__ import annotations

import os
import time
from typing import Any

from langchain_core.messages import BaseMessage
from langchain_core.runnables import Runnable
from langchain_groq import ChatGroq
from langchain_ollama import OllamaLLM

from .cancellation import CancellationToken
from .config import (
    API_MODEL_NAME,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LOCAL_MODEL_NAME,
    USE_API_LLM,
    console,
)
from .errors import ConfigurationError, GenerationError, OperationCancelled
from .metrics import ModelCallMetrics
from .observability import get_logger

logger = get_logger(__name__)


def build_chat_model() -> Runnable:
    """Groq API model when USE_API_LLM is set, otherwise the local Ollama model."""
    if USE_API_LLM:
        api_key = os.getenv("GROQ_API_KEY")
        if not api_key:
            console.print("[bold red]Groq API key not found. Set GROQ_API_KEY or disable USE_API_LLM.[/bold red]")
            raise ConfigurationError("GROQ_API_KEY is not set")
        console.print(f"[green]Using API Model: {API_MODEL_NAME}[/green]")
        return ChatGroq(
            model_name=API_MODEL_NAME,
            temperature=LLM_TEMPERATURE,
            max_tokens=LLM_MAX_TOKENS,
            groq_api_key=api_key,
        )
    console.print(f"[green]Using Local Model: {LOCAL_MODEL_NAME}[/green]")
    return OllamaLLM(
        model=LOCAL_MODEL_NAME,
        temperature=LLM_TEMPERATURE,
        num_predict=LLM_MAX_TOKENS,
        top_p=0.95,
        repeat_penalty=1.1,
    )


def _content_text(result: Any) -> str:
    content = result.content if isinstance(result, BaseMessage) else result
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content or "")


def _usage(result: Any) -> tuple[int, int]:
    usage = getattr(result, "usage_metadata", None) or {}
    return int(usage.get("input_tokens", 0) or 0), int(usage.get("output_tokens", 0) or 0)


class ModelClient:
    def __init__(
        self,
        runnable: Runnable | None = None,
        *,
        metrics: ModelCallMetrics | None = None,
        model_name: str = "",
    ):
        self._runnable = runnable
        self.metrics = metrics
        self.model_name = model_name or (API_MODEL_NAME if USE_API_LLM else LOCAL_MODEL_NAME)

    @property
    def runnable(self) -> Runnable:
        if self._runnable is None:
            self._runnable = build_chat_model()
        return self._runnable

    async def invoke(self, prompt: str, token: CancellationToken | None = None, *, kind: str = "generation") -> str:
        """
        Sends one prompt and returns the raw reply text.

        Raises OperationCancelled when `token` is cancelled before the reply
        arrives and GenerationError for any other failure, including an
        empty reply.
        """
        started = time.perf_counter()
        outcome = "failed"
        input_tokens = output_tokens = 0
        try:
            if token is None:
                result = await self.runnable.ainvoke(prompt)
            else:
                token.raise_if_cancelled()
                result = await token.guard(self.runnable.ainvoke(prompt))
            text = _content_text(result).strip()
            input_tokens, output_tokens = _usage(result)
            if not text:
                raise GenerationError("model returned an empty reply")
            outcome = "ok"
            return text
        except OperationCancelled:
            outcome = "cancelled"
            raise
        except (GenerationError, ConfigurationError):
            raise
        except Exception as exc:
            logger.warning("model_call_failed", kind=kind, model=self.model_name, error=str(exc))
            raise GenerationError(f"model call failed: {exc}") from exc
        finally:
            latency_ms = (time.perf_counter() - started) * 1000
            logger.info(
                "model_call_finished",
                kind=kind,
                model=self.model_name,
                outcome=outcome,
                latency_ms=round(latency_ms, 2),
            )
            if self.metrics is not None:
                self.metrics.record_call(
                    kind,
                    latency_ms,
                    outcome,
                    model=self.model_name,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                )
