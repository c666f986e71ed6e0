"""
Model-call metrics for the engines.

Tracks latency, outcome (ok / failed / cancelled) and token usage per
operation kind, plus process memory. Each call is appended to metrics.jsonl
in the data directory.
"""
from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path

import psutil

from .config import DATA_DIR
from .observability import get_logger

logger = get_logger(__name__)

# Groq pricing per million tokens (USD). Local models are free.
_GROQ_PRICING: dict[str, dict[str, float]] = {
    "llama-3.3-70b-versatile": {"input": 0.59, "output": 0.79},
    "llama-3.1-8b-instant": {"input": 0.05, "output": 0.08},
    "qwen/qwen3-32b": {"input": 0.29, "output": 0.59},
    "_default": {"input": 0.30, "output": 0.40},
}

OUTCOMES = ("ok", "failed", "cancelled")


def estimate_cost_usd(model: str, input_tokens: int, output_tokens: int) -> float:
    pricing = _GROQ_PRICING.get(model, _GROQ_PRICING["_default"])
    return (input_tokens / 1_000_000) * pricing["input"] + (output_tokens / 1_000_000) * pricing["output"]


class ModelCallMetrics:
    """Thread-safe model-call tracker with JSONL file logging."""

    def __init__(self, log_dir: str | Path = DATA_DIR, *, priced: bool = False):
        self._lock = threading.Lock()
        self._start_time = time.time()
        self._priced = priced

        self._calls: dict[str, int] = {}
        self._outcomes: dict[str, int] = {outcome: 0 for outcome in OUTCOMES}
        self._total_latency_ms = 0.0
        self._max_latency_ms = 0.0
        self._input_tokens = 0
        self._output_tokens = 0
        self._cost_usd = 0.0

        self._log_path = Path(log_dir) / "metrics.jsonl"
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._process = psutil.Process(os.getpid())

    @property
    def log_path(self) -> Path:
        return self._log_path

    def record_call(
        self,
        kind: str,
        latency_ms: float,
        outcome: str,
        *,
        model: str = "",
        input_tokens: int = 0,
        output_tokens: int = 0,
    ):
        if outcome not in self._outcomes:
            raise ValueError(f"unknown outcome: {outcome}")
        cost = estimate_cost_usd(model, input_tokens, output_tokens) if self._priced else 0.0

        with self._lock:
            self._calls[kind] = self._calls.get(kind, 0) + 1
            self._outcomes[outcome] += 1
            self._total_latency_ms += latency_ms
            self._max_latency_ms = max(self._max_latency_ms, latency_ms)
            self._input_tokens += input_tokens
            self._output_tokens += output_tokens
            self._cost_usd += cost

        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "kind": kind,
            "model": model,
            "outcome": outcome,
            "latency_ms": round(latency_ms, 2),
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cost_usd": round(cost, 8),
        }
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("metrics_write_failed", path=str(self._log_path), error=str(exc))

    def get_summary(self) -> dict:
        with self._lock:
            total = sum(self._calls.values())
            calls = dict(self._calls)
            outcomes = dict(self._outcomes)
            avg_latency = self._total_latency_ms / total if total else 0.0
            max_latency = self._max_latency_ms
            in_tok, out_tok, cost = self._input_tokens, self._output_tokens, self._cost_usd

        mem_info = self._process.memory_info()
        return {
            "calls": {"total": total, "by_kind": calls},
            "outcomes": outcomes,
            "latency": {"avg_ms": round(avg_latency, 2), "max_ms": round(max_latency, 2)},
            "tokens": {"input": in_tok, "output": out_tok},
            "cost": {"total_usd": round(cost, 6)},
            "memory": {"rss_mb": round(mem_info.rss / (1024 * 1024), 1)},
            "uptime_seconds": round(time.time() - self._start_time, 1),
        }
