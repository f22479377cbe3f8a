"""
Local Inference Module

Session-based text generation over a llama.cpp runtime.
Supports:
- Atomic model/context loading with guaranteed release
- Token-by-token generation with greedy or top-p sampling
- Streaming generation with per-token cooperative cancellation
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from edgeinfer.errors import InvalidArgumentError


DEFAULT_CONTEXT_LENGTH = 2048
DEFAULT_BATCH_SIZE = 512


class StopReason(str, Enum):
    """Why a generation loop ended."""
    MAX_TOKENS = "max_tokens"
    END_OF_GENERATION = "end_of_generation"
    RUNTIME_DECODE_FAILURE = "runtime_decode_failure"
    CALLER_CANCELLED = "caller_cancelled"
    TIMEOUT = "timeout"


@dataclass
class SessionConfig:
    """Configuration for loading an inference session."""

    model_path: str

    # Context
    context_length: int = DEFAULT_CONTEXT_LENGTH
    batch_size: int = DEFAULT_BATCH_SIZE

    # Hardware
    gpu_layers: int = 0  # 0 = CPU only
    n_threads: Optional[int] = None  # None = half the detected cores
    flash_attn: bool = True

    # Memory budget for the load-time size warning (None = skip the check)
    available_ram_gb: Optional[float] = None

    @classmethod
    def from_env(cls, model_path: str) -> "SessionConfig":
        """Build a config, taking overrides from EDGEINFER_* variables."""
        threads = os.environ.get("EDGEINFER_THREADS")
        ram = os.environ.get("EDGEINFER_AVAILABLE_RAM_GB")
        return cls(
            model_path=model_path,
            context_length=int(os.environ.get("EDGEINFER_CTX", DEFAULT_CONTEXT_LENGTH)),
            gpu_layers=int(os.environ.get("EDGEINFER_GPU_LAYERS", "0")),
            n_threads=int(threads) if threads else None,
            flash_attn=os.environ.get("EDGEINFER_FLASH_ATTN", "1").lower() not in ("0", "false", "no"),
            available_ram_gb=float(ram) if ram else None,
        )


@dataclass
class GenerationRequest:
    """Parameters for a single generation call."""

    prompt: str
    max_tokens: int = 128
    temperature: float = 0.8
    top_p: float = 0.95

    # Output
    include_prompt: bool = False  # Prefix returned text with the prompt

    # Limits
    timeout_seconds: Optional[float] = None

    def validate(self) -> None:
        if not isinstance(self.prompt, str) or not self.prompt:
            raise InvalidArgumentError("Prompt must be a non-empty string")
        if isinstance(self.max_tokens, bool) or not isinstance(self.max_tokens, int) or self.max_tokens <= 0:
            raise InvalidArgumentError(f"max_tokens must be a positive integer, got {self.max_tokens!r}")
        # Negated comparisons so NaN is rejected too
        if not self.temperature >= 0:
            raise InvalidArgumentError(f"temperature must be >= 0, got {self.temperature}")
        if not 0.0 <= self.top_p <= 1.0:
            raise InvalidArgumentError(f"top_p must be within [0, 1], got {self.top_p}")
        if self.timeout_seconds is not None and not self.timeout_seconds > 0:
            raise InvalidArgumentError("timeout_seconds must be a positive number of seconds")


@dataclass
class GenerationResult:
    """Result from generation."""

    prompt: str
    generated_text: str
    tokens_generated: int
    finish_reason: StopReason
    prompt_tokens: int = 0
    generation_time_ms: float = 0.0
    include_prompt: bool = False
    error: Optional[str] = None  # Set when a stream callback raised

    @property
    def full_text(self) -> str:
        return self.prompt + self.generated_text

    @property
    def text(self) -> str:
        """Output text in the requested mode (prompt-inclusive or not)."""
        return self.full_text if self.include_prompt else self.generated_text


@dataclass
class StreamChunk:
    """Payload delivered to a streaming callback after each token."""

    token: str
    is_final: bool
    full_response: str
    total_tokens: int


from .runtime import (
    RuntimeAdapter,
    LlamaCppRuntime,
    init_backend,
    shutdown_backend,
    set_native_verbose,
)

from .sampling import (
    SamplingPolicy,
    GreedySampler,
    TopPSampler,
    get_sampler,
)

from .engine import (
    InferenceSession,
    GenerationLoop,
    BenchmarkReport,
    load_session,
    release_session,
    is_valid_session,
    session_scope,
    benchmark,
    default_thread_count,
)

__all__ = [
    # Config
    "StopReason",
    "SessionConfig",
    "GenerationRequest",
    "GenerationResult",
    "StreamChunk",
    "DEFAULT_CONTEXT_LENGTH",
    "DEFAULT_BATCH_SIZE",
    # Runtime
    "RuntimeAdapter",
    "LlamaCppRuntime",
    "init_backend",
    "shutdown_backend",
    "set_native_verbose",
    # Sampling
    "SamplingPolicy",
    "GreedySampler",
    "TopPSampler",
    "get_sampler",
    # Session
    "InferenceSession",
    "GenerationLoop",
    "BenchmarkReport",
    "load_session",
    "release_session",
    "is_valid_session",
    "session_scope",
    "benchmark",
    "default_thread_count",
]
