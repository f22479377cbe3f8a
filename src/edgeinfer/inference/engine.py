"""
Inference Session Engine

Owns one model/context pair from the runtime and runs generation on it.

Usage:
    with InferenceSession.load("model.gguf", context_length=2048) as session:
        text = session.generate("The capital of France is", max_tokens=32)

        result = session.stream(
            "Tell me a story",
            callback=lambda chunk: print(chunk.token, end="") or True,
        )
"""

from __future__ import annotations

import codecs
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from edgeinfer.errors import (
    InvalidArgumentError,
    InvalidSessionError,
    ModelLoadError,
    RuntimeDecodeError,
    SessionBusyError,
    TokenizationError,
)
from edgeinfer.observability import Timer

from . import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONTEXT_LENGTH,
    GenerationRequest,
    GenerationResult,
    SessionConfig,
    StopReason,
    StreamChunk,
)
from .runtime import LlamaCppRuntime, RuntimeAdapter
from .sampling import GreedySampler, SamplingPolicy

logger = logging.getLogger(__name__)

# (fragment, generated text so far, tokens so far) -> keep going
TokenHook = Callable[[str, str, int], bool]
StreamCallback = Callable[[StreamChunk], Any]


def default_thread_count() -> int:
    """Half of the detected cores, at least one."""
    return max(1, (os.cpu_count() or 1) // 2)


def _with_cause(message: str, cause: Optional[str]) -> str:
    return f"{message} ({cause})" if cause else message


# =============================================================================
# Generation Loop
# =============================================================================


class GenerationLoop:
    """
    Autoregressive token loop shared by single-shot and streaming generation.

    The prompt is decoded once as a batch, then each sampled token is decoded
    on its own so per-token cost tracks context growth instead of re-running
    the whole sequence.
    """

    def __init__(
        self,
        runtime: RuntimeAdapter,
        model: Any,
        ctx: Any,
        sampler: Optional[SamplingPolicy] = None,
    ):
        self.runtime = runtime
        self.model = model
        self.ctx = ctx
        self.sampler = sampler or GreedySampler()

    def run(
        self,
        request: GenerationRequest,
        on_token: Optional[TokenHook] = None,
    ) -> GenerationResult:
        """
        Generate a continuation for request.prompt.

        Raises:
            TokenizationError: The prompt produced no tokens
            RuntimeDecodeError: The prompt could not be decoded

        Failures after the prompt is primed end the loop and are reported
        through finish_reason, keeping whatever text was produced.
        """
        runtime, model, ctx = self.runtime, self.model, self.ctx

        with Timer() as timer:
            runtime.reset_context(ctx)

            prompt_tokens = runtime.tokenize(model, request.prompt)
            if not prompt_tokens:
                raise TokenizationError(
                    f"Failed to tokenize prompt ({len(request.prompt)} chars)"
                )

            if not runtime.decode(ctx, prompt_tokens):
                raise RuntimeDecodeError(
                    f"Failed to process prompt ({len(prompt_tokens)} tokens)"
                )

            deadline = None
            if request.timeout_seconds is not None:
                deadline = time.monotonic() + request.timeout_seconds

            # Pieces are raw bytes; a character may span several tokens
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            text = ""
            n_generated = 0
            reason = StopReason.MAX_TOKENS

            for _ in range(request.max_tokens):
                logits = runtime.get_logits(model, ctx)
                if logits is None:
                    reason = StopReason.RUNTIME_DECODE_FAILURE
                    break

                token = self.sampler.select(logits, request.temperature, request.top_p)

                if runtime.is_end_of_generation(model, token):
                    reason = StopReason.END_OF_GENERATION
                    break

                fragment = decoder.decode(runtime.token_to_piece(model, token))
                text += fragment
                n_generated += 1

                if deadline is not None and time.monotonic() > deadline:
                    logger.info(f"Timeout reached after {n_generated} tokens, stopping generation")
                    reason = StopReason.TIMEOUT
                    break

                if on_token is not None and not on_token(fragment, text, n_generated):
                    reason = StopReason.CALLER_CANCELLED
                    break

                if not runtime.decode(ctx, [token]):
                    logger.warning(f"Decode failed after {n_generated} tokens, returning partial output")
                    reason = StopReason.RUNTIME_DECODE_FAILURE
                    break

            text += decoder.decode(b"", final=True)

        logger.debug(
            f"Generated {n_generated} tokens in {timer.elapsed_ms:.1f}ms ({reason.value})"
        )
        return GenerationResult(
            prompt=request.prompt,
            generated_text=text,
            tokens_generated=n_generated,
            finish_reason=reason,
            prompt_tokens=len(prompt_tokens),
            generation_time_ms=timer.elapsed_ms,
            include_prompt=request.include_prompt,
        )


class _StreamCallbackGuard:
    """Adapts a caller's stream callback to the loop's continue/stop hook."""

    def __init__(self, callback: StreamCallback, prefix: str):
        self.callback = callback
        self.prefix = prefix
        self.error: Optional[str] = None

    def __call__(self, fragment: str, text: str, count: int) -> bool:
        chunk = StreamChunk(
            token=fragment,
            is_final=False,
            full_response=self.prefix + text,
            total_tokens=count,
        )
        try:
            keep_going = self.callback(chunk)
        except Exception as e:
            self.error = f"{type(e).__name__}: {e}"
            logger.warning(f"Stream callback raised, stopping generation: {self.error}")
            return False

        if not isinstance(keep_going, bool):
            logger.warning("Stream callback must return True/False; stopping generation")
            return False
        return keep_going

    def finish(self, result: GenerationResult) -> None:
        chunk = StreamChunk(
            token="",
            is_final=True,
            full_response=result.text,
            total_tokens=result.tokens_generated,
        )
        try:
            self.callback(chunk)
        except Exception as e:
            logger.warning(f"Stream callback raised on final chunk: {e}")
            if self.error is None:
                self.error = f"{type(e).__name__}: {e}"


# =============================================================================
# Session
# =============================================================================


class InferenceSession:
    """
    A loaded model and its execution context.

    A session is either fully loaded (both handles present) or fully
    released (both None). Use load() to create one and release() or a
    with-block to free it. One generation runs at a time per session.
    """

    def __init__(
        self,
        runtime: RuntimeAdapter,
        model: Any,
        ctx: Any,
        model_path: str,
        context_length: int = DEFAULT_CONTEXT_LENGTH,
        gpu_layers: int = 0,
        n_threads: int = 1,
        batch_size: int = DEFAULT_BATCH_SIZE,
        flash_attn: bool = True,
        sampler: Optional[SamplingPolicy] = None,
    ):
        self._runtime = runtime
        self._model = model
        self._ctx = ctx
        self.model_path = model_path
        self.context_length = context_length
        self.gpu_layers = gpu_layers
        self.n_threads = n_threads
        self.batch_size = batch_size
        self.flash_attn = flash_attn
        self.sampler: SamplingPolicy = sampler or GreedySampler()

        self._busy = False
        self._release_pending = False

    @classmethod
    def load(
        cls,
        path: str | Path,
        context_length: int = DEFAULT_CONTEXT_LENGTH,
        gpu_layers: int = 0,
        *,
        n_threads: Optional[int] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        flash_attn: bool = True,
        available_ram_gb: Optional[float] = None,
        runtime: Optional[RuntimeAdapter] = None,
    ) -> InferenceSession:
        """
        Load a GGUF model and create its context.

        Either returns a valid session or raises with nothing left allocated:
        if the context cannot be created the model is freed first.

        Args:
            path: Path to the model file
            context_length: Maximum context size in tokens
            gpu_layers: Layers to offload to GPU (0 = CPU only)
            n_threads: Compute threads (default: half the detected cores)
            batch_size: Maximum tokens per decode batch
            flash_attn: Request flash attention from the runtime
            available_ram_gb: If set, warn when the model file takes more
                than 80% of this budget
            runtime: Runtime adapter (default: LlamaCppRuntime)

        Raises:
            ModelLoadError: File missing/unreadable or refused by the runtime
            InvalidArgumentError: Non-positive sizes or negative GPU layers
        """
        model_path = Path(path).expanduser()
        if not model_path.exists():
            raise ModelLoadError(f"Model file does not exist: {path}")
        if model_path.is_dir():
            raise ModelLoadError(f"Path is a directory, not a file: {path}")
        if not os.access(model_path, os.R_OK):
            raise ModelLoadError(f"Model file is not readable: {path}")

        if context_length <= 0:
            raise InvalidArgumentError("context_length must be a positive integer")
        if gpu_layers < 0:
            raise InvalidArgumentError("gpu_layers must be a non-negative integer")
        if batch_size <= 0:
            raise InvalidArgumentError("batch_size must be a positive integer")
        if n_threads is not None and n_threads < 1:
            raise InvalidArgumentError("n_threads must be a positive integer or None for auto-detect")

        # Ollama blobs are named by digest and carry no extension
        if model_path.suffix.lower() != ".gguf" and not model_path.name.startswith("sha256-"):
            logger.warning(f"Model file should have .gguf extension: {model_path.name}")

        if available_ram_gb is not None and available_ram_gb > 0:
            model_size_mb = model_path.stat().st_size / 1024 ** 2
            available_mb = available_ram_gb * 1024
            if model_size_mb > available_mb * 0.8:
                logger.warning(
                    f"Model size ({model_size_mb:.1f} MB) is close to or exceeds available RAM "
                    f"({available_mb:.1f} MB). Inference may be unstable or slow."
                )

        threads = n_threads or default_thread_count()
        resolved = str(model_path.resolve())

        try:
            runtime = runtime or LlamaCppRuntime()
            runtime.init_backend()
            model = runtime.load_model(resolved, gpu_layers)
        except Exception as e:
            raise ModelLoadError(f"Error loading model from {resolved}: {e}") from e
        if model is None:
            raise ModelLoadError(
                _with_cause(f"Failed to load GGUF model from: {resolved}", runtime.last_error())
            )

        try:
            ctx = runtime.create_context(model, context_length, batch_size, threads, flash_attn)
        except Exception as e:
            runtime.release_model(model)
            raise ModelLoadError(f"Error creating context for {resolved}: {e}") from e
        if ctx is None:
            runtime.release_model(model)
            raise ModelLoadError(
                _with_cause("Failed to create context for model", runtime.last_error())
            )

        logger.info(
            f"Loaded {model_path.name} (n_ctx={context_length}, "
            f"gpu_layers={gpu_layers}, threads={threads}, flash_attn={flash_attn})"
        )
        return cls(
            runtime=runtime,
            model=model,
            ctx=ctx,
            model_path=resolved,
            context_length=context_length,
            gpu_layers=gpu_layers,
            n_threads=threads,
            batch_size=batch_size,
            flash_attn=flash_attn,
        )

    @classmethod
    def from_config(
        cls,
        config: SessionConfig,
        runtime: Optional[RuntimeAdapter] = None,
    ) -> InferenceSession:
        """Load a session from config."""
        return cls.load(
            config.model_path,
            context_length=config.context_length,
            gpu_layers=config.gpu_layers,
            n_threads=config.n_threads,
            batch_size=config.batch_size,
            flash_attn=config.flash_attn,
            available_ram_gb=config.available_ram_gb,
            runtime=runtime,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def is_valid(self) -> bool:
        """True while both the model and the context are held."""
        return self._model is not None and self._ctx is not None

    def release(self) -> None:
        """
        Free the context, then the model. Safe to call any number of times.

        Called from inside a stream callback, the release is deferred until
        the running generation returns.
        """
        if self._busy:
            self._release_pending = True
            return

        ctx, model = self._ctx, self._model
        self._ctx = None
        self._model = None

        if ctx is not None:
            try:
                self._runtime.release_context(ctx)
            except Exception as e:
                logger.warning(f"Error freeing context: {e}")
        if model is not None:
            try:
                self._runtime.release_model(model)
            except Exception as e:
                logger.warning(f"Error freeing model: {e}")
            logger.debug(f"Released session for {self.model_path}")

    def __enter__(self) -> InferenceSession:
        return self

    def __exit__(self, *args: Any) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "loaded" if self.is_valid() else "released"
        return f"InferenceSession({Path(self.model_path).name!r}, n_ctx={self.context_length}, {state})"

    # =========================================================================
    # Generation
    # =========================================================================

    def generate(
        self,
        prompt: str,
        max_tokens: int = 128,
        temperature: float = 0.8,
        top_p: float = 0.95,
        *,
        include_prompt: bool = False,
        sampler: Optional[SamplingPolicy] = None,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """Generate a completion and return its text."""
        request = GenerationRequest(
            prompt=prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            top_p=top_p,
            include_prompt=include_prompt,
            timeout_seconds=timeout_seconds,
        )
        return self.complete(request, sampler=sampler).text

    def complete(
        self,
        request: GenerationRequest,
        sampler: Optional[SamplingPolicy] = None,
    ) -> GenerationResult:
        """Generate a completion and return the full result with stop reason."""
        return self._run(request, sampler, on_token=None)

    def stream(
        self,
        prompt: str,
        callback: StreamCallback,
        max_tokens: int = 128,
        temperature: float = 0.8,
        top_p: float = 0.95,
        *,
        include_prompt: bool = False,
        sampler: Optional[SamplingPolicy] = None,
        timeout_seconds: Optional[float] = None,
    ) -> GenerationResult:
        """
        Generate with a callback invoked after every token.

        The callback receives a StreamChunk and returns True to continue or
        False to stop before the next decode. Raising or returning anything
        other than a bool also stops generation. Once the loop ends the
        callback gets one more chunk with is_final=True, whose full_response
        matches what generate() returns for the same arguments.

        Returns:
            GenerationResult with finish_reason and token count
        """
        if not callable(callback):
            raise InvalidArgumentError("Callback must be a function")

        request = GenerationRequest(
            prompt=prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            top_p=top_p,
            include_prompt=include_prompt,
            timeout_seconds=timeout_seconds,
        )
        guard = _StreamCallbackGuard(callback, prefix=prompt if include_prompt else "")

        result = self._run(request, sampler, on_token=guard)
        guard.finish(result)
        result.error = guard.error
        return result

    def _run(
        self,
        request: GenerationRequest,
        sampler: Optional[SamplingPolicy],
        on_token: Optional[TokenHook],
    ) -> GenerationResult:
        if not self.is_valid():
            raise InvalidSessionError(
                "Invalid model context. Load a model first with InferenceSession.load()"
            )
        request.validate()
        if self._busy:
            raise SessionBusyError("Session is already generating; one call at a time")

        self._busy = True
        try:
            loop = GenerationLoop(self._runtime, self._model, self._ctx, sampler or self.sampler)
            return loop.run(request, on_token)
        finally:
            self._busy = False
            if self._release_pending:
                self._release_pending = False
                self.release()


# =============================================================================
# Convenience Functions
# =============================================================================


def load_session(
    path: str | Path,
    context_length: int = DEFAULT_CONTEXT_LENGTH,
    gpu_layers: int = 0,
    **kwargs: Any,
) -> InferenceSession:
    """Load a model file into a new session."""
    return InferenceSession.load(path, context_length, gpu_layers, **kwargs)


def release_session(session: Any) -> None:
    """Release a session. None and non-session values are ignored."""
    if isinstance(session, InferenceSession):
        session.release()


def is_valid_session(session: Any) -> bool:
    """Check any value for being a loaded session. Never raises."""
    return isinstance(session, InferenceSession) and session.is_valid()


@contextmanager
def session_scope(
    path: str | Path,
    context_length: int = DEFAULT_CONTEXT_LENGTH,
    gpu_layers: int = 0,
    **kwargs: Any,
) -> Iterator[InferenceSession]:
    """
    Load a session for the duration of a with-block.

    Usage:
        with session_scope("model.gguf") as session:
            print(session.generate("Hello"))
    """
    session = InferenceSession.load(path, context_length, gpu_layers, **kwargs)
    try:
        yield session
    finally:
        session.release()


# =============================================================================
# Benchmarking
# =============================================================================


@dataclass
class BenchmarkReport:
    """Throughput measured over repeated greedy generations."""

    prompt: str
    max_tokens: int
    times_s: list[float] = field(default_factory=list)
    tokens: list[int] = field(default_factory=list)

    @property
    def iterations(self) -> int:
        return len(self.times_s)

    @property
    def tokens_per_second(self) -> list[float]:
        return [n / t if t > 0 else 0.0 for n, t in zip(self.tokens, self.times_s)]

    @property
    def total_time(self) -> float:
        return sum(self.times_s)

    @property
    def avg_tokens_per_second(self) -> float:
        rates = self.tokens_per_second
        return sum(rates) / len(rates) if rates else 0.0

    @property
    def avg_time_per_token(self) -> float:
        total_tokens = sum(self.tokens)
        return self.total_time / total_tokens if total_tokens else 0.0

    def to_dict(self) -> dict:
        rates = self.tokens_per_second
        return {
            "prompt": self.prompt,
            "iterations": self.iterations,
            "tokens_per_iteration": self.max_tokens,
            "total_time": self.total_time,
            "avg_time_per_token": self.avg_time_per_token,
            "avg_tokens_per_second": self.avg_tokens_per_second,
            "min_tokens_per_second": min(rates) if rates else 0.0,
            "max_tokens_per_second": max(rates) if rates else 0.0,
        }


def benchmark(
    session: InferenceSession,
    prompt: str = "The quick brown fox",
    max_tokens: int = 50,
    iterations: int = 3,
) -> BenchmarkReport:
    """Time repeated greedy generations on a session."""
    if iterations < 1:
        raise InvalidArgumentError("iterations must be a positive integer")

    logger.info(f"Running performance benchmark with {iterations} iterations...")
    report = BenchmarkReport(prompt=prompt, max_tokens=max_tokens)
    request = GenerationRequest(prompt=prompt, max_tokens=max_tokens, temperature=0.0)

    for i in range(iterations):
        with Timer() as timer:
            result = session.complete(request, sampler=GreedySampler())
        report.times_s.append(timer.elapsed_seconds)
        report.tokens.append(result.tokens_generated)
        logger.info(
            f"Iteration {i + 1}: {timer.elapsed_seconds:.3f}s "
            f"({report.tokens_per_second[-1]:.1f} tokens/sec)"
        )

    return report
