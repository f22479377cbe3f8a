"""
Model Runtime Adapter

Boundary between sessions and the native llama.cpp library.

The session layer only talks to a RuntimeAdapter. LlamaCppRuntime implements
it over the low-level ctypes bindings shipped with llama-cpp-python, which
mirror the C API one call at a time (load, context, tokenize, decode, logits,
piece, end-of-generation, free).

Backend initialization is process-wide and idempotent. It is never torn down
by releasing a session; shutdown_backend() exists for processes that need to
unload the backend explicitly, which is rare.
"""

from __future__ import annotations

import ctypes
import logging
import threading
from collections import deque
from typing import Any, Optional, Protocol, Sequence

import numpy as np

logger = logging.getLogger(__name__)
native_logger = logging.getLogger("edgeinfer.native")

# ggml log levels (ggml.h)
_GGML_LOG_LEVEL_ERROR = 4

# Longest piece a single token can render to
_PIECE_BUFFER_SIZE = 256

# llama_flash_attn_type (llama.h); older bindings expose a plain bool instead
_FLASH_ATTN_DISABLED = 0
_FLASH_ATTN_ENABLED = 1


class RuntimeAdapter(Protocol):
    """Operations a session needs from the model runtime."""

    def init_backend(self) -> None: ...

    def load_model(self, path: str, gpu_layers: int) -> Optional[Any]: ...

    def create_context(
        self,
        model: Any,
        context_length: int,
        batch_size: int,
        thread_count: int,
        flash_attn: bool = True,
    ) -> Optional[Any]: ...

    def reset_context(self, ctx: Any) -> None: ...

    def tokenize(self, model: Any, text: str) -> list[int]: ...

    def decode(self, ctx: Any, tokens: Sequence[int]) -> bool: ...

    def get_logits(self, model: Any, ctx: Any) -> Optional[np.ndarray]: ...

    def token_to_piece(self, model: Any, token: int) -> bytes: ...

    def is_end_of_generation(self, model: Any, token: int) -> bool: ...

    def release_context(self, ctx: Any) -> None: ...

    def release_model(self, model: Any) -> None: ...

    def last_error(self) -> Optional[str]: ...


# =============================================================================
# Process-wide backend state
# =============================================================================

_backend_lock = threading.Lock()
_backend_ready = False
_native_verbose = False
_native_errors: deque[str] = deque(maxlen=8)
_log_callback: Any = None  # Must outlive the native library's reference to it


def _llama() -> Any:
    """Lazy-import the llama.cpp bindings."""
    try:
        import llama_cpp
    except ImportError as e:
        raise ImportError(
            "llama-cpp-python is required for LlamaCppRuntime. "
            "Install with: uv add llama-cpp-python"
        ) from e
    return llama_cpp


def _install_log_callback(llama_cpp: Any) -> None:
    global _log_callback

    @llama_cpp.llama_log_callback
    def forward(level: int, text: bytes, user_data: Any) -> None:
        message = text.decode("utf-8", errors="replace").rstrip()
        if not message:
            return
        if level == _GGML_LOG_LEVEL_ERROR:
            _native_errors.append(message)
        if _native_verbose:
            native_logger.debug(message)

    _log_callback = forward
    llama_cpp.llama_log_set(_log_callback, ctypes.c_void_p(0))


def init_backend() -> None:
    """Initialize the llama.cpp backend once per process."""
    global _backend_ready
    with _backend_lock:
        if _backend_ready:
            return
        llama_cpp = _llama()
        _install_log_callback(llama_cpp)
        llama_cpp.llama_backend_init()
        _backend_ready = True
        logger.debug("llama.cpp backend initialized")


def shutdown_backend() -> None:
    """Free the process-wide backend. Every session must be released first."""
    global _backend_ready
    with _backend_lock:
        if not _backend_ready:
            return
        _llama().llama_backend_free()
        _backend_ready = False
        logger.debug("llama.cpp backend freed")


def set_native_verbose(enabled: bool = False) -> None:
    """Forward native llama.cpp log lines to the edgeinfer.native logger."""
    global _native_verbose
    _native_verbose = enabled


# =============================================================================
# llama.cpp implementation
# =============================================================================

class LlamaCppRuntime:
    """
    RuntimeAdapter over llama-cpp-python's low-level bindings.

    Handles are the raw ctypes pointers returned by llama.cpp. A NULL pointer
    comes back from ctypes as None, which is how load/context failures are
    reported to the session.
    """

    def __init__(self) -> None:
        self._lib = _llama()

    def init_backend(self) -> None:
        init_backend()

    def load_model(self, path: str, gpu_layers: int) -> Optional[Any]:
        params = self._lib.llama_model_default_params()
        params.n_gpu_layers = gpu_layers
        _native_errors.clear()
        return self._lib.llama_model_load_from_file(path.encode("utf-8"), params) or None

    def create_context(
        self,
        model: Any,
        context_length: int,
        batch_size: int,
        thread_count: int,
        flash_attn: bool = True,
    ) -> Optional[Any]:
        params = self._lib.llama_context_default_params()
        params.n_ctx = context_length
        params.n_batch = batch_size
        params.n_threads = thread_count
        params.n_threads_batch = thread_count
        if hasattr(params, "flash_attn_type"):
            params.flash_attn_type = _FLASH_ATTN_ENABLED if flash_attn else _FLASH_ATTN_DISABLED
        else:
            params.flash_attn = flash_attn
        return self._lib.llama_init_from_model(model, params) or None

    def reset_context(self, ctx: Any) -> None:
        if hasattr(self._lib, "llama_memory_clear"):
            self._lib.llama_memory_clear(self._lib.llama_get_memory(ctx), True)
        else:
            self._lib.llama_kv_self_clear(ctx)

    def _vocab(self, model: Any) -> Any:
        return self._lib.llama_model_get_vocab(model)

    def tokenize(self, model: Any, text: str) -> list[int]:
        vocab = self._vocab(model)
        data = text.encode("utf-8")

        # First call with no buffer returns the negated token count
        n_tokens = -self._lib.llama_tokenize(vocab, data, len(data), None, 0, True, True)
        if n_tokens <= 0:
            return []

        buffer = (self._lib.llama_token * n_tokens)()
        written = self._lib.llama_tokenize(vocab, data, len(data), buffer, n_tokens, True, True)
        if written < 0:
            return []
        return list(buffer[:written])

    def decode(self, ctx: Any, tokens: Sequence[int]) -> bool:
        array = (self._lib.llama_token * len(tokens))(*tokens)
        batch = self._lib.llama_batch_get_one(array, len(tokens))
        return self._lib.llama_decode(ctx, batch) == 0

    def get_logits(self, model: Any, ctx: Any) -> Optional[np.ndarray]:
        pointer = self._lib.llama_get_logits_ith(ctx, -1)
        if not pointer:
            return None
        n_vocab = self._lib.llama_vocab_n_tokens(self._vocab(model))
        return np.ctypeslib.as_array(pointer, shape=(n_vocab,)).copy()

    def token_to_piece(self, model: Any, token: int) -> bytes:
        buffer = ctypes.create_string_buffer(_PIECE_BUFFER_SIZE)
        n_chars = self._lib.llama_token_to_piece(
            self._vocab(model), token, buffer, _PIECE_BUFFER_SIZE, 0, True
        )
        if n_chars <= 0:
            return b""
        return buffer.raw[:n_chars]

    def is_end_of_generation(self, model: Any, token: int) -> bool:
        return bool(self._lib.llama_vocab_is_eog(self._vocab(model), token))

    def release_context(self, ctx: Any) -> None:
        self._lib.llama_free(ctx)

    def release_model(self, model: Any) -> None:
        self._lib.llama_model_free(model)

    def last_error(self) -> Optional[str]:
        return _native_errors[-1] if _native_errors else None
