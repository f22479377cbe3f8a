"""
Pytest configuration and shared fixtures.

Provides a scripted in-memory runtime so session, generation, and discovery
logic can be tested without llama.cpp or real model weights.
"""

import hashlib
import logging
import struct
from pathlib import Path
from typing import Any, Optional, Sequence

import numpy as np
import pytest

# Configure logging for test runs
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# Fake Runtime
# =============================================================================

EOG_TOKEN = 0

VOCAB = {
    0: b"</s>",
    1: b"<s>",
    2: b"?",
    3: b" Hello",
    4: b" there",
    5: b",",
    6: b" friend",
    7: b"!",
    8: b" caf",
    9: b"\xc3",  # First byte of "é"
    10: b"\xa9",  # Second byte of "é"
}

DEFAULT_SCRIPT = (3, 4, 5, 6)  # " Hello there, friend"


class FakeRuntime:
    """
    Scripted RuntimeAdapter.

    After the prompt plus n generated tokens have been decoded, the logits
    peak at script[n]; once the script runs out they peak at the
    end-of-generation token.
    """

    def __init__(
        self,
        script: Sequence[int] = DEFAULT_SCRIPT,
        fail_load: bool = False,
        fail_context: bool = False,
        fail_decode_on_call: Optional[int] = None,
        tokenize_empty: bool = False,
        last_error: Optional[str] = None,
    ):
        self.script = tuple(script)
        self.fail_load = fail_load
        self.fail_context = fail_context
        self.fail_decode_on_call = fail_decode_on_call
        self.tokenize_empty = tokenize_empty
        self._last_error = last_error

        self.init_count = 0
        self.decode_calls = 0
        self.reset_count = 0
        self.decoded: list[list[int]] = []
        self.events: list[str] = []
        self.context_args: Optional[tuple] = None
        self.flash_attn: Optional[bool] = None
        self._decodes_since_reset = 0

    def init_backend(self) -> None:
        self.init_count += 1

    def load_model(self, path: str, gpu_layers: int) -> Optional[Any]:
        self.events.append("load_model")
        if self.fail_load:
            return None
        return {"path": path, "gpu_layers": gpu_layers}

    def create_context(
        self,
        model: Any,
        context_length: int,
        batch_size: int,
        thread_count: int,
        flash_attn: bool = True,
    ) -> Optional[Any]:
        self.events.append("create_context")
        self.context_args = (context_length, batch_size, thread_count)
        self.flash_attn = flash_attn
        if self.fail_context:
            return None
        return {"n_ctx": context_length}

    def reset_context(self, ctx: Any) -> None:
        self.reset_count += 1
        self._decodes_since_reset = 0

    def tokenize(self, model: Any, text: str) -> list[int]:
        if self.tokenize_empty:
            return []
        return [1] + [2] * len(text.split())

    def decode(self, ctx: Any, tokens: Sequence[int]) -> bool:
        self.decode_calls += 1
        if self.fail_decode_on_call == self.decode_calls:
            return False
        self.decoded.append(list(tokens))
        self._decodes_since_reset += 1
        return True

    def get_logits(self, model: Any, ctx: Any) -> Optional[np.ndarray]:
        step = self._decodes_since_reset - 1
        token = self.script[step] if step < len(self.script) else EOG_TOKEN
        logits = np.zeros(len(VOCAB), dtype=np.float32)
        logits[token] = 10.0
        return logits

    def token_to_piece(self, model: Any, token: int) -> bytes:
        return VOCAB[token]

    def is_end_of_generation(self, model: Any, token: int) -> bool:
        return token == EOG_TOKEN

    def release_context(self, ctx: Any) -> None:
        self.events.append("release_context")

    def release_model(self, model: Any) -> None:
        self.events.append("release_model")

    def last_error(self) -> Optional[str]:
        return self._last_error


@pytest.fixture
def fake_runtime():
    """Runtime that generates " Hello there, friend" then stops."""
    return FakeRuntime()


# =============================================================================
# Model File Fixtures
# =============================================================================


def build_gguf(version: int = 3, metadata: Optional[dict] = None, n_tensors: int = 0) -> bytes:
    """
    Serialize a GGUF header with metadata.

    Supports str, bool, int (as u32), float (as f32), and lists of ints.
    """
    metadata = metadata or {}
    count = "<I" if version == 1 else "<Q"

    def string(s: str) -> bytes:
        data = s.encode("utf-8")
        return struct.pack(count, len(data)) + data

    out = bytearray()
    out += b"GGUF"
    out += struct.pack("<I", version)
    out += struct.pack(count, n_tensors)
    out += struct.pack(count, len(metadata))
    for key, value in metadata.items():
        out += string(key)
        if isinstance(value, str):
            out += struct.pack("<I", 8) + string(value)
        elif isinstance(value, bool):
            out += struct.pack("<I", 7) + struct.pack("<B", int(value))
        elif isinstance(value, int):
            out += struct.pack("<I", 4) + struct.pack("<I", value)
        elif isinstance(value, float):
            out += struct.pack("<I", 6) + struct.pack("<f", value)
        elif isinstance(value, list):
            out += struct.pack("<I", 9) + struct.pack("<I", 4) + struct.pack(count, len(value))
            for item in value:
                out += struct.pack("<I", item)
        else:
            raise TypeError(f"Unsupported metadata type: {type(value)}")
    return bytes(out)


@pytest.fixture
def model_file(tmp_path) -> Path:
    """A small GGUF file with a .gguf extension."""
    path = tmp_path / "tiny.gguf"
    path.write_bytes(build_gguf(metadata={"general.architecture": "llama"}))
    return path


@pytest.fixture
def loaded_session(model_file, fake_runtime):
    """A session loaded over the fake runtime, released after the test."""
    from edgeinfer.inference import InferenceSession

    session = InferenceSession.load(model_file, context_length=512, runtime=fake_runtime)
    yield session
    session.release()


@pytest.fixture
def make_blob():
    """
    Factory for Ollama-style blobs.

    make_blob(directory, size_bytes, version=3, digest=None, magic=b"GGUF")
    writes the magic and version and extends the file (sparsely) to size.
    """
    counter = {"n": 0}

    def _make(
        directory: Path,
        size_bytes: int,
        version: int = 3,
        digest: Optional[str] = None,
        magic: bytes = b"GGUF",
    ) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        if digest is None:
            counter["n"] += 1
            digest = hashlib.sha256(f"blob-{counter['n']}".encode()).hexdigest()
        path = directory / f"sha256-{digest}"
        with open(path, "wb") as f:
            f.write(magic + struct.pack("<I", version))
            f.truncate(size_bytes)
        return path

    return _make


# =============================================================================
# Markers
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks tests that load llama.cpp")
    config.addinivalue_line("markers", "gpu: marks tests requiring GPU")
