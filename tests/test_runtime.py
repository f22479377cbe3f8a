"""
Integration tests against the real llama.cpp bindings.

Skipped when llama-cpp-python is not installed. No model weights are
needed: these only exercise the failure paths of the native loader.
"""

import pytest

from edgeinfer.discovery import ModelDiscoveryProbe
from edgeinfer.errors import ModelLoadError
from edgeinfer.inference import InferenceSession, LlamaCppRuntime

pytestmark = pytest.mark.integration


@pytest.fixture
def llama_runtime():
    pytest.importorskip("llama_cpp")
    return LlamaCppRuntime()


def test_garbage_file_fails_to_load(tmp_path, llama_runtime):
    path = tmp_path / "garbage.gguf"
    path.write_bytes(b"\x00" * 4096)
    with pytest.raises(ModelLoadError):
        InferenceSession.load(path, context_length=64, runtime=llama_runtime)


def test_probe_reports_garbage_as_incompatible(tmp_path, llama_runtime):
    path = tmp_path / "garbage.gguf"
    path.write_bytes(b"\x00" * 4096)
    outcome = ModelDiscoveryProbe(runtime=llama_runtime).probe_compatibility(path)
    assert not outcome.compatible
