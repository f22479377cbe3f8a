"""
Tests for Ollama blob discovery and compatibility probing.
"""

import hashlib
import logging

import pytest

from conftest import FakeRuntime

from edgeinfer.discovery import (
    Compatibility,
    FailureKind,
    ModelBlobCandidate,
    ModelDiscoveryProbe,
    check_model_compatibility,
    classify_failure,
    default_model_dirs,
    find_ollama_models,
    verify_blob_digest,
)
from edgeinfer.errors import InvalidArgumentError, ModelNotFoundError

MiB = 1024 ** 2


@pytest.fixture
def blobs_dir(tmp_path):
    return tmp_path / "models" / "blobs"


class TestScan:
    """Passive scanning."""

    def test_filters_by_size_and_version(self, blobs_dir, make_blob, caplog):
        good = make_blob(blobs_dir, 2 * MiB, version=2)
        make_blob(blobs_dir, 2 * MiB, version=5)
        make_blob(blobs_dir, 500 * 1024, version=3)

        with caplog.at_level(logging.WARNING):
            report = ModelDiscoveryProbe().scan([blobs_dir])

        assert [c.path for c in report.candidates] == [good]
        assert report.total_found == 3
        assert report.skipped_version == 1
        assert report.skipped_size == 1
        assert "GGUF v5" in caplog.text

    def test_non_gguf_blobs_are_skipped(self, blobs_dir, make_blob):
        make_blob(blobs_dir, 2 * MiB, magic=b"{\"sc")
        report = ModelDiscoveryProbe().scan([blobs_dir])
        assert report.candidates == []
        assert report.skipped_format == 1

    def test_max_size(self, blobs_dir, make_blob):
        make_blob(blobs_dir, 2 * MiB)
        report = ModelDiscoveryProbe().scan([blobs_dir], max_size_gb=0.001)
        assert report.candidates == []
        assert report.skipped_size == 1

    def test_non_positive_max_size(self, blobs_dir):
        with pytest.raises(InvalidArgumentError):
            ModelDiscoveryProbe().scan([blobs_dir], max_size_gb=0)

    def test_ignores_files_without_blob_prefix(self, blobs_dir, make_blob):
        make_blob(blobs_dir, 2 * MiB)
        (blobs_dir / "model.gguf").write_bytes(b"GGUF\x03\x00\x00\x00")
        report = ModelDiscoveryProbe().scan([blobs_dir])
        assert report.total_found == 1

    def test_candidate_fields(self, blobs_dir, make_blob):
        digest = "abcdef12" + "0" * 56
        make_blob(blobs_dir, 3 * MiB, version=3, digest=digest)

        candidate = ModelDiscoveryProbe().scan([blobs_dir]).candidates[0]

        assert candidate.sha256 == digest
        assert candidate.size_bytes == 3 * MiB
        assert candidate.size_mb == 3.0
        assert candidate.gguf_version == 3
        assert candidate.name == "ollama_3.0mb_abcdef12"
        assert candidate.compatibility is Compatibility.UNTESTED

    def test_missing_directories(self, tmp_path):
        report = ModelDiscoveryProbe().scan([tmp_path / "nowhere"])
        assert report.searched == []
        assert report.candidates == []
        assert report.models_dir is None

    def test_duplicate_directories_scanned_once(self, blobs_dir, make_blob):
        make_blob(blobs_dir, 2 * MiB)
        report = ModelDiscoveryProbe().scan([blobs_dir, blobs_dir / ".." / "blobs"])
        assert len(report.searched) == 1
        assert report.gguf_models == 1

    def test_scan_order_is_stable(self, blobs_dir, make_blob):
        for digest in ["cc" * 32, "aa" * 32, "bb" * 32]:
            make_blob(blobs_dir, 2 * MiB, digest=digest)
        report = ModelDiscoveryProbe().scan([blobs_dir])
        assert [c.sha256[:2] for c in report.candidates] == ["aa", "bb", "cc"]

    def test_report_to_dict(self, blobs_dir, make_blob):
        make_blob(blobs_dir, 2 * MiB)
        data = ModelDiscoveryProbe().scan([blobs_dir]).to_dict()
        assert data["gguf_models"] == 1
        assert data["models"][0]["compatibility"] == "untested"

    def test_default_dirs_honor_ollama_models(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OLLAMA_MODELS", str(tmp_path / "custom"))
        dirs = default_model_dirs()
        assert dirs[0] == tmp_path / "custom" / "blobs"
        assert len(dirs) == len(set(dirs))

    def test_default_scan(self, tmp_path, monkeypatch, make_blob):
        monkeypatch.setenv("OLLAMA_MODELS", str(tmp_path / "ollama"))
        make_blob(tmp_path / "ollama" / "blobs", 2 * MiB)
        report = ModelDiscoveryProbe().scan()
        assert tmp_path / "ollama" / "blobs" in report.searched
        assert report.gguf_models >= 1


class TestProbe:
    """Active load-and-generate probing."""

    def test_compatible_model(self, blobs_dir, make_blob, fake_runtime):
        blob = make_blob(blobs_dir, 2 * MiB)
        outcome = ModelDiscoveryProbe(runtime=fake_runtime).probe_compatibility(blob)
        assert outcome.compatible
        assert fake_runtime.context_args[0] == 256
        assert fake_runtime.events[-2:] == ["release_context", "release_model"]

    def test_unsupported_architecture(self, blobs_dir, make_blob):
        blob = make_blob(blobs_dir, 2 * MiB)
        runtime = FakeRuntime(fail_load=True, last_error="unknown model architecture: 'mamba3'")
        outcome = ModelDiscoveryProbe(runtime=runtime).probe_compatibility(blob)
        assert outcome.verdict is Compatibility.INCOMPATIBLE
        assert outcome.failure_kind is FailureKind.ARCHITECTURE_UNSUPPORTED
        assert outcome.message == "Unsupported model architecture"

    def test_generation_failure_is_incompatible(self, blobs_dir, make_blob):
        """A model that loads but cannot decode is still incompatible."""
        blob = make_blob(blobs_dir, 2 * MiB)
        runtime = FakeRuntime(fail_decode_on_call=1)
        outcome = ModelDiscoveryProbe(runtime=runtime).probe_compatibility(blob)
        assert not outcome.compatible
        assert runtime.events[-2:] == ["release_context", "release_model"]

    def test_scan_with_probe_marks_candidates(self, blobs_dir, make_blob):
        make_blob(blobs_dir, 2 * MiB)
        make_blob(blobs_dir, 2 * MiB)
        runtime = FakeRuntime(fail_load=True)

        report = ModelDiscoveryProbe(runtime=runtime).scan([blobs_dir], test_compatibility=True)

        assert report.gguf_models == 2
        assert report.incompatible_count == 2
        assert report.compatible == []
        assert all(c.failure for c in report.candidates)

    def test_scan_with_probe_finds_compatible(self, blobs_dir, make_blob, fake_runtime):
        make_blob(blobs_dir, 2 * MiB)
        report = ModelDiscoveryProbe(runtime=fake_runtime).scan([blobs_dir], test_compatibility=True)
        assert report.compatible_count == 1
        assert report.compatible[0].compatibility is Compatibility.COMPATIBLE


class TestConvenienceFunctions:
    """Module-level helpers that build a default ModelDiscoveryProbe."""

    def test_find_ollama_models(self, blobs_dir, make_blob):
        blob = make_blob(blobs_dir, 2 * MiB)
        make_blob(blobs_dir, 2 * MiB, version=9)

        report = find_ollama_models([blobs_dir])

        assert report.total_found == 2
        assert [c.path for c in report.candidates] == [blob]
        assert report.candidates[0].compatibility is Compatibility.UNTESTED

    def test_find_ollama_models_with_compatibility(self, blobs_dir, make_blob, monkeypatch):
        make_blob(blobs_dir, 2 * MiB)
        monkeypatch.setattr("edgeinfer.inference.engine.LlamaCppRuntime", FakeRuntime)
        report = find_ollama_models([blobs_dir], test_compatibility=True)
        assert report.compatible_count == 1

    def test_check_model_compatibility(self, blobs_dir, make_blob, fake_runtime, monkeypatch):
        blob = make_blob(blobs_dir, 2 * MiB)
        monkeypatch.setattr("edgeinfer.inference.engine.LlamaCppRuntime", lambda: fake_runtime)
        assert check_model_compatibility(blob) is True
        assert fake_runtime.events[-1] == "release_model"

    def test_check_model_compatibility_failure(self, blobs_dir, make_blob, monkeypatch):
        blob = make_blob(blobs_dir, 2 * MiB)
        monkeypatch.setattr(
            "edgeinfer.inference.engine.LlamaCppRuntime",
            lambda: FakeRuntime(fail_load=True),
        )
        assert check_model_compatibility(blob) is False

    def test_check_model_compatibility_without_bindings(self, blobs_dir, make_blob, monkeypatch):
        def no_bindings():
            raise ImportError("llama-cpp-python is required for LlamaCppRuntime")

        blob = make_blob(blobs_dir, 2 * MiB)
        monkeypatch.setattr("edgeinfer.inference.engine.LlamaCppRuntime", no_bindings)
        assert check_model_compatibility(blob) is False


class TestClassifyFailure:
    @pytest.mark.parametrize("message,kind", [
        ("unknown model architecture: 'foo'", FailureKind.ARCHITECTURE_UNSUPPORTED),
        ("gguf_init: invalid magic characters", FailureKind.INVALID_FILE),
        ("unsupported GGUF version 9", FailureKind.VERSION_UNSUPPORTED),
        ("out of memory", FailureKind.GENERIC),
    ])
    def test_kinds(self, message, kind):
        assert classify_failure(message)[0] is kind

    def test_generic_message_truncated(self):
        kind, label = classify_failure("x" * 200)
        assert kind is FailureKind.GENERIC
        assert label.startswith("Error: ")
        assert label.endswith("...")
        assert len(label) == len("Error: ") + 80


class TestLookupByHash:
    """Finding and loading blobs by digest prefix."""

    @pytest.fixture
    def two_blobs(self, blobs_dir, make_blob):
        make_blob(blobs_dir, 2 * MiB, digest="abc123" + "0" * 58)
        make_blob(blobs_dir, 2 * MiB, digest="abd456" + "0" * 58)
        return blobs_dir

    def test_unique_prefix(self, two_blobs):
        candidate = ModelDiscoveryProbe().find_by_hash("abc", [two_blobs])
        assert candidate.sha256.startswith("abc123")

    def test_prefix_with_blob_name(self, two_blobs):
        candidate = ModelDiscoveryProbe().find_by_hash("sha256-ABD4", [two_blobs])
        assert candidate.sha256.startswith("abd456")

    def test_ambiguous_prefix(self, two_blobs):
        with pytest.raises(ModelNotFoundError, match="Multiple models"):
            ModelDiscoveryProbe().find_by_hash("ab", [two_blobs])

    def test_no_match(self, two_blobs):
        with pytest.raises(ModelNotFoundError, match="abc123"):
            ModelDiscoveryProbe().find_by_hash("ffff", [two_blobs])

    def test_no_models(self, tmp_path):
        with pytest.raises(ModelNotFoundError, match="No Ollama models"):
            ModelDiscoveryProbe().find_by_hash("abc", [tmp_path])

    def test_empty_hash(self, two_blobs):
        with pytest.raises(InvalidArgumentError):
            ModelDiscoveryProbe().find_by_hash("  ", [two_blobs])

    def test_load_by_hash(self, two_blobs, fake_runtime):
        probe = ModelDiscoveryProbe(runtime=fake_runtime)
        with probe.load_by_hash("abd", context_length=128, directories=[two_blobs]) as session:
            assert session.is_valid()
            assert session.model_path.endswith("sha256-abd456" + "0" * 58)


class TestDigest:
    def test_matching_digest(self, tmp_path):
        data = b"GGUF\x03\x00\x00\x00weights"
        path = tmp_path / f"sha256-{hashlib.sha256(data).hexdigest()}"
        path.write_bytes(data)
        assert verify_blob_digest(path)

    def test_mismatched_digest(self, tmp_path, make_blob):
        blob = make_blob(tmp_path, 1024)
        candidate = ModelBlobCandidate(path=blob, size_bytes=1024, gguf_version=3, sha256=blob.name[7:])
        assert not verify_blob_digest(candidate)

    def test_name_without_digest(self, tmp_path):
        path = tmp_path / "model.gguf"
        path.write_bytes(b"GGUF")
        assert not verify_blob_digest(path)
