"""
Model Discovery Probe

Finds GGUF models stored by Ollama and checks that they actually run.

Ollama keeps model weights as content-addressed blobs (sha256-<digest>) in
its models/blobs directory. Most blobs are GGUF files, but manifests,
licenses, and templates live there too, so candidates are filtered by size
and by the GGUF magic/version in their first 8 bytes. An optional active
probe loads each candidate with a tiny CPU-only context and generates one
token to tell usable models from ones the runtime cannot handle.

Failures are contained per candidate: a bad blob is excluded or marked
incompatible, never raised to the caller of scan().
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from edgeinfer.errors import InvalidArgumentError, ModelNotFoundError
from edgeinfer.inference import DEFAULT_CONTEXT_LENGTH
from edgeinfer.inference.engine import InferenceSession
from edgeinfer.inference.runtime import RuntimeAdapter

from .gguf import GGUF_MAX_VERSION, GGUF_MIN_VERSION, sniff_gguf_version

logger = logging.getLogger(__name__)

BLOB_PREFIX = "sha256-"
MIN_BLOB_BYTES = 1024 ** 2  # Smaller files are manifests/templates, not weights
DEFAULT_MAX_SIZE_GB = 10.0
PROBE_CONTEXT_LENGTH = 256
PROBE_PROMPT = "Hi"
MAX_ERROR_DISPLAY = 80

_HASH_CHUNK_BYTES = 1024 ** 2


class Compatibility(str, Enum):
    """Outcome of the active load-and-generate probe."""
    UNTESTED = "untested"
    COMPATIBLE = "compatible"
    INCOMPATIBLE = "incompatible"


class FailureKind(str, Enum):
    """Diagnostic label for an incompatible model."""
    ARCHITECTURE_UNSUPPORTED = "architecture_unsupported"
    INVALID_FILE = "invalid_file"
    VERSION_UNSUPPORTED = "version_unsupported"
    INVALID_CONTEXT = "invalid_context"
    GENERIC = "generic"


@dataclass(frozen=True)
class ModelBlobCandidate:
    """A blob that looks like a loadable GGUF model."""
    path: Path
    size_bytes: int
    gguf_version: Optional[int]  # None = unknown
    sha256: str
    compatibility: Compatibility = Compatibility.UNTESTED
    failure: Optional[str] = None

    @property
    def size_mb(self) -> float:
        return round(self.size_bytes / 1024 ** 2, 1)

    @property
    def size_gb(self) -> float:
        return round(self.size_mb / 1024, 2)

    @property
    def name(self) -> str:
        return f"ollama_{self.size_mb}mb_{self.sha256[:8]}"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "size_bytes": self.size_bytes,
            "size_mb": self.size_mb,
            "size_gb": self.size_gb,
            "sha256": self.sha256,
            "gguf_version": self.gguf_version,
            "compatibility": self.compatibility.value,
            "failure": self.failure,
        }


@dataclass
class ProbeOutcome:
    """Verdict of probe_compatibility()."""
    verdict: Compatibility
    failure_kind: Optional[FailureKind] = None
    message: Optional[str] = None

    @property
    def compatible(self) -> bool:
        return self.verdict is Compatibility.COMPATIBLE


@dataclass
class ScanReport:
    """Candidates found by a scan, with summary counts."""
    searched: list[Path] = field(default_factory=list)
    candidates: list[ModelBlobCandidate] = field(default_factory=list)
    total_found: int = 0  # Blob files seen, before filtering
    skipped_size: int = 0
    skipped_format: int = 0
    skipped_version: int = 0

    @property
    def models_dir(self) -> Optional[Path]:
        return self.searched[0] if self.searched else None

    @property
    def gguf_models(self) -> int:
        return len(self.candidates)

    @property
    def compatible(self) -> list[ModelBlobCandidate]:
        return [c for c in self.candidates if c.compatibility is Compatibility.COMPATIBLE]

    @property
    def compatible_count(self) -> int:
        return len(self.compatible)

    @property
    def incompatible_count(self) -> int:
        return sum(1 for c in self.candidates if c.compatibility is Compatibility.INCOMPATIBLE)

    def to_dict(self) -> dict:
        return {
            "searched": [str(p) for p in self.searched],
            "models": [c.to_dict() for c in self.candidates],
            "total_found": self.total_found,
            "gguf_models": self.gguf_models,
            "compatible": self.compatible_count,
            "incompatible": self.incompatible_count,
            "skipped_size": self.skipped_size,
            "skipped_format": self.skipped_format,
            "skipped_version": self.skipped_version,
        }


def default_model_dirs() -> list[Path]:
    """
    Ollama blob directories for this platform, most specific first.

    Covers OLLAMA_MODELS, the Linux snap and .deb service homes, the user's
    home directory, and the Windows profile/AppData locations.
    """
    paths: list[Path] = []

    models_env = os.environ.get("OLLAMA_MODELS")
    if models_env:
        paths.append(Path(models_env).expanduser() / "blobs")

    paths.extend([
        Path("/var/snap/ollama/common/models/blobs"),  # Linux snap
        Path("/var/lib/ollama/.ollama/models/blobs"),  # Linux .deb service user
        Path.home() / ".ollama" / "models" / "blobs",
    ])

    for var, subdir in (
        ("USERPROFILE", ".ollama"),
        ("APPDATA", "Ollama"),
        ("APPDATA", ".ollama"),
        ("LOCALAPPDATA", "Ollama"),
        ("LOCALAPPDATA", ".ollama"),
    ):
        base = os.environ.get(var)
        if base:
            paths.append(Path(base) / subdir / "models" / "blobs")

    unique: list[Path] = []
    for path in paths:
        if path not in unique:
            unique.append(path)
    return unique


def classify_failure(message: str) -> tuple[FailureKind, str]:
    """Label a load/generate failure message for diagnostics."""
    if re.search(r"unknown.*architecture", message, re.IGNORECASE):
        return FailureKind.ARCHITECTURE_UNSUPPORTED, "Unsupported model architecture"
    if re.search(r"invalid magic", message, re.IGNORECASE):
        return FailureKind.INVALID_FILE, "Not a valid GGUF file"
    if re.search(r"version", message, re.IGNORECASE):
        return FailureKind.VERSION_UNSUPPORTED, "Unsupported GGUF version"

    if len(message) > MAX_ERROR_DISPLAY:
        message = message[:MAX_ERROR_DISPLAY - 3] + "..."
    return FailureKind.GENERIC, f"Error: {message}"


def verify_blob_digest(candidate: ModelBlobCandidate | Path | str) -> bool:
    """Recompute a blob's SHA-256 and compare it with the digest in its name."""
    path = candidate.path if isinstance(candidate, ModelBlobCandidate) else Path(candidate)
    expected = path.name[len(BLOB_PREFIX):] if path.name.startswith(BLOB_PREFIX) else ""
    if not expected:
        return False

    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest() == expected.lower()


class ModelDiscoveryProbe:
    """
    Scans blob directories and probes candidates for compatibility.

    Usage:
        probe = ModelDiscoveryProbe()
        report = probe.scan(test_compatibility=True)
        for model in report.compatible:
            print(model.name, model.path)
    """

    def __init__(
        self,
        runtime: Optional[RuntimeAdapter] = None,
        probe_context_length: int = PROBE_CONTEXT_LENGTH,
        probe_prompt: str = PROBE_PROMPT,
    ):
        """
        Args:
            runtime: Runtime used by compatibility probes and load_by_hash
                (default: LlamaCppRuntime, created per load)
            probe_context_length: Context size for probe loads
            probe_prompt: Prompt for the one-token probe generation
        """
        self.runtime = runtime
        self.probe_context_length = probe_context_length
        self.probe_prompt = probe_prompt

    # =========================================================================
    # Passive scan
    # =========================================================================

    def scan(
        self,
        directories: Optional[Iterable[str | Path]] = None,
        max_size_gb: float = DEFAULT_MAX_SIZE_GB,
        test_compatibility: bool = False,
    ) -> ScanReport:
        """
        Find GGUF model blobs.

        Args:
            directories: Directories to search (default: default_model_dirs())
            max_size_gb: Skip blobs larger than this
            test_compatibility: Probe each candidate with a real load and
                one-token generation; incompatible ones stay in the report,
                marked as such

        Returns:
            ScanReport with candidates and summary counts
        """
        if max_size_gb <= 0:
            raise InvalidArgumentError("max_size_gb must be positive")
        max_size_bytes = int(max_size_gb * 1024 ** 3)

        if directories is None:
            search_dirs = default_model_dirs()
        else:
            search_dirs = [Path(d).expanduser() for d in directories]

        report = ScanReport()
        seen: set[Path] = set()

        for directory in search_dirs:
            if not directory.is_dir():
                continue
            resolved = directory.resolve()
            if resolved in seen:
                continue
            seen.add(resolved)
            report.searched.append(directory)

            blobs = sorted(p for p in directory.glob(f"{BLOB_PREFIX}*") if p.is_file())
            report.total_found += len(blobs)
            logger.info(f"Found {len(blobs)} potential model blobs in {directory}")

            for blob in blobs:
                candidate = self._inspect_blob(blob, max_size_bytes, report)
                if candidate is None:
                    continue

                if test_compatibility:
                    logger.info(
                        f"Testing: {candidate.name} ({candidate.size_mb}MB, GGUF v{candidate.gguf_version})"
                    )
                    outcome = self.probe_compatibility(blob)
                    candidate = replace(
                        candidate,
                        compatibility=outcome.verdict,
                        failure=outcome.message,
                    )
                else:
                    logger.info(
                        f"Found: {candidate.name} ({candidate.size_mb}MB, GGUF v{candidate.gguf_version})"
                    )
                report.candidates.append(candidate)

        if not report.searched:
            logger.warning("No Ollama models directory found. Is Ollama installed?")
        return report

    def _inspect_blob(
        self,
        blob: Path,
        max_size_bytes: int,
        report: ScanReport,
    ) -> Optional[ModelBlobCandidate]:
        try:
            size = blob.stat().st_size
        except OSError as e:
            logger.debug(f"Cannot stat {blob}: {e}")
            report.skipped_format += 1
            return None

        if size < MIN_BLOB_BYTES or size > max_size_bytes:
            report.skipped_size += 1
            return None

        version = sniff_gguf_version(blob)
        if version is None:
            report.skipped_format += 1
            return None

        if version > GGUF_MAX_VERSION:
            # The runtime may learn newer versions; skip without failing the scan
            logger.warning(
                f"{blob.name} uses GGUF v{version} (supported: v{GGUF_MIN_VERSION}-v{GGUF_MAX_VERSION})"
            )
            report.skipped_version += 1
            return None
        if version < GGUF_MIN_VERSION:
            logger.debug(f"{blob.name} has invalid GGUF version {version}")
            report.skipped_version += 1
            return None

        return ModelBlobCandidate(
            path=blob,
            size_bytes=size,
            gguf_version=version,
            sha256=blob.name[len(BLOB_PREFIX):],
        )

    # =========================================================================
    # Active probe
    # =========================================================================

    def probe_compatibility(self, path: str | Path) -> ProbeOutcome:
        """
        Load a model on CPU with a small context and generate one token.

        Never raises. The session is released on every path.
        """
        try:
            with InferenceSession.load(
                path,
                context_length=self.probe_context_length,
                gpu_layers=0,
                runtime=self.runtime,
            ) as session:
                if not session.is_valid():
                    logger.info("  Model loaded but context invalid")
                    return ProbeOutcome(
                        Compatibility.INCOMPATIBLE,
                        FailureKind.INVALID_CONTEXT,
                        "Model loaded but context invalid",
                    )
                session.generate(self.probe_prompt, max_tokens=1, temperature=0.1)
        except Exception as e:
            kind, label = classify_failure(str(e))
            logger.info(f"  [!] Not compatible: {label}")
            return ProbeOutcome(Compatibility.INCOMPATIBLE, kind, label)

        logger.info("  [+] Compatible")
        return ProbeOutcome(Compatibility.COMPATIBLE)

    # =========================================================================
    # Lookup by digest
    # =========================================================================

    def find_by_hash(
        self,
        partial_hash: str,
        directories: Optional[Iterable[str | Path]] = None,
        max_size_gb: float = DEFAULT_MAX_SIZE_GB,
    ) -> ModelBlobCandidate:
        """
        Find the single candidate whose digest starts with partial_hash.

        Raises:
            ModelNotFoundError: No models, no match, or an ambiguous prefix
        """
        needle = partial_hash.strip().lower()
        if needle.startswith(BLOB_PREFIX):
            needle = needle[len(BLOB_PREFIX):]
        if not needle:
            raise InvalidArgumentError("partial_hash must not be empty")

        report = self.scan(directories, max_size_gb=max_size_gb)
        if not report.candidates:
            raise ModelNotFoundError(
                "No Ollama models found. Make sure Ollama is installed and has downloaded models."
            )

        matches = [c for c in report.candidates if c.sha256.lower().startswith(needle)]
        if not matches:
            available = ", ".join(c.sha256[:8] for c in report.candidates)
            raise ModelNotFoundError(
                f"No Ollama model found matching hash: {partial_hash}\nAvailable models: {available}"
            )
        if len(matches) > 1:
            described = ", ".join(f"{c.sha256[:12]} ({c.size_mb}MB)" for c in matches)
            raise ModelNotFoundError(
                f"Multiple models match hash: {partial_hash}\nMatching models: {described}\n"
                "Use a longer hash to disambiguate."
            )
        return matches[0]

    def load_by_hash(
        self,
        partial_hash: str,
        context_length: int = DEFAULT_CONTEXT_LENGTH,
        gpu_layers: int = 0,
        directories: Optional[Iterable[str | Path]] = None,
    ) -> InferenceSession:
        """Find a blob by digest prefix and load it into a session."""
        candidate = self.find_by_hash(partial_hash, directories)
        logger.info(f"Loading Ollama model: {candidate.name} ({candidate.size_mb}MB)")
        return InferenceSession.load(
            candidate.path,
            context_length=context_length,
            gpu_layers=gpu_layers,
            runtime=self.runtime,
        )


# =============================================================================
# Convenience Functions
# =============================================================================


def find_ollama_models(
    directories: Optional[Iterable[str | Path]] = None,
    test_compatibility: bool = False,
    max_size_gb: float = DEFAULT_MAX_SIZE_GB,
) -> ScanReport:
    """One-off scan with a default probe."""
    return ModelDiscoveryProbe().scan(
        directories,
        max_size_gb=max_size_gb,
        test_compatibility=test_compatibility,
    )


def check_model_compatibility(path: str | Path) -> bool:
    """One-off compatibility probe of a single model file."""
    return ModelDiscoveryProbe().probe_compatibility(path).compatible
