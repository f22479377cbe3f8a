"""
Discovery - Find and vet locally stored GGUF models.

Provides:
- ModelDiscoveryProbe: Ollama blob scanning and load-and-generate probing
- GGUFReader: header and metadata parsing without touching tensor data
- sniff_gguf_version: 8-byte magic/version check
"""

from .gguf import (
    GGUF_MAGIC,
    GGUF_MAGIC_BYTES,
    GGUF_MIN_VERSION,
    GGUF_MAX_VERSION,
    GGUFHeader,
    GGUFReader,
    inspect_gguf,
    sniff_gguf_version,
)
from .probe import (
    BLOB_PREFIX,
    MIN_BLOB_BYTES,
    DEFAULT_MAX_SIZE_GB,
    Compatibility,
    FailureKind,
    ModelBlobCandidate,
    ProbeOutcome,
    ScanReport,
    ModelDiscoveryProbe,
    default_model_dirs,
    classify_failure,
    verify_blob_digest,
    find_ollama_models,
    check_model_compatibility,
)

__all__ = [
    # GGUF
    "GGUF_MAGIC",
    "GGUF_MAGIC_BYTES",
    "GGUF_MIN_VERSION",
    "GGUF_MAX_VERSION",
    "GGUFHeader",
    "GGUFReader",
    "inspect_gguf",
    "sniff_gguf_version",
    # Probe
    "BLOB_PREFIX",
    "MIN_BLOB_BYTES",
    "DEFAULT_MAX_SIZE_GB",
    "Compatibility",
    "FailureKind",
    "ModelBlobCandidate",
    "ProbeOutcome",
    "ScanReport",
    "ModelDiscoveryProbe",
    "default_model_dirs",
    "classify_failure",
    "verify_blob_digest",
    "find_ollama_models",
    "check_model_compatibility",
]
