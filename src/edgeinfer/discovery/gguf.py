"""
GGUF Header Reader

Pure Python parsing of the GGUF header and metadata block. Tensor data is
never touched; the model runtime owns that.

References:
- GGUF spec: https://github.com/ggerganov/ggml/blob/master/docs/gguf.md
- v1 used 32-bit counts and string lengths; v2 and v3 use 64-bit
"""

import logging
import mmap
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# =============================================================================
# GGUF Constants
# =============================================================================

GGUF_MAGIC = 0x46554747  # "GGUF" in little-endian
GGUF_MAGIC_BYTES = b"GGUF"
GGUF_MIN_VERSION = 1
GGUF_MAX_VERSION = 3

# Arrays longer than this (token lists, merges) are summarized, not kept
MAX_ARRAY_ITEMS_KEPT = 64

# Metadata value types
GGUF_METADATA_VALUE_TYPE_UINT8 = 0
GGUF_METADATA_VALUE_TYPE_INT8 = 1
GGUF_METADATA_VALUE_TYPE_UINT16 = 2
GGUF_METADATA_VALUE_TYPE_INT16 = 3
GGUF_METADATA_VALUE_TYPE_UINT32 = 4
GGUF_METADATA_VALUE_TYPE_INT32 = 5
GGUF_METADATA_VALUE_TYPE_FLOAT32 = 6
GGUF_METADATA_VALUE_TYPE_BOOL = 7
GGUF_METADATA_VALUE_TYPE_STRING = 8
GGUF_METADATA_VALUE_TYPE_ARRAY = 9
GGUF_METADATA_VALUE_TYPE_UINT64 = 10
GGUF_METADATA_VALUE_TYPE_INT64 = 11
GGUF_METADATA_VALUE_TYPE_FLOAT64 = 12

# type -> (struct format, size)
_SCALAR_FORMATS = {
    GGUF_METADATA_VALUE_TYPE_UINT8: ("<B", 1),
    GGUF_METADATA_VALUE_TYPE_INT8: ("<b", 1),
    GGUF_METADATA_VALUE_TYPE_UINT16: ("<H", 2),
    GGUF_METADATA_VALUE_TYPE_INT16: ("<h", 2),
    GGUF_METADATA_VALUE_TYPE_UINT32: ("<I", 4),
    GGUF_METADATA_VALUE_TYPE_INT32: ("<i", 4),
    GGUF_METADATA_VALUE_TYPE_FLOAT32: ("<f", 4),
    GGUF_METADATA_VALUE_TYPE_UINT64: ("<Q", 8),
    GGUF_METADATA_VALUE_TYPE_INT64: ("<q", 8),
    GGUF_METADATA_VALUE_TYPE_FLOAT64: ("<d", 8),
}


def sniff_gguf_version(path: str | Path) -> Optional[int]:
    """
    Read the first 8 bytes of a file.

    Returns:
        The little-endian version field if the file starts with the GGUF
        magic, None otherwise (including short or unreadable files)
    """
    try:
        with open(path, "rb") as f:
            head = f.read(8)
    except OSError as e:
        logger.debug(f"Cannot read {path}: {e}")
        return None

    if len(head) < 8 or head[:4] != GGUF_MAGIC_BYTES:
        return None
    return struct.unpack("<I", head[4:8])[0]


# =============================================================================
# Data Structures
# =============================================================================

@dataclass
class GGUFHeader:
    """GGUF file header and metadata."""
    magic: int
    version: int
    n_tensors: int
    n_kv: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def architecture(self) -> Optional[str]:
        return self.metadata.get("general.architecture")

    @property
    def name(self) -> Optional[str]:
        return self.metadata.get("general.name")

    @property
    def context_length(self) -> Optional[int]:
        if self.architecture is None:
            return None
        return self.metadata.get(f"{self.architecture}.context_length")


# =============================================================================
# GGUF Parser
# =============================================================================

class GGUFReader:
    """
    Memory-mapped GGUF header reader.

    Usage:
        with GGUFReader("model.gguf") as reader:
            print(reader.header.architecture)
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._file = None
        self._mmap = None
        self._header: Optional[GGUFHeader] = None
        self._cursor = 0

    def __enter__(self) -> "GGUFReader":
        self._file = open(self.path, "rb")
        try:
            self._mmap = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
            self._parse_header()
        except (ValueError, struct.error):
            self.__exit__()
            raise
        return self

    def __exit__(self, *args):
        if self._mmap:
            self._mmap.close()
            self._mmap = None
        if self._file:
            self._file.close()
            self._file = None

    @property
    def header(self) -> GGUFHeader:
        if self._header is None:
            raise RuntimeError("File not opened - use context manager")
        return self._header

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.header.metadata

    def _read_bytes(self, n: int) -> bytes:
        """Read n bytes from current position."""
        if self._cursor + n > len(self._mmap):
            raise ValueError(f"Truncated GGUF header in {self.path.name}")
        data = self._mmap[self._cursor:self._cursor + n]
        self._cursor += n
        return data

    def _read_scalar(self, value_type: int) -> Any:
        fmt, size = _SCALAR_FORMATS[value_type]
        return struct.unpack(fmt, self._read_bytes(size))[0]

    def _read_u32(self) -> int:
        return self._read_scalar(GGUF_METADATA_VALUE_TYPE_UINT32)

    def _read_count(self, version: int) -> int:
        """Counts and lengths are u32 in v1, u64 afterwards."""
        if version == 1:
            return self._read_u32()
        return self._read_scalar(GGUF_METADATA_VALUE_TYPE_UINT64)

    def _read_string(self, version: int) -> str:
        """Read length-prefixed string."""
        length = self._read_count(version)
        return self._read_bytes(length).decode("utf-8", errors="replace")

    def _read_metadata_value(self, value_type: int, version: int) -> Any:
        """Read a metadata value based on its type."""
        if value_type in _SCALAR_FORMATS:
            return self._read_scalar(value_type)
        elif value_type == GGUF_METADATA_VALUE_TYPE_BOOL:
            return self._read_bytes(1)[0] != 0
        elif value_type == GGUF_METADATA_VALUE_TYPE_STRING:
            return self._read_string(version)
        elif value_type == GGUF_METADATA_VALUE_TYPE_ARRAY:
            arr_type = self._read_u32()
            arr_len = self._read_count(version)
            items = [self._read_metadata_value(arr_type, version) for _ in range(arr_len)]
            if arr_len > MAX_ARRAY_ITEMS_KEPT:
                return {"array_length": arr_len}
            return items
        else:
            raise ValueError(f"Unknown metadata value type: {value_type}")

    def _parse_header(self):
        """Parse GGUF header and metadata."""
        self._cursor = 0

        # Magic and version
        magic = self._read_u32()
        if magic != GGUF_MAGIC:
            raise ValueError(f"Invalid GGUF magic: {hex(magic)}")

        version = self._read_u32()
        if version < GGUF_MIN_VERSION or version > GGUF_MAX_VERSION:
            raise ValueError(f"Unsupported GGUF version: {version}")

        n_tensors = self._read_count(version)
        n_kv = self._read_count(version)

        self._header = GGUFHeader(
            magic=magic,
            version=version,
            n_tensors=n_tensors,
            n_kv=n_kv,
        )

        for _ in range(n_kv):
            key = self._read_string(version)
            value_type = self._read_u32()
            self._header.metadata[key] = self._read_metadata_value(value_type, version)


def inspect_gguf(path: str | Path) -> Dict[str, Any]:
    """
    Return GGUF file info without loading tensors.
    """
    with GGUFReader(path) as reader:
        header = reader.header
        return {
            "version": header.version,
            "n_tensors": header.n_tensors,
            "n_kv": header.n_kv,
            "architecture": header.architecture,
            "name": header.name,
            "context_length": header.context_length,
            "file_type": header.metadata.get("general.file_type"),
            "metadata": header.metadata,
        }
