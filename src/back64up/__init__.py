"""
back64up - Back up every file matching a glob pattern as base64 text,
serialized to a single JSON, CSV or TSV file.
"""

__version__ = "0.1.0"

from .back64up import (
    create_backup,
    build_snapshot,
    enumerate_paths,
    encode_file,
    encode_bytes,
    decode,
    display_text,
    ConsoleManager,
    FileEntry,
    FileSystemSnapshot,
    SUPPORTED_FORMATS,
)
from .errors import (
    Back64upError,
    UsageError,
    EnumerationError,
    ReadError,
    AggregateReadError,
    WriteError,
    BuildError,
    DecodeError,
)

__all__ = [
    # The primary function: enumerate, encode, serialize and write.
    "create_backup",

    # Pipeline stages, usable on their own.
    "build_snapshot",
    "enumerate_paths",
    "encode_file",
    "encode_bytes",
    "decode",
    "display_text",

    # Data structures and output handling.
    "ConsoleManager",
    "FileEntry",
    "FileSystemSnapshot",
    "SUPPORTED_FORMATS",

    # Errors.
    "Back64upError",
    "UsageError",
    "EnumerationError",
    "ReadError",
    "AggregateReadError",
    "WriteError",
    "BuildError",
    "DecodeError",
]
