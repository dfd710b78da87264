"""Compression helpers for partition images."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from cyc_cloner.storage.tools import ToolRunner


COMPRESSION_SUFFIXES = {
    "gzip": ".gz",
    "zstd": ".zst",
    "none": "",
}


def image_suffix(compression: str) -> str:
    """File suffix for an image written with ``compression``."""
    try:
        return ".img" + COMPRESSION_SUFFIXES[compression]
    except KeyError:
        raise ValueError(f"Unsupported compression: {compression}") from None


def get_compression_type(image_file: Path) -> Optional[str]:
    """Detect compression type of an image file from its name.

    Returns:
        "zstd" if zstd compressed
        "gzip" if gzip compressed
        None if uncompressed
    """
    if ".zst" in image_file.suffixes or image_file.name.endswith(".zst"):
        return "zstd"
    if ".gz" in image_file.suffixes or image_file.name.endswith(".gz"):
        return "gzip"
    return None


def _tool(runner: ToolRunner, compression: str) -> str:
    if compression == "gzip":
        return "pigz" if runner.which("pigz") else "gzip"
    if compression == "zstd":
        return "pzstd" if runner.which("pzstd") else "zstd"
    raise ValueError(f"Unsupported compression: {compression}")


def compress_command(runner: ToolRunner, compression: str) -> Optional[list[str]]:
    """Stream compressor reading stdin, or None for uncompressed images."""
    if compression == "none":
        return None
    return [_tool(runner, compression), "-c"]


def decompress_command(runner: ToolRunner, image_file: Path) -> Optional[list[str]]:
    """Command that writes the decoded image to stdout, or None if raw."""
    compression = get_compression_type(image_file)
    if compression is None:
        return None
    return [_tool(runner, compression), "-dc", str(image_file)]


def integrity_test_command(runner: ToolRunner, image_file: Path) -> Optional[list[str]]:
    """Integrity test that does not write decoded output."""
    compression = get_compression_type(image_file)
    if compression is None:
        return None
    return [_tool(runner, compression), "-t", str(image_file)]
