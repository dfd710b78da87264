"""Codec selection for partition imaging.

Selection is a pure lookup on the filesystem kind:

- ext2/3/4, ntfs and FAT partitions use the filesystem-aware partclone
  copier, which reads only used blocks.
- swap is skipped; only its type is remembered and the signature is
  recreated with mkswap on restore.
- everything else, including an undetected filesystem, falls back to a raw
  dd copy of the whole partition. An unknown filesystem never aborts a
  backup.

At capture time a missing partclone binary also downgrades to the raw
copier; the chosen codec is persisted so restore uses the matching tool.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from cyc_cloner.domain.models import CodecKind, FilesystemKind
from cyc_cloner.logging import get_logger
from cyc_cloner.storage.tools import ToolRunner


log = get_logger(source="codecs")

RAW_BLOCK_SIZE = "4M"

PARTCLONE_TOOLS = {
    FilesystemKind.EXT2: "partclone.ext2",
    FilesystemKind.EXT3: "partclone.ext3",
    FilesystemKind.EXT4: "partclone.ext4",
    FilesystemKind.NTFS: "partclone.ntfs",
    FilesystemKind.VFAT: "partclone.fat",
    FilesystemKind.FAT16: "partclone.fat",
    FilesystemKind.FAT32: "partclone.fat",
}


@dataclass(frozen=True)
class CodecSelection:
    kind: CodecKind
    tool: Optional[str] = None  # partclone binary, "dd", or None for swap


RAW_CODEC = CodecSelection(CodecKind.RAW, "dd")
SWAP_CODEC = CodecSelection(CodecKind.SKIP_SWAP, None)


def select_codec(kind: FilesystemKind) -> CodecSelection:
    """Map a filesystem kind to the codec that images it."""
    if kind is FilesystemKind.SWAP:
        return SWAP_CODEC
    tool = PARTCLONE_TOOLS.get(kind)
    if tool is None:
        return RAW_CODEC
    return CodecSelection(CodecKind.BLOCK_COPIER, tool)


def codec_for_record(kind: FilesystemKind, codec: CodecKind) -> CodecSelection:
    """Rebuild the selection a stored partition was captured with."""
    if codec is CodecKind.SKIP_SWAP:
        return SWAP_CODEC
    if codec is CodecKind.RAW:
        return RAW_CODEC
    selection = select_codec(kind)
    if selection.kind is not CodecKind.BLOCK_COPIER:
        return RAW_CODEC
    return selection


def resolve_capture_codec(kind: FilesystemKind, runner: ToolRunner) -> CodecSelection:
    """Select a codec and downgrade to raw when partclone is unavailable."""
    selection = select_codec(kind)
    if selection.kind is CodecKind.BLOCK_COPIER and not runner.which(selection.tool):
        log.warning(
            f"{selection.tool} not available for {kind.value}, falling back to raw copy"
        )
        return RAW_CODEC
    return selection


def capture_command(selection: CodecSelection, source_node: str) -> list[str]:
    """Command writing the partition content to stdout."""
    if selection.kind is CodecKind.BLOCK_COPIER:
        return [selection.tool, "-c", "-s", source_node, "-o", "-"]
    if selection.kind is CodecKind.RAW:
        return ["dd", f"if={source_node}", f"bs={RAW_BLOCK_SIZE}", "status=none"]
    raise ValueError("swap partitions are not captured")


def restore_command(selection: CodecSelection, target_node: str) -> list[str]:
    """Command reading partition content from stdin onto ``target_node``."""
    if selection.kind is CodecKind.BLOCK_COPIER:
        return [selection.tool, "-r", "-s", "-", "-o", target_node]
    if selection.kind is CodecKind.RAW:
        return ["dd", f"of={target_node}", f"bs={RAW_BLOCK_SIZE}", "conv=fsync", "status=none"]
    return swap_command(target_node)


def swap_command(target_node: str) -> list[str]:
    return ["mkswap", target_node]
