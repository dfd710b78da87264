"""Partition imaging: backup set catalog, codecs, partition tables and restore.

Main Functions:
    - load_backup_set(): Load a finalized backup set from disk
    - list_backup_sets(): List backup sets under the backup root
    - verify_backup_set(): Integrity-check every stored image
    - select_codec(): Codec lookup by filesystem kind
"""
from .catalog import (
    CodecResult,
    append_partition,
    create_backup_set,
    finalize_backup_set,
    list_backup_sets,
    load_backup_set,
)
from .codecs import CodecSelection, select_codec
from .verification import VerificationReport, verify_backup_set, verify_image_file

__all__ = [
    "CodecResult",
    "CodecSelection",
    "VerificationReport",
    "append_partition",
    "create_backup_set",
    "finalize_backup_set",
    "list_backup_sets",
    "load_backup_set",
    "select_codec",
    "verify_backup_set",
    "verify_image_file",
]
