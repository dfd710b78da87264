"""UEFI firmware boot entries via efibootmgr."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from cyc_cloner.logging import LoggerFactory
from cyc_cloner.storage.tools import ToolResult, ToolRunner


log = LoggerFactory.for_bootloader()

# Boot0003* Windows Boot Manager	HD(1,GPT,<partuuid>,0x800,0x32000)/File(\EFI\...)
_ENTRY_RE = re.compile(r"^Boot(?P<num>[0-9A-Fa-f]{4})(?P<active>\*?)\s+(?P<rest>.*)$")
_HD_RE = re.compile(r"HD\((?P<part>\d+),(?:GPT|MBR),(?P<uuid>[0-9A-Fa-fx-]+)")


@dataclass(frozen=True)
class BootEntry:
    number: str
    label: str
    active: bool = True
    partuuid: Optional[str] = None
    partition: Optional[int] = None


def parse_entries(output: str) -> list[BootEntry]:
    entries = []
    for line in output.splitlines():
        match = _ENTRY_RE.match(line.strip())
        if not match:
            continue
        rest = match.group("rest")
        label, _, device = rest.partition("\t")
        if not device:
            head, sep, tail = rest.partition(" HD(")
            if sep:
                label, device = head, "HD(" + tail
        hd = _HD_RE.search(device)
        entries.append(
            BootEntry(
                number=match.group("num"),
                label=label.strip(),
                active=bool(match.group("active")),
                partuuid=hd.group("uuid").lower() if hd else None,
                partition=int(hd.group("part")) if hd else None,
            )
        )
    return entries


class FirmwareBootEntries:
    """List and add firmware boot entries keyed by disk, partition and loader."""

    def __init__(self, runner: ToolRunner):
        self.runner = runner

    def list_entries(self) -> list[BootEntry]:
        result = self.runner.run(["efibootmgr", "-v"])
        if not result.ok:
            log.warning(f"Could not list firmware boot entries: {result.diagnostic}")
            return []
        return parse_entries(result.stdout)

    def has_entry(self, label: str, partuuid: Optional[str] = None) -> bool:
        for entry in self.list_entries():
            if entry.label != label:
                continue
            if partuuid is None or entry.partuuid == partuuid.lower():
                return True
        return False

    def add_entry(
        self,
        disk_node: str,
        partition_number: int,
        label: str,
        loader: str,
        *,
        partuuid: Optional[str] = None,
    ) -> Optional[ToolResult]:
        """Register a boot entry unless one with this label already points there.

        Returns:
            The efibootmgr result, or None when the entry already existed
        """
        if self.has_entry(label, partuuid):
            log.info(f"Firmware entry '{label}' already present")
            return None
        return self.runner.run(
            [
                "efibootmgr",
                "-c",
                "-d",
                disk_node,
                "-p",
                str(partition_number),
                "-L",
                label,
                "-l",
                loader,
            ]
        )
