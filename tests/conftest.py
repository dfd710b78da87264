"""
Pytest configuration and shared fixtures for cyc-cloner tests.

This module provides fake collaborators (tool runner, device enumerator,
mounter) so every pipeline can be exercised without root, block devices or
external binaries.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest
from loguru import logger

from cyc_cloner.app.context import RunContext
from cyc_cloner.domain.models import (
    BlockDevice,
    BlockPartition,
    BootMode,
    FilesystemKind,
)
from cyc_cloner.storage.device_lock import DeviceClaimRegistry
from cyc_cloner.storage.exceptions import DeviceNotFoundError, MountError
from cyc_cloner.storage.imaging.catalog import (
    CodecResult,
    append_partition,
    create_backup_set,
    finalize_backup_set,
    image_path_for,
)
from cyc_cloner.storage.imaging.codecs import select_codec
from cyc_cloner.storage.tools import ToolResult, ToolRunner


EFI_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
LINUX_GUID = "0fc63daf-8483-4772-8e79-3d69d8477de4"
MS_DATA_GUID = "ebd0a0a2-b9e5-4433-87c0-68b6b72699c7"

DEFAULT_TOOLS = {
    "pigz",
    "gzip",
    "partclone.ext2",
    "partclone.ext3",
    "partclone.ext4",
    "partclone.ntfs",
    "partclone.fat",
}


# ==============================================================================
# Fake Tool Runner
# ==============================================================================


class FakeRunner(ToolRunner):
    """Records every command and answers from registered handlers.

    Handlers match on a command prefix; the most recently registered match
    wins. Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        super().__init__(search_paths=())
        self.calls: List[tuple] = []
        self.pipelines: List[List[tuple]] = []
        self.inputs: Dict[tuple, Optional[str]] = {}
        self.handlers: List[tuple] = []
        self.available = set(DEFAULT_TOOLS)
        self.pipeline_output = b"\x1f\x8bimage-data"

    def which(self, name):
        return f"/usr/sbin/{name}" if name in self.available else None

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        handler: Optional[Callable] = None,
    ) -> None:
        if handler is None:
            def handler(argv, input_text=None):
                return ToolResult(argv, returncode, stdout, stderr)
        self.handlers.append((tuple(str(p) for p in prefix), handler))

    def _respond(self, argv, input_text=None) -> ToolResult:
        for prefix, handler in reversed(self.handlers):
            if argv[: len(prefix)] == prefix:
                return handler(argv, input_text)
        return ToolResult(argv, 0, "", "")

    def run(self, command, *, input_text=None, timeout=None):
        argv = tuple(str(part) for part in command)
        self.calls.append(argv)
        self.inputs[argv] = input_text
        return self._respond(argv, input_text)

    def pipeline(self, commands, *, stdin_path=None, stdout_path=None, timeout=None):
        argvs = [tuple(str(part) for part in command) for command in commands]
        self.pipelines.append(argvs)
        self.calls.extend(argvs)
        results = [self._respond(argv) for argv in argvs]
        for result in results:
            if not result.ok:
                return result
        if stdout_path is not None:
            Path(stdout_path).write_bytes(self.pipeline_output)
        return ToolResult(argvs[-1], 0, results[-1].stdout, "")

    def find(self, *prefix: str) -> List[tuple]:
        prefix = tuple(prefix)
        return [call for call in self.calls if call[: len(prefix)] == prefix]

    def called(self, *prefix: str) -> bool:
        return bool(self.find(*prefix))


# ==============================================================================
# Fake Device Enumerator
# ==============================================================================


class FakeEnumerator:
    """Serves a fixed set of BlockDevice records."""

    def __init__(self, disks: Sequence[BlockDevice] = (), sectors: int = 62_500_000):
        self.disks: Dict[str, BlockDevice] = {disk.name: disk for disk in disks}
        self.sectors = sectors
        self.rescans = 0

    def add(self, disk: BlockDevice) -> None:
        self.disks[disk.name] = disk

    def list_block_devices(self):
        return list(self.disks.values())

    def list_disks(self):
        return sorted(self.disks.values(), key=lambda d: d.name)

    def find_disk(self, device):
        return self.disks.get(device.replace("/dev/", ""))

    def get_disk(self, device, *, probe=True):
        disk = self.find_disk(device)
        if disk is None:
            raise DeviceNotFoundError(device.replace("/dev/", ""))
        return disk

    def disk_sectors(self, device):
        return self.sectors

    def probe_filesystem(self, node):
        return None

    def rescan(self):
        self.rescans += 1


# ==============================================================================
# Fake Mounter
# ==============================================================================


class FakeMounter:
    """Mounts are directories under tmp_path; contents are set up per device."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.trees: Dict[str, Path] = {}
        self.failing: set = set()
        self.stuck: set = set()
        self.events: List[tuple] = []
        self._counter = 0

    def tree(self, device: str) -> Path:
        """Directory standing in for ``device``'s filesystem contents."""
        if device not in self.trees:
            path = self.root / f"tree-{device.replace('/dev/', '')}"
            path.mkdir(parents=True, exist_ok=True)
            self.trees[device] = path
        return self.trees[device]

    @contextmanager
    def mounted(self, device, label="part", *, mountpoint=None, fstype=None, read_only=False):
        if device in self.failing:
            raise MountError(device, str(mountpoint or label), "wrong fs type, bad superblock")
        if mountpoint is None:
            path = self.tree(device)
        else:
            mountpoint.mkdir(parents=True, exist_ok=True)
            path = mountpoint
        self.events.append(("mount", device, path, read_only))
        try:
            yield path
        finally:
            self.events.append(("unmount", device, path))

    @contextmanager
    def bind_mounted(self, source, mountpoint):
        mountpoint.mkdir(parents=True, exist_ok=True)
        self.events.append(("bind", source, mountpoint))
        try:
            yield mountpoint
        finally:
            self.events.append(("unbind", source, mountpoint))

    def unmount_device_mounts(self, mountpoints):
        for mountpoint in mountpoints:
            self.events.append(("umount", mountpoint))
        return [m for m in mountpoints if m in self.stuck]

    def kinds(self, kind: str) -> List[tuple]:
        return [event for event in self.events if event[0] == kind]


# ==============================================================================
# Device Builders
# ==============================================================================


def make_partition(
    name: str,
    fstype: Optional[str],
    size_gb: float = 1.0,
    *,
    parttype: Optional[str] = None,
    partuuid: Optional[str] = None,
    mountpoint: Optional[str] = None,
) -> BlockPartition:
    return BlockPartition(
        name=name,
        size_bytes=int(size_gb * 1024**3),
        filesystem_kind=FilesystemKind.from_probe(fstype),
        fstype=fstype,
        parttype=parttype,
        partuuid=partuuid,
        mountpoint=mountpoint,
    )


def make_disk(name: str, partitions: Sequence[BlockPartition] = (), size_gb: float = 32.0) -> BlockDevice:
    return BlockDevice(
        name=name,
        size_bytes=int(size_gb * 1024**3),
        partitions=tuple(partitions),
        pttype="gpt",
    )


def linux_uefi_disk(name: str) -> BlockDevice:
    """ext4 root, FAT32 EFI partition and an NTFS data partition."""
    return make_disk(
        name,
        [
            make_partition(f"{name}1", "ext4", 20, parttype=LINUX_GUID),
            make_partition(f"{name}2", "vfat", 0.5, parttype=EFI_GUID, partuuid=f"{name}-efi"),
            make_partition(f"{name}3", "ntfs", 8, parttype=MS_DATA_GUID),
        ],
    )


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_mounter(tmp_path) -> FakeMounter:
    return FakeMounter(tmp_path / "mnt")


@pytest.fixture
def run_context(tmp_path, fake_runner) -> RunContext:
    """RunContext pointing at tmp_path with no stagger and a BIOS host."""
    return RunContext(
        backup_dir=tmp_path / "images",
        mount_root=tmp_path / "mnt",
        log_dir=tmp_path / "logs",
        parallel_jobs=4,
        timeout_seconds=5,
        settle_timeout_seconds=0,
        stagger_seconds=0,
        firmware_path=tmp_path / "no-efi",
        runner=fake_runner,
    )


@pytest.fixture
def uefi_firmware(tmp_path, run_context) -> Path:
    """Make the host look UEFI-booted."""
    path = tmp_path / "efi"
    path.mkdir()
    run_context.firmware_path = path
    return path


@pytest.fixture
def claims() -> DeviceClaimRegistry:
    return DeviceClaimRegistry()


@pytest.fixture
def make_backup_set(tmp_path):
    """Build a finalized backup set on disk from a list of filesystem names.

    Failed ordinals are recorded with a failure marker and no image.
    """

    def _make(
        kinds: Sequence[str],
        *,
        source: str = "sda",
        boot_mode: BootMode = BootMode.BIOS,
        failed: Sequence[int] = (),
        sfdisk_label: str = "gpt",
        boot_sector: bool = True,
        now: Optional[datetime] = None,
    ):
        backup_set = create_backup_set(
            tmp_path / "images",
            source,
            boot_mode,
            now=now or datetime(2026, 1, 18, 10, 15, 0),
        )
        backup_set.sfdisk_table_path.write_text(
            f"label: {sfdisk_label}\ndevice: /dev/{source}\n\n/dev/{source}1 : start=2048\n",
            encoding="utf-8",
        )
        if boot_sector:
            backup_set.boot_sector_path.write_bytes(b"\xeb\x63" + b"\x00" * 444)
        for ordinal, raw in enumerate(kinds, start=1):
            kind = FilesystemKind.from_probe(raw)
            codec = select_codec(kind).kind
            if kind is FilesystemKind.SWAP:
                result = CodecResult(codec)
            elif ordinal in failed:
                result = CodecResult(codec, False, None, "partclone: read error")
            else:
                image = image_path_for(backup_set, ordinal)
                image.write_bytes(b"\x1f\x8bimage-data")
                result = CodecResult(codec, True, image)
            append_partition(backup_set, ordinal, kind, result)
        return finalize_backup_set(backup_set)

    return _make


@pytest.fixture
def log_records():
    """Collect loguru records emitted during the test."""
    records: list = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)
