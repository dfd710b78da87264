"""Tests for storage/devices.py - block device enumeration.

This test suite covers:
- lsblk JSON parsing into BlockDevice records
- Disk lookup and blkid probing
- Sector counts and rescans
- /proc/mounts helpers
"""

import json

import pytest

from cyc_cloner.domain.models import FilesystemKind
from cyc_cloner.storage import devices
from cyc_cloner.storage.devices import DeviceEnumerator, human_size, normalize_disk_id
from cyc_cloner.storage.exceptions import DeviceNotFoundError, ToolInvocationError


LSBLK_OUTPUT = {
    "blockdevices": [
        {
            "name": "sda",
            "type": "disk",
            "size": 64023257088,
            "model": "SanDisk",
            "pttype": "gpt",
            "children": [
                {"name": "sda1", "type": "part", "size": 536870912, "fstype": "vfat",
                 "parttype": "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"},
                {"name": "sda2", "type": "part", "size": 21474836480, "fstype": "ext4",
                 "mountpoint": "/"},
                {"name": "sda3", "type": "part", "size": 2147483648, "fstype": None},
            ],
        },
        {"name": "sdb", "type": "disk", "size": 32000000000, "pttype": None},
        {"name": "loop0", "type": "loop", "size": 1000},
        {"name": "sr0", "type": "rom", "size": 1000},
    ]
}


@pytest.fixture
def enumerator(fake_runner):
    fake_runner.on("lsblk", stdout=json.dumps(LSBLK_OUTPUT))
    return DeviceEnumerator(fake_runner)


class TestHelpers:
    """Test module helpers."""

    @pytest.mark.parametrize("raw,expected", [("/dev/sdb", "sdb"), ("sdb", "sdb"), (" nvme0n1 ", "nvme0n1")])
    def test_normalize_disk_id(self, raw, expected):
        """Test /dev/ prefixes and whitespace are removed."""
        assert normalize_disk_id(raw) == expected

    def test_human_size(self):
        """Test byte counts are rendered with units."""
        assert human_size(512) == "512.0B"
        assert human_size(1024**3) == "1.0GB"
        assert human_size(None) == "0B"

    def test_mountpoint_active(self, tmp_path):
        """Test /proc/mounts lookup."""
        mounts = tmp_path / "mounts"
        mounts.write_text("/dev/sda2 / ext4 rw 0 0\n/dev/sdb1 /mnt/cyc-efi-1 vfat rw 0 0\n")
        assert devices.is_mountpoint_active("/mnt/cyc-efi-1", mounts)
        assert not devices.is_mountpoint_active("/mnt/other", mounts)

    def test_list_active_mountpoints_unescapes(self, tmp_path):
        """Test escaped spaces are decoded."""
        mounts = tmp_path / "mounts"
        mounts.write_text("/dev/sdb1 /media/My\\040Disk vfat rw 0 0\n")
        assert devices.list_active_mountpoints(mounts) == ["/media/My Disk"]

    def test_list_active_mountpoints_missing_file(self, tmp_path):
        """Test a missing mounts table yields nothing."""
        assert devices.list_active_mountpoints(tmp_path / "absent") == []


class TestDeviceEnumerator:
    """Test DeviceEnumerator against canned lsblk output."""

    def test_list_block_devices_only_disks(self, enumerator, fake_runner):
        """Test loop and rom devices are excluded."""
        disks = enumerator.list_block_devices()
        assert [d.name for d in disks] == ["sda", "sdb"]
        assert fake_runner.called("lsblk", "-J", "-b")

    def test_partitions_in_enumeration_order(self, enumerator):
        """Test partitions keep lsblk order and kinds."""
        disk = enumerator.find_disk("/dev/sda")
        assert [p.name for p in disk.partitions] == ["sda1", "sda2", "sda3"]
        assert disk.partitions[1].filesystem_kind is FilesystemKind.EXT4
        assert disk.is_mounted

    def test_get_disk_missing(self, enumerator):
        """Test unknown disks raise DeviceNotFoundError."""
        with pytest.raises(DeviceNotFoundError) as exc_info:
            enumerator.get_disk("sdz")
        assert exc_info.value.device_name == "sdz"

    def test_get_disk_probes_unknown_filesystems(self, enumerator, fake_runner):
        """Test blkid fills in filesystems lsblk could not report."""
        fake_runner.on("blkid", "-o", "value", "-s", "TYPE", "/dev/sda3", stdout="swap\n")
        disk = enumerator.get_disk("sda")
        assert disk.partitions[2].filesystem_kind is FilesystemKind.SWAP
        assert fake_runner.find("blkid") == [("blkid", "-o", "value", "-s", "TYPE", "/dev/sda3")]

    def test_get_disk_without_probe(self, enumerator, fake_runner):
        """Test probe=False skips blkid."""
        disk = enumerator.get_disk("sda", probe=False)
        assert disk.partitions[2].filesystem_kind is FilesystemKind.UNKNOWN
        assert not fake_runner.called("blkid")

    def test_probe_failure_leaves_unknown(self, enumerator, fake_runner):
        """Test an undetectable filesystem stays UNKNOWN."""
        fake_runner.on("blkid", returncode=2)
        disk = enumerator.get_disk("sda")
        assert disk.partitions[2].filesystem_kind is FilesystemKind.UNKNOWN

    def test_lsblk_failure_raises(self, fake_runner):
        """Test a failing lsblk is an error, not an empty list."""
        fake_runner.on("lsblk", returncode=1, stderr="lsblk: failed")
        with pytest.raises(ToolInvocationError):
            DeviceEnumerator(fake_runner).list_block_devices()

    def test_lsblk_garbage_raises(self, fake_runner):
        """Test unparseable lsblk output is an error."""
        fake_runner.on("lsblk", stdout="not json")
        with pytest.raises(ToolInvocationError):
            DeviceEnumerator(fake_runner).list_block_devices()

    def test_disk_sectors(self, enumerator, fake_runner):
        """Test blockdev --getsz output is parsed."""
        fake_runner.on("blockdev", "--getsz", "/dev/sdb", stdout="62500000\n")
        assert enumerator.disk_sectors("sdb") == 62500000

    def test_disk_sectors_failure(self, enumerator, fake_runner):
        """Test an unknown size is None."""
        fake_runner.on("blockdev", returncode=1)
        assert enumerator.disk_sectors("sdb") is None

    def test_rescan(self, fake_runner, tmp_path):
        """Test every SCSI host is asked to scan and udev is settled."""
        host = tmp_path / "host0"
        host.mkdir()
        DeviceEnumerator(fake_runner, scsi_host_root=tmp_path).rescan()
        assert (host / "scan").read_text() == "- - -"
        assert fake_runner.called("partprobe")
        assert fake_runner.called("udevadm", "settle")
