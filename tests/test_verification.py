"""Tests for storage/imaging/verification.py - image integrity checks."""

import pytest

from cyc_cloner.storage.exceptions import IntegrityError
from cyc_cloner.storage.imaging.verification import verify_backup_set, verify_image_file


class TestVerifyImageFile:
    """Test verify_image_file()."""

    def test_missing_file(self, fake_runner, tmp_path):
        """Test a missing image fails."""
        with pytest.raises(IntegrityError) as exc_info:
            verify_image_file(fake_runner, tmp_path / "partition_1.img.gz")
        assert exc_info.value.reason == "file does not exist"

    def test_empty_file(self, fake_runner, tmp_path):
        """Test an empty image fails without running the decoder."""
        image = tmp_path / "partition_1.img.gz"
        image.write_bytes(b"")
        with pytest.raises(IntegrityError) as exc_info:
            verify_image_file(fake_runner, image)
        assert exc_info.value.reason == "file is empty"
        assert fake_runner.calls == []

    def test_stream_test_failure(self, fake_runner, tmp_path):
        """Test a stream that does not decode fails."""
        image = tmp_path / "partition_1.img.gz"
        image.write_bytes(b"garbage")
        fake_runner.on("pigz", "-t", returncode=1, stderr="pigz: corrupted -- crc32 mismatch")
        with pytest.raises(IntegrityError) as exc_info:
            verify_image_file(fake_runner, image)
        assert "crc32 mismatch" in exc_info.value.reason

    def test_valid_compressed_image(self, fake_runner, tmp_path):
        """Test a decodable image passes."""
        image = tmp_path / "partition_1.img.gz"
        image.write_bytes(b"\x1f\x8bdata")
        verify_image_file(fake_runner, image)
        assert fake_runner.calls == [("pigz", "-t", str(image))]

    def test_uncompressed_image_size_only(self, fake_runner, tmp_path):
        """Test uncompressed images only need to exist and be non-empty."""
        image = tmp_path / "partition_1.img"
        image.write_bytes(b"raw")
        verify_image_file(fake_runner, image)
        assert fake_runner.calls == []


class TestVerifyBackupSet:
    """Test verify_backup_set()."""

    def test_all_ok(self, fake_runner, make_backup_set):
        """Test swap is skipped and every image checked."""
        backup_set = make_backup_set(["ext4", "swap", "ntfs"])
        report = verify_backup_set(fake_runner, backup_set)
        assert report.ok
        assert report.checked == [1, 3]
        assert report.skipped == [2]

    def test_corrupt_image_reported(self, fake_runner, make_backup_set):
        """Test one bad image fails the report without stopping the others."""
        backup_set = make_backup_set(["ext4", "ntfs", "vfat"])
        bad = backup_set.get_partition(2).image_path
        fake_runner.on("pigz", "-t", str(bad), returncode=1, stderr="unexpected end of file")
        report = verify_backup_set(fake_runner, backup_set)
        assert not report.ok
        assert list(report.failed) == [2]
        assert report.checked == [1, 3]

    def test_failed_capture_not_tested(self, fake_runner, make_backup_set):
        """Test partitions that failed at capture are reported without a stream test."""
        backup_set = make_backup_set(["ext4", "ntfs"], failed=[2])
        report = verify_backup_set(fake_runner, backup_set)
        assert report.failed == {2: "partclone: read error"}
        assert len(fake_runner.find("pigz", "-t")) == 1
