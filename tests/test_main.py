"""Tests for the command line entry point."""

import json
import threading
from types import SimpleNamespace

import pytest

from conftest import FakeEnumerator, linux_uefi_disk, make_disk, make_partition
from cyc_cloner import main
from cyc_cloner.domain.models import DiskTarget, JobState, RestoreJob
from cyc_cloner.services import restore_coordinator
from cyc_cloner.storage.exceptions import ToolInvocationError


# ==============================================================================
# Helper Function Tests
# ==============================================================================


class TestConfirm:
    """Test the typed confirmation prompt."""

    def test_exact_answer_proceeds(self):
        assert main.confirm("Wipe sdb?", input_fn=lambda prompt: "YES")

    def test_answer_is_stripped(self):
        assert main.confirm("Wipe sdb?", input_fn=lambda prompt: "  YES \n")

    def test_anything_else_aborts(self):
        assert not main.confirm("Wipe sdb?", input_fn=lambda prompt: "yes")
        assert not main.confirm("Wipe sdb?", input_fn=lambda prompt: "")

    def test_custom_expected_text(self):
        assert main.confirm("Back up sda?", "yes", input_fn=lambda prompt: "yes")

    def test_eof_aborts(self):
        def closed(prompt):
            raise EOFError

        assert not main.confirm("Wipe sdb?", input_fn=closed)


class TestBuildParser:
    """Test argument parsing."""

    def test_restore_multi_targets(self):
        args = main.build_parser().parse_args(["restore-multi", "sda_20260118_101500", "sdb", "sdc"])
        assert args.command == "restore-multi"
        assert args.disks == ["sdb", "sdc"]

    def test_global_options(self, tmp_path):
        args = main.build_parser().parse_args(
            ["-y", "--boot-mode", "UEFI", "--backup-dir", str(tmp_path), "restore", "set1", "sdb"]
        )
        assert args.yes
        assert args.boot_mode == "UEFI"
        assert args.backup_dir == tmp_path

    def test_invalid_boot_mode_rejected(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args(["--boot-mode", "CSM", "list-disks"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args([])

    def test_repair_boot_backup_option(self):
        args = main.build_parser().parse_args(["repair-boot", "sdb", "--backup", "set1"])
        assert args.disk == "sdb"
        assert args.backup == "set1"


# ==============================================================================
# Command Tests
# ==============================================================================


class TestCommands:
    """Test command functions with a fake tool runner."""

    def test_verify_reports_each_partition(self, run_context, make_backup_set, capsys):
        backup_set = make_backup_set(["ext4", "swap"])
        args = SimpleNamespace(backup=backup_set.name)

        assert main.cmd_verify(args, run_context) == main.EXIT_OK

        out = capsys.readouterr().out
        assert "partition 1: OK" in out
        assert "partition 2: swap, skipped" in out

    def test_verify_failure(self, run_context, make_backup_set, fake_runner, capsys):
        backup_set = make_backup_set(["ext4"])
        fake_runner.on("pigz", "-t", returncode=1, stderr="unexpected end of file")
        assert main.cmd_verify(SimpleNamespace(backup=backup_set.name), run_context) == main.EXIT_FAILED
        assert "partition 1: FAILED" in capsys.readouterr().out

    def test_list_backups(self, run_context, make_backup_set, capsys):
        make_backup_set(["ext4", "ntfs"], failed=[2])
        assert main.cmd_list_backups(SimpleNamespace(), run_context) == main.EXIT_OK
        out = capsys.readouterr().out
        assert "sda_20260118_101500" in out
        assert "[ext4,ntfs]" in out
        assert "(1 failed)" in out

    def test_list_backups_empty(self, run_context, capsys):
        main.cmd_list_backups(SimpleNamespace(), run_context)
        assert "No backup sets" in capsys.readouterr().out


# ==============================================================================
# Entry Point Tests
# ==============================================================================


@pytest.fixture
def cli(tmp_path, monkeypatch):
    """Run main() with settings and logs kept under tmp_path."""
    monkeypatch.setattr(main, "setup_logging", lambda **kwargs: None)

    def _run(*argv):
        return main.main(
            ["--settings", str(tmp_path / "settings.json"), "--backup-dir", str(tmp_path / "images"), *argv]
        )

    return _run


class FakePipeline:
    threads = []

    def __init__(self, context, *, cancel_event=None):
        self.context = context
        self.cancel_event = cancel_event

    def run(self, backup_set, disk_id, *, boot_mode=None):
        FakePipeline.threads.append(threading.current_thread().name)
        job = RestoreJob(backup_set, DiskTarget(disk_id))
        job.fail("1 of 1 partitions failed on sdb")
        return job


class TestMain:
    """Test main() dispatch and exit codes."""

    def test_list_backups_ok(self, cli, capsys):
        assert cli("list-backups") == main.EXIT_OK

    def test_restore_aborted_without_confirmation(self, cli, make_backup_set, monkeypatch, capsys):
        backup_set = make_backup_set(["ext4"])
        monkeypatch.setattr(main, "confirm", lambda *args, **kwargs: False)

        assert cli("restore", backup_set.name, "sdb") == main.EXIT_INVALID
        assert "Aborted." in capsys.readouterr().out

    def test_failed_restore_exits_one(self, cli, make_backup_set, monkeypatch, capsys):
        backup_set = make_backup_set(["ext4"])
        monkeypatch.setattr(restore_coordinator, "RestorePipeline", FakePipeline)

        assert cli("-y", "restore", backup_set.name, "/dev/sdb") == main.EXIT_FAILED
        assert f"sdb: {JobState.FAILED.value.upper()}" in capsys.readouterr().out

    def test_restore_runs_off_the_main_thread(self, cli, make_backup_set, monkeypatch):
        """Test single-disk restore goes through the coordinator's worker and cancel flag."""
        monkeypatch.setattr(FakePipeline, "threads", [])
        monkeypatch.setattr(restore_coordinator, "RestorePipeline", FakePipeline)
        backup_set = make_backup_set(["ext4"])

        cli("-y", "restore", backup_set.name, "sdb")

        (thread_name,) = FakePipeline.threads
        assert thread_name.startswith("restore")
        assert thread_name != threading.main_thread().name

    def test_missing_backup_set_is_invalid(self, cli):
        assert cli("verify", "does-not-exist") == main.EXIT_INVALID

    def test_duplicate_targets_are_invalid(self, cli, make_backup_set):
        backup_set = make_backup_set(["ext4"])
        assert cli("-y", "restore-multi", backup_set.name, "sdb", "/dev/sdb") == main.EXIT_INVALID

    def test_tool_failure_exits_one(self, cli, monkeypatch):
        def broken(args, context):
            raise ToolInvocationError(["lsblk"], 32, "lsblk: cannot open /sys/block")

        monkeypatch.setattr(main, "cmd_list_disks", broken)
        assert cli("list-disks") == main.EXIT_FAILED

    def test_interrupt_exits_130(self, cli, monkeypatch):
        def interrupted(args, context):
            raise KeyboardInterrupt

        monkeypatch.setattr(main, "cmd_cleanup_mounts", interrupted)
        assert cli("cleanup-mounts") == main.EXIT_INTERRUPTED


class TestRepairBoot:
    """Test cmd_repair_boot() classification, installation and exit codes."""

    @pytest.fixture
    def repair(self, run_context, fake_mounter, monkeypatch):
        def _run(disk, *, backup=None):
            monkeypatch.setattr(main, "DeviceEnumerator", lambda runner: FakeEnumerator([disk]))
            monkeypatch.setattr(main, "Mounter", lambda *args, **kwargs: fake_mounter)
            args = SimpleNamespace(disk=disk.name, backup=backup, yes=True)
            return main.cmd_repair_boot(args, run_context, None)

        return _run

    def test_clean_linux_repair(self, repair, fake_runner, fake_mounter, capsys):
        code = repair(linux_uefi_disk("sdb"))

        assert code == main.EXIT_OK
        root = fake_mounter.tree("/dev/sdb1")
        assert fake_runner.called("chroot", str(root), "grub-install", "--target=i386-pc", "/dev/sdb")
        assert "regenerated grub configuration" in capsys.readouterr().out

    def test_warnings_exit_one(self, repair, uefi_firmware, capsys):
        code = repair(linux_uefi_disk("sdb"))

        assert code == main.EXIT_FAILED
        assert "warning: grubx64.efi not found in EFI partition after install" in capsys.readouterr().out

    def test_windows_bios_uses_backup_boot_code(self, repair, make_backup_set, fake_runner, fake_mounter):
        backup_set = make_backup_set(["ntfs"])
        (fake_mounter.tree("/dev/sdb1") / "Windows").mkdir()
        disk = make_disk("sdb", [make_partition("sdb1", "ntfs", 60)])

        code = repair(disk, backup=backup_set.name)

        assert code == main.EXIT_OK
        (write,) = fake_runner.find("dd", f"if={backup_set.boot_sector_path}")
        assert "of=/dev/sdb" in write
        assert not fake_runner.called("chroot")


class TestConfigCommand:
    """Test the config subcommand."""

    def test_set_persists_parsed_value(self, cli, tmp_path, capsys):
        assert cli("config", "set", "parallel_jobs", "4") == main.EXIT_OK

        saved = json.loads((tmp_path / "settings.json").read_text())
        assert saved["parallel_jobs"] == 4
        assert "parallel_jobs = 4" in capsys.readouterr().out

    def test_set_keeps_plain_strings(self, cli, tmp_path):
        cli("config", "set", "backup_dir", "/srv/images")
        saved = json.loads((tmp_path / "settings.json").read_text())
        assert saved["backup_dir"] == "/srv/images"

    def test_show_reads_back_saved_values(self, cli, capsys):
        cli("config", "set", "stagger_seconds", "0.5")
        capsys.readouterr()

        assert cli("config", "show") == main.EXIT_OK
        out = capsys.readouterr().out
        assert "stagger_seconds = 0.5" in out
        assert 'compression = "gzip"' in out

    def test_unknown_key_rejected(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args(["config", "set", "colour", "red"])
