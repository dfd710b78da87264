"""Bootloader installation state machine.

The path taken depends on ``(os_type, boot_mode)``:

    (WINDOWS, UEFI)  copy Windows boot files into the EFI partition when they
                     are missing, then register a firmware boot entry
    (WINDOWS, BIOS)  write the saved MBR boot code back; a missing backup is
                     a warning pointing at the recovery environment
    (LINUX,   *)     grub-install inside a chroot of the root partition with
                     host /proc, /sys and /dev bound in, enable os-prober,
                     regenerate grub.cfg
    (MIXED,   *)     LINUX path, then (UEFI only) the Windows EFI file step
                     so both systems have firmware entries
    (UNKNOWN, *)     LINUX path, best effort

Nothing here fails a restore job. Every failure ends up in
``BootloaderReport.warnings`` and the installer can be re-run later with
``cyc-cloner repair-boot``.
"""

from __future__ import annotations

import shutil
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from cyc_cloner.domain.models import BlockDevice, BootMode, OsType
from cyc_cloner.logging import LoggerFactory
from cyc_cloner.storage.exceptions import BootloaderError, MountError
from cyc_cloner.storage.imaging.partition_table import write_boot_code
from cyc_cloner.storage.mount import Mounter
from cyc_cloner.storage.tools import ToolRunner

from .classifier import (
    EFI_FIRMWARE_PATH,
    find_efi_partition,
    find_linux_root_partition,
    find_windows_partition,
)
from .firmware import FirmwareBootEntries


WINDOWS_BOOT_LABEL = "Windows Boot Manager"
WINDOWS_LOADER = "\\EFI\\Microsoft\\Boot\\bootmgfw.efi"
GRUB_BOOTLOADER_ID = "GRUB"
CHROOT_BINDS = ("/proc", "/sys", "/dev", "/dev/pts")
OS_PROBER_SETTING = "GRUB_DISABLE_OS_PROBER"


@dataclass
class BootloaderReport:
    os_type: OsType
    boot_mode: BootMode
    actions: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.warnings


def enable_os_prober(root: Path) -> bool:
    """Make sure grub's os-prober runs on the next regeneration.

    Returns:
        True when /etc/default/grub was changed
    """
    defaults = root / "etc" / "default" / "grub"
    wanted = f"{OS_PROBER_SETTING}=false"
    lines = defaults.read_text(encoding="utf-8").splitlines() if defaults.exists() else []
    if wanted in (line.strip() for line in lines):
        return False
    kept = [line for line in lines if not line.strip().startswith(f"{OS_PROBER_SETTING}=")]
    kept.append(wanted)
    defaults.parent.mkdir(parents=True, exist_ok=True)
    defaults.write_text("\n".join(kept) + "\n", encoding="utf-8")
    return True


class BootloaderInstaller:
    """Chooses and sequences bootloader repair actions for one disk."""

    def __init__(
        self,
        runner: ToolRunner,
        mounter: Mounter,
        *,
        firmware: Optional[FirmwareBootEntries] = None,
        firmware_path: Path = EFI_FIRMWARE_PATH,
    ):
        self.runner = runner
        self.mounter = mounter
        self.firmware = firmware or FirmwareBootEntries(runner)
        self.firmware_path = firmware_path

    def install(
        self,
        disk: BlockDevice,
        os_type: OsType,
        boot_mode: BootMode,
        *,
        boot_sector: Optional[Path] = None,
    ) -> BootloaderReport:
        log = LoggerFactory.for_bootloader(disk.name)
        report = BootloaderReport(os_type, boot_mode)
        log.info(f"Installing bootloader on {disk.name}: {os_type.value}/{boot_mode.value}")

        if os_type is OsType.WINDOWS:
            if boot_mode is BootMode.UEFI:
                steps = [self._windows_uefi]
            else:
                steps = [lambda d, r: self._windows_bios(d, boot_sector, r)]
        elif os_type is OsType.MIXED and boot_mode is BootMode.UEFI:
            steps = [self._linux, self._windows_uefi]
        else:
            steps = [self._linux]

        for step in steps:
            try:
                step(disk, report)
            except (BootloaderError, MountError) as error:
                log.warning(f"Bootloader step failed: {error}")
                report.warnings.append(str(error))
            except (OSError, ValueError) as error:
                # Unreadable config files, failed copies onto the EFI partition
                log.warning(f"Bootloader step failed: {type(error).__name__}: {error}")
                report.warnings.append(f"{type(error).__name__}: {error}")

        if report.clean:
            log.success(f"Bootloader installed on {disk.name}")
        else:
            log.warning(
                f"Bootloader on {disk.name} finished with {len(report.warnings)} warnings; "
                "re-run with repair-boot once resolved"
            )
        return report

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------

    def _windows_uefi(self, disk: BlockDevice, report: BootloaderReport) -> None:
        efi = find_efi_partition(disk)
        windows = find_windows_partition(disk)
        if efi is None or windows is None:
            missing = "EFI system partition" if efi is None else "Windows partition"
            raise BootloaderError(["efi-setup", disk.device_path], 1, f"{missing} not found")

        with ExitStack() as stack:
            efi_root = stack.enter_context(self.mounter.mounted(efi.device_path, "efi"))
            win_root = stack.enter_context(
                self.mounter.mounted(windows.device_path, "win", fstype="ntfs-3g", read_only=True)
            )
            target = efi_root / "EFI" / "Microsoft" / "Boot"
            if (target / "bootmgfw.efi").exists():
                report.actions.append("Windows boot files already present")
            else:
                source = win_root / "Windows" / "Boot" / "EFI"
                if not source.is_dir():
                    raise BootloaderError(
                        ["cp", str(source)], 1, "Windows boot files not found in Windows/Boot/EFI"
                    )
                target.mkdir(parents=True, exist_ok=True)
                shutil.copytree(source, target, dirs_exist_ok=True)
                bcd = win_root / "Boot" / "BCD"
                if bcd.is_file():
                    shutil.copy2(bcd, target / "BCD")
                report.actions.append("copied Windows boot files to EFI partition")
            if not (target / "BCD").exists():
                report.warnings.append("BCD store missing from EFI partition")

        result = self.firmware.add_entry(
            disk.device_path,
            efi.number or 1,
            WINDOWS_BOOT_LABEL,
            WINDOWS_LOADER,
            partuuid=efi.partuuid,
        )
        if result is None:
            report.actions.append("firmware entry already registered")
        elif result.ok:
            report.actions.append("registered Windows Boot Manager firmware entry")
        else:
            report.warnings.append(f"efibootmgr failed: {result.diagnostic}")

    def _windows_bios(
        self, disk: BlockDevice, boot_sector: Optional[Path], report: BootloaderReport
    ) -> None:
        if find_windows_partition(disk) is None:
            raise BootloaderError(["dd", disk.device_path], 1, "Windows partition not found")
        if boot_sector is None or not boot_sector.is_file():
            report.warnings.append(
                "No MBR boot code backup; boot Windows recovery and run "
                "'bootrec /fixmbr' and 'bootrec /fixboot'"
            )
            return
        write_boot_code(self.runner, disk.device_path, boot_sector).check(BootloaderError)
        report.actions.append("restored MBR boot code")

    # ------------------------------------------------------------------
    # Linux
    # ------------------------------------------------------------------

    def _linux(self, disk: BlockDevice, report: BootloaderReport) -> None:
        root = find_linux_root_partition(disk)
        if root is None:
            raise BootloaderError(["grub-install", disk.device_path], 1, "no Linux root partition")
        uefi = report.boot_mode is BootMode.UEFI
        efi = find_efi_partition(disk) if uefi else None
        if uefi and efi is None:
            raise BootloaderError(
                ["grub-install", disk.device_path], 1, "EFI system partition not found"
            )

        with ExitStack() as stack:
            root_mp = stack.enter_context(self.mounter.mounted(root.device_path, "root"))
            if efi is not None:
                stack.enter_context(
                    self.mounter.mounted(efi.device_path, mountpoint=root_mp / "boot" / "efi")
                )
            binds = list(CHROOT_BINDS)
            efivars = self.firmware_path / "efivars"
            if uefi and efivars.is_dir():
                binds.append(str(efivars))
            for source in binds:
                stack.enter_context(
                    self.mounter.bind_mounted(source, root_mp / source.lstrip("/"))
                )

            self._grub_install(root_mp, disk, uefi)
            report.actions.append(f"grub-install ({'UEFI' if uefi else 'BIOS'}) on {disk.device_path}")
            if enable_os_prober(root_mp):
                report.actions.append("enabled os-prober")
            self.regenerate_config(root_mp)
            report.actions.append("regenerated grub configuration")

            if uefi and not (root_mp / "boot" / "efi" / "EFI" / GRUB_BOOTLOADER_ID / "grubx64.efi").exists():
                report.warnings.append("grubx64.efi not found in EFI partition after install")

    def _grub_install(self, root: Path, disk: BlockDevice, uefi: bool) -> None:
        if uefi:
            chrooted = [
                "chroot", str(root), "grub-install", "--target=x86_64-efi",
                "--efi-directory=/boot/efi", f"--bootloader-id={GRUB_BOOTLOADER_ID}",
                disk.device_path,
            ]
            direct = [
                "grub-install", "--target=x86_64-efi",
                f"--efi-directory={root / 'boot' / 'efi'}",
                f"--boot-directory={root / 'boot'}",
                f"--bootloader-id={GRUB_BOOTLOADER_ID}",
                disk.device_path,
            ]
        else:
            chrooted = ["chroot", str(root), "grub-install", "--target=i386-pc", disk.device_path]
            direct = [
                "grub-install", "--target=i386-pc",
                f"--boot-directory={root / 'boot'}", disk.device_path,
            ]
        result = self.runner.run(chrooted)
        if result.ok:
            return
        LoggerFactory.for_bootloader(disk.name).warning(
            f"grub-install in chroot failed ({result.diagnostic}), retrying from host"
        )
        self.runner.run(direct).check(BootloaderError)

    def regenerate_config(self, root: Path) -> None:
        """Rebuild grub.cfg inside ``root``; safe to call repeatedly.

        Raises:
            BootloaderError: Neither update-grub nor grub-mkconfig succeeded
        """
        result = self.runner.run(["chroot", str(root), "update-grub"])
        if result.ok:
            return
        self.runner.run(
            ["chroot", str(root), "grub-mkconfig", "-o", "/boot/grub/grub.cfg"]
        ).check(BootloaderError)
