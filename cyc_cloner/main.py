import argparse
import json
import sys
from pathlib import Path

from cyc_cloner.__version__ import __version__
from cyc_cloner.app.context import RunContext
from cyc_cloner.boot.bootloader import BootloaderInstaller
from cyc_cloner.boot.classifier import OsClassifier, detect_boot_mode
from cyc_cloner.config.settings import DEFAULT_SETTINGS, load_settings
from cyc_cloner.domain.models import BootMode
from cyc_cloner.logging import LoggerFactory, operation_context, setup_logging
from cyc_cloner.services.restore_coordinator import RestoreCoordinator
from cyc_cloner.storage.device_lock import claim_device
from cyc_cloner.storage.devices import DeviceEnumerator, human_size, normalize_disk_id
from cyc_cloner.storage.exceptions import StorageError, ValidationError
from cyc_cloner.storage.imaging.backup import create_backup
from cyc_cloner.storage.imaging.catalog import (
    list_backup_sets,
    load_backup_set,
    resolve_backup_path,
)
from cyc_cloner.storage.imaging.verification import verify_backup_set
from cyc_cloner.storage.mount import Mounter

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130


def confirm(prompt, expected="YES", input_fn=input):
    """Ask for a typed confirmation; only the exact ``expected`` text proceeds."""
    try:
        answer = input_fn(f"{prompt} Type '{expected}' to continue: ")
    except EOFError:
        return False
    return answer.strip() == expected


def build_parser():
    parser = argparse.ArgumentParser(
        prog="cyc-cloner",
        description="Partition-level disk backup and parallel restore",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw tool output as well")
    parser.add_argument("--settings", type=Path, help="Path to settings.json")
    parser.add_argument("--backup-dir", type=Path, help="Override the backup root directory")
    parser.add_argument("-y", "--yes", action="store_true", help="Skip typed confirmations")
    parser.add_argument(
        "--boot-mode",
        choices=[mode.value for mode in BootMode],
        help="Override detected boot mode for bootloader installation",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    backup = sub.add_parser("backup", help="Back up every partition of a disk")
    backup.add_argument("disk")

    restore = sub.add_parser("restore", help="Restore a backup set onto one disk")
    restore.add_argument("backup")
    restore.add_argument("disk")

    multi = sub.add_parser("restore-multi", help="Restore a backup set onto several disks in parallel")
    multi.add_argument("backup")
    multi.add_argument("disks", nargs="+")

    verify = sub.add_parser("verify", help="Check every image of a backup set")
    verify.add_argument("backup")

    sub.add_parser("list-backups", help="List backup sets")
    sub.add_parser("list-disks", help="List disks and partitions")

    repair = sub.add_parser("repair-boot", help="Re-run bootloader installation on a restored disk")
    repair.add_argument("disk")
    repair.add_argument("--backup", help="Backup set holding the MBR boot code backup")

    sub.add_parser("cleanup-mounts", help="Lazily detach leftover cyc-* mounts")

    config = sub.add_parser("config", help="Show or change persisted settings")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the effective settings")
    config_set = config_sub.add_parser("set", help="Persist one setting")
    config_set.add_argument("key", choices=sorted(DEFAULT_SETTINGS))
    config_set.add_argument("value", help="JSON value; anything else is stored as a string")
    return parser


def _load_set(context, name):
    return load_backup_set(resolve_backup_path(context.backup_dir, name))


def cmd_backup(args, context):
    disk_id = normalize_disk_id(args.disk)
    if not args.yes and not confirm(f"Back up /dev/{disk_id} to {context.backup_dir}?", "yes"):
        print("Aborted.")
        return EXIT_INVALID
    result = create_backup(context, disk_id)
    backup_set = result.backup_set
    print(f"Backup set: {backup_set.path}")
    print(f"Partitions: {backup_set.partition_count}, failed: {backup_set.failed_partition_count}")
    return EXIT_OK if result.ok else EXIT_FAILED


def cmd_restore(args, context, boot_mode):
    backup_set = _load_set(context, args.backup)
    disk_id = normalize_disk_id(args.disk)
    if not args.yes and not confirm(
        f"ALL DATA on /dev/{disk_id} will be destroyed and replaced with {backup_set.name}."
    ):
        print("Aborted.")
        return EXIT_INVALID
    # Runs in a worker thread so Ctrl-C becomes a cancel request between steps.
    coordinator = RestoreCoordinator(context)
    with operation_context("restore", backup=backup_set.name, disk=disk_id):
        job = coordinator.run(backup_set, [disk_id], boot_mode=boot_mode).jobs[disk_id]
    _print_job(disk_id, job)
    return EXIT_OK if job.succeeded else EXIT_FAILED


def cmd_restore_multi(args, context, boot_mode):
    backup_set = _load_set(context, args.backup)
    disks = [normalize_disk_id(disk) for disk in args.disks]
    if not args.yes and not confirm(
        f"ALL DATA on {', '.join('/dev/' + d for d in disks)} will be destroyed "
        f"and replaced with {backup_set.name}."
    ):
        print("Aborted.")
        return EXIT_INVALID
    coordinator = RestoreCoordinator(context)
    with operation_context("multi-restore", backup=backup_set.name, disks=disks):
        result = coordinator.run(backup_set, disks, boot_mode=boot_mode)
    for disk_id, job in result.jobs.items():
        _print_job(disk_id, job)
    print(f"Succeeded: {len(result.succeeded)}  Failed: {len(result.failed)}")
    return result.exit_code


def _print_job(disk_id, job):
    status = job.state.value.upper()
    line = f"{disk_id}: {status}"
    if job.partition_failures:
        line += f" - {job.partition_failures} partition(s) failed: {job.failed_ordinals}"
    elif job.error:
        line += f" - {job.error}"
    print(line)
    for warning in job.bootloader_warnings:
        print(f"  bootloader warning: {warning}")


def cmd_verify(args, context):
    backup_set = _load_set(context, args.backup)
    report = verify_backup_set(context.runner, backup_set, timeout=context.timeout_seconds)
    for ordinal in report.checked:
        print(f"partition {ordinal}: OK")
    for ordinal in report.skipped:
        print(f"partition {ordinal}: swap, skipped")
    for ordinal, reason in sorted(report.failed.items()):
        print(f"partition {ordinal}: FAILED ({reason})")
    return EXIT_OK if report.ok else EXIT_FAILED


def cmd_list_backups(args, context):
    sets = list_backup_sets(context.backup_dir)
    if not sets:
        print(f"No backup sets in {context.backup_dir}")
        return EXIT_OK
    for backup_set in sets:
        kinds = ",".join(record.filesystem_kind.value for record in backup_set.partitions)
        flag = "" if backup_set.is_restore_eligible else f"  ({backup_set.failed_partition_count} failed)"
        print(
            f"{backup_set.name}  {backup_set.source_disk_id}  {backup_set.boot_mode.value}  "
            f"{backup_set.created_at:%Y-%m-%d %H:%M:%S}  [{kinds}]{flag}"
        )
    return EXIT_OK


def cmd_list_disks(args, context):
    enumerator = DeviceEnumerator(context.runner)
    enumerator.rescan()
    for disk in enumerator.list_disks():
        model = f" {disk.model}" if disk.model else ""
        print(f"{disk.name}  {human_size(disk.size_bytes)}{model}")
        for partition in disk.partitions:
            mounted = f"  mounted on {partition.mountpoint}" if partition.mountpoint else ""
            print(
                f"  {partition.name}  {human_size(partition.size_bytes)}  "
                f"{partition.filesystem_kind.value}{mounted}"
            )
    return EXIT_OK


def cmd_repair_boot(args, context, boot_mode):
    disk_id = normalize_disk_id(args.disk)
    boot_sector = None
    if args.backup:
        boot_sector = _load_set(context, args.backup).boot_sector_path
    if not args.yes and not confirm(f"Reinstall the bootloader on /dev/{disk_id}?"):
        print("Aborted.")
        return EXIT_INVALID
    enumerator = DeviceEnumerator(context.runner)
    mounter = Mounter(context.runner, context.mount_root, timeout=context.mount_timeout_seconds)
    with operation_context("repair-boot", disk=disk_id), claim_device(disk_id, "repair-boot"):
        disk = enumerator.get_disk(disk_id)
        classification = OsClassifier(mounter).classify(disk)
        mode = boot_mode or detect_boot_mode(context.firmware_path)
        installer = BootloaderInstaller(context.runner, mounter, firmware_path=context.firmware_path)
        report = installer.install(
            disk,
            classification.os_type,
            mode,
            boot_sector=boot_sector if boot_sector and boot_sector.exists() else None,
        )
    for action in report.actions:
        print(f"  {action}")
    for warning in report.warnings:
        print(f"  warning: {warning}")
    return EXIT_OK if report.clean else EXIT_FAILED


def cmd_cleanup_mounts(args, context):
    mounter = Mounter(context.runner, context.mount_root, timeout=context.mount_timeout_seconds)
    detached = mounter.cleanup_stale_mounts()
    print(f"Detached {len(detached)} stale mount(s)")
    return EXIT_OK


def cmd_config(args, store):
    if args.config_command == "show":
        for key in sorted(store.values):
            print(f"{key} = {json.dumps(store.values[key])}")
        return EXIT_OK
    try:
        value = json.loads(args.value)
    except json.JSONDecodeError:
        value = args.value
    store.set(args.key, value)
    print(f"{args.key} = {json.dumps(value)} (saved to {store.path})")
    return EXIT_OK


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    store = load_settings(args.settings)
    context = RunContext.from_settings(store, backup_dir=args.backup_dir)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=context.log_dir)
    log = LoggerFactory.for_system()
    boot_mode = BootMode(args.boot_mode) if args.boot_mode else None

    commands = {
        "backup": lambda: cmd_backup(args, context),
        "restore": lambda: cmd_restore(args, context, boot_mode),
        "restore-multi": lambda: cmd_restore_multi(args, context, boot_mode),
        "verify": lambda: cmd_verify(args, context),
        "list-backups": lambda: cmd_list_backups(args, context),
        "list-disks": lambda: cmd_list_disks(args, context),
        "repair-boot": lambda: cmd_repair_boot(args, context, boot_mode),
        "cleanup-mounts": lambda: cmd_cleanup_mounts(args, context),
        "config": lambda: cmd_config(args, store),
    }
    try:
        return commands[args.command]()
    except ValidationError as error:
        log.error(str(error))
        return EXIT_INVALID
    except StorageError as error:
        log.error(str(error))
        return EXIT_FAILED
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
