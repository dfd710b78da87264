"""Mounting for classification and bootloader repair.

Every mountpoint this tool creates lives under the configured mount root and
is named ``cyc-<label>-<random>``, so concurrent pipelines never collide and
leftovers can be recognised later. Mounts are acquired through context
managers that detach on every exit path.

Cleanup never kills session-critical processes: stale mounts are detached
lazily, and ``release_mount_users`` refuses to signal sshd, shells or
terminal multiplexers even when they sit inside a mount.

Functions:
    - Mounter.mounted(): Mount a partition for the duration of a block
    - Mounter.bind_mounted(): Bind a host path into a chroot
    - Mounter.unmount(): Unmount, releasing users of own mounts, then lazy detach
    - Mounter.cleanup_stale_mounts(): Detach leftover cyc-* mounts
    - release_mount_users(): SIGTERM non-critical processes using a mount
"""

from __future__ import annotations

import os
import signal
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, Iterable, Optional

from cyc_cloner.logging import LoggerFactory

from .devices import PROC_MOUNTS, is_mountpoint_active, list_active_mountpoints
from .exceptions import MountError, UnmountFailedError
from .tools import ToolRunner


log = LoggerFactory.for_system()

MOUNT_PREFIX = "cyc-"
PROTECTED_PROCESSES = frozenset(
    {
        "sshd",
        "bash",
        "sh",
        "dash",
        "zsh",
        "screen",
        "tmux",
        "tmux: server",
        "login",
        "agetty",
        "systemd",
        "init",
    }
)


def _is_within(path: str, mountpoint: Path) -> bool:
    root = str(mountpoint).rstrip("/")
    return path == root or path.startswith(root + "/")


class Mounter:
    """Mount and unmount with pipeline-unique mountpoints."""

    def __init__(
        self,
        runner: ToolRunner,
        mount_root: Path,
        *,
        timeout: Optional[float] = 10,
        proc_mounts: Path = PROC_MOUNTS,
        proc_root: Path = Path("/proc"),
    ):
        self.runner = runner
        self.mount_root = Path(mount_root)
        self.timeout = timeout
        self.proc_mounts = proc_mounts
        self.proc_root = proc_root

    def allocate(self, label: str) -> Path:
        """Create a fresh, collision-free mountpoint directory."""
        path = self.mount_root / f"{MOUNT_PREFIX}{label}-{uuid.uuid4().hex[:8]}"
        path.mkdir(parents=True, exist_ok=False)
        return path

    def mount(
        self,
        device: str,
        mountpoint: Path,
        *,
        fstype: Optional[str] = None,
        read_only: bool = False,
    ) -> None:
        command = ["mount"]
        if fstype:
            command += ["-t", fstype]
        if read_only:
            command += ["-o", "ro"]
        command += [device, str(mountpoint)]
        result = self.runner.run(command, timeout=self.timeout)
        if not result.ok:
            raise MountError(device, str(mountpoint), result.diagnostic)
        log.debug(f"Mounted {device} at {mountpoint}")

    def bind(self, source: str, mountpoint: Path) -> None:
        result = self.runner.run(["mount", "--bind", source, str(mountpoint)], timeout=self.timeout)
        if not result.ok:
            raise MountError(source, str(mountpoint), result.diagnostic)
        log.debug(f"Bound {source} at {mountpoint}")

    def unmount(self, mountpoint: Path, *, release_users: bool = False) -> bool:
        """Unmount ``mountpoint``.

        With ``release_users`` a busy mount under the mount root gets its
        non-critical users terminated and one more plain attempt before the
        lazy detach.

        Returns:
            True when a lazy detach was needed

        Raises:
            UnmountFailedError: Even the lazy detach failed
        """
        result = self.runner.run(["umount", str(mountpoint)], timeout=self.timeout)
        if result.ok:
            log.debug(f"Unmounted {mountpoint}")
            return False
        if release_users and _is_within(str(mountpoint), self.mount_root):
            if release_mount_users(mountpoint, proc_root=self.proc_root):
                retry = self.runner.run(["umount", str(mountpoint)], timeout=self.timeout)
                if retry.ok:
                    log.debug(f"Unmounted {mountpoint} after releasing its users")
                    return False
        log.warning(f"umount {mountpoint} failed ({result.diagnostic}), detaching lazily")
        lazy = self.runner.run(["umount", "-l", str(mountpoint)], timeout=self.timeout)
        if not lazy.ok:
            raise UnmountFailedError(str(mountpoint), lazy.diagnostic)
        return True

    def _release(self, mountpoint: Path, remove_dir: bool) -> None:
        try:
            self.unmount(mountpoint, release_users=True)
        except UnmountFailedError as error:
            log.error(str(error))
            return
        if remove_dir:
            try:
                mountpoint.rmdir()
            except OSError as error:
                log.debug(f"Leaving mountpoint {mountpoint}: {error}")

    @contextmanager
    def mounted(
        self,
        device: str,
        label: str = "part",
        *,
        mountpoint: Optional[Path] = None,
        fstype: Optional[str] = None,
        read_only: bool = False,
    ) -> Generator[Path, None, None]:
        """Mount ``device`` for the duration of the block.

        Without an explicit ``mountpoint`` a unique one is allocated under the
        mount root and removed afterwards.
        """
        created = False
        if mountpoint is None:
            mountpoint = self.allocate(label)
            created = True
        elif not mountpoint.exists():
            mountpoint.mkdir(parents=True)
            created = True
        try:
            self.mount(device, mountpoint, fstype=fstype, read_only=read_only)
        except MountError:
            if created:
                mountpoint.rmdir()
            raise
        try:
            yield mountpoint
        finally:
            self._release(mountpoint, created)

    @contextmanager
    def bind_mounted(self, source: str, mountpoint: Path) -> Generator[Path, None, None]:
        mountpoint.mkdir(parents=True, exist_ok=True)
        self.bind(source, mountpoint)
        try:
            yield mountpoint
        finally:
            self._release(mountpoint, False)

    def unmount_device_mounts(self, mountpoints: Iterable[str]) -> list[str]:
        """Unmount every active mountpoint given; return those that stayed mounted."""
        remaining = []
        for mountpoint in mountpoints:
            if not is_mountpoint_active(mountpoint, self.proc_mounts):
                continue
            try:
                self.unmount(Path(mountpoint))
            except UnmountFailedError as error:
                log.error(str(error))
                remaining.append(mountpoint)
        return remaining

    def cleanup_stale_mounts(self) -> list[str]:
        """Detach leftover ``cyc-*`` mounts under the mount root, deepest first.

        Uses lazy detachment only and never signals any process.
        """
        stale = [
            mountpoint
            for mountpoint in list_active_mountpoints(self.proc_mounts)
            if _is_within(mountpoint, self.mount_root)
            and any(part.startswith(MOUNT_PREFIX) for part in Path(mountpoint).parts)
        ]
        stale.sort(key=lambda path: len(Path(path).parts), reverse=True)
        detached = []
        for mountpoint in stale:
            result = self.runner.run(["umount", "-l", mountpoint], timeout=self.timeout)
            if result.ok:
                log.info(f"Detached stale mount {mountpoint}")
                detached.append(mountpoint)
            else:
                log.warning(f"Could not detach {mountpoint}: {result.diagnostic}")
        if self.mount_root.is_dir():
            for entry in sorted(self.mount_root.iterdir()):
                if entry.is_dir() and entry.name.startswith(MOUNT_PREFIX):
                    try:
                        entry.rmdir()
                    except OSError:
                        log.debug(f"Mountpoint {entry} not empty, kept")
        return detached


def release_mount_users(
    mountpoint: Path,
    *,
    proc_root: Path = Path("/proc"),
    send_signal: Callable[[int, int], None] = os.kill,
) -> list[int]:
    """SIGTERM processes whose root or cwd lies inside ``mountpoint``.

    Session-critical processes (see ``PROTECTED_PROCESSES``) and this
    process itself are never signalled.

    Returns:
        PIDs that were signalled
    """
    signalled: list[int] = []
    own_pid = os.getpid()
    for entry in sorted(proc_root.iterdir()) if proc_root.is_dir() else []:
        if not entry.name.isdigit():
            continue
        pid = int(entry.name)
        if pid == own_pid:
            continue
        try:
            comm = (entry / "comm").read_text(encoding="utf-8").strip()
            links = [os.readlink(entry / "cwd"), os.readlink(entry / "root")]
        except OSError:
            continue
        if not any(_is_within(link, mountpoint) for link in links):
            continue
        if comm in PROTECTED_PROCESSES:
            log.warning(f"Not terminating protected process {comm} ({pid}) using {mountpoint}")
            continue
        try:
            send_signal(pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        log.info(f"Sent SIGTERM to {comm} ({pid}) using {mountpoint}")
        signalled.append(pid)
    return signalled
