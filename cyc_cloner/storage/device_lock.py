"""Exclusive device claims for concurrent pipelines.

A disk may be owned by at most one pipeline for that pipeline's whole
lifetime. Claims are process-wide so two coordinators started from the same
process also exclude each other.

Usage:
    from cyc_cloner.storage.device_lock import claim_device

    with claim_device("sdb", owner=job.job_id):
        # Wipe table, restore partitions, install bootloader
        ...
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator

from cyc_cloner.logging import LoggerFactory

from .exceptions import DeviceClaimedError


log = LoggerFactory.for_system()


class DeviceClaimRegistry:
    """Tracks which pipeline owns which disk."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owners: dict[str, str] = {}

    def acquire(self, device_name: str, owner: str) -> None:
        with self._lock:
            current = self._owners.get(device_name)
            if current is not None:
                raise DeviceClaimedError(device_name, current)
            self._owners[device_name] = owner
        log.debug(f"Device {device_name} claimed by {owner}")

    def release(self, device_name: str, owner: str) -> None:
        with self._lock:
            if self._owners.get(device_name) == owner:
                del self._owners[device_name]
        log.debug(f"Device {device_name} released by {owner}")

    def owner_of(self, device_name: str) -> str | None:
        with self._lock:
            return self._owners.get(device_name)

    def active_devices(self) -> list[str]:
        with self._lock:
            return sorted(self._owners)

    @contextmanager
    def claim(self, device_name: str, owner: str) -> Generator[None, None, None]:
        self.acquire(device_name, owner)
        try:
            yield
        finally:
            self.release(device_name, owner)


_registry = DeviceClaimRegistry()


def get_registry() -> DeviceClaimRegistry:
    return _registry


@contextmanager
def claim_device(device_name: str, owner: str) -> Generator[None, None, None]:
    """Claim ``device_name`` in the process-wide registry."""
    with _registry.claim(device_name, owner):
        yield
