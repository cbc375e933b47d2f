"""Discovered-device to configured-target matching."""

from __future__ import annotations

from collections.abc import Iterable

from heatmatctl.core.model import DetectedDevice, normalize_address


def is_target(device: DetectedDevice, target_address: str) -> bool:
    return normalize_address(device.address) == normalize_address(target_address)


def find_target(devices: Iterable[DetectedDevice], target_address: str) -> DetectedDevice | None:
    for device in devices:
        if is_target(device, target_address):
            return device
    return None
