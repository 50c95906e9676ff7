"""Attached-device registry fed by the monitor connection."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from usbmux_client.frames import AttachedMessage, DetachedMessage, MuxMessage

log = structlog.get_logger()


@dataclass(frozen=True)
class DeviceRecord:
    """One attached device and the properties reported when it attached."""

    device_id: int
    properties: dict[str, Any] = field(default_factory=dict)


class DeviceRegistry:
    """Mapping of device ID to DeviceRecord.

    Only the monitor dispatch loop mutates the registry. Records are replaced
    wholesale on Attached and dropped on Detached.
    """

    def __init__(self) -> None:
        self._devices: dict[str, DeviceRecord] = {}

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: object) -> bool:
        return str(device_id) in self._devices

    def apply(self, message: MuxMessage) -> None:
        """Apply one event. Anything but Attached/Detached is ignored."""
        if isinstance(message, AttachedMessage):
            self._devices[str(message.device_id)] = DeviceRecord(
                device_id=message.device_id,
                properties=message.properties,
            )
            log.debug("device_attached", device_id=message.device_id)
        elif isinstance(message, DetachedMessage):
            self._devices.pop(str(message.device_id), None)
            log.debug("device_detached", device_id=message.device_id)

    def clear(self) -> None:
        self._devices.clear()

    def snapshot(self) -> dict[str, DeviceRecord]:
        """Current devices keyed by device ID string."""
        return dict(self._devices)
