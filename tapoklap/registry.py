"""Registry of configured devices.

The registry keeps the metadata of the devices the user added, independent of
any live session. Persistence is delegated to a :class:`DeviceRepository`
supplied by the caller, the storage format is up to the repository.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

from .exceptions import KlapException
from .json import DataClassJSONMixin

_LOGGER = logging.getLogger(__name__)


class Capability(Enum):
    """Features a device model supports."""

    OnOff = "on_off"
    Brightness = "brightness"
    Color = "color"
    ColorTemperature = "color_temp"
    EnergyMonitoring = "energy_monitoring"


def capabilities_for_model(model: str | None) -> list[Capability]:
    """Return the capabilities of a device model."""
    model = (model or "").upper()

    if model.startswith("P1") or "PLUG" in model:
        if model in {"P110", "P115"}:
            return [Capability.OnOff, Capability.EnergyMonitoring]
        return [Capability.OnOff]

    if model.startswith("L5"):
        if model in {"L530", "L535"}:
            return [
                Capability.OnOff,
                Capability.Brightness,
                Capability.Color,
                Capability.ColorTemperature,
            ]
        return [Capability.OnOff, Capability.Brightness]

    # Light strips
    if model.startswith("L9"):
        return [Capability.OnOff, Capability.Brightness, Capability.Color]

    return [Capability.OnOff]


def subnet_base(host: str) -> str | None:
    """Return the x.y.z.0 base of the /24 containing host."""
    try:
        address = ipaddress.IPv4Address(host)
    except ValueError:
        return None
    return str(ipaddress.IPv4Network(f"{address}/24", strict=False).network_address)


@dataclass
class DeviceRecord(DataClassJSONMixin):
    """Persisted metadata of a configured device."""

    host: str
    name: str
    model: str = "Unknown"
    capabilities: list[Capability] = field(
        default_factory=lambda: [Capability.OnOff]
    )
    added_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class DeviceRepository(Protocol):
    """Storage for the configured device list."""

    async def load(self) -> list[DeviceRecord]:
        """Return the stored records."""

    async def save(self, records: list[DeviceRecord]) -> None:
        """Replace the stored records."""


class InMemoryDeviceRepository:
    """Repository keeping the records in memory."""

    def __init__(self, records: Iterable[DeviceRecord] = ()) -> None:
        self._records = list(records)

    async def load(self) -> list[DeviceRecord]:
        """Return the stored records."""
        return list(self._records)

    async def save(self, records: list[DeviceRecord]) -> None:
        """Replace the stored records."""
        self._records = list(records)


class DeviceRegistry:
    """Configured devices keyed by host."""

    def __init__(self, repository: DeviceRepository) -> None:
        self._repository = repository
        self._records: dict[str, DeviceRecord] = {}

    async def load(self) -> list[DeviceRecord]:
        """Reload the records from the repository."""
        self._records = {
            record.host: record for record in await self._repository.load()
        }
        _LOGGER.debug("Loaded %s devices", len(self._records))
        return self.records

    async def _save(self) -> None:
        await self._repository.save(self.records)

    @property
    def records(self) -> list[DeviceRecord]:
        """Return all records in insertion order."""
        return list(self._records.values())

    @property
    def hosts(self) -> set[str]:
        """Return the hosts of all records."""
        return set(self._records)

    def get(self, host: str) -> DeviceRecord | None:
        """Return the record for host, if any."""
        return self._records.get(host)

    def __contains__(self, host: object) -> bool:
        return host in self._records

    def __len__(self) -> int:
        return len(self._records)

    async def add(self, record: DeviceRecord) -> DeviceRecord:
        """Add a record and persist the registry."""
        if record.host in self._records:
            raise KlapException(f"Device with IP {record.host} already configured")
        self._records[record.host] = record
        await self._save()
        _LOGGER.info("Added device: %s (%s)", record.name, record.host)
        return record

    async def remove(self, host: str) -> DeviceRecord:
        """Remove the record for host and persist the registry."""
        if (record := self._records.pop(host, None)) is None:
            raise KlapException(f"Device with IP {host} not found")
        await self._save()
        _LOGGER.info("Removed device: %s", host)
        return record

    def known_subnets(self) -> set[str]:
        """Return the /24 subnet bases of all configured hosts."""
        return {
            base for host in self._records if (base := subnet_base(host)) is not None
        }
