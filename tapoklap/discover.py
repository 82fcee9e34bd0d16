"""Discover Tapo devices by scanning local subnets.

KLAP devices don't answer a broadcast, so every host of each /24 subnet is
probed with a handshake1 request. Hosts answering with a 200 are considered
devices and are then identified with a full handshake:

>>> from tapoklap import Credentials, SubnetScanner
>>> scanner = SubnetScanner(credentials=Credentials("user@example.com", "pw"))
>>> results = await scanner.discover_all(["192.168.5.0"])
>>> [(res.host, res.info.model) for res in results if res.authenticated]
[('192.168.5.23', 'L530'), ('192.168.5.40', 'P110')]

Probes run in batches of :attr:`SubnetScanner.BATCH_SIZE` concurrent requests
with a short timeout, batches run one after the other.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import partial
from typing import NamedTuple

import psutil
from aiohttp import ClientSession

from .credentials import Credentials
from .device import DeviceInfo, TapoDevice
from .deviceconfig import DeviceConfig
from .exceptions import DiscoveryTimeout, KlapException
from .json import DataClassJSONMixin
from .registry import DeviceRegistry, subnet_base
from .transports import KlapTransport

_LOGGER = logging.getLogger(__name__)

VIRTUAL_INTERFACE_PREFIXES = ("lo", "docker", "br-", "veth", "virbr")


class ScanProgress(NamedTuple):
    """Progress of a subnet scan reported after each batch."""

    subnet: str
    scanned: int
    total: int
    found: int
    #: Position of the subnet among all subnets of a discovery, starting at 1
    subnet_index: int = 1
    subnet_count: int = 1


OnProgressCallable = Callable[[ScanProgress], None]


def _report_subnet_progress(
    on_progress: OnProgressCallable,
    index: int,
    count: int,
    progress: ScanProgress,
) -> None:
    on_progress(progress._replace(subnet_index=index, subnet_count=count))


@dataclass
class DiscoveryResult(DataClassJSONMixin):
    """Outcome of probing and identifying a single host."""

    host: str
    responded: bool
    authenticated: bool = False
    info: DeviceInfo | None = None
    already_known: bool = False
    auth_error: str | None = None


class SubnetScanner:
    """Scan /24 subnets for hosts speaking KLAP."""

    BATCH_SIZE = 50
    PROBE_TIMEOUT = 2

    def __init__(
        self,
        *,
        credentials: Credentials | None = None,
        registry: DeviceRegistry | None = None,
        timeout: int | None = None,
        probe_timeout: float = PROBE_TIMEOUT,
        http_client: ClientSession | None = None,
    ) -> None:
        self._credentials = credentials
        self._registry = registry
        self._timeout = timeout or DeviceConfig.DEFAULT_TIMEOUT
        self._probe_timeout = probe_timeout
        self._http_client = http_client

    @staticmethod
    def get_local_subnets() -> list[str]:
        """Return the /24 network bases of the local IPv4 interfaces."""
        subnets: list[str] = []
        for name, addresses in psutil.net_if_addrs().items():
            if name.startswith(VIRTUAL_INTERFACE_PREFIXES):
                continue
            for addr in addresses:
                if addr.family != socket.AF_INET or not addr.netmask:
                    continue
                try:
                    network = ipaddress.IPv4Network(
                        f"{addr.address}/{addr.netmask}", strict=False
                    )
                except ValueError:
                    _LOGGER.debug("Ignoring %s on %s", addr.address, name)
                    continue
                if network.network_address.is_loopback:
                    continue
                # Only networks of /24 or larger are scanned, as a /24
                if network.prefixlen > 24:
                    continue
                subnet = str(network.network_address)
                if subnet not in subnets:
                    _LOGGER.debug("Found subnet: %s on interface %s", subnet, name)
                    subnets.append(subnet)
        return subnets

    async def probe(self, host: str, timeout: float | None = None) -> bool:
        """Return True if host answers a handshake1 request.

        Timeouts and connection errors mean the host is not a device.
        """
        config = DeviceConfig(host=host, http_client=self._http_client)
        transport = KlapTransport(config=config)
        try:
            return await transport.perform_probe(timeout or self._probe_timeout)
        except DiscoveryTimeout:
            return False
        except KlapException as ex:
            _LOGGER.debug("Probe of %s failed: %s", host, ex)
            return False
        finally:
            await transport.close()

    async def scan_subnet(
        self, subnet: str, on_progress: OnProgressCallable | None = None
    ) -> list[str]:
        """Probe every host of the /24 containing subnet and return responders."""
        base = subnet_base(subnet)
        if base is None:
            raise KlapException(f"Invalid subnet: {subnet}")
        network = ipaddress.IPv4Network(f"{base}/24")
        hosts = [str(host) for host in network.hosts()]
        total = len(hosts)
        found: list[str] = []

        _LOGGER.info("Scanning subnet %s for Tapo devices...", network)

        for start in range(0, total, self.BATCH_SIZE):
            batch = hosts[start : start + self.BATCH_SIZE]
            results = await asyncio.gather(*(self.probe(host) for host in batch))
            for host, is_device in zip(batch, results, strict=True):
                if is_device:
                    _LOGGER.info("Found Tapo device at %s", host)
                    found.append(host)

            if on_progress:
                on_progress(
                    ScanProgress(str(network), start + len(batch), total, len(found))
                )

        return found

    def _collect_subnets(self, subnets: Iterable[str] | None) -> list[str]:
        collected: list[str] = []

        def _add(subnet: str) -> None:
            if subnet not in collected:
                collected.append(subnet)

        for subnet in self.get_local_subnets():
            _add(subnet)
        if self._registry is not None:
            for subnet in sorted(self._registry.known_subnets()):
                _add(subnet)
        for subnet in subnets or ():
            if (base := subnet_base(subnet.split("/")[0])) is None:
                _LOGGER.warning("Ignoring invalid subnet %s", subnet)
                continue
            _add(base)
        return collected

    async def _identify(self, host: str) -> DiscoveryResult:
        already_known = self._registry is not None and host in self._registry
        config = DeviceConfig(
            host=host,
            timeout=self._timeout,
            credentials=self._credentials,
            http_client=self._http_client,
        )
        try:
            dev = await TapoDevice.connect(config=config)
        except KlapException as ex:
            # Device found but couldn't authenticate, might be registered
            # to a different account
            _LOGGER.debug("Unable to identify %s: %s", host, ex)
            return DiscoveryResult(
                host=host,
                responded=True,
                authenticated=False,
                already_known=already_known,
                auth_error=str(ex),
            )
        try:
            info = DeviceInfo.from_info(dev.internal_state)
        finally:
            await dev.disconnect()
        return DiscoveryResult(
            host=host,
            responded=True,
            authenticated=True,
            info=info,
            already_known=already_known,
        )

    async def discover_all(
        self,
        subnets: Iterable[str] | None = None,
        on_progress: OnProgressCallable | None = None,
    ) -> list[DiscoveryResult]:
        """Scan local, known and given subnets and identify every responder."""
        to_scan = self._collect_subnets(subnets)
        if not to_scan:
            raise KlapException("No local network subnets found")
        _LOGGER.info("Will scan %s subnet(s): %s", len(to_scan), ", ".join(to_scan))

        responders: list[str] = []
        for index, subnet in enumerate(to_scan, start=1):
            subnet_progress = (
                partial(_report_subnet_progress, on_progress, index, len(to_scan))
                if on_progress
                else None
            )
            for host in await self.scan_subnet(subnet, subnet_progress):
                if host not in responders:
                    responders.append(host)

        return [await self._identify(host) for host in responders]
