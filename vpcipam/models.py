"""Records and errors of the node-level ENI/IP data store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

__all__ = [
    "MIN_LIFETIME",
    "ADDRESS_ENI_COOLING_PERIOD",
    "ADDRESS_COOLING_PERIOD",
    "DataStoreError",
    "DuplicatedENIError",
    "DuplicateIPError",
    "UnknownIPError",
    "IPInUseError",
    "ENIInUseError",
    "UnknownENIError",
    "UnknownPodError",
    "UnknownPodIPError",
    "PodIPConflictError",
    "NoAvailableIPError",
    "PodInfo",
    "AddressInfo",
    "ENIIPPool",
    "PodIPInfo",
    "ENIInfos",
]

# Seconds an ENI must exist before it may be freed.
MIN_LIFETIME = 60.0
# Seconds after an IP was unassigned during which its ENI is kept.
ADDRESS_ENI_COOLING_PERIOD = 60.0
# Seconds after an IP was unassigned before it is handed to another pod.
ADDRESS_COOLING_PERIOD = 30.0

_ZERO_TIME = "0001-01-01T00:00:00Z"


def _format_time(timestamp: float) -> str:
    if timestamp <= 0:
        return _ZERO_TIME
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")


class DataStoreError(Exception):
    """Base class of data store errors."""

    default_message = "datastore: error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message if message is not None else self.default_message
        super().__init__(self.message)


class DuplicatedENIError(DataStoreError):
    default_message = "data store: duplicate ENI"


class DuplicateIPError(DataStoreError):
    default_message = "datastore: duplicated IP"


class UnknownIPError(DataStoreError):
    default_message = "datastore: unknown IP"


class IPInUseError(DataStoreError):
    default_message = "datastore: IP is used and can not be deleted"


class ENIInUseError(DataStoreError):
    default_message = "datastore: ENI is used and can not be deleted"


class UnknownENIError(DataStoreError):
    default_message = "datastore: unknown ENI"


class UnknownPodError(DataStoreError):
    default_message = "datastore: unknown pod"


class UnknownPodIPError(DataStoreError):
    default_message = "datastore: pod using unknown IP address"


class PodIPConflictError(DataStoreError):
    default_message = "AssignPodIPv4Address: invalid pod with multiple IP addresses"


class NoAvailableIPError(DataStoreError):
    default_message = "assignPodIPv4AddressUnsafe: no available IP addresses"


@dataclass
class PodInfo:
    """A pod as known to Kubernetes and the container runtime."""

    name: str = ""
    namespace: str = ""
    container: str = ""
    ip: str = ""
    uid: str = ""

    @property
    def key(self) -> tuple[str, str, str]:
        """The (name, namespace, container) triple that identifies the pod."""
        return (self.name, self.namespace, self.container)


@dataclass
class AddressInfo:
    """One secondary IP address of an ENI."""

    address: str
    assigned: bool = False
    unassigned_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "Address": self.address,
            "Assigned": self.assigned,
            "UnassignedTime": _format_time(self.unassigned_time),
        }


@dataclass
class ENIIPPool:
    """An ENI and the addresses allocated on it."""

    id: str
    device_number: int = 0
    is_primary: bool = False
    assigned_ipv4_addresses: int = 0
    ipv4_addresses: dict[str, AddressInfo] = field(default_factory=dict)
    create_time: float = 0.0
    last_unassigned_time: float = 0.0

    def is_too_young(self, now: float) -> bool:
        """True if the ENI has not existed long enough to be freed."""
        return now - self.create_time < MIN_LIFETIME

    def has_ip_in_cooling(self, now: float) -> bool:
        """True if one of its addresses was unassigned recently."""
        return now - self.last_unassigned_time < ADDRESS_ENI_COOLING_PERIOD

    def has_pods(self) -> bool:
        """True if any address of the ENI is assigned to a pod."""
        return self.assigned_ipv4_addresses != 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "IsPrimary": self.is_primary,
            "ID": self.id,
            "DeviceNumber": self.device_number,
            "AssignedIPv4Addresses": self.assigned_ipv4_addresses,
            "IPv4Addresses": {ip: info.to_dict() for ip, info in self.ipv4_addresses.items()},
        }


@dataclass(frozen=True)
class PodIPInfo:
    """The address assigned to a pod and the device number of its ENI."""

    ip: str
    device_number: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"IP": self.ip, "DeviceNumber": self.device_number}


@dataclass
class ENIInfos:
    """Snapshot of the data store for introspection."""

    total_ips: int = 0
    assigned_ips: int = 0
    eni_ip_pools: dict[str, ENIIPPool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "TotalIPs": self.total_ips,
            "AssignedIPs": self.assigned_ips,
            "ENIIPPools": {eni: pool.to_dict() for eni, pool in self.eni_ip_pools.items()},
        }