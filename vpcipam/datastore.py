"""Node-level store of ENIs, their secondary IPs and the pods using them."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import replace

from .models import (
    ADDRESS_COOLING_PERIOD,
    AddressInfo,
    DuplicatedENIError,
    DuplicateIPError,
    ENIInfos,
    ENIInUseError,
    ENIIPPool,
    IPInUseError,
    NoAvailableIPError,
    PodInfo,
    PodIPConflictError,
    PodIPInfo,
    UnknownENIError,
    UnknownIPError,
    UnknownPodError,
    UnknownPodIPError,
)
from .promstats import Gauge, Registry

__all__ = ["DataStore"]

log = logging.getLogger(__name__)


def _copy_address(info: AddressInfo) -> AddressInfo:
    return replace(info)


def _copy_pool(pool: ENIIPPool) -> ENIIPPool:
    return replace(
        pool,
        ipv4_addresses={ip: _copy_address(info) for ip, info in pool.ipv4_addresses.items()},
    )


class DataStore:
    """Thread-safe record of ENIs, their IPv4 addresses and pod assignments.

    Times are seconds as returned by ``clock``.
    """

    def __init__(
        self,
        registry: Registry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._total = 0
        self._assigned = 0
        self._pools: dict[str, ENIIPPool] = {}
        self._pods: dict[tuple[str, str, str], PodIPInfo] = {}
        self.enis_gauge = Gauge("awscni_eni_allocated", "The number of ENIs allocated")
        self.total_ips_gauge = Gauge("awscni_total_ip_addresses", "The total number of IP addresses")
        self.assigned_ips_gauge = Gauge(
            "awscni_assigned_ip_addresses", "The number of IP addresses assigned to pods"
        )
        if registry is not None:
            for gauge in (self.enis_gauge, self.total_ips_gauge, self.assigned_ips_gauge):
                registry.register(gauge)

    def add_eni(self, eni_id: str, device_number: int, is_primary: bool) -> None:
        """Add an ENI; raises DuplicatedENIError if it is already known."""
        with self._lock:
            log.debug("DataStore Add an ENI %s", eni_id)
            if eni_id in self._pools:
                raise DuplicatedENIError()
            self._pools[eni_id] = ENIIPPool(
                id=eni_id,
                device_number=device_number,
                is_primary=is_primary,
                create_time=self._clock(),
            )
            self.enis_gauge.set(len(self._pools))

    def add_ipv4_address(self, eni_id: str, ipv4: str) -> None:
        """Add a secondary IP of an ENI to the pool."""
        with self._lock:
            log.debug("Adding ENI(%s)'s IPv4 address %s to datastore", eni_id, ipv4)
            pool = self._pools.get(eni_id)
            if pool is None:
                raise UnknownENIError("add ENI's IP to datastore: unknown ENI")
            if ipv4 in pool.ipv4_addresses:
                raise DuplicateIPError()
            self._total += 1
            self.total_ips_gauge.set(self._total)
            pool.ipv4_addresses[ipv4] = AddressInfo(address=ipv4)
            log.info("Added ENI(%s)'s IP %s to datastore", eni_id, ipv4)

    def del_ipv4_address(self, eni_id: str, ipv4: str) -> None:
        """Remove an unassigned secondary IP of an ENI from the pool."""
        with self._lock:
            log.debug("Deleting ENI(%s)'s IPv4 address %s from datastore", eni_id, ipv4)
            pool = self._pools.get(eni_id)
            if pool is None:
                raise UnknownENIError()
            info = pool.ipv4_addresses.get(ipv4)
            if info is None:
                raise UnknownIPError()
            if info.assigned:
                raise IPInUseError()
            self._total -= 1
            self.total_ips_gauge.set(self._total)
            del pool.ipv4_addresses[ipv4]
            log.info("Deleted ENI(%s)'s IP %s from datastore", eni_id, ipv4)

    def assign_pod_ipv4_address(self, pod: PodInfo) -> PodIPInfo:
        """Assign an address to a pod, or re-take the pod's known address."""
        with self._lock:
            existing = self._pods.get(pod.key)
            if existing is not None:
                if existing.ip == pod.ip and pod.ip != "":
                    log.info(
                        "AssignPodIPv4Address: duplicate pod assign for IP %s, name %s, "
                        "namespace %s, container %s",
                        pod.ip, pod.name, pod.namespace, pod.container,
                    )
                    return existing
                log.error(
                    "AssignPodIPv4Address: current IP %s is changed to IP %s for pod"
                    "(name %s, namespace %s, container %s)",
                    existing.ip, pod.ip, pod.name, pod.namespace, pod.container,
                )
                raise PodIPConflictError()
            return self._assign_unlocked(pod)

    def _assign_unlocked(self, pod: PodInfo) -> PodIPInfo:
        now = self._clock()
        for pool in self._pools.values():
            if pod.ip == "" and len(pool.ipv4_addresses) == pool.assigned_ipv4_addresses:
                log.debug("AssignPodIPv4Address: Skip ENI %s that does not have available addresses", pool.id)
                continue
            for addr in pool.ipv4_addresses.values():
                reclaim = pod.ip == addr.address
                fresh = (
                    not addr.assigned
                    and pod.ip == ""
                    and now - addr.unassigned_time > ADDRESS_COOLING_PERIOD
                )
                if not (reclaim or fresh):
                    continue
                if not addr.assigned:
                    self._assigned += 1
                    pool.assigned_ipv4_addresses += 1
                    addr.assigned = True
                    self.assigned_ips_gauge.set(self._assigned)
                log.info(
                    "AssignPodIPv4Address: Assign IP %s to pod (name %s, namespace %s, container %s)",
                    addr.address, pod.name, pod.namespace, pod.container,
                )
                info = PodIPInfo(ip=addr.address, device_number=pool.device_number)
                self._pods[pod.key] = info
                return info
        log.error("DataStore has no available IP addresses")
        raise NoAvailableIPError()

    def unassign_pod_ipv4_address(self, pod: PodInfo) -> PodIPInfo:
        """Release the address of a pod; returns the address and its device number."""
        with self._lock:
            known = self._pods.get(pod.key)
            if known is None:
                log.warning(
                    "UnassignPodIPv4Address: Failed to find pod %s namespace %s container %s",
                    pod.name, pod.namespace, pod.container,
                )
                raise UnknownPodError()
            for pool in self._pools.values():
                addr = pool.ipv4_addresses.get(known.ip)
                if addr is not None and addr.assigned:
                    now = self._clock()
                    addr.assigned = False
                    addr.unassigned_time = now
                    pool.assigned_ipv4_addresses -= 1
                    pool.last_unassigned_time = now
                    self._assigned -= 1
                    self.assigned_ips_gauge.set(self._assigned)
                    del self._pods[pod.key]
                    log.info(
                        "UnassignPodIPv4Address: pod (Name: %s, NameSpace %s Container %s)'s "
                        "ipAddr %s, DeviceNumber %d",
                        pod.name, pod.namespace, pod.container, addr.address, pool.device_number,
                    )
                    return PodIPInfo(ip=addr.address, device_number=pool.device_number)
            log.warning(
                "UnassignPodIPv4Address: Failed to find pod %s namespace %s container %s using IP %s",
                pod.name, pod.namespace, pod.container, known.ip,
            )
            raise UnknownPodIPError()

    def get_stats(self) -> tuple[int, int]:
        """Return (total addresses, assigned addresses)."""
        with self._lock:
            return self._total, self._assigned

    def get_eni_needs_ip(self, max_ip_per_eni: int, skip_primary: bool) -> ENIIPPool | None:
        """A snapshot of an ENI with fewer than ``max_ip_per_eni`` addresses, if any."""
        with self._lock:
            for pool in self._pools.values():
                if skip_primary and pool.is_primary:
                    log.debug("Skip the primary ENI for need IP check")
                    continue
                if len(pool.ipv4_addresses) < max_ip_per_eni:
                    return _copy_pool(pool)
            return None

    def _required_for_warm_ip_target(self, warm_ip_target: int, eni: ENIIPPool) -> bool:
        other_warm = sum(
            len(other.ipv4_addresses) - other.assigned_ipv4_addresses
            for other in self._pools.values()
            if other.id != eni.id
        )
        return other_warm < warm_ip_target

    def _deletable_eni(self, warm_ip_target: int) -> ENIIPPool | None:
        now = self._clock()
        for pool in self._pools.values():
            if pool.is_primary:
                log.debug("ENI %s cannot be deleted because it is primary", pool.id)
            elif pool.is_too_young(now):
                log.debug("ENI %s cannot be deleted because it is too young", pool.id)
            elif pool.has_ip_in_cooling(now):
                log.debug("ENI %s cannot be deleted because has IPs in cooling", pool.id)
            elif pool.has_pods():
                log.debug("ENI %s cannot be deleted because it has pods assigned", pool.id)
            elif warm_ip_target != 0 and self._required_for_warm_ip_target(warm_ip_target, pool):
                log.debug("ENI %s cannot be deleted because it is required for WARM_IP_TARGET", pool.id)
            else:
                return pool
        return None

    def remove_unused_eni(self, warm_ip_target: int) -> str | None:
        """Remove a deletable ENI and return its id, or None if none can go."""
        with self._lock:
            pool = self._deletable_eni(warm_ip_target)
            if pool is None:
                log.debug("No ENI can be deleted at this time")
                return None
            self._total -= len(pool.ipv4_addresses)
            del self._pools[pool.id]
            log.info(
                "RemoveUnusedENIFromStore %s: free %d addresses, total: %d, assigned: %d",
                pool.id, len(pool.ipv4_addresses), self._total, self._assigned,
            )
            self.enis_gauge.set(len(self._pools))
            self.total_ips_gauge.set(self._total)
            return pool.id

    def remove_eni(self, eni_id: str) -> None:
        """Remove an ENI that has no assigned addresses."""
        with self._lock:
            pool = self._pools.get(eni_id)
            if pool is None:
                raise UnknownENIError()
            if pool.assigned_ipv4_addresses != 0:
                raise ENIInUseError()
            self._total -= len(pool.ipv4_addresses)
            del self._pools[eni_id]
            log.info(
                "RemoveENIFromDataStore %s: free %d addresses, total: %d, assigned: %d",
                eni_id, len(pool.ipv4_addresses), self._total, self._assigned,
            )
            self.enis_gauge.set(len(self._pools))

    def get_pod_infos(self) -> dict[str, PodIPInfo]:
        """Pod assignments keyed by ``name_namespace_container``."""
        with self._lock:
            return {"_".join(key): info for key, info in self._pods.items()}

    def get_eni_infos(self) -> ENIInfos:
        """A snapshot of totals and every ENI pool."""
        with self._lock:
            return ENIInfos(
                total_ips=self._total,
                assigned_ips=self._assigned,
                eni_ip_pools={eni: _copy_pool(pool) for eni, pool in self._pools.items()},
            )

    def eni_count(self) -> int:
        with self._lock:
            return len(self._pools)

    def get_eni_ip_pool(self, eni_id: str) -> dict[str, AddressInfo]:
        """A snapshot of the addresses of one ENI."""
        with self._lock:
            pool = self._pools.get(eni_id)
            if pool is None:
                raise UnknownENIError()
            return {ip: _copy_address(info) for ip, info in pool.ipv4_addresses.items()}