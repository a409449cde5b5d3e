"""Node-level IP address management: warm pool sizing and ENI setup."""

from __future__ import annotations

import contextlib
import ipaddress
import logging
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from .config import get_warm_eni_target, get_warm_ip_target, resolve_max_eni, use_custom_network_cfg
from .cooldown import ReconcileCooldownCache
from .datastore import DataStore
from .models import DataStoreError, DuplicatedENIError, DuplicateIPError, PodInfo
from .promstats import Counter, Gauge, Registry

__all__ = [
    "IP_POOL_MONITOR_INTERVAL",
    "MAX_RETRY_CHECK_ENI",
    "ENI_ATTACH_TIME",
    "NODE_IP_POOL_RECONCILE_INTERVAL",
    "DECREASE_IP_POOL_INTERVAL",
    "MAX_K8S_RETRIES",
    "RETRY_K8S_INTERVAL",
    "REGISTRY",
    "ipamd_err",
    "actions_in_progress",
    "enis_max",
    "ip_max",
    "reconcile_cnt",
    "add_ip_cnt",
    "del_ip_cnt",
    "action_in_progress",
    "ipamd_err_inc",
    "IPAMError",
    "ENIMetadata",
    "PrivateIPAddress",
    "ContainerInfo",
    "IPAMContext",
]

log = logging.getLogger(__name__)

# Durations in seconds.
IP_POOL_MONITOR_INTERVAL = 5.0
MAX_RETRY_CHECK_ENI = 5
ENI_ATTACH_TIME = 10.0
NODE_IP_POOL_RECONCILE_INTERVAL = 60.0
DECREASE_IP_POOL_INTERVAL = 30.0
MAX_K8S_RETRIES = 12
RETRY_K8S_INTERVAL = 5.0

ipamd_err = Counter(
    "awscni_ipamd_error_count", "The number of errors encountered in ipamd", ("fn",)
)
actions_in_progress = Gauge(
    "awscni_ipamd_action_inprogress", "The number of ipamd actions in progress", ("fn",)
)
enis_max = Gauge(
    "awscni_eni_max", "The maximum number of ENIs that can be attached to the instance"
)
ip_max = Gauge(
    "awscni_ip_max", "The maximum number of IP addresses that can be allocated to the instance"
)
reconcile_cnt = Counter(
    "awscni_reconcile_count", "The number of times ipamd reconciles on ENIs and IP addresses", ("fn",)
)
add_ip_cnt = Counter("awscni_add_ip_req_count", "The number of add IP address request")
del_ip_cnt = Counter(
    "awscni_del_ip_req_count", "The number of delete IP address request", ("reason",)
)

REGISTRY = Registry()
for _metric in (ipamd_err, actions_in_progress, enis_max, ip_max, reconcile_cnt, add_ip_cnt, del_ip_cnt):
    REGISTRY.register(_metric)


@contextlib.contextmanager
def action_in_progress(fn: str) -> Iterator[None]:
    """Count an ipamd action as in progress for the duration of the block."""
    actions_in_progress.add(1, fn=fn)
    try:
        yield
    finally:
        actions_in_progress.add(-1, fn=fn)


def ipamd_err_inc(fn: str) -> None:
    """Record an ipamd error for the named operation."""
    ipamd_err.inc(fn=fn)


def _log_pool_stats(total: int, used: int, max_addrs_per_eni: int) -> None:
    log.debug("IP pool stats: total = %d, used = %d, maxIPsPerENI = %d", total, used, max_addrs_per_eni)


class IPAMError(Exception):
    """Raised when an ipamd operation fails."""


@dataclass
class ENIMetadata:
    """An ENI as seen by the instance metadata service."""

    eni_id: str
    mac: str = ""
    device_number: int = 0
    subnet_ipv4_cidr: str = ""
    local_ipv4s: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PrivateIPAddress:
    """A private IP address of an ENI as reported by EC2."""

    private_ip_address: str
    primary: bool = False


@dataclass(frozen=True)
class ContainerInfo:
    """A running container and the pod UID it belongs to."""

    id: str
    name: str = ""
    k8s_uid: str = ""


@dataclass
class IPAMContext:
    """Node-level control state of the IP address manager.

    The clients are duck-typed:

    * ``aws_client``: get_eni_limit, get_eni_ip_limit, get_attached_enis,
      get_vpc_ipv4_cidr, get_vpc_ipv4_cidrs, get_local_ipv4, get_primary_eni_mac,
      get_primary_eni, describe_eni, alloc_eni, alloc_ip_addresses, free_eni,
      dealloc_ip_addresses.
    * ``network_client``: setup_host_network, setup_eni_network, get_rule_list,
      update_rule_list_by_src, use_external_snat.
    * ``k8s_client``: k8s_get_local_pod_ips.
    * ``docker_client``: get_running_containers.
    * ``eni_config``: my_eni_config, returning an ENIConfigSpec.
    """

    aws_client: Any = None
    network_client: Any = None
    k8s_client: Any = None
    docker_client: Any = None
    eni_config: Any = None
    datastore: DataStore = field(default_factory=DataStore)
    use_custom_networking: bool = False
    max_ips_per_eni: int = 0
    max_eni: int = 0
    warm_eni_target: int = 0
    warm_ip_target: int = 0
    primary_ip: dict[str, str] = field(default_factory=dict)
    last_node_ip_pool_action: float = 0.0
    last_decrease_ip_pool: float = 0.0
    reconcile_cooldown_cache: ReconcileCooldownCache = field(default_factory=ReconcileCooldownCache)
    registry: Registry | None = None
    clock: Callable[[], float] = field(default=time.time, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def create(
        cls,
        k8s_client: Any,
        eni_config: Any,
        aws_client: Any,
        network_client: Any,
        docker_client: Any,
    ) -> IPAMContext:
        """Build a context from the environment and initialise the node."""
        context = cls(
            aws_client=aws_client,
            network_client=network_client,
            k8s_client=k8s_client,
            docker_client=docker_client,
            eni_config=eni_config,
            warm_eni_target=get_warm_eni_target(),
            warm_ip_target=get_warm_ip_target(),
            registry=REGISTRY,
        )
        context.node_init()
        return context

    def node_init(self) -> None:
        """Discover limits, set up host networking, ENIs and the pods already running."""
        with action_in_progress("nodeInit"):
            log.debug("Start node init")
            self.max_eni = self.get_max_eni()
            enis_max.set(self.max_eni)
            self.max_ips_per_eni = self.aws_client.get_eni_ip_limit()
            ip_max.set(self.max_ips_per_eni * self.max_eni)

            self.use_custom_networking = use_custom_network_cfg()
            self.primary_ip = {}
            self.reconcile_cooldown_cache = ReconcileCooldownCache()

            try:
                enis = self.aws_client.get_attached_enis()
            except Exception as err:
                log.error("Failed to retrieve ENI info")
                raise IPAMError("ipamd init: failed to retrieve attached ENIs info") from err

            try:
                vpc_cidr = ipaddress.ip_network(self.aws_client.get_vpc_ipv4_cidr(), strict=False)
            except ValueError as err:
                log.error("Failed to parse VPC IPv4 CIDR: %s", err)
                raise IPAMError("ipamd init: failed to retrieve VPC CIDR") from err

            try:
                primary_ip = ipaddress.ip_address(self.aws_client.get_local_ipv4())
            except ValueError:
                primary_ip = None
            try:
                self.network_client.setup_host_network(
                    vpc_cidr,
                    list(self.aws_client.get_vpc_ipv4_cidrs()),
                    self.aws_client.get_primary_eni_mac(),
                    primary_ip,
                )
            except Exception as err:
                log.error("Failed to set up host network: %s", err)
                raise IPAMError("ipamd init: failed to set up host network") from err

            registry = self.registry
            if registry is not None and "awscni_eni_allocated" in registry:
                registry = None
            self.datastore = DataStore(registry=registry, clock=self.clock)

            for eni in enis:
                self._setup_eni_with_retry(eni)

            try:
                pods = self.get_local_pods_with_retry()
            except IPAMError as err:
                log.warning("During ipamd init, failed to get Pod information from kubelet %s", err)
                ipamd_err_inc("nodeInitK8SGetLocalPodIPsFailed")
                raise IPAMError("failed to get running pods!") from err

            try:
                rules = self.network_client.get_rule_list()
            except Exception as err:
                log.error("During ipamd init: failed to retrieve IP rule list %s", err)
                return

            for pod in pods:
                self._recover_pod(pod, rules)

    def _setup_eni_with_retry(self, eni: ENIMetadata) -> None:
        log.debug("Discovered ENI %s, trying to set it up", eni.eni_id)
        for attempt in range(1, MAX_RETRY_CHECK_ENI + 2):
            try:
                self.setup_eni(eni.eni_id, eni)
                failed = False
            except IPAMError:
                failed = True
            if attempt > MAX_RETRY_CHECK_ENI:
                log.error("Unable to discover attached IPs for ENI from metadata service")
                ipamd_err_inc("waitENIAttachedMaxRetryExceeded")
                return
            if not failed:
                log.info("ENI %s set up.", eni.eni_id)
                return
            log.debug(
                "Unable to discover IPs for this ENI yet (attempt %d/%d)", attempt, MAX_RETRY_CHECK_ENI
            )
            self.sleep(ENI_ATTACH_TIME)

    def _recover_pod(self, pod: PodInfo, rules: Any) -> None:
        if not pod.container:
            log.info("Skipping Pod %s, Namespace %s, due to no matching container", pod.name, pod.namespace)
            return
        if not pod.ip:
            log.info("Skipping Pod %s, Namespace %s, due to no IP", pod.name, pod.namespace)
            return
        log.info(
            "Recovered AddNetwork for Pod %s, Namespace %s, Container %s",
            pod.name, pod.namespace, pod.container,
        )
        try:
            self.datastore.assign_pod_ipv4_address(pod)
        except DataStoreError as err:
            ipamd_err_inc("nodeInitAssignPodIPv4AddressFailed")
            log.warning("During ipamd init, failed to use pod IP %s returned from Kubelet %s", pod.ip, err)

        try:
            src = ipaddress.ip_network(f"{pod.ip}/32")
        except ValueError as err:
            log.error("Invalid pod IP %s: %s", pod.ip, err)
            return
        vpc_cidrs = list(self.aws_client.get_vpc_ipv4_cidrs())
        try:
            self.network_client.update_rule_list_by_src(
                rules, src, vpc_cidrs, not self.network_client.use_external_snat()
            )
        except Exception as err:
            log.error("UpdateRuleListBySrc in nodeInit() failed for IP %s: %s", pod.ip, err)

    def get_local_pods_with_retry(self) -> list[PodInfo]:
        """Pods on this node, with their container IDs filled in from the runtime."""
        pods: list[PodInfo] | None = None
        last_err: Exception | None = None
        for attempt in range(1, MAX_K8S_RETRIES + 1):
            try:
                pods = list(self.k8s_client.k8s_get_local_pod_ips())
                last_err = None
            except Exception as err:
                pods, last_err = None, err
            else:
                missing = [pod for pod in pods if not pod.ip]
                for pod in missing:
                    log.info("Pod %s, Namespace %s, has no IP", pod.name, pod.namespace)
                if not missing:
                    break
                log.warning("Not all pods have an IP, trying again in %s seconds.", RETRY_K8S_INTERVAL)
            log.info(
                "Not able to get local pods yet (attempt %d/%d): %s", attempt, MAX_K8S_RETRIES, last_err
            )
            self.sleep(RETRY_K8S_INTERVAL)

        if last_err is not None:
            raise IPAMError("no pods because apiserver not running.") from last_err
        if not pods:
            return []

        containers: dict[str, ContainerInfo] = {}
        for attempt in range(1, MAX_K8S_RETRIES + 1):
            try:
                containers = self.docker_client.get_running_containers()
                break
            except Exception as err:
                log.info(
                    "Not able to get local containers yet (attempt %d/%d): %s",
                    attempt, MAX_K8S_RETRIES, err,
                )
                self.sleep(RETRY_K8S_INTERVAL)

        by_uid: dict[str, ContainerInfo] = {}
        for container in containers.values():
            by_uid.setdefault(container.k8s_uid, container)
        for pod in pods:
            container = by_uid.get(pod.uid)
            if container is not None:
                log.debug("Found pod(%s)'s container ID: %s", container.name, container.id)
                pod.container = container.id
        return pods

    def increase_ip_pool(self) -> None:
        """Add IPs to an existing ENI, or attach a new ENI if that is not possible."""
        log.debug("Starting to increase IP pool size")
        with action_in_progress("increaseIPPool"):
            short, _, warm_ip_target_defined = self.ip_target_state()
            if warm_ip_target_defined and short == 0:
                log.debug("Skipping increase IP pool, warm IP target reached")
                return
            if self.try_assign_ips():
                self._update_last_node_ip_pool_action()
            elif self.datastore.eni_count() < self.max_eni:
                self.try_allocate_eni()
                self._update_last_node_ip_pool_action()
            else:
                log.debug(
                    "Skipping ENI allocation as the instance's max ENI limit of %d is already reached",
                    self.max_eni,
                )

    def _update_last_node_ip_pool_action(self) -> None:
        self.last_node_ip_pool_action = self.clock()
        total, used = self.datastore.get_stats()
        log.debug("Successfully increased IP pool")
        _log_pool_stats(total, used, self.max_ips_per_eni)

    def try_allocate_eni(self) -> None:
        """Attach a new ENI, allocate its IPs and add it to the data store."""
        security_groups: list[str] | None = None
        subnet = ""
        if self.use_custom_networking:
            try:
                spec = self.eni_config.my_eni_config()
            except Exception as err:
                log.error("Failed to get pod ENI config: %s", err)
                return
            log.info("ipamd: using custom network config: %s, %s", spec.security_groups, spec.subnet)
            if spec.security_groups:
                security_groups = list(spec.security_groups)
            subnet = spec.subnet

        try:
            eni = self.aws_client.alloc_eni(self.use_custom_networking, security_groups, subnet)
        except Exception as err:
            log.error("Failed to increase pool size due to not able to allocate ENI %s", err)
            ipamd_err_inc("increaseIPPoolAllocENI")
            return

        short, _, warm_ip_target_defined = self.ip_target_state()
        count = short if warm_ip_target_defined else self.max_ips_per_eni
        try:
            self.aws_client.alloc_ip_addresses(eni, count)
        except Exception as err:
            log.warning("Failed to allocate all available ip addresses on an ENI %s", err)
            ipamd_err_inc("increaseIPPoolAllocIPAddressesFailed")

        try:
            metadata = self.wait_eni_attached(eni)
        except IPAMError as err:
            ipamd_err_inc("increaseIPPoolwaitENIAttachedFailed")
            log.error("Failed to increase pool size: Unable to discover attached ENI from metadata service %s", err)
            return

        try:
            self.setup_eni(eni, metadata)
        except IPAMError as err:
            ipamd_err_inc("increaseIPPoolsetupENIFailed")
            log.error("Failed to increase pool size: %s", err)

    def try_assign_ips(self) -> bool:
        """Fill in missing IPs on an existing ENI; return whether the pool grew."""
        short, _, warm_ip_target_defined = self.ip_target_state()
        if warm_ip_target_defined and short == 0:
            return False

        eni = self.datastore.get_eni_needs_ip(self.max_ips_per_eni, self.use_custom_networking)
        if eni is None or len(eni.ipv4_addresses) >= self.max_ips_per_eni:
            return False

        current = len(eni.ipv4_addresses)
        log.debug(
            "Found ENI %s that has less than the maximum number of IP addresses allocated: cur=%d, max=%d",
            eni.id, current, self.max_ips_per_eni,
        )
        try:
            self.aws_client.alloc_ip_addresses(eni.id, self.max_ips_per_eni - current)
        except Exception as err:
            log.warning("failed to allocate all available IP addresses on ENI %s, err: %s", eni.id, err)
            try:
                self.aws_client.alloc_ip_addresses(eni.id, 1)
            except Exception as err_one:
                ipamd_err_inc("increaseIPPoolAllocIPAddressesFailed")
                log.error("failed to allocate one IP addresses on ENI %s, err: %s", eni.id, err_one)
                return False

        try:
            addresses, _ = self.get_eni_addresses(eni.id)
        except IPAMError as err:
            ipamd_err_inc("increaseIPPoolGetENIaddressesFailed")
            log.error("failed to get ENI IP addresses during IP allocation: %s", err)
            return True
        self.add_eni_addresses_to_datastore(addresses, eni.id)
        return True

    def setup_eni(self, eni_id: str, eni_metadata: ENIMetadata) -> None:
        """Add an ENI to the data store, set up its networking and add its secondary IPs."""
        primary_eni = self.aws_client.get_primary_eni()
        try:
            self.datastore.add_eni(eni_id, eni_metadata.device_number, eni_id == primary_eni)
        except DuplicatedENIError:
            pass

        try:
            addresses, eni_primary_ip = self.get_eni_addresses(eni_id)
        except IPAMError as err:
            raise IPAMError(f"failed to retrieve ENI {eni_id} IP addresses") from err

        if eni_id != primary_eni:
            try:
                self.network_client.setup_eni_network(
                    eni_primary_ip,
                    eni_metadata.mac,
                    eni_metadata.device_number,
                    eni_metadata.subnet_ipv4_cidr,
                )
            except Exception as err:
                raise IPAMError(f"failed to set up ENI {eni_id} network") from err

        self.primary_ip[eni_id] = self.add_eni_addresses_to_datastore(addresses, eni_id)

    def add_eni_addresses_to_datastore(self, addresses: Sequence[PrivateIPAddress], eni_id: str) -> str:
        """Add the secondary addresses to the data store and return the primary one."""
        primary = ""
        for address in addresses:
            if address.primary:
                primary = address.private_ip_address
                continue
            try:
                self.datastore.add_ipv4_address(eni_id, address.private_ip_address)
            except DuplicateIPError:
                pass
            except DataStoreError as err:
                log.warning(
                    "Failed to increase IP pool, failed to add IP %s to data store: %s",
                    address.private_ip_address, err,
                )
                ipamd_err_inc("addENIaddressesToDataStoreAddENIIPv4AddressFailed")
        return primary

    def get_eni_addresses(self, eni_id: str) -> tuple[list[PrivateIPAddress], str]:
        """All addresses of an ENI and its primary address."""
        try:
            addresses, _ = self.aws_client.describe_eni(eni_id)
        except Exception as err:
            raise IPAMError(f"failed to find ENI addresses for ENI {eni_id}") from err
        addresses = list(addresses)
        for address in addresses:
            if address.primary:
                return addresses, address.private_ip_address
        raise IPAMError(f"failed to find the ENI's primary address for ENI {eni_id}")

    def wait_eni_attached(self, eni_id: str) -> ENIMetadata:
        """Wait until the ENI shows up in the instance metadata."""
        retry = 0
        while True:
            try:
                enis = self.aws_client.get_attached_enis()
            except Exception as err:
                log.warning("Failed to increase pool, error trying to discover attached ENIs: %s", err)
            else:
                for eni in enis:
                    if eni.eni_id == eni_id:
                        return eni
                log.debug("Not able to find the right ENI yet (attempt %d/%d)", retry, MAX_RETRY_CHECK_ENI)
            retry += 1
            if retry > MAX_RETRY_CHECK_ENI:
                ipamd_err_inc("waitENIAttachedMaxRetryExceeded")
                raise IPAMError("waitENIAttached: giving up trying to retrieve ENIs from metadata service")
            log.debug("Not able to discover attached ENIs yet (attempt %d/%d)", retry, MAX_RETRY_CHECK_ENI)
            self.sleep(ENI_ATTACH_TIME)

    def get_max_eni(self) -> int:
        """The lesser of the instance ENI limit and MAX_ENI."""
        return resolve_max_eni(self.aws_client.get_eni_limit())

    def ip_target_state(self) -> tuple[int, int, bool]:
        """Return (short, over, enabled) relative to WARM_IP_TARGET."""
        if self.warm_ip_target == 0:
            return 0, 0, False
        total, assigned = self.datastore.get_stats()
        available = total - assigned
        short = max(self.warm_ip_target - available, 0)
        over = max(available - self.warm_ip_target, 0)
        log.debug(
            "Current warm IP stats: target: %d, total: %d, assigned: %d, available: %d, short: %d, over %d",
            self.warm_ip_target, total, assigned, available, short, over,
        )
        return short, over, True

    def node_ip_pool_too_low(self) -> bool:
        """True if fewer IPs are available than the warm target asks for."""
        short, _, warm_ip_target_defined = self.ip_target_state()
        if warm_ip_target_defined:
            return short > 0
        total, used = self.datastore.get_stats()
        _log_pool_stats(total, used, self.max_ips_per_eni)
        available = total - used
        too_low = available < self.max_ips_per_eni * self.warm_eni_target
        log.debug(
            "IP pool is %stoo low: available (%d), ENI target (%d), addrsPerENI (%d)",
            "" if too_low else "NOT ", available, self.warm_eni_target, self.max_ips_per_eni,
        )
        return too_low

    def node_ip_pool_too_high(self) -> bool:
        """True if more IPs are available than WARM_IP_TARGET; never without it."""
        _, over, warm_ip_target_defined = self.ip_target_state()
        return warm_ip_target_defined and over > 0

    def should_remove_extra_enis(self) -> bool:
        """True if an ENI might be freed without going below the warm target."""
        _, _, warm_ip_target_defined = self.ip_target_state()
        if warm_ip_target_defined:
            return True
        total, used = self.datastore.get_stats()
        _log_pool_stats(total, used, self.max_ips_per_eni)
        available = total - used
        should_remove = available >= (self.warm_eni_target + 1) * self.max_ips_per_eni
        log.debug(
            "Removing extra ENIs is %spossible: available (%d), ENI target (%d), addrsPerENI (%d)",
            "" if should_remove else "NOT ", available, self.warm_eni_target, self.max_ips_per_eni,
        )
        return should_remove