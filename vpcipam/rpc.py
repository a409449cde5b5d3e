"""Backend that answers the CNI plugin's add and delete network requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .ipamd import IPAMContext, add_ip_cnt, del_ip_cnt
from .models import DataStoreError, PodInfo, PodIPInfo, UnknownPodError

__all__ = [
    "IPAMD_GRPC_ADDRESS",
    "AddNetworkRequest",
    "AddNetworkReply",
    "DelNetworkRequest",
    "DelNetworkReply",
    "CNIBackend",
]

log = logging.getLogger(__name__)

IPAMD_GRPC_ADDRESS = "127.0.0.1:50051"


@dataclass
class AddNetworkRequest:
    k8s_pod_name: str = ""
    k8s_pod_namespace: str = ""
    k8s_pod_infra_container_id: str = ""
    netns: str = ""
    if_name: str = ""


@dataclass
class AddNetworkReply:
    success: bool
    ipv4_addr: str = ""
    ipv4_subnet: str = ""
    device_number: int = 0
    use_external_snat: bool = False
    vpc_cidrs: list[str] = field(default_factory=list)


@dataclass
class DelNetworkRequest:
    k8s_pod_name: str = ""
    k8s_pod_namespace: str = ""
    k8s_pod_infra_container_id: str = ""
    ipv4_addr: str = ""
    reason: str = ""


@dataclass
class DelNetworkReply:
    success: bool
    ipv4_addr: str = ""
    device_number: int = 0


class CNIBackend:
    """Assigns and releases pod addresses from the context's data store."""

    def __init__(self, context: IPAMContext) -> None:
        self.context = context

    def add_network(self, request: AddNetworkRequest) -> AddNetworkReply:
        """Assign an IP address to the pod's container."""
        log.info(
            "Received AddNetwork for NS %s, Pod %s, NameSpace %s, Container %s, ifname %s",
            request.netns, request.k8s_pod_name, request.k8s_pod_namespace,
            request.k8s_pod_infra_container_id, request.if_name,
        )
        pod = PodInfo(
            name=request.k8s_pod_name,
            namespace=request.k8s_pod_namespace,
            container=request.k8s_pod_infra_container_id,
        )
        try:
            info: PodIPInfo | None = self.context.datastore.assign_pod_ipv4_address(pod)
            error: DataStoreError | None = None
        except DataStoreError as err:
            info, error = None, err

        vpc_cidrs = [str(cidr) for cidr in self.context.aws_client.get_vpc_ipv4_cidrs()]
        reply = AddNetworkReply(
            success=info is not None,
            ipv4_addr=info.ip if info else "",
            device_number=info.device_number if info else 0,
            use_external_snat=bool(self.context.network_client.use_external_snat()),
            vpc_cidrs=vpc_cidrs,
        )
        log.info(
            "Send AddNetworkReply: IPv4Addr %s, DeviceNumber: %d, err: %s",
            reply.ipv4_addr, reply.device_number, error,
        )
        add_ip_cnt.inc()
        return reply

    def _unassign(self, pod: PodInfo) -> PodIPInfo:
        datastore = self.context.datastore
        try:
            return datastore.unassign_pod_ipv4_address(pod)
        except UnknownPodError:
            # After a restart, recovered pods are known by name and namespace only.
            return datastore.unassign_pod_ipv4_address(PodInfo(name=pod.name, namespace=pod.namespace))

    def del_network(self, request: DelNetworkRequest) -> DelNetworkReply:
        """Release the IP address of the pod's container."""
        log.info(
            "Received DelNetwork for IP %s, Pod %s, Namespace %s, Container %s",
            request.ipv4_addr, request.k8s_pod_name, request.k8s_pod_namespace,
            request.k8s_pod_infra_container_id,
        )
        del_ip_cnt.inc(reason=request.reason)
        pod = PodInfo(
            name=request.k8s_pod_name,
            namespace=request.k8s_pod_namespace,
            container=request.k8s_pod_infra_container_id,
        )
        try:
            info = self._unassign(pod)
        except DataStoreError as err:
            log.info("Send DelNetworkReply: IPv4Addr , DeviceNumber: 0, err: %s", err)
            return DelNetworkReply(success=False)
        log.info("Send DelNetworkReply: IPv4Addr %s, DeviceNumber: %d, err: None", info.ip, info.device_number)
        return DelNetworkReply(success=True, ipv4_addr=info.ip, device_number=info.device_number)