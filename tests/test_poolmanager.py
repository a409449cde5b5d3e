import threading

import pytest

from vpcipam.cooldown import ReconcileCooldownCache
from vpcipam.datastore import DataStore
from vpcipam.ipamd import ENIMetadata, IPAMContext, IPAMError, PrivateIPAddress
from vpcipam.models import PodInfo
from vpcipam.poolmanager import NodeIPPoolManager

PRIMARY_ENI = "eni-00000000"
SEC_ENI = "eni-00000001"
PRIMARY_MAC = "02:00:00:00:00:01"
SEC_MAC = "02:00:00:00:00:02"
PRIMARY_DEVICE = 0
SEC_DEVICE = 2
PRIMARY_SUBNET = "10.10.10.0/24"
SEC_SUBNET = "10.10.20.0/24"
IPADDR01 = "10.10.10.11"
IPADDR02 = "10.10.10.12"
IPADDR11 = "10.10.20.11"
IPADDR12 = "10.10.20.12"


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeAWS:
    def __init__(self):
        self.attached = []
        self.addresses = {}
        self.freed = []
        self.dealloc = []
        self.alloc_eni_calls = []
        self.get_attached_calls = 0
        self.fail_attached = False

    def get_attached_enis(self):
        self.get_attached_calls += 1
        if self.fail_attached:
            raise RuntimeError("metadata unavailable")
        return list(self.attached)

    def get_primary_eni(self):
        return PRIMARY_ENI

    def describe_eni(self, eni_id):
        return list(self.addresses[eni_id]), "eni-attach-0"

    def free_eni(self, eni_id):
        self.freed.append(eni_id)

    def dealloc_ip_addresses(self, eni_id, ips):
        self.dealloc.append((eni_id, list(ips)))

    def alloc_eni(self, use_custom, security_groups, subnet):
        self.alloc_eni_calls.append((use_custom, security_groups, subnet))
        raise RuntimeError("no capacity")

    def get_vpc_ipv4_cidrs(self):
        return []


class FakeNetwork:
    def __init__(self):
        self.eni_setups = []

    def setup_eni_network(self, primary_ip, mac, device_number, subnet):
        self.eni_setups.append((primary_ip, mac, device_number, subnet))


def make_manager(clock=None, **kwargs):
    clock = clock or Clock()
    aws = FakeAWS()
    net = FakeNetwork()
    ctx = IPAMContext(
        aws_client=aws,
        network_client=net,
        datastore=DataStore(clock=clock),
        reconcile_cooldown_cache=ReconcileCooldownCache(clock=clock),
        clock=clock,
        sleep=lambda seconds: None,
        **kwargs,
    )
    return NodeIPPoolManager(ctx), ctx, aws, net, clock


def test_node_ip_pool_reconcile():
    manager, ctx, aws, _, clock = make_manager()
    aws.attached = [
        ENIMetadata(PRIMARY_ENI, PRIMARY_MAC, PRIMARY_DEVICE, PRIMARY_SUBNET, [IPADDR01, IPADDR02])
    ]
    aws.addresses[PRIMARY_ENI] = [
        PrivateIPAddress(IPADDR01, primary=True),
        PrivateIPAddress(IPADDR02, primary=False),
    ]

    manager.node_ip_pool_reconcile(0)
    infos = ctx.datastore.get_eni_infos()
    assert len(infos.eni_ip_pools) == 1
    assert infos.total_ips == 1

    clock.advance(1)
    aws.attached = [ENIMetadata(PRIMARY_ENI, PRIMARY_MAC, PRIMARY_DEVICE, PRIMARY_SUBNET, [IPADDR01])]
    manager.node_ip_pool_reconcile(0)
    infos = ctx.datastore.get_eni_infos()
    assert len(infos.eni_ip_pools) == 1
    assert infos.total_ips == 0

    clock.advance(1)
    aws.attached = []
    manager.node_ip_pool_reconcile(0)
    infos = ctx.datastore.get_eni_infos()
    assert len(infos.eni_ip_pools) == 0
    assert infos.total_ips == 0


def test_reconcile_sets_up_new_secondary_eni():
    manager, ctx, aws, net, _ = make_manager()
    aws.attached = [ENIMetadata(SEC_ENI, SEC_MAC, SEC_DEVICE, SEC_SUBNET, [IPADDR11, IPADDR12])]
    aws.addresses[SEC_ENI] = [
        PrivateIPAddress(IPADDR11, primary=True),
        PrivateIPAddress(IPADDR12, primary=False),
    ]
    manager.node_ip_pool_reconcile(0)
    assert net.eni_setups == [(IPADDR11, SEC_MAC, SEC_DEVICE, SEC_SUBNET)]
    assert list(ctx.datastore.get_eni_ip_pool(SEC_ENI)) == [IPADDR12]
    assert ctx.primary_ip[SEC_ENI] == IPADDR11


def test_reconcile_skipped_within_interval():
    manager, ctx, aws, _, clock = make_manager()
    ctx.last_node_ip_pool_action = clock()
    manager.node_ip_pool_reconcile(60)
    assert aws.get_attached_calls == 0


def test_reconcile_metadata_failure_keeps_last_action():
    manager, ctx, aws, _, _ = make_manager()
    aws.fail_attached = True
    manager.node_ip_pool_reconcile(0)
    assert aws.get_attached_calls == 1
    assert ctx.last_node_ip_pool_action == 0.0


def _store_with_ips(ctx, ips):
    ctx.datastore.add_eni(PRIMARY_ENI, PRIMARY_DEVICE, True)
    for ip in ips:
        ctx.datastore.add_ipv4_address(PRIMARY_ENI, ip)


def test_recently_freed_ip_is_not_readded():
    manager, ctx, aws, _, clock = make_manager()
    _store_with_ips(ctx, [])
    ctx.primary_ip[PRIMARY_ENI] = IPADDR01
    ctx.reconcile_cooldown_cache.add([IPADDR02])
    attached = ENIMetadata(PRIMARY_ENI, PRIMARY_MAC, PRIMARY_DEVICE, PRIMARY_SUBNET, [IPADDR01, IPADDR02])
    manager.eni_ip_pool_reconcile({}, attached, PRIMARY_ENI)
    assert ctx.datastore.get_eni_ip_pool(PRIMARY_ENI) == {}
    assert IPADDR02 in ctx.reconcile_cooldown_cache


def test_expired_cooldown_ip_not_on_eni_is_skipped():
    manager, ctx, aws, _, clock = make_manager()
    _store_with_ips(ctx, [])
    ctx.primary_ip[PRIMARY_ENI] = IPADDR01
    ctx.reconcile_cooldown_cache.add([IPADDR02])
    clock.advance(120)
    aws.addresses[PRIMARY_ENI] = [PrivateIPAddress(IPADDR01, primary=True)]
    attached = ENIMetadata(PRIMARY_ENI, PRIMARY_MAC, PRIMARY_DEVICE, PRIMARY_SUBNET, [IPADDR01, IPADDR02])
    manager.eni_ip_pool_reconcile({}, attached, PRIMARY_ENI)
    assert ctx.datastore.get_eni_ip_pool(PRIMARY_ENI) == {}
    assert IPADDR02 in ctx.reconcile_cooldown_cache


def test_expired_cooldown_ip_verified_is_readded():
    manager, ctx, aws, _, clock = make_manager()
    _store_with_ips(ctx, [])
    ctx.primary_ip[PRIMARY_ENI] = IPADDR01
    ctx.reconcile_cooldown_cache.add([IPADDR02])
    clock.advance(120)
    aws.addresses[PRIMARY_ENI] = [
        PrivateIPAddress(IPADDR01, primary=True),
        PrivateIPAddress(IPADDR02, primary=False),
    ]
    attached = ENIMetadata(PRIMARY_ENI, PRIMARY_MAC, PRIMARY_DEVICE, PRIMARY_SUBNET, [IPADDR01, IPADDR02])
    manager.eni_ip_pool_reconcile({}, attached, PRIMARY_ENI)
    assert list(ctx.datastore.get_eni_ip_pool(PRIMARY_ENI)) == [IPADDR02]
    assert IPADDR02 not in ctx.reconcile_cooldown_cache


def test_find_freeable_ips_excludes_pod_ips():
    manager, ctx, _, _, _ = make_manager(warm_ip_target=1)
    _store_with_ips(ctx, ["1.1.1.1", "1.1.1.2", "1.1.1.3"])
    ctx.datastore.assign_pod_ipv4_address(PodInfo(name="pod-1", namespace="ns", ip="1.1.1.2"))
    assert manager.find_freeable_ips(PRIMARY_ENI) == ["1.1.1.1"]


def test_find_freeable_ips_unknown_eni():
    manager, ctx, _, _, _ = make_manager(warm_ip_target=1)
    with pytest.raises(IPAMError):
        manager.find_freeable_ips("eni-unknown")


def test_try_unassign_ips_from_all():
    manager, ctx, aws, _, _ = make_manager(warm_ip_target=1)
    _store_with_ips(ctx, ["1.1.1.1", "1.1.1.2", "1.1.1.3"])
    ctx.datastore.assign_pod_ipv4_address(PodInfo(name="pod-1", namespace="ns", ip="1.1.1.2"))
    manager.try_unassign_ips_from_all()
    assert ctx.datastore.get_stats() == (2, 1)
    assert aws.dealloc == [(PRIMARY_ENI, ["1.1.1.1"])]
    assert "1.1.1.1" in ctx.reconcile_cooldown_cache


def test_try_unassign_without_warm_target_does_nothing():
    manager, ctx, aws, _, _ = make_manager(warm_ip_target=0)
    _store_with_ips(ctx, ["1.1.1.1", "1.1.1.2"])
    manager.try_unassign_ips_from_all()
    assert ctx.datastore.get_stats() == (2, 0)
    assert aws.dealloc == []


def test_decrease_ip_pool_respects_interval():
    manager, ctx, aws, _, clock = make_manager(warm_ip_target=1)
    _store_with_ips(ctx, ["1.1.1.1", "1.1.1.2", "1.1.1.3"])
    ctx.last_decrease_ip_pool = clock()
    manager.decrease_ip_pool(30)
    assert ctx.datastore.get_stats() == (3, 0)

    clock.advance(31)
    manager.decrease_ip_pool(30)
    assert ctx.datastore.get_stats() == (1, 0)
    assert ctx.last_decrease_ip_pool == clock()
    assert ctx.last_node_ip_pool_action == clock()


def test_try_free_eni():
    manager, ctx, aws, _, clock = make_manager(warm_ip_target=0)
    ctx.datastore.add_eni(PRIMARY_ENI, PRIMARY_DEVICE, True)
    ctx.datastore.add_eni(SEC_ENI, SEC_DEVICE, False)
    assert manager.try_free_eni() is None
    assert aws.freed == []

    clock.advance(61)
    assert manager.try_free_eni() == SEC_ENI
    assert aws.freed == [SEC_ENI]
    assert ctx.datastore.eni_count() == 1


def test_update_ip_pool_shrinks_over_target():
    manager, ctx, aws, _, _ = make_manager(warm_ip_target=1, max_ips_per_eni=14, max_eni=4)
    _store_with_ips(ctx, ["1.1.1.1", "1.1.1.2", "1.1.1.3"])
    manager.update_ip_pool_if_required()
    assert ctx.datastore.get_stats() == (1, 0)
    assert aws.freed == []
    assert aws.alloc_eni_calls == []


class StopAfter:
    def __init__(self, waits):
        self.waits = waits
        self.calls = 0

    def wait(self, timeout=None):
        self.calls += 1
        return self.calls > self.waits


def test_run_updates_before_stopping():
    manager, ctx, aws, _, _ = make_manager(warm_eni_target=1, max_ips_per_eni=14, max_eni=4)
    stop = StopAfter(1)
    manager.run(stop)
    assert aws.alloc_eni_calls == [(False, None, "")]
    assert aws.get_attached_calls == 0
    assert stop.calls == 2


def test_run_returns_when_already_stopped():
    manager, ctx, aws, _, _ = make_manager(warm_eni_target=1, max_ips_per_eni=14, max_eni=4)
    stop = threading.Event()
    stop.set()
    manager.run(stop)
    assert aws.alloc_eni_calls == []
    assert aws.get_attached_calls == 0