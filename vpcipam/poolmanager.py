"""Periodic growing, shrinking and reconciling of the node's warm IP pool."""

from __future__ import annotations

import logging
import threading
from collections.abc import MutableMapping

from .ipamd import (
    DECREASE_IP_POOL_INTERVAL,
    IP_POOL_MONITOR_INTERVAL,
    NODE_IP_POOL_RECONCILE_INTERVAL,
    ENIMetadata,
    IPAMContext,
    IPAMError,
    action_in_progress,
    ipamd_err_inc,
    reconcile_cnt,
)
from .models import AddressInfo, DataStoreError, DuplicateIPError, UnknownENIError

__all__ = ["NodeIPPoolManager"]

log = logging.getLogger(__name__)


class NodeIPPoolManager:
    """Keeps the warm pool of an IPAMContext within its targets."""

    def __init__(self, context: IPAMContext) -> None:
        self.context = context

    def _log_stats(self) -> None:
        total, used = self.context.datastore.get_stats()
        log.debug(
            "IP pool stats: total = %d, used = %d, maxIPsPerENI = %d",
            total, used, self.context.max_ips_per_eni,
        )

    def update_ip_pool_if_required(self) -> None:
        """Grow or shrink the pool as the targets require, then try to free an ENI."""
        ctx = self.context
        if ctx.node_ip_pool_too_low():
            ctx.increase_ip_pool()
        elif ctx.node_ip_pool_too_high():
            self.decrease_ip_pool(DECREASE_IP_POOL_INTERVAL)
        if ctx.should_remove_extra_enis():
            self.try_free_eni()

    def decrease_ip_pool(self, interval: float) -> None:
        """Return unused IPs, at most once every ``interval`` seconds."""
        ctx = self.context
        with action_in_progress("decreaseIPPool"):
            now = ctx.clock()
            since_last = now - ctx.last_decrease_ip_pool
            if since_last <= interval:
                log.debug(
                    "Skipping decrease IP pool because time since last %s <= %s", since_last, interval
                )
                return
            log.debug("Starting to decrease IP pool")
            self.try_unassign_ips_from_all()
            ctx.last_decrease_ip_pool = now
            ctx.last_node_ip_pool_action = now
            log.debug("Successfully decreased IP pool")
            self._log_stats()

    def try_free_eni(self) -> str | None:
        """Remove one deletable ENI from the store and free it; return its id."""
        ctx = self.context
        eni = ctx.datastore.remove_unused_eni(ctx.warm_ip_target)
        if eni is None:
            log.info("No ENI to remove, all ENIs have IPs in use")
            return None
        log.debug("Start freeing ENI %s", eni)
        try:
            ctx.aws_client.free_eni(eni)
        except Exception as err:
            ipamd_err_inc("decreaseIPPoolFreeENIFailed")
            log.error("Failed to free ENI %s, err: %s", eni, err)
        return eni

    def try_unassign_ips_from_all(self) -> None:
        """Release IPs beyond WARM_IP_TARGET from every ENI."""
        ctx = self.context
        _, over, warm_ip_target_defined = ctx.ip_target_state()
        if not (warm_ip_target_defined and over > 0):
            return
        for eni_id in ctx.datastore.get_eni_infos().eni_ip_pools:
            try:
                ips = self.find_freeable_ips(eni_id)
            except IPAMError as err:
                log.error("Error finding unassigned IPs: %s", err)
                return
            if not ips:
                continue

            deleted: list[str] = []
            for ip in ips:
                try:
                    ctx.datastore.del_ipv4_address(eni_id, ip)
                except DataStoreError as err:
                    log.warning("Failed to delete IP %s on ENI %s from datastore: %s", ip, eni_id, err)
                    ipamd_err_inc("decreaseIPPool")
                else:
                    deleted.append(ip)

            try:
                ctx.aws_client.dealloc_ip_addresses(eni_id, deleted)
            except Exception as err:
                log.warning(
                    "Failed to decrease IP pool by removing IPs %s from ENI %s: %s", deleted, eni_id, err
                )
            else:
                log.debug("Successfully decreased IP pool by removing IPs %s from ENI %s", deleted, eni_id)

            ctx.reconcile_cooldown_cache.add(deleted)

    def find_freeable_ips(self, eni_id: str) -> list[str]:
        """IPs of an ENI not used by pods, at most as many as the pool is over target."""
        ctx = self.context
        used = {info.ip for info in ctx.datastore.get_pod_infos().values()}
        pool = ctx.datastore.get_eni_infos().eni_ip_pools.get(eni_id)
        if pool is None:
            raise IPAMError(f"error finding available IPs: eni {eni_id} does not exist")
        available = [ip for ip in pool.ipv4_addresses if ip not in used]
        _, over, _ = ctx.ip_target_state()
        return available[: min(over, len(available))]

    def node_ip_pool_reconcile(self, interval: float) -> None:
        """Bring the data store in line with the ENIs and IPs in instance metadata."""
        ctx = self.context
        with action_in_progress("nodeIPPoolReconcile"):
            now = ctx.clock()
            since_last = now - ctx.last_node_ip_pool_action
            if since_last <= interval:
                log.debug("nodeIPPoolReconcile: skipping because time since last %s <= %s", since_last, interval)
                return

            log.debug("Reconciling ENI/IP pool info...")
            try:
                attached = ctx.aws_client.get_attached_enis() or []
            except Exception as err:
                log.error("IP pool reconcile: Failed to get attached ENI info: %s", err)
                ipamd_err_inc("reconcileFailedGetENIs")
                return

            remaining = dict(ctx.datastore.get_eni_infos().eni_ip_pools)

            for eni in attached:
                try:
                    ip_pool = ctx.datastore.get_eni_ip_pool(eni.eni_id)
                except UnknownENIError:
                    log.debug("Reconcile and add a new ENI %s", eni.eni_id)
                    try:
                        ctx.setup_eni(eni.eni_id, eni)
                    except IPAMError as err:
                        log.error("IP pool reconcile: Failed to set up ENI %s network: %s", eni.eni_id, err)
                        ipamd_err_inc("eniReconcileAdd")
                        continue
                    reconcile_cnt.inc(fn="eniReconcileAdd")
                else:
                    log.debug("Reconcile existing ENI %s IP pool", eni.eni_id)
                    self.eni_ip_pool_reconcile(ip_pool, eni, eni.eni_id)
                    remaining.pop(eni.eni_id, None)

            for eni_id in remaining:
                log.info("Reconcile and delete detached ENI %s", eni_id)
                try:
                    ctx.datastore.remove_eni(eni_id)
                except DataStoreError as err:
                    log.error("IP pool reconcile: Failed to delete ENI during reconcile: %s", err)
                    ipamd_err_inc("eniReconcileDel")
                    continue
                reconcile_cnt.inc(fn="eniReconcileDel")

            log.debug("Successfully Reconciled ENI/IP pool")
            ctx.last_node_ip_pool_action = now

    def _really_attached(self, ip: str, eni_id: str) -> bool | None:
        try:
            addresses, _ = self.context.get_eni_addresses(eni_id)
        except IPAMError:
            log.error("Failed to fetch ENI IP addresses!")
            return None
        return any(address.private_ip_address == ip for address in addresses)

    def eni_ip_pool_reconcile(
        self,
        ip_pool: MutableMapping[str, AddressInfo],
        attached_eni: ENIMetadata,
        eni_id: str,
    ) -> None:
        """Add IPs seen in metadata, then delete those in ``ip_pool`` that were not seen."""
        ctx = self.context
        cache = ctx.reconcile_cooldown_cache
        for local_ip in attached_eni.local_ipv4s:
            if local_ip == ctx.primary_ip.get(eni_id):
                log.debug("Reconcile and skip primary IP %s on ENI %s", local_ip, eni_id)
                continue

            found, recently_freed = cache.recently_freed(local_ip)
            if found:
                if recently_freed:
                    log.debug(
                        "Reconcile skipping IP %s on ENI %s because it was recently unassigned.",
                        local_ip, eni_id,
                    )
                    continue
                attached = self._really_attached(local_ip, eni_id)
                if attached is None:
                    continue
                if not attached:
                    log.warning("Skipping IP %s on ENI %s because it does not belong to this ENI!", local_ip, eni_id)
                    continue
                log.debug("Verified that IP %s is attached to ENI %s", local_ip, eni_id)
                cache.remove(local_ip)

            try:
                ctx.datastore.add_ipv4_address(eni_id, local_ip)
            except DuplicateIPError:
                log.debug("Reconciled IP %s on ENI %s", local_ip, eni_id)
                ip_pool.pop(local_ip, None)
                continue
            except DataStoreError as err:
                log.error("Failed to reconcile IP %s on ENI %s: %s", local_ip, eni_id, err)
                ipamd_err_inc("ipReconcileAdd")
                continue
            reconcile_cnt.inc(fn="eniIPPoolReconcileAdd")

        for existing_ip in list(ip_pool):
            log.debug("Reconcile and delete IP %s on ENI %s", existing_ip, eni_id)
            try:
                ctx.datastore.del_ipv4_address(eni_id, existing_ip)
            except DataStoreError as err:
                log.error("Failed to reconcile and delete IP %s on ENI %s, %s", existing_ip, eni_id, err)
                ipamd_err_inc("ipReconcileDel")
                continue
            reconcile_cnt.inc(fn="eniIPPoolReconcileDel")

    def run(self, stop_event: threading.Event) -> None:
        """Alternate pool updates and reconciliation until ``stop_event`` is set."""
        half = IP_POOL_MONITOR_INTERVAL / 2
        while not stop_event.wait(half):
            self.update_ip_pool_if_required()
            if stop_event.wait(half):
                break
            self.node_ip_pool_reconcile(NODE_IP_POOL_RECONCILE_INTERVAL)