#!/usr/bin/env python3
"""
VPC MidoNet Reconciliation Engine

Continuously reconciles the desired network model (GNI) with the objects
present in the SDN backend.

Each run is a sequence of checkpoints:
- Pass 1: populate the in-memory mirror from the backend and merge the model
- Pass 2: core infrastructure (core router/bridge, metadata group, gateways)
- Pass 3a: VPCs with their subnets, NAT gateways and route tables
- Pass 3b: security groups (chains, address groups, rules)
- Pass 3c: instances (ports, host bindings, chains, elastic IPs)
- Metadata proxy plumbing (optional) and duplicate/orphan cleanup

Entity failures are isolated: a failing VPC does not block the others. The
public operations return an integer status and never raise.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from vpcmido.backend.base import SdnClient
from vpcmido.backend.memory import InMemorySdnClient
from vpcmido.backend.ops import MidoOps
from vpcmido.config import DriverConfig
from vpcmido.diagnostic_logger import DiagnosticLogger
from vpcmido.errors import DependencyMissing, ExitCode, MalformedInput, VpcMidoError, as_exit_code
from vpcmido.gni import GlobalNetworkInfo, load_gni_file
from vpcmido.ids import RouterIdAllocator
from vpcmido.metrics import METRICS
from vpcmido.reconciler import build, cleanup
from vpcmido.reconciler.metaproxy import MetaProxyManager
from vpcmido.reconciler.model import (
    EntityState,
    MidoEntity,
    MidoInstance,
    MidoSubnet,
    MidoVpc,
    ReconciliationContext,
    SubnetSlot,
)
from vpcmido.reconciler.populate import populate

logger = logging.getLogger(__name__)

GniProvider = Callable[[], GlobalNetworkInfo]


class RunCancelled(Exception):
    """Raised at a pass checkpoint after cancel() was requested."""


@dataclass
class ReconciliationResult:
    """Result of a reconciliation cycle."""

    success: bool
    status: int = int(ExitCode.OK)
    counts: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    failed_entities: List[str] = field(default_factory=list)
    report: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "counts": self.counts,
            "errors": self.errors,
            "failed_entities": self.failed_entities,
            "duration_ms": self.duration_ms,
            "cancelled": self.cancelled,
        }


class ReconciliationEngine:
    """
    Main reconciliation engine.

    Runs in a loop, or once per call, ensuring the backend matches the model.
    Only one run (or administrative operation) touches the backend at a time.
    """

    def __init__(
        self,
        config: DriverConfig,
        client: SdnClient,
        gni_provider: Optional[GniProvider] = None,
        state_file: Optional[str] = None,
        metaproxy: Optional[MetaProxyManager] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.client = client
        self.ops = MidoOps(client, config.backend_retries, config.backend_backoff_seconds, sleep)
        self.gni_provider = gni_provider or GlobalNetworkInfo
        self.state_file = state_file
        self.interval = config.interval_seconds
        if metaproxy is None and config.enable_metaproxy:
            metaproxy = MetaProxyManager()
        self.metaproxy = metaproxy

        self.context: Optional[ReconciliationContext] = None
        self.last_result: Optional[ReconciliationResult] = None
        self.running = False
        self._stop = threading.Event()
        self._cancel = threading.Event()
        self._run_lock = threading.Lock()
        self.metrics = {
            "cycles": 0,
            "errors": 0,
            "last_cycle_duration_ms": 0,
        }

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------
    def run(self):
        """Main reconciliation loop."""
        self.running = True
        self._stop.clear()
        logger.info(f"Reconciliation Engine: starting main loop (interval {self.interval}s)")

        while not self._stop.is_set():
            result = self.reconcile()
            self.metrics["cycles"] += 1
            self.metrics["errors"] += len(result.errors)
            self.metrics["last_cycle_duration_ms"] = result.duration_ms
            self._stop.wait(self.interval)

        self.running = False
        logger.info("Reconciliation Engine: stopped")

    def stop(self):
        """Stop the loop and abort the current run at its next checkpoint."""
        self._stop.set()
        self.cancel()

    def cancel(self):
        self._cancel.set()

    def _checkpoint(self, name: str):
        if self._cancel.is_set():
            raise RunCancelled(f"cancelled before {name}")
        logger.debug(f"checkpoint: {name}")

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------
    def _new_context(self, gni: Optional[GlobalNetworkInfo] = None) -> ReconciliationContext:
        if gni is None:
            gni = self.gni_provider()
        report = DiagnosticLogger()
        for message in gni.skipped:
            report.log_warning(message, {"kind": "model"})
        return ReconciliationContext(
            self.config,
            self.ops,
            gni=gni,
            allocator=RouterIdAllocator(self.config.max_router_ids),
            report=report,
        )

    def initialize(self) -> int:
        """Create a fresh context and populate it from the backend."""
        try:
            with self._run_lock:
                ctx = self._new_context()
                populate(ctx)
                self.context = ctx
        except VpcMidoError as e:
            logger.error(f"initialize failed: {e}")
            return as_exit_code(e)
        except Exception:
            logger.exception("initialize failed")
            return int(ExitCode.FAILURE)
        return int(ExitCode.PARTIAL) if ctx.population_failures() else int(ExitCode.OK)

    def reinitialize(self) -> int:
        self.context = None
        self._cancel.clear()
        return self.initialize()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def reconcile(self) -> ReconciliationResult:
        """
        Perform one reconciliation run.

        Steps:
        1. Load the model and populate the backend mirror
        2. Repair the core
        3. Converge VPCs, security groups, then instances
        4. Remove duplicates and orphans
        """
        start_time = time.time()
        result = ReconciliationResult(success=False)
        ctx: Optional[ReconciliationContext] = None
        stats_before = dict(self.ops.stats)

        with self._run_lock:
            try:
                self._checkpoint("populate")
                ctx = self._new_context()
                self.context = ctx
                populate(ctx)
                self._checkpoint("core")
                self._pass_core(ctx)
                self._checkpoint("vpcs")
                self._pass_vpcs(ctx)
                self._checkpoint("security groups")
                self._pass_secgroups(ctx)
                self._checkpoint("instances")
                self._pass_instances(ctx)
                self._checkpoint("cleanup")
                if self.metaproxy is not None:
                    self._guard(ctx, "metaproxy", "all", self.metaproxy.sync, ctx)
                if self.config.cleanup_after_reconcile:
                    self._guard(ctx, "cleanup", "all", cleanup.delete_dups_and_orphans, ctx)
                result.status = self._status(ctx)
                if result.status == int(ExitCode.OK):
                    ctx.report.log_success(f"backend matches the network model ({len(ctx.vpcs)} vpcs)")
            except RunCancelled as e:
                logger.warning(f"reconciliation {e}")
                result.cancelled = True
                result.status = int(ExitCode.FAILURE)
                result.errors.append(str(e))
            except DependencyMissing as e:
                logger.error(f"reconciliation aborted: {e}")
                result.status = int(ExitCode.FAILURE)
                result.errors.append(str(e))
            except VpcMidoError as e:
                logger.error(f"reconciliation failed: {e}")
                result.status = as_exit_code(e)
                result.errors.append(str(e))
            except Exception as e:
                logger.exception("reconciliation failed unexpectedly")
                result.status = int(ExitCode.FAILURE)
                result.errors.append(str(e))
            finally:
                self._cancel.clear()
                self._persist()

        result.success = result.status == int(ExitCode.OK)
        result.counts = {k: self.ops.stats[k] - stats_before.get(k, 0) for k in self.ops.stats}
        if ctx is not None:
            result.counts.update(self._record_totals(ctx))
            report = ctx.report.generate_report()
            result.report = report
            result.failed_entities = report["failed_entities"]
            result.errors.extend(e["error"] for e in report["errors"])

        result.duration_ms = (time.time() - start_time) * 1000
        METRICS["reconciliation_latency"].observe(result.duration_ms)
        METRICS["reconciliation_runs"].labels(status=ExitCode(result.status).name.lower()).inc()
        logger.info(
            f"reconciliation finished: status={ExitCode(result.status).name} "
            f"created={result.counts.get('created', 0)} deleted={result.counts.get('deleted', 0)} "
            f"failed={len(result.failed_entities)} in {result.duration_ms:.1f}ms"
        )
        self.last_result = result
        return result

    def run_once(self) -> int:
        return self.reconcile().status

    def _status(self, ctx: ReconciliationContext) -> int:
        if ctx.report.failed_entities or ctx.population_failures():
            return int(ExitCode.PARTIAL)
        return int(ExitCode.OK)

    def _record_totals(self, ctx: ReconciliationContext) -> Dict[str, int]:
        def present(entities) -> int:
            return sum(1 for e in entities if e.state == EntityState.PRESENT)

        totals = {
            "vpcs": present(ctx.vpcs.values()),
            "subnets": present(ctx.all_subnets()),
            "instances": present(ctx.all_instances()),
            "nat_gateways": present(ctx.all_natgateways()),
            "security_groups": present(ctx.secgroups.values()),
        }
        METRICS["vpcs_total"].set(totals["vpcs"])
        METRICS["subnets_total"].set(totals["subnets"])
        METRICS["instances_total"].set(totals["instances"])
        METRICS["nat_gateways_total"].set(totals["nat_gateways"])
        METRICS["security_groups_total"].set(totals["security_groups"])
        METRICS["router_ids_in_use"].set(len(ctx.allocator.allocated()))
        return totals

    def _persist(self):
        if self.state_file and isinstance(self.client, InMemorySdnClient):
            self.client.save(self.state_file)

    # ------------------------------------------------------------------
    # Per-entity isolation
    # ------------------------------------------------------------------
    def _guard(
        self,
        ctx: ReconciliationContext,
        kind: str,
        name: str,
        fn: Callable,
        *args,
        entity: Optional[MidoEntity] = None,
    ) -> bool:
        """Run one entity operation; its failure is recorded, not raised."""
        try:
            fn(*args)
        except DependencyMissing:
            raise
        except VpcMidoError as e:
            if entity is not None:
                entity.population_failed = True
            ctx.report.record_entity(kind, name, False, f"{type(e).__name__}: {e}")
            METRICS["entity_failures"].labels(kind=kind).inc()
            return False
        if entity is not None:
            ctx.report.record_entity(kind, name, True)
        return True

    def _parent_ready(self, ctx: ReconciliationContext, kind: str, child: MidoEntity, parent: MidoEntity) -> bool:
        """Children are only built under a Present parent; otherwise they wait for the next run."""
        if parent.state == EntityState.PRESENT and not parent.population_failed:
            return True
        if not child.skipped:
            child.mark_skipped(f"parent {parent.name} is not present")
            ctx.report.record_entity(kind, child.name, False, child.skip_reason)
            METRICS["entity_failures"].labels(kind=kind).inc()
        return False

    def _parallel(self, items: List[Any], fn: Callable[[Any], Any]):
        if self.config.workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
                list(pool.map(fn, items))
        else:
            for item in items:
                fn(item)

    # ------------------------------------------------------------------
    # Pass 2: core
    # ------------------------------------------------------------------
    def _pass_core(self, ctx: ReconciliationContext):
        if ctx.core.skipped:
            logger.error(f"core skipped: {ctx.core.skip_reason}")
            return
        self._guard(ctx, "core", "core", self._converge_core, ctx, entity=ctx.core)

    def _converge_core(self, ctx: ReconciliationContext):
        if ctx.core.state != EntityState.PRESENT:
            build.create_core(ctx)
        build.sync_core_rules(ctx)
        build.sync_gateways(ctx)

    # ------------------------------------------------------------------
    # Pass 3a: VPCs, subnets, NAT gateways, routes
    # ------------------------------------------------------------------
    def _pass_vpcs(self, ctx: ReconciliationContext):
        vpcs = [v for v in ctx.vpcs.values() if not v.skipped]
        doomed = [v for v in vpcs if v.state == EntityState.TO_DELETE]
        # deletions first so names and router IDs are free for the creates
        self._parallel(doomed, lambda v: self._guard(ctx, "vpc", v.name, build.delete_vpc, ctx, v, entity=v))
        live = [v for v in vpcs if v.gnipresent]
        self._parallel(live, lambda v: self._reconcile_vpc(ctx, v))

    def _reconcile_vpc(self, ctx: ReconciliationContext, vpc: MidoVpc):
        if not self._parent_ready(ctx, "vpc", vpc, ctx.core):
            return
        if vpc.state != EntityState.PRESENT:
            if not self._guard(ctx, "vpc", vpc.name, build.create_vpc, ctx, vpc, entity=vpc):
                return
        else:
            ctx.report.record_entity("vpc", vpc.name, True)

        subnets = [s for s in vpc.subnets.values() if not s.skipped]
        for subnet in subnets:
            if subnet.state == EntityState.TO_DELETE:
                self._guard(ctx, "subnet", subnet.name, build.delete_subnet, ctx, vpc, subnet, entity=subnet)

        live = [s for s in subnets if s.gnipresent]
        for subnet in live:
            if not self._parent_ready(ctx, "subnet", subnet, vpc):
                continue
            if self._guard(ctx, "subnet", subnet.name, self._converge_subnet, ctx, vpc, subnet, entity=subnet):
                self._reconcile_natgateways(ctx, vpc, subnet)

        # route targets may live in any subnet of the VPC, so routes go last
        for subnet in live:
            if subnet.state == EntityState.PRESENT and not subnet.skipped:
                self._guard(ctx, "route_table", subnet.name, build.sync_subnet_routes, ctx, vpc, subnet)

    def _converge_subnet(self, ctx: ReconciliationContext, vpc: MidoVpc, subnet: MidoSubnet):
        if subnet.state != EntityState.PRESENT:
            build.create_subnet(ctx, vpc, subnet)
            return
        build.sync_subnet_props(ctx, subnet)
        if ctx.config.eucanetd_host and not (
            SubnetSlot.BR_METAPORT in subnet.midos and SubnetSlot.BR_METAHOST in subnet.midos
        ):
            build.ensure_subnet_metaport(ctx, subnet)

    def _reconcile_natgateways(self, ctx: ReconciliationContext, vpc: MidoVpc, subnet: MidoSubnet):
        for natg in list(subnet.natgateways.values()):
            if natg.skipped:
                continue
            if natg.state == EntityState.TO_DELETE:
                self._guard(ctx, "nat_gateway", natg.name, build.delete_natgateway, ctx, natg, entity=natg)
            elif natg.state == EntityState.TO_CREATE:
                self._guard(
                    ctx, "nat_gateway", natg.name, build.create_natgateway, ctx, vpc, subnet, natg, entity=natg
                )

    # ------------------------------------------------------------------
    # Pass 3b: security groups
    # ------------------------------------------------------------------
    def _pass_secgroups(self, ctx: ReconciliationContext):
        groups = [g for g in ctx.secgroups.values() if not g.skipped]
        for sg in groups:
            if sg.state == EntityState.TO_DELETE:
                self._guard(ctx, "security_group", sg.name, build.delete_secgroup, ctx, sg, entity=sg)

        live = [g for g in groups if g.gnipresent]
        for sg in live:
            if sg.state != EntityState.PRESENT:
                self._guard(ctx, "security_group", sg.name, build.create_secgroup, ctx, sg, entity=sg)
        # rules may reference other groups, so they follow every create
        for sg in live:
            if sg.state != EntityState.PRESENT:
                continue
            if self._guard(ctx, "security_group", sg.name, build.sync_secgroup_members, ctx, sg, entity=sg):
                self._guard(ctx, "security_group", sg.name, build.sync_secgroup_rules, ctx, sg, entity=sg)

    # ------------------------------------------------------------------
    # Pass 3c: instances
    # ------------------------------------------------------------------
    def _pass_instances(self, ctx: ReconciliationContext):
        vpcs = [v for v in ctx.vpcs.values() if not v.skipped]
        self._parallel(vpcs, lambda v: self._reconcile_instances(ctx, v))

    def _reconcile_instances(self, ctx: ReconciliationContext, vpc: MidoVpc):
        instances = [
            (subnet, inst)
            for subnet in vpc.subnets.values()
            for inst in subnet.instances.values()
            if not inst.skipped
        ]
        for subnet, inst in instances:
            if inst.state == EntityState.TO_DELETE:
                self._guard(ctx, "instance", inst.name, build.delete_instance, ctx, inst, entity=inst)

        for subnet, inst in instances:
            if not inst.gnipresent:
                continue
            if not self._parent_ready(ctx, "instance", inst, subnet):
                continue
            self._guard(ctx, "instance", inst.name, self._converge_instance, ctx, vpc, subnet, inst, entity=inst)

    def _converge_instance(self, ctx: ReconciliationContext, vpc: MidoVpc, subnet: MidoSubnet, inst: MidoInstance):
        gi = inst.gni
        created = inst.state != EntityState.PRESENT
        if created:
            build.create_instance(ctx, vpc, subnet, inst)

        if created or inst.host_changed:
            build.connect_instance(ctx, subnet, inst)
        # jump targets change whenever a group chain is recreated, so the chains are always compared
        build.sync_instance_chains(ctx, inst)
        if created or inst.pubip_changed:
            if gi.public_ip:
                if inst.pubip and inst.pubip != gi.public_ip:
                    build.disconnect_elip(ctx, inst)
                build.connect_elip(ctx, vpc, inst)
            else:
                build.disconnect_elip(ctx, inst)

    # ------------------------------------------------------------------
    # Administrative operations
    # ------------------------------------------------------------------
    def _populated(self, gni: Optional[GlobalNetworkInfo] = None) -> ReconciliationContext:
        ctx = self._new_context(gni)
        populate(ctx)
        self.context = ctx
        return ctx

    def teardown(self) -> int:
        """Delete every managed object, the core included."""
        try:
            with self._run_lock:
                ctx = self._populated(GlobalNetworkInfo())
                for vpc in list(ctx.vpcs.values()):
                    if not vpc.skipped:
                        self._guard(ctx, "vpc", vpc.name, build.delete_vpc, ctx, vpc, entity=vpc)
                for sg in list(ctx.secgroups.values()):
                    if not sg.skipped:
                        self._guard(ctx, "security_group", sg.name, build.delete_secgroup, ctx, sg, entity=sg)
                if self.metaproxy is not None:
                    self._guard(ctx, "metaproxy", "all", self.metaproxy.teardown)
                if not ctx.core.skipped:
                    self._guard(ctx, "core", "core", build.delete_core, ctx, entity=ctx.core)
                self._guard(ctx, "cleanup", "all", cleanup.delete_dups_and_orphans, ctx)
                self._persist()
                status = self._status(ctx)
        except VpcMidoError as e:
            logger.error(f"teardown failed: {e}")
            return as_exit_code(e)
        except Exception:
            logger.exception("teardown failed unexpectedly")
            return int(ExitCode.FAILURE)
        logger.info(f"teardown finished: {ExitCode(status).name}")
        return status

    def list_inventory(self) -> Tuple[int, Dict[str, Any]]:
        try:
            with self._run_lock:
                ctx = self._populated()
                inventory = cleanup.list_inventory(ctx)
        except VpcMidoError as e:
            logger.error(f"listing failed: {e}")
            return as_exit_code(e), {"error": str(e)}
        except Exception as e:
            logger.exception("listing failed unexpectedly")
            return int(ExitCode.FAILURE), {"error": str(e)}
        return self._status(ctx), inventory

    def delete_object(self, obj_id: str, check_only: bool = False) -> int:
        """Delete one VPC, subnet, NAT gateway, interface or security group by identifier."""
        try:
            cleanup.resolve_object(obj_id)
        except MalformedInput as e:
            logger.error(str(e))
            return int(ExitCode.CONFIG_ERROR)
        try:
            with self._run_lock:
                ctx = self._populated()
                found = cleanup.delete_object(ctx, obj_id, check_only)
                if not check_only:
                    self._persist()
        except VpcMidoError as e:
            logger.error(f"delete of {obj_id} failed: {e}")
            return as_exit_code(e)
        except Exception:
            logger.exception(f"delete of {obj_id} failed unexpectedly")
            return int(ExitCode.FAILURE)
        return int(ExitCode.OK) if found else int(ExitCode.FAILURE)

    def delete_dups_and_orphans(self, check_only: bool = False) -> Tuple[int, Dict[str, Any]]:
        try:
            with self._run_lock:
                ctx = self._populated()
                report = cleanup.delete_dups_and_orphans(ctx, check_only)
                if not check_only:
                    self._persist()
        except VpcMidoError as e:
            logger.error(f"cleanup failed: {e}")
            return as_exit_code(e), {"error": str(e)}
        except Exception as e:
            logger.exception("cleanup failed unexpectedly")
            return int(ExitCode.FAILURE), {"error": str(e)}
        status = int(ExitCode.PARTIAL) if report.orphans_skipped else int(ExitCode.OK)
        return status, report.to_dict()


# ============================================================================
# Factory
# ============================================================================

def make_gni_provider(config: DriverConfig) -> GniProvider:
    """Desired-state source: SQL store, YAML file, or an empty model."""
    if config.database_url:
        from vpcmido.api.models import gni_from_session, make_session_factory

        session_factory = make_session_factory(config.database_url)

        def from_database() -> GlobalNetworkInfo:
            db = session_factory()
            try:
                return gni_from_session(db)
            finally:
                db.close()

        return from_database
    if config.gni_file:
        path = config.gni_file
        return lambda: load_gni_file(path)
    return GlobalNetworkInfo


def build_engine(
    config: DriverConfig,
    client: Optional[SdnClient] = None,
    gni_provider: Optional[GniProvider] = None,
) -> ReconciliationEngine:
    if client is None:
        if config.sim_state_file:
            client = InMemorySdnClient.load(config.sim_state_file)
        else:
            client = InMemorySdnClient()
    return ReconciliationEngine(
        config,
        client,
        gni_provider or make_gni_provider(config),
        state_file=config.sim_state_file,
    )
