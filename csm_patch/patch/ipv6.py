"""
Retrofit of IPv6 addressing onto the CHN/CMN management networks.

SLS owns the networks, subnets and IP reservations, BSS owns the per-node cloud-init IPAM data derived from them.
The two services share no transaction so a run is a sequence of steps, each leaving evidence in the backup
directory:

    discover   dump SLS, back up the dump
    plan       carve and assign IPv6 on deep copies, fetch and back up the BSS records of affected nodes,
               back up the patched documents
    validate   collect the fields left alone because they already held a value
    commit     PUT every changed SLS network, then every changed BSS record, backing up each after it is written

Nothing is written to either service unless the run was asked to commit. A failed write stops the commit and
nothing already written is reverted; the backups are the recovery path.
"""
import concurrent.futures
import enum
import ipaddress
import logging
import pathlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from csm_patch.common.config import RetrofitConfig
from csm_patch.common.constants import EXIT_OK
from csm_patch.common.errors import (
    CapacityExceeded,
    CommitError,
    DiscoveryError,
    InvalidCIDR,
    InvalidIdentifier,
    PlanningError,
    RetrofitError,
    ServiceError,
    UnparseableAddress,
)
from csm_patch.common.models import BootParams, Network, NetworkExtraProperties, SLSState, wire_dump
from csm_patch.common.representation import (
    ConflictRepr,
    EntityOutcome,
    OutcomeStatus,
    RunSummary,
)
from csm_patch.tools.assignment import (
    Assignment,
    Conflict,
    assign_ipam,
    assign_network,
    clear_ipam,
    find_ipam_entry,
    remove_network,
)
from csm_patch.tools.backup import BackupWriter
from csm_patch.tools.bss import BSSClient
from csm_patch.tools.ip6_allocator import IPv6Allocator, SubnetCarve, SubnetDemand, parse_supernet, resolve_gateway
from csm_patch.tools.sls import SLSClient
from csm_patch.tools.xname import classify

logger = logging.getLogger(__name__)


class RunState(enum.Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    PLANNING = "planning"
    VALIDATING = "validating"
    DRY_RUN_HALT = "dry-run"
    COMMITTING = "committing"
    REPORTING = "reporting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class NetworkPlan:
    name: str
    original: Network
    patched: Network
    assignment: Assignment
    subnets: List[str] = field(default_factory=list)
    supernet: Optional[ipaddress.IPv6Network] = None
    gateway: Optional[ipaddress.IPv6Address] = None
    carves: List[SubnetCarve] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.assignment.changes)


@dataclass
class BootParamsPlan:
    host: str
    original: BootParams
    patched: BootParams
    assignment: Assignment = field(default_factory=Assignment)
    networks: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.assignment.changes)


@dataclass
class PatchPlan:
    """ Everything a commit would write. Network and boot parameter plans keep discovery order """
    networks: List[NetworkPlan] = field(default_factory=list)
    boot_params: Dict[str, BootParamsPlan] = field(default_factory=dict)
    failures: Dict[str, RetrofitError] = field(default_factory=dict)
    skipped_hosts: Set[str] = field(default_factory=set)

    @property
    def conflicts(self) -> List[Conflict]:
        conflicts = []
        for n in self.networks:
            conflicts.extend(n.assignment.conflicts)
        for b in self.boot_params.values():
            conflicts.extend(b.assignment.conflicts)
        return conflicts


@dataclass
class RunReport:
    config: RetrofitConfig
    backup_dir: pathlib.Path
    state: RunState = RunState.IDLE
    plan: Optional[PatchPlan] = None
    outcomes: List[EntityOutcome] = field(default_factory=list)
    error: Optional[RetrofitError] = None
    backups: List[pathlib.Path] = field(default_factory=list)

    @property
    def conflicts_found(self) -> bool:
        return bool(self.plan and self.plan.conflicts)

    @property
    def exit_code(self) -> int:
        if self.error is not None:
            return self.error.exit_code
        if self.plan and self.plan.failures:
            return PlanningError.exit_code
        return EXIT_OK

    @property
    def errors(self) -> List[str]:
        errors = [str(e) for e in self.plan.failures.values()] if self.plan else []
        if self.error is not None:
            errors.append(str(self.error))
        return errors

    def summary(self) -> RunSummary:
        return RunSummary(
            state=self.state.value,
            commit=self.config.commit,
            remove=self.config.remove,
            force=self.config.force,
            conflicts_found=self.conflicts_found,
            backup_dir=str(self.backup_dir),
            backups=[str(p) for p in self.backups],
            errors=self.errors,
            outcomes=self.outcomes,
            conflicts=[ConflictRepr(entity=c.entity, field=c.field, existing=c.existing, proposed=c.proposed)
                       for c in (self.plan.conflicts if self.plan else [])],
        )

    def render(self, fmt: str = "table") -> str:
        return self.summary().render(fmt)

    def messages(self) -> List[str]:
        """ Closing lines for the operator """
        lines = []
        if self.conflicts_found:
            lines.append("WARNING: some networks, subnets, reservations or boot parameters already had IPv6 data "
                         "which was left unchanged. Use --force to overwrite it.")
        if self.state == RunState.DONE and self.config.commit:
            lines.append(f"Changes have been made to BSS and SLS, backups of the original and patched data are in "
                         f"{self.backup_dir}")
        elif self.state == RunState.DONE:
            lines.append(f"This is a dry-run, and no changes were made. The changes that would be applied are in "
                         f"{self.backup_dir}")
            lines.append("To commit these changes, use the --commit flag")
        elif isinstance(self.error, CommitError):
            lines.append(f"The commit did not complete, writes already made were NOT reverted. Use the backups in "
                         f"{self.backup_dir} to recover.")
        return lines


class RetrofitOrchestrator:

    def __init__(self, config: RetrofitConfig, sls: SLSClient, bss: BSSClient, backups: BackupWriter):
        self.config = config
        self.sls = sls
        self.bss = bss
        self.backups = backups
        self.state = RunState.IDLE

    def _transition(self, state: RunState):
        logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state

    def _backup(self, name: str, payload, error_cls=PlanningError):
        try:
            self.backups.write(name, payload)
        except OSError as e:
            raise error_cls(f"failed to write backup {name} to {self.backups.directory}: {e}")

    def run(self) -> RunReport:
        report = RunReport(config=self.config, backup_dir=self.backups.directory)
        try:
            snapshot = self.discover()
            report.plan = self.plan(snapshot)
            self.validate(report.plan)
            if self.config.commit:
                self.commit(report.plan, report)
            else:
                self._transition(RunState.DRY_RUN_HALT)
                report.outcomes = self._dry_run_outcomes(report.plan)
            self._transition(RunState.REPORTING)
            report.state = RunState.DONE
            self._transition(RunState.DONE)
        except RetrofitError as e:
            logger.error(str(e))
            report.error = e
            report.state = RunState.FAILED
            self._transition(RunState.FAILED)
        report.backups = [a.path for a in self.backups.artifacts]
        return report

    ## Discovering

    def discover(self) -> SLSState:
        self._transition(RunState.DISCOVERING)
        try:
            snapshot = self.sls.fetch_all()
        except ServiceError as e:
            raise DiscoveryError(f"failed to dump SLS: {e}")
        self._backup("sls-dumpstate", snapshot, error_cls=DiscoveryError)
        logger.info(f"discovered {len(snapshot.networks)} SLS networks")
        return snapshot

    ## Planning

    def _targets(self, snapshot: SLSState) -> List[Network]:
        wanted = {n.upper() for n in self.config.target_networks}
        found = [n for n in snapshot.networks.values() if n.name.upper() in wanted]
        for name in sorted(wanted - {n.name.upper() for n in found}):
            logger.warning(f"network {name} does not exist in SLS, skipping it")
        return found

    def plan(self, snapshot: SLSState) -> PatchPlan:
        self._transition(RunState.PLANNING)
        plan = PatchPlan()
        for network in self._targets(snapshot):
            try:
                if self.config.remove:
                    network_plan = self._plan_remove(network)
                else:
                    network_plan = self._plan_add(network)
            except (CapacityExceeded, InvalidCIDR) as e:
                logger.error(f"dropping network {network.name} from the plan: {e}")
                plan.failures[network.name] = e
                continue
            plan.networks.append(network_plan)
            self._plan_boot_params(plan, network_plan)

        if plan.networks:
            self._backup("sls-patched", {n.name: wire_dump(n.patched) for n in plan.networks})
        for bp in plan.boot_params.values():
            self._backup(f"bss-{bp.host}-bootparams-patched", bp.patched)
        return plan

    def _present_subnets(self, props: NetworkExtraProperties) -> List[str]:
        return [s for s in self.config.subnets if props.lookup_subnet(s) is not None]

    def _patched_copy(self, network: Network) -> Tuple[Network, NetworkExtraProperties]:
        patched = network.model_copy(deep=True)
        if patched.extra_properties is None:
            patched.extra_properties = NetworkExtraProperties()
        return patched, patched.extra_properties

    def _plan_remove(self, network: Network) -> NetworkPlan:
        patched, props = self._patched_copy(network)
        subnets = self._present_subnets(props)
        logger.info(f"Removing [{props.cidr6 or ''}] from {network.name} network")
        assignment = remove_network(props, network.name, subnets)
        return NetworkPlan(network.name, network, patched, assignment, subnets)

    def _plan_add(self, network: Network) -> NetworkPlan:
        name = network.name
        force = self.config.force
        param = self.config.networks[name.upper()]
        patched, props = self._patched_copy(network)

        supernet = param.supernet(name)
        if props.cidr6 and not force:
            existing = parse_supernet(props.cidr6, entity=name)
            if existing != supernet:
                logger.warning(f"Network [{name}] CIDR6 was already defined as [{props.cidr6}], "
                               f"carving subnets from it instead of {supernet}")
            supernet = existing
        gateway = resolve_gateway(supernet, param.gateway6, entity=name)

        subnets = self._present_subnets(props)
        demands = []
        for subnet_name in subnets:
            subnet = props.lookup_subnet(subnet_name)
            supernetted = subnet_name in self.config.supernet_subnets
            existing = None
            if subnet.cidr6 and not force and not supernetted:
                existing = parse_supernet(subnet.cidr6, entity=f"{name}/{subnet_name}")
            demands.append(SubnetDemand(subnet_name, len(subnet.ip_reservations), supernetted, existing))
        missing = [s for s in self.config.subnets if s not in subnets]
        if missing:
            logger.debug(f"{name}: subnets {', '.join(missing)} not present")

        carves = IPv6Allocator(name, supernet, gateway).carve(demands)
        logger.info(f"Adding IPv6 to {name} network: CIDR6 {supernet}, Gateway6 {gateway}")
        assignment = assign_network(props, name, supernet, gateway, carves, force)
        return NetworkPlan(name, network, patched, assignment, subnets, supernet, gateway, carves)

    def _boot_params_for(self, plan: PatchPlan, xname: str) -> Optional[BootParamsPlan]:
        """ fetch a node's boot parameters once per run, caching misses as well """
        if xname in plan.boot_params:
            return plan.boot_params[xname]
        if xname in plan.skipped_hosts:
            return None
        try:
            record = self.bss.fetch(xname)
        except ServiceError as e:
            raise DiscoveryError(f"failed to fetch BSS bootparameters: {e}", entity=xname)
        if record is None:
            logger.info(f"{xname}: no BSS bootparameters, skipping")
            plan.skipped_hosts.add(xname)
            return None
        if not record.ipam:
            logger.info(f"{xname}: BSS bootparameters have no IPAM meta-data, skipping")
            plan.skipped_hosts.add(xname)
            return None
        self._backup(f"bss-{xname}-bootparams-backup", record)
        bp = BootParamsPlan(host=xname, original=record, patched=record.model_copy(deep=True))
        plan.boot_params[xname] = bp
        return bp

    def _plan_boot_params(self, plan: PatchPlan, network_plan: NetworkPlan):
        props = network_plan.patched.extra_properties
        for subnet_name in network_plan.subnets:
            subnet = props.lookup_subnet(subnet_name)
            prefixlen = None
            for reservation in subnet.ip_reservations:
                entity = f"{network_plan.name}/{subnet_name}/{reservation.name}"
                try:
                    xname, is_node = classify(reservation.comment)
                except InvalidIdentifier as e:
                    logger.warning(f"{entity}: not updating BSS, {e}")
                    continue
                if not is_node:
                    continue
                bp = self._boot_params_for(plan, xname)
                if bp is None:
                    continue
                key = find_ipam_entry(bp.patched.ipam, network_plan.name)
                if key is None:
                    logger.debug(f"{xname}: no IPAM entry for {network_plan.name}")
                    continue

                entry = bp.patched.ipam[key]
                ipam_entity = f"{xname}/{key}"
                if self.config.remove:
                    bp.assignment.extend(clear_ipam(entry, ipam_entity))
                else:
                    if reservation.ip_address6 is None:
                        continue
                    try:
                        if prefixlen is None:
                            prefixlen = ipaddress.ip_network(subnet.cidr6, strict=False).prefixlen
                        address = ipaddress.IPv6Address(reservation.ip_address6)
                    except (ValueError, TypeError) as e:
                        raise UnparseableAddress(f"cannot derive ip6 for {xname}: {e}", entity=entity)
                    bp.assignment.extend(
                        assign_ipam(entry, ipam_entity, address, prefixlen, subnet.gateway6, self.config.force))
                if network_plan.name not in bp.networks:
                    bp.networks.append(network_plan.name)

    ## Validating

    def validate(self, plan: PatchPlan):
        self._transition(RunState.VALIDATING)
        conflicts = plan.conflicts
        for c in conflicts:
            logger.debug(f"{c.entity}: {c.field} was already set to [{c.existing}]")
        if conflicts:
            logger.warning(f"{len(conflicts)} fields already held a value and were left unchanged")

    ## Committing

    @staticmethod
    def _outcome(service: str, entity: str, assignment: Assignment, status: OutcomeStatus,
                 detail: str = "") -> EntityOutcome:
        if not assignment.changes and status in (OutcomeStatus.WOULD_APPLY, OutcomeStatus.APPLIED):
            status = OutcomeStatus.CONFLICT if assignment.conflicts else OutcomeStatus.UNCHANGED
        return EntityOutcome(service=service, entity=entity, status=status, changes=len(assignment.changes),
                             conflicts=len(assignment.conflicts), detail=detail)

    def _failure_outcomes(self, plan: PatchPlan) -> List[EntityOutcome]:
        return [EntityOutcome(service="SLS", entity=name, status=OutcomeStatus.FAILED, detail=str(e))
                for name, e in plan.failures.items()]

    def _dry_run_outcomes(self, plan: PatchPlan) -> List[EntityOutcome]:
        outcomes = [self._outcome("SLS", n.name, n.assignment, OutcomeStatus.WOULD_APPLY) for n in plan.networks]
        outcomes += self._failure_outcomes(plan)
        outcomes += [self._outcome("BSS", b.host, b.assignment, OutcomeStatus.WOULD_APPLY)
                     for b in plan.boot_params.values()]
        return outcomes

    def commit(self, plan: PatchPlan, report: RunReport):
        self._transition(RunState.COMMITTING)
        failure: Optional[CommitError] = None

        for n in plan.networks:
            if failure is not None:
                report.outcomes.append(self._outcome("SLS", n.name, n.assignment, OutcomeStatus.SKIPPED))
                continue
            if not n.changed:
                report.outcomes.append(self._outcome("SLS", n.name, n.assignment, OutcomeStatus.APPLIED))
                continue
            try:
                self.sls.put(n.patched)
            except RetrofitError as e:
                failure = CommitError(f"failed to update SLS network: {e}", entity=n.name)
                report.outcomes.append(self._outcome("SLS", n.name, n.assignment, OutcomeStatus.FAILED, str(e)))
                continue
            logger.info(f"updated SLS network {n.name}")
            failure = self._committed_backup(f"sls-{n.name}-committed", n.patched)
            report.outcomes.append(self._outcome("SLS", n.name, n.assignment, OutcomeStatus.APPLIED,
                                                 str(failure or "")))
        report.outcomes += self._failure_outcomes(plan)

        if failure is not None:
            report.outcomes += [self._outcome("BSS", b.host, b.assignment, OutcomeStatus.SKIPPED,
                                              "SLS commit failed")
                                for b in plan.boot_params.values()]
            raise failure

        if self.config.bss_workers > 1:
            self._commit_boot_params_best_effort(plan, report)
        else:
            self._commit_boot_params(plan, report)

    def _committed_backup(self, name: str, payload) -> Optional[CommitError]:
        """ back up an entity already written, the write stands even when its backup fails """
        try:
            self._backup(name, payload, error_cls=CommitError)
        except CommitError as e:
            logger.error(str(e))
            return e
        return None

    def _put_boot_params(self, bp: BootParamsPlan) -> Optional[CommitError]:
        self.bss.put(bp.patched)
        logger.info(f"updated BSS bootparameters of {bp.host}")
        return self._committed_backup(f"bss-{bp.host}-bootparams-committed", bp.patched)

    def _commit_boot_params(self, plan: PatchPlan, report: RunReport):
        failure: Optional[CommitError] = None
        for bp in plan.boot_params.values():
            if failure is not None:
                report.outcomes.append(self._outcome("BSS", bp.host, bp.assignment, OutcomeStatus.SKIPPED))
                continue
            if not bp.changed:
                report.outcomes.append(self._outcome("BSS", bp.host, bp.assignment, OutcomeStatus.APPLIED))
                continue
            try:
                failure = self._put_boot_params(bp)
            except RetrofitError as e:
                failure = CommitError(f"failed to update BSS bootparameters: {e}", entity=bp.host)
                report.outcomes.append(self._outcome("BSS", bp.host, bp.assignment, OutcomeStatus.FAILED, str(e)))
                continue
            report.outcomes.append(self._outcome("BSS", bp.host, bp.assignment, OutcomeStatus.APPLIED,
                                                 str(failure or "")))
        if failure is not None:
            raise failure

    def _commit_boot_params_best_effort(self, plan: PatchPlan, report: RunReport):
        """ every node is attempted, failures are reported per node once all writes finished """
        changed = [bp for bp in plan.boot_params.values() if bp.changed]
        errors: Dict[str, Exception] = {}
        backup_errors: Dict[str, CommitError] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.config.bss_workers) as executor:
            futures = {bp.host: executor.submit(self._put_boot_params, bp) for bp in changed}
            for host, future in futures.items():
                try:
                    backup_error = future.result()
                except RetrofitError as e:
                    errors[host] = e
                    continue
                if backup_error is not None:
                    backup_errors[host] = backup_error

        for bp in plan.boot_params.values():
            if bp.host in errors:
                report.outcomes.append(self._outcome("BSS", bp.host, bp.assignment, OutcomeStatus.FAILED,
                                                     str(errors[bp.host])))
            else:
                report.outcomes.append(self._outcome("BSS", bp.host, bp.assignment, OutcomeStatus.APPLIED,
                                                     str(backup_errors.get(bp.host, ""))))
        if errors:
            raise CommitError(f"failed to update BSS bootparameters of {len(errors)} of {len(changed)} nodes: "
                              f"{', '.join(errors.keys())}")
        if backup_errors:
            raise CommitError(f"failed to back up committed BSS bootparameters of "
                              f"{', '.join(backup_errors.keys())}")
