"""Reconciler that drives a remediation from fencing through reboot to recovery."""

from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from .kube import (
    AlreadyExistsError,
    ApiError,
    Client,
    ConflictError,
    Machine,
    Node,
    NotFoundError,
    Pod,
    Taint,
    delete_taint,
    taint_exists,
)
from .remediation import (
    NODE_NO_EXECUTE_TAINT,
    NODE_UNSCHEDULABLE_TAINT,
    OUT_OF_SERVICE_TAINT,
    SNR_FINALIZER,
    Phase,
    ProcessingChangeReason,
    Result,
    UnreconcilableError,
    get_phase,
    is_stopped_by_nhc,
    update_conditions,
)
from .types import RemediationStrategy, SelfNodeRemediation

log = logging.getLogger(__name__)

IS_REBOOT_CAPABLE_ANNOTATION = "is-reboot-capable.medik8s.io"
AGENT_POD_LABELS = {
    "app.kubernetes.io/name": "self-node-remediation",
    "app.kubernetes.io/component": "agent",
}

_ONE_SECOND = timedelta(seconds=1)
_RESOURCE_DELETION_TIMEOUT = timedelta(seconds=300)
_RESOURCE_DELETION_POLL = timedelta(seconds=5)


class _SafeTimeCalculator(Protocol):
    def time_to_assume_node_rebooted(self) -> timedelta: ...

    def is_agent(self) -> bool: ...


class _Rebooter(Protocol):
    def reboot(self) -> None: ...


_RemoveNodeResources = Callable[[Node, SelfNodeRemediation], timedelta]


def _linux_uptime() -> timedelta:
    with open("/proc/uptime", encoding="ascii") as handle:
        return timedelta(seconds=float(handle.read().split()[0]))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SelfNodeRemediationReconciler:
    """Reconciles remediations, either as the manager or as the agent of one node."""

    def __init__(
        self,
        client: Client,
        my_node_name: str,
        safe_time_calculator: _SafeTimeCalculator,
        rebooter: Optional[_Rebooter] = None,
        restore_node_after: timedelta = timedelta(0),
        reboot_started_delay: timedelta = timedelta(seconds=30),
        uptime: Callable[[], timedelta] = _linux_uptime,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.client = client
        self.my_node_name = my_node_name
        self.safe_time_calculator = safe_time_calculator
        self.rebooter = rebooter
        self.restore_node_after = restore_node_after
        self.reboot_started_delay = reboot_started_delay
        self._uptime = uptime
        self._clock = clock
        self._lock = threading.Lock()
        self._last_seen_snr_namespace = ""
        self._was_last_seen_snr_machine = False

    # -- state shared with other components --------------------------------

    def last_seen_snr_namespace(self) -> str:
        """Return the namespace of the last reconciled remediation."""
        with self._lock:
            return self._last_seen_snr_namespace

    def was_last_seen_snr_machine(self) -> bool:
        """Tell whether a remediation pointing at a machine was seen."""
        with self._lock:
            return self._was_last_seen_snr_machine

    # -- entry point -------------------------------------------------------

    def reconcile(self, namespace: str, name: str) -> Result:
        """Run one pass over the named remediation; raise when it must be retried with backoff."""
        if self.safe_time_calculator.is_agent():
            if name != self.my_node_name:
                log.info(
                    "agent pod skipping remediation because node belongs to a different agent "
                    "(agent node %s, remediated node %s)",
                    self.my_node_name,
                    name,
                )
                return Result()
            log.info("agent pod starting remediation on owned node")

        try:
            snr = self.client.get_remediation(namespace, name)
        except NotFoundError:
            log.info("SNR already deleted")
            return Result()

        result = Result()
        error: Optional[Exception] = None
        try:
            result = self._reconcile(snr, namespace)
        except Exception as err:  # recorded, then re-raised after the status update
            error = err

        try:
            self._update_snr_status(snr)
        except ConflictError:
            if error is None:
                delay = _ONE_SECOND
                if timedelta(0) < result.requeue_after < delay:
                    delay = result.requeue_after
                result = dataclasses.replace(result, requeue_after=delay)
        except ApiError as update_err:
            if error is None:
                raise
            raise ApiError(f"[{update_err}, {error}]") from error

        if error is not None:
            raise error
        return result

    def _reconcile(self, snr: SelfNodeRemediation, namespace: str) -> Result:
        if is_stopped_by_nhc(snr):
            log.info("SNR remediation was stopped by Node Healthcheck")
            update_conditions(ProcessingChangeReason.REMEDIATION_TIMEOUT_BY_NHC, snr)
            return Result()

        if get_phase(snr) != Phase.FENCING_COMPLETED:
            update_conditions(ProcessingChangeReason.REMEDIATION_STARTED, snr)

        with self._lock:
            self._last_seen_snr_namespace = namespace

        result = Result()
        error: Optional[Exception] = None
        strategy = snr.spec.remediation_strategy
        try:
            if strategy == RemediationStrategy.RESOURCE_DELETION:
                result = self._remediate_with_resource_removal(snr, self._delete_resources)
            elif strategy == RemediationStrategy.OUT_OF_SERVICE_TAINT:
                result = self._remediate_with_resource_removal(snr, self._use_out_of_service_taint)
            else:
                log.error(
                    "Encountered unsupported remediation strategy %s. Please check template spec",
                    strategy,
                )
        except Exception as err:
            error = err

        self._update_last_error(snr, error)
        return result

    # -- status ------------------------------------------------------------

    def _update_snr_status(self, snr: SelfNodeRemediation) -> None:
        try:
            self.client.update_remediation_status(snr)
        except ConflictError:
            raise
        except ApiError:
            log.exception("failed to update snr status")
            raise

    def _update_last_error(self, snr: SelfNodeRemediation, error: Optional[Exception]) -> None:
        last_error = str(error) if error is not None else ""
        if snr.status.last_error != last_error:
            snr.status.last_error = last_error
            try:
                self.client.update_remediation_status(snr)
            except ApiError:
                log.exception("Failed to update SelfNodeRemediation status")
                raise
        if error is not None and not isinstance(error, UnreconcilableError):
            raise error

    # -- remediation flow --------------------------------------------------

    def _remediate_with_resource_removal(
        self, snr: SelfNodeRemediation, remove_resources: _RemoveNodeResources
    ) -> Result:
        try:
            node = self._get_node_from_snr(snr)
        except NotFoundError:
            log.info("couldn't find node matching remediation %s", snr.metadata.name)
            update_conditions(ProcessingChangeReason.REMEDIATION_FINISHED_NODE_NOT_FOUND, snr)
            return Result()

        phase = get_phase(snr)
        if phase == Phase.FENCING_STARTED:
            return self._prepare_reboot(node, snr)
        if phase == Phase.PRE_REBOOT_COMPLETED:
            return self._reboot_node(node, snr)
        if phase == Phase.REBOOT_COMPLETED:
            return self._handle_reboot_completed(node, snr, remove_resources)
        if phase == Phase.FENCING_COMPLETED:
            if snr.metadata.deletion_timestamp is not None:
                return self._recover_node(node, snr)
            return Result()
        log.error("Undefined unknown phase %s", phase)
        raise RuntimeError("unknown phase")

    def _prepare_reboot(self, node: Node, snr: SelfNodeRemediation) -> Result:
        log.info("pre-reboot not completed yet, prepare for rebooting")
        if not self._is_node_reboot_capable(node):
            raise RuntimeError("Node is not capable to reboot itself")

        if SNR_FINALIZER not in snr.metadata.finalizers:
            return self._add_finalizer(snr)

        self._add_taint(node, NODE_NO_EXECUTE_TAINT)

        if not node.spec.unschedulable or not taint_exists(
            node.spec.taints, NODE_UNSCHEDULABLE_TAINT
        ):
            return self._mark_node_as_unschedulable(node)

        if snr.status.time_assumed_rebooted is None:
            log.info("updating time to assume node %s has been rebooted", node.name)
            snr.status.time_assumed_rebooted = (
                self._clock() + self.safe_time_calculator.time_to_assume_node_rebooted()
            )

        snr.status.phase = Phase.PRE_REBOOT_COMPLETED.value
        return Result()

    def _reboot_node(self, node: Node, snr: SelfNodeRemediation) -> Result:
        log.info("node reboot not completed yet, start rebooting")
        if self.my_node_name == node.name:
            return self._reboot_if_needed(snr)

        rebooted, time_left = self._was_node_rebooted(snr)
        if not rebooted:
            return Result(requeue_after=time_left)

        log.info("TimeAssumedRebooted is old. Node %s assumed to have been rebooted", node.name)
        snr.status.phase = Phase.REBOOT_COMPLETED.value
        return Result()

    def _handle_reboot_completed(
        self, node: Node, snr: SelfNodeRemediation, remove_resources: _RemoveNodeResources
    ) -> Result:
        wait = remove_resources(node, snr)
        if wait:
            return Result(requeue_after=wait)
        snr.status.phase = Phase.FENCING_COMPLETED.value
        update_conditions(ProcessingChangeReason.REMEDIATION_FINISHED_SUCCESSFULLY, snr)
        return Result()

    def _recover_node(self, node: Node, snr: SelfNodeRemediation) -> Result:
        log.info("fencing completed, cleaning up")
        if node.spec.unschedulable:
            node.spec.unschedulable = False
            try:
                self.client.update_node(node)
            except ConflictError:
                return Result(requeue_after=_ONE_SECOND)
            except ApiError:
                log.exception("failed to mark node as schedulable")
                raise

        if taint_exists(node.spec.taints, NODE_UNSCHEDULABLE_TAINT):
            return Result(requeue_after=_ONE_SECOND)

        self._remove_taint(node, NODE_NO_EXECUTE_TAINT)

        if SNR_FINALIZER in snr.metadata.finalizers:
            snr.metadata.finalizers.remove(SNR_FINALIZER)
            try:
                self.client.update_remediation(snr)
            except ConflictError:
                raise
            except ApiError:
                log.exception("failed to remove finalizer from snr")
                raise
            log.info("finalizer removed")
        return Result()

    def _reboot_if_needed(self, snr: SelfNodeRemediation) -> Result:
        if self._did_i_reboot_myself(snr):
            return Result()
        if self.rebooter is None:
            raise RuntimeError("no rebooter configured")
        self.rebooter.reboot()
        return Result(requeue_after=self.reboot_started_delay)

    def _was_node_rebooted(self, snr: SelfNodeRemediation) -> tuple[bool, timedelta]:
        deadline = snr.status.time_assumed_rebooted
        now = self._clock()
        if deadline is not None and deadline > now:
            return False, deadline - now + _ONE_SECOND
        return True, timedelta(0)

    def _did_i_reboot_myself(self, snr: SelfNodeRemediation) -> bool:
        try:
            uptime = self._uptime()
        except OSError:
            log.exception("failed to get node's uptime")
            raise
        created = snr.metadata.creation_timestamp or self._clock()
        return uptime < self._clock() - created

    def _is_node_reboot_capable(self, node: Node) -> bool:
        if self._find_agent_pod(node.name) is None:
            log.error("failed to get self node remediation agent pod resource")
            return False
        value = node.metadata.annotations.get(IS_REBOOT_CAPABLE_ANNOTATION, "")
        if value != "true":
            log.error(
                "node's isRebootCapable annotation is not `true` (value %r), "
                "which means the node might not reboot. Skipping remediation",
                value,
            )
            return False
        return True

    def _find_agent_pod(self, node_name: str) -> Optional[Pod]:
        return next(
            (
                pod
                for pod in self.client.list_pods()
                if pod.node_name == node_name
                and all(pod.metadata.labels.get(k) == v for k, v in AGENT_POD_LABELS.items())
            ),
            None,
        )

    def _add_finalizer(self, snr: SelfNodeRemediation) -> Result:
        if snr.metadata.deletion_timestamp is not None:
            log.info("snr is about to be deleted, which means the resource is healthy again")
            return Result()
        snr.metadata.finalizers.append(SNR_FINALIZER)
        try:
            self.client.update_remediation(snr)
        except ConflictError:
            return Result(requeue_after=_ONE_SECOND)
        except ApiError:
            log.exception("failed to add finalizer to snr")
            raise
        log.info("finalizer added")
        return Result(requeue=True)

    def _get_node_from_snr(self, snr: SelfNodeRemediation) -> Node:
        for ref in snr.metadata.owner_references:
            if ref.kind == "Machine":
                with self._lock:
                    self._was_last_seen_snr_machine = True
                return self._get_node_from_machine(ref.name, snr.metadata.namespace)
        return self.client.get_node(snr.metadata.name)

    def _get_node_from_machine(self, machine_name: str, namespace: str) -> Node:
        machine: Machine = self.client.get_machine(namespace, machine_name)
        if machine.node_ref is None:
            log.error("failed to retrieve node from the unhealthy machine %s", machine_name)
            raise RuntimeError("nodeRef is nil")
        return self.client.get_node(machine.node_ref)

    def _mark_node_as_unschedulable(self, node: Node) -> Result:
        if node.spec.unschedulable:
            log.info("waiting for unschedulable taint to appear on node %s", node.name)
            return Result(requeue_after=_ONE_SECOND)
        node.spec.unschedulable = True
        log.info("Marking node %s as unschedulable", node.name)
        try:
            self.client.update_node(node)
        except ConflictError:
            return Result(requeue_after=_ONE_SECOND)
        except ApiError:
            log.exception("failed to mark node as unschedulable")
            raise
        return Result(requeue_after=_ONE_SECOND)

    def restore_node(self, node: Node) -> Result:
        """Recreate a node object in a clean, schedulable state."""
        log.info("restoring node %s", node.name)
        node.metadata.resource_version = ""
        node.spec.taints, _ = delete_taint(node.spec.taints, NODE_UNSCHEDULABLE_TAINT)
        node.spec.unschedulable = False
        node.metadata.creation_timestamp = self._clock()
        node.status = {}
        try:
            self.client.create_node(node)
        except AlreadyExistsError:
            log.info("failed to create node %s since it already exists", node.name)
            return Result()
        except ApiError:
            log.exception("failed to create node %s", node.name)
            raise
        log.info("node %s restored successfully", node.name)
        return Result(requeue=True)

    # -- resource removal strategies ---------------------------------------

    def _delete_resources(self, node: Node, _snr: SelfNodeRemediation) -> timedelta:
        log.info("starting to delete resources of node %s", node.name)
        for namespace in self.client.list_namespaces():
            self.client.delete_pods_on_node(namespace, node.name)
        for attachment in self.client.list_volume_attachments():
            if attachment.node_name == node.name:
                self.client.delete_volume_attachment(attachment)
        log.info("done deleting resources of node %s", node.name)
        return timedelta(0)

    def _use_out_of_service_taint(self, node: Node, snr: SelfNodeRemediation) -> timedelta:
        self._add_taint(node, OUT_OF_SERVICE_TAINT)
        if not self._is_resource_deletion_completed(node):
            expired, time_left = self._is_resource_deletion_expired(snr)
            if not expired:
                return time_left
            raise RuntimeError("Not ready to delete out-of-service taint")
        self._remove_taint(node, OUT_OF_SERVICE_TAINT)
        return timedelta(0)

    def _is_resource_deletion_completed(self, node: Node) -> bool:
        try:
            pods = self.client.list_pods()
        except ApiError:
            log.exception("failed to get pod list")
            return False
        for pod in pods:
            if pod.node_name == node.name and pod.is_terminating:
                log.info("waiting for terminating pod %s", pod.metadata.name)
                return False
        try:
            attachments = self.client.list_volume_attachments()
        except ApiError:
            log.exception("failed to get volumeAttachments list")
            return False
        for attachment in attachments:
            if attachment.node_name == node.name:
                log.info("waiting for deleting volumeAttachment %s", attachment.metadata.name)
                return False
        return True

    def _is_resource_deletion_expired(self, snr: SelfNodeRemediation) -> tuple[bool, timedelta]:
        assumed = snr.status.time_assumed_rebooted
        if assumed is not None and assumed + _RESOURCE_DELETION_TIMEOUT > self._clock():
            return False, _RESOURCE_DELETION_POLL
        return True, timedelta(0)

    # -- taints ------------------------------------------------------------

    def _add_taint(self, node: Node, taint: Taint) -> None:
        if taint_exists(node.spec.taints, taint):
            return
        node.spec.taints.append(dataclasses.replace(taint, time_added=self._clock()))
        try:
            self.client.update_node(node)
        except ApiError:
            log.exception("Failed to add taint %s on node %s", taint.key, node.name)
            raise
        log.info("taint %s added to node %s", taint.key, node.name)

    def _remove_taint(self, node: Node, taint: Taint) -> None:
        if not taint_exists(node.spec.taints, taint):
            return
        node.spec.taints, _ = delete_taint(node.spec.taints, taint)
        try:
            self.client.update_node(node)
        except ApiError:
            log.exception("Failed to remove taint %s from node %s", taint.key, node.name)
            raise
        log.info("taint %s removed from node %s", taint.key, node.name)