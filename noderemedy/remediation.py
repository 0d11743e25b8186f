"""Remediation phases, condition bookkeeping and the result of one reconcile pass."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from .kube import Taint, TaintEffect
from .types import (
    PROCESSING_CONDITION_TYPE,
    SUCCEEDED_CONDITION_TYPE,
    Condition,
    ConditionStatus,
    SelfNodeRemediation,
    is_status_condition_present_and_equal,
    set_status_condition,
)

SNR_FINALIZER = "self-node-remediation.medik8s.io/snr-finalizer"
NHC_TIMEOUT_ANNOTATION = "remediation.medik8s.io/nhc-timed-out"

NODE_UNSCHEDULABLE_TAINT = Taint(
    key="node.kubernetes.io/unschedulable",
    effect=TaintEffect.NO_SCHEDULE,
)

NODE_NO_EXECUTE_TAINT = Taint(
    key="medik8s.io/remediation",
    value="self-node-remediation",
    effect=TaintEffect.NO_EXECUTE,
)

OUT_OF_SERVICE_TAINT = Taint(
    key="node.kubernetes.io/out-of-service",
    value="nodeshutdown",
    effect=TaintEffect.NO_EXECUTE,
)


class Phase(str, Enum):
    """Stage a remediation has reached."""

    FENCING_STARTED = "Fencing-Started"
    PRE_REBOOT_COMPLETED = "Pre-Reboot-Completed"
    REBOOT_COMPLETED = "Reboot-Completed"
    FENCING_COMPLETED = "Fencing-Completed"
    UNKNOWN = "Unknown"

    def __str__(self) -> str:
        return self.value


class ProcessingChangeReason(str, Enum):
    """Why the processing and succeeded conditions changed."""

    REMEDIATION_STARTED = "RemediationStarted"
    REMEDIATION_TIMEOUT_BY_NHC = "RemediationTimeoutByNHC"
    REMEDIATION_FINISHED_SUCCESSFULLY = "RemediationFinishedSuccessfully"
    REMEDIATION_FINISHED_NODE_NOT_FOUND = "RemediationFinishedNodeNotFound"

    def __str__(self) -> str:
        return self.value


class UnreconcilableError(Exception):
    """An error that is recorded on the remediation but must not trigger another attempt."""


@dataclass(frozen=True)
class Result:
    """What a reconcile pass asks of the scheduler: retry now, retry later, or nothing."""

    requeue: bool = False
    requeue_after: timedelta = timedelta(0)


_CONDITION_STATUSES: dict[ProcessingChangeReason, tuple[ConditionStatus, ConditionStatus]] = {
    ProcessingChangeReason.REMEDIATION_STARTED: (ConditionStatus.TRUE, ConditionStatus.UNKNOWN),
    ProcessingChangeReason.REMEDIATION_FINISHED_SUCCESSFULLY: (
        ConditionStatus.FALSE,
        ConditionStatus.TRUE,
    ),
    ProcessingChangeReason.REMEDIATION_TIMEOUT_BY_NHC: (
        ConditionStatus.FALSE,
        ConditionStatus.FALSE,
    ),
    ProcessingChangeReason.REMEDIATION_FINISHED_NODE_NOT_FOUND: (
        ConditionStatus.FALSE,
        ConditionStatus.FALSE,
    ),
}

_KNOWN_PHASES = (Phase.PRE_REBOOT_COMPLETED, Phase.REBOOT_COMPLETED, Phase.FENCING_COMPLETED)


def update_conditions(reason: ProcessingChangeReason | str, snr: SelfNodeRemediation) -> None:
    """Set the processing and succeeded conditions of the remediation for the given reason."""
    try:
        known = ProcessingChangeReason(reason)
    except ValueError:
        raise ValueError(f"unkown processingChangeReason:{reason}") from None
    processing, succeeded = _CONDITION_STATUSES[known]

    conditions = snr.status.conditions
    if is_status_condition_present_and_equal(
        conditions, PROCESSING_CONDITION_TYPE, processing
    ) and is_status_condition_present_and_equal(conditions, SUCCEEDED_CONDITION_TYPE, succeeded):
        return

    set_status_condition(
        conditions,
        Condition(type=PROCESSING_CONDITION_TYPE, status=processing, reason=known.value),
    )
    set_status_condition(
        conditions,
        Condition(type=SUCCEEDED_CONDITION_TYPE, status=succeeded, reason=known.value),
    )


def get_phase(snr: SelfNodeRemediation) -> Phase:
    """Return the phase recorded on the remediation; a missing phase means fencing has started."""
    if snr.status.phase is None:
        return Phase.FENCING_STARTED
    try:
        phase = Phase(snr.status.phase)
    except ValueError:
        return Phase.UNKNOWN
    return phase if phase in _KNOWN_PHASES else Phase.UNKNOWN


def is_stopped_by_nhc(snr: Optional[SelfNodeRemediation]) -> bool:
    """Tell whether the health checker timed the remediation out while it is not being deleted."""
    if snr is None or not snr.metadata.annotations or snr.metadata.deletion_timestamp is not None:
        return False
    return NHC_TIMEOUT_ANNOTATION in snr.metadata.annotations