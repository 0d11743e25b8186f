"""Resource types of the self-node-remediation API group and condition helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Optional


@dataclass(frozen=True)
class GroupVersion:
    """An API group together with one of its versions."""

    group: str
    version: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    def __str__(self) -> str:
        return self.api_version


GROUP_VERSION = GroupVersion(group="self-node-remediation.medik8s.io", version="v1alpha1")


class HealthCheckResponseCode(IntEnum):
    """Answer a peer gives when asked about the health of a node."""

    REQUEST_FAILED = -1
    HEALTHY = 1
    UNHEALTHY = 2
    API_ERROR = 3


class RemediationStrategy(str, Enum):
    """How the workloads of an unhealthy node are released."""

    RESOURCE_DELETION = "ResourceDeletion"
    OUT_OF_SERVICE_TAINT = "OutOfServiceTaint"

    def __str__(self) -> str:
        return self.value


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"

    def __str__(self) -> str:
        return self.value


PROCESSING_CONDITION_TYPE = "Processing"
SUCCEEDED_CONDITION_TYPE = "Succeeded"

CONFIG_CR_NAME = "self-node-remediation-config"
DEFAULT_WATCHDOG_PATH = "/dev/watchdog"
DEFAULT_SAFE_TO_ASSUME_NODE_REBOOT_TIMEOUT = 180
DEFAULT_IS_SOFTWARE_REBOOT_ENABLED = True

RESOURCE_DELETION_TEMPLATE_NAME = "self-node-remediation-resource-deletion-template"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Condition:
    """One observation of a resource's state."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: Optional[datetime] = None


@dataclass
class OwnerReference:
    kind: str
    name: str
    api_version: str = ""
    uid: str = ""
    controller: bool = False


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[OwnerReference] = field(default_factory=list)
    resource_version: str = ""
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None


@dataclass
class Toleration:
    """A pod toleration; operator and effect are kept as free text so they can be validated."""

    key: str = ""
    operator: str = ""
    value: str = ""
    effect: str = ""
    toleration_seconds: Optional[int] = None


@dataclass
class SelfNodeRemediationSpec:
    remediation_strategy: RemediationStrategy | str = RemediationStrategy.RESOURCE_DELETION


@dataclass
class SelfNodeRemediationStatus:
    time_assumed_rebooted: Optional[datetime] = None
    phase: Optional[str] = None
    last_error: str = ""
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class SelfNodeRemediation:
    """A request to remediate one unhealthy node."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SelfNodeRemediationSpec = field(default_factory=SelfNodeRemediationSpec)
    status: SelfNodeRemediationStatus = field(default_factory=SelfNodeRemediationStatus)

    kind = "SelfNodeRemediation"


@dataclass
class SelfNodeRemediationConfigSpec:
    """Agent settings; unset fields keep their zero values, as the API server would store them."""

    watchdog_file_path: str = ""
    safe_time_to_assume_node_rebooted_seconds: int = 0
    peer_api_server_timeout: Optional[timedelta] = None
    api_check_interval: Optional[timedelta] = None
    peer_update_interval: Optional[timedelta] = None
    api_server_timeout: Optional[timedelta] = None
    peer_dial_timeout: Optional[timedelta] = None
    peer_request_timeout: Optional[timedelta] = None
    max_api_error_threshold: int = 0
    is_software_reboot_enabled: bool = False
    endpoint_health_check_url: str = ""
    host_port: int = 0
    custom_ds_tolerations: list[Toleration] = field(default_factory=list)


@dataclass
class SelfNodeRemediationConfig:
    """Cluster-wide configuration of the remediation agents."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SelfNodeRemediationConfigSpec = field(default_factory=SelfNodeRemediationConfigSpec)

    kind = "SelfNodeRemediationConfig"


@dataclass
class SelfNodeRemediationTemplate:
    """A template from which remediations are stamped out."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    template: SelfNodeRemediationSpec = field(default_factory=SelfNodeRemediationSpec)

    kind = "SelfNodeRemediationTemplate"


def new_default_config() -> SelfNodeRemediationConfig:
    """Return the configuration the operator creates when none exists."""
    return SelfNodeRemediationConfig(
        metadata=ObjectMeta(name=CONFIG_CR_NAME),
        spec=SelfNodeRemediationConfigSpec(
            watchdog_file_path=DEFAULT_WATCHDOG_PATH,
            safe_time_to_assume_node_rebooted_seconds=DEFAULT_SAFE_TO_ASSUME_NODE_REBOOT_TIMEOUT,
            is_software_reboot_enabled=DEFAULT_IS_SOFTWARE_REBOOT_ENABLED,
        ),
    )


def new_remediation_templates() -> list[SelfNodeRemediationTemplate]:
    """Return the templates the operator ships with."""
    return [
        SelfNodeRemediationTemplate(
            metadata=ObjectMeta(name=RESOURCE_DELETION_TEMPLATE_NAME),
            template=SelfNodeRemediationSpec(
                remediation_strategy=RemediationStrategy.RESOURCE_DELETION
            ),
        )
    ]


def find_status_condition(conditions: list[Condition], condition_type: str) -> Optional[Condition]:
    """Return the condition of the given type, or None."""
    return next((c for c in conditions if c.type == condition_type), None)


def set_status_condition(conditions: list[Condition], condition: Condition) -> None:
    """Add or update a condition in place, moving its transition time only when the status changes."""
    existing = find_status_condition(conditions, condition.type)
    if existing is None:
        if condition.last_transition_time is None:
            condition.last_transition_time = _now()
        conditions.append(condition)
        return

    if existing.status != condition.status:
        existing.status = condition.status
        existing.last_transition_time = condition.last_transition_time or _now()
    existing.reason = condition.reason
    existing.message = condition.message
    existing.observed_generation = condition.observed_generation


def is_status_condition_present_and_equal(
    conditions: list[Condition], condition_type: str, status: ConditionStatus
) -> bool:
    """Tell whether a condition of the given type has the given status."""
    return any(c.type == condition_type and c.status == status for c in conditions)