from datetime import datetime, timedelta, timezone

import pytest

from noderemedy.controller import (
    AGENT_POD_LABELS,
    IS_REBOOT_CAPABLE_ANNOTATION,
    SelfNodeRemediationReconciler,
)
from noderemedy.kube import (
    Client,
    Machine,
    Node,
    NotFoundError,
    Pod,
    VolumeAttachment,
    taint_exists,
)
from noderemedy.remediation import (
    NODE_NO_EXECUTE_TAINT,
    NODE_UNSCHEDULABLE_TAINT,
    NHC_TIMEOUT_ANNOTATION,
    OUT_OF_SERVICE_TAINT,
    SNR_FINALIZER,
    Phase,
    Result,
)
from noderemedy.types import (
    PROCESSING_CONDITION_TYPE,
    SUCCEEDED_CONDITION_TYPE,
    ConditionStatus,
    ObjectMeta,
    OwnerReference,
    RemediationStrategy,
    SelfNodeRemediation,
    SelfNodeRemediationSpec,
    SelfNodeRemediationStatus,
    find_status_condition,
)

UNHEALTHY = "node1"
PEER = "node2"
AGENT_NS = "self-node-remediation"


class FakeCalculator:
    def __init__(self, agent=False, wait=timedelta(0)):
        self.agent = agent
        self.wait = wait

    def time_to_assume_node_rebooted(self):
        return self.wait

    def is_agent(self):
        return self.agent


class FakeRebooter:
    def __init__(self):
        self.calls = 0

    def reboot(self):
        self.calls += 1


class Clock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now += delta


def make_client(capable="true", with_agent_pod=True):
    client = Client()
    annotations = {IS_REBOOT_CAPABLE_ANNOTATION: capable} if capable is not None else {}
    client.create_node(Node(metadata=ObjectMeta(name=UNHEALTHY, annotations=annotations)))
    client.create_node(Node(metadata=ObjectMeta(name=PEER)))
    if with_agent_pod:
        client.create_pod(
            Pod(
                metadata=ObjectMeta(
                    name="self-node-remediation", namespace=AGENT_NS, labels=dict(AGENT_POD_LABELS)
                ),
                node_name=UNHEALTHY,
            )
        )
    return client


def add_snr(client, name=UNHEALTHY, strategy=RemediationStrategy.RESOURCE_DELETION, **meta):
    snr = SelfNodeRemediation(
        metadata=ObjectMeta(name=name, namespace="default", **meta),
        spec=SelfNodeRemediationSpec(remediation_strategy=strategy),
    )
    client.create_remediation(snr)
    return snr


def add_snr_with_status(client, status, strategy=RemediationStrategy.RESOURCE_DELETION):
    snr = SelfNodeRemediation(
        metadata=ObjectMeta(name=UNHEALTHY, namespace="default", finalizers=[SNR_FINALIZER]),
        spec=SelfNodeRemediationSpec(remediation_strategy=strategy),
        status=status,
    )
    client.create_remediation(snr)
    return snr


def stored(client, name=UNHEALTHY):
    return client.get_remediation("default", name)


def conditions_of(snr):
    processing = find_status_condition(snr.status.conditions, PROCESSING_CONDITION_TYPE)
    succeeded = find_status_condition(snr.status.conditions, SUCCEEDED_CONDITION_TYPE)
    return processing.status, succeeded.status, processing.reason


def manager(client, clock=None, **kwargs):
    return SelfNodeRemediationReconciler(
        client, PEER, FakeCalculator(), clock=clock or Clock(), **kwargs
    )


def test_resource_deletion_full_flow():
    client = make_client()
    client.create_volume_attachment(
        VolumeAttachment(metadata=ObjectMeta(name="some-va"), node_name=UNHEALTHY)
    )
    add_snr(client)
    clock = Clock()
    rec = manager(client, clock)

    assert rec.reconcile("default", UNHEALTHY) == Result(requeue=True)
    snr = stored(client)
    assert SNR_FINALIZER in snr.metadata.finalizers
    assert conditions_of(snr) == (ConditionStatus.TRUE, ConditionStatus.UNKNOWN, "RemediationStarted")

    assert rec.reconcile("default", UNHEALTHY) == Result(requeue_after=timedelta(seconds=1))
    node = client.get_node(UNHEALTHY)
    assert node.spec.unschedulable
    assert taint_exists(node.spec.taints, NODE_NO_EXECUTE_TAINT)

    node.spec.taints.append(NODE_UNSCHEDULABLE_TAINT)
    client.update_node(node)

    assert rec.reconcile("default", UNHEALTHY) == Result()
    snr = stored(client)
    assert snr.status.phase == Phase.PRE_REBOOT_COMPLETED.value
    assert snr.status.time_assumed_rebooted == clock.now

    clock.advance(timedelta(seconds=1))
    assert rec.reconcile("default", UNHEALTHY) == Result()
    assert stored(client).status.phase == Phase.REBOOT_COMPLETED.value

    assert rec.reconcile("default", UNHEALTHY) == Result()
    snr = stored(client)
    assert snr.status.phase == Phase.FENCING_COMPLETED.value
    assert conditions_of(snr) == (
        ConditionStatus.FALSE,
        ConditionStatus.TRUE,
        "RemediationFinishedSuccessfully",
    )
    assert [p for p in client.list_pods() if p.node_name == UNHEALTHY] == []
    assert client.list_volume_attachments() == []

    client.delete_remediation("default", UNHEALTHY)
    assert rec.reconcile("default", UNHEALTHY) == Result(requeue_after=timedelta(seconds=1))
    node = client.get_node(UNHEALTHY)
    assert node.spec.unschedulable is False

    node.spec.taints = [t for t in node.spec.taints if not t.matches(NODE_UNSCHEDULABLE_TAINT)]
    client.update_node(node)

    with pytest.raises(NotFoundError):
        rec.reconcile("default", UNHEALTHY)
    assert not taint_exists(client.get_node(UNHEALTHY).spec.taints, NODE_NO_EXECUTE_TAINT)
    with pytest.raises(NotFoundError):
        stored(client)


def test_agent_skips_other_nodes():
    client = make_client()
    add_snr(client)
    rec = SelfNodeRemediationReconciler(client, PEER, FakeCalculator(agent=True))
    assert rec.reconcile("default", UNHEALTHY) == Result()
    assert stored(client).status.conditions == []


def test_missing_remediation_is_ignored():
    client = make_client()
    assert manager(client).reconcile("default", "absent") == Result()


def test_stopped_by_nhc():
    client = make_client()
    add_snr(client, annotations={NHC_TIMEOUT_ANNOTATION: ""})
    assert manager(client).reconcile("default", UNHEALTHY) == Result()
    assert conditions_of(stored(client)) == (
        ConditionStatus.FALSE,
        ConditionStatus.FALSE,
        "RemediationTimeoutByNHC",
    )


def test_node_not_found():
    client = make_client()
    add_snr(client, name="non-existing-node")
    rec = manager(client)
    assert rec.reconcile("default", "non-existing-node") == Result()
    assert conditions_of(stored(client, "non-existing-node")) == (
        ConditionStatus.FALSE,
        ConditionStatus.FALSE,
        "RemediationFinishedNodeNotFound",
    )
    assert rec.last_seen_snr_namespace() == "default"
    assert rec.was_last_seen_snr_machine() is False


@pytest.mark.parametrize(
    "capable, with_pod", [("false", True), (None, True), ("true", False)]
)
def test_not_reboot_capable(capable, with_pod):
    client = make_client(capable=capable, with_agent_pod=with_pod)
    add_snr(client)
    with pytest.raises(RuntimeError, match="Node is not capable to reboot itself"):
        manager(client).reconcile("default", UNHEALTHY)
    snr = stored(client)
    assert snr.metadata.finalizers == []
    assert snr.status.last_error == "Node is not capable to reboot itself"


def test_machine_owner_reference():
    client = make_client()
    client.create_machine(Machine(metadata=ObjectMeta(name="m1", namespace="default"), node_ref=UNHEALTHY))
    add_snr(client, owner_references=[OwnerReference(kind="Machine", name="m1")])
    rec = manager(client)
    assert rec.reconcile("default", UNHEALTHY) == Result(requeue=True)
    assert rec.was_last_seen_snr_machine() is True


def test_machine_without_node_ref():
    client = make_client()
    client.create_machine(Machine(metadata=ObjectMeta(name="m1", namespace="default")))
    add_snr(client, owner_references=[OwnerReference(kind="Machine", name="m1")])
    with pytest.raises(RuntimeError, match="nodeRef is nil"):
        manager(client).reconcile("default", UNHEALTHY)
    assert stored(client).status.last_error == "nodeRef is nil"


def test_agent_reboots_own_node():
    client = make_client()
    add_snr_with_status(client, SelfNodeRemediationStatus(phase=Phase.PRE_REBOOT_COMPLETED.value))
    rebooter = FakeRebooter()
    delay = timedelta(seconds=7)
    rec = SelfNodeRemediationReconciler(
        client,
        UNHEALTHY,
        FakeCalculator(agent=True),
        rebooter=rebooter,
        reboot_started_delay=delay,
        uptime=lambda: timedelta(days=10),
    )
    assert rec.reconcile("default", UNHEALTHY) == Result(requeue_after=delay)
    assert rebooter.calls == 1


def test_agent_already_rebooted():
    client = make_client()
    add_snr_with_status(client, SelfNodeRemediationStatus(phase=Phase.PRE_REBOOT_COMPLETED.value))
    rebooter = FakeRebooter()
    clock = Clock()
    clock.advance(timedelta(hours=1))
    rec = SelfNodeRemediationReconciler(
        client,
        UNHEALTHY,
        FakeCalculator(agent=True),
        rebooter=rebooter,
        uptime=lambda: timedelta(seconds=1),
        clock=clock,
    )
    assert rec.reconcile("default", UNHEALTHY) == Result()
    assert rebooter.calls == 0


def test_peer_waits_for_reboot():
    client = make_client()
    clock = Clock()
    add_snr_with_status(
        client,
        SelfNodeRemediationStatus(
            phase=Phase.PRE_REBOOT_COMPLETED.value,
            time_assumed_rebooted=clock.now + timedelta(seconds=10),
        ),
    )
    result = manager(client, clock).reconcile("default", UNHEALTHY)
    assert result == Result(requeue_after=timedelta(seconds=11))
    assert stored(client).status.phase == Phase.PRE_REBOOT_COMPLETED.value


def test_out_of_service_taint_flow():
    client = make_client()
    clock = Clock()
    add_snr_with_status(
        client,
        SelfNodeRemediationStatus(
            phase=Phase.REBOOT_COMPLETED.value, time_assumed_rebooted=clock.now
        ),
        strategy=RemediationStrategy.OUT_OF_SERVICE_TAINT,
    )
    client.create_pod(
        Pod(
            metadata=ObjectMeta(
                name="terminatingpod", namespace="default", deletion_timestamp=clock.now
            ),
            node_name=UNHEALTHY,
        )
    )
    rec = manager(client, clock)

    assert rec.reconcile("default", UNHEALTHY) == Result(requeue_after=timedelta(seconds=5))
    assert taint_exists(client.get_node(UNHEALTHY).spec.taints, OUT_OF_SERVICE_TAINT)

    clock.advance(timedelta(seconds=301))
    with pytest.raises(RuntimeError, match="Not ready to delete out-of-service taint"):
        rec.reconcile("default", UNHEALTHY)

    client.delete_pods_on_node("default", UNHEALTHY)
    assert rec.reconcile("default", UNHEALTHY) == Result()
    assert not taint_exists(client.get_node(UNHEALTHY).spec.taints, OUT_OF_SERVICE_TAINT)
    snr = stored(client)
    assert snr.status.phase == Phase.FENCING_COMPLETED.value
    assert snr.status.last_error == ""


def test_unknown_phase():
    client = make_client()
    add_snr_with_status(client, SelfNodeRemediationStatus(phase="Bogus"))
    with pytest.raises(RuntimeError, match="unknown phase"):
        manager(client).reconcile("default", UNHEALTHY)
    assert stored(client).status.last_error == "unknown phase"


def test_restore_node_existing():
    client = make_client()
    assert manager(client).restore_node(client.get_node(UNHEALTHY)) == Result()


def test_restore_node_creates_clean_node():
    client = make_client()
    node = Node(metadata=ObjectMeta(name="node3", resource_version="42"))
    node.spec.unschedulable = True
    node.spec.taints = [NODE_UNSCHEDULABLE_TAINT, NODE_NO_EXECUTE_TAINT]
    node.status = {"phase": "Running"}
    assert manager(client).restore_node(node) == Result(requeue=True)
    created = client.get_node("node3")
    assert created.spec.unschedulable is False
    assert not taint_exists(created.spec.taints, NODE_UNSCHEDULABLE_TAINT)
    assert taint_exists(created.spec.taints, NODE_NO_EXECUTE_TAINT)
    assert created.status == {}