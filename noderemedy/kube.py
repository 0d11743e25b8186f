"""Cluster objects touched by remediation, taint helpers and an in-memory cluster client."""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from itertools import count
from typing import Any, Optional, TypeVar

from .types import ObjectMeta, SelfNodeRemediation


class TaintEffect(str, Enum):
    NO_SCHEDULE = "NoSchedule"
    PREFER_NO_SCHEDULE = "PreferNoSchedule"
    NO_EXECUTE = "NoExecute"

    def __str__(self) -> str:
        return self.value


@dataclass
class Taint:
    """A node taint; two taints match when key and effect agree."""

    key: str
    effect: TaintEffect
    value: str = ""
    time_added: Optional[datetime] = None

    def matches(self, other: "Taint") -> bool:
        return self.key == other.key and self.effect == other.effect


def taint_exists(taints: list[Taint], taint: Taint) -> bool:
    """Tell whether any taint in the list matches the given one."""
    return any(taint.matches(t) for t in taints)


def delete_taint(taints: list[Taint], taint: Taint) -> tuple[list[Taint], bool]:
    """Return the taints without those matching the given one, and whether any were removed."""
    kept = [t for t in taints if not taint.matches(t)]
    return kept, len(kept) != len(taints)


@dataclass
class NodeSpec:
    unschedulable: bool = False
    taints: list[Taint] = field(default_factory=list)


@dataclass
class Node:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: NodeSpec = field(default_factory=NodeSpec)
    status: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclass
class Pod:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    node_name: str = ""
    phase: str = "Pending"

    @property
    def is_terminating(self) -> bool:
        return self.metadata.deletion_timestamp is not None


@dataclass
class VolumeAttachment:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    node_name: str = ""
    attacher: str = ""


@dataclass
class Machine:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    node_ref: Optional[str] = None


class ApiError(Exception):
    """A request to the cluster failed."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class ConflictError(ApiError):
    """The object was changed since it was read."""


class AlreadyExistsError(ApiError):
    """An object with that name already exists."""


_T = TypeVar("_T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Client:
    """A cluster held in memory, with optimistic concurrency on updates."""

    def __init__(self, namespaces: tuple[str, ...] = ("default",)) -> None:
        self._lock = threading.RLock()
        self._versions = count(1)
        self._namespaces: list[str] = list(namespaces)
        self._nodes: dict[str, Node] = {}
        self._machines: dict[tuple[str, str], Machine] = {}
        self._pods: dict[tuple[str, str], Pod] = {}
        self._attachments: dict[str, VolumeAttachment] = {}
        self._remediations: dict[tuple[str, str], SelfNodeRemediation] = {}

    # -- internals ---------------------------------------------------------

    def _stamp(self, meta: ObjectMeta) -> None:
        meta.resource_version = str(next(self._versions))

    def _insert(self, store: dict, key: Any, obj: _T, kind: str) -> _T:
        meta: ObjectMeta = obj.metadata  # type: ignore[attr-defined]
        if meta.resource_version:
            raise ApiError(f"resourceVersion should not be set on {kind} to be created")
        if key in store:
            raise AlreadyExistsError(f'{kind} "{meta.name}" already exists')
        stored = copy.deepcopy(obj)
        if stored.metadata.creation_timestamp is None:  # type: ignore[attr-defined]
            stored.metadata.creation_timestamp = _now()  # type: ignore[attr-defined]
        self._stamp(stored.metadata)  # type: ignore[attr-defined]
        if isinstance(meta.namespace, str) and meta.namespace and meta.namespace not in self._namespaces:
            self._namespaces.append(meta.namespace)
        store[key] = stored
        obj.metadata.resource_version = stored.metadata.resource_version  # type: ignore[attr-defined]
        obj.metadata.creation_timestamp = stored.metadata.creation_timestamp  # type: ignore[attr-defined]
        return copy.deepcopy(stored)

    @staticmethod
    def _fetch(store: dict, key: Any, kind: str, name: str) -> Any:
        try:
            return copy.deepcopy(store[key])
        except KeyError:
            raise NotFoundError(f'{kind} "{name}" not found') from None

    @staticmethod
    def _current(store: dict, key: Any, obj: Any, kind: str) -> Any:
        current = store.get(key)
        if current is None:
            raise NotFoundError(f'{kind} "{obj.metadata.name}" not found')
        if obj.metadata.resource_version != current.metadata.resource_version:
            raise ConflictError(
                f'Operation cannot be fulfilled on {kind} "{obj.metadata.name}": '
                "the object has been modified"
            )
        return current

    # -- namespaces --------------------------------------------------------

    def create_namespace(self, name: str) -> None:
        with self._lock:
            if name in self._namespaces:
                raise AlreadyExistsError(f'namespace "{name}" already exists')
            self._namespaces.append(name)

    def list_namespaces(self) -> list[str]:
        with self._lock:
            return list(self._namespaces)

    # -- nodes -------------------------------------------------------------

    def get_node(self, name: str) -> Node:
        with self._lock:
            return self._fetch(self._nodes, name, "node", name)

    def create_node(self, node: Node) -> Node:
        with self._lock:
            return self._insert(self._nodes, node.name, node, "node")

    def update_node(self, node: Node) -> Node:
        with self._lock:
            self._current(self._nodes, node.name, node, "node")
            stored = copy.deepcopy(node)
            self._stamp(stored.metadata)
            self._nodes[node.name] = stored
            node.metadata.resource_version = stored.metadata.resource_version
            return copy.deepcopy(stored)

    # -- machines ----------------------------------------------------------

    def create_machine(self, machine: Machine) -> Machine:
        with self._lock:
            key = (machine.metadata.namespace, machine.metadata.name)
            return self._insert(self._machines, key, machine, "machine")

    def get_machine(self, namespace: str, name: str) -> Machine:
        with self._lock:
            return self._fetch(self._machines, (namespace, name), "machine", name)

    # -- pods --------------------------------------------------------------

    def create_pod(self, pod: Pod) -> Pod:
        with self._lock:
            key = (pod.metadata.namespace, pod.metadata.name)
            return self._insert(self._pods, key, pod, "pod")

    def list_pods(self) -> list[Pod]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._pods.values()]

    def delete_pods_on_node(self, namespace: str, node_name: str) -> int:
        """Remove at once every pod of the namespace scheduled on the node; return how many."""
        with self._lock:
            doomed = [
                key
                for key, pod in self._pods.items()
                if key[0] == namespace and pod.node_name == node_name
            ]
            for key in doomed:
                del self._pods[key]
            return len(doomed)

    # -- volume attachments ------------------------------------------------

    def create_volume_attachment(self, attachment: VolumeAttachment) -> VolumeAttachment:
        with self._lock:
            return self._insert(
                self._attachments, attachment.metadata.name, attachment, "volumeattachment"
            )

    def list_volume_attachments(self) -> list[VolumeAttachment]:
        with self._lock:
            return [copy.deepcopy(va) for va in self._attachments.values()]

    def delete_volume_attachment(self, attachment: VolumeAttachment) -> None:
        with self._lock:
            name = attachment.metadata.name
            if self._attachments.pop(name, None) is None:
                raise NotFoundError(f'volumeattachment "{name}" not found')

    # -- remediations ------------------------------------------------------

    def create_remediation(self, snr: SelfNodeRemediation) -> SelfNodeRemediation:
        with self._lock:
            key = (snr.metadata.namespace, snr.metadata.name)
            return self._insert(self._remediations, key, snr, "selfnoderemediation")

    def get_remediation(self, namespace: str, name: str) -> SelfNodeRemediation:
        with self._lock:
            return self._fetch(self._remediations, (namespace, name), "selfnoderemediation", name)

    def delete_remediation(self, namespace: str, name: str) -> None:
        """Delete a remediation, or mark it for deletion while finalizers remain."""
        with self._lock:
            key = (namespace, name)
            current = self._remediations.get(key)
            if current is None:
                raise NotFoundError(f'selfnoderemediation "{name}" not found')
            if not current.metadata.finalizers:
                del self._remediations[key]
                return
            if current.metadata.deletion_timestamp is None:
                current.metadata.deletion_timestamp = _now()
                self._stamp(current.metadata)

    def update_remediation(self, snr: SelfNodeRemediation) -> SelfNodeRemediation:
        """Store metadata and spec; the status stays as stored."""
        with self._lock:
            key = (snr.metadata.namespace, snr.metadata.name)
            current = self._current(self._remediations, key, snr, "selfnoderemediation")
            stored = copy.deepcopy(snr)
            stored.status = copy.deepcopy(current.status)
            stored.metadata.deletion_timestamp = current.metadata.deletion_timestamp
            stored.metadata.creation_timestamp = current.metadata.creation_timestamp
            self._stamp(stored.metadata)
            snr.metadata.resource_version = stored.metadata.resource_version
            if stored.metadata.deletion_timestamp is not None and not stored.metadata.finalizers:
                del self._remediations[key]
            else:
                self._remediations[key] = stored
            return copy.deepcopy(stored)

    def update_remediation_status(self, snr: SelfNodeRemediation) -> SelfNodeRemediation:
        """Store only the status of the remediation."""
        with self._lock:
            key = (snr.metadata.namespace, snr.metadata.name)
            current = self._current(self._remediations, key, snr, "selfnoderemediation")
            current.status = copy.deepcopy(snr.status)
            self._stamp(current.metadata)
            snr.metadata.resource_version = current.metadata.resource_version
            return copy.deepcopy(current)