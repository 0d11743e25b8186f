"""Reconciler that keeps the agent daemon set in line with the cluster-wide configuration."""

from __future__ import annotations

import copy
import logging
import os
from datetime import timedelta
from typing import Any, Callable, Optional, Protocol

from .kube import ApiError, NotFoundError
from .remediation import Result
from .types import (
    CONFIG_CR_NAME,
    DEFAULT_SAFE_TO_ASSUME_NODE_REBOOT_TIMEOUT,
    DEFAULT_WATCHDOG_PATH,
    GROUP_VERSION,
    SelfNodeRemediationConfig,
    Toleration,
)

log = logging.getLogger(__name__)

LAST_CHANGED_ANNOTATION_KEY = "snr.medik8s.io/force-deletion-revision"
IMAGE_ENV_VAR = "SELF_NODE_REMEDIATION_IMAGE"
DAEMON_SET_KIND = "DaemonSet"
_CLUSTER_SCOPED_KINDS = ("ClusterRole", "ClusterRoleBinding")
_TOLERATIONS_PATH = ("spec", "template", "spec", "tolerations")

UnstructuredObject = dict[str, Any]
Renderer = Callable[[str, dict[str, Any]], list[UnstructuredObject]]


class _ObjectStore(Protocol):
    def get(self, kind: str, namespace: str, name: str) -> UnstructuredObject: ...

    def delete(self, kind: str, namespace: str, name: str) -> None: ...

    def apply(self, obj: UnstructuredObject) -> None: ...


class _SafeTimeSetter(Protocol):
    def set_time_to_assume_node_rebooted(self, value: timedelta) -> None: ...


def _nanoseconds(duration: Optional[timedelta]) -> int:
    if duration is None:
        return 0
    return ((duration.days * 86400 + duration.seconds) * 1_000_000 + duration.microseconds) * 1000


def build_render_data(config: SelfNodeRemediationConfig, image: str) -> dict[str, Any]:
    """Return the values the agent manifests are rendered with."""
    spec = config.spec
    safe_time = spec.safe_time_to_assume_node_rebooted_seconds
    if safe_time == 0:
        safe_time = DEFAULT_SAFE_TO_ASSUME_NODE_REBOOT_TIMEOUT
    return {
        "Image": image,
        "Namespace": config.metadata.namespace,
        "WatchdogPath": spec.watchdog_file_path or DEFAULT_WATCHDOG_PATH,
        "PeerApiServerTimeout": _nanoseconds(spec.peer_api_server_timeout),
        "ApiCheckInterval": _nanoseconds(spec.api_check_interval),
        "PeerUpdateInterval": _nanoseconds(spec.peer_update_interval),
        "ApiServerTimeout": _nanoseconds(spec.api_server_timeout),
        "PeerDialTimeout": _nanoseconds(spec.peer_dial_timeout),
        "PeerRequestTimeout": _nanoseconds(spec.peer_request_timeout),
        "MaxApiErrorThreshold": spec.max_api_error_threshold,
        "EndpointHealthCheckUrl": spec.endpoint_health_check_url,
        "HostPort": spec.host_port,
        "TimeToAssumeNodeRebooted": f'"{safe_time}"',
        "IsSoftwareRebootEnabled": f'"{str(spec.is_software_reboot_enabled).lower()}"',
    }


def toleration_to_dict(toleration: Toleration) -> dict[str, Any]:
    """Convert a toleration to its manifest form, leaving out empty fields."""
    result: dict[str, Any] = {}
    for key, value in (
        ("key", toleration.key),
        ("operator", toleration.operator),
        ("value", toleration.value),
        ("effect", toleration.effect),
    ):
        if value:
            result[key] = str(value)
    if toleration.toleration_seconds is not None:
        result["tolerationSeconds"] = toleration.toleration_seconds
    return result


def _nested_list(obj: UnstructuredObject, path: tuple[str, ...]) -> list[Any]:
    current: Any = obj
    for depth, key in enumerate(path):
        if not isinstance(current, dict):
            raise TypeError(f"{'.'.join(path[:depth])} accessor error: {current!r} is not a map")
        if key not in current:
            return []
        current = current[key]
    if not isinstance(current, list):
        raise TypeError(f"{'.'.join(path)} accessor error: {current!r} is not a list")
    return copy.deepcopy(current)


def _set_nested(obj: UnstructuredObject, value: Any, path: tuple[str, ...]) -> None:
    current = obj
    for depth, key in enumerate(path[:-1]):
        child = current.setdefault(key, {})
        if not isinstance(child, dict):
            raise TypeError(f"value cannot be set because {'.'.join(path[: depth + 1])} is not a map")
        current = child
    current[path[-1]] = value


def _annotations(obj: UnstructuredObject) -> dict[str, str]:
    return (obj.get("metadata") or {}).get("annotations") or {}


class SelfNodeRemediationConfigReconciler:
    """Renders the agent manifests from the configuration and applies them to the cluster."""

    def __init__(
        self,
        store: _ObjectStore,
        renderer: Renderer,
        install_file_folder: str,
        namespace: str,
        manager_safe_time_calculator: _SafeTimeSetter,
        image: Optional[str] = None,
        cert_syncer: Optional[Callable[[SelfNodeRemediationConfig], None]] = None,
    ) -> None:
        self.store = store
        self.renderer = renderer
        self.install_file_folder = install_file_folder
        self.namespace = namespace
        self.manager_safe_time_calculator = manager_safe_time_calculator
        self.image = image
        self.cert_syncer = cert_syncer

    def reconcile(
        self, name: str, namespace: str, config: Optional[SelfNodeRemediationConfig]
    ) -> Result:
        """Run one pass for the named configuration; ``config`` is None when it does not exist."""
        if name != CONFIG_CR_NAME or namespace != self.namespace:
            log.info(
                "ignoring selfnoderemediationconfig CRs that are not named '%s' "
                "or not in the namespace of the operator: '%s'",
                CONFIG_CR_NAME,
                self.namespace,
            )
            return Result()

        # a deleted or deleting configuration is left alone so removal is not disturbed
        if config is None or config.metadata.deletion_timestamp is not None:
            return Result()

        if self.cert_syncer is not None:
            self.cert_syncer(config)

        self.sync_daemon_set(config)

        self.manager_safe_time_calculator.set_time_to_assume_node_rebooted(
            timedelta(seconds=config.spec.safe_time_to_assume_node_rebooted_seconds)
        )
        return Result()

    def sync_daemon_set(self, config: SelfNodeRemediationConfig) -> None:
        """Render the agent daemon set for the configuration and apply it."""
        log.info("Start to sync config daemonset")
        image = self.image if self.image is not None else os.environ.get(IMAGE_ENV_VAR, "")
        data = build_render_data(config, image)

        objs = self.renderer(self.install_file_folder, data)
        self.update_ds_tolerations(objs, config.spec.custom_ds_tolerations)

        for obj in objs:
            name = (obj.get("metadata") or {}).get("name", "")
            self.remove_old_ds_on_operator_update(
                name, _annotations(obj).get(LAST_CHANGED_ANNOTATION_KEY, "")
            )
            self._sync_resource(config, obj)

    def _sync_resource(self, owner: SelfNodeRemediationConfig, obj: UnstructuredObject) -> None:
        if obj.get("kind") not in _CLUSTER_SCOPED_KINDS:
            self._set_controller_reference(owner, obj)
        try:
            self.store.apply(obj)
        except ApiError as err:
            raise ApiError(f"failed to apply object {obj} with err: {err}") from err

    @staticmethod
    def _set_controller_reference(
        owner: SelfNodeRemediationConfig, obj: UnstructuredObject
    ) -> None:
        metadata = obj.setdefault("metadata", {})
        obj_namespace = metadata.get("namespace", "")
        if obj_namespace != owner.metadata.namespace:
            raise ValueError(
                f"cross-namespace owner references are disallowed, owner's namespace "
                f"{owner.metadata.namespace}, obj's namespace {obj_namespace}"
            )
        reference = {
            "apiVersion": GROUP_VERSION.api_version,
            "kind": owner.kind,
            "name": owner.metadata.name,
            "controller": True,
            "blockOwnerDeletion": True,
        }
        refs = metadata.setdefault("ownerReferences", [])
        for existing in refs:
            if existing.get("controller") and (
                existing.get("kind") != reference["kind"] or existing.get("name") != reference["name"]
            ):
                raise ValueError(
                    f"Object {obj_namespace}/{metadata.get('name', '')} is already owned by "
                    f"another {existing.get('kind')} controller {existing.get('name')}"
                )
        refs[:] = [
            r
            for r in refs
            if not (r.get("kind") == reference["kind"] and r.get("name") == reference["name"])
        ]
        refs.append(reference)

    def update_ds_tolerations(
        self, objs: list[UnstructuredObject], tolerations: list[Toleration]
    ) -> None:
        """Append the custom tolerations to the single rendered daemon set."""
        log.info("Updating DS tolerations")
        if len(objs) != 1:
            log.error(
                "expecting exactly one ds element in /install folder, found %d", len(objs)
            )
            raise ValueError("/install folder does not contain exectly one ds object")
        if not tolerations:
            return

        ds = objs[0]
        existing = _nested_list(ds, _TOLERATIONS_PATH)
        existing.extend(toleration_to_dict(t) for t in tolerations)
        _set_nested(ds, existing, _TOLERATIONS_PATH)

    def remove_old_ds_on_operator_update(self, ds_name: str, last_version: str) -> None:
        """Delete the running daemon set when its revision differs from the rendered one."""
        try:
            ds = self.store.get(DAEMON_SET_KIND, self.namespace, ds_name)
        except NotFoundError:
            log.info("snr didn't find old daemonset to be deleted")
            return
        except ApiError as err:
            log.error("snr install/update failed error when trying to fetch old daemonset")
            raise ApiError(f"unable to fetch daemon set: {err}") from err

        if _annotations(ds).get(LAST_CHANGED_ANNOTATION_KEY, "") == last_version:
            return

        try:
            self.store.delete(DAEMON_SET_KIND, self.namespace, ds_name)
        except ApiError as err:
            log.error("snr update failed could not delete old daemonset")
            raise ApiError(f"unable to delete old daemon set: {err}") from err
        log.info("snr update old daemonset deleted")