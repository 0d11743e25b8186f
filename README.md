# noderemedy

Building blocks for remediating unhealthy cluster nodes. An unhealthy node is
fenced: it gets a NoExecute taint, is marked unschedulable and is rebooted.
Its workloads are then released in one of two ways. Either the node's pods and
volume attachments are deleted, or the out-of-service taint is added. Once the
remediation resource is being deleted, the node is made schedulable again, the
taint is removed and the finalizer is dropped.

The package has no third-party dependencies.

## Modules

### `noderemedy.types`

This module holds the resource models: `SelfNodeRemediation`,
`SelfNodeRemediationConfig` and `SelfNodeRemediationTemplate`, with their spec
and status dataclasses. It also provides `ObjectMeta`, `OwnerReference`,
`Condition`, `ConditionStatus`, `Toleration`, `RemediationStrategy`,
`HealthCheckResponseCode` and `GroupVersion`, with the module constant
`GROUP_VERSION`.

- `new_default_config()` returns the default configuration. It sets the
  watchdog path `/dev/watchdog`, 180 seconds as the safe time to assume a node
  rebooted, and turns software reboot on.
- `new_remediation_templates()` returns the shipped resource-deletion template.
- `find_status_condition`, `set_status_condition` and
  `is_status_condition_present_and_equal` manage condition lists.
  `set_status_condition` changes the transition time only when the status
  changes.

### `noderemedy.webhooks`

Admission checks are done by `validate_create(obj)`, `validate_update(obj, old)`
and `validate_delete(obj)`. A rejection raises `ValidationError`, whose
`errors` attribute lists the messages.

- `validate_times(config)` rejects durations below their minimums: 10ms for the
  timeouts, 1s for `ApiCheckInterval` and 10s for `PeerUpdateInterval`. A
  duration that is not set counts as zero.
- `validate_toleration(toleration)` and `validate_custom_tolerations(config)`
  reject unknown operators and effects. They also reject a value combined with
  `Exists`.
- `validate_strategy(spec)` rejects the `OutOfServiceTaint` strategy unless
  `FEATURES.out_of_service_taint_supported` is true. `FEATURES` is a module-level
  `Features` instance, and the flag is false by default.

### `noderemedy.kube`

This module has the cluster objects the controller works with: `Node`,
`NodeSpec`, `Taint`, `TaintEffect`, `Pod`, `VolumeAttachment` and `Machine`.
It also has the taint helpers `taint_exists` and `delete_taint`.

`Client` is a cluster kept in memory. It is thread-safe and checks resource
versions on updates. A failed request raises `NotFoundError`, `ConflictError`
or `AlreadyExistsError`, all of which are subclasses of `ApiError`.

### `noderemedy.remediation`

This module defines:

- `Phase`: Fencing-Started → Pre-Reboot-Completed → Reboot-Completed →
  Fencing-Completed.
- `ProcessingChangeReason`.
- `Result`, which holds `requeue` and `requeue_after`.
- `UnreconcilableError`.
- The helpers `update_conditions`, `get_phase` and `is_stopped_by_nhc`.
- The finalizer and taint constants.

### `noderemedy.controller`

`SelfNodeRemediationReconciler.reconcile(namespace, name)` runs one pass over a
remediation and returns a `Result`. When a pass must be retried with backoff,
it raises instead.

The reconciler takes these arguments:

- `client`
- `my_node_name`
- `safe_time_calculator`: an object with `time_to_assume_node_rebooted()` and
  `is_agent()`
- `rebooter`: optional, an object with `reboot()`
- `uptime`: a callable. By default it reads `/proc/uptime`.
- `clock`: a callable.

`restore_node(node)` recreates a node in a clean, schedulable state.

### `noderemedy.config_controller`

`SelfNodeRemediationConfigReconciler` works from a configuration:

1. It builds the render values with `build_render_data`.
2. It passes them to an injected renderer.
3. It appends the custom tolerations with `update_ds_tolerations`, converting
   each one with `toleration_to_dict`.
4. It deletes a running daemon set whose revision annotation is out of date
   with `remove_old_ds_on_operator_update`.
5. It applies each object through an injected store.
6. It passes the safe reboot time to the manager's calculator.

## Example

```python
from datetime import timedelta

from noderemedy.kube import Client, Node, Pod
from noderemedy.controller import AGENT_POD_LABELS, IS_REBOOT_CAPABLE_ANNOTATION
from noderemedy.controller import SelfNodeRemediationReconciler
from noderemedy.types import ObjectMeta, SelfNodeRemediation


class Calculator:
    def time_to_assume_node_rebooted(self):
        return timedelta(minutes=3)

    def is_agent(self):
        return False


client = Client()
client.create_node(Node(metadata=ObjectMeta(
    name="node1", annotations={IS_REBOOT_CAPABLE_ANNOTATION: "true"})))
client.create_pod(Pod(metadata=ObjectMeta(
    name="agent", namespace="default", labels=dict(AGENT_POD_LABELS)), node_name="node1"))
client.create_remediation(SelfNodeRemediation(metadata=ObjectMeta(name="node1", namespace="default")))

reconciler = SelfNodeRemediationReconciler(client, "manager-node", Calculator())
print(reconciler.reconcile("default", "node1"))  # finalizer added, Result(requeue=True, ...)
```

## What the package does not do

- It does not connect to a real API server. `Client` keeps everything in
  memory.
- It does not run reconcilers on a watch loop. The caller calls `reconcile`.
- It contains no manifest templates and no renderer. The config reconciler is
  given a renderer and a store.
- It does not create certificates. An optional `cert_syncer` callable can be
  passed in for that.
- It does not implement the watchdog, peer health checks or the reboot itself.
  A rebooter object is supplied by the caller.
- There is no command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```