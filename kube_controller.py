"""
Kubernetes node operations used by the maintenance operator.

NodeController wraps the CoreV1 API calls needed to take a node out of service
and bring it back:
- list_nodes: enumerate maintenance candidates
- drain / cordon: mark unschedulable and evict workloads
- uncordon: mark schedulable again
- wait_for_pods_ready: block until system pods on the node are healthy
- annotate: record a marker on the node

Every failure is raised as the step error for the operation (DrainError,
UncordonError, ...) with the classified API error as its cause.
"""

import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from maint_errors import (
    AnnotateError,
    DrainError,
    PolicyError,
    ReadinessError,
    UncordonError,
    WaitNotReady,
    classify_api_error,
)
from maint_wait import WaitOutcome, poll_until

SYSTEM_NAMESPACE = "kube-system"
MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"

# ==================== Pod Helpers ====================


def pod_key(pod: client.V1Pod) -> str:
    return f"{pod.metadata.namespace}/{pod.metadata.name}"


def controller_ref(pod: client.V1Pod) -> Optional[client.V1OwnerReference]:
    """Return the owner reference flagged as controller, if any."""
    for ref in pod.metadata.owner_references or []:
        if ref.controller:
            return ref
    return None


def is_mirror_pod(pod: client.V1Pod) -> bool:
    return MIRROR_POD_ANNOTATION in (pod.metadata.annotations or {})


def is_daemonset_pod(pod: client.V1Pod) -> bool:
    ref = controller_ref(pod)
    return ref is not None and ref.kind == "DaemonSet"


def is_finished_pod(pod: client.V1Pod) -> bool:
    return pod.status is not None and pod.status.phase in ("Succeeded", "Failed")


def uses_emptydir(pod: client.V1Pod) -> bool:
    volumes = (pod.spec.volumes if pod.spec else None) or []
    return any(volume.empty_dir is not None for volume in volumes)


def is_pod_ready(pod: client.V1Pod) -> bool:
    """
    Check whether a pod counts as healthy for the readiness gate.

    A pod is healthy when it has Succeeded, or when it is Running and its
    Ready condition is True.
    """
    phase = pod.status.phase if pod.status else None
    if phase == "Succeeded":
        return True
    if phase != "Running":
        return False

    for condition in pod.status.conditions or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


# ==================== Drain Options ====================


@dataclass
class DrainOptions:
    """Eviction filters, mirroring `kubectl drain` flags."""

    force: bool = True  # evict pods without a controller
    ignore_daemonsets: bool = True
    delete_emptydir_data: bool = True
    poll_interval: float = 5.0  # seconds between eviction checks
    timeout: Optional[float] = None  # seconds to wait for evicted pods to go away


# ==================== Node Controller ====================


class NodeController:
    """Interface to node-level Kubernetes operations."""

    def __init__(
        self,
        core_v1: client.CoreV1Api,
        dry_run: bool = False,
        drain_options: Optional[DrainOptions] = None,
        system_namespace: str = SYSTEM_NAMESPACE,
        ready_poll_interval: float = 10.0,
        log=logger,
    ):
        self.core_v1 = core_v1
        self.dry_run = dry_run
        self.drain_options = drain_options or DrainOptions()
        self.system_namespace = system_namespace
        self.ready_poll_interval = ready_poll_interval
        self.log = log.bind(component="node-controller")

    def list_nodes(self) -> List[str]:
        """
        Get all node names in the cluster, in the order the API returns them.

        Raises:
            MaintenanceError: if the nodes cannot be listed
        """
        try:
            nodes = self.core_v1.list_node()
        except (ApiException, HTTPError) as e:
            self.log.error(f"Failed to list nodes: {e}")
            raise classify_api_error(e) from e

        names = [node.metadata.name for node in nodes.items]
        self.log.info(f"Found {len(names)} total nodes in cluster")
        return names

    # ---------- cordon / drain ----------

    def _set_unschedulable(self, node_name: str, unschedulable: bool) -> None:
        verb = "cordon" if unschedulable else "uncordon"
        if self.dry_run:
            self.log.warning(f"DRY RUN: Would {verb} node '{node_name}'")
            return

        self.core_v1.patch_node(node_name, {"spec": {"unschedulable": unschedulable}})
        self.log.info(f"Node '{node_name}' {verb}ed")

    def cordon(self, node_name: str) -> None:
        """Mark a node unschedulable. API errors propagate unwrapped."""
        self._set_unschedulable(node_name, True)

    def select_pods_to_evict(
        self, node_name: str
    ) -> Tuple[List[client.V1Pod], List[client.V1Pod]]:
        """
        List the pods on a node and apply the drain filters.

        Returns:
            (pods to evict, finished pods to delete outright)

        Raises:
            PolicyError: if a pod blocks the drain under the current options
        """
        pods = self.core_v1.list_pod_for_all_namespaces(
            field_selector=f"spec.nodeName={node_name}"
        ).items

        opts = self.drain_options
        to_evict = []
        finished = []
        refusals = []

        for pod in pods:
            key = pod_key(pod)
            if is_mirror_pod(pod):
                self.log.debug(f"Skipping mirror pod {key}")
                continue

            if is_daemonset_pod(pod):
                if opts.ignore_daemonsets:
                    self.log.debug(f"Ignoring DaemonSet-managed pod {key}")
                else:
                    refusals.append(f"{key} (DaemonSet-managed)")
                continue

            if is_finished_pod(pod):
                finished.append(pod)
                continue

            if controller_ref(pod) is None and not opts.force:
                refusals.append(f"{key} (not managed by a controller)")
                continue
            if uses_emptydir(pod) and not opts.delete_emptydir_data:
                refusals.append(f"{key} (uses emptyDir local storage)")
                continue

            to_evict.append(pod)

        if refusals:
            raise PolicyError(f"cannot evict: {', '.join(refusals)}")

        return to_evict, finished

    def evict_pod(self, pod: client.V1Pod) -> None:
        """Evict a single pod through the Eviction API."""
        key = pod_key(pod)
        if self.dry_run:
            self.log.warning(f"DRY RUN: Would evict pod {key}")
            return

        eviction = client.V1Eviction(
            metadata=client.V1ObjectMeta(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
            )
        )
        try:
            self.core_v1.create_namespaced_pod_eviction(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                body=eviction,
            )
        except ApiException as e:
            if e.status == 404:
                self.log.debug(f"Pod {key} already gone")
                return
            if e.status == 429:
                raise PolicyError(
                    f"eviction of {key} blocked by disruption budget"
                ) from e
            raise

        self.log.debug(f"Evicted pod {key}")

    def delete_pod(self, pod: client.V1Pod) -> None:
        """Delete a finished pod directly, bypassing disruption budgets."""
        key = pod_key(pod)
        if self.dry_run:
            self.log.warning(f"DRY RUN: Would delete finished pod {key}")
            return

        try:
            self.core_v1.delete_namespaced_pod(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
            )
        except ApiException as e:
            if e.status == 404:
                self.log.debug(f"Pod {key} already gone")
                return
            raise

        self.log.debug(f"Deleted finished pod {key}")

    def _pods_gone(self, pods: List[client.V1Pod]) -> bool:
        remaining = []
        for pod in pods:
            try:
                current = self.core_v1.read_namespaced_pod(
                    pod.metadata.name, pod.metadata.namespace
                )
            except ApiException as e:
                if e.status == 404:
                    continue
                raise
            if current.metadata.uid == pod.metadata.uid:
                remaining.append(pod)

        pods[:] = remaining
        if remaining:
            self.log.info(f"Waiting for {len(remaining)} drained pod(s) to terminate")
        return not remaining

    def drain(self, node_name: str, cancel: Optional[threading.Event] = None) -> None:
        """
        Cordon a node and evict every evictable pod from it.

        The node stays cordoned whether or not the drain succeeds.

        Args:
            node_name: Node to drain
            cancel: Optional event that interrupts the wait for evicted pods

        Raises:
            DrainError: node not found, eviction refused, or API failure
        """
        self.log.info(f"Draining node '{node_name}'")
        try:
            self.cordon(node_name)
            to_evict, finished = self.select_pods_to_evict(node_name)
            self.log.info(
                f"Evicting {len(to_evict)} pod(s) and deleting {len(finished)} "
                f"finished pod(s) on node '{node_name}'"
            )

            for pod in finished:
                self.delete_pod(pod)
            for pod in to_evict:
                self.evict_pod(pod)

            pods = finished + to_evict

            if pods and not self.dry_run:
                outcome = poll_until(
                    lambda: self._pods_gone(pods),
                    interval=self.drain_options.poll_interval,
                    timeout=self.drain_options.timeout,
                    cancel=cancel,
                    description=f"pods to leave node '{node_name}'",
                    log=self.log,
                )
                if outcome is not WaitOutcome.READY:
                    raise WaitNotReady(
                        f"wait for pods to leave node '{node_name}'", outcome
                    )
        except (ApiException, HTTPError, PolicyError, WaitNotReady) as e:
            raise DrainError(node_name, e) from e

        self.log.success(f"Node '{node_name}' drained")

    def uncordon(self, node_name: str) -> None:
        """
        Mark a node schedulable again.

        Raises:
            UncordonError: node not found or API failure
        """
        try:
            self._set_unschedulable(node_name, False)
        except (ApiException, HTTPError) as e:
            raise UncordonError(node_name, e) from e

    # ---------- readiness ----------

    def _system_pods_ready(self, node_name: str) -> bool:
        pods = self.core_v1.list_namespaced_pod(
            self.system_namespace,
            field_selector=f"spec.nodeName={node_name}",
        ).items

        not_ready = [pod_key(pod) for pod in pods if not is_pod_ready(pod)]
        if not_ready:
            self.log.info(
                f"{len(not_ready)}/{len(pods)} pod(s) on '{node_name}' not ready: "
                f"{', '.join(not_ready)}"
            )
            return False
        return True

    def wait_for_pods_ready(
        self,
        node_name: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> WaitOutcome:
        """
        Block until every system pod on the node is ready or has succeeded.

        Args:
            node_name: Node whose pods are checked
            timeout: Optional upper bound in seconds (None waits forever)
            cancel: Optional event that interrupts the wait

        Returns:
            WaitOutcome of the wait

        Raises:
            ReadinessError: if listing pods fails
        """
        self.log.info(f"Waiting for pods on node '{node_name}' to be ready")
        if self.dry_run:
            self.log.warning(f"DRY RUN: Not waiting for pods on '{node_name}'")
            return WaitOutcome.READY

        try:
            return poll_until(
                lambda: self._system_pods_ready(node_name),
                interval=self.ready_poll_interval,
                timeout=timeout,
                cancel=cancel,
                description=f"pods on '{node_name}' to be ready",
                log=self.log,
            )
        except (ApiException, HTTPError) as e:
            raise ReadinessError(node_name, e) from e

    # ---------- annotations ----------

    def annotate(self, node_name: str, key: str, value: str) -> None:
        """
        Merge an annotation into a node and write the node back.

        The update carries the resourceVersion that was read, so a concurrent
        modification fails with a conflict instead of being overwritten.

        Raises:
            AnnotateError: node not found, conflict, or API failure
        """
        if self.dry_run:
            self.log.warning(f"DRY RUN: Would annotate node '{node_name}' with {key}={value}")
            return

        try:
            node = self.core_v1.read_node(node_name)
            if node.metadata.annotations is None:
                node.metadata.annotations = {}
            node.metadata.annotations[key] = value
            self.core_v1.replace_node(node_name, node)
        except (ApiException, HTTPError) as e:
            raise AnnotateError(node_name, e) from e

        self.log.info(f"Annotated node '{node_name}' with {key}={value}")
