#!/usr/bin/env python3
"""
Kubernetes Node Maintenance Operator

This script walks the nodes of a cluster one at a time and, for each node:
1. Drains it (cordon + evict workloads)
2. Dispatches a maintenance Job pinned to it
3. Waits for the Job to finish
4. Uncordons it
5. Waits for the system pods on it to become ready
6. Annotates it as processed

Failure handling is driven by STEP_POLICIES:
- Most failures skip the current node and continue with the next one.
- A dispatch failure triggers an uncordon. If that uncordon also fails the
  whole run stops and the process exits non-zero, because the node would
  otherwise be abandoned cordoned with no Job running on it.
"""

import os
import shlex
import signal
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

import click
import pendulum
from kubernetes import client, config
from loguru import logger

from job_manager import DEFAULT_IMAGE, JobManager, MaintenanceJob
from kube_controller import SYSTEM_NAMESPACE, NodeController
from maint_errors import MaintenanceError, WaitNotReady
from maint_wait import WaitOutcome

DEFAULT_ANNOTATION_KEY = "job-complete"
DEFAULT_JOB_COMMAND = "sh -c 'echo Hello && sleep 5'"

# ==================== States & Policies ====================


class NodeState(Enum):
    """Steps of the per-node state machine, in execution order."""

    LISTED = "listed"
    DRAINING = "draining"
    DISPATCHING = "dispatching"
    AWAITING_COMPLETION = "awaiting_completion"
    UNCORDONING = "uncordoning"
    AWAITING_READINESS = "awaiting_readiness"
    ANNOTATING = "annotating"
    DONE = "done"


class PerNodeOutcome(Enum):
    """Final result of processing one node."""

    COMPLETED = "completed"
    DRAIN_FAILED = "drain_failed"
    DISPATCH_FAILED = "dispatch_failed"
    WAIT_FAILED = "wait_failed"
    UNCORDON_FAILED = "uncordon_failed"
    READINESS_FAILED = "readiness_failed"
    ANNOTATE_FAILED = "annotate_failed"


class FailureAction(Enum):
    SKIP_NODE = "skip_node"
    # run the recovery step; abort the whole run if it fails too
    RECOVER_OR_ABORT = "recover_or_abort"


@dataclass(frozen=True)
class StepPolicy:
    """What a failure at a given step means for the node and the run."""

    outcome: PerNodeOutcome
    on_failure: FailureAction = FailureAction.SKIP_NODE
    recovery: Optional[NodeState] = None


STEP_ORDER: List[NodeState] = [
    NodeState.DRAINING,
    NodeState.DISPATCHING,
    NodeState.AWAITING_COMPLETION,
    NodeState.UNCORDONING,
    NodeState.AWAITING_READINESS,
    NodeState.ANNOTATING,
]

STEP_POLICIES: Dict[NodeState, StepPolicy] = {
    NodeState.DRAINING: StepPolicy(PerNodeOutcome.DRAIN_FAILED),
    NodeState.DISPATCHING: StepPolicy(
        PerNodeOutcome.DISPATCH_FAILED,
        on_failure=FailureAction.RECOVER_OR_ABORT,
        recovery=NodeState.UNCORDONING,
    ),
    NodeState.AWAITING_COMPLETION: StepPolicy(PerNodeOutcome.WAIT_FAILED),
    NodeState.UNCORDONING: StepPolicy(PerNodeOutcome.UNCORDON_FAILED),
    NodeState.AWAITING_READINESS: StepPolicy(PerNodeOutcome.READINESS_FAILED),
    NodeState.ANNOTATING: StepPolicy(PerNodeOutcome.ANNOTATE_FAILED),
}


# ==================== Run Records ====================


@dataclass
class NodeRun:
    """Tracks the progress of one node through the state machine."""

    node_name: str
    state: NodeState = NodeState.LISTED
    outcome: Optional[PerNodeOutcome] = None
    error: Optional[str] = None
    steps: List[NodeState] = field(default_factory=list)
    recovery_attempted: bool = False
    run_aborted: bool = False
    started: Optional[pendulum.DateTime] = None
    finished: Optional[pendulum.DateTime] = None

    def enter(self, state: NodeState) -> None:
        self.state = state
        if state is not NodeState.DONE:
            self.steps.append(state)

    @property
    def duration(self) -> Optional[pendulum.Duration]:
        if self.started and self.finished:
            return self.finished - self.started
        return None

    def to_dict(self) -> Dict:
        """Convert to dictionary for structured logging."""
        return {
            "node_name": self.node_name,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "error": self.error,
            "steps": [step.value for step in self.steps],
            "recovery_attempted": self.recovery_attempted,
            "run_aborted": self.run_aborted,
            "started": self.started.isoformat() if self.started else None,
            "finished": self.finished.isoformat() if self.finished else None,
        }


@dataclass
class RunReport:
    """Ordered per-node results of one operator invocation. Never persisted."""

    nodes: List[NodeRun] = field(default_factory=list)
    aborted: bool = False
    cancelled: bool = False

    @property
    def exit_code(self) -> int:
        return 1 if self.aborted else 0

    def get_summary(self) -> Dict[str, int]:
        """Count nodes per outcome."""
        summary = {outcome.value: 0 for outcome in PerNodeOutcome}
        for node_run in self.nodes:
            if node_run.outcome:
                summary[node_run.outcome.value] += 1
        return summary


# ==================== Orchestrator ====================


class MaintenanceOrchestrator:
    """Drives every node through drain, Job, uncordon, readiness and annotation."""

    def __init__(
        self,
        node_controller: NodeController,
        job_manager: JobManager,
        namespace: str = "default",
        job_image: str = DEFAULT_IMAGE,
        job_command: Optional[List[str]] = None,
        annotation_key: str = DEFAULT_ANNOTATION_KEY,
        job_timeout: Optional[float] = None,
        ready_timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        log=logger,
    ):
        self.nodes = node_controller
        self.jobs = job_manager
        self.namespace = namespace
        self.job_image = job_image
        self.job_command = job_command
        self.annotation_key = annotation_key
        self.job_timeout = job_timeout
        self.ready_timeout = ready_timeout
        self.cancel = cancel if cancel is not None else threading.Event()
        self.log = log.bind(component="orchestrator")

        self._steps: Dict[NodeState, Callable[[MaintenanceJob], None]] = {
            NodeState.DRAINING: self._drain,
            NodeState.DISPATCHING: self._dispatch,
            NodeState.AWAITING_COMPLETION: self._await_completion,
            NodeState.UNCORDONING: self._uncordon,
            NodeState.AWAITING_READINESS: self._await_readiness,
            NodeState.ANNOTATING: self._annotate,
        }

    # ---------- steps ----------

    def _drain(self, job: MaintenanceJob) -> None:
        self.nodes.drain(job.node_name, cancel=self.cancel)

    def _dispatch(self, job: MaintenanceJob) -> None:
        self.jobs.dispatch(job)

    def _await_completion(self, job: MaintenanceJob) -> None:
        outcome = self.jobs.wait_for_completion(
            job, timeout=self.job_timeout, cancel=self.cancel
        )
        if outcome is not WaitOutcome.READY:
            raise WaitNotReady(f"wait for job {job.name}", outcome)

    def _uncordon(self, job: MaintenanceJob) -> None:
        self.nodes.uncordon(job.node_name)

    def _await_readiness(self, job: MaintenanceJob) -> None:
        outcome = self.nodes.wait_for_pods_ready(
            job.node_name, timeout=self.ready_timeout, cancel=self.cancel
        )
        if outcome is not WaitOutcome.READY:
            raise WaitNotReady(f"wait for pods on '{job.node_name}'", outcome)

    def _annotate(self, job: MaintenanceJob) -> None:
        timestamp = pendulum.now().to_rfc3339_string()
        self.nodes.annotate(job.node_name, self.annotation_key, timestamp)

    # ---------- state machine ----------

    def _handle_failure(
        self,
        node_run: NodeRun,
        state: NodeState,
        error: MaintenanceError,
        job: MaintenanceJob,
        log,
    ) -> None:
        policy = STEP_POLICIES[state]
        node_run.outcome = policy.outcome
        node_run.error = str(error)
        log.error(f"Step '{state.value}' failed for node '{job.node_name}': {error}")

        if policy.on_failure is not FailureAction.RECOVER_OR_ABORT:
            log.warning(f"Skipping node '{job.node_name}' ({policy.outcome.value})")
            return

        node_run.recovery_attempted = True
        log.info(f"Recovering node '{job.node_name}' via '{policy.recovery.value}'")
        try:
            self._steps[policy.recovery](job)
        except MaintenanceError as e:
            log.critical(
                f"Recovery '{policy.recovery.value}' failed for node "
                f"'{job.node_name}': {e}"
            )
            node_run.run_aborted = True
            return

        log.warning(f"Node '{job.node_name}' recovered, skipping it")

    def process_node(self, node_name: str) -> NodeRun:
        """
        Run the full maintenance sequence for one node.

        Args:
            node_name: Node to process

        Returns:
            NodeRun describing the state reached and the outcome
        """
        node_run = NodeRun(node_name=node_name, started=pendulum.now())
        log = self.log.bind(node=node_name)
        job = MaintenanceJob.for_node(
            node_name,
            image=self.job_image,
            command=self.job_command,
            namespace=self.namespace,
        )

        log.info(f"Processing node '{node_name}'")
        for state in STEP_ORDER:
            node_run.enter(state)
            log.debug(f"Node '{node_name}' -> {state.value}")
            try:
                self._steps[state](job)
            except MaintenanceError as e:
                self._handle_failure(node_run, state, e, job, log)
                node_run.finished = pendulum.now()
                return node_run

        node_run.enter(NodeState.DONE)
        node_run.outcome = PerNodeOutcome.COMPLETED
        node_run.finished = pendulum.now()
        log.success(
            f"Successfully completed processing node '{node_name}' "
            f"in {node_run.duration.in_words()}"
        )
        return node_run

    def run(self, node_names: Iterable[str], sort_nodes: bool = False) -> RunReport:
        """
        Process nodes one at a time until done, aborted, or cancelled.

        Args:
            node_names: Nodes to process
            sort_nodes: Process in name order instead of the given order

        Returns:
            RunReport with one NodeRun per processed node
        """
        names = sorted(node_names) if sort_nodes else list(node_names)
        report = RunReport()
        self.log.info(f"Managing {len(names)} nodes")

        for index, node_name in enumerate(names):
            if self.cancel.is_set():
                report.cancelled = True
                self.log.warning(
                    f"Run cancelled, {len(names) - index} node(s) not processed"
                )
                break

            node_run = self.process_node(node_name)
            report.nodes.append(node_run)
            self.log.debug(f"Node result: {node_run.to_dict()}")

            if node_run.run_aborted:
                report.aborted = True
                self.log.critical(
                    f"Aborting run after node '{node_name}', "
                    f"{len(names) - index - 1} node(s) not processed"
                )
                break
        else:
            # a cancel during the last node's wait still counts
            report.cancelled = self.cancel.is_set()

        summary = report.get_summary()
        self.log.info("Run summary:")
        for outcome, count in summary.items():
            if count > 0:
                self.log.info(f"  {outcome}: {count}")

        return report


# ==================== Main Operator Logic ====================


@dataclass
class OperatorConfig:
    """Run-level settings collected from the command line."""

    namespace: str = "default"
    job_image: str = DEFAULT_IMAGE
    job_command: List[str] = field(
        default_factory=lambda: shlex.split(DEFAULT_JOB_COMMAND)
    )
    kubeconfig: Optional[str] = None
    nodes: List[str] = field(default_factory=list)
    sort_nodes: bool = False
    annotation_key: str = DEFAULT_ANNOTATION_KEY
    system_namespace: str = SYSTEM_NAMESPACE
    job_timeout: Optional[float] = None
    ready_timeout: Optional[float] = None
    dry_run: bool = False


def load_kube_clients(kubeconfig: Optional[str] = None):
    """
    Build CoreV1 and BatchV1 clients.

    In-cluster configuration is tried first; outside a cluster the kubeconfig
    file is used.
    """
    try:
        config.load_incluster_config()
    except config.ConfigException:
        logger.info("In-cluster config not available, looking for kubeconfig")
        config.load_kube_config(config_file=kubeconfig)
    return client.CoreV1Api(), client.BatchV1Api()


def select_nodes(all_nodes: List[str], requested: List[str]) -> List[str]:
    """Restrict the listed nodes to the requested ones, keeping listing order."""
    if not requested:
        return all_nodes

    missing = sorted(set(requested) - set(all_nodes))
    for name in missing:
        logger.warning(f"Requested node '{name}' not found in cluster, ignoring")

    wanted = set(requested)
    return [name for name in all_nodes if name in wanted]


def run_operator(
    operator_config: OperatorConfig,
    cancel: Optional[threading.Event] = None,
    core_v1: Optional[client.CoreV1Api] = None,
    batch_v1: Optional[client.BatchV1Api] = None,
) -> RunReport:
    """
    List the nodes and run the maintenance sequence over them.
    """
    if core_v1 is None or batch_v1 is None:
        core_v1, batch_v1 = load_kube_clients(operator_config.kubeconfig)

    node_controller = NodeController(
        core_v1,
        dry_run=operator_config.dry_run,
        system_namespace=operator_config.system_namespace,
    )
    job_manager = JobManager(batch_v1, dry_run=operator_config.dry_run)
    orchestrator = MaintenanceOrchestrator(
        node_controller,
        job_manager,
        namespace=operator_config.namespace,
        job_image=operator_config.job_image,
        job_command=operator_config.job_command,
        annotation_key=operator_config.annotation_key,
        job_timeout=operator_config.job_timeout,
        ready_timeout=operator_config.ready_timeout,
        cancel=cancel,
    )

    logger.info("Starting Kubernetes Maintenance Operator")
    logger.info(f"  Namespace: {operator_config.namespace}")
    logger.info(f"  Job image: {operator_config.job_image}")
    logger.info(f"  Job command: {operator_config.job_command}")
    logger.info(f"  Node filter: {operator_config.nodes or 'ALL'}")
    logger.info(f"  Sort nodes: {operator_config.sort_nodes}")
    logger.info(f"  Job timeout: {operator_config.job_timeout or 'none'}")
    logger.info(f"  Ready timeout: {operator_config.ready_timeout or 'none'}")
    logger.info(f"  Dry run: {operator_config.dry_run}")

    target_nodes = select_nodes(node_controller.list_nodes(), operator_config.nodes)
    return orchestrator.run(target_nodes, sort_nodes=operator_config.sort_nodes)


STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def restore_handlers(previous_handlers: Dict[int, Callable]) -> None:
    for signum, handler in previous_handlers.items():
        signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


def install_stop_handlers(cancel: threading.Event) -> Dict[int, Callable]:
    """
    Make SIGTERM and SIGINT set the cancel event.

    The first signal asks for a graceful stop and puts the previous handlers
    back, so a second Ctrl-C interrupts the process right away.

    Returns:
        Previous handler per signal number, for restore_handlers()
    """
    previous_handlers = {}

    def request_stop(signum, frame):
        logger.warning(f"Received signal {signum}, stopping after the current step")
        cancel.set()
        restore_handlers(previous_handlers)

    for signum in STOP_SIGNALS:
        previous_handlers[signum] = signal.signal(signum, request_stop)
    return previous_handlers


# ==================== CLI ====================


@click.command()
@click.option(
    "--namespace",
    "-n",
    default="default",
    help="Namespace to create maintenance jobs in",
    show_default=True,
)
@click.option(
    "--job-image",
    default=DEFAULT_IMAGE,
    help="Image to use for the maintenance job",
    show_default=True,
)
@click.option(
    "--job-command",
    default=DEFAULT_JOB_COMMAND,
    help="Command to run in the maintenance job (shell-style quoting)",
    show_default=True,
)
@click.option(
    "--kubeconfig",
    type=click.Path(),
    envvar="KUBECONFIG",
    default="~/.kube/config",
    help="Path to the kubeconfig file used outside a cluster",
    show_default=True,
)
@click.option(
    "--node",
    "nodes",
    multiple=True,
    help="Only process this node (repeatable). Default: all nodes",
)
@click.option(
    "--sort-nodes",
    is_flag=True,
    help="Process nodes in name order instead of API listing order",
)
@click.option(
    "--annotation-key",
    default=DEFAULT_ANNOTATION_KEY,
    help="Annotation set on a node once it has been processed",
    show_default=True,
)
@click.option(
    "--system-namespace",
    default=SYSTEM_NAMESPACE,
    help="Namespace whose pods must be ready before a node counts as done",
    show_default=True,
)
@click.option(
    "--job-timeout",
    type=float,
    default=None,
    help="Seconds to wait for a maintenance job (default: no limit)",
)
@click.option(
    "--ready-timeout",
    type=float,
    default=None,
    help="Seconds to wait for pods to become ready (default: no limit)",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Don't actually cordon, evict, create jobs or annotate",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (can be repeated: -v for INFO, -vv for DEBUG)",
)
def main(
    namespace: str,
    job_image: str,
    job_command: str,
    kubeconfig: str,
    nodes: tuple,
    sort_nodes: bool,
    annotation_key: str,
    system_namespace: str,
    job_timeout: Optional[float],
    ready_timeout: Optional[float],
    dry_run: bool,
    verbose: int,
) -> None:
    """
    Kubernetes Maintenance Operator - drain, run a job, and restore each node in turn.

    Nodes are processed strictly one at a time. The process exits non-zero only
    when a job cannot be dispatched and the node cannot be uncordoned afterwards.

    Examples:

        # Run the default job on every node
        python maint_operator.py -v

        # Reboot two nodes with a privileged image, in name order
        python maint_operator.py --node worker-1 --node worker-2 --sort-nodes \\
            --job-image registry.local/node-reboot:1.2 --job-command "/bin/reboot-node"

        # Dry run to see what would happen
        python maint_operator.py --dry-run -vv
    """
    # Configure logger
    logger.remove()
    if verbose == 0:
        log_level = "WARNING"
    elif verbose == 1:
        log_level = "INFO"
    else:
        log_level = "DEBUG"

    logger.add(
        sys.stderr,
        level=log_level,
        format="<cyan>{time:YYYY-MM-DDTHH:mm:ss}</cyan> | <level>{level: <8}</level> | <level>{message}</level>",
    )

    # Validate parameters
    try:
        command = shlex.split(job_command)
    except ValueError as e:
        logger.error(f"Invalid job command: {e}")
        sys.exit(1)

    if not command:
        logger.error("Job command must not be empty")
        sys.exit(1)

    for name, value in (("Job timeout", job_timeout), ("Ready timeout", ready_timeout)):
        if value is not None and value <= 0:
            logger.error(f"{name} must be positive")
            sys.exit(1)

    operator_config = OperatorConfig(
        namespace=namespace,
        job_image=job_image,
        job_command=command,
        kubeconfig=os.path.expanduser(kubeconfig),
        nodes=list(nodes),
        sort_nodes=sort_nodes,
        annotation_key=annotation_key,
        system_namespace=system_namespace,
        job_timeout=job_timeout,
        ready_timeout=ready_timeout,
        dry_run=dry_run,
    )

    try:
        core_v1, batch_v1 = load_kube_clients(operator_config.kubeconfig)
    except config.ConfigException as e:
        logger.error(f"Failed to create Kubernetes client: {e}")
        sys.exit(1)

    cancel = threading.Event()
    previous_handlers = install_stop_handlers(cancel)
    try:
        report = run_operator(
            operator_config, cancel=cancel, core_v1=core_v1, batch_v1=batch_v1
        )
    except MaintenanceError as e:
        logger.error(f"Failed to list nodes: {e}")
        sys.exit(1)
    finally:
        restore_handlers(previous_handlers)

    if report.cancelled:
        logger.warning("Run stopped before all nodes were processed")

    sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
