#!/usr/bin/env python3
"""
Tests for the per-node state machine, run-level failure policy and CLI.

Orchestrator tests use Mock(spec=...) controllers. The end-to-end scenarios
run the real NodeController and JobManager on top of mocked API clients.
"""

import signal
import sys
import threading
from unittest.mock import Mock, patch

import pendulum
from click.testing import CliRunner
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import NewConnectionError

from job_manager import JobManager
from kube_controller import DrainOptions, NodeController
from maint_errors import (
    AnnotateError,
    ConflictError,
    DispatchError,
    DrainError,
    PolicyError,
    TaskFailedError,
    TransportError,
    ReadinessError,
    UncordonError,
)
from maint_operator import (
    STEP_ORDER,
    STEP_POLICIES,
    FailureAction,
    MaintenanceOrchestrator,
    NodeState,
    OperatorConfig,
    PerNodeOutcome,
    RunReport,
    install_stop_handlers,
    main,
    restore_handlers,
    run_operator,
    select_nodes,
)
from maint_wait import WaitOutcome


def make_orchestrator(**kwargs):
    """Create an orchestrator whose controllers succeed unless told otherwise."""
    nodes = Mock(spec=NodeController)
    jobs = Mock(spec=JobManager)
    nodes.wait_for_pods_ready.return_value = WaitOutcome.READY
    jobs.wait_for_completion.return_value = WaitOutcome.READY
    jobs.dispatch.return_value = True
    orchestrator = MaintenanceOrchestrator(nodes, jobs, **kwargs)
    return orchestrator, nodes, jobs


def called_nodes(mock_method):
    """Node names a controller method was called with, in order."""
    names = []
    for call in mock_method.call_args_list:
        arg = call.args[0]
        names.append(getattr(arg, "node_name", arg))
    return names


def assert_linear_steps(node_run):
    """Steps are a prefix of STEP_ORDER: none repeated, none skipped."""
    assert node_run.steps == STEP_ORDER[: len(node_run.steps)], node_run.steps


# ==================== Policy Table ====================


def test_only_dispatch_can_abort_the_run():
    aborting = [
        state
        for state, policy in STEP_POLICIES.items()
        if policy.on_failure is FailureAction.RECOVER_OR_ABORT
    ]
    assert aborting == [NodeState.DISPATCHING]
    assert STEP_POLICIES[NodeState.DISPATCHING].recovery is NodeState.UNCORDONING
    assert set(STEP_POLICIES) == set(STEP_ORDER)


# ==================== Per-node State Machine ====================


def test_happy_path_runs_every_step_once():
    orchestrator, nodes, jobs = make_orchestrator(namespace="ops", job_image="alpine:3")

    node_run = orchestrator.process_node("n1")

    assert node_run.outcome is PerNodeOutcome.COMPLETED
    assert node_run.state is NodeState.DONE
    assert node_run.steps == STEP_ORDER
    assert node_run.finished >= node_run.started

    job = jobs.dispatch.call_args.args[0]
    assert job.name == "job-on-n1"
    assert job.namespace == "ops"
    assert job.image == "alpine:3"

    key, value = nodes.annotate.call_args.args[1:]
    assert key == "job-complete"
    pendulum.parse(value)


def test_drain_failure_skips_node_without_uncordon():
    """Scenario B: the drain fails, dispatch and uncordon never run for that node."""
    orchestrator, nodes, jobs = make_orchestrator()

    def drain(node_name, cancel=None):
        if node_name == "n2":
            raise DrainError(node_name, PolicyError("disruption budget"))

    nodes.drain.side_effect = drain

    report = orchestrator.run(["n2", "n3"])

    n2, n3 = report.nodes
    assert n2.outcome is PerNodeOutcome.DRAIN_FAILED
    assert n2.state is NodeState.DRAINING
    assert n3.outcome is PerNodeOutcome.COMPLETED
    assert called_nodes(jobs.dispatch) == ["n3"]
    assert called_nodes(nodes.uncordon) == ["n3"]
    assert report.exit_code == 0


def test_dispatch_and_uncordon_failure_aborts_run():
    """Scenario C: dispatch fails, the recovery uncordon fails, the run stops."""
    orchestrator, nodes, jobs = make_orchestrator()
    jobs.dispatch.side_effect = DispatchError("n3", TransportError("connection reset"))
    nodes.uncordon.side_effect = UncordonError("n3", TransportError("connection reset"))

    report = orchestrator.run(["n3", "n4"])

    assert len(report.nodes) == 1
    n3 = report.nodes[0]
    assert n3.outcome is PerNodeOutcome.DISPATCH_FAILED
    assert n3.recovery_attempted and n3.run_aborted
    assert report.aborted
    assert report.exit_code == 1
    assert called_nodes(nodes.drain) == ["n3"]
    jobs.wait_for_completion.assert_not_called()


def test_dispatch_failure_with_successful_uncordon_continues():
    orchestrator, nodes, jobs = make_orchestrator()

    def dispatch(job):
        if job.node_name == "n3":
            raise DispatchError("n3", TransportError("timeout"))
        return True

    jobs.dispatch.side_effect = dispatch

    report = orchestrator.run(["n3", "n4"])

    n3, n4 = report.nodes
    assert n3.outcome is PerNodeOutcome.DISPATCH_FAILED
    assert n3.recovery_attempted and not n3.run_aborted
    assert n4.outcome is PerNodeOutcome.COMPLETED
    assert called_nodes(nodes.uncordon) == ["n3", "n4"]
    assert report.exit_code == 0


def test_job_failure_leaves_node_cordoned():
    orchestrator, nodes, jobs = make_orchestrator()
    jobs.wait_for_completion.side_effect = TaskFailedError("job-on-n1", 1)

    node_run = orchestrator.process_node("n1")

    assert node_run.outcome is PerNodeOutcome.WAIT_FAILED
    nodes.uncordon.assert_not_called()
    nodes.annotate.assert_not_called()


def test_job_wait_timeout_is_a_wait_failure():
    orchestrator, nodes, jobs = make_orchestrator(job_timeout=30)
    jobs.wait_for_completion.return_value = WaitOutcome.TIMED_OUT

    node_run = orchestrator.process_node("n1")

    assert node_run.outcome is PerNodeOutcome.WAIT_FAILED
    assert jobs.wait_for_completion.call_args.kwargs["timeout"] == 30
    nodes.uncordon.assert_not_called()


def test_readiness_failure_skips_annotation():
    orchestrator, nodes, jobs = make_orchestrator()
    nodes.wait_for_pods_ready.return_value = WaitOutcome.TIMED_OUT

    node_run = orchestrator.process_node("n1")

    assert node_run.outcome is PerNodeOutcome.READINESS_FAILED
    nodes.uncordon.assert_called_once_with("n1")
    nodes.annotate.assert_not_called()


def test_annotation_conflict_skips_node():
    orchestrator, nodes, jobs = make_orchestrator()
    nodes.annotate.side_effect = AnnotateError("n1", ConflictError("409 Conflict"))

    report = orchestrator.run(["n1", "n2"])

    assert [r.outcome for r in report.nodes] == [
        PerNodeOutcome.ANNOTATE_FAILED,
        PerNodeOutcome.COMPLETED,
    ]
    assert nodes.annotate.call_count == 2


def test_every_failure_point_yields_one_terminal_state():
    """Inject a failure at each step in turn and check the node's record."""
    failures = {
        NodeState.DRAINING: ("drain", DrainError("n", PolicyError("pdb"))),
        NodeState.DISPATCHING: ("dispatch", DispatchError("n", TransportError("x"))),
        NodeState.AWAITING_COMPLETION: ("wait_for_completion", TaskFailedError("job-on-n", 1)),
        NodeState.UNCORDONING: ("uncordon", UncordonError("n")),
        NodeState.AWAITING_READINESS: ("wait_for_pods_ready", ReadinessError("n")),
        NodeState.ANNOTATING: ("annotate", AnnotateError("n")),
    }

    for state, (method, error) in failures.items():
        orchestrator, nodes, jobs = make_orchestrator()
        target = jobs if method in ("dispatch", "wait_for_completion") else nodes
        getattr(target, method).side_effect = error

        node_run = orchestrator.process_node("n")

        assert node_run.state is state, f"{method}: stopped at {node_run.state}"
        assert node_run.outcome is STEP_POLICIES[state].outcome
        assert_linear_steps(node_run)


def test_nodes_processed_in_listing_order_unless_sorted():
    orchestrator, nodes, jobs = make_orchestrator()
    orchestrator.run(["n3", "n1", "n2"])
    assert called_nodes(nodes.drain) == ["n3", "n1", "n2"]

    orchestrator, nodes, jobs = make_orchestrator()
    orchestrator.run(["n3", "n1", "n2"], sort_nodes=True)
    assert called_nodes(nodes.drain) == ["n1", "n2", "n3"]


def test_cancel_stops_before_next_node():
    cancel = threading.Event()
    orchestrator, nodes, jobs = make_orchestrator(cancel=cancel)

    def wait_for_completion(job, **kwargs):
        cancel.set()
        return WaitOutcome.CANCELLED

    jobs.wait_for_completion.side_effect = wait_for_completion

    report = orchestrator.run(["n1", "n2"])

    assert len(report.nodes) == 1
    assert report.nodes[0].outcome is PerNodeOutcome.WAIT_FAILED
    assert report.cancelled
    assert report.exit_code == 0
    assert called_nodes(nodes.drain) == ["n1"]


def test_run_summary_counts_outcomes():
    orchestrator, nodes, jobs = make_orchestrator()

    def drain(node_name, cancel=None):
        if node_name == "bad":
            raise DrainError(node_name)

    nodes.drain.side_effect = drain

    summary = orchestrator.run(["a", "bad", "b"]).get_summary()

    assert summary["completed"] == 2
    assert summary["drain_failed"] == 1
    assert summary["dispatch_failed"] == 0


# ==================== End-to-end Scenarios ====================


def make_cluster_clients(node_names):
    core_v1 = Mock(spec=client.CoreV1Api)
    batch_v1 = Mock(spec=client.BatchV1Api)
    core_v1.list_node.return_value = client.V1NodeList(
        items=[client.V1Node(metadata=client.V1ObjectMeta(name=n)) for n in node_names]
    )
    core_v1.list_pod_for_all_namespaces.return_value = client.V1PodList(items=[])
    core_v1.list_namespaced_pod.return_value = client.V1PodList(items=[])
    core_v1.read_node.side_effect = lambda name: client.V1Node(
        metadata=client.V1ObjectMeta(name=name)
    )
    return core_v1, batch_v1


def make_real_orchestrator(core_v1, batch_v1):
    nodes = NodeController(
        core_v1, drain_options=DrainOptions(poll_interval=0), ready_poll_interval=0
    )
    jobs = JobManager(batch_v1, poll_interval=0)
    return MaintenanceOrchestrator(nodes, jobs)


def test_scenario_new_job_runs_to_completion():
    """Scenario A: n1 drains, job-on-n1 is created, succeeds, node annotated."""
    core_v1, batch_v1 = make_cluster_clients(["n1"])
    batch_v1.read_namespaced_job.side_effect = [
        ApiException(status=404, reason="Not Found"),  # dispatch lookup
        client.V1Job(status=client.V1JobStatus(active=1)),
        client.V1Job(status=client.V1JobStatus(succeeded=1)),
    ]

    report = make_real_orchestrator(core_v1, batch_v1).run(["n1"])

    assert report.nodes[0].outcome is PerNodeOutcome.COMPLETED
    assert batch_v1.create_namespaced_job.call_count == 1
    assert [c.args[1] for c in core_v1.patch_node.call_args_list] == [
        {"spec": {"unschedulable": True}},
        {"spec": {"unschedulable": False}},
    ]
    annotated = core_v1.replace_node.call_args.args[1]
    assert "job-complete" in annotated.metadata.annotations


def test_scenario_existing_job_is_not_duplicated():
    """Scenario D: job-on-n4 already exists, dispatch is a no-op, run proceeds."""
    core_v1, batch_v1 = make_cluster_clients(["n4"])
    batch_v1.read_namespaced_job.return_value = client.V1Job(
        status=client.V1JobStatus(succeeded=1)
    )

    report = make_real_orchestrator(core_v1, batch_v1).run(["n4"])

    assert report.nodes[0].outcome is PerNodeOutcome.COMPLETED
    batch_v1.create_namespaced_job.assert_not_called()


def test_run_operator_filters_requested_nodes():
    core_v1, batch_v1 = make_cluster_clients(["n1", "n2", "n3"])
    batch_v1.read_namespaced_job.return_value = client.V1Job(
        status=client.V1JobStatus(succeeded=1)
    )

    report = run_operator(
        OperatorConfig(nodes=["n3", "n1", "missing"]),
        core_v1=core_v1,
        batch_v1=batch_v1,
    )

    assert [r.node_name for r in report.nodes] == ["n1", "n3"]


def test_select_nodes_without_filter_keeps_everything():
    assert select_nodes(["b", "a"], []) == ["b", "a"]


# ==================== CLI ====================


def reset_logger():
    # main() points the logger at the runner's stream, which is closed now
    logger.remove()
    logger.add(sys.stderr, level="DEBUG")


def invoke_cli(args, report=None):
    runner = CliRunner()
    with patch("maint_operator.load_kube_clients", return_value=(Mock(), Mock())), patch(
        "maint_operator.run_operator", return_value=report or RunReport()
    ) as run:
        result = runner.invoke(main, args)

    reset_logger()
    return result, run


def test_cli_exits_zero_when_nodes_are_skipped():
    report = RunReport()
    result, run = invoke_cli(["--job-command", "sh -c 'uptime'", "--node", "n1"], report)

    assert result.exit_code == 0
    operator_config = run.call_args.args[0]
    assert operator_config.job_command == ["sh", "-c", "uptime"]
    assert operator_config.nodes == ["n1"]
    assert operator_config.namespace == "default"


def test_cli_exits_nonzero_when_run_aborted():
    result, _ = invoke_cli([], RunReport(aborted=True))
    assert result.exit_code == 1


def test_cli_rejects_empty_job_command():
    result, run = invoke_cli(["--job-command", ""])
    assert result.exit_code == 1
    run.assert_not_called()


def test_cli_rejects_non_positive_timeout():
    result, run = invoke_cli(["--job-timeout", "0"])
    assert result.exit_code == 1
    run.assert_not_called()


def test_cli_exits_nonzero_without_usable_client_config():
    runner = CliRunner()
    with patch(
        "maint_operator.load_kube_clients",
        side_effect=config.ConfigException("Invalid kube-config file. No configuration found."),
    ), patch("maint_operator.run_operator") as run:
        result = runner.invoke(main, [])
    reset_logger()

    assert result.exit_code == 1
    run.assert_not_called()


def test_cli_exits_nonzero_when_node_listing_fails():
    core_v1 = Mock(spec=client.CoreV1Api)
    batch_v1 = Mock(spec=client.BatchV1Api)
    core_v1.list_node.side_effect = NewConnectionError(None, "connection refused")

    runner = CliRunner()
    with patch("maint_operator.load_kube_clients", return_value=(core_v1, batch_v1)):
        result = runner.invoke(main, [])
    reset_logger()

    assert result.exit_code == 1
    # nothing is touched before the node list is known
    core_v1.patch_node.assert_not_called()
    batch_v1.create_namespaced_job.assert_not_called()


def test_stop_signal_sets_cancel_and_restores_handlers():
    original = signal.getsignal(signal.SIGTERM)
    cancel = threading.Event()
    previous_handlers = install_stop_handlers(cancel)
    try:
        handler = signal.getsignal(signal.SIGTERM)
        assert handler is not original

        handler(signal.SIGTERM, None)

        assert cancel.is_set()
        # a second signal goes to the original handlers
        assert signal.getsignal(signal.SIGTERM) == original
        assert signal.getsignal(signal.SIGINT) == previous_handlers[signal.SIGINT]
    finally:
        restore_handlers(previous_handlers)
