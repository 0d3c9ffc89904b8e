"""
Maintenance Job dispatch and completion tracking.

A maintenance Job is a one-shot batch/v1 Job pinned to a single node through a
hostname node selector. It tolerates every NoSchedule and NoExecute taint so it
can run on the node while it is cordoned.
"""

import threading
from dataclasses import dataclass, field
from typing import List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from loguru import logger
from urllib3.exceptions import HTTPError

from maint_errors import DispatchError, PollError, TaskFailedError
from maint_wait import WaitOutcome, poll_until

JOB_NAME_PREFIX = "job-on-"
APP_LABEL = "kube-maint-operator"
CONTAINER_NAME = "maintenance-task"
HOSTNAME_LABEL = "kubernetes.io/hostname"

DEFAULT_IMAGE = "busybox:latest"
DEFAULT_COMMAND = ["sh", "-c", "echo Hello && sleep 5"]


def job_name_for_node(node_name: str) -> str:
    return f"{JOB_NAME_PREFIX}{node_name}"


# ==================== Data Classes ====================


@dataclass
class MaintenanceJob:
    """A maintenance Job targeted at one node."""

    name: str
    node_name: str
    image: str = DEFAULT_IMAGE
    command: List[str] = field(default_factory=lambda: list(DEFAULT_COMMAND))
    namespace: str = "default"

    @classmethod
    def for_node(
        cls,
        node_name: str,
        image: str = DEFAULT_IMAGE,
        command: Optional[List[str]] = None,
        namespace: str = "default",
    ) -> "MaintenanceJob":
        """Build the Job for a node, named deterministically after it."""
        return cls(
            name=job_name_for_node(node_name),
            node_name=node_name,
            image=image,
            command=list(command) if command is not None else list(DEFAULT_COMMAND),
            namespace=namespace,
        )

    def to_v1_job(self) -> client.V1Job:
        """Render the Job object submitted to the API."""
        tolerations = [
            client.V1Toleration(operator="Exists", effect="NoExecute"),
            client.V1Toleration(operator="Exists", effect="NoSchedule"),
        ]
        pod_spec = client.V1PodSpec(
            node_selector={HOSTNAME_LABEL: self.node_name},
            containers=[
                client.V1Container(
                    name=CONTAINER_NAME,
                    image=self.image,
                    command=list(self.command),
                )
            ],
            restart_policy="OnFailure",
            tolerations=tolerations,
        )
        return client.V1Job(
            api_version="batch/v1",
            kind="Job",
            metadata=client.V1ObjectMeta(
                name=self.name,
                namespace=self.namespace,
                labels={"app": APP_LABEL},
            ),
            spec=client.V1JobSpec(
                template=client.V1PodTemplateSpec(spec=pod_spec),
            ),
        )

    def __str__(self) -> str:
        return (
            f"Job '{self.namespace}/{self.name}' on {self.node_name}: "
            f"{self.image} {' '.join(self.command)}"
        )


@dataclass
class JobStatus:
    """Pod counters reported by a Job."""

    succeeded: int = 0
    failed: int = 0
    active: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.succeeded > 0 or self.failed > 0

    @staticmethod
    def from_v1_job(job: client.V1Job) -> "JobStatus":
        status = job.status
        if status is None:
            return JobStatus()
        return JobStatus(
            succeeded=status.succeeded or 0,
            failed=status.failed or 0,
            active=status.active or 0,
        )

    def __str__(self) -> str:
        return f"active={self.active} succeeded={self.succeeded} failed={self.failed}"


# ==================== Job Manager ====================


class JobManager:
    """
    Manages maintenance Jobs through the batch/v1 API.

    Handles:
    - Dispatch (idempotent create)
    - Status reads
    - Waiting for completion
    """

    def __init__(
        self,
        batch_v1: client.BatchV1Api,
        dry_run: bool = False,
        poll_interval: float = 5.0,
        log=logger,
    ):
        self.batch_v1 = batch_v1
        self.dry_run = dry_run
        self.poll_interval = poll_interval
        self.log = log.bind(component="job-manager")

    def exists(self, name: str, namespace: str) -> bool:
        """
        Check whether a Job exists.

        Raises:
            ApiException: for any error other than 404
        """
        try:
            self.batch_v1.read_namespaced_job(name, namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    def dispatch(self, job: MaintenanceJob) -> bool:
        """
        Ensure exactly one Job with this name exists.

        Args:
            job: MaintenanceJob to submit

        Returns:
            True if the Job was created, False if it already existed

        Raises:
            DispatchError: if the lookup or the create fails
        """
        try:
            if self.exists(job.name, job.namespace):
                self.log.info(f"Job {job.name} already exists, skipping")
                return False

            self.log.info(f"Creating {job}")
            if self.dry_run:
                self.log.warning(f"DRY RUN: Would create job {job.name}")
                return True

            self.batch_v1.create_namespaced_job(job.namespace, job.to_v1_job())
        except ApiException as e:
            if e.status == 409:
                self.log.info(f"Job {job.name} was created concurrently, skipping")
                return False
            raise DispatchError(job.node_name, e) from e
        except HTTPError as e:
            raise DispatchError(job.node_name, e) from e

        self.log.success(f"Job {job.name} created successfully")
        return True

    def get_status(self, name: str, namespace: str) -> JobStatus:
        """Read the current counters of a Job. API errors propagate."""
        return JobStatus.from_v1_job(self.batch_v1.read_namespaced_job(name, namespace))

    def _job_finished(self, job: MaintenanceJob) -> bool:
        status = self.get_status(job.name, job.namespace)
        self.log.info(f"Job {job.name} status: {status}")

        # succeeded wins when both counters moved between two polls
        if status.succeeded > 0:
            return True
        if status.failed > 0:
            raise TaskFailedError(job.name, status.failed)
        return False

    def wait_for_completion(
        self,
        job: MaintenanceJob,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> WaitOutcome:
        """
        Poll a Job until it succeeds or fails.

        Args:
            job: Job to wait for
            timeout: Optional upper bound in seconds (None waits forever)
            cancel: Optional event that interrupts the wait

        Returns:
            WaitOutcome.READY once the Job succeeded, or TIMED_OUT / CANCELLED

        Raises:
            TaskFailedError: if the Job reports a failed pod
            PollError: if reading the Job fails
        """
        if self.dry_run:
            self.log.warning(f"DRY RUN: Not waiting for job {job.name}")
            return WaitOutcome.READY

        try:
            outcome = poll_until(
                lambda: self._job_finished(job),
                interval=self.poll_interval,
                timeout=timeout,
                cancel=cancel,
                description=f"job {job.name} to complete",
                log=self.log,
            )
        except (ApiException, HTTPError) as e:
            raise PollError(job.node_name, e) from e

        if outcome is WaitOutcome.READY:
            self.log.success(f"Job {job.name} completed successfully")
        return outcome
