"""
Run step invocations as Kubernetes Jobs.

The pod does not share the run workspace with the controller; steps on
this backend fetch their own sources.
"""

import logging
import time
from typing import Callable, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from controller.src.k8s.client import get_batch_api, get_core_api
from controller.src.k8s.job_builder import build_job, build_job_name, get_job_status
from controller.src.services.runners import CommandInvocation, CommandOutcome

logger = logging.getLogger(__name__)

class KubernetesJobRunner:
    def __init__(
        self,
        namespace: str,
        default_image: str,
        batch_api: Optional[client.BatchV1Api] = None,
        core_api: Optional[client.CoreV1Api] = None,
        poll_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.namespace = namespace
        self.default_image = default_image
        self._batch_api = batch_api
        self._core_api = core_api
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    @property
    def batch_api(self) -> client.BatchV1Api:
        if self._batch_api is None:
            self._batch_api = get_batch_api()
        return self._batch_api

    @property
    def core_api(self) -> client.CoreV1Api:
        if self._core_api is None:
            self._core_api = get_core_api()
        return self._core_api

    def run(self, invocation: CommandInvocation) -> CommandOutcome:
        job_name = build_job_name(
            invocation.labels.get("run-id", "local"),
            invocation.labels.get("stage", ""),
            invocation.labels.get("step", "step"),
        )
        job = build_job(
            job_name,
            invocation,
            image=invocation.image or self.default_image,
            namespace=self.namespace,
        )

        logger.info(f"Creating job {job_name}")
        self.batch_api.create_namespaced_job(namespace=self.namespace, body=job)

        status = self.wait_for_job(job_name, invocation.timeout)
        logs = self.collect_logs(job_name)

        if status in (None, "deadline_exceeded"):
            logger.error(f"Job {job_name} timed out after {invocation.timeout}s")
            self.delete_job(job_name)
            return CommandOutcome(stdout=logs, timed_out=True)

        return CommandOutcome(
            exit_code=self.container_exit_code(job_name, status),
            stdout=logs,
        )

    def wait_for_job(self, job_name: str, timeout: float) -> Optional[str]:
        """
        Poll a job until it finishes.
        Returns a terminal status (succeeded, failed, deadline_exceeded), or None on timeout.
        """
        deadline = self._clock() + timeout

        while self._clock() < deadline:
            try:
                job = self.batch_api.read_namespaced_job(
                    name=job_name,
                    namespace=self.namespace,
                )
                status = get_job_status(job)
                if status in ("succeeded", "failed", "deadline_exceeded"):
                    return status
            except ApiException as e:
                logger.error(f"Error checking job status: {e}")

            self._sleep(self.poll_interval)

        return None

    def _job_pod_name(self, job_name: str) -> Optional[str]:
        try:
            pods = self.core_api.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=f"job-name={job_name}",
            )
        except ApiException as e:
            logger.error(f"Failed to get pod for job {job_name}: {e}")
            return None
        if pods.items:
            return pods.items[0].metadata.name
        return None

    def collect_logs(self, job_name: str) -> bytes:
        """Collect logs from a job's pod."""
        pod_name = self._job_pod_name(job_name)
        if not pod_name:
            return b""

        try:
            logs = self.core_api.read_namespaced_pod_log(
                name=pod_name,
                namespace=self.namespace,
            )
        except ApiException as e:
            logger.error(f"Failed to collect logs for {pod_name}: {e}")
            return b""
        return (logs or "").encode("utf-8")

    def container_exit_code(self, job_name: str, status: str) -> int:
        """Read the step container's exit code, falling back to the job status."""
        fallback = 0 if status == "succeeded" else 1
        pod_name = self._job_pod_name(job_name)
        if not pod_name:
            return fallback

        try:
            pod = self.core_api.read_namespaced_pod(name=pod_name, namespace=self.namespace)
        except ApiException as e:
            logger.error(f"Failed to read pod {pod_name}: {e}")
            return fallback

        for container_status in (pod.status.container_statuses or []):
            terminated = container_status.state and container_status.state.terminated
            if terminated is not None and terminated.exit_code is not None:
                return terminated.exit_code
        return fallback

    def delete_job(self, job_name: str):
        """Delete a job and its pods."""
        try:
            self.batch_api.delete_namespaced_job(
                name=job_name,
                namespace=self.namespace,
                body=client.V1DeleteOptions(propagation_policy="Foreground"),
            )
            logger.info(f"Deleted job {job_name}")
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to delete job {job_name}: {e}")
