"""
Kubernetes Job builder for pipeline steps.
"""

from kubernetes import client
from typing import Dict, Optional
import hashlib
import re

from controller.src.config import get_settings
from controller.src.services.runners import CommandInvocation

settings = get_settings()

def build_job_name(run_id: str, stage_name: str, step_name: str) -> str:
    """Generate a unique job name."""
    # K8s names must be lowercase, alphanumeric, max 63 chars
    safe_name = step_name.lower().replace(" ", "-").replace("_", "-").replace(".", "-")
    safe_name = "".join(c for c in safe_name if c.isalnum() or c == "-")
    safe_name = safe_name.strip("-")[:20] or "step"

    # Short hashes keep the name unique per run and stage
    run_hash = hashlib.md5(run_id.encode()).hexdigest()[:8]
    stage_hash = hashlib.md5(stage_name.encode()).hexdigest()[:6]

    return f"pw-{run_hash}-{stage_hash}-{safe_name}"

def label_value(value: str) -> str:
    """Squash a value into a valid label value (63 chars, alphanumeric ends)."""
    cleaned = re.sub(r"[^A-Za-z0-9._-]", "-", value)[:63]
    return cleaned.strip("-_.")

def build_job(
    job_name: str,
    invocation: CommandInvocation,
    image: str,
    namespace: Optional[str] = None,
) -> client.V1Job:
    """
    Build a Kubernetes Job running one step invocation.
    """
    namespace = namespace or settings.k8s_namespace
    labels: Dict[str, str] = {"app": "pipewright"}
    labels.update({key: label_value(value) for key, value in invocation.labels.items()})

    # The image provides its own PATH
    env = [
        client.V1EnvVar(name=key, value=value)
        for key, value in sorted(invocation.env.items())
        if key != "PATH"
    ]

    container = client.V1Container(
        name="step",
        image=image,
        command=invocation.argv(),
        env=env,
        resources=client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "128Mi"},
            limits={"cpu": "500m", "memory": "512Mi"},
        ),
    )

    pod_spec = client.V1PodSpec(
        containers=[container],
        restart_policy="Never",
    )

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=pod_spec,
    )

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # The engine never retries
        active_deadline_seconds=max(1, int(invocation.timeout)),
        ttl_seconds_after_finished=settings.job_ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

def get_job_status(job: client.V1Job) -> str:
    """
    Determine job status from Kubernetes Job object.
    Returns: 'pending', 'running', 'succeeded', 'failed', 'deadline_exceeded'
    """
    if job.status is None:
        return "pending"

    if job.status.succeeded and job.status.succeeded > 0:
        return "succeeded"

    # active_deadline_seconds kills the pod and marks the job Failed
    for condition in (job.status.conditions or []):
        if condition.type == "Failed" and condition.status == "True" and condition.reason == "DeadlineExceeded":
            return "deadline_exceeded"

    if job.status.failed and job.status.failed > 0:
        return "failed"

    if job.status.active and job.status.active > 0:
        return "running"

    return "pending"
