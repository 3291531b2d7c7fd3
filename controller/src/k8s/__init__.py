from controller.src.k8s.client import (
    init_k8s_client,
    get_batch_api,
    get_core_api,
    ensure_namespace,
)
from controller.src.k8s.job_builder import (
    build_job,
    build_job_name,
    get_job_status,
    label_value,
)
from controller.src.k8s.runner import KubernetesJobRunner

__all__ = [
    "KubernetesJobRunner",
    "init_k8s_client",
    "get_batch_api",
    "get_core_api",
    "ensure_namespace",
    "build_job",
    "build_job_name",
    "get_job_status",
    "label_value",
]
