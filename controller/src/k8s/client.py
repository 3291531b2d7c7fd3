"""
Kubernetes API access for the job runner.
"""

import logging
from typing import Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from controller.src.config import get_settings

logger = logging.getLogger(__name__)

_api_client: Optional[client.ApiClient] = None

def init_k8s_client(in_cluster: Optional[bool] = None) -> bool:
    """Load cluster credentials and check that the API server answers."""
    global _api_client

    if in_cluster is None:
        in_cluster = get_settings().k8s_in_cluster

    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config()

        api_client = client.ApiClient()
        version = client.VersionApi(api_client).get_code()
    except Exception as e:
        logger.error(f"Failed to initialize Kubernetes client: {e}")
        return False

    _api_client = api_client
    source = "in-cluster" if in_cluster else "kubeconfig"
    logger.info(f"Connected to Kubernetes {version.git_version} ({source})")
    return True

def _require_client() -> client.ApiClient:
    if _api_client is None and not init_k8s_client():
        raise RuntimeError("Kubernetes API is not reachable")
    return _api_client

def get_batch_api() -> client.BatchV1Api:
    return client.BatchV1Api(_require_client())

def get_core_api() -> client.CoreV1Api:
    return client.CoreV1Api(_require_client())

def ensure_namespace(namespace: Optional[str] = None) -> bool:
    """Create the step namespace if missing. Returns True when it was created."""
    namespace = namespace or get_settings().k8s_namespace
    core_v1 = get_core_api()

    try:
        core_v1.read_namespace(name=namespace)
        return False
    except ApiException as e:
        if e.status != 404:
            raise

    core_v1.create_namespace(
        body=client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))
    )
    logger.info(f"Created namespace '{namespace}'")
    return True
