import ray
import logging

from typing import Optional

from ledgercat import logs

logger = logs.configure_ledgercat_logger(logging.getLogger(__name__))


def get_current_ray_task_id() -> Optional[str]:
    """Returns the ID of the Ray task running in this worker, or None if Ray
    is not initialized or this is not a Ray task."""
    if not ray.is_initialized():
        return None
    return ray.get_runtime_context().get_task_id()


def get_current_ray_worker_id() -> Optional[str]:
    """Returns the ID of the current Ray worker, or None if Ray is not
    initialized."""
    if not ray.is_initialized():
        return None
    return ray.get_runtime_context().get_worker_id()


def cluster_cpus() -> int:
    """Returns the current cluster's total number of CPUs as an integer."""
    cpus = ray.cluster_resources().get("CPU")
    return int(cpus) if cpus is not None else 0


def log_cluster_resources() -> None:
    """Logs the cluster's total and available resources."""
    logger.info(f"Available Resources: {ray.available_resources()}")
    logger.info(f"Cluster Resources: {ray.cluster_resources()}")
