from __future__ import annotations
from enum import Enum
from typing import Callable, List, Optional
import logging

import tenacity

from pyarrow.lib import ArrowException, ArrowInvalid, ArrowCapacityError

import ray
from ray.exceptions import (
    RayError,
    RayTaskError,
    RuntimeEnvSetupError,
    WorkerCrashedError,
    NodeDiedError,
    OutOfMemoryError,
)

from ledgercat import logs
from ledgercat.utils.ray_utils.runtime import (
    get_current_ray_task_id,
)

logger = logs.configure_ledgercat_logger(logging.getLogger(__name__))


class LedgerCatErrorNames(str, Enum):

    DEPENDENCY_RAY_ERROR = "DependencyRayError"
    DEPENDENCY_RAY_WORKER_DIED_ERROR = "DependencyRayWorkerDiedError"
    DEPENDENCY_RAY_OUT_OF_MEMORY_ERROR = "DependencyRayOOMError"
    DEPENDENCY_RAY_RUNTIME_SETUP_ERROR = "DependencyRayRuntimeSetupError"
    DEPENDENCY_PYARROW_ERROR = "DependencyPyarrowError"
    DEPENDENCY_PYARROW_INVALID_ERROR = "DependencyPyarrowInvalidError"
    DEPENDENCY_PYARROW_CAPACITY_ERROR = "DependencyPyarrowCapacityError"

    COMMIT_CONFLICT_ERROR = "CommitConflictError"

    VALIDATION_ERROR = "ValidationError"
    COMMIT_FAILED_ERROR = "CommitFailedError"
    COMMIT_STATE_UNKNOWN_ERROR = "CommitStateUnknownError"
    MANIFEST_READ_ERROR = "ManifestReadError"
    MANIFEST_WRITE_ERROR = "ManifestWriteError"

    LEDGERCAT_SYSTEM_ERROR = "LedgerCatSystemError"
    LEDGERCAT_TRANSIENT_ERROR = "LedgerCatTransientError"
    UNCLASSIFIED_LEDGERCAT_ERROR = "UnclassifiedLedgerCatError"
    UNRECOGNIZED_RAY_TASK_ERROR = "UnrecognizedRayTaskError"

    TABLE_NOT_FOUND_ERROR = "TableNotFoundError"
    TABLE_ALREADY_EXISTS_ERROR = "TableAlreadyExistsError"


class LedgerCatError(Exception):
    def __init__(self, *args, **kwargs):
        task_id, node_ip = self._get_ray_task_id_and_node_ip()
        self.task_id = task_id
        self.node_ip = node_ip
        super().__init__(*args, **kwargs)

    def _get_ray_task_id_and_node_ip(self):
        task_id = get_current_ray_task_id()
        node_ip = ray.util.get_node_ip_address()
        return task_id, node_ip


class NonRetryableError(LedgerCatError):
    is_retryable = False


class RetryableError(LedgerCatError):
    is_retryable = True


class ValidationError(NonRetryableError):
    error_name = LedgerCatErrorNames.VALIDATION_ERROR.value


class UnclassifiedLedgerCatError(NonRetryableError):
    error_name = LedgerCatErrorNames.UNCLASSIFIED_LEDGERCAT_ERROR.value


class DependencyRayError(NonRetryableError):
    error_name = LedgerCatErrorNames.DEPENDENCY_RAY_ERROR.value


class LedgerCatTransientError(RetryableError):
    error_name = LedgerCatErrorNames.LEDGERCAT_TRANSIENT_ERROR.value


class DependencyRayWorkerDiedError(RetryableError):
    error_name = LedgerCatErrorNames.DEPENDENCY_RAY_WORKER_DIED_ERROR.value


class DependencyRayOutOfMemoryError(RetryableError):
    error_name = LedgerCatErrorNames.DEPENDENCY_RAY_OUT_OF_MEMORY_ERROR.value


class DependencyRayRuntimeSetupError(RetryableError):
    error_name = LedgerCatErrorNames.DEPENDENCY_RAY_RUNTIME_SETUP_ERROR.value


class DependencyPyarrowError(NonRetryableError):
    error_name = LedgerCatErrorNames.DEPENDENCY_PYARROW_ERROR.value


class DependencyPyarrowInvalidError(NonRetryableError):
    error_name = LedgerCatErrorNames.DEPENDENCY_PYARROW_INVALID_ERROR.value


class DependencyPyarrowCapacityError(NonRetryableError):
    error_name = LedgerCatErrorNames.DEPENDENCY_PYARROW_CAPACITY_ERROR.value


class CommitConflictError(RetryableError):
    """
    Raised when a commit lost the compare-and-swap race because the table's
    metadata changed after it was read.
    """

    error_name = LedgerCatErrorNames.COMMIT_CONFLICT_ERROR.value


class CommitFailedError(NonRetryableError):
    """
    Raised when a commit definitely did not happen, either because its retries
    were exhausted or because the manifests it was replacing are gone.
    """

    error_name = LedgerCatErrorNames.COMMIT_FAILED_ERROR.value

    def __init__(self, *args, stale_manifests: Optional[List[str]] = None):
        self.stale_manifests = stale_manifests or []
        super().__init__(*args)


class CommitStateUnknownError(NonRetryableError):
    """
    Raised when the outcome of a commit could not be determined. Callers must
    re-read the table to find out whether it was applied, and must not delete
    any files the commit may reference.
    """

    error_name = LedgerCatErrorNames.COMMIT_STATE_UNKNOWN_ERROR.value


class ManifestReadError(NonRetryableError):
    error_name = LedgerCatErrorNames.MANIFEST_READ_ERROR.value


class ManifestWriteError(NonRetryableError):
    error_name = LedgerCatErrorNames.MANIFEST_WRITE_ERROR.value


class LedgerCatSystemError(NonRetryableError):
    error_name = LedgerCatErrorNames.LEDGERCAT_SYSTEM_ERROR.value


class UnrecognizedRayTaskError(NonRetryableError):
    error_name = LedgerCatErrorNames.UNRECOGNIZED_RAY_TASK_ERROR.value


class TableNotFoundError(NonRetryableError):
    error_name = LedgerCatErrorNames.TABLE_NOT_FOUND_ERROR.value


class TableAlreadyExistsError(NonRetryableError):
    error_name = LedgerCatErrorNames.TABLE_ALREADY_EXISTS_ERROR.value


def categorize_errors(func: Callable):
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except BaseException as e:
            categorize_ledgercat_exception(e)

    return wrapper


def categorize_ledgercat_exception(e: BaseException):
    if isinstance(e, LedgerCatError):
        raise e
    elif isinstance(e, RayError):
        _categorize_ray_error(e)
    elif isinstance(e, tenacity.RetryError):
        _categorize_tenacity_error(e)
    elif isinstance(e, ArrowException):
        _categorize_dependency_pyarrow_error(e)
    elif isinstance(e, AssertionError):
        _categorize_assertion_error(e)
    else:
        _categorize_all_remaining_errors(e)

    logger.error(f"Error categorization failed for {e}.", exc_info=True)
    raise UnclassifiedLedgerCatError(
        "Error could not categorized into LedgerCat error"
    ) from e


def _categorize_ray_error(e: RayError):
    if isinstance(e, RuntimeEnvSetupError):
        raise DependencyRayRuntimeSetupError("Ray failed to setup runtime env.") from e
    elif isinstance(e, WorkerCrashedError) or isinstance(e, NodeDiedError):
        raise DependencyRayWorkerDiedError("Ray worker died unexpectedly.") from e
    elif isinstance(e, OutOfMemoryError):
        raise DependencyRayOutOfMemoryError("Ray worker Out Of Memory.") from e
    elif isinstance(e, RayTaskError):
        if e.cause is not None and isinstance(e.cause, Exception):
            categorize_ledgercat_exception(e.cause)
        else:
            raise UnrecognizedRayTaskError(
                "Unrecognized underlying error detected in a Ray task."
            ) from e
    else:
        raise DependencyRayError("Dependency Ray error occurred.") from e


def _categorize_tenacity_error(e: tenacity.RetryError):
    if e.__cause__ is not None and isinstance(e.__cause__, Exception):
        categorize_ledgercat_exception(e.__cause__)
    else:
        raise RetryableError("Unrecognized retryable error occurred.") from e


def _categorize_dependency_pyarrow_error(e: ArrowException):
    if isinstance(e, ArrowInvalid):
        raise DependencyPyarrowInvalidError(
            f"Pyarrow Invalid error occurred. {e}"
        ) from e
    elif isinstance(e, ArrowCapacityError):
        raise DependencyPyarrowCapacityError("Pyarrow Capacity error occurred.") from e
    else:
        raise DependencyPyarrowError("Pyarrow error occurred.") from e


def _categorize_assertion_error(e: BaseException):
    raise ValidationError(f"One of the assertions in LedgerCAT has failed. {e}") from e


def _categorize_all_remaining_errors(e: BaseException):
    if isinstance(e, ConnectionError):
        raise LedgerCatTransientError("Connection error has occurred.") from e
    elif isinstance(e, TimeoutError):
        raise LedgerCatTransientError("Timeout error has occurred.") from e
    elif isinstance(e, OSError):
        raise LedgerCatTransientError("OSError occurred.") from e
    elif isinstance(e, SystemExit):
        raise LedgerCatSystemError("Unexpected System error occurred.") from e
