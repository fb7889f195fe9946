import pytest
import ray

from ledgercat.tests.test_utils.filesystem import temp_dir_autocleanup


@pytest.fixture
def temp_dir():
    """
    Temp dir which is removed after usage
    note that each method which is injected with temp_dir will get a separate new tmp directory
    """
    with temp_dir_autocleanup() as tmp_dir:
        yield tmp_dir


@pytest.fixture
def local_rewrite():
    """
    Ensures cluster rewrites run in the current process, so that failures can
    be injected by patching.
    """
    if ray.is_initialized():
        ray.shutdown()
    yield
