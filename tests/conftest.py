"""
Shared pytest fixtures for crtpower tests.
"""

import warnings

import pytest

from crtpower.backends import reset_backend
from crtpower.utils.validators import validate_design

from tests.config import COUNT_RATES, N_ARMS, N_CLUSTERS, N_SUBJECTS, SIGMA_B_SQ
from tests.helpers.stub_backends import MeanDifferenceBackend


@pytest.fixture(autouse=True)
def _fresh_backend():
    """Every test starts from the default backend selection."""
    reset_backend()
    yield
    reset_backend()


@pytest.fixture
def quiet_warnings():
    """Silence simulation-count and convergence warnings for tests that don't check them."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        yield


@pytest.fixture
def normal_design():
    """3-arm normal design, 10 clusters of 30 per arm."""
    design, _ = validate_design(
        N_SUBJECTS,
        [0.0, 0.5, 1.0],
        SIGMA_B_SQ,
        family="normal",
        narms=N_ARMS,
        nclusters=N_CLUSTERS,
    )
    return design


@pytest.fixture
def count_design():
    """3-arm Poisson design with rates 1, 1.5, 2."""
    design, _ = validate_design(
        N_SUBJECTS,
        COUNT_RATES,
        SIGMA_B_SQ,
        family="poisson",
        narms=N_ARMS,
        nclusters=N_CLUSTERS,
    )
    return design


@pytest.fixture
def stub_backend():
    """Deterministic, instantaneous fitting service."""
    return MeanDifferenceBackend()
