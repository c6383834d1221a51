"""
Tests for the fitting-service registry.
"""

import numpy as np
import pytest

from crtpower.backends import (
    FitOutcome,
    FittingService,
    NullComparison,
    get_backend,
    get_backend_info,
    reset_backend,
    set_backend,
)
from tests.helpers.stub_backends import MeanDifferenceBackend


class TestRegistry:
    def test_default_is_statsmodels(self):
        from crtpower.backends.statsmodels_backend import StatsmodelsBackend

        assert isinstance(get_backend(), StatsmodelsBackend)
        info = get_backend_info()
        assert info["name"] == "StatsmodelsBackend"
        assert info["forced"] is False

    def test_cached_instance(self):
        assert get_backend() is get_backend()

    def test_set_by_name(self):
        set_backend("statsmodels")
        assert get_backend_info()["forced"] is True
        set_backend("default")
        assert get_backend_info()["forced"] is False

    def test_set_instance(self):
        stub = MeanDifferenceBackend()
        set_backend(stub)
        assert get_backend() is stub
        assert get_backend_info()["forced"] is True

    def test_reset(self):
        stub = MeanDifferenceBackend()
        set_backend(stub)
        reset_backend()
        assert get_backend() is not stub

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            set_backend("rpy2")

    def test_object_without_protocol(self):
        with pytest.raises(ValueError, match="does not implement"):
            set_backend(object())

    def test_stub_satisfies_protocol(self):
        assert isinstance(MeanDifferenceBackend(), FittingService)


class TestNullComparison:
    def test_failed(self):
        failed = NullComparison.failed(2, test="Wald")
        assert failed.df == 2
        assert np.isnan(failed.statistic)
        assert np.isnan(failed.p_value)
        assert failed.test == "Wald"

    def test_fit_outcome_defaults(self):
        outcome = FitOutcome(["(Intercept)"], np.zeros(1), np.ones(1), np.zeros(1), np.ones(1), converged=True)
        assert not outcome.singular
        assert outcome.handle is None
