"""
Tests for validation utilities.
"""

import numpy as np
import pytest

from crtpower.core.design import Family
from crtpower.utils.validators import (
    ValidationError,
    _validate_alpha,
    _validate_correction_method,
    _validate_parallel_settings,
    _validate_simulations,
    _validate_time_limit,
    _ValidationResult,
    validate_design,
)


class TestValidationResult:
    """Test _ValidationResult helpers."""

    def test_raise_if_invalid_bullets(self):
        result = _ValidationResult(False, ["first problem", "second problem"], [])
        with pytest.raises(ValidationError) as exc_info:
            result.raise_if_invalid()
        assert str(exc_info.value) == "Validation failed:\n• first problem\n• second problem"

    def test_valid_does_not_raise(self):
        _ValidationResult(True, [], ["just a warning"]).raise_if_invalid()

    def test_merge(self):
        merged = _ValidationResult(True, [], ["w1"]).merge(_ValidationResult(False, ["e1"], ["w2"]))
        assert not merged.is_valid
        assert merged.errors == ["e1"]
        assert merged.warnings == ["w1", "w2"]

    def test_validation_error_is_value_error(self):
        assert issubclass(ValidationError, ValueError)


class TestValidateAlpha:
    """Test _validate_alpha function."""

    def test_valid_alpha(self):
        assert _validate_alpha(0.05).is_valid

    @pytest.mark.parametrize("alpha", [0, 1, -0.1, 1.5])
    def test_alpha_outside_unit_interval(self, alpha):
        assert not _validate_alpha(alpha).is_valid

    def test_alpha_wrong_type(self):
        assert not _validate_alpha("0.05").is_valid

    def test_alpha_nan(self):
        assert not _validate_alpha(np.nan).is_valid


class TestValidateSimulations:
    """Test _validate_simulations function."""

    def test_valid(self):
        n, result = _validate_simulations(1000)
        assert result.is_valid
        assert n == 1000
        assert result.warnings == []

    def test_low_count_warns(self):
        n, result = _validate_simulations(100)
        assert result.is_valid
        assert n == 100
        assert "Low simulation count" in result.warnings[0]

    def test_zero(self):
        _, result = _validate_simulations(0)
        assert not result.is_valid

    def test_fractional(self):
        _, result = _validate_simulations(10.5)
        assert not result.is_valid

    def test_integral_float(self):
        n, result = _validate_simulations(2000.0)
        assert result.is_valid
        assert n == 2000


class TestValidateCorrection:
    """Test _validate_correction_method function."""

    @pytest.mark.parametrize("method", ["holm", "hochberg", "hommel", "bonferroni", "BH", "BY", "fdr", "none", None])
    def test_known_methods(self, method):
        assert _validate_correction_method(method).is_valid

    def test_unknown_method(self):
        result = _validate_correction_method("tukey")
        assert not result.is_valid
        assert "Unknown correction method" in result.errors[0]


class TestValidateParallelSettings:
    """Test _validate_parallel_settings function."""

    def test_explicit_cores(self):
        (enable, n_cores), result = _validate_parallel_settings(True, 1)
        assert result.is_valid
        assert enable is True
        assert n_cores == 1

    def test_all_cores(self):
        import os

        (_, n_cores), result = _validate_parallel_settings(True, "all")
        assert result.is_valid
        assert n_cores == (os.cpu_count() or 1)

    def test_default_is_half(self):
        import os

        (_, n_cores), _ = _validate_parallel_settings(True, None)
        assert n_cores == max(1, (os.cpu_count() or 1) // 2)

    @pytest.mark.parametrize("n_cores", [0, -2, "some", 1.5])
    def test_invalid_cores(self, n_cores):
        _, result = _validate_parallel_settings(True, n_cores)
        assert not result.is_valid

    def test_invalid_enable(self):
        _, result = _validate_parallel_settings("yes", 2)
        assert not result.is_valid


class TestValidateTimeLimit:
    def test_positive(self):
        assert _validate_time_limit(30).is_valid

    def test_zero(self):
        assert not _validate_time_limit(0).is_valid


class TestValidateDesign:
    """Test validate_design end to end."""

    def test_builds_canonical_design(self):
        design, warnings = validate_design(20, [0.1, 0.2, 0.3], 0.05, family="binary", narms=3, nclusters=5)
        assert warnings == []
        assert design.narms == 3
        assert design.nclusters == (5, 5, 5)
        assert design.nsubjects == ((20,) * 5,) * 3
        assert design.outcome_param == (0.1, 0.2, 0.3)
        assert design.sigma_b_sq == (0.05, 0.05, 0.05)
        assert design.family is Family.BINARY
        assert design.sigma_sq == ()

    def test_per_arm_lengths_match(self):
        design, _ = validate_design([[10, 12], [8, 9, 11], [10]], 1.0, [0.1, 0.2, 0.3], family="poisson")
        n = design.narms
        assert len(design.nclusters) == len(design.nsubjects) == len(design.sigma_b_sq) == len(design.outcome_param) == n

    def test_normal_default_within_variance(self):
        design, _ = validate_design(10, [0, 1], 0.2, narms=2, nclusters=3)
        assert design.sigma_sq == (1.0, 1.0)

    def test_family_aliases(self):
        design, _ = validate_design(10, [1, 2], 0.2, family="neg.bin", narms=2, nclusters=3)
        assert design.family is Family.NEG_BINOM

    def test_unknown_family(self):
        with pytest.raises(ValidationError, match="Unknown outcome family"):
            validate_design(10, [1, 2], 0.2, family="gamma", narms=2, nclusters=3)

    def test_probability_out_of_range(self):
        with pytest.raises(ValidationError, match="strictly between 0 and 1"):
            validate_design(10, [0.2, 1.2], 0.2, family="binary", narms=2, nclusters=3)

    def test_negative_count(self):
        with pytest.raises(ValidationError, match="Expected counts must be positive"):
            validate_design(10, [-1, 2], 0.2, family="poisson", narms=2, nclusters=3)

    def test_negative_variance(self):
        with pytest.raises(ValidationError, match="sigma_b_sq must be >= 0"):
            validate_design(10, [0, 1], -0.2, narms=2, nclusters=3)

    def test_parameter_length_mismatch(self):
        with pytest.raises(ValidationError, match="Length of outcome parameters"):
            validate_design(10, [0, 1, 2], 0.2, narms=2, nclusters=3)

    def test_all_errors_reported_together(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_design(10, [0, 1, 2], [0.1, 0.2, 0.3, 0.4], narms=2, nclusters=3)
        message = str(exc_info.value)
        assert message.count("•") == 2

    def test_zero_subject_cluster(self):
        with pytest.raises(ValidationError, match="positive integer"):
            validate_design([[10, 0], [10, 10]], [0, 1], 0.2)

    def test_invalid_alpha(self):
        with pytest.raises(ValidationError, match="alpha"):
            validate_design(10, [0, 1], 0.2, narms=2, nclusters=3, alpha=1.5)

    def test_tdist_requires_df_above_two(self):
        with pytest.raises(ValidationError, match="random_effect_df"):
            validate_design(10, [0, 1], 0.2, narms=2, nclusters=3, tdist=True, random_effect_df=2)

    def test_nb_dispersion_positive(self):
        with pytest.raises(ValidationError, match="nb_dispersion"):
            validate_design(10, [1, 2], 0.2, family="neg_binom", narms=2, nclusters=3, nb_dispersion=0)
