"""
Tests for trial structure coercion.
"""

import numpy as np

from crtpower.utils.parsers import coerce_per_arm, coerce_structure


class TestCoerceStructure:
    """Test coerce_structure across the accepted input shapes."""

    def test_scalar_subjects_and_clusters(self):
        structure, errors = coerce_structure(20, narms=3, nclusters=4)
        assert errors == []
        assert structure == [[20] * 4, [20] * 4, [20] * 4]

    def test_scalar_subjects_per_arm_clusters(self):
        structure, errors = coerce_structure(15, nclusters=[2, 3, 4])
        assert errors == []
        assert [len(arm) for arm in structure] == [2, 3, 4]
        assert all(n == 15 for arm in structure for n in arm)

    def test_per_arm_subjects(self):
        structure, errors = coerce_structure([10, 20], nclusters=3)
        assert errors == []
        assert structure == [[10, 10, 10], [20, 20, 20]]

    def test_per_cluster_subjects(self):
        structure, errors = coerce_structure([[5, 6, 7], [8, 9]])
        assert errors == []
        assert structure == [[5, 6, 7], [8, 9]]

    def test_numpy_input(self):
        structure, errors = coerce_structure(np.array([10, 20]), nclusters=np.array([2, 2]))
        assert errors == []
        assert structure == [[10, 10], [20, 20]]

    def test_integral_floats_are_accepted(self):
        structure, errors = coerce_structure(10.0, narms=2, nclusters=2.0)
        assert errors == []
        assert structure == [[10, 10], [10, 10]]
        assert all(isinstance(n, int) for arm in structure for n in arm)

    def test_missing_nclusters(self):
        structure, errors = coerce_structure(20, narms=3)
        assert structure == []
        assert "nclusters" in errors[0]

    def test_missing_narms_for_scalars(self):
        _, errors = coerce_structure(20, nclusters=5)
        assert "narms" in errors[0]

    def test_single_arm_rejected(self):
        _, errors = coerce_structure([[10, 10]])
        assert any("at least 2 arms" in e for e in errors)

    def test_zero_subjects_rejected(self):
        _, errors = coerce_structure([[10, 0], [10, 10]])
        assert any("arm 1" in e for e in errors)

    def test_fractional_subjects_rejected(self):
        _, errors = coerce_structure([[10, 2.5], [10, 10]])
        assert errors

    def test_empty_arm_rejected(self):
        _, errors = coerce_structure([[10, 10], []])
        assert any("Arm 2 has no clusters" in e for e in errors)

    def test_narms_mismatch(self):
        _, errors = coerce_structure([10, 20], narms=3, nclusters=2)
        assert "narms" in errors[0]

    def test_nclusters_length_mismatch(self):
        _, errors = coerce_structure(10, narms=3, nclusters=[2, 2])
        assert "Length of nclusters" in errors[0]

    def test_nclusters_disagrees_with_nested_sizes(self):
        _, errors = coerce_structure([[5, 6], [7, 8]], nclusters=[3, 2])
        assert any("nclusters does not match" in e for e in errors)

    def test_bool_is_not_a_count(self):
        _, errors = coerce_structure(True, narms=2, nclusters=2)
        assert errors


class TestCoercePerArm:
    """Test coerce_per_arm expansion."""

    def test_scalar_expanded(self):
        values, errors = coerce_per_arm(0.2, 3, "sigma_b_sq")
        assert errors == []
        assert values == (0.2, 0.2, 0.2)

    def test_vector_kept(self):
        values, errors = coerce_per_arm([1, 2, 3], 3, "means")
        assert errors == []
        assert values == (1.0, 2.0, 3.0)

    def test_length_one_vector_expanded(self):
        values, _ = coerce_per_arm([0.5], 2, "probs")
        assert values == (0.5, 0.5)

    def test_wrong_length(self):
        values, errors = coerce_per_arm([1, 2], 3, "means")
        assert values == ()
        assert "Length of means (2) must equal narms (3)" in errors[0]

    def test_none(self):
        _, errors = coerce_per_arm(None, 3, "means")
        assert errors == ["means must be specified"]

    def test_non_numeric(self):
        _, errors = coerce_per_arm(["a", "b"], 2, "means")
        assert errors
