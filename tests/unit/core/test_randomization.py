import math

import numpy as np
import pytest
from hypothesis import given, settings, strategies as st

from adaptive_trials.core.randomization import (
    apply_limits,
    reallocate_probs,
    rescale_constraints,
    sqrt_control_prob,
)
from adaptive_trials.core.spec import RescalePolicy, setup_trial_binom

NAN = float("nan")


def _spec(n_arms=3, **overrides):
    arms = [chr(ord("A") + i) for i in range(n_arms)]
    kwargs = dict(arms=arms, true_ys=[0.2] * n_arms, data_looks=[100, 200], n_draws=1000)
    kwargs.update(overrides)
    return setup_trial_binom(**kwargs)


def test_sqrt_control_prob_values():
    assert sqrt_control_prob(1) == pytest.approx(0.5)
    assert sqrt_control_prob(2) == pytest.approx(math.sqrt(2) / (math.sqrt(2) + 2))
    assert sqrt_control_prob(4) == pytest.approx(1 / 3)
    with pytest.raises(ValueError, match="non-control"):
        sqrt_control_prob(0)


def test_probabilities_proportional_to_probs_best():
    spec = _spec()
    probs = reallocate_probs(spec, spec.arms, [0.2, 0.5, 0.3])
    np.testing.assert_allclose(probs, [0.2, 0.5, 0.3])


def test_soften_power_zero_gives_equal_allocation():
    spec = _spec()
    probs = reallocate_probs(spec, spec.arms, [0.0, 0.9, 0.1], soften_power=0.0)
    np.testing.assert_allclose(probs, [1 / 3] * 3)


def test_soften_power_half_flattens_allocation():
    spec = _spec(arms=["A", "B"], true_ys=[0.2, 0.2])
    probs = reallocate_probs(spec, spec.arms, [0.64, 0.36], soften_power=0.5)
    np.testing.assert_allclose(probs, [0.8 / 1.4, 0.6 / 1.4])


def test_minimum_limits_are_respected():
    spec = _spec(n_arms=4, min_probs=[0.2] * 4)
    probs = reallocate_probs(spec, spec.arms, [0.97, 0.01, 0.01, 0.01])
    np.testing.assert_allclose(probs, [0.4, 0.2, 0.2, 0.2])


def test_maximum_limits_are_respected():
    spec = _spec(max_probs=[0.5, 0.5, 0.5])
    probs = reallocate_probs(spec, spec.arms, [0.8, 0.1, 0.1])
    np.testing.assert_allclose(probs, [0.5, 0.25, 0.25])


def test_match_policy_gives_control_the_highest_other_weight():
    spec = _spec(control="A", control_prob_fixed="match")
    probs = reallocate_probs(spec, spec.arms, [0.1, 0.6, 0.3], control="A")
    np.testing.assert_allclose(probs, [0.4, 0.4, 0.2])


def test_sqrt_based_pins_control_and_adapts_the_rest():
    spec = _spec(control="A", control_prob_fixed="sqrt-based")
    probs = reallocate_probs(spec, spec.arms, [0.2, 0.5, 0.3], control="A")
    ctrl = sqrt_control_prob(2)
    np.testing.assert_allclose(probs, [ctrl, (1 - ctrl) * 5 / 8, (1 - ctrl) * 3 / 8])


def test_sqrt_based_recomputes_after_a_drop():
    spec = _spec(n_arms=4, control="A", control_prob_fixed="sqrt-based")
    probs = reallocate_probs(spec, ["A", "B", "D"], [0.2, 0.4, 0.4], control="A")
    np.testing.assert_allclose(probs, [sqrt_control_prob(2), *[(1 - sqrt_control_prob(2)) / 2] * 2])


def test_sqrt_based_fixed_splits_remainder_equally():
    spec = _spec(n_arms=4, control="A", control_prob_fixed="sqrt-based-fixed")
    probs = reallocate_probs(spec, spec.arms, [0.0, 0.9, 0.05, 0.05], control="A")
    ctrl = sqrt_control_prob(3)
    np.testing.assert_allclose(probs, [ctrl] + [(1 - ctrl) / 3] * 3)


def test_sqrt_based_start_only_applies_at_start():
    spec = _spec(control="A", control_prob_fixed="sqrt-based-start")
    np.testing.assert_allclose(spec.initial_probs[0], sqrt_control_prob(2))
    later = reallocate_probs(spec, spec.arms, [0.2, 0.5, 0.3], control="A")
    np.testing.assert_allclose(later, [0.2, 0.5, 0.3])


def test_fixed_control_vector_indexed_by_active_arm_count():
    spec = _spec(control="A", control_prob_fixed=[0.4, 0.5])
    three = reallocate_probs(spec, spec.arms, [0.2, 0.5, 0.3], control="A")
    assert three[0] == pytest.approx(0.4)
    two = reallocate_probs(spec, ["A", "C"], [0.5, 0.5], control="A")
    np.testing.assert_allclose(two, [0.5, 0.5])


def test_new_control_after_switch_takes_pinned_probability():
    spec = _spec(control="A", control_prob_fixed=0.5)
    probs = reallocate_probs(spec, ["B", "C"], [0.7, 0.3], control="B")
    np.testing.assert_allclose(probs, [0.5, 0.5])


def test_no_control_among_active_arms_falls_back_to_plain_adaptation():
    spec = _spec(control="A", control_prob_fixed="sqrt-based")
    probs = reallocate_probs(spec, ["B", "C"], [0.75, 0.25], control=None)
    np.testing.assert_allclose(probs, [0.75, 0.25])


def test_fixed_arms_keep_exact_probability():
    spec = _spec(n_arms=4, fixed_probs=[0.3, NAN, NAN, NAN])
    probs = reallocate_probs(spec, spec.arms, [0.1, 0.6, 0.2, 0.1])
    assert probs[0] == 0.3
    np.testing.assert_allclose(probs[1:], np.array([0.6, 0.2, 0.1]) / 0.9 * 0.7)


def test_only_fixed_arms_left_share_all_mass():
    spec = _spec(n_arms=3, fixed_probs=[0.2, 0.3, NAN])
    probs = reallocate_probs(spec, ["A", "B"], [0.5, 0.5])
    np.testing.assert_allclose(probs, [0.4, 0.6])


def test_zero_probs_best_fall_back_to_equal_weights():
    spec = _spec()
    probs = reallocate_probs(spec, spec.arms, [0.0, 0.0, 0.0])
    np.testing.assert_allclose(probs, [1 / 3] * 3)


def test_rescale_constraints_scales_limits_and_caps_at_one():
    spec = _spec(n_arms=4, min_probs=[0.1] * 4, max_probs=[0.6, NAN, NAN, NAN], rescale_probs="limits")
    fixed, lo, hi = rescale_constraints(spec.constraints, RescalePolicy.LIMITS, 4, 2)
    np.testing.assert_allclose(lo, [0.2] * 4)
    assert hi[0] == 1.0
    assert np.isnan(hi[1:]).all()
    assert np.isnan(fixed).all()


def test_rescale_constraints_is_identity_without_drops():
    spec = _spec(n_arms=4, min_probs=[0.1] * 4, rescale_probs="limits")
    _, lo, _ = rescale_constraints(spec.constraints, RescalePolicy.LIMITS, 4, 4)
    np.testing.assert_allclose(lo, [0.1] * 4)


def test_limits_rescaled_after_a_drop():
    spec = _spec(n_arms=4, min_probs=[0.1] * 4, rescale_probs="limits")
    probs = reallocate_probs(spec, ["A", "B", "C"], [1.0, 0.0, 0.0])
    np.testing.assert_allclose(probs, [1 - 0.8 / 3, 0.4 / 3, 0.4 / 3])


def test_limits_not_rescaled_without_policy():
    spec = _spec(n_arms=4, min_probs=[0.1] * 4)
    probs = reallocate_probs(spec, ["A", "B", "C"], [1.0, 0.0, 0.0])
    np.testing.assert_allclose(probs, [0.8, 0.1, 0.1])


def test_fixed_probability_rescaled_after_a_drop():
    spec = _spec(n_arms=4, fixed_probs=[0.2, NAN, NAN, NAN], rescale_probs="fixed")
    probs = reallocate_probs(spec, ["A", "B"], [0.5, 0.5])
    assert probs[0] == pytest.approx(0.4)


def test_shape_mismatch_is_an_internal_error():
    from adaptive_trials.errors import ReplicateInvariantError

    spec = _spec()
    with pytest.raises(ReplicateInvariantError, match="shape"):
        reallocate_probs(spec, spec.arms, [0.5, 0.5])


@st.composite
def _bounded_problem(draw):
    n = draw(st.integers(min_value=2, max_value=6))
    unit = st.floats(min_value=0.0, max_value=1.0, allow_nan=False, allow_subnormal=False)
    weights = np.array([draw(unit) for _ in range(n)])
    lo = np.array([draw(unit) * 0.9 / n for _ in range(n)])
    hi = []
    for i in range(n):
        if draw(st.booleans()):
            hi.append(NAN)
        else:
            floor = max(lo[i], 1.0 / n)
            hi.append(floor + draw(unit) * (1.0 - floor))
    lo = np.where(np.array([draw(st.booleans()) for _ in range(n)]), lo, NAN)
    return weights, lo, np.array(hi)


@settings(max_examples=50, deadline=None)
@given(_bounded_problem())
def test_apply_limits_respects_bounds_and_mass(problem):
    weights, lo, hi = problem
    p = apply_limits(weights, lo, hi, 1.0)
    assert p.sum() == pytest.approx(1.0, abs=1e-9)
    lo_eff = np.where(np.isnan(lo), 0.0, lo)
    hi_eff = np.where(np.isnan(hi), 1.0, hi)
    assert np.all(p >= lo_eff - 1e-9)
    assert np.all(p <= hi_eff + 1e-9)


@settings(max_examples=50, deadline=None)
@given(st.lists(st.floats(min_value=0.0, max_value=1.0, allow_nan=False, allow_subnormal=False), min_size=4, max_size=4))
def test_fixed_arm_stays_exact_for_any_probs_best(pb):
    spec = _spec(n_arms=4, fixed_probs=[0.3, NAN, NAN, NAN], min_probs=[NAN, 0.1, NAN, NAN])
    probs = reallocate_probs(spec, spec.arms, pb)
    assert probs[0] == 0.3
    assert probs.sum() == pytest.approx(1.0, abs=1e-9)
    assert probs[1] >= 0.1 - 1e-9
