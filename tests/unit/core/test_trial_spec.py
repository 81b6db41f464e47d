import dataclasses
import math

import numpy as np
import pytest

from adaptive_trials.core.outcomes import BinomialDraws, BinomialOutcomes
from adaptive_trials.core.spec import (
    ControlPolicy,
    RescalePolicy,
    TrialSpecification,
    setup_trial,
    setup_trial_binom,
    setup_trial_norm,
)
from adaptive_trials.errors import ConfigurationError

NAN = float("nan")


def _base_spec(**overrides):
    kwargs = dict(
        arms=["A", "B", "C"],
        true_ys=[0.25, 0.20, 0.30],
        data_looks=[100, 200, 300],
        n_draws=1000,
    )
    kwargs.update(overrides)
    return setup_trial_binom(**kwargs)


# ---------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------
def test_scalars_are_expanded_to_one_value_per_look():
    spec = _base_spec(superiority=0.98, soften_power=0.5)
    assert spec.superiority == (0.98, 0.98, 0.98)
    assert spec.inferiority == (0.01, 0.01, 0.01)
    assert spec.soften_power == (0.5, 0.5, 0.5)
    assert spec.equivalence_prob is None
    assert spec.randomised_at_looks == spec.data_looks
    assert spec.n_looks == 3
    assert spec.max_n == 300


def test_per_look_sequences_are_kept():
    spec = _base_spec(superiority=[0.99, 0.98, 0.97], inferiority=[0.01, 0.02, 0.03])
    assert spec.superiority == (0.99, 0.98, 0.97)
    assert spec.inferiority == (0.01, 0.02, 0.03)


def test_max_n_and_look_after_every_build_looks():
    spec = _base_spec(data_looks=None, max_n=250, look_after_every=100)
    assert spec.data_looks == (100, 200, 250)


def test_data_looks_and_max_n_are_mutually_exclusive():
    with pytest.raises(ConfigurationError, match="either data_looks or max_n"):
        _base_spec(max_n=300, look_after_every=100)


def test_arms_are_converted_to_strings_and_best_arms_follow_direction():
    spec = setup_trial_binom(arms=[1, 2, 3], true_ys=[0.3, 0.1, 0.1], data_looks=[100], n_draws=1000)
    assert spec.arms == ("1", "2", "3")
    assert spec.best_arms == ("2", "3")
    hib = setup_trial_binom(arms=[1, 2, 3], true_ys=[0.3, 0.1, 0.1], data_looks=[100], highest_is_best=True, n_draws=1000)
    assert hib.best_arms == ("1",)


def test_policy_spellings_are_normalised():
    spec = _base_spec(control="A", control_prob_fixed="sqrt-based fixed")
    assert spec.control_prob_fixed is ControlPolicy.SQRT_BASED_FIXED
    assert _base_spec(rescale_probs=None).rescale_probs is RescalePolicy.NONE


def test_numeric_control_prob_means_fixed_policy():
    spec = _base_spec(control="A", control_prob_fixed=[0.4, 0.5])
    assert spec.control_prob_fixed is ControlPolicy.FIXED
    assert spec.control_prob_values == (0.4, 0.5)
    assert spec.control_pinned_prob(3) == 0.4
    assert spec.control_pinned_prob(2) == 0.5


def test_specification_is_immutable(binom_spec):
    with pytest.raises(dataclasses.FrozenInstanceError):
        binom_spec.arms = ("X", "Y")  # type: ignore[misc]


def test_replace_revalidates(binom_spec):
    spec2 = dataclasses.replace(binom_spec, superiority=0.95)
    assert spec2.superiority == (0.95, 0.95, 0.95)
    with pytest.raises(ConfigurationError, match="superiority"):
        dataclasses.replace(binom_spec, superiority=1.5)


def test_replace_keeps_derived_start_probs_underived():
    spec = _base_spec(control="A", control_prob_fixed="sqrt-based")
    spec2 = dataclasses.replace(spec, n_draws=2000)
    assert spec2.start_probs is None
    assert spec2.initial_probs == pytest.approx(spec.initial_probs)


def test_with_changes_follows_a_new_look_schedule(binom_spec):
    spec2 = binom_spec.with_changes(data_looks=(200, 400, 600, 800))
    assert spec2.data_looks == (200, 400, 600, 800)
    assert spec2.randomised_at_looks == (200, 400, 600, 800)
    assert spec2.superiority == (0.99,) * 4
    assert spec2.soften_power == (1.0,) * 4
    assert spec2.fun_y_gen is binom_spec.fun_y_gen

    spec3 = spec2.with_changes(superiority=0.95)
    assert spec3.data_looks == (200, 400, 600, 800)
    assert spec3.superiority == (0.95,) * 4


def test_with_changes_revalidates(binom_spec):
    with pytest.raises(ConfigurationError, match="superiority"):
        binom_spec.with_changes(superiority=1.5)
    with pytest.raises(ConfigurationError, match="unknown specification field"):
        binom_spec.with_changes(looks=(100, 200))


# ---------------------------------------------------------------------
# Start probabilities
# ---------------------------------------------------------------------
def test_default_start_probs_are_uniform(binom_spec):
    assert binom_spec.initial_probs == pytest.approx((1 / 3, 1 / 3, 1 / 3))


def test_sqrt_based_start_probs():
    spec = _base_spec(control="A", control_prob_fixed="sqrt-based")
    ctrl = math.sqrt(2) / (math.sqrt(2) + 2)
    assert spec.initial_probs[0] == pytest.approx(ctrl)
    assert spec.initial_probs[1] == pytest.approx((1 - ctrl) / 2)
    assert sum(spec.initial_probs) == pytest.approx(1.0)


def test_fixed_arm_start_prob_is_exact():
    spec = _base_spec(arms=["A", "B", "C", "D"], true_ys=[0.2] * 4, fixed_probs=[0.3, NAN, NAN, NAN])
    assert spec.initial_probs[0] == 0.3
    assert spec.initial_probs[1] == pytest.approx(0.7 / 3)


def test_user_start_probs_are_kept():
    spec = _base_spec(start_probs=[0.5, 0.25, 0.25])
    assert spec.initial_probs == (0.5, 0.25, 0.25)


def test_sqrt_based_start_keeps_limits_on_other_arms():
    spec = _base_spec(control="A", control_prob_fixed="sqrt-based-start", min_probs=[NAN, 0.25, 0.25])
    ctrl = math.sqrt(2) / (math.sqrt(2) + 2)
    assert spec.initial_probs[0] == pytest.approx(ctrl)
    assert min(spec.initial_probs[1:]) >= 0.25


# ---------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------
@pytest.mark.parametrize(
    "overrides, match",
    [
        (dict(arms=["A", "A", "B"]), "unique"),
        (dict(arms=["A"], true_ys=[0.2]), "at least two arms"),
        (dict(true_ys=[0.2, 0.3]), "one value per arm"),
        (dict(control="Z"), "not one of arms"),
        (dict(data_looks=[100, 100, 300]), "strictly increasing"),
        (dict(data_looks=[100, 200.5, 300]), "whole number"),
        (dict(randomised_at_looks=[90, 200, 300]), "smaller than data_looks"),
        (dict(randomised_at_looks=[100, 300]), "same length"),
        (dict(superiority=[0.95, 0.99, 0.99]), "non-increasing"),
        (dict(inferiority=[0.02, 0.01, 0.01]), "non-decreasing"),
        (dict(superiority=[0.99, 0.98]), "one value per look"),
        (dict(superiority=1.01), r"superiority\[0\] must be in \[0,1\]"),
        (dict(inferiority=0.5), "1/len\\(arms\\)"),
        (dict(futility_prob=0.9, futility_diff=0.1, futility_only_first=True), "requires a common control"),
        (dict(control="A", futility_prob=0.9, futility_only_first=True), "futility_diff"),
        (dict(control="A", futility_prob=0.9, futility_diff=0.1), "futility_only_first"),
        (dict(equivalence_prob=0.9), "equivalence_diff"),
        (dict(control="A", equivalence_prob=0.9, equivalence_diff=0.1), "equivalence_only_first"),
        (dict(equivalence_only_first=True), "equivalence_only_first requires"),
        (dict(soften_power=1.5), "soften_power"),
        (dict(highest_is_best=0), "highest_is_best"),
        (dict(cri_width=1.0), "cri_width"),
        (dict(n_draws=50), "n_draws"),
        (dict(robust="yes"), "robust"),
        (dict(description=3), "description"),
    ],
)
def test_invalid_specifications_raise(overrides, match):
    with pytest.raises(ConfigurationError, match=match):
        _base_spec(**overrides)


@pytest.mark.parametrize(
    "overrides, match",
    [
        (dict(fixed_probs=[1.2, NAN, NAN]), "fixed_probs"),
        (dict(fixed_probs=[0.3, NAN, NAN], min_probs=[0.1, NAN, NAN]), "cannot also have"),
        (dict(min_probs=[0.4, NAN, NAN], max_probs=[0.3, NAN, NAN]), "must not exceed"),
        (dict(fixed_probs=[0.5, NAN, NAN], min_probs=[NAN, 0.3, 0.3]), "infeasible"),
        (dict(max_probs=[0.2, 0.2, 0.2]), "infeasible"),
        (dict(control_prob_fixed="sqrt-based"), "requires a common control"),
        (dict(control="A", control_prob_fixed="sqrt-based", start_probs=[0.4, 0.3, 0.3]), "start_probs cannot"),
        (dict(control="A", control_prob_fixed="match", fixed_probs=[0.3, NAN, NAN]), "control arm"),
        (dict(control="A", control_prob_fixed="sqrt-based-fixed", fixed_probs=[NAN, 0.3, NAN]), "fixed_probs"),
        (dict(control="A", control_prob_fixed="sqrt-based", min_probs=[0.2, NAN, NAN]), "min/max_probs"),
        (dict(control="A", control_prob_fixed="sqrt-based-start", min_probs=[0.5, NAN, NAN]), "min/max_probs"),
        (dict(control="A", control_prob_fixed="sqrt-based-start", max_probs=[0.3, NAN, NAN]), "min/max_probs"),
        (dict(control="A", control_prob_fixed="match", fixed_probs=[NAN, 0.4, NAN]), "cannot be combined with fixed_probs"),
        (dict(control="A", control_prob_fixed=[0.3, 0.4, 0.5]), "len\\(arms\\) - 1"),
        (dict(control="A", control_prob_fixed="bogus"), "control_prob_fixed must be one of"),
        (dict(arms=["A", "B"], true_ys=[0.2, 0.3], rescale_probs="limits", min_probs=[0.2, 0.2]), "at least three arms"),
        (dict(rescale_probs="fixed"), "requires fixed_probs"),
        (dict(rescale_probs="limits"), "requires min_probs/max_probs"),
        (dict(rescale_probs="everything"), "rescale_probs must be one of"),
        (dict(start_probs=[0.5, 0.3, 0.3]), "sum to 1"),
        (dict(start_probs=[0.5, 0.5]), "one non-missing value per arm"),
        (dict(start_probs=[0.5, 0.25, 0.25], min_probs=[NAN, 0.3, NAN]), "within min_probs/max_probs"),
        (dict(start_probs=[0.4, 0.3, 0.3], fixed_probs=[0.3, NAN, NAN]), "equal fixed_probs"),
    ],
)
def test_invalid_allocation_constraints_raise(overrides, match):
    with pytest.raises(ConfigurationError, match=match):
        _base_spec(**overrides)


def test_few_draws_warns():
    with pytest.warns(UserWarning, match="n_draws"):
        _base_spec(n_draws=500)


def test_binomial_true_ys_must_be_probabilities():
    with pytest.raises(ConfigurationError, match="probabilities"):
        _base_spec(true_ys=[0.2, 1.2, 0.3])


def test_binomial_diff_margins_below_one():
    with pytest.raises(ConfigurationError, match="equivalence_diff"):
        _base_spec(equivalence_prob=0.9, equivalence_diff=2)


def test_normal_trial_requires_positive_sds():
    with pytest.raises(ConfigurationError, match="sds"):
        setup_trial_norm(arms=["A", "B"], true_ys=[0, 1], sds=[1, -1], data_looks=[100], n_draws=1000)
    spec = setup_trial_norm(arms=["A", "B"], true_ys=[0, 1], sds=2, data_looks=[100], n_draws=1000)
    assert spec.fun_y_gen.sds.tolist() == [2.0, 2.0]


# ---------------------------------------------------------------------
# Pluggable function probe
# ---------------------------------------------------------------------
def test_probe_rejects_wrong_outcome_length():
    with pytest.raises(ConfigurationError, match="fun_y_gen"):
        setup_trial(
            ["A", "B"],
            [0.2, 0.3],
            lambda allocs, rng: np.zeros(3),
            BinomialDraws(),
            data_looks=[100],
            n_draws=1000,
        )


def test_probe_rejects_degenerate_draws():
    def constant_draws(arms, allocs, ys, control, n_draws, rng):
        return np.ones((n_draws, len(arms)))

    with pytest.raises(ConfigurationError, match="zero-variance"):
        setup_trial(
            ["A", "B"],
            [0.2, 0.3],
            BinomialOutcomes(["A", "B"], [0.2, 0.3]),
            constant_draws,
            data_looks=[100],
            n_draws=1000,
        )


def test_probe_wraps_arbitrary_exceptions():
    def broken(allocs, rng):
        raise KeyError("boom")

    with pytest.raises(ConfigurationError, match="construction probe"):
        setup_trial(["A", "B"], [0.2, 0.3], broken, BinomialDraws(), data_looks=[100], n_draws=1000)


def test_non_callable_generator_rejected():
    with pytest.raises(ConfigurationError, match="callable"):
        TrialSpecification(
            arms=("A", "B"),
            true_ys=(0.2, 0.3),
            fun_y_gen="not a function",
            fun_draws=BinomialDraws(),
            data_looks=(100,),
            n_draws=1000,
        )
