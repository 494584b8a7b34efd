import math

import numpy as np
import pytest

import indicator_error_model
from indicator_error_model import (
    decompose,
    check_identity,
    identity_factor,
    cross_species_decomposition,
    within_species_decomposition,
    indicator_summary,
    undefined_species,
    contributing_species,
    growth_rate_record,
    policy_mean,
    run_pipeline,
    ModelInputs,
    DecompositionResult,
    Statistic,
    IdentityViolationError,
    ConfigurationError,
    UndefinedStatisticError,
    CROSS_SPECIES,
    WITHIN_SPECIES,
    POPULATION,
    SAMPLE,
)


def test_hand_computed_example():
    res = decompose([1.0, 2.0, 3.0, 4.0], [True, True, False, False], CROSS_SPECIES)
    assert res.n_units == 4 and res.n_sampled == 2
    assert res.sampling_fraction.unwrap() == 0.5
    assert res.mean_difference.unwrap() == pytest.approx(-1.0, abs=1e-15)
    assert res.sd.unwrap() == pytest.approx(math.sqrt(1.25), abs=1e-15)
    assert res.correlation.unwrap() == pytest.approx(-1.0 / math.sqrt(1.25), abs=1e-12)
    assert res.identity_checked
    assert res.identity_error < 1e-12


def test_identity_holds_for_random_data():
    rng = np.random.default_rng(2024)
    for _ in range(50):
        n = int(rng.integers(5, 400))
        y = rng.normal(size=n) * rng.uniform(0.1, 10)
        r = rng.random(n) < rng.uniform(0.05, 0.95)
        r[0], r[1] = True, False
        res = decompose(y, r, WITHIN_SPECIES)
        assert res.identity_checked
        assert res.identity_error < 1e-9
        assert -1.0 <= res.correlation.unwrap() <= 1.0
        assert res.sampling_fraction.unwrap() == r.sum() / n


def test_identity_holds_for_binary_outcome():
    rng = np.random.default_rng(7)
    y = (rng.random(1000) < 0.4).astype(float)
    r = rng.random(1000) < 0.3
    res = decompose(y, r, WITHIN_SPECIES, species="species_01", year=1)
    assert res.identity_checked
    assert res.species == "species_01" and res.year == 1
    assert abs(res.mean_difference.unwrap() - res.identity_rhs.unwrap()) < 1e-9


def test_zero_variance_variable_is_undefined():
    res = decompose(np.zeros(20), np.arange(20) % 3 == 0, WITHIN_SPECIES)
    assert not res.sd.defined
    assert not res.correlation.defined
    assert not res.identity_rhs.defined
    assert res.degenerate and not res.identity_checked
    assert res.identity_error is None
    assert res.mean_difference.unwrap() == 0.0
    assert res.undefined_reason == "zero variance in variable"
    with pytest.raises(UndefinedStatisticError):
        res.sd.unwrap()


def test_no_sampled_units():
    res = decompose([0.1, 0.2, 0.3], [False, False, False], CROSS_SPECIES)
    assert res.sampling_fraction.unwrap() == 0.0
    assert not res.mean_difference.defined
    assert not res.correlation.defined
    assert res.sd.defined
    assert res.degenerate


def test_all_units_sampled():
    res = decompose([0.1, 0.2, 0.3], [True, True, True], CROSS_SPECIES)
    assert res.sampling_fraction.unwrap() == 1.0
    assert res.mean_difference.unwrap() == 0.0
    assert res.correlation.reason == "all units sampled"
    assert res.degenerate


def test_decompose_rejects_bad_input():
    with pytest.raises(ValueError):
        decompose([1.0, 2.0], [True], CROSS_SPECIES)
    with pytest.raises(ValueError):
        decompose([], [], CROSS_SPECIES)
    with pytest.raises(ValueError):
        decompose([1.0, float("nan")], [True, False], CROSS_SPECIES)


def test_identity_factor():
    assert identity_factor(1.0) == 0.0
    assert identity_factor(0.5) == pytest.approx(1.0)
    assert identity_factor(0.2) == pytest.approx(2.0)
    for bad in (0.0, -0.1, 1.5):
        with pytest.raises(ValueError) as exc:
            identity_factor(bad)
        assert not isinstance(exc.value, ConfigurationError)


def test_decompose_raises_when_identity_misses(monkeypatch):
    monkeypatch.setattr(indicator_error_model, "identity_factor", lambda f: 2.0)
    with pytest.raises(IdentityViolationError, match="mean difference"):
        decompose([1.0, 2.0, 3.0, 4.0], [True, True, False, False], CROSS_SPECIES)


def test_check_identity_flags_inconsistent_result():
    good = decompose([1.0, 2.0, 4.0, 8.0], [True, False, True, False], CROSS_SPECIES)
    assert check_identity(good)
    bad = DecompositionResult(
        level=CROSS_SPECIES, species=None, year=None, n_units=4, n_sampled=2,
        mean_difference=Statistic.of(0.5), correlation=Statistic.of(0.2), sd=Statistic.of(1.0),
        sampling_fraction=Statistic.of(0.5), identity_rhs=Statistic.of(0.2),
        identity_checked=True, identity_error=0.3,
    )
    with pytest.raises(IdentityViolationError):
        check_identity(bad)
    degenerate = decompose(np.ones(5), [True, False, True, False, False], CROSS_SPECIES)
    assert check_identity(degenerate) is False


def test_statistic_rejects_non_finite():
    with pytest.raises(ValueError):
        Statistic.of(float("nan"))
    with pytest.raises(ValueError):
        Statistic.of(float("inf"))
    assert math.isnan(Statistic.undefined("x").or_nan())


def test_policy_mean():
    stats = [Statistic.of(1.0), Statistic.undefined("gone"), Statistic.of(3.0)]
    mean, n_undef = policy_mean(stats, "exclude", "test")
    assert mean.unwrap() == 2.0 and n_undef == 1
    mean, n_undef = policy_mean(stats, "undefined", "test")
    assert not mean.defined and n_undef == 1
    mean, _ = policy_mean([], "exclude", "test")
    assert not mean.defined
    with pytest.raises(ValueError):
        policy_mean(stats, "ignore", "test")


def hand_growth_rates():
    year1 = [0.2, 0.4, 0.5, 0.0]
    year2 = [0.3, 0.2, 0.5, 0.1]
    sample1 = [0.25, 0.5, 0.4, 0.2]
    sample2 = [0.5, 0.25, 0.4, 0.1]
    ids = ["species_01", "species_02", "species_03", "species_04"]
    rates = {}
    for j, sp in enumerate(ids):
        rates[(sp, POPULATION)] = growth_rate_record(sp, POPULATION, Statistic.of(year1[j]), Statistic.of(year2[j]))
        rates[(sp, SAMPLE)] = growth_rate_record(sp, SAMPLE, Statistic.of(sample1[j]), Statistic.of(sample2[j]))
    return ids, rates


def test_cross_species_excludes_undefined_species():
    ids, rates = hand_growth_rates()
    included = np.array([True, False, True, True])
    res = cross_species_decomposition(rates, ids, included, policy="exclude")
    assert res.n_units == 3
    assert res.n_sampled == 2
    y = np.array([math.log(1.5), math.log(0.5), 0.0])
    assert res.mean_difference.unwrap() == pytest.approx(y[[0, 2]].mean() - y.mean(), abs=1e-12)
    assert res.identity_checked


def test_cross_species_undefined_policy():
    ids, rates = hand_growth_rates()
    res = cross_species_decomposition(rates, ids, np.array([True, False, True, True]), policy="undefined")
    assert res.degenerate
    assert "species_04" in res.undefined_reason
    assert res.n_units == 4 and res.sampling_fraction.unwrap() == 0.75


def test_indicator_summary_splits_error():
    ids, rates = hand_growth_rates()
    included = np.array([True, False, True, False])
    ind = indicator_summary(rates, ids, included, policy="exclude")
    pop = [math.log(1.5), math.log(0.5), 0.0]
    assert ind.estimand.unwrap() == pytest.approx(np.mean(pop))
    assert ind.estimator.unwrap() == pytest.approx(np.mean([math.log(2.0), 0.0]))
    assert ind.included_population_mean.unwrap() == pytest.approx(np.mean([math.log(1.5), 0.0]))
    assert ind.total_error.unwrap() == pytest.approx(
        ind.cross_species_error.unwrap() + ind.within_species_error.unwrap(), abs=1e-12)
    assert ind.n_included == 2 and ind.n_undefined == 1
    assert ind.estimand_ratio.unwrap() == pytest.approx(math.exp(ind.estimand.unwrap()))

    strict = indicator_summary(rates, ids, included, policy="undefined")
    assert not strict.estimand.defined
    assert not strict.total_error.defined
    assert strict.estimator.defined


def growth_rates_from_means(ids, population, sample):
    rates = {}
    for sp, (p1, p2), (s1, s2) in zip(ids, population, sample):
        rates[(sp, POPULATION)] = growth_rate_record(sp, POPULATION, Statistic.of(p1), Statistic.of(p2))
        rates[(sp, SAMPLE)] = growth_rate_record(sp, SAMPLE, Statistic.of(s1), Statistic.of(s2))
    return rates


def test_indicator_drops_population_undefined_species_from_every_mean():
    ids = ["a", "b", "c"]
    rates = growth_rates_from_means(
        ids,
        population=[(0.2, 0.3), (0.4, 0.2), (0.0, 0.1)],
        sample=[(0.2, 0.3), (0.4, 0.2), (0.25, 0.5)],
    )
    included = np.array([True, True, True])
    ind = indicator_summary(rates, ids, included, policy="exclude")
    assert ind.within_species_error.unwrap() == pytest.approx(0.0, abs=1e-12)
    assert ind.estimator.unwrap() == pytest.approx(np.mean([math.log(1.5), math.log(0.5)]))
    assert ind.n_included == 3 and ind.n_undefined == 1

    cross = cross_species_decomposition(rates, ids, included, policy="exclude")
    assert cross.n_units == 2
    assert cross.mean_difference.unwrap() == pytest.approx(ind.cross_species_error.unwrap(), abs=1e-12)


def test_indicator_treats_sample_undefined_species_as_not_contributing():
    ids = ["a", "b", "c"]
    rates = growth_rates_from_means(
        ids,
        population=[(0.2, 0.3), (0.4, 0.2), (0.5, 0.1)],
        sample=[(0.2, 0.3), (0.4, 0.2), (0.0, 0.1)],
    )
    included = np.array([True, True, True])
    assert undefined_species(rates, ids, included) == ["c"]
    assert contributing_species(rates, ids, included).tolist() == [True, True, False]

    ind = indicator_summary(rates, ids, included, policy="exclude")
    pop = [math.log(1.5), math.log(0.5), math.log(0.2)]
    assert ind.estimand.unwrap() == pytest.approx(np.mean(pop))
    assert ind.included_population_mean.unwrap() == pytest.approx(np.mean(pop[:2]))
    assert ind.within_species_error.unwrap() == pytest.approx(0.0, abs=1e-12)

    cross = cross_species_decomposition(rates, ids, included, policy="exclude")
    assert cross.n_units == 3 and cross.n_sampled == 2
    assert cross.mean_difference.unwrap() == pytest.approx(ind.cross_species_error.unwrap(), abs=1e-12)
    assert cross.identity_checked

    strict = cross_species_decomposition(rates, ids, included, policy="undefined")
    assert strict.degenerate and "c" in strict.undefined_reason


def test_species_undefined_in_both_scopes_counted_once():
    ids = ["a", "b", "c"]
    rates = growth_rates_from_means(
        ids,
        population=[(0.2, 0.3), (0.4, 0.2), (0.0, 0.1)],
        sample=[(0.2, 0.3), (0.4, 0.2), (0.0, 0.1)],
    )
    included = np.array([True, False, True])
    assert undefined_species(rates, ids, included) == ["c"]
    assert indicator_summary(rates, ids, included, policy="exclude").n_undefined == 1
    assert indicator_summary(rates, ids, included, policy="undefined").n_undefined == 1


def test_forced_zero_occupancy_is_flagged_not_fatal():
    res = run_pipeline(ModelInputs(n_sites=200, n_species=3, seed=5))
    occupied = res.occupied.copy()
    occupied[0, :, 0] = False
    within = within_species_decomposition(occupied, res.site_included, res.species_ids, res.years)
    by_key = {(r.species, r.year): r for r in within}
    flagged = by_key[("species_01", 1)]
    assert not flagged.sd.defined
    assert not flagged.correlation.defined
    assert not flagged.identity_checked
    assert flagged.mean_difference.defined
    assert by_key[("species_01", 2)].identity_checked
