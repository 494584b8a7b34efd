#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Synthetic Landscape & Species Community Model for Quantifying the Error of a
Sample-Based Multispecies Biodiversity Indicator

--------------------------------------------------------------------
WHAT THE MODEL DOES
--------------------------------------------------------------------
A) Generative pipeline (sites x two years x species, complete grid)
   1) A continuous site covariate: baseline ~ N(0, 1), follow-up = baseline + N(0, drift_sd).
      A noisy *proxy* of the covariate per year: rho * x + sqrt(1 - rho^2) * e.
   2) Site-year inclusion ~ Bernoulli(logistic(b0 + b_year*year + b_cov*x + b_int*year*x)).
      One draw per site-year, shared by every species.
   3) Species parameters (intercept, year effect, covariate sensitivity) drawn once per species
      from uniform ranges; occupancy ~ Bernoulli(logistic(a + b*year + c*x)) per species/site/year.
      The covariate drives both inclusion and occupancy, so the sample is biased by construction.
   4) Species inclusion ~ Bernoulli(logistic(a0 + a_trait*trait)), where the trait is the
      covariate sensitivity; a trait proxy = trait + N(0, trait_proxy_sd) models imperfect
      measurement of that trait.

B) Decomposition engine
   For a variable Y over N units with inclusion indicator R and sampling fraction f = n/N:

       mean(Y | R=1) - mean(Y) = corr(R, Y) * sd(Y) * sqrt((1 - f) / f)

   - data-defect correlation corr(R, Y), problem difficulty sd(Y), data quantity f.
   - Cross-species level: unit = species, Y = population log growth rate, R = species inclusion.
   - Within-species level: unit = site, Y = occupancy, R = site inclusion, per species and year.
   Every non-degenerate result is cross-checked against the identity; a mismatch beyond the
   tolerance is an internal consistency failure and raises.

C) Indicator & outputs
   - Multispecies indicator = mean log growth rate across species (geometric mean growth).
   - Estimand (all species, all sites) vs. estimator (sampled species, sampled sites) and the
     error split into cross-species and within-species parts.
   - pandas tables for sites, species, occupancy, growth rates and decompositions.
   - Optional plots, JSON summary, CSV tables, per-species explanation, what-if sensitivity.

D) Reproducibility
   - One seed, expanded with numpy SeedSequence into keyed sub-streams
     (seed, stage, unit). Species never share a stream, so evaluation order does not matter.
   - Degenerate statistics are tagged (value present/absent with a reason), never NaN.

--------------------------------------------------------------------
ASSUMPTIONS & SCOPE
--------------------------------------------------------------------
- Exactly two survey years; growth rate = mean occupancy in year 2 / mean occupancy in year 1.
- Year labels enter the linear predictors as numbers (default 1 and 2).
- Population moments throughout (sd with ddof=0), which is what makes the identity exact.
- Synthetic data only; no fitting to real observations and no irregular site-year structures.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

LOG = logging.getLogger(__name__)


# ----------------------------
# CONFIGURABLE CONSTANTS
# ----------------------------

DEFAULT_N_SITES: int = 1000
DEFAULT_N_SPECIES: int = 20
DEFAULT_YEARS: Tuple[int, int] = (1, 2)
DEFAULT_DRIFT_SD: float = 0.3           # Year-to-year covariate drift.
DEFAULT_RHO: float = 0.5                # Correlation of the covariate proxy with the truth.
DEFAULT_TRAIT_PROXY_SD: float = 0.05    # Measurement noise on the species trait.
DEFAULT_TOLERANCE: float = 1e-9         # Absolute tolerance of the identity check.

# Site-year inclusion: logistic(intercept + year*Y + covariate*X + interaction*Y*X).
SITE_COEF_KEYS: Tuple[str, ...] = ("intercept", "year", "covariate", "interaction")
DEFAULT_SITE_COEFS: Dict[str, float] = {
    "intercept": -2.0,
    "year": 0.5,
    "covariate": 1.0,
    "interaction": 0.5,
}

# Species inclusion: logistic(intercept + trait*T), T = covariate sensitivity.
SPECIES_COEF_KEYS: Tuple[str, ...] = ("intercept", "trait")
DEFAULT_SPECIES_COEFS: Dict[str, float] = {
    "intercept": 0.0,
    "trait": 2.0,
}

# Uniform ranges for per-species occupancy parameters. The year-effect range spans zero so the
# community holds both declining and increasing species.
DEFAULT_INTERCEPT_RANGE: Tuple[float, float] = (-1.0, 1.0)
DEFAULT_YEAR_EFFECT_RANGE: Tuple[float, float] = (-0.5, 0.5)
DEFAULT_SENSITIVITY_RANGE: Tuple[float, float] = (-1.0, 1.0)

POPULATION: str = "population"
SAMPLE: str = "sample"
SCOPES: Tuple[str, ...] = (POPULATION, SAMPLE)

CROSS_SPECIES: str = "cross_species"
WITHIN_SPECIES: str = "within_species"

# "exclude": drop species with an undefined log growth rate from aggregates (and log it).
# "undefined": any undefined member makes the aggregate undefined.
UNDEFINED_POLICIES: Tuple[str, ...] = ("exclude", "undefined")
DEFAULT_UNDEFINED_POLICY: str = "exclude"

# Sub-stream keys; never reorder, existing seeds would change meaning.
STAGE_COVARIATE: int = 0
STAGE_COVARIATE_PROXY: int = 1
STAGE_SITE_INCLUSION: int = 2
STAGE_SPECIES_PARAMS: int = 3
STAGE_OCCUPANCY: int = 4
STAGE_SPECIES_INCLUSION: int = 5
STAGE_TRAIT_PROXY: int = 6


# ----------------------------
# ERRORS
# ----------------------------

class ConfigurationError(ValueError):
    """Invalid model configuration, rejected before any simulation runs."""


class UndefinedStatisticError(ArithmeticError):
    """Raised when the value of an undefined statistic is requested."""


class IdentityViolationError(RuntimeError):
    """The decomposition identity failed beyond floating-point tolerance (implementation bug)."""


# ----------------------------
# TAGGED STATISTICS
# ----------------------------

@dataclass(frozen=True)
class Statistic:
    """A statistic that is either present (`value`) or explicitly undefined (`reason`).

    Aggregation code must go through `defined` / `unwrap()`; `or_nan()` exists only for
    rendering tables and plots.
    """
    value: Optional[float] = None
    reason: Optional[str] = None

    @classmethod
    def of(cls, value: float) -> "Statistic":
        v = float(value)
        if not math.isfinite(v):
            raise ValueError(f"Statistic values must be finite, got {v!r}; tag it undefined instead.")
        return cls(value=v)

    @classmethod
    def undefined(cls, reason: str) -> "Statistic":
        return cls(value=None, reason=reason)

    @property
    def defined(self) -> bool:
        return self.value is not None

    def unwrap(self) -> float:
        if self.value is None:
            raise UndefinedStatisticError(self.reason or "undefined statistic")
        return self.value

    def or_nan(self) -> float:
        return float("nan") if self.value is None else self.value


def difference(a: Statistic, b: Statistic) -> Statistic:
    """a - b, undefined if either side is."""
    if not a.defined:
        return Statistic.undefined(a.reason or "undefined minuend")
    if not b.defined:
        return Statistic.undefined(b.reason or "undefined subtrahend")
    return Statistic.of(a.unwrap() - b.unwrap())


def policy_mean(stats: Sequence[Statistic], policy: str, label: str) -> Tuple[Statistic, int]:
    """Mean of tagged values under the undefined-value policy.

    Returns (mean, number of undefined members).
    """
    if policy not in UNDEFINED_POLICIES:
        raise ValueError(f"Unknown undefined_policy '{policy}'. Allowed: {UNDEFINED_POLICIES}")
    values = [s.unwrap() for s in stats if s.defined]
    n_undefined = len(stats) - len(values)
    if n_undefined and policy == "undefined":
        return Statistic.undefined(f"{n_undefined} undefined value(s) in {label}"), n_undefined
    if n_undefined:
        LOG.warning("Excluding %d species with undefined log growth rate from %s", n_undefined, label)
    if not values:
        return Statistic.undefined(f"no defined values in {label}"), n_undefined
    return Statistic.of(np.mean(values)), n_undefined


# ----------------------------
# UTILS
# ----------------------------

def parse_keyvals(spec: Optional[str],
                  allowed_keys: Optional[Tuple[str, ...]] = None) -> Dict[str, float]:
    """Parse comma/semicolon-separated `key=value` pairs into a float dict.

    Example: "intercept=-2,covariate=1.5".
    Unknown keys are rejected if `allowed_keys` is provided.
    """
    if not spec:
        return {}
    parts = re.split(r"[;,]\s*", spec.strip())
    out: Dict[str, float] = {}
    for p in parts:
        if not p:
            continue
        if "=" not in p:
            raise ValueError(f"Expected 'key=value' pairs, got '{p}'.")
        k, v = p.split("=", 1)
        key = k.strip().lower()
        if allowed_keys and key not in allowed_keys:
            raise ValueError(f"Unknown key '{key}'. Allowed: {allowed_keys}")
        try:
            val = float(v.strip())
        except ValueError:
            raise ValueError(f"Value for '{key}' must be numeric, got '{v}'.")
        out[key] = val
    return out


def parse_range(spec: str) -> Tuple[float, float]:
    """Parse "lo,hi" into a (lo, hi) float pair."""
    parts = [p.strip() for p in re.split(r"[;,]", spec.strip()) if p.strip()]
    if len(parts) != 2:
        raise ValueError(f"Expected a range 'lo,hi', got '{spec}'.")
    try:
        lo, hi = float(parts[0]), float(parts[1])
    except ValueError:
        raise ValueError(f"Range bounds must be numeric, got '{spec}'.")
    return lo, hi


def parse_years(spec: str) -> Tuple[int, ...]:
    """Parse "1,2" into a tuple of integer year labels."""
    parts = [p.strip() for p in re.split(r"[;,]", spec.strip()) if p.strip()]
    try:
        return tuple(int(p) for p in parts)
    except ValueError:
        raise ValueError(f"Year labels must be integers, got '{spec}'.")


def logistic(eta: np.ndarray) -> np.ndarray:
    """Sigmoid 1 / (1 + exp(-eta)), written via tanh so large |eta| cannot overflow."""
    return 0.5 * (1.0 + np.tanh(0.5 * np.asarray(eta, dtype=float)))


def stage_rng(entropy: int, stage: int, unit: int = 0) -> np.random.Generator:
    """Independent generator keyed by (entropy, stage, unit)."""
    return np.random.default_rng(np.random.SeedSequence([int(entropy), int(stage), int(unit)]))


def draw_bernoulli(p: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Element-wise Bernoulli(p) draws as a boolean array of the same shape."""
    p = np.asarray(p, dtype=float)
    return rng.random(p.shape) < p


def pearson(a: np.ndarray, b: np.ndarray) -> Statistic:
    """Pearson correlation with population moments, clipped to [-1, 1].

    Undefined when either input is constant or has fewer than two elements.
    """
    x = np.asarray(a, dtype=float).ravel()
    y = np.asarray(b, dtype=float).ravel()
    if x.shape != y.shape:
        raise ValueError(f"Shape mismatch: {x.shape} vs {y.shape}.")
    if x.size < 2:
        return Statistic.undefined("fewer than two units")
    if np.ptp(x) == 0 or np.ptp(y) == 0:
        return Statistic.undefined("zero variance")
    dx = x - x.mean()
    dy = y - y.mean()
    r = float(np.mean(dx * dy) / (x.std() * y.std()))
    return Statistic.of(min(1.0, max(-1.0, r)))


def identity_factor(f: float) -> float:
    """sqrt((1 - f) / f), the data-quantity term of the identity. f must be in (0, 1].

    f is always derived from drawn inclusion indicators, never configured, so an out-of-range
    value is a caller bug and raises a plain ValueError rather than a ConfigurationError.
    """
    f = float(f)
    if not (0.0 < f <= 1.0):
        raise ValueError(f"Sampling fraction must be in (0, 1], got {f}.")
    return math.sqrt((1.0 - f) / f)


def species_labels(n_species: int) -> List[str]:
    width = max(2, len(str(n_species)))
    return [f"species_{j + 1:0{width}d}" for j in range(n_species)]


# ----------------------------
# DATA CLASSES
# ----------------------------

@dataclass
class ModelInputs:
    """Configuration for a single run of the pipeline.

    Most fields map directly to CLI flags. Validated on construction; an invalid
    configuration raises `ConfigurationError` before anything is simulated.
    """
    n_sites: int = DEFAULT_N_SITES
    n_species: int = DEFAULT_N_SPECIES
    years: Tuple[int, ...] = DEFAULT_YEARS
    drift_sd: float = DEFAULT_DRIFT_SD
    site_coefs: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_SITE_COEFS))
    intercept_range: Tuple[float, float] = DEFAULT_INTERCEPT_RANGE
    year_effect_range: Tuple[float, float] = DEFAULT_YEAR_EFFECT_RANGE
    sensitivity_range: Tuple[float, float] = DEFAULT_SENSITIVITY_RANGE
    species_coefs: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_SPECIES_COEFS))
    covariate_proxy_rho: float = DEFAULT_RHO
    trait_proxy_sd: float = DEFAULT_TRAIT_PROXY_SD
    seed: Optional[int] = None
    identity_tolerance: float = DEFAULT_TOLERANCE
    undefined_policy: str = DEFAULT_UNDEFINED_POLICY

    def __post_init__(self) -> None:
        validate_inputs(self)


def _is_int(x) -> bool:
    return isinstance(x, (int, np.integer)) and not isinstance(x, bool)


def _check_finite(name: str, value) -> None:
    try:
        ok = math.isfinite(float(value))
    except (TypeError, ValueError):
        ok = False
    if not ok:
        raise ConfigurationError(f"{name} must be a finite number, got {value!r}.")


def _check_coefs(name: str, coefs: Dict[str, float], keys: Tuple[str, ...]) -> None:
    if set(coefs) != set(keys):
        raise ConfigurationError(f"{name} must have exactly the keys {keys}, got {tuple(coefs)}.")
    for k in keys:
        _check_finite(f"{name}[{k}]", coefs[k])


def _check_range(name: str, bounds: Tuple[float, float]) -> None:
    if len(bounds) != 2:
        raise ConfigurationError(f"{name} must be a (lo, hi) pair, got {bounds!r}.")
    lo, hi = bounds
    _check_finite(f"{name} lower bound", lo)
    _check_finite(f"{name} upper bound", hi)
    if lo > hi:
        raise ConfigurationError(f"{name} is reversed: lo={lo} > hi={hi}.")


def validate_inputs(inputs: ModelInputs) -> None:
    """Reject invalid configurations with a helpful message."""
    if not _is_int(inputs.n_sites) or inputs.n_sites < 1:
        raise ConfigurationError(f"n_sites must be a positive integer, got {inputs.n_sites!r}.")
    if not _is_int(inputs.n_species) or inputs.n_species < 1:
        raise ConfigurationError(f"n_species must be a positive integer, got {inputs.n_species!r}.")

    years = tuple(inputs.years)
    if len(years) != 2 or not all(_is_int(y) for y in years):
        raise ConfigurationError(f"years must be exactly two integer labels, got {inputs.years!r}.")
    if years[0] >= years[1]:
        raise ConfigurationError(f"years must be strictly increasing, got {inputs.years!r}.")

    for name in ("drift_sd", "trait_proxy_sd"):
        val = getattr(inputs, name)
        _check_finite(name, val)
        if float(val) < 0:
            raise ConfigurationError(f"{name} must be >= 0, got {val}.")

    _check_finite("covariate_proxy_rho", inputs.covariate_proxy_rho)
    if not (0.0 <= float(inputs.covariate_proxy_rho) <= 1.0):
        raise ConfigurationError(f"covariate_proxy_rho must be in [0, 1], got {inputs.covariate_proxy_rho}.")

    _check_coefs("site_coefs", inputs.site_coefs, SITE_COEF_KEYS)
    _check_coefs("species_coefs", inputs.species_coefs, SPECIES_COEF_KEYS)
    _check_range("intercept_range", inputs.intercept_range)
    _check_range("year_effect_range", inputs.year_effect_range)
    _check_range("sensitivity_range", inputs.sensitivity_range)

    _check_finite("identity_tolerance", inputs.identity_tolerance)
    if float(inputs.identity_tolerance) <= 0:
        raise ConfigurationError(f"identity_tolerance must be > 0, got {inputs.identity_tolerance}.")
    if inputs.undefined_policy not in UNDEFINED_POLICIES:
        raise ConfigurationError(
            f"undefined_policy must be one of {UNDEFINED_POLICIES}, got '{inputs.undefined_policy}'."
        )
    if inputs.seed is not None and (not _is_int(inputs.seed) or inputs.seed < 0):
        raise ConfigurationError(f"seed must be a non-negative integer or None, got {inputs.seed!r}.")


@dataclass(frozen=True)
class SpeciesParameters:
    """Per-species occupancy parameters, arrays of length S.

    `sensitivity` doubles as the species trait that drives species inclusion.
    """
    intercept: np.ndarray
    year_effect: np.ndarray
    sensitivity: np.ndarray

    @property
    def n_species(self) -> int:
        return int(self.intercept.shape[0])


@dataclass(frozen=True)
class GrowthRateRecord:
    """Growth of mean occupancy between the two years for one (species, scope)."""
    species: str
    scope: str
    mean_year1: Statistic
    mean_year2: Statistic
    growth_rate: Statistic
    log_growth_rate: Statistic

    @property
    def undefined_reason(self) -> Optional[str]:
        for stat in (self.mean_year1, self.mean_year2, self.growth_rate, self.log_growth_rate):
            if not stat.defined:
                return stat.reason
        return None


@dataclass(frozen=True)
class DecompositionResult:
    """One evaluation of the identity over a set of units.

    `identity_checked` is False when any term is undefined (degenerate unit set);
    otherwise `identity_error` holds |mean_difference - identity_rhs|.
    """
    level: str
    species: Optional[str]
    year: Optional[int]
    n_units: int
    n_sampled: int
    mean_difference: Statistic
    correlation: Statistic
    sd: Statistic
    sampling_fraction: Statistic
    identity_rhs: Statistic
    identity_checked: bool
    identity_error: Optional[float] = None

    @property
    def degenerate(self) -> bool:
        return not self.identity_checked

    @property
    def undefined_reason(self) -> Optional[str]:
        for stat in (self.sampling_fraction, self.mean_difference, self.sd, self.correlation,
                     self.identity_rhs):
            if not stat.defined:
                return stat.reason
        return None


@dataclass(frozen=True)
class IndicatorSummary:
    """Multispecies indicator (mean log growth rate) for the population and the sample.

    total_error = estimator - estimand = cross_species_error + within_species_error.
    """
    estimand: Statistic                  # all species, population scope
    estimator: Statistic                 # included species, sample scope
    included_population_mean: Statistic  # included species, population scope
    total_error: Statistic
    cross_species_error: Statistic
    within_species_error: Statistic
    n_species: int
    n_included: int
    n_undefined: int

    @property
    def estimand_ratio(self) -> Statistic:
        """Geometric mean growth rate of the population."""
        return Statistic.of(math.exp(self.estimand.unwrap())) if self.estimand.defined else self.estimand

    @property
    def estimator_ratio(self) -> Statistic:
        return Statistic.of(math.exp(self.estimator.unwrap())) if self.estimator.defined else self.estimator


@dataclass
class PipelineResults:
    """Outputs from a single run of the pipeline.

    Array shapes: sites x years for site arrays, species x sites x years for occupancy.
    """
    inputs: ModelInputs
    entropy: int                                # seed actually used (recorded when inputs.seed is None)
    site_ids: np.ndarray                        # (N,)
    years: Tuple[int, ...]
    covariate: np.ndarray                       # (N, T)
    covariate_proxy: np.ndarray                 # (N, T)
    site_inclusion_prob: np.ndarray             # (N, T)
    site_included: np.ndarray                   # (N, T) bool
    species_ids: List[str]
    species_params: SpeciesParameters
    trait_proxy: np.ndarray                     # (S,)
    species_inclusion_prob: np.ndarray          # (S,)
    species_included: np.ndarray                # (S,) bool
    occupancy_prob: np.ndarray                  # (S, N, T)
    occupied: np.ndarray                        # (S, N, T) bool
    growth_rates: Dict[Tuple[str, str], GrowthRateRecord]
    cross_species: DecompositionResult
    within_species: List[DecompositionResult]
    indicator: IndicatorSummary


# ----------------------------
# COVARIATES & PROXIES
# ----------------------------

def generate_covariates(n_sites: int, n_years: int, drift_sd: float,
                        rng: np.random.Generator) -> np.ndarray:
    """Baseline ~ N(0, 1) per site; each later year adds independent N(0, drift_sd) drift."""
    x = np.empty((n_sites, n_years), dtype=float)
    x[:, 0] = rng.standard_normal(n_sites)
    for t in range(1, n_years):
        x[:, t] = x[:, t - 1] + rng.normal(0.0, drift_sd, size=n_sites)
    return x


def covariate_proxy(covariate: np.ndarray, rho: float, rng: np.random.Generator) -> np.ndarray:
    """Proxy = rho * x + sqrt(1 - rho^2) * e with fresh noise per element.

    For a standard-normal covariate the proxy correlates with it at rho in expectation;
    rho=1 returns the covariate itself.
    """
    noise = rng.standard_normal(np.shape(covariate))
    return rho * np.asarray(covariate, dtype=float) + math.sqrt(1.0 - rho * rho) * noise


def trait_proxy(trait: np.ndarray, noise_sd: float, rng: np.random.Generator) -> np.ndarray:
    """Trait as an analyst would measure it: trait + N(0, noise_sd)."""
    trait = np.asarray(trait, dtype=float)
    return trait + rng.normal(0.0, noise_sd, size=trait.shape)


def proxy_diagnostics(true_values: np.ndarray, proxy_values: np.ndarray) -> Dict[str, Statistic]:
    """Observed-vs-true comparison used by the plots and the JSON summary."""
    t = np.asarray(true_values, dtype=float).ravel()
    p = np.asarray(proxy_values, dtype=float).ravel()
    return {
        "correlation": pearson(t, p),
        "mean_true": Statistic.of(t.mean()),
        "mean_proxy": Statistic.of(p.mean()),
        "sd_true": Statistic.of(t.std()),
        "sd_proxy": Statistic.of(p.std()),
    }


# ----------------------------
# SITE INCLUSION
# ----------------------------

def site_inclusion_probability(covariate: np.ndarray, years: Sequence[int],
                               coefs: Dict[str, float]) -> np.ndarray:
    """Inclusion probability per site-year from the logistic model on covariate and year."""
    year = np.asarray(years, dtype=float)[None, :]
    x = np.asarray(covariate, dtype=float)
    eta = (coefs["intercept"]
           + coefs["year"] * year
           + coefs["covariate"] * x
           + coefs["interaction"] * year * x)
    return logistic(eta)


# ----------------------------
# SPECIES & OCCUPANCY
# ----------------------------

def draw_species_parameters(intercept_range: Tuple[float, float],
                            year_effect_range: Tuple[float, float],
                            sensitivity_range: Tuple[float, float],
                            streams: Sequence[np.random.Generator]) -> SpeciesParameters:
    """Draw (intercept, year effect, sensitivity) once per species, one stream per species."""
    draws = np.array([
        (rng.uniform(*intercept_range), rng.uniform(*year_effect_range), rng.uniform(*sensitivity_range))
        for rng in streams
    ], dtype=float).reshape(len(streams), 3)
    return SpeciesParameters(intercept=draws[:, 0], year_effect=draws[:, 1], sensitivity=draws[:, 2])


def occupancy_probability(params: SpeciesParameters, covariate: np.ndarray,
                          years: Sequence[int]) -> np.ndarray:
    """logistic(a + b*year + c*x) for every species, site and year; shape (S, N, T)."""
    year = np.asarray(years, dtype=float)[None, None, :]
    x = np.asarray(covariate, dtype=float)[None, :, :]
    eta = (params.intercept[:, None, None]
           + params.year_effect[:, None, None] * year
           + params.sensitivity[:, None, None] * x)
    return logistic(eta)


def simulate_occupancy(probability: np.ndarray, streams: Sequence[np.random.Generator]) -> np.ndarray:
    """Bernoulli occupancy per species; species j only ever consumes streams[j]."""
    if len(streams) != probability.shape[0]:
        raise ValueError(f"Need one stream per species: {len(streams)} streams, {probability.shape[0]} species.")
    occupied = np.empty(probability.shape, dtype=bool)
    for j, rng in enumerate(streams):
        occupied[j] = draw_bernoulli(probability[j], rng)
    return occupied


def species_inclusion_probability(trait: np.ndarray, coefs: Dict[str, float]) -> np.ndarray:
    return logistic(coefs["intercept"] + coefs["trait"] * np.asarray(trait, dtype=float))


# ----------------------------
# GROWTH RATES
# ----------------------------

def scope_mean(occupied: np.ndarray, mask: Optional[np.ndarray] = None) -> Statistic:
    """Mean occupancy over all sites (mask=None) or over the sites selected by `mask`."""
    occupied = np.asarray(occupied, dtype=bool)
    if mask is None:
        return Statistic.of(occupied.mean())
    mask = np.asarray(mask, dtype=bool)
    if not mask.any():
        return Statistic.undefined("no sampled sites")
    return Statistic.of(occupied[mask].mean())


def growth_rate_record(species: str, scope: str, mean_year1: Statistic,
                       mean_year2: Statistic) -> GrowthRateRecord:
    """Growth = year-2 mean / year-1 mean; log growth = ln(growth). Degenerate cases are tagged."""
    if not mean_year1.defined or not mean_year2.defined:
        reason = mean_year1.reason if not mean_year1.defined else mean_year2.reason
        reason = f"{reason} in year {1 if not mean_year1.defined else 2}"
        growth = log_growth = Statistic.undefined(reason)
    elif mean_year1.unwrap() == 0.0:
        growth = log_growth = Statistic.undefined("year-1 mean occupancy is zero")
    else:
        g = mean_year2.unwrap() / mean_year1.unwrap()
        growth = Statistic.of(g)
        log_growth = Statistic.of(math.log(g)) if g > 0 else Statistic.undefined("growth rate is zero")
    return GrowthRateRecord(
        species=species,
        scope=scope,
        mean_year1=mean_year1,
        mean_year2=mean_year2,
        growth_rate=growth,
        log_growth_rate=log_growth,
    )


def compute_growth_rates(occupied: np.ndarray, site_included: np.ndarray,
                         species_ids: Sequence[str]) -> Dict[Tuple[str, str], GrowthRateRecord]:
    """Population- and sample-scope growth records keyed by (species, scope)."""
    out: Dict[Tuple[str, str], GrowthRateRecord] = {}
    for j, sp in enumerate(species_ids):
        pop = [scope_mean(occupied[j, :, t]) for t in range(2)]
        smp = [scope_mean(occupied[j, :, t], site_included[:, t]) for t in range(2)]
        out[(sp, POPULATION)] = growth_rate_record(sp, POPULATION, pop[0], pop[1])
        out[(sp, SAMPLE)] = growth_rate_record(sp, SAMPLE, smp[0], smp[1])
        for scope in SCOPES:
            reason = out[(sp, scope)].undefined_reason
            if reason:
                LOG.warning("Undefined %s growth rate for %s: %s", scope, sp, reason)
    return out


# ----------------------------
# ERROR DECOMPOSITION
# ----------------------------

def undefined_decomposition(level: str, reason: str, n_units: int = 0, n_sampled: int = 0,
                            species: Optional[str] = None, year: Optional[int] = None) -> DecompositionResult:
    undef = Statistic.undefined(reason)
    frac = Statistic.of(n_sampled / n_units) if n_units else undef
    return DecompositionResult(
        level=level, species=species, year=year, n_units=n_units, n_sampled=n_sampled,
        mean_difference=undef, correlation=undef, sd=undef, sampling_fraction=frac,
        identity_rhs=undef, identity_checked=False,
    )


def decompose(values: np.ndarray, included: np.ndarray, level: str,
              species: Optional[str] = None, year: Optional[int] = None,
              tolerance: float = DEFAULT_TOLERANCE) -> DecompositionResult:
    """Decompose sample-minus-population mean of `values` into correlation, sd and fraction.

    Raises IdentityViolationError if all terms are defined and the identity misses by
    `tolerance` or more.
    """
    y = np.asarray(values, dtype=float).ravel()
    r = np.asarray(included, dtype=bool).ravel()
    if y.shape != r.shape:
        raise ValueError(f"values and included must match: {y.shape} vs {r.shape}.")
    if y.size == 0:
        raise ValueError("Cannot decompose over zero units.")
    if not np.all(np.isfinite(y)):
        raise ValueError("values must be finite; drop or tag undefined units before decomposing.")

    n_units = int(y.size)
    n_sampled = int(r.sum())
    f = n_sampled / n_units
    pop_mean = float(y.mean())

    sd = Statistic.of(y.std()) if np.ptp(y) > 0 else Statistic.undefined("zero variance in variable")

    if n_sampled == 0:
        mean_diff = Statistic.undefined("no sampled units")
        corr = Statistic.undefined("no sampled units")
    else:
        mean_diff = Statistic.of(float(y[r].mean()) - pop_mean)
        if n_sampled == n_units:
            corr = Statistic.undefined("all units sampled")
        elif not sd.defined:
            corr = Statistic.undefined(sd.reason)
        else:
            corr = pearson(r.astype(float), y)

    if corr.defined and sd.defined:
        rhs = Statistic.of(corr.unwrap() * sd.unwrap() * identity_factor(f))
    else:
        rhs = Statistic.undefined(corr.reason if not corr.defined else sd.reason)

    checked = mean_diff.defined and rhs.defined
    result = DecompositionResult(
        level=level, species=species, year=year, n_units=n_units, n_sampled=n_sampled,
        mean_difference=mean_diff, correlation=corr, sd=sd,
        sampling_fraction=Statistic.of(f), identity_rhs=rhs,
        identity_checked=checked,
        identity_error=abs(mean_diff.unwrap() - rhs.unwrap()) if checked else None,
    )
    check_identity(result, tolerance)
    return result


def check_identity(result: DecompositionResult, tolerance: float = DEFAULT_TOLERANCE) -> bool:
    """Verify a result. False if degenerate; raises IdentityViolationError on mismatch."""
    if not (result.mean_difference.defined and result.identity_rhs.defined):
        return False
    md = result.mean_difference.unwrap()
    rhs = result.identity_rhs.unwrap()
    error = abs(md - rhs)
    if not error < tolerance:
        raise IdentityViolationError(
            f"{result.level} identity violated for species={result.species} year={result.year}: "
            f"mean difference {md:.17g} vs rho*sd*sqrt((1-f)/f) {rhs:.17g} "
            f"(|diff|={error:.3g} >= {tolerance:.3g})"
        )
    return True


def undefined_species(growth_rates: Dict[Tuple[str, str], GrowthRateRecord],
                      species_ids: Sequence[str], species_included: np.ndarray) -> List[str]:
    """Species whose population log growth rate is undefined, or which are included and
    whose sample log growth rate is undefined. Each species is listed once."""
    out = []
    for j, sp in enumerate(species_ids):
        if not growth_rates[(sp, POPULATION)].log_growth_rate.defined:
            out.append(sp)
        elif species_included[j] and not growth_rates[(sp, SAMPLE)].log_growth_rate.defined:
            out.append(sp)
    return out


def contributing_species(growth_rates: Dict[Tuple[str, str], GrowthRateRecord],
                         species_ids: Sequence[str], species_included: np.ndarray) -> np.ndarray:
    """Included species whose sample log growth rate is defined, i.e. those the estimator averages."""
    return np.array([
        bool(species_included[j]) and growth_rates[(sp, SAMPLE)].log_growth_rate.defined
        for j, sp in enumerate(species_ids)
    ], dtype=bool)


def cross_species_decomposition(growth_rates: Dict[Tuple[str, str], GrowthRateRecord],
                                species_ids: Sequence[str], species_included: np.ndarray,
                                policy: str = DEFAULT_UNDEFINED_POLICY,
                                tolerance: float = DEFAULT_TOLERANCE) -> DecompositionResult:
    """Unit = species, Y = population log growth rate, R = species inclusion.

    Under "exclude", species with an undefined population log growth rate are dropped, and an
    included species with an undefined sample log growth rate counts as not included. This
    matches `indicator_summary`, so the mean difference equals the indicator's cross-species
    error.
    """
    skipped = undefined_species(growth_rates, species_ids, species_included)
    if skipped and policy == "undefined":
        return undefined_decomposition(
            CROSS_SPECIES, f"undefined log growth rate for {', '.join(skipped)}",
            n_units=len(species_ids), n_sampled=int(np.sum(species_included)),
        )
    if skipped:
        LOG.warning("Cross-species decomposition excludes %d species: %s", len(skipped), ", ".join(skipped))

    contributing = contributing_species(growth_rates, species_ids, species_included)
    values: List[float] = []
    mask: List[bool] = []
    for j, sp in enumerate(species_ids):
        stat = growth_rates[(sp, POPULATION)].log_growth_rate
        if stat.defined:
            values.append(stat.unwrap())
            mask.append(bool(contributing[j]))
    if not values:
        return undefined_decomposition(CROSS_SPECIES, "no species with a defined log growth rate")

    result = decompose(np.array(values), np.array(mask), CROSS_SPECIES, tolerance=tolerance)
    if result.degenerate:
        LOG.warning("Cross-species decomposition is degenerate: %s", result.undefined_reason)
    return result


def within_species_decomposition(occupied: np.ndarray, site_included: np.ndarray,
                                 species_ids: Sequence[str], years: Sequence[int],
                                 tolerance: float = DEFAULT_TOLERANCE) -> List[DecompositionResult]:
    """Unit = site, per species and year: Y = occupancy, R = that year's site inclusion."""
    results: List[DecompositionResult] = []
    for j, sp in enumerate(species_ids):
        for t, year in enumerate(years):
            res = decompose(occupied[j, :, t], site_included[:, t], WITHIN_SPECIES,
                            species=sp, year=int(year), tolerance=tolerance)
            if res.degenerate:
                LOG.warning("Within-species decomposition degenerate for %s, year %s: %s",
                            sp, year, res.undefined_reason)
            results.append(res)
    return results


# ----------------------------
# INDICATOR
# ----------------------------

def indicator_summary(growth_rates: Dict[Tuple[str, str], GrowthRateRecord],
                      species_ids: Sequence[str], species_included: np.ndarray,
                      policy: str = DEFAULT_UNDEFINED_POLICY) -> IndicatorSummary:
    """Estimand vs. estimator of the mean log growth rate and the split of their difference.

    Which growth rates are undefined and how they are treated is governed by `policy`; a
    sampled species with no sampled sites in a year is the usual culprit. Under "exclude"
    the estimand averages every species with a defined population log growth rate, while the
    estimator and the included-species population mean share one species set: the included
    species defined in both scopes. The within-species error thus compares like with like.
    """
    if policy not in UNDEFINED_POLICIES:
        raise ValueError(f"Unknown undefined_policy '{policy}'. Allowed: {UNDEFINED_POLICIES}")
    undefined = undefined_species(growth_rates, species_ids, species_included)
    included = [sp for j, sp in enumerate(species_ids) if species_included[j]]
    kept_all, kept_inc = list(species_ids), included
    if policy == "exclude" and undefined:
        LOG.warning("Indicator excludes %d species with an undefined log growth rate: %s",
                    len(undefined), ", ".join(undefined))
        kept_all = [sp for sp in species_ids if growth_rates[(sp, POPULATION)].log_growth_rate.defined]
        kept_inc = [sp for sp in included if sp not in undefined]

    pop_all = [growth_rates[(sp, POPULATION)].log_growth_rate for sp in kept_all]
    pop_inc = [growth_rates[(sp, POPULATION)].log_growth_rate for sp in kept_inc]
    smp_inc = [growth_rates[(sp, SAMPLE)].log_growth_rate for sp in kept_inc]

    estimand, _ = policy_mean(pop_all, policy, "estimand")
    inc_pop_mean, _ = policy_mean(pop_inc, policy, "included species (population scope)")
    estimator, _ = policy_mean(smp_inc, policy, "estimator")

    total = difference(estimator, estimand)
    cross = difference(inc_pop_mean, estimand)
    within = difference(estimator, inc_pop_mean)

    return IndicatorSummary(
        estimand=estimand,
        estimator=estimator,
        included_population_mean=inc_pop_mean,
        total_error=total,
        cross_species_error=cross,
        within_species_error=within,
        n_species=len(species_ids),
        n_included=len(included),
        n_undefined=len(undefined),
    )


# ----------------------------
# PIPELINE
# ----------------------------

def run_pipeline(inputs: ModelInputs) -> PipelineResults:
    """Generate the landscape and community, then decompose the indicator error.

    Stages consume their own keyed sub-streams:
      1) covariates and covariate proxies;
      2) site-year inclusion;
      3) species parameters and occupancy (one stream per species);
      4) growth rates (deterministic);
      5) species inclusion and trait proxy;
      6) cross- and within-species decompositions, indicator summary.
    """
    entropy = int(inputs.seed) if inputs.seed is not None else int(np.random.SeedSequence().entropy)
    years = tuple(int(y) for y in inputs.years)
    n_sites, n_species = int(inputs.n_sites), int(inputs.n_species)
    LOG.debug("Running pipeline: %d sites, %d species, years=%s, entropy=%d",
              n_sites, n_species, years, entropy)

    covariate = generate_covariates(n_sites, len(years), float(inputs.drift_sd),
                                    stage_rng(entropy, STAGE_COVARIATE))
    cov_proxy = covariate_proxy(covariate, float(inputs.covariate_proxy_rho),
                                stage_rng(entropy, STAGE_COVARIATE_PROXY))

    site_p = site_inclusion_probability(covariate, years, inputs.site_coefs)
    site_included = draw_bernoulli(site_p, stage_rng(entropy, STAGE_SITE_INCLUSION))
    LOG.debug("Site inclusion fraction per year: %s", site_included.mean(axis=0))

    species_ids = species_labels(n_species)
    params = draw_species_parameters(
        inputs.intercept_range, inputs.year_effect_range, inputs.sensitivity_range,
        [stage_rng(entropy, STAGE_SPECIES_PARAMS, j) for j in range(n_species)],
    )
    occ_p = occupancy_probability(params, covariate, years)
    occupied = simulate_occupancy(occ_p, [stage_rng(entropy, STAGE_OCCUPANCY, j) for j in range(n_species)])

    growth = compute_growth_rates(occupied, site_included, species_ids)

    sp_p = species_inclusion_probability(params.sensitivity, inputs.species_coefs)
    sp_included = draw_bernoulli(sp_p, stage_rng(entropy, STAGE_SPECIES_INCLUSION))
    t_proxy = trait_proxy(params.sensitivity, float(inputs.trait_proxy_sd),
                          stage_rng(entropy, STAGE_TRAIT_PROXY))
    LOG.debug("Species included: %d of %d", int(sp_included.sum()), n_species)

    tol = float(inputs.identity_tolerance)
    cross = cross_species_decomposition(growth, species_ids, sp_included, inputs.undefined_policy, tol)
    within = within_species_decomposition(occupied, site_included, species_ids, years, tol)
    indicator = indicator_summary(growth, species_ids, sp_included, inputs.undefined_policy)

    return PipelineResults(
        inputs=inputs,
        entropy=entropy,
        site_ids=np.arange(1, n_sites + 1),
        years=years,
        covariate=covariate,
        covariate_proxy=cov_proxy,
        site_inclusion_prob=site_p,
        site_included=site_included,
        species_ids=species_ids,
        species_params=params,
        trait_proxy=t_proxy,
        species_inclusion_prob=sp_p,
        species_included=sp_included,
        occupancy_prob=occ_p,
        occupied=occupied,
        growth_rates=growth,
        cross_species=cross,
        within_species=within,
        indicator=indicator,
    )


# ----------------------------
# TABLES
# ----------------------------

def site_year_table(results: PipelineResults) -> pd.DataFrame:
    """One row per site-year."""
    n_sites, n_years = results.covariate.shape
    return pd.DataFrame({
        "site": np.repeat(results.site_ids, n_years),
        "year": np.tile(np.asarray(results.years), n_sites),
        "covariate": results.covariate.ravel(),
        "covariate_proxy": results.covariate_proxy.ravel(),
        "inclusion_probability": results.site_inclusion_prob.ravel(),
        "included": results.site_included.ravel(),
    })


def species_table(results: PipelineResults) -> pd.DataFrame:
    """One row per species."""
    p = results.species_params
    return pd.DataFrame({
        "species": results.species_ids,
        "intercept": p.intercept,
        "year_effect": p.year_effect,
        "sensitivity": p.sensitivity,
        "trait_proxy": results.trait_proxy,
        "inclusion_probability": results.species_inclusion_prob,
        "included": results.species_included,
    })


def occupancy_table(results: PipelineResults) -> pd.DataFrame:
    """One row per (species, site, year)."""
    n_species, n_sites, n_years = results.occupied.shape
    return pd.DataFrame({
        "species": np.repeat(np.asarray(results.species_ids), n_sites * n_years),
        "site": np.tile(np.repeat(results.site_ids, n_years), n_species),
        "year": np.tile(np.asarray(results.years), n_species * n_sites),
        "occupancy_probability": results.occupancy_prob.ravel(),
        "occupied": results.occupied.ravel(),
    })


def growth_rate_table(results: PipelineResults) -> pd.DataFrame:
    """One row per (species, scope); undefined values render as NaN with a reason."""
    rows = []
    for sp in results.species_ids:
        for scope in SCOPES:
            rec = results.growth_rates[(sp, scope)]
            rows.append({
                "species": sp,
                "scope": scope,
                "mean_year1": rec.mean_year1.or_nan(),
                "mean_year2": rec.mean_year2.or_nan(),
                "growth_rate": rec.growth_rate.or_nan(),
                "log_growth_rate": rec.log_growth_rate.or_nan(),
                "undefined_reason": rec.undefined_reason,
            })
    return pd.DataFrame(rows)


def decomposition_table(results: PipelineResults) -> pd.DataFrame:
    """Cross-species row first, then one row per (species, year)."""
    rows = []
    for res in [results.cross_species] + list(results.within_species):
        rows.append({
            "level": res.level,
            "species": res.species,
            "year": res.year,
            "n_units": res.n_units,
            "n_sampled": res.n_sampled,
            "mean_difference": res.mean_difference.or_nan(),
            "correlation": res.correlation.or_nan(),
            "sd": res.sd.or_nan(),
            "sampling_fraction": res.sampling_fraction.or_nan(),
            "identity_rhs": res.identity_rhs.or_nan(),
            "identity_checked": res.identity_checked,
            "identity_error": np.nan if res.identity_error is None else res.identity_error,
            "undefined_reason": res.undefined_reason,
        })
    df = pd.DataFrame(rows)
    df["year"] = df["year"].astype("Int64")
    return df


TABLE_BUILDERS = {
    "site_year": site_year_table,
    "species": species_table,
    "occupancy": occupancy_table,
    "growth_rates": growth_rate_table,
    "decomposition": decomposition_table,
}


def write_tables(results: PipelineResults, directory) -> Dict[str, Path]:
    """Write every table as `<name>.csv` into `directory` (created if missing)."""
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    paths: Dict[str, Path] = {}
    for name, builder in TABLE_BUILDERS.items():
        path = out_dir / f"{name}.csv"
        builder(results).to_csv(path, index=False)
        paths[name] = path
    return paths


# ----------------------------
# REPORTING & VISUALIZATION
# ----------------------------

def _json(stat: Statistic) -> Optional[float]:
    return stat.value


def _decomposition_dict(res: DecompositionResult) -> Dict:
    return {
        "level": res.level,
        "species": res.species,
        "year": res.year,
        "n_units": res.n_units,
        "n_sampled": res.n_sampled,
        "mean_difference": _json(res.mean_difference),
        "correlation": _json(res.correlation),
        "sd": _json(res.sd),
        "sampling_fraction": _json(res.sampling_fraction),
        "identity_rhs": _json(res.identity_rhs),
        "identity_checked": res.identity_checked,
        "identity_error": res.identity_error,
        "undefined_reason": res.undefined_reason,
    }


def summarize(results: PipelineResults) -> Dict:
    """Indicator, cross-species decomposition, sampling fractions and proxy diagnostics.

    Returns a JSON-serializable dict (undefined statistics become null) suitable for
    `--report_json` or downstream analysis.
    """
    ind = results.indicator
    within = results.within_species
    n_checked = sum(1 for r in within if r.identity_checked)
    cov_diag = proxy_diagnostics(results.covariate, results.covariate_proxy)
    trait_diag = proxy_diagnostics(results.species_params.sensitivity, results.trait_proxy)
    return {
        "indicator": {
            "estimand": _json(ind.estimand),
            "estimator": _json(ind.estimator),
            "estimand_growth": _json(ind.estimand_ratio),
            "estimator_growth": _json(ind.estimator_ratio),
            "total_error": _json(ind.total_error),
            "cross_species_error": _json(ind.cross_species_error),
            "within_species_error": _json(ind.within_species_error),
            "n_species": ind.n_species,
            "n_included": ind.n_included,
            "n_undefined": ind.n_undefined,
        },
        "cross_species": _decomposition_dict(results.cross_species),
        "within_species": {
            "n_results": len(within),
            "n_checked": n_checked,
            "n_degenerate": len(within) - n_checked,
            "max_identity_error": max((r.identity_error for r in within if r.identity_checked), default=None),
        },
        "sampling": {
            "site_fraction_by_year": {
                str(y): float(results.site_included[:, t].mean()) for t, y in enumerate(results.years)
            },
            "species_fraction": float(results.species_included.mean()),
        },
        "proxies": {
            "covariate": {k: _json(v) for k, v in cov_diag.items()},
            "trait": {k: _json(v) for k, v in trait_diag.items()},
        },
        "entropy": str(results.entropy),
    }


def interpret(summary: IndicatorSummary) -> str:
    """Short qualitative interpretation of the indicator error."""
    if not summary.total_error.defined:
        return f"Indicator error undefined: {summary.total_error.reason}."
    err = summary.total_error.unwrap()
    direction = "overstates" if err > 0 else "understates"
    if abs(err) < 0.01:
        return "Negligible error: the sample indicator tracks the population trend closely."
    if abs(err) < 0.05:
        return f"Modest error: the sample indicator {direction} the population trend."
    return f"Large error: the sample indicator clearly {direction} the population trend."


def plot_proxy_diagnostics(results: PipelineResults, path: str = "proxy_diagnostics.png") -> None:
    """Observed vs. true covariate (baseline year) and trait (saved to file)."""
    fig, axes = plt.subplots(1, 2, figsize=(10, 4.5))
    axes[0].scatter(results.covariate[:, 0], results.covariate_proxy[:, 0], s=4, alpha=0.4)
    axes[0].set_xlabel("True covariate")
    axes[0].set_ylabel("Proxy covariate")
    axes[0].set_title(f"Covariate proxy (rho = {results.inputs.covariate_proxy_rho:g})")
    axes[1].scatter(results.species_params.sensitivity, results.trait_proxy, s=20)
    axes[1].set_xlabel("True trait (covariate sensitivity)")
    axes[1].set_ylabel("Measured trait")
    axes[1].set_title(f"Trait proxy (sd = {results.inputs.trait_proxy_sd:g})")
    fig.tight_layout()
    fig.savefig(path, dpi=144)
    plt.close(fig)


def plot_growth_rates(results: PipelineResults, path: str = "growth_rates.png") -> None:
    """Population vs. sample log growth rate per species; sampled species are marked."""
    names = results.species_ids
    pop = [results.growth_rates[(sp, POPULATION)].log_growth_rate.or_nan() for sp in names]
    smp = [results.growth_rates[(sp, SAMPLE)].log_growth_rate.or_nan() for sp in names]
    x = np.arange(len(names))
    plt.figure(figsize=(10, 5))
    plt.bar(x - 0.2, pop, width=0.4, label="Population")
    plt.bar(x + 0.2, smp, width=0.4, label="Sample sites")
    for j, inc in enumerate(results.species_included):
        if inc:
            plt.annotate("*", (x[j], 0.0), ha="center", va="bottom")
    plt.axhline(0.0, color="black", linewidth=0.8)
    plt.xticks(x, names, rotation=60, ha="right")
    plt.ylabel("Log growth rate")
    plt.title("Species log growth rates (* = sampled species)")
    plt.legend()
    plt.tight_layout()
    plt.savefig(path, dpi=144)
    plt.close()


def plot_within_species_correlation(results: PipelineResults,
                                    path: str = "within_species_correlation.png") -> None:
    """Data-defect correlation per species and year (degenerate pairs left blank)."""
    names = results.species_ids
    x = np.arange(len(names))
    width = 0.8 / len(results.years)
    plt.figure(figsize=(10, 5))
    for t, year in enumerate(results.years):
        corr = [r.correlation.or_nan() for r in results.within_species if r.year == year]
        plt.bar(x + (t - (len(results.years) - 1) / 2) * width, corr, width=width, label=f"Year {year}")
    plt.axhline(0.0, color="black", linewidth=0.8)
    plt.xticks(x, names, rotation=60, ha="right")
    plt.ylabel("corr(site inclusion, occupancy)")
    plt.title("Within-species data-defect correlation")
    plt.legend()
    plt.tight_layout()
    plt.savefig(path, dpi=144)
    plt.close()


def print_explain_per_species(results: PipelineResults) -> None:
    """Print per-species trait, growth and within-species correlation breakdown."""
    by_key = {(r.species, r.year): r for r in results.within_species}
    y1, y2 = results.years
    print("\nPer-species breakdown:")
    for j, sp in enumerate(results.species_ids):
        pop = results.growth_rates[(sp, POPULATION)].log_growth_rate
        smp = results.growth_rates[(sp, SAMPLE)].log_growth_rate
        c1 = by_key[(sp, y1)].correlation
        c2 = by_key[(sp, y2)].correlation
        flag = "sampled" if results.species_included[j] else "       "
        print(f"  - {sp:12s} {flag}  trait={results.species_params.sensitivity[j]:+5.2f}  "
              f"logGR pop={_fmt(pop)}  sample={_fmt(smp)}  "
              f"corr y{y1}={_fmt(c1)}  y{y2}={_fmt(c2)}")


def _fmt(stat: Statistic, spec: str = "+7.4f") -> str:
    return format(stat.unwrap(), spec) if stat.defined else "  undef"


# ----------------------------
# SENSITIVITY ANALYSIS (optional)
# ----------------------------

def quick_sensitivity(inputs: ModelInputs) -> List[Tuple[str, IndicatorSummary]]:
    """
    Small "what-if" analysis of how the indicator error responds to the sampling design.
    The seed is held fixed (if provided) so results are comparable.
    Returns list of (label, IndicatorSummary).
    """
    site = inputs.site_coefs
    sp = inputs.species_coefs
    scenarios: List[Tuple[str, ModelInputs]] = [
        ("no trait effect", dataclasses.replace(inputs, species_coefs={**sp, "trait": 0.0})),
        ("2x trait effect", dataclasses.replace(inputs, species_coefs={**sp, "trait": 2.0 * sp["trait"]})),
        ("site incl. ~ year only", dataclasses.replace(
            inputs, site_coefs={**site, "covariate": 0.0, "interaction": 0.0})),
        ("2x drift", dataclasses.replace(inputs, drift_sd=2.0 * inputs.drift_sd)),
        ("rho=0", dataclasses.replace(inputs, covariate_proxy_rho=0.0)),
        ("rho=1", dataclasses.replace(inputs, covariate_proxy_rho=1.0)),
    ]
    out: List[Tuple[str, IndicatorSummary]] = []
    for label, inp in scenarios:
        out.append((label, run_pipeline(inp).indicator))
    return out


# ----------------------------
# CLI
# ----------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Simulate a synthetic landscape and species community, and decompose the error of a "
            "sample-based multispecies growth indicator into data-defect correlation, problem "
            "difficulty and sampling fraction at the cross-species and within-species level."
        )
    )
    # Landscape & community
    p.add_argument("--n_sites", type=int, default=DEFAULT_N_SITES, help="Number of sites (>=1).")
    p.add_argument("--n_species", type=int, default=DEFAULT_N_SPECIES, help="Number of species (>=1).")
    p.add_argument(
        "--years", type=str, default=",".join(str(y) for y in DEFAULT_YEARS),
        help="Two increasing integer year labels, e.g. \"1,2\". They enter the linear predictors as numbers."
    )
    p.add_argument("--drift_sd", type=float, default=DEFAULT_DRIFT_SD,
                   help="Sd of the year-to-year covariate drift (>=0).")
    # Sampling design
    p.add_argument(
        "--site_coefs", type=str, default=None,
        help=(
            'Site inclusion coefficients, e.g. "intercept=-2,year=0.5,covariate=1,interaction=0.5". '
            "Keys: intercept, year, covariate, interaction. Omitted keys keep their defaults."
        ),
    )
    p.add_argument(
        "--species_coefs", type=str, default=None,
        help='Species inclusion coefficients, e.g. "intercept=0,trait=2". Keys: intercept, trait.'
    )
    # Species parameter ranges (use --flag=lo,hi when lo is negative)
    p.add_argument("--intercept_range", type=str, default=None,
                   help="Uniform range of species occupancy intercepts, e.g. --intercept_range=-1,1.")
    p.add_argument("--year_effect_range", type=str, default=None,
                   help="Uniform range of species year effects, e.g. --year_effect_range=-0.5,0.5.")
    p.add_argument("--sensitivity_range", type=str, default=None,
                   help="Uniform range of species covariate sensitivities (the trait).")
    # Proxies
    p.add_argument("--rho", type=float, default=DEFAULT_RHO,
                   help="Correlation of the covariate proxy with the true covariate, in [0, 1].")
    p.add_argument("--trait_proxy_sd", type=float, default=DEFAULT_TRAIT_PROXY_SD,
                   help="Sd of the trait measurement noise (>=0).")
    # Engine & random
    p.add_argument("--seed", type=int, default=None, help="Random seed for reproducibility.")
    p.add_argument("--tolerance", type=float, default=DEFAULT_TOLERANCE,
                   help="Absolute tolerance of the identity check.")
    p.add_argument(
        "--undefined_policy", choices=UNDEFINED_POLICIES, default=DEFAULT_UNDEFINED_POLICY,
        help="How undefined log growth rates enter the indicator: exclude the species, or make it undefined."
    )
    # Output
    p.add_argument(
        "--plot", action="store_true",
        help='Save plots: "proxy_diagnostics.png", "growth_rates.png", "within_species_correlation.png".'
    )
    p.add_argument("--report_json", type=str, default=None, help="Path to save the summary JSON.")
    p.add_argument("--report_csv", type=str, default=None, help="Path to save the decomposition table as CSV.")
    p.add_argument("--tables_dir", type=str, default=None, help="Directory to write every table as CSV.")
    p.add_argument("--explain_per_species", action="store_true",
                   help="Print per-species trait, growth and within-species correlation.")
    p.add_argument("--sensitivity", action="store_true", help="Run a small what-if sensitivity analysis.")
    p.add_argument("--log_level", type=str, default="WARNING",
                   choices=("DEBUG", "INFO", "WARNING", "ERROR"), help="Logging verbosity.")
    return p


def inputs_from_args(args: argparse.Namespace) -> ModelInputs:
    """Build (and thereby validate) ModelInputs from parsed CLI arguments."""
    return ModelInputs(
        n_sites=int(args.n_sites),
        n_species=int(args.n_species),
        years=parse_years(args.years),
        drift_sd=float(args.drift_sd),
        site_coefs={**DEFAULT_SITE_COEFS, **parse_keyvals(args.site_coefs, allowed_keys=SITE_COEF_KEYS)},
        intercept_range=parse_range(args.intercept_range) if args.intercept_range else DEFAULT_INTERCEPT_RANGE,
        year_effect_range=(parse_range(args.year_effect_range) if args.year_effect_range
                           else DEFAULT_YEAR_EFFECT_RANGE),
        sensitivity_range=(parse_range(args.sensitivity_range) if args.sensitivity_range
                           else DEFAULT_SENSITIVITY_RANGE),
        species_coefs={**DEFAULT_SPECIES_COEFS,
                       **parse_keyvals(args.species_coefs, allowed_keys=SPECIES_COEF_KEYS)},
        covariate_proxy_rho=float(args.rho),
        trait_proxy_sd=float(args.trait_proxy_sd),
        seed=args.seed,
        identity_tolerance=float(args.tolerance),
        undefined_policy=args.undefined_policy,
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    inputs = inputs_from_args(args)

    # Run pipeline
    results = run_pipeline(inputs)
    summary = summarize(results)

    # Human-readable summary
    ind = results.indicator
    cross = results.cross_species
    print(f"Seed: {results.entropy}")
    print("Sites sampled per year: "
          + ", ".join(f"{y}: {frac:.1%}" for y, frac in summary["sampling"]["site_fraction_by_year"].items()))
    print(f"Species sampled: {ind.n_included}/{ind.n_species}")
    print(f"Indicator (mean log growth)  population={_fmt(ind.estimand)}  sample={_fmt(ind.estimator)}")
    print(f"Error  total={_fmt(ind.total_error)}  cross-species={_fmt(ind.cross_species_error)}  "
          f"within-species={_fmt(ind.within_species_error)}")
    print(f"Cross-species: corr={_fmt(cross.correlation)}  sd={_fmt(cross.sd)}  "
          f"f={_fmt(cross.sampling_fraction, '.3f')}  identity "
          + ("ok" if cross.identity_checked else f"skipped ({cross.undefined_reason})"))
    within = summary["within_species"]
    print(f"Within-species: {within['n_checked']}/{within['n_results']} identity checks passed, "
          f"{within['n_degenerate']} degenerate")
    print(interpret(ind))

    # Optional per-species explanation
    if args.explain_per_species:
        print_explain_per_species(results)

    # Optional plots
    if args.plot:
        plot_proxy_diagnostics(results, path="proxy_diagnostics.png")
        plot_growth_rates(results, path="growth_rates.png")
        plot_within_species_correlation(results, path="within_species_correlation.png")
        print("\nSaved plots: proxy_diagnostics.png, growth_rates.png, within_species_correlation.png")

    # Optional JSON
    if args.report_json:
        with open(args.report_json, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
        print(f"Saved JSON report to: {args.report_json}")

    # Optional CSV (decomposition)
    if args.report_csv:
        decomposition_table(results).to_csv(args.report_csv, index=False)
        print(f"Saved decomposition CSV to: {args.report_csv}")

    if args.tables_dir:
        paths = write_tables(results, args.tables_dir)
        print(f"Saved {len(paths)} tables to: {args.tables_dir}")

    # Optional sensitivity
    if args.sensitivity:
        print("\n--- Quick sensitivity analysis ---")
        for label, ind_s in quick_sensitivity(inputs):
            print(f"{label:>22s}: total error = {_fmt(ind_s.total_error)}  "
                  f"(cross={_fmt(ind_s.cross_species_error)}, within={_fmt(ind_s.within_species_error)})")


if __name__ == "__main__":
    main()
