import pytest

from indicator_error_model import (
    ModelInputs,
    ConfigurationError,
    DEFAULT_SITE_COEFS,
    DEFAULT_SPECIES_COEFS,
)


def test_defaults_are_valid():
    inputs = ModelInputs()
    assert inputs.n_sites == 1000
    assert inputs.n_species == 20
    assert tuple(inputs.years) == (1, 2)
    assert inputs.drift_sd == 0.3
    assert inputs.covariate_proxy_rho == 0.5
    assert inputs.trait_proxy_sd == 0.05
    assert inputs.identity_tolerance == 1e-9


def test_default_coefficients_are_not_shared():
    a = ModelInputs()
    b = ModelInputs()
    assert a.site_coefs == DEFAULT_SITE_COEFS
    assert a.site_coefs is not b.site_coefs


@pytest.mark.parametrize("overrides", [
    {"n_sites": 0},
    {"n_sites": -5},
    {"n_sites": 10.5},
    {"n_species": 0},
    {"n_species": True},
    {"years": (1,)},
    {"years": (1, 2, 3)},
    {"years": (2, 1)},
    {"years": (1, 1)},
    {"drift_sd": -0.1},
    {"drift_sd": float("nan")},
    {"trait_proxy_sd": -1.0},
    {"covariate_proxy_rho": 1.5},
    {"covariate_proxy_rho": -0.1},
    {"site_coefs": {"intercept": 0.0}},
    {"site_coefs": dict(DEFAULT_SITE_COEFS, habitat=1.0)},
    {"species_coefs": dict(DEFAULT_SPECIES_COEFS, trait=float("inf"))},
    {"intercept_range": (1.0, -1.0)},
    {"year_effect_range": (0.0,)},
    {"sensitivity_range": (float("nan"), 1.0)},
    {"identity_tolerance": 0.0},
    {"undefined_policy": "ignore"},
    {"seed": -1},
    {"seed": "301"},
])
def test_invalid_configuration_rejected(overrides):
    with pytest.raises(ConfigurationError):
        ModelInputs(**overrides)


def test_configuration_error_is_value_error():
    with pytest.raises(ValueError):
        ModelInputs(n_species=-1)


def test_degenerate_but_valid_ranges_accepted():
    inputs = ModelInputs(intercept_range=(0.0, 0.0), covariate_proxy_rho=0.0, trait_proxy_sd=0.0,
                         drift_sd=0.0, years=(2010, 2020), undefined_policy="undefined")
    assert inputs.years == (2010, 2020)
