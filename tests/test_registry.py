"""Tests for the model registry and the ModelFamily protocol."""

import dataclasses

import numpy as np
import pytest

from zelig2 import (
    ModelFamily,
    ModelNotFoundError,
    ModelSpec,
    get_model_spec,
    list_models,
    register_family,
    register_model,
    zelig2,
)
from zelig2.families import (
    BUILTIN_FAMILIES,
    LeastSquaresFamily,
    draw_mvn,
)
from zelig2.registry import _REGISTRY

_BUILTIN = ["gamma", "logit", "ls", "negbin", "poisson", "probit", "quantile", "tobit"]


def _dummy_qi(params, x_row, fitted_model, fe_offset=0.0, rng=None):
    eta = np.atleast_2d(params) @ np.asarray(x_row, dtype=float) + fe_offset
    return {"ev": eta, "pv": eta}


@pytest.fixture
def scratch_names():
    """Names registered during a test are removed afterwards."""
    names = []
    yield names
    for name in names:
        _REGISTRY.pop(name, None)


class TestBuiltinRegistry:
    def test_all_builtin_models_registered(self):
        assert set(_BUILTIN) <= set(list_models())

    def test_list_models_sorted(self):
        names = list_models()
        assert names == sorted(names)

    @pytest.mark.parametrize(
        "name, category",
        [
            ("ls", "continuous"),
            ("logit", "binary"),
            ("probit", "binary"),
            ("poisson", "count"),
            ("negbin", "count"),
            ("gamma", "continuous"),
            ("tobit", "continuous"),
            ("quantile", "continuous"),
        ],
    )
    def test_categories(self, name, category):
        assert get_model_spec(name).category == category

    def test_fixed_effects_support_flags(self):
        assert not get_model_spec("tobit").supports_fixed_effects
        assert not get_model_spec("quantile").supports_fixed_effects
        assert get_model_spec("negbin").supports_fixed_effects

    def test_spec_carries_family(self):
        spec = get_model_spec("logit")
        assert spec.family.name == "logit"
        assert spec.description == "Logistic Regression"

    def test_builtin_families_satisfy_protocol(self):
        for family in BUILTIN_FAMILIES:
            assert isinstance(family, ModelFamily)


class TestLookup:
    def test_unknown_name_lists_available(self):
        with pytest.raises(ModelNotFoundError, match="Available models: gamma"):
            get_model_spec("ols")

    def test_unknown_name_is_value_error(self):
        with pytest.raises(ValueError):
            get_model_spec("ols")

    def test_unhashable_name(self):
        with pytest.raises(ModelNotFoundError):
            get_model_spec(["ls"])


class TestModelSpec:
    def test_frozen(self):
        spec = get_model_spec("ls")
        with pytest.raises(dataclasses.FrozenInstanceError):
            spec.name = "other"

    def test_invalid_category(self):
        with pytest.raises(ValueError, match="Invalid category"):
            ModelSpec(
                name="bad",
                category="ordinal",
                description="bad",
                fit=lambda *a, **k: None,
                draw_parameters=draw_mvn,
                quantities_of_interest=_dummy_qi,
            )


class TestRegisterModel:
    def test_register_and_lookup(self, scratch_names):
        scratch_names.append("custom_ls")
        spec = register_model(
            "custom_ls",
            fit=get_model_spec("ls").fit,
            draw_parameters=draw_mvn,
            quantities_of_interest=_dummy_qi,
            category="continuous",
        )
        assert get_model_spec("custom_ls") is spec
        assert spec.description == "custom_ls"
        assert "custom_ls" in list_models()

    def test_reregistering_overwrites(self, scratch_names):
        scratch_names.append("twice")
        for description in ("first", "second"):
            register_model(
                "twice",
                fit=get_model_spec("ls").fit,
                draw_parameters=draw_mvn,
                quantities_of_interest=_dummy_qi,
                category="continuous",
                description=description,
            )
        assert get_model_spec("twice").description == "second"

    @pytest.mark.parametrize("name", ["", None, 3])
    def test_rejects_bad_names(self, name):
        with pytest.raises(ValueError, match="non-empty string"):
            register_model(
                name,
                fit=get_model_spec("ls").fit,
                draw_parameters=draw_mvn,
                quantities_of_interest=_dummy_qi,
                category="continuous",
            )

    def test_registered_model_usable_in_zelig2(self, scratch_names, mtcars):
        scratch_names.append("custom_ls")
        register_model(
            "custom_ls",
            fit=get_model_spec("ls").fit,
            draw_parameters=draw_mvn,
            quantities_of_interest=get_model_spec("ls").quantities_of_interest,
            category="continuous",
        )
        z = zelig2("mpg ~ hp", model="custom_ls", data=mtcars)
        ref = zelig2("mpg ~ hp", model="ls", data=mtcars)
        np.testing.assert_allclose(z.coefficients, ref.coefficients)


@dataclasses.dataclass(frozen=True)
class _RenamedLeastSquares(LeastSquaresFamily):
    @property
    def name(self) -> str:
        return "ls_renamed"

    @property
    def description(self) -> str:
        return "Renamed Least Squares"


class TestRegisterFamily:
    def test_register_family_instance(self, scratch_names, mtcars):
        scratch_names.append("ls_renamed")
        spec = register_family(_RenamedLeastSquares())
        assert spec.description == "Renamed Least Squares"
        z = zelig2("mpg ~ wt", model="ls_renamed", data=mtcars)
        assert z.model_name == "ls_renamed"

    def test_rejects_non_family(self):
        with pytest.raises(TypeError, match="ModelFamily protocol"):
            register_family(object())
