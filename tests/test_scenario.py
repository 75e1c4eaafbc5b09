"""Tests for scenario construction (setx / setx1)."""

import numpy as np
import pandas as pd
import pytest

from zelig2 import (
    MultipleRangeVariablesError,
    UnknownCategoricalLevelError,
    setx,
    setx1,
    sim,
    zelig2,
)
from zelig2.scenario import _mode, default_value


@pytest.fixture
def ls_model(mtcars):
    return zelig2("mpg ~ hp + wt", model="ls", data=mtcars)


class TestDefaults:
    def test_numeric_default_is_median(self, ls_model, mtcars):
        row = setx(ls_model).scenario.x_matrix.iloc[0]
        assert row["Intercept"] == 1.0
        assert row["hp"] == pytest.approx(mtcars["hp"].median())
        assert row["wt"] == pytest.approx(mtcars["wt"].median())

    def test_fn_mean(self, ls_model, mtcars):
        row = setx(ls_model, fn="mean").scenario.x_matrix.iloc[0]
        assert row["hp"] == pytest.approx(mtcars["hp"].mean())

    def test_fn_callable(self, ls_model, mtcars):
        row = setx(ls_model, fn=np.max).scenario.x_matrix.iloc[0]
        assert row["wt"] == pytest.approx(mtcars["wt"].max())

    def test_invalid_fn(self, ls_model):
        with pytest.raises(ValueError, match="'fn'"):
            setx(ls_model, fn="sum")

    def test_categorical_default_is_mode(self, binary_data):
        z = zelig2("y ~ x + group", model="logit", data=binary_data)
        counts = binary_data["group"].value_counts()
        tied = set(counts.index[counts == counts.max()])
        expected = next(g for g in binary_data["group"] if g in tied)
        row = setx(z).scenario.x_matrix.iloc[0]
        for level in ("b", "c"):
            column = f"group[T.{level}]"
            assert row[column] == (1.0 if expected == level else 0.0)

    def test_mode_ties_go_to_first_seen(self):
        assert _mode(pd.Series(["b", "a", "a", "b"])) == "b"
        assert _mode(pd.Series([3, 1, 1, 3, 2])) == 3

    def test_boolean_column_uses_mode(self):
        value = default_value(pd.Series([True, False, False]), np.mean)
        assert not isinstance(value, float)
        assert not value

    def test_defaults_ignore_missing_values(self):
        series = pd.Series([1.0, np.nan, 3.0])
        assert default_value(series) == 2.0


class TestPointScenario:
    def test_overrides(self, ls_model):
        scenario = setx(ls_model, hp=150, wt=3.0).scenario
        assert not scenario.is_range
        assert scenario.n_rows == 1
        np.testing.assert_allclose(scenario.x_matrix.iloc[0], [1.0, 150.0, 3.0])
        assert scenario.user_values == {"hp": 150, "wt": 3.0}

    def test_columns_follow_coefficients(self, ls_model):
        scenario = setx(ls_model, hp=150).scenario
        assert list(scenario.x_matrix.columns) == list(ls_model.coefficients.index)

    def test_single_element_sequence_is_point(self, ls_model):
        scenario = setx(ls_model, hp=[120]).scenario
        assert not scenario.is_range
        assert scenario.x_matrix.iloc[0]["hp"] == 120.0

    def test_interaction_and_transform(self, mtcars):
        z = zelig2("mpg ~ np.log(hp) * wt", model="ls", data=mtcars)
        row = setx(z, hp=100, wt=2.0).scenario.x_matrix.iloc[0]
        assert row["np.log(hp)"] == pytest.approx(np.log(100))
        assert row["np.log(hp):wt"] == pytest.approx(2.0 * np.log(100))

    def test_patsy_categorical(self, mtcars):
        z = zelig2("mpg ~ hp + C(cyl)", model="ls", data=mtcars)
        row = setx(z, cyl=8).scenario.x_matrix.iloc[0]
        assert row["C(cyl)[T.8]"] == 1.0
        assert row["C(cyl)[T.6]"] == 0.0

    def test_intercept_only(self, linear_data):
        z = zelig2("y ~ 1", model="ls", data=linear_data)
        scenario = setx(z).scenario
        assert list(scenario.x_matrix.columns) == ["Intercept"]
        assert scenario.x_matrix.iloc[0, 0] == 1.0

    def test_unknown_covariate_warns_and_is_ignored(self, ls_model):
        with pytest.warns(UserWarning, match="colour not among the model's predictors"):
            scenario = setx(ls_model, hp=100, colour="red").scenario
        assert scenario.user_values == {"hp": 100}

    def test_non_model_input_rejected(self):
        with pytest.raises(TypeError, match="FittedModel"):
            setx({"model": "ls"}, hp=1)


class TestRangeScenario:
    def test_rows_per_value_in_input_order(self, ls_model):
        scenario = setx(ls_model, hp=[200, 100, 150]).scenario
        assert scenario.is_range
        assert scenario.range_variable == "hp"
        assert scenario.range_values == [200, 100, 150]
        assert scenario.x_matrix["hp"].tolist() == [200.0, 100.0, 150.0]
        assert scenario.x_matrix["wt"].nunique() == 1

    @pytest.mark.parametrize(
        "values", [range(50, 301, 50), np.array([1.0, 2.0]), pd.Series([3, 4])]
    )
    def test_sequence_types(self, ls_model, values):
        scenario = setx(ls_model, wt=values).scenario
        assert scenario.n_rows == len(values)

    def test_multiple_ranges_rejected(self, ls_model):
        with pytest.raises(MultipleRangeVariablesError, match="hp, wt"):
            setx(ls_model, hp=[100, 200], wt=[2.0, 3.0])

    def test_one_range_with_length_one_sequence(self, ls_model):
        scenario = setx(ls_model, hp=[100, 200], wt=[2.5]).scenario
        assert scenario.range_variable == "hp"
        assert scenario.x_matrix["wt"].tolist() == [2.5, 2.5]

    def test_empty_sequence_rejected(self, ls_model):
        with pytest.raises(ValueError, match="empty sequence"):
            setx(ls_model, hp=[])

    def test_categorical_range(self, binary_data):
        z = zelig2("y ~ x + group", model="logit", data=binary_data)
        scenario = setx(z, group=["c", "a"]).scenario
        assert scenario.x_matrix["group[T.c]"].tolist() == [1.0, 0.0]


class TestCategoricalValidation:
    def test_unknown_text_level(self, binary_data):
        z = zelig2("y ~ x + group", model="logit", data=binary_data)
        with pytest.raises(UnknownCategoricalLevelError, match="Valid levels: a, b, c"):
            setx(z, group="d")

    def test_unknown_level_in_range(self, binary_data):
        z = zelig2("y ~ x + group", model="logit", data=binary_data)
        with pytest.raises(UnknownCategoricalLevelError):
            setx(z, group=["a", "z"])

    def test_unknown_patsy_level(self, mtcars):
        z = zelig2("mpg ~ hp + C(cyl)", model="ls", data=mtcars)
        with pytest.raises(UnknownCategoricalLevelError, match="'cyl'"):
            setx(z, cyl=5)

    def test_is_value_error(self, binary_data):
        z = zelig2("y ~ x + group", model="logit", data=binary_data)
        with pytest.raises(ValueError):
            setx(z, group="d")


class TestCopyOnWrite:
    def test_setx_returns_new_model(self, ls_model):
        updated = setx(ls_model, hp=100)
        assert updated is not ls_model
        assert ls_model.scenario is None
        assert updated.coefficients is ls_model.coefficients

    def test_setx_invalidates_simulation(self, ls_model):
        simulated = sim(setx(ls_model, hp=100), num=50, random_state=0)
        reset = setx(simulated, hp=150)
        assert reset.simulation_output is None
        assert simulated.simulation_output is not None

    def test_setx1_invalidates_simulation(self, ls_model):
        simulated = sim(setx(ls_model, hp=100), num=50, random_state=0)
        contrast = setx1(simulated, hp=200)
        assert contrast.simulation_output is None
        assert contrast.scenario is simulated.scenario
        assert contrast.scenario1.x_matrix.iloc[0]["hp"] == 200.0

    def test_setx_keeps_contrast(self, ls_model):
        z = setx1(setx(ls_model, hp=100), hp=200)
        z = setx(z, hp=120)
        assert z.scenario1 is not None
