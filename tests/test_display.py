"""Tests for the display module."""

import numpy as np
import pandas as pd
import pytest

from zelig2 import (
    coef_table,
    print_model,
    print_summary,
    setx,
    setx1,
    sim,
    simulation_table,
    zelig2,
)
from zelig2.display import _truncate


def _simulated(mtcars, **scenario):
    z = zelig2("mpg ~ hp + wt", model="ls", data=mtcars)
    z = setx(z, **scenario) if scenario else setx(z, hp=100)
    return sim(setx1(z, hp=200), num=200, random_state=0)


class TestTruncate:
    def test_short_name_unchanged(self):
        assert _truncate("abc", 10) == "abc"

    def test_exact_length_unchanged(self):
        assert _truncate("abcdefghij", 10) == "abcdefghij"

    def test_long_name_truncated(self):
        result = _truncate("abcdefghijk", 10)
        assert len(result) == 10
        assert result.endswith("...")


class TestCoefTable:
    def test_columns_and_index(self, mtcars):
        z = zelig2("mpg ~ hp + wt", model="ls", data=mtcars)
        table = coef_table(z)
        assert list(table.columns) == ["Estimate", "Std. Error", "z value", "Pr(>|z|)"]
        assert list(table.index) == ["Intercept", "hp", "wt"]

    def test_standard_errors_follow_vcov(self, mtcars):
        z = zelig2("mpg ~ hp + wt", model="ls", data=mtcars, vcov_type="HC3")
        table = coef_table(z)
        np.testing.assert_allclose(table["Std. Error"], np.sqrt(np.diag(z.vcov)))
        np.testing.assert_allclose(
            table["z value"], table["Estimate"] / table["Std. Error"]
        )
        assert table["Pr(>|z|)"].between(0, 1).all()

    def test_fixed_effects_slopes_only(self, mtcars):
        z = zelig2("mpg ~ hp + wt | cyl", model="ls", data=mtcars)
        assert list(coef_table(z).index) == ["hp", "wt"]


class TestSimulationTable:
    def test_point(self, mtcars):
        z = _simulated(mtcars)
        table = simulation_table(z)
        assert list(table.index) == ["ev", "pv", "ev1", "pv1", "fd"]
        assert list(table.columns) == ["mean", "sd", "lower", "upper"]
        fd = z.simulation_output.fd
        assert table.loc["fd", "mean"] == pytest.approx(fd.mean())
        assert table.loc["fd", "lower"] == pytest.approx(np.quantile(fd, 0.025))

    def test_interval_width(self, mtcars):
        z = _simulated(mtcars)
        wide = simulation_table(z, ci=0.95)
        narrow = simulation_table(z, ci=0.5)
        assert (wide["upper"] - wide["lower"] > narrow["upper"] - narrow["lower"]).all()

    def test_range_uses_two_level_index(self, mtcars):
        z = zelig2("mpg ~ hp + wt", model="ls", data=mtcars)
        z = sim(setx(z, hp=[100, 200]), num=100, random_state=0)
        table = simulation_table(z)
        assert isinstance(table.index, pd.MultiIndex)
        assert table.index.names == ["quantity", "value"]
        assert len(table) == 4
        assert table.loc[("ev", 100), "mean"] > table.loc[("ev", 200), "mean"]

    def test_requires_simulation(self, mtcars):
        z = setx(zelig2("mpg ~ hp", model="ls", data=mtcars), hp=100)
        with pytest.raises(ValueError, match="No simulation output"):
            simulation_table(z)

    @pytest.mark.parametrize("ci", [0.0, 1.0, 1.5, -0.1])
    def test_invalid_ci(self, mtcars, ci):
        with pytest.raises(ValueError, match="'ci'"):
            simulation_table(_simulated(mtcars), ci=ci)


class TestPrintModel:
    def test_header_and_estimates(self, mtcars, capsys):
        z = zelig2("mpg ~ hp + wt", model="ls", data=mtcars)
        print_model(z)
        out = capsys.readouterr().out
        assert "Least Squares Regression" in out
        assert "mpg ~ hp + wt" in out
        assert "Estimate" in out
        assert "Std. Error" not in out
        assert "Simulation results" not in out

    def test_mentions_simulation(self, mtcars, capsys):
        print_model(_simulated(mtcars))
        out = capsys.readouterr().out
        assert "Simulation results available (200 draws)" in out


class TestPrintSummary:
    def test_coefficients_only(self, mtcars, capsys):
        z = zelig2("am ~ hp + wt", model="logit", data=mtcars, vcov_type="HC1")
        print_summary(z)
        out = capsys.readouterr().out
        assert "Logistic Regression" in out
        assert "Pr(>|z|)" in out
        assert "HC1" in out
        assert "Simulated Quantities" not in out

    def test_point_simulation(self, mtcars, capsys):
        print_summary(_simulated(mtcars))
        out = capsys.readouterr().out
        assert "Simulated Quantities of Interest (200 draws)" in out
        assert "Expected Values" in out
        assert "First Differences" in out
        assert "Risk Ratios" not in out
        assert "2.5%" in out and "97.5%" in out

    def test_range_simulation(self, mtcars, capsys):
        z = zelig2("mpg ~ hp + wt", model="ls", data=mtcars)
        z = sim(setx(z, hp=[100, 200]), num=100, random_state=0)
        print_summary(z, ci=0.9)
        out = capsys.readouterr().out
        assert "hp=100" in out
        assert "hp=200" in out
        assert "5%" in out and "95%" in out

    def test_fixed_effects_header(self, mtcars, capsys):
        print_summary(zelig2("mpg ~ hp + wt | cyl", model="ls", data=mtcars))
        out = capsys.readouterr().out
        assert "Fixed Effects:" in out
        assert "mpg ~ hp + wt | cyl" in out

    def test_survey_header(self, survey_data, capsys):
        z = zelig2(
            "y ~ x",
            model="ls",
            data=survey_data,
            weights="pw",
            ids="~psu",
            strata="~stratum",
        )
        print_summary(z)
        out = capsys.readouterr().out
        assert "Survey:" in out
        assert "24 PSUs in 4 strata" in out

    def test_invalid_ci(self, mtcars):
        with pytest.raises(ValueError, match="'ci'"):
            print_summary(_simulated(mtcars), ci=2)
