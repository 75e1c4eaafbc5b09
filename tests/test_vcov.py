"""Tests for the variance-covariance resolver."""

from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm
import statsmodels.formula.api as smf

from zelig2 import (
    MissingClusterError,
    UnknownVcovTypeError,
    compute_vcov,
    zelig2,
)
from zelig2._backends import SandwichParts
from zelig2.vcov import (
    align_vcov,
    bootstrap_vcov,
    resolve_cluster,
    sandwich_cluster,
    sandwich_hc,
    validate_vcov_type,
)

FORMULA = "mpg ~ hp + wt"


def _ols(mtcars, **fit_kwargs):
    return smf.ols(FORMULA, mtcars).fit(**fit_kwargs)


def _make_parts(n=20, k=2, seed=0):
    rng = np.random.default_rng(seed)
    estfun = rng.standard_normal((n, k))
    return SandwichParts(
        estfun=estfun,
        bread=np.eye(k),
        leverage=np.full(n, k / n),
        names=[f"b{i}" for i in range(k)],
    )


class TestValidateVcovType:
    @pytest.mark.parametrize(
        "given, expected",
        [
            ("default", "default"),
            ("hc0", "HC0"),
            ("HC3", "HC3"),
            ("Robust", "robust"),
            ("CLUSTER", "cluster"),
            ("bootstrap", "bootstrap"),
        ],
    )
    def test_normalises(self, given, expected):
        assert validate_vcov_type(given) == expected

    @pytest.mark.parametrize("bad", ["HC5", "sandwich", 3, None])
    def test_rejects_unknown(self, bad):
        with pytest.raises(UnknownVcovTypeError, match="Unknown vcov_type"):
            validate_vcov_type(bad)

    def test_zelig2_rejects_unknown_before_fitting(self, mtcars):
        with pytest.raises(UnknownVcovTypeError):
            zelig2(FORMULA, model="ls", data=mtcars, vcov_type="HAC")


class TestDefault:
    def test_default_is_backend_covariance(self, mtcars):
        z = zelig2("am ~ hp + wt", model="logit", data=mtcars)
        ref = smf.glm("am ~ hp + wt", mtcars, family=sm.families.Binomial()).fit()
        np.testing.assert_allclose(z.vcov, ref.cov_params(), rtol=1e-10)

    def test_ls_default_matches_ols(self, mtcars):
        z = zelig2(FORMULA, model="ls", data=mtcars)
        np.testing.assert_allclose(z.vcov, _ols(mtcars).cov_params(), rtol=1e-8)

    def test_labels_match_coefficients(self, mtcars):
        z = zelig2(FORMULA, model="ls", data=mtcars)
        assert list(z.vcov.index) == list(z.coefficients.index)
        assert list(z.vcov.columns) == list(z.coefficients.index)


class TestHeteroskedasticityConsistent:
    @pytest.mark.parametrize("hc_type", ["HC0", "HC1", "HC2", "HC3"])
    def test_ls_matches_ols(self, mtcars, hc_type):
        z = zelig2(FORMULA, model="ls", data=mtcars, vcov_type=hc_type)
        ref = _ols(mtcars, cov_type=hc_type)
        np.testing.assert_allclose(z.vcov, ref.cov_params(), rtol=1e-8)

    def test_robust_is_hc1(self, mtcars):
        robust = zelig2(FORMULA, model="ls", data=mtcars, vcov_type="robust")
        hc1 = zelig2(FORMULA, model="ls", data=mtcars, vcov_type="HC1")
        np.testing.assert_array_equal(robust.vcov, hc1.vcov)
        assert robust.vcov_type == "robust"

    def test_hc4_inflates_high_leverage(self, mtcars):
        hc0 = zelig2(FORMULA, model="ls", data=mtcars, vcov_type="HC0")
        hc4 = zelig2(FORMULA, model="ls", data=mtcars, vcov_type="HC4")
        assert np.all(np.diag(hc4.vcov) > np.diag(hc0.vcov))

    def test_logit_hc0_matches_statsmodels(self, mtcars):
        z = zelig2("am ~ hp + wt", model="logit", data=mtcars, vcov_type="HC0")
        ref = smf.glm("am ~ hp + wt", mtcars, family=sm.families.Binomial()).fit(
            cov_type="HC0"
        )
        np.testing.assert_allclose(z.vcov, ref.cov_params(), rtol=1e-6)

    def test_quantile_hc0_reproduces_kernel_covariance(self, mtcars):
        z = zelig2(FORMULA, model="quantile", data=mtcars, vcov_type="HC0")
        ref = smf.quantreg(FORMULA, mtcars).fit(q=0.5)
        np.testing.assert_allclose(z.vcov, ref.cov_params(), rtol=1e-6)

    def test_tobit_sandwich_aligned(self, censored_data):
        z = zelig2("y ~ x", model="tobit", data=censored_data, vcov_type="HC1")
        assert list(z.vcov.index) == ["Intercept", "x"]
        assert np.all(np.diag(z.vcov) > 0)


class TestCluster:
    def test_ls_matches_ols_cluster(self, mtcars):
        groups = pd.factorize(mtcars["cyl"])[0]
        z = zelig2(
            FORMULA, model="ls", data=mtcars, vcov_type="cluster", cluster="~cyl"
        )
        ref = _ols(mtcars, cov_type="cluster", cov_kwds={"groups": groups})
        np.testing.assert_allclose(z.vcov, ref.cov_params(), rtol=1e-8)

    def test_cluster_spec_shapes_agree(self, mtcars):
        kinds = ["~cyl", "cyl", mtcars["cyl"].to_numpy(), list(mtcars["cyl"])]
        fits = [
            zelig2(FORMULA, model="ls", data=mtcars, vcov_type="cluster", cluster=c)
            for c in kinds
        ]
        for other in fits[1:]:
            np.testing.assert_allclose(other.vcov, fits[0].vcov)

    def test_raw_vector_not_added_to_caller_data(self, mtcars):
        before = list(mtcars.columns)
        zelig2(
            FORMULA,
            model="ls",
            data=mtcars,
            vcov_type="cluster",
            cluster=mtcars["gear"].to_numpy(),
        )
        assert list(mtcars.columns) == before

    def test_raw_vector_length_mismatch(self, mtcars):
        with pytest.raises(ValueError, match="'cluster' has 3 values"):
            zelig2(
                FORMULA,
                model="ls",
                data=mtcars,
                vcov_type="cluster",
                cluster=[1, 2, 3],
            )

    def test_missing_cluster(self, mtcars):
        with pytest.raises(MissingClusterError, match="requires a cluster"):
            zelig2(FORMULA, model="ls", data=mtcars, vcov_type="cluster")

    def test_unknown_cluster_column(self, mtcars):
        with pytest.raises(MissingClusterError, match="not found"):
            zelig2(
                FORMULA, model="ls", data=mtcars, vcov_type="cluster", cluster="plant"
            )

    def test_combined_cluster_formula(self, mtcars):
        groups = resolve_cluster("~cyl + am", mtcars)
        assert len(pd.unique(groups)) == len(mtcars.groupby(["cyl", "am"]))

    def test_cluster_formula_without_columns(self, mtcars):
        with pytest.raises(MissingClusterError, match="names no column"):
            resolve_cluster("~plant", mtcars)

    def test_cluster_rows_follow_fit_index(self, mtcars):
        index = mtcars.index[:5]
        groups = resolve_cluster("cyl", mtcars, index=index)
        np.testing.assert_array_equal(groups, mtcars["cyl"].iloc[:5].to_numpy())


class TestSandwichPrimitives:
    def test_hc0_is_bread_meat_bread(self):
        parts = _make_parts()
        expected = parts.estfun.T @ parts.estfun
        np.testing.assert_allclose(sandwich_hc(parts, "HC0"), expected)

    def test_hc1_scaling(self):
        parts = _make_parts(n=20, k=2)
        np.testing.assert_allclose(
            sandwich_hc(parts, "HC1"), sandwich_hc(parts, "HC0") * 20 / 18
        )

    def test_unknown_hc_type(self):
        with pytest.raises(UnknownVcovTypeError):
            sandwich_hc(_make_parts(), "HC9")

    def test_singleton_clusters_equal_scaled_hc0(self):
        parts = _make_parts(n=20, k=2)
        cluster = sandwich_cluster(parts, np.arange(20))
        scale = (20 / 19) * (19 / 18)
        np.testing.assert_allclose(cluster, scale * sandwich_hc(parts, "HC0"))

    def test_one_cluster_rejected(self):
        with pytest.raises(ValueError, match="at least 2 clusters"):
            sandwich_cluster(_make_parts(), np.zeros(20))

    def test_missing_cluster_values_rejected(self):
        groups = np.array([1.0, np.nan] * 10)
        with pytest.raises(ValueError, match="missing values"):
            sandwich_cluster(_make_parts(), groups)

    def test_cluster_length_mismatch(self):
        with pytest.raises(ValueError, match="entries"):
            sandwich_cluster(_make_parts(), np.arange(5))


class TestBootstrap:
    def test_reproducible_and_plausible(self, mtcars):
        kwargs = dict(vcov_type="bootstrap", bootstrap_n=200, random_state=7)
        a = zelig2(FORMULA, model="ls", data=mtcars, **kwargs)
        b = zelig2(FORMULA, model="ls", data=mtcars, **kwargs)
        np.testing.assert_array_equal(a.vcov, b.vcov)
        default = zelig2(FORMULA, model="ls", data=mtcars)
        ratio = np.sqrt(np.diag(a.vcov) / np.diag(default.vcov))
        assert np.all((ratio > 0.3) & (ratio < 3.0))
        np.testing.assert_allclose(a.vcov, a.vcov.T)

    def test_option_sets_replicates(self, mtcars):
        from zelig2 import set_option

        set_option("bootstrap_n", 25)
        z = zelig2(
            FORMULA, model="ls", data=mtcars, vcov_type="bootstrap", random_state=0
        )
        assert z.vcov.shape == (3, 3)

    def test_failed_replicates_dropped_with_warning(self):
        calls = {"n": 0}

        def refit(sample):
            calls["n"] += 1
            if calls["n"] <= 2:
                raise np.linalg.LinAlgError("singular")
            value = float(sample["v"].mean())
            return SimpleNamespace(coefficients=lambda: pd.Series({"m": value}))

        data = pd.DataFrame({"v": np.arange(30, dtype=float)})
        with pytest.warns(UserWarning, match="2 of 10 bootstrap replicates"):
            cov = bootstrap_vcov(refit, data, ["m"], replicates=10, random_state=0)
        assert cov.shape == (1, 1)
        assert cov.loc["m", "m"] > 0

    def test_all_replicates_failing(self):
        def refit(sample):
            raise ValueError("no")

        data = pd.DataFrame({"v": [1.0, 2.0]})
        with pytest.warns(UserWarning):
            with pytest.raises(ValueError, match="at least 2 successful"):
                bootstrap_vcov(refit, data, ["m"], replicates=3)

    def test_requires_refit(self, mtcars):
        fit = zelig2(FORMULA, model="ls", data=mtcars).underlying_fit
        with pytest.raises(ValueError, match="refit"):
            compute_vcov(fit, "bootstrap")


class TestAlignVcov:
    def test_subset_by_name(self):
        coefs = pd.Series([1.0, 2.0], index=["a", "b"])
        names = ["a", "alpha", "b"]
        vcov = pd.DataFrame(np.arange(9.0).reshape(3, 3), index=names, columns=names)
        out = align_vcov(coefs, vcov)
        assert list(out.index) == ["a", "b"]
        assert out.loc["b", "a"] == 6.0

    def test_positional_fallback(self):
        coefs = pd.Series([1.0, 2.0], index=["a", "b"])
        out = align_vcov(coefs, np.arange(9.0).reshape(3, 3))
        np.testing.assert_array_equal(out.to_numpy(), [[0.0, 1.0], [3.0, 4.0]])
        assert list(out.columns) == ["a", "b"]

    def test_too_small(self):
        coefs = pd.Series([1.0, 2.0, 3.0], index=["a", "b", "c"])
        with pytest.raises(ValueError, match="cannot cover"):
            align_vcov(coefs, np.eye(2))
