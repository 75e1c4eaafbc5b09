"""
Case 1: Least Squares and Quantile Regression (Continuous Outcome)
Engel food-expenditure data (bundled with statsmodels)

Demonstrates:
- ``model="ls"`` with default, HC3 and bootstrap covariance
- ``model="quantile"`` at several ``tau`` levels
- Point and range scenarios with ``setx`` / ``setx1``
- First differences and the tidy ``qi_to_df`` export
"""

import numpy as np
import statsmodels.api as sm

from zelig2 import (
    coef_table,
    print_summary,
    qi_to_df,
    set_option,
    setx,
    setx1,
    sim,
    simulation_table,
    zelig2,
)

# ============================================================================
# Load data
# ============================================================================

engel = sm.datasets.engel.load_pandas().data
print(f"Engel data: {len(engel)} households, columns {list(engel.columns)}")

set_option("num", 2000)

# ============================================================================
# Least squares: default vs. HC3 covariance
# ============================================================================

z_ls = zelig2("foodexp ~ income", model="ls", data=engel)
z_hc3 = zelig2("foodexp ~ income", model="ls", data=engel, vcov_type="HC3")
print_summary(z_hc3)

se_default = coef_table(z_ls)["Std. Error"]
se_hc3 = coef_table(z_hc3)["Std. Error"]
print("Heteroskedasticity-robust / model-based SE ratio:")
print((se_hc3 / se_default).round(3))

# ============================================================================
# First difference: income at its 25th vs. 75th percentile
# ============================================================================

lo, hi = engel["income"].quantile([0.25, 0.75])
z_hc3 = setx(z_hc3, income=lo)
z_hc3 = setx1(z_hc3, income=hi)
z_hc3 = sim(z_hc3, random_state=2024)
print_summary(z_hc3)
assert z_hc3.simulation_output.fd.mean() > 0

# ============================================================================
# Bootstrap covariance
# ============================================================================

z_boot = zelig2(
    "foodexp ~ income",
    model="ls",
    data=engel,
    vcov_type="bootstrap",
    bootstrap_n=200,
    random_state=7,
)
print(coef_table(z_boot).round(4))

# ============================================================================
# Quantile regression across the conditional distribution
# ============================================================================

incomes = np.linspace(500, 3000, 6).round()
for tau in (0.1, 0.5, 0.9):
    z_q = zelig2("foodexp ~ income", model="quantile", data=engel, tau=tau)
    z_q = sim(setx(z_q, income=incomes), random_state=1)
    table = simulation_table(z_q, ci=0.9)
    print(f"\ntau = {tau}: simulated conditional quantiles of food expenditure")
    print(table.loc["ev", ["mean", "lower", "upper"]].round(1))

# ============================================================================
# Tidy export
# ============================================================================

tidy = qi_to_df(z_q)
print(tidy.head())
assert set(tidy.columns) == {"draw", "income", "ev", "pv"}
