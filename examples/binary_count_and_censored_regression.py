"""
Case 2: Binary, Count and Censored Outcomes
Fair (1978) extramarital-affairs survey and the RAND Health Insurance
Experiment (both bundled with statsmodels)

Demonstrates:
- ``model="logit"`` / ``"probit"`` with first differences and risk ratios
- ``model="tobit"`` for an outcome censored at zero
- ``model="poisson"`` / ``"negbin"`` with clustered covariance
- Fixed effects (``| occupation``) and a simulated group comparison
- Survey weights with ``make_survey_design``
"""

import numpy as np
import statsmodels.api as sm

from zelig2 import (
    make_survey_design,
    print_model,
    print_summary,
    setx,
    setx1,
    sim,
    simulation_table,
    zelig2,
)

# ============================================================================
# Load data
# ============================================================================

fair = sm.datasets.fair.load_pandas().data
fair["any_affair"] = (fair["affairs"] > 0).astype(int)
fair["occupation"] = fair["occupation"].astype(int)

rand = sm.datasets.randhie.load_pandas().data

print(f"Fair data: {len(fair)} respondents")
print(f"RAND HIE data: {len(rand)} person-years")

# ============================================================================
# Logit / probit: marriage rating 2 vs. 5
# ============================================================================

formula = "any_affair ~ rate_marriage + age + yrs_married + religious"
for model in ("logit", "probit"):
    z = zelig2(formula, model=model, data=fair)
    z = sim(setx1(setx(z, rate_marriage=2), rate_marriage=5), random_state=3)
    print_summary(z)
    out = z.simulation_output
    assert out.fd.mean() < 0
    assert np.all(out.rr > 0)

# ============================================================================
# Tobit: time spent in affairs, censored at zero
# ============================================================================

z_tobit = zelig2(
    "affairs ~ rate_marriage + age + yrs_married + religious",
    model="tobit",
    data=fair,
)
z_tobit = sim(setx(z_tobit, rate_marriage=[1, 2, 3, 4, 5]), random_state=4)
print_summary(z_tobit)
assert np.all(z_tobit.simulation_output.pv.to_numpy() >= 0)

# ============================================================================
# Poisson vs. negative binomial: physician visits, clustered by plan
# ============================================================================

count_formula = "mdvis ~ lncoins + idp + lpi + fmde + physlm + disea"
rand["plan"] = (rand["lncoins"].rank(method="dense")).astype(int)
for model in ("poisson", "negbin"):
    z = zelig2(
        count_formula, model=model, data=rand, vcov_type="cluster", cluster="plan"
    )
    print_model(z)
    z = sim(setx1(setx(z, idp=0), idp=1), num=500, random_state=5)
    print(simulation_table(z).round(3))

# ============================================================================
# Fixed effects: occupation intercepts absorbed
# ============================================================================

z_fe = zelig2(
    "any_affair ~ rate_marriage + age + yrs_married | occupation",
    model="logit",
    data=fair,
)
print_summary(z_fe)
z_fe = sim(
    setx1(setx(z_fe, occupation=2), occupation=5), num=1000, random_state=6
)
print(simulation_table(z_fe).round(3))

# ============================================================================
# Survey weights: design-based standard errors
# ============================================================================

rng = np.random.default_rng(0)
fair["pw"] = rng.uniform(0.5, 2.0, len(fair))
fair["psu"] = np.arange(len(fair)) // 20
design = make_survey_design(fair, ids="~psu", weights="~pw")
z_svy = zelig2(formula, model="logit", data=fair, survey_design=design)
print_summary(z_svy)
