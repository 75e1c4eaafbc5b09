"""zelig2 — Simulation-based quantities of interest for regression models.

Fits least-squares, logit, probit, Poisson, negative-binomial, Gamma,
tobit and quantile regressions through one interface, optionally with
fixed effects, survey designs and robust, clustered or bootstrap
covariance estimators, then simulates expected values, predicted
values, first differences and risk ratios at user-chosen covariate
scenarios by drawing coefficients from their estimated sampling
distribution.

Public API:
    .. autosummary::
        zelig2
        to_zelig2
        from_zelig2_model
        setx
        setx1
        sim
        qi_to_df
        coef_table
        simulation_table
        print_model
        print_summary
        compute_vcov
        compute_fe_contribution
        make_survey_design
        register_model
        register_family
        get_model_spec
        list_models
        get_option
        set_option
        reset_options
        ModelFamily
        ModelSpec
        FittedModel
        Scenario
        SimulationOutput
        SurveyDesign
"""

from ._config import get_option, reset_options, set_option
from ._results import FittedModel, Scenario, SimulationOutput
from .core import from_zelig2_model, to_zelig2, zelig2
from .display import coef_table, print_model, print_summary, simulation_table
from .exceptions import (
    InvalidDataError,
    InvalidFormulaError,
    InvalidModelNameError,
    InvalidSurveyDesignError,
    InvalidWeightSpecError,
    MissingClusterError,
    ModelNotFoundError,
    MultipleRangeVariablesError,
    NoScenarioError,
    UnknownCategoricalLevelError,
    UnknownVcovTypeError,
    UnsupportedFixedEffectsError,
    Zelig2Error,
)
from .families import ModelFamily, register_family
from .fixed_effects import compute_fe_contribution
from .registry import ModelSpec, get_model_spec, list_models, register_model
from .scenario import setx, setx1
from .simulation import qi_to_df, sim
from .survey import SurveyDesign, make_survey_design
from .vcov import compute_vcov

__all__ = [
    "zelig2",
    "to_zelig2",
    "from_zelig2_model",
    "setx",
    "setx1",
    "sim",
    "qi_to_df",
    "coef_table",
    "simulation_table",
    "print_model",
    "print_summary",
    "compute_vcov",
    "compute_fe_contribution",
    "make_survey_design",
    "register_model",
    "register_family",
    "get_model_spec",
    "list_models",
    "get_option",
    "set_option",
    "reset_options",
    "ModelFamily",
    "ModelSpec",
    "FittedModel",
    "Scenario",
    "SimulationOutput",
    "SurveyDesign",
    "Zelig2Error",
    "InvalidFormulaError",
    "InvalidDataError",
    "InvalidModelNameError",
    "ModelNotFoundError",
    "UnsupportedFixedEffectsError",
    "MissingClusterError",
    "UnknownVcovTypeError",
    "InvalidWeightSpecError",
    "InvalidSurveyDesignError",
    "NoScenarioError",
    "MultipleRangeVariablesError",
    "UnknownCategoricalLevelError",
]
