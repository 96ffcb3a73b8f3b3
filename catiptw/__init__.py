from .levels import ExposureLevels
from .data import load_dataset, complete_cases, require_complete
from .propensity import PropensityModel, fit_multinomial, predict_probabilities, check_probability_matrix
from .weights import WeightResult, observed_probabilities, stabilized_weights, weight_diagnostics
from .bootstrap import BootstrapDistribution, resample, run_replicates
from .refutations import IPTWRefutationReport, RefutationCheck
from .refutations._check import Assumption
from .estimators.iptw import CategoricalIPTW, IPTWResult
from ._exceptions import (
    ConfigurationInvalid,
    DataIncomplete,
    DegenerateWeight,
    ModelFitFailure,
    ModelOutputInvalid,
    ReplicateFitFailure,
)

__all__ = [
    "ExposureLevels",
    "load_dataset", "complete_cases", "require_complete",
    "PropensityModel", "fit_multinomial", "predict_probabilities", "check_probability_matrix",
    "WeightResult", "observed_probabilities", "stabilized_weights", "weight_diagnostics",
    "BootstrapDistribution", "resample", "run_replicates",
    "CategoricalIPTW", "IPTWResult",
    "IPTWRefutationReport", "RefutationCheck", "Assumption",
    "ConfigurationInvalid", "DataIncomplete", "DegenerateWeight",
    "ModelFitFailure", "ModelOutputInvalid", "ReplicateFitFailure",
]
