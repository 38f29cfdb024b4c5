"""
twostage - Two-Stage Unequal-Probability Sampling Estimators

A Python package for estimating population totals from two-stage samples
drawn with probability proportional to size, without replacement
(Horvitz-Thompson totals with Sen-Yates-Grundy variances).
"""

from .core import (
    InclusionProbabilities,
    SimulationParameters,
    DESIGN_CONFIGS,
    InsufficientSimulationCoverage,
    NegativeVarianceWarning,
    DegenerateProbabilityError,
    DegenerateInclusionProbability,
    DegenerateJointProbability,
    estimate_probabilities,
)
from .tables import JointInclusionTable, ProbabilityTables
from .estimation import (
    EstimationFunctions,
    SampleUnit,
    TwoStageEstimator,
    estimate_population_total,
)
from .population import PopulationFrame

__version__ = "1.0.0"
__all__ = [
    "InclusionProbabilities",
    "SimulationParameters",
    "DESIGN_CONFIGS",
    "InsufficientSimulationCoverage",
    "NegativeVarianceWarning",
    "DegenerateProbabilityError",
    "DegenerateInclusionProbability",
    "DegenerateJointProbability",
    "estimate_probabilities",
    "JointInclusionTable",
    "ProbabilityTables",
    "EstimationFunctions",
    "SampleUnit",
    "TwoStageEstimator",
    "estimate_population_total",
    "PopulationFrame",
]
