"""
K-pairwise maximum-entropy models for binary population activity

fits pairwise couplings J and a population-count potential VK so the model
reproduces the data's co-activation rates and its distribution of the number
of simultaneously active units K
"""
from kpairwise.config import FitOptions
from kpairwise.errors import ConfigurationError, NonBinaryDataError, ShapeMismatchError
from kpairwise.models.kpairwise import KPairwiseEBM
from kpairwise.models.sampler import advance
from kpairwise.statistics import statistics
from kpairwise.train import KPairwiseTrainer, fit_kpairwise

__all__ = [
    "FitOptions",
    "ConfigurationError",
    "NonBinaryDataError",
    "ShapeMismatchError",
    "KPairwiseEBM",
    "advance",
    "statistics",
    "KPairwiseTrainer",
    "fit_kpairwise",
]
