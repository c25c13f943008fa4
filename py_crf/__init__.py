from .data import Alphabet, Instance, InstanceList
from .lattice import SumLattice, sum_lattice_weight
from .model import CRF, Factors, FeatureVector, Incrementor
from .train import LearningRateSchedule, SGDTrainer

__all__ = [
    "CRF",
    "Factors",
    "FeatureVector",
    "Incrementor",
    "SumLattice",
    "sum_lattice_weight",
    "SGDTrainer",
    "LearningRateSchedule",
    "Alphabet",
    "Instance",
    "InstanceList",
]
