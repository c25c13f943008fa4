from collections.abc import Callable, Hashable, Sequence
from dataclasses import dataclass

import numpy as np

from py_crf.lattice import SumLattice

PARAMETER_NAMES = ("initial", "final", "emission", "transition")


@dataclass
class FeatureVector:
    """Sparse feature vector: parallel arrays of feature indices and their values."""

    indices: np.ndarray
    values: np.ndarray

    def __post_init__(self):
        self.indices = np.asarray(self.indices, dtype=np.int64)
        self.values = np.asarray(self.values, dtype=np.float64)
        if self.indices.shape != self.values.shape or self.indices.ndim != 1:
            raise ValueError(f"Feature indices {self.indices.shape} and values {self.values.shape} do not line up")
        if (self.indices < 0).any():
            raise ValueError(f"Negative feature index in {self.indices.tolist()}")

    @classmethod
    def from_dict(cls, features: dict[int, float]) -> "FeatureVector":
        return cls(np.fromiter(features.keys(), dtype=np.int64), np.fromiter(features.values(), dtype=np.float64))

    @classmethod
    def from_indices(cls, indices: Sequence[int]) -> "FeatureVector":
        """Binary features, duplicates collapsed."""
        unique = np.unique(np.asarray(indices, dtype=np.int64))
        return cls(unique, np.ones(len(unique)))

    def __len__(self):
        return len(self.indices)

    def max_index(self) -> int:
        return int(self.indices.max()) if len(self.indices) else -1

    def min_index(self) -> int:
        return int(self.indices.min()) if len(self.indices) else 0


BIAS = FeatureVector(np.array([0]), np.array([1.0]))


def bias_transition_features(features: Sequence[FeatureVector], position: int) -> FeatureVector:
    """A single always-on transition feature: a plain transition matrix."""
    return BIAS


def observation_transition_features(features: Sequence[FeatureVector], position: int) -> FeatureVector:
    """Transitions conditioned on the observation at the destination position."""
    return features[position]


class Factors:
    """Parameter layout of a CRF, used both for the live weights and for gradient accumulators.

    Every weight array has a boolean `frozen` mask of the same shape. Frozen slots are skipped by
    `plus_equals(..., respect_frozen=True)`, which is the only way training changes the weights.
    """

    def __init__(self, num_states: int, num_features: int, num_transition_features: int = 1):
        self.initial = np.zeros(num_states)
        self.final = np.zeros(num_states)
        self.emission = np.zeros((num_states, num_features))
        self.transition = np.zeros((num_states, num_states, num_transition_features))
        self.frozen = {name: np.zeros(getattr(self, name).shape, dtype=bool) for name in PARAMETER_NAMES}
        self.total_weight = 0.0

    @property
    def num_states(self) -> int:
        return self.emission.shape[0]

    @property
    def num_features(self) -> int:
        return self.emission.shape[1]

    @property
    def num_transition_features(self) -> int:
        return self.transition.shape[2]

    def arrays(self) -> list[tuple[str, np.ndarray]]:
        return [(name, getattr(self, name)) for name in PARAMETER_NAMES]

    def num_parameters(self) -> int:
        return sum(weights.size for _, weights in self.arrays())

    def zero(self):
        for _, weights in self.arrays():
            weights.fill(0.0)
        self.total_weight = 0.0

    def structure_matches(self, other: "Factors") -> bool:
        return all(weights.shape == getattr(other, name).shape for name, weights in self.arrays())

    def plus_equals(self, other: "Factors", scale: float = 1.0, respect_frozen: bool = False):
        """In place: self += scale * other, leaving slots frozen in self untouched if respect_frozen."""
        if not self.structure_matches(other):
            raise ValueError(f"Cannot add factors of shape {other.shapes()} into factors of shape {self.shapes()}")
        for name, weights in self.arrays():
            update = scale * getattr(other, name)
            if respect_frozen:
                np.add(weights, update, out=weights, where=~self.frozen[name])
            else:
                weights += update

    def all_finite(self) -> bool:
        return all(np.isfinite(weights).all() for _, weights in self.arrays())

    def shapes(self) -> dict[str, tuple[int, ...]]:
        return {name: weights.shape for name, weights in self.arrays()}

    def copy(self) -> "Factors":
        other = Factors(self.num_states, self.num_features, self.num_transition_features)
        for name, weights in self.arrays():
            getattr(other, name)[...] = weights
            other.frozen[name][...] = self.frozen[name]
        other.total_weight = self.total_weight
        return other

    # --- frozen masks ---

    def freeze_state(self, state: int):
        """Freeze the emission, initial and final weights of one state."""
        self.frozen["emission"][state] = True
        self.frozen["initial"][state] = True
        self.frozen["final"][state] = True

    def freeze_transition(self, source: int, dest: int):
        self.frozen["transition"][source, dest] = True

    def unfreeze(self):
        for mask in self.frozen.values():
            mask.fill(False)


class Incrementor:
    """Write-only view used by the lattice to add expected counts into one Factors."""

    def __init__(self, factors: Factors):
        self.factors = factors

    def increment_emission(self, state: int, features: FeatureVector, weight: float):
        np.add.at(self.factors.emission[state], features.indices, weight * features.values)

    def increment_transition(self, source: int, dest: int, features: FeatureVector, weight: float):
        np.add.at(self.factors.transition[source, dest], features.indices, weight * features.values)

    def increment_initial(self, state: int, weight: float):
        self.factors.initial[state] += weight

    def increment_final(self, state: int, weight: float):
        self.factors.final[state] += weight

    def increment_total_weight(self, weight: float):
        self.factors.total_weight += weight


class CRF:
    """Linear-chain CRF structure together with its live parameters.

    Args:
        states: State labels, in index order.
        num_features: Dimensionality of the observation feature vectors.
        num_transition_features: Dimensionality of the vectors returned by `transition_features`.
        allowed_transitions: Boolean (num_states, num_states) matrix, all True if omitted.
        transition_features: Callable (features, position) -> FeatureVector giving the transition features
            for the edge entering `position`. Defaults to a single bias feature.
    """

    def __init__(
        self,
        states: Sequence[Hashable],
        num_features: int,
        num_transition_features: int = 1,
        allowed_transitions: np.ndarray | None = None,
        transition_features: Callable[[Sequence[FeatureVector], int], FeatureVector] | None = None,
    ):
        if not states:
            raise ValueError("A CRF needs at least one state")
        self.states = list(states)
        self.state_ids = {state: i for i, state in enumerate(self.states)}
        if len(self.state_ids) != len(self.states):
            raise ValueError(f"Duplicate state labels in {self.states}")
        self.num_features = num_features
        self.num_transition_features = num_transition_features
        if allowed_transitions is None:
            allowed_transitions = np.ones((self.num_states, self.num_states), dtype=bool)
        self.allowed_transitions = np.asarray(allowed_transitions, dtype=bool)
        if self.allowed_transitions.shape != (self.num_states, self.num_states):
            raise ValueError(f"allowed_transitions must have shape {(self.num_states, self.num_states)}")
        self.transition_features = transition_features or bias_transition_features
        self.parameters = self.new_factors()

    @property
    def num_states(self) -> int:
        return len(self.states)

    def new_factors(self) -> Factors:
        return Factors(self.num_states, self.num_features, self.num_transition_features)

    def state_index(self, label: Hashable) -> int:
        try:
            return self.state_ids[label]
        except KeyError:
            raise ValueError(f"Unknown label {label!r}, expected one of {self.states}") from None

    def make_lattice(self, features: Sequence[FeatureVector], labels: Sequence[Hashable] | None = None) -> SumLattice:
        return SumLattice(self, features, labels)

    def predict(self, features: Sequence[FeatureVector]) -> list[Hashable]:
        labels, _ = self.make_lattice(features).viterbi()
        return labels
