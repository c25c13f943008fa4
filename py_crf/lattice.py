from collections.abc import Hashable, Sequence

import numpy as np
from scipy.special import logsumexp


def _logsumexp(a: np.ndarray, axis: int) -> np.ndarray:
    # rows that are all -inf are unreachable states, not an error
    with np.errstate(divide="ignore"):
        return logsumexp(a, axis=axis)


class SumLattice:
    """Forward-backward over a linear chain, in log space.

    With `labels` the paths are restricted to the given label at each position (None leaves a
    position free); with fully specified labels `total_weight` is the score of that single path.
    Without labels it is the log partition function over all paths allowed by the CRF.
    """

    def __init__(self, crf, features: Sequence, labels: Sequence[Hashable] | None = None):
        if len(features) == 0:
            raise ValueError("Cannot build a lattice over an empty sequence")
        if labels is not None and len(labels) != len(features):
            raise ValueError(f"Label sequence has length {len(labels)} but feature sequence has length {len(features)}")
        self.crf = crf
        self.features = features
        self.labels = labels
        self.size = len(features)
        self.node_weights, self.edge_weights, self.transition_vectors = self._potentials()
        self.alpha, self.beta = self._forward_backward()
        self.total_weight = float(_logsumexp(self.alpha[-1], axis=0))
        if self.total_weight == float("-inf"):
            raise ValueError(f"No path through the lattice is compatible with labels {list(labels or [])}")
        assert not np.isnan(self.total_weight), "NaN total weight, are the parameters finite?"

    def _potentials(self) -> tuple[np.ndarray, np.ndarray, list]:
        """node[i, s] is the log-weight of state s at position i, edge[i, s, d] of moving s -> d into position i+1."""
        crf, params = self.crf, self.crf.parameters
        node = np.empty((self.size, crf.num_states))
        for pos, fv in enumerate(self.features):
            if fv.min_index() < 0 or fv.max_index() >= params.num_features:
                raise ValueError(f"Feature indices at position {pos} fall outside [0, {params.num_features})")
            node[pos] = params.emission[:, fv.indices] @ fv.values
        node[0] += params.initial
        node[-1] += params.final

        edge = np.empty((self.size - 1, crf.num_states, crf.num_states))
        transition_vectors = []
        for pos in range(1, self.size):
            tfv = crf.transition_features(self.features, pos)
            if tfv.min_index() < 0 or tfv.max_index() >= params.num_transition_features:
                raise ValueError(
                    f"Transition feature indices at position {pos} fall outside [0, {params.num_transition_features})"
                )
            edge[pos - 1] = params.transition[:, :, tfv.indices] @ tfv.values
            transition_vectors.append(tfv)
        edge[:, ~crf.allowed_transitions] = float("-inf")

        if self.labels is not None:
            for pos, label in enumerate(self.labels):
                if label is None:
                    continue
                state = crf.state_index(label)
                weight = node[pos, state]
                node[pos] = float("-inf")
                node[pos, state] = weight
        return node, edge, transition_vectors

    def _forward_backward(self) -> tuple[np.ndarray, np.ndarray]:
        """returns
        alpha[i, s] = log total weight of prefixes ending in s at i (including node i)
        beta[i, s] = log total weight of suffixes after s at i (excluding node i)
        """
        node, edge = self.node_weights, self.edge_weights
        alpha = np.empty_like(node)
        beta = np.empty_like(node)
        alpha[0] = node[0]
        for pos in range(1, self.size):
            alpha[pos] = _logsumexp(alpha[pos - 1][:, None] + edge[pos - 1], axis=0) + node[pos]
        beta[-1] = 0.0
        for pos in range(self.size - 2, -1, -1):
            beta[pos] = _logsumexp(edge[pos] + (node[pos + 1] + beta[pos + 1])[None, :], axis=1)
        return alpha, beta

    def node_marginals(self) -> np.ndarray:
        """(size, num_states) probability of each state at each position."""
        return np.exp(self.alpha + self.beta - self.total_weight)

    def edge_marginals(self, pos: int) -> np.ndarray:
        """(num_states, num_states) probability of each transition from position pos to pos+1."""
        return np.exp(
            self.alpha[pos][:, None]
            + self.edge_weights[pos]
            + (self.node_weights[pos + 1] + self.beta[pos + 1])[None, :]
            - self.total_weight
        )

    def populate_expectations(self, incrementor) -> float:
        """
        Adds the expected count of every feature under this lattice's distribution to `incrementor`.

        Each active feature at a position (or transition) receives its marginal probability times the
        feature value. The log total weight is added to the incrementor's total as well.

        Returns:
            The log total weight of the lattice.
        """
        if not incrementor.factors.structure_matches(self.crf.parameters):
            raise ValueError("Accumulator factors do not match the structure of the CRF parameters")
        gamma = self.node_marginals()
        for pos, fv in enumerate(self.features):
            for state in np.flatnonzero(gamma[pos]):
                incrementor.increment_emission(state, fv, gamma[pos, state])
        for state in np.flatnonzero(gamma[0]):
            incrementor.increment_initial(state, gamma[0, state])
        for state in np.flatnonzero(gamma[-1]):
            incrementor.increment_final(state, gamma[-1, state])
        for pos, tfv in enumerate(self.transition_vectors):
            xi = self.edge_marginals(pos)
            for source, dest in zip(*np.nonzero(xi)):
                incrementor.increment_transition(source, dest, tfv, xi[source, dest])
        incrementor.increment_total_weight(self.total_weight)
        return self.total_weight

    def viterbi(self) -> tuple[list[Hashable], float]:
        """Best label path and its score."""
        node, edge = self.node_weights, self.edge_weights
        best = node[0].copy()
        backpointers = np.zeros((self.size, self.crf.num_states), dtype=np.int64)
        for pos in range(1, self.size):
            scores = best[:, None] + edge[pos - 1]
            backpointers[pos] = scores.argmax(axis=0)
            best = scores.max(axis=0) + node[pos]

        state = int(best.argmax())
        score = float(best[state])
        path = [state]
        for pos in range(self.size - 1, 0, -1):
            state = int(backpointers[pos, state])
            path.append(state)
        return [self.crf.states[s] for s in path[::-1]], score


def sum_lattice_weight(crf, features: Sequence, labels: Sequence[Hashable] | None = None, incrementor=None) -> float:
    """Log total weight of the (optionally label-constrained) lattice, adding expectations to `incrementor` if given."""
    lattice = SumLattice(crf, features, labels)
    if incrementor is None:
        return lattice.total_weight
    return lattice.populate_expectations(incrementor)
