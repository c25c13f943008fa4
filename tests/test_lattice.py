import itertools
import math

import numpy as np
import pytest

from py_crf.lattice import SumLattice, sum_lattice_weight
from py_crf.model import CRF, Factors, FeatureVector, Incrementor

# --- Fixtures ---


@pytest.fixture
def two_state_crf():
    # Weights chosen so the four paths over [x0, x1] can be summed by hand.
    crf = CRF(["A", "B"], num_features=2)
    crf.parameters.emission[...] = [[1.0, 0.5], [0.2, 1.5]]
    crf.parameters.transition[:, :, 0] = [[0.3, -0.4], [0.1, 0.7]]
    return crf


@pytest.fixture
def two_positions():
    return [FeatureVector.from_dict({0: 1.0}), FeatureVector.from_dict({1: 1.0})]


@pytest.fixture
def random_crf():
    rng = np.random.default_rng(42)
    crf = CRF(["A", "B", "C"], num_features=4)
    for _, weights in crf.parameters.arrays():
        weights[...] = rng.normal(size=weights.shape)
    return crf


@pytest.fixture
def random_sequence():
    rng = np.random.default_rng(7)
    return [FeatureVector.from_dict({j: float(rng.uniform(-1, 2)) for j in range(4) if rng.random() < 0.7}) for _ in range(4)]


def all_paths(crf, length):
    return list(itertools.product(crf.states, repeat=length))


# --- Partition function ---


def test_hand_computed_partition_function(two_state_crf, two_positions):
    # e0(A)=1.0 e0(B)=0.2, e1(A)=0.5 e1(B)=1.5
    path_scores = {
        ("A", "A"): 1.0 + 0.3 + 0.5,
        ("A", "B"): 1.0 - 0.4 + 1.5,
        ("B", "A"): 0.2 + 0.1 + 0.5,
        ("B", "B"): 0.2 + 0.7 + 1.5,
    }
    expected = math.log(sum(math.exp(score) for score in path_scores.values()))
    lattice = SumLattice(two_state_crf, two_positions)
    assert abs(lattice.total_weight - expected) < 1e-9
    for labels, score in path_scores.items():
        assert abs(sum_lattice_weight(two_state_crf, two_positions, labels) - score) < 1e-9


def test_forward_and_backward_agree(random_crf, random_sequence):
    lattice = SumLattice(random_crf, random_sequence)
    from_beta = np.logaddexp.reduce(lattice.beta[0] + lattice.node_weights[0])
    assert from_beta == pytest.approx(lattice.total_weight)


def test_partition_sums_over_all_paths(random_crf, random_sequence):
    z = sum_lattice_weight(random_crf, random_sequence)
    path_scores = [sum_lattice_weight(random_crf, random_sequence, labels) for labels in all_paths(random_crf, 4)]
    assert np.logaddexp.reduce(path_scores) == pytest.approx(z)
    # log-sum-exp over all paths dominates any single path
    assert all(score <= z for score in path_scores)


def test_initial_and_final_weights(two_state_crf, two_positions):
    two_state_crf.parameters.initial[...] = [0.0, 2.0]
    two_state_crf.parameters.final[...] = [-1.0, 0.0]
    assert sum_lattice_weight(two_state_crf, two_positions, ["B", "A"]) == pytest.approx(2.0 + 0.2 + 0.1 + 0.5 - 1.0)


def test_single_position(two_state_crf):
    features = [FeatureVector.from_dict({0: 1.0})]
    z = sum_lattice_weight(two_state_crf, features)
    assert z == pytest.approx(math.log(math.exp(1.0) + math.exp(0.2)))
    assert sum_lattice_weight(two_state_crf, features, ["B"]) == pytest.approx(0.2)


def test_disallowed_transitions(two_state_crf, two_positions):
    two_state_crf.allowed_transitions[1, 0] = False
    expected = math.log(math.exp(1.8) + math.exp(2.1) + math.exp(2.4))
    assert sum_lattice_weight(two_state_crf, two_positions) == pytest.approx(expected)
    with pytest.raises(ValueError):
        sum_lattice_weight(two_state_crf, two_positions, ["B", "A"])


def test_partial_labels(random_crf, random_sequence):
    labels = ["B", None, None, "A"]
    compatible = [p for p in all_paths(random_crf, 4) if p[0] == "B" and p[3] == "A"]
    expected = np.logaddexp.reduce([sum_lattice_weight(random_crf, random_sequence, p) for p in compatible])
    assert sum_lattice_weight(random_crf, random_sequence, labels) == pytest.approx(expected)


def test_long_sequence_is_stable():
    crf = CRF(["A", "B"], num_features=1)
    crf.parameters.emission[...] = [[50.0], [49.0]]
    crf.parameters.transition[...] = 10.0
    features = [FeatureVector.from_dict({0: 1.0})] * 500
    lattice = SumLattice(crf, features)
    assert math.isfinite(lattice.total_weight)
    assert lattice.total_weight >= 500 * 50.0 + 499 * 10.0
    np.testing.assert_allclose(lattice.node_marginals().sum(axis=1), 1.0)


# --- Marginals and expectations ---


def test_marginals_are_distributions(random_crf, random_sequence):
    lattice = SumLattice(random_crf, random_sequence)
    gamma = lattice.node_marginals()
    assert gamma.shape == (4, 3)
    np.testing.assert_allclose(gamma.sum(axis=1), 1.0)
    for pos in range(3):
        xi = lattice.edge_marginals(pos)
        assert xi.sum() == pytest.approx(1.0)
        np.testing.assert_allclose(xi.sum(axis=1), gamma[pos])
        np.testing.assert_allclose(xi.sum(axis=0), gamma[pos + 1])


def test_constrained_expectations_are_empirical_counts(two_state_crf, two_positions):
    counts = two_state_crf.new_factors()
    score = SumLattice(two_state_crf, two_positions, ["A", "B"]).populate_expectations(Incrementor(counts))
    assert score == pytest.approx(2.1)
    np.testing.assert_allclose(counts.emission, [[1.0, 0.0], [0.0, 1.0]], atol=1e-12)
    np.testing.assert_allclose(counts.transition[:, :, 0], [[0.0, 1.0], [0.0, 0.0]], atol=1e-12)
    np.testing.assert_allclose(counts.initial, [1.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(counts.final, [0.0, 1.0], atol=1e-12)
    assert counts.total_weight == pytest.approx(2.1)


def test_unconstrained_expectations_match_brute_force(random_crf, random_sequence):
    counts = random_crf.new_factors()
    z = SumLattice(random_crf, random_sequence).populate_expectations(Incrementor(counts))

    expected = random_crf.new_factors()
    for labels in all_paths(random_crf, 4):
        prob = math.exp(sum_lattice_weight(random_crf, random_sequence, labels) - z)
        path_counts = random_crf.new_factors()
        SumLattice(random_crf, random_sequence, labels).populate_expectations(Incrementor(path_counts))
        expected.plus_equals(path_counts, prob)

    for name, weights in counts.arrays():
        np.testing.assert_allclose(weights, getattr(expected, name), atol=1e-9)


def test_expected_feature_mass(random_crf, random_sequence):
    counts = random_crf.new_factors()
    sum_lattice_weight(random_crf, random_sequence, incrementor=Incrementor(counts))
    total_feature_value = sum(fv.values.sum() for fv in random_sequence)
    assert counts.emission.sum() == pytest.approx(total_feature_value)
    assert counts.transition.sum() == pytest.approx(3.0)
    assert counts.initial.sum() == pytest.approx(1.0)


def test_incrementor_structure_mismatch(two_state_crf, two_positions):
    with pytest.raises(ValueError):
        SumLattice(two_state_crf, two_positions).populate_expectations(Incrementor(Factors(2, 3, 1)))


# --- Viterbi ---


def test_viterbi_matches_brute_force(random_crf, random_sequence):
    labels, score = SumLattice(random_crf, random_sequence).viterbi()
    best = max(all_paths(random_crf, 4), key=lambda p: sum_lattice_weight(random_crf, random_sequence, p))
    assert labels == list(best)
    assert score == pytest.approx(sum_lattice_weight(random_crf, random_sequence, best))
    assert random_crf.predict(random_sequence) == list(best)


def test_viterbi_two_state(two_state_crf, two_positions):
    labels, score = two_state_crf.make_lattice(two_positions).viterbi()
    assert labels == ["B", "B"]
    assert score == pytest.approx(2.4)


# --- Errors ---


def test_empty_sequence(two_state_crf):
    with pytest.raises(ValueError):
        SumLattice(two_state_crf, [])


def test_label_length_mismatch(two_state_crf, two_positions):
    with pytest.raises(ValueError):
        SumLattice(two_state_crf, two_positions, ["A"])


def test_unknown_label(two_state_crf, two_positions):
    with pytest.raises(ValueError):
        SumLattice(two_state_crf, two_positions, ["A", "Z"])


def test_feature_index_out_of_range(two_state_crf):
    with pytest.raises(ValueError):
        SumLattice(two_state_crf, [FeatureVector.from_dict({2: 1.0})])


def test_negative_feature_index(two_state_crf, two_positions):
    with pytest.raises(ValueError):
        FeatureVector(np.array([-1]), np.array([1.0]))

    # indices reassigned after construction must not wrap around to the last weight
    wrapped = FeatureVector.from_dict({0: 1.0})
    wrapped.indices = np.array([-1])
    with pytest.raises(ValueError):
        SumLattice(two_state_crf, [wrapped], ["A"])

    bad_transition = FeatureVector.from_dict({0: 1.0})
    bad_transition.indices = np.array([-1])
    two_state_crf.transition_features = lambda features, position: bad_transition
    with pytest.raises(ValueError):
        SumLattice(two_state_crf, two_positions)
