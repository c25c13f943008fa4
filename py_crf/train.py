from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

import numpy as np

from py_crf.data import Instance
from py_crf.lattice import SumLattice, sum_lattice_weight
from py_crf.model import CRF, Incrementor
from py_crf.utils import create_logger

CONVERGENCE_TOLERANCE = 1e-3
INITIAL_SEARCH_RATE = 5e-11


@dataclass
class LearningRateSchedule:
    """Decaying step size eta = 1 / (lambda * t).

    lambda is 1 / (number of training instances). Starting from eta_0, t_0 = 1 / (lambda * eta_0),
    and t grows by one after every single-instance update, across epochs.
    """

    lambda_: float
    t: float

    @classmethod
    def start(cls, num_instances: int, learning_rate: float) -> "LearningRateSchedule":
        if num_instances <= 0:
            raise ValueError("Cannot schedule learning rates for an empty training set")
        if not learning_rate > 0:
            raise ValueError(f"Learning rate must be positive, got {learning_rate}")
        lambda_ = 1.0 / num_instances
        return cls(lambda_=lambda_, t=1.0 / (lambda_ * learning_rate))

    @property
    def rate(self) -> float:
        return 1.0 / (self.lambda_ * self.t)

    def step(self):
        self.t += 1.0


class SGDTrainer:
    """Trains a CRF by stochastic gradient ascent on the conditional log-likelihood, one instance at a time.

    Args:
        crf: The model; its `parameters` are updated in place.
        learning_rate: Initial step size, see `choose_learning_rate_by_likelihood` for picking one.
        evaluators: Callables invoked with the trainer after every epoch.
        convergence_tolerance: Stop when the epoch log-likelihood changes by less than this.
        rng: Random generator for shuffling; a new one is seeded from `seed` if omitted.
        verbose: Log debug-level detail.
    """

    def __init__(
        self,
        crf: CRF,
        learning_rate: float = 0.01,
        evaluators: Iterable[Callable[["SGDTrainer"], object]] = (),
        convergence_tolerance: float = CONVERGENCE_TOLERANCE,
        rng: np.random.Generator | None = None,
        seed: int | None = None,
        verbose: bool = False,
    ):
        if not learning_rate > 0:
            raise ValueError(f"Learning rate must be positive, got {learning_rate}")
        self.crf = crf
        self.learning_rate = learning_rate
        self.evaluators = list(evaluators)
        self.convergence_tolerance = convergence_tolerance
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.logger = create_logger("sgd_trainer", verbose)
        self.expectations = crf.new_factors()
        self.constraints = crf.new_factors()
        self.schedule: LearningRateSchedule | None = None
        self.iteration = 0
        self.converged = False

    @property
    def is_finished_training(self) -> bool:
        return self.converged

    def add_evaluator(self, evaluator: Callable[["SGDTrainer"], object]):
        self.evaluators.append(evaluator)

    def _check_structure(self):
        for name, factors in (("expectations", self.expectations), ("constraints", self.constraints)):
            if not factors.structure_matches(self.crf.parameters):
                raise ValueError(
                    f"Trainer {name} {factors.shapes()} do not match CRF parameters {self.crf.parameters.shapes()}"
                )

    # --- single steps ---

    def train_single(self, instance: Instance, rate: float | None = None) -> float:
        """One gradient step on `instance`, returning its log-likelihood before the step."""
        if instance.target is None:
            raise ValueError(f"Instance {instance.name!r} has no target labels to train on")
        rate = self.learning_rate if rate is None else rate
        self.constraints.zero()
        self.expectations.zero()
        log_likelihood = SumLattice(self.crf, instance.data, instance.target).populate_expectations(
            Incrementor(self.constraints)
        )
        log_likelihood -= SumLattice(self.crf, instance.data).populate_expectations(Incrementor(self.expectations))
        # gradient of the log-likelihood: empirical minus expected counts
        self.constraints.plus_equals(self.expectations, -1.0)
        self.crf.parameters.plus_equals(self.constraints, rate, respect_frozen=True)
        if not self.crf.parameters.all_finite():
            raise FloatingPointError(
                f"Non-finite CRF parameters after step with rate {rate:.4g} on instance {instance.name!r}"
            )
        return log_likelihood

    def _run_epoch(
        self, instances: Sequence[Instance], schedule: LearningRateSchedule, order: Iterable[int], track_rate: bool
    ) -> float:
        log_likelihood = 0.0
        for index in order:
            rate = schedule.rate
            if track_rate:
                self.learning_rate = rate
            log_likelihood += self.train_single(instances[int(index)], rate)
            schedule.step()
        return log_likelihood

    # --- epochs ---

    def train(self, training_set: Sequence[Instance], num_iterations: int = 100) -> bool:
        """Runs up to `num_iterations` shuffled epochs. Returns whether the log-likelihood converged."""
        self._check_structure()
        self.schedule = LearningRateSchedule.start(len(training_set), self.learning_rate)
        self.converged = False

        old_log_likelihood = float("-inf")
        for _ in range(num_iterations):
            self.iteration += 1
            order = self.rng.permutation(len(training_set))
            log_likelihood = self._run_epoch(training_set, self.schedule, order, track_rate=True)
            self.logger.info(
                f"🔄 Iteration {self.iteration}: log-likelihood = {log_likelihood:.4f}, learning rate = {self.learning_rate:.4g}"
            )
            self.run_evaluators()

            if abs(log_likelihood - old_log_likelihood) < self.convergence_tolerance:
                self.converged = True
                self.logger.info(f"🎯 Converged after {self.iteration} iterations")
                break
            old_log_likelihood = log_likelihood

        return self.converged

    def run_evaluators(self):
        for evaluator in self.evaluators:
            evaluator(self)

    def train_incremental_batch(self, training_set: Sequence[Instance]) -> bool:
        """One epoch over `training_set`. Never reports convergence."""
        self.train(training_set, 1)
        return False

    def train_incremental_single(self, instance: Instance) -> bool:
        """One step at the current learning rate. Never reports convergence."""
        self._check_structure()
        self.train_single(instance)
        return False

    # --- learning rate ---

    def compute_log_likelihood(self, instances: Iterable[Instance]) -> float:
        log_likelihood = 0.0
        for instance in instances:
            log_likelihood += sum_lattice_weight(self.crf, instance.data, instance.target)
            log_likelihood -= sum_lattice_weight(self.crf, instance.data)
        self.constraints.zero()
        self.expectations.zero()
        return log_likelihood

    def _train_sample(self, sample: Sequence[Instance], num_iterations: int, rate: float) -> float:
        schedule = LearningRateSchedule.start(len(sample), rate)
        log_likelihood = float("-inf")
        for _ in range(num_iterations):
            log_likelihood = self._run_epoch(sample, schedule, range(len(sample)), track_rate=False)
        return log_likelihood

    def choose_learning_rate_by_likelihood(
        self, sample: Sequence[Instance], num_iterations: int = 10, initial_rate: float = INITIAL_SEARCH_RATE
    ):
        """Sets the learning rate to half the rate that most improves the likelihood of `sample`.

        Candidates double from `initial_rate` while below 1. Each one is tried from zero parameters for
        `num_iterations` epochs, and the parameters are zeroed again at the end.
        """
        if len(sample) == 0:
            raise ValueError("Cannot choose a learning rate from an empty sample")
        self._check_structure()
        best_rate = best_change = float("-inf")
        rate = initial_rate
        self.logger.info(f"🔍 Searching learning rate on {len(sample):,} instances")
        while rate < 1:
            rate *= 2
            self.crf.parameters.zero()
            before = self.compute_log_likelihood(sample)
            change = self._train_sample(sample, num_iterations, rate) - before
            self.logger.debug(f"   ├─ likelihood change = {change:10.4g} for rate = {rate:.4g}")
            if change > best_change:
                best_change, best_rate = change, rate

        self.crf.parameters.zero()
        # conservative: half the best rate found
        best_rate /= 2
        self.logger.info(f"📈 Setting learning rate to {best_rate:.4g} (likelihood change {best_change:.4g})")
        self.learning_rate = best_rate
