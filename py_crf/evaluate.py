from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence

from tabulate import tabulate

from py_crf.data import Instance
from py_crf.lattice import sum_lattice_weight
from py_crf.model import CRF
from py_crf.utils import create_logger


class Evaluator(ABC):
    """Per-epoch hook: scores the trainer's current CRF on `instances` and keeps a history."""

    metric = "score"

    def __init__(self, instances: Sequence[Instance], name: str = "eval", verbose: bool = False):
        self.instances = instances
        self.name = name
        self.history: list[tuple[int, float]] = []
        self.logger = create_logger("evaluator", verbose)

    def __call__(self, trainer):
        value = self.evaluate(trainer.crf)
        self.history.append((trainer.iteration, value))
        self.logger.info(f"📊 {self.name} {self.metric} after iteration {trainer.iteration}: {value:.4f}")

    @abstractmethod
    def evaluate(self, crf: CRF) -> float:
        ...

    def labeled_instances(self) -> Iterator[Instance]:
        for instance in self.instances:
            if instance.target is None:
                raise ValueError(f"Instance {instance.name!r} has no target labels to evaluate against")
            yield instance

    @property
    def column(self) -> str:
        return f"{self.name} {self.metric}"


class LogLikelihoodEvaluator(Evaluator):
    metric = "log-likelihood"

    def evaluate(self, crf: CRF) -> float:
        return sum(
            sum_lattice_weight(crf, instance.data, instance.target) - sum_lattice_weight(crf, instance.data)
            for instance in self.labeled_instances()
        )


class TokenAccuracyEvaluator(Evaluator):
    metric = "accuracy"

    def evaluate(self, crf: CRF) -> float:
        correct = total = 0
        for instance in self.labeled_instances():
            predicted = crf.predict(instance.data)
            gold = [(p, t) for p, t in zip(predicted, instance.target) if t is not None]
            correct += sum(p == t for p, t in gold)
            total += len(gold)
        return correct / total if total else 0.0


def format_history(evaluators: Sequence[Evaluator], tablefmt: str = "simple_grid") -> str:
    """One row per iteration, one column per evaluator."""
    iterations = sorted({iteration for evaluator in evaluators for iteration, _ in evaluator.history})
    histories = [dict(evaluator.history) for evaluator in evaluators]
    rows = [[iteration] + [history.get(iteration) for history in histories] for iteration in iterations]
    return tabulate(
        rows,
        headers=["Iteration"] + [evaluator.column for evaluator in evaluators],
        tablefmt=tablefmt,
        floatfmt=".4f",
        numalign="right",
    )
