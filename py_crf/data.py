from collections.abc import Hashable, Iterator, Sequence
from dataclasses import dataclass, field

import numpy as np

from py_crf.model import FeatureVector


class Alphabet:
    """Bidirectional map between entries (feature names, labels) and dense integer ids."""

    def __init__(self, entries: Sequence[Hashable] = ()):
        self.entries = []
        self.ids = {}
        self.growing = True
        for entry in entries:
            self.lookup_index(entry)

    def lookup_index(self, entry: Hashable, grow: bool = True) -> int | None:
        """Id of `entry`, adding it if missing and growth is allowed. None for unknown entries otherwise."""
        if entry in self.ids:
            return self.ids[entry]
        if not (grow and self.growing):
            return None
        self.ids[entry] = len(self.entries)
        self.entries.append(entry)
        return self.ids[entry]

    def lookup_entry(self, index: int) -> Hashable:
        return self.entries[index]

    def stop_growth(self):
        self.growing = False

    def __len__(self):
        return len(self.entries)

    def __contains__(self, entry):
        return entry in self.ids

    def __iter__(self):
        return iter(self.entries)


@dataclass
class Instance:
    data: list[FeatureVector]
    target: list[Hashable] | None = None
    name: str | None = None
    source: list[str] | None = field(default=None, repr=False)

    def __len__(self):
        return len(self.data)


class InstanceList:
    """Indexed training-set container. Order is fixed; the trainer shuffles indices itself."""

    def __init__(self, instances: Sequence[Instance] = (), data_alphabet: Alphabet | None = None):
        self.instances = list(instances)
        self.data_alphabet = data_alphabet

    def append(self, instance: Instance):
        self.instances.append(instance)

    def __len__(self) -> int:
        return len(self.instances)

    def __getitem__(self, index: int) -> Instance:
        return self.instances[index]

    def __iter__(self) -> Iterator[Instance]:
        return iter(self.instances)

    def num_tokens(self) -> int:
        return sum(len(instance) for instance in self.instances)

    def split(self, fraction: float, rng: np.random.Generator | None = None) -> tuple["InstanceList", "InstanceList"]:
        """Random split into (first, rest) with `fraction` of the instances in the first part."""
        if not 0.0 <= fraction <= 1.0:
            raise ValueError(f"Split fraction must be in [0, 1], got {fraction}")
        rng = rng if rng is not None else np.random.default_rng()
        order = rng.permutation(len(self.instances))
        cut = int(round(fraction * len(self.instances)))
        first = InstanceList([self.instances[i] for i in order[:cut]], self.data_alphabet)
        rest = InstanceList([self.instances[i] for i in order[cut:]], self.data_alphabet)
        return first, rest
