from collections.abc import Iterable, Sequence

import regex as re

from py_crf.data import Alphabet, Instance, InstanceList
from py_crf.model import FeatureVector

WORD_REGEX = r"\p{L}+(?:['’]\p{L}+)*|\p{N}+(?:[.,]\p{N}+)*|[^\s\p{L}\p{N}]"

_word_pattern = re.compile(WORD_REGEX)
_shape_patterns = [(re.compile(r"\p{Lu}+"), "X"), (re.compile(r"\p{Ll}+"), "x"), (re.compile(r"\p{N}+"), "d")]


def tokenize(text: str, regex_pattern: str = WORD_REGEX) -> list[str]:
    if regex_pattern == WORD_REGEX:
        return _word_pattern.findall(text)
    return re.findall(regex_pattern, text)


def word_shape(word: str) -> str:
    """Collapsed character classes, e.g. 'Hello' -> 'Xx', '3.5' -> 'd.d'."""
    for pattern, symbol in _shape_patterns:
        word = pattern.sub(symbol, word)
    return word


def token_features(tokens: Sequence[str], position: int, window: int = 1) -> list[str]:
    word = tokens[position]
    lower = word.lower()
    features = [
        "bias",
        f"w={lower}",
        f"shape={word_shape(word)}",
        f"pre2={lower[:2]}",
        f"suf2={lower[-2:]}",
        f"suf3={lower[-3:]}",
    ]
    if word[:1].isupper():
        features.append("capitalized")
    for offset in range(1, window + 1):
        features.append(f"w[-{offset}]={tokens[position - offset].lower()}" if position - offset >= 0 else f"BOS[-{offset}]")
        features.append(
            f"w[+{offset}]={tokens[position + offset].lower()}" if position + offset < len(tokens) else f"EOS[+{offset}]"
        )
    return features


def featurize(tokens: Sequence[str], alphabet: Alphabet, grow: bool = True, window: int = 1) -> list[FeatureVector]:
    """One binary FeatureVector per token. Features missing from a non-growing alphabet are dropped."""
    vectors = []
    for position in range(len(tokens)):
        ids = (alphabet.lookup_index(name, grow=grow) for name in token_features(tokens, position, window))
        vectors.append(FeatureVector.from_indices([i for i in ids if i is not None]))
    return vectors


def make_instances(
    tagged_sentences: Iterable[Sequence[tuple[str, str]]],
    alphabet: Alphabet | None = None,
    grow: bool = True,
    window: int = 1,
) -> InstanceList:
    alphabet = alphabet if alphabet is not None else Alphabet()
    instances = InstanceList(data_alphabet=alphabet)
    for i, sentence in enumerate(tagged_sentences):
        tokens = [token for token, _ in sentence]
        tags = [tag for _, tag in sentence]
        instances.append(Instance(featurize(tokens, alphabet, grow, window), tags, name=f"sentence-{i}", source=tokens))
    return instances
