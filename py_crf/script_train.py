import argparse

import numpy as np

from py_crf.evaluate import LogLikelihoodEvaluator, TokenAccuracyEvaluator, format_history
from py_crf.features import make_instances
from py_crf.model import CRF
from py_crf.train import SGDTrainer
from py_crf.utils import create_logger, read_tagged_sentences


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(description="Train a linear-chain CRF tagger by stochastic gradient.")
    parser.add_argument("train_file", help="Training data, one 'token TAG' per line, blank line between sentences")
    parser.add_argument("--test-file", help="Held-out data in the same format")
    parser.add_argument("--test-fraction", type=float, default=0.0, help="Hold out this fraction of the training data")
    parser.add_argument("--iterations", type=int, default=100, help="Maximum number of epochs")
    parser.add_argument("--learning-rate", type=float, default=0.01, help="Initial learning rate")
    parser.add_argument("--choose-rate", action="store_true", help="Pick the learning rate by likelihood on a sample")
    parser.add_argument("--sample-size", type=int, default=100, help="Sample size for --choose-rate")
    parser.add_argument("--window", type=int, default=1, help="Context window for word features")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for shuffling and splits")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_arguments(argv)
    logger = create_logger("script_train", args.verbose)
    rng = np.random.default_rng(args.seed)

    instances = make_instances(read_tagged_sentences(args.train_file), window=args.window)
    if args.test_file:
        test_instances = make_instances(read_tagged_sentences(args.test_file), instances.data_alphabet, grow=False, window=args.window)
        train_instances = instances
    elif args.test_fraction > 0:
        test_instances, train_instances = instances.split(args.test_fraction, rng)
    else:
        test_instances, train_instances = None, instances
    instances.data_alphabet.stop_growth()

    states = sorted({tag for instance in [*instances, *(test_instances or [])] for tag in instance.target})
    crf = CRF(states, num_features=len(instances.data_alphabet))
    logger.info(
        f"🌱 {len(train_instances):,} training sentences, {len(states)} states, {crf.parameters.num_parameters():,} parameters"
    )

    evaluators = [TokenAccuracyEvaluator(train_instances, "train", args.verbose)]
    if test_instances:
        evaluators += [
            LogLikelihoodEvaluator(test_instances, "test", args.verbose),
            TokenAccuracyEvaluator(test_instances, "test", args.verbose),
        ]
    trainer = SGDTrainer(crf, args.learning_rate, evaluators, rng=rng, verbose=args.verbose)
    if args.choose_rate:
        sample = [train_instances[int(i)] for i in rng.permutation(len(train_instances))[: args.sample_size]]
        trainer.choose_learning_rate_by_likelihood(sample)

    converged = trainer.train(train_instances, args.iterations)
    logger.info(f"🎉 Training finished after {trainer.iteration} iterations, converged = {converged}")
    print(format_history(evaluators))
    return trainer


if __name__ == "__main__":
    main()
