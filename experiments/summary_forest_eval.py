import argparse
import logging
import sys
import tempfile
import time
from pathlib import Path

import numpy as np

# Allow running as: python experiments/summary_forest_eval.py
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from data_matrix import DataMatrix, IndexView
from forest_summaries import ForestSummaries
from summary import BiGaussianOutput, CategoricalOutput, GaussianOutput, SummaryConfig
from summary_set import SummarySet


def make_dataset(n_samples, n_features, random_state):
    """Inputs plus a 4-column target: class, correlated pair, independent continuous."""
    rng = np.random.default_rng(random_state)
    X = rng.normal(size=(n_samples, n_features))

    w = rng.normal(size=n_features)
    score = X @ w
    y_class = np.digitize(score, np.quantile(score, [1 / 3, 2 / 3]))

    base = X[:, 0] + 0.5 * X[:, 1]
    y_pair_a = base + 0.3 * rng.normal(size=n_samples)
    y_pair_b = 0.8 * base + 0.3 * rng.normal(size=n_samples)
    y_cont = np.sin(X[:, 2]) + 0.1 * rng.normal(size=n_samples)

    Y = np.column_stack([y_class, y_pair_a, y_pair_b, y_cont]).astype(np.float64)
    targets = DataMatrix(Y, discrete=[True, False, False, False], categories=[3, 0, 0, 0])
    return X, targets


def random_oblivious_leaves(X, rows, depth, rng):
    """Leaf assignment of a random oblivious tree fitted on ``rows``.

    Stands in for tree induction: each level splits one random feature at the median of
    the bootstrap sample. Returns a function mapping input rows to leaf indices.
    """
    features = rng.choice(X.shape[1], size=depth, replace=True)
    thresholds = np.array([np.median(X[rows, f]) for f in features])
    powers = 2 ** np.arange(depth)

    def assign(X_query):
        bits = X_query[:, features] > thresholds
        return (bits * powers).sum(axis=1)

    return assign


def build_forest(X, targets, train_rows, n_trees, depth, codes, config, rng):
    n_leaves = 2**depth
    trees = []
    assigners = []
    oob_views = []

    for _ in range(n_trees):
        boot = rng.choice(train_rows, size=train_rows.size, replace=True)
        assign = random_oblivious_leaves(X, boot, depth, rng)

        boot_leaf = assign(X[boot])
        leaves = [
            SummarySet.build(targets, IndexView(boot[boot_leaf == leaf]), codes, config)
            for leaf in range(n_leaves)
        ]

        oob = np.setdiff1d(train_rows, boot)
        oob_leaf = assign(X[oob])
        oob_views.append(
            [IndexView(oob[oob_leaf == leaf]) if np.any(oob_leaf == leaf) else None for leaf in range(n_leaves)]
        )

        trees.append(leaves)
        assigners.append(assign)

    return ForestSummaries(trees), assigners, oob_views


def evaluate(args):
    rng = np.random.default_rng(args.random_state)
    X, targets = make_dataset(args.n_samples, args.n_features, args.random_state)
    config = SummaryConfig(prob_epsilon=args.prob_epsilon, variance_floor=args.variance_floor)

    order = rng.permutation(X.shape[0])
    n_test = max(1, int(round(X.shape[0] * args.test_size)))
    test_rows, train_rows = order[:n_test], order[n_test:]

    t0 = time.perf_counter()
    forest, assigners, oob_views = build_forest(
        X, targets, train_rows, args.n_trees, args.depth, args.codes, config, rng
    )
    build_time = time.perf_counter() - t0

    oob = forest.oob_error(targets, oob_views, config=config)

    leaves = np.column_stack([assign(X[test_rows]) for assign in assigners])

    t0 = time.perf_counter()
    batched = forest.predict_many(leaves, config=config)
    batched_time = time.perf_counter() - t0

    t0 = time.perf_counter()
    single = [forest.predict(row, config=config) for row in leaves]
    single_time = time.perf_counter() - t0

    Y = targets.data[test_rows]
    metrics = {}
    max_gap = 0.0
    for feature, output in enumerate(batched):
        if isinstance(output, CategoricalOutput):
            truth = Y[:, feature].astype(int)
            metrics[f"accuracy_{feature}"] = float(np.mean(output.prediction == truth))
        elif isinstance(output, GaussianOutput):
            metrics[f"rmse_{feature}"] = float(np.sqrt(np.mean((output.mean - Y[:, feature]) ** 2)))
            gaps = [abs(single[i][feature].mean - output.mean[i]) for i in range(len(single))]
            max_gap = max(max_gap, float(np.max(gaps)))
        elif isinstance(output, BiGaussianOutput):
            pair = Y[:, feature : feature + 2]
            metrics[f"rmse_{feature}_{feature + 1}"] = float(np.sqrt(np.mean((output.mean - pair) ** 2)))

    with tempfile.TemporaryDirectory() as tmp:
        path = forest.save(Path(tmp) / "leaves.frls")
        file_size = path.stat().st_size
        reloaded = ForestSummaries.load(path)
    reload_ok = reloaded.to_bytes() == forest.to_bytes()

    return {
        "build_time_sec": build_time,
        "oob_error": oob,
        "metrics": metrics,
        "merge_many_time_sec": batched_time,
        "merge_loop_time_sec": single_time,
        "merge_max_gap": max_gap,
        "file_bytes": file_size,
        "reload_ok": reload_ok,
    }


def main():
    parser = argparse.ArgumentParser(description="Leaf summary checks on a synthetic random forest")
    parser.add_argument("--n-samples", type=int, default=3000)
    parser.add_argument("--n-features", type=int, default=8)
    parser.add_argument("--n-trees", type=int, default=32)
    parser.add_argument("--depth", type=int, default=4)
    parser.add_argument("--test-size", type=float, default=0.2)
    parser.add_argument(
        "--codes",
        type=str,
        default="CBNG",
        help="Summary type code per target column (N, C, G, B); missing codes are defaulted",
    )
    parser.add_argument("--prob-epsilon", type=float, default=1e-6)
    parser.add_argument("--variance-floor", type=float, default=1e-6)
    parser.add_argument("--random-state", type=int, default=42)
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    out = evaluate(args)
    print(f"Forest trees={args.n_trees} depth={args.depth} codes={args.codes!r}")
    print(f"build time={out['build_time_sec']:.3f}s")
    print("OOB error per feature=" + ", ".join(f"{v:.2f}" for v in out["oob_error"]))
    print(f"test metrics={out['metrics']}")
    print(
        "merge"
        f" batched={out['merge_many_time_sec']:.4f}s"
        f" loop={out['merge_loop_time_sec']:.4f}s"
        f" max_gap={out['merge_max_gap']:.2e}"
    )
    print(f"persisted bytes={out['file_bytes']} reload_ok={out['reload_ok']}")


if __name__ == "__main__":
    main()
