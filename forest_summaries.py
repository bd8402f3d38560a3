from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np

from data_matrix import MatrixLike
from summary import SummaryConfig, require_bytes
from summary_errors import InvalidFeatureLayout
from summary_set import SummarySet

logger = logging.getLogger(__name__)

FOREST_MAGIC = b"FRLS"
FOREST_VERSION = 1

_HEADER = struct.Struct("<4sBI")
_LEAVES = struct.Struct("<I")


class ForestSummaries:
    """Leaf summary sets of every tree in a forest, addressed by (tree, leaf)."""

    def __init__(self, trees: Iterable[Sequence[SummarySet]]) -> None:
        self.trees: list[tuple[SummarySet, ...]] = [tuple(leaves) for leaves in trees]

        all_leaves = [leaf for leaves in self.trees for leaf in leaves]
        self.codes = SummarySet.check_layout(all_leaves) if all_leaves else ""
        for tree_idx, leaves in enumerate(self.trees):
            if not leaves:
                raise InvalidFeatureLayout(f"tree {tree_idx} has no leaves")

    @property
    def n_trees(self) -> int:
        return len(self.trees)

    @property
    def features(self) -> int:
        return len(self.codes)

    def leaf(self, tree: int, leaf: int) -> SummarySet:
        return self.trees[tree][leaf]

    def _reached(self, leaves: np.ndarray) -> list[SummarySet]:
        return [self.trees[tree_idx][int(leaf)] for tree_idx, leaf in enumerate(leaves)]

    def predict(self, leaves: Sequence[int], config: SummaryConfig | None = None) -> tuple:
        """Merge the leaves one exemplar reached, given one leaf index per tree."""
        leaves = np.asarray(leaves, dtype=np.int64)
        if leaves.shape != (self.n_trees,):
            raise ValueError(f"expected one leaf index per tree ({self.n_trees}), got {leaves.shape}")
        return SummarySet.merge(self._reached(leaves), config=config)

    def predict_many(self, leaves: np.ndarray, config: SummaryConfig | None = None) -> tuple:
        """Batched predict for an exemplars x trees array of leaf indices."""
        leaves = np.asarray(leaves, dtype=np.int64)
        if leaves.ndim != 2 or leaves.shape[1] != self.n_trees:
            raise ValueError(f"leaves must have shape (exemplars, {self.n_trees}), got {leaves.shape}")

        sets = [leaf for row in leaves for leaf in self._reached(row)]
        return SummarySet.merge_many(
            leaves.shape[0], self.n_trees, sets, config=config, codes=self.codes
        )

    def oob_error(
        self,
        matrix: MatrixLike,
        views: Sequence[Sequence[Iterable[int] | None]],
        out: np.ndarray | None = None,
        config: SummaryConfig | None = None,
    ) -> np.ndarray:
        """Accumulate the per-feature error of held-out exemplars.

        ``views[tree][leaf]`` lists the out-of-bag rows of ``tree`` that fall into
        ``leaf``, or is None when there are none.
        """
        if len(views) != self.n_trees:
            raise ValueError(f"expected views for {self.n_trees} trees, got {len(views)}")
        if out is None:
            out = np.zeros(self.features, dtype=np.float64)

        for tree_idx, tree_views in enumerate(views):
            if len(tree_views) > len(self.trees[tree_idx]):
                raise ValueError(
                    f"tree {tree_idx} has {len(self.trees[tree_idx])} leaves, got {len(tree_views)} views"
                )
            for leaf_idx, view in enumerate(tree_views):
                if view is None:
                    continue
                self.trees[tree_idx][leaf_idx].error(matrix, view, out, config)
        return out

    def size(self) -> int:
        return _HEADER.size + sum(
            _LEAVES.size + sum(leaf.size() for leaf in leaves) for leaves in self.trees
        )

    def to_bytes(self) -> bytes:
        parts = [_HEADER.pack(FOREST_MAGIC, FOREST_VERSION, self.n_trees)]
        for leaves in self.trees:
            parts.append(_LEAVES.pack(len(leaves)))
            parts.extend(leaf.encode() for leaf in leaves)
        return b"".join(parts)

    @classmethod
    def from_bytes(cls, buffer) -> ForestSummaries:
        buffer = memoryview(buffer)
        require_bytes(buffer, 0, _HEADER.size, "forest header")
        magic, version, n_trees = _HEADER.unpack_from(buffer, 0)
        if magic != FOREST_MAGIC:
            raise ValueError(f"not a forest summary buffer (magic {magic!r})")
        if version != FOREST_VERSION:
            raise ValueError(f"unsupported forest summary version {version}")

        position = _HEADER.size
        trees = []
        for _ in range(n_trees):
            require_bytes(buffer, position, _LEAVES.size, "tree header")
            (n_leaves,) = _LEAVES.unpack_from(buffer, position)
            position += _LEAVES.size

            leaves = []
            for _ in range(n_leaves):
                leaf, ate = SummarySet.decode(buffer, position)
                leaves.append(leaf)
                position += ate
            trees.append(leaves)

        if position != len(buffer):
            logger.warning("Ignoring %d trailing bytes after forest summaries", len(buffer) - position)
        logger.debug("Decoded %d trees of leaf summaries from %d bytes", n_trees, position)
        return cls(trees)

    def save(self, path: str | Path) -> Path:
        path = Path(path)
        path.write_bytes(self.to_bytes())
        logger.info("Saved leaf summaries of %d trees to %s", self.n_trees, path)
        return path

    @classmethod
    def load(cls, path: str | Path) -> ForestSummaries:
        path = Path(path)
        forest = cls.from_bytes(path.read_bytes())
        logger.info("Loaded leaf summaries of %d trees from %s", forest.n_trees, path)
        return forest
