from __future__ import annotations

from typing import Iterable, Protocol

import numpy as np


class MatrixLike(Protocol):
    """Read accessors a summary needs from the matrix it summarises."""

    @property
    def feature_count(self) -> int: ...

    def value(self, row: int, feature: int) -> float: ...

    def values(self, rows: np.ndarray, feature: int) -> np.ndarray: ...

    def is_discrete(self, feature: int) -> bool: ...

    def category_count(self, feature: int) -> int: ...


class DataMatrix:
    """Dense exemplars x features matrix with a discrete/continuous flag per column.

    Discrete columns hold category ids 0..category_count-1. When ``categories`` is not
    given the count of a discrete column is one past its largest value.
    """

    def __init__(
        self,
        data: np.ndarray,
        discrete: Iterable[bool] | None = None,
        categories: Iterable[int] | None = None,
    ) -> None:
        data = np.array(data, dtype=np.float64)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        if data.ndim != 2:
            raise ValueError("data must be a 1D or 2D array")
        data.setflags(write=False)
        self.data = data

        n_features = data.shape[1]
        if discrete is None:
            discrete_flags = np.zeros(n_features, dtype=bool)
        else:
            discrete_flags = np.asarray(list(discrete), dtype=bool)
        if discrete_flags.shape != (n_features,):
            raise ValueError("discrete must have one flag per feature")
        self.discrete = discrete_flags

        if categories is None:
            counts = np.zeros(n_features, dtype=np.int64)
            for feature_idx in np.flatnonzero(discrete_flags):
                column = data[:, feature_idx]
                if column.size > 0:
                    counts[feature_idx] = int(np.max(column)) + 1
        else:
            counts = np.asarray(list(categories), dtype=np.int64)
            if counts.shape != (n_features,):
                raise ValueError("categories must have one count per feature")
        if np.any(counts < 0):
            raise ValueError("category counts must be non-negative")
        self.categories = counts

    @property
    def exemplar_count(self) -> int:
        return int(self.data.shape[0])

    @property
    def feature_count(self) -> int:
        return int(self.data.shape[1])

    def value(self, row: int, feature: int) -> float:
        return float(self.data[row, feature])

    def values(self, rows: np.ndarray, feature: int) -> np.ndarray:
        return self.data[rows, feature]

    def is_discrete(self, feature: int) -> bool:
        return bool(self.discrete[feature])

    def category_count(self, feature: int) -> int:
        return int(self.categories[feature]) if self.discrete[feature] else 0


class IndexView:
    """Restartable, read-only sequence of exemplar row indices."""

    def __init__(self, rows: Iterable[int]) -> None:
        rows = np.array(list(rows) if not isinstance(rows, np.ndarray) else rows, dtype=np.int64)
        if rows.ndim != 1:
            raise ValueError("rows must be a 1D sequence of indices")
        rows.setflags(write=False)
        self.rows = rows

    @classmethod
    def all(cls, n_rows: int) -> IndexView:
        return cls(np.arange(n_rows, dtype=np.int64))

    def __iter__(self):
        return iter(self.rows.tolist())

    def __len__(self) -> int:
        return int(self.rows.size)

    def concat(self, other: IndexView) -> IndexView:
        return IndexView(np.concatenate([self.rows, as_rows(other)]))


def as_rows(view: Iterable[int]) -> np.ndarray:
    """Materialise a view into an int64 row array, reading it exactly once."""
    if isinstance(view, IndexView):
        return view.rows
    if isinstance(view, np.ndarray):
        return np.asarray(view, dtype=np.int64).ravel()
    return np.fromiter(iter(view), dtype=np.int64)
