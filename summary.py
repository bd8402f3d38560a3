"""
Per-leaf statistical summaries for a random forest.

A leaf summarises, for one output feature, the exemplars that reached it. Four kinds
exist, each identified by a one character code used in type strings and as the first
byte of its serialized form:

    N  Nothing      no state, used to fill the slot after a BiGaussian
    C  Categorical  histogram of category ids, merges to a probability vector
    G  Gaussian     count, mean and unbiased variance
    B  BiGaussian   Gaussian over the feature and the one after it

Every kind scores held-out exemplars with a likelihood-based error, merges many
instances (one per tree, optionally for many exemplars at once) into an output value,
and round-trips exactly through bytes.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, ClassVar, Iterable, Mapping, Sequence

import numpy as np

from data_matrix import MatrixLike, as_rows
from summary_errors import (
    AllocationFailure,
    InvalidFeatureLayout,
    TruncatedData,
    UnknownSummaryType,
)


@dataclass(frozen=True)
class SummaryConfig:
    prob_epsilon: float = 1e-6
    variance_floor: float = 1e-6

    def __post_init__(self) -> None:
        if not (0.0 < self.prob_epsilon <= 1.0):
            raise ValueError("prob_epsilon must be in (0, 1]")
        if self.variance_floor <= 0.0:
            raise ValueError("variance_floor must be > 0")


DEFAULT_CONFIG = SummaryConfig()

_TAG = struct.Struct("<B")


def require_bytes(buffer, offset: int, needed: int, what: str) -> None:
    available = len(buffer) - offset
    if available < needed:
        raise TruncatedData(f"{what} needs {needed} bytes, only {max(available, 0)} left")


def _zeros(shape, dtype=np.float64) -> np.ndarray:
    try:
        return np.zeros(shape, dtype=dtype)
    except MemoryError as exc:
        raise AllocationFailure(f"cannot allocate merge array of shape {shape}") from exc


def _readonly(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class CategoricalOutput:
    probabilities: np.ndarray

    @property
    def prediction(self):
        return np.argmax(self.probabilities, axis=-1)

    def row(self, index: int) -> CategoricalOutput:
        return CategoricalOutput(probabilities=self.probabilities[index])


@dataclass(frozen=True, eq=False)
class GaussianOutput:
    mean: np.ndarray | float
    variance: np.ndarray | float

    @property
    def prediction(self):
        return self.mean

    def row(self, index: int) -> GaussianOutput:
        return GaussianOutput(mean=float(self.mean[index]), variance=float(self.variance[index]))


@dataclass(frozen=True, eq=False)
class BiGaussianOutput:
    mean: np.ndarray
    covariance: np.ndarray

    @property
    def prediction(self):
        return self.mean

    def row(self, index: int) -> BiGaussianOutput:
        return BiGaussianOutput(mean=self.mean[index], covariance=self.covariance[index])


class Summary:
    """Statistics of one feature over the exemplars at a leaf.

    Subclasses are the closed set of kinds listed in ``SUMMARY_TYPES``; the class (and
    its ``code``) is the tag every dispatch goes through.
    """

    code: ClassVar[str]
    name: ClassVar[str]
    description: ClassVar[str]

    @classmethod
    def build(
        cls,
        matrix: MatrixLike,
        view: Iterable[int],
        feature: int,
        config: SummaryConfig | None = None,
    ) -> Summary:
        raise NotImplementedError

    def error(
        self,
        matrix: MatrixLike,
        view: Iterable[int],
        feature: int,
        config: SummaryConfig | None = None,
    ) -> float:
        raise NotImplementedError

    @classmethod
    def merge_many(
        cls,
        exemplars: int,
        trees: int,
        summaries: Sequence[Summary],
        config: SummaryConfig | None = None,
    ):
        raise NotImplementedError

    @classmethod
    def merge(cls, summaries: Sequence[Summary], config: SummaryConfig | None = None):
        summaries = list(summaries)
        batched = cls.merge_many(1, len(summaries), summaries, config)
        return None if batched is None else batched.row(0)

    @classmethod
    def _check_grid(cls, exemplars: int, trees: int, summaries: Sequence[Summary]) -> list[Summary]:
        summaries = list(summaries)
        if trees < 1:
            raise InvalidFeatureLayout("at least one tree is required to merge summaries")
        if exemplars < 0:
            raise ValueError("exemplars must be non-negative")
        if len(summaries) != exemplars * trees:
            raise InvalidFeatureLayout(
                f"expected {exemplars} x {trees} summaries, got {len(summaries)}"
            )
        for summary in summaries:
            if not isinstance(summary, Summary) or summary.code != cls.code:
                raise InvalidFeatureLayout(
                    f"cannot merge {getattr(summary, 'code', summary)!r} with {cls.code!r} summaries"
                )
        return summaries

    def payload_size(self) -> int:
        raise NotImplementedError

    def encode_payload(self) -> bytes:
        raise NotImplementedError

    @classmethod
    def decode_payload(cls, buffer, offset: int) -> tuple[Summary, int]:
        raise NotImplementedError

    def size(self) -> int:
        return _TAG.size + self.payload_size()

    def encode(self) -> bytes:
        return _TAG.pack(ord(self.code)) + self.encode_payload()


@dataclass(frozen=True, eq=False)
class NothingSummary(Summary):
    code: ClassVar[str] = "N"
    name: ClassVar[str] = "Nothing"
    description: ClassVar[str] = "Stores nothing; fills the slot consumed by a preceding BiGaussian."

    @classmethod
    def build(cls, matrix, view, feature, config=None) -> NothingSummary:
        return cls()

    def error(self, matrix, view, feature, config=None) -> float:
        return 0.0

    @classmethod
    def merge_many(cls, exemplars, trees, summaries, config=None):
        cls._check_grid(exemplars, trees, summaries)
        return None

    def payload_size(self) -> int:
        return 0

    def encode_payload(self) -> bytes:
        return b""

    @classmethod
    def decode_payload(cls, buffer, offset):
        return cls(), 0


@dataclass(frozen=True, eq=False)
class CategoricalSummary(Summary):
    code: ClassVar[str] = "C"
    name: ClassVar[str] = "Categorical"
    description: ClassVar[str] = "Histogram of category ids; merges to a probability vector."

    _HEADER: ClassVar[struct.Struct] = struct.Struct("<i")
    _COUNT_DTYPE: ClassVar[str] = "<i8"

    counts: np.ndarray

    def __post_init__(self) -> None:
        counts = np.array(self.counts, dtype=np.int64).ravel()
        if np.any(counts < 0):
            raise ValueError("category counts must be non-negative")
        object.__setattr__(self, "counts", _readonly(counts))

    @property
    def total(self) -> int:
        return int(self.counts.sum())

    @property
    def categories(self) -> int:
        return int(self.counts.size)

    @classmethod
    def build(cls, matrix, view, feature, config=None) -> CategoricalSummary:
        rows = as_rows(view)
        values = np.asarray(matrix.values(rows, feature)).astype(np.int64)
        if values.size > 0 and values.min() < 0:
            raise ValueError(f"feature {feature} has negative category ids")
        return cls(counts=np.bincount(values, minlength=matrix.category_count(feature)))

    def error(self, matrix, view, feature, config=None) -> float:
        config = config or DEFAULT_CONFIG
        rows = as_rows(view)
        if rows.size == 0:
            return 0.0

        values = np.asarray(matrix.values(rows, feature)).astype(np.int64)
        prob = np.zeros(values.shape[0], dtype=np.float64)
        total = self.total
        if total > 0:
            inside = (values >= 0) & (values < self.counts.size)
            prob[inside] = self.counts[values[inside]] / total

        return float(-np.sum(np.log(np.maximum(prob, config.prob_epsilon))))

    @classmethod
    def merge_many(cls, exemplars, trees, summaries, config=None) -> CategoricalOutput:
        summaries = cls._check_grid(exemplars, trees, summaries)
        width = max((s.categories for s in summaries), default=0)

        counts = _zeros((exemplars, trees, width))
        for idx, summary in enumerate(summaries):
            counts[idx // trees, idx % trees, : summary.categories] = summary.counts

        summed = counts.sum(axis=1)
        norm = summed.sum(axis=1, keepdims=True)
        uniform = np.full_like(summed, 1.0 / width if width else 0.0)
        probabilities = np.divide(summed, norm, out=uniform, where=norm > 0)
        return CategoricalOutput(probabilities=probabilities)

    def payload_size(self) -> int:
        return self._HEADER.size + self.counts.size * np.dtype(self._COUNT_DTYPE).itemsize

    def encode_payload(self) -> bytes:
        return self._HEADER.pack(self.counts.size) + self.counts.astype(self._COUNT_DTYPE).tobytes()

    @classmethod
    def decode_payload(cls, buffer, offset):
        require_bytes(buffer, offset, cls._HEADER.size, "categorical header")
        (n_categories,) = cls._HEADER.unpack_from(buffer, offset)
        if n_categories < 0:
            raise TruncatedData(f"corrupt categorical header: {n_categories} categories")

        body = n_categories * np.dtype(cls._COUNT_DTYPE).itemsize
        start = offset + cls._HEADER.size
        require_bytes(buffer, start, body, "categorical counts")
        if n_categories == 0:
            counts = np.zeros(0, dtype=np.int64)
        else:
            counts = np.frombuffer(buffer, dtype=cls._COUNT_DTYPE, count=n_categories, offset=start)
        return cls(counts=counts.astype(np.int64)), cls._HEADER.size + body


@dataclass(frozen=True, eq=False)
class GaussianSummary(Summary):
    code: ClassVar[str] = "G"
    name: ClassVar[str] = "Gaussian"
    description: ClassVar[str] = "Mean and unbiased variance of a continuous feature."

    _PAYLOAD: ClassVar[struct.Struct] = struct.Struct("<idd")

    count: int
    mean: float
    variance: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "count", int(self.count))
        object.__setattr__(self, "mean", float(self.mean))
        object.__setattr__(self, "variance", float(self.variance))
        if self.count < 0:
            raise ValueError("count must be non-negative")
        if not self.variance >= 0.0:
            raise ValueError("variance must be non-negative")

    @classmethod
    def build(cls, matrix, view, feature, config=None) -> GaussianSummary:
        config = config or DEFAULT_CONFIG
        rows = as_rows(view)
        values = np.asarray(matrix.values(rows, feature), dtype=np.float64)

        n = int(values.size)
        mean = float(np.mean(values)) if n > 0 else 0.0
        variance = float(np.var(values, ddof=1)) if n >= 2 else config.variance_floor
        return cls(count=n, mean=mean, variance=variance)

    def error(self, matrix, view, feature, config=None) -> float:
        config = config or DEFAULT_CONFIG
        rows = as_rows(view)
        if rows.size == 0:
            return 0.0

        values = np.asarray(matrix.values(rows, feature), dtype=np.float64)
        variance = max(self.variance, config.variance_floor)
        delta = values - self.mean
        return float(np.sum(delta * delta) / (2.0 * variance))

    @classmethod
    def merge_many(cls, exemplars, trees, summaries, config=None) -> GaussianOutput:
        config = config or DEFAULT_CONFIG
        summaries = cls._check_grid(exemplars, trees, summaries)

        n = _zeros((exemplars, trees))
        means = _zeros((exemplars, trees))
        variances = _zeros((exemplars, trees))
        for idx, summary in enumerate(summaries):
            e, t = divmod(idx, trees)
            n[e, t] = summary.count
            means[e, t] = summary.mean
            variances[e, t] = summary.variance

        # Population second moment of each summary; single samples have none.
        pop = np.where(n > 1, variances * (n - 1.0) / np.maximum(n, 1.0), 0.0)

        total = n.sum(axis=1)
        safe_total = np.maximum(total, 1.0)
        mean = (n * means).sum(axis=1) / safe_total
        second = (n * (pop + means * means)).sum(axis=1) / safe_total
        pop_variance = np.maximum(second - mean * mean, 0.0)

        variance = np.where(
            total > 1,
            pop_variance * total / np.maximum(total - 1.0, 1.0),
            config.variance_floor,
        )
        return GaussianOutput(mean=mean, variance=variance)

    def payload_size(self) -> int:
        return self._PAYLOAD.size

    def encode_payload(self) -> bytes:
        return self._PAYLOAD.pack(self.count, self.mean, self.variance)

    @classmethod
    def decode_payload(cls, buffer, offset):
        require_bytes(buffer, offset, cls._PAYLOAD.size, "gaussian payload")
        count, mean, variance = cls._PAYLOAD.unpack_from(buffer, offset)
        if count < 0 or not variance >= 0.0:
            raise TruncatedData(f"corrupt gaussian payload: count={count} variance={variance}")
        return cls(count=count, mean=mean, variance=variance), cls._PAYLOAD.size


@dataclass(frozen=True, eq=False)
class BiGaussianSummary(Summary):
    code: ClassVar[str] = "B"
    name: ClassVar[str] = "BiGaussian"
    description: ClassVar[str] = (
        "Bivariate Gaussian over the feature and the next one; pair with N in the next slot."
    )

    # count, mean x, mean y, covariance xx, xy, yy
    _PAYLOAD: ClassVar[struct.Struct] = struct.Struct("<iddddd")

    count: int
    mean: np.ndarray
    covariance: np.ndarray

    def __post_init__(self) -> None:
        mean = np.array(self.mean, dtype=np.float64).reshape(2)
        covariance = np.array(self.covariance, dtype=np.float64).reshape(2, 2)
        covariance = 0.5 * (covariance + covariance.T)
        object.__setattr__(self, "count", int(self.count))
        object.__setattr__(self, "mean", _readonly(mean))
        object.__setattr__(self, "covariance", _readonly(covariance))
        if self.count < 0:
            raise ValueError("count must be non-negative")

    @classmethod
    def build(cls, matrix, view, feature, config=None) -> BiGaussianSummary:
        config = config or DEFAULT_CONFIG
        if feature + 1 >= matrix.feature_count:
            raise InvalidFeatureLayout(
                f"BiGaussian at feature {feature} needs feature {feature + 1}, "
                f"matrix has {matrix.feature_count}"
            )

        rows = as_rows(view)
        values = np.column_stack(
            [
                np.asarray(matrix.values(rows, feature), dtype=np.float64),
                np.asarray(matrix.values(rows, feature + 1), dtype=np.float64),
            ]
        )

        n = int(values.shape[0])
        mean = values.mean(axis=0) if n > 0 else np.zeros(2)
        if n >= 2:
            delta = values - mean
            covariance = delta.T @ delta / (n - 1)
        else:
            covariance = config.variance_floor * np.eye(2)
        return cls(count=n, mean=mean, covariance=covariance)

    def error(self, matrix, view, feature, config=None) -> float:
        config = config or DEFAULT_CONFIG
        rows = as_rows(view)
        if rows.size == 0:
            return 0.0

        values = np.column_stack(
            [
                np.asarray(matrix.values(rows, feature), dtype=np.float64),
                np.asarray(matrix.values(rows, feature + 1), dtype=np.float64),
            ]
        )
        # Eigenvalues floored relative to the largest, so collinear pairs stay invertible.
        eigvals, eigvecs = np.linalg.eigh(self.covariance)
        floor = config.variance_floor * max(1.0, float(eigvals.max()))
        precision = (eigvecs / np.maximum(eigvals, floor)) @ eigvecs.T
        delta = values - self.mean
        quad = np.einsum("ni,ij,nj->n", delta, precision, delta)
        return float(0.5 * np.sum(np.maximum(quad, 0.0)))

    @classmethod
    def merge_many(cls, exemplars, trees, summaries, config=None) -> BiGaussianOutput:
        config = config or DEFAULT_CONFIG
        summaries = cls._check_grid(exemplars, trees, summaries)

        n = _zeros((exemplars, trees))
        means = _zeros((exemplars, trees, 2))
        covariances = _zeros((exemplars, trees, 2, 2))
        for idx, summary in enumerate(summaries):
            e, t = divmod(idx, trees)
            n[e, t] = summary.count
            means[e, t] = summary.mean
            covariances[e, t] = summary.covariance

        scale = np.where(n > 1, (n - 1.0) / np.maximum(n, 1.0), 0.0)
        pop = covariances * scale[..., None, None]
        outer = means[..., :, None] * means[..., None, :]

        total = n.sum(axis=1)
        safe_total = np.maximum(total, 1.0)
        mean = (n[..., None] * means).sum(axis=1) / safe_total[:, None]
        second = (n[..., None, None] * (pop + outer)).sum(axis=1) / safe_total[:, None, None]
        pop_covariance = second - mean[:, :, None] * mean[:, None, :]

        unbiased = pop_covariance * (total / np.maximum(total - 1.0, 1.0))[:, None, None]
        covariance = np.where(
            (total > 1)[:, None, None],
            unbiased,
            config.variance_floor * np.eye(2),
        )
        return BiGaussianOutput(mean=mean, covariance=covariance)

    def payload_size(self) -> int:
        return self._PAYLOAD.size

    def encode_payload(self) -> bytes:
        cov = self.covariance
        return self._PAYLOAD.pack(
            self.count, self.mean[0], self.mean[1], cov[0, 0], cov[0, 1], cov[1, 1]
        )

    @classmethod
    def decode_payload(cls, buffer, offset):
        require_bytes(buffer, offset, cls._PAYLOAD.size, "bigaussian payload")
        count, mx, my, cxx, cxy, cyy = cls._PAYLOAD.unpack_from(buffer, offset)
        if count < 0:
            raise TruncatedData(f"corrupt bigaussian payload: count={count}")
        summary = cls(count=count, mean=[mx, my], covariance=[[cxx, cxy], [cxy, cyy]])
        return summary, cls._PAYLOAD.size


SUMMARY_TYPES: Mapping[str, type[Summary]] = MappingProxyType(
    {
        kind.code: kind
        for kind in (NothingSummary, CategoricalSummary, GaussianSummary, BiGaussianSummary)
    }
)


def summary_type(code: str) -> type[Summary]:
    try:
        return SUMMARY_TYPES[code]
    except (KeyError, TypeError):
        raise UnknownSummaryType(code) from None


def list_summary_types() -> tuple[type[Summary], ...]:
    return tuple(SUMMARY_TYPES.values())


def build_summary(
    code: str,
    matrix: MatrixLike,
    view: Iterable[int],
    feature: int,
    config: SummaryConfig | None = None,
) -> Summary:
    return summary_type(code).build(matrix, view, feature, config)


def decode_summary(buffer, offset: int = 0) -> tuple[Summary, int]:
    """Decode one summary starting at ``offset``; returns it with the bytes consumed."""
    require_bytes(buffer, offset, _TAG.size, "summary tag")
    (tag,) = _TAG.unpack_from(buffer, offset)
    kind = summary_type(chr(tag))
    summary, ate = kind.decode_payload(buffer, offset + _TAG.size)
    return summary, _TAG.size + ate


def _resolve(items: Iterable, project: Callable | None) -> list[Summary]:
    if project is None:
        return list(items)
    return [project(item) for item in items]


def merge_summaries(
    items: Iterable,
    project: Callable | None = None,
    config: SummaryConfig | None = None,
):
    """Merge one summary per tree into an output value.

    ``project`` maps each item to its Summary when the items are larger records (e.g. a
    whole SummarySet); without it the items must already be summaries.
    """
    summaries = _resolve(items, project)
    if not summaries:
        raise InvalidFeatureLayout("at least one tree is required to merge summaries")
    return summary_type(summaries[0].code).merge(summaries, config)


def merge_many_summaries(
    exemplars: int,
    trees: int,
    items: Iterable,
    project: Callable | None = None,
    config: SummaryConfig | None = None,
    code: str | None = None,
):
    """Batched merge over an exemplars x trees grid, exemplar-major.

    ``code`` names the summary type when the grid may be empty (no exemplars); it
    must agree with the summaries when there are any.
    """
    summaries = _resolve(items, project)
    if summaries:
        if code is not None and summaries[0].code != code:
            raise InvalidFeatureLayout(f"expected {code!r} summaries, got {summaries[0].code!r}")
        code = summaries[0].code
    elif code is None:
        raise InvalidFeatureLayout("cannot infer the summary type of an empty batch")
    return summary_type(code).merge_many(exemplars, trees, summaries, config)
