from __future__ import annotations

import logging
import struct
from operator import itemgetter
from typing import Iterable, Sequence

import numpy as np

from data_matrix import IndexView, MatrixLike, as_rows
from summary import (
    BiGaussianSummary,
    CategoricalSummary,
    GaussianSummary,
    Summary,
    SummaryConfig,
    decode_summary,
    merge_many_summaries,
    merge_summaries,
    require_bytes,
    summary_type,
)
from summary_errors import InvalidFeatureLayout, TruncatedData

logger = logging.getLogger(__name__)

_FEATURES = struct.Struct("<i")


def resolve_codes(matrix: MatrixLike, codes: str | None = None) -> str:
    """One type code per feature of ``matrix``.

    Features past the end of ``codes`` get C when the column is discrete and G
    otherwise; every code is checked against the registry.
    """
    codes = codes or ""
    n_features = matrix.feature_count
    if len(codes) > n_features:
        logger.debug("Ignoring %d type codes past feature %d", len(codes) - n_features, n_features)

    resolved = []
    for feature in range(n_features):
        if feature < len(codes):
            code = codes[feature]
        elif matrix.is_discrete(feature):
            code = CategoricalSummary.code
        else:
            code = GaussianSummary.code
        summary_type(code)
        resolved.append(code)

    if len(codes) < n_features:
        logger.debug("Defaulted type codes %r -> %r", codes, "".join(resolved))
    return "".join(resolved)


class SummarySet:
    """The summaries of a leaf, one per output feature."""

    def __init__(self, summaries: Iterable[Summary]) -> None:
        summaries = tuple(summaries)
        for summary in summaries:
            if not isinstance(summary, Summary):
                raise TypeError(f"expected Summary instances, got {type(summary).__name__}")
        if summaries and isinstance(summaries[-1], BiGaussianSummary):
            raise InvalidFeatureLayout("a BiGaussian summary cannot occupy the last feature")
        self._summaries = summaries

    @property
    def features(self) -> int:
        return len(self._summaries)

    @property
    def codes(self) -> str:
        return "".join(summary.code for summary in self._summaries)

    def __len__(self) -> int:
        return len(self._summaries)

    def __getitem__(self, feature: int) -> Summary:
        return self._summaries[feature]

    def __iter__(self):
        return iter(self._summaries)

    def __repr__(self) -> str:
        return f"SummarySet(features={self.features}, codes={self.codes!r})"

    @classmethod
    def build(
        cls,
        matrix: MatrixLike,
        view: Iterable[int],
        codes: str | None = None,
        config: SummaryConfig | None = None,
    ) -> SummarySet:
        resolved = resolve_codes(matrix, codes)
        if resolved.endswith(BiGaussianSummary.code):
            raise InvalidFeatureLayout("a BiGaussian summary cannot occupy the last feature")

        rows = IndexView(as_rows(view))
        return cls(
            summary_type(code).build(matrix, rows, feature, config)
            for feature, code in enumerate(resolved)
        )

    def error(
        self,
        matrix: MatrixLike,
        view: Iterable[int],
        out: np.ndarray | None = None,
        config: SummaryConfig | None = None,
    ) -> np.ndarray:
        """Add the error of every feature over ``view`` into ``out`` and return it."""
        if out is None:
            out = np.zeros(self.features, dtype=np.float64)
        if len(out) != self.features:
            raise InvalidFeatureLayout(
                f"error output has length {len(out)}, summary set has {self.features} features"
            )
        if not np.issubdtype(np.asarray(out).dtype, np.floating):
            raise ValueError(f"error output must be a floating array, got {np.asarray(out).dtype}")

        rows = IndexView(as_rows(view))
        for feature, summary in enumerate(self._summaries):
            out[feature] += summary.error(matrix, rows, feature, config)
        return out

    @staticmethod
    def check_layout(sets: Sequence[SummarySet]) -> str:
        if not sets:
            raise InvalidFeatureLayout("at least one summary set is required")
        codes = sets[0].codes
        for other in sets[1:]:
            if other.features != len(codes):
                raise InvalidFeatureLayout(
                    f"summary sets disagree on feature count: {len(codes)} vs {other.features}"
                )
            if other.codes != codes:
                raise InvalidFeatureLayout(
                    f"summary sets disagree on feature types: {codes!r} vs {other.codes!r}"
                )
        return codes

    @classmethod
    def merge(
        cls,
        sets: Sequence[SummarySet],
        config: SummaryConfig | None = None,
    ) -> tuple:
        """Merge the leaf sets reached in each tree; returns one output per feature."""
        sets = list(sets)
        codes = cls.check_layout(sets)
        return tuple(
            merge_summaries(sets, project=itemgetter(feature), config=config)
            for feature in range(len(codes))
        )

    @classmethod
    def merge_many(
        cls,
        exemplars: int,
        trees: int,
        sets: Sequence[SummarySet],
        config: SummaryConfig | None = None,
        codes: str | None = None,
    ) -> tuple:
        """As merge, for an exemplars x trees grid of sets (exemplar-major).

        ``codes`` gives the feature layout of an empty batch; when sets are given it
        must match theirs.
        """
        sets = list(sets)
        if len(sets) != exemplars * trees:
            raise InvalidFeatureLayout(
                f"expected {exemplars} x {trees} summary sets, got {len(sets)}"
            )
        if sets:
            layout = cls.check_layout(sets)
            if codes is not None and codes != layout:
                raise InvalidFeatureLayout(
                    f"summary sets have feature types {layout!r}, expected {codes!r}"
                )
        elif codes is None:
            raise InvalidFeatureLayout("an empty batch needs its feature codes")
        else:
            layout = codes
            for code in layout:
                summary_type(code)
            if layout.endswith(BiGaussianSummary.code):
                raise InvalidFeatureLayout("a BiGaussian summary cannot occupy the last feature")

        return tuple(
            merge_many_summaries(
                exemplars,
                trees,
                sets,
                project=itemgetter(feature),
                config=config,
                code=code,
            )
            for feature, code in enumerate(layout)
        )

    def size(self) -> int:
        return _FEATURES.size + sum(summary.size() for summary in self._summaries)

    def encode(self) -> bytes:
        return _FEATURES.pack(self.features) + b"".join(
            summary.encode() for summary in self._summaries
        )

    @classmethod
    def decode(cls, buffer, offset: int = 0) -> tuple[SummarySet, int]:
        """Decode a set starting at ``offset``; returns it with the bytes consumed."""
        require_bytes(buffer, offset, _FEATURES.size, "summary set header")
        (n_features,) = _FEATURES.unpack_from(buffer, offset)
        if n_features < 0:
            raise TruncatedData(f"corrupt summary set header: {n_features} features")

        position = offset + _FEATURES.size
        summaries = []
        for _ in range(n_features):
            summary, ate = decode_summary(buffer, position)
            summaries.append(summary)
            position += ate

        logger.debug("Decoded summary set of %d features from %d bytes", n_features, position - offset)
        return cls(summaries), position - offset
