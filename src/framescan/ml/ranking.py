"""Output interpretation: raw score vectors to ranked top-K labels."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 3


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class OutputInterpreter(Protocol):
    """Per-model interpretation of the output tensor."""

    @property
    def top_k(self) -> int:
        """Maximum number of results returned."""
        ...

    def interpret_output(self, output: ArrayLike) -> list[ClassificationResult]:
        """Rank ``output`` and return at most ``top_k`` results, best first.

        Equal scores keep their output-index order.
        """
        ...


class ProbabilityRanking:
    """Ranks the output values as they are (softmax already in the graph)."""

    def __init__(self, labels: Sequence[str] = (), top_k: int = DEFAULT_TOP_K) -> None:
        if top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {top_k}")
        self._labels = list(labels)
        self._top_k = top_k

    @property
    def top_k(self) -> int:
        return self._top_k

    def interpret_output(self, output: ArrayLike) -> list[ClassificationResult]:
        scores = self.scores(output)
        # Stable sort on the negated scores keeps lower indices first on ties.
        order = np.argsort(-scores, kind="stable")[: self._top_k]
        return [ClassificationResult(label=self.label(int(i)), confidence=float(scores[i])) for i in order]

    def scores(self, output: ArrayLike) -> NDArray[np.float64]:
        return np.asarray(output, dtype=np.float64).reshape(-1)

    def label(self, index: int) -> str:
        if index < len(self._labels):
            return self._labels[index]
        return f"class_{index}"


class LogitRanking(ProbabilityRanking):
    """Applies softmax to raw logits before ranking."""

    def scores(self, output: ArrayLike) -> NDArray[np.float64]:
        logits = super().scores(output)
        if logits.size == 0:
            return logits
        exp = np.exp(logits - logits.max())
        return exp / exp.sum()


def load_labels(path: str | Path | None) -> list[str]:
    """Read one label per line, line N naming output index N. ``None`` means no labels."""
    if path is None:
        return []
    labels = [line.strip() for line in Path(path).read_text(encoding="utf-8").splitlines()]
    while labels and not labels[-1]:
        labels.pop()
    logger.info("Loaded %d labels from %s", len(labels), path)
    return labels
