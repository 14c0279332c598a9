"""
Fingerprint Similarity
======================

Scores two stable-attribute vectors to detect "same device, different
network". Exactly the ten stable attributes are compared; network
attributes never take part.

A pair is similar when at least SIMILARITY_THRESHOLD_PERCENT of the
attributes match. The threshold is a policy constant.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from trustgate.core.device.fingerprint import STABLE_KEYS, FingerprintVector
from trustgate.security.constants import SIMILARITY_THRESHOLD_PERCENT


AttributeSource = Union[FingerprintVector, Mapping[str, Any]]


@dataclass(frozen=True, slots=True)
class AttributeDifference:
    """A single mismatched attribute, for audit display."""
    key: str
    value1: str
    value2: str

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key, "value1": self.value1, "value2": self.value2}


@dataclass(frozen=True, slots=True)
class SimilarityResult:
    """Outcome of comparing two attribute vectors."""
    matches: int
    total: int
    similarity_percent: float
    differences: tuple[AttributeDifference, ...] = field(default_factory=tuple)

    @property
    def is_similar(self) -> bool:
        return self.similarity_percent >= SIMILARITY_THRESHOLD_PERCENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "similarity": self.similarity_percent,
            "matches": self.matches,
            "total": self.total,
            "differences": [d.to_dict() for d in self.differences],
            "isSimilar": self.is_similar,
        }


def _as_vector(source: AttributeSource) -> FingerprintVector:
    if isinstance(source, FingerprintVector):
        return source
    return FingerprintVector.from_dict(source)


def compare(a: AttributeSource, b: AttributeSource) -> SimilarityResult:
    """
    Compare two stable-attribute vectors.

    Args:
        a: First vector (or canonical mapping; missing keys take defaults)
        b: Second vector

    Returns:
        SimilarityResult with differences in canonical key order
    """
    first = _as_vector(a)
    second = _as_vector(b)

    matches = 0
    differences = []
    for key in STABLE_KEYS:
        value1 = first.get(key)
        value2 = second.get(key)
        if value1 == value2:
            matches += 1
        else:
            differences.append(AttributeDifference(key, value1, value2))

    total = len(STABLE_KEYS)
    # Integer numerator keeps boundary values exact (8/10 -> 80.0)
    similarity = matches * 100 / total

    return SimilarityResult(
        matches=matches,
        total=total,
        similarity_percent=similarity,
        differences=tuple(differences),
    )


def is_similar(a: AttributeSource, b: AttributeSource) -> bool:
    """Shortcut for compare(a, b).is_similar."""
    return compare(a, b).is_similar


__all__ = [
    "AttributeDifference",
    "SimilarityResult",
    "compare",
    "is_similar",
]
