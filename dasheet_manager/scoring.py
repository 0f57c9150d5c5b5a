"""
dasheet_manager/scoring.py

Score derivation for DA sheets.

    result   = score * weightage          (per evaluation)
    subtotal = sum(results)               (per category)
    overall  = sum(subtotals)             (per vendor)

This is the only place these values are computed. The server always recomputes
them from raw scores and the template's current weightages; numbers sent by a
client are never stored.

Pure functions only: no database, no Flask.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

ALLOWED_WEIGHTAGES = (5, 10, 15, 20, 25, 30)
REQUIRED_TOTAL_WEIGHTAGE = 100

MIN_SCORE = 0
MAX_SCORE = 10


@dataclass(frozen=True)
class ScoredEvaluation:
    parameter_id: str
    score: int
    weightage: int
    result: int


@dataclass(frozen=True)
class CategoryScore:
    category_id: str
    evaluations: Tuple[ScoredEvaluation, ...]
    subtotal: int


@dataclass(frozen=True)
class VendorScore:
    categories: Tuple[CategoryScore, ...]
    overall: int

    def subtotals(self) -> Dict[str, int]:
        return {c.category_id: c.subtotal for c in self.categories}


def is_allowed_weightage(value) -> bool:
    # bool is an int subclass; True must not pass as 1.
    return isinstance(value, int) and not isinstance(value, bool) and value in ALLOWED_WEIGHTAGES


def clamp_score(score) -> int:
    """Clamp to [MIN_SCORE, MAX_SCORE]. None counts as 0."""
    if score is None:
        return MIN_SCORE
    return max(MIN_SCORE, min(MAX_SCORE, int(score)))


def calculate_result(score, weightage: int) -> int:
    return clamp_score(score) * int(weightage or 0)


def category_weightage(weightages: Iterable[int]) -> int:
    return sum(weightages)


def total_weightage(layout: Sequence[Tuple[str, Sequence[Tuple[str, int]]]]) -> int:
    """
    Total template weightage.

    layout: [(category_id, [(parameter_id, weightage), ...]), ...]
    """
    return sum(category_weightage(w for _, w in parameters) for _, parameters in layout)


def empty_scores(layout: Sequence[Tuple[str, Sequence[Tuple[str, int]]]]) -> Dict[str, List[Tuple[str, int]]]:
    """One zero score per parameter, grouped by category, in template order."""
    return {category_id: [(parameter_id, 0) for parameter_id, _ in parameters] for category_id, parameters in layout}


def score_vendor(
    weightages: Mapping[str, int],
    raw_scores: Mapping[str, Sequence[Tuple[str, int]]],
) -> VendorScore:
    """
    Derive results, subtotals and overall score for one vendor.

    weightages: parameter_id -> weightage (current template state)
    raw_scores: category_id -> [(parameter_id, score), ...]

    A parameter missing from `weightages` weighs 0: its score is kept but
    contributes nothing.
    """
    categories = []
    for category_id, scores in raw_scores.items():
        evaluations = tuple(
            ScoredEvaluation(
                parameter_id=parameter_id,
                score=clamp_score(score),
                weightage=weightages.get(parameter_id, 0),
                result=calculate_result(score, weightages.get(parameter_id, 0)),
            )
            for parameter_id, score in scores
        )
        categories.append(
            CategoryScore(
                category_id=category_id,
                evaluations=evaluations,
                subtotal=sum(e.result for e in evaluations),
            )
        )

    return VendorScore(categories=tuple(categories), overall=sum(c.subtotal for c in categories))
