"""
Restriction classification.

Reduces a food + a user's restriction profile to at most one verdict.
Avoid-class verdicts block automatic rebalancing into that food and are
shown as blocking warnings; recommend-class verdicts are informational.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, Sequence

from app.config import get_settings
from app.models.nutrition import Food, FoodCatalog
from app.models.restrictions import (
    AVOID_CLASS,
    ConflictType,
    ConflictVerdict,
    RestrictionProfile,
    SubstitutionMapping,
    SubstitutionResult,
)

logger = logging.getLogger(__name__)

AUTO_SUBSTITUTION_MIN_CONFIDENCE = 85

_AVOID_LABELS = {"to_avoid", "evitar", "avoid"}
_RECOMMEND_LABELS = {"recommended", "recomendado", "recommend", "recomendar", "to_recommend"}


def normalize_relation(value: Optional[str]) -> Optional[str]:
    """Map the relation labels found in the catalog to avoid/recommend."""
    relation = (value or "").strip().lower()
    if relation in _AVOID_LABELS:
        return "avoid"
    if relation in _RECOMMEND_LABELS:
        return "recommend"
    return relation or None


def parse_avoid_order(names: Iterable[str]) -> list[ConflictType]:
    """Validate a configured avoid-class order.

    Every avoid-class verdict must appear exactly once; recommend-class
    verdicts always follow and cannot be reordered.
    """
    order = [ConflictType(n) for n in names]
    if set(order) != AVOID_CLASS or len(order) != len(AVOID_CLASS):
        raise ValueError(
            f"avoid_priority must list each of {sorted(t.value for t in AVOID_CLASS)} once, got {list(names)}"
        )
    return order


class RestrictionClassifier:
    """First matching verdict wins, in a fixed priority order."""

    def __init__(self, avoid_order: Optional[Sequence[ConflictType]] = None):
        if avoid_order is None:
            avoid_order = [
                ConflictType.CONDITION_AVOID,
                ConflictType.SENSITIVITY,
                ConflictType.NON_PREFERRED,
                ConflictType.INDIVIDUAL_RESTRICTION,
            ]
        self.priority: list[ConflictType] = list(avoid_order) + [
            ConflictType.CONDITION_RECOMMEND,
            ConflictType.PREFERRED,
        ]
        self._checks: dict[ConflictType, Callable[[Food, RestrictionProfile], Optional[ConflictVerdict]]] = {
            ConflictType.CONDITION_AVOID: self._check_condition_avoid,
            ConflictType.SENSITIVITY: self._check_sensitivity,
            ConflictType.NON_PREFERRED: self._check_non_preferred,
            ConflictType.INDIVIDUAL_RESTRICTION: self._check_individual_restriction,
            ConflictType.CONDITION_RECOMMEND: self._check_condition_recommend,
            ConflictType.PREFERRED: self._check_preferred,
        }

    def classify(self, food: Optional[Food], profile: Optional[RestrictionProfile]) -> Optional[ConflictVerdict]:
        if food is None or profile is None or profile.is_empty:
            return None
        for conflict_type in self.priority:
            verdict = self._checks[conflict_type](food, profile)
            if verdict is not None:
                return verdict
        return None

    def is_avoid(self, food: Optional[Food], profile: Optional[RestrictionProfile]) -> bool:
        verdict = self.classify(food, profile)
        return verdict is not None and verdict.is_avoid

    def classify_many(
        self, catalog: FoodCatalog, profile: RestrictionProfile
    ) -> dict[tuple[str, bool], ConflictVerdict]:
        """Verdicts for every catalog food that has one."""
        verdicts = {}
        for key, food in catalog.items():
            verdict = self.classify(food, profile)
            if verdict is not None:
                verdicts[key] = verdict
        return verdicts

    # =========================================================================
    # Individual checks
    # =========================================================================

    def _check_condition_avoid(self, food: Food, profile: RestrictionProfile) -> Optional[ConflictVerdict]:
        for link in food.conditions:
            if link.condition_id in profile.avoided_medical_conditions and normalize_relation(link.relation) == "avoid":
                return ConflictVerdict(
                    type=ConflictType.CONDITION_AVOID,
                    reason=f"Avoid due to: {link.name or 'condition'}",
                    condition_id=link.condition_id,
                )
        return None

    def _check_sensitivity(self, food: Food, profile: RestrictionProfile) -> Optional[ConflictVerdict]:
        for link in food.sensitivities:
            if link.sensitivity_id in profile.sensitivities:
                return ConflictVerdict(
                    type=ConflictType.SENSITIVITY,
                    reason=f"Sensitivity: {link.name or 'unknown'}",
                    sensitivity_id=link.sensitivity_id,
                )
        return None

    def _check_non_preferred(self, food: Food, profile: RestrictionProfile) -> Optional[ConflictVerdict]:
        if food.id in profile.non_preferred_foods:
            return ConflictVerdict(type=ConflictType.NON_PREFERRED, reason="Not preferred")
        return None

    def _check_individual_restriction(self, food: Food, profile: RestrictionProfile) -> Optional[ConflictVerdict]:
        if food.id in profile.individually_restricted_foods:
            return ConflictVerdict(type=ConflictType.INDIVIDUAL_RESTRICTION, reason="Restricted")
        return None

    def _check_condition_recommend(self, food: Food, profile: RestrictionProfile) -> Optional[ConflictVerdict]:
        for link in food.conditions:
            if (
                link.condition_id in profile.recommended_medical_conditions
                and normalize_relation(link.relation) == "recommend"
            ):
                return ConflictVerdict(
                    type=ConflictType.CONDITION_RECOMMEND,
                    reason=f"Recommended for: {link.name or 'condition'}",
                    condition_id=link.condition_id,
                )
        return None

    def _check_preferred(self, food: Food, profile: RestrictionProfile) -> Optional[ConflictVerdict]:
        if food.id in profile.preferred_foods:
            return ConflictVerdict(type=ConflictType.PREFERRED, reason="Preferred")
        return None

    # =========================================================================
    # Substitutions
    # =========================================================================

    def safe_substitutions(
        self,
        food: Food,
        profile: RestrictionProfile,
        mappings: list[SubstitutionMapping],
        catalog: FoodCatalog,
    ) -> SubstitutionResult:
        """Replacement foods for an avoid-class food that are safe themselves."""
        conflict = self.classify(food, profile)
        if conflict is None or not conflict.is_avoid:
            return SubstitutionResult(has_conflict=False)

        applicable = [
            m for m in mappings
            if m.source_food_id == food.id and _mapping_applies(m, conflict)
        ]
        applicable.sort(key=lambda m: -m.confidence_score)

        safe = []
        for mapping in applicable:
            target = catalog.get((mapping.target_food_id, mapping.target_is_user_created))
            if target is None:
                continue
            if not self.is_avoid(target, profile):
                safe.append(mapping)

        auto = next(
            (
                m for m in safe
                if m.is_automatic and m.confidence_score >= AUTO_SUBSTITUTION_MIN_CONFIDENCE
            ),
            None,
        )

        return SubstitutionResult(
            has_conflict=True,
            conflict=conflict,
            substitutions=safe,
            auto_substitution=auto,
            requires_review=auto is None,
        )


def _mapping_applies(mapping: SubstitutionMapping, conflict: ConflictVerdict) -> bool:
    """Mappings without contexts apply to any conflict."""
    if not mapping.conflict_contexts:
        return True

    for ctx in mapping.conflict_contexts:
        if ctx.type == "sensitivity":
            if conflict.type == ConflictType.SENSITIVITY and ctx.sensitivity_id == conflict.sensitivity_id:
                return True
        elif ctx.type == "medical_condition":
            if conflict.type not in (ConflictType.CONDITION_AVOID, ConflictType.CONDITION_RECOMMEND):
                continue
            if ctx.condition_id != conflict.condition_id:
                continue
            ctx_relation = normalize_relation(ctx.relation_type)
            conflict_relation = "avoid" if conflict.type == ConflictType.CONDITION_AVOID else "recommend"
            if not ctx_relation or ctx_relation == conflict_relation:
                return True
    return False


# Singleton
_classifier: Optional[RestrictionClassifier] = None


def get_restriction_classifier() -> RestrictionClassifier:
    """Get singleton classifier using the configured avoid order."""
    global _classifier
    if _classifier is None:
        _classifier = RestrictionClassifier(parse_avoid_order(get_settings().avoid_priority))
    return _classifier
