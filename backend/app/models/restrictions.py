"""Restriction profile and conflict verdict models."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ConflictType(str, Enum):
    """Verdict kinds, listed in default priority order."""

    CONDITION_AVOID = "condition_avoid"
    SENSITIVITY = "sensitivity"
    NON_PREFERRED = "non_preferred"
    INDIVIDUAL_RESTRICTION = "individual_restriction"
    CONDITION_RECOMMEND = "condition_recommend"
    PREFERRED = "preferred"


AVOID_CLASS = frozenset({
    ConflictType.CONDITION_AVOID,
    ConflictType.SENSITIVITY,
    ConflictType.NON_PREFERRED,
    ConflictType.INDIVIDUAL_RESTRICTION,
})

RECOMMEND_CLASS = frozenset({
    ConflictType.CONDITION_RECOMMEND,
    ConflictType.PREFERRED,
})


class ConflictVerdict(BaseModel):
    """The single highest-priority verdict for a food."""

    type: ConflictType
    reason: str = ""
    sensitivity_id: Optional[str] = None
    condition_id: Optional[str] = None

    @property
    def is_avoid(self) -> bool:
        return self.type in AVOID_CLASS

    @property
    def is_recommend(self) -> bool:
        return self.type in RECOMMEND_CLASS


class RestrictionProfile(BaseModel):
    """Per-user restriction sets, all ids for O(1) membership checks."""

    user_id: Optional[str] = None
    sensitivities: set[str] = Field(default_factory=set)
    avoided_medical_conditions: set[str] = Field(default_factory=set)
    recommended_medical_conditions: set[str] = Field(default_factory=set)
    individually_restricted_foods: set[str] = Field(default_factory=set)
    preferred_foods: set[str] = Field(default_factory=set)
    non_preferred_foods: set[str] = Field(default_factory=set)

    @property
    def is_empty(self) -> bool:
        return not (
            self.sensitivities
            or self.avoided_medical_conditions
            or self.recommended_medical_conditions
            or self.individually_restricted_foods
            or self.preferred_foods
            or self.non_preferred_foods
        )


class ConflictContext(BaseModel):
    """When a substitution mapping applies."""

    type: str  # "sensitivity" | "medical_condition"
    sensitivity_id: Optional[str] = None
    condition_id: Optional[str] = None
    relation_type: Optional[str] = None


class SubstitutionMapping(BaseModel):
    id: Optional[str] = None
    source_food_id: str
    target_food_id: str
    target_is_user_created: bool = False
    confidence_score: float = 0
    is_automatic: bool = False
    conflict_contexts: list[ConflictContext] = Field(default_factory=list)


class SubstitutionResult(BaseModel):
    """Outcome of looking for safe replacements of a conflicting food."""

    has_conflict: bool
    conflict: Optional[ConflictVerdict] = None
    substitutions: list[SubstitutionMapping] = Field(default_factory=list)
    auto_substitution: Optional[SubstitutionMapping] = None
    requires_review: bool = False
