"""
Gated action types and their categories.

Every billable AI operation is exactly one ActionType member. The category
(used for rate limiting and usage events) and the free-tier feature that may
cover the action are fixed here; credit costs live in configuration.
"""

from enum import Enum
from typing import Dict, Optional


class ActionCategory(Enum):
    """Usage categories counted by the rate limiter."""
    GENERATION = "generation"
    REFINEMENT = "refinement"
    REPLY = "reply"

    @property
    def plural(self) -> str:
        """Human-readable plural used in limit messages."""
        return _PLURALS[self]


class FreeTierFeature(Enum):
    """Allowance-backed features that grant free actions before charging."""
    EDITS = "edits"      # bullet and cover-letter refinements
    REPLIES = "replies"  # smart replies

    @property
    def category(self) -> ActionCategory:
        """Usage category whose events consume this allowance."""
        return _FEATURE_CATEGORIES[self]


class ActionType(Enum):
    """Closed set of billable operations."""
    GENERATION_FULL = "generation_full"
    GENERATION_CV_ONLY = "generation_cv_only"
    GENERATION_COVER_ONLY = "generation_cover_only"
    REFINE_BULLET_SHORTER = "refine_bullet_shorter"
    REFINE_BULLET_METRICS = "refine_bullet_metrics"
    REFINE_BULLET_REPHRASE = "refine_bullet_rephrase"
    REFINE_COVER_SHORTER = "refine_cover_shorter"
    REFINE_COVER_REGENERATE = "refine_cover_regenerate"
    SMART_REPLY = "smart_reply"

    @property
    def category(self) -> ActionCategory:
        return _ACTION_CATEGORIES[self]

    @property
    def free_tier_feature(self) -> Optional[FreeTierFeature]:
        return _ACTION_FEATURES[self]


_PLURALS: Dict[ActionCategory, str] = {
    ActionCategory.GENERATION: "generations",
    ActionCategory.REFINEMENT: "refinements",
    ActionCategory.REPLY: "replies",
}

_FEATURE_CATEGORIES: Dict[FreeTierFeature, ActionCategory] = {
    FreeTierFeature.EDITS: ActionCategory.REFINEMENT,
    FreeTierFeature.REPLIES: ActionCategory.REPLY,
}

_ACTION_CATEGORIES: Dict[ActionType, ActionCategory] = {
    ActionType.GENERATION_FULL: ActionCategory.GENERATION,
    ActionType.GENERATION_CV_ONLY: ActionCategory.GENERATION,
    ActionType.GENERATION_COVER_ONLY: ActionCategory.GENERATION,
    ActionType.REFINE_BULLET_SHORTER: ActionCategory.REFINEMENT,
    ActionType.REFINE_BULLET_METRICS: ActionCategory.REFINEMENT,
    ActionType.REFINE_BULLET_REPHRASE: ActionCategory.REFINEMENT,
    ActionType.REFINE_COVER_SHORTER: ActionCategory.REFINEMENT,
    ActionType.REFINE_COVER_REGENERATE: ActionCategory.REFINEMENT,
    ActionType.SMART_REPLY: ActionCategory.REPLY,
}

_ACTION_FEATURES: Dict[ActionType, Optional[FreeTierFeature]] = {
    ActionType.GENERATION_FULL: None,
    ActionType.GENERATION_CV_ONLY: None,
    ActionType.GENERATION_COVER_ONLY: None,
    ActionType.REFINE_BULLET_SHORTER: FreeTierFeature.EDITS,
    ActionType.REFINE_BULLET_METRICS: FreeTierFeature.EDITS,
    ActionType.REFINE_BULLET_REPHRASE: FreeTierFeature.EDITS,
    ActionType.REFINE_COVER_SHORTER: FreeTierFeature.EDITS,
    ActionType.REFINE_COVER_REGENERATE: FreeTierFeature.EDITS,
    ActionType.SMART_REPLY: FreeTierFeature.REPLIES,
}


def _check_exhaustive() -> None:
    """Fail at import time if a lookup table misses an enum member."""
    for enum_cls, table in (
        (ActionType, _ACTION_CATEGORIES),
        (ActionType, _ACTION_FEATURES),
        (ActionCategory, _PLURALS),
        (FreeTierFeature, _FEATURE_CATEGORIES),
    ):
        missing = set(enum_cls) - set(table)
        if missing:
            raise RuntimeError(f"{enum_cls.__name__} lookup missing entries: {missing}")


_check_exhaustive()
