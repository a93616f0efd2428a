"""
Tunable weights and thresholds for suggestion scoring and line classification.

Both objects are immutable and injected: the engine never reads settings
directly. `config.Settings.matching_config()` builds them from the
environment.
"""

from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Any, Dict


@dataclass(frozen=True)
class MatchingConfig:
    """
    Scoring configuration for the suggestion engine.

    Weights are points on a 0-100 scale. A signal contributes its weight
    (or a fraction of it) to the score; its reason tag is emitted only when
    the signal's own threshold is met.
    """
    # Candidate window
    date_window_days: int = 30

    # Weights
    weight_exact_amount: float = 40.0
    weight_close_amount: float = 20.0
    weight_date_proximity: float = 20.0
    weight_reference: float = 30.0
    weight_counterparty: float = 15.0
    weight_description: float = 10.0
    weight_rule: float = 20.0
    direction_mismatch_penalty: float = 20.0

    # Thresholds
    amount_epsilon: Decimal = Decimal("0.01")
    close_amount_tolerance: Decimal = Decimal("0.01")  # 1%
    date_close_days: int = 3
    reference_overlap_threshold: float = 0.5
    counterparty_overlap_threshold: float = 0.5
    description_overlap_threshold: float = 0.5

    # Output
    min_suggestion_score: float = 30.0
    max_suggestions: int = 10
    auto_accept_threshold: float = 90.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            key: (str(value) if isinstance(value, Decimal) else value)
            for key, value in asdict(self).items()
        }


@dataclass(frozen=True)
class ClassificationPolicy:
    """Age and score thresholds for the on-demand review labels."""
    missing_record_after_days: int = 7
    review_after_days: int = 14
    review_score_threshold: float = 50.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_MATCHING_CONFIG = MatchingConfig()
DEFAULT_CLASSIFICATION_POLICY = ClassificationPolicy()
