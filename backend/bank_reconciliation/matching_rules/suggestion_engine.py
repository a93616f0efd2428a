"""
Bank Line Suggestion Engine

Scores ledger records as candidate explanations for one bank feed line.

Signals (points on a 0-100 scale, weights from MatchingConfig):
- exact_amount: outstanding amount equals abs(line amount) within epsilon
- close_amount: within the relative tolerance band, not exact
- date_proximity: decays linearly with day distance across the window
- reference_match: record reference found in line reference/description
- counterparty_match: counterparty words found in the line text
- description_match: record description words found in the line text
- rule_match: the line's winning matching rule suggests this record type

A receipt against an outflow (or an expense against an inflow) is
penalised. Output is deterministic: descending score, ties by record id.
"""

import re
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from bank_reconciliation.matching_config import MatchingConfig, DEFAULT_MATCHING_CONFIG
from bank_reconciliation.matching_rules.bank_rules import MatchingRule, select_rule
from bank_reconciliation.models import (
    BankFeedLine,
    RecordType,
    SuggestedMatch,
    SystemRecord,
)


TAG_EXACT_AMOUNT = "exact_amount"
TAG_CLOSE_AMOUNT = "close_amount"
TAG_DATE_PROXIMITY = "date_proximity"
TAG_REFERENCE = "reference_match"
TAG_COUNTERPARTY = "counterparty_match"
TAG_DESCRIPTION = "description_match"
TAG_RULE = "rule_match"

_NON_ALNUM = re.compile(r"[^0-9a-z]+")


def normalize(text: Optional[str]) -> str:
    """Lowercase and collapse every non-alphanumeric run to one space."""
    return _NON_ALNUM.sub(" ", (text or "").lower()).strip()


def compact(text: Optional[str]) -> str:
    """Lowercase with every non-alphanumeric character removed."""
    return _NON_ALNUM.sub("", (text or "").lower())


def _overlap_ratio(words: Sequence[str], haystack: set) -> float:
    if not words:
        return 0.0
    unique = sorted(set(words))
    hits = sum(1 for w in unique if w in haystack)
    return hits / len(unique)


class BankLineScorer:
    """
    Scores (line, record) pairs for one line.

    The matching rule is resolved once per line and reused for every
    candidate.
    """

    def __init__(self, line: BankFeedLine, config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
                 rule: Optional[MatchingRule] = None):
        self.line = line
        self.config = config
        self.rule = rule
        self.line_abs = abs(line.amount)
        line_text = f"{line.reference or ''} {line.description or ''}"
        self.line_tokens = set(normalize(line_text).split())
        self.line_compact = compact(line_text)

    def score(self, record: SystemRecord) -> Tuple[float, List[str], Dict[str, float]]:
        """
        Returns:
            Tuple of (score, ordered reason tags, scoring breakdown)
        """
        reasons: List[str] = []
        breakdown: Dict[str, float] = {}

        for name, scorer in (
            ("amount", self._score_amount),
            ("date", self._score_date),
            ("reference", self._score_reference),
            ("counterparty", self._score_counterparty),
            ("description", self._score_description),
            ("rule", self._score_rule),
        ):
            points, tag = scorer(record)
            breakdown[name] = round(points, 2)
            if tag:
                reasons.append(tag)

        penalty = self._direction_penalty(record)
        if penalty:
            breakdown["direction_penalty"] = -penalty

        total = sum(breakdown.values())
        score = round(min(100.0, max(0.0, total)), 2)
        breakdown["total"] = score
        return score, reasons, breakdown

    def _score_amount(self, record: SystemRecord) -> Tuple[float, Optional[str]]:
        diff = abs(record.amount - self.line_abs)
        if diff < self.config.amount_epsilon:
            return self.config.weight_exact_amount, TAG_EXACT_AMOUNT
        if self.line_abs > 0 and diff / self.line_abs <= self.config.close_amount_tolerance:
            return self.config.weight_close_amount, TAG_CLOSE_AMOUNT
        return 0.0, None

    def _score_date(self, record: SystemRecord) -> Tuple[float, Optional[str]]:
        days = abs((record.record_date - self.line.transaction_date).days)
        window = self.config.date_window_days
        if days > window:
            return 0.0, None
        points = self.config.weight_date_proximity * (1 - days / (window + 1))
        tag = TAG_DATE_PROXIMITY if days <= self.config.date_close_days else None
        return points, tag

    def _score_reference(self, record: SystemRecord) -> Tuple[float, Optional[str]]:
        reference = compact(record.reference)
        if not reference:
            return 0.0, None

        if len(reference) >= 3 and reference in self.line_compact:
            ratio = 1.0
        else:
            # Whitespace-separated parts of the reference, each compacted
            parts = [compact(p) for p in (record.reference or "").split()]
            parts = sorted({p for p in parts if len(p) >= 3})
            if not parts:
                return 0.0, None
            ratio = sum(1 for p in parts if p in self.line_compact) / len(parts)

        tag = TAG_REFERENCE if ratio >= self.config.reference_overlap_threshold else None
        return self.config.weight_reference * ratio, tag

    def _score_counterparty(self, record: SystemRecord) -> Tuple[float, Optional[str]]:
        words = [w for w in normalize(record.counterparty).split() if len(w) > 2]
        ratio = _overlap_ratio(words, self.line_tokens)
        tag = TAG_COUNTERPARTY if words and ratio >= self.config.counterparty_overlap_threshold else None
        return self.config.weight_counterparty * ratio, tag

    def _score_description(self, record: SystemRecord) -> Tuple[float, Optional[str]]:
        words = [w for w in normalize(record.description).split() if len(w) > 3]
        ratio = _overlap_ratio(words, self.line_tokens)
        tag = TAG_DESCRIPTION if words and ratio >= self.config.description_overlap_threshold else None
        return self.config.weight_description * ratio, tag

    def _score_rule(self, record: SystemRecord) -> Tuple[float, Optional[str]]:
        if self.rule is not None and self.rule.suggest_type == record.record_type:
            return self.config.weight_rule, TAG_RULE
        return 0.0, None

    def _direction_penalty(self, record: SystemRecord) -> float:
        if record.record_type == RecordType.RECEIPT and self.line.amount < 0:
            return self.config.direction_mismatch_penalty
        if record.record_type == RecordType.EXPENSE and self.line.amount > 0:
            return self.config.direction_mismatch_penalty
        return 0.0


def is_candidate(
    line: BankFeedLine,
    record: SystemRecord,
    config: MatchingConfig,
    exclude_record_keys: Iterable[Tuple[str, str]] = (),
) -> bool:
    """Candidate pool filter: currency, balance, company, date window, not already used."""
    if record.currency.upper() != line.currency.upper():
        return False
    if record.amount <= 0:
        return False
    if line.company_id and record.company_id and record.company_id != line.company_id:
        return False
    if abs((record.record_date - line.transaction_date).days) > config.date_window_days:
        return False
    if record.key in line.matched_record_keys:
        return False
    if record.key in exclude_record_keys:
        return False
    return True


def generate_suggestions(
    line: BankFeedLine,
    candidates: Iterable[SystemRecord],
    config: MatchingConfig = DEFAULT_MATCHING_CONFIG,
    rules: Iterable[MatchingRule] = (),
    exclude_record_keys: Iterable[Tuple[str, str]] = (),
) -> List[SuggestedMatch]:
    """
    Rank candidate records for a line.

    Pure: the same line, candidates, config and rules always yield the same
    ordered list.
    """
    excluded = frozenset(exclude_record_keys)
    rule = select_rule(rules, line)
    scorer = BankLineScorer(line, config, rule)

    suggestions = []
    for record in candidates:
        if not is_candidate(line, record, config, excluded):
            continue

        score, reasons, breakdown = scorer.score(record)
        if score < config.min_suggestion_score:
            continue

        suggestions.append(SuggestedMatch(
            system_record_type=record.record_type,
            system_record_id=record.id,
            reference=record.reference,
            counterparty=record.counterparty,
            project_id=record.project_id,
            amount=record.amount,
            record_date=record.record_date,
            description=record.description,
            match_score=score,
            match_reasons=reasons,
            scoring_breakdown=breakdown,
            rule_id=rule.id if rule is not None and TAG_RULE in reasons else None,
        ))

    suggestions.sort(key=lambda s: (-s.match_score, s.system_record_id, s.system_record_type.value))
    return suggestions[:config.max_suggestions]


def auto_accept_threshold(line: BankFeedLine, config: MatchingConfig,
                          rules: Iterable[MatchingRule] = ()) -> Tuple[float, Optional[MatchingRule]]:
    """Quick-match threshold for a line: the winning rule's override, else the configured default."""
    rule = select_rule(rules, line)
    if rule is not None and rule.auto_match_if_confidence is not None:
        return rule.auto_match_if_confidence, rule
    return config.auto_accept_threshold, rule
