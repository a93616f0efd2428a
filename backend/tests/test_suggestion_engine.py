"""
Unit Tests for the Bank Line Suggestion Engine

Tests:
- Candidate filtering (currency, window, balance, already matched)
- Signal scoring and reason tags
- Ordering, tie-breaking and result cap
- Matching rule bonus and auto-accept threshold override

Run with: pytest tests/test_suggestion_engine.py -v
"""

import random
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from bank_reconciliation.matching_config import MatchingConfig, DEFAULT_MATCHING_CONFIG
from bank_reconciliation.matching_rules import (
    MatchingRule,
    BankLineScorer,
    generate_suggestions,
    auto_accept_threshold,
)
from bank_reconciliation.matching_rules.suggestion_engine import (
    TAG_CLOSE_AMOUNT,
    TAG_COUNTERPARTY,
    TAG_DATE_PROXIMITY,
    TAG_DESCRIPTION,
    TAG_EXACT_AMOUNT,
    TAG_REFERENCE,
    TAG_RULE,
    compact,
    normalize,
)
from bank_reconciliation.models import BankFeedLine, BankMatch, MatchMethod, RecordType

from conftest import make_record

LINE_DATE = date(2024, 3, 15)


def make_line(amount="1500.00", description="", reference=None, **kwargs) -> BankFeedLine:
    return BankFeedLine(
        id=kwargs.pop("id", "line-1"),
        bank_account_id=kwargs.pop("bank_account_id", "acct-1"),
        company_id=kwargs.pop("company_id", "company-1"),
        currency=kwargs.pop("currency", "THB"),
        transaction_date=kwargs.pop("transaction_date", LINE_DATE),
        amount=Decimal(amount),
        description=description,
        reference=reference,
        **kwargs,
    )


# ==================== TEXT HELPERS ====================

class TestTextNormalisation:

    def test_normalize_collapses_punctuation(self):
        assert normalize("  INV-2024/001, ACME Co.  ") == "inv 2024 001 acme co"

    def test_compact_strips_everything_but_alphanumerics(self):
        assert compact("INV-2024/001") == "inv2024001"
        assert compact(None) == ""


# ==================== CANDIDATE FILTER ====================

class TestCandidateFilter:

    def test_other_currency_is_excluded(self):
        line = make_line()
        records = [make_record("r1", RecordType.RECEIPT, "1500.00", LINE_DATE, currency="USD")]
        assert generate_suggestions(line, records) == []

    def test_record_outside_window_is_excluded(self):
        line = make_line(reference="INV-1")
        records = [make_record("r1", RecordType.RECEIPT, "1500.00", LINE_DATE + timedelta(days=31),
                               reference="INV-1")]
        assert generate_suggestions(line, records) == []

    def test_record_at_window_edge_is_kept(self):
        line = make_line(reference="INV-1")
        records = [make_record("r1", RecordType.RECEIPT, "1500.00", LINE_DATE - timedelta(days=30),
                               reference="INV-1")]
        suggestions = generate_suggestions(line, records)
        assert [s.system_record_id for s in suggestions] == ["r1"]

    def test_record_with_no_balance_is_excluded(self):
        line = make_line()
        records = [make_record("r1", RecordType.RECEIPT, "0.00", LINE_DATE)]
        assert generate_suggestions(line, records) == []

    def test_record_from_other_company_is_excluded(self):
        line = make_line(reference="INV-1")
        records = [make_record("r1", RecordType.RECEIPT, "1500.00", LINE_DATE,
                               reference="INV-1", company_id="company-2")]
        assert generate_suggestions(line, records) == []

    def test_record_already_matched_to_line_is_excluded(self):
        line = make_line(
            amount="1500.00",
            matches=[BankMatch(
                id="m1",
                bank_feed_line_id="line-1",
                system_record_type=RecordType.RECEIPT,
                system_record_id="r1",
                matched_amount=Decimal("500.00"),
                matched_by="alice",
                matched_at=datetime(2024, 3, 16, tzinfo=timezone.utc),
                match_method=MatchMethod.MANUAL,
            )],
        )
        records = [
            make_record("r1", RecordType.RECEIPT, "1000.00", LINE_DATE, reference="INV-1"),
            make_record("r1", RecordType.TRANSFER, "1500.00", LINE_DATE),
        ]
        suggestions = generate_suggestions(line, records)
        assert [(s.system_record_type, s.system_record_id) for s in suggestions] == [
            (RecordType.TRANSFER, "r1")
        ]

    def test_excluded_records_are_skipped(self):
        line = make_line(reference="INV-1")
        records = [make_record("r1", RecordType.RECEIPT, "1500.00", LINE_DATE, reference="INV-1")]
        assert generate_suggestions(line, records, exclude_record_keys={("receipt", "r1")}) == []

    def test_exclusion_is_per_record_type(self):
        """A transfer sharing an id with an excluded receipt is still offered."""
        line = make_line(reference="INV-1")
        records = [
            make_record("r1", RecordType.RECEIPT, "1500.00", LINE_DATE, reference="INV-1"),
            make_record("r1", RecordType.TRANSFER, "1500.00", LINE_DATE, reference="INV-1"),
        ]

        suggestions = generate_suggestions(line, records, exclude_record_keys={("receipt", "r1")})

        assert [(s.system_record_type, s.system_record_id) for s in suggestions] == [
            (RecordType.TRANSFER, "r1")
        ]


# ==================== SCORING ====================

class TestScoring:

    def test_exact_amount_same_day_reference_scores_at_least_90(self):
        """Line 1500.00 with an exact-reference receipt for 1500.00 on the same day."""
        line = make_line(amount="1500.00", description="TRANSFER FROM ACME INV-2024-001")
        record = make_record("r1", RecordType.RECEIPT, "1500.00", LINE_DATE, reference="INV-2024-001")

        suggestions = generate_suggestions(line, [record])

        assert len(suggestions) == 1
        best = suggestions[0]
        assert best.match_score >= 90
        assert TAG_EXACT_AMOUNT in best.match_reasons
        assert TAG_REFERENCE in best.match_reasons
        assert TAG_DATE_PROXIMITY in best.match_reasons

    def test_reasons_follow_signal_order(self):
        line = make_line(amount="250.00", description="ACME SUPPLIES PAYMENT INV 77", reference="INV77")
        record = make_record("r1", RecordType.RECEIPT, "250.00", LINE_DATE,
                             reference="INV77", counterparty="Acme Supplies",
                             description="supplies payment")

        score, reasons, breakdown = BankLineScorer(line).score(record)

        assert reasons == [TAG_EXACT_AMOUNT, TAG_DATE_PROXIMITY, TAG_REFERENCE, TAG_COUNTERPARTY, TAG_DESCRIPTION]
        assert score == 100.0
        assert breakdown["total"] == 100.0

    def test_close_amount_within_tolerance(self):
        line = make_line(amount="1000.00")
        record = make_record("r1", RecordType.RECEIPT, "995.00", LINE_DATE)

        _, reasons, breakdown = BankLineScorer(line).score(record)

        assert TAG_CLOSE_AMOUNT in reasons
        assert TAG_EXACT_AMOUNT not in reasons
        assert breakdown["amount"] == DEFAULT_MATCHING_CONFIG.weight_close_amount

    def test_amount_outside_tolerance_scores_nothing(self):
        line = make_line(amount="1000.00")
        record = make_record("r1", RecordType.RECEIPT, "900.00", LINE_DATE)

        _, reasons, breakdown = BankLineScorer(line).score(record)

        assert breakdown["amount"] == 0.0
        assert TAG_CLOSE_AMOUNT not in reasons

    def test_date_points_decay_with_distance(self):
        line = make_line(amount="1000.00")
        scorer = BankLineScorer(line)
        near = scorer.score(make_record("r1", RecordType.RECEIPT, "1000.00", LINE_DATE + timedelta(days=1)))[2]
        far = scorer.score(make_record("r2", RecordType.RECEIPT, "1000.00", LINE_DATE + timedelta(days=20)))[2]

        assert near["date"] > far["date"] > 0

    def test_date_tag_only_when_close(self):
        line = make_line(amount="1000.00")
        _, reasons, _ = BankLineScorer(line).score(
            make_record("r1", RecordType.RECEIPT, "1000.00", LINE_DATE + timedelta(days=10))
        )
        assert TAG_DATE_PROXIMITY not in reasons

    def test_reference_match_ignores_punctuation(self):
        line = make_line(description="PAYMENT inv 2024 001")
        record = make_record("r1", RecordType.RECEIPT, "1.00", LINE_DATE, reference="INV-2024-001")

        _, reasons, breakdown = BankLineScorer(line).score(record)

        assert TAG_REFERENCE in reasons
        assert breakdown["reference"] == DEFAULT_MATCHING_CONFIG.weight_reference

    def test_partial_reference_parts(self):
        line = make_line(description="PO 55123 received")
        record = make_record("r1", RecordType.RECEIPT, "1.00", LINE_DATE, reference="55123 ZZTOP")

        _, reasons, breakdown = BankLineScorer(line).score(record)

        assert breakdown["reference"] == pytest.approx(DEFAULT_MATCHING_CONFIG.weight_reference * 0.5)
        assert TAG_REFERENCE in reasons

    def test_receipt_against_outflow_is_penalised(self):
        line = make_line(amount="-1500.00")
        record = make_record("r1", RecordType.RECEIPT, "1500.00", LINE_DATE)

        _, _, breakdown = BankLineScorer(line).score(record)

        assert breakdown["direction_penalty"] == -DEFAULT_MATCHING_CONFIG.direction_mismatch_penalty

    def test_transfer_is_never_penalised(self):
        line = make_line(amount="-1500.00")
        _, _, breakdown = BankLineScorer(line).score(
            make_record("r1", RecordType.TRANSFER, "1500.00", LINE_DATE)
        )
        assert "direction_penalty" not in breakdown

    def test_score_is_clamped_to_range(self):
        line = make_line(amount="-5.00")
        record = make_record("r1", RecordType.RECEIPT, "99999.00", LINE_DATE + timedelta(days=30))

        score, _, _ = BankLineScorer(line).score(record)

        assert 0.0 <= score <= 100.0

    def test_weights_come_from_config(self):
        config = MatchingConfig(weight_exact_amount=10.0, min_suggestion_score=0.0)
        line = make_line(amount="1000.00")
        record = make_record("r1", RecordType.RECEIPT, "1000.00", LINE_DATE + timedelta(days=30))

        _, _, breakdown = BankLineScorer(line, config).score(record)

        assert breakdown["amount"] == 10.0

    def test_low_scores_are_dropped(self):
        config = MatchingConfig(min_suggestion_score=50.0)
        line = make_line(amount="1000.00")
        record = make_record("r1", RecordType.RECEIPT, "1.00", LINE_DATE + timedelta(days=25))

        assert generate_suggestions(line, [record], config) == []


# ==================== ORDERING ====================

class TestOrdering:

    def test_sorted_by_score_descending(self):
        line = make_line(amount="1000.00", reference="INV-9")
        records = [
            make_record("weak", RecordType.RECEIPT, "1000.00", LINE_DATE + timedelta(days=20)),
            make_record("strong", RecordType.RECEIPT, "1000.00", LINE_DATE, reference="INV-9"),
        ]
        suggestions = generate_suggestions(line, records)
        assert [s.system_record_id for s in suggestions] == ["strong", "weak"]

    def test_ties_broken_by_record_id(self):
        line = make_line(amount="1000.00")
        records = [
            make_record("r-b", RecordType.RECEIPT, "1000.00", LINE_DATE),
            make_record("r-a", RecordType.RECEIPT, "1000.00", LINE_DATE),
        ]
        suggestions = generate_suggestions(line, records)
        assert [s.system_record_id for s in suggestions] == ["r-a", "r-b"]

    def test_result_is_capped(self):
        config = MatchingConfig(max_suggestions=3)
        line = make_line(amount="1000.00")
        records = [make_record(f"r{i:02d}", RecordType.RECEIPT, "1000.00", LINE_DATE) for i in range(8)]

        assert len(generate_suggestions(line, records, config)) == 3

    def test_same_inputs_same_output_regardless_of_candidate_order(self):
        line = make_line(amount="1200.00", description="ACME INV-3")
        rng = random.Random(20240315)
        records = [
            make_record(
                f"r{i:02d}",
                rng.choice(list(RecordType)),
                f"{rng.randint(1000, 1400)}.00",
                LINE_DATE + timedelta(days=rng.randint(-30, 30)),
                reference=rng.choice(["INV-3", "INV-4", None]),
                counterparty=rng.choice(["Acme", "Globex", None]),
            )
            for i in range(25)
        ]

        first = generate_suggestions(line, records)
        shuffled = list(records)
        rng.shuffle(shuffled)
        second = generate_suggestions(line, shuffled)

        assert [s.model_dump() for s in first] == [s.model_dump() for s in second]


# ==================== RULES ====================

class TestRuleSignals:

    def test_rule_bonus_applies_to_suggested_type(self):
        rule = MatchingRule(id="rent", name="Rent", description_contains=["RENT"],
                            amount_sign="debit", suggest_type=RecordType.EXPENSE)
        line = make_line(amount="-20000.00", description="MONTHLY RENT MARCH")
        records = [
            make_record("e1", RecordType.EXPENSE, "20000.00", LINE_DATE),
            make_record("t1", RecordType.TRANSFER, "20000.00", LINE_DATE),
        ]

        suggestions = generate_suggestions(line, records, rules=[rule])

        assert suggestions[0].system_record_id == "e1"
        assert TAG_RULE in suggestions[0].match_reasons
        assert suggestions[0].rule_id == "rent"
        assert suggestions[1].rule_id is None

    def test_rule_threshold_override(self):
        rule = MatchingRule(id="fees", name="Bank fees", description_contains=["FEE"],
                            auto_match_if_confidence=60.0)
        line = make_line(amount="-35.00", description="ACCOUNT FEE")

        threshold, selected = auto_accept_threshold(line, DEFAULT_MATCHING_CONFIG, [rule])

        assert threshold == 60.0
        assert selected is rule

    def test_default_threshold_without_rule(self):
        line = make_line(amount="-35.00", description="ACCOUNT FEE")

        threshold, selected = auto_accept_threshold(line, DEFAULT_MATCHING_CONFIG)

        assert threshold == DEFAULT_MATCHING_CONFIG.auto_accept_threshold
        assert selected is None
