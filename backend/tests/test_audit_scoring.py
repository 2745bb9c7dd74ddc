"""
Scoring engine tests - points per item type, totals, critical-fail rule, completion.
Pure functions, no database.
"""
import pytest
from pydantic import ValidationError

from backend.services.audit_scoring import (
    ChecklistTemplate,
    EvidenceRequirement,
    ItemState,
    PassFailResponse,
    RatingResponse,
    completion_stats,
    compute_score,
    is_critical_failure,
    is_failed_for_finding,
    item_points,
    parse_response,
)
from backend.services.exceptions import ResponseTypeError
from backend.tests.factories import TEST_CHECKLIST, TEST_SCORING, all_passing_responses


def _template(**scoring):
    return ChecklistTemplate(sections=TEST_CHECKLIST["sections"], scoring={**TEST_SCORING, **scoring})


def _states(responses, evidence=None):
    evidence = evidence or {}
    return {
        item_id: ItemState(response=parse_response(raw), evidence_refs=evidence.get(item_id, []))
        for item_id, raw in responses.items()
    }


def _item(template, item_id):
    return template.find_item(item_id)[1]


# ===================== POINTS PER TYPE =====================


class TestItemPoints:

    def test_pass_fail(self):
        template = _template()
        item = _item(template, "hy-1")
        assert item_points(item, ItemState(response=PassFailResponse(value="pass"))) == 10
        assert item_points(item, ItemState(response=PassFailResponse(value="fail"))) == 0

    def test_rating_is_proportional(self):
        item = _item(_template(), "hy-2")
        assert item_points(item, ItemState(response=RatingResponse(value=3))) == pytest.approx(6)
        assert item_points(item, ItemState(response=RatingResponse(value=5))) == pytest.approx(10)

    def test_numeric_answered_earns_full_points(self):
        item = _item(_template(), "rc-3")
        state = ItemState(response=parse_response({"type": "numeric", "value": -18}))
        assert item_points(item, state) == 10

    def test_text_requires_non_blank(self):
        item = _item(_template(), "rc-2")
        assert item_points(item, ItemState(response=parse_response({"type": "text", "value": "ok"}))) == 10
        assert item_points(item, ItemState(response=parse_response({"type": "text", "value": "   "}))) == 0

    def test_checklist_fraction_checked(self):
        item = _item(_template(), "rc-1")
        half = ItemState(response=parse_response({"type": "checklist", "value": {"lights": True, "fridges": False}}))
        assert item_points(item, half) == pytest.approx(5)

    def test_checklist_missing_sub_item_counts_unchecked(self):
        item = _item(_template(), "rc-1")
        partial = ItemState(response=parse_response({"type": "checklist", "value": {"lights": True}}))
        assert item_points(item, partial) == pytest.approx(5)
        assert is_failed_for_finding(item, partial)

    def test_photo_needs_attachment(self):
        template = ChecklistTemplate(sections=[{
            "id": "s", "name": "Photos", "weight": 100,
            "items": [{"id": "p", "text": "Photo of storage", "type": "photo", "points": 4}],
        }])
        item = _item(template, "p")
        empty = ItemState(response=parse_response({"type": "photo", "value": []}))
        attached = ItemState(response=parse_response({"type": "photo", "value": []}), evidence_refs=["1/p/a.jpg"])
        pending = ItemState(response=parse_response({"type": "photo", "value": []}), pending_files=1)
        assert item_points(item, empty) == 0
        assert item_points(item, attached) == 4
        assert item_points(item, pending) == 4

    def test_unanswered_earns_nothing(self):
        assert item_points(_item(_template(), "hy-1"), None) == 0
        assert item_points(_item(_template(), "hy-1"), ItemState()) == 0

    def test_mismatched_response_type_rejected(self):
        item = _item(_template(), "hy-1")
        with pytest.raises(ResponseTypeError):
            item_points(item, ItemState(response=RatingResponse(value=4)))

    def test_invalid_rating_rejected_at_parse(self):
        with pytest.raises(ValidationError):
            parse_response({"type": "rating", "value": 6})

    def test_unknown_response_type_rejected_at_parse(self):
        with pytest.raises(ValidationError):
            parse_response({"type": "signature", "value": "x"})


# ===================== TOTALS & VERDICT =====================


class TestComputeScore:

    def test_flat_total_ignores_section_weights(self):
        responses = all_passing_responses()
        responses["hy-2"] = {"type": "rating", "value": 1}  # 2 of 10
        responses["rc-2"] = {"type": "text", "value": ""}  # 0 of 10
        result = compute_score(_template(), _states(responses))
        # (10 + 2 + 10 + 10 + 0 + 10) / 60
        assert result.total_score == pytest.approx(42 / 60 * 100)

    def test_weighted_total_uses_section_percentages(self):
        responses = all_passing_responses()
        responses["hy-3"] = {"type": "pass_fail", "value": "fail"}
        result = compute_score(_template(weighted=True), _states(responses))
        hygiene = result.section_scores[0]
        assert hygiene.percentage == pytest.approx(20 / 30 * 100)
        assert result.total_score == pytest.approx(hygiene.percentage * 0.3 + 100 * 0.7)

    def test_all_pass_is_pass(self):
        result = compute_score(_template(), _states(all_passing_responses()))
        assert result.total_score == pytest.approx(100)
        assert result.pass_fail == "pass"
        assert result.critical_fail is False

    def test_below_threshold_fails(self):
        responses = {k: v for k, v in all_passing_responses().items() if k in ("hy-1", "hy-2")}
        result = compute_score(_template(), _states(responses))
        assert result.total_score < 70
        assert result.pass_fail == "fail"

    def test_critical_fail_overrides_high_score(self):
        # 50 of 60 points (83%) but the critical item failed
        responses = all_passing_responses()
        responses["hy-1"] = {"type": "pass_fail", "value": "fail"}
        result = compute_score(_template(), _states(responses))
        assert result.total_score == pytest.approx(50 / 60 * 100)
        assert result.critical_fail is True
        assert result.pass_fail == "fail"

    def test_critical_fail_rule_disabled(self):
        responses = all_passing_responses()
        responses["hy-1"] = {"type": "pass_fail", "value": "fail"}
        result = compute_score(_template(critical_fail_rule=False), _states(responses))
        assert result.critical_fail is False
        assert result.pass_fail == "pass"

    def test_empty_template_scores_zero(self):
        result = compute_score(ChecklistTemplate(sections=[]), {})
        assert result.total_score == 0
        assert result.pass_fail == "fail"

    def test_to_dict(self):
        data = compute_score(_template(), _states(all_passing_responses())).to_dict()
        assert data["pass_fail"] == "pass"
        assert [s["section_id"] for s in data["section_scores"]] == ["hygiene", "records"]


# ===================== FAILURE DETECTION =====================


class TestFailureDetection:

    def test_critical_rating_of_one(self):
        template = ChecklistTemplate(sections=[{
            "id": "s", "name": "S", "weight": 100,
            "items": [{"id": "r", "text": "Temperature control", "type": "rating", "points": 5, "critical": True}],
        }])
        item = _item(template, "r")
        assert is_critical_failure(item, ItemState(response=RatingResponse(value=1)))
        assert not is_critical_failure(item, ItemState(response=RatingResponse(value=2)))
        assert is_failed_for_finding(item, ItemState(response=RatingResponse(value=2)))

    def test_non_critical_never_critical_failure(self):
        item = _item(_template(), "hy-3")
        assert not is_critical_failure(item, ItemState(response=PassFailResponse(value="fail")))
        assert is_failed_for_finding(item, ItemState(response=PassFailResponse(value="fail")))

    def test_unanswered_is_not_failed(self):
        item = _item(_template(), "hy-1")
        assert not is_critical_failure(item, ItemState())
        assert not is_failed_for_finding(item, None)

    def test_low_rating_above_two_not_a_finding(self):
        item = _item(_template(), "hy-2")
        assert not is_failed_for_finding(item, ItemState(response=RatingResponse(value=3)))


# ===================== COMPLETION =====================


class TestCompletion:

    def test_counts_answered_items(self):
        responses = {k: v for k, v in list(all_passing_responses().items())[:3]}
        stats = completion_stats(_template(), _states(responses))
        assert (stats.answered, stats.total, stats.percentage) == (3, 6, 50)

    def test_rounds_half_up(self):
        sections = [{
            "id": "s", "name": "S", "weight": 100,
            "items": [{"id": f"i{n}", "text": f"Item {n}", "type": "pass_fail", "points": 1} for n in range(8)],
        }]
        template = ChecklistTemplate(sections=sections)
        states = {f"i{n}": ItemState(response=PassFailResponse(value="pass")) for n in range(5)}
        # 5/8 = 62.5%
        assert completion_stats(template, states).percentage == 63

    def test_evidence_requirement_counts(self):
        assert EvidenceRequirement.NONE.min_count == 0
        assert EvidenceRequirement.OPTIONAL.min_count == 0
        assert EvidenceRequirement.REQUIRED_1.min_count == 1
        assert EvidenceRequirement.REQUIRED_2.min_count == 2
