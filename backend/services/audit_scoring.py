"""
Audit Scoring Engine

Scores a single audit's checklist responses:
- points earned per item, by item type
- per-section percentage and the total (weighted by section or flat)
- critical-failure detection, which forces a FAIL regardless of the score
- completion stats for the submission gate

Everything here is pure and deterministic. It is re-run on every response
change to drive the live score preview, so nothing in this module touches
the database or reads settings.
"""
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Dict, Iterator, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter

from backend.services.exceptions import ResponseTypeError


# ───────────────────────── Template ─────────────────────────

class ItemType(str, Enum):
    PASS_FAIL = "pass_fail"
    RATING = "rating"
    NUMERIC = "numeric"
    PHOTO = "photo"
    TEXT = "text"
    CHECKLIST = "checklist"


class EvidenceRequirement(str, Enum):
    NONE = "none"
    OPTIONAL = "optional"
    REQUIRED_1 = "required_1"
    REQUIRED_2 = "required_2"

    @property
    def min_count(self) -> int:
        return {"required_1": 1, "required_2": 2}.get(self.value, 0)


class TemplateItem(BaseModel):
    id: str
    text: str
    type: ItemType
    points: float = Field(default=0, ge=0)
    critical: bool = False
    evidence_required: EvidenceRequirement = EvidenceRequirement.NONE
    help_text: str = ""
    sub_items: List[str] = []  # checklist items only


class TemplateSection(BaseModel):
    id: str
    name: str
    weight: float = 0
    items: List[TemplateItem] = []


class ScoringConfig(BaseModel):
    pass_threshold: float = 70
    critical_fail_rule: bool = True
    weighted: bool = False
    min_completion: float = 95


class ChecklistTemplate(BaseModel):
    sections: List[TemplateSection]
    scoring: ScoringConfig = ScoringConfig()

    @classmethod
    def from_record(cls, template) -> "ChecklistTemplate":
        """Build from an AuditTemplate row (checklist + scoring_config JSON columns)"""
        return cls(
            sections=template.checklist.get("sections", []),
            scoring=ScoringConfig(**(template.scoring_config or {})),
        )

    def iter_items(self) -> Iterator[Tuple[TemplateSection, TemplateItem]]:
        for section in self.sections:
            for item in section.items:
                yield section, item

    def find_item(self, item_id: str) -> Optional[Tuple[TemplateSection, TemplateItem]]:
        for section, item in self.iter_items():
            if item.id == item_id:
                return section, item
        return None


# ───────────────────────── Responses ─────────────────────────

class PassFailResponse(BaseModel):
    type: Literal["pass_fail"] = "pass_fail"
    value: Literal["pass", "fail"]


class RatingResponse(BaseModel):
    type: Literal["rating"] = "rating"
    value: int = Field(ge=1, le=5)


class NumericResponse(BaseModel):
    type: Literal["numeric"] = "numeric"
    value: float


class PhotoResponse(BaseModel):
    type: Literal["photo"] = "photo"
    value: List[str] = []  # stored evidence references


class TextResponse(BaseModel):
    type: Literal["text"] = "text"
    value: str


class ChecklistResponse(BaseModel):
    type: Literal["checklist"] = "checklist"
    value: Dict[str, bool]


ItemResponse = Annotated[
    Union[PassFailResponse, RatingResponse, NumericResponse, PhotoResponse, TextResponse, ChecklistResponse],
    Field(discriminator="type"),
]

_response_adapter = TypeAdapter(ItemResponse)

RESPONSE_TYPES = {
    ItemType.PASS_FAIL: PassFailResponse,
    ItemType.RATING: RatingResponse,
    ItemType.NUMERIC: NumericResponse,
    ItemType.PHOTO: PhotoResponse,
    ItemType.TEXT: TextResponse,
    ItemType.CHECKLIST: ChecklistResponse,
}


def parse_response(raw: Optional[Mapping[str, Any]]):
    """Parse a stored/posted {"type": ..., "value": ...} payload; None stays unanswered"""
    if raw is None:
        return None
    return _response_adapter.validate_python(raw)


def dump_response(response) -> Optional[Dict[str, Any]]:
    return response.model_dump() if response is not None else None


@dataclass
class ItemState:
    """Everything known about one item during execution"""
    response: Optional[Any] = None
    evidence_refs: List[str] = field(default_factory=list)  # already stored
    pending_files: int = 0  # added but not uploaded yet
    manual_finding: str = ""

    @property
    def answered(self) -> bool:
        return self.response is not None

    @property
    def evidence_count(self) -> int:
        return len(self.evidence_refs) + self.pending_files


def _typed_response(item: TemplateItem, state: Optional[ItemState]):
    if state is None or state.response is None:
        return None
    expected = RESPONSE_TYPES.get(item.type)
    if expected is None:
        raise ResponseTypeError(f"No response type registered for item type {item.type!r}")
    if not isinstance(state.response, expected):
        raise ResponseTypeError(
            f"Item {item.id} expects a {item.type.value} response, got {state.response.type}"
        )
    return state.response


def _checkbox_states(item: TemplateItem, response: ChecklistResponse) -> List[bool]:
    """Sub-items declared on the template but missing from the response count as unchecked"""
    names = list(item.sub_items) + [k for k in response.value if k not in item.sub_items]
    return [bool(response.value.get(name, False)) for name in names]


# ───────────────────────── Points ─────────────────────────

def _points_pass_fail(item, response, state) -> float:
    return item.points if response.value == "pass" else 0.0


def _points_rating(item, response, state) -> float:
    return item.points * (response.value / 5)


def _points_numeric(item, response, state) -> float:
    return item.points


def _points_photo(item, response, state) -> float:
    attached = state.evidence_count + len(response.value)
    return item.points if attached > 0 else 0.0


def _points_text(item, response, state) -> float:
    return item.points if response.value.strip() else 0.0


def _points_checklist(item, response, state) -> float:
    boxes = _checkbox_states(item, response)
    if not boxes:
        return 0.0
    return item.points * (sum(boxes) / len(boxes))


_POINTS_BY_TYPE = {
    ItemType.PASS_FAIL: _points_pass_fail,
    ItemType.RATING: _points_rating,
    ItemType.NUMERIC: _points_numeric,
    ItemType.PHOTO: _points_photo,
    ItemType.TEXT: _points_text,
    ItemType.CHECKLIST: _points_checklist,
}


def item_points(item: TemplateItem, state: Optional[ItemState]) -> float:
    """Points earned by one item; unanswered items earn nothing"""
    response = _typed_response(item, state)
    if response is None:
        return 0.0
    return _POINTS_BY_TYPE[item.type](item, response, state)


# ───────────────────────── Failure detection ─────────────────────────

def is_critical_failure(item: TemplateItem, state: Optional[ItemState]) -> bool:
    """
    A critical item that fails outright: pass/fail answered "fail", the lowest
    rating, or any unchecked checklist box. Unanswered items never count here.
    """
    if not item.critical:
        return False
    response = _typed_response(item, state)
    if response is None:
        return False
    if item.type == ItemType.PASS_FAIL:
        return response.value == "fail"
    if item.type == ItemType.RATING:
        return response.value == 1
    if item.type == ItemType.CHECKLIST:
        return not all(_checkbox_states(item, response))
    return False


def is_failed_for_finding(item: TemplateItem, state: Optional[ItemState]) -> bool:
    """Any item (critical or not) whose answer warrants a Finding"""
    response = _typed_response(item, state)
    if response is None:
        return False
    if item.type == ItemType.PASS_FAIL:
        return response.value == "fail"
    if item.type == ItemType.RATING:
        return response.value <= 2
    if item.type == ItemType.CHECKLIST:
        return not all(_checkbox_states(item, response))
    return False


# ───────────────────────── Scoring ─────────────────────────

@dataclass
class SectionScore:
    section_id: str
    section_name: str
    points_earned: float
    max_points: float
    weight: float
    percentage: float


@dataclass
class ScoreResult:
    total_score: float
    pass_fail: str  # "pass" | "fail"
    critical_fail: bool
    section_scores: List[SectionScore] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_score": self.total_score,
            "pass_fail": self.pass_fail,
            "critical_fail": self.critical_fail,
            "section_scores": [s.__dict__ for s in self.section_scores],
        }


def compute_score(template: ChecklistTemplate, states: Mapping[str, ItemState]) -> ScoreResult:
    """Score a set of item states (keyed by item id) against a template"""
    config = template.scoring

    critical_fail = False
    if config.critical_fail_rule:
        critical_fail = any(
            is_critical_failure(item, states.get(item.id))
            for _, item in template.iter_items()
        )

    section_scores = []
    for section in template.sections:
        earned = sum(item_points(item, states.get(item.id)) for item in section.items)
        maximum = sum(item.points for item in section.items)
        section_scores.append(SectionScore(
            section_id=section.id,
            section_name=section.name,
            points_earned=earned,
            max_points=maximum,
            weight=section.weight,
            percentage=(earned / maximum * 100) if maximum > 0 else 0.0,
        ))

    if config.weighted:
        total = sum(s.percentage * s.weight / 100 for s in section_scores)
    else:
        earned = sum(s.points_earned for s in section_scores)
        maximum = sum(s.max_points for s in section_scores)
        total = (earned / maximum * 100) if maximum > 0 else 0.0

    passed = not critical_fail and total >= config.pass_threshold
    return ScoreResult(
        total_score=total,
        pass_fail="pass" if passed else "fail",
        critical_fail=critical_fail,
        section_scores=section_scores,
    )


@dataclass
class CompletionStats:
    answered: int
    total: int
    percentage: int


def completion_stats(template: ChecklistTemplate, states: Mapping[str, ItemState]) -> CompletionStats:
    total = 0
    answered = 0
    for _, item in template.iter_items():
        total += 1
        state = states.get(item.id)
        if state is not None and state.answered:
            answered += 1
    percentage = int(math.floor(answered / total * 100 + 0.5)) if total else 0
    return CompletionStats(answered=answered, total=total, percentage=percentage)
