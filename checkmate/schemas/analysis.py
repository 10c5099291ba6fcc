import json
import logging
import re
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

log = logging.getLogger(__name__)

SourceContext = Literal["primaryImage", "videoFrame", "descriptionText", "ctaText"]

FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
EMBEDDED_OBJECT_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```|(\{.*\})", re.DOTALL)


class AnalysisValidationError(Exception):
    """The model answered, but not with the structure we asked for."""

    def __init__(self, errors: List[str]):
        super().__init__("Invalid analysis response: " + "; ".join(errors))
        self.errors = errors


class BoundingBox(BaseModel):
    x_min: float = Field(..., ge=0.0, le=1.0)
    y_min: float = Field(..., ge=0.0, le=1.0)
    x_max: float = Field(..., ge=0.0, le=1.0)
    y_max: float = Field(..., ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_ordering(self):
        if self.x_min >= self.x_max or self.y_min >= self.y_max:
            raise ValueError("bounding box min must be below max")
        return self


def _valid_box(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    try:
        BoundingBox(**value)
    except (ValidationError, TypeError):
        return False
    return True


def coerce_bounding_box(item: dict) -> dict:
    """
    Normalises the ``boundingBox`` field in place: a valid box is kept, a list
    yields its first valid box, anything else becomes ``None``. An absent
    field stays absent.
    """
    if "boundingBox" not in item:
        return item
    value = item["boundingBox"]
    if value is None or _valid_box(value):
        return item
    if isinstance(value, list):
        log.warning(f"Item {item.get('id')!r}: boundingBox is a list, using first valid box")
        item["boundingBox"] = next((box for box in value if _valid_box(box)), None)
        return item
    log.warning(f"Item {item.get('id')!r}: invalid boundingBox {value!r}, treating as null")
    item["boundingBox"] = None
    return item


class _Item(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    source_context: Optional[SourceContext] = Field(None, alias="sourceContext")
    identified_content: str = Field(..., alias="identifiedContent")
    bounding_box: Optional[BoundingBox] = Field(None, alias="boundingBox")
    timestamp: Optional[float] = None
    caption_text: Optional[str] = Field(None, alias="captionText")


class AnalysisTableItem(_Item):
    issue_description: str = Field(..., alias="issueDescription")
    recommendation: str
    severity: Optional[str] = None


class ExcludedItem(_Item):
    matched_rule: str = Field(..., alias="matchedRule")
    ai_note: str = Field(..., alias="aiNote")


class AIDetectionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_ai_generated: bool = Field(..., alias="isAIGenerated", strict=True)
    confidence: int = Field(..., ge=0, le=100)
    reasoning: str

    @model_validator(mode="before")
    @classmethod
    def round_confidence(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("confidence"), float):
            data = {**data, "confidence": round(data["confidence"])}
        return data


class AnalysisResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    overall_assessment: str = Field(..., alias="overallAssessment")
    recommendations_feedback: str = Field(..., alias="recommendationsFeedback")
    issues_table: List[AnalysisTableItem] = Field(default_factory=list, alias="issuesTable")
    overall_severity: Optional[str] = Field(None, alias="overallSeverity")
    excluded_items_table: List[ExcludedItem] = Field(
        default_factory=list, alias="excludedItemsTable"
    )
    summary_for_copy: Optional[str] = Field(None, alias="summaryForCopy")
    ai_detection: Optional[AIDetectionResult] = Field(None, alias="aiDetection")


def strip_code_fences(text: str) -> str:
    text = text.strip()
    match = FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text


def _format_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    ]


def parse_analysis_response(text: Optional[str]) -> AnalysisResult:
    if not text or not text.strip():
        raise AnalysisValidationError(["<root>: empty response"])
    try:
        data = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise AnalysisValidationError([f"<root>: not valid JSON ({e.msg})"]) from e
    if not isinstance(data, dict):
        raise AnalysisValidationError(["<root>: expected a JSON object"])

    for table in ("issuesTable", "excludedItemsTable"):
        if data.get(table) is None:
            data[table] = []
        elif isinstance(data[table], list):
            data[table] = [
                coerce_bounding_box(item) if isinstance(item, dict) else item
                for item in data[table]
            ]

    try:
        return AnalysisResult.model_validate(data)
    except ValidationError as e:
        raise AnalysisValidationError(_format_errors(e)) from e


def parse_ai_detection(text: Optional[str]) -> Optional[AIDetectionResult]:
    if not text:
        return None
    text = text.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = EMBEDDED_OBJECT_RE.search(text)
        if not match:
            return None
        try:
            data = json.loads(match.group(1) or match.group(2))
        except json.JSONDecodeError:
            return None
    if not isinstance(data, dict):
        return None
    try:
        return AIDetectionResult.model_validate(data)
    except ValidationError:
        return None
