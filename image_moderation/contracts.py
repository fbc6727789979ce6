from __future__ import annotations

from datetime import datetime
from enum import IntEnum
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

SAFESEARCH_CATEGORIES = ("adult", "violence", "racy", "medical", "spoof")
# Categories that reject outright; medical/spoof only ever send an image to review.
REJECT_CATEGORIES = ("adult", "violence", "racy")
UNCERTAIN_CATEGORIES = ("medical", "spoof")

Verdict = Literal["approved", "rejected", "needs_review"]
Anchor = Literal["bottom-right", "bottom-left", "top-right", "top-left"]
PipelineState = Literal[
    "received",
    "analyzing",
    "deciding",
    "approved",
    "watermarking",
    "published",
    "rejected",
    "needs_review",
]


class Likelihood(IntEnum):
    VERY_UNLIKELY = 0
    UNLIKELY = 1
    POSSIBLE = 2
    LIKELY = 3
    VERY_LIKELY = 4

    @classmethod
    def parse(cls, value) -> "Likelihood":
        """Accepts an int level or a level name ("LIKELY", "very_likely")."""
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown likelihood: {value!r}") from None
        return cls(int(value))


class BoundingBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    x0: float
    y0: float
    x1: float
    y1: float


class Label(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    confidence: float = Field(ge=0.0, le=1.0)


class Face(BaseModel):
    model_config = ConfigDict(frozen=True)

    confidence: float = Field(ge=0.0, le=1.0)
    box: Optional[BoundingBox] = None


class DetectedObject(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    confidence: float = Field(ge=0.0, le=1.0)
    box: Optional[BoundingBox] = None


class AnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    safe_search: Dict[str, Likelihood]
    labels: List[Label] = Field(default_factory=list)
    faces: List[Face] = Field(default_factory=list)
    objects: List[DetectedObject] = Field(default_factory=list)

    @field_validator("safe_search", mode="before")
    @classmethod
    def _complete_safe_search(cls, v):
        levels = {str(k).lower(): Likelihood.parse(lvl) for k, lvl in dict(v).items()}
        missing = [c for c in SAFESEARCH_CATEGORIES if c not in levels]
        if missing:
            raise ValueError(f"SafeSearch result missing categories: {missing}")
        return levels

    @property
    def face_count(self) -> int:
        """Every face the service reported. The policy counts only confident ones (policy.counted_faces)."""
        return len(self.faces)


class PolicyConfig(BaseModel):
    """Moderation policy. Loaded once, then shared read-only across submissions."""

    model_config = ConfigDict(frozen=True)

    version: str = "default"
    thresholds: Dict[str, Likelihood] = Field(
        default_factory=lambda: {c: Likelihood.LIKELY for c in SAFESEARCH_CATEGORIES}
    )
    blocklist: Tuple[str, ...] = ()
    # Label floor; objects use blocklist_object_min_confidence when set. Per-term floors win over both.
    blocklist_min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    blocklist_object_min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    blocklist_term_min_confidence: Dict[str, float] = Field(default_factory=dict)
    max_faces: Optional[int] = Field(default=None, ge=0)
    face_min_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    faceless_listing_types: Tuple[str, ...] = ()
    # Empty disables the property-context check.
    property_labels: Tuple[str, ...] = ()
    property_context_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    context_min_confidence: float = Field(default=0.3, ge=0.0, le=1.0)

    @field_validator("thresholds", mode="before")
    @classmethod
    def _parse_thresholds(cls, v):
        parsed = {str(k).lower(): Likelihood.parse(lvl) for k, lvl in dict(v).items()}
        unknown = sorted(set(parsed) - set(SAFESEARCH_CATEGORIES))
        if unknown:
            raise ValueError(f"Unknown SafeSearch categories in thresholds: {unknown}")
        return {c: parsed.get(c, Likelihood.LIKELY) for c in SAFESEARCH_CATEGORIES}

    @field_validator("blocklist", "faceless_listing_types", "property_labels", mode="before")
    @classmethod
    def _casefold_names(cls, v):
        return tuple(str(name).strip().casefold() for name in v if str(name).strip())

    @field_validator("blocklist_term_min_confidence", mode="before")
    @classmethod
    def _casefold_term_floors(cls, v):
        return {str(name).strip().casefold(): floor for name, floor in dict(v).items() if str(name).strip()}

    @field_validator("blocklist_term_min_confidence")
    @classmethod
    def _check_term_floors(cls, v):
        bad = sorted(name for name, floor in v.items() if not 0.0 <= floor <= 1.0)
        if bad:
            raise ValueError(f"Blocklist confidence floors must be within [0, 1]: {bad}")
        return v

    def threshold_for(self, category: str) -> Likelihood:
        return self.thresholds.get(category, Likelihood.LIKELY)

    def blocklist_floor(self, term: str, source: Literal["label", "object"]) -> float:
        if term in self.blocklist_term_min_confidence:
            return self.blocklist_term_min_confidence[term]
        if source == "object" and self.blocklist_object_min_confidence is not None:
            return self.blocklist_object_min_confidence
        return self.blocklist_min_confidence

    def for_listing(self, listing_type: Optional[str]) -> "PolicyConfig":
        """Effective policy for one listing type; the shared instance is left untouched."""
        if listing_type and listing_type.strip().casefold() in self.faceless_listing_types:
            return self.model_copy(update={"max_faces": 0})
        return self


class ModerationDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    verdict: Verdict
    triggered_rules: List[str] = Field(default_factory=list)
    policy_version: str
    decided_at: datetime


class WatermarkSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str = Field(default="360Coordinates", min_length=1)
    font_scale: float = Field(default=0.05, gt=0.0, le=1.0)
    margin: float = Field(default=0.03, ge=0.0, lt=0.5)
    opacity: float = Field(default=0.6, ge=0.0, le=1.0)
    anchor: Anchor = "bottom-right"
    quality: int = Field(default=90, ge=1, le=100)
    color: Tuple[int, int, int] = (255, 255, 255)
    font_path: Optional[str] = None


class ModerationContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    property_id: str
    uploader_id: str
    listing_type: Optional[str] = None


class Transition(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: PipelineState
    at: datetime
    reason: str = ""


class AuditRecord(BaseModel):
    """One append-only audit entry; self-contained so interleaved writes stay readable."""

    model_config = ConfigDict(frozen=True)

    event: Literal["decision", "late_analysis"] = "decision"
    image_id: str
    property_id: str
    uploader_id: str
    verdict: Optional[Verdict] = None
    triggered_rules: List[str] = Field(default_factory=list)
    policy_version: str
    transitions: List[Transition] = Field(default_factory=list)
    recorded_at: datetime
