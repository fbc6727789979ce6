from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from .contracts import (
    REJECT_CATEGORIES,
    UNCERTAIN_CATEGORIES,
    AnalysisResult,
    ModerationDecision,
    PolicyConfig,
)


def _blocklist_hits(result: AnalysisResult, policy: PolicyConfig) -> List[str]:
    blocked = set(policy.blocklist)
    hits: List[str] = []
    detections = [(l.name, l.confidence, "label") for l in result.labels] + [
        (o.name, o.confidence, "object") for o in result.objects
    ]
    for name, confidence, source in detections:
        key = name.strip().casefold()
        if key in blocked and key not in hits and confidence >= policy.blocklist_floor(key, source):
            hits.append(key)
    return hits


def counted_faces(result: AnalysisResult, policy: PolicyConfig) -> int:
    """Faces that count toward max_faces; unlike AnalysisResult.face_count, low-confidence faces are skipped."""
    return sum(1 for f in result.faces if f.confidence >= policy.face_min_confidence)


def property_context_score(result: AnalysisResult, policy: PolicyConfig) -> Optional[float]:
    """
    Share of meaningful labels/objects that look like property photos.

    A detection is meaningful when its confidence is at least context_min_confidence,
    and property-related when any configured property term occurs in its name.
    None when nothing meaningful was detected.
    """
    names = [l.name for l in result.labels if l.confidence >= policy.context_min_confidence] + [
        o.name for o in result.objects if o.confidence >= policy.context_min_confidence
    ]
    if not names:
        return None
    related = sum(1 for n in names if any(term in n.casefold() for term in policy.property_labels))
    return related / len(names)


def decide(result: AnalysisResult, policy: PolicyConfig, decided_at: Optional[datetime] = None) -> ModerationDecision:
    """
    Classify one analysed image. Pure: no I/O, same inputs give the same decision.

    Rules run in a fixed order:
      1) blocklist            -> rejected (stops)
      2) adult/violence/racy  -> rejected (stops)
      3) medical/spoof at threshold, or a reject category one level below it -> needs_review
      4) more counted faces than policy.max_faces -> needs_review
      5) property-context score under its threshold (when property_labels is set) -> needs_review
      6) otherwise approved
    """
    decided_at = decided_at or datetime.now(timezone.utc)

    def _decision(verdict, rules: List[str]) -> ModerationDecision:
        return ModerationDecision(
            verdict=verdict,
            triggered_rules=rules,
            policy_version=policy.version,
            decided_at=decided_at,
        )

    hits = _blocklist_hits(result, policy)
    if hits:
        return _decision("rejected", [f"blocklist:{name}" for name in hits])

    rejected = [c for c in REJECT_CATEGORIES if result.safe_search[c] >= policy.threshold_for(c)]
    if rejected:
        return _decision("rejected", [f"safesearch:{c}" for c in rejected])

    rules: List[str] = []
    for c in UNCERTAIN_CATEGORIES:
        if result.safe_search[c] >= policy.threshold_for(c):
            rules.append(f"uncertain:{c}")
    for c in REJECT_CATEGORIES:
        if result.safe_search[c] == policy.threshold_for(c) - 1:
            rules.append(f"borderline:{c}")

    if policy.max_faces is not None and counted_faces(result, policy) > policy.max_faces:
        rules.append("faces:over_limit")

    if policy.property_labels:
        score = property_context_score(result, policy)
        if score is not None and score < policy.property_context_threshold:
            rules.append("context:not_property")

    if rules:
        return _decision("needs_review", rules)
    return _decision("approved", [])
