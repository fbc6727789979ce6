from __future__ import annotations

from typing import Dict, Optional

from .contracts import ModerationDecision

# Keyed by rule name or rule prefix. Never include scores, thresholds or matched terms.
_MESSAGES: Dict[str, str] = {
    "safesearch:adult": "This image contains inappropriate content and cannot be uploaded.",
    "safesearch:racy": "This image contains inappropriate content and cannot be uploaded.",
    "safesearch:violence": "This image contains violent content and cannot be uploaded.",
    "blocklist": "This image contains restricted content and cannot be uploaded.",
    "input:unsupported_format": "Invalid file type. Please upload JPG, PNG, or WebP images only.",
    "input:too_large": "Image file is too large. Please upload a smaller image.",
    "input:too_small": "This image is too small. Please upload a higher resolution photo.",
    "watermark:decode_error": "This image could not be processed. Please upload a different file.",
    "faces:over_limit": "Images for this listing should not show people. Your image will be reviewed before it is published.",
    "context:not_property": "This image may not be a property photo. Under review.",
}
# Review rules with their own message; other review rules get the generic pending text.
_REVIEW_RULES = ("faces:over_limit", "context:not_property")
_DEFAULT_REJECTED = "This image cannot be uploaded because it violates our content policy."
_PENDING_REVIEW = "Your image has been received and will be published after review."


def public_reason(decision: ModerationDecision) -> Optional[str]:
    """
    User-facing, category-level reason for a non-approved decision; None when approved.
    """
    if decision.verdict == "approved":
        return None
    for rule in decision.triggered_rules:
        msg = _MESSAGES.get(rule) or _MESSAGES.get(rule.split(":", 1)[0])
        if msg:
            if decision.verdict == "needs_review" and rule not in _REVIEW_RULES:
                continue
            return msg
    if decision.verdict == "needs_review":
        return _PENDING_REVIEW
    return _DEFAULT_REJECTED
