from __future__ import annotations

import io
import threading
import time
from dataclasses import dataclass
from typing import Optional

import requests
from PIL import Image

from image_moderation.audit import InMemoryAuditLog
from image_moderation.contracts import (
    SAFESEARCH_CATEGORIES,
    AnalysisResult,
    Face,
    Label,
    Likelihood,
    ModerationContext,
    PolicyConfig,
    WatermarkSpec,
)
from image_moderation.errors import AnalysisUnavailable
from image_moderation.gate import CallGate
from image_moderation.io import asset_from_bytes
from image_moderation.messages import public_reason

CTX = ModerationContext(property_id="prop-42", uploader_id="user-7")


def _analysis(labels=(), faces=(), **levels) -> AnalysisResult:
    safe = {c: Likelihood.VERY_UNLIKELY for c in SAFESEARCH_CATEGORIES}
    safe.update(levels)
    return AnalysisResult(
        safe_search=safe,
        labels=[Label(name=n, confidence=c) for n, c in labels],
        faces=[Face(confidence=c) for c in faces],
    )


def _asset(image_id="img", color=(200, 100, 50)):
    buf = io.BytesIO()
    Image.new("RGB", (500, 500), color).save(buf, format="JPEG", quality=95)
    return asset_from_bytes(buf.getvalue(), image_id=image_id)


@dataclass
class _FakeAnalyzer:
    result: Optional[AnalysisResult] = None
    error: Optional[Exception] = None
    calls: int = 0

    def analyze(self, image, deadline=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


def _pipeline(analyzer, policy=None, audit=None, **kwargs):
    from image_moderation.pipeline import ModerationPipeline

    return ModerationPipeline(
        analyzer=analyzer,
        policy=policy or PolicyConfig(version="test-v1", blocklist=["handgun"]),
        watermark_spec=WatermarkSpec(),
        audit_log=audit if audit is not None else InMemoryAuditLog(),
        **kwargs,
    )


def test_clean_image_is_published_with_watermark():
    audit = InMemoryAuditLog()
    src = _asset()
    with _pipeline(_FakeAnalyzer(result=_analysis(labels=[("bedroom", 0.9)])), audit=audit) as pipeline:
        result = pipeline.submit(src, CTX)

    assert result.decision.verdict == "approved"
    assert result.final_state == "published"
    wm = result.watermarked_image
    assert wm is not None
    assert (wm.width, wm.height) == (src.width, src.height)
    assert wm.size_bytes != src.size_bytes
    assert public_reason(result.decision) is None

    (record,) = audit.records
    assert record.event == "decision"
    assert record.image_id == "img"
    assert record.property_id == "prop-42"
    assert record.uploader_id == "user-7"
    assert record.policy_version == "test-v1"
    assert [t.state for t in record.transitions] == [
        "received",
        "analyzing",
        "deciding",
        "approved",
        "watermarking",
        "published",
    ]


def test_adult_content_is_rejected_without_watermark():
    audit = InMemoryAuditLog()
    with _pipeline(_FakeAnalyzer(result=_analysis(adult=Likelihood.VERY_LIKELY)), audit=audit) as pipeline:
        result = pipeline.submit(_asset(), CTX)

    assert result.decision.verdict == "rejected"
    assert result.decision.triggered_rules == ["safesearch:adult"]
    assert result.watermarked_image is None
    assert audit.records[0].transitions[-1].state == "rejected"
    assert audit.records[0].transitions[-1].reason == "safesearch:adult"


def test_blocklisted_label_is_rejected_and_reason_hides_the_term():
    with _pipeline(_FakeAnalyzer(result=_analysis(labels=[("handgun", 0.9)]))) as pipeline:
        result = pipeline.submit(_asset(), CTX)

    assert result.decision.verdict == "rejected"
    assert result.decision.triggered_rules == ["blocklist:handgun"]
    reason = public_reason(result.decision)
    assert reason and "handgun" not in reason.lower()
    assert "restricted content" in reason


def test_medical_content_needs_review():
    with _pipeline(_FakeAnalyzer(result=_analysis(medical=Likelihood.LIKELY))) as pipeline:
        result = pipeline.submit(_asset(), CTX)

    assert result.decision.verdict == "needs_review"
    assert result.final_state == "needs_review"
    assert result.watermarked_image is None


def test_analysis_unavailable_fails_safe_to_review():
    analyzer = _FakeAnalyzer(error=AnalysisUnavailable("503 after 3 attempts", attempts=3))
    with _pipeline(analyzer) as pipeline:
        result = pipeline.submit(_asset(), CTX)

    assert result.decision.verdict == "needs_review"
    assert result.decision.triggered_rules == ["analysis:unavailable"]
    assert result.watermarked_image is None


def test_faceless_listing_type_sends_people_to_review():
    policy = PolicyConfig(faceless_listing_types=["commercial"])
    ctx = CTX.model_copy(update={"listing_type": "commercial"})
    with _pipeline(_FakeAnalyzer(result=_analysis(faces=[0.95])), policy=policy) as pipeline:
        result = pipeline.submit(_asset(), ctx)

    assert result.decision.triggered_rules == ["faces:over_limit"]
    assert result.decision.verdict == "needs_review"


def test_decode_error_during_watermarking_downgrades_to_rejected():
    data = _asset().data
    corrupt = asset_from_bytes(data[: len(data) // 3], image_id="broken")
    with _pipeline(_FakeAnalyzer(result=_analysis())) as pipeline:
        result = pipeline.submit(corrupt, CTX)

    assert result.decision.verdict == "rejected"
    assert result.decision.triggered_rules == ["watermark:decode_error"]
    assert result.final_state == "rejected"
    assert result.watermarked_image is None


def test_invalid_input_is_rejected_without_calling_the_service(monkeypatch):
    from image_moderation import vision_client as vision_mod

    def _no_network(*_args, **_kwargs):
        raise AssertionError("vision service must not be called")

    monkeypatch.setattr(vision_mod.requests, "post", _no_network)
    client = vision_mod.VisionAnalysisClient(api_key="test-key", gate=CallGate(4))

    with _pipeline(client) as pipeline:
        result = pipeline.submit(asset_from_bytes(b"not an image at all"), CTX)

    assert result.decision.verdict == "rejected"
    assert result.decision.triggered_rules == ["input:unsupported_format"]
    assert "JPG, PNG, or WebP" in public_reason(result.decision)


def test_malformed_service_body_ends_in_review(monkeypatch):
    from image_moderation import vision_client as vision_mod

    class _ListResp:
        def raise_for_status(self):
            return None

        def json(self):
            return []

    monkeypatch.setattr(vision_mod.requests, "post", lambda url, params=None, json=None, timeout=None: _ListResp())
    client = vision_mod.VisionAnalysisClient(api_key="test-key", gate=CallGate(4))
    audit = InMemoryAuditLog()

    with _pipeline(client, audit=audit) as pipeline:
        result = pipeline.submit(_asset(), CTX)

    assert result.decision.verdict == "needs_review"
    assert result.decision.triggered_rules == ["analysis:unavailable"]
    assert result.watermarked_image is None
    assert audit.records[0].verdict == "needs_review"


def test_transport_that_always_times_out_ends_in_review_within_budget(monkeypatch):
    """
    Real client with the default retry policy; every attempt times out.
    => needs_review after 3 attempts, well inside the 35s budget.
    """
    from image_moderation import vision_client as vision_mod

    calls = {"n": 0}

    def _always_timeout(url, params=None, json=None, timeout=None):
        calls["n"] += 1
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(vision_mod.requests, "post", _always_timeout)
    client = vision_mod.VisionAnalysisClient(api_key="test-key", gate=CallGate(4))

    t0 = time.monotonic()
    with _pipeline(client, time_budget_s=35.0) as pipeline:
        result = pipeline.submit(_asset(), CTX)
    elapsed = time.monotonic() - t0

    assert result.decision.verdict == "needs_review"
    assert result.decision.triggered_rules == ["analysis:unavailable"]
    assert calls["n"] == 3
    assert elapsed < 35.0


def test_hung_analysis_is_cut_off_and_late_result_is_audited():
    release = threading.Event()

    class _HangingAnalyzer:
        def analyze(self, image, deadline=None):
            release.wait(timeout=5)
            return _analysis()

    audit = InMemoryAuditLog()
    pipeline = _pipeline(_HangingAnalyzer(), audit=audit, time_budget_s=0.2)
    try:
        t0 = time.monotonic()
        result = pipeline.submit(_asset(image_id="slow"), CTX)
        assert time.monotonic() - t0 < 2.0
        assert result.decision.verdict == "needs_review"
        assert result.decision.triggered_rules == ["analysis:unavailable"]

        release.set()
        for _ in range(100):
            if len(audit.records) == 2:
                break
            time.sleep(0.02)
    finally:
        pipeline.close()

    decision_record, late_record = audit.records
    assert decision_record.event == "decision"
    assert late_record.event == "late_analysis"
    assert late_record.image_id == "slow"
    assert late_record.verdict == "approved"


def test_twenty_concurrent_submissions_respect_call_limit(monkeypatch):
    from image_moderation import vision_client as vision_mod

    clean = {
        "responses": [
            {"safeSearchAnnotation": {c: "VERY_UNLIKELY" for c in SAFESEARCH_CATEGORIES}, "labelAnnotations": []}
        ]
    }

    class _Resp:
        def raise_for_status(self):
            return None

        def json(self):
            return clean

    def _slow_post(url, params=None, json=None, timeout=None):
        time.sleep(0.02)
        return _Resp()

    monkeypatch.setattr(vision_mod.requests, "post", _slow_post)
    gate = CallGate(4)
    client = vision_mod.VisionAnalysisClient(api_key="test-key", gate=gate)
    audit = InMemoryAuditLog()
    items = [(_asset(image_id=f"img-{i}"), CTX) for i in range(20)]

    with _pipeline(client, audit=audit) as pipeline:
        results = pipeline.submit_many(items, max_workers=20)

    assert [r.decision.verdict for r in results] == ["approved"] * 20
    assert [r.audit_record.image_id for r in results] == [f"img-{i}" for i in range(20)]
    assert gate.total_calls == 20
    assert gate.peak <= 4
    assert len(audit.records) == 20


def test_non_property_photo_is_held_with_its_own_reason():
    policy = PolicyConfig(property_labels=["kitchen", "room", "house"])
    analyzer = _FakeAnalyzer(result=_analysis(labels=[("Dog", 0.9), ("Grass", 0.8), ("Leash", 0.7)]))
    with _pipeline(analyzer, policy=policy) as pipeline:
        result = pipeline.submit(_asset(), CTX)

    assert result.decision.verdict == "needs_review"
    assert result.decision.triggered_rules == ["context:not_property"]
    assert result.watermarked_image is None
    assert public_reason(result.decision) == "This image may not be a property photo. Under review."
