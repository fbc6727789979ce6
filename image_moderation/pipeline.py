from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Callable, List, Optional, Sequence, Tuple

from .audit import AuditLog
from .config import PIPELINE_ANALYSIS_WORKERS, get_time_budget_s
from .contracts import (
    AnalysisResult,
    AuditRecord,
    ModerationContext,
    ModerationDecision,
    PipelineState,
    PolicyConfig,
    Transition,
    WatermarkSpec,
)
from .errors import AnalysisUnavailable, ImageDecodeError, InputError, ModerationError
from .io import ImageAsset
from .policy import decide
from .vision_client import VisionAnalyzer
from .watermark import apply_watermark

logger = logging.getLogger(__name__)

ANALYSIS_UNAVAILABLE_RULE = "analysis:unavailable"
DECODE_ERROR_RULE = "watermark:decode_error"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PipelineResult:
    decision: ModerationDecision
    audit_record: AuditRecord
    final_state: PipelineState
    # Only set when published; callers store this, never the original.
    watermarked_image: Optional[ImageAsset] = None


class _Trail:
    def __init__(self):
        self.transitions: List[Transition] = []

    def mark(self, state: PipelineState, reason: str = "") -> None:
        self.transitions.append(Transition(state=state, at=_now(), reason=reason))


class ModerationPipeline:
    """
    received -> analyzing -> deciding -> approved -> watermarking -> published
                                      -> rejected | needs_review

    Expected failures (invalid input, analysis unavailable, decode errors) end in a
    decision; only defects raise. Every terminal decision is appended to `audit_log`.
    """

    def __init__(
        self,
        analyzer: VisionAnalyzer,
        policy: PolicyConfig,
        watermark_spec: WatermarkSpec,
        audit_log: AuditLog,
        time_budget_s: Optional[float] = None,
        analysis_workers: int = PIPELINE_ANALYSIS_WORKERS,
        renderer: Callable[[ImageAsset, WatermarkSpec], ImageAsset] = apply_watermark,
    ):
        self.analyzer = analyzer
        self.policy = policy
        self.watermark_spec = watermark_spec
        self.audit_log = audit_log
        self.time_budget_s = time_budget_s if time_budget_s is not None else get_time_budget_s()
        self.renderer = renderer
        self._executor = ThreadPoolExecutor(max_workers=analysis_workers, thread_name_prefix="vision-analysis")

    def close(self) -> None:
        # In-flight analyses finish in the background and still reach the audit log.
        self._executor.shutdown(wait=False)

    def __enter__(self) -> "ModerationPipeline":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def submit(self, image: ImageAsset, ctx: ModerationContext) -> PipelineResult:
        deadline = time.monotonic() + self.time_budget_s
        policy = self.policy.for_listing(ctx.listing_type)
        trail = _Trail()
        trail.mark("received", f"{image.size_bytes} bytes, format={image.format}")

        trail.mark("analyzing")
        analysis, failure = self._analyze(image, ctx, policy, deadline)

        if isinstance(failure, InputError):
            trail.mark("deciding", f"input error: {failure}")
            decision = ModerationDecision(
                verdict="rejected",
                triggered_rules=[f"input:{failure.reason}"],
                policy_version=policy.version,
                decided_at=_now(),
            )
        elif failure is not None or analysis is None:
            trail.mark("deciding", f"analysis unavailable: {failure}")
            decision = ModerationDecision(
                verdict="needs_review",
                triggered_rules=[ANALYSIS_UNAVAILABLE_RULE],
                policy_version=policy.version,
                decided_at=_now(),
            )
        else:
            trail.mark("deciding", "analysis complete")
            decision = decide(analysis, policy)

        watermarked: Optional[ImageAsset] = None
        final_state: PipelineState = decision.verdict
        if decision.verdict == "approved":
            trail.mark("approved", "no rule fired")
            trail.mark("watermarking")
            try:
                watermarked = self.renderer(image, self.watermark_spec)
                final_state = "published"
                trail.mark("published", f"{watermarked.size_bytes} bytes")
            except ImageDecodeError as e:
                logger.warning("Watermarking failed for %s, rejecting: %s", image.image_id, e)
                decision = decision.model_copy(
                    update={"verdict": "rejected", "triggered_rules": decision.triggered_rules + [DECODE_ERROR_RULE]}
                )
                final_state = "rejected"
                trail.mark("rejected", str(e))
        else:
            trail.mark(decision.verdict, ", ".join(decision.triggered_rules))

        record = AuditRecord(
            event="decision",
            image_id=image.image_id,
            property_id=ctx.property_id,
            uploader_id=ctx.uploader_id,
            verdict=decision.verdict,
            triggered_rules=decision.triggered_rules,
            policy_version=decision.policy_version,
            transitions=trail.transitions,
            recorded_at=_now(),
        )
        self.audit_log.append(record)
        logger.info(
            "Image %s (property %s): %s %s",
            image.image_id,
            ctx.property_id,
            final_state,
            decision.triggered_rules,
        )
        return PipelineResult(
            decision=decision,
            audit_record=record,
            final_state=final_state,
            watermarked_image=watermarked,
        )

    def submit_many(
        self,
        items: Sequence[Tuple[ImageAsset, ModerationContext]],
        max_workers: Optional[int] = None,
    ) -> List[PipelineResult]:
        """Moderate several images concurrently; results keep the input order."""
        if not items:
            return []
        with ThreadPoolExecutor(max_workers=max_workers or len(items), thread_name_prefix="moderation") as pool:
            return list(pool.map(lambda item: self.submit(*item), items))

    def _analyze(
        self,
        image: ImageAsset,
        ctx: ModerationContext,
        policy: PolicyConfig,
        deadline: float,
    ) -> Tuple[Optional[AnalysisResult], Optional[ModerationError]]:
        future = self._executor.submit(self.analyzer.analyze, image, deadline)
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic())), None
        except (InputError, AnalysisUnavailable) as e:
            return None, e
        except FuturesTimeout:
            if future.cancel():
                return None, AnalysisUnavailable("time budget exhausted before the analysis started")
            # The call is already paid for; keep its outcome for the audit trail.
            future.add_done_callback(partial(self._record_late_analysis, image, ctx, policy))
            return None, AnalysisUnavailable(f"time budget of {self.time_budget_s}s exhausted")

    def _record_late_analysis(
        self,
        image: ImageAsset,
        ctx: ModerationContext,
        policy: PolicyConfig,
        future: Future,
    ) -> None:
        try:
            err = future.exception()
            if err is None:
                decision = decide(future.result(), policy)
                verdict, rules, reason = decision.verdict, decision.triggered_rules, "late analysis result"
            else:
                verdict, rules, reason = None, [ANALYSIS_UNAVAILABLE_RULE], f"late analysis failed: {err}"
            self.audit_log.append(
                AuditRecord(
                    event="late_analysis",
                    image_id=image.image_id,
                    property_id=ctx.property_id,
                    uploader_id=ctx.uploader_id,
                    verdict=verdict,
                    triggered_rules=rules,
                    policy_version=policy.version,
                    transitions=[Transition(state="deciding", at=_now(), reason=reason)],
                    recorded_at=_now(),
                )
            )
        except Exception:
            logger.exception("Failed to audit late analysis for %s", image.image_id)
