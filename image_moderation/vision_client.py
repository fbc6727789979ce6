from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence

import requests

from .config import (
    MAX_IMAGE_BYTES,
    MIN_IMAGE_HEIGHT,
    MIN_IMAGE_WIDTH,
    SUPPORTED_FORMATS,
    VISION_LABEL_MAX_RESULTS,
    get_vision_api_key,
    get_vision_base_url,
    get_vision_timeout_s,
)
from .contracts import SAFESEARCH_CATEGORIES, AnalysisResult, BoundingBox, DetectedObject, Face, Label, Likelihood
from .errors import AnalysisUnavailable, InputError, PermanentServiceError, TransientServiceError
from .gate import CallGate, get_vision_gate
from .io import ImageAsset, image_to_base64
from .retry import RetryError, RetryPolicy

logger = logging.getLogger(__name__)

# All four signals in one round trip.
_FEATURES = [
    {"type": "SAFE_SEARCH_DETECTION"},
    {"type": "LABEL_DETECTION", "maxResults": VISION_LABEL_MAX_RESULTS},
    {"type": "FACE_DETECTION"},
    {"type": "OBJECT_LOCALIZATION"},
]


class VisionAnalyzer(Protocol):
    def analyze(self, image: ImageAsset, deadline: Optional[float] = None) -> AnalysisResult: ...


def _is_retryable(err: BaseException) -> bool:
    return isinstance(err, TransientServiceError)


def _clamp01(value: Any) -> float:
    try:
        return min(1.0, max(0.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


def _box_from_vertices(vertices: Sequence[Dict[str, Any]]) -> Optional[BoundingBox]:
    # The API omits x/y when they are 0.
    if not vertices:
        return None
    xs = [float(v.get("x", 0.0)) for v in vertices]
    ys = [float(v.get("y", 0.0)) for v in vertices]
    return BoundingBox(x0=min(xs), y0=min(ys), x1=max(xs), y1=max(ys))


def _parse_likelihood(category: str, raw: Any) -> Likelihood:
    if not isinstance(raw, str) or raw == "UNKNOWN":
        raise PermanentServiceError(f"SafeSearch '{category}' has no usable likelihood: {raw!r}")
    try:
        return Likelihood[raw]
    except KeyError:
        raise PermanentServiceError(f"SafeSearch '{category}' has unknown likelihood: {raw!r}") from None


def parse_annotate_response(data: Dict[str, Any]) -> AnalysisResult:
    """
    Convert an `images:annotate` JSON body into an AnalysisResult.

    A missing SafeSearch annotation, an UNKNOWN level or a malformed body is a
    PermanentServiceError: partial results are never returned.
    """
    try:
        return _parse_first_response(data)
    except (TypeError, ValueError, AttributeError) as e:
        raise PermanentServiceError(f"Malformed vision response: {type(e).__name__}: {e}") from e


def _parse_first_response(data: Dict[str, Any]) -> AnalysisResult:
    responses = data.get("responses") or []
    if not responses:
        raise PermanentServiceError("No response from vision service")
    resp = responses[0] or {}
    if resp.get("error"):
        err = resp["error"]
        raise PermanentServiceError(f"Vision API error {err.get('code')}: {err.get('message', 'unknown')}")

    safe = resp.get("safeSearchAnnotation")
    if not isinstance(safe, dict):
        raise PermanentServiceError("Vision response has no SafeSearch annotation")
    safe_search = {c: _parse_likelihood(c, safe.get(c)) for c in SAFESEARCH_CATEGORIES}

    labels: List[Label] = [
        Label(name=str(a.get("description", "")), confidence=_clamp01(a.get("score")))
        for a in resp.get("labelAnnotations") or []
        if a.get("description")
    ]
    faces: List[Face] = [
        Face(
            confidence=_clamp01(a.get("detectionConfidence")),
            box=_box_from_vertices((a.get("boundingPoly") or {}).get("vertices") or []),
        )
        for a in resp.get("faceAnnotations") or []
    ]
    objects: List[DetectedObject] = [
        DetectedObject(
            name=str(a.get("name", "")),
            confidence=_clamp01(a.get("score")),
            box=_box_from_vertices((a.get("boundingPoly") or {}).get("normalizedVertices") or []),
        )
        for a in resp.get("localizedObjectAnnotations") or []
        if a.get("name")
    ]
    return AnalysisResult(safe_search=safe_search, labels=labels, faces=faces, objects=objects)


class VisionAnalysisClient:
    """Google Cloud Vision `images:annotate` over REST, one batched request per image."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        retry: Optional[RetryPolicy] = None,
        gate: Optional[CallGate] = None,
        max_bytes: int = MAX_IMAGE_BYTES,
        min_width: int = MIN_IMAGE_WIDTH,
        min_height: int = MIN_IMAGE_HEIGHT,
        supported_formats: Sequence[str] = SUPPORTED_FORMATS,
    ):
        self.api_key = api_key
        self.base_url = (base_url or get_vision_base_url()).rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else get_vision_timeout_s()
        self.retry = retry or RetryPolicy()
        self.gate = gate or get_vision_gate()
        self.max_bytes = max_bytes
        self.min_width = min_width
        self.min_height = min_height
        self.supported_formats = tuple(supported_formats)
        self.sleep = time.sleep

    def validate(self, image: ImageAsset) -> None:
        """Local checks only; raises InputError."""
        if image.size_bytes == 0 or image.format not in self.supported_formats:
            raise InputError("unsupported_format", f"format={image.format}")
        if image.size_bytes > self.max_bytes:
            raise InputError("too_large", f"{image.size_bytes} > {self.max_bytes} bytes")
        dims = image.dimensions
        if dims is not None and (dims[0] < self.min_width or dims[1] < self.min_height):
            raise InputError("too_small", f"{dims[0]}x{dims[1]} < {self.min_width}x{self.min_height}")

    def analyze(self, image: ImageAsset, deadline: Optional[float] = None) -> AnalysisResult:
        """
        Returns the AnalysisResult for `image`.

        Raises InputError before any network call for invalid images, and
        AnalysisUnavailable when the service could not produce a result.
        `deadline` is a time.monotonic() value bounding retries and queueing.
        """
        self.validate(image)
        api_key = self.api_key or get_vision_api_key()
        if not api_key:
            raise AnalysisUnavailable("Missing VISION_API_KEY", cause=PermanentServiceError("Missing VISION_API_KEY"))

        payload = {"requests": [{"image": {"content": image_to_base64(image)}, "features": _FEATURES}]}
        attempts = 0

        def _attempt(remaining: Optional[float]) -> AnalysisResult:
            nonlocal attempts
            with self.gate.slot(timeout=remaining) as acquired:
                if not acquired:
                    raise AnalysisUnavailable(
                        f"No vision call slot free before deadline for {image.image_id}", attempts=attempts
                    )
                attempts += 1
                timeout = self.timeout_s if remaining is None else max(0.001, min(self.timeout_s, remaining))
                data = self._post_annotate(api_key, payload, timeout)
            return parse_annotate_response(data)

        try:
            result = self.retry.run(_attempt, _is_retryable, deadline=deadline, sleep=self.sleep)
        except RetryError as e:
            logger.warning("Vision analysis unavailable for %s after %d attempt(s): %s", image.image_id, e.attempts, e.last_error)
            raise AnalysisUnavailable(str(e), cause=e.last_error, attempts=e.attempts) from e.last_error
        except PermanentServiceError as e:
            logger.warning("Vision analysis failed permanently for %s: %s", image.image_id, e)
            raise AnalysisUnavailable(str(e), cause=e, attempts=attempts) from e
        logger.debug("Vision analysis for %s done in %d attempt(s)", image.image_id, attempts)
        return result

    def _post_annotate(self, api_key: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        url = f"{self.base_url}/v1/images:annotate"
        try:
            resp = requests.post(url, params={"key": api_key}, json=payload, timeout=timeout)
            resp.raise_for_status()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status is not None and (status == 429 or status >= 500):
                raise TransientServiceError(f"Vision service returned {status}", status_code=status) from e
            raise PermanentServiceError(f"Vision service rejected request ({status})", status_code=status) from e
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientServiceError(f"Vision request failed: {type(e).__name__}: {e}") from e
        except requests.RequestException as e:
            raise PermanentServiceError(f"Vision request could not be sent: {e}") from e
        try:
            data = resp.json()
        except ValueError as e:
            raise PermanentServiceError("Vision response is not JSON") from e
        if not isinstance(data, dict):
            raise PermanentServiceError(f"Vision response is not a JSON object: {type(data).__name__}")
        return data
