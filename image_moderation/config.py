from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from .contracts import PolicyConfig, WatermarkSpec

logger = logging.getLogger(__name__)

VISION_BASE_URL = "https://vision.googleapis.com"
VISION_TIMEOUT_S = 10.0
VISION_LABEL_MAX_RESULTS = 20
VISION_MAX_CONCURRENT_CALLS = 4

MAX_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY_S = 0.5
RETRY_MAX_DELAY_S = 4.0
RETRY_JITTER_S = 0.25

# Covers 3 attempts of VISION_TIMEOUT_S plus backoff.
PIPELINE_TIME_BUDGET_S = 35.0
PIPELINE_ANALYSIS_WORKERS = 16

MAX_IMAGE_BYTES = 20 * 1024 * 1024
MIN_IMAGE_WIDTH = 400
MIN_IMAGE_HEIGHT = 300
SUPPORTED_FORMATS = ("jpeg", "png", "webp")


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def get_vision_base_url() -> str:
    return os.getenv("VISION_BASE_URL", VISION_BASE_URL).rstrip("/")


def get_vision_api_key() -> Optional[str]:
    return os.getenv("VISION_API_KEY") or None


def get_vision_timeout_s() -> float:
    return _get_float("VISION_TIMEOUT_S", VISION_TIMEOUT_S)


def get_max_concurrent_calls() -> int:
    return max(1, _get_int("VISION_MAX_CONCURRENT_CALLS", VISION_MAX_CONCURRENT_CALLS))


def get_time_budget_s() -> float:
    return _get_float("MODERATION_TIME_BUDGET_S", PIPELINE_TIME_BUDGET_S)


def _read_json(path: str) -> dict:
    p = Path(path)
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {p}")
    return data


def load_policy(path: Optional[str] = None) -> PolicyConfig:
    """
    Load the moderation policy from `path`, else $MODERATION_POLICY_PATH, else built-in defaults.

    Invalid files raise (pydantic.ValidationError / ValueError); this runs once at startup.
    """
    path = path or os.getenv("MODERATION_POLICY_PATH")
    if not path:
        logger.warning("No moderation policy configured; using built-in defaults with an empty blocklist")
        return PolicyConfig()
    policy = PolicyConfig.model_validate(_read_json(path))
    logger.info("Loaded moderation policy %s from %s (%d blocklist terms)", policy.version, path, len(policy.blocklist))
    return policy


def load_watermark_spec(path: Optional[str] = None) -> WatermarkSpec:
    path = path or os.getenv("WATERMARK_SPEC_PATH")
    if not path:
        return WatermarkSpec()
    return WatermarkSpec.model_validate(_read_json(path))
