from __future__ import annotations

import argparse
import logging
import time
from collections import Counter
from pathlib import Path

from dotenv import load_dotenv
from tqdm import tqdm

from image_moderation.audit import JsonlAuditLog
from image_moderation.config import load_policy, load_watermark_spec
from image_moderation.contracts import ModerationContext
from image_moderation.io import load_asset, safe_id_from_relpath, write_bytes
from image_moderation.messages import public_reason
from image_moderation.pipeline import ModerationPipeline
from image_moderation.vision_client import VisionAnalysisClient

_EXT_BY_FORMAT = {"jpeg": ".jpg", "png": ".png", "webp": ".webp"}


def _iter_images(input_dir: Path):
    exts = {".jpg", ".jpeg", ".png", ".webp"}
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in exts:
            yield p


def main() -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    parser = argparse.ArgumentParser(description="Moderate and watermark property photos.")
    parser.add_argument("--input", required=True, type=str, help="Directory containing the uploaded photos.")
    parser.add_argument("--output", required=True, type=str, help="Output directory (creates published/ + review/).")
    parser.add_argument("--property-id", required=True, type=str)
    parser.add_argument("--uploader-id", required=True, type=str)
    parser.add_argument("--listing-type", type=str, default=None)
    parser.add_argument("--policy", type=str, default=None, help="Policy JSON (default: $MODERATION_POLICY_PATH).")
    parser.add_argument("--watermark", type=str, default=None, help="Watermark JSON (default: $WATERMARK_SPEC_PATH).")
    parser.add_argument("--workers", type=int, default=4, help="Images moderated concurrently.")
    args = parser.parse_args()

    input_dir = Path(args.input)
    output_dir = Path(args.output)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    images = list(_iter_images(input_dir))
    if not images:
        print(f"No images found under {input_dir}")
        return 0

    ctx = ModerationContext(property_id=args.property_id, uploader_id=args.uploader_id, listing_type=args.listing_type)
    items = [(load_asset(str(p), image_id=safe_id_from_relpath(p.relative_to(input_dir).as_posix())), ctx) for p in images]

    stats: Counter = Counter()
    t0 = time.perf_counter()
    with ModerationPipeline(
        analyzer=VisionAnalysisClient(),
        policy=load_policy(args.policy),
        watermark_spec=load_watermark_spec(args.watermark),
        audit_log=JsonlAuditLog(str(output_dir / "audit.jsonl")),
    ) as pipeline:
        batch = max(1, args.workers)
        with tqdm(total=len(items), desc="Moderating", unit="img") as bar:
            for start in range(0, len(items), batch):
                chunk = items[start : start + batch]
                for (asset, _), result in zip(chunk, pipeline.submit_many(chunk, max_workers=batch)):
                    stats[result.final_state] += 1
                    if result.watermarked_image is not None:
                        ext = _EXT_BY_FORMAT[result.watermarked_image.format]
                        write_bytes(str(output_dir / "published" / f"{asset.image_id}{ext}"), result.watermarked_image.data)
                    elif result.final_state == "needs_review":
                        # Held for admin review; never published from here.
                        ext = _EXT_BY_FORMAT.get(asset.format, "")
                        write_bytes(str(output_dir / "review" / f"{asset.image_id}{ext}"), asset.data)
                    else:
                        tqdm.write(f"{asset.image_id}: {public_reason(result.decision)}")
                    bar.update(1)

    t1 = time.perf_counter()
    total = sum(stats.values())
    print(
        "Done.\n"
        f"- total: {total}\n"
        f"- published: {stats['published']}\n"
        f"- needs_review: {stats['needs_review']}\n"
        f"- rejected: {stats['rejected']} ({(stats['rejected'] / max(1, total)) * 100:.2f}%)\n"
        f"- elapsed_s: {t1 - t0:.2f}\n"
        f"- output: {output_dir.resolve()}\n"
        f"- audit: {(output_dir / 'audit.jsonl').resolve()}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
