from __future__ import annotations

import argparse
import json
from collections import Counter
from pathlib import Path

from image_moderation.audit import read_audit_log


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize verdicts and fired rules from an audit.jsonl file.")
    parser.add_argument("--audit", required=True, type=str, help="Path to audit.jsonl")
    parser.add_argument("--property-id", type=str, default=None, help="Only count records for this property.")
    args = parser.parse_args()

    audit_path = Path(args.audit)
    if not audit_path.exists():
        raise FileNotFoundError(f"audit log not found: {audit_path}")

    verdicts: Counter = Counter()
    rules: Counter = Counter()
    late = 0
    for rec in read_audit_log(str(audit_path)):
        if args.property_id and rec.property_id != args.property_id:
            continue
        if rec.event == "late_analysis":
            late += 1
            continue
        verdicts[rec.verdict] += 1
        rules.update(rec.triggered_rules)

    print(
        json.dumps(
            {
                "verdicts": dict(verdicts),
                "rules": dict(rules.most_common()),
                "late_analysis_records": late,
            },
            indent=2,
            ensure_ascii=False,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
