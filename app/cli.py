import argparse
import json
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from app.config import Settings
from app.logging_config import setup_logging
from app.pipeline import Pipeline


def slugify_for_filename(text: str, max_len: int = 80) -> str:
    raw = "".join(ch.lower() if ch.isalnum() else "-" for ch in text.strip())
    compact = "-".join(part for part in raw.split("-") if part)
    if not compact:
        compact = "research-topic"
    return compact[:max_len].strip("-") or "research-topic"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Discovery Engine: topic -> ranked research questions")
    parser.add_argument("topic", help="Research seed topic")
    parser.add_argument("--top-n", type=int, default=None, help="Questions to keep in the report")
    parser.add_argument(
        "--state-file",
        default=None,
        help="Persist trace artifacts to this JSON file (default: in-memory)",
    )
    parser.add_argument(
        "--output",
        default="",
        help="Path for the report JSON (default: reports/report_<topic>_<ts>.json)",
    )
    parser.add_argument("--quiet", action="store_true", help="Only log warnings and errors")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    overrides = {}
    if args.top_n is not None:
        overrides["top_n"] = max(1, args.top_n)
    if args.state_file is not None:
        overrides["state_file"] = args.state_file
    if args.quiet:
        overrides["log_level"] = "WARNING"
    settings = replace(settings, **overrides)
    setup_logging(settings)

    pipeline = Pipeline(settings, concurrent=False)
    trace_id, report = pipeline.run(args.topic)
    if report is None:
        status = pipeline.get_status(trace_id)
        error = status.error.error if status and status.error else "unknown error"
        print(f"[report] no report for trace {trace_id}: {error}", file=sys.stderr)
        return 1

    payload = report.model_dump(mode="json", by_alias=True)
    if args.output:
        report_path = Path(args.output)
    else:
        ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        report_path = Path("reports") / f"report_{slugify_for_filename(args.topic)}_{ts}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    print(f"[report] saved: {report_path}")
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
