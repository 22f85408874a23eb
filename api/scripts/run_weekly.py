import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from redi_match.services.errors import MatchingError
from redi_match.services.finalizer import activate_weekly_cycle, run_weekly_matching


def _parse_now(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the weekly match drop or activate this week's cycle")
    parser.add_argument("mode", choices=["match", "activate"], nargs="?", default="match")
    parser.add_argument("--manual", action="store_true", help="operator run; skips the same-day check")
    parser.add_argument("--dry-run", action="store_true", help="compute matches against a copy of stored records, writing nothing")
    parser.add_argument("--cycle-id", type=str, default="", help="cycle to activate (defaults to this week's)")
    parser.add_argument("--now", type=str, default="", help="ISO timestamp to run as")
    parser.add_argument("--log-level", type=str, default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    now = _parse_now(args.now)
    trigger = "manual" if args.manual else "scheduled"

    if args.mode == "activate":
        try:
            cycle = activate_weekly_cycle(now=now, trigger=trigger, cycle_id=args.cycle_id.strip() or None)
        except MatchingError as exc:
            print(f"Activation refused: {exc}")
            return 1
        if cycle is None:
            print("No cycle to activate")
            return 1
        print(f"Activated {cycle.cycle_id}: {cycle.prompt}")
        return 0

    summary = run_weekly_matching(now=now, trigger=trigger, dry_run=args.dry_run)
    print(json.dumps(summary.to_dict(), indent=2, default=str))
    return 1 if summary.status == "aborted" else 0


if __name__ == "__main__":
    sys.exit(main())
