from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from chains import chain_summary, plan_active_flag_repairs, repair_chain_active_flags  # noqa: E402
from database import SessionLocal, init_database  # noqa: E402


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Check every roster chain so that only its highest published version is active, "
            "and fix the chains that disagree."
        )
    )
    parser.add_argument("--dry-run", action="store_true", help="Report the chains that need fixing without writing.")
    parser.add_argument("--verbose", action="store_true", help="Log every repaired chain.")
    return parser.parse_args(argv)


def run(dry_run: bool = False, session_factory=SessionLocal) -> int:
    with session_factory() as session:
        plans = plan_active_flag_repairs(session) if dry_run else repair_chain_active_flags(session)
        for plan in plans:
            target = plan["active_roster_id"]
            label = f"roster {target} (v{plan['version_number']})" if target else "no active version"
            print(f"[repair] {plan['chain_id']}: {label}; touched {plan['fixed_roster_ids']}")
            if not dry_run:
                summary = chain_summary(session, plan["chain_id"])
                print(f"[repair]   now {summary['total_versions']} versions, active v{summary['active_version_number'] or '-'}")
    verb = "need repair" if dry_run else "repaired"
    print(f"[repair] {len(plans)} chain(s) {verb}.")
    return len(plans)


def main(argv=None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    init_database()
    run(dry_run=args.dry_run)


if __name__ == "__main__":
    main()
