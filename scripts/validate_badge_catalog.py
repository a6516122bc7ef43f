"""Validate a badge catalog and print its unlock thresholds and rewards."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from badges import BadgeCatalog, BadgeCatalogError
from engines.badge_evaluator import reward_for_rarity
from engines.level import total_xp_for_level


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--catalog",
        type=str,
        default=None,
        help="Path to a JSON badge catalog (default: the built-in catalog)",
    )
    parser.add_argument(
        "--levels",
        type=int,
        default=10,
        help="Number of level thresholds to print (default: 10)",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON report",
    )
    return parser


def build_report(catalog: BadgeCatalog, levels: int) -> Dict[str, object]:
    badges: List[Dict[str, object]] = []
    for badge in catalog:
        badges.append(
            {
                "id": badge.id,
                "rarity": badge.rarity,
                "stat_kind": badge.requirement.stat_kind,
                "threshold": badge.requirement.threshold,
                "reward_xp": reward_for_rarity(badge.rarity),
            }
        )
    return {
        "badge_count": len(catalog),
        "total_reward_xp": sum(int(entry["reward_xp"]) for entry in badges),
        "badges": badges,
        "level_thresholds": {str(level): total_xp_for_level(level) for level in range(1, levels + 1)},
    }


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.levels < 1:
        print("--levels must be at least 1", file=sys.stderr)
        return 2

    try:
        catalog = BadgeCatalog.from_path(args.catalog) if args.catalog else BadgeCatalog()
    except (BadgeCatalogError, FileNotFoundError) as exc:
        print(f"Invalid badge catalog: {exc}", file=sys.stderr)
        return 1

    report = build_report(catalog, args.levels)
    for entry in report["badges"]:
        print(
            f"{entry['id']}: {entry['stat_kind']} >= {entry['threshold']} "
            f"({entry['rarity']}, +{entry['reward_xp']} XP)"
        )
    print(f"Badges: {report['badge_count']}, reward XP available: {report['total_reward_xp']}")

    payload = json.dumps(report, indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
