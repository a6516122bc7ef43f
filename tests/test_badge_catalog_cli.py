import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts import validate_badge_catalog


def test_validator_passes_with_builtin_catalog(capsys):
    exit_code = validate_badge_catalog.main(["--levels", "5"])
    captured = capsys.readouterr()
    assert exit_code == 0
    lines = captured.out.splitlines()
    assert lines[0] == "first_lesson: lessons_completed >= 1 (common, +50 XP)"
    assert any(line == "polymath: subjects_completed >= 5 (legendary, +500 XP)" for line in lines)
    report = json.loads(captured.out[captured.out.index("{"):])
    assert report["level_thresholds"] == {"1": 0, "2": 100, "3": 400, "4": 900, "5": 1600}
    assert report["badge_count"] == len(report["badges"])


def test_validator_writes_report(tmp_path, capsys):
    catalog = tmp_path / "badges.json"
    catalog.write_text(
        json.dumps(
            [
                {"id": "a", "name": "A", "rarity": "epic", "requirement": {"stat_kind": "xp_earned", "threshold": 10}},
                {"id": "b", "name": "B", "requirement": {"stat_kind": "quizzes_passed", "threshold": 2}},
            ]
        ),
        encoding="utf-8",
    )
    output = tmp_path / "report.json"

    exit_code = validate_badge_catalog.main(["--catalog", str(catalog), "--output", str(output), "--levels", "2"])
    captured = capsys.readouterr()

    assert exit_code == 0
    assert "Badges: 2, reward XP available: 250" in captured.out
    report = json.loads(output.read_text(encoding="utf-8"))
    assert [entry["reward_xp"] for entry in report["badges"]] == [200, 50]


def test_validator_fails_for_invalid_catalog(tmp_path, capsys):
    catalog = tmp_path / "badges.json"
    catalog.write_text(
        json.dumps([{"id": "x", "name": "X", "requirement": {"stat_kind": "minutes", "threshold": 1}}]),
        encoding="utf-8",
    )
    exit_code = validate_badge_catalog.main(["--catalog", str(catalog)])
    captured = capsys.readouterr()
    assert exit_code == 1
    assert "unknown stat kind" in captured.err


def test_validator_fails_for_missing_file(tmp_path, capsys):
    exit_code = validate_badge_catalog.main(["--catalog", str(tmp_path / "missing.json")])
    assert exit_code == 1
    assert "not found" in capsys.readouterr().err
