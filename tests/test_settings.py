from __future__ import annotations

import json
import sys
import tempfile
import unittest
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from collaborators import AllowAllPermissionGate, StaticPermissionGate  # noqa: E402
from settings import (  # noqa: E402
    DEFAULT_SETTINGS,
    allowed_actions,
    build_default_settings,
    load_settings,
    save_settings,
    week_start_day,
)


class SettingsLoadingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.path = Path(self.temp_dir.name) / "roster_settings.json"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _write(self, payload) -> None:
        self.path.write_text(payload if isinstance(payload, str) else json.dumps(payload), encoding="utf-8")

    def test_missing_file_gives_defaults(self) -> None:
        settings = load_settings(self.path)
        self.assertEqual(settings["matching"]["commit_threshold"], 85)
        self.assertEqual(settings["limits"]["max_batch_records"], 500)
        self.assertEqual(settings["permissions"], {"*": ["*"]})

    def test_partial_override_keeps_other_defaults(self) -> None:
        self._write({"matching": {"commit_threshold": 90}, "week": {"start_day": 6}})
        settings = load_settings(self.path)
        self.assertEqual(settings["matching"]["commit_threshold"], 90)
        self.assertEqual(settings["matching"]["suggestion_floor"], 40)
        self.assertEqual(week_start_day(settings), 6)
        self.assertEqual(settings["shifts"]["default_break_minutes"], 30)

    def test_values_are_clamped(self) -> None:
        self._write(
            {
                "matching": {"commit_threshold": 250, "suggestion_floor": "abc", "honorifics": ["Dr.", " MR "]},
                "week": {"start_day": 9},
                "limits": {"max_batch_records": 0},
            }
        )
        settings = load_settings(self.path)
        self.assertEqual(settings["matching"]["commit_threshold"], 100)
        self.assertEqual(settings["matching"]["suggestion_floor"], 40)
        self.assertEqual(settings["matching"]["honorifics"], ["dr", "mr"])
        self.assertEqual(settings["week"]["start_day"], 6)
        self.assertEqual(settings["limits"]["max_batch_records"], 1)

    def test_floor_never_exceeds_commit_threshold(self) -> None:
        self._write({"matching": {"commit_threshold": 30, "suggestion_floor": 60}})
        settings = load_settings(self.path)
        self.assertEqual(settings["matching"]["suggestion_floor"], 30)

    def test_permission_grants_replace_defaults(self) -> None:
        self._write({"permissions": {"manager": ["create", "edit", "publish"]}})
        settings = load_settings(self.path)
        self.assertEqual(settings["permissions"], {"manager": ["create", "edit", "publish"]})

    def test_unreadable_file_falls_back(self) -> None:
        self._write("{not json")
        with self.assertLogs("settings", level="WARNING"):
            settings = load_settings(self.path)
        self.assertEqual(settings, build_default_settings())

    def test_save_then_load(self) -> None:
        settings = build_default_settings()
        settings["shifts"]["default_break_minutes"] = 15
        save_settings(settings, self.path)
        self.assertEqual(load_settings(self.path)["shifts"]["default_break_minutes"], 15)

    def test_defaults_are_not_mutated(self) -> None:
        settings = build_default_settings()
        settings["matching"]["commit_threshold"] = 1
        self.assertEqual(DEFAULT_SETTINGS["matching"]["commit_threshold"], 85)


class PermissionGateTests(unittest.TestCase):
    def test_allowed_actions_unions_wildcard(self) -> None:
        grants = {"*": ["edit"], "owner": ["publish"]}
        self.assertEqual(allowed_actions(grants, "owner"), {"edit", "publish"})
        self.assertEqual(allowed_actions(grants, "guest"), {"edit"})

    def test_static_gate(self) -> None:
        gate = StaticPermissionGate({"owner": ["*"], "clerk": ["rosters:edit"]})
        self.assertTrue(gate.can_perform("owner", "rosters", "delete"))
        self.assertTrue(gate.can_perform("clerk", "rosters", "edit"))
        self.assertFalse(gate.can_perform("clerk", "rosters", "publish"))
        self.assertFalse(gate.can_perform("stranger", "rosters", "edit"))

    def test_gate_from_default_settings_allows_everyone(self) -> None:
        gate = StaticPermissionGate.from_settings(build_default_settings())
        self.assertTrue(gate.can_perform("anyone", "rosters", "publish"))
        self.assertTrue(AllowAllPermissionGate().can_perform("anyone", "rosters", "delete"))


if __name__ == "__main__":
    unittest.main()
