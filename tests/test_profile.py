from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from clawbot.profile import ProfileError, ensure_profile_directories, load_profile


def _write_profile(root: Path, name: str, body: str) -> None:
    profiles = root / "config" / "profiles"
    profiles.mkdir(parents=True, exist_ok=True)
    (profiles / f"{name}.yaml").write_text(body, encoding="utf-8")


class ProfileTests(unittest.TestCase):
    def test_defaults_applied(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            _write_profile(root, "bot", f"name: bot\ndisplay_name: Bot\ndata_dir: {root / 'data'}\n")
            profile = load_profile("bot", repo_root=root)
            self.assertEqual(profile.max_history, 40)
            self.assertEqual(profile.quota.daily_limit, 1000)
            self.assertEqual(profile.quota.ample_above, 200)
            self.assertEqual(profile.quota.low_above, 50)
            self.assertEqual(profile.persistence_interval_seconds, 30)
            self.assertEqual(profile.health_port, 3000)
            self.assertEqual(profile.llm_model, "gemini-2.0-flash-lite")
            self.assertEqual(profile.paths.state_path, root / "data" / "state.json")

            ensure_profile_directories(profile)
            self.assertTrue(profile.paths.secrets_dir.is_dir())

    def test_overrides_and_clamping(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            _write_profile(
                root,
                "bot",
                "\n".join(
                    [
                        "name: bot",
                        "display_name: Bot",
                        "max_history: 50",
                        "llm_timeout_seconds: 500",
                        "quota:",
                        "  daily_limit: 300",
                        "  ample_above: 100",
                        "  low_above: 10",
                        "persistence:",
                        "  interval_seconds: 5",
                        f"  state_file: {root / 'elsewhere.json'}",
                    ]
                )
                + "\n",
            )
            profile = load_profile("bot", repo_root=root)
            self.assertEqual(profile.max_history, 50)
            self.assertEqual(profile.llm_timeout_seconds, 120)
            self.assertEqual(profile.quota.daily_limit, 300)
            self.assertEqual(profile.persistence_interval_seconds, 5)
            self.assertEqual(profile.paths.state_path, root / "elsewhere.json")

    def test_shipped_default_profile_loads(self) -> None:
        repo_root = Path(__file__).resolve().parent.parent
        profile = load_profile("default", repo_root=repo_root)
        self.assertEqual(profile.name, "default")
        self.assertEqual(profile.max_history, 40)

    def test_invalid_profiles_raise(self) -> None:
        cases = {
            "missing": "name: bot\n",
            "mismatch": "name: other\ndisplay_name: Bot\n",
            "bad_history": "name: bot\ndisplay_name: Bot\nmax_history: 0\n",
            "bad_quota": "name: bot\ndisplay_name: Bot\nquota:\n  ample_above: 10\n  low_above: 20\n",
        }
        for label, body in cases.items():
            with self.subTest(case=label), tempfile.TemporaryDirectory() as tmpdir:
                root = Path(tmpdir)
                _write_profile(root, "bot", body)
                with self.assertRaises(ProfileError):
                    load_profile("bot", repo_root=root)

    def test_missing_profile_raises(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(ProfileError):
                load_profile("ghost", repo_root=Path(tmpdir))


if __name__ == "__main__":
    unittest.main()
