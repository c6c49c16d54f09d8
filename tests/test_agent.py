from __future__ import annotations

import logging
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from clawbot.agent import LOG_FILE_NAME, attach_file_logging, build_parser, load_api_key


class AgentTests(unittest.TestCase):
    def test_parser_defaults(self) -> None:
        args = build_parser().parse_args([])
        self.assertEqual(args.profile, "default")
        self.assertEqual(args.log_level, "INFO")

    def test_api_key_prefers_secret_file_over_environment(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            secrets = Path(tmpdir)
            with patch.dict(os.environ, {"GEMINI_API_KEY": "from-env"}):
                self.assertEqual(load_api_key(secrets), "from-env")
                (secrets / "gemini_api_key.txt").write_text("from-file\n", encoding="utf-8")
                self.assertEqual(load_api_key(secrets), "from-file")

    def test_api_key_missing(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with patch.dict(os.environ, {"GEMINI_API_KEY": ""}):
                self.assertIsNone(load_api_key(Path(tmpdir)))

    def test_file_logging_writes_into_logs_dir(self) -> None:
        root = logging.getLogger()
        previous_level = root.level
        with tempfile.TemporaryDirectory() as tmpdir:
            handler = attach_file_logging(Path(tmpdir))
            root.setLevel(logging.INFO)
            try:
                logging.getLogger("clawbot.agent").info("state restored")
            finally:
                root.removeHandler(handler)
                handler.close()
                root.setLevel(previous_level)
            log_text = (Path(tmpdir) / LOG_FILE_NAME).read_text(encoding="utf-8")
        self.assertIn("clawbot.agent - INFO - state restored", log_text)


if __name__ == "__main__":
    unittest.main()
