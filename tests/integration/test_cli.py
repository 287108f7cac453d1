#!/usr/bin/env python3
"""
Command Line Integration Tests

Runs carpso.main.main() with logging setup patched out and stdout captured.
"""

import io
import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from carpso import main as cli


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        patcher = patch("carpso.main.setup_logging")
        self.setup_logging = patcher.start()
        self.addCleanup(patcher.stop)

    def run_main(self, *argv):
        with patch("sys.stdout", new_callable=io.StringIO) as stdout:
            exit_code = cli.main(list(argv))
        return exit_code, stdout.getvalue()

    def test_estimate(self):
        exit_code, output = self.run_main(
            "estimate", "--lot", "lot_B", "--minutes", "90", "--at", "2024-01-01T10:00:00"
        )

        self.assertEqual(exit_code, 0)
        result = json.loads(output)
        self.assertEqual(result["data"]["cost"], "15.00")
        self.assertEqual(result["data"]["applied_rule"], "Airport Daily Flat Rate")
        self.setup_logging.assert_called_once()

    def test_estimate_with_premium_tier(self):
        exit_code, output = self.run_main(
            "estimate", "--lot", "lot_D", "--minutes", "60", "--tier", "Premium", "--at", "2024-01-01T10:00:00"
        )

        self.assertEqual(exit_code, 0)
        self.assertEqual(json.loads(output)["data"]["applied_rule"], "Standard Rate with Premium User Discount (5%)")

    def test_invalid_estimate_exits_non_zero(self):
        exit_code, output = self.run_main("estimate", "--lot", "lot_B", "--minutes", "0")

        self.assertEqual(exit_code, 1)
        self.assertEqual(json.loads(output)["status"], 422)

    def test_rules(self):
        exit_code, output = self.run_main("rules")

        lines = output.strip().splitlines()
        self.assertEqual(exit_code, 0)
        self.assertEqual(len(lines), 9)
        self.assertIn("lot_C_event", lines[0])
        self.assertIn("pass", lines[-1])

    def test_rules_with_config_file(self):
        tmp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp_dir)
        path = os.path.join(tmp_dir, "carpso.yaml")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write("broker_type:\nseed_defaults: true\n")

        exit_code, output = self.run_main("--config", path, "rules")

        self.assertEqual(exit_code, 0)
        self.assertIn("global_base", output)

    def test_demo(self):
        exit_code, output = self.run_main("demo")

        self.assertEqual(exit_code, 0)
        self.assertIn("head user_alice", output)
        self.assertIn(": confirmed,", output)
        self.assertIn("Next in queue for A-12: user_bob", output)
        self.assertIn("['user_alice', 'user_bob']", output)
        self.assertIn("record_id,user_id,lot_id,spot_id", output)

    def test_unknown_subcommand(self):
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                cli.main(["launch"])


if __name__ == '__main__':
    unittest.main()
