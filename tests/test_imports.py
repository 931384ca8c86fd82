"""
Tests that every entry module imports cleanly on its own.

Each import runs in a fresh interpreter so module caching from other test
modules can't hide an import cycle.
"""

import subprocess
import sys
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent

ENTRY_MODULES = [
    "main",
    "core",
    "core.engine",
    "core.errors",
    "storage",
    "storage.store",
    "storage.migration",
    "blocking.bridge",
    "blocking.unlock",
    "tracking.ledger",
    "tracking.session",
    "instance_lock",
]


class TestFreshImports(unittest.TestCase):

    def test_each_module_imports_first(self):
        for module in ENTRY_MODULES:
            with self.subTest(module=module):
                completed = subprocess.run(
                    [sys.executable, "-c", f"import {module}"],
                    cwd=str(PROJECT_ROOT),
                    capture_output=True,
                    text=True,
                    timeout=60,
                )
                self.assertEqual(completed.returncode, 0, completed.stderr)

    def test_cli_help_runs(self):
        completed = subprocess.run(
            [sys.executable, "main.py", "--help"],
            cwd=str(PROJECT_ROOT),
            capture_output=True,
            text=True,
            timeout=60,
        )
        self.assertEqual(completed.returncode, 0, completed.stderr)
        self.assertIn("status", completed.stdout)


if __name__ == "__main__":
    unittest.main()
