from __future__ import annotations

from pathlib import Path
import tempfile
import unittest

from core.fileops import copy_file, materialize


def _failing(source: Path, destination: Path) -> None:
    raise OSError("cross-device link")


class MaterializeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.source = self.root / "libllama.so"
        self.source.write_bytes(b"ELF")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_first_strategy_wins(self) -> None:
        destination = self.root / "out.so"
        result = materialize(self.source, destination)
        self.assertTrue(result.ok)
        self.assertEqual(result.strategy, "hard link")
        self.assertEqual(destination.read_bytes(), b"ELF")

    def test_falls_back_to_next_strategy(self) -> None:
        destination = self.root / "copied.so"
        result = materialize(
            self.source,
            destination,
            strategies=(("hard link", _failing), ("copy", copy_file)),
        )
        self.assertTrue(result.ok)
        self.assertEqual(result.strategy, "copy")
        self.assertEqual(result.errors, ["hard link: cross-device link"])
        self.assertEqual(destination.read_bytes(), b"ELF")

    def test_existing_destination_is_skipped(self) -> None:
        destination = self.root / "existing.so"
        destination.write_bytes(b"old")
        result = materialize(self.source, destination)
        self.assertTrue(result.skipped)
        self.assertTrue(result.ok)
        self.assertIsNone(result.strategy)
        self.assertEqual(destination.read_bytes(), b"old")

    def test_all_strategies_failing_is_reported(self) -> None:
        destination = self.root / "never.so"
        result = materialize(self.source, destination, strategies=(("a", _failing), ("b", _failing)))
        self.assertFalse(result.ok)
        self.assertFalse(destination.exists())
        self.assertIn("a: cross-device link", result.describe_errors())
        self.assertIn("b: cross-device link", result.describe_errors())


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
