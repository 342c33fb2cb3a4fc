from __future__ import annotations

from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
import io
import json
import os
import tempfile
import unittest
from unittest.mock import patch

from llamabuild import cli

LINUX = "x86_64-unknown-linux-gnu"


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.out_dir = self.root / "out"
        self.source_dir = self.root / "llama.cpp"
        self.source_dir.mkdir()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _run(self, argv, env=None):
        stdout = io.StringIO()
        stderr = io.StringIO()
        with patch.dict(os.environ, env or {}, clear=True):
            with redirect_stdout(stdout), redirect_stderr(stderr):
                code = cli.main(argv)
        return code, stdout.getvalue(), stderr.getvalue()

    def _paths(self):
        return ["--out-dir", str(self.out_dir), "--source-dir", str(self.source_dir)]

    def test_plan_prints_json(self) -> None:
        code, output, _ = self._run(["plan", "--target", LINUX, *self._paths(), "-F", "openmp,mtmd"])
        self.assertEqual(code, 0)

        data = json.loads(output)
        self.assertEqual(data["target"]["variant"], "linux")
        self.assertEqual(data["features"], ["mtmd", "openmp"])
        self.assertEqual(data["config"]["definitions"]["GGML_OPENMP"]["value"], "ON")
        self.assertEqual(data["bindings"]["headers"], ["wrapper.h", "wrapper_mtmd.h"])
        self.assertEqual(
            [step["description"] for step in data["steps"]],
            ["Configure llama.cpp", "Build and install llama.cpp"],
        )
        self.assertFalse(self.out_dir.exists())

    def test_plan_reads_cargo_environment(self) -> None:
        env = {
            "TARGET": "aarch64-apple-darwin",
            "OUT_DIR": str(self.out_dir),
            "CARGO_MANIFEST_DIR": str(self.root),
            "CARGO_FEATURE_DYNAMIC_LINK": "1",
        }
        code, output, _ = self._run(["plan"], env=env)
        self.assertEqual(code, 0)
        data = json.loads(output)
        self.assertEqual(data["target"]["triple"], "aarch64-apple-darwin")
        self.assertTrue(data["config"]["shared"])
        self.assertEqual(data["source_dir"], str(self.source_dir))

    def test_build_dry_run_outputs_formatted_commands(self) -> None:
        code, output, _ = self._run(["build", "--dry-run", "--target", LINUX, *self._paths()])
        self.assertEqual(code, 0)

        lines = output.splitlines()
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[0].startswith("[dry-run] Configure llama.cpp"))
        self.assertIn(f"(cwd={self.out_dir / 'build'})", lines[0])
        self.assertIn("cmake --build", lines[1])
        self.assertFalse((self.out_dir / "build").exists())

    def test_unknown_feature_is_reported(self) -> None:
        code, output, errors = self._run(["plan", "--target", LINUX, *self._paths(), "-F", "opencl"])
        self.assertEqual(code, 2)
        self.assertEqual(output, "")
        self.assertIn("Error: Unknown feature 'opencl'", errors)

    def test_missing_target_is_reported(self) -> None:
        code, _, errors = self._run(["plan", *self._paths()])
        self.assertEqual(code, 2)
        self.assertIn("TARGET", errors)

    def test_unsupported_target_is_reported(self) -> None:
        code, _, errors = self._run(["plan", "--target", "wasm32-unknown-unknown", *self._paths()])
        self.assertEqual(code, 2)
        self.assertIn("Unsupported target platform 'wasm32-unknown-unknown'", errors)

    def test_verbose_enables_debug_output(self) -> None:
        code, output, _ = self._run(["build", "-n", "--verbose", "--target", LINUX, *self._paths()])
        self.assertEqual(code, 0)
        self.assertIn("[DEBUG] TARGET: x86_64-unknown-linux-gnu", output)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
