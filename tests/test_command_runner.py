from __future__ import annotations

from pathlib import Path
import os
import unittest
from unittest.mock import patch

from core.command_runner import CommandError, RecordingCommandRunner, SubprocessCommandRunner


class RecordingCommandRunnerTests(unittest.TestCase):
    def test_records_and_formats_commands(self) -> None:
        runner = RecordingCommandRunner()
        runner.run(["cmake", "--build", "out dir"], cwd=Path("/work"), env={"A": "1"}, note="Build")

        recorded = runner.commands
        self.assertEqual(recorded[0].command, ["cmake", "--build", "out dir"])
        self.assertEqual(recorded[0].env, {"A": "1"})
        self.assertEqual(
            list(runner.iter_formatted()),
            ["[dry-run] Build (cwd=/work) cmake --build 'out dir'"],
        )

    def test_scripted_response_by_executable_name(self) -> None:
        runner = RecordingCommandRunner()
        runner.respond("clang", stdout="libraries: =/usr/lib/clang/17\n")
        result = runner.run(["/usr/bin/clang", "--print-search-dirs"])
        self.assertEqual(result.stdout, "libraries: =/usr/lib/clang/17\n")

    def test_scripted_failure_raises_when_checked(self) -> None:
        runner = RecordingCommandRunner()
        runner.respond("cl", returncode=2, stderr="boom")
        with self.assertRaises(CommandError) as ctx:
            runner.run(["cl", "/c", "dummy.c"])
        self.assertEqual(ctx.exception.result.returncode, 2)

        result = runner.run(["cl", "/c", "dummy.c"], check=False)
        self.assertFalse(result.ok)


class SubprocessCommandRunnerTests(unittest.TestCase):
    def test_env_is_layered_on_a_copy(self) -> None:
        captured = {}

        def fake_run(command, **kwargs):
            captured.update(kwargs)

            class _Completed:
                returncode = 0
                stdout = "ok"
                stderr = ""

            return _Completed()

        with patch.dict(os.environ, {"BASE_VAR": "base"}, clear=False):
            with patch("core.command_runner.subprocess.run", side_effect=fake_run):
                result = SubprocessCommandRunner().run(["cmake", "--version"], env={"CMAKE_BUILD_PARALLEL_LEVEL": "8"})
            self.assertNotIn("CMAKE_BUILD_PARALLEL_LEVEL", os.environ)

        self.assertEqual(result.stdout, "ok")
        self.assertEqual(captured["env"]["CMAKE_BUILD_PARALLEL_LEVEL"], "8")
        self.assertEqual(captured["env"]["BASE_VAR"], "base")

    def test_failure_raises_command_error(self) -> None:
        with patch("core.command_runner.subprocess.run") as run:
            run.return_value.returncode = 1
            run.return_value.stdout = ""
            run.return_value.stderr = "bad"
            with self.assertRaises(CommandError) as ctx:
                SubprocessCommandRunner().run(["cmake"])
        self.assertEqual(ctx.exception.result.stderr, "bad")
        self.assertIn("cmake exited with status 1", str(ctx.exception))
        self.assertIn("stderr: bad", str(ctx.exception))

    def test_streamed_commands_are_not_captured(self) -> None:
        with patch("core.command_runner.subprocess.run") as run:
            run.return_value.returncode = 3
            with self.assertRaises(CommandError) as ctx:
                SubprocessCommandRunner().run(["cmake", "--build", "out"], stream=True)

        self.assertNotIn("capture_output", run.call_args.kwargs)
        self.assertNotIn("env", run.call_args.kwargs)
        self.assertTrue(ctx.exception.result.streamed)
        self.assertEqual(ctx.exception.result.stdout, "")
        self.assertIn("See the tool output above.", str(ctx.exception))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
