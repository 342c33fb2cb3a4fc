from __future__ import annotations

from pathlib import Path
from typing import Sequence
import json
import tempfile
import textwrap
import unittest

from core.command_runner import CommandResult, RecordingCommandRunner
from core.fileops import copy_file
from llamabuild.build import BuildOptions, BuildOrchestrator, default_target_dir, watched_source_paths
from llamabuild.console import SilentConsole
from llamabuild.errors import EmptyArtifactSetError, ExternalBuildError, MissingEnvironmentError
from llamabuild.toolchains import ToolchainLocator

LINUX = "x86_64-unknown-linux-gnu"


class BuildOrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.manifest_dir = self.root / "crate"
        self.source_dir = self.manifest_dir / "llama.cpp"
        self.source_dir.mkdir(parents=True)
        self.target_dir = self.root / "target" / "debug"
        self.out_dir = self.target_dir / "build" / "llama-sys-0123" / "out"
        self.out_dir.mkdir(parents=True)
        self.build_dir = self.out_dir / "build"
        self.runner = RecordingCommandRunner()
        self.env = {
            "TARGET": LINUX,
            "OUT_DIR": str(self.out_dir),
            "CARGO_MANIFEST_DIR": str(self.manifest_dir),
        }

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _orchestrator(self, **env: str) -> BuildOrchestrator:
        self.env.update(env)
        locator = ToolchainLocator(
            env=self.env,
            runner=self.runner,
            console=SilentConsole(),
            cuda_default_roots=(),
        )
        return BuildOrchestrator(
            command_runner=self.runner,
            env=self.env,
            console=SilentConsole(),
            locator=locator,
            strategies=(("copy", copy_file),),
        )

    def _install_on_build(self, *relative_paths: str) -> None:
        def responder(command: Sequence[str]) -> CommandResult:
            if "--build" in command:
                for relative in relative_paths:
                    path = self.out_dir / relative
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.write_bytes(b"")
            return CommandResult(command=command, returncode=0, stdout="", stderr="")

        self.runner.respond("cmake", responder=responder)

    def test_plan_generates_cmake_commands(self) -> None:
        orchestrator = self._orchestrator(CARGO_FEATURE_OPENMP="1")
        plan = orchestrator.plan(BuildOptions.resolve(self.env))

        self.assertEqual(plan.features.names(), ["openmp"])
        self.assertEqual(plan.build_dir, self.build_dir)
        self.assertEqual(plan.target_dir, self.target_dir)
        self.assertEqual([step.description for step in plan.steps], ["Configure llama.cpp", "Build and install llama.cpp"])

        configure_cmd = list(plan.steps[0].command)
        configure_str = " ".join(configure_cmd)
        self.assertEqual(configure_cmd[0], "cmake")
        self.assertEqual(configure_cmd[-4:], ["-B", str(self.build_dir), "-S", str(self.source_dir)])
        self.assertIn("GGML_OPENMP:BOOL=ON", configure_str)
        self.assertIn("LLAMA_BUILD_TESTS:BOOL=OFF", configure_str)
        self.assertIn(f"CMAKE_INSTALL_PREFIX:PATH={self.out_dir}", configure_str)

        build_cmd = list(plan.steps[1].command)
        self.assertEqual(build_cmd[:3], ["cmake", "--build", str(self.build_dir)])
        self.assertEqual(build_cmd[3:7], ["--target", "install", "--config", "Release"])
        self.assertEqual(build_cmd[7], "--parallel")
        self.assertNotIn("--verbose", build_cmd)
        self.assertEqual(plan.steps[1].env["CMAKE_BUILD_PARALLEL_LEVEL"], build_cmd[8])

        json.dumps(plan.to_mapping())

    def test_skips_configure_when_already_configured(self) -> None:
        self.build_dir.mkdir()
        (self.build_dir / "CMakeCache.txt").write_text("# configured")

        plan = self._orchestrator(CMAKE_VERBOSE="1").plan(BuildOptions.resolve(self.env))
        self.assertEqual([step.description for step in plan.steps], ["Build and install llama.cpp"])
        self.assertEqual(plan.steps[0].command[-1], "--verbose")

    def test_config_file_in_manifest_directory(self) -> None:
        (self.manifest_dir / "llamabuild.toml").write_text(
            textwrap.dedent(
                """
                [build]
                profile = "RelWithDebInfo"
                features = ["mtmd"]

                [definitions]
                GGML_NATIVE = false
                """
            )
        )
        plan = self._orchestrator().plan(BuildOptions.resolve(self.env, features=["openmp"]))

        self.assertEqual(plan.features.names(), ["mtmd", "openmp"])
        self.assertEqual(plan.config.profile, "RelWithDebInfo")
        self.assertEqual(plan.headers.headers, ["wrapper.h", "wrapper_mtmd.h"])
        self.assertIn("GGML_NATIVE:BOOL=OFF", " ".join(plan.steps[0].command))

    def test_dry_run_records_without_side_effects(self) -> None:
        orchestrator = self._orchestrator()
        plan = orchestrator.plan(BuildOptions.resolve(self.env, dry_run=True))
        result = orchestrator.run(plan, dry_run=True)

        self.assertEqual(len(self.runner.commands), 2)
        self.assertTrue(all(record.stream for record in self.runner.commands))
        self.assertEqual(self.runner.commands[0].note, "Configure llama.cpp")
        self.assertFalse(self.build_dir.exists())
        self.assertIsNone(result.artifacts)
        self.assertIsNone(result.link_plan)

    def test_failed_build_step(self) -> None:
        self.runner.respond("cmake", returncode=1, stderr="CMake Error")
        orchestrator = self._orchestrator()
        plan = orchestrator.plan(BuildOptions.resolve(self.env))
        with self.assertRaises(ExternalBuildError) as ctx:
            orchestrator.run(plan)
        self.assertIn("Configure llama.cpp failed", str(ctx.exception))

    def test_build_without_outputs(self) -> None:
        orchestrator = self._orchestrator()
        plan = orchestrator.plan(BuildOptions.resolve(self.env))
        with self.assertRaises(EmptyArtifactSetError):
            orchestrator.run(plan)

    def test_static_run_exports_link_plan(self) -> None:
        self._install_on_build("lib/libllama.a", "lib/libggml.a", "lib/libggml-base.a")
        orchestrator = self._orchestrator()
        result = orchestrator.run(orchestrator.plan(BuildOptions.resolve(self.env)))

        self.assertTrue(self.build_dir.is_dir())
        directives = result.link_plan.directives()
        self.assertIn("cargo:rustc-link-lib=static=llama", directives)
        self.assertIn("cargo:rustc-link-lib=static=ggml-base", directives)
        self.assertEqual(directives[-1], "cargo:rustc-link-lib=dylib=stdc++")
        self.assertEqual(result.staged, [])
        self.assertEqual(json.loads(json.dumps(result.to_mapping()))["link"]["runtime_assets"], [])

    def test_run_reports_rebuild_triggers(self) -> None:
        (self.source_dir / "CMakeLists.txt").write_text("project(llama.cpp)")
        (self.source_dir / "src").mkdir()
        (self.source_dir / "src" / "llama.cpp").write_text("")
        (self.manifest_dir / "llamabuild.toml").write_text("[build]\nprofile = \"Release\"\n")
        self._install_on_build("lib/libllama.a")

        orchestrator = self._orchestrator()
        result = orchestrator.run(orchestrator.plan(BuildOptions.resolve(self.env)))
        rerun = result.link_plan.rerun

        self.assertEqual(
            rerun.env_vars,
            ["LLAMA_LIB_PROFILE", "LLAMA_BUILD_SHARED_LIBS", "LLAMA_STATIC_CRT", "LLAMABUILD_CONFIG"],
        )
        self.assertEqual(rerun.paths[:3], [Path("build.rs"), Path("wrapper.h"), self.manifest_dir / "llamabuild.toml"])
        self.assertIn(self.source_dir / "CMakeLists.txt", rerun.paths)
        self.assertIn(self.source_dir / "src" / "llama.cpp", rerun.paths)

        directives = result.link_plan.directives()
        self.assertEqual(directives[0], "cargo:rerun-if-changed=build.rs")
        self.assertIn("cargo:rerun-if-env-changed=LLAMA_STATIC_CRT", directives)
        self.assertEqual(directives[-1], "cargo:rustc-link-lib=dylib=stdc++")

    def test_shared_run_stages_runtime_libraries(self) -> None:
        self._install_on_build("lib/libllama.so", "lib/libggml.so")
        orchestrator = self._orchestrator(CARGO_FEATURE_DYNAMIC_LINK="1")
        result = orchestrator.run(orchestrator.plan(BuildOptions.resolve(self.env)))

        self.assertIn("cargo:rustc-link-lib=dylib=llama", result.link_plan.directives())
        for directory in (self.target_dir, self.target_dir / "deps"):
            self.assertTrue((directory / "libllama.so").is_file())
            self.assertTrue((directory / "libggml.so").is_file())
        self.assertEqual(len(result.to_mapping()["staged"]), 4)

    def test_reuse_run_patches_provider_package(self) -> None:
        prefix = self.root / "ggml-prefix"
        lib_dir = prefix / "lib"
        cmake_dir = lib_dir / "cmake" / "ggml"
        cmake_dir.mkdir(parents=True)
        (prefix / "include").mkdir()
        script = cmake_dir / "ggml-config.cmake"
        script.write_text("find_library(GGML_LIBRARY ggml\nfind_library(GGML_BASE_LIBRARY ggml-base\n")
        for name in ("libggml_llama.so", "libggml_llama-base.so", "libggml_llama-cpu.so"):
            (lib_dir / name).write_bytes(b"")
        self._install_on_build("lib/libllama.a", "lib/libggml.a")

        orchestrator = self._orchestrator(
            CARGO_FEATURE_USE_SHARED_GGML="1",
            CARGO_FEATURE_NAMESPACE_LLAMA="1",
            DEP_GGML_ROOT=str(prefix),
        )
        plan = orchestrator.plan(BuildOptions.resolve(self.env))
        self.assertEqual(plan.config.value("GGML_LIBRARY"), lib_dir / "libggml_llama.so")
        self.assertIn(f"-I{prefix / 'include'}", plan.headers.clang_args)

        result = orchestrator.run(plan)
        self.assertIn("find_library(GGML_LIBRARY ggml_llama\n", script.read_text())
        self.assertTrue((lib_dir / "libggml-base.so").is_file())
        self.assertTrue((lib_dir / "libggml-cpu.so").is_file())
        self.assertEqual(result.artifacts.names(), ["llama"])
        self.assertIn(f"cargo:rustc-link-search=native={lib_dir}", result.link_plan.directives())

    def test_reuse_dry_run_leaves_provider_untouched(self) -> None:
        prefix = self.root / "ggml-prefix"
        cmake_dir = prefix / "lib" / "cmake" / "ggml"
        cmake_dir.mkdir(parents=True)
        (prefix / "include").mkdir()
        script = cmake_dir / "ggml-config.cmake"
        original = "find_library(GGML_LIBRARY ggml\n"
        script.write_text(original)

        orchestrator = self._orchestrator(
            CARGO_FEATURE_USE_SHARED_GGML="1",
            CARGO_FEATURE_NAMESPACE_WHISPER="1",
            DEP_GGML_ROOT=str(prefix),
        )
        orchestrator.run(orchestrator.plan(BuildOptions.resolve(self.env, dry_run=True)), dry_run=True)
        self.assertEqual(script.read_text(), original)


class WatchedSourcePathsTests(unittest.TestCase):
    def test_watches_sources_and_cmake_entries(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            source = Path(temp_dir)
            for relative in (
                "CMakeLists.txt",
                "common/common.h",
                "examples/main.cpp",
                "ggml/CMakeLists.txt",
                "ggml/include/ggml.h",
                "ggml/src/ggml.c",
                "src/llama.cpp",
                "src/.clang-format",
                ".git/CMakeLists.txt",
            ):
                path = source / relative
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text("")

            watched = [path.relative_to(source).as_posix() for path in watched_source_paths(source)]

        self.assertEqual(
            watched,
            [
                "common",
                "src",
                "CMakeLists.txt",
                "common/common.h",
                "ggml/src",
                "ggml/CMakeLists.txt",
                "ggml/src/ggml.c",
                "src/llama.cpp",
            ],
        )

    def test_missing_checkout_watches_nothing(self) -> None:
        self.assertEqual(watched_source_paths(Path("/nonexistent/llama.cpp")), [])


class BuildOptionsTests(unittest.TestCase):
    def test_requires_cargo_variables(self) -> None:
        with self.assertRaises(MissingEnvironmentError) as ctx:
            BuildOptions.resolve({})
        self.assertIn("TARGET", str(ctx.exception))
        with self.assertRaises(MissingEnvironmentError) as ctx:
            BuildOptions.resolve({"TARGET": LINUX})
        self.assertIn("OUT_DIR", str(ctx.exception))
        with self.assertRaises(MissingEnvironmentError) as ctx:
            BuildOptions.resolve({"TARGET": LINUX, "OUT_DIR": "/out"})
        self.assertIn("CARGO_MANIFEST_DIR", str(ctx.exception))

    def test_explicit_arguments_win(self) -> None:
        options = BuildOptions.resolve(
            {"TARGET": LINUX, "OUT_DIR": "/out", "LLAMABUILD_CONFIG": "/etc/llamabuild.yaml"},
            target="aarch64-linux-android",
            source_dir=Path("/src/llama.cpp"),
            features=["cuda"],
        )
        self.assertEqual(options.target, "aarch64-linux-android")
        self.assertEqual(options.out_dir, Path("/out"))
        self.assertEqual(options.source_dir, Path("/src/llama.cpp"))
        self.assertEqual(options.config_path, Path("/etc/llamabuild.yaml"))
        self.assertEqual(options.features, ["cuda"])

    def test_default_target_dir(self) -> None:
        self.assertEqual(
            default_target_dir(Path("/work/target/release/build/llama-sys-1/out")),
            Path("/work/target/release"),
        )
        self.assertIsNone(default_target_dir(Path("out")))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
