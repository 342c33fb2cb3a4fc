"""Linear orchestration: resolve, plan, build, collect and export."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Tuple
import os

from core.command_runner import CommandError, CommandResult, CommandRunner
from core.config_loader import find_config_file
from core.fileops import DEFAULT_STRATEGIES, MaterializeResult, MaterializeStrategy

from .artifacts import ArtifactCollector, ArtifactSet
from .bindings import HeaderSearchPlan, plan_header_search
from .console import Console
from .errors import ExternalBuildError, MissingEnvironmentError, StagingError
from .features import Feature, FeatureSet
from .layout import layout_for
from .linkplan import LinkPlan, LinkPlanExporter, RebuildTriggers
from .namespace import NamespaceRewriter, NamespaceSpec
from .planner import ConfigPlan, ConfigPlanner
from .reuse import ReusePackage
from .settings import (
    BuildSettings,
    CONFIG_VARIABLE,
    FileConfig,
    PROFILE_VARIABLE,
    SHARED_LIBS_VARIABLE,
    STATIC_CRT_VARIABLE,
)
from .targets import OsVariant, TargetDescriptor, resolve_target
from .toolchains import ANDROID_API_VARIABLES, ANDROID_NDK_VARIABLES, Toolchain, ToolchainLocator

SOURCE_SUBDIR = "llama.cpp"
BUILD_SUBDIR = "build"
MSVC_PROBE_SUBDIR = "msvc-probe"
CONFIG_STEM = "llamabuild"
BUILD_SCRIPT = "build.rs"
WATCHED_SOURCE_SUBDIRS = ("src", "ggml/src", "common")


@dataclass(slots=True)
class BuildOptions:
    target: str
    out_dir: Path
    source_dir: Path
    target_dir: Path | None = None
    features: List[str] = field(default_factory=list)
    config_path: Path | None = None
    dry_run: bool = False
    probe_msvc: bool = True

    @classmethod
    def resolve(
        cls,
        env: Mapping[str, str],
        *,
        target: str | None = None,
        out_dir: Path | None = None,
        source_dir: Path | None = None,
        target_dir: Path | None = None,
        features: Sequence[str] = (),
        config_path: Path | None = None,
        dry_run: bool = False,
        probe_msvc: bool = True,
    ) -> "BuildOptions":
        """Fill unset options from the variables cargo exports to build scripts."""

        resolved_target = target or env.get("TARGET")
        if not resolved_target:
            raise MissingEnvironmentError(("TARGET",), "Pass --target or run as a cargo build script.")

        out_value = out_dir or (Path(env["OUT_DIR"]) if env.get("OUT_DIR") else None)
        if out_value is None:
            raise MissingEnvironmentError(("OUT_DIR",), "Pass --out-dir or run as a cargo build script.")

        if source_dir is None:
            manifest_dir = env.get("CARGO_MANIFEST_DIR")
            if not manifest_dir:
                raise MissingEnvironmentError(
                    ("CARGO_MANIFEST_DIR",),
                    "Pass --source-dir pointing at the llama.cpp checkout.",
                )
            source_dir = Path(manifest_dir) / SOURCE_SUBDIR

        if config_path is None and env.get(CONFIG_VARIABLE):
            config_path = Path(env[CONFIG_VARIABLE])
        if config_path is None and env.get("CARGO_MANIFEST_DIR"):
            config_path = find_config_file(Path(env["CARGO_MANIFEST_DIR"]), CONFIG_STEM)

        return cls(
            target=resolved_target,
            out_dir=Path(out_value),
            source_dir=Path(source_dir),
            target_dir=target_dir,
            features=list(features),
            config_path=config_path,
            dry_run=dry_run,
            probe_msvc=probe_msvc,
        )


@dataclass(slots=True)
class BuildStep:
    description: str
    command: Sequence[str]
    cwd: Path
    env: Dict[str, str]


@dataclass(slots=True)
class OrchestrationPlan:
    target: TargetDescriptor
    features: FeatureSet
    settings: BuildSettings
    toolchain: Toolchain
    namespace: NamespaceSpec
    reuse: ReusePackage | None
    config: ConfigPlan
    headers: HeaderSearchPlan
    source_dir: Path
    out_dir: Path
    build_dir: Path
    target_dir: Path | None
    steps: List[BuildStep]
    config_path: Path | None = None

    def to_mapping(self) -> Dict[str, Any]:
        android = self.toolchain.android
        return {
            "target": {
                "triple": self.target.triple,
                "variant": self.target.variant.value,
                "arch": self.target.arch.value,
                "native": self.target.native_requested,
            },
            "features": self.features.names(),
            "namespace": self.namespace.base_name,
            "toolchain": {
                "jobs": self.toolchain.jobs,
                "android_ndk": str(android.ndk_root) if android else None,
                "android_platform": android.platform if android else None,
                "msvc_include": [str(path) for path in self.toolchain.msvc.include_paths]
                if self.toolchain.msvc
                else [],
            },
            "reuse_root": str(self.reuse.root) if self.reuse and self.reuse.root else None,
            "source_dir": str(self.source_dir),
            "out_dir": str(self.out_dir),
            "build_dir": str(self.build_dir),
            "target_dir": str(self.target_dir) if self.target_dir else None,
            "config_file": str(self.config_path) if self.config_path else None,
            "config": self.config.to_mapping(),
            "bindings": self.headers.to_mapping(),
            "steps": [
                {
                    "description": step.description,
                    "command": list(step.command),
                    "cwd": str(step.cwd),
                }
                for step in self.steps
            ],
        }


@dataclass(slots=True)
class BuildResult:
    plan: OrchestrationPlan
    results: List[CommandResult] = field(default_factory=list)
    artifacts: ArtifactSet | None = None
    link_plan: LinkPlan | None = None
    staged: List[MaterializeResult] = field(default_factory=list)

    def to_mapping(self) -> Dict[str, Any]:
        data = self.plan.to_mapping()
        data["link"] = self.link_plan.to_mapping() if self.link_plan else None
        data["staged"] = [str(result.destination) for result in self.staged if not result.skipped]
        return data


def watched_source_paths(source_dir: Path) -> List[Path]:
    """Entries of the llama.cpp checkout whose change invalidates the build.

    Everything below ``src``, ``ggml/src`` and ``common`` plus any ``CMake*``
    entry is watched. Hidden entries are skipped and never descended into.
    """

    roots = [source_dir / subdir for subdir in WATCHED_SOURCE_SUBDIRS]
    watched: List[Path] = []
    for current, dirnames, filenames in os.walk(source_dir):
        dirnames[:] = sorted(name for name in dirnames if not name.startswith("."))
        base = Path(current)
        for name in [*dirnames, *sorted(filenames)]:
            if name.startswith("."):
                continue
            path = base / name
            if name.startswith("CMake") or any(path == root or root in path.parents for root in roots):
                watched.append(path)
    return watched


def default_target_dir(out_dir: Path) -> Path | None:
    """``<target>/<profile>`` for a cargo ``OUT_DIR`` of ``<target>/<profile>/build/<pkg>/out``."""

    parents = out_dir.parents
    if len(parents) < 3:
        return None
    return parents[2]


class BuildOrchestrator:
    def __init__(
        self,
        *,
        command_runner: CommandRunner,
        env: Mapping[str, str] | None = None,
        console: Console | None = None,
        locator: ToolchainLocator | None = None,
        strategies: Sequence[Tuple[str, MaterializeStrategy]] = DEFAULT_STRATEGIES,
    ) -> None:
        self._runner = command_runner
        self._env = dict(os.environ) if env is None else env
        self._console = console or Console()
        self._locator = locator or ToolchainLocator(env=self._env, runner=command_runner, console=self._console)
        self._strategies = strategies
        self._planner = ConfigPlanner()

    def plan(self, options: BuildOptions) -> OrchestrationPlan:
        # Classification first: nothing touches the filesystem for an unsupported triple.
        target = resolve_target(options.target)

        file_config = FileConfig.load(options.config_path) if options.config_path else FileConfig()
        features = (
            FeatureSet.from_environment(self._env)
            .union(FeatureSet.from_names(file_config.features))
            .union(FeatureSet.from_names(options.features))
        )
        target = replace(target, native_requested=features.has(Feature.NATIVE))
        namespace = NamespaceSpec.from_features(features)
        settings = BuildSettings.from_environment(self._env, file_config=file_config)
        reuse = ReusePackage.from_environment(self._env) if features.reuse_external else None

        self._console.debug(f"TARGET: {target.triple} ({target.variant.value}, {target.arch.value})")
        self._console.debug(f"FEATURES: {', '.join(features.names()) or '<none>'}")
        if file_config.path is not None:
            self._console.debug(f"CONFIG: {file_config.path}")

        toolchain = self._locator.locate(
            target,
            scratch_dir=options.out_dir / MSVC_PROBE_SUBDIR,
            probe_msvc=options.probe_msvc and not options.dry_run,
        )
        config = self._planner.plan(
            target=target,
            features=features,
            settings=settings,
            toolchain=toolchain,
            out_dir=options.out_dir,
            reuse=reuse,
            namespace=namespace,
        )
        for warning in config.warnings:
            self._console.warning(warning)

        headers = plan_header_search(
            target=target,
            features=features,
            settings=settings,
            toolchain=toolchain,
            source_dir=options.source_dir,
            reuse=reuse,
        )

        build_dir = options.out_dir / BUILD_SUBDIR
        steps = self._cmake_steps(source_dir=options.source_dir, build_dir=build_dir, config=config)
        return OrchestrationPlan(
            target=target,
            features=features,
            settings=settings,
            toolchain=toolchain,
            namespace=namespace,
            reuse=reuse,
            config=config,
            headers=headers,
            source_dir=options.source_dir,
            out_dir=options.out_dir,
            build_dir=build_dir,
            target_dir=options.target_dir or default_target_dir(options.out_dir),
            steps=steps,
            config_path=file_config.path,
        )

    def run(self, plan: OrchestrationPlan, *, dry_run: bool = False) -> BuildResult:
        result = BuildResult(plan=plan)

        if plan.features.reuse_external and not dry_run:
            self._prepare_reuse_package(plan)

        if not dry_run:
            plan.build_dir.mkdir(parents=True, exist_ok=True)
        for step in plan.steps:
            self._console.info(f"{step.description}: {self._runner.format_command(step.command)}")
            try:
                outcome = self._runner.run(
                    step.command,
                    cwd=step.cwd,
                    env=step.env,
                    note=step.description,
                    stream=True,
                )
            except (CommandError, OSError) as exc:
                raise ExternalBuildError(f"{step.description} failed: {exc}") from exc
            result.results.append(outcome)

        if dry_run:
            return result

        collector = ArtifactCollector(
            plan.target,
            shared=plan.config.shared,
            namespace=plan.namespace,
            reuse_mode=plan.features.reuse_external,
            console=self._console,
        )
        result.artifacts = collector.collect(plan.out_dir)

        exporter = LinkPlanExporter(
            target=plan.target,
            features=plan.features,
            settings=plan.settings,
            config_plan=plan.config,
            locator=self._locator,
            namespace=plan.namespace,
            reuse=plan.reuse,
            console=self._console,
            strategies=self._strategies,
        )
        result.link_plan = exporter.export(out_dir=plan.out_dir, build_dir=plan.build_dir, artifacts=result.artifacts)
        result.link_plan.rerun = self._rebuild_triggers(plan)

        if plan.config.shared and result.link_plan.runtime_assets:
            if plan.target_dir is None:
                raise StagingError(
                    f"Cannot derive the target directory from {plan.out_dir}; pass --target-dir"
                )
            result.staged = exporter.stage_runtime_assets(result.link_plan.runtime_assets, plan.target_dir)
        return result

    def _rebuild_triggers(self, plan: OrchestrationPlan) -> RebuildTriggers:
        triggers = RebuildTriggers()
        triggers.watch_env(PROFILE_VARIABLE, SHARED_LIBS_VARIABLE, STATIC_CRT_VARIABLE, CONFIG_VARIABLE)
        if plan.target.variant is OsVariant.ANDROID:
            triggers.watch_env(*ANDROID_NDK_VARIABLES, *ANDROID_API_VARIABLES)
        if plan.features.has(Feature.CUDA) and not plan.config.shared:
            triggers.watch_env("CUDA_PATH")

        # Relative entries resolve against the invoking package.
        triggers.watch_paths([Path(BUILD_SCRIPT), *(Path(header) for header in plan.headers.headers)])
        if plan.config_path is not None:
            triggers.watch_paths([plan.config_path])
        triggers.watch_paths(watched_source_paths(plan.source_dir))
        self._console.debug(
            f"Watching {len(triggers.paths)} paths and {len(triggers.env_vars)} variables for rebuilds"
        )
        return triggers

    def _prepare_reuse_package(self, plan: OrchestrationPlan) -> None:
        if plan.reuse is None or plan.namespace.is_default:
            return
        rewriter = NamespaceRewriter(
            plan.namespace,
            layout_for(plan.target.variant),
            console=self._console,
            strategies=self._strategies,
        )
        script = plan.reuse.config_script
        if script is not None:
            rewriter.patch_config_script(script)
        if plan.reuse.lib_dir is not None and "GGML_LIBRARY" in plan.config.definitions:
            rewriter.create_fallback_aliases(plan.reuse.lib_dir)

    def _cmake_steps(self, *, source_dir: Path, build_dir: Path, config: ConfigPlan) -> List[BuildStep]:
        steps: List[BuildStep] = []
        environment = dict(config.environment)

        if not self._cmake_is_configured(build_dir):
            args: List[str] = ["cmake", *config.cmake_arguments()]
            args.extend(["-B", str(build_dir), "-S", str(source_dir)])
            steps.append(
                BuildStep(
                    description="Configure llama.cpp",
                    command=args,
                    cwd=build_dir,
                    env=environment,
                )
            )

        cmd = [
            "cmake",
            "--build",
            str(build_dir),
            "--target",
            "install",
            "--config",
            config.profile,
            "--parallel",
            str(config.build_jobs),
        ]
        if config.verbose:
            cmd.append("--verbose")
        steps.append(
            BuildStep(
                description="Build and install llama.cpp",
                command=cmd,
                cwd=build_dir,
                env=environment,
            )
        )
        return steps

    def _cmake_is_configured(self, build_dir: Path) -> bool:
        cache_file = build_dir / "CMakeCache.txt"
        return cache_file.exists()


__all__ = [
    "BuildOptions",
    "BuildOrchestrator",
    "BuildResult",
    "BuildStep",
    "OrchestrationPlan",
    "default_target_dir",
    "watched_source_paths",
]
