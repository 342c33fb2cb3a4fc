"""Link directives for the downstream linker and staging of runtime libraries."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from core.fileops import DEFAULT_STRATEGIES, MaterializeResult, MaterializeStrategy, materialize

from .artifacts import ArtifactSet, LinkKind
from .console import Console
from .errors import StagingError
from .features import Feature, FeatureSet
from .layout import layout_for
from .namespace import NamespaceSpec
from .planner import ConfigPlan
from .reuse import ReusePackage
from .settings import BuildSettings
from .targets import OsVariant, TargetDescriptor
from .toolchains import ToolchainLocator

DEFAULT_DIRECTIVE_PREFIX = "cargo:"
APPLE_FRAMEWORKS = ("Foundation", "Metal", "MetalKit", "Accelerate")


@dataclass(frozen=True, slots=True)
class SearchPath:
    path: Path
    kind: str = ""

    def directive_value(self) -> str:
        return f"{self.kind}={self.path}" if self.kind else str(self.path)


@dataclass(frozen=True, slots=True)
class LinkLibrary:
    name: str
    kind: LinkKind = LinkKind.DEFAULT

    def directive_value(self) -> str:
        return f"{self.kind.value}={self.name}" if self.kind.value else self.name


@dataclass(slots=True)
class RebuildTriggers:
    """Inputs whose change must make the invoking build step run again."""

    env_vars: List[str] = field(default_factory=list)
    paths: List[Path] = field(default_factory=list)

    def watch_env(self, *names: str) -> None:
        for name in names:
            if name not in self.env_vars:
                self.env_vars.append(name)

    def watch_paths(self, paths: Iterable[Path]) -> None:
        seen = set(self.paths)
        for path in paths:
            if path not in seen:
                seen.add(path)
                self.paths.append(path)


@dataclass(slots=True)
class LinkPlan:
    search_paths: List[SearchPath] = field(default_factory=list)
    libraries: List[LinkLibrary] = field(default_factory=list)
    system_libraries: List[LinkLibrary] = field(default_factory=list)
    runtime_assets: List[Path] = field(default_factory=list)
    rerun: RebuildTriggers = field(default_factory=RebuildTriggers)

    def add_search_path(self, path: Path, kind: str = "") -> None:
        if any(existing.path == path for existing in self.search_paths):
            return
        self.search_paths.append(SearchPath(path=path, kind=kind))

    def add_library(self, name: str, kind: LinkKind = LinkKind.DEFAULT) -> None:
        self.libraries.append(LinkLibrary(name=name, kind=kind))

    def add_system_library(self, name: str, kind: LinkKind = LinkKind.DEFAULT) -> None:
        self.system_libraries.append(LinkLibrary(name=name, kind=kind))

    def library_names(self) -> List[str]:
        return [library.name for library in [*self.libraries, *self.system_libraries]]

    def directives(self, prefix: str = DEFAULT_DIRECTIVE_PREFIX) -> List[str]:
        lines = [f"{prefix}rerun-if-changed={path}" for path in self.rerun.paths]
        lines.extend(f"{prefix}rerun-if-env-changed={name}" for name in self.rerun.env_vars)
        lines.extend(f"{prefix}rustc-link-search={entry.directive_value()}" for entry in self.search_paths)
        lines.extend(f"{prefix}rustc-link-lib={library.directive_value()}" for library in self.libraries)
        lines.extend(f"{prefix}rustc-link-lib={library.directive_value()}" for library in self.system_libraries)
        return lines

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "search_paths": [{"path": str(entry.path), "kind": entry.kind} for entry in self.search_paths],
            "libraries": [{"name": library.name, "kind": library.kind.value} for library in self.libraries],
            "system_libraries": [
                {"name": library.name, "kind": library.kind.value} for library in self.system_libraries
            ],
            "runtime_assets": [str(path) for path in self.runtime_assets],
            "rerun": {
                "env": list(self.rerun.env_vars),
                "paths": [str(path) for path in self.rerun.paths],
            },
        }


class LinkPlanExporter:
    def __init__(
        self,
        *,
        target: TargetDescriptor,
        features: FeatureSet,
        settings: BuildSettings,
        config_plan: ConfigPlan,
        locator: ToolchainLocator,
        namespace: NamespaceSpec | None = None,
        reuse: ReusePackage | None = None,
        console: Console | None = None,
        strategies: Sequence[Tuple[str, MaterializeStrategy]] = DEFAULT_STRATEGIES,
    ) -> None:
        self.target = target
        self.features = features
        self.settings = settings
        self.config_plan = config_plan
        self.namespace = namespace or NamespaceSpec()
        self.reuse = reuse
        self.layout = layout_for(target.variant)
        self._locator = locator
        self._console = console or Console()
        self._strategies = strategies

    def export(self, *, out_dir: Path, build_dir: Path, artifacts: ArtifactSet) -> LinkPlan:
        plan = LinkPlan()
        plan.add_search_path(out_dir / "lib")
        plan.add_search_path(out_dir / "lib64")
        plan.add_search_path(build_dir)

        if self.features.has(Feature.CUDA) and not self.config_plan.shared:
            self._add_static_cuda(plan)

        for artifact in artifacts.link_targets:
            plan.add_library(artifact.name, artifact.kind)

        if self.features.has(Feature.OPENMP) and self.target.is_gnu:
            plan.add_library("gomp")
        self._add_gpu_sdk_links(plan)
        self._add_system_libraries(plan)

        plan.runtime_assets = list(artifacts.runtime_assets)
        if self.features.reuse_external:
            self._add_reuse_outputs(plan)
        return plan

    def _add_static_cuda(self, plan: LinkPlan) -> None:
        for lib_dir in self._locator.cuda_library_dirs(self.target):
            plan.add_search_path(lib_dir, "native")
        with_driver = not self.features.has(Feature.CUDA_NO_VMM)
        if self.target.is_windows:
            for name in ("cudart", "cublas", "cublasLt"):
                plan.add_library(name)
            if with_driver:
                plan.add_library("cuda")
            return
        for name in ("cudart_static", "cublas_static", "cublasLt_static"):
            plan.add_library(name, LinkKind.STATIC)
        if with_driver:
            plan.add_library("cuda")
        plan.add_library("culibos", LinkKind.STATIC)

    def _add_gpu_sdk_links(self, plan: LinkPlan) -> None:
        if not self.features.has(Feature.VULKAN):
            return
        sdk = self.config_plan.gpu_sdks.get("vulkan")
        if self.target.is_windows:
            if sdk is not None:
                plan.add_search_path(sdk / "Lib", "native")
            plan.add_library("vulkan-1")
        elif self.target.variant is OsVariant.LINUX:
            if sdk is not None:
                plan.add_search_path(sdk / "lib", "native")
            plan.add_library("vulkan")

    def _add_system_libraries(self, plan: LinkPlan) -> None:
        variant = self.target.variant
        if variant is OsVariant.WINDOWS_MSVC:
            plan.add_system_library("advapi32")
            if self.settings.enclosing_debug:
                plan.add_system_library("msvcrtd", LinkKind.DYLIB)
        elif variant is OsVariant.LINUX:
            plan.add_system_library("stdc++", LinkKind.DYLIB)
        elif variant.is_apple:
            for framework in APPLE_FRAMEWORKS:
                plan.add_system_library(framework, LinkKind.FRAMEWORK)
            plan.add_system_library("c++")
            if variant is OsVariant.MACOS:
                runtime_path = self._locator.macos_runtime_search_path()
                if runtime_path is not None:
                    plan.add_system_library("clang_rt.osx")
                    plan.add_search_path(runtime_path)
        elif variant is OsVariant.ANDROID:
            plan.add_system_library("log")
            plan.add_system_library("android")

    def _add_reuse_outputs(self, plan: LinkPlan) -> None:
        lib_dir = self.reuse.lib_dir if self.reuse is not None else None
        if lib_dir is None:
            self._console.warning("Reuse library directory is unknown; relying on the providing package's link paths")
            return
        plan.add_search_path(lib_dir, "native")

        plan.runtime_assets = [
            asset
            for asset in plan.runtime_assets
            if not self.namespace.owns(self.layout.runtime_name(asset.name))
        ]
        if not self.config_plan.shared:
            return
        if not lib_dir.is_dir():
            self._console.warning(f"Reuse library directory does not exist: {lib_dir}")
            return

        stems = [self.namespace.base_name]
        stems.extend(self.namespace.component_name(component) for component in self.namespace.components)
        listed = {asset.name for asset in plan.runtime_assets}
        added = 0
        for stem in stems:
            candidate = lib_dir / self.layout.runtime_filename(stem)
            if candidate.name in listed or not candidate.is_file():
                continue
            plan.runtime_assets.append(candidate)
            listed.add(candidate.name)
            added += 1
        self._console.info(f"Added {added} runtime libraries from the reused package")

    def stage_runtime_assets(self, assets: Sequence[Path], target_dir: Path) -> List[MaterializeResult]:
        """Place each runtime library next to the binaries, examples and test executables."""

        deps_dir = target_dir / "deps"
        try:
            deps_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StagingError(f"Cannot create {deps_dir}: {exc}") from exc

        destinations = [target_dir]
        examples_dir = target_dir / "examples"
        if examples_dir.is_dir():
            destinations.append(examples_dir)
        destinations.append(deps_dir)

        results: List[MaterializeResult] = []
        for asset in assets:
            for destination_dir in destinations:
                destination = destination_dir / asset.name
                result = materialize(asset, destination, strategies=self._strategies)
                if not result.ok:
                    raise StagingError(
                        f"Could not stage {asset.name} into {destination_dir}: {result.describe_errors()}"
                    )
                if result.skipped:
                    self._console.debug(f"{destination} already exists")
                else:
                    self._console.debug(f"Staged {asset.name} into {destination_dir} ({result.strategy})")
                results.append(result)
        return results


__all__ = [
    "DEFAULT_DIRECTIVE_PREFIX",
    "LinkLibrary",
    "LinkPlan",
    "LinkPlanExporter",
    "RebuildTriggers",
    "SearchPath",
]
