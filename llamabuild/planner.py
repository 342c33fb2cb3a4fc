"""Derivation of the CMake configuration plan from target, features and settings.

The planner is pure: it reads the resolved inputs and the filesystem (to decide
whether optional reuse-package paths exist) but never writes anything. The
resulting :class:`ConfigPlan` is turned into ``cmake -D`` arguments by
:meth:`ConfigPlan.cmake_arguments`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

from core.config_loader import coerce_bool

from .errors import MissingEnvironmentError, ToolchainNotFoundError, UnsupportedConfigurationError
from .features import Feature, FeatureSet
from .layout import layout_for
from .namespace import DEFAULT_BASE_NAME, NamespaceSpec
from .reuse import ReusePackage
from .settings import BuildSettings
from .targets import Architecture, OsVariant, TargetDescriptor
from .toolchains import Toolchain

DefinitionValue = Union[str, bool, int, float, Path]

MSVC_RELEASE_PROFILES = frozenset({"Release", "RelWithDebInfo", "MinSizeRel"})
MSVC_RELEASE_FLAGS = ("/O2", "/Ob2", "/DNDEBUG", "/GS")
ALWAYS_DISABLED = (
    "LLAMA_BUILD_TESTS",
    "LLAMA_BUILD_EXAMPLES",
    "LLAMA_BUILD_SERVER",
    "LLAMA_BUILD_TOOLS",
    "LLAMA_CURL",
)
PARALLEL_LEVEL_VARIABLE = "CMAKE_BUILD_PARALLEL_LEVEL"
VULKAN_SDK_URL = "https://vulkan.lunarg.com/sdk/home"
CUDA_TOOLKIT_URL = "https://developer.nvidia.com/cuda-downloads"


class Precedence(IntEnum):
    """Where a definition came from; higher values win."""

    DEFAULT = 0
    FEATURE = 1
    CONFIG = 2
    ENVIRONMENT = 3


class Language(str, Enum):
    C = "c"
    CXX = "cxx"


_FLAG_VARIABLES = {
    Language.C: "CMAKE_C_FLAGS",
    Language.CXX: "CMAKE_CXX_FLAGS",
}
_LINKER_FLAG_VARIABLES = ("CMAKE_EXE_LINKER_FLAGS", "CMAKE_SHARED_LINKER_FLAGS", "CMAKE_MODULE_LINKER_FLAGS")


@dataclass(frozen=True, slots=True)
class Definition:
    name: str
    value: DefinitionValue
    precedence: Precedence


def format_cmake_value(value: Any) -> str:
    if isinstance(value, bool):
        return "ON" if value else "OFF"
    return str(value)


def cmake_definition_type(value: Any) -> str:
    if isinstance(value, bool):
        return "BOOL"
    if isinstance(value, Path):
        return "FILEPATH" if value.suffix else "PATH"
    return "STRING"


def cmake_definition_flag(name: str, value: Any) -> str:
    return f"{name}:{cmake_definition_type(value)}={format_cmake_value(value)}"


@dataclass(slots=True)
class ConfigPlan:
    definitions: Dict[str, Definition] = field(default_factory=dict)
    compile_flags: Dict[Language, List[str]] = field(
        default_factory=lambda: {Language.C: [], Language.CXX: []}
    )
    linker_flags: List[str] = field(default_factory=list)
    profile: str = "Release"
    shared: bool = False
    build_jobs: int = 1
    environment: Dict[str, str] = field(default_factory=dict)
    gpu_sdks: Dict[str, Path] = field(default_factory=dict)
    verbose: bool = False
    warnings: List[str] = field(default_factory=list)

    def define(self, name: str, value: DefinitionValue, precedence: Precedence = Precedence.DEFAULT) -> bool:
        """Record ``name``; an entry from a lower precedence than the current one is ignored."""

        existing = self.definitions.get(name)
        if existing is not None and precedence < existing.precedence:
            return False
        self.definitions[name] = Definition(name=name, value=value, precedence=precedence)
        return True

    def value(self, name: str) -> DefinitionValue | None:
        entry = self.definitions.get(name)
        return entry.value if entry is not None else None

    def add_flags(self, languages: Iterable[Language], *flags: str) -> None:
        for language in languages:
            bucket = self.compile_flags[language]
            for flag in flags:
                if flag not in bucket:
                    bucket.append(flag)

    def cache_entries(self) -> Dict[str, DefinitionValue]:
        """Definitions with the accumulated compiler and linker flags folded in."""

        entries: Dict[str, DefinitionValue] = {name: entry.value for name, entry in self.definitions.items()}
        for language, variable in _FLAG_VARIABLES.items():
            flags = self.compile_flags[language]
            if flags:
                entries[variable] = _join_flags(entries.get(variable), flags)
        if self.linker_flags:
            for variable in _LINKER_FLAG_VARIABLES:
                entries[variable] = _join_flags(entries.get(variable), self.linker_flags)
        return entries

    def cmake_arguments(self) -> List[str]:
        args: List[str] = []
        for name, value in self.cache_entries().items():
            args.extend(["-D", cmake_definition_flag(name, value)])
        return args

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "profile": self.profile,
            "shared": self.shared,
            "build_jobs": self.build_jobs,
            "verbose": self.verbose,
            "definitions": {
                name: {
                    "value": format_cmake_value(entry.value),
                    "precedence": entry.precedence.name.lower(),
                }
                for name, entry in self.definitions.items()
            },
            "compile_flags": {language.value: list(flags) for language, flags in self.compile_flags.items()},
            "linker_flags": list(self.linker_flags),
            "environment": dict(self.environment),
            "gpu_sdks": {name: str(path) for name, path in self.gpu_sdks.items()},
            "warnings": list(self.warnings),
        }


def _join_flags(existing: DefinitionValue | None, flags: Iterable[str]) -> str:
    parts = [str(existing)] if existing not in (None, "") else []
    parts.extend(flags)
    return " ".join(parts)


class ConfigPlanner:
    def plan(
        self,
        *,
        target: TargetDescriptor,
        features: FeatureSet,
        settings: BuildSettings,
        toolchain: Toolchain,
        out_dir: Path,
        reuse: ReusePackage | None = None,
        namespace: NamespaceSpec | None = None,
    ) -> ConfigPlan:
        plan = ConfigPlan(profile=settings.profile, build_jobs=toolchain.jobs, verbose=settings.cmake_verbose)

        for name in ALWAYS_DISABLED:
            plan.define(name, False)
        if features.has(Feature.MTMD):
            plan.define("LLAMA_BUILD_COMMON", True, Precedence.FEATURE)
            plan.define("LLAMA_BUILD_TOOLS", True, Precedence.FEATURE)

        self._apply_profile(plan, settings, out_dir)
        self._apply_shared_libs(plan, features, settings)
        self._apply_platform(plan, target, features, settings, toolchain)
        self._apply_gpu_backends(plan, target, features, settings)

        plan.define(
            "GGML_OPENMP",
            features.has(Feature.OPENMP) and target.variant is not OsVariant.ANDROID,
            Precedence.FEATURE,
        )
        if settings.cmake_verbose:
            plan.define("CMAKE_VERBOSE_MAKEFILE", True, Precedence.FEATURE)
        plan.environment[PARALLEL_LEVEL_VARIABLE] = str(toolchain.jobs)

        if features.reuse_external:
            self._apply_reuse(plan, target, reuse, namespace)

        for key, value in settings.passthrough.items():
            plan.define(key, value, Precedence.ENVIRONMENT)

        file_config = settings.file_config
        for key, value in file_config.definitions.items():
            plan.define(key, value, Precedence.CONFIG)
        plan.add_flags((Language.C,), *file_config.c_flags)
        plan.add_flags((Language.CXX,), *file_config.cxx_flags)
        plan.linker_flags.extend(file_config.linker_flags)

        shared_value = plan.value("BUILD_SHARED_LIBS")
        plan.shared = coerce_bool(shared_value, field_name="BUILD_SHARED_LIBS") if shared_value is not None else False
        return plan

    def _apply_profile(self, plan: ConfigPlan, settings: BuildSettings, out_dir: Path) -> None:
        if settings.profile_from_env:
            precedence = Precedence.ENVIRONMENT
        elif settings.profile_from_config:
            precedence = Precedence.CONFIG
        else:
            precedence = Precedence.DEFAULT
        plan.define("CMAKE_BUILD_TYPE", settings.profile, precedence)
        plan.define("CMAKE_INSTALL_PREFIX", out_dir)

    def _apply_shared_libs(self, plan: ConfigPlan, features: FeatureSet, settings: BuildSettings) -> None:
        plan.define("BUILD_SHARED_LIBS", features.shared_linking, Precedence.FEATURE)
        if settings.shared_from_config is not None:
            plan.define("BUILD_SHARED_LIBS", settings.shared_from_config, Precedence.CONFIG)
        if settings.shared_from_env is not None:
            plan.define("BUILD_SHARED_LIBS", settings.shared_from_env, Precedence.ENVIRONMENT)

    def _apply_platform(
        self,
        plan: ConfigPlan,
        target: TargetDescriptor,
        features: FeatureSet,
        settings: BuildSettings,
        toolchain: Toolchain,
    ) -> None:
        both = (Language.C, Language.CXX)

        if target.is_apple:
            plan.define("GGML_BLAS", False, Precedence.FEATURE)

        if target.is_msvc:
            if settings.profile in MSVC_RELEASE_PROFILES:
                plan.add_flags(both, *MSVC_RELEASE_FLAGS)
            runtime = "MultiThreaded$<$<CONFIG:Debug>:Debug>"
            if not settings.static_crt:
                runtime += "DLL"
            plan.define("CMAKE_MSVC_RUNTIME_LIBRARY", runtime, Precedence.FEATURE)
            plan.define("CMAKE_POLICY_DEFAULT_CMP0091", "NEW", Precedence.FEATURE)

        if target.variant is OsVariant.ANDROID:
            android = toolchain.android
            if android is None:
                raise ToolchainNotFoundError(f"No Android toolchain was resolved for {target.triple}")
            plan.define("CMAKE_TOOLCHAIN_FILE", android.toolchain_file, Precedence.FEATURE)
            plan.define("ANDROID_PLATFORM", android.platform, Precedence.FEATURE)
            plan.define("ANDROID_ABI", android.abi.abi, Precedence.FEATURE)
            plan.add_flags(both, *android.abi.arch_flags)
            plan.define("GGML_LLAMAFILE", False, Precedence.FEATURE)

        if (
            target.variant is OsVariant.LINUX
            and target.arch is Architecture.AARCH64
            and not features.has(Feature.NATIVE)
        ):
            plan.define("GGML_NATIVE", False, Precedence.FEATURE)
            plan.define("GGML_CPU_ARM_ARCH", "armv8-a", Precedence.FEATURE)

    def _apply_gpu_backends(
        self,
        plan: ConfigPlan,
        target: TargetDescriptor,
        features: FeatureSet,
        settings: BuildSettings,
    ) -> None:
        """Enable the requested GPU backends.

        Only Windows targets require VULKAN_SDK or CUDA_PATH up front. macOS,
        Android and Linux rely on CMake finding the SDK on its default search
        paths, so a missing variable there is left for CMake to report.
        """

        if features.has(Feature.VULKAN):
            plan.define("GGML_VULKAN", True, Precedence.FEATURE)
            if target.is_windows:
                if not settings.vulkan_sdk:
                    raise MissingEnvironmentError(
                        ("VULKAN_SDK",),
                        f"Install the Vulkan SDK ({VULKAN_SDK_URL}) and point VULKAN_SDK at it; "
                        "Windows builds cannot locate it otherwise.",
                    )
                plan.environment["TrackFileAccess"] = "false"
                if target.is_msvc:
                    plan.add_flags((Language.C, Language.CXX), "/FS")
            if settings.vulkan_sdk:
                plan.gpu_sdks["vulkan"] = Path(settings.vulkan_sdk)

        if features.has(Feature.CUDA):
            if target.is_apple:
                raise UnsupportedConfigurationError(
                    f"CUDA is not available on Apple targets ({target.triple}); use the metal feature instead"
                )
            plan.define("GGML_CUDA", True, Precedence.FEATURE)
            if features.has(Feature.CUDA_NO_VMM):
                plan.define("GGML_CUDA_NO_VMM", True, Precedence.FEATURE)
            if target.is_windows and not settings.cuda_path:
                raise MissingEnvironmentError(
                    ("CUDA_PATH",),
                    f"Install the CUDA toolkit ({CUDA_TOOLKIT_URL}); its installer sets CUDA_PATH, "
                    "which Windows builds require.",
                )
            if settings.cuda_path:
                plan.gpu_sdks["cuda"] = Path(settings.cuda_path)

    def _apply_reuse(
        self,
        plan: ConfigPlan,
        target: TargetDescriptor,
        reuse: ReusePackage | None,
        namespace: NamespaceSpec | None,
    ) -> None:
        if reuse is None:
            reuse = ReusePackage(root=None, lib_dir=None, include_dir=None)
        root = reuse.require_root()
        base_name = namespace.base_name if namespace is not None else DEFAULT_BASE_NAME

        plan.define("LLAMA_USE_SYSTEM_GGML", True, Precedence.FEATURE)
        plan.define("CMAKE_PREFIX_PATH", root, Precedence.FEATURE)
        cmake_dir = reuse.cmake_dir
        if cmake_dir is not None and cmake_dir.is_dir():
            plan.define("ggml_DIR", cmake_dir, Precedence.FEATURE)

        if reuse.lib_dir is not None and reuse.lib_dir.is_dir():
            library = reuse.lib_dir / layout_for(target.variant).link_filename(base_name)
            if library.is_file():
                plan.define("GGML_LIBRARY", library, Precedence.FEATURE)
            else:
                plan.warnings.append(
                    f"Reused library {library.name} not found in {reuse.lib_dir}; "
                    "make sure the providing package enables the same namespace feature"
                )
        else:
            plan.warnings.append(f"Reuse library directory does not exist: {reuse.lib_dir}")

        include_dir = reuse.include_dir
        if include_dir is None and (root / "include").is_dir():
            include_dir = root / "include"
        if include_dir is not None:
            plan.define("GGML_INCLUDE_DIR", include_dir, Precedence.FEATURE)


__all__ = [
    "ALWAYS_DISABLED",
    "ConfigPlan",
    "ConfigPlanner",
    "Definition",
    "Language",
    "MSVC_RELEASE_FLAGS",
    "Precedence",
    "cmake_definition_flag",
    "format_cmake_value",
]
