"""Discovery of platform toolchains: the Android NDK, MSVC and a few host probes."""
from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Mapping, Sequence, Tuple
import os
import platform

from core.command_runner import CommandError, CommandRunner, SubprocessCommandRunner

from .console import Console
from .errors import ToolchainNotFoundError, UnsupportedConfigurationError, UnsupportedTargetError
from .targets import Architecture, OsVariant, TargetDescriptor

ANDROID_NDK_VARIABLES = ("ANDROID_NDK", "ANDROID_NDK_ROOT", "NDK_ROOT", "CARGO_NDK_ANDROID_NDK")
ANDROID_SDK_VARIABLES = ("ANDROID_HOME", "ANDROID_SDK_ROOT")
ANDROID_API_VARIABLES = ("ANDROID_API_LEVEL", "ANDROID_PLATFORM", "CARGO_NDK_ANDROID_PLATFORM")
DEFAULT_ANDROID_API_LEVEL = 28
NDK_DOWNLOAD_URL = "https://developer.android.com/ndk/downloads"

CUDA_ROOT_VARIABLES = ("CUDA_PATH", "CUDA_ROOT", "CUDA_TOOLKIT_ROOT_DIR")
CUDA_DEFAULT_ROOTS = (Path("/usr/local/cuda"), Path("/opt/cuda"))

_HOST_TAGS = {
    "Darwin": "darwin-x86_64",
    "Linux": "linux-x86_64",
    "Windows": "windows-x86_64",
}

# Argument handed to vcvarsall.bat for each target architecture (x64 host).
_VCVARS_ARCH = {
    Architecture.X86_64: "x64",
    Architecture.I686: "x64_x86",
    Architecture.AARCH64: "x64_arm64",
}

_VCVARSALL_FALLBACKS = (
    Path(r"C:\Program Files\Microsoft Visual Studio\2022\Community\VC\Auxiliary\Build\vcvarsall.bat"),
    Path(r"C:\Program Files\Microsoft Visual Studio\2022\Professional\VC\Auxiliary\Build\vcvarsall.bat"),
    Path(r"C:\Program Files\Microsoft Visual Studio\2022\Enterprise\VC\Auxiliary\Build\vcvarsall.bat"),
    Path(r"C:\Program Files (x86)\Microsoft Visual Studio\2022\BuildTools\VC\Auxiliary\Build\vcvarsall.bat"),
    Path(r"C:\Program Files (x86)\Microsoft Visual Studio\2019\BuildTools\VC\Auxiliary\Build\vcvarsall.bat"),
)


@dataclass(frozen=True, slots=True)
class AndroidAbi:
    abi: str
    sysroot_triple: str
    arch_flags: Tuple[str, ...]


ANDROID_ABIS: Dict[Architecture, AndroidAbi] = {
    Architecture.AARCH64: AndroidAbi("arm64-v8a", "aarch64-linux-android", ("-march=armv8-a",)),
    Architecture.ARMV7: AndroidAbi(
        "armeabi-v7a",
        "arm-linux-androideabi",
        ("-march=armv7-a", "-mfpu=neon", "-mthumb"),
    ),
    Architecture.X86_64: AndroidAbi("x86_64", "x86_64-linux-android", ("-march=x86-64",)),
    Architecture.I686: AndroidAbi("x86", "i686-linux-android", ("-march=i686",)),
}


@dataclass(frozen=True, slots=True)
class AndroidToolchain:
    ndk_root: Path
    host_tag: str
    api_level: int
    abi: AndroidAbi
    builtin_includes: Path | None = None

    @property
    def toolchain_file(self) -> Path:
        return self.ndk_root / "build" / "cmake" / "android.toolchain.cmake"

    @property
    def prebuilt_dir(self) -> Path:
        return self.ndk_root / "toolchains" / "llvm" / "prebuilt" / self.host_tag

    @property
    def sysroot(self) -> Path:
        return self.prebuilt_dir / "sysroot"

    @property
    def platform(self) -> str:
        return f"android-{self.api_level}"


@dataclass(frozen=True, slots=True)
class MsvcToolchain:
    include_paths: Tuple[Path, ...]
    vcvarsall: Path | None = None


@dataclass(frozen=True, slots=True)
class Toolchain:
    target: TargetDescriptor
    jobs: int = 1
    android: AndroidToolchain | None = None
    msvc: MsvcToolchain | None = None


def parse_environment_dump(text: str) -> Dict[str, str]:
    """Parse the ``NAME=value`` lines printed by ``set``."""

    values: Dict[str, str] = {}
    for line in text.splitlines():
        name, sep, value = line.partition("=")
        if not sep or not name.strip():
            continue
        values[name.strip()] = value.rstrip("\r")
    return values


def _lookup_case_insensitive(values: Mapping[str, str], name: str) -> str | None:
    wanted = name.upper()
    for key, value in values.items():
        if key.upper() == wanted:
            return value
    return None


class ToolchainLocator:
    def __init__(
        self,
        *,
        env: Mapping[str, str] | None = None,
        runner: CommandRunner | None = None,
        console: Console | None = None,
        host_system: str | None = None,
        home: Path | None = None,
        cuda_default_roots: Sequence[Path] = CUDA_DEFAULT_ROOTS,
    ) -> None:
        self._env = dict(os.environ) if env is None else env
        self._runner = runner or SubprocessCommandRunner()
        self._console = console or Console()
        self._host_system = host_system or platform.system()
        self._home = home or Path.home()
        self._cuda_default_roots = tuple(cuda_default_roots)

    def locate(
        self,
        target: TargetDescriptor,
        *,
        scratch_dir: Path | None = None,
        probe_msvc: bool = True,
    ) -> Toolchain:
        android = None
        msvc = None
        if target.variant is OsVariant.ANDROID:
            android = self.locate_android(target)
        if target.is_msvc and probe_msvc:
            if scratch_dir is None:
                raise ValueError("MSVC probing needs a scratch directory")
            msvc = self.locate_msvc(target, scratch_dir)
        return Toolchain(target=target, jobs=self.host_parallelism(), android=android, msvc=msvc)

    # Android -----------------------------------------------------------------

    def host_tag(self) -> str:
        tag = _HOST_TAGS.get(self._host_system)
        if tag is None:
            raise ToolchainNotFoundError(
                f"Unsupported host OS '{self._host_system}' for the Android NDK; "
                f"expected one of: {', '.join(sorted(_HOST_TAGS))}"
            )
        return tag

    def android_ndk_root(self) -> Path:
        for name in ANDROID_NDK_VARIABLES:
            value = self._env.get(name)
            if value:
                self._console.debug(f"Using Android NDK from {name}={value}")
                return Path(value)

        sdk_root = self._home / "Android" / "Sdk"
        for name in ANDROID_SDK_VARIABLES:
            value = self._env.get(name)
            if value:
                sdk_root = Path(value)
                break

        ndk_dir = sdk_root / "ndk"
        if ndk_dir.is_dir():
            versions = sorted((entry for entry in ndk_dir.iterdir() if entry.is_dir()), key=lambda entry: entry.name)
            if versions:
                self._console.debug(f"Auto-detected Android NDK {versions[-1]}")
                return versions[-1]

        raise ToolchainNotFoundError(
            "Android NDK not found. Set one of "
            f"{', '.join(ANDROID_NDK_VARIABLES)} or install an NDK under "
            f"<{' or '.join(ANDROID_SDK_VARIABLES)}>/ndk. Download: {NDK_DOWNLOAD_URL}"
        )

    def android_api_level(self) -> int:
        for name in ANDROID_API_VARIABLES:
            raw = self._env.get(name)
            if not raw:
                continue
            value = raw.strip()
            if value.startswith("android-"):
                value = value[len("android-"):]
            if not value.isdigit():
                raise UnsupportedConfigurationError(f"{name}='{raw}' is not a valid Android API level")
            return int(value)
        return DEFAULT_ANDROID_API_LEVEL

    def locate_android(self, target: TargetDescriptor) -> AndroidToolchain:
        abi = ANDROID_ABIS.get(target.arch)
        if abi is None:
            raise UnsupportedTargetError(
                target.triple,
                "Android builds support aarch64, armv7, x86_64 and i686",
            )

        ndk_root = self.android_ndk_root()
        toolchain = AndroidToolchain(
            ndk_root=ndk_root,
            host_tag=self.host_tag(),
            api_level=self.android_api_level(),
            abi=abi,
        )
        if not toolchain.toolchain_file.is_file():
            raise ToolchainNotFoundError(
                f"Android NDK toolchain file not found: {toolchain.toolchain_file}. "
                f"Check that {ndk_root} is a complete NDK installation."
            )
        if not toolchain.prebuilt_dir.is_dir():
            raise ToolchainNotFoundError(
                f"Android NDK prebuilt toolchain not found: {toolchain.prebuilt_dir}"
            )

        return replace(toolchain, builtin_includes=self._clang_builtin_includes(toolchain.prebuilt_dir))

    def _clang_builtin_includes(self, prebuilt_dir: Path) -> Path | None:
        clang_dir = prebuilt_dir / "lib" / "clang"
        if not clang_dir.is_dir():
            return None
        for entry in sorted(clang_dir.iterdir(), key=lambda item: item.name):
            if entry.name[:1].isdigit():
                include_dir = entry / "include"
                return include_dir if include_dir.is_dir() else None
        return None

    # MSVC --------------------------------------------------------------------

    def locate_msvc(self, target: TargetDescriptor, scratch_dir: Path) -> MsvcToolchain:
        scratch_dir.mkdir(parents=True, exist_ok=True)
        dummy_source = scratch_dir / "dummy.c"
        dummy_source.write_text("int llamabuild_probe(void) { return 0; }\n", encoding="utf-8")

        vcvarsall: Path | None = None
        compile_env: Dict[str, str] | None = None
        include_value = self._env.get("INCLUDE")
        if include_value:
            self._console.debug("Using INCLUDE from the developer environment")
        else:
            vcvarsall = self._find_vcvarsall()
            compile_env = self._developer_environment(vcvarsall, target)
            include_value = _lookup_case_insensitive(compile_env, "INCLUDE")
            if not include_value:
                raise ToolchainNotFoundError(
                    f"{vcvarsall} did not export INCLUDE; repair the Visual Studio C++ workload"
                )

        self._probe_compiler(dummy_source, scratch_dir, compile_env)
        include_paths = tuple(Path(part) for part in include_value.split(";") if part.strip())
        return MsvcToolchain(include_paths=include_paths, vcvarsall=vcvarsall)

    def _vswhere_path(self) -> Path:
        program_files = self._env.get("ProgramFiles(x86)") or r"C:\Program Files (x86)"
        return Path(program_files) / "Microsoft Visual Studio" / "Installer" / "vswhere.exe"

    def _find_vcvarsall(self) -> Path:
        candidates: List[Path] = []
        vswhere = self._vswhere_path()
        if vswhere.exists():
            command = [
                str(vswhere),
                "-latest",
                "-products",
                "*",
                "-requires",
                "Microsoft.VisualStudio.Component.VC.Tools.x86.x64",
                "-property",
                "installationPath",
            ]
            try:
                result = self._runner.run(command, note="vswhere")
            except (CommandError, OSError) as exc:
                self._console.warning(f"vswhere failed: {exc}")
            else:
                for line in result.stdout.splitlines():
                    if line.strip():
                        candidates.append(Path(line.strip()) / "VC" / "Auxiliary" / "Build" / "vcvarsall.bat")
        candidates.extend(_VCVARSALL_FALLBACKS)

        for candidate in candidates:
            if candidate.is_file():
                return candidate
        searched = "\n".join(f"  - {candidate}" for candidate in candidates)
        raise ToolchainNotFoundError(
            "Cannot locate vcvarsall.bat; install Visual Studio with the C++ workload "
            f"or run from a Developer Command Prompt. Searched:\n{searched}"
        )

    def _developer_environment(self, vcvarsall: Path, target: TargetDescriptor) -> Dict[str, str]:
        arch = _VCVARS_ARCH.get(target.arch)
        if arch is None:
            raise UnsupportedTargetError(target.triple, "MSVC builds support x86_64, i686 and aarch64")
        command = ["cmd", "/c", "call", str(vcvarsall), arch, "&&", "set"]
        try:
            result = self._runner.run(command, note="vcvarsall")
        except (CommandError, OSError) as exc:
            raise ToolchainNotFoundError(f"Failed to initialise the MSVC environment: {exc}") from exc
        return parse_environment_dump(result.stdout)

    def _probe_compiler(self, source: Path, scratch_dir: Path, env: Mapping[str, str] | None) -> None:
        command = ["cl", "/nologo", "/c", str(source), f"/Fo{scratch_dir / 'dummy.obj'}"]
        try:
            self._runner.run(command, cwd=scratch_dir, env=env, note="msvc probe")
        except (CommandError, OSError) as exc:
            raise ToolchainNotFoundError(f"The MSVC compiler driver (cl.exe) is not usable: {exc}") from exc

    # Host probes -------------------------------------------------------------

    def macos_runtime_search_path(self) -> Path | None:
        """Directory holding ``libclang_rt.osx.a``; ``None`` when clang cannot tell."""

        try:
            result = self._runner.run(["clang", "--print-search-dirs"], note="clang search dirs")
        except (CommandError, OSError) as exc:
            self._console.warning(f"Could not query clang search dirs: {exc}")
            return None
        for line in result.stdout.splitlines():
            if line.startswith("libraries: ="):
                first = line[len("libraries: ="):].split(":")[0].strip()
                if first:
                    return Path(first) / "lib" / "darwin"
        self._console.warning("clang --print-search-dirs did not report a libraries path")
        return None

    def cuda_library_dirs(self, target: TargetDescriptor) -> List[Path]:
        candidates: List[Path] = []
        extra = self._env.get("CUDA_LIBRARY_PATH")
        if extra:
            candidates.extend(Path(part) for part in extra.split(os.pathsep) if part)

        roots = [Path(self._env[name]) for name in CUDA_ROOT_VARIABLES if self._env.get(name)]
        if not target.is_windows:
            roots.extend(self._cuda_default_roots)
        subdirs: Tuple[Tuple[str, ...], ...] = (("lib", "x64"),) if target.is_windows else (("lib64",), ("lib",))
        for root in roots:
            for subdir in subdirs:
                candidates.append(root.joinpath(*subdir))

        found: List[Path] = []
        for candidate in candidates:
            if candidate in found or not candidate.is_dir():
                continue
            found.append(candidate)
        if not found:
            self._console.warning("No CUDA library directory found; relying on the linker's default search path")
        return found

    def host_parallelism(self) -> int:
        return os.cpu_count() or 1


__all__ = [
    "ANDROID_ABIS",
    "ANDROID_API_VARIABLES",
    "ANDROID_NDK_VARIABLES",
    "ANDROID_SDK_VARIABLES",
    "AndroidAbi",
    "AndroidToolchain",
    "DEFAULT_ANDROID_API_LEVEL",
    "MsvcToolchain",
    "Toolchain",
    "ToolchainLocator",
    "parse_environment_dump",
]
