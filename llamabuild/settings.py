"""Environment overrides and config-file values read once per orchestration run."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping
import os

from core.config_loader import coerce_bool, load_config_file, normalize_string_list

SHARED_LIBS_VARIABLE = "LLAMA_BUILD_SHARED_LIBS"
PROFILE_VARIABLE = "LLAMA_LIB_PROFILE"
STATIC_CRT_VARIABLE = "LLAMA_STATIC_CRT"
VERBOSE_VARIABLE = "CMAKE_VERBOSE"
DEBUG_VARIABLE = "BUILD_DEBUG"
CONFIG_VARIABLE = "LLAMABUILD_CONFIG"
PASSTHROUGH_PREFIX = "CMAKE_"
DEFAULT_PROFILE = "Release"

# Orchestrator inputs that share the pass-through prefix but are not cache variables.
_PASSTHROUGH_EXCLUDED = frozenset({VERBOSE_VARIABLE, "CMAKE_BUILD_PARALLEL_LEVEL"})

_CONFIG_SECTIONS = {"build", "definitions", "flags"}
_BUILD_KEYS = {"profile", "shared", "static_crt", "features"}
_FLAG_KEYS = {"c", "cxx", "linker"}


@dataclass(slots=True)
class FileConfig:
    """Values from an optional ``llamabuild`` configuration file."""

    path: Path | None = None
    profile: str | None = None
    shared: bool | None = None
    static_crt: bool | None = None
    features: List[str] = field(default_factory=list)
    definitions: Dict[str, Any] = field(default_factory=dict)
    c_flags: List[str] = field(default_factory=list)
    cxx_flags: List[str] = field(default_factory=list)
    linker_flags: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, path: Path | None = None) -> "FileConfig":
        unknown = {str(key) for key in data.keys() if str(key) not in _CONFIG_SECTIONS}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ValueError(f"Configuration contains unknown sections: {joined}")

        build_section = data.get("build") or {}
        if not isinstance(build_section, Mapping):
            raise TypeError("[build] must be a mapping")
        unknown_build = {str(key) for key in build_section.keys() if str(key) not in _BUILD_KEYS}
        if unknown_build:
            joined = ", ".join(sorted(unknown_build))
            raise ValueError(f"[build] contains unknown keys: {joined}")

        definitions_section = data.get("definitions") or {}
        if not isinstance(definitions_section, Mapping):
            raise TypeError("[definitions] must be a mapping")
        definitions: Dict[str, Any] = {}
        for key, value in definitions_section.items():
            if not isinstance(value, (str, bool, int, float)):
                raise TypeError(f"Definition '{key}' must be a string, boolean or number")
            definitions[str(key)] = value

        flags_section = data.get("flags") or {}
        if not isinstance(flags_section, Mapping):
            raise TypeError("[flags] must be a mapping")
        unknown_flags = {str(key) for key in flags_section.keys() if str(key) not in _FLAG_KEYS}
        if unknown_flags:
            joined = ", ".join(sorted(unknown_flags))
            raise ValueError(f"[flags] contains unknown keys: {joined}")

        profile_value = build_section.get("profile")
        profile = str(profile_value).strip() if profile_value is not None else ""
        shared = build_section.get("shared")
        static_crt = build_section.get("static_crt")
        return cls(
            path=path,
            profile=profile or None,
            shared=coerce_bool(shared, field_name="build.shared") if shared is not None else None,
            static_crt=coerce_bool(static_crt, field_name="build.static_crt") if static_crt is not None else None,
            features=normalize_string_list(build_section.get("features"), field_name="build.features"),
            definitions=definitions,
            c_flags=normalize_string_list(flags_section.get("c"), field_name="flags.c"),
            cxx_flags=normalize_string_list(flags_section.get("cxx"), field_name="flags.cxx"),
            linker_flags=normalize_string_list(flags_section.get("linker"), field_name="flags.linker"),
        )

    @classmethod
    def load(cls, path: Path) -> "FileConfig":
        return cls.from_mapping(load_config_file(path), path=path)


@dataclass(frozen=True, slots=True)
class BuildSettings:
    shared_from_env: bool | None = None
    shared_from_config: bool | None = None
    profile: str = DEFAULT_PROFILE
    profile_from_env: bool = False
    profile_from_config: bool = False
    static_crt: bool = False
    cmake_verbose: bool = False
    debug: bool = False
    enclosing_debug: bool = False
    passthrough: Mapping[str, str] = field(default_factory=dict)
    vulkan_sdk: str | None = None
    cuda_path: str | None = None
    cargo_subcommand: str | None = None
    file_config: FileConfig = field(default_factory=FileConfig)

    @classmethod
    def from_environment(
        cls,
        env: Mapping[str, str] | None = None,
        *,
        file_config: FileConfig | None = None,
    ) -> "BuildSettings":
        env = dict(os.environ) if env is None else env
        file_config = file_config or FileConfig()

        shared_raw = env.get(SHARED_LIBS_VARIABLE)
        profile_raw = env.get(PROFILE_VARIABLE)
        static_crt_raw = env.get(STATIC_CRT_VARIABLE)

        if profile_raw:
            profile = profile_raw
        elif file_config.profile:
            profile = file_config.profile
        else:
            profile = DEFAULT_PROFILE

        if static_crt_raw is not None:
            static_crt = static_crt_raw == "1"
        else:
            static_crt = bool(file_config.static_crt)

        passthrough = {
            key: value
            for key, value in sorted(env.items())
            if key.startswith(PASSTHROUGH_PREFIX) and key not in _PASSTHROUGH_EXCLUDED
        }

        return cls(
            shared_from_env=(shared_raw == "1") if shared_raw is not None else None,
            shared_from_config=file_config.shared,
            profile=profile,
            profile_from_env=bool(profile_raw),
            profile_from_config=not profile_raw and bool(file_config.profile),
            static_crt=static_crt,
            cmake_verbose=VERBOSE_VARIABLE in env,
            debug=DEBUG_VARIABLE in env,
            enclosing_debug=env.get("PROFILE", "").lower() == "debug",
            passthrough=passthrough,
            vulkan_sdk=env.get("VULKAN_SDK") or None,
            cuda_path=env.get("CUDA_PATH") or None,
            cargo_subcommand=env.get("CARGO_SUBCOMMAND") or None,
            file_config=file_config,
        )


__all__ = [
    "BuildSettings",
    "CONFIG_VARIABLE",
    "DEFAULT_PROFILE",
    "FileConfig",
    "PASSTHROUGH_PREFIX",
    "PROFILE_VARIABLE",
    "SHARED_LIBS_VARIABLE",
    "STATIC_CRT_VARIABLE",
]
