"""Location of the sibling package that provides a pre-built ggml."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from .errors import MissingEnvironmentError

ROOT_VARIABLES = ("DEP_GGML_ROOT", "DEP_GGML_RS_ROOT")
LIB_DIR_VARIABLES = ("DEP_GGML_LIB_DIR", "DEP_GGML_RS_LIB_DIR")
INCLUDE_VARIABLES = ("DEP_GGML_INCLUDE", "DEP_GGML_RS_INCLUDE")
CONFIG_SCRIPT_NAME = "ggml-config.cmake"


def _first_set(env: Mapping[str, str], names: Sequence[str]) -> str | None:
    for name in names:
        value = env.get(name)
        if value:
            return value
    return None


@dataclass(frozen=True, slots=True)
class ReusePackage:
    root: Path | None
    lib_dir: Path | None
    include_dir: Path | None

    @classmethod
    def from_environment(cls, env: Mapping[str, str]) -> "ReusePackage":
        root_value = _first_set(env, ROOT_VARIABLES)
        lib_value = _first_set(env, LIB_DIR_VARIABLES)
        include_value = _first_set(env, INCLUDE_VARIABLES)

        root = Path(root_value) if root_value else None
        if root is None and lib_value:
            root = Path(lib_value).parent

        lib_dir = Path(lib_value) if lib_value else None
        if lib_dir is None and root is not None:
            lib_dir = root / "lib"

        return cls(
            root=root,
            lib_dir=lib_dir,
            include_dir=Path(include_value) if include_value else None,
        )

    @property
    def cmake_dir(self) -> Path | None:
        return self.root / "lib" / "cmake" / "ggml" if self.root is not None else None

    @property
    def config_script(self) -> Path | None:
        cmake_dir = self.cmake_dir
        return cmake_dir / CONFIG_SCRIPT_NAME if cmake_dir is not None else None

    def require_root(self) -> Path:
        if self.root is None:
            raise MissingEnvironmentError(
                ROOT_VARIABLES + LIB_DIR_VARIABLES,
                "Reuse mode (use-shared-ggml) needs the install prefix of the package that "
                "builds ggml; make sure it is a build dependency that exports DEP_GGML_ROOT.",
            )
        return self.root

    def resolve_include_dir(self) -> Path:
        if self.include_dir is not None:
            return self.include_dir
        root = self.require_root()
        candidate = root / "include"
        if not candidate.exists():
            raise MissingEnvironmentError(
                INCLUDE_VARIABLES,
                f"Cannot find the reused ggml headers; tried {candidate}.",
            )
        return candidate


__all__ = [
    "CONFIG_SCRIPT_NAME",
    "INCLUDE_VARIABLES",
    "LIB_DIR_VARIABLES",
    "ROOT_VARIABLES",
    "ReusePackage",
]
