"""Header search plan consumed by the language-binding generator."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from .errors import ToolchainNotFoundError
from .features import Feature, FeatureSet
from .reuse import ReusePackage
from .settings import BuildSettings
from .targets import OsVariant, TargetDescriptor
from .toolchains import Toolchain


@dataclass(slots=True)
class HeaderSearchPlan:
    headers: List[str] = field(default_factory=list)
    allowlist: List[str] = field(default_factory=list)
    clang_args: List[str] = field(default_factory=list)

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "headers": list(self.headers),
            "allowlist": list(self.allowlist),
            "clang_args": list(self.clang_args),
        }


def plan_header_search(
    *,
    target: TargetDescriptor,
    features: FeatureSet,
    settings: BuildSettings,
    toolchain: Toolchain,
    source_dir: Path,
    reuse: ReusePackage | None = None,
) -> HeaderSearchPlan:
    plan = HeaderSearchPlan(
        headers=["wrapper.h"],
        allowlist=["ggml_.*", "llama_.*"],
        clang_args=[f"-I{source_dir / 'include'}"],
    )

    if features.reuse_external:
        package = reuse or ReusePackage(root=None, lib_dir=None, include_dir=None)
        plan.clang_args.append(f"-I{package.resolve_include_dir()}")
    else:
        plan.clang_args.append(f"-I{source_dir / 'ggml' / 'include'}")

    if features.has(Feature.MTMD):
        plan.headers.append("wrapper_mtmd.h")
        plan.allowlist.append("mtmd_.*")

    if target.variant is OsVariant.ANDROID:
        android = toolchain.android
        if android is None:
            raise ToolchainNotFoundError(f"No Android toolchain was resolved for {target.triple}")
        sysroot = android.sysroot
        plan.clang_args.extend(
            [
                f"--sysroot={sysroot}",
                f"-D__ANDROID_API__={android.api_level}",
                "-D__ANDROID__",
            ]
        )
        if android.builtin_includes is not None:
            plan.clang_args.extend(["-isystem", str(android.builtin_includes)])
        plan.clang_args.extend(
            [
                "-isystem",
                str(sysroot / "usr" / "include" / android.abi.sysroot_triple),
                "-isystem",
                str(sysroot / "usr" / "include"),
                "-include",
                "stdbool.h",
                "-include",
                "stdint.h",
            ]
        )
        if settings.cargo_subcommand == "ndk":
            plan.clang_args.append(f"--target={target.triple}")

    if target.is_msvc and toolchain.msvc is not None:
        for include_path in toolchain.msvc.include_paths:
            plan.clang_args.extend(["-isystem", str(include_path)])
        plan.clang_args.extend([f"--target={target.triple}", "-fms-compatibility", "-fms-extensions"])

    return plan


__all__ = ["HeaderSearchPlan", "plan_header_search"]
