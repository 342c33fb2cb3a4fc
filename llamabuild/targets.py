"""Classification of target triples into the supported platform matrix."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Tuple

from .errors import UnsupportedTargetError


class OsVariant(str, Enum):
    WINDOWS_MSVC = "windows-msvc"
    WINDOWS_OTHER = "windows-other"
    MACOS = "macos"
    APPLE_OTHER = "apple-other"
    LINUX = "linux"
    ANDROID = "android"

    @property
    def is_windows(self) -> bool:
        return self in (OsVariant.WINDOWS_MSVC, OsVariant.WINDOWS_OTHER)

    @property
    def is_apple(self) -> bool:
        return self in (OsVariant.MACOS, OsVariant.APPLE_OTHER)


class Architecture(str, Enum):
    AARCH64 = "aarch64"
    ARMV7 = "armv7"
    X86_64 = "x86_64"
    I686 = "i686"
    OTHER = "other"


# Short ABI names handed out by cargo-ndk style helpers instead of full triples.
ANDROID_ABI_ALIASES = {
    "arm64-v8a": Architecture.AARCH64,
    "armeabi-v7a": Architecture.ARMV7,
    "x86_64": Architecture.X86_64,
    "x86": Architecture.I686,
}


@dataclass(frozen=True, slots=True)
class TargetDescriptor:
    triple: str
    variant: OsVariant
    arch: Architecture
    native_requested: bool = False

    @property
    def is_windows(self) -> bool:
        return self.variant.is_windows

    @property
    def is_apple(self) -> bool:
        return self.variant.is_apple

    @property
    def is_msvc(self) -> bool:
        return self.variant is OsVariant.WINDOWS_MSVC

    @property
    def is_gnu(self) -> bool:
        return "gnu" in self.triple


_Rule = Tuple[Callable[[str], bool], Callable[[str], OsVariant]]

_CLASSIFICATION_RULES: Tuple[_Rule, ...] = (
    (
        lambda triple: "windows" in triple,
        lambda triple: OsVariant.WINDOWS_MSVC if triple.endswith("-windows-msvc") else OsVariant.WINDOWS_OTHER,
    ),
    (
        lambda triple: "apple" in triple,
        lambda triple: OsVariant.MACOS if triple.endswith("-apple-darwin") else OsVariant.APPLE_OTHER,
    ),
    (
        lambda triple: "android" in triple or triple in ANDROID_ABI_ALIASES,
        lambda triple: OsVariant.ANDROID,
    ),
    (
        lambda triple: "linux" in triple,
        lambda triple: OsVariant.LINUX,
    ),
)
"""Ordered classification rules; the first matching rule wins."""


def classify_os(triple: str) -> OsVariant:
    for matches, variant_of in _CLASSIFICATION_RULES:
        if matches(triple):
            return variant_of(triple)
    raise UnsupportedTargetError(
        triple,
        "expected a Windows, Apple, Android or Linux triple (e.g. x86_64-unknown-linux-gnu)",
    )


def classify_arch(triple: str) -> Architecture:
    alias = ANDROID_ABI_ALIASES.get(triple)
    if alias is not None:
        return alias
    head = triple.split("-", 1)[0]
    if head in ("aarch64", "arm64"):
        return Architecture.AARCH64
    if head.startswith(("armv7", "thumbv7")):
        return Architecture.ARMV7
    if head == "x86_64":
        return Architecture.X86_64
    if head in ("i686", "i586", "x86"):
        return Architecture.I686
    return Architecture.OTHER


def resolve_target(triple: str, *, native_requested: bool = False) -> TargetDescriptor:
    """Classify ``triple``; raises :class:`UnsupportedTargetError` for anything outside the matrix."""

    normalized = triple.strip()
    if not normalized:
        raise UnsupportedTargetError(triple, "the target triple is empty (set TARGET or pass --target)")
    return TargetDescriptor(
        triple=normalized,
        variant=classify_os(normalized),
        arch=classify_arch(normalized),
        native_requested=native_requested,
    )


__all__ = [
    "ANDROID_ABI_ALIASES",
    "Architecture",
    "OsVariant",
    "TargetDescriptor",
    "classify_arch",
    "classify_os",
    "resolve_target",
]
