"""Per-platform library file naming conventions."""
from __future__ import annotations

from dataclasses import dataclass

from .targets import OsVariant


@dataclass(frozen=True, slots=True)
class LibraryLayout:
    prefix: str
    static_suffix: str
    dynamic_suffix: str
    runtime_dir: str
    runtime_suffix: str

    def link_suffix(self, shared: bool) -> str:
        return self.dynamic_suffix if shared else self.static_suffix

    def link_filename(self, stem: str, *, shared: bool = True) -> str:
        return f"{self.prefix}{stem}{self.link_suffix(shared)}"

    def runtime_filename(self, stem: str) -> str:
        return f"{self.prefix}{stem}{self.runtime_suffix}"

    def strip_prefix(self, stem: str) -> str:
        if self.prefix and stem.startswith(self.prefix):
            return stem[len(self.prefix):]
        return stem

    def runtime_name(self, filename: str) -> str:
        if filename.endswith(self.runtime_suffix):
            filename = filename[: -len(self.runtime_suffix)]
        return self.strip_prefix(filename)


_MSVC = LibraryLayout(prefix="", static_suffix=".lib", dynamic_suffix=".lib", runtime_dir="bin", runtime_suffix=".dll")
_MINGW = LibraryLayout(prefix="lib", static_suffix=".a", dynamic_suffix=".dll.a", runtime_dir="bin", runtime_suffix=".dll")
_APPLE = LibraryLayout(prefix="lib", static_suffix=".a", dynamic_suffix=".dylib", runtime_dir="lib", runtime_suffix=".dylib")
_ELF = LibraryLayout(prefix="lib", static_suffix=".a", dynamic_suffix=".so", runtime_dir="lib", runtime_suffix=".so")


def layout_for(variant: OsVariant) -> LibraryLayout:
    if variant is OsVariant.WINDOWS_MSVC:
        return _MSVC
    if variant is OsVariant.WINDOWS_OTHER:
        return _MINGW
    if variant.is_apple:
        return _APPLE
    return _ELF


__all__ = ["LibraryLayout", "layout_for"]
