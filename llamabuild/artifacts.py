"""Discovery of the libraries produced by the external build."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Tuple

from .console import Console
from .errors import DuplicateArtifactError, EmptyArtifactSetError
from .layout import LibraryLayout, layout_for
from .namespace import NamespaceSpec
from .targets import TargetDescriptor


class LinkKind(str, Enum):
    STATIC = "static"
    DYLIB = "dylib"
    FRAMEWORK = "framework"
    DEFAULT = ""


@dataclass(frozen=True, slots=True)
class LibraryArtifact:
    path: Path
    name: str
    kind: LinkKind


@dataclass(slots=True)
class ArtifactSet:
    link_targets: List[LibraryArtifact] = field(default_factory=list)
    runtime_assets: List[Path] = field(default_factory=list)

    def names(self) -> List[str]:
        return [artifact.name for artifact in self.link_targets]


class ArtifactCollector:
    def __init__(
        self,
        target: TargetDescriptor,
        *,
        shared: bool,
        namespace: NamespaceSpec | None = None,
        reuse_mode: bool = False,
        console: Console | None = None,
    ) -> None:
        self.target = target
        self.shared = shared
        self.namespace = namespace or NamespaceSpec()
        self.reuse_mode = reuse_mode
        self.layout: LibraryLayout = layout_for(target.variant)
        self._console = console or Console()

    @property
    def link_kind(self) -> LinkKind:
        return LinkKind.DYLIB if self.shared else LinkKind.STATIC

    def collect_link_targets(self, out_dir: Path) -> List[LibraryArtifact]:
        suffix = self.layout.link_suffix(self.shared)
        excluded_suffix = self.layout.dynamic_suffix
        skip_dynamic = not self.shared and excluded_suffix != suffix and excluded_suffix.endswith(suffix)

        candidates: List[Path] = []
        for lib_dir in sorted(path for path in out_dir.glob("lib*") if path.is_dir()):
            for path in sorted(lib_dir.glob(f"*{suffix}")):
                if not path.is_file():
                    continue
                if skip_dynamic and path.name.endswith(excluded_suffix):
                    continue
                candidates.append(path)

        found: Dict[str, LibraryArtifact] = {}
        for path in candidates:
            resolved, name = self._logical_name(path, suffix)
            if name in found:
                raise DuplicateArtifactError(
                    f"Library name '{name}' is produced by both {found[name].path} and {resolved}"
                )
            found[name] = LibraryArtifact(path=resolved, name=name, kind=self.link_kind)
            self._console.debug(f"Link target {name} ({resolved})")
        return list(found.values())

    def _logical_name(self, path: Path, suffix: str) -> Tuple[Path, str]:
        stem = path.name[: -len(suffix)]
        prefix = self.layout.prefix
        if not prefix or stem.startswith(prefix):
            return path, self.layout.strip_prefix(stem)
        if suffix != self.layout.static_suffix:
            return path, stem

        # Unix linkers only find archives named lib<name>.a.
        renamed = path.with_name(f"{prefix}{stem}{suffix}")
        if renamed.exists():
            raise DuplicateArtifactError(
                f"Library name '{stem}' is produced by both {path} and {renamed}"
            )
        path.rename(renamed)
        self._console.debug(f"Renamed {path.name} to {renamed.name}")
        return renamed, stem

    def collect_runtime_assets(self, out_dir: Path) -> List[Path]:
        runtime_dir = out_dir / self.layout.runtime_dir
        if not runtime_dir.is_dir():
            return []
        return sorted(path for path in runtime_dir.glob(f"*{self.layout.runtime_suffix}") if path.is_file())

    def filter_reused(self, artifacts: List[LibraryArtifact]) -> List[LibraryArtifact]:
        if not self.reuse_mode:
            return list(artifacts)
        kept: List[LibraryArtifact] = []
        for artifact in artifacts:
            if self.namespace.owns(artifact.name):
                self._console.debug(f"Skipping {artifact.name}; provided by the reused package")
                continue
            kept.append(artifact)
        return kept

    def collect(self, out_dir: Path) -> ArtifactSet:
        found = self.collect_link_targets(out_dir)
        if not found:
            raise EmptyArtifactSetError(
                f"No {self.layout.link_suffix(self.shared)} libraries found under {out_dir}/lib*; "
                "the external build did not install anything"
            )
        link_targets = self.filter_reused(found)
        if not link_targets:
            skipped = ", ".join(artifact.name for artifact in found)
            raise EmptyArtifactSetError(
                f"Only libraries provided by the reused {self.namespace.base_name} package were found "
                f"under {out_dir}/lib* ({skipped}); nothing is left to link"
            )
        return ArtifactSet(
            link_targets=link_targets,
            runtime_assets=self.collect_runtime_assets(out_dir) if self.shared else [],
        )


__all__ = [
    "ArtifactCollector",
    "ArtifactSet",
    "LibraryArtifact",
    "LinkKind",
]
