"""Best-effort file materialisation through an ordered list of strategies."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Sequence, Tuple
import os
import shutil


MaterializeStrategy = Callable[[Path, Path], None]


def hard_link(source: Path, destination: Path) -> None:
    os.link(source, destination)


def copy_file(source: Path, destination: Path) -> None:
    shutil.copy2(source, destination)


DEFAULT_STRATEGIES: Tuple[Tuple[str, MaterializeStrategy], ...] = (
    ("hard link", hard_link),
    ("copy", copy_file),
)
"""Strategies tried in order by :func:`materialize`."""


@dataclass(slots=True)
class MaterializeResult:
    source: Path
    destination: Path
    strategy: str | None = None
    skipped: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.skipped or self.strategy is not None

    def describe_errors(self) -> str:
        return "; ".join(self.errors) if self.errors else "no strategy attempted"


def materialize(
    source: Path,
    destination: Path,
    *,
    strategies: Sequence[Tuple[str, MaterializeStrategy]] = DEFAULT_STRATEGIES,
) -> MaterializeResult:
    """Make ``destination`` a copy of ``source`` using the first strategy that works.

    An existing destination is left untouched and reported as skipped.
    Strategy failures are collected rather than raised; callers decide whether
    an unsuccessful result is fatal.
    """

    result = MaterializeResult(source=source, destination=destination)
    if destination.exists():
        result.skipped = True
        return result

    for name, strategy in strategies:
        try:
            strategy(source, destination)
        except OSError as exc:
            result.errors.append(f"{name}: {exc}")
            continue
        result.strategy = name
        break
    return result


__all__ = [
    "DEFAULT_STRATEGIES",
    "MaterializeResult",
    "MaterializeStrategy",
    "copy_file",
    "hard_link",
    "materialize",
]
