"""Namespaced ggml library names and the rewrite of the reused ``ggml-config.cmake``.

A sibling package can install ggml under a namespaced base name such as
``ggml_llama`` so that several copies coexist in one process. The generated
CMake package script still looks for the default names, so reuse mode
rewrites it with an ordered list of substring rules. More specific rules come
first: ``find_library(GGML_BASE_LIBRARY ggml-base`` must be rewritten before the
generic ``find_library(GGML_LIBRARY ggml`` rule could see it.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple
import re

from core.fileops import DEFAULT_STRATEGIES, MaterializeResult, MaterializeStrategy, materialize

from .console import Console
from .features import FeatureSet
from .layout import LibraryLayout

DEFAULT_BASE_NAME = "ggml"
BASE_COMPONENTS = ("base", "cpu")


@dataclass(frozen=True, slots=True)
class NamespaceSpec:
    name: str | None = None
    backends: Tuple[str, ...] = ()

    @classmethod
    def from_features(cls, features: FeatureSet) -> "NamespaceSpec":
        return cls(name=features.namespace, backends=features.gpu_backends)

    @property
    def base_name(self) -> str:
        return self.name or DEFAULT_BASE_NAME

    @property
    def is_default(self) -> bool:
        return self.name is None

    @property
    def components(self) -> Tuple[str, ...]:
        return BASE_COMPONENTS + tuple(self.backends)

    def component_name(self, component: str, *, namespaced: bool = True) -> str:
        base = self.base_name if namespaced else DEFAULT_BASE_NAME
        return f"{base}-{component}"

    def owns(self, library_name: str) -> bool:
        """True when ``library_name`` belongs to the reused ggml family."""

        bases = {DEFAULT_BASE_NAME, self.base_name}
        if library_name in bases:
            return True
        return any(library_name.startswith(f"{base}-") for base in bases)


@dataclass(frozen=True, slots=True)
class RewriteRule:
    pattern: str
    replacement: str

    def apply(self, text: str) -> str:
        if self.replacement.startswith(self.pattern) and self.replacement != self.pattern:
            # Skip occurrences that were already rewritten on a previous run.
            tail = self.replacement[len(self.pattern):]
            regex = re.compile(re.escape(self.pattern) + f"(?!{re.escape(tail)})")
            return regex.sub(lambda _match: self.replacement, text)
        return text.replace(self.pattern, self.replacement)


def build_rewrite_rules(spec: NamespaceSpec) -> List[RewriteRule]:
    if spec.is_default:
        return []
    ns = spec.base_name
    rules = [
        RewriteRule("find_library(GGML_BASE_LIBRARY ggml-base", f"find_library(GGML_BASE_LIBRARY {ns}-base"),
        RewriteRule("find_library(GGML_LIBRARY ggml", f"find_library(GGML_LIBRARY {ns}"),
        RewriteRule("ggml-cpu", f"{ns}-cpu"),
    ]
    rules.extend(RewriteRule(f"ggml-{backend}", f"{ns}-{backend}") for backend in spec.backends)
    rules.extend(
        [
            RewriteRule('"ggml"', f'"{ns}"'),
            RewriteRule("'ggml'", f"'{ns}'"),
            RewriteRule('"ggml-base"', f'"{ns}-base"'),
            RewriteRule("'ggml-base'", f"'{ns}-base'"),
        ]
    )
    return rules


def rewrite_config_text(text: str, rules: Sequence[RewriteRule]) -> str:
    if DEFAULT_BASE_NAME not in text:
        return text
    for rule in rules:
        text = rule.apply(text)
    return text


class NamespaceRewriter:
    def __init__(
        self,
        spec: NamespaceSpec,
        layout: LibraryLayout,
        *,
        console: Console | None = None,
        strategies: Sequence[Tuple[str, MaterializeStrategy]] = DEFAULT_STRATEGIES,
    ) -> None:
        self.spec = spec
        self._layout = layout
        self._console = console or Console()
        self._strategies = strategies
        self.rules = build_rewrite_rules(spec)

    def rewrite(self, text: str) -> str:
        return rewrite_config_text(text, self.rules)

    def patch_config_script(self, path: Path) -> bool:
        """Rewrite ``path`` in place; returns whether the file changed."""

        if self.spec.is_default:
            return False
        if not path.is_file():
            self._console.debug(f"No package script to patch at {path}")
            return False
        try:
            original = path.read_text(encoding="utf-8")
        except (OSError, UnicodeError) as exc:
            self._console.warning(
                f"Could not read {path} to patch: {exc}. CMake may fail to find namespaced libraries."
            )
            return False

        patched = self.rewrite(original)
        if patched == original:
            self._console.debug(f"{path} already uses {self.spec.base_name}")
            return False
        try:
            path.write_text(patched, encoding="utf-8")
        except (OSError, UnicodeError) as exc:
            self._console.warning(
                f"Failed to patch {path}: {exc}. CMake may fail to find namespaced libraries."
            )
            return False
        self._console.info(f"Patched {path.name} to use namespaced library {self.spec.base_name}")
        return True

    def create_fallback_aliases(self, lib_dir: Path) -> List[MaterializeResult]:
        """Give namespaced component libraries their default ggml names as well."""

        results: List[MaterializeResult] = []
        if self.spec.is_default or not lib_dir.is_dir():
            return results
        for component in self.spec.components:
            namespaced = lib_dir / self._layout.link_filename(self.spec.component_name(component))
            if not namespaced.is_file():
                continue
            alias = lib_dir / self._layout.link_filename(self.spec.component_name(component, namespaced=False))
            result = materialize(namespaced, alias, strategies=self._strategies)
            if result.skipped:
                self._console.debug(f"Fallback library {alias.name} already present")
            elif result.ok:
                self._console.debug(f"Created fallback library {alias.name} ({result.strategy})")
            else:
                self._console.warning(
                    f"Could not create fallback library {alias.name}: {result.describe_errors()}"
                )
            results.append(result)
        return results


__all__ = [
    "BASE_COMPONENTS",
    "DEFAULT_BASE_NAME",
    "NamespaceRewriter",
    "NamespaceSpec",
    "RewriteRule",
    "build_rewrite_rules",
    "rewrite_config_text",
]
