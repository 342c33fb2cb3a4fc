"""Feature toggles that select what the native build produces."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Tuple

from .errors import UnsupportedConfigurationError


class Feature(str, Enum):
    DYNAMIC_LINK = "dynamic-link"
    USE_SHARED_GGML = "use-shared-ggml"
    NAMESPACE_LLAMA = "namespace-llama"
    NAMESPACE_WHISPER = "namespace-whisper"
    CUDA = "cuda"
    CUDA_NO_VMM = "cuda-no-vmm"
    VULKAN = "vulkan"
    METAL = "metal"
    OPENMP = "openmp"
    NATIVE = "native"
    MTMD = "mtmd"


FEATURE_ENV_PREFIX = "CARGO_FEATURE_"

NAMESPACE_FEATURES: Tuple[Tuple[Feature, str], ...] = (
    (Feature.NAMESPACE_LLAMA, "ggml_llama"),
    (Feature.NAMESPACE_WHISPER, "ggml_whisper"),
)

GPU_BACKEND_FEATURES: Tuple[Tuple[Feature, str], ...] = (
    (Feature.CUDA, "cuda"),
    (Feature.VULKAN, "vulkan"),
    (Feature.METAL, "metal"),
)


def _parse_feature(name: str) -> Feature:
    normalized = name.strip().lower().replace("_", "-")
    try:
        return Feature(normalized)
    except ValueError:
        available = ", ".join(feature.value for feature in Feature)
        raise ValueError(f"Unknown feature '{name}'. Available features: {available}") from None


@dataclass(frozen=True, slots=True)
class FeatureSet:
    enabled: frozenset[Feature] = frozenset()

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "FeatureSet":
        features = set()
        for raw in names:
            for part in str(raw).split(","):
                if part.strip():
                    features.add(_parse_feature(part))
        return cls(frozenset(features))

    @classmethod
    def from_environment(cls, env: Mapping[str, str], *, prefix: str = FEATURE_ENV_PREFIX) -> "FeatureSet":
        """Read ``CARGO_FEATURE_<NAME>`` style variables; unknown names are ignored."""

        features = set()
        for key in env:
            if not key.startswith(prefix):
                continue
            candidate = key[len(prefix):].lower().replace("_", "-")
            try:
                features.add(Feature(candidate))
            except ValueError:
                continue
        return cls(frozenset(features))

    def union(self, other: "FeatureSet") -> "FeatureSet":
        return FeatureSet(self.enabled | other.enabled)

    def __contains__(self, feature: object) -> bool:
        return feature in self.enabled

    def has(self, feature: Feature) -> bool:
        return feature in self.enabled

    @property
    def shared_linking(self) -> bool:
        return Feature.DYNAMIC_LINK in self.enabled

    @property
    def reuse_external(self) -> bool:
        return Feature.USE_SHARED_GGML in self.enabled

    @property
    def namespace(self) -> str | None:
        selected = [name for feature, name in NAMESPACE_FEATURES if feature in self.enabled]
        if len(selected) > 1:
            raise UnsupportedConfigurationError(
                "Only one namespace feature may be enabled at a time "
                f"(got {', '.join(selected)}); pick namespace-llama or namespace-whisper"
            )
        return selected[0] if selected else None

    @property
    def gpu_backends(self) -> Tuple[str, ...]:
        return tuple(name for feature, name in GPU_BACKEND_FEATURES if feature in self.enabled)

    def names(self) -> list[str]:
        return sorted(feature.value for feature in self.enabled)


__all__ = [
    "FEATURE_ENV_PREFIX",
    "Feature",
    "FeatureSet",
    "GPU_BACKEND_FEATURES",
    "NAMESPACE_FEATURES",
]
