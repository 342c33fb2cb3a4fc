"""Exception types raised by the orchestrator.

Everything deriving from :class:`OrchestrationError` is fatal: the CLI stops
and reports the message. Recoverable problems are reported through
:class:`llamabuild.console.Console` warnings instead.
"""
from __future__ import annotations

from typing import Iterable


class OrchestrationError(RuntimeError):
    """Base class for fatal orchestration failures."""


class UnsupportedTargetError(OrchestrationError, ValueError):
    def __init__(self, triple: str, detail: str | None = None) -> None:
        message = f"Unsupported target platform '{triple}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.triple = triple


class UnsupportedConfigurationError(OrchestrationError, ValueError):
    """A feature combination that the build cannot honour."""


class ToolchainNotFoundError(OrchestrationError):
    """A required compiler or cross toolchain is missing or incomplete."""


class MissingEnvironmentError(OrchestrationError):
    def __init__(self, variables: Iterable[str], remediation: str) -> None:
        names = list(variables)
        joined = ", ".join(names)
        label = "variable" if len(names) == 1 else "one of the variables"
        super().__init__(f"Missing environment {label} {joined}. {remediation}")
        self.variables = tuple(names)


class ExternalBuildError(OrchestrationError):
    """The external CMake configure or build step failed."""


class EmptyArtifactSetError(OrchestrationError):
    """The external build succeeded but produced nothing to link."""


class DuplicateArtifactError(OrchestrationError):
    """Two discovered library files map to the same logical name."""


class StagingError(OrchestrationError):
    """A runtime library could not be placed next to the consumer binaries."""


__all__ = [
    "DuplicateArtifactError",
    "EmptyArtifactSetError",
    "ExternalBuildError",
    "MissingEnvironmentError",
    "OrchestrationError",
    "StagingError",
    "ToolchainNotFoundError",
    "UnsupportedConfigurationError",
    "UnsupportedTargetError",
]
