"""Native build orchestrator for llama.cpp and its ggml backends."""
from __future__ import annotations

from .cli import main

__all__ = ["main"]
