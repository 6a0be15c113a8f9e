"""Session configuration."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SessionOptions:
    """Immutable session configuration.

    Args:
        seed: Seed of the session PRNG used by random operations
        target: Free-form execution target, kept for saved models
    """
    seed: int = 0
    target: str = ""
