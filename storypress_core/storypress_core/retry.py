"""Exponential backoff parameters for retried background work."""

from __future__ import annotations

import random

from pydantic import BaseModel, Field


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_attempts: int = Field(
        default=5,
        ge=1,
        description="Total attempts (first run included) before a job is retired.",
    )
    base_delay: float = Field(
        default=30.0,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=3600.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay after the *attempt*-th failure (0-based)."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay
