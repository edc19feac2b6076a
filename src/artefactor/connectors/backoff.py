"""
Exponential backoff for collaborator retries.

Retry policy belongs to the transfer and runtime clients, never to the cache
or sync layers:
- Exponential backoff with jitter between attempts
- Respect Retry-After when the server sends one
- Give up after max_retries and surface the last error
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass


@dataclass
class BackoffConfig:
    """Configuration for exponential backoff."""

    base_delay_ms: int = 1000
    max_delay_ms: int = 60000
    multiplier: float = 2.0
    jitter_factor: float = 0.5  # 0.5 = ±50% jitter
    max_retries: int = 5

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be in [0, 1], got {self.jitter_factor}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


@dataclass
class BackoffState:
    """Mutable state for backoff tracking."""

    attempt: int = 0
    last_error_time_ms: int = 0
    consecutive_errors: int = 0

    def reset(self) -> None:
        """Reset backoff state after successful operation."""
        self.attempt = 0
        self.consecutive_errors = 0

    def record_error(self) -> None:
        """Record an error occurrence."""
        self.attempt += 1
        self.consecutive_errors += 1
        self.last_error_time_ms = int(time.time() * 1000)

    def exhausted(self, config: BackoffConfig) -> bool:
        """True once more errors were recorded than retries allowed."""
        return self.attempt > config.max_retries


def compute_backoff_delay(
    config: BackoffConfig,
    state: BackoffState,
    retry_after_ms: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Compute backoff delay with exponential increase and jitter.

    Respects Retry-After header when provided.

    Args:
        config: Backoff configuration.
        state: Current backoff state.
        retry_after_ms: Server-provided retry delay (Retry-After header).
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Delay in milliseconds before next retry.
    """
    if state.attempt == 0:
        return 0

    # Exponential backoff
    delay = config.base_delay_ms * (config.multiplier ** (state.attempt - 1))

    # Apply jitter: delay * (1 - jitter_factor) to delay * (1 + jitter_factor)
    jitter_min = 1.0 - config.jitter_factor
    jitter_max = 1.0 + config.jitter_factor
    if rng is not None:
        jitter_multiplier = rng.uniform(jitter_min, jitter_max)
    else:
        jitter_multiplier = random.uniform(jitter_min, jitter_max)
    delay = delay * jitter_multiplier

    # Cap at max delay
    delay = min(delay, config.max_delay_ms)

    # Respect Retry-After if provided (server knows best)
    if retry_after_ms is not None and retry_after_ms > 0:
        delay = max(delay, retry_after_ms)

    return int(delay)


def parse_retry_after(value: str | None) -> int | None:
    """Parse a Retry-After header given in seconds into milliseconds."""
    if not value:
        return None
    try:
        return int(float(value) * 1000)
    except ValueError:
        return None
