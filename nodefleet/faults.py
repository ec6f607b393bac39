"""Failure classification and backoff policy."""

from __future__ import annotations

import random
from dataclasses import dataclass

from nodefleet.client import NodeClientError
from nodefleet.models import FailureKind

_IDENTITY_FAULTS = frozenset({FailureKind.PROXY, FailureKind.AUTHENTICATE})


def classify(exc: BaseException) -> FailureKind:
    """Return the structured kind of *exc*; non-client errors are ``UNKNOWN``."""
    if isinstance(exc, NodeClientError):
        return exc.kind
    return FailureKind.UNKNOWN


@dataclass(frozen=True)
class BackoffPolicy:
    """Chooses how long a faulted node waits before registering again.

    Proxy and authentication faults rarely clear quickly, so they wait
    ``long_delay``. Everything else waits a random delay in the short window.
    """

    short_min: float = 30.0
    short_max: float = 150.0
    long_delay: float = 900.0

    def __post_init__(self) -> None:
        if self.short_min < 0 or self.short_max < self.short_min:
            raise ValueError(
                f"Invalid short backoff window [{self.short_min}, {self.short_max}]"
            )
        if self.long_delay < 0:
            raise ValueError(f"Invalid long backoff {self.long_delay}")

    @staticmethod
    def is_identity_fault(kind: FailureKind) -> bool:
        return kind in _IDENTITY_FAULTS

    def delay_for(self, kind: FailureKind) -> float:
        if self.is_identity_fault(kind):
            return self.long_delay
        return random.uniform(self.short_min, self.short_max)
