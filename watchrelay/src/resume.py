from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum


class ResumeKind(StrEnum):
    UNSET = "unset"
    NULL = "null"
    ZERO = "zero"
    VALUE = "value"


@dataclass(frozen=True)
class ResumePoint:
    """A position in the remote change history (a ``resourceVersion``).

    ``NULL`` starts the watch from "now" with no history replay, ``ZERO``
    replays everything the server still has.  Only ``VALUE`` points carry an
    ordering token.
    """

    kind: ResumeKind
    value: int | None = None

    @classmethod
    def unset(cls) -> ResumePoint:
        return cls(ResumeKind.UNSET)

    @classmethod
    def null(cls) -> ResumePoint:
        return cls(ResumeKind.NULL)

    @classmethod
    def zero(cls) -> ResumePoint:
        return cls(ResumeKind.ZERO)

    @classmethod
    def at(cls, value: int) -> ResumePoint:
        if value < 0:
            raise ValueError(f"resourceVersion must be >= 0, got: {value}")
        if value == 0:
            return cls.zero()
        return cls(ResumeKind.VALUE, value)

    @property
    def is_set(self) -> bool:
        return self.kind is not ResumeKind.UNSET

    @property
    def ordinal(self) -> int:
        """Ordering key; anything that is not a ``VALUE`` sorts as 0."""
        return self.value if self.kind is ResumeKind.VALUE and self.value is not None else 0

    def query_value(self) -> str | None:
        """Return the ``resourceVersion`` query parameter, or None to omit it."""
        if self.kind is ResumeKind.VALUE:
            return str(self.value)
        if self.kind is ResumeKind.ZERO:
            return "0"
        return None

    def __str__(self) -> str:
        if self.kind is ResumeKind.VALUE:
            return str(self.value)
        if self.kind is ResumeKind.ZERO:
            return "0"
        return self.kind.value


def parse_token(raw: object) -> ResumePoint | None:
    """Parse a raw ``resourceVersion`` token.

    Returns None when *raw* is neither absent nor a non-negative integer
    token.  Absent values (``None`` or an empty string) parse to ``NULL``.
    """
    if raw is None:
        return ResumePoint.null()
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return ResumePoint.at(raw) if raw >= 0 else None
    if isinstance(raw, str):
        token = raw.strip()
        if not token:
            return ResumePoint.null()
        if token.isascii() and token.isdigit():
            return ResumePoint.at(int(token))
    return None


def coerce_token(raw: object) -> ResumePoint:
    """Parse *raw*, falling back to ``NULL`` for malformed tokens."""
    parsed = parse_token(raw)
    return parsed if parsed is not None else ResumePoint.null()


def sanitize(point: ResumePoint) -> ResumePoint:
    """Final check before a session is opened: never open with an unset point."""
    if not point.is_set:
        return ResumePoint.null()
    if point.kind is ResumeKind.VALUE and (point.value is None or point.value < 0):
        return ResumePoint.null()
    return point


def select_resume_point(
    forced: ResumePoint | None,
    latest: ResumePoint,
    previous: ResumePoint,
    bootstrap: Callable[[], ResumePoint],
) -> tuple[ResumePoint, str]:
    """Pick the resume-point for the next connection attempt.

    Precedence, first match wins:

    1. ``forced`` -- one-shot override left behind by Gone recovery.
    2. ``latest`` -- highest resourceVersion delivered by this controller.
    3. ``previous`` -- the value chosen for an earlier attempt that never
       delivered an event.
    4. ``bootstrap()`` -- the configured initial strategy, called lazily
       because it may hit the network.

    Returns the sanitized point together with the name of the source.
    """
    if forced is not None:
        return sanitize(forced), "forced"
    if latest.kind is ResumeKind.VALUE:
        return sanitize(latest), "latest"
    if previous.is_set:
        return sanitize(previous), "previous"
    return sanitize(bootstrap()), "bootstrap"
