# Copyright 2024 The Fuchsia Authors. All rights reserved.
# Use of this source code is governed by a BSD-style license that can be
# found in the LICENSE file.
"""Time helpers shared by the timeline model."""

import datetime
from typing import Optional

_ONE_MICROSECOND: datetime.timedelta = datetime.timedelta(microseconds=1)


def from_microseconds(micros: int | float) -> datetime.timedelta:
    return datetime.timedelta(microseconds=micros)


def to_microseconds(delta: datetime.timedelta) -> int:
    return delta // _ONE_MICROSECOND


class TimeRange:
    """A span of time whose bounds may not be known yet.

    Bounds are offsets from the trace clock epoch. A range with both bounds set
    is well formed when `end >= start`.
    """

    def __init__(
        self,
        start: Optional[datetime.timedelta] = None,
        end: Optional[datetime.timedelta] = None,
    ) -> None:
        self.start: Optional[datetime.timedelta] = start
        self.end: Optional[datetime.timedelta] = end

    @staticmethod
    def from_microseconds(
        start: Optional[int], end: Optional[int] = None
    ) -> "TimeRange":
        return TimeRange(
            start=None if start is None else from_microseconds(start),
            end=None if end is None else from_microseconds(end),
        )

    @property
    def duration(self) -> Optional[datetime.timedelta]:
        if self.start is None or self.end is None:
            return None
        return self.end - self.start

    def is_complete(self) -> bool:
        return self.start is not None and self.end is not None

    def is_well_formed(self) -> bool:
        return self.is_complete() and self.end >= self.start  # type: ignore[operator]

    def contains(self, other: "TimeRange") -> bool:
        """Whether `other` lies within this range, bounds inclusive.

        An unknown bound on this range does not constrain `other`. An unknown
        bound on `other` is only accepted when the matching bound here is
        unknown too.
        """
        if self.start is not None:
            if other.start is None or other.start < self.start:
                return False
        if self.end is not None:
            if other.end is None or other.end > self.end:
                return False
        return True

    def copy(self) -> "TimeRange":
        return TimeRange(self.start, self.end)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TimeRange):
            return False
        return self.start == other.start and self.end == other.end

    def __str__(self) -> str:
        def as_string(bound: Optional[datetime.timedelta]) -> str:
            if bound is None:
                return "?"
            return f"{to_microseconds(bound)} μs"

        return f"[{as_string(self.start)} - {as_string(self.end)}]"

    def __repr__(self) -> str:
        return f"TimeRange{self}"
