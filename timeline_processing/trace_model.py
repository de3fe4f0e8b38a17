# Copyright 2024 The Fuchsia Authors. All rights reserved.
# Use of this source code is governed by a BSD-style license that can be
# found in the LICENSE file.
"""Decoded trace record data structures."""

import dataclasses
import enum
import math
from typing import Any, Dict, Optional


class TraceEventPhase(enum.Enum):
    """Phase of a trace record, keyed by its Chrome trace `ph` value."""

    BEGIN = "B"
    END = "E"
    COMPLETE = "X"
    INSTANT = "i"
    ASYNC_BEGIN = "b"
    ASYNC_INSTANT = "n"
    ASYNC_END = "e"
    FLOW_START = "s"
    FLOW_STEP = "t"
    FLOW_END = "f"

    def is_async(self) -> bool:
        return self in _ASYNC_PHASES

    def is_flow(self) -> bool:
        return self in _FLOW_PHASES


_ASYNC_PHASES = frozenset(
    [
        TraceEventPhase.ASYNC_BEGIN,
        TraceEventPhase.ASYNC_INSTANT,
        TraceEventPhase.ASYNC_END,
    ]
)
_FLOW_PHASES = frozenset(
    [
        TraceEventPhase.FLOW_START,
        TraceEventPhase.FLOW_STEP,
        TraceEventPhase.FLOW_END,
    ]
)

# "I" is the deprecated spelling of an instant event.
_PHASE_ALIASES: Dict[str, TraceEventPhase] = {"I": TraceEventPhase.INSTANT}


def _as_string_id(obj: object) -> str:
    """Normalizes an `id` field value into a string."""
    if isinstance(obj, str):
        return obj
    elif isinstance(obj, bool):
        raise TypeError(f"Got unexpected bool for id field value: {obj}")
    elif isinstance(obj, int):
        return str(obj)
    elif isinstance(obj, float):
        if math.isnan(obj):
            raise TypeError("Got NaN double for id field value")
        elif obj % 1.0 != 0.0:
            raise TypeError(
                f"Got float with non-zero decimal place ({obj}) for id "
                f"field value"
            )
        else:
            return str(int(obj))
    else:
        raise TypeError(
            f"Got unexpected type {obj.__class__.__name__} for id "
            f"field value: {obj}"
        )


@dataclasses.dataclass(frozen=True)
class TraceEvent:
    """One decoded trace record.

    Args:
        name: Name of the traced span or marker.
        category: Trace category the record was emitted under.
        phase: Which kind of record this is.
        thread_id: Id of the emitting thread.
        process_id: Id of the emitting process.
        timestamp_micros: Trace clock time of the record in microseconds.
        args: Extra arguments attached to the record.
        async_id: Correlation id of async and flow records.
        duration_micros: Duration of a complete record in microseconds.
    """

    name: str
    category: str
    phase: TraceEventPhase
    thread_id: int
    process_id: int
    timestamp_micros: int
    args: Dict[str, Any] = dataclasses.field(default_factory=dict)
    async_id: Optional[str] = None
    duration_micros: Optional[int] = None

    def __post_init__(self) -> None:
        # Frozen, so the copy has to bypass __setattr__.
        object.__setattr__(self, "args", dict(self.args))

    @staticmethod
    def from_dict(event_dict: Dict[str, Any]) -> "TraceEvent":
        """Builds a record from a Chrome trace format event dictionary.

        Raises:
            TypeError: A required field is missing or has the wrong type, or
                the phase is not one that TraceEvent represents.
        """

        def validate_field_type(field: str, ty: type | tuple[type, ...]) -> None:
            if not (field in event_dict and isinstance(event_dict[field], ty)):
                raise TypeError(
                    f"Expected {event_dict} to have field '{field}' of type "
                    f"'{ty}'"
                )

        validate_field_type("ph", str)
        validate_field_type("cat", str)
        validate_field_type("name", str)
        validate_field_type("ts", (int, float))
        validate_field_type("pid", int)
        validate_field_type("tid", (int, float))
        if "args" in event_dict:
            validate_field_type("args", dict)

        phase_str: str = event_dict["ph"]
        phase: Optional[TraceEventPhase] = _PHASE_ALIASES.get(phase_str)
        if phase is None:
            try:
                phase = TraceEventPhase(phase_str)
            except ValueError as e:
                raise TypeError(
                    f"Expected 'ph' (phase field) of dict to be one of "
                    f"{[p.value for p in TraceEventPhase]}: {event_dict}"
                ) from e

        duration_micros: Optional[int] = None
        if phase is TraceEventPhase.COMPLETE:
            validate_field_type("dur", (int, float))
            duration_micros = int(event_dict["dur"])

        async_id: Optional[str] = None
        if "id" in event_dict:
            async_id = _as_string_id(event_dict["id"])
        elif "id2" in event_dict:
            id2 = event_dict["id2"]
            if not isinstance(id2, dict):
                raise TypeError(f"Expected 'id2' to be a dict: {event_dict}")
            if "local" in id2:
                async_id = _as_string_id(id2["local"])
            elif "global" in id2:
                async_id = _as_string_id(id2["global"])

        return TraceEvent(
            name=event_dict["name"],
            category=event_dict["cat"],
            phase=phase,
            thread_id=int(event_dict["tid"]),
            process_id=event_dict["pid"],
            timestamp_micros=int(event_dict["ts"]),
            args=event_dict.get("args", {}),
            async_id=async_id,
            duration_micros=duration_micros,
        )

    def to_dict(self) -> Dict[str, Any]:
        """The inverse of `from_dict`, used to write traces back out."""
        result: Dict[str, Any] = {
            "name": self.name,
            "cat": self.category,
            "ph": self.phase.value,
            "tid": self.thread_id,
            "pid": self.process_id,
            "ts": self.timestamp_micros,
            "args": dict(self.args),
        }
        if self.async_id is not None:
            result["id"] = self.async_id
        if self.duration_micros is not None:
            result["dur"] = self.duration_micros
        return result
