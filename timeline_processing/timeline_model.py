# Copyright 2024 The Fuchsia Authors. All rights reserved.
# Use of this source code is governed by a BSD-style license that can be
# found in the LICENSE file.
"""Reconstructed timeline data structures: event trees, frames and the result
store they are collected into.
"""

import datetime
import enum
import logging
import weakref
from typing import Any, Dict, Iterator, List, Optional, Set

from timeline_processing import trace_time
from timeline_processing.trace_model import TraceEvent

_LOGGER: logging.Logger = logging.getLogger("TimelineModel")


class TimelineEventType(enum.Enum):
    """The logical track a timeline event was reconstructed on."""

    UI = "ui"
    RASTER = "raster"
    ASYNC = "async"
    UNKNOWN = "unknown"


class TimelineEvent:
    """A reconstructed duration span and the spans nested inside it.

    Children are owned by their parent's `children` list. The parent link is a
    weak reference, so a subtree detached from its parent does not keep the
    parent alive, and roots are kept alive only by whoever holds them (usually
    the `TimelineData` result store or a `Frame`).
    """

    def __init__(
        self,
        name: str,
        category: str,
        type: TimelineEventType,
        time: Optional[trace_time.TimeRange] = None,
        args: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.name: str = name
        self.category: str = category
        self.type: TimelineEventType = type
        self.time: trace_time.TimeRange = (
            trace_time.TimeRange() if time is None else time
        )
        self.args: Dict[str, Any] = {} if args is None else args.copy()
        self.children: List[TimelineEvent] = []
        self._parent: Optional[weakref.ReferenceType[TimelineEvent]] = None

    @classmethod
    def from_trace_event(
        cls, event: TraceEvent, type: TimelineEventType
    ) -> "TimelineEvent":
        return cls(
            event.name,
            event.category,
            type,
            time=trace_time.TimeRange.from_microseconds(
                event.timestamp_micros
            ),
            args=event.args,
        )

    @property
    def parent(self) -> Optional["TimelineEvent"]:
        return None if self._parent is None else self._parent()

    def is_root(self) -> bool:
        return self.parent is None

    def is_closed(self) -> bool:
        return self.time.end is not None

    def add_child(self, child: "TimelineEvent") -> None:
        child._parent = weakref.ref(self)
        self.children.append(child)

    def remove_child(self, child: "TimelineEvent") -> None:
        # Identity, not equality: siblings may look alike.
        for i, c in enumerate(self.children):
            if c is child:
                del self.children[i]
                child._parent = None
                return
        raise ValueError(f"{child.name} is not a child of {self.name}")

    def last_child(self) -> Optional["TimelineEvent"]:
        return self.children[-1] if self.children else None

    @property
    def root(self) -> "TimelineEvent":
        node = self
        while (parent := node.parent) is not None:
            node = parent
        return node

    @property
    def depth(self) -> int:
        depth = 0
        node = self.parent
        while node is not None:
            depth += 1
            node = node.parent
        return depth

    def matches(self, event: TraceEvent) -> bool:
        """Whether this node was begun by a record identical to `event`."""
        return (
            self.name == event.name
            and self.category == event.category
            and self.time.start is not None
            and trace_time.to_microseconds(self.time.start)
            == event.timestamp_micros
        )

    def iter_tree(self) -> Iterator["TimelineEvent"]:
        """Yields this node and its descendants in pre-order."""
        stack: List[TimelineEvent] = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def format(self, indent: str = "  ") -> str:
        """Renders the subtree one node per line, indented by depth."""
        base_depth = self.depth
        lines: List[str] = []
        for node in self.iter_tree():
            level = node.depth - base_depth + 1
            lines.append(f"{indent * level}{node.name} {node.time}\n")
        return "".join(lines)

    def __str__(self) -> str:
        return self.format()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name!r}, {self.type.value}, {self.time})"


class AsyncTimelineEvent(TimelineEvent):
    """A span correlated by async id rather than by nesting on one thread.

    Args:
        async_id: The id shared by the begin and end records.
        parent_id: The async id of the logical parent, if the begin record
            named one.
    """

    def __init__(
        self,
        name: str,
        category: str,
        async_id: str,
        parent_id: Optional[str] = None,
        time: Optional[trace_time.TimeRange] = None,
        args: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            name, category, TimelineEventType.ASYNC, time=time, args=args
        )
        self.async_id: str = async_id
        self.parent_id: Optional[str] = parent_id
        # Child async id -> child that has begun but not ended yet.
        self.open_children: Dict[str, AsyncTimelineEvent] = {}

    def is_closed_deep(self) -> bool:
        return all(node.is_closed() for node in self.iter_tree())


class FrameState(enum.Enum):
    """Progress of a frame towards being ready for the timeline."""

    # No flow attached yet.
    EMPTY = enum.auto()
    # Exactly one of the UI and raster flows is attached.
    PARTIAL = enum.auto()
    # Both flows are attached but the pipeline item has not ended.
    FLOWS_SET = enum.auto()
    READY = enum.auto()


class Frame:
    """Correlates the UI and raster work that produced one rendered frame.

    Args:
        id: The pipeline item id that ties the work together.
    """

    def __init__(self, id: str) -> None:
        self.id: str = id
        # Scheduling window reported by the pipeline item markers.
        self.pipeline_item_time: trace_time.TimeRange = trace_time.TimeRange()
        # Time covered by the attached flows.
        self.time: trace_time.TimeRange = trace_time.TimeRange()
        self.ui_event_flow: Optional[TimelineEvent] = None
        self.raster_event_flow: Optional[TimelineEvent] = None
        self.state: FrameState = FrameState.EMPTY

    @property
    def ready(self) -> bool:
        return self.state is FrameState.READY

    def event_flow(self, type: TimelineEventType) -> Optional[TimelineEvent]:
        if type is TimelineEventType.UI:
            return self.ui_event_flow
        if type is TimelineEventType.RASTER:
            return self.raster_event_flow
        raise ValueError(f"Frames have no {type.value} flow")

    def set_event_flow(
        self, event: Optional[TimelineEvent], type: TimelineEventType
    ) -> None:
        """Attaches `event` as the frame's UI or raster flow.

        The derived start is the earliest start of the attached flows. The
        derived end only ever moves later: a flow that completes before the
        current end never retracts it.
        """
        if type is TimelineEventType.UI:
            self.ui_event_flow = event
        elif type is TimelineEventType.RASTER:
            self.raster_event_flow = event
        else:
            raise ValueError(f"Frames have no {type.value} flow")

        starts = [
            flow.time.start
            for flow in (self.ui_event_flow, self.raster_event_flow)
            if flow is not None and flow.time.start is not None
        ]
        self.time.start = min(starts) if starts else None
        if event is not None and event.time.end is not None:
            if self.time.end is None or event.time.end > self.time.end:
                self.time.end = event.time.end
        self._update_state()

    def set_pipeline_item_end(self, end: datetime.timedelta) -> None:
        self.pipeline_item_time.end = end
        self._update_state()

    def _update_state(self) -> None:
        flow_count = (self.ui_event_flow is not None) + (
            self.raster_event_flow is not None
        )
        if flow_count == 0:
            self.state = FrameState.EMPTY
        elif flow_count == 1:
            self.state = FrameState.PARTIAL
        elif self.pipeline_item_time.end is None:
            self.state = FrameState.FLOWS_SET
        else:
            self.state = FrameState.READY

    def __str__(self) -> str:
        return f"Frame {self.id} {self.time} ({self.state.name})"


class TimelineData:
    """The result store: completed roots and completed frames, in the order
    they were completed.
    """

    def __init__(self) -> None:
        self.timeline_events: List[TimelineEvent] = []
        self.frames: List[Frame] = []
        # id() of every stored entry. Entries are held by the lists above, so
        # their ids cannot be reused while they are stored.
        self._stored_ids: Set[int] = set()

    def add_timeline_event(self, event: TimelineEvent) -> None:
        if id(event) in self._stored_ids:
            _LOGGER.debug(f"Ignoring repeated root {event!r}")
            return
        self._stored_ids.add(id(event))
        self.timeline_events.append(event)

    def add_frame(self, frame: Frame) -> None:
        if id(frame) in self._stored_ids:
            _LOGGER.debug(f"Ignoring repeated frame {frame.id}")
            return
        self._stored_ids.add(id(frame))
        self.frames.append(frame)

    def clear(self) -> None:
        self.timeline_events = []
        self.frames = []
        self._stored_ids = set()
