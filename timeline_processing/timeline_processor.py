# Copyright 2024 The Fuchsia Authors. All rights reserved.
# Use of this source code is governed by a BSD-style license that can be
# found in the LICENSE file.
"""Reconstructs timeline event trees and frames from a stream of trace records.

Records are consumed in the order they are given. Duration records are nested
with one stack per logical track (UI, raster or unknown), async records are
correlated by async id, and pipeline item markers group one UI root and one
raster root into a `Frame`.

The processor favors best-effort reconstruction over validation. Anomalies in
the stream never raise; they are dropped, counted in `dropped_events` and
reported as warnings at the end of each `process_timeline` call.
"""

import asyncio
import collections
import datetime
import logging
from typing import Dict, Iterable, List, Optional, Set

from timeline_processing import trace_time
from timeline_processing.timeline_model import (
    AsyncTimelineEvent,
    Frame,
    TimelineData,
    TimelineEvent,
    TimelineEventType,
)
from timeline_processing.trace_model import TraceEvent, TraceEventPhase

_LOGGER: logging.Logger = logging.getLogger("TimelineEventProcessor")

_PIPELINE_ITEM_EVENT_NAME: str = "PipelineItem"
_PARENT_ID_ARG: str = "parentId"
_YIELD_EVERY: int = 1000

_PIPELINE_BEGIN_PHASES = frozenset(
    [
        TraceEventPhase.FLOW_START,
        TraceEventPhase.BEGIN,
        TraceEventPhase.ASYNC_BEGIN,
    ]
)
_PIPELINE_END_PHASES = frozenset(
    [
        TraceEventPhase.FLOW_END,
        TraceEventPhase.END,
        TraceEventPhase.ASYNC_END,
    ]
)

# Tracks that nest duration events with a stack.
_DURATION_TRACKS = (
    TimelineEventType.UI,
    TimelineEventType.RASTER,
    TimelineEventType.UNKNOWN,
)


class TimelineEventProcessor:
    """Turns trace records into timeline event trees and frames.

    Usage:

    ```
    processor = TimelineEventProcessor()
    processor.prime_thread_ids(ui_thread_ids=1, raster_thread_ids=2)
    processor.process_timeline(events)
    processor.data.timeline_events  # Completed roots.
    processor.data.frames  # Completed frames.
    ```

    Ids of completed frames are remembered so that a late pipeline item
    marker never recreates them. The set grows by one entry per completed
    frame across every batch of a stream and is only emptied by `reset`.

    Args:
        data: The result store to fill. A new one is created when None.
        pipeline_item_event_name: Name of the markers that delimit a frame's
            pipeline item.
        async_categories: Categories whose records are handled as async
            events whatever their phase.
        yield_every: Number of records `process_timeline_async` processes
            between yields to the event loop.
    """

    def __init__(
        self,
        data: Optional[TimelineData] = None,
        pipeline_item_event_name: str = _PIPELINE_ITEM_EVENT_NAME,
        async_categories: Iterable[str] = (),
        yield_every: int = _YIELD_EVERY,
    ) -> None:
        if yield_every <= 0:
            raise ValueError(
                f"yield_every must be positive, got {yield_every}"
            )
        self.data: TimelineData = TimelineData() if data is None else data
        self.pipeline_item_event_name: str = pipeline_item_event_name
        self.async_categories: frozenset[str] = frozenset(async_categories)
        self.yield_every: int = yield_every

        self.thread_roles: Dict[int, TimelineEventType] = {}
        self.current_duration_events: Dict[
            TimelineEventType, List[TimelineEvent]
        ] = {track: [] for track in _DURATION_TRACKS}
        self.open_async_events: Dict[str, AsyncTimelineEvent] = {}
        # Closed async roots with descendants that are still open.
        self._unfinished_async_roots: List[AsyncTimelineEvent] = []
        self.pending_frames: Dict[str, Frame] = {}
        # Frames that already left `pending_frames`. They are never recreated.
        self._retired_frame_ids: Set[str] = set()
        self.dropped_events: collections.Counter[str] = collections.Counter()
        self._pass_in_progress: bool = False

    def prime_thread_ids(
        self,
        ui_thread_ids: int | Iterable[int] = (),
        raster_thread_ids: int | Iterable[int] = (),
    ) -> None:
        """Declares which threads carry UI and raster work.

        Several threads may share a role; their records are nested on the
        same track. Records from any other thread are nested on the unknown
        track.

        Raises:
            RuntimeError: Records were processed since the last `reset`.
        """
        if self._pass_in_progress:
            raise RuntimeError(
                "Thread ids cannot change while a pass is in progress, "
                "call reset() first"
            )

        def as_set(ids: int | Iterable[int]) -> Set[int]:
            return {ids} if isinstance(ids, int) else set(ids)

        ui_ids = as_set(ui_thread_ids)
        raster_ids = as_set(raster_thread_ids)
        if ui_ids & raster_ids:
            raise ValueError(
                f"Threads {sorted(ui_ids & raster_ids)} cannot be both UI and "
                f"raster threads"
            )
        roles: Dict[int, TimelineEventType] = {}
        roles.update((tid, TimelineEventType.UI) for tid in ui_ids)
        roles.update((tid, TimelineEventType.RASTER) for tid in raster_ids)
        self.thread_roles = roles

    def reset(self) -> None:
        """Drops all in-progress state and clears the result store."""
        for stack in self.current_duration_events.values():
            stack.clear()
        self.open_async_events.clear()
        self._unfinished_async_roots.clear()
        self.pending_frames.clear()
        self._retired_frame_ids.clear()
        self.dropped_events.clear()
        self.data.clear()
        self._pass_in_progress = False

    def process_timeline(
        self, events: Iterable[TraceEvent], reset_beforehand: bool = False
    ) -> None:
        """Processes `events` in order.

        State carries over between calls, so a long stream may be fed in
        several batches.

        Args:
            events: The records to process.
            reset_beforehand: Whether to `reset` before processing.
        """
        if reset_beforehand:
            self.reset()
        dropped_before = self.dropped_events.copy()
        count = 0
        for event in events:
            self.process_trace_event(event)
            count += 1
        self._log_summary(count, dropped_before)

    async def process_timeline_async(
        self, events: Iterable[TraceEvent], reset_beforehand: bool = False
    ) -> None:
        """Like `process_timeline`, yielding to the event loop between chunks.

        If the task is cancelled, everything processed before the last yield
        stays valid and inspectable.
        """
        if reset_beforehand:
            self.reset()
        dropped_before = self.dropped_events.copy()
        count = 0
        for event in events:
            self.process_trace_event(event)
            count += 1
            if count % self.yield_every == 0:
                await asyncio.sleep(0)
        self._log_summary(count, dropped_before)

    def process_trace_event(self, event: TraceEvent) -> None:
        self._pass_in_progress = True

        if event.name == self.pipeline_item_event_name:
            self._handle_pipeline_item(event)
            return

        type = self.infer_event_type(event)
        if type is TimelineEventType.ASYNC:
            self._handle_async_event(event)
            return

        phase = event.phase
        if phase is TraceEventPhase.BEGIN:
            self._handle_duration_begin(event, type)
        elif phase is TraceEventPhase.END:
            self._handle_duration_end(event, type)
        elif phase in (TraceEventPhase.COMPLETE, TraceEventPhase.INSTANT):
            self._handle_leaf(event, type)
        else:
            # Flow records other than pipeline items carry no span.
            self._drop(event, "flow")

    def infer_event_type(self, event: TraceEvent) -> TimelineEventType:
        """Classifies `event` onto a logical track. Never fails."""
        if event.phase.is_async() or event.category in self.async_categories:
            return TimelineEventType.ASYNC
        return self.thread_roles.get(event.thread_id, TimelineEventType.UNKNOWN)

    def satisfies_ui_raster_order(
        self, event: TimelineEvent, frame: Frame
    ) -> bool:
        """Whether `event` may become a flow of `frame`.

        The event must lie within the frame's pipeline item window. A raster
        event must also not start before the frame's UI flow, if it has one. A
        UI event is accepted whatever the timing of an existing raster flow.
        """
        if not frame.pipeline_item_time.contains(event.time):
            return False
        ui_flow = frame.ui_event_flow
        if (
            event.type is TimelineEventType.RASTER
            and ui_flow is not None
            and ui_flow.time.start is not None
        ):
            if event.time.start is None:
                return False
            return ui_flow.time.start <= event.time.start
        return True

    # Duration events.

    def _handle_duration_begin(
        self, event: TraceEvent, type: TimelineEventType
    ) -> None:
        stack = self.current_duration_events[type]
        if stack:
            top = stack[-1]
            if not top.is_closed() and top.matches(event):
                self._drop(event, "duplicate begin")
                return
        node = TimelineEvent.from_trace_event(event, type)
        if stack:
            stack[-1].add_child(node)
        stack.append(node)

    def _handle_duration_end(
        self, event: TraceEvent, type: TimelineEventType
    ) -> None:
        stack = self.current_duration_events[type]
        if not stack:
            self._drop(event, "stray end")
            return

        end = trace_time.from_microseconds(event.timestamp_micros)
        top = stack[-1]
        if top.name != event.name:
            last_child = top.last_child()
            if (
                last_child is not None
                and last_child.name == event.name
                and last_child.time.end == end
            ):
                self._drop(event, "duplicate end")
                return
            if len(stack) >= 2 and stack[-2].name == event.name:
                # The top never ends: discard it along with anything it holds.
                phantom = stack.pop()
                stack[-1].remove_child(phantom)
                self.dropped_events["phantom duration"] += 1
                _LOGGER.debug(
                    f"Dropping unfinished {phantom!r} closed by {event.name}"
                )
                top = stack[-1]
            else:
                self.dropped_events["unrecoverable nesting"] += len(stack)
                _LOGGER.debug(
                    f"Unrecoverable nesting on the {type.value} track at "
                    f"{event.timestamp_micros} μs ({event.name} ends while "
                    f"{top.name} is open), dropping {len(stack)} open events"
                )
                stack.clear()
                return

        stack.pop()
        self._close(top, end, event)
        if not stack:
            self._handle_completed_root(top)

    def _handle_leaf(self, event: TraceEvent, type: TimelineEventType) -> None:
        node = TimelineEvent.from_trace_event(event, type)
        self._close(node, _leaf_end(event), event)
        stack = self.current_duration_events[type]
        if stack:
            stack[-1].add_child(node)
        else:
            self._handle_completed_root(node)

    def _handle_completed_root(self, root: TimelineEvent) -> None:
        if root.type in (TimelineEventType.UI, TimelineEventType.RASTER):
            for frame in self.pending_frames.values():
                if frame.event_flow(root.type) is not None:
                    continue
                if self.satisfies_ui_raster_order(root, frame):
                    self._set_event_flow(frame, root)
                    return
        self.data.add_timeline_event(root)

    # Frames.

    def _handle_pipeline_item(self, event: TraceEvent) -> None:
        item_id = event.async_id
        if item_id is None and "id" in event.args:
            item_id = str(event.args["id"])
        if item_id is None:
            self._drop(event, "pipeline item without id")
            return
        frame_id = f"{event.name}-{item_id}"
        timestamp = trace_time.from_microseconds(event.timestamp_micros)

        if event.phase in _PIPELINE_BEGIN_PHASES:
            if (
                frame_id in self.pending_frames
                or frame_id in self._retired_frame_ids
            ):
                self._drop(event, "duplicate pipeline item begin")
                return
            frame = Frame(frame_id)
            frame.pipeline_item_time.start = timestamp
            self.pending_frames[frame_id] = frame
        elif event.phase in _PIPELINE_END_PHASES:
            frame = self.pending_frames.get(frame_id)
            if frame is None:
                self._drop(event, "unknown pipeline item end")
                return
            if frame.pipeline_item_time.end is not None:
                self._drop(event, "duplicate pipeline item end")
                return
            frame.set_pipeline_item_end(timestamp)
            self._maybe_add_completed_frame(frame)
        else:
            self._drop(event, "pipeline item step")

    def _set_event_flow(self, frame: Frame, root: TimelineEvent) -> None:
        frame.set_event_flow(root, type=root.type)
        _LOGGER.debug(f"Attached {root!r} to frame {frame.id}")
        self._maybe_add_completed_frame(frame)

    def _maybe_add_completed_frame(self, frame: Frame) -> None:
        if not frame.ready:
            return
        del self.pending_frames[frame.id]
        self._retired_frame_ids.add(frame.id)
        self.data.add_frame(frame)

    # Async events.

    def _handle_async_event(self, event: TraceEvent) -> None:
        async_id = event.async_id
        if async_id is None:
            self._drop(event, "async event without id")
            return

        phase = event.phase
        if phase in (TraceEventPhase.ASYNC_BEGIN, TraceEventPhase.BEGIN):
            self._handle_async_begin(event, async_id)
        elif phase in (TraceEventPhase.ASYNC_END, TraceEventPhase.END):
            self._handle_async_end(event, async_id)
        elif phase in (
            TraceEventPhase.ASYNC_INSTANT,
            TraceEventPhase.INSTANT,
            TraceEventPhase.COMPLETE,
        ):
            self._handle_async_leaf(event, async_id)
        else:
            self._drop(event, "flow")

    def _handle_async_begin(self, event: TraceEvent, async_id: str) -> None:
        current = self.open_async_events.get(async_id)
        if current is not None:
            reason = (
                "duplicate begin"
                if current.matches(event)
                else "conflicting async begin"
            )
            self._drop(event, reason)
            return

        parent_id: Optional[str] = None
        if _PARENT_ID_ARG in event.args:
            parent_id = str(event.args[_PARENT_ID_ARG])
        node = AsyncTimelineEvent(
            event.name,
            event.category,
            async_id,
            parent_id=parent_id,
            time=trace_time.TimeRange.from_microseconds(event.timestamp_micros),
            args=event.args,
        )
        parent = (
            None if parent_id is None else self.open_async_events.get(parent_id)
        )
        if parent is not None:
            parent.add_child(node)
            parent.open_children[async_id] = node
        self.open_async_events[async_id] = node

    def _handle_async_leaf(self, event: TraceEvent, async_id: str) -> None:
        owner = self.open_async_events.get(async_id)
        if owner is None:
            self._drop(event, "unknown async id")
            return
        leaf = AsyncTimelineEvent(
            event.name,
            event.category,
            async_id,
            parent_id=async_id,
            time=trace_time.TimeRange.from_microseconds(event.timestamp_micros),
            args=event.args,
        )
        self._close(leaf, _leaf_end(event), event)
        owner.add_child(leaf)
        _extend_closed_ancestors(leaf)

    def _handle_async_end(self, event: TraceEvent, async_id: str) -> None:
        node = self.open_async_events.pop(async_id, None)
        if node is None:
            self._drop(event, "unknown async id")
            return
        self._close(
            node, trace_time.from_microseconds(event.timestamp_micros), event
        )

        parent = node.parent
        if isinstance(parent, AsyncTimelineEvent):
            parent.open_children.pop(async_id, None)
            _extend_closed_ancestors(node)
        else:
            self._unfinished_async_roots.append(node)
        self._emit_finished_async_roots()

    def _emit_finished_async_roots(self) -> None:
        unfinished: List[AsyncTimelineEvent] = []
        for root in self._unfinished_async_roots:
            if root.is_closed_deep():
                self.data.add_timeline_event(root)
            else:
                unfinished.append(root)
        self._unfinished_async_roots = unfinished

    # Helpers.

    def _close(
        self,
        node: TimelineEvent,
        end: datetime.timedelta,
        event: TraceEvent,
    ) -> None:
        if node.time.start is not None and end < node.time.start:
            # Out of order records: a range never runs backwards.
            _LOGGER.debug(
                f"{event.name} ends at {event.timestamp_micros} μs before it "
                f"begins, clamping"
            )
            end = node.time.start
        # A parent never ends before its closed children.
        child_ends = [
            c.time.end for c in node.children if c.time.end is not None
        ]
        if child_ends and max(child_ends) > end:
            end = max(child_ends)
        node.time.end = end
        node.args = {**node.args, **event.args}

    def _drop(self, event: TraceEvent, reason: str) -> None:
        self.dropped_events[reason] += 1
        _LOGGER.debug(
            f"Dropping {reason} record {event.name} ({event.phase.value}) at "
            f"{event.timestamp_micros} μs"
        )

    def _log_summary(
        self, count: int, dropped_before: collections.Counter[str]
    ) -> None:
        _LOGGER.info(
            f"Processed {count} trace events: "
            f"{len(self.data.timeline_events)} timeline events, "
            f"{len(self.data.frames)} frames, "
            f"{len(self.pending_frames)} pending frames"
        )
        # Batches of a longer stream routinely end with events in progress.
        open_durations = sum(
            len(stack) for stack in self.current_duration_events.values()
        )
        if open_durations > 0:
            _LOGGER.info(
                f"Finished processing trace events with {open_durations} in "
                f"progress duration events"
            )
        if self.open_async_events:
            _LOGGER.info(
                f"Finished processing trace events with "
                f"{len(self.open_async_events)} in progress async events"
            )
        dropped = self.dropped_events - dropped_before
        for reason, dropped_count in sorted(dropped.items()):
            _LOGGER.warning(
                f"Warning, dropped {dropped_count} {reason} events"
            )


def _leaf_end(event: TraceEvent) -> datetime.timedelta:
    """End of the leaf made from an instant or complete record."""
    return trace_time.from_microseconds(
        event.timestamp_micros + (event.duration_micros or 0)
    )


def _extend_closed_ancestors(node: TimelineEvent) -> None:
    """Grows closed ancestors of `node` so that they still contain it.

    Async children may legitimately end after their logical parent.
    """
    end = node.time.end
    if end is None:
        return
    ancestor = node.parent
    while ancestor is not None:
        if ancestor.time.end is not None and ancestor.time.end < end:
            ancestor.time.end = end
        ancestor = ancestor.parent
