# Copyright 2024 The Fuchsia Authors. All rights reserved.
# Use of this source code is governed by a BSD-style license that can be
# found in the LICENSE file.
"""Unit tests for timeline_model.py and trace_time.py."""

import datetime
import gc
from typing import Optional
import unittest

from parameterized import parameterized

from timeline_processing import trace_time
from timeline_processing.timeline_model import (
    AsyncTimelineEvent,
    Frame,
    FrameState,
    TimelineData,
    TimelineEvent,
    TimelineEventType,
)
import test_utils

UI = TimelineEventType.UI
RASTER = TimelineEventType.RASTER


class TimeRangeTest(unittest.TestCase):
    """TimeRange tests"""

    def test_microsecond_conversions(self) -> None:
        delta = trace_time.from_microseconds(193937056864)
        self.assertEqual(delta, datetime.timedelta(microseconds=193937056864))
        self.assertEqual(trace_time.to_microseconds(delta), 193937056864)

    def test_duration(self) -> None:
        self.assertEqual(
            trace_time.TimeRange.from_microseconds(10, 25).duration,
            datetime.timedelta(microseconds=15),
        )
        self.assertIsNone(trace_time.TimeRange.from_microseconds(10).duration)

    @parameterized.expand(
        [
            ("inside", 10, 20, True),
            ("same_bounds", 0, 100, True),
            ("starts_early", -1, 20, False),
            ("ends_late", 10, 101, False),
            ("open_end", 10, None, False),
        ]
    )
    def test_contains(
        self, _: str, start: int, end: Optional[int], expected: bool
    ) -> None:
        window = trace_time.TimeRange.from_microseconds(0, 100)
        other = trace_time.TimeRange.from_microseconds(start, end)

        self.assertEqual(window.contains(other), expected)

    def test_unknown_bound_does_not_constrain(self) -> None:
        window = trace_time.TimeRange.from_microseconds(0)

        self.assertTrue(
            window.contains(trace_time.TimeRange.from_microseconds(5, 10**9))
        )
        self.assertTrue(window.contains(trace_time.TimeRange.from_microseconds(5)))
        self.assertFalse(
            window.contains(trace_time.TimeRange.from_microseconds(None, 5))
        )

    def test_is_well_formed(self) -> None:
        self.assertTrue(trace_time.TimeRange.from_microseconds(5, 5).is_well_formed())
        self.assertFalse(trace_time.TimeRange.from_microseconds(5, 4).is_well_formed())
        self.assertFalse(trace_time.TimeRange.from_microseconds(5).is_well_formed())

    def test_str(self) -> None:
        self.assertEqual(
            str(trace_time.TimeRange.from_microseconds(1, 2)), "[1 μs - 2 μs]"
        )
        self.assertEqual(
            str(trace_time.TimeRange.from_microseconds(1)), "[1 μs - ?]"
        )

    def test_copy_is_independent(self) -> None:
        time = trace_time.TimeRange.from_microseconds(1, 2)
        copy = time.copy()
        copy.end = trace_time.from_microseconds(3)

        self.assertEqual(time, trace_time.TimeRange.from_microseconds(1, 2))
        self.assertNotEqual(time, copy)


class TimelineEventTest(unittest.TestCase):
    """TimelineEvent tests"""

    def test_tree_links(self) -> None:
        root = test_utils.timeline_event("VSYNC", UI, 0, 100)
        child = test_utils.timeline_event("Animator::BeginFrame", UI, 10, 90)
        grandchild = test_utils.timeline_event("Build", UI, 20, 30)
        root.add_child(child)
        child.add_child(grandchild)

        self.assertTrue(root.is_root())
        self.assertIs(grandchild.parent, child)
        self.assertIs(grandchild.root, root)
        self.assertEqual(grandchild.depth, 2)
        self.assertIs(root.last_child(), child)
        self.assertEqual(
            [e.name for e in root.iter_tree()],
            ["VSYNC", "Animator::BeginFrame", "Build"],
        )

    def test_remove_child_uses_identity(self) -> None:
        root = test_utils.timeline_event("VSYNC", UI, 0, 100)
        first = test_utils.timeline_event("Build", UI, 10, 20)
        second = test_utils.timeline_event("Build", UI, 10, 20)
        root.add_child(first)
        root.add_child(second)

        root.remove_child(second)

        self.assertEqual(len(root.children), 1)
        self.assertIs(root.children[0], first)
        self.assertTrue(second.is_root())
        with self.assertRaises(ValueError):
            root.remove_child(second)

    def test_parent_link_does_not_keep_parent_alive(self) -> None:
        root = test_utils.timeline_event("VSYNC", UI, 0, 100)
        child = test_utils.timeline_event("Build", UI, 10, 20)
        root.add_child(child)

        del root
        gc.collect()

        self.assertIsNone(child.parent)

    def test_from_trace_event(self) -> None:
        event = test_utils.trace_event(
            "VSYNC", test_utils.B, 100, args={"frame": 1}
        )
        node = TimelineEvent.from_trace_event(event, UI)

        self.assertEqual(node.name, "VSYNC")
        self.assertEqual(node.category, "Embedder")
        self.assertEqual(node.args, {"frame": 1})
        self.assertEqual(str(node.time), "[100 μs - ?]")
        self.assertFalse(node.is_closed())
        self.assertTrue(node.matches(event))
        self.assertFalse(
            node.matches(test_utils.trace_event("VSYNC", test_utils.B, 101))
        )

    def test_format_is_relative_to_subtree(self) -> None:
        root = test_utils.timeline_event("VSYNC", UI, 0, 100)
        child = test_utils.timeline_event("Frame", UI, 10, 90)
        grandchild = test_utils.timeline_event("Build", UI, 20, 30)
        root.add_child(child)
        child.add_child(grandchild)

        self.assertEqual(
            str(child), "  Frame [10 μs - 90 μs]\n    Build [20 μs - 30 μs]\n"
        )
        self.assertEqual(
            child.format(indent="-"), "-Frame [10 μs - 90 μs]\n--Build [20 μs - 30 μs]\n"
        )

    def test_async_event_is_closed_deep(self) -> None:
        root = AsyncTimelineEvent(
            "A", "Dart", "1", time=trace_time.TimeRange.from_microseconds(0, 10)
        )
        child = AsyncTimelineEvent(
            "B",
            "Dart",
            "2",
            parent_id="1",
            time=trace_time.TimeRange.from_microseconds(5),
        )
        root.add_child(child)

        self.assertEqual(root.type, TimelineEventType.ASYNC)
        self.assertTrue(root.is_closed())
        self.assertFalse(root.is_closed_deep())

        child.time.end = trace_time.from_microseconds(8)
        self.assertTrue(root.is_closed_deep())


class FrameTest(unittest.TestCase):
    """Frame tests"""

    def test_state_transitions(self) -> None:
        frame = Frame("PipelineItem-1")
        self.assertEqual(frame.state, FrameState.EMPTY)

        frame.set_event_flow(test_utils.timeline_event("VSYNC", UI, 0, 10), UI)
        self.assertEqual(frame.state, FrameState.PARTIAL)

        frame.set_event_flow(
            test_utils.timeline_event("GPURasterizer::Draw", RASTER, 12, 20),
            RASTER,
        )
        self.assertEqual(frame.state, FrameState.FLOWS_SET)
        self.assertFalse(frame.ready)

        frame.set_pipeline_item_end(trace_time.from_microseconds(30))
        self.assertEqual(frame.state, FrameState.READY)
        self.assertTrue(frame.ready)

    def test_pipeline_end_before_flows(self) -> None:
        frame = Frame("PipelineItem-1")
        frame.set_pipeline_item_end(trace_time.from_microseconds(30))
        self.assertEqual(frame.state, FrameState.EMPTY)

        frame.set_event_flow(test_utils.timeline_event("VSYNC", UI, 0, 10), UI)
        frame.set_event_flow(
            test_utils.timeline_event("GPURasterizer::Draw", RASTER, 12, 20),
            RASTER,
        )
        self.assertTrue(frame.ready)

    def test_derived_time(self) -> None:
        frame = Frame("PipelineItem-1")
        frame.set_event_flow(
            test_utils.timeline_event("GPURasterizer::Draw", RASTER, 12, 20),
            RASTER,
        )
        self.assertEqual(str(frame.time), "[12 μs - 20 μs]")

        # The end never moves earlier.
        frame.set_event_flow(test_utils.timeline_event("VSYNC", UI, 5, 10), UI)
        self.assertEqual(str(frame.time), "[5 μs - 20 μs]")

        frame.set_event_flow(None, UI)
        self.assertIsNone(frame.ui_event_flow)
        self.assertEqual(frame.state, FrameState.PARTIAL)
        self.assertEqual(str(frame.time), "[12 μs - 20 μs]")

    def test_end_time_is_not_retracted(self) -> None:
        frame = Frame("PipelineItem-1")
        frame.set_event_flow(test_utils.timeline_event("VSYNC", UI, 5000, 8000), UI)
        frame.set_event_flow(
            test_utils.timeline_event("GPURasterizer::Draw", RASTER, 6000, 7000),
            RASTER,
        )

        self.assertEqual(frame.time.end, trace_time.from_microseconds(8000))
        self.assertEqual(frame.time.start, trace_time.from_microseconds(5000))

    def test_async_flow_is_rejected(self) -> None:
        frame = Frame("PipelineItem-1")
        with self.assertRaises(ValueError):
            frame.event_flow(TimelineEventType.ASYNC)
        with self.assertRaises(ValueError):
            frame.set_event_flow(
                test_utils.timeline_event("A", TimelineEventType.ASYNC, 0, 1),
                TimelineEventType.ASYNC,
            )


class TimelineDataTest(unittest.TestCase):
    """TimelineData tests"""

    def test_entries_are_stored_once(self) -> None:
        data = TimelineData()
        event = test_utils.timeline_event("VSYNC", UI, 0, 10)
        look_alike = test_utils.timeline_event("VSYNC", UI, 0, 10)
        frame = Frame("PipelineItem-1")

        data.add_timeline_event(event)
        data.add_timeline_event(event)
        data.add_timeline_event(look_alike)
        data.add_frame(frame)
        data.add_frame(frame)

        self.assertEqual(len(data.timeline_events), 2)
        self.assertEqual(data.frames, [frame])

        data.clear()
        self.assertEqual(data.timeline_events, [])
        self.assertEqual(data.frames, [])
        data.add_frame(frame)
        self.assertEqual(data.frames, [frame])


if __name__ == "__main__":
    unittest.main()
