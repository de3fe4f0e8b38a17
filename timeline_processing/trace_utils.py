# Copyright 2024 The Fuchsia Authors. All rights reserved.
# Use of this source code is governed by a BSD-style license that can be
# found in the LICENSE file.
"""Utilities to walk, filter and check reconstructed timeline event trees."""

import datetime
from typing import Iterable, Iterator, Optional

from timeline_processing import timeline_model


def iter_events(
    roots: Iterable[timeline_model.TimelineEvent],
) -> Iterator[timeline_model.TimelineEvent]:
    """Yields every event of every tree in |roots|, each tree in pre-order."""
    for root in roots:
        yield from root.iter_tree()


def filter_events(
    events: Iterable[timeline_model.TimelineEvent],
    category: Optional[str] = None,
    name: Optional[str] = None,
    type: Optional[timeline_model.TimelineEventType] = None,
) -> Iterator[timeline_model.TimelineEvent]:
    """Filter |events| based on category, name, or track type.

    Args:
      events: The set of events to filter.
      category: Category of events to include, or None to skip this filter.
      name: name of events to include, or None to skip this filter.
      type: Track type of events to include, or None to skip this filter.

    Returns:
      An [Iterator] of filtered events. Note that Iterators can only be iterated a single time, so
      the caller must create a local copy in order to loop over the filtered events more than once.
    """

    def event_matches(event: timeline_model.TimelineEvent) -> bool:
        type_matches: bool = type is None or event.type is type
        category_matches: bool = category is None or event.category == category
        name_matches: bool = name is None or event.name == name
        return type_matches and category_matches and name_matches

    return filter(event_matches, events)


def is_well_formed(root: timeline_model.TimelineEvent) -> bool:
    """Whether every event in the tree of |root| has a complete range that
    contains the ranges of its children, and children are in start order.
    """
    for event in root.iter_tree():
        if not event.time.is_well_formed():
            return False
        previous_start: Optional[datetime.timedelta] = None
        for child in event.children:
            # A well formed parent has both bounds, so containment also
            # guarantees the child has a start.
            if not event.time.contains(child.time):
                return False
            start = child.time.start
            if previous_start is not None and start < previous_start:  # type: ignore[operator]
                return False
            previous_start = start
    return True


def total_event_duration(
    events: Iterable[timeline_model.TimelineEvent],
) -> datetime.timedelta:
    """Compute the total duration of all closed events in |events|.  This is
    the end of the last event minus the beginning of the first event.

    Args:
      events: The set of events to compute the duration for.

    Returns:
      Total event duration, zero when no event is closed.
    """
    ranges = [e.time for e in events if e.time.is_complete()]
    if not ranges:
        return datetime.timedelta()
    min_time = min(r.start for r in ranges)  # type: ignore[type-var]
    max_time = max(r.end for r in ranges)  # type: ignore[type-var]
    return max_time - min_time
