# Copyright 2024 The Fuchsia Authors. All rights reserved.
# Use of this source code is governed by a BSD-style license that can be
# found in the LICENSE file.
"""Logic to read trace records out of Chrome trace format JSON."""

import dataclasses
import json
import logging
import os
from typing import Any, Dict, List, Optional, TextIO

from timeline_processing import timeline_model, trace_model

_LOGGER: logging.Logger = logging.getLogger("TraceImporting")

_METADATA_PHASE: str = "M"

# Phases present in Chrome traces that carry nothing the timeline uses.
#
# These are:
# * 'C' - Counter events
# * 'R' - Mark events, similar to instants created by the Navigation
#         Timing API
# * '(', ')' - Context events
# * 'O', 'N', 'D' - Object events
# * 'S', 'T', 'p', 'F' - Legacy async events
_IGNORED_PHASES: frozenset[str] = frozenset(
    ["C", "R", "(", ")", "O", "N", "D", "S", "T", "p", "F"]
)

_UI_THREAD_SUFFIXES: tuple[str, ...] = (".ui",)
_RASTER_THREAD_SUFFIXES: tuple[str, ...] = (".raster", ".gpu")


@dataclasses.dataclass
class ImportedTrace:
    """Trace records in timestamp order, plus the names metadata gave to
    processes and threads.
    """

    events: List[trace_model.TraceEvent]
    thread_names: Dict[int, str] = dataclasses.field(default_factory=dict)
    process_names: Dict[int, str] = dataclasses.field(default_factory=dict)


def create_trace_from_file_path(
    path: str | os.PathLike[Any],
) -> ImportedTrace:
    """Create an ImportedTrace from a file path.

    Args:
        path: The path to the file.

    Returns:
        An ImportedTrace object.
    """

    with open(path, "r") as file:
        return create_trace_from_file(file)


def create_trace_from_file(file: TextIO) -> ImportedTrace:
    """Create an ImportedTrace from a file.

    Args:
        file: The file to read.

    Returns:
        An ImportedTrace object.
    """

    return create_trace_from_json(json.load(file))


def create_trace_from_string(json_string: str) -> ImportedTrace:
    """Create an ImportedTrace from a raw JSON string of trace data.

    Args:
        json_string: The JSON string to parse.

    Returns:
        An ImportedTrace object.
    """

    json_object: Dict[str, Any] | List[Any] = json.loads(json_string)
    return create_trace_from_json(json_object)


def create_trace_from_json(
    root_object: Dict[str, Any] | List[Any],
) -> ImportedTrace:
    """Creates an ImportedTrace from a JSON object.

    Both the object form (`{"traceEvents": [...]}`) and the bare array form of
    the Chrome trace format are accepted.

    Args:
        root_object: A JSON object representing the trace data.

    Raises:
        TypeError: The trace or one of its events is malformed.

    Returns:
        An ImportedTrace object.
    """

    trace_events: List[Any]
    if isinstance(root_object, list):
        trace_events = root_object
    elif isinstance(root_object, dict):
        if not isinstance(root_object.get("traceEvents"), list):
            raise TypeError(
                f"Expected {root_object} to have field 'traceEvents' of type "
                f"'list'"
            )
        trace_events = root_object["traceEvents"]
    else:
        raise TypeError(
            f"Expected trace data to be a dict or a list, got "
            f"{root_object.__class__.__name__}"
        )

    result = ImportedTrace(events=[])
    ignored_event_counter: int = 0

    for trace_event in trace_events:
        if not isinstance(trace_event, dict):
            raise TypeError(f"Expected trace event to be a dict: {trace_event}")
        phase: Optional[str] = trace_event.get("ph")
        if not isinstance(phase, str):
            raise TypeError(
                f"Expected {trace_event} to have field 'ph' of type 'str'"
            )

        if phase == _METADATA_PHASE:
            _read_metadata_event(trace_event, result)
        elif phase in _IGNORED_PHASES:
            ignored_event_counter += 1
        else:
            result.events.append(trace_model.TraceEvent.from_dict(trace_event))

    # We need a stable sort here, which fortunately `list.sort` is.  Records
    # sharing a timestamp must keep their relative order, or a begin could be
    # moved after its own end.
    result.events.sort(key=lambda e: e.timestamp_micros)

    if ignored_event_counter > 0:
        _LOGGER.info(
            f"Ignored {ignored_event_counter} events with unsupported phases"
        )
    _LOGGER.info(
        f"Imported {len(result.events)} trace events from "
        f"{len(result.thread_names)} named threads"
    )
    return result


def _read_metadata_event(
    trace_event: Dict[str, Any], result: ImportedTrace
) -> None:
    """Records process and thread names from a Chrome metadata event."""
    name = trace_event.get("name")
    if name not in ("process_name", "thread_name"):
        return
    args = trace_event.get("args")
    if not isinstance(args, dict) or not isinstance(args.get("name"), str):
        raise TypeError(
            f"{trace_event} is a {name} metadata event but doesn't have a "
            f"name argument"
        )
    if name == "process_name":
        if not isinstance(trace_event.get("pid"), int):
            raise TypeError(
                f"Expected {trace_event} to have field 'pid' of type 'int'"
            )
        result.process_names[trace_event["pid"]] = args["name"]
    else:
        if not isinstance(trace_event.get("tid"), (int, float)):
            raise TypeError(
                f"Expected {trace_event} to have field 'tid' of type 'int'"
            )
        result.thread_names[int(trace_event["tid"])] = args["name"]


def thread_roles_from_names(
    thread_names: Dict[int, str],
) -> Dict[timeline_model.TimelineEventType, List[int]]:
    """Picks out UI and raster threads by the names the engine gives them.

    Engine threads are named like "1.ui" and "1.raster" (or "1.gpu" on older
    engines).

    Args:
        thread_names: Thread id to thread name, as found in an ImportedTrace.

    Returns:
        The UI and raster thread ids, in thread id order. Both keys are
        always present.
    """
    roles: Dict[timeline_model.TimelineEventType, List[int]] = {
        timeline_model.TimelineEventType.UI: [],
        timeline_model.TimelineEventType.RASTER: [],
    }
    for tid, name in sorted(thread_names.items()):
        if name.endswith(_UI_THREAD_SUFFIXES):
            roles[timeline_model.TimelineEventType.UI].append(tid)
        elif name.endswith(_RASTER_THREAD_SUFFIXES):
            roles[timeline_model.TimelineEventType.RASTER].append(tid)
    return roles
