#!/usr/bin/env python3
"""
TaskRouter event search: list workspace events for a task, worker or task attribute.

Usage:
  python3 scripts/taskrouter_events.py --filter-type TYPE --filter-value VALUE
      [--start-date ISO] [--end-date ISO]
      [--exclude-event-type TYPE ...] [--include-column COLUMN ...]
      [--format table|csv] [--output FILE]

Filter types:
  taskSid, workerSid, task_attributes__<attribute-name>

Columns (eventDate and eventType are always shown):
  eventSid, taskSid (default), taskQueue, workerSid, workerName,
  task_attributes__<attribute-name>

Examples:
  taskrouter_events.py --start-date 2020-10-25T00:00:00-07:00 --end-date 2020-10-25T21:00:00-07:00 \\
      --filter-type task_attributes__channelSid --filter-value CHc03ffaacf8f14027a25f2fc5e0482066
  taskrouter_events.py --filter-type task_attributes__correlationId --filter-value 0000000094886693 \\
      --exclude-event-type workflow.target-matched workflow.entered \\
      --include-column task_attributes__channelSid workerName

Environment:
  TWILIO_ACCT_SID, TWILIO_ACCT_AUTH, TWILIO_WORKSPACE_SID
"""

import argparse
import json
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from report_output import print_table, records_to_rows, to_csv, write_csv
from twilio_common import fetch_all, positive_int, run_script

TASK_ATTRIBUTE_PREFIX = "task_attributes__"
DEFAULT_START_HOURS = 4
BASE_COLUMNS = ["eventDate", "eventType"]


class FilterType(Enum):
    TASK_SID = "taskSid"
    WORKER_SID = "workerSid"
    TASK_ATTRIBUTE = TASK_ATTRIBUTE_PREFIX


class Column(Enum):
    EVENT_SID = "eventSid"
    TASK_SID = "taskSid"
    TASK_QUEUE = "taskQueue"
    WORKER_SID = "workerSid"
    WORKER_NAME = "workerName"

    @property
    def key(self):
        return self.value


# event_data field backing each column (eventSid comes from the event itself)
EVENT_DATA_FIELDS = {
    Column.TASK_SID: "task_sid",
    Column.TASK_QUEUE: "task_queue_name",
    Column.WORKER_SID: "worker_sid",
    Column.WORKER_NAME: "worker_name",
}

DEFAULT_COLUMNS = (Column.TASK_SID,)


@dataclass(frozen=True)
class TaskAttributeColumn:
    name: str

    @property
    def key(self):
        return self.name


@dataclass(frozen=True)
class SearchFilter:
    start_date: datetime
    end_date: datetime
    filter_type: FilterType
    filter_value: str
    attribute_name: Optional[str] = None
    excluded_event_types: frozenset = frozenset()
    included_columns: tuple = DEFAULT_COLUMNS

    def server_filters(self):
        """Filters the events endpoint can apply itself."""
        if self.filter_type is FilterType.TASK_SID:
            return {"task_sid": self.filter_value}
        if self.filter_type is FilterType.WORKER_SID:
            return {"worker_sid": self.filter_value}
        return {}

    def describe(self):
        if self.filter_type is FilterType.TASK_ATTRIBUTE:
            return f"{TASK_ATTRIBUTE_PREFIX}{self.attribute_name}={self.filter_value}"
        return f"{self.filter_type.value}={self.filter_value}"


def parse_filter_type(text):
    """argparse type: (FilterType, attribute name or None)."""
    if text.startswith(TASK_ATTRIBUTE_PREFIX):
        name = text[len(TASK_ATTRIBUTE_PREFIX):]
        if not name:
            raise argparse.ArgumentTypeError(f"missing attribute name after {TASK_ATTRIBUTE_PREFIX}")
        return FilterType.TASK_ATTRIBUTE, name
    try:
        return FilterType(text), None
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"unknown filter type {text!r} (expected taskSid, workerSid or {TASK_ATTRIBUTE_PREFIX}<name>)"
        ) from None


def parse_column(text):
    """argparse type: a Column or TaskAttributeColumn."""
    if text.startswith(TASK_ATTRIBUTE_PREFIX):
        name = text[len(TASK_ATTRIBUTE_PREFIX):]
        if not name:
            raise argparse.ArgumentTypeError(f"missing attribute name after {TASK_ATTRIBUTE_PREFIX}")
        if name in BASE_COLUMNS or name in {c.value for c in Column}:
            raise argparse.ArgumentTypeError(f"attribute column {text!r} would replace the {name} column")
        return TaskAttributeColumn(name)
    try:
        return Column(text)
    except ValueError:
        choices = ", ".join(c.value for c in Column)
        raise argparse.ArgumentTypeError(
            f"unknown column {text!r} (expected one of {choices} or {TASK_ATTRIBUTE_PREFIX}<name>)"
        ) from None


def parse_date(text):
    """argparse type: ISO-8601 timestamp; naive values are local time."""
    try:
        value = datetime.fromisoformat(text.strip().replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 date: {text!r}") from None
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc)


def _iso(value):
    return value.isoformat() if value else ""


def parse_task_attributes(event_data):
    """Task attributes of an event as a dict ({} when absent or unparseable)."""
    raw = (event_data or {}).get("task_attributes")
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        attributes = json.loads(raw)
    except ValueError:
        return {}
    return attributes if isinstance(attributes, dict) else {}


def shape_event(event, included_columns):
    """Project an event onto eventDate, eventType and the requested columns."""
    data = event.event_data or {}
    record = {"eventDate": _iso(event.event_date), "eventType": event.event_type}
    attributes = None
    for column in included_columns:
        if isinstance(column, TaskAttributeColumn):
            if attributes is None:
                attributes = parse_task_attributes(data)
            value = attributes.get(column.name)
        elif column is Column.EVENT_SID:
            value = event.sid
        else:
            value = data.get(EVENT_DATA_FIELDS[column])
            if column is Column.WORKER_NAME and value:
                value = value.split("@", 1)[0]
        if value is not None and value != "":
            record[column.key] = value
    return record


def filter_events(events, search_filter):
    matched = []
    for event in events:
        if event.event_type in search_filter.excluded_event_types:
            continue
        if search_filter.filter_type is FilterType.TASK_ATTRIBUTE:
            attributes = parse_task_attributes(event.event_data)
            name = search_filter.attribute_name
            if name not in attributes or attributes[name] != search_filter.filter_value:
                continue
        matched.append(shape_event(event, search_filter.included_columns))
    return matched


def query_events(settings, client, search_filter, limit=None):
    workspace = client.taskrouter.v1.workspaces(settings.require_workspace())
    return fetch_all(
        settings,
        workspace.events,
        limit=limit,
        start_date=search_filter.start_date,
        end_date=search_filter.end_date,
        **search_filter.server_filters(),
    )


def output_columns(search_filter):
    return BASE_COLUMNS + [c.key for c in search_filter.included_columns]


def build_filter(args, now=None):
    now = now or datetime.now(timezone.utc)
    filter_type, attribute_name = args.filter_type
    columns = []
    for column in list(DEFAULT_COLUMNS) + list(args.include_column or []):
        if column not in columns:
            columns.append(column)
    return SearchFilter(
        start_date=args.start_date or now - timedelta(hours=DEFAULT_START_HOURS),
        end_date=args.end_date or now,
        filter_type=filter_type,
        filter_value=args.filter_value,
        attribute_name=attribute_name,
        excluded_event_types=frozenset(args.exclude_event_type or []),
        included_columns=tuple(columns),
    )


def search_events(settings, client, args):
    search_filter = build_filter(args)

    if search_filter.excluded_event_types:
        print(f"Excluding event types: {', '.join(sorted(search_filter.excluded_event_types))}", file=sys.stderr)
    print(f"Applying filter [{search_filter.describe()}]", file=sys.stderr)
    print(f"Querying events from: {_iso(search_filter.start_date)} to: {_iso(search_filter.end_date)}",
          file=sys.stderr)

    events = query_events(settings, client, search_filter, args.limit)
    if not events:
        print("No matching events. Query complete.", file=sys.stderr)
        return 0

    matched = filter_events(events, search_filter)
    print(f"Found total of {len(matched)} matching events from a possible {len(events)}. "
          f"Last event_date retrieved was {_iso(events[-1].event_date)}.", file=sys.stderr)

    columns = output_columns(search_filter)
    if args.format == "csv":
        rows = records_to_rows(matched, columns)
        if args.output:
            saved = write_csv(args.output, columns, rows)
            print(f"Saved {saved} events to {args.output}", file=sys.stderr)
        else:
            sys.stdout.write(to_csv(columns, rows))
    else:
        print_table(matched, columns)
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Search TaskRouter events",
        epilog="Filter types: taskSid, workerSid, task_attributes__<attribute-name>",
    )
    parser.add_argument("--start-date", dest="start_date", type=parse_date,
                        help=f"Start of search range (default: {DEFAULT_START_HOURS} hours ago)")
    parser.add_argument("--end-date", dest="end_date", type=parse_date,
                        help="End of search range (default: current time)")
    parser.add_argument("--filter-type", dest="filter_type", type=parse_filter_type, required=True,
                        help="taskSid | workerSid | task_attributes__<attribute-name>")
    parser.add_argument("--filter-value", dest="filter_value", required=True)
    parser.add_argument("--exclude-event-type", dest="exclude_event_type", nargs="+", action="extend",
                        help="Event type(s) to leave out")
    parser.add_argument("--include-column", dest="include_column", nargs="+", action="extend",
                        type=parse_column, help="Extra column(s) to display")
    parser.add_argument("--limit", type=positive_int, help="Maximum events to retrieve")
    parser.add_argument("--format", choices=["table", "csv"], default="table")
    parser.add_argument("--output", "-o", help="With --format csv, write to this file instead of stdout")
    args = parser.parse_args(argv)
    if args.start_date and args.end_date and args.start_date > args.end_date:
        parser.error("--start-date must not be after --end-date")
    return args


def main(argv=None):
    return run_script(search_events, parse_args(argv))


if __name__ == "__main__":
    sys.exit(main())
