#!/usr/bin/env python3
"""
TaskRouter worker configurations: per-channel capacity for every worker.

Writes WorkerSid,WorkerFriendlyName,<channel...> rows sorted by worker name.
Channels a worker has no configuration for show capacity 0.

Usage:
  python3 scripts/worker_configs.py [--channel NAME ...] [--worker-sid WK... ...] [--output FILE]

Environment:
  TWILIO_ACCT_SID, TWILIO_ACCT_AUTH, TWILIO_WORKSPACE_SID
"""

import argparse
import sys
import threading
from dataclasses import dataclass, field, replace

from report_output import write_csv
from twilio_common import call_api, fetch_all, map_items, positive_int, run_script

DEFAULT_OUTPUT = "output.csv"
PROGRESS_EVERY = 10


@dataclass(frozen=True)
class WorkerConfig:
    name: str
    sid: str
    capacities: dict = field(default_factory=dict)

    @classmethod
    def for_channels(cls, name, sid, channels):
        return cls(name=name, sid=sid, capacities={c: "0" for c in channels})

    def with_capacity(self, channel, capacity):
        capacities = dict(self.capacities)
        capacities[channel] = str(capacity) if capacity else "0"
        return replace(self, capacities=capacities)


def _workspace(settings, client):
    return client.taskrouter.v1.workspaces(settings.require_workspace())


def list_channel_names(settings, client):
    channels = fetch_all(settings, _workspace(settings, client).task_channels)
    return sorted(tc.unique_name for tc in channels)


def list_workers(settings, client, channels, worker_sids=None):
    """Workers mapped to empty configs, sorted by name."""
    workspace = _workspace(settings, client)
    if worker_sids:
        workers = map_items(
            lambda sid: call_api(settings, workspace.workers(sid).fetch),
            worker_sids,
            label="worker",
        )
    else:
        workers = fetch_all(settings, workspace.workers)
    configs = [WorkerConfig.for_channels(w.friendly_name, w.sid, channels) for w in workers]
    return sorted(configs, key=lambda c: (c.name or "").casefold())


def load_capacities(settings, client, config, channels):
    """Fill in configured capacity for each included channel of one worker."""
    worker_channels = fetch_all(settings, _workspace(settings, client).workers(config.sid).worker_channels)
    for wc in worker_channels:
        if wc.task_channel_unique_name in channels:
            config = config.with_capacity(wc.task_channel_unique_name, wc.configured_capacity)
    return config


def collect_worker_configs(settings, client, configs, channels, concurrency=1):
    total = len(configs)
    done = []
    lock = threading.Lock()

    def load(config):
        try:
            return load_capacities(settings, client, config, channels)
        finally:
            with lock:
                done.append(config.sid)
                count = len(done)
                if count % PROGRESS_EVERY == 0 or count == total:
                    print(f"Retrieved {count} of {total} worker configurations", file=sys.stderr)

    return map_items(load, configs, concurrency=concurrency, label="worker",
                     describe=lambda c: f"{c.name} ({c.sid})")


def worker_configs_csv(configs, channels):
    header = ["WorkerSid", "WorkerFriendlyName"] + list(channels)
    rows = [[c.sid, c.name] + [c.capacities.get(ch, "0") for ch in channels] for c in configs]
    return header, rows


def output_worker_configs(settings, client, args):
    channels = list(args.channel or [])
    output = args.output or DEFAULT_OUTPUT

    if not channels:
        channels = list_channel_names(settings, client)
    print(f"Included channels are: {', '.join(channels)}", file=sys.stderr)
    print(f"Output file will be: {output}", file=sys.stderr)

    configs = list_workers(settings, client, channels, args.worker_sid)
    print(f"Found {len(configs)} workers.  Retrieving worker configurations...", file=sys.stderr)
    configs = collect_worker_configs(settings, client, configs, channels, args.concurrency)

    header, rows = worker_configs_csv(configs, channels)
    saved = write_csv(output, header, rows)
    print(f"Saved {saved} worker configs to {output}", file=sys.stderr)
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Export TaskRouter worker channel capacities to CSV")
    parser.add_argument("--channel", action="append",
                        help="Task channel unique name to include (repeatable; default: all channels)")
    parser.add_argument("--worker-sid", dest="worker_sid", action="append",
                        help="Only this worker (repeatable)")
    parser.add_argument("--concurrency", type=positive_int, default=1,
                        help="Workers fetched in parallel (default: 1)")
    parser.add_argument("--output", "-o", help=f"CSV file to write (default: {DEFAULT_OUTPUT})")
    return parser.parse_args(argv)


def main(argv=None):
    return run_script(output_worker_configs, parse_args(argv))


if __name__ == "__main__":
    sys.exit(main())
