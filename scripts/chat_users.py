#!/usr/bin/env python3
"""
Chat users report: joined channel counts per user, with optional cleanup.

Writes UserFriendlyName,UserSid,JoinedChannelsCount rows (most channels
first) to a CSV file. With --cleanup-days, memberships in channels that have
been idle for longer than that are removed first and the remaining count is
added as PostCleanupChannelsCount.

Usage:
  python3 scripts/chat_users.py [--identity ID ...] [--name "Display Name" ...]
                                [--cleanup-days N [--dry-run]] [--output FILE]

Environment:
  TWILIO_ACCT_SID, TWILIO_ACCT_AUTH, TWILIO_SERVICE_SID
"""

import argparse
import sys
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional

from report_output import write_csv
from twilio_common import (
    ITEM_ERRORS,
    call_api,
    describe_error,
    escape_identity,
    fetch_all,
    is_fatal_error,
    map_items,
    non_negative_int,
    positive_int,
    run_script,
)

DEFAULT_OUTPUT = "output.csv"
CSV_HEADER = ["UserFriendlyName", "UserSid", "JoinedChannelsCount"]
POST_CLEANUP_COLUMN = "PostCleanupChannelsCount"


@dataclass(frozen=True)
class UserWithChannels:
    name: str
    sid: str
    joined_channels: int = 0
    post_cleanup_channels: Optional[int] = None

    @classmethod
    def from_user(cls, user):
        return cls(
            name=user.friendly_name or user.identity,
            sid=user.sid,
            joined_channels=user.joined_channels_count or 0,
        )


def _service(settings, client):
    return client.chat.v2.services(settings.require_chat_service())


def list_users(settings, client):
    """All users of the chat service."""
    users = fetch_all(settings, _service(settings, client).users)
    return [UserWithChannels.from_user(u) for u in users]


def find_users(settings, client, identities, concurrency=1):
    """Fetch users one identity at a time; unknown identities are skipped."""
    service = _service(settings, client)
    users = map_items(
        lambda identity: call_api(settings, service.users(identity).fetch),
        identities,
        concurrency=concurrency,
        label="user",
    )
    return [UserWithChannels.from_user(u) for u in users]


def sort_by_joined_channels(users):
    """Most joined channels first; equal counts keep their input order."""
    return sorted(users, key=lambda u: u.joined_channels, reverse=True)


def _last_activity(channel):
    when = channel.date_updated or channel.date_created
    if when is not None and when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when


def cleanup_stale_channels(settings, client, user, max_age_days, dry_run=False, now=None):
    """Remove the user from channels idle for more than `max_age_days` days.

    Returns the user with post_cleanup_channels filled in, or unchanged when
    the user's memberships or remaining count could not be read.
    """
    service = _service(settings, client)
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max_age_days)
    try:
        memberships = fetch_all(settings, service.users(user.sid).user_channels)
    except ITEM_ERRORS as exc:
        if is_fatal_error(exc):
            raise
        print(f"Skipping cleanup for {user.name}: {describe_error(exc)}", file=sys.stderr)
        return user

    removed = 0
    for membership in memberships:
        try:
            channel = call_api(settings, service.channels(membership.channel_sid).fetch)
            last_activity = _last_activity(channel)
            if last_activity is None or last_activity >= cutoff:
                continue
            if not dry_run:
                member = service.channels(membership.channel_sid).members(membership.member_sid)
                call_api(settings, member.delete)
            removed += 1
            action = "Would remove" if dry_run else "Removed"
            print(f"{action} {user.name} from {channel.unique_name or channel.sid} "
                  f"(idle since {last_activity.date()})", file=sys.stderr)
        except ITEM_ERRORS as exc:
            if is_fatal_error(exc):
                raise
            print(f"Skipping channel {membership.channel_sid} for {user.name}: {describe_error(exc)}",
                  file=sys.stderr)

    if dry_run:
        return replace(user, post_cleanup_channels=max(0, user.joined_channels - removed))
    try:
        refreshed = call_api(settings, service.users(user.sid).fetch)
    except ITEM_ERRORS as exc:
        if is_fatal_error(exc):
            raise
        print(f"Could not refetch {user.name} after cleanup: {describe_error(exc)}", file=sys.stderr)
        return user
    return replace(user, post_cleanup_channels=refreshed.joined_channels_count or 0)


def users_csv(users):
    with_cleanup = any(u.post_cleanup_channels is not None for u in users)
    header = CSV_HEADER + ([POST_CLEANUP_COLUMN] if with_cleanup else [])
    rows = []
    for u in users:
        row = [u.name, u.sid, u.joined_channels]
        if with_cleanup:
            row.append(u.post_cleanup_channels)
        rows.append(row)
    return header, rows


def output_users(settings, client, args):
    identities = list(args.identity or []) + [escape_identity(n) for n in args.name or []]
    output = args.output or DEFAULT_OUTPUT

    print(f"Identity filter is: {', '.join(identities) if identities else '(all users)'}", file=sys.stderr)
    print(f"Output file will be: {output}", file=sys.stderr)

    if identities:
        users = find_users(settings, client, identities, args.concurrency)
    else:
        users = list_users(settings, client)
    print(f"Found {len(users)} users.", file=sys.stderr)

    if args.cleanup_days is not None:
        users = map_items(
            lambda u: cleanup_stale_channels(settings, client, u, args.cleanup_days, args.dry_run),
            users,
            concurrency=args.concurrency,
            label="user",
            describe=lambda u: u.name,
        )

    header, rows = users_csv(sort_by_joined_channels(users))
    saved = write_csv(output, header, rows)
    print(f"Saved {saved} users to {output}", file=sys.stderr)
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Report chat users and their joined channel counts")
    parser.add_argument("--identity", action="append", help="Only this user identity (repeatable)")
    parser.add_argument("--name", action="append",
                        help="Only the user with this display name; escaped to an identity (repeatable)")
    parser.add_argument("--cleanup-days", dest="cleanup_days", type=non_negative_int,
                        help="Remove memberships in channels idle for more than N days")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true",
                        help="With --cleanup-days, report removals without making them")
    parser.add_argument("--concurrency", type=positive_int, default=1,
                        help="Users processed in parallel (default: 1)")
    parser.add_argument("--output", "-o", help=f"CSV file to write (default: {DEFAULT_OUTPUT})")
    args = parser.parse_args(argv)
    if args.dry_run and args.cleanup_days is None:
        parser.error("--dry-run requires --cleanup-days")
    return args


def main(argv=None):
    return run_script(output_users, parse_args(argv))


if __name__ == "__main__":
    sys.exit(main())
