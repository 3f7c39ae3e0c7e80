#!/usr/bin/env python3
"""
Outbound test calls: place calls at a fixed rate until a cap is reached.

Each second a batch of --calls-per-second calls is created in parallel. The
last batch is trimmed so exactly --max-calls calls are placed. Each call says
a short greeting and then stays up for --call-duration seconds.

Usage:
  python3 scripts/create_calls.py --from-number +1XXX --to-number +1XXX
      [--calls-per-second 1] [--call-duration 60] [--max-calls 100]

Environment:
  TWILIO_ACCT_SID, TWILIO_ACCT_AUTH
"""

import argparse
import sys
import time
from concurrent.futures import ThreadPoolExecutor, wait

from twilio.twiml.voice_response import VoiceResponse

from twilio_common import non_negative_int, positive_int, run_script

DEFAULT_CALLS_PER_SECOND = 1
DEFAULT_CALL_DURATION = 60
DEFAULT_MAX_CALLS = 100
GREETING = "Hi there! Hang tight for a bit while we do this test."


def build_twiml(duration):
    response = VoiceResponse()
    response.say(GREETING)
    response.pause(length=duration)
    return str(response)


def dispatch_calls(place_call, calls_per_second, max_calls, interval=1.0,
                   sleep=time.sleep, clock=time.monotonic, on_batch=None):
    """Call place_call() in timed batches until max_calls calls were issued.

    Every tick issues min(calls_per_second, max_calls - placed) calls in
    parallel and waits for all of them. A failed call is not retried: once
    its batch has finished, the exception propagates. Returns the total.
    """
    placed = 0
    with ThreadPoolExecutor(max_workers=calls_per_second) as pool:
        while placed < max_calls:
            started = clock()
            size = min(calls_per_second, max_calls - placed)
            futures = [pool.submit(place_call) for _ in range(size)]
            wait(futures)
            placed += size
            for future in futures:
                future.result()
            if on_batch:
                on_batch(size, placed)
            if placed < max_calls:
                remaining = interval - (clock() - started)
                if remaining > 0:
                    sleep(remaining)
    return placed


def create_calls(settings, client, args):
    twiml = build_twiml(args.call_duration)

    def place_call():
        call = client.calls.create(to=args.to_number, from_=args.from_number, twiml=twiml)
        return call.sid

    def report(size, placed):
        print(f"Placed {size} calls. Total calls placed: {placed} of {args.max_calls}", file=sys.stderr)

    print(f"Calling {args.to_number} from {args.from_number} at {args.calls_per_second} calls/sec, "
          f"{args.call_duration}s each, {args.max_calls} calls max", file=sys.stderr)
    dispatch_calls(place_call, args.calls_per_second, args.max_calls, on_batch=report)
    print(f"Max calls ({args.max_calls}) reached! Terminating.", file=sys.stderr)
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Place outbound test calls at a fixed rate")
    parser.add_argument("--from-number", dest="from_number", required=True,
                        help="The Twilio number (or verified number) to call from")
    parser.add_argument("--to-number", dest="to_number", required=True, help="The number to call")
    parser.add_argument("--calls-per-second", dest="calls_per_second", type=positive_int,
                        default=DEFAULT_CALLS_PER_SECOND,
                        help="Calls per second (be sure to not exceed your account CPS limits)")
    parser.add_argument("--call-duration", dest="call_duration", type=non_negative_int,
                        default=DEFAULT_CALL_DURATION, help="Seconds to keep each call alive")
    parser.add_argument("--max-calls", dest="max_calls", type=non_negative_int,
                        default=DEFAULT_MAX_CALLS, help="The maximum number of calls to place")
    return parser.parse_args(argv)


def main(argv=None):
    return run_script(create_calls, parse_args(argv))


if __name__ == "__main__":
    sys.exit(main())
