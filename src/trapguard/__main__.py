#!/usr/bin/env python3
"""
Replay recorded decoy requests through TrapGuard.

Usage:
    python -m src.trapguard [--config config/trapguard.yml] events.jsonl

Each input line is a JSON object with address, path and optionally query,
body, headers, country_code and timestamp (epoch seconds). One decision
per line is printed as JSON, followed by a statistics summary.
"""

import argparse
import json
import sys
import time
from typing import Optional

from .config import ConfigManager
from .exceptions import TrapGuardError
from .logging_utils import configure_logging
from .statistics import TimeRange
from .trap_guard import TrapGuard


class ReplayClock:
    """Clock pinned to the timestamp of the record being replayed."""

    def __init__(self):
        self.now: Optional[float] = None

    def __call__(self) -> float:
        return self.now if self.now is not None else time.time()


def replay(guard: TrapGuard, clock: ReplayClock, lines, out=sys.stdout) -> int:
    """
    Feed JSON lines through the guard.

    Returns:
        Number of malformed lines skipped
    """
    skipped = 0
    first = None
    for line_number, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
            address = str(entry['address'])
            timestamp = entry.get('timestamp')
            clock.now = float(timestamp) if timestamp is not None else None
        except (ValueError, KeyError, TypeError) as e:
            print(f"line {line_number}: skipped ({e})", file=sys.stderr)
            skipped += 1
            continue

        now = clock()
        if first is None:
            first = now

        decision = guard.handle_request(
            address,
            entry.get('path', '/'),
            entry.get('query', ''),
            entry.get('body'),
            entry.get('headers'),
            entry.get('country_code'),
        )
        out.write(json.dumps({'line': line_number, 'address': address, **decision.to_dict()}) + '\n')

    end = clock()
    time_range = TimeRange(start=min(first, end), end=end) if first is not None else None
    summary = guard.get_stats(time_range).to_dict()
    summary.pop('recent_attacks', None)
    out.write(json.dumps({'summary': summary}) + '\n')
    return skipped


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Replay decoy requests through TrapGuard")
    parser.add_argument("events", help="JSON-lines file of requests ('-' for stdin)")
    parser.add_argument("--config", default="config/trapguard.yml", help="YAML configuration file")
    args = parser.parse_args(argv)

    clock = ReplayClock()
    try:
        config = ConfigManager(args.config).config
        configure_logging(config)
        guard = TrapGuard(config, clock=clock)
    except TrapGuardError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.events == '-':
        skipped = replay(guard, clock, sys.stdin)
    else:
        try:
            with open(args.events, 'r') as f:
                skipped = replay(guard, clock, f)
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    return 2 if skipped else 0


if __name__ == "__main__":
    sys.exit(main())
