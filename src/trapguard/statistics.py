#!/usr/bin/env python3
"""
Attack statistics for dashboards and exports.

Keeps a bounded ring buffer of attack records (oldest evicted first) and
derives dashboard aggregates over a time range on demand.

Security Considerations:
- Bounded memory: at most max_records records are retained
- Read-only surface for dashboards and exports; nothing here feeds back
  into block decisions
- Record ids are random and not derived from the address
"""

import csv
import io
import json
import logging
import math
import random
import string
import threading
import time
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .attack_types import AttackEvent, AttackType


HOUR_SECONDS = 3600
DEFAULT_RANGE_SECONDS = 24 * HOUR_SECONDS

_ID_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class AttackRecord:
    """One stored attack plus its decision outcome."""

    id: str
    address: str
    attack_type: str
    severity: str
    path: str
    timestamp: float
    blocked: bool
    country: Optional[str] = None
    country_code: Optional[str] = None
    city: Optional[str] = None
    user_agent: Optional[str] = None
    triggered_rule: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TimeRange:
    """Closed interval [start, end] in epoch seconds."""

    start: float
    end: float

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError("TimeRange start must not be after end")

    def contains(self, timestamp: float) -> bool:
        return self.start <= timestamp <= self.end

    @classmethod
    def last(cls, seconds: float, now: float) -> 'TimeRange':
        return cls(start=now - seconds, end=now)


@dataclass
class DashboardStats:
    total_attacks: int
    blocked_attacks: int
    unique_addresses: int
    attacks_by_type: Dict[str, int]
    attacks_by_severity: Dict[str, int]
    attacks_by_country: Dict[str, int]
    attacks_by_hour: List[int]
    top_attackers: List[Dict]
    top_paths: List[Dict]
    recent_attacks: List[AttackRecord]
    timeline: List[Dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'total_attacks': self.total_attacks,
            'blocked_attacks': self.blocked_attacks,
            'unique_addresses': self.unique_addresses,
            'attacks_by_type': dict(self.attacks_by_type),
            'attacks_by_severity': dict(self.attacks_by_severity),
            'attacks_by_country': dict(self.attacks_by_country),
            'attacks_by_hour': list(self.attacks_by_hour),
            'top_attackers': [dict(a) for a in self.top_attackers],
            'top_paths': [dict(p) for p in self.top_paths],
            'recent_attacks': [r.to_dict() for r in self.recent_attacks],
            'timeline': [dict(t) for t in self.timeline],
        }


class StatisticsAggregator:
    """
    Bounded attack log with dashboard aggregation.

    Thread-safe: Yes
    """

    DEFAULT_MAX_RECORDS = 10000

    CSV_HEADERS = [
        'ID', 'Timestamp', 'Address', 'Country', 'City', 'Attack Type',
        'Severity', 'Path', 'Blocked', 'Rule',
    ]

    def __init__(
        self,
        max_records: int = DEFAULT_MAX_RECORDS,
        recent_limit: int = 50,
        top_limit: int = 10,
        clock: Callable[[], float] = time.time,
        tz=None,
    ):
        """
        Initialize statistics aggregator.

        Args:
            max_records: Ring buffer capacity
            recent_limit: Records returned in DashboardStats.recent_attacks
            top_limit: Entries in the top attackers / paths lists
            clock: Time source returning epoch seconds
            tz: Timezone for the hour-of-day histogram (None = local time)
        """
        if max_records <= 0:
            raise ValueError("max_records must be positive")

        self.max_records = max_records
        self.recent_limit = recent_limit
        self.top_limit = top_limit
        self.clock = clock
        self.tz = tz
        self.logger = logging.getLogger(__name__)

        self._records = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def _generate_id(self) -> str:
        suffix = ''.join(random.choices(_ID_ALPHABET, k=9))
        return f"atk_{int(self.clock() * 1000)}_{suffix}"

    def record_attack(
        self,
        event: AttackEvent,
        blocked: bool,
        triggered_rule: Optional[str] = None,
        country: Optional[str] = None,
        city: Optional[str] = None,
    ) -> AttackRecord:
        """
        Store an attack with its decision outcome.

        Returns:
            The stored record with its generated id
        """
        record = AttackRecord(
            id=self._generate_id(),
            address=event.address,
            attack_type=event.attack_type.value,
            severity=event.severity.name,
            path=event.path,
            timestamp=event.timestamp,
            blocked=bool(blocked),
            country=country,
            country_code=event.country_code,
            city=city,
            user_agent=event.user_agent or None,
            triggered_rule=triggered_rule,
        )
        with self._lock:
            self._records.append(record)
        return record

    def _snapshot(self) -> List[AttackRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def get_stats(self, time_range: Optional[TimeRange] = None) -> DashboardStats:
        """
        Aggregate records inside time_range (default: last 24 hours).
        """
        if time_range is None:
            time_range = TimeRange.last(DEFAULT_RANGE_SECONDS, self.clock())

        records = [r for r in self._snapshot() if time_range.contains(r.timestamp)]

        by_type: Counter = Counter()
        by_severity: Counter = Counter()
        by_country: Counter = Counter()
        by_hour = [0] * 24
        address_counts: Dict[str, Dict] = {}
        path_counts: Counter = Counter()
        blocked = 0

        for record in records:
            by_type[record.attack_type] += 1
            by_severity[record.severity] += 1
            if record.country_code:
                by_country[record.country_code] += 1
            by_hour[self._hour_of(record.timestamp)] += 1

            entry = address_counts.setdefault(
                record.address, {'address': record.address, 'count': 0, 'country': record.country}
            )
            entry['count'] += 1
            path_counts[record.path] += 1

            if record.blocked:
                blocked += 1

        # sorted() is stable, so ties keep first-seen order
        top_attackers = sorted(address_counts.values(), key=lambda a: -a['count'])
        top_paths = sorted(
            ({'path': path, 'count': count} for path, count in path_counts.items()),
            key=lambda p: -p['count'],
        )

        recent = records[-self.recent_limit:] if self.recent_limit else []

        return DashboardStats(
            total_attacks=len(records),
            blocked_attacks=blocked,
            unique_addresses=len(address_counts),
            attacks_by_type=dict(by_type),
            attacks_by_severity=dict(by_severity),
            attacks_by_country=dict(by_country),
            attacks_by_hour=by_hour,
            top_attackers=[dict(a) for a in top_attackers[:self.top_limit]],
            top_paths=top_paths[:self.top_limit],
            recent_attacks=list(reversed(recent)),
            timeline=self._timeline(records, time_range),
        )

    def _hour_of(self, timestamp: float) -> int:
        return datetime.fromtimestamp(timestamp, self.tz).hour

    @staticmethod
    def _timeline(records: List[AttackRecord], time_range: TimeRange) -> List[Dict]:
        """Hourly buckets covering the range, including empty ones."""
        buckets: Dict[int, int] = {}
        t = time_range.start
        while t <= time_range.end:
            buckets[math.floor(t / HOUR_SECONDS) * HOUR_SECONDS] = 0
            t += HOUR_SECONDS

        for record in records:
            bucket = math.floor(record.timestamp / HOUR_SECONDS) * HOUR_SECONDS
            buckets[bucket] = buckets.get(bucket, 0) + 1

        return [{'timestamp': ts, 'count': count} for ts, count in sorted(buckets.items())]

    def get_attack(self, record_id: str) -> Optional[AttackRecord]:
        for record in self._snapshot():
            if record.id == record_id:
                return record
        return None

    def get_attacks_by_address(self, address: str, limit: int = 100) -> List[AttackRecord]:
        """Most recent records for an address, newest first."""
        matches = [r for r in self._snapshot() if r.address == address]
        return list(reversed(matches[-limit:])) if limit > 0 else []

    def get_attacks_by_type(self, attack_type, limit: int = 100) -> List[AttackRecord]:
        """Most recent records of one attack type, newest first."""
        if isinstance(attack_type, AttackType):
            attack_type = attack_type.value
        matches = [r for r in self._snapshot() if r.attack_type == attack_type]
        return list(reversed(matches[-limit:])) if limit > 0 else []

    def get_recent_attacks(self, limit: int = 50) -> List[AttackRecord]:
        records = self._snapshot()
        return list(reversed(records[-limit:])) if limit > 0 else []

    def export_csv(self, time_range: Optional[TimeRange] = None) -> str:
        """CSV of the recent records in range, newest first."""
        stats = self.get_stats(time_range)
        output = io.StringIO()
        writer = csv.writer(output, lineterminator='\n')
        writer.writerow(self.CSV_HEADERS)
        for record in stats.recent_attacks:
            writer.writerow([
                record.id,
                datetime.fromtimestamp(record.timestamp, timezone.utc).isoformat(),
                record.address,
                record.country or '',
                record.city or '',
                record.attack_type,
                record.severity,
                record.path,
                'Yes' if record.blocked else 'No',
                record.triggered_rule or '',
            ])
        return output.getvalue().rstrip('\n')

    def export_json(self, time_range: Optional[TimeRange] = None) -> str:
        return json.dumps(self.get_stats(time_range).to_dict(), indent=2)

    def __repr__(self) -> str:
        return f"StatisticsAggregator(records={len(self)}, max_records={self.max_records})"
