#!/usr/bin/env python3
"""
Block registry for decoy endpoint auto-blocking.

This module is the single source of truth for "is this address currently
blocked". Records live in a pluggable backend (in-memory or Redis) and
expire lazily: an expired record is evicted when it is next read, so no
background sweep is needed for correctness.

Security Considerations:
- Writes overwrite unconditionally; "already blocked" guards live in callers
- Backend failures never drop a block: the registry falls back to an
  in-memory map and raises a degraded-mode signal for operators
- Audit logging for every block and unblock
- Addresses are opaque strings and may be spoofed upstream
"""

import json
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Union

import redis

from .exceptions import BlockBackendError
from .metrics import BLOCK_BACKEND_DEGRADED, BLOCKS_TOTAL


class BlockDuration(Enum):
    """
    Supported block durations.

    PERMANENT maps to a record with no expiry.
    """

    ONE_HOUR = "1h"
    ONE_DAY = "24h"
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"
    PERMANENT = "permanent"

    def to_seconds(self) -> Optional[int]:
        """Get duration in seconds (None if permanent)."""
        seconds = {
            BlockDuration.ONE_HOUR: 3600,
            BlockDuration.ONE_DAY: 86400,
            BlockDuration.SEVEN_DAYS: 604800,
            BlockDuration.THIRTY_DAYS: 2592000,
            BlockDuration.PERMANENT: None,
        }
        return seconds[self]

    def is_permanent(self) -> bool:
        return self == BlockDuration.PERMANENT

    @classmethod
    def from_string(cls, value: str) -> Optional['BlockDuration']:
        """Convert string to duration, None if unknown."""
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            return None

    @classmethod
    def parse(cls, value: Union['BlockDuration', str]) -> 'BlockDuration':
        """
        Convert a duration or its string form.

        Raises:
            ValueError: If the value is not a known duration
        """
        if isinstance(value, BlockDuration):
            return value
        duration = cls.from_string(value)
        if duration is None:
            valid = [d.value for d in cls]
            raise ValueError(f"Unknown block duration {value!r}, expected one of {valid}")
        return duration


@dataclass(frozen=True)
class BlockRecord:
    """
    Immutable block record.

    expires_at is None for permanent blocks. A record is expired only when
    the current time is strictly past expires_at.
    """

    address: str
    blocked_at: float
    expires_at: Optional[float]
    reason: str
    actor: str
    attack_type: str = "UNKNOWN"
    severity: str = "MEDIUM"

    def __post_init__(self):
        if not self.address:
            raise ValueError("Address cannot be empty")
        if self.expires_at is not None and self.expires_at < self.blocked_at:
            raise ValueError("expires_at cannot precede blocked_at")

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def remaining_seconds(self, now: float) -> Optional[float]:
        """Seconds until expiry (None if permanent, 0 once expired)."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - now)

    def to_dict(self) -> dict:
        return {
            'address': self.address,
            'blocked_at': self.blocked_at,
            'expires_at': self.expires_at,
            'reason': self.reason,
            'actor': self.actor,
            'attack_type': self.attack_type,
            'severity': self.severity,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'BlockRecord':
        """
        Rebuild a record from its dict form.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        try:
            expires_at = data.get('expires_at')
            return cls(
                address=str(data['address']),
                blocked_at=float(data['blocked_at']),
                expires_at=None if expires_at is None else float(expires_at),
                reason=str(data.get('reason', '')),
                actor=str(data.get('actor', '')),
                attack_type=str(data.get('attack_type', 'UNKNOWN')),
                severity=str(data.get('severity', 'MEDIUM')),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid block record: {e}")


class BlockBackend(ABC):
    """
    Storage for block records.

    Backends store and return raw records; expiry is enforced by
    BlockRegistry. Implementations raise BlockBackendError on failure.
    """

    name = "abstract"

    @abstractmethod
    def put(self, record: BlockRecord) -> None:
        """Create or overwrite the record for record.address."""

    @abstractmethod
    def delete(self, address: str) -> bool:
        """Remove a record. True iff one existed."""

    @abstractmethod
    def get(self, address: str) -> Optional[BlockRecord]:
        """Fetch a record or None."""

    @abstractmethod
    def all(self) -> List[BlockRecord]:
        """Every stored record, expired or not."""


class MemoryBlockBackend(BlockBackend):
    """In-process dictionary backend."""

    name = "memory"

    def __init__(self):
        self._records: Dict[str, BlockRecord] = {}
        self._lock = threading.Lock()

    def put(self, record: BlockRecord) -> None:
        with self._lock:
            self._records[record.address] = record

    def delete(self, address: str) -> bool:
        with self._lock:
            return self._records.pop(address, None) is not None

    def get(self, address: str) -> Optional[BlockRecord]:
        with self._lock:
            return self._records.get(address)

    def all(self) -> List[BlockRecord]:
        with self._lock:
            return list(self._records.values())


class RedisBlockBackend(BlockBackend):
    """
    Redis backend storing JSON records under trapguard:blocked:<address>.

    Finite blocks also carry a Redis TTL so abandoned keys disappear on
    their own; the registry still checks expires_at on read.
    """

    name = "redis"
    KEY_PREFIX = "trapguard:blocked:"

    def __init__(
        self,
        redis_client,
        clock: Callable[[], float] = time.time,
        check_connection: bool = True,
    ):
        """
        Initialize Redis backend.

        Args:
            redis_client: Connected Redis client
            clock: Time source used to derive key TTLs
            check_connection: Ping Redis before returning

        Raises:
            ValueError: If redis_client is None
            BlockBackendError: If Redis is unreachable
        """
        if redis_client is None:
            raise ValueError("Redis client is required for the Redis block backend")

        self.redis = redis_client
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        if not check_connection:
            return
        try:
            self.redis.ping()
        except redis.RedisError as e:
            raise BlockBackendError(f"Redis connection failed: {e}")

    def _key(self, address: str) -> str:
        return f"{self.KEY_PREFIX}{address}"

    def put(self, record: BlockRecord) -> None:
        payload = json.dumps(record.to_dict())
        key = self._key(record.address)
        try:
            if record.expires_at is None:
                self.redis.set(key, payload)
            else:
                ttl = max(1, math.ceil(record.expires_at - self.clock()) + 1)
                self.redis.setex(key, ttl, payload)
        except redis.RedisError as e:
            raise BlockBackendError(f"Redis error storing block: {e}")

    def delete(self, address: str) -> bool:
        try:
            return bool(self.redis.delete(self._key(address)))
        except redis.RedisError as e:
            raise BlockBackendError(f"Redis error removing block: {e}")

    def get(self, address: str) -> Optional[BlockRecord]:
        try:
            raw = self.redis.get(self._key(address))
        except redis.RedisError as e:
            raise BlockBackendError(f"Redis error reading block: {e}")
        if raw is None:
            return None
        return self._decode(raw)

    def all(self) -> List[BlockRecord]:
        try:
            records = []
            for key in self.redis.scan_iter(match=f"{self.KEY_PREFIX}*"):
                raw = self.redis.get(key)
                if raw is None:
                    continue
                record = self._decode(raw)
                if record is not None:
                    records.append(record)
            return records
        except redis.RedisError as e:
            raise BlockBackendError(f"Redis error listing blocks: {e}")

    def _decode(self, raw) -> Optional[BlockRecord]:
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        try:
            return BlockRecord.from_dict(json.loads(raw))
        except (ValueError, TypeError) as e:
            self.logger.error(f"Discarding malformed block record: {e}")
            return None


class BlockRegistry:
    """
    Expiry-aware block registry over a pluggable backend.

    Usage:
        registry = BlockRegistry(MemoryBlockBackend())
        registry.block('203.0.113.7', '24h', 'Honeypot triggered', 'AutoBlock')
        if registry.is_blocked(address):
            # reject request
    """

    def __init__(
        self,
        backend: Optional[BlockBackend] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize block registry.

        Args:
            backend: Primary storage backend (defaults to in-memory)
            clock: Time source returning epoch seconds
        """
        self.backend = backend or MemoryBlockBackend()
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._fallback = MemoryBlockBackend()
        self._degraded = False
        self._degraded_reason: Optional[str] = None
        self._state_lock = threading.Lock()
        # Deletes that failed on the primary, replayed by try_recover
        self._pending_unblocks: Set[str] = set()

    @property
    def degraded(self) -> bool:
        """True while operating on the in-memory fallback."""
        return self._degraded

    @property
    def degraded_reason(self) -> Optional[str]:
        return self._degraded_reason

    def block(
        self,
        address: str,
        duration: Union[BlockDuration, str] = BlockDuration.ONE_HOUR,
        reason: str = "Honeypot triggered",
        actor: str = "System",
        attack_type: str = "UNKNOWN",
        severity: str = "MEDIUM",
    ) -> bool:
        """
        Block an address, overwriting any existing record.

        Args:
            address: Source address
            duration: BlockDuration or its string form ('1h', '24h', '7d',
                '30d', 'permanent')
            reason: Human-readable reason
            actor: Who initiated the block
            attack_type: Attack type that led to the block
            severity: Severity of the triggering attack

        Returns:
            True once the block is stored (primary or fallback)

        Raises:
            ValueError: If address is empty or duration unknown
        """
        if not address:
            raise ValueError("Address cannot be empty")
        duration = BlockDuration.parse(duration)

        now = self.clock()
        seconds = duration.to_seconds()
        record = BlockRecord(
            address=address,
            blocked_at=now,
            expires_at=None if seconds is None else now + seconds,
            reason=reason,
            actor=actor,
            attack_type=str(attack_type),
            severity=str(severity),
        )

        with self._state_lock:
            self._pending_unblocks.discard(address)

        if self._degraded:
            self._fallback.put(record)
        else:
            try:
                self.backend.put(record)
            except BlockBackendError as e:
                self.mark_degraded(e)
                self._fallback.put(record)

        BLOCKS_TOTAL.labels(actor=actor, duration=duration.value).inc()
        self.logger.warning(
            f"BLOCK: address={address[:45]} duration={duration.value} "
            f"actor={actor} reason={reason}"
        )
        return True

    def unblock(self, address: str) -> bool:
        """
        Remove a block.

        Returns:
            True iff a record existed and was removed

        Raises:
            BlockBackendError: If the primary backend could not delete the
                record. The address reads as unblocked from then on and the
                delete is replayed by try_recover().
        """
        removed_fallback = self._fallback.delete(address)
        try:
            removed = self.backend.delete(address)
        except BlockBackendError as e:
            with self._state_lock:
                self._pending_unblocks.add(address)
            self.mark_degraded(e)
            self.logger.error(
                f"UNBLOCK PENDING: address={address[:45]} backend delete failed ({e})"
            )
            raise BlockBackendError(
                f"Unblock of {address[:45]} not confirmed by backend '{self.backend.name}': {e}"
            ) from e
        with self._state_lock:
            self._pending_unblocks.discard(address)
        removed = removed or removed_fallback

        if removed:
            self.logger.warning(f"UNBLOCK: address={address[:45]}")
        return bool(removed)

    def get(self, address: str) -> Optional[BlockRecord]:
        """
        Fetch the current block record for an address.

        Expired records are evicted and reported as None.
        """
        record = self._lookup(address)
        if record is None:
            return None

        if record.is_expired(self.clock()):
            self._evict(address)
            return None
        return record

    def is_blocked(self, address: str) -> bool:
        """Lazy-expiry existence check."""
        return self.get(address) is not None

    def list(self) -> List[BlockRecord]:
        """Every unexpired block, oldest first."""
        now = self.clock()
        with self._state_lock:
            pending = set(self._pending_unblocks)
        records = {
            r.address: r for r in self._primary(lambda b: b.all(), [])
            if r.address not in pending
        }
        for record in self._fallback.all():
            records[record.address] = record
        active = [r for r in records.values() if not r.is_expired(now)]
        return sorted(active, key=lambda r: r.blocked_at)

    def count(self) -> int:
        return len(self.list())

    def get_summary(self) -> Dict:
        """
        Summarize active blocks for dashboards.

        Returns:
            Dictionary with totals and per-actor counts
        """
        records = self.list()
        by_actor: Dict[str, int] = {}
        for record in records:
            by_actor[record.actor] = by_actor.get(record.actor, 0) + 1
        permanent = sum(1 for r in records if r.is_permanent)
        return {
            'total_blocked': len(records),
            'permanent': permanent,
            'temporary': len(records) - permanent,
            'by_actor': by_actor,
            'backend': self.backend.name,
            'degraded': self._degraded,
        }

    def try_recover(self) -> bool:
        """
        Leave degraded mode by replaying fallback records into the backend.

        Returns:
            True if the registry is healthy afterwards
        """
        if not self._degraded:
            return True

        with self._state_lock:
            unblocks = set(self._pending_unblocks)
        pending = self._fallback.all()
        try:
            for address in unblocks:
                self.backend.delete(address)
            for record in pending:
                self.backend.put(record)
        except BlockBackendError as e:
            self.logger.error(f"Block backend still unavailable: {e}")
            return False

        for record in pending:
            self._fallback.delete(record.address)
        with self._state_lock:
            self._pending_unblocks -= unblocks
            self._degraded = False
            self._degraded_reason = None
        BLOCK_BACKEND_DEGRADED.set(0)
        self.logger.warning(
            f"Block backend '{self.backend.name}' recovered, "
            f"replayed {len(pending)} records and {len(unblocks)} unblocks"
        )
        return True

    def _lookup(self, address: str) -> Optional[BlockRecord]:
        # Fallback first: it holds writes made while degraded
        record = self._fallback.get(address)
        if record is None:
            with self._state_lock:
                if address in self._pending_unblocks:
                    return None
            record = self._primary(lambda backend: backend.get(address), None)
        return record

    def _evict(self, address: str) -> None:
        self._fallback.delete(address)
        self._primary(lambda backend: backend.delete(address), False)

    def _primary(self, operation, default):
        """
        Run an operation against the primary backend.

        A backend failure switches the registry to degraded mode and
        returns default; the caller then relies on the fallback.
        """
        try:
            return operation(self.backend)
        except BlockBackendError as e:
            self.mark_degraded(e)
            return default

    def mark_degraded(self, error: Exception) -> None:
        """Switch to the in-memory fallback and raise the degraded signal."""
        with self._state_lock:
            already = self._degraded
            self._degraded = True
            self._degraded_reason = str(error)
        if not already:
            BLOCK_BACKEND_DEGRADED.set(1)
            self.logger.warning(
                f"DEGRADED: block backend '{self.backend.name}' failed ({error}); "
                f"using in-memory fallback until recovery"
            )
