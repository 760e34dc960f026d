"""Channel lease records and the registry that owns them.

A lease is created when the faucet opens a channel toward a requesting node.
The registry is shared by the request path (inserts, status lookups) and the
lifecycle sweep (state updates, removal), so every operation runs under one
lock and hands out immutable snapshots.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso8601(value: str) -> datetime:
    candidate = value
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    return datetime.fromisoformat(candidate).astimezone(timezone.utc)


class LeaseState(str, Enum):
    OPENING = "opening"
    ACTIVE = "active"
    EXPIRING = "expiring"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (LeaseState.CLOSED, LeaseState.FAILED)


ALLOWED_TRANSITIONS: Dict[LeaseState, frozenset] = {
    LeaseState.OPENING: frozenset({LeaseState.ACTIVE, LeaseState.FAILED}),
    LeaseState.ACTIVE: frozenset({LeaseState.EXPIRING}),
    LeaseState.EXPIRING: frozenset({LeaseState.CLOSED, LeaseState.FAILED}),
    LeaseState.CLOSED: frozenset(),
    LeaseState.FAILED: frozenset(),
}

# Fields the lifecycle manager may change alongside the state.
MUTABLE_FIELDS = frozenset({"close_attempts", "last_error", "closing_txid"})


@dataclass(frozen=True)
class Lease:
    lease_id: str
    channel_id: str
    peer_pubkey: str
    capacity: int
    created_at: datetime
    expires_at: datetime
    state: LeaseState = LeaseState.OPENING
    updated_at: Optional[datetime] = None
    close_attempts: int = 0
    last_error: Optional[str] = None
    closing_txid: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        record = asdict(self)
        record["state"] = self.state.value
        record["created_at"] = isoformat(self.created_at)
        record["expires_at"] = isoformat(self.expires_at)
        record["updated_at"] = isoformat(self.updated_at) if self.updated_at else None
        return record

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lease":
        updated_at = data.get("updated_at")
        return cls(
            lease_id=str(data["lease_id"]),
            channel_id=str(data["channel_id"]),
            peer_pubkey=str(data["peer_pubkey"]),
            capacity=int(data["capacity"]),
            created_at=parse_iso8601(data["created_at"]),
            expires_at=parse_iso8601(data["expires_at"]),
            state=LeaseState(data.get("state", LeaseState.OPENING.value)),
            updated_at=parse_iso8601(updated_at) if isinstance(updated_at, str) and updated_at else None,
            close_attempts=int(data.get("close_attempts") or 0),
            last_error=data.get("last_error"),
            closing_txid=data.get("closing_txid"),
        )


class LeaseRegistryError(Exception):
    """Raised when a registry operation would break a lease invariant."""


class LeaseRegistry:
    """Stores leases keyed by lease_id, optionally mirrored to a JSON file."""

    def __init__(self, path: Optional[Path] = None, retired_limit: int = 1000) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._leases: Dict[str, Lease] = {}
        self._retired: Deque[Lease] = deque(maxlen=retired_limit)
        self._load()

    def _load(self) -> None:
        if self.path is None:
            return
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except json.JSONDecodeError:
                logger.warning("Lease file %s is not valid JSON; starting empty", self.path)
                data = {}
        if not isinstance(data, dict):
            return
        for lease_id, record in data.items():
            try:
                lease = Lease.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable lease %s: %s", lease_id, exc)
                continue
            self._leases[lease.lease_id] = lease
        if self._leases:
            logger.info("Restored %s leases from %s", len(self._leases), self.path)

    def _persist(self) -> None:
        if self.path is None:
            return
        tmp = self.path.with_suffix(".tmp")
        payload = {lease_id: lease.to_dict() for lease_id, lease in self._leases.items()}
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
        tmp.replace(self.path)

    def insert(self, lease: Lease) -> Lease:
        with self._lock:
            if lease.lease_id in self._leases:
                raise LeaseRegistryError(f"lease {lease.lease_id} already registered")
            if any(existing.channel_id == lease.channel_id for existing in self._leases.values()):
                raise LeaseRegistryError(f"channel {lease.channel_id} already has a lease")
            self._leases[lease.lease_id] = lease
            self._persist()
        return lease

    def get(self, lease_id: str) -> Optional[Lease]:
        with self._lock:
            lease = self._leases.get(lease_id)
            if lease is not None:
                return lease
            for retired in reversed(self._retired):
                if retired.lease_id == lease_id:
                    return retired
            return None

    def update_state(
        self,
        lease_id: str,
        state: LeaseState,
        *,
        now: Optional[datetime] = None,
        **changes: Any,
    ) -> Lease:
        """Move a live lease to `state`; `expires_at` can never change here.

        Staying in the current state is allowed so bookkeeping fields (close
        attempts, last error) can be updated between sweeps.
        """
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise LeaseRegistryError(f"cannot update lease fields: {sorted(unknown)}")
        with self._lock:
            lease = self._leases.get(lease_id)
            if lease is None:
                raise LeaseRegistryError(f"lease {lease_id} not found")
            if state != lease.state and state not in ALLOWED_TRANSITIONS[lease.state]:
                raise LeaseRegistryError(
                    f"invalid lease transition {lease.state.value} -> {state.value}"
                )
            updated = replace(lease, state=state, updated_at=now or utcnow(), **changes)
            self._leases[lease_id] = updated
            self._persist()
        if state != lease.state:
            logger.info("Lease %s: %s -> %s", lease_id, lease.state.value, state.value)
        return updated

    def remove(self, lease_id: str) -> bool:
        with self._lock:
            lease = self._leases.pop(lease_id, None)
            if lease is None:
                return False
            self._retired.append(lease)
            self._persist()
        logger.info("Lease %s removed in state %s", lease_id, lease.state.value)
        return True

    def snapshot(self) -> List[Lease]:
        with self._lock:
            return list(self._leases.values())

    def retired(self) -> List[Lease]:
        with self._lock:
            return list(self._retired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._leases)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "Lease",
    "LeaseRegistry",
    "LeaseRegistryError",
    "LeaseState",
    "isoformat",
    "parse_iso8601",
    "utcnow",
]
