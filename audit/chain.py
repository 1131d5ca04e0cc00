"""
audit/chain.py -- Canonical encoding, hashing and replay of the audit hash chain.

Pure functions, no I/O. audit/store.py calls compute_hash() inside the append
transaction and verify_entries() over rows streamed in sequence order.

Canonical form:
  Every stored field of an entry is covered, joined with the ASCII unit
  separator (0x1F) so adjacent fields cannot be shifted into one another
  ("ab" + "c" vs "a" + "bc"). details is serialized as compact JSON with
  sorted keys. None becomes "".

  self_hash = SHA-256(prev_hash | actor | action | category | entity_type |
                      entity_id | details | ip | user_agent | timestamp)
"""

from __future__ import annotations

import json
from collections.abc import Iterable

from audit.models import AuditLogEntry, ChainVerification
from core.crypto import constant_time_equals, sha256_hex

_SEP = "\x1f"


def canonical_details(details: dict | None) -> str:
    return json.dumps(details or {}, sort_keys=True, separators=(",", ":"), default=str)


def compute_hash(
    prev_hash: str,
    *,
    actor_id: int | None,
    action: str,
    category: str,
    entity_type: str | None,
    entity_id: str | None,
    details: dict | None,
    ip_address: str | None,
    user_agent: str | None,
    created_at: str,
) -> str:
    parts = [
        prev_hash or "",
        "" if actor_id is None else str(actor_id),
        action,
        category,
        entity_type or "",
        entity_id or "",
        canonical_details(details),
        ip_address or "",
        user_agent or "",
        created_at,
    ]
    return sha256_hex(_SEP.join(parts))


def hash_entry(entry: AuditLogEntry, prev_hash: str) -> str:
    """Recompute an entry's hash against the given predecessor hash."""
    return compute_hash(
        prev_hash,
        actor_id=entry.actor_id,
        action=entry.action,
        category=entry.category,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        details=entry.details,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        created_at=entry.created_at,
    )


def verify_entries(entries: Iterable[AuditLogEntry]) -> ChainVerification:
    """Replay entries (ordered by seq) and report the first broken position.

    Three checks per position k:
      - seq == k + 1 (a deleted or reordered row leaves a gap)
      - prev_hash equals the recomputed hash of entry k - 1
      - self_hash equals the hash recomputed from the entry's own fields

    The expected predecessor is always the *recomputed* hash, not the stored
    one, so rewriting an entry together with its self_hash is still caught at
    the next position at the latest.
    """
    expected_prev = ""
    checked = 0
    for position, entry in enumerate(entries):
        if entry.seq != position + 1:
            return _broken(checked, position, entry, "sequence gap")
        if not constant_time_equals(entry.prev_hash, expected_prev):
            return _broken(checked, position, entry, "previous-hash link mismatch")
        recomputed = hash_entry(entry, expected_prev)
        if not constant_time_equals(entry.self_hash, recomputed):
            return _broken(checked, position, entry, "self-hash mismatch")
        expected_prev = recomputed
        checked += 1
    return ChainVerification(valid=True, checked=checked)


def _broken(checked: int, position: int, entry: AuditLogEntry, reason: str) -> ChainVerification:
    return ChainVerification(
        valid=False,
        checked=checked,
        first_invalid=position,
        first_invalid_seq=entry.seq,
        reason=reason,
    )
