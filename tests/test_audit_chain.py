"""Unit tests for audit/chain.py and audit/store.py -- the hash-chained audit trail.

Covers:
- append() assigns consecutive seq numbers and links prev_hash to the predecessor
- verify() on an untampered chain is valid and counts every entry
- mutating any field of entry k reports first_invalid == k (0-based)
- deleting an entry is reported as a sequence gap
- a lost race on the chain head is retried; exhaustion raises StoreUnavailable
- list_entries() filters and pages newest first; count() honours the same filters
"""

from __future__ import annotations

import pytest
from sqlalchemy import delete, update

from audit import store as audit_store
from audit.chain import canonical_details, compute_hash
from audit.models import AuditEvent
from core.errors import StoreUnavailable


def _fill(trail, n: int = 5) -> list:
    return [
        trail.append(
            AuditEvent(
                action="LOGIN_SUCCESS" if i % 2 == 0 else "LOGIN_FAILURE",
                category="AUTH",
                actor_id=i,
                entity_type="identity",
                entity_id=str(i),
                details={"attempt": i, "note": "x"},
                ip_address="10.0.0.1",
                user_agent="pytest",
            )
        )
        for i in range(n)
    ]


class TestHashing:
    def test_canonical_details_is_key_order_independent(self):
        assert canonical_details({"b": 1, "a": 2}) == canonical_details({"a": 2, "b": 1})

    def test_field_boundaries_cannot_shift(self):
        """Moving characters between adjacent fields changes the hash."""
        common = dict(actor_id=None, category="AUTH", entity_id=None, details={}, ip_address=None,
                      user_agent=None, created_at="t")
        a = compute_hash("", action="ab", entity_type="c", **common)
        b = compute_hash("", action="a", entity_type="bc", **common)
        assert a != b


class TestAppend:
    def test_sequence_and_links(self, trail):
        entries = _fill(trail, 4)
        assert [e.seq for e in entries] == [1, 2, 3, 4]
        assert entries[0].prev_hash == ""
        for prev, cur in zip(entries, entries[1:]):
            assert cur.prev_hash == prev.self_hash
        assert trail.latest_hash() == entries[-1].self_hash

    def test_empty_action_rejected(self, trail):
        with pytest.raises(ValueError):
            trail.append(AuditEvent(action=""))

    def test_lost_race_is_retried(self, trail, monkeypatch):
        real = trail._append_once
        calls = {"n": 0}

        def flaky(event):
            calls["n"] += 1
            if calls["n"] == 1:
                raise audit_store._ChainContention("head moved")
            return real(event)

        monkeypatch.setattr(trail, "_append_once", flaky)
        entry = trail.append(AuditEvent(action="LOGOUT"))
        assert entry.seq == 1
        assert calls["n"] == 2
        assert trail.verify().valid

    def test_exhausted_retries_raise_store_unavailable(self, trail, monkeypatch):
        calls = {"n": 0}

        def always_contended(event):
            calls["n"] += 1
            raise audit_store._ChainContention("head moved")

        monkeypatch.setattr(trail, "_append_once", always_contended)
        with pytest.raises(StoreUnavailable) as excinfo:
            trail.append(AuditEvent(action="LOGOUT"))
        assert calls["n"] == 5
        assert isinstance(excinfo.value.__cause__, audit_store._ChainContention)
        assert trail.count() == 0

    def test_other_errors_are_not_retried(self, trail, monkeypatch):
        calls = {"n": 0}

        def broken(event):
            calls["n"] += 1
            raise ValueError("not a race")

        monkeypatch.setattr(trail, "_append_once", broken)
        with pytest.raises(ValueError):
            trail.append(AuditEvent(action="LOGOUT"))
        assert calls["n"] == 1


class TestVerify:
    def test_untampered_chain_is_valid(self, trail):
        _fill(trail, 6)
        result = trail.verify()
        assert result.valid
        assert result.checked == 6
        assert result.first_invalid is None

    def test_empty_chain_is_valid(self, trail):
        result = trail.verify()
        assert result.valid
        assert result.checked == 0

    @pytest.mark.parametrize(
        "column,value",
        [
            ("actor_id", 999),
            ("action", "LOGIN_SUCCESS_FORGED"),
            ("category", "DATA"),
            ("entity_id", "42"),
            ("details", '{"attempt":99}'),
            ("ip_address", "203.0.113.9"),
            ("user_agent", "curl"),
            ("created_at", "2000-01-01T00:00:00.000000+00:00"),
        ],
    )
    def test_mutating_any_field_reports_its_position(self, trail, column, value):
        _fill(trail, 5)
        with trail.engine.begin() as conn:
            conn.execute(update(audit_store._audit_log).where(audit_store._audit_log.c.seq == 3).values(**{column: value}))
        result = trail.verify()
        assert not result.valid
        assert result.first_invalid == 2
        assert result.first_invalid_seq == 3
        assert result.checked == 2

    def test_rewriting_entry_and_its_hash_breaks_next_link(self, trail):
        entries = _fill(trail, 4)
        forged_hash = compute_hash(
            entries[0].self_hash,
            actor_id=entries[1].actor_id,
            action="FORGED",
            category=entries[1].category,
            entity_type=entries[1].entity_type,
            entity_id=entries[1].entity_id,
            details=entries[1].details,
            ip_address=entries[1].ip_address,
            user_agent=entries[1].user_agent,
            created_at=entries[1].created_at,
        )
        with trail.engine.begin() as conn:
            conn.execute(
                update(audit_store._audit_log)
                .where(audit_store._audit_log.c.seq == 2)
                .values(action="FORGED", self_hash=forged_hash)
            )
        result = trail.verify()
        assert not result.valid
        assert result.first_invalid == 2

    def test_deleted_entry_is_a_sequence_gap(self, trail):
        _fill(trail, 5)
        with trail.engine.begin() as conn:
            conn.execute(delete(audit_store._audit_log).where(audit_store._audit_log.c.seq == 4))
        result = trail.verify()
        assert not result.valid
        assert result.first_invalid == 3
        assert result.reason == "sequence gap"


class TestQueries:
    def test_list_entries_newest_first_with_filters(self, trail):
        _fill(trail, 6)
        newest = trail.list_entries(limit=2)
        assert [e.seq for e in newest] == [6, 5]
        failures = trail.list_entries(action="LOGIN_FAILURE")
        assert {e.action for e in failures} == {"LOGIN_FAILURE"}
        assert trail.count(action="LOGIN_FAILURE") == len(failures) == 3
        assert [e.seq for e in trail.list_entries(actor_id=4)] == [5]
        assert trail.list_entries(limit=2, offset=5)[0].seq == 1

    def test_details_round_trip(self, trail):
        _fill(trail, 1)
        entry = trail.list_entries()[0]
        assert entry.details == {"attempt": 0, "note": "x"}
