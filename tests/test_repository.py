"""
Unit tests for the Store/Record Repository on the memory gateway.
"""

from datetime import timedelta

import pytest

from arcvault.core.errors import NotFound, StorageError, ValidationError
from arcvault.core.models import (
    UNSET,
    RecordPatch,
    RecordSpec,
    Store,
    StorePatch,
    StoreSpec,
    TTLPolicy,
    patch_values,
    utcnow,
)
from arcvault.core.expiration import ExpirationPolicy
from arcvault.core.repository import Repository


class TestStores:

    def test_create_and_get_store(self, repo, clock):
        store = repo.create_store(StoreSpec(title="Work", metadata={"color": "blue"}))

        assert store.id == 1
        assert store.created_at == clock()
        assert repo.get_store(store.id).metadata == {"color": "blue"}
        assert repo.count_stores() == 1

    def test_store_ids_increase(self, repo):
        first = repo.create_store(StoreSpec(title="a"))
        second = repo.create_store(StoreSpec(title="b"))
        assert second.id > first.id
        assert [s.id for s in repo.list_stores()] == [first.id, second.id]

    @pytest.mark.parametrize("title", ["", "   ", "x" * 256, None])
    def test_invalid_title_rejected(self, repo, title):
        with pytest.raises(ValidationError):
            repo.create_store(StoreSpec(title=title))
        assert repo.count_stores() == 0

    def test_get_missing_store(self, repo):
        with pytest.raises(NotFound) as exc_info:
            repo.get_store(42)
        assert exc_info.value.kind == "store"

    def test_update_store_applies_only_set_fields(self, repo, store, clock):
        clock.advance(30)
        updated = repo.update_store(store.id, StorePatch(title="Renamed"))

        assert updated.title == "Renamed"
        assert updated.metadata == store.metadata
        assert updated.updated_at == clock()
        assert updated.created_at == store.created_at

    def test_update_store_rejects_blank_title(self, repo, store):
        with pytest.raises(ValidationError):
            repo.update_store(store.id, StorePatch(title=" "))
        assert repo.get_store(store.id).title == "Personal"


class TestRecords:

    def test_record_ids_are_scoped_per_store(self, repo, make_record):
        a = repo.create_store(StoreSpec(title="a"))
        b = repo.create_store(StoreSpec(title="b"))

        a1 = make_record(a.id)
        a2 = make_record(a.id)
        b1 = make_record(b.id)

        assert (a1.id, a2.id) == (1, 2)
        assert b1.id == 1
        assert repo.get_record(b.id, 1).store_id == b.id

    def test_create_record_in_missing_store(self, repo):
        with pytest.raises(NotFound) as exc_info:
            repo.create_record(99, RecordSpec(title="orphan"))
        assert exc_info.value.kind == "store"

    def test_expiry_before_creation_rejected(self, repo, store, clock):
        spec = RecordSpec(title="late", expires_at=clock() - timedelta(seconds=1))
        with pytest.raises(ValidationError):
            repo.create_record(store.id, spec)
        assert repo.list_records(store.id) == []

    def test_invalid_ttl_policy_rejected(self, repo, store):
        with pytest.raises(ValidationError):
            repo.create_record(store.id, RecordSpec(title="r", ttl_policy="forever"))

    def test_get_missing_record(self, repo, store):
        with pytest.raises(NotFound) as exc_info:
            repo.get_record(store.id, 5)
        assert exc_info.value.kind == "record"
        assert exc_info.value.store_id == store.id

    def test_buffer_is_opaque(self, repo, store, make_record):
        payload = bytes(range(256))
        record = make_record(store.id, buffer=payload, encryption="aes-256-gcm")

        fetched = repo.get_record(store.id, record.id)
        assert fetched.buffer == payload
        assert fetched.size == 256
        assert fetched.encryption == "aes-256-gcm"

    def test_update_record_partial(self, repo, store, make_record, clock):
        record = make_record(store.id, title="old", buffer=b"keep", ttl=60)
        clock.advance(5)

        updated = repo.update_record(store.id, record.id, RecordPatch(title="new"))

        assert updated.title == "new"
        assert updated.buffer == b"keep"
        assert updated.expires_at == record.expires_at
        assert updated.updated_at == clock()

    def test_update_record_clears_expiry(self, repo, store, make_record):
        record = make_record(store.id, ttl=60)
        updated = repo.update_record(store.id, record.id, RecordPatch(expires_at=None))
        assert updated.expires_at is None

    def test_update_record_rejects_expiry_before_creation(self, repo, store, make_record, clock):
        record = make_record(store.id, ttl=60)
        patch = RecordPatch(expires_at=record.created_at - timedelta(minutes=1))

        with pytest.raises(ValidationError):
            repo.update_record(store.id, record.id, patch)
        assert repo.get_record(store.id, record.id).expires_at == record.expires_at

    def test_delete_record(self, repo, store, make_record):
        record = make_record(store.id)
        repo.delete_record(store.id, record.id)

        with pytest.raises(NotFound):
            repo.delete_record(store.id, record.id)

    def test_record_ids_not_reused_after_delete(self, repo, store, make_record):
        first = make_record(store.id)
        repo.delete_record(store.id, first.id)
        assert make_record(store.id).id == first.id + 1


class TestReadBuffer:

    def test_prune_record_survives_read(self, repo, store, make_record):
        record = make_record(store.id, buffer=b"abc")
        assert repo.read_buffer(store.id, record.id).buffer == b"abc"
        assert repo.get_record(store.id, record.id)

    def test_burn_record_deleted_on_read(self, repo, store, make_record):
        record = make_record(store.id, buffer=b"once", ttl_policy=TTLPolicy.BURN)

        assert repo.read_buffer(store.id, record.id).buffer == b"once"
        with pytest.raises(NotFound):
            repo.read_buffer(store.id, record.id)


class TestCascadeDelete:

    def test_delete_store_removes_exactly_its_records(self, repo, make_record):
        doomed = repo.create_store(StoreSpec(title="doomed"))
        kept = repo.create_store(StoreSpec(title="kept"))
        for i in range(4):
            make_record(doomed.id, title=f"d{i}", ttl=1)
        kept_records = [make_record(kept.id, title=f"k{i}") for i in range(3)]

        repo.delete_store(doomed.id)

        with pytest.raises(NotFound) as exc_info:
            repo.get_record(doomed.id, 1)
        assert exc_info.value.kind == "store"
        assert repo.list_records(kept.id) == kept_records
        assert repo.count_stores() == 1

    def test_deleted_store_records_invisible_to_expiry(self, repo, make_record, clock):
        doomed = repo.create_store(StoreSpec(title="doomed"))
        make_record(doomed.id, ttl=1)
        clock.advance(5)
        assert repo.count_expired() == (1, 1)

        repo.delete_store(doomed.id)
        assert repo.count_expired() == (0, 0)

    def test_unrelated_store_readable_during_cascade(self, repo, gateway, make_record):
        doomed = repo.create_store(StoreSpec(title="doomed"))
        other = repo.create_store(StoreSpec(title="other"))
        make_record(doomed.id)
        other_record = make_record(other.id, buffer=b"intact")

        with gateway.transaction() as session:
            assert session.delete_store(doomed.id) == 1
            # cascade still uncommitted: the other store is unaffected
            assert repo.list_records(other.id) == [other_record]
            assert repo.get_record(other.id, other_record.id).buffer == b"intact"

    def test_failed_cascade_rolls_back(self, repo, gateway, store, make_record):
        make_record(store.id)
        make_record(store.id)

        with pytest.raises(RuntimeError):
            with gateway.transaction() as session:
                session.delete_store(store.id)
                raise RuntimeError("crash mid-transaction")

        assert repo.get_store(store.id).title == "Personal"
        assert len(repo.list_records(store.id)) == 2


class TestRowLocking:

    def test_locked_record_blocks_conflicting_update(self, repo, gateway, store, make_record):
        record = make_record(store.id)

        with gateway.transaction() as session:
            session.get_record(store.id, record.id, for_update=True)
            with pytest.raises(StorageError):
                repo.update_record(store.id, record.id, RecordPatch(title="racing"))

        assert repo.get_record(store.id, record.id).title == record.title

    def test_unrelated_record_not_blocked(self, repo, gateway, store, make_record):
        locked = make_record(store.id)
        free = make_record(store.id)

        with gateway.transaction() as session:
            session.get_record(store.id, locked.id, for_update=True)
            updated = repo.update_record(store.id, free.id, RecordPatch(title="free"))

        assert updated.title == "free"


class TestSessionIsolation:

    def test_uncommitted_store_invisible_to_other_sessions(self, repo, gateway, clock):
        with gateway.transaction() as session:
            pending = session.insert_store(
                Store(id=None, title="pending", created_at=clock(), updated_at=clock())
            )
            assert session.get_store(pending.id).title == "pending"
            assert repo.list_stores() == []
            assert repo.count_stores() == 0

        assert [s.title for s in repo.list_stores()] == ["pending"]

    def test_rollback_keeps_other_sessions_writes(self, repo, gateway, store, make_record, clock):
        kept = make_record(store.id, buffer=b"committed")

        with pytest.raises(RuntimeError):
            with gateway.transaction() as session:
                pending = session.insert_store(
                    Store(id=None, title="import", created_at=clock(), updated_at=clock())
                )
                # Not visible yet, so nothing can be written into it
                with pytest.raises(NotFound):
                    repo.create_record(pending.id, RecordSpec(title="x", buffer=b""))
                repo.update_record(store.id, kept.id, RecordPatch(title="renamed"))
                raise RuntimeError("import failed")

        assert [s.id for s in repo.list_stores()] == [store.id]
        after = repo.get_record(store.id, kept.id)
        assert (after.title, after.buffer) == ("renamed", b"committed")

    def test_rollback_discards_pending_changes(self, repo, gateway, store, make_record):
        edited = make_record(store.id, title="edited")
        removed = make_record(store.id, title="removed")

        with pytest.raises(RuntimeError):
            with gateway.transaction() as session:
                record = session.get_record(store.id, edited.id, for_update=True)
                record.title = "changed"
                session.update_record(record)
                session.delete_record(store.id, removed.id)
                assert [r.title for r in session.list_records(store.id)] == ["changed"]
                # Other sessions still see the committed rows
                assert repo.list_records(store.id) == [edited, removed]
                raise RuntimeError("abort")

        assert repo.list_records(store.id) == [edited, removed]

    def test_commit_publishes_cascade_at_once(self, repo, gateway, store, make_record):
        make_record(store.id)

        with gateway.transaction() as session:
            session.delete_store(store.id)
            assert repo.get_store(store.id).title == "Personal"
            assert len(repo.list_records(store.id)) == 1

        with pytest.raises(NotFound):
            repo.get_store(store.id)

    def test_explicit_store_id_conflict_detected_at_commit(self, repo, gateway, clock):
        def at(store_id, title):
            return Store(id=store_id, title=title, created_at=clock(), updated_at=clock())

        with pytest.raises(StorageError):
            with gateway.transaction() as first:
                first.insert_store(at(7, "first"))
                with gateway.transaction() as second:
                    second.insert_store(at(7, "second"))

        assert [(s.id, s.title) for s in repo.list_stores()] == [(7, "second")]


class TestExpiredQueries:

    def test_count_expired_separates_held(self, repo, store, make_record, clock):
        make_record(store.id, ttl=1)
        make_record(store.id, ttl=1, ttl_policy=TTLPolicy.RETAIN)
        make_record(store.id, ttl=3600)
        make_record(store.id)
        clock.advance(10)

        assert repo.count_expired() == (2, 1)
        assert [r.ttl_policy for r in repo.list_prunable()] == [TTLPolicy.PRUNE]

    def test_expiry_scans_skip_payloads(self, repo, store, make_record, clock):
        make_record(store.id, buffer=b"large payload", ttl=1)
        clock.advance(10)

        assert [r.buffer for r in repo.list_prunable()] == [b""]
        assert [r.buffer for r in repo.list_expired()] == [b"large payload"]

    def test_clock_does_not_mutate_callers_policy(self, gateway, clock):
        policy = ExpirationPolicy()
        policy.add_hold(lambda r: r.title == "legal")

        repo = Repository(gateway, policy=policy, clock=clock)

        assert policy.clock is utcnow
        assert repo.now() == clock()
        assert repo.policy.holds == policy.holds


class TestPatches:

    def test_unset_fields_are_skipped(self):
        patch = RecordPatch(title="t", expires_at=None)
        assert patch_values(patch) == {"title": "t", "expires_at": None}

    def test_unset_is_falsy_singleton(self):
        assert not UNSET
        assert StorePatch().title is UNSET
