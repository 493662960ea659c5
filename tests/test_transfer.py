"""
Unit tests for snapshot export/import.
"""

from datetime import timedelta
import base64
import json

import pytest

from arcvault.core.errors import MalformedData, NotFound, StorageError
from arcvault.core.models import StoreSpec, TTLPolicy
from arcvault.core.repository import Repository
from arcvault.core.transfer import TransferCoordinator, parse_snapshot
from arcvault.storage.memory_store import MemoryGateway


def _fingerprint(repo):
    """Comparable view of every store and record."""
    return [
        (
            s.id,
            s.title,
            [
                (r.id, r.title, r.buffer, r.expires_at, r.ttl_policy, r.encryption)
                for r in repo.list_records(s.id)
            ]
        )
        for s in repo.list_stores()
    ]


@pytest.fixture
def populated(repo, make_record):
    work = repo.create_store(StoreSpec(title="Work", metadata={"icon": "briefcase"}))
    home = repo.create_store(StoreSpec(title="Home"))
    make_record(work.id, title="vpn", buffer=b"\x01\x02", ttl=60)
    make_record(work.id, title="mail", buffer=b"", ttl_policy=TTLPolicy.RETAIN)
    make_record(home.id, title="wifi", buffer=b"hunter2", encryption="aes-256-gcm")
    return work, home


class TestExport:

    def test_export_all_layout(self, transfer, populated):
        data = transfer.export_all()

        assert data["version"] == 1
        assert [s["title"] for s in data["stores"]] == ["Work", "Home"]
        vpn = data["stores"][0]["records"][0]
        assert vpn["id"] == 1
        assert base64.b64decode(vpn["buffer"]) == b"\x01\x02"
        assert vpn["ttl_policy"] == "prune"
        json.dumps(data)

    def test_export_one(self, transfer, populated):
        work, _ = populated
        data = transfer.export_one(work.id)
        assert [s["id"] for s in data["stores"]] == [work.id]
        assert len(data["stores"][0]["records"]) == 2

    def test_export_missing_store(self, transfer):
        with pytest.raises(NotFound):
            transfer.export_one(404)


class TestImport:

    def test_round_trip_into_empty_vault(self, transfer, repo, populated, clock):
        data = transfer.export_all()

        target = Repository(MemoryGateway(), clock=clock)
        TransferCoordinator(target).import_snapshot(data)

        assert _fingerprint(target) == _fingerprint(repo)

    def test_round_trip_from_json_text(self, transfer, repo, populated, clock):
        text = json.dumps(transfer.export_all())

        target = Repository(MemoryGateway(), clock=clock)
        TransferCoordinator(target).import_snapshot(text)

        assert _fingerprint(target) == _fingerprint(repo)

    def test_import_after_store_delete_restores_ids(self, transfer, repo, make_record, clock):
        """Export S2, delete it, import: both records back, expired one not pruned."""
        s2 = repo.create_store(StoreSpec(title="S2"))
        expired = make_record(s2.id, title="expired", ttl=1)
        fresh = make_record(s2.id, title="fresh", ttl=3600)
        clock.advance(2)

        data = transfer.export_one(s2.id)
        repo.delete_store(s2.id)
        restored = transfer.import_snapshot(data)

        assert [s.id for s in restored] == [s2.id]
        ids = [r.id for r in repo.list_records(s2.id)]
        assert ids == [expired.id, fresh.id]
        assert repo.count_expired() == (1, 1)

    def test_taken_store_id_gets_new_id(self, transfer, repo, populated):
        work, home = populated
        data = transfer.export_one(work.id)

        restored = transfer.import_snapshot(data)

        assert restored[0].id not in (work.id, home.id)
        assert [r.id for r in repo.list_records(restored[0].id)] == [1, 2]
        assert repo.count_stores() == 3

    def test_expiry_before_creation_rejects_whole_import(self, transfer, repo, populated):
        before = _fingerprint(repo)
        data = transfer.export_all()
        data["stores"][0]["id"] = None
        data["stores"][1]["id"] = None
        bad = data["stores"][1]["records"][0]
        bad["expires_at"] = "2000-01-01T00:00:00+00:00"

        with pytest.raises(MalformedData):
            transfer.import_snapshot(data)

        assert _fingerprint(repo) == before

    def test_duplicate_record_ids_rejected(self, transfer, repo, populated):
        data = transfer.export_one(populated[0].id)
        records = data["stores"][0]["records"]
        records[1]["id"] = records[0]["id"]

        with pytest.raises(MalformedData):
            transfer.import_snapshot(data)
        assert repo.count_stores() == 2

    @pytest.mark.parametrize("payload", [
        "{not json",
        b"\xff\xfe",
        "42",
        {"version": 2, "stores": []},
        {"stores": [{"title": "no created_at"}]},
        {"stores": [{"title": "x", "created_at": "2026-01-01T00:00:00Z",
                     "records": [{"id": 1, "title": "r", "buffer": "***",
                                  "created_at": "2026-01-01T00:00:00Z"}]}]},
    ])
    def test_malformed_snapshots(self, transfer, payload):
        with pytest.raises(MalformedData):
            transfer.import_snapshot(payload)

    def test_bare_store_list_accepted(self):
        snapshot = parse_snapshot([{"title": "Seeded", "created_at": "2026-01-01T00:00:00Z"}])
        assert snapshot.stores[0].title == "Seeded"
        assert snapshot.stores[0].id is None


class TestSeed:

    SEED = [
        {"title": "Getting started", "created_at": "2026-01-01T00:00:00Z",
         "records": [{"id": 1, "title": "welcome", "buffer": "",
                      "created_at": "2026-01-01T00:00:00Z"}]}
    ]

    def test_seeds_empty_vault(self, transfer, repo):
        assert transfer.seed_if_empty(self.SEED) == 1
        assert repo.list_stores()[0].title == "Getting started"

    def test_never_overwrites(self, transfer, repo, store):
        assert transfer.seed_if_empty(self.SEED) == 0
        assert [s.title for s in repo.list_stores()] == ["Personal"]


class TestFiles:

    def test_export_and_import_files(self, transfer, repo, populated, clock, tmp_path):
        path = transfer.export_to_file(tmp_path / "arc.json")

        assert json.loads(path.read_text())["version"] == 1
        assert [p.name for p in tmp_path.iterdir()] == ["arc.json"]

        target = Repository(MemoryGateway(), clock=clock)
        TransferCoordinator(target).import_from_file(path)
        assert _fingerprint(target) == _fingerprint(repo)

    def test_export_to_missing_directory_is_storage_error(self, transfer, populated, tmp_path):
        with pytest.raises(StorageError):
            transfer.export_to_file(tmp_path / "missing" / "arc.json")
        assert list(tmp_path.iterdir()) == []

    def test_missing_file_is_malformed(self, transfer, tmp_path):
        with pytest.raises(MalformedData):
            transfer.import_from_file(tmp_path / "absent.json")

    def test_seed_from_file(self, transfer, repo, tmp_path):
        seed = tmp_path / "seed.json"
        seed.write_text(json.dumps(TestSeed.SEED))

        assert transfer.seed_from_file(seed) == 1
        assert repo.count_stores() == 1
