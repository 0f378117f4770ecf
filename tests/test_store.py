"""JsonServiceStore: CRUD semantics, persistence protocol and locking."""
import json
import threading
from unittest.mock import patch

import pytest

from homegallery.registry import JsonServiceStore, ServiceRecord, ServiceStatus


class TestPersistence:
    def test_creates_file_and_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "services.json"
        JsonServiceStore(path)
        assert path.exists()
        assert json.loads(path.read_text())["services"] == []

    def test_existing_file_is_not_overwritten(self, tmp_path):
        path = tmp_path / "services.json"
        path.write_text(json.dumps({"services": [{"id": 7, "name": "NAS"}]}))
        store = JsonServiceStore(path)
        assert [s.id for s in store.list()] == [7]

    def test_empty_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "services.json"
        path.write_text("")
        assert JsonServiceStore(path).list() == []

    def test_missing_file_reads_as_empty(self, store):
        store.path.unlink()
        assert store.list() == []
        assert store.find(1) is None

    def test_malformed_json_recovers_without_touching_disk(self, store, caplog):
        store.path.write_text("{not json")
        with caplog.at_level("WARNING"):
            assert store.list() == []
        assert "Invalid registry data" in caplog.text
        assert store.path.read_text() == "{not json"

    @pytest.mark.parametrize("content", [
        '[]',
        '{"services": {"id": 1}}',
        '{"services": [{"name": "no id"}]}',
        '{"services": [{"id": 2, "name": "bad", "port": "abc"}]}',
        '{"services": [{"id": 1, "name": "bad", "display_order": "3"}]}',
        '{"services": [{"id": 1, "name": "bad", "url": 42}]}',
        '{"services": [], "last_id": "7"}',
    ])
    def test_wrong_shape_is_treated_as_malformed(self, store, content, caplog):
        store.path.write_text(content)
        with caplog.at_level("WARNING"):
            assert store.list() == []
        assert "Invalid registry data" in caplog.text

    def test_create_recovers_from_bad_field_types(self, store):
        store.path.write_text('{"services": [{"id": 1, "name": "bad", "display_order": "3"}]}')
        service_id = store.create({"name": "new"})
        assert [s.name for s in store.list()] == ["new"]
        assert store.find(service_id).display_order == 1

    def test_next_write_replaces_malformed_content(self, store):
        store.path.write_text("garbage")
        store.create({"name": "Plex"})
        data = json.loads(store.path.read_text())
        assert [s["name"] for s in data["services"]] == ["Plex"]

    def test_written_file_is_pretty_printed(self, store):
        store.create({"name": "Plex"})
        assert '\n  "services": [' in store.path.read_text()

    def test_write_failure_propagates_and_keeps_old_file(self, store):
        store.create({"name": "Plex"})
        before = store.path.read_text()
        with patch("homegallery.registry.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.create({"name": "NAS"})
        assert store.path.read_text() == before
        assert [p.name for p in store.path.parent.iterdir()] == ["services.json"]


class TestCreate:
    def test_assigns_defaults(self, store):
        service_id = store.create({"name": "Router", "url": "http://192.168.0.1"})
        record = store.find(service_id)
        assert service_id == 1
        assert record.status == ServiceStatus.UNKNOWN.value
        assert record.display_order == 1
        assert record.health_check_url is None
        assert record.created_at == record.updated_at == record.last_checked

    def test_keeps_legacy_fields(self, store):
        service_id = store.create({"name": "Plex", "address": "192.168.0.30", "port": 32400})
        record = store.find(service_id)
        assert record.address == "192.168.0.30"
        assert record.port == 32400
        assert record.url is None

    def test_display_order_appends_after_max(self, store):
        first = store.create({"name": "a"})
        store.create({"name": "b"})
        store.reorder([(first, 10)])
        third = store.create({"name": "c"})
        assert store.find(third).display_order == 11

    def test_ids_are_never_reused(self, store):
        issued = [store.create({"name": f"s{i}"}) for i in range(3)]
        store.delete(issued[-1])
        store.delete(issued[0])
        new_id = store.create({"name": "again"})
        assert new_id > max(issued)

    def test_ids_survive_restart_after_deleting_newest(self, tmp_path):
        path = tmp_path / "services.json"
        store = JsonServiceStore(path)
        store.create({"name": "a"})
        second = store.create({"name": "b"})
        store.delete(second)
        assert JsonServiceStore(path).create({"name": "c"}) == second + 1

    def test_list_keeps_insertion_order(self, store):
        ids = [store.create({"name": n}) for n in ("c", "a", "b")]
        store.reorder([(ids[0], 99)])
        assert [s.id for s in store.list()] == ids


class TestUpdate:
    def test_partial_update_preserves_other_fields(self, store):
        service_id = store.create({"name": "Router", "url": "http://192.168.0.1"})
        store.update_health(service_id, ServiceStatus.HEALTHY)
        before = store.find(service_id)

        with patch("homegallery.registry.store._now", return_value="2030-01-01 00:00:00"):
            assert store.update(service_id, {"name": "Gateway"}) is True

        after = store.find(service_id)
        assert after.name == "Gateway"
        assert after.updated_at == "2030-01-01 00:00:00"
        for field in ("url", "status", "display_order", "created_at", "last_checked"):
            assert getattr(after, field) == getattr(before, field)

    def test_none_values_are_ignored(self, store):
        service_id = store.create({"name": "NAS", "url": "http://nas", "port": 5000})
        store.update(service_id, {"name": None, "url": None, "port": None})
        record = store.find(service_id)
        assert (record.name, record.url, record.port) == ("NAS", "http://nas", 5000)

    def test_health_check_url_can_be_cleared(self, store):
        service_id = store.create({"name": "NAS", "health_check_url": "http://nas/health"})
        store.update(service_id, {"health_check_url": None})
        assert store.find(service_id).health_check_url is None

        store.update(service_id, {"health_check_url": "http://nas/ping"})
        store.update(service_id, {"health_check_url": ""})
        assert store.find(service_id).health_check_url is None

    def test_health_check_url_untouched_when_absent(self, store):
        service_id = store.create({"name": "NAS", "health_check_url": "http://nas/health"})
        store.update(service_id, {"name": "Storage"})
        assert store.find(service_id).health_check_url == "http://nas/health"

    def test_missing_id(self, store):
        assert store.update(42, {"name": "x"}) is False


class TestDeleteAndHealth:
    def test_delete(self, store):
        service_id = store.create({"name": "a"})
        assert store.delete(service_id) is True
        assert store.find(service_id) is None
        assert store.delete(service_id) is False

    def test_update_health(self, store):
        service_id = store.create({"name": "a"})
        with patch("homegallery.registry.store._now", return_value="2030-01-01 00:00:00"):
            assert store.update_health(service_id, ServiceStatus.UNHEALTHY) is True
        record = store.find(service_id)
        assert record.status == "unhealthy"
        assert record.last_checked == "2030-01-01 00:00:00"

    def test_update_health_missing_id(self, store):
        assert store.update_health(3, ServiceStatus.HEALTHY) is False


class TestMigrateUrl:
    def test_sets_url_when_missing(self, store):
        service_id = store.create({"name": "Plex", "address": "192.168.0.30", "port": 32400})
        assert store.migrate_url(service_id, "http://192.168.0.30:32400") is True
        record = store.find(service_id)
        assert record.url == "http://192.168.0.30:32400"
        assert (record.address, record.port) == ("192.168.0.30", 32400)

    def test_existing_url_wins(self, store):
        service_id = store.create({"name": "Plex", "address": "192.168.0.30"})
        store.update(service_id, {"url": "https://plex.example"})
        with patch.object(store, "_write_data") as write:
            assert store.migrate_url(service_id, "http://192.168.0.30") is False
        write.assert_not_called()
        assert store.find(service_id).url == "https://plex.example"

    def test_missing_id(self, store):
        assert store.migrate_url(9, "http://x") is False


class TestReorder:
    def test_updates_only_named_records(self, store):
        ids = [store.create({"name": n}) for n in ("a", "b", "c")]
        untouched_before = store.find(ids[1])

        with patch("homegallery.registry.store._now", return_value="2030-01-01 00:00:00"):
            changed = store.reorder([(ids[2], 0), (ids[0], 1)])

        assert changed == 2
        assert store.find(ids[2]).display_order == 0
        assert store.find(ids[0]).display_order == 1
        assert store.find(ids[0]).updated_at == "2030-01-01 00:00:00"
        assert store.find(ids[1]) == untouched_before

    def test_unknown_ids_are_ignored(self, store):
        service_id = store.create({"name": "a"})
        assert store.reorder([(999, 3), (service_id, 4)]) == 1
        assert store.find(service_id).display_order == 4

    def test_single_write(self, store):
        ids = [store.create({"name": n}) for n in ("a", "b")]
        with patch.object(store, "_write_data", wraps=store._write_data) as write:
            store.reorder([(ids[0], 5), (ids[1], 6)])
        assert write.call_count == 1


class TestServiceRecord:
    def test_from_dict_ignores_unknown_keys_and_coerces(self):
        record = ServiceRecord.from_dict({
            "id": "3", "name": "NAS", "port": "5000", "extra": True,
            "display_order": None, "status": None,
        })
        assert record.id == 3
        assert record.port == 5000
        assert record.display_order == 0
        assert record.status == "unknown"

    def test_is_legacy(self):
        assert ServiceRecord(id=1, name="a", address="10.0.0.5").is_legacy
        assert not ServiceRecord(id=1, name="a", address="10.0.0.5", url="http://x").is_legacy
        assert not ServiceRecord(id=1, name="a").is_legacy


class TestConcurrency:
    def test_concurrent_updates_are_not_lost(self, store):
        ids = [store.create({"name": f"svc-{i}"}) for i in range(20)]
        barrier = threading.Barrier(len(ids))

        def rename(service_id):
            barrier.wait()
            assert store.update(service_id, {"name": f"renamed-{service_id}"})

        threads = [threading.Thread(target=rename, args=(i,)) for i in ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        names = {s.id: s.name for s in store.list()}
        assert names == {i: f"renamed-{i}" for i in ids}

    def test_concurrent_creates_get_unique_ids(self, store):
        results = []
        lock = threading.Lock()

        def create(n):
            service_id = store.create({"name": f"svc-{n}"})
            with lock:
                results.append(service_id)

        threads = [threading.Thread(target=create, args=(n,)) for n in range(15)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == list(range(1, 16))
        assert len(store.list()) == 15
