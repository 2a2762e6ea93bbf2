import json

import pytest

from infra.state_store import StateStore, create_state_store_from_config


def test_memory_store_round_trip():
    store = StateStore()
    assert not store.persistent
    store.put("orders", "ord-1", {"status": "created"})
    assert store.get("orders", "ord-1") == {"status": "created"}
    assert store.keys("orders") == ["ord-1"]
    assert store.get("offers", "ord-1") is None


def test_records_are_copies():
    store = StateStore()
    record = {"status": "created", "history": []}
    store.put("orders", "ord-1", record)
    record["history"].append("mutated")
    fetched = store.get("orders", "ord-1")
    fetched["status"] = "mutated"
    assert store.get("orders", "ord-1") == {"status": "created", "history": []}


def test_json_store_persists_and_reloads(tmp_path):
    path = tmp_path / "nested" / "state.json"
    store = StateStore(str(path))
    store.put("escrows", "esc-1", {"lock_status": "locked"})

    on_disk = json.loads(path.read_text())
    assert on_disk["escrows"]["esc-1"]["lock_status"] == "locked"
    assert on_disk["saved_at"]

    reloaded = StateStore(str(path))
    assert reloaded.all("escrows") == {"esc-1": {"lock_status": "locked"}}
    assert list(tmp_path.joinpath("nested").glob(".state_*")) == []


def test_unknown_section_rejected():
    with pytest.raises(ValueError, match="Unknown state section"):
        StateStore().put("positions", "x", {})


def test_corrupt_file_raises(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    with pytest.raises(json.JSONDecodeError):
        StateStore(str(path))


def test_create_state_store_from_config(tmp_path):
    assert not create_state_store_from_config({"store": "memory"}).persistent

    store = create_state_store_from_config({"store": "json", "path": str(tmp_path / "s.json")})
    assert store.persistent
    assert store.state_file == tmp_path / "s.json"

    with pytest.raises(ValueError, match="Unsupported state store backend"):
        create_state_store_from_config({"store": "sqlite"})
