from domoja_bridge.cache import AccessoryStore

from conftest import switch_spec


def test_save_and_reload(tmp_path):
    db_file = str(tmp_path / "store.db")
    store = AccessoryStore(db_file)
    spec = switch_spec("Lampes aquarium", "aquarium.lampes")
    store.save("token-1", 1234, spec)

    reloaded = AccessoryStore(db_file)
    stored = reloaded.get("token-1")
    assert stored.aid == 1234
    assert stored.spec == spec
    assert reloaded.used_aids() == {1234: "token-1"}


def test_save_replaces_existing_entry(tmp_path):
    db_file = str(tmp_path / "store.db")
    store = AccessoryStore(db_file)
    store.save("token-1", 1234, switch_spec("Lampes aquarium", "aquarium.lampes"))
    store.save("token-1", 1234, switch_spec("Lampes aquarium", "aquarium.lampes", set_mapping=None))

    reloaded = AccessoryStore(db_file)
    assert len(reloaded.all()) == 1
    assert reloaded.get("token-1").spec.services[0].characteristics[0].set.mapping is None


def test_delete(tmp_path):
    db_file = str(tmp_path / "store.db")
    store = AccessoryStore(db_file)
    store.save("token-1", 1234, switch_spec("Lampes aquarium", "aquarium.lampes"))
    store.delete("token-1")
    store.delete("unknown")

    assert store.all() == []
    assert AccessoryStore(db_file).all() == []


def test_unreadable_rows_are_skipped(tmp_path):
    import sqlite3

    db_file = str(tmp_path / "store.db")
    store = AccessoryStore(db_file)
    store.save("token-1", 1234, switch_spec("Lampes aquarium", "aquarium.lampes"))

    conn = sqlite3.connect(db_file)
    conn.execute("INSERT INTO accessories (uuid, display_name, spec, aid) VALUES ('token-2', 'Broken', 'not json', 99)")
    conn.commit()
    conn.close()

    assert [s.token for s in AccessoryStore(db_file).all()] == ["token-1"]
