from shardstore.kv_common import Err, ShardStatus
from shardstore.kv_state import MemoryKVStateMachine


def test_new_store_is_empty_and_normal():
    store = MemoryKVStateMachine()
    assert store.kv == {}
    assert store.status is ShardStatus.NORMAL


def test_get_missing_key():
    store = MemoryKVStateMachine()
    assert store.get("absent") == ("", Err.NO_KEY)


def test_put_then_get():
    store = MemoryKVStateMachine()
    assert store.put("k", "v1") is Err.OK
    assert store.put("k", "v2") is Err.OK
    assert store.get("k") == ("v2", Err.OK)


def test_append_to_missing_and_existing():
    store = MemoryKVStateMachine()
    assert store.append("k", "a") is Err.OK
    assert store.get("k") == ("a", Err.OK)
    store.append("k", "b")
    assert store.get("k") == ("ab", Err.OK)


def test_clone_is_independent():
    store = MemoryKVStateMachine()
    store.put("k", "v")
    store.status = ShardStatus.MOVE_OUT
    copy = store.clone()
    assert copy == store
    copy.put("k", "other")
    copy.status = ShardStatus.NORMAL
    assert store.get("k") == ("v", Err.OK)
    assert store.status is ShardStatus.MOVE_OUT


def test_copy_data_is_independent():
    store = MemoryKVStateMachine()
    store.put("x", "1")
    data = store.copy_data()
    assert data == {"x": "1"}
    data["x"] = "2"
    assert store.get("x") == ("1", Err.OK)