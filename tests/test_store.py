import json
from pathlib import Path

import pytest

from claude_relay.store import JsonFileMapStore, MemoryMapStore, chat_key, parse_chat_key


def test_chat_key_normalizes_platform():
    assert chat_key("Telegram", 12345) == "telegram:12345"
    assert chat_key("feishu", " oc_abc ") == "feishu:oc_abc"


@pytest.mark.parametrize("platform, chat_id", [("", 1), ("telegram", ""), ("telegram", "  ")])
def test_chat_key_requires_both_parts(platform, chat_id):
    with pytest.raises(ValueError):
        chat_key(platform, chat_id)


def test_chat_key_rejects_other_types():
    with pytest.raises(TypeError):
        chat_key("telegram", None)
    with pytest.raises(TypeError):
        chat_key("telegram", True)


def test_parse_chat_key_splits_on_first_colon():
    assert parse_chat_key("feishu:oc:abc") == ("feishu", "oc:abc")
    with pytest.raises(ValueError):
        parse_chat_key("no-separator")


def test_memory_store_isolates_snapshots():
    store = MemoryMapStore({"a": {"x": 1}})
    loaded = store.load()
    loaded["a"]["x"] = 2
    assert store.load() == {"a": {"x": 1}}
    data = {"b": {"y": 1}}
    store.save(data)
    data["b"]["y"] = 3
    assert store.saves == [{"b": {"y": 1}}]


def test_json_file_store_ignores_non_object_payload(tmp_path: Path):
    path = tmp_path / "store.json"
    path.write_text(json.dumps(["not", "a", "map"]), encoding="utf-8")
    assert JsonFileMapStore(path).load() == {}
    assert JsonFileMapStore(tmp_path / "missing.json").load() == {}
