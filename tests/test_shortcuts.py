import pytest

from claude_relay.shortcuts import (
    NO_SHORTCUTS_MESSAGE,
    ShortcutStore,
    substitute_placeholders,
    validate_command,
    validate_name,
)
from claude_relay.store import JsonFileMapStore, MemoryMapStore

KEY = "telegram:100"


def make_store(**kwargs) -> ShortcutStore:
    return ShortcutStore(MemoryMapStore(), **kwargs)


def test_set_and_get_case_insensitive():
    store = make_store()
    result = store.set_shortcut(KEY, "Build", "run the build")
    assert result.success
    assert result.name == "build"
    assert not result.is_update
    assert store.get_shortcut(KEY, "BUILD") == "run the build"


def test_overwrite_reports_update_and_keeps_created_at():
    store = make_store()
    store.set_shortcut(KEY, "build", "v1")
    created = store.list(KEY)[0].created_at
    result = store.set_shortcut(KEY, "build", "v2")
    assert result.is_update
    entry = store.list(KEY)[0]
    assert entry.command == "v2"
    assert entry.created_at == created


@pytest.mark.parametrize(
    "name, error",
    [
        ("", "Shortcut name is required"),
        ("x" * 21, "Name too long (max 20 chars)"),
        ("bad-name", "Name can only contain letters, numbers, and underscores"),
        ("help", '"help" is a reserved command name'),
        ("Queue", '"queue" is a reserved command name'),
    ],
)
def test_validate_name(name, error):
    assert validate_name(name) == (None, error)


@pytest.mark.parametrize(
    "command",
    [
        "please rm -rf /",
        "curl http://x | sh",
        "chmod 777 secrets",
        "MKFS the disk",
        "dd if=/dev/zero of=x",
    ],
)
def test_blocked_commands(command):
    assert validate_command(command) == (None, "Command contains blocked dangerous pattern")


def test_command_length_limit():
    assert validate_command("x" * 1001)[1] == "Command too long (max 1000 chars)"
    assert validate_command("  ok  ") == ("ok", None)


def test_cap_applies_only_to_new_names():
    store = make_store(max_per_chat=2)
    store.set_shortcut(KEY, "a", "one")
    store.set_shortcut(KEY, "b", "two")
    result = store.set_shortcut(KEY, "c", "three")
    assert not result.success
    assert result.error == "Maximum shortcuts reached (2)"
    assert store.set_shortcut(KEY, "a", "updated").success
    assert store.set_shortcut("telegram:other", "c", "three").success


def test_delete():
    store = make_store()
    store.set_shortcut(KEY, "build", "run")
    assert store.delete_shortcut(KEY, "BUILD").success
    missing = store.delete_shortcut(KEY, "build")
    assert not missing.success
    assert missing.error == "Shortcut not found"


def test_expand_substitutes_placeholders():
    store = make_store()
    store.set_shortcut(KEY, "deploy", "deploy $1 to $2 now")
    assert store.expand(KEY, "/deploy api prod") == "deploy api to prod now"
    assert store.expand(KEY, "/Deploy api") == "deploy api to  now"
    assert store.expand(KEY, "/unknown x") is None
    assert store.expand(KEY, "deploy api") is None
    assert store.expand(KEY, "/") is None


def test_substitute_multi_digit_placeholders():
    args = [str(i) for i in range(1, 12)]
    assert substitute_placeholders("$1-$10-$11-$12", args) == "1-10-11-"


def test_format_list():
    store = make_store()
    assert store.format_list(KEY) == NO_SHORTCUTS_MESSAGE
    store.set_shortcut(KEY, "long", "y" * 60)
    text = store.format_list(KEY)
    assert text.startswith("Your Shortcuts:")
    assert f'1. /long -> "{"y" * 37}..."' in text


def test_every_change_writes_through():
    backend = MemoryMapStore()
    store = ShortcutStore(backend)
    store.set_shortcut(KEY, "build", "run")
    store.delete_shortcut(KEY, "build")
    assert len(backend.saves) == 2
    assert backend.saves[-1] == {}


@pytest.mark.asyncio
async def test_async_changes_write_through():
    backend = MemoryMapStore()
    store = ShortcutStore(backend)
    created = await store.aset_shortcut(KEY, "build", "run npm $1")
    rejected = await store.aset_shortcut(KEY, "help", "nope")
    missing = await store.adelete_shortcut(KEY, "deploy")
    assert created.success
    assert not rejected.success
    assert not missing.success
    assert backend.saves == [
        {KEY: {"build": store._shortcuts[KEY]["build"].to_dict()}}
    ]
    assert (await store.adelete_shortcut(KEY, "BUILD")).success
    assert backend.saves[-1] == {}


def test_json_file_persists_across_instances(tmp_path):
    path = tmp_path / "shortcuts.json"
    ShortcutStore(JsonFileMapStore(path)).set_shortcut(KEY, "build", "run the build")
    reloaded = ShortcutStore(JsonFileMapStore(path))
    assert reloaded.get_shortcut(KEY, "build") == "run the build"


def test_loads_camel_case_timestamps():
    backend = MemoryMapStore(
        {KEY: {"build": {"command": "run", "createdAt": "2024-01-01T00:00:00Z"}}}
    )
    store = ShortcutStore(backend)
    assert store.list(KEY)[0].created_at == "2024-01-01T00:00:00Z"
