"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from inkwell.services.settings import SecretVault, Settings, SettingsStore, redact_secret


def _store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "settings.key"))


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    assert _store(tmp_path).load() == Settings()


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    original = Settings(
        base_url="https://example.com/v1",
        api_key="super-secret",
        model="gpt-4.1-mini",
        organization="acme",
        wire_api="responses",
        default_headers={"X-Test": "1"},
        metadata={"env": "dev"},
        require_envelope=False,
        max_follow_ups=4,
        turn_timeout=30.0,
    )

    store.save(original)

    assert _store(tmp_path).load() == original


def test_api_key_is_encrypted_on_disk(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(Settings(api_key="super-secret"))

    payload = json.loads(store.path.read_text(encoding="utf-8"))

    assert "api_key" not in payload
    assert payload["api_key_ciphertext"].startswith("fernet:")
    assert "super-secret" not in store.path.read_text(encoding="utf-8")
    assert payload["version"] == 1


def test_legacy_plaintext_api_key_is_migrated(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    target.write_text(json.dumps({"base_url": "https://old", "api_key": "legacy", "model": "m"}), encoding="utf-8")

    settings = _store(tmp_path).load()

    assert settings.api_key == "legacy"
    migrated = json.loads(target.read_text(encoding="utf-8"))
    assert "api_key" not in migrated
    assert migrated["api_key_ciphertext"].startswith("fernet:")


def test_undecryptable_key_is_dropped(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    target.write_text(json.dumps({"api_key_ciphertext": "fernet:garbage", "version": 1}), encoding="utf-8")

    assert _store(tmp_path).load().api_key == ""


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text("{not json", encoding="utf-8")

    assert _store(tmp_path).load() == Settings()


def test_unknown_keys_are_ignored(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text(json.dumps({"model": "m", "theme": "dark", "version": 1}), encoding="utf-8")

    assert _store(tmp_path).load().model == "m"


def test_env_overrides_win_over_cli_and_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store(tmp_path)
    store.save(Settings(model="from-file", max_iterations=10))
    monkeypatch.setenv("INKWELL_MODEL", "from-env")
    monkeypatch.setenv("INKWELL_REQUIRE_ENVELOPE", "no")
    monkeypatch.setenv("INKWELL_MAX_ITERATIONS", "42")
    monkeypatch.setenv("INKWELL_TURN_TIMEOUT", "12.5")
    monkeypatch.setenv("INKWELL_MAX_RETRIES", "lots")

    settings = store.load(overrides={"model": "from-cli", "max_follow_ups": 2, "wire_api": None})

    assert settings.model == "from-env"
    assert settings.require_envelope is False
    assert settings.max_iterations == 42
    assert settings.turn_timeout == 12.5
    assert settings.max_retries == 3
    assert settings.max_follow_ups == 2


def test_unknown_wire_api_falls_back_to_chat(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("INKWELL_WIRE_API", "Carrier-Pigeon")

    assert _store(tmp_path).load().wire_api == "chat"


def test_settings_build_runtime_objects() -> None:
    settings = Settings(
        api_key="k",
        max_iterations=7,
        max_corrections=2,
        max_retries=1,
        retry_initial_delay=0.25,
        default_headers={"X": "1"},
    )

    client = settings.client_settings()
    loop = settings.loop_config()
    retry = settings.retry_policy()

    assert client.api_key == "k" and client.default_headers == {"X": "1"}
    assert client.metadata is None
    assert (loop.max_iterations, loop.max_corrections) == (7, 2)
    assert (retry.max_retries, retry.initial_delay) == (1, 0.25)


def test_vault_round_trip_and_errors(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "k.key")

    token = vault.encrypt("hunter2")

    assert SecretVault(key_path=tmp_path / "k.key").decrypt(token) == "hunter2"
    assert vault.encrypt("") == "" and vault.decrypt(None) == ""
    with pytest.raises(ValueError, match="Unsupported secret backend"):
        vault.decrypt("keyring:abc")
    with pytest.raises(ValueError, match="Invalid Fernet token"):
        vault.decrypt("fernet:abc")


@pytest.mark.parametrize(
    ("value", "expected"),
    [("", ""), ("abc", "***"), ("sk-abcdef", "sk*****ef")],
)
def test_redact_secret(value: str, expected: str) -> None:
    assert redact_secret(value) == expected
