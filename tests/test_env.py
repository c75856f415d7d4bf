import pytest

from relaypool import (
    ConfigurationError,
    KeyPool,
    load_credentials_from_env,
    load_credentials_from_file,
    make_loader,
)


def test_keys_file_skips_comments_and_blank_lines(tmp_path):
    keys = tmp_path / "keys.txt"
    keys.write_text("# upstream keys\nsk-one\n\n   \n  sk-two  \n# sk-disabled\nsk-three\n")
    assert load_credentials_from_file(str(keys)) == ["sk-one", "sk-two", "sk-three"]


def test_missing_keys_file_is_empty(tmp_path):
    assert load_credentials_from_file(str(tmp_path / "nope.txt")) == []


def test_unreadable_keys_file_is_a_configuration_error(tmp_path):
    keys = tmp_path / "keys.txt"
    keys.write_bytes(b"sk-\xff\xfe\n")
    with pytest.raises(ConfigurationError, match="Cannot read keys file"):
        load_credentials_from_file(str(keys))
    # a directory in place of the file cannot be read either
    with pytest.raises(ConfigurationError):
        load_credentials_from_file(str(tmp_path))


def test_env_names_and_comma_split(monkeypatch, tmp_path):
    monkeypatch.setenv("UPSTREAM_API_KEYS", "tok1,tok2 , tok3")
    assert load_credentials_from_env(names=["UPSTREAM_API_KEYS"]) == ["tok1", "tok2", "tok3"]
    assert load_credentials_from_env(names=["UPSTREAM_API_KEYS"], split_commas=False) == [
        "tok1,tok2 , tok3"
    ]

    # .env augments, real environment wins
    envp = tmp_path / ".env"
    envp.write_text("RP_TEST_KEY_B=y1\nRP_TEST_KEY_A='x1'\n")
    monkeypatch.setenv("RP_TEST_KEY_B", "real")
    assert load_credentials_from_env(prefix="RP_TEST_KEY_", env_path=str(envp)) == ["x1", "real"]


def test_loader_prefers_file_then_env(monkeypatch, tmp_path):
    keys = tmp_path / "keys.txt"
    keys.write_text("# nothing yet\n")
    monkeypatch.setenv("UPSTREAM_API_KEYS", "e1,e2")
    load = make_loader(keys_file=str(keys), env_names=["UPSTREAM_API_KEYS"])
    assert load() == ["e1", "e2"]

    keys.write_text("f1\n")
    assert load() == ["f1"]


def test_loader_rejects_empty_source(tmp_path):
    load = make_loader(keys_file=str(tmp_path / "keys.txt"), env_names=["UNSET_VAR_FOR_TEST"])
    with pytest.raises(ConfigurationError):
        load()


def test_pool_from_env(monkeypatch, tmp_path):
    keys = tmp_path / "keys.txt"
    keys.write_text("a\nb\n")
    pool = KeyPool.from_env(keys_file=str(keys), cooldown_seconds=5)
    assert [k.credential for k in pool.keys] == ["a", "b"]
    assert pool.cooldown_seconds == 5
