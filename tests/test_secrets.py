import json

import pytest

from spotbot.secrets import BinanceCredentials, load_credentials, save_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "BINANCE_API_KEY",
        "BINANCE_API_SECRET",
        "BINANCE_TESTNET_API_KEY",
        "BINANCE_TESTNET_API_SECRET",
        "BINANCE_CONFIG_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


def test_load_credentials_from_env(monkeypatch):
    """Load credentials from environment variables."""
    monkeypatch.setenv("BINANCE_API_KEY", "test_key")
    monkeypatch.setenv("BINANCE_API_SECRET", "test_secret")

    assert load_credentials() == BinanceCredentials("test_key", "test_secret")


def test_testnet_uses_its_own_env_pair(monkeypatch, tmp_path):
    monkeypatch.setenv("BINANCE_API_KEY", "live_key")
    monkeypatch.setenv("BINANCE_API_SECRET", "live_secret")
    monkeypatch.setenv("BINANCE_TESTNET_API_KEY", "tn_key")
    monkeypatch.setenv("BINANCE_TESTNET_API_SECRET", "tn_secret")

    assert load_credentials(str(tmp_path / "none.json"), testnet=True) == BinanceCredentials("tn_key", "tn_secret")


def test_flat_file_is_the_live_pair(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"api_key": "file_key", "api_secret": "file_secret"}))

    assert load_credentials(config_path=str(config_file)) == BinanceCredentials("file_key", "file_secret")
    with pytest.raises(ValueError, match="Missing Binance testnet credentials"):
        load_credentials(config_path=str(config_file), testnet=True)


def test_profiled_file(tmp_path, monkeypatch):
    config_file = tmp_path / "elsewhere.json"
    config_file.write_text(json.dumps({
        "live": {"api_key": "lk", "api_secret": "ls"},
        "testnet": {"api_key": "tk", "api_secret": "ts"},
    }))
    monkeypatch.setenv("BINANCE_CONFIG_PATH", str(config_file))

    assert load_credentials() == BinanceCredentials("lk", "ls")
    assert load_credentials(testnet=True) == BinanceCredentials("tk", "ts")


def test_env_overrides_config_file(tmp_path, monkeypatch):
    """Environment variables take precedence over config file."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"api_key": "file_key", "api_secret": "file_secret"}))
    monkeypatch.setenv("BINANCE_API_KEY", "env_key")
    monkeypatch.setenv("BINANCE_API_SECRET", "env_secret")

    assert load_credentials(config_path=str(config_file)).api_key == "env_key"


def test_load_credentials_missing_raises():
    with pytest.raises(ValueError, match="Missing Binance live credentials"):
        load_credentials(config_path="/nonexistent/path.json")


def test_malformed_config_file_raises(tmp_path):
    config_file = tmp_path / "broken.json"
    config_file.write_text("{not json")
    with pytest.raises(ValueError, match="Failed to load config"):
        load_credentials(config_path=str(config_file))


def test_repr_hides_secret():
    text = repr(BinanceCredentials("abcdefgh", "topsecret"))
    assert "topsecret" not in text
    assert "abcd" in text and "efgh" not in text


def test_save_keeps_other_profile(tmp_path):
    config_file = tmp_path / "nested" / "saved.json"

    save_config(str(config_file), "live_key", "live_secret")
    save_config(str(config_file), "tn_key", "tn_secret", testnet=True)

    assert (config_file.stat().st_mode & 0o777) == 0o600
    assert load_credentials(str(config_file)) == BinanceCredentials("live_key", "live_secret")
    assert load_credentials(str(config_file), testnet=True) == BinanceCredentials("tn_key", "tn_secret")


def test_save_upgrades_flat_file(tmp_path):
    config_file = tmp_path / "flat.json"
    config_file.write_text(json.dumps({"api_key": "old", "api_secret": "old_s"}))

    save_config(str(config_file), "tn", "tn_s", testnet=True)

    saved = json.loads(config_file.read_text())
    assert saved["live"] == {"api_key": "old", "api_secret": "old_s"}
    assert saved["testnet"] == {"api_key": "tn", "api_secret": "tn_s"}
