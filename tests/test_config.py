"""
tests/test_config.py
Config loading, account resolution and validation.
"""

import os

import pytest

from core.config import (
    ConfigError, MODE_DISABLED, MODE_LEGACY, MODE_MATRIX, debounce_interval,
    load_config, network_timeout, resolve_accounts, validate_config,
)
from core.env_loader import load_dotenv
from tests.conftest import AES_KEY


def _legacy(**bot):
    section = {"token": "t", "encoding_aes_key": AES_KEY}
    section.update(bot)
    return {"wecom": {"bot": section}}


class TestLoad:

    def test_missing_file_is_empty(self, tmp_path):
        assert load_config(str(tmp_path / "nope.yaml")) == {}

    def test_env_var_selects_path(self, tmp_path, monkeypatch):
        path = tmp_path / "relay.yaml"
        path.write_text("wecom:\n  enabled: false\n", encoding="utf-8")
        monkeypatch.setenv("WECOM_CONFIG", str(path))
        assert load_config() == {"wecom": {"enabled": False}}

    def test_bad_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("wecom: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(str(path))


class TestResolve:

    def test_disabled(self):
        assert resolve_accounts({}).mode == MODE_DISABLED
        assert resolve_accounts({"wecom": {"enabled": False}}).mode == MODE_DISABLED

    def test_legacy_single_account(self):
        resolved = resolve_accounts(_legacy(stream_placeholder="..."))
        assert resolved.mode == MODE_LEGACY
        account = resolved.accounts["default"]
        assert account.account_id == "default"
        assert account.bot.configured
        assert account.bot.stream_placeholder == "..."
        assert account.agent is None

    def test_secrets_from_env(self, monkeypatch):
        monkeypatch.setenv("BOT_TOKEN_X", "from-env")
        cfg = {"wecom": {"bot": {"token_env": "BOT_TOKEN_X",
                                 "encoding_aes_key": AES_KEY}}}
        assert resolve_accounts(cfg).accounts["default"].bot.token == "from-env"

    def test_matrix(self):
        cfg = {"wecom": {
            "default_account": "ops",
            "accounts": {
                "sales": {"bot": {"token": "a", "encoding_aes_key": AES_KEY}},
                "ops": {"agent": {"corp_id": "ww1", "corp_secret": "s",
                                  "agent_id": "1000003", "token": "b",
                                  "encoding_aes_key": AES_KEY}},
                "old": {"enabled": False, "bot": {"token": "c"}},
            },
        }}
        resolved = resolve_accounts(cfg)
        assert resolved.mode == MODE_MATRIX
        assert resolved.default_account_id == "ops"
        assert resolved.accounts[resolved.default_account_id].agent.agent_id == 1000003
        assert resolved.accounts["sales"].bot.token == "a"
        assert [a.account_id for a in resolved.enabled()] == ["ops", "sales"]

    def test_tunables(self):
        cfg = {"wecom": {"debounce_ms": 200, "network": {"timeout_ms": 3000}}}
        assert debounce_interval(cfg) == 0.2
        assert network_timeout(cfg) == 3.0
        assert debounce_interval({}) == 0.5


class TestValidate:

    def test_valid(self):
        assert validate_config(_legacy()) == []

    def test_incomplete_bot(self):
        errors = validate_config({"wecom": {"bot": {"token": "t"}}})
        assert any("token and encoding_aes_key" in e for e in errors)

    def test_short_key(self):
        errors = validate_config(_legacy(encoding_aes_key="short"))
        assert any("43 characters" in e for e in errors)

    def test_runtime_kind(self):
        cfg = _legacy()
        cfg["agent_runtime"] = {"kind": "http"}
        assert validate_config(cfg) == ["agent_runtime kind 'http' requires a url"]


class TestDotenv:

    def test_loads_without_overriding(self, tmp_path, monkeypatch):
        env = tmp_path / ".env"
        env.write_text("# secrets\nexport RELAY_A='alpha'\nRELAY_B=\"beta\"\n"
                       "RELAY_C=keep-me\nnot a pair\n", encoding="utf-8")
        monkeypatch.delenv("RELAY_A", raising=False)
        monkeypatch.delenv("RELAY_B", raising=False)
        monkeypatch.setenv("RELAY_C", "original")

        assert load_dotenv(str(env)) == 2
        assert os.environ["RELAY_A"] == "alpha"
        assert os.environ["RELAY_B"] == "beta"
        assert os.environ["RELAY_C"] == "original"
        monkeypatch.delenv("RELAY_A")
        monkeypatch.delenv("RELAY_B")

    def test_missing_file(self, tmp_path):
        assert load_dotenv(str(tmp_path / "absent.env")) == 0
