"""
core/config.py
Relay configuration: load config/wecom.yaml and resolve WeCom accounts.

Usage:
    from core.config import load_config, resolve_accounts
    cfg = load_config()                    # WECOM_CONFIG overrides the path
    resolved = resolve_accounts(cfg)       # ResolvedAccounts(mode, default, accounts)

Secrets may be written inline or referenced through ``*_env`` keys that
name an environment variable (``token_env: WECOM_BOT_TOKEN``).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from adapters.channels.wecom.models import AgentAccount, BotAccount, WecomAccount

logger = logging.getLogger(__name__)

CONFIG_PATH = "config/wecom.yaml"
CONFIG_ENV = "WECOM_CONFIG"
DEFAULT_ACCOUNT_ID = "default"

MODE_DISABLED = "disabled"
MODE_LEGACY = "legacy"      # single account under wecom.bot / wecom.agent
MODE_MATRIX = "matrix"      # several accounts under wecom.accounts

DEFAULT_MEDIA_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_TIMEOUT_MS = 15_000
DEFAULT_DEBOUNCE_MS = 500


class ConfigError(Exception):
    pass


def config_path(path: Optional[str] = None) -> str:
    return path or os.environ.get(CONFIG_ENV) or CONFIG_PATH


def load_config(path: Optional[str] = None) -> dict:
    """Read the YAML config. A missing file is an empty config (disabled)."""
    path = config_path(path)
    if not os.path.exists(path):
        logger.warning("Config file not found: %s (WeCom disabled)", path)
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML parse error in {path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ConfigError(f"Config {path} is not a mapping")
    return cfg


# ── Secrets ───────────────────────────────────────────────────────────────

def _secret(section: dict, key: str) -> str:
    """Inline value, else the env var named by ``<key>_env``."""
    value = section.get(key)
    if value not in (None, ""):
        return str(value).strip()
    env_name = section.get(f"{key}_env")
    if env_name:
        env_value = os.environ.get(str(env_name), "")
        if not env_value:
            logger.warning("Config references env %s for %s but it is not set",
                           env_name, key)
        return env_value.strip()
    return ""


def _agent_id(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric agent_id %r", raw)
        return None


# ── Resolution ────────────────────────────────────────────────────────────

def wecom_section(cfg: dict) -> dict:
    section = cfg.get("wecom")
    return section if isinstance(section, dict) else {}


def detect_mode(cfg: dict) -> str:
    wecom = cfg.get("wecom")
    if not isinstance(wecom, dict) or wecom.get("enabled") is False:
        return MODE_DISABLED
    accounts = wecom.get("accounts")
    if isinstance(accounts, dict):
        if any(isinstance(entry, dict) and entry.get("enabled") is not False
               for entry in accounts.values()):
            return MODE_MATRIX
    return MODE_LEGACY


def media_max_bytes(cfg: dict) -> int:
    media = wecom_section(cfg).get("media") or {}
    return int(media.get("max_bytes") or DEFAULT_MEDIA_MAX_BYTES)


def network_timeout(cfg: dict) -> float:
    network = wecom_section(cfg).get("network") or {}
    return float(network.get("timeout_ms") or DEFAULT_TIMEOUT_MS) / 1000.0


def debounce_interval(cfg: dict) -> float:
    ms = wecom_section(cfg).get("debounce_ms")
    return float(DEFAULT_DEBOUNCE_MS if ms is None else ms) / 1000.0


def resolve_bot(account_id: str, section: dict, max_bytes: int) -> BotAccount:
    bot_ids = section.get("bot_ids") or []
    if isinstance(bot_ids, str):
        bot_ids = [bot_ids]
    return BotAccount(
        account_id=account_id,
        token=_secret(section, "token"),
        encoding_aes_key=_secret(section, "encoding_aes_key"),
        receive_id=str(section.get("receive_id") or "").strip(),
        stream_placeholder=str(section.get("stream_placeholder") or ""),
        welcome_text=str(section.get("welcome_text") or ""),
        bot_ids=[str(b).strip() for b in bot_ids if str(b).strip()],
        media_max_bytes=int(section.get("media_max_bytes") or max_bytes),
    )


def resolve_agent(account_id: str, section: dict, timeout: float) -> AgentAccount:
    return AgentAccount(
        account_id=account_id,
        corp_id=str(section.get("corp_id") or "").strip(),
        corp_secret=_secret(section, "corp_secret"),
        agent_id=_agent_id(section.get("agent_id")),
        token=_secret(section, "token"),
        encoding_aes_key=_secret(section, "encoding_aes_key"),
        welcome_text=str(section.get("welcome_text") or ""),
        timeout=timeout,
    )


def _account(account_id: str, entry: dict, enabled: bool, cfg: dict) -> WecomAccount:
    max_bytes = media_max_bytes(cfg)
    timeout = network_timeout(cfg)
    bot = entry.get("bot")
    agent = entry.get("agent")
    return WecomAccount(
        account_id=account_id,
        name=str(entry.get("name") or ""),
        enabled=enabled,
        bot=resolve_bot(account_id, bot, max_bytes) if isinstance(bot, dict) else None,
        agent=resolve_agent(account_id, agent, timeout) if isinstance(agent, dict) else None,
    )


@dataclass
class ResolvedAccounts:
    mode: str
    default_account_id: str = DEFAULT_ACCOUNT_ID
    accounts: dict[str, WecomAccount] = field(default_factory=dict)

    def enabled(self) -> list[WecomAccount]:
        return [a for a in self.accounts.values() if a.enabled and a.configured]


def resolve_accounts(cfg: dict) -> ResolvedAccounts:
    mode = detect_mode(cfg)
    if mode == MODE_DISABLED:
        return ResolvedAccounts(mode=mode)

    wecom = wecom_section(cfg)
    accounts: dict[str, WecomAccount] = {}

    if mode == MODE_MATRIX:
        for raw_id, entry in sorted(wecom.get("accounts", {}).items()):
            account_id = str(raw_id).strip()
            if not account_id or not isinstance(entry, dict):
                continue
            accounts[account_id] = _account(
                account_id, entry, entry.get("enabled") is not False, cfg)
    else:
        accounts[DEFAULT_ACCOUNT_ID] = _account(DEFAULT_ACCOUNT_ID, wecom, True, cfg)

    preferred = str(wecom.get("default_account") or "").strip()
    default_id = preferred if preferred in accounts else next(iter(accounts), DEFAULT_ACCOUNT_ID)
    return ResolvedAccounts(mode=mode, default_account_id=default_id, accounts=accounts)


# ── Validation ────────────────────────────────────────────────────────────

def validate_config(cfg: dict) -> list[str]:
    """Human-readable problems with a loaded config (empty = valid)."""
    errors: list[str] = []
    resolved = resolve_accounts(cfg)
    if resolved.mode == MODE_DISABLED:
        return errors

    if not resolved.accounts:
        errors.append("wecom is enabled but no account is defined")
    for account in resolved.accounts.values():
        if not account.enabled:
            continue
        prefix = f"account '{account.account_id}'"
        if account.bot is None and account.agent is None:
            errors.append(f"{prefix}: neither 'bot' nor 'agent' is configured")
        if account.bot is not None and not account.bot.configured:
            errors.append(f"{prefix}: bot needs token and encoding_aes_key")
        if account.agent is not None and not account.agent.configured:
            errors.append(f"{prefix}: agent needs corp_id, corp_secret, token "
                          f"and encoding_aes_key")
        for creds in (account.bot, account.agent):
            key = creds.encoding_aes_key if creds else ""
            if key and len(key) != 43:
                errors.append(f"{prefix}: encoding_aes_key must be 43 characters")

    kind = (cfg.get("agent_runtime") or {}).get("kind", "echo")
    if kind not in ("echo", "http"):
        errors.append(f"Unknown agent_runtime kind '{kind}'. Valid: echo, http")
    elif kind == "http" and not (cfg.get("agent_runtime") or {}).get("url"):
        errors.append("agent_runtime kind 'http' requires a url")
    return errors
