#!/usr/bin/env python3
"""
main.py  —  WeCom relay CLI
Usage:
  wecom-relay serve                 # start the webhook gateway (foreground)
  wecom-relay serve -p 8080         # ... on another port
  wecom-relay check                 # validate config, list accounts + webhook paths
  wecom-relay sign -t TOKEN --timestamp T --nonce N --encrypt E
                                    # compute a msg_signature (debugging aid)

Config: config/wecom.yaml (override with --config or WECOM_CONFIG).
"""

import argparse
import sys


# ── serve ──────────────────────────────────────────────────────────────────────

def cmd_serve(config_path: str = "", host: str = "", port: int = 0) -> int:
    from core.config import ConfigError, load_config
    from core.gateway import start_gateway
    from core.logging_config import setup_logging

    try:
        cfg = load_config(config_path or None)
    except ConfigError as e:
        print(f"  Config error: {e}", file=sys.stderr)
        return 1

    log_cfg = cfg.get("logging") or {}
    setup_logging(level=log_cfg.get("level", "INFO"),
                  structured=bool(log_cfg.get("structured", False)),
                  log_dir=log_cfg.get("log_dir", ".logs"),
                  console_level=log_cfg.get("console_level", "INFO"))

    server = start_gateway(cfg, host=host, port=port, daemon=False)
    return 0 if server is not None else 1


# ── check ──────────────────────────────────────────────────────────────────────

def cmd_check(config_path: str = "") -> int:
    from rich.console import Console
    from rich.table import Table

    from adapters.channels.wecom.engine import agent_paths, bot_paths
    from core.config import (ConfigError, MODE_MATRIX, config_path as _resolve_path,
                             load_config, resolve_accounts, validate_config)

    console = Console()
    path = _resolve_path(config_path or None)
    try:
        cfg = load_config(path)
    except ConfigError as e:
        console.print(f"  [red]✗[/red] {e}")
        return 1

    resolved = resolve_accounts(cfg)
    console.print(f"\n  Config: [bold]{path}[/bold]   mode: [bold]{resolved.mode}[/bold]"
                  f"   default account: {resolved.default_account_id}\n")

    multi = resolved.mode == MODE_MATRIX
    tbl = Table(box=None, padding=(0, 1), show_header=True)
    tbl.add_column("Account", style="bold", min_width=10)
    tbl.add_column("Enabled")
    tbl.add_column("Bot")
    tbl.add_column("Agent")
    tbl.add_column("Webhook paths")
    for account in resolved.accounts.values():
        paths: list[str] = []
        if account.bot is not None and account.bot.configured:
            paths += bot_paths(account.account_id, multi)
        if account.agent is not None and account.agent.configured:
            paths += agent_paths(account.account_id, multi)
        tbl.add_row(
            account.account_id,
            "yes" if account.enabled else "[dim]no[/dim]",
            _side_status(account.bot),
            _side_status(account.agent),
            ", ".join(paths) or "[dim]-[/dim]",
        )
    if resolved.accounts:
        console.print(tbl)
        console.print()

    errors = validate_config(cfg)
    for err in errors:
        console.print(f"  [red]✗[/red] {err}")
    if not errors:
        console.print("  [green]✓[/green] config OK\n")
    return 1 if errors else 0


def _side_status(side) -> str:
    if side is None:
        return "[dim]-[/dim]"
    return "[green]configured[/green]" if side.configured else "[yellow]incomplete[/yellow]"


# ── sign ───────────────────────────────────────────────────────────────────────

def cmd_sign(token: str, timestamp: str, nonce: str, encrypt: str) -> int:
    from adapters.channels.wecom.crypto import compute_signature
    print(compute_signature(token, timestamp, nonce, encrypt))
    return 0


def main(argv=None) -> int:
    # Load .env before anything reads the environment
    from core.env_loader import load_dotenv
    load_dotenv()

    parser = argparse.ArgumentParser(prog="wecom-relay")
    parser.add_argument("-c", "--config", default="",
                        help="Config file (default: config/wecom.yaml or WECOM_CONFIG)")
    sub = parser.add_subparsers(dest="cmd")

    p_serve = sub.add_parser("serve", help="Start the webhook gateway (foreground)")
    p_serve.add_argument("--host", default="",
                         help="Bind address (default: gateway.host or 0.0.0.0)")
    p_serve.add_argument("-p", "--port", type=int, default=0,
                         help="Port (default: 19789 or WECOM_GATEWAY_PORT)")

    sub.add_parser("check", help="Validate config and list webhook paths")

    p_sign = sub.add_parser("sign", help="Compute a msg_signature")
    p_sign.add_argument("-t", "--token", required=True)
    p_sign.add_argument("--timestamp", required=True)
    p_sign.add_argument("--nonce", required=True)
    p_sign.add_argument("--encrypt", required=True, help="Encrypt field / echostr")

    args = parser.parse_args(argv)
    if args.cmd == "serve":
        return cmd_serve(args.config, host=args.host, port=args.port)
    elif args.cmd == "check":
        return cmd_check(args.config)
    elif args.cmd == "sign":
        return cmd_sign(args.token, args.timestamp, args.nonce, args.encrypt)
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
