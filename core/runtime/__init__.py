"""
core/runtime/ — Pluggable AgentRuntime abstraction.

Decouples the WeCom protocol engine from whatever produces the answers:
  - EchoRuntime      : replies with the inbound text (wiring checks)
  - HttpAgentRuntime : POSTs each turn to an external agent service

Usage::

    from core.runtime import create_runtime

    runtime = create_runtime(config)       # reads config["agent_runtime"]["kind"]
    await runtime.run(turn, sink)
"""

from core.runtime.base import AgentRuntime, ReplySink
from core.runtime.echo import EchoRuntime

__all__ = ["AgentRuntime", "ReplySink", "EchoRuntime", "create_runtime"]


def create_runtime(config: dict) -> AgentRuntime:
    """Factory: build the right runtime from config["agent_runtime"]["kind"].

    Defaults to ``echo``.
    """
    runtime_cfg = config.get("agent_runtime") or {}
    kind = runtime_cfg.get("kind", "echo")

    if kind == "echo":
        return EchoRuntime(prefix=runtime_cfg.get("prefix", ""))
    elif kind == "http":
        from core.runtime.http import HttpAgentRuntime
        timeout_ms = runtime_cfg.get("timeout_ms", 120_000)
        return HttpAgentRuntime(
            url=runtime_cfg.get("url", ""),
            timeout=float(timeout_ms) / 1000.0,
            headers=runtime_cfg.get("headers") or {},
        )
    else:
        raise ValueError(
            f"Unknown agent runtime '{kind}'. "
            f"Valid: echo, http"
        )
