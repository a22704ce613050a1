"""
adapters/channels/wecom/engine.py
WecomEngine: one protocol engine = one store + router + both dialects.

Lifecycle:
    engine = WecomEngine(runtime)
    stop_default = engine.start_account(account)   # mounts webhook targets
    resp = await engine.handle(WebhookRequest(...))
    engine.stop()                                   # timers cleared, targets gone

Agent turns run as detached tasks tracked in ``engine.tasks``. stop() does
not cancel them; a turn that finishes after stop() writes into a stream
nobody polls any more, and the stream is pruned with the rest.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

import httpx

from core.runtime.base import AgentRuntime

from .agent import AgentDialect
from .bot import BotDialect
from .debounce import DEFAULT_DEBOUNCE
from .models import AGENT_DIALECT, BOT_DIALECT, WebhookTarget, WecomAccount
from .router import WebhookRequest, WebhookResponse, WebhookRouter
from .store import WecomStore

logger = logging.getLogger(__name__)

BOT_PATH = "/wecom"
BOT_PATH_ALT = "/wecom/bot"
AGENT_PATH = "/wecom/agent"


def bot_paths(account_id: str, multi_account: bool = False) -> list[str]:
    if multi_account:
        return [f"{BOT_PATH_ALT}/{account_id}"]
    return [BOT_PATH, BOT_PATH_ALT]


def agent_paths(account_id: str, multi_account: bool = False) -> list[str]:
    if multi_account:
        return [f"{AGENT_PATH}/{account_id}"]
    return [AGENT_PATH]


def build_targets(account: WecomAccount, multi_account: bool = False) -> list[WebhookTarget]:
    """Webhook targets for every configured side of an account."""
    targets: list[WebhookTarget] = []
    bot = account.bot
    if bot is not None and bot.configured:
        for path in bot_paths(account.account_id, multi_account):
            targets.append(WebhookTarget(
                account_id=account.account_id, path=path, dialect=BOT_DIALECT,
                token=bot.token, encoding_aes_key=bot.encoding_aes_key,
                receive_id=bot.receive_id, bot=bot,
            ))
    agent = account.agent
    if agent is not None and agent.configured:
        for path in agent_paths(account.account_id, multi_account):
            targets.append(WebhookTarget(
                account_id=account.account_id, path=path, dialect=AGENT_DIALECT,
                token=agent.token, encoding_aes_key=agent.encoding_aes_key,
                receive_id=agent.receive_id, agent=agent,
            ))
    return targets


class WecomEngine:
    """Owns all WeCom protocol state for one host process (or one test)."""

    def __init__(self, runtime: AgentRuntime, store: Optional[WecomStore] = None,
                 debounce: float = DEFAULT_DEBOUNCE,
                 http_timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.runtime = runtime
        self.store = store or WecomStore()
        self.router = WebhookRouter()
        self.tasks: set[asyncio.Task] = set()
        self._stopped = False
        self._unregister: dict[str, Callable[[], None]] = {}

        self.bot = BotDialect(self.store, runtime, self.spawn, debounce=debounce,
                              http_timeout=http_timeout, transport=transport)
        self.agent = AgentDialect(self.store, runtime, self.spawn, transport=transport)
        self.router.add_dialect(BOT_DIALECT, self.bot)
        self.router.add_dialect(AGENT_DIALECT, self.agent)

    # ── tasks ─────────────────────────────────────────────────────────────

    def spawn(self, coro: Awaitable) -> Optional[asyncio.Task]:
        """Run ``coro`` detached from the request; keeps a strong reference."""
        if self._stopped:
            logger.info("[wecom] engine stopped, not starting new work")
            coro.close()
            return None
        task = asyncio.get_running_loop().create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for pending debounce flushes and in-flight turns to settle."""
        async def _drain() -> None:
            while self.tasks or len(self.store.pending):
                if self.tasks:
                    await asyncio.gather(*list(self.tasks), return_exceptions=True)
                else:
                    await asyncio.sleep(0.01)

        await asyncio.wait_for(_drain(), timeout)

    # ── accounts ──────────────────────────────────────────────────────────

    def start_account(self, account: WecomAccount,
                      multi_account: bool = False) -> Callable[[], None]:
        """Mount an account's targets; the returned callable unmounts them."""
        if not account.enabled:
            logger.info("[wecom] account %s disabled, not starting", account.account_id)
            return lambda: None
        self.stop_account(account.account_id)

        targets = build_targets(account, multi_account)
        if not targets:
            logger.warning("[wecom] account %s has no configured bot or agent",
                           account.account_id)
        removers = [self.router.register(t) for t in targets]
        self._stopped = False

        def stop() -> None:
            for remove in removers:
                remove()
            self.bot.coalescer.cancel_account(account.account_id)
            self.agent.drop_clients(account.account_id)
            self._unregister.pop(account.account_id, None)
            logger.info("[wecom] account %s stopped", account.account_id)

        self._unregister[account.account_id] = stop
        return stop

    def start_all(self, accounts: Iterable[WecomAccount],
                  multi_account: bool = False) -> int:
        count = 0
        for account in accounts:
            if account.enabled and account.configured:
                self.start_account(account, multi_account)
                count += 1
        return count

    def stop_account(self, account_id: str) -> None:
        stop = self._unregister.get(account_id)
        if stop is not None:
            stop()

    def stop(self) -> None:
        for stop in list(self._unregister.values()):
            stop()
        cancelled = self.bot.coalescer.cancel_all()
        self._stopped = True
        logger.info("[wecom] engine stopped (%d pending burst(s) dropped, %d turn(s) in flight)",
                    cancelled, len(self.tasks))

    # ── requests ──────────────────────────────────────────────────────────

    def paths(self) -> list[str]:
        return self.router.paths()

    async def handle(self, request: WebhookRequest) -> Optional[WebhookResponse]:
        self.store.prune()
        return await self.router.handle(request)

    async def send_active_message(self, stream_id: str, text: str) -> None:
        await self.bot.send_active_message(stream_id, text)
