# app.py: Shuffle Bot, кто за кого играет в групповом чате
# Python 3.11+ / Aiogram 3.7+

import os
import asyncio
import hashlib
import logging
import contextlib
from typing import Optional, Dict
from datetime import datetime, timedelta, UTC
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

from aiogram import Bot, Dispatcher, F
from aiogram.enums import ChatType, MessageEntityType, ParseMode
from aiogram.client.default import DefaultBotProperties
from aiogram.exceptions import TelegramAPIError
from aiogram.filters import Command, CommandStart
from aiogram.types import Message

from sqlalchemy import select, String as SAString
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import NullPool

from games import GameStore
from parser import ParseRejection, parse_shuffle_command
from rounds import HostRule, RoundOrchestrator, TransportError
from shuffler import DEFAULT_MAX_ATTEMPTS
from users import KnownUsers

logger = logging.getLogger("shuffle_bot")

# ============================================================
# ENV + URL sanitize
# ============================================================
BOT_TOKEN = os.environ.get("BOT_TOKEN", "")
if not BOT_TOKEN:
    raise RuntimeError("BOT_TOKEN is required")

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./shuffle.db")

def _sanitize_pg_url(url: str) -> str:
    if not url.startswith(("postgres://", "postgresql://", "postgresql+psycopg://")):
        return url
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    parts = urlsplit(url)
    q = dict(parse_qsl(parts.query, keep_blank_values=True))
    # PgBouncer в transaction-режиме не переживает prepared statements
    for k in ("prepared_statement_cache_size", "statement_cache_size",
              "prepared_statements", "server_prepared_statements"):
        q.pop(k, None)
    q.setdefault("sslmode", "require")
    return urlunsplit(parts._replace(query=urlencode(q)))

DATABASE_URL = _sanitize_pg_url(DATABASE_URL)

WEBHOOK_URL = os.environ.get("WEBHOOK_URL")  # если задан, режим webhook, иначе polling
PORT = int(os.environ.get("PORT", "10000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

SHUFFLE_MAX_ATTEMPTS = int(os.environ.get("SHUFFLE_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS)))
HOST_RULE = HostRule(os.environ.get("HOST_RULE", HostRule.FIRST.value).lower())
RUNTIME_LOCK_TTL = int(os.environ.get("RUNTIME_LOCK_TTL", "600"))

# ============================================================
# DB: только lock единственного polling-инстанса, раунды живут в памяти
# ============================================================
class Base(DeclarativeBase): pass

class RuntimeLock(Base):
    __tablename__ = "runtime_lock"
    id: Mapped[int] = mapped_column(primary_key=True)
    bot_token_hash: Mapped[str] = mapped_column(SAString(64), unique=True, index=True)
    started_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))

CONNECT_ARGS: Dict[str, object] = {}
if DATABASE_URL.startswith("postgresql+psycopg://"):
    CONNECT_ARGS["prepare_threshold"] = None

engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    connect_args=CONNECT_ARGS,
    poolclass=NullPool,  # безопасно за PgBouncer
)
Session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None: return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)

def _token_hash() -> str:
    return hashlib.sha256(BOT_TOKEN.encode()).hexdigest()

async def acquire_runtime_lock(ttl_seconds: int = RUNTIME_LOCK_TTL) -> bool:
    h = _token_hash()
    now = datetime.now(UTC)
    async with Session() as s:
        existing = (await s.execute(select(RuntimeLock).where(RuntimeLock.bot_token_hash == h))).scalar_one_or_none()
        if existing:
            started = _aware(existing.started_at)
            if started and started < now - timedelta(seconds=ttl_seconds):
                logger.warning("Dropping stale runtime lock from %s", started)
                await s.delete(existing)
                await s.commit()
            else:
                return False
        s.add(RuntimeLock(bot_token_hash=h, started_at=now))
        try:
            await s.commit()
            return True
        except IntegrityError:
            await s.rollback()
            return False

async def release_runtime_lock():
    async with Session() as s:
        row = (await s.execute(select(RuntimeLock).where(RuntimeLock.bot_token_hash == _token_hash()))).scalar_one_or_none()
        if row:
            await s.delete(row)
            await s.commit()

# ============================================================
# Bot / transport
# ============================================================
bot = Bot(BOT_TOKEN, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
dp = Dispatcher()
known_users = KnownUsers()

GROUP_CHATS = {ChatType.GROUP, ChatType.SUPERGROUP}

class TelegramMessenger:
    """Messenger over the Bot API; every API failure becomes TransportError."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def open_private_channel(self, user_id: int) -> int:
        try:
            chat = await self.bot.get_chat(user_id)
        except TelegramAPIError as e:
            raise TransportError(e.message) from e
        return chat.id

    async def send(self, chat_id: int, text: str) -> None:
        try:
            await self.bot.send_message(chat_id, text)
        except TelegramAPIError as e:
            raise TransportError(e.message) from e

def mentioned_bots(m: Message) -> set[int]:
    bots = {bot.id}
    for entity in m.entities or []:
        if entity.type == MessageEntityType.TEXT_MENTION and entity.user:
            if entity.user.is_bot:
                bots.add(entity.user.id)
            else:
                known_users.remember(entity.user)
    return bots

# ============================================================
# Handlers
# ============================================================
HELP_TEXT = (
    "Привет! Я раздаю роли «кто за кого играет».\n"
    "• В группе: <code>/shuffle @имя1 @имя2 @имя3</code> (или <code>/sh</code>)\n"
    "• Каждый получит в личку, за кого он играет 🎭\n"
    "• Ведущий пишет мне — я пересылаю в чат\n"
    "• <code>/stopshuffle</code> — завершить раунд\n"
    "Чтобы я мог написать тебе, просто оставь этот диалог открытым."
)

@dp.message(CommandStart(), F.chat.type == ChatType.PRIVATE)
async def on_cmd_start(m: Message):
    known_users.remember(m.from_user)
    await m.answer(HELP_TEXT)

@dp.message(Command("stopshuffle"), F.chat.type.in_(GROUP_CHATS))
async def on_stop(m: Message, rounds: RoundOrchestrator):
    known_users.remember(m.from_user)
    await rounds.stop_round(m.chat.id)

@dp.message(F.chat.type.in_(GROUP_CHATS), F.text)
async def on_group_text(m: Message, rounds: RoundOrchestrator):
    known_users.remember(m.from_user)
    bots = mentioned_bots(m)
    try:
        command = parse_shuffle_command(m.html_text, known_users.usernames(), bots)
    except ParseRejection as e:
        logger.debug("Not a shuffle command: %r", e)
        return

    if command.unresolved:
        names = ", ".join(f"@{u}" for u in command.unresolved)
        await rounds.report(
            m.chat.id,
            f"Не знаю, кто такие {names}. Пусть напишут что-нибудь в этот чат или мне в личку, и повторите команду.",
        )
        return

    await rounds.handle_shuffle(m.chat.id, command.participants)

@dp.message(F.chat.type == ChatType.PRIVATE, F.text)
async def on_private_text(m: Message, rounds: RoundOrchestrator):
    known_users.remember(m.from_user)
    relayed = await rounds.relay_host_message(m.from_user.id, m.text)
    if not relayed:
        logger.debug("Private message from %s is not part of any round", m.from_user.id)

def build_orchestrator() -> RoundOrchestrator:
    return RoundOrchestrator(
        GameStore(),
        TelegramMessenger(bot),
        host_rule=HOST_RULE,
        max_attempts=SHUFFLE_MAX_ATTEMPTS,
        label=known_users.label,
    )

# ============================================================
# main
# ============================================================
async def main():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    await init_db()
    dp["rounds"] = build_orchestrator()

    if WEBHOOK_URL:
        # WEBHOOK MODE
        from aiogram.webhook.aiohttp_server import SimpleRequestHandler, setup_application
        from aiohttp import web

        app = web.Application()
        SimpleRequestHandler(dispatcher=dp, bot=bot).register(app, path="/webhook")
        setup_application(app, dp, bot=bot)
        await bot.set_webhook(WEBHOOK_URL + "/webhook", drop_pending_updates=True)

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host="0.0.0.0", port=PORT)
        await site.start()
        logger.info("Webhook mode on :%s", PORT)

        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            with contextlib.suppress(Exception):
                await runner.cleanup()
            with contextlib.suppress(Exception):
                await bot.session.close()
    else:
        # POLLING MODE + HEALTH
        from aiohttp import web

        info = await bot.get_webhook_info()
        if info.url:
            await bot.delete_webhook(drop_pending_updates=True)

        if not await acquire_runtime_lock():
            logger.error("Another instance already holds the polling lock. Exiting.")
            with contextlib.suppress(Exception):
                await bot.session.close()
            return

        app = web.Application()
        async def _health(_req): return web.Response(text="ok")
        app.router.add_get("/health", _health)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host="0.0.0.0", port=PORT)
        await site.start()
        logger.info("Polling + health on :%s/health", PORT)

        try:
            await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
        finally:
            with contextlib.suppress(Exception):
                await release_runtime_lock()
            with contextlib.suppress(Exception):
                await runner.cleanup()
            with contextlib.suppress(Exception):
                await bot.session.close()

# ============================================================
# Entrypoint
# ============================================================
if __name__ == "__main__":
    import sys
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    sys.exit(0)
