from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiogram.enums import MessageEntityType
from aiogram.exceptions import TelegramForbiddenError

import app
from rounds import HostRule, TransportError

CHAT = -1001


def user(user_id, username=None, full_name="Player", is_bot=False):
    return SimpleNamespace(id=user_id, username=username, full_name=full_name, is_bot=is_bot)


def link(user_id):
    return f'<a href="tg://user?id={user_id}">Player</a>'


def group_message(html_text, entities=(), author=None):
    return SimpleNamespace(
        html_text=html_text,
        text=html_text,
        entities=list(entities),
        from_user=author or user(500, "author_500"),
        chat=SimpleNamespace(id=CHAT),
    )


def text_mention(u):
    return SimpleNamespace(type=MessageEntityType.TEXT_MENTION, user=u)


def test_sanitize_pg_url_switches_driver_and_requires_ssl():
    url = app._sanitize_pg_url("postgres://u:p@db:5432/shuffle?statement_cache_size=0")
    assert url == "postgresql+psycopg://u:p@db:5432/shuffle?sslmode=require"


def test_sanitize_pg_url_keeps_explicit_sslmode():
    url = app._sanitize_pg_url("postgresql://u:p@db/shuffle?sslmode=disable")
    assert url == "postgresql+psycopg://u:p@db/shuffle?sslmode=disable"


def test_sanitize_pg_url_ignores_sqlite():
    assert app._sanitize_pg_url("sqlite+aiosqlite:///./shuffle.db") == "sqlite+aiosqlite:///./shuffle.db"


def test_default_config():
    assert app.HOST_RULE is HostRule.FIRST
    assert app.SHUFFLE_MAX_ATTEMPTS == 200


@pytest.mark.asyncio
async def test_messenger_wraps_api_errors():
    bot = AsyncMock()
    bot.get_chat.side_effect = TelegramForbiddenError(method=MagicMock(), message="bot was blocked by the user")
    messenger = app.TelegramMessenger(bot)
    with pytest.raises(TransportError, match="blocked"):
        await messenger.open_private_channel(42)


@pytest.mark.asyncio
async def test_messenger_sends_to_chat():
    bot = AsyncMock()
    bot.get_chat.return_value = SimpleNamespace(id=42)
    messenger = app.TelegramMessenger(bot)
    assert await messenger.open_private_channel(42) == 42
    await messenger.send(42, "hi")
    bot.send_message.assert_awaited_once_with(42, "hi")


def test_mentioned_bots_includes_self_and_bot_mentions():
    m = group_message("/sh", [text_mention(user(77, is_bot=True)), text_mention(user(78))])
    assert app.mentioned_bots(m) == {app.bot.id, 77}


@pytest.mark.asyncio
async def test_group_shuffle_command_starts_round_without_bots():
    rounds = AsyncMock()
    m = group_message(
        f"/shuffle {link(1)} {link(77)} {link(2)} {link(3)}",
        [text_mention(user(77, is_bot=True))],
    )
    await app.on_group_text(m, rounds)
    rounds.handle_shuffle.assert_awaited_once_with(CHAT, [1, 2, 3])


@pytest.mark.asyncio
async def test_group_shuffle_resolves_known_usernames():
    app.known_users.remember(user(601, "carol_601"))
    rounds = AsyncMock()
    await app.on_group_text(group_message(f"/sh @carol_601 {link(2)} {link(3)}"), rounds)
    rounds.handle_shuffle.assert_awaited_once_with(CHAT, [601, 2, 3])


@pytest.mark.asyncio
async def test_group_shuffle_with_unknown_username_asks_to_introduce():
    rounds = AsyncMock()
    await app.on_group_text(group_message(f"/sh @stranger_x {link(2)} {link(3)}"), rounds)
    rounds.handle_shuffle.assert_not_awaited()
    chat_id, text = rounds.report.await_args.args
    assert chat_id == CHAT
    assert "@stranger_x" in text


@pytest.mark.asyncio
async def test_ordinary_group_text_is_ignored_but_author_remembered():
    rounds = AsyncMock()
    await app.on_group_text(group_message("good morning", author=user(700, "dave_700")), rounds)
    rounds.handle_shuffle.assert_not_awaited()
    rounds.report.assert_not_awaited()
    assert app.known_users.resolve("dave_700") == 700


@pytest.mark.asyncio
async def test_private_text_is_relayed():
    rounds = AsyncMock()
    rounds.relay_host_message.return_value = True
    m = SimpleNamespace(text="night falls", from_user=user(7))
    await app.on_private_text(m, rounds)
    rounds.relay_host_message.assert_awaited_once_with(7, "night falls")


@pytest.mark.asyncio
async def test_stop_command():
    rounds = AsyncMock()
    await app.on_stop(group_message("/stopshuffle"), rounds)
    rounds.stop_round.assert_awaited_once_with(CHAT)


@pytest.mark.asyncio
async def test_build_orchestrator_uses_config():
    rounds = app.build_orchestrator()
    assert rounds.host_rule is app.HOST_RULE
    assert rounds.max_attempts == app.SHUFFLE_MAX_ATTEMPTS
    assert isinstance(rounds.messenger, app.TelegramMessenger)


@pytest.mark.asyncio
async def test_group_shuffle_skips_bot_usernames():
    rounds = AsyncMock()
    await app.on_group_text(group_message(f"/shuffle @helper_bot {link(1)} {link(2)} {link(3)}"), rounds)
    rounds.report.assert_not_awaited()
    rounds.handle_shuffle.assert_awaited_once_with(CHAT, [1, 2, 3])
