# rounds.py: запуск раунда, рассылка ролей, пересылка сообщений ведущего

import asyncio
import contextlib
import logging
import random
from enum import Enum
from html import escape
from typing import Callable, Dict, Optional, Protocol, Sequence

from games import Game, GameStore, new_game
from shuffler import (
    DEFAULT_MAX_ATTEMPTS, MIN_PARTICIPANTS,
    DuplicateParticipant, ExclusionsUnsatisfiable, ShuffleError,
    TooFewParticipants, TooManyExclusions, shuffle_people,
)

logger = logging.getLogger(__name__)


class TransportError(Exception):
    pass


class NotificationError(Exception):
    def __init__(self, player: int, cause: TransportError):
        self.player = player
        self.cause = cause
        super().__init__(f"Could not notify {player}: {cause}")


class Messenger(Protocol):
    async def open_private_channel(self, user_id: int) -> int: ...

    async def send(self, chat_id: int, text: str) -> None: ...


class HostRule(str, Enum):
    FIRST = "first"    # тот, кто первый в сгенерированной цепочке
    RANDOM = "random"


def default_label(user_id: int) -> str:
    return f'<a href="tg://user?id={user_id}">{user_id}</a>'


SHUFFLE_ERROR_TEXTS = {
    TooFewParticipants: f"Нужно упомянуть минимум {MIN_PARTICIPANTS} участников.",
    DuplicateParticipant: "Кто-то упомянут дважды — проверь список.",
    TooManyExclusions: "Слишком много пар, которые нельзя повторять с прошлого раунда. Заверши его: /stopshuffle",
    ExclusionsUnsatisfiable: "Не получилось составить цепочку без повторов с прошлого раунда. Добавь участников.",
}

HOST_NOTE = "Ты ещё и ведущий! Напиши мне сообщение — я перешлю его всем в игре."


def shuffle_error_text(error: ShuffleError) -> str:
    return SHUFFLE_ERROR_TEXTS.get(type(error), f"Ошибка жеребьёвки: {error}")


class RoundOrchestrator:
    def __init__(
        self,
        store: GameStore,
        messenger: Messenger,
        *,
        host_rule: HostRule = HostRule.FIRST,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        rng: Optional[random.Random] = None,
        label: Callable[[int], str] = default_label,
    ):
        self.store = store
        self.messenger = messenger
        self.host_rule = host_rule
        self.max_attempts = max_attempts
        self.rng = rng or random.Random()
        self.label = label
        self._chat_locks: Dict[int, asyncio.Lock] = {}
        self._chat_waiting: Dict[int, int] = {}

    def pick_host(self, pairs) -> int:
        if self.host_rule is HostRule.RANDOM:
            return self.rng.choice(pairs)[0]
        return pairs[0][0]

    @contextlib.asynccontextmanager
    async def _chat_lock(self, chat_id: int):
        """Per-chat lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._chat_locks.setdefault(chat_id, asyncio.Lock())
        self._chat_waiting[chat_id] = self._chat_waiting.get(chat_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._chat_waiting[chat_id] -= 1
            if not self._chat_waiting[chat_id]:
                del self._chat_waiting[chat_id]
                del self._chat_locks[chat_id]

    async def start_round(self, chat_id: int, participants: Sequence[int]) -> Game:
        """Shuffle a new round for the chat, avoiding the previous round's pairs.

        Raises ShuffleError with the registry left as it was.
        """
        async with self._chat_lock(chat_id):
            previous = await self.store.get_by_chat(chat_id)
            # пары с выбывшими игроками всё равно не повторятся
            present = set(participants)
            avoid = [
                (a, b) for a, b in (previous.pairs if previous else ())
                if a in present and b in present
            ]
            pairs = shuffle_people(
                participants, avoid, max_attempts=self.max_attempts, rng=self.rng,
            )
            game = new_game(self.pick_host(pairs), chat_id, pairs)
            await self.store.put(game)
        logger.info(
            "New round in chat %s: %d players, host %s, avoided %d pairs",
            chat_id, len(pairs), game.owner, len(avoid),
        )
        return game

    async def notify_players(self, game: Game) -> None:
        """DM every player their target; stops at the first failure."""
        for player, target in game.pairs:
            try:
                channel = await self.messenger.open_private_channel(player)
                await self.messenger.send(channel, f"Ты играешь за {self.label(target)}!")
                if player == game.owner:
                    await self.messenger.send(channel, HOST_NOTE)
            except TransportError as e:
                raise NotificationError(player, e) from e

    async def report(self, chat_id: int, text: str) -> bool:
        try:
            await self.messenger.send(chat_id, text)
        except TransportError as e:
            logger.warning("Could not report to chat %s: %s", chat_id, e)
            return False
        return True

    async def handle_shuffle(self, chat_id: int, participants: Sequence[int]) -> Optional[Game]:
        try:
            game = await self.start_round(chat_id, participants)
        except ShuffleError as e:
            logger.warning("Shuffle failed in chat %s: %r", chat_id, e)
            await self.report(chat_id, shuffle_error_text(e))
            return None

        try:
            await self.notify_players(game)
        except NotificationError as e:
            logger.warning("Notification stopped in chat %s at %s: %s", chat_id, e.player, e.cause)
            await self.report(
                chat_id,
                f"Не удалось написать {self.label(e.player)} в личку: {escape(str(e.cause))}\n"
                "Пусть откроет диалог с ботом (/start), и перезапустите раунд.",
            )
            return game

        await self.report(chat_id, f"Роли разосланы в личку 🎭 Игроков: {len(game.pairs)}.")
        return game

    async def stop_round(self, chat_id: int) -> Optional[Game]:
        game = await self.store.get_by_chat(chat_id)
        if game is None:
            await self.report(chat_id, "В этом чате нет активного раунда.")
            return None
        removed = await self.store.remove(game)
        logger.info("Round in chat %s retired (host %s)", chat_id, game.owner)
        await self.report(chat_id, "Раунд завершён.")
        return removed

    async def relay_host_message(self, sender_id: int, text: str) -> bool:
        game = await self.store.get_by_owner(sender_id)
        if game is None:
            return False
        try:
            await self.messenger.send(game.chat_id, f"Ведущий говорит: «{escape(text)}»")
        except TransportError as e:
            logger.warning("Could not relay host message to chat %s: %s", game.chat_id, e)
            await self.report(sender_id, f"Не удалось переслать сообщение в чат: {escape(str(e))}")
            return False
        return True
