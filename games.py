# games.py: активные раунды (в памяти, до перезапуска)

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import aiorwlock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Game:
    owner: int
    chat_id: int
    pairs: Tuple[Tuple[int, int], ...]

    @property
    def players(self) -> List[int]:
        return [player for player, _ in self.pairs]


def new_game(owner: int, chat_id: int, pairs: Sequence[Tuple[int, int]]) -> Game:
    return Game(owner=owner, chat_id=chat_id, pairs=tuple((a, b) for a, b in pairs))


class GameStore:
    """Active games keyed by owner; at most one game per owner and per chat.

    Reads share the lock, writes hold it exclusively. ``put`` finds and evicts
    the chat's previous game inside the same writer section, so two
    concurrent puts for one chat can never both survive.
    """

    def __init__(self):
        self._games: Dict[int, Game] = {}
        self._lock = aiorwlock.RWLock()

    async def put(self, game: Game) -> List[Game]:
        async with self._lock.writer:
            evicted = []
            for owner, existing in list(self._games.items()):
                if existing.chat_id == game.chat_id:
                    evicted.append(self._games.pop(owner))
            previous = self._games.get(game.owner)
            if previous is not None:
                # ведущий переехал в другой чат, старый раунд там пропадает
                evicted.append(previous)
            self._games[game.owner] = game
        for old in evicted:
            logger.info("Game of %s in chat %s superseded", old.owner, old.chat_id)
        return evicted

    async def get_by_owner(self, owner: int) -> Optional[Game]:
        async with self._lock.reader:
            return self._games.get(owner)

    async def get_by_chat(self, chat_id: int) -> Optional[Game]:
        async with self._lock.reader:
            for game in self._games.values():
                if game.chat_id == chat_id:
                    return game
        return None

    async def remove(self, game: Game) -> Optional[Game]:
        async with self._lock.writer:
            return self._games.pop(game.owner, None)
