# users.py: кого бот уже видел: @username -> id и имя для упоминаний

from html import escape
from typing import Dict, Optional


class KnownUsers:
    def __init__(self):
        self._ids: Dict[str, int] = {}
        self._names: Dict[int, str] = {}

    def remember(self, user) -> None:
        """Accepts anything shaped like aiogram's ``User``; bots are skipped."""
        if user is None or getattr(user, "is_bot", False):
            return
        if user.username:
            self._ids[user.username.lower()] = user.id
        self._names[user.id] = user.full_name or (f"@{user.username}" if user.username else str(user.id))

    def resolve(self, username: str) -> Optional[int]:
        return self._ids.get(username.lstrip("@").lower())

    def usernames(self) -> Dict[str, int]:
        return dict(self._ids)

    def label(self, user_id: int) -> str:
        name = self._names.get(user_id, str(user_id))
        return f'<a href="tg://user?id={user_id}">{escape(name)}</a>'
