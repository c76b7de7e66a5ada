# parser.py: разбор команды /shuffle и упоминаний

import logging
import re
from dataclasses import dataclass, field
from typing import Collection, List, Mapping, Optional

logger = logging.getLogger(__name__)

SHUFFLE_COMMANDS = ("/shuffle", "/sh")
SHORTEST_COMMAND = min(len(c) for c in SHUFFLE_COMMANDS)

# text_mention в html_text выглядит как <a href="tg://user?id=123">Имя</a>;
# текст внутри любой ссылки упоминанием не считается
MENTION_RE = re.compile(
    r'<a\s[^>]*?href="tg://user\?id=(?P<id>\d+)"[^>]*>.*?</a>'
    r"|<a\s[^>]*>.*?</a>"
    r"|(?<![\w/@])@(?P<username>[A-Za-z0-9_]{5,32})",
    re.IGNORECASE | re.DOTALL,
)
# у ботов username обязан заканчиваться на "bot"
BOT_USERNAME_SUFFIX = "bot"


class ParseRejection(Exception):
    pass


class MessageTooShort(ParseRejection):
    pass


class NotARecognizedCommand(ParseRejection):
    pass


@dataclass
class ShuffleCommand:
    participants: List[int] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)


def _command_word(text: str) -> str:
    word = text.split(maxsplit=1)[0]
    # /shuffle@SomeBot -> /shuffle
    return word.split("@", 1)[0].lower()


def parse_shuffle_command(
    text: str,
    usernames: Optional[Mapping[str, int]] = None,
    bots: Collection[int] = (),
) -> ShuffleCommand:
    """Extract participants from a ``/shuffle`` (or ``/sh``) message.

    ``text`` is the HTML rendering of the message. Mentions keep their order
    and duplicates are not removed. ``@username`` mentions are looked up in
    ``usernames`` (lower-cased keys); misses end up in ``unresolved``.
    Bot usernames and ids from ``bots`` are dropped.
    """
    text = (text or "").strip()
    if len(text) < SHORTEST_COMMAND:
        logger.debug("Message is too short (%d)", len(text))
        raise MessageTooShort(text)
    if _command_word(text) not in SHUFFLE_COMMANDS:
        raise NotARecognizedCommand(text[:32])

    usernames = usernames or {}
    command = ShuffleCommand()
    for match in MENTION_RE.finditer(text):
        if match.group("id"):
            user_id = int(match.group("id"))
        elif match.group("username"):
            username = match.group("username")
            if username.lower().endswith(BOT_USERNAME_SUFFIX):
                logger.debug("Skipping bot @%s", username)
                continue
            user_id = usernames.get(username.lower())
            if user_id is None:
                command.unresolved.append(username)
                continue
        else:
            continue
        if user_id in bots:
            logger.debug("Skipping bot %s", user_id)
            continue
        command.participants.append(user_id)

    logger.info("Got mentions: %s (unresolved: %s)", command.participants, command.unresolved)
    return command
