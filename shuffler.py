# shuffler.py: раздача ролей "играешь за ..." одной цепочкой

import logging
import random
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)

MIN_PARTICIPANTS = 3
DEFAULT_MAX_ATTEMPTS = 200

Pair = Tuple[Hashable, Hashable]


class ShuffleError(Exception):
    """Base class for everything shuffle_people refuses to do."""


class TooFewParticipants(ShuffleError):
    def __init__(self, count: int):
        self.count = count
        super().__init__(f"Need at least {MIN_PARTICIPANTS} participants, got {count}")


class DuplicateParticipant(ShuffleError):
    def __init__(self, participant):
        self.participant = participant
        super().__init__(f"Participant {participant} is listed more than once")


class TooManyExclusions(ShuffleError):
    def __init__(self, exclusions: int, participants: int):
        self.exclusions = exclusions
        self.participants = participants
        super().__init__(f"{exclusions} excluded pairs for {participants} participants")


class ExclusionsUnsatisfiable(ShuffleError):
    def __init__(self, participants: int):
        self.participants = participants
        super().__init__(f"No single cycle over {participants} participants avoids the excluded pairs")


def make_cycle(order: Sequence) -> List[Pair]:
    # каждый играет за следующего, последний за первого
    return [(order[i], order[(i + 1) % len(order)]) for i in range(len(order))]


def _search_cycle(players: List, avoid: Set[Pair], rng) -> Optional[List[Pair]]:
    """Backtracking search for a Hamiltonian cycle over the allowed edges.

    Exhaustive: returns None only when no valid cycle exists. A branch is
    dropped as soon as some unvisited player (or the start, which closes the
    cycle) has no possible predecessor left, and a player whose only
    remaining predecessor is the current node is taken next.
    """
    allowed: Dict = {
        p: [q for q in players if q != p and (p, q) not in avoid]
        for p in players
    }
    if any(not targets for targets in allowed.values()):
        return None
    sources: Dict = {q: set() for q in players}
    for p, targets in allowed.items():
        for q in targets:
            sources[q].add(p)
    if any(not preds for preds in sources.values()):
        return None

    start = players[0]
    path = [start]
    used = {start}

    def feasible(last, remaining: Set) -> bool:
        if not remaining:
            return (last, start) not in avoid
        if not sources[start] & remaining:
            return False
        open_ = remaining | {last}
        return all(sources[r] & open_ for r in remaining)

    def extend(node) -> bool:
        remaining = set(players) - used
        if not remaining:
            return (node, start) not in avoid
        open_ = remaining | {node}
        forced = [q for q in remaining if sources[q] & open_ == {node}]
        if len(forced) > 1:
            return False
        if forced:
            options = [q for q in allowed[node] if q == forced[0]]
        else:
            options = [q for q in allowed[node] if q not in used]
            rng.shuffle(options)
        for nxt in options:
            if not feasible(nxt, remaining - {nxt}):
                continue
            path.append(nxt)
            used.add(nxt)
            if extend(nxt):
                return True
            used.remove(nxt)
            path.pop()
        return False

    if not feasible(start, set(players) - used) or not extend(start):
        return None
    return make_cycle(path)


def shuffle_people(
    people: Sequence,
    avoid: Iterable[Pair] = (),
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    rng: Optional[random.Random] = None,
) -> List[Pair]:
    """Assign everyone a target so the assignment forms one cycle.

    Pairs come back in generation order: ``pairs[i][1] == pairs[i + 1][0]``.
    No pair from ``avoid`` is ever returned. Random cycles are tried first;
    after ``max_attempts`` rejections the cycle is searched for directly, so
    the call always ends with a cycle or ``ExclusionsUnsatisfiable``.
    """
    rng = rng or random
    if len(people) < MIN_PARTICIPANTS:
        raise TooFewParticipants(len(people))

    players = sorted(people)
    for a, b in zip(players, players[1:]):
        if a == b:
            raise DuplicateParticipant(a)

    avoid_set = set(avoid)
    if len(avoid_set) > len(players):
        raise TooManyExclusions(len(avoid_set), len(players))

    for _ in range(max_attempts):
        rng.shuffle(players)
        pairs = make_cycle(players)
        if not any(pair in avoid_set for pair in pairs):
            return pairs

    logger.info(
        "Random cycles kept hitting excluded pairs, searching directly (players=%d, excluded=%d)",
        len(players), len(avoid_set),
    )
    pairs = _search_cycle(players, avoid_set, rng)
    if pairs is None:
        raise ExclusionsUnsatisfiable(len(players))
    return pairs
