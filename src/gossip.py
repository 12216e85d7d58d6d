import random
from collections.abc import Iterable, Sequence, Set
from dataclasses import dataclass, field

from maelstrom import Message, MessageBody, Node


@dataclass(kw_only=True)
class GossipMessageBody(MessageBody):
    type: str = "gossip"
    seen: list[int]


@dataclass
class BroadcastState:
    messages: list[int] = field(default_factory=list)
    known: dict[str, set[int]] = field(default_factory=dict)
    neighbors: list[str] = field(default_factory=list)
    rng: random.Random = field(default_factory=random.Random)
    _seen: set[int] = field(default_factory=set, repr=False)

    def add(self, value: int) -> bool:
        """Append value unless already seen. Returns True if it was new."""
        if value in self._seen:
            return False
        self._seen.add(value)
        self.messages.append(value)
        return True

    def merge(self, values: Iterable[int]) -> int:
        return sum(self.add(value) for value in values)

    def mark_known(self, peer: str, values: Iterable[int]):
        self.known.setdefault(peer, set()).update(values)

    def __contains__(self, value: int) -> bool:
        return value in self._seen


def resend_probability(total: int, cap: int) -> float:
    """
    Chance of resending each value a neighbor is believed to have.

    With ``total`` values this keeps the expected number of resends at or
    below ``cap`` no matter how many values have been broadcast.
    """
    if total == 0:
        return 0.0
    return min(cap, total) / total


def select_values(
    messages: Sequence[int], known: Set[int], rng: random.Random, cap: int
) -> set[int]:
    """Values the neighbor is not known to have plus a random sample of the rest."""
    p = resend_probability(len(messages), cap)
    unknown = {m for m in messages if m not in known}
    resend = {m for m in messages if m in known and rng.random() < p}
    return unknown | resend


def gossip_round(node: Node[BroadcastState]):
    state = node.state
    cap = node.settings.gossip.resend_cap
    for neighbor in state.neighbors:
        known = state.known.setdefault(neighbor, set())
        will_send = select_values(state.messages, known, state.rng, cap)
        if not will_send:
            continue
        node.send(neighbor, GossipMessageBody(seen=sorted(will_send)))


def handle_gossip(node: Node[BroadcastState], gossip_msg: Message[GossipMessageBody]):
    seen = gossip_msg.body.seen
    added = node.state.merge(seen)
    # The sender has these values, so they need not be pushed back to it
    node.state.mark_known(gossip_msg.src, seen)
    if added:
        node.trace(f"Learned {added} values from {gossip_msg.src}")
