import random
import statistics

import pytest

from gossip import BroadcastState, resend_probability, select_values
from simulation import Network, grid, line


def test_state_add_is_idempotent():
    state = BroadcastState()
    assert state.add(3)
    assert not state.add(3)
    assert state.merge([4, 3, 4, 5]) == 2
    assert state.messages == [3, 4, 5]
    assert 4 in state


@pytest.mark.parametrize(
    "total, cap, expected",
    [
        (0, 10, 0.0),
        (1, 10, 1.0),
        (10, 10, 1.0),
        (20, 10, 0.5),
        (1000, 10, 0.01),
        (50, 0, 0.0),
    ],
)
def test_resend_probability(total: int, cap: int, expected: float):
    assert resend_probability(total, cap) == pytest.approx(expected)


def test_select_values_sends_everything_unknown():
    rng = random.Random(1)
    messages = list(range(100))
    known = set(range(50))
    selected = select_values(messages, known, rng, cap=0)
    assert selected == set(range(50, 100))


def test_select_values_empty():
    assert select_values([], set(), random.Random(1), cap=10) == set()


def test_resend_sample_is_bounded():
    rng = random.Random(42)
    messages = list(range(1000))
    known = set(messages)
    sizes = [len(select_values(messages, known, rng, cap=10)) for _ in range(500)]
    assert 9.5 < statistics.mean(sizes) < 10.5


def test_small_sets_are_always_resent():
    rng = random.Random(7)
    messages = [1, 2, 3]
    assert select_values(messages, set(messages), rng, cap=10) == {1, 2, 3}


def test_three_node_example():
    network = Network({"A": ["B"], "B": ["A", "C"], "C": ["B"]})
    network.broadcast("A", 5)
    assert network.read("C") == []
    for _ in range(2):
        network.tick()
    assert network.read("C") == [5]


def test_read_reflects_every_broadcast():
    network = Network(line(4))
    values = set()
    for i, node_id in enumerate(network.nodes):
        network.broadcast(node_id, i)
        network.broadcast(node_id, i)
        values.add(i)
    assert network.ticks_to_converge(values, max_ticks=10) is not None
    for node_id in network.nodes:
        assert sorted(network.read(node_id)) == sorted(values)


@pytest.mark.parametrize("width", [2, 3, 5])
def test_convergence_on_grid(width: int):
    network = Network(grid(width), seed=width)
    values = set(range(20))
    for value in values:
        network.broadcast(f"n{value % (width * width)}", value)
    # A value crosses at most one hop per tick
    ticks = network.ticks_to_converge(values, max_ticks=2 * (width - 1))
    assert ticks is not None


def ticks_on_lossy_line(drop_rate: float) -> int | None:
    network = Network(line(6), drop_rate=drop_rate, seed=3)
    values = set(range(30))
    for value in values:
        network.broadcast(f"n{value % 6}", value)
    ticks = network.ticks_to_converge(values, max_ticks=100)
    if drop_rate > 0:
        assert network.dropped > 0
    return ticks


@pytest.mark.parametrize("drop_rate", [0.1, 0.3, 0.5])
def test_convergence_with_packet_loss(drop_rate: float):
    lossless = ticks_on_lossy_line(0.0)
    assert lossless == 5
    ticks = ticks_on_lossy_line(drop_rate)
    assert ticks is not None
    # Each hop is retried every tick, so it takes 1 / (1 - drop_rate) ticks on average
    assert ticks <= 3 * lossless / (1 - drop_rate)


def test_known_values_stop_being_pushed():
    network = Network(line(3), seed=11)
    values = set(range(100))
    for value in values:
        network.broadcast("n0", value)
    assert network.ticks_to_converge(values, max_ticks=10) is not None
    for _ in range(150):
        network.tick()
    network.gossip_sizes.clear()
    for _ in range(20):
        network.tick()
    # Only the resend sample remains once every neighbor has echoed every value
    assert statistics.mean(network.gossip_sizes) < 20


def test_gossip_knowledge_is_keyed_by_sender():
    network = Network({"A": ["B"], "B": ["A"]})
    network.broadcast("A", 1)
    network.tick()
    b = network.nodes["B"].state
    assert b.known["A"] == {1}
    assert 1 not in b.known["B"]
