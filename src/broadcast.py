#!/usr/bin/env python

import random
from dataclasses import dataclass
from maelstrom import Node, Message, MessageBody, ProtocolError, ignore_reply
from gossip import BroadcastState, GossipMessageBody, gossip_round, handle_gossip
from settings import AppSettings


@dataclass(kw_only=True)
class BroadcastMessageBody(MessageBody):
    type: str = 'broadcast'
    message: int

@dataclass(kw_only=True)
class BroadcastReplyMessageBody(MessageBody):
    type: str = 'broadcast_ok'

@dataclass(kw_only=True)
class ReadMessageBody(MessageBody):
    type: str = 'read'

@dataclass(kw_only=True)
class ReadReplyMessageBody(MessageBody):
    type: str = 'read_ok'
    messages: list[int]

@dataclass(kw_only=True)
class TopologyMessageBody(MessageBody):
    type: str = 'topology'
    topology: dict[str, list[str]]

@dataclass(kw_only=True)
class TopologyReplyMessageBody(MessageBody):
    type: str = 'topology_ok'

"""
Values are pushed to neighbors on a timer instead of per broadcast. Each node
tracks which values every neighbor is known to hold and only pushes the rest,
plus a small random sample of known values in case a gossip message was lost.
"""

def init_broadcast_state(node: Node[BroadcastState]):
    node.state.known = {node_id: set() for node_id in node.node_ids}
    node.state.neighbors = []

def handle_broadcast(node: Node[BroadcastState], broadcast_msg: Message[BroadcastMessageBody]):
    value = broadcast_msg.body.message
    node.state.add(value)
    node.state.mark_known(node.id, [value])
    node.reply(broadcast_msg, BroadcastReplyMessageBody())

def handle_read(node: Node[BroadcastState], read_msg: Message[ReadMessageBody]):
    read_reply = ReadReplyMessageBody(messages=list(node.state.messages))
    node.reply(read_msg, read_reply)

def handle_topology(node: Node[BroadcastState], topology_msg: Message[TopologyMessageBody]):
    try:
        neighbors = topology_msg.body.topology[node.id]
    except KeyError:
        raise ProtocolError(f'Topology has no entry for node {node.id}: {topology_msg}') from None
    node.state.neighbors = list(neighbors)
    node.log(f'Neighbors of {node.id}: {node.state.neighbors}')
    node.reply(topology_msg, TopologyReplyMessageBody())

def create_node(settings: AppSettings | None = None,
                rng: random.Random | None = None) -> Node[BroadcastState]:
    state = BroadcastState(rng=rng) if rng is not None else BroadcastState()
    node = Node(state, settings)
    node.on_init(init_broadcast_state)
    node.handler(BroadcastMessageBody)(handle_broadcast)
    node.handler(ReadMessageBody)(handle_read)
    node.handler(TopologyMessageBody)(handle_topology)
    node.handler(GossipMessageBody)(handle_gossip)
    for reply_type in (BroadcastReplyMessageBody, ReadReplyMessageBody, TopologyReplyMessageBody):
        node.handler(reply_type)(ignore_reply)
    node.ticker(gossip_round)
    return node

def main():
    create_node().run()

if __name__ == '__main__':
    main()
