import asyncio
import json
import signal
import sys
from collections.abc import Callable
from dataclasses import dataclass, asdict, replace
from itertools import count
from typing import Any, Generic, Protocol, TypeVar

from settings import AppSettings, get_settings


class ProtocolError(RuntimeError):
    """The node received a message it cannot act on in its current state."""


class DeserializationError(ValueError):
    """An input line is not a valid envelope."""


@dataclass(kw_only=True)
class MessageBody:
    type: str
    msg_id: int | None = None
    in_reply_to: int | None = None


MessageBodyT = TypeVar("MessageBodyT", bound=MessageBody, covariant=True)


@dataclass(frozen=True)
class Message(Generic[MessageBodyT]):
    src: str
    dest: str
    body: MessageBodyT

    @classmethod
    def from_dict(cls, body_factory: type[MessageBody], data_dict: dict[str, Any]):
        """
        Usage: Message[SubclassMessageBody].from_dict(SubclassMessageBody, data_dict)
        """
        body = body_factory(**data_dict["body"])
        return cls(data_dict["src"], data_dict["dest"], body)

    @classmethod
    def from_json(cls, body_factory: type[MessageBody], data: str | bytes):
        """
        Usage: Message[SubclassMessageBody].from_json(SubclassMessageBody, data)
        """
        data_dict = json.loads(data)
        return cls.from_dict(body_factory, data_dict)

    def to_json(self) -> str:
        body = {k: v for k, v in asdict(self.body).items() if v is not None}
        return json.dumps({"src": self.src, "dest": self.dest, "body": body})


@dataclass(kw_only=True)
class InitMessageBody(MessageBody):
    type: str = "init"
    node_id: str
    node_ids: list[str]


@dataclass(kw_only=True)
class InitReplyMessageBody(MessageBody):
    type: str = "init_ok"


@dataclass(frozen=True)
class Tick:
    """Internal timer event, never sent over the wire."""


class _EndOfInput:
    pass


_END_OF_INPUT = _EndOfInput()

# Gossip lines can exceed the 64 KiB asyncio default
MAX_LINE_BYTES = 2**26

Event = Message[Any] | Tick

StateT = TypeVar("StateT")

MessageHandler = Callable[["Node[Any]", Message[Any]], None]
NodeCallback = Callable[["Node[Any]"], None]


class Writer(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


class Node(Generic[StateT]):
    """
    A Maelstrom node whose handlers run one event at a time.

    Inbound messages and timer ticks are produced by separate tasks and merged
    into a single queue. One consumer pops events and calls the synchronous
    handler for each, so handlers own ``state`` without any locking. Messages
    sent by a handler are buffered and written in order once it returns.
    """

    def __init__(self, state: StateT, settings: AppSettings | None = None):
        self.id: str | None = None
        self.node_ids: list[str] = []
        self.state = state
        self.settings = settings if settings is not None else get_settings()
        self.message_counter = count()
        self._message_constructors: dict[
            str, Callable[[dict[str, Any]], Message[Any]]
        ] = {}
        self._handlers: dict[str, MessageHandler] = {}
        self._init_callbacks: list[NodeCallback] = []
        self._tick_handler: NodeCallback | None = None
        self._outbox: list[Message[Any]] = []
        self._events: asyncio.Queue[Event | _EndOfInput] | None = None
        self._task_group: asyncio.TaskGroup | None = None
        self._ticker: asyncio.Task[None] | None = None
        self._tick_pending = False
        self._register_init()

    def register_message_type(self, msg_type: type[MessageBody]):
        if msg_type.type in self._message_constructors:
            raise ValueError(f"Message type '{msg_type.type}' is already registered")
        self._message_constructors[msg_type.type] = lambda data_dict: Message[
            MessageBody
        ].from_dict(msg_type, data_dict)

    ### Decorators for handler registration
    def handler(self, msg_type: type[MessageBody]):
        def wrapper(handler_func: MessageHandler):
            self.register_message_type(msg_type)
            self._handlers[msg_type.type] = handler_func
            return handler_func

        return wrapper

    def on_init(self, callback: NodeCallback):
        """Run ``callback(node)`` once the node knows its id, before init_ok is sent."""
        self._init_callbacks.append(callback)
        return callback

    def ticker(self, callback: NodeCallback):
        if self._tick_handler is not None:
            raise ValueError("A tick handler is already registered")
        self._tick_handler = callback
        return callback

    ### Public methods
    @property
    def initialized(self) -> bool:
        return self.id is not None

    def run(self):
        asyncio.run(self._run())

    def log(self, log_msg: str):
        print(log_msg, file=sys.stderr, flush=True)

    def trace(self, log_msg: str):
        if self.settings.verbose:
            self.log(log_msg)

    def send(self, dest: str, message_body: MessageBody):
        if self.id is None:
            raise ProtocolError("Cannot send before the node is initialized")
        self._outbox.append(Message(src=self.id, dest=dest, body=message_body))

    def reply(self, original_msg: Message[MessageBodyT], reply_body: MessageBody):
        reply_body = replace(
            reply_body,
            msg_id=next(self.message_counter),
            in_reply_to=original_msg.body.msg_id,
        )
        self.send(original_msg.src, reply_body)

    def decode(self, line: str | bytes) -> Message[Any]:
        try:
            msg_obj = json.loads(line)
            msg_type = msg_obj["body"]["type"]
            constructor = self._message_constructors[msg_type]
            return constructor(msg_obj)
        except (ValueError, KeyError, TypeError) as e:
            raise DeserializationError(f"Could not decode message {line!r}") from e

    def step(self, event: Event) -> list[Message[Any]]:
        """Apply a single event to the node and return the messages it produced."""
        self._outbox = []
        match event:
            case Tick():
                if self._tick_handler is not None:
                    self._tick_handler(self)
            case Message(body=InitMessageBody()):
                self._handle_init(event)
            case Message():
                if not self.initialized:
                    raise ProtocolError(
                        f"Received '{event.body.type}' before init: {event}"
                    )
                self._handlers[event.body.type](self, event)
        outbox, self._outbox = self._outbox, []
        return outbox

    async def serve(self, reader: asyncio.StreamReader, writer: Writer):
        """
        Process events until the reader is exhausted.

        Every event queued before end of input is handled, then the ticker is
        stopped. Decode, protocol and I/O errors end the node and are raised
        in an ExceptionGroup.
        """
        self._events = asyncio.Queue()
        self._tick_pending = False
        try:
            async with asyncio.TaskGroup() as tg:
                self._task_group = tg
                tg.create_task(self._read_stream(reader))
                await self._consume(writer)
                self._stop_ticker()
        finally:
            self._task_group = None
            self._ticker = None

    ### Event sources
    async def _read_stream(self, reader: asyncio.StreamReader):
        assert self._events is not None
        while line := await reader.readline():
            line = line.strip()
            if not line:
                continue
            await self._events.put(self.decode(line))
        await self._events.put(_END_OF_INPUT)

    async def _tick(self, interval: float):
        assert self._events is not None
        while True:
            await asyncio.sleep(interval)
            # At most one tick waits in the queue while the consumer is busy
            if self._tick_pending:
                continue
            self._tick_pending = True
            await self._events.put(Tick())

    def _start_ticker(self):
        # Nodes driven directly through step() have no event loop to tick on
        if self._task_group is None or self._tick_handler is None:
            return
        self._ticker = self._task_group.create_task(
            self._tick(self.settings.gossip.interval_s)
        )

    def _stop_ticker(self):
        if self._ticker is not None:
            self._ticker.cancel()

    ### Event consumer
    async def _consume(self, writer: Writer):
        assert self._events is not None
        while True:
            event = await self._events.get()
            if isinstance(event, _EndOfInput):
                self.trace("End of input, shutting down")
                return
            if isinstance(event, Tick):
                self._tick_pending = False
            elif isinstance(event, Message):
                self.trace(f"Received {event}")
            for message in self.step(event):
                writer.write((message.to_json() + "\n").encode())
                await writer.drain()

    async def _run(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_sig)
        reader = new_stream_reader()
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)

        w_transport, w_protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, sys.stdout
        )
        writer = asyncio.StreamWriter(w_transport, w_protocol, None, loop)
        try:
            await self.serve(reader, writer)
        except asyncio.CancelledError:
            self.log("Node killed")

    def _handle_sig(self):
        tasks = asyncio.all_tasks()
        for task in tasks:
            task.cancel()

    ### Init
    def _register_init(self):
        self.register_message_type(InitMessageBody)
        self.handler(InitReplyMessageBody)(ignore_reply)

    def _handle_init(self, init_msg: Message[InitMessageBody]):
        if self.initialized:
            raise ProtocolError(f"Node {self.id} received a second init: {init_msg}")
        self.id = init_msg.body.node_id
        self.node_ids = list(init_msg.body.node_ids)
        for callback in self._init_callbacks:
            callback(self)
        self._start_ticker()
        self.log(f"Initialized node {self.id}")
        self.reply(init_msg, InitReplyMessageBody())


def new_stream_reader() -> asyncio.StreamReader:
    return asyncio.StreamReader(limit=MAX_LINE_BYTES)


def ignore_reply(node: Node[Any], msg: Message[Any]):
    """Replies to messages this node never sends as requests are dropped."""
    node.trace(f"Ignoring {msg.body.type} from {msg.src}")
