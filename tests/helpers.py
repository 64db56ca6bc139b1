"""Test doubles shared across test modules."""

import asyncio
from typing import List, Optional

from licensehub.exceptions import TransportError
from licensehub.protocol.messages import Message, MessageType
from licensehub.server.session import ClientSession

ALICE_KEY = "LICS-AAAA-BBBB-CCCCC"
BOB_KEY = "LICS-BBBB-CCCC-DDDDD"
CAROL_KEY = "LICS-CCCC-DDDD-EEEEE"


class FakeConnection:
    """Stands in for LineConnection; records what the server sends."""

    def __init__(self, ip: str = "127.0.0.1", port: int = 50000,
                 fail_send: bool = False):
        self.ip = ip
        self.port = port
        self.fail_send = fail_send
        self.sent: List[Message] = []
        self.closed = False
        self.released: Optional[asyncio.Event] = None
        self.bytes_sent = 0
        self.bytes_received = 0

    @property
    def remote_address(self):
        return (self.ip, self.port)

    @property
    def is_closed(self) -> bool:
        return self.closed

    def hold(self) -> asyncio.Event:
        """Block sends, like a peer that stopped reading, until the event is set."""
        self.released = asyncio.Event()
        return self.released

    async def send(self, message: Message):
        if self.closed or self.fail_send:
            raise TransportError("Connection closed")
        if self.released is not None:
            await self.released.wait()
        self.sent.append(message)

    async def receive(self, timeout: Optional[float] = None):
        return None

    async def close(self):
        self.closed = True

    def of_type(self, msg_type: MessageType) -> List[Message]:
        return [m for m in self.sent if m.type == msg_type]


def make_session(port: int = 50000, close_timeout: float = 5.0) -> ClientSession:
    return ClientSession(FakeConnection(port=port), close_timeout=close_timeout)


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02):
    """Poll predicate until it is true or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
