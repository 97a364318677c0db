import asyncio
import json

from websockets.exceptions import ConnectionClosed

from duet.client.initiator import TextDone


class FakeTransport:
    """In-memory stand-in for a websocket attached to the broker."""

    def __init__(self, fail_sends=False):
        self.sent = []
        self.open = True
        self.fail_sends = fail_sends
        self.closed_with = None

    @property
    def is_open(self):
        return self.open

    async def send_text(self, data):
        if self.fail_sends or not self.open:
            raise ConnectionError("socket gone")
        self.sent.append(json.loads(data))

    async def close(self, code=1000):
        self.open = False
        self.closed_with = code

    def types(self):
        return [m["type"] for m in self.sent]

    def last(self):
        return self.sent[-1]


class RecordingSpeaker:
    def __init__(self, hold=False):
        self.spoken = []
        self.stops = 0
        self.hold = hold
        self._stopped = asyncio.Event()

    def speak(self, text):
        self.spoken.append(text)
        self._stopped.clear()

    def stop(self):
        self.stops += 1
        self._stopped.set()

    async def wait_done(self):
        if self.hold:
            await self._stopped.wait()


class FakeChannel:
    """Scripted stand-in for an initiator client.

    ``script(text)`` returns the items for one turn: stream events are
    yielded, exceptions raised and ``asyncio.Event`` objects waited on.
    """

    def __init__(self, script=None, paired=True):
        self.is_paired = paired
        self.script = script or (lambda text: [TextDone(f"answer to {text}")])
        self.asks = []
        self.clears = []
        self.ends = []
        self.compacts = []
        self.active = 0
        self.max_active = 0

    async def ask_stream(self, text, session_id=None):
        self.asks.append((text, session_id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            for item in self.script(text):
                await asyncio.sleep(0)
                if isinstance(item, asyncio.Event):
                    await item.wait()
                elif isinstance(item, BaseException):
                    raise item
                else:
                    yield item
        finally:
            self.active -= 1

    async def send_session_clear(self, session_id):
        self.clears.append(session_id)

    async def send_session_end(self, session_id):
        self.ends.append(session_id)

    async def send_session_compact(self, session_id, summary):
        self.compacts.append((session_id, summary))


async def until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class MemorySocket:
    """Client websocket wired straight into an in-process ``RelayBroker``.

    Acts as the client's socket (``send``/``ping``/async iteration) and as
    the broker's transport (``send_text``/``close``/``is_open``).
    """

    def __init__(self, broker):
        self.broker = broker
        self.inbox = asyncio.Queue()
        self.closed = False
        self.peer = broker.connect(self)

    @property
    def is_open(self):
        return not self.closed

    async def send_text(self, data):
        if self.closed:
            raise ConnectionError("socket closed")
        self.inbox.put_nowait(data)

    async def send(self, data):
        if self.closed:
            raise ConnectionClosed(None, None)
        await self.broker.handle_frame(self.peer, data)

    async def ping(self):
        pong = asyncio.get_running_loop().create_future()
        pong.set_result(0.0)
        return pong

    async def close(self, code=1000):
        if self.closed:
            return
        self.closed = True
        self.inbox.put_nowait(None)
        # the broker may be closing us while holding a room lock
        asyncio.get_running_loop().create_task(self.broker.disconnect(self.peer))

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        while True:
            item = await self.inbox.get()
            if item is None:
                return
            yield item


class SilentSocket(MemorySocket):
    """A socket whose pings are never answered."""

    async def ping(self):
        return asyncio.get_running_loop().create_future()


def memory_connector(broker, sockets=None, socket_cls=MemorySocket):
    async def connect(url, **kwargs):
        ws = socket_cls(broker)
        if sockets is not None:
            sockets.append(ws)
        return ws
    return connect
