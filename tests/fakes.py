"""
In-memory stand-ins for WebSocket connections and the push collaborator.
"""


class FakeConnection:
    """Stands in for a WebSocket: records every frame sent to it."""

    def __init__(self):
        self.frames = []
        self.close_code = None

    async def send_json(self, data):
        self.frames.append(data)

    async def close(self, code: int = 1000, reason: str = None):
        self.close_code = code

    def payloads(self, event: str) -> list:
        return [frame["data"] for frame in self.frames if frame["event"] == event]

    def events(self) -> list:
        return [frame["event"] for frame in self.frames]


class BrokenConnection(FakeConnection):
    """A connection whose peer has gone away."""

    async def send_json(self, data):
        raise ConnectionResetError("peer closed")


class FakePushNotifier:
    """Records push jobs instead of publishing them."""

    def __init__(self):
        self.calls = []

    def notify(self, tokens, title, body, data):
        self.calls.append({"tokens": sorted(tokens), "title": title, "body": body, "data": data})

