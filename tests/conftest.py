import asyncio

import pytest

from voiceless.config import TargetServer, TargetUser
from voiceless.core.state import GuildRegistry
from voiceless.services.voice import VoiceConnectionManager

GUILD_A = 100
GUILD_B = 200


class FakeHandle:
    def __init__(self, channel_id: int):
        self.channel_id = channel_id


class FakeSink:
    def __init__(self):
        self.packets: list[bytes] = []

    async def write(self, packet: bytes) -> None:
        self.packets.append(packet)


class FakeTransport:
    """Records every transport call in order."""

    def __init__(self, *, fail_close: bool = False, fail_join: bool = False, join_delay: float = 0.0):
        self.calls: list[tuple] = []
        self.fail_close = fail_close
        self.fail_join = fail_join
        self.join_delay = join_delay
        self.active_joins = 0
        self.max_active_joins = 0
        self.sinks: list[FakeSink] = []

    async def join_voice(self, guild_id: int, channel_id: int) -> FakeHandle:
        self.calls.append(("join", guild_id, channel_id))
        self.active_joins += 1
        self.max_active_joins = max(self.max_active_joins, self.active_joins)
        try:
            if self.join_delay:
                await asyncio.sleep(self.join_delay)
            if self.fail_join:
                raise RuntimeError("voice server unreachable")
            return FakeHandle(channel_id)
        finally:
            self.active_joins -= 1

    async def close_voice(self, handle: FakeHandle) -> None:
        self.calls.append(("close", handle.channel_id))
        if self.fail_close:
            raise RuntimeError("socket already gone")

    async def send_voice_state_leave(self, guild_id: int) -> None:
        self.calls.append(("leave", guild_id))

    def create_output_sink(self, handle: FakeHandle) -> FakeSink:
        sink = FakeSink()
        self.sinks.append(sink)
        return sink


@pytest.fixture
def targets():
    return (
        TargetUser(user=1, voice="alloy", servers=(TargetServer(GUILD_A, (10, 11)),)),
        TargetUser(user=2, voice="echo", servers=(TargetServer(GUILD_A, (10,)),)),
        TargetUser(user=3, voice="nova", servers=(TargetServer(GUILD_B, (20,)),)),
    )


@pytest.fixture
def registry(targets):
    return GuildRegistry(targets)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def connections(registry, transport):
    return VoiceConnectionManager(registry, transport)
