"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 假时钟、按需组装的 ``RoomSystem``，以及读取
连接待发送队列的小工具。所有测试都不依赖网络和 MongoDB。
"""
from __future__ import annotations

import asyncio
import os
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from voiceroom.core.config import Settings  # noqa: E402
from voiceroom.schemas.events import OutboundEvent, OutboundEventType  # noqa: E402
from voiceroom.services.room_system import RoomSystem  # noqa: E402
from voiceroom.services.wallet import InMemoryWalletClient  # noqa: E402


class FakeClock:
    """可手动推进的单调时钟。"""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_system(clock: FakeClock | None = None, wallet: Any = None, **overrides: Any) -> RoomSystem:
    """按测试需要覆盖配置后组装一个 RoomSystem（不启动后台任务）。"""
    config = Settings(ENVIRONMENT="test", **overrides)
    return RoomSystem(
        config,
        wallet=wallet or InMemoryWalletClient(initial_coins=1_000),
        clock=clock or FakeClock(),
    )


def drain(outbox: asyncio.Queue) -> list[OutboundEvent]:
    """取出队列中当前所有事件（不等待）。"""
    events: list[OutboundEvent] = []
    while not outbox.empty():
        item = outbox.get_nowait()
        if item is not None:
            events.append(item)
    return events


def of_type(events: list[OutboundEvent], event_type: OutboundEventType) -> list[OutboundEvent]:
    return [e for e in events if e.event is event_type]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def system(clock: FakeClock) -> RoomSystem:
    return make_system(clock, ROOM_SEAT_COUNT=2)


@pytest.fixture
def wallet() -> InMemoryWalletClient:
    return InMemoryWalletClient(initial_coins=1_000)
