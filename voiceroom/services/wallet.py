"""
voiceroom.services.wallet
~~~~~~~~~~~~~~~~~~~~~~~~~

外部钱包客户端 —— 送礼时的扣币 / 加钻石由钱包服务以事务方式完成。

- ``InMemoryWalletClient``：内存实现，开发 / 测试环境使用，自带礼物目录。
- ``HttpWalletClient``：基于 httpx 调用外部钱包 REST 服务。

调用失败统一抛出 ``DependencyError``（余额不足 / 礼物不存在除外），
事件路由据此回滚，不广播礼物事件。
"""
from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import asdict, dataclass

import httpx

from voiceroom.core.errors import DependencyError, GiftNotFound, InsufficientBalance
from voiceroom.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Gift:
    """礼物目录条目。"""

    gift_id: str
    name: str
    price_coins: int
    diamond_value: int
    animation_url: str | None = None


@dataclass(frozen=True)
class GiftReceipt:
    """一次送礼的交易回执。"""

    transaction_id: str
    gift_id: str
    gift_name: str
    sender_id: str
    receiver_id: str
    room_id: str
    quantity: int
    coins_spent: int
    diamonds_earned: int
    animation_url: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


DEFAULT_GIFTS: tuple[Gift, ...] = (
    Gift("rose", "Rose", price_coins=10, diamond_value=7),
    Gift("heart", "Heart", price_coins=100, diamond_value=70),
    Gift("crown", "Crown", price_coins=1_000, diamond_value=700),
    Gift("rocket", "Rocket", price_coins=10_000, diamond_value=7_000),
    Gift("castle", "Castle", price_coins=50_000, diamond_value=35_000),
)


class WalletClient(ABC):
    """钱包服务接口。"""

    @abstractmethod
    async def send_gift(
        self,
        sender_id: str,
        receiver_id: str,
        gift_id: str,
        quantity: int,
        room_id: str,
    ) -> GiftReceipt:
        """扣减送礼人金币、给收礼人加钻石，并返回交易回执。

        Raises:
            GiftNotFound: 礼物不存在。
            InsufficientBalance: 送礼人金币不足。
            DependencyError: 钱包服务不可用或返回异常。
        """

    async def aclose(self) -> None:
        """释放底层资源。"""


class InMemoryWalletClient(WalletClient):
    """内存钱包，余额与礼物目录都保存在进程内。"""

    def __init__(self, gifts: Iterable[Gift] | None = None, initial_coins: int = 0) -> None:
        self.gifts: dict[str, Gift] = {g.gift_id: g for g in (gifts or DEFAULT_GIFTS)}
        self.initial_coins = initial_coins
        self._coins: dict[str, int] = {}
        self._diamonds: dict[str, int] = {}

    def top_up(self, user_id: str, coins: int) -> int:
        """给用户充值金币，返回充值后余额。"""
        self._coins[user_id] = self.coins_of(user_id) + coins
        return self._coins[user_id]

    def coins_of(self, user_id: str) -> int:
        return self._coins.get(user_id, self.initial_coins)

    def diamonds_of(self, user_id: str) -> int:
        return self._diamonds.get(user_id, 0)

    async def send_gift(
        self,
        sender_id: str,
        receiver_id: str,
        gift_id: str,
        quantity: int,
        room_id: str,
    ) -> GiftReceipt:
        gift = self.gifts.get(gift_id)
        if gift is None:
            raise GiftNotFound(f"礼物 {gift_id} 不存在")

        cost = gift.price_coins * quantity
        balance = self.coins_of(sender_id)
        if balance < cost:
            raise InsufficientBalance(f"金币不足：需要 {cost}，当前 {balance}")

        earned = gift.diamond_value * quantity
        self._coins[sender_id] = balance - cost
        self._diamonds[receiver_id] = self.diamonds_of(receiver_id) + earned
        return GiftReceipt(
            transaction_id=uuid.uuid4().hex,
            gift_id=gift.gift_id,
            gift_name=gift.name,
            sender_id=sender_id,
            receiver_id=receiver_id,
            room_id=room_id,
            quantity=quantity,
            coins_spent=cost,
            diamonds_earned=earned,
            animation_url=gift.animation_url,
        )


class HttpWalletClient(WalletClient):
    """外部钱包 REST 服务客户端。

    调用 ``POST {base_url}/wallet/gifts/send``，请求带 ``Idempotency-Key``，
    钱包服务据此保证重试不会重复扣费。

    Attributes:
        base_url: 钱包服务地址。
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def send_gift(
        self,
        sender_id: str,
        receiver_id: str,
        gift_id: str,
        quantity: int,
        room_id: str,
    ) -> GiftReceipt:
        payload = {
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "gift_id": gift_id,
            "quantity": quantity,
            "room_id": room_id,
        }
        try:
            resp = await self._client.post(
                "/wallet/gifts/send",
                json=payload,
                headers={"Idempotency-Key": uuid.uuid4().hex},
            )
        except httpx.HTTPError as e:
            logger.error("钱包服务调用失败: %s", e, exc_info=True)
            raise DependencyError("钱包服务暂不可用") from e

        if resp.status_code == 404:
            raise GiftNotFound(f"礼物 {gift_id} 不存在")
        if resp.status_code in (402, 409):
            raise InsufficientBalance("金币不足")
        if resp.is_error:
            logger.error("钱包服务返回异常 | status=%d | body=%s", resp.status_code, resp.text[:200])
            raise DependencyError(f"钱包服务返回 {resp.status_code}")

        try:
            body = resp.json()
            data = body.get("data", body)
            return GiftReceipt(
                transaction_id=str(data["transaction_id"]),
                gift_id=data.get("gift_id", gift_id),
                gift_name=data.get("gift_name", gift_id),
                sender_id=sender_id,
                receiver_id=receiver_id,
                room_id=room_id,
                quantity=quantity,
                coins_spent=int(data["coins_spent"]),
                diamonds_earned=int(data["diamonds_earned"]),
                animation_url=data.get("animation_url"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise DependencyError("钱包服务返回格式异常") from e

    async def aclose(self) -> None:
        await self._client.aclose()
