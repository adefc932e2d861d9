"""动作令牌编解码

令牌格式: v1.<base64url(JSON 结构)>.<base64url(HMAC-SHA256)>

令牌本身携带动作类型和载荷，服务端缓存丢失时仍可还原；
签名保证客户端无法篡改载荷，签发时间用于过期判断。
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Optional, Callable

from pydantic import ValidationError

from waiter_engine.core.types import ActionType
from waiter_engine.models.action import PendingAction, parse_payload
from waiter_engine.infrastructure.exceptions import InvalidActionTokenError, ExpiredActionTokenError

logger = logging.getLogger(__name__)

TOKEN_VERSION = "v1"


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class ActionTokenCodec:
    """签名令牌编解码器"""

    def __init__(self, secret: str, ttl_seconds: int = 900, clock: Callable[[], float] = time.time):
        if not secret:
            raise ValueError("action token secret must not be empty")
        self._key = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _sign(self, body: str) -> str:
        digest = hmac.new(self._key, f"{TOKEN_VERSION}.{body}".encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def encode(self, action: PendingAction) -> str:
        """把动作编码为令牌（不含 confirmation_message 以外的展示信息）"""
        body = {
            "t": action.type.value,
            "p": action.payload.model_dump(mode="json"),
            "r": action.restaurant_id,
            "n": action.table_number,
            "m": action.confirmation_message,
            "c": round(action.created_at, 3),
        }
        encoded = _b64encode(json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8"))
        return f"{TOKEN_VERSION}.{encoded}.{self._sign(encoded)}"

    def decode(self, token: str, now: Optional[float] = None) -> PendingAction:
        """从令牌还原动作

        Raises:
            InvalidActionTokenError: 格式错误、签名不符或载荷不合法
            ExpiredActionTokenError: 超过有效期
        """
        parts = (token or "").split(".")
        if len(parts) != 3 or parts[0] != TOKEN_VERSION:
            raise InvalidActionTokenError()

        _, encoded, signature = parts
        if not hmac.compare_digest(signature, self._sign(encoded)):
            logger.warning("动作令牌签名校验失败")
            raise InvalidActionTokenError("Action token signature does not match", reason="signature")

        try:
            body = json.loads(_b64decode(encoded))
            action_type = ActionType(body["t"])
            payload = parse_payload(action_type, body["p"])
            created_at = float(body["c"])
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            # 签名正确但载荷不合法，说明是服务端版本不兼容而非篡改
            raise InvalidActionTokenError(f"Action token payload is invalid: {type(e).__name__}")

        self.check_age(created_at, now)

        return PendingAction(
            id=token,
            type=action_type,
            payload=payload,
            confirmation_message=body.get("m", ""),
            restaurant_id=body["r"],
            table_number=int(body["n"]),
            requires_confirmation=action_type.requires_confirmation,
            created_at=created_at,
        )

    def check_age(self, created_at: float, now: Optional[float] = None) -> None:
        """超过有效期则抛出 ExpiredActionTokenError（缓存命中时同样适用）"""
        age = (now if now is not None else self._clock()) - created_at
        if age > self.ttl_seconds:
            raise ExpiredActionTokenError(age)

    def issue(self, action: PendingAction) -> PendingAction:
        """签发令牌并写回 action.id"""
        action.id = self.encode(action)
        return action
