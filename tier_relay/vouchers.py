# -*- coding: utf-8 -*-
"""
tier_relay/vouchers.py

목적:
- 저장소에 쓰지 않고 티어 견적을 발급하는 "서명 바우처"를 제공한다.
- 바우처는 {tier, nonce, exp} 를 담고 HMAC-SHA256 으로 서명된다.
- CreateOrder(voucher) 는 서명/만료를 검증한 뒤 tier 를 꺼내 일반 주문 생성과 동일하게 진행한다.

포맷(문자열):
  base64url(json{tier, nonce, exp}) + "." + base64url(sig)

주의:
- 운영에서는 VOUCHER_SECRET 을 반드시 설정해야 한다.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Callable, Dict

from .utils import InvalidSignature, VoucherExpired

DEFAULT_TTL_SECONDS = 3600


def _b64url(data: bytes) -> str:
    """base64url(= URL 안전) 인코딩"""
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64url_decode(s: str) -> bytes:
    """base64url 디코딩(패딩 자동 보정)"""
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("utf-8"))


class VoucherSigner:
    """바우처 발급/검증기. secret 과 시계(clock)는 주입 가능."""

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("voucher secret must not be empty")
        self._secret = hashlib.sha256(str(secret).encode("utf-8")).digest()
        self.ttl_seconds = int(ttl_seconds)
        self._clock = clock

    def _sign(self, payload_b64: str) -> str:
        sig = hmac.new(self._secret, payload_b64.encode("utf-8"), hashlib.sha256).digest()
        return _b64url(sig)

    def issue(self, tier: str) -> Dict[str, Any]:
        """바우처 발급. 반환: {voucher, tier, nonce, exp}"""
        exp = int(self._clock()) + self.ttl_seconds
        payload = {"tier": tier, "nonce": secrets.token_hex(8), "exp": exp}
        payload_b64 = _b64url(
            json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        )
        return {"voucher": f"{payload_b64}.{self._sign(payload_b64)}", **payload}

    def verify(self, voucher: str) -> Dict[str, Any]:
        """
        바우처를 검증하고 payload 를 반환한다.
        실패 시 InvalidSignature / VoucherExpired 를 발생시킨다.
        """
        if not isinstance(voucher, str) or voucher.count(".") != 1:
            raise InvalidSignature("invalid voucher format")
        payload_b64, sig_b64 = voucher.split(".", 1)

        # 서명 검증(타이밍 공격 방지용 compare_digest, 비ASCII 입력도 bytes 로 비교)
        expected = self._sign(payload_b64).encode("utf-8")
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8")):
            raise InvalidSignature("bad voucher signature")

        try:
            payload = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidSignature("bad voucher payload", original_exception=e) from e
        if not isinstance(payload, dict) or not isinstance(payload.get("tier"), str):
            raise InvalidSignature("bad voucher payload")

        try:
            exp = int(payload.get("exp", 0))
        except (TypeError, ValueError):
            raise InvalidSignature("bad voucher expiry") from None
        if exp <= int(self._clock()):
            raise VoucherExpired("voucher expired, request a new one")
        return payload
