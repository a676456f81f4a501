# -*- coding: utf-8 -*-
"""
tier_relay/catalog.py

티어 카탈로그: 티어 키 -> (가격, 지급 크레딧).
주문 생성 시점에 값이 주문에 복사되므로, 이후 카탈로그가 바뀌어도 기존 주문은 영향이 없다.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class Tier:
    key: str
    price: float
    credits: int

    def to_dict(self) -> Dict[str, object]:
        return {"tier": self.key, "price": self.price, "credits": self.credits}


DEFAULT_TIERS: Dict[str, Tier] = {
    "tier1": Tier("tier1", 10, 100),
    "tier2": Tier("tier2", 20, 300),
    "tier3": Tier("tier3", 30, 500),
}


class TierCatalog:
    """고정된 티어 목록. 조회 전용."""

    def __init__(self, tiers: Optional[Dict[str, Tier]] = None):
        self._tiers = dict(tiers if tiers is not None else DEFAULT_TIERS)

    def __contains__(self, key) -> bool:
        return isinstance(key, str) and key in self._tiers

    def __len__(self) -> int:
        return len(self._tiers)

    def get(self, key) -> Optional[Tier]:
        if not isinstance(key, str):
            return None
        return self._tiers.get(key)

    def keys(self):
        return list(self._tiers.keys())

    def to_dict(self) -> Dict[str, Dict[str, object]]:
        return {k: {"price": t.price, "credits": t.credits} for k, t in self._tiers.items()}

    @classmethod
    def from_json(cls, raw: str) -> "TierCatalog":
        """'{"tier1": {"price": 10, "credits": 100}, ...}' 형식을 파싱한다. 비어 있으면 기본 카탈로그."""
        if not raw or not raw.strip():
            return cls()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"TIERS_JSON is not valid JSON: {e}") from e
        if not isinstance(data, dict) or not data:
            raise ValueError("TIERS_JSON must be a non-empty object")

        tiers: Dict[str, Tier] = {}
        for key, spec in data.items():
            if not isinstance(spec, dict) or "price" not in spec or "credits" not in spec:
                raise ValueError(f"tier '{key}' needs 'price' and 'credits'")
            tiers[str(key)] = Tier(str(key), spec["price"], int(spec["credits"]))
        return cls(tiers)
