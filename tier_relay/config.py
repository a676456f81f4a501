# -*- coding: utf-8 -*-
"""
tier_relay/config.py

목적:
- .env / .env.local 과 환경변수에서 릴레이 설정을 읽어 Config 클래스로 제공한다.
- 관리자 비밀번호, 티어 카탈로그, 저장소 선택은 여기서만 읽고
  OrderLifecycle / payment_server 에는 생성 시점에 주입한다(전역 상태 금지).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

from .utils import get_logger

logger = get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[1]

for _cand in [PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"]:
    if _cand.exists():
        load_dotenv(dotenv_path=str(_cand), override=False)

DEV_ADMIN_PASSWORD = "DEV_ONLY_CHANGE_ME"
DEV_VOUCHER_SECRET = "DEV_ONLY_CHANGE_ME"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> list:
    raw = os.getenv(name, default)
    return [s.strip() for s in raw.split(",") if s.strip()]


class Config:
    # 관리자 비밀번호 (단일 공유 시크릿)
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD") or DEV_ADMIN_PASSWORD

    # 저장소 선택: memory | file | upstash | sql (비워두면 자동 선택)
    ORDER_STORE = os.getenv("ORDER_STORE", "").strip().lower()
    # 파일 저장소 경로
    DATA_DIR = os.getenv("DATA_DIR") or str(PROJECT_ROOT / "data")
    # SQL 저장소 URL
    DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{PROJECT_ROOT}/data/orders.db"

    # Upstash Redis REST (Vercel KV 이름도 허용)
    UPSTASH_URL = (
        os.getenv("UPSTASH_REDIS_REST_URL") or os.getenv("KV_REST_API_URL") or ""
    ).strip()
    UPSTASH_TOKEN = (
        os.getenv("UPSTASH_REDIS_REST_TOKEN") or os.getenv("KV_REST_API_TOKEN") or ""
    ).strip()
    UPSTASH_ORDERS_KEY = os.getenv("UPSTASH_ORDERS_KEY", "orders")

    # 주문 ID 형식: numeric(6자리 숫자) | alnum(5자리 영숫자)
    ORDER_ID_STYLE = os.getenv("ORDER_ID_STYLE", "numeric").strip().lower()
    # 주문 생성 방식: direct(티어 키) | voucher(서명 바우처)
    CREATION_MODE = os.getenv("CREATION_MODE", "direct").strip().lower()
    # pending -> user_confirmed 중간 상태 사용 여부
    ENABLE_USER_CONFIRM = _env_flag("ENABLE_USER_CONFIRM", True)

    # 바우처 서명 키 / 만료 시간(초)
    VOUCHER_SECRET = os.getenv("VOUCHER_SECRET") or DEV_VOUCHER_SECRET
    VOUCHER_TTL_SECONDS = int(os.getenv("VOUCHER_TTL_SECONDS", "3600"))

    # 티어 카탈로그 JSON (비워두면 기본 카탈로그)
    TIERS_JSON = os.getenv("TIERS_JSON", "")

    # 플러그인 로컬 개발 환경(SillyTavern) 기본 허용
    CORS_ALLOWED_ORIGINS = _env_list(
        "CORS_ALLOWED_ORIGINS", "http://127.0.0.1:8000,http://localhost:8000"
    )

    PAYMENT_PORT = int(os.getenv("PAYMENT_PORT", "5000"))
    LOG_FILE = os.getenv("LOG_FILE") or str(PROJECT_ROOT / "logs" / "tier_relay.log")

    @classmethod
    def validate(cls) -> list:
        """운영에 위험한 기본값을 찾아 경고 목록을 반환한다(크래시하지 않음)."""
        warnings = []
        if cls.ADMIN_PASSWORD == DEV_ADMIN_PASSWORD:
            warnings.append("ADMIN_PASSWORD")
        if cls.CREATION_MODE == "voucher" and cls.VOUCHER_SECRET == DEV_VOUCHER_SECRET:
            warnings.append("VOUCHER_SECRET")
        if cls.ORDER_STORE == "upstash" and not (cls.UPSTASH_URL and cls.UPSTASH_TOKEN):
            warnings.append("UPSTASH_REDIS_REST_URL/UPSTASH_REDIS_REST_TOKEN")
        if warnings:
            logger.warning(
                f"기본값 또는 누락된 설정이 있습니다: {', '.join(warnings)}. .env 파일을 확인해주세요."
            )
        return warnings
