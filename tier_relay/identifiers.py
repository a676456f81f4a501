# -*- coding: utf-8 -*-
"""주문 ID 생성기. 충돌 확인/재시도는 저장소(add)와 OrderLifecycle 이 담당한다."""

import secrets
import string

NUMERIC = "numeric"  # 6자리 숫자, 10^6 공간
ALNUM = "alnum"  # 5자리 영숫자(36 기호), 약 6천만 공간

ID_STYLES = {
    NUMERIC: (string.digits, 6),
    ALNUM: (string.ascii_uppercase + string.digits, 5),
}


def new_order_id(style: str = NUMERIC) -> str:
    """order_id 생성."""
    try:
        alphabet, length = ID_STYLES[style]
    except KeyError:
        raise ValueError(f"unknown order id style: {style}") from None
    return "".join(secrets.choice(alphabet) for _ in range(length))


def id_space(style: str = NUMERIC) -> int:
    alphabet, length = ID_STYLES[style]
    return len(alphabet) ** length
