# -*- coding: utf-8 -*-
"""
api/index.py

Vercel Python 런타임 단일 엔트리. WSGI app 을 그대로 노출한다.
배포 환경에서는 KV_REST_API_URL / KV_REST_API_TOKEN 이 자동 주입되므로 Upstash 저장소가 선택된다.
"""

import sys
from pathlib import Path

# Add project root to sys.path for Vercel
_root = str(Path(__file__).resolve().parents[1])
if _root not in sys.path:
    sys.path.insert(0, _root)

from tier_relay.config import Config  # noqa: E402
from tier_relay.payment_server import create_app  # noqa: E402

app = create_app(Config)
