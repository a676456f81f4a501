# -*- coding: utf-8 -*-
"""
tier_relay/payment_server.py

목적:
- 플러그인(클라이언트)과 관리자 화면이 호출하는 Flask API 서버입니다.
- 요청을 OrderLifecycle 호출로 바꾸고, 결과/오류를 JSON 응답으로 바꾸는 얇은 계층입니다.

제공 API:
- GET     /health
- OPTIONS /api/*  (preflight)
- POST    /api/create-order       {tier} 또는 {voucher}   -> {id, orderId, price}
- POST    /api/user-confirm       {id}                    -> {success}
- GET     /api/order-status?id=...                        -> {status, credits}
- GET     /api/pending-orders?adminSecret=...             -> [order, ...]
- POST    /api/confirm-order      {id, adminSecret}       -> {success, message}
- POST    /api/generate-voucher   {tier}                  -> {voucher, price, credits, expiresAt}

호환:
- 기존 플러그인이 보내는 orderId / password 필드도 id / adminSecret 과 동일하게 받습니다.
"""

from __future__ import annotations

import hmac
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request

from .config import Config
from .lifecycle import OrderLifecycle
from .utils import OrderError, StorageCorrupted, StorageUnavailable, get_logger, setup_logging

logger = get_logger(__name__)


def is_admin_secret(candidate: Any, secret: str) -> bool:
    """설정된 관리자 시크릿과 정확히 일치하는지 확인(compare_digest)."""
    if not isinstance(candidate, str) or not secret:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))


def _body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _order_id(source) -> Optional[str]:
    return source.get("id") or source.get("orderId")


def _admin_secret(source) -> Optional[str]:
    return source.get("adminSecret") or source.get("password")


def create_app(config=Config, lifecycle: Optional[OrderLifecycle] = None) -> Flask:
    app = Flask(__name__)
    app.json.ensure_ascii = False

    lifecycle = lifecycle or OrderLifecycle.from_config(config)
    admin_password = config.ADMIN_PASSWORD
    allowed_origins = set(getattr(config, "CORS_ALLOWED_ORIGINS", []) or [])
    app.extensions["order_lifecycle"] = lifecycle

    def _authorized(source) -> bool:
        return is_admin_secret(_admin_secret(source), admin_password)

    # -----------------------------
    # CORS / OPTIONS
    # -----------------------------

    @app.before_request
    def _handle_options():
        """OPTIONS preflight를 공통 처리하여 405를 방지합니다."""
        if request.method == "OPTIONS":
            return Response(status=204)

    @app.after_request
    def _cors(resp: Response) -> Response:
        """허용 목록에 있는 Origin 에만 CORS 헤더를 부착합니다."""
        origin = request.headers.get("Origin")
        if origin and origin in allowed_origins:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Credentials"] = "true"
            resp.headers["Vary"] = "Origin"
            resp.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
        return resp

    # -----------------------------
    # 오류 -> 응답
    # -----------------------------

    @app.errorhandler(OrderError)
    def _order_error(e: OrderError):
        # StorageUnavailable 은 생성 시점에 stage 와 함께 이미 기록됨
        if e.http_status >= 500 and not isinstance(e, StorageUnavailable):
            logger.error(f"{request.path} 처리 실패: {e.kind} - {e.message}")
        else:
            logger.info(f"{request.path} 요청 거부: {e.kind} - {e.message}")
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(StorageCorrupted)
    def _storage_corrupted(e: StorageCorrupted):
        logger.critical(f"{request.path} 저장소 손상: {e}")
        return jsonify({"ok": False, "error": e.kind, "message": "Order storage is corrupted."}), 500

    # -----------------------------
    # 라우트
    # -----------------------------

    @app.get("/health")
    def health():
        """헬스 체크"""
        return jsonify(
            {
                "ok": True,
                "service": "tier_relay",
                "store": lifecycle.store.name,
                "creation_mode": lifecycle.creation_mode,
            }
        )

    @app.post("/api/create-order")
    def create_order():
        body = _body()
        value = body.get("voucher") if lifecycle.creation_mode == "voucher" else body.get("tier")
        result = lifecycle.create_order(value)
        return jsonify({"id": result["id"], "orderId": result["id"], "price": result["price"]})

    @app.post("/api/user-confirm")
    def user_confirm():
        return jsonify(lifecycle.user_confirm_payment(_order_id(_body())))

    @app.get("/api/order-status")
    def order_status():
        return jsonify(lifecycle.get_status(_order_id(request.args)))

    @app.get("/api/pending-orders")
    def pending_orders():
        return jsonify(lifecycle.list_actionable(authorized=_authorized(request.args)))

    @app.post("/api/confirm-order")
    def confirm_order():
        body = _body()
        authorized = _authorized(body) or _authorized(request.args)
        return jsonify(lifecycle.confirm_order(_order_id(body), authorized=authorized))

    @app.post("/api/generate-voucher")
    def generate_voucher():
        if lifecycle.creation_mode != "voucher":
            return jsonify({"ok": False, "error": "NotFound", "message": "Vouchers are not enabled"}), 404
        return jsonify(lifecycle.generate_voucher(_body().get("tier")))

    return app


# -----------------------------
# 엔트리포인트
# -----------------------------


def main(port: Optional[int] = None) -> None:
    """서버 실행(기본 5000, 환경변수 PAYMENT_PORT로 변경 가능)"""
    setup_logging(Config.LOG_FILE)
    Config.validate()
    app = create_app(Config)
    app.run(host="127.0.0.1", port=port or Config.PAYMENT_PORT, debug=False)


if __name__ == "__main__":
    main()
