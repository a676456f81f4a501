import argparse
import json
import sys

from .config import Config
from .lifecycle import OrderLifecycle
from .utils import OrderError, get_logger, setup_logging

logger = get_logger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def cmd_serve(lifecycle, args) -> int:
    from .payment_server import create_app

    app = create_app(Config, lifecycle=lifecycle)
    app.run(host=args.host, port=args.port, debug=False)
    return 0


def cmd_orders(lifecycle, args) -> int:
    # 셸 접근 권한이 있는 운영자는 관리자 시크릿 없이 조회한다.
    orders = lifecycle.list_actionable(authorized=True)
    if args.json:
        _print_json(orders)
        return 0
    print(f"확인 대기 주문: {len(orders)}")
    for o in orders:
        print(f"ID: {o['id']}, Tier: {o['tier']}, Price: {o['price']}, Credits: {o['credits']}, Status: {o['status']}, Date: {o['createdAt']}")
    return 0


def cmd_status(lifecycle, args) -> int:
    _print_json(lifecycle.get_status(args.order_id))
    return 0


def cmd_confirm(lifecycle, args) -> int:
    result = lifecycle.confirm_order(args.order_id, authorized=True)
    print(result["message"])
    return 0


def cmd_create(lifecycle, args) -> int:
    _print_json(lifecycle.create_order(args.value))
    return 0


def cmd_voucher(lifecycle, args) -> int:
    _print_json(lifecycle.generate_voucher(args.tier))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tier-relay", description="티어 결제 확인 릴레이 운영 도구")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="API 서버 실행")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=Config.PAYMENT_PORT)
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("orders", help="확인 대기 주문 목록 (최신순)")
    p.add_argument("--json", action="store_true", help="JSON 으로 출력")
    p.set_defaults(func=cmd_orders)

    p = sub.add_parser("status", help="주문 상태 조회")
    p.add_argument("order_id")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("confirm", help="주문 완료 처리")
    p.add_argument("order_id")
    p.set_defaults(func=cmd_confirm)

    p = sub.add_parser("create", help="주문 생성 (티어 키 또는 바우처)")
    p.add_argument("value")
    p.set_defaults(func=cmd_create)

    p = sub.add_parser("voucher", help="바우처 발급 (voucher 모드)")
    p.add_argument("tier")
    p.set_defaults(func=cmd_voucher)
    return parser


def main(argv=None, lifecycle=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(Config.LOG_FILE)
    Config.validate()

    try:
        lifecycle = lifecycle or OrderLifecycle.from_config(Config)
        return args.func(lifecycle, args)
    except OrderError as e:
        print(f"ERR: {e.kind}: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
