from __future__ import annotations

import argparse

from mini_crm.services import ai_rule_service, vendor_service
from mini_crm.services.field_catalog import get_catalog


def main() -> None:
    parser = argparse.ArgumentParser(description="발송 벤더 / AI 규칙 변환 연동 점검 스크립트")
    parser.add_argument("--send", nargs=2, metavar=("CHANNEL", "RECIPIENT"), help="테스트 메시지 접수")
    parser.add_argument("--status", metavar="VENDOR_MESSAGE_ID", help="벤더 메시지 상태 조회")
    parser.add_argument("--rules", metavar="TEXT", help="자연어 → 규칙 트리 변환")
    args = parser.parse_args()

    if args.send:
        channel, recipient = args.send
        result = vendor_service.submit_message(
            vendor_message_id="INTEGRATION_TEST",
            channel=channel,
            recipient=recipient,
            subject="Integration test",
            body="Integration test message",
        )
        print("접수 결과:", result.accepted, result.code, result.message)

    if args.status:
        data = vendor_service.get_message_status(args.status)
        print("메시지 상태:", data.get("status"))

    if args.rules:
        translation = ai_rule_service.translate_with_ai(args.rules, get_catalog())
        print("설명:", translation.description)
        print("규칙:", translation.rule_tree)


if __name__ == "__main__":
    main()
