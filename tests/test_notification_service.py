"""Tests for Telegram notifications (httpx.MockTransport, no network)."""
import asyncio
import json

import httpx

from app.schemas.ncr import NCRReport
from app.schemas.return_record import ReturnRecord
from app.services.notification_service import (
    NotificationService,
    format_ncr_message,
    format_problem_list,
    format_return_request_message,
    format_status_update_message,
    resolve_telegram_config,
)

TELEGRAM = {"telegram": {"botToken": "123:abc", "chatId": 42, "enabled": True}}


def recording_transport(requests, status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, json={"ok": status_code == 200})
    return httpx.MockTransport(handler)


def test_unconfigured_service_sends_nothing():
    requests = []

    async def main():
        service = NotificationService(lambda: {}, transport=recording_transport(requests))
        task = service.send("hello")
        await service.drain()
        return task

    assert asyncio.run(main()) is None
    assert requests == []


def test_send_posts_html_message_in_background():
    requests = []

    async def main():
        service = NotificationService(lambda: TELEGRAM, transport=recording_transport(requests))
        task = service.send("<b>hi</b>")
        assert task is not None
        await service.drain()
        return task.result()

    assert asyncio.run(main()) is True
    (request,) = requests
    assert request.url.host == "api.telegram.org"
    assert request.url.path.endswith("/sendMessage")
    assert json.loads(request.content) == {"chat_id": "42", "text": "<b>hi</b>", "parse_mode": "HTML"}


def test_delivery_failures_are_swallowed():
    requests = []

    async def main():
        service = NotificationService(lambda: TELEGRAM, transport=recording_transport(requests, 502))
        return await service.send_message("hello")

    assert asyncio.run(main()) is False
    assert len(requests) == 1


def test_transport_errors_are_swallowed():
    def handler(request):
        raise httpx.ConnectError("no route to host")

    async def main():
        service = NotificationService(lambda: TELEGRAM, transport=httpx.MockTransport(handler))
        return await service.send_message("hello")

    assert asyncio.run(main()) is False


def test_system_config_can_disable_delivery():
    config = resolve_telegram_config({"telegram": {"botToken": "t", "chatId": "1", "enabled": False}})
    assert not config.configured
    assert resolve_telegram_config(TELEGRAM).configured


def test_messages_escape_html(make_record):
    record = ReturnRecord.from_document(make_record("RT-1", customerName="<Acme & Co>", documentNo="R-1"))
    message = format_return_request_message(record)
    assert "&lt;Acme &amp; Co&gt;" in message
    assert "<Acme" not in message
    assert "R-1" in message


def test_status_update_message_for_ncr_record(make_record):
    record = ReturnRecord.from_document(make_record(
        "NCR-2025-0001-1", ncrNumber="NCR-2025-0001", status="NCR_HubReceived",
        hasCost=True, costAmount=250, costResponsible="Carrier", disposition="Claim",
    ))
    message = format_status_update_message("Received at hub", record, count=3)
    assert "[NCR-2025-0001]" in message
    assert "(total 3 items)" in message
    assert "Yes (250, responsible: Carrier)" in message
    assert "<b>Disposition:</b> Claim" in message


def test_problem_list(make_record):
    record = ReturnRecord.from_document(make_record(
        "RT-1", problemDamaged=True, problemPOExpired=True, problemOther=True, problemOtherText="Smells",
    ))
    assert format_problem_list(record) == "Damaged, PO expired, Other (Smells)"
    assert format_problem_list(ReturnRecord.from_document(make_record("RT-2"))) == "-"


def test_ncr_message_mentions_item_count(make_report):
    message = format_ncr_message(NCRReport.from_document(make_report()), item_count=2)
    assert "NCR-2025-0001" in message
    assert "<b>Items:</b> 2" in message
