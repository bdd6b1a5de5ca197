"""
Chat Notification Service (Telegram Bot API).

Notifications are fire-and-forget: `send()` schedules delivery on the event
loop and returns immediately. A workflow never awaits delivery and never
fails because a message could not be sent.

Configuration comes from settings (TELEGRAM_*), overridden by the
`system_config/telegram` document ({botToken, chatId, enabled}) when present.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from html import escape
from typing import Any, Callable, Mapping, Optional, Set
from zoneinfo import ZoneInfo

import httpx

from app.config import settings
from app.schemas.ncr import NCRReport
from app.schemas.return_record import ReturnRecord

logger = logging.getLogger(__name__)

SEPARATOR = "-" * 34

PROBLEM_LABELS = {
    "problem_damaged": "Damaged",
    "problem_damaged_in_box": "Damaged in box",
    "problem_lost": "Lost",
    "problem_mixed": "Mixed up",
    "problem_wrong_inv": "Does not match invoice",
    "problem_late": "Late delivery",
    "problem_duplicate": "Duplicate delivery",
    "problem_wrong": "Wrong item",
    "problem_incomplete": "Incomplete",
    "problem_over": "Over delivery",
    "problem_wrong_info": "Wrong information",
    "problem_short_expiry": "Short expiry",
    "problem_transport_damage": "Damaged in transport",
    "problem_accident": "Accident",
    "problem_po_expired": "PO expired",
    "problem_no_barcode": "Barcode unreadable",
    "problem_not_ordered": "Not ordered",
}


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str = ""
    chat_id: str = ""
    enabled: bool = False

    @property
    def configured(self) -> bool:
        return bool(self.enabled and self.bot_token and self.chat_id)


def resolve_telegram_config(system_config: Optional[Mapping[str, Any]] = None) -> TelegramConfig:
    """Environment settings, overridden key by key by system_config.telegram."""
    override = (system_config or {}).get("telegram") or {}
    return TelegramConfig(
        bot_token=override.get("botToken") or settings.TELEGRAM_BOT_TOKEN,
        chat_id=str(override.get("chatId") or settings.TELEGRAM_CHAT_ID),
        enabled=bool(override.get("enabled", settings.TELEGRAM_ENABLED)),
    )


def _v(value: Any) -> str:
    if value is None or value == "":
        return "-"
    return escape(str(value))


def _qty(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:g}"


def _timestamp() -> str:
    return datetime.now(ZoneInfo(settings.TIMEZONE)).strftime("%Y-%m-%d %H:%M")


def format_return_request_message(record: ReturnRecord) -> str:
    """New logistics return request."""
    return "\n".join([
        "📦 <b>New return request (Step 1)</b>",
        SEPARATOR,
        f"<b>Document No:</b> {_v(record.document_no or record.ref_no)}",
        f"<b>Branch:</b> {_v(record.branch)}",
        f"<b>Customer:</b> {_v(record.customer_name)}",
        f"<b>Product:</b> {_v(record.product_name)}",
        f"<b>Quantity:</b> {_qty(record.quantity)} {_v(record.unit)}",
        f"<b>Reported by:</b> {_v(record.founder)}",
        f"<b>Reason:</b> {_v(record.reason)}",
        SEPARATOR,
        f"📅 <i>{_timestamp()}</i>",
    ])


def format_ncr_message(report: NCRReport, item_count: int = 1) -> str:
    """New NCR submission; `report` is the first item of the submission."""
    item = report.item
    lines = [
        "⚠️ <b>New NCR reported [NCR]</b>",
        SEPARATOR,
        f"<b>NCR No:</b> {_v(report.ncr_no)}",
        f"<b>Product:</b> {_v(item.product_name)}",
        f"<b>Quantity:</b> {_qty(item.quantity)} {_v(item.unit)}",
        f"<b>Branch:</b> {_v(item.branch)}",
        f"<b>Customer:</b> {_v(item.customer_name)}",
        f"<b>Found by:</b> {_v(report.founder)}",
        f"<b>Detail:</b> {_v(report.problem_detail)}",
    ]
    if item_count > 1:
        lines.append(f"<b>Items:</b> {item_count}")
    lines += [SEPARATOR, f"📅 <i>{_timestamp()}</i>"]
    return "\n".join(lines)


def format_problem_list(record: ReturnRecord) -> str:
    problems = [label for field, label in PROBLEM_LABELS.items() if getattr(record, field)]
    if record.problem_other:
        problems.append(f"Other ({_v(record.problem_other_text)})")
    return ", ".join(problems) or "-"


def format_status_update_message(label: str, record: ReturnRecord, count: Optional[int] = None) -> str:
    """Stage change (pickup, hub receive, closure) for one record or a batch."""
    is_ncr = record.document_type == "NCR" or bool(record.ncr_number)
    reference = (record.ncr_number or "NCR") if is_ncr else (record.document_no or "COL")
    cost = (
        f"Yes ({_qty(record.cost_amount)}, responsible: {_v(record.cost_responsible)})"
        if record.has_cost else "Not specified"
    )
    batch = f" (total {count} items)" if count and count > 1 else ""

    lines = [
        f"<b>{escape(label)} [{_v(reference)}]</b>",
        SEPARATOR,
        f"<b>Status:</b> {_v(record.status)}",
        f"<b>Date:</b> {_v(record.date or record.date_requested)}",
        f"<b>Branch:</b> {_v(record.branch)}",
        f"<b>Founder:</b> {_v(record.founder)}",
        f"<b>Customer / Destination:</b> {_v(record.customer_name)} / {_v(record.destination_customer)}",
        f"<b>Neo Ref No:</b> {_v(record.neo_ref_no)}",
        f"<b>Ref No:</b> {_v(record.ref_no)}",
        f"<b>Document No:</b> {'-' if is_ncr else _v(record.document_no)}",
        f"<b>Problem:</b> {_v(record.problem_detail or record.reason)}",
        f"<b>Quantity:</b> {_qty(record.quantity)} {_v(record.unit)}{batch}",
        f"<b>Root cause:</b> {_v(record.problem_source)}",
        f"<b>Problem type:</b> {format_problem_list(record)}",
        f"<b>Cost:</b> {cost}",
    ]
    if record.disposition and record.disposition != "Pending":
        lines.append(f"<b>Disposition:</b> {_v(record.disposition)}")
    if record.collection_order_id:
        lines.append(f"<b>Collection order:</b> {_v(record.collection_order_id)}")
    lines += [SEPARATOR, f"📅 <i>Updated: {_timestamp()}</i>"]
    return "\n".join(lines)


class NotificationService:
    """
    Sends chat messages without blocking the caller.

    Args:
        config_provider: Returns the current system_config mapping
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        config_provider: Optional[Callable[[], Mapping[str, Any]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._config_provider = config_provider or (lambda: {})
        self._transport = transport
        self._pending: Set[asyncio.Task] = set()

    @property
    def config(self) -> TelegramConfig:
        return resolve_telegram_config(self._config_provider())

    async def send_message(self, message: str) -> bool:
        """Deliver one message. Never raises; returns delivery success."""
        config = self.config
        if not config.configured:
            logger.debug("Telegram not configured, notification skipped")
            return False

        url = f"{settings.TELEGRAM_API_URL}/bot{config.bot_token}/sendMessage"
        payload = {"chat_id": config.chat_id, "text": message, "parse_mode": "HTML"}
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(url, json=payload, timeout=settings.TELEGRAM_TIMEOUT_SECONDS)
                response.raise_for_status()
                return True
        except Exception as e:
            logger.error(f"Failed to send Telegram message: {e}")
            return False

    def send(self, message: str) -> Optional[asyncio.Task]:
        """Schedule delivery and return immediately."""
        if not self.config.configured:
            return None
        task = asyncio.create_task(self.send_message(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight messages (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
