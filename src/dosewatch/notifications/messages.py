"""Rendering of notification payloads into Telegram MarkdownV2 messages.

Payloads are rendered at send time, never stored pre-rendered, so replaying a
dead-lettered notification always uses the current templates.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from dosewatch.notifications.models import NotificationCandidate, NotificationKind

PARSE_MODE = "MarkdownV2"

_MARKDOWN_V2_SPECIAL = re.compile(r"([\\_*\[\]()~`>#+\-=|{}.!])")


def escape_markdown(text: Any) -> str:
    """Escape every MarkdownV2 special character in *text*."""
    if text is None:
        return ""
    return _MARKDOWN_V2_SPECIAL.sub(r"\\\1", str(text))


@dataclass(frozen=True)
class OutboundMessage:
    text: str
    parse_mode: str | None = PARSE_MODE
    reply_markup: dict[str, Any] | None = None


def _format_quantity(value: Any) -> str:
    number = float(value or 0)
    return str(int(number)) if number.is_integer() else f"{number:g}"


def _dose_keyboard(data: dict[str, Any]) -> dict[str, Any] | None:
    """Taken/Skip buttons answered by the bot's callback handler."""
    protocol_id = data.get("protocol_id")
    if not protocol_id:
        return None
    dosage = _format_quantity(data.get("dosage"))
    return {
        "inline_keyboard": [
            [
                {"text": "Taken ✅", "callback_data": f"take_:{protocol_id}:{dosage}"},
                {"text": "Skip ❌", "callback_data": f"skip_:{protocol_id}"},
            ]
        ]
    }


def _dose_reminder(data: dict[str, Any]) -> OutboundMessage:
    lines = [
        "🔔 *Time for your medication*",
        "",
        f"💊 *{escape_markdown(data.get('medicine_name'))}*",
        f"📏 Dose: {escape_markdown(_format_quantity(data.get('dosage')))}x",
    ]
    if data.get("slot"):
        lines.append(f"🕒 Scheduled: {escape_markdown(data['slot'])}")
    if data.get("titration_stage") and data.get("titration_total"):
        lines.append(
            f"🎯 Stage {data['titration_stage']}/{data['titration_total']}"
        )
    if data.get("notes"):
        lines.append(f"📝 _{escape_markdown(data['notes'])}_")

    return OutboundMessage("\n".join(lines), reply_markup=_dose_keyboard(data))


def _soft_reminder(data: dict[str, Any]) -> OutboundMessage:
    text = (
        "⏰ *Reminder*\n\n"
        f"You have not logged your dose of *{escape_markdown(data.get('medicine_name'))}* yet\\.\n"
        "Did you forget to record it?"
    )
    return OutboundMessage(text, reply_markup=_dose_keyboard(data))


def _stock_alert(data: dict[str, Any]) -> OutboundMessage:
    parts: list[str] = []
    empty = data.get("empty") or []
    low = data.get("low") or []
    if empty:
        parts.append("🚨 *OUT OF STOCK*\n")
        parts.append("These medicines have no stock left:\n")
        parts.extend(f"❌ {escape_markdown(m['name'])}" for m in empty)
        parts.append("\n⚠️ Restock as soon as possible\\!\n")
    if low:
        parts.append("⚠️ *Low stock*\n")
        parts.append("Keep an eye on these medicines:\n")
        parts.extend(
            f"📦 {escape_markdown(m['name'])} \\- ~{m['days']} day\\(s\\) left" for m in low
        )
        parts.append("\n💡 Consider restocking soon\\.")
    return OutboundMessage("\n".join(parts))


def adherence_verdict(percentage: int) -> str:
    if percentage >= 100:
        return "🎉 *Well done\\! You took every dose today\\!*"
    if percentage >= 80:
        return "👍 *Good job\\! Keep it up\\!*"
    if percentage >= 50:
        return "⚠️ *Heads up\\! Take your remaining doses\\.*"
    return "🚨 *Careful\\! You are behind on your doses\\.*"


def _daily_digest(data: dict[str, Any]) -> OutboundMessage:
    percentage = int(data.get("percentage", 0))
    text = (
        "📊 *Daily summary*\n\n"
        f"📅 {escape_markdown(data.get('date'))}\n\n"
        f"✅ Doses taken: {data.get('taken', 0)}/{data.get('expected', 0)}\n"
        f"📈 Adherence: {percentage}%\n\n"
        f"{adherence_verdict(percentage)}"
    )
    return OutboundMessage(text)


def _generic(data: dict[str, Any]) -> OutboundMessage:
    return OutboundMessage(escape_markdown(data.get("text", "")))


_RENDERERS = {
    NotificationKind.DOSE_REMINDER: _dose_reminder,
    NotificationKind.SOFT_REMINDER: _soft_reminder,
    NotificationKind.STOCK_ALERT: _stock_alert,
    NotificationKind.DAILY_DIGEST: _daily_digest,
}


def render(candidate: NotificationCandidate) -> OutboundMessage:
    """Render *candidate* for delivery."""
    renderer = _RENDERERS.get(candidate.kind, _generic)
    return renderer(candidate.payload)
