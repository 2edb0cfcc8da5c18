"""
Исходящие уведомления.

Каждое сообщение описывается NotificationPayload и уходит через dispatch().
Отправка не гарантируется: ошибки пишутся в лог и возвращаются как False,
наружу ничего не пробрасывается, поэтому отправители вызываются после коммита.
"""
import html
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from django.conf import settings
from django.core.mail import send_mail
from django.utils import timezone

from booking.models import Reservation
from .models import TelegramAdmin
from .telegram import send_telegram_message

logger = logging.getLogger(__name__)

RESERVATION_CONFIRMED = "reservation_confirmed"
RESERVATION_CANCELLED = "reservation_cancelled"
BLOCK_IMPACT = "block_impact"


@dataclass(frozen=True)
class AffectedInterval:
    start_time: object
    end_time: object
    purpose: str = ""


@dataclass(frozen=True)
class NotificationPayload:
    kind: str
    recipient_email: str
    recipient_name: str
    resource_name: str
    intervals: Tuple[AffectedInterval, ...] = field(default_factory=tuple)
    reason: str = ""
    notes: str = ""


def _fmt(dt, pattern="%d.%m.%Y %H:%M") -> str:
    return timezone.localtime(dt).strftime(pattern)


def _purpose_label(purpose: str) -> str:
    try:
        return Reservation.Purpose(purpose).label
    except ValueError:
        return purpose


def _interval_line(interval: AffectedInterval) -> str:
    line = f"{_fmt(interval.start_time)} - {_fmt(interval.end_time, '%H:%M')}"
    if interval.purpose:
        line += f" ({_purpose_label(interval.purpose)})"
    return line


def render(payload: NotificationPayload):
    """Возвращает (subject, message) для payload."""
    site = getattr(settings, "MANEGE_SITE_NAME", "Manege")
    greeting = f"Hello {payload.recipient_name},\n\n"
    footer = f"\n\n{site}\nThis message was generated automatically."

    if payload.kind == RESERVATION_CONFIRMED:
        interval = payload.intervals[0]
        subject = f"{site}: reservation confirmed - {payload.resource_name}"
        message = (
            greeting
            + f"Your reservation of «{payload.resource_name}» is confirmed.\n"
            f"Date and time: {_interval_line(interval)}\n"
            f"Notes: {payload.notes or '-'}\n\n"
            "You can manage your reservations in your personal calendar."
        )
    elif payload.kind == RESERVATION_CANCELLED:
        interval = payload.intervals[0]
        subject = f"{site}: reservation cancelled - {payload.resource_name}"
        message = (
            greeting
            + f"Your reservation of «{payload.resource_name}» "
            f"on {_interval_line(interval)} has been cancelled.\n"
            f"Reason: {payload.reason or '-'}"
        )
    elif payload.kind == BLOCK_IMPACT:
        subject = f"{site}: your reservations are affected by a block"
        affected = "\n".join(f"  - {_interval_line(i)}" for i in payload.intervals)
        message = (
            greeting
            + f"«{payload.resource_name}» has been blocked"
            f"{': ' + payload.reason if payload.reason else ''}.\n\n"
            f"Affected reservations:\n{affected}\n\n"
            "These reservations are marked as impacted by a block. "
            "Please contact us if you have questions."
        )
    else:
        raise ValueError(f"Unknown notification kind: {payload.kind}")

    return subject, message + footer


def dispatch(payload: NotificationPayload) -> bool:
    if not payload.recipient_email:
        logger.warning("Notification %s has no recipient, skipped", payload.kind)
        return False

    try:
        subject, message = render(payload)
        send_mail(
            subject,
            message,
            settings.DEFAULT_FROM_EMAIL,
            [payload.recipient_email],
            fail_silently=False,
        )
    except Exception:
        logger.exception(
            "Failed to send %s notification to %s", payload.kind, payload.recipient_email
        )
        return False

    logger.info("Sent %s notification to %s", payload.kind, payload.recipient_email)
    return True


# === Сборка сообщений ===


def reservation_payload(reservation: Reservation, kind: str, reason: str = "") -> NotificationPayload:
    return NotificationPayload(
        kind=kind,
        recipient_email=reservation.user.email,
        recipient_name=reservation.user.name,
        resource_name=reservation.resource.name,
        intervals=(
            AffectedInterval(reservation.start_time, reservation.end_time, reservation.purpose),
        ),
        reason=reason,
        notes=reservation.notes,
    )


def block_impact_payloads(block, conflicts: Iterable) -> List[NotificationPayload]:
    """Один payload на пользователя со всеми его интервалами."""
    by_user = OrderedDict()
    for conflict in conflicts:
        entry = by_user.setdefault(
            conflict.user_id,
            {"name": conflict.user_name, "email": conflict.user_email, "intervals": []},
        )
        entry["intervals"].append(
            AffectedInterval(conflict.start_time, conflict.end_time, conflict.purpose)
        )

    return [
        NotificationPayload(
            kind=BLOCK_IMPACT,
            recipient_email=data["email"],
            recipient_name=data["name"],
            resource_name=block.resource.name,
            intervals=tuple(data["intervals"]),
            reason=block.reason,
        )
        for data in by_user.values()
    ]


# === Отправители ===


def _dispatch_reservation(reservation: Reservation, kind: str, reason: str = "") -> bool:
    try:
        payload = reservation_payload(reservation, kind, reason=reason)
    except Exception:
        logger.exception("Failed to build %s notification for reservation %s", kind, reservation.pk)
        return False
    return dispatch(payload)


def send_reservation_confirmation(reservation: Reservation) -> bool:
    return _dispatch_reservation(reservation, RESERVATION_CONFIRMED)


def send_reservation_cancellation(reservation: Reservation, reason: str = "") -> bool:
    return _dispatch_reservation(reservation, RESERVATION_CANCELLED, reason=reason)


def send_block_notifications(block, conflicts) -> int:
    """
    Письмо каждому затронутому пользователю (одно на человека) и алерт админам в Telegram.
    Возвращает число отправленных писем.
    """
    try:
        payloads = block_impact_payloads(block, conflicts)
    except Exception:
        logger.exception("Failed to build block impact notifications for block %s", block.pk)
        return 0

    sent = sum(1 for payload in payloads if dispatch(payload))

    if payloads:
        try:
            notify_admins_about_block(block, sum(len(p.intervals) for p in payloads))
        except Exception:
            logger.exception("Failed to alert staff about block %s", block.pk)

    return sent


def admin_chat_ids() -> List[int]:
    chat_ids = list(
        TelegramAdmin.objects.filter(is_active=True).values_list("telegram_user_id", flat=True)
    )
    fallback = getattr(settings, "TELEGRAM_ADMIN_CHAT_ID", 0)
    if fallback and fallback not in chat_ids:
        chat_ids.append(fallback)
    return chat_ids


def notify_admins_about_block(block, impacted_count: int) -> int:
    if not getattr(settings, "TELEGRAM_BOT_TOKEN", None):
        return 0

    text = (
        "<b>Block created</b> ⛔\n\n"
        f"Resource: {html.escape(block.resource.name)}\n"
        f"Time: {_fmt(block.start_time)} - {_fmt(block.end_time)}\n"
        f"Reason: {html.escape(block.reason or '-')}\n"
        f"Impacted reservations: {impacted_count}"
    )
    return sum(1 for chat_id in admin_chat_ids() if send_telegram_message(chat_id, text))
