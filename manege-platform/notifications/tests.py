from datetime import datetime, timedelta
from smtplib import SMTPException
from types import SimpleNamespace
from unittest import mock

import requests
from django.core import mail
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from .models import TelegramAdmin
from .services import (
    BLOCK_IMPACT,
    RESERVATION_CONFIRMED,
    AffectedInterval,
    NotificationPayload,
    admin_chat_ids,
    block_impact_payloads,
    dispatch,
    render,
    send_reservation_cancellation,
)
from .telegram import send_telegram_message

START = timezone.make_aware(datetime(2030, 3, 4, 10, 0))


def conflict(user_id, name, email, hours=0):
    return SimpleNamespace(
        user_id=user_id,
        user_name=name,
        user_email=email,
        start_time=START + timedelta(hours=hours),
        end_time=START + timedelta(hours=hours + 1),
        purpose="LESSON",
    )


class DispatchTestCase(SimpleTestCase):

    def payload(self, **kwargs):
        data = dict(
            kind=RESERVATION_CONFIRMED,
            recipient_email="anna@example.com",
            recipient_name="Anna",
            resource_name="Indoor hall",
            intervals=(AffectedInterval(START, START + timedelta(hours=1), "TRAINING"),),
            notes="Young horse",
        )
        data.update(kwargs)
        return NotificationPayload(**data)

    def test_confirmation_is_sent(self):
        self.assertTrue(dispatch(self.payload()))

        self.assertEqual(len(mail.outbox), 1)
        message = mail.outbox[0]
        self.assertEqual(message.to, ["anna@example.com"])
        self.assertIn("Indoor hall", message.subject)
        self.assertIn("04.03.2030 10:00 - 11:00 (Training)", message.body)
        self.assertIn("Young horse", message.body)

    def test_failed_send_is_reported_not_raised(self):
        with mock.patch("notifications.services.send_mail", side_effect=SMTPException("down")):
            with self.assertLogs("notifications.services", level="ERROR"):
                self.assertFalse(dispatch(self.payload()))

    def test_missing_recipient_is_skipped(self):
        self.assertFalse(dispatch(self.payload(recipient_email="")))
        self.assertEqual(len(mail.outbox), 0)

    def test_unknown_kind_cannot_render(self):
        with self.assertRaises(ValueError):
            render(self.payload(kind="birthday"))

    def test_broken_reservation_is_reported_not_raised(self):
        reservation = SimpleNamespace(pk=5, start_time=START, end_time=START, purpose="LESSON")

        with self.assertLogs("notifications.services", level="ERROR"):
            self.assertFalse(send_reservation_cancellation(reservation, "Ill"))
        self.assertEqual(len(mail.outbox), 0)


class BlockImpactPayloadTestCase(SimpleTestCase):

    def test_one_payload_per_user(self):
        block = SimpleNamespace(resource=SimpleNamespace(name="Indoor hall"), reason="Show")
        conflicts = [
            conflict(1, "Anna", "anna@example.com", 0),
            conflict(2, "Bob", "bob@example.com", 0),
            conflict(1, "Anna", "anna@example.com", 2),
        ]

        payloads = block_impact_payloads(block, conflicts)

        self.assertEqual([p.recipient_email for p in payloads], ["anna@example.com", "bob@example.com"])
        self.assertEqual(len(payloads[0].intervals), 2)
        self.assertEqual(payloads[0].kind, BLOCK_IMPACT)
        self.assertEqual(payloads[0].reason, "Show")

        _, body = render(payloads[0])
        self.assertIn("Show", body)
        self.assertEqual(body.count("  - "), 2)


class TelegramTestCase(TestCase):

    @override_settings(TELEGRAM_BOT_TOKEN=None)
    def test_not_configured(self):
        with mock.patch("notifications.telegram.requests.post") as post:
            self.assertFalse(send_telegram_message(1001, "hi"))
        post.assert_not_called()

    @override_settings(TELEGRAM_BOT_TOKEN="token")
    def test_sends_html_message(self):
        with mock.patch("notifications.telegram.requests.post") as post:
            self.assertTrue(send_telegram_message(1001, "<b>hi</b>"))

        url = post.call_args[0][0]
        self.assertEqual(url, "https://api.telegram.org/bottoken/sendMessage")
        self.assertEqual(post.call_args[1]["data"]["parse_mode"], "HTML")

    @override_settings(TELEGRAM_BOT_TOKEN="token")
    def test_network_error_is_logged(self):
        with mock.patch(
            "notifications.telegram.requests.post",
            side_effect=requests.ConnectionError("offline"),
        ):
            with self.assertLogs("notifications.telegram", level="ERROR"):
                self.assertFalse(send_telegram_message(1001, "hi"))

    @override_settings(TELEGRAM_ADMIN_CHAT_ID=42)
    def test_admin_chats_include_fallback(self):
        TelegramAdmin.objects.create(telegram_user_id=1001)
        TelegramAdmin.objects.create(telegram_user_id=1002, is_active=False)

        self.assertEqual(admin_chat_ids(), [1001, 42])
