from datetime import datetime, time, timedelta
from unittest import mock

from django.contrib.auth import get_user_model
from django.core import mail
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone

from accounts.services import disable_user
from audit.models import AuditLogEntry
from booking.exceptions import ConflictsExist, NotFound, ValidationFailed
from booking.models import Reservation
from booking.services import cancel_reservation
from notifications.models import TelegramAdmin
from .models import Block, Resource
from .services import (
    check_block_conflicts,
    create_block,
    delete_block,
    get_blocks,
    get_blocks_for_calendar,
    lock_resource,
    lock_resources,
    update_block,
)

User = get_user_model()


def at(hour, minute=0, days=3):
    day = timezone.localdate() + timedelta(days=days)
    return timezone.make_aware(datetime.combine(day, time(hour, minute)))


@override_settings(TELEGRAM_BOT_TOKEN=None)
class BlockLifecycleTestCase(TestCase):

    def setUp(self):
        self.admin = User.objects.create_user(
            email="admin@example.com", password="x", name="Admin", role=User.Role.ADMIN
        )
        self.anna = User.objects.create_user(email="anna@example.com", password="x", name="Anna")
        self.bob = User.objects.create_user(email="bob@example.com", password="x", name="Bob")
        self.resource = Resource.objects.create(name="Indoor hall", slug="indoor")

    def reserve(self, user, start, end):
        return Reservation.objects.create(
            resource=self.resource,
            user=user,
            start_time=start,
            end_time=end,
            purpose=Reservation.Purpose.TRAINING,
        )

    def test_block_without_conflicts(self):
        self.reserve(self.anna, at(8), at(9))

        block, conflicts = create_block(self.admin, self.resource.id, "Farrier", at(9), at(10))

        self.assertEqual(conflicts, [])
        self.assertEqual(block.created_by, self.admin)
        entry = AuditLogEntry.objects.get(entity_type="Block")
        self.assertEqual(entry.action, AuditLogEntry.Action.CREATE)
        self.assertEqual(entry.changes["impacted_reservations"], 0)

    def test_conflicts_need_confirmation(self):
        reservation = self.reserve(self.anna, at(10), at(11))

        with self.assertRaises(ConflictsExist) as ctx:
            create_block(self.admin, self.resource.id, "Show", at(9), at(12))

        self.assertEqual([c.reservation_id for c in ctx.exception.conflicts], [reservation.id])
        self.assertFalse(Block.objects.exists())
        self.assertFalse(AuditLogEntry.objects.exists())
        reservation.refresh_from_db()
        self.assertEqual(reservation.status, Reservation.Status.CONFIRMED)

    def test_confirmed_block_impacts_reservations(self):
        anna_morning = self.reserve(self.anna, at(10), at(11))
        anna_noon = self.reserve(self.anna, at(11), at(12))
        bob = self.reserve(self.bob, at(10, 30), at(11, 30))
        outside = self.reserve(self.bob, at(14), at(15))

        with self.captureOnCommitCallbacks(execute=True):
            block, conflicts = create_block(
                self.admin, self.resource.id, "Competition", at(10), at(12), confirm_conflicts=True
            )

        self.assertEqual(len(conflicts), 3)
        for reservation in (anna_morning, anna_noon, bob):
            reservation.refresh_from_db()
            self.assertEqual(reservation.status, Reservation.Status.IMPACTED)
        outside.refresh_from_db()
        self.assertEqual(outside.status, Reservation.Status.CONFIRMED)

        # по строке на каждую затронутую бронь плюс сама блокировка
        self.assertEqual(AuditLogEntry.objects.count(), 4)
        update = AuditLogEntry.objects.filter(entity_type="Reservation").first()
        self.assertEqual(update.changes["status"], {"from": "CONFIRMED", "to": "IMPACTED"})
        self.assertEqual(update.changes["reason"], "Block created: Competition")
        block_entry = AuditLogEntry.objects.get(entity_type="Block", entity_id=str(block.id))
        self.assertEqual(block_entry.changes["impacted_reservations"], 3)

        # одно письмо на участника
        self.assertEqual(len(mail.outbox), 2)
        anna_mail = next(m for m in mail.outbox if m.to == ["anna@example.com"])
        self.assertEqual(anna_mail.body.count("  - "), 2)

    def test_confirmed_reservation_never_left_inside_block(self):
        self.reserve(self.anna, at(10), at(11))
        block, _ = create_block(
            self.admin, self.resource.id, "Show", at(9), at(12), confirm_conflicts=True
        )

        self.assertEqual(check_block_conflicts(self.resource.id, block.start_time, block.end_time), [])

    def test_rolled_back_block_sends_nothing(self):
        self.reserve(self.anna, at(10), at(11))

        with self.captureOnCommitCallbacks(execute=True):
            with self.assertRaises(ConflictsExist):
                create_block(self.admin, self.resource.id, "Show", at(9), at(12))

        self.assertEqual(len(mail.outbox), 0)

    def test_validation(self):
        with self.assertRaises(ValidationFailed) as ctx:
            create_block(self.admin, self.resource.id, "  ", at(12), at(11))
        self.assertEqual(set(ctx.exception.errors), {"reason", "end_time"})

        with self.assertRaises(ValidationFailed):
            create_block(self.admin, 999999, "Show", at(9), at(12))

    def test_delete_restores_impacted_reservations(self):
        reservation = self.reserve(self.anna, at(10), at(11))
        block, _ = create_block(
            self.admin, self.resource.id, "Show", at(9), at(12), confirm_conflicts=True
        )

        result = delete_block(block.id, self.admin)

        self.assertEqual(result, {"deleted_id": block.id, "restored_reservations": 1})
        reservation.refresh_from_db()
        self.assertEqual(reservation.status, Reservation.Status.CONFIRMED)
        self.assertFalse(Block.objects.exists())
        deleted = AuditLogEntry.objects.get(entity_type="Block", action=AuditLogEntry.Action.DELETE)
        self.assertEqual(deleted.changes["restored_reservations"], 1)

    def test_delete_keeps_reservations_covered_by_another_block(self):
        early = self.reserve(self.anna, at(10), at(10, 30))
        late = self.reserve(self.bob, at(11), at(11, 30))
        first, _ = create_block(
            self.admin, self.resource.id, "Show", at(10), at(12), confirm_conflicts=True
        )
        second, conflicts = create_block(self.admin, self.resource.id, "Clinic", at(11), at(13))
        self.assertEqual(conflicts, [])

        result = delete_block(first.id, self.admin)

        self.assertEqual(result["restored_reservations"], 1)
        early.refresh_from_db()
        late.refresh_from_db()
        self.assertEqual(early.status, Reservation.Status.CONFIRMED)
        self.assertEqual(late.status, Reservation.Status.IMPACTED)

        delete_block(second.id, self.admin)
        late.refresh_from_db()
        self.assertEqual(late.status, Reservation.Status.CONFIRMED)

    def test_delete_leaves_cancelled_reservations_alone(self):
        reservation = self.reserve(self.anna, at(10), at(11))
        block, _ = create_block(
            self.admin, self.resource.id, "Show", at(9), at(12), confirm_conflicts=True
        )
        Reservation.objects.filter(pk=reservation.pk).update(status=Reservation.Status.CANCELLED)

        self.assertEqual(delete_block(block.id, self.admin)["restored_reservations"], 0)

    def cancel_after_conflict_read(self, cancel):
        """Отмена, которая успевает проскочить между чтением конфликтов и их пометкой."""
        real_check = check_block_conflicts

        def read_then_cancel(*args, **kwargs):
            conflicts = real_check(*args, **kwargs)
            cancel()
            return conflicts

        return mock.patch("halls.services.check_block_conflicts", side_effect=read_then_cancel)

    def test_reservation_cancelled_during_block_creation_stays_cancelled(self):
        gone = self.reserve(self.anna, at(10), at(11))
        kept = self.reserve(self.bob, at(11), at(12))

        with self.cancel_after_conflict_read(lambda: cancel_reservation(gone.id, self.anna)):
            with self.captureOnCommitCallbacks(execute=True):
                block, conflicts = create_block(
                    self.admin, self.resource.id, "Show", at(9), at(12), confirm_conflicts=True
                )

        self.assertEqual([c.reservation_id for c in conflicts], [kept.id])
        gone.refresh_from_db()
        self.assertEqual(gone.status, Reservation.Status.CANCELLED)
        self.assertFalse(
            AuditLogEntry.objects.filter(
                entity_type="Reservation", entity_id=str(gone.id), action=AuditLogEntry.Action.UPDATE
            ).exists()
        )
        block_entry = AuditLogEntry.objects.get(entity_type="Block", action=AuditLogEntry.Action.CREATE)
        self.assertEqual(block_entry.changes["impacted_reservations"], 1)

        # Анне приходит только письмо об отмене, письмо о блокировке получает Боб
        self.assertEqual(len(mail.outbox), 2)
        anna_mail = next(m for m in mail.outbox if m.to == ["anna@example.com"])
        self.assertIn("cancelled", anna_mail.subject)

        result = delete_block(block.id, self.admin)

        self.assertEqual(result["restored_reservations"], 1)
        gone.refresh_from_db()
        kept.refresh_from_db()
        self.assertEqual(gone.status, Reservation.Status.CANCELLED)
        self.assertEqual(kept.status, Reservation.Status.CONFIRMED)

    def test_user_disabled_during_block_creation_keeps_cancellations(self):
        gone = self.reserve(self.anna, at(10), at(11))

        with self.cancel_after_conflict_read(lambda: disable_user(self.anna.id, self.admin)):
            block, conflicts = create_block(
                self.admin, self.resource.id, "Show", at(9), at(12), confirm_conflicts=True
            )

        self.assertEqual(conflicts, [])
        gone.refresh_from_db()
        self.assertEqual(gone.status, Reservation.Status.CANCELLED)

        self.assertEqual(delete_block(block.id, self.admin)["restored_reservations"], 0)
        gone.refresh_from_db()
        self.assertEqual(gone.status, Reservation.Status.CANCELLED)

    def test_conflicting_reservations_are_locked(self):
        self.reserve(self.anna, at(10), at(11))

        with mock.patch(
            "halls.services.check_block_conflicts", wraps=check_block_conflicts
        ) as check:
            create_block(self.admin, self.resource.id, "Show", at(9), at(12), confirm_conflicts=True)

        self.assertTrue(check.call_args.kwargs["lock"])

    def test_resources_are_locked_in_pk_order(self):
        other = Resource.objects.create(name="Outdoor arena", slug="outdoor")

        with mock.patch("halls.services.lock_resource", wraps=lock_resource) as lock:
            lock_resources([other.id, self.resource.id, other.id])

        self.assertEqual(
            [c.args[0] for c in lock.call_args_list],
            sorted([self.resource.id, other.id]),
        )

    def test_notification_failure_does_not_undo_block(self):
        reservation = self.reserve(self.anna, at(10), at(11))

        with mock.patch(
            "notifications.services.block_impact_payloads", side_effect=RuntimeError("broken")
        ):
            with self.assertLogs("notifications.services", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    block, _ = create_block(
                        self.admin, self.resource.id, "Show", at(9), at(12), confirm_conflicts=True
                    )

        self.assertTrue(Block.objects.filter(pk=block.pk).exists())
        reservation.refresh_from_db()
        self.assertEqual(reservation.status, Reservation.Status.IMPACTED)
        self.assertEqual(len(mail.outbox), 0)

    def test_delete_missing_block(self):
        with self.assertRaises(NotFound):
            delete_block(999999, self.admin)

    def test_update_merges_fields_and_audits(self):
        block, _ = create_block(self.admin, self.resource.id, "Show", at(9), at(10))

        updated = update_block(block.id, self.admin, {"reason": "Clinic", "end_time": at(11)})

        self.assertEqual(updated.reason, "Clinic")
        self.assertEqual(updated.start_time, at(9))
        entry = AuditLogEntry.objects.get(action=AuditLogEntry.Action.UPDATE, entity_type="Block")
        self.assertEqual(entry.changes["before"]["reason"], "Show")
        self.assertEqual(entry.changes["after"]["reason"], "Clinic")

        with self.assertRaises(ValidationFailed):
            update_block(block.id, self.admin, {"end_time": at(8)})

    def test_listing_hides_expired_blocks(self):
        past = Block.objects.create(
            resource=self.resource, reason="Old", start_time=at(9, days=-2), end_time=at(10, days=-2),
            created_by=self.admin,
        )
        upcoming, _ = create_block(self.admin, self.resource.id, "New", at(9), at(10))

        self.assertEqual(list(get_blocks()), [upcoming])
        self.assertEqual(list(get_blocks(include_expired=True)), [past, upcoming])
        self.assertEqual(
            [row["id"] for row in get_blocks_for_calendar(self.resource.id, at(0), at(23))],
            [upcoming.id],
        )


class BlockTelegramAlertTestCase(TestCase):

    def setUp(self):
        self.admin = User.objects.create_user(
            email="admin@example.com", password="x", name="Admin", role=User.Role.ADMIN
        )
        self.anna = User.objects.create_user(email="anna@example.com", password="x", name="Anna")
        self.resource = Resource.objects.create(name="Indoor hall", slug="indoor")
        TelegramAdmin.objects.create(telegram_user_id=1001, full_name="Stable manager")
        TelegramAdmin.objects.create(telegram_user_id=1002, is_active=False)

    @override_settings(TELEGRAM_BOT_TOKEN="token", TELEGRAM_ADMIN_CHAT_ID=0)
    @mock.patch("notifications.services.send_telegram_message", return_value=True)
    def test_active_admin_chats_are_alerted(self, send):
        Reservation.objects.create(
            resource=self.resource, user=self.anna, start_time=at(10), end_time=at(11),
            purpose=Reservation.Purpose.LESSON,
        )

        with self.captureOnCommitCallbacks(execute=True):
            create_block(self.admin, self.resource.id, "Vet", at(10), at(11), confirm_conflicts=True)

        send.assert_called_once()
        chat_id, text = send.call_args[0]
        self.assertEqual(chat_id, 1001)
        self.assertIn("Impacted reservations: 1", text)

    @override_settings(TELEGRAM_BOT_TOKEN="token")
    @mock.patch("notifications.services.admin_chat_ids", side_effect=DatabaseError("gone"))
    def test_failed_staff_alert_still_mails_members(self, chat_ids):
        Reservation.objects.create(
            resource=self.resource, user=self.anna, start_time=at(10), end_time=at(11),
            purpose=Reservation.Purpose.LESSON,
        )

        with self.assertLogs("notifications.services", level="ERROR"):
            with self.captureOnCommitCallbacks(execute=True):
                create_block(self.admin, self.resource.id, "Vet", at(10), at(11), confirm_conflicts=True)

        chat_ids.assert_called_once()
        self.assertEqual([m.to for m in mail.outbox], [["anna@example.com"]])
