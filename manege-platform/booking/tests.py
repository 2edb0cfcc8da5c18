from datetime import datetime, time, timedelta
from unittest import mock

from django.contrib.auth import get_user_model
from django.core import mail
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from audit.models import AuditLogEntry
from halls.models import Block, Resource
from halls.services import create_block, delete_block, lock_resources
from .exceptions import (
    InvalidStateTransition,
    NotFound,
    OverlapExists,
    PermissionDenied,
    TimeBlocked,
    ValidationFailed,
)
from .models import Reservation
from .overlaps import check_overlaps, overlap_q, overlaps
from .services import (
    cancel_reservation,
    create_reservation,
    get_reservation_for_viewer,
    get_reservations_for_calendar,
    get_user_reservations,
    update_reservation,
)

User = get_user_model()


def at(hour, minute=0, days=3):
    day = timezone.localdate() + timedelta(days=days)
    return timezone.make_aware(datetime.combine(day, time(hour, minute)))


class OverlapPredicateTestCase(SimpleTestCase):

    def setUp(self):
        self.t = datetime(2030, 1, 1, 10, 0)

    def h(self, hours):
        return self.t + timedelta(hours=hours)

    def test_partial_overlap_is_symmetric(self):
        self.assertTrue(overlaps(self.h(0), self.h(2), self.h(1), self.h(3)))
        self.assertTrue(overlaps(self.h(1), self.h(3), self.h(0), self.h(2)))

    def test_touching_intervals_do_not_overlap(self):
        self.assertFalse(overlaps(self.h(0), self.h(1), self.h(1), self.h(2)))
        self.assertFalse(overlaps(self.h(1), self.h(2), self.h(0), self.h(1)))

    def test_containment_overlaps_both_ways(self):
        self.assertTrue(overlaps(self.h(0), self.h(4), self.h(1), self.h(2)))
        self.assertTrue(overlaps(self.h(1), self.h(2), self.h(0), self.h(4)))

    def test_identical_intervals_overlap(self):
        self.assertTrue(overlaps(self.h(0), self.h(1), self.h(0), self.h(1)))

    def test_disjoint_intervals(self):
        self.assertFalse(overlaps(self.h(0), self.h(1), self.h(3), self.h(4)))


class OverlapQueryTestCase(TestCase):
    """ORM-фильтр согласован с чистой функцией."""

    def setUp(self):
        self.user = User.objects.create_user(email="rider@example.com", password="x", name="Rider")
        self.resource = Resource.objects.create(name="Indoor hall", slug="indoor")
        self.existing = Reservation.objects.create(
            resource=self.resource,
            user=self.user,
            start_time=at(10),
            end_time=at(11),
            purpose=Reservation.Purpose.TRAINING,
        )

    def test_query_matches_predicate(self):
        windows = [
            (at(9), at(10)),
            (at(9), at(10, 30)),
            (at(10), at(11)),
            (at(10, 15), at(10, 45)),
            (at(9), at(12)),
            (at(10, 30), at(11, 30)),
            (at(11), at(12)),
        ]
        for start, end in windows:
            with self.subTest(start=start, end=end):
                found = Reservation.objects.filter(overlap_q(start, end)).exists()
                expected = overlaps(start, end, self.existing.start_time, self.existing.end_time)
                self.assertEqual(found, expected)

    def test_check_overlaps_ignores_cancelled_and_excluded(self):
        result = check_overlaps(self.resource.id, at(10), at(11), exclude_id=self.existing.id)
        self.assertFalse(result.has_overlaps)

        self.existing.status = Reservation.Status.CANCELLED
        self.existing.save()
        result = check_overlaps(self.resource.id, at(10), at(11))
        self.assertFalse(result.has_overlaps)
        self.assertFalse(result.has_block)


class ReservationLifecycleTestCase(TestCase):

    def setUp(self):
        self.user = User.objects.create_user(email="anna@example.com", password="x", name="Anna")
        self.other = User.objects.create_user(email="bob@example.com", password="x", name="Bob")
        self.admin = User.objects.create_user(
            email="admin@example.com", password="x", name="Admin", role=User.Role.ADMIN
        )
        self.resource = Resource.objects.create(name="Indoor hall", slug="indoor")

    def book(self, user=None, start=None, end=None, **kwargs):
        return create_reservation(
            user or self.user,
            self.resource.id,
            start or at(10),
            end or at(11),
            kwargs.pop("purpose", Reservation.Purpose.TRAINING),
            **kwargs,
        )

    def test_create_confirms_audits_and_notifies(self):
        with self.captureOnCommitCallbacks(execute=True):
            reservation = self.book(notes="Young horse")

        self.assertEqual(reservation.status, Reservation.Status.CONFIRMED)
        entry = AuditLogEntry.objects.get(entity_type="Reservation", entity_id=str(reservation.id))
        self.assertEqual(entry.action, AuditLogEntry.Action.CREATE)
        self.assertEqual(entry.actor, self.user)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["anna@example.com"])

    def test_end_must_follow_start(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self.book(start=at(11), end=at(11))
        self.assertIn("end_time", ctx.exception.errors)
        self.assertFalse(Reservation.objects.exists())

    def test_notes_length_is_limited(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self.book(notes="x" * 501)
        self.assertIn("notes", ctx.exception.errors)

    def test_unknown_purpose_is_rejected(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self.book(purpose="JUMPING")
        self.assertIn("purpose", ctx.exception.errors)

    def test_inactive_resource_cannot_be_booked(self):
        self.resource.is_active = False
        self.resource.save()
        with self.assertRaises(ValidationFailed) as ctx:
            self.book()
        self.assertIn("resource_id", ctx.exception.errors)

    def test_disabled_user_cannot_book(self):
        self.user.status = User.Status.DISABLED
        self.user.save()
        with self.assertRaises(PermissionDenied):
            self.book()

    def test_block_is_a_hard_stop_even_when_acknowledged(self):
        Block.objects.create(
            resource=self.resource, reason="Farrier", start_time=at(9), end_time=at(12),
            created_by=self.admin,
        )
        with self.assertRaises(TimeBlocked) as ctx:
            self.book(acknowledge_overlap=True)
        self.assertEqual(ctx.exception.block.reason, "Farrier")
        self.assertFalse(Reservation.objects.exists())

    def test_touching_block_does_not_stop_booking(self):
        Block.objects.create(
            resource=self.resource, reason="Farrier", start_time=at(11), end_time=at(12),
            created_by=self.admin,
        )
        self.assertEqual(self.book().status, Reservation.Status.CONFIRMED)

    def test_overlap_requires_acknowledgement_every_time(self):
        existing = self.book()

        for _ in range(2):
            with self.assertRaises(OverlapExists) as ctx:
                self.book(user=self.other, start=at(10, 30), end=at(11, 30))
            self.assertEqual([r.id for r in ctx.exception.reservations], [existing.id])
        self.assertEqual(Reservation.objects.count(), 1)

        second = self.book(user=self.other, start=at(10, 30), end=at(11, 30), acknowledge_overlap=True)
        self.assertEqual(second.status, Reservation.Status.CONFIRMED)
        self.assertEqual(Reservation.objects.count(), 2)

    def test_update_excludes_own_reservation_from_overlap_check(self):
        reservation = self.book()
        updated = update_reservation(reservation.id, self.user, {"end_time": at(11, 30)})
        self.assertEqual(updated.end_time, at(11, 30))

        entry = AuditLogEntry.objects.filter(action=AuditLogEntry.Action.UPDATE).get()
        self.assertEqual(datetime.fromisoformat(entry.changes["before"]["end_time"]), at(11))
        self.assertEqual(datetime.fromisoformat(entry.changes["after"]["end_time"]), at(11, 30))

    def test_update_into_another_reservation_is_a_soft_conflict(self):
        self.book(user=self.other, start=at(12), end=at(13))
        reservation = self.book()

        with self.assertRaises(OverlapExists):
            update_reservation(reservation.id, self.user, {"start_time": at(12), "end_time": at(13)})

        moved = update_reservation(
            reservation.id,
            self.user,
            {"start_time": at(12), "end_time": at(13), "acknowledge_overlap": True},
        )
        self.assertEqual(moved.start_time, at(12))

    def test_update_requires_owner_or_admin(self):
        reservation = self.book()
        with self.assertRaises(PermissionDenied):
            update_reservation(reservation.id, self.other, {"notes": "mine now"})

        updated = update_reservation(reservation.id, self.admin, {"notes": "checked"}, is_admin=True)
        self.assertEqual(updated.notes, "checked")

    def test_update_of_missing_reservation(self):
        with self.assertRaises(NotFound):
            update_reservation(999999, self.user, {"notes": "x"})

    def test_impacted_reservation_moved_to_clear_window_is_confirmed(self):
        reservation = self.book()
        create_block(self.admin, self.resource.id, "Show", at(9), at(12), confirm_conflicts=True)
        reservation.refresh_from_db()
        self.assertEqual(reservation.status, Reservation.Status.IMPACTED)

        moved = update_reservation(reservation.id, self.user, {"start_time": at(14), "end_time": at(15)})
        self.assertEqual(moved.status, Reservation.Status.CONFIRMED)

    def test_move_to_another_resource(self):
        arena = Resource.objects.create(name="Outdoor arena", slug="outdoor")
        reservation = self.book()

        with mock.patch("booking.services.lock_resources", wraps=lock_resources) as lock:
            moved = update_reservation(reservation.id, self.user, {"resource_id": arena.id})

        self.assertEqual(moved.resource, arena)
        self.assertEqual(lock.call_args.args[0], {self.resource.id, arena.id})
        entry = AuditLogEntry.objects.get(action=AuditLogEntry.Action.UPDATE)
        self.assertEqual(entry.changes["before"]["resource_id"], self.resource.id)
        self.assertEqual(entry.changes["after"]["resource_id"], arena.id)

    def test_move_to_inactive_resource_is_rejected(self):
        arena = Resource.objects.create(name="Outdoor arena", slug="outdoor", is_active=False)
        reservation = self.book()

        with self.assertRaises(ValidationFailed) as ctx:
            update_reservation(reservation.id, self.user, {"resource_id": arena.id})

        self.assertIn("resource_id", ctx.exception.errors)
        reservation.refresh_from_db()
        self.assertEqual(reservation.resource, self.resource)

    def test_reservation_moved_while_waiting_for_lock(self):
        arena = Resource.objects.create(name="Outdoor arena", slug="outdoor")
        reservation = self.book()

        def move_then_lock(resource_ids):
            Reservation.objects.filter(pk=reservation.pk).update(resource=arena)
            return lock_resources(resource_ids)

        with mock.patch("booking.services.lock_resources", side_effect=move_then_lock):
            with self.assertRaises(InvalidStateTransition):
                cancel_reservation(reservation.id, self.user)

        reservation.refresh_from_db()
        self.assertEqual(reservation.status, Reservation.Status.CONFIRMED)

    def test_notification_failure_keeps_reservation(self):
        with mock.patch(
            "notifications.services.reservation_payload", side_effect=AttributeError("user")
        ):
            with self.assertLogs("notifications.services", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    reservation = self.book()

        self.assertTrue(Reservation.objects.filter(pk=reservation.pk).exists())
        self.assertEqual(len(mail.outbox), 0)

    def test_cancel_sets_metadata_and_notifies(self):
        reservation = self.book()
        mail.outbox.clear()

        with self.captureOnCommitCallbacks(execute=True):
            cancelled = cancel_reservation(reservation.id, self.user)

        self.assertEqual(cancelled.status, Reservation.Status.CANCELLED)
        self.assertIsNotNone(cancelled.cancelled_at)
        self.assertEqual(cancelled.cancel_reason, "Cancelled by user")
        self.assertEqual(len(mail.outbox), 1)
        self.assertTrue(
            AuditLogEntry.objects.filter(
                action=AuditLogEntry.Action.CANCEL, entity_id=str(reservation.id)
            ).exists()
        )

    def test_cancelled_reservation_is_terminal(self):
        reservation = self.book()
        cancel_reservation(reservation.id, self.user, reason="Ill")

        with self.assertRaises(InvalidStateTransition):
            cancel_reservation(reservation.id, self.user, reason="Again")
        with self.assertRaises(InvalidStateTransition):
            update_reservation(reservation.id, self.user, {"notes": "x"})

        reservation.refresh_from_db()
        self.assertEqual(reservation.cancel_reason, "Ill")

    def test_cancel_by_stranger_is_denied(self):
        reservation = self.book()
        with self.assertRaises(PermissionDenied):
            cancel_reservation(reservation.id, self.other)
        self.assertEqual(cancel_reservation(reservation.id, self.admin, is_admin=True).status, "CANCELLED")

    def test_viewer_access(self):
        reservation = self.book()
        self.assertEqual(get_reservation_for_viewer(reservation.id, self.user), reservation)
        self.assertEqual(get_reservation_for_viewer(reservation.id, self.admin, is_admin=True), reservation)
        with self.assertRaises(PermissionDenied):
            get_reservation_for_viewer(reservation.id, self.other)

    def test_calendar_shows_names_but_keeps_notes_private(self):
        mine = self.book(notes="Dressage test")
        theirs = self.book(user=self.other, start=at(12), end=at(13), notes="Secret")
        gone = self.book(start=at(14), end=at(15))
        cancel_reservation(gone.id, self.user)

        rows = get_reservations_for_calendar(self.resource.id, at(0), at(23), viewer_id=self.user.id)

        self.assertEqual([row["id"] for row in rows], [mine.id, theirs.id])
        self.assertEqual(rows[0]["notes"], "Dressage test")
        self.assertTrue(rows[0]["is_own"])
        self.assertIsNone(rows[1]["notes"])
        self.assertEqual(rows[1]["user_name"], "Bob")

    def test_own_reservations_hide_cancelled_unless_history(self):
        kept = self.book()
        gone = self.book(start=at(14), end=at(15))
        cancel_reservation(gone.id, self.user)

        self.assertEqual(list(get_user_reservations(self.user)), [kept])
        self.assertEqual(set(get_user_reservations(self.user, include_history=True)), {kept, gone})


@override_settings(TELEGRAM_BOT_TOKEN=None)
class ReservationScenarioTestCase(TestCase):
    """Подтверждение пересечения, блокировка и восстановление на одной площадке."""

    def setUp(self):
        self.anna = User.objects.create_user(email="anna@example.com", password="x", name="Anna")
        self.bob = User.objects.create_user(email="bob@example.com", password="x", name="Bob")
        self.admin = User.objects.create_user(
            email="admin@example.com", password="x", name="Admin", role=User.Role.ADMIN
        )
        self.resource = Resource.objects.create(name="Indoor hall", slug="indoor")

    def test_full_cycle(self):
        x = create_reservation(self.anna, self.resource.id, at(10), at(11), "TRAINING")

        with self.assertRaises(OverlapExists) as ctx:
            create_reservation(self.bob, self.resource.id, at(10, 30), at(11, 30), "LESSON")
        self.assertEqual(ctx.exception.reservations, [x])

        y = create_reservation(
            self.bob, self.resource.id, at(10, 30), at(11, 30), "LESSON", acknowledge_overlap=True
        )
        x.refresh_from_db()
        self.assertEqual({x.status, y.status}, {Reservation.Status.CONFIRMED})

        mail.outbox.clear()
        with self.captureOnCommitCallbacks(execute=True):
            block, conflicts = create_block(
                self.admin, self.resource.id, "Competition", at(10), at(12), confirm_conflicts=True
            )

        self.assertEqual(len(conflicts), 2)
        self.assertEqual(
            set(Reservation.objects.values_list("status", flat=True)), {Reservation.Status.IMPACTED}
        )
        self.assertEqual(sorted(m.to[0] for m in mail.outbox), ["anna@example.com", "bob@example.com"])

        result = delete_block(block.id, self.admin)

        self.assertEqual(result, {"deleted_id": block.id, "restored_reservations": 2})
        self.assertEqual(
            set(Reservation.objects.values_list("status", flat=True)), {Reservation.Status.CONFIRMED}
        )
