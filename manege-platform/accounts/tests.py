from datetime import timedelta
from unittest import mock

from django.test import TestCase
from django.utils import timezone

from audit.models import AuditLogEntry
from booking.exceptions import InvalidStateTransition, NotFound, ValidationFailed
from booking.models import Reservation
from halls.models import Resource
from halls.services import lock_resources
from .models import User
from .services import (
    disable_user,
    enable_user,
    get_all_users,
    get_user_by_id,
    get_user_cancellation_history,
    update_user_role,
)


class UserModelTestCase(TestCase):

    def test_create_user_uses_email_as_login(self):
        user = User.objects.create_user(email="Anna@Example.com", password="secret", name="Anna")

        self.assertEqual(user.email, "Anna@example.com")
        self.assertTrue(user.check_password("secret"))
        self.assertEqual(user.role, User.Role.USER)
        self.assertEqual(user.status, User.Status.ACTIVE)
        self.assertFalse(user.is_admin)

    def test_create_superuser_is_admin(self):
        admin = User.objects.create_superuser(email="root@example.com", password="secret", name="Root")
        self.assertTrue(admin.is_admin)
        self.assertTrue(admin.is_staff)


class UserStatusCascadeTestCase(TestCase):

    def setUp(self):
        self.admin = User.objects.create_user(
            email="admin@example.com", password="x", name="Admin", role=User.Role.ADMIN
        )
        self.user = User.objects.create_user(email="anna@example.com", password="x", name="Anna")
        self.resource = Resource.objects.create(name="Indoor hall", slug="indoor")

        now = timezone.now()
        self.future = [self.reserve(now + timedelta(days=d)) for d in (1, 2, 3)]
        self.past = [self.reserve(now - timedelta(days=d)) for d in (1, 2)]

    def reserve(self, start, user=None):
        return Reservation.objects.create(
            resource=self.resource,
            user=user or self.user,
            start_time=start,
            end_time=start + timedelta(hours=1),
            purpose=Reservation.Purpose.TRAINING,
        )

    def test_disable_cancels_only_future_reservations(self):
        user, cancelled = disable_user(self.user.id, self.admin, reason="Unpaid fees")

        self.assertEqual(cancelled, 3)
        self.assertEqual(user.status, User.Status.DISABLED)
        self.assertFalse(user.is_active)

        for reservation in self.future:
            reservation.refresh_from_db()
            self.assertEqual(reservation.status, Reservation.Status.CANCELLED)
            self.assertEqual(reservation.cancel_reason, "Unpaid fees")
            self.assertIsNotNone(reservation.cancelled_at)
        for reservation in self.past:
            reservation.refresh_from_db()
            self.assertEqual(reservation.status, Reservation.Status.CONFIRMED)

    def test_disable_locks_resources_of_upcoming_reservations(self):
        arena = Resource.objects.create(name="Outdoor arena", slug="outdoor")
        elsewhere = self.reserve(timezone.now() + timedelta(days=4))
        Reservation.objects.filter(pk=elsewhere.pk).update(resource=arena)

        with mock.patch("accounts.services.lock_resources", wraps=lock_resources) as lock:
            _, cancelled = disable_user(self.user.id, self.admin)

        self.assertEqual(cancelled, 4)
        self.assertEqual(set(lock.call_args.args[0]), {self.resource.id, arena.id})

    def test_disable_writes_summary_and_per_reservation_audit(self):
        disable_user(self.user.id, self.admin)

        summary = AuditLogEntry.objects.get(action=AuditLogEntry.Action.DISABLE)
        self.assertEqual(summary.entity_id, str(self.user.id))
        self.assertEqual(summary.changes["cancelled_reservations"], 3)
        self.assertEqual(summary.changes["reason"], "Account disabled by an administrator")
        self.assertEqual(
            AuditLogEntry.objects.filter(action=AuditLogEntry.Action.CANCEL).count(), 3
        )

    def test_disable_leaves_other_users_alone(self):
        other = User.objects.create_user(email="bob@example.com", password="x", name="Bob")
        theirs = self.reserve(timezone.now() + timedelta(days=1), user=other)

        disable_user(self.user.id, self.admin)

        theirs.refresh_from_db()
        self.assertEqual(theirs.status, Reservation.Status.CONFIRMED)

    def test_second_disable_fails_without_changes(self):
        disable_user(self.user.id, self.admin)
        entries = AuditLogEntry.objects.count()

        with self.assertRaises(InvalidStateTransition):
            disable_user(self.user.id, self.admin)
        self.assertEqual(AuditLogEntry.objects.count(), entries)

    def test_enable_does_not_restore_reservations(self):
        disable_user(self.user.id, self.admin)

        user = enable_user(self.user.id, self.admin)

        self.assertEqual(user.status, User.Status.ACTIVE)
        self.assertTrue(user.is_active)
        self.assertEqual(
            Reservation.objects.filter(user=user, status=Reservation.Status.CANCELLED).count(), 3
        )
        entry = AuditLogEntry.objects.filter(action=AuditLogEntry.Action.UPDATE).get()
        self.assertEqual(entry.changes, {"field": "status", "from": "DISABLED", "to": "ACTIVE"})

        with self.assertRaises(InvalidStateTransition):
            enable_user(self.user.id, self.admin)

    def test_cancellation_history(self):
        disable_user(self.user.id, self.admin)
        history = list(get_user_cancellation_history(self.user.id))
        self.assertEqual({r.id for r in history}, {r.id for r in self.future})

    def test_missing_user(self):
        with self.assertRaises(NotFound):
            disable_user(999999, self.admin)
        with self.assertRaises(NotFound):
            get_user_by_id(999999)


class UserRoleTestCase(TestCase):

    def setUp(self):
        self.admin = User.objects.create_user(
            email="admin@example.com", password="x", name="Admin", role=User.Role.ADMIN
        )
        self.user = User.objects.create_user(email="anna@example.com", password="x", name="Anna")

    def test_role_change_is_audited(self):
        user = update_user_role(self.user.id, self.admin, User.Role.ORGANIZER)

        self.assertEqual(user.role, User.Role.ORGANIZER)
        entry = AuditLogEntry.objects.get(entity_type="User")
        self.assertEqual(entry.changes, {"field": "role", "from": "USER", "to": "ORGANIZER"})

    def test_unknown_role_is_rejected(self):
        with self.assertRaises(ValidationFailed):
            update_user_role(self.user.id, self.admin, "OWNER")

    def test_listing_counts_confirmed_reservations(self):
        resource = Resource.objects.create(name="Indoor hall", slug="indoor")
        start = timezone.now() + timedelta(days=1)
        for status in (Reservation.Status.CONFIRMED, Reservation.Status.CONFIRMED, Reservation.Status.CANCELLED):
            Reservation.objects.create(
                resource=resource,
                user=self.user,
                start_time=start,
                end_time=start + timedelta(hours=1),
                purpose=Reservation.Purpose.OTHER,
                status=status,
            )

        counts = {u.email: u.confirmed_reservations for u in get_all_users()}
        self.assertEqual(counts, {"admin@example.com": 0, "anna@example.com": 2})
