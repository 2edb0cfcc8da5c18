from datetime import datetime, time, timedelta

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.test import TestCase
from django.utils import timezone

from audit.models import AuditLogEntry
from booking.exceptions import NotFound, PermissionDenied, ValidationFailed
from halls.models import Resource
from .models import Event
from .services import (
    create_event,
    delete_event,
    get_event_for_viewer,
    get_events,
    get_public_events,
    update_event,
    visible_to,
)

User = get_user_model()


def at(hour, minute=0, days=3):
    day = timezone.localdate() + timedelta(days=days)
    return timezone.make_aware(datetime.combine(day, time(hour, minute)))


class EventLifecycleTestCase(TestCase):

    def setUp(self):
        self.admin = User.objects.create_user(
            email="admin@example.com", password="x", name="Admin", role=User.Role.ADMIN
        )
        self.anna = User.objects.create_user(email="anna@example.com", password="x", name="Anna")
        self.indoor = Resource.objects.create(name="Indoor hall", slug="indoor")
        self.outdoor = Resource.objects.create(name="Outdoor arena", slug="outdoor")

    def test_create_links_resources_and_audits(self):
        event = create_event(
            self.admin,
            "Show jumping",
            at(9),
            at(17),
            description="Regional qualifier",
            resource_ids=[self.outdoor.id, self.indoor.id],
        )

        self.assertEqual(event.visibility, Event.Visibility.PUBLIC)
        self.assertEqual(set(event.resources.all()), {self.indoor, self.outdoor})

        entry = AuditLogEntry.objects.get(entity_type="Event")
        self.assertEqual(entry.action, AuditLogEntry.Action.CREATE)
        self.assertEqual(entry.entity_id, str(event.id))
        self.assertEqual(entry.changes["title"], "Show jumping")
        self.assertEqual(entry.changes["resource_ids"], sorted([self.indoor.id, self.outdoor.id]))

    def test_validation(self):
        with self.assertRaises(ValidationFailed) as ctx:
            create_event(self.admin, " ", at(12), at(11), visibility="SECRET")
        self.assertEqual(set(ctx.exception.errors), {"title", "end_time", "visibility"})

        with self.assertRaises(ValidationFailed) as ctx:
            create_event(self.admin, "Clinic", at(9), at(10), resource_ids=[999999])
        self.assertIn("resource_ids", ctx.exception.errors)

        self.assertFalse(Event.objects.exists())
        self.assertFalse(AuditLogEntry.objects.exists())

    def test_update_merges_fields_and_replaces_resources(self):
        event = create_event(self.admin, "Clinic", at(9), at(10), resource_ids=[self.indoor.id])

        updated = update_event(
            event.id,
            self.admin,
            {"title": "Dressage clinic", "end_time": at(12), "resource_ids": [self.outdoor.id]},
        )

        self.assertEqual(updated.title, "Dressage clinic")
        self.assertEqual(updated.start_time, at(9))
        self.assertEqual(list(updated.resources.all()), [self.outdoor])

        entry = AuditLogEntry.objects.get(action=AuditLogEntry.Action.UPDATE)
        self.assertEqual(entry.changes["before"]["title"], "Clinic")
        self.assertEqual(entry.changes["after"]["title"], "Dressage clinic")

        with self.assertRaises(ValidationFailed):
            update_event(event.id, self.admin, {"end_time": at(8)})

    def test_update_without_resources_keeps_them(self):
        event = create_event(self.admin, "Clinic", at(9), at(10), resource_ids=[self.indoor.id])
        update_event(event.id, self.admin, {"visibility": Event.Visibility.MEMBERS})
        self.assertEqual(list(event.resources.all()), [self.indoor])

    def test_delete_is_audited(self):
        event = create_event(self.admin, "Clinic", at(9), at(10), resource_ids=[self.indoor.id])

        self.assertEqual(delete_event(event.id, self.admin), {"deleted_id": event.id})

        self.assertFalse(Event.objects.exists())
        self.assertTrue(Resource.objects.filter(pk=self.indoor.id).exists())
        entry = AuditLogEntry.objects.get(action=AuditLogEntry.Action.DELETE)
        self.assertEqual(entry.changes, {"title": "Clinic", "visibility": "PUBLIC"})

        with self.assertRaises(NotFound):
            delete_event(event.id, self.admin)
        with self.assertRaises(NotFound):
            update_event(event.id, self.admin, {"title": "Again"})


class EventVisibilityTestCase(TestCase):

    def setUp(self):
        self.admin = User.objects.create_user(
            email="admin@example.com", password="x", name="Admin", role=User.Role.ADMIN
        )
        self.anna = User.objects.create_user(email="anna@example.com", password="x", name="Anna")
        self.indoor = Resource.objects.create(name="Indoor hall", slug="indoor")

        self.public = create_event(self.admin, "Open day", at(10), at(16), resource_ids=[self.indoor.id])
        self.members = create_event(
            self.admin, "Members clinic", at(10, days=4), at(12, days=4),
            visibility=Event.Visibility.MEMBERS,
        )
        self.staff = create_event(
            self.admin, "Board meeting", at(19), at(21), visibility=Event.Visibility.ADMIN
        )
        self.past = create_event(self.admin, "Last show", at(9, days=-5), at(17, days=-5))

    def test_visibility_by_role(self):
        self.assertEqual(visible_to(AnonymousUser()), ["PUBLIC"])
        self.assertEqual(visible_to(self.anna), ["PUBLIC", "MEMBERS"])
        self.assertEqual(visible_to(self.admin), ["PUBLIC", "MEMBERS", "ADMIN"])

        self.anna.status = User.Status.DISABLED
        self.assertEqual(visible_to(self.anna), ["PUBLIC"])

    def test_public_events_hide_past_and_restricted(self):
        self.assertEqual(list(get_public_events()), [self.public])
        self.assertEqual(list(get_public_events(start=at(0, days=4))), [])

    def test_listing_filters(self):
        self.assertEqual(
            list(get_events(visibility=visible_to(self.anna))), [self.public, self.members]
        )
        self.assertEqual(list(get_events(resource_id=self.indoor.id)), [self.public])
        self.assertEqual(list(get_events(end=at(23))), [self.public, self.staff])
        self.assertIn(self.past, get_events(include_expired=True))

    def test_viewer_access(self):
        self.assertEqual(get_event_for_viewer(self.public.id, AnonymousUser()), self.public)
        self.assertEqual(get_event_for_viewer(self.members.id, self.anna), self.members)
        with self.assertRaises(PermissionDenied):
            get_event_for_viewer(self.members.id, AnonymousUser())
        with self.assertRaises(PermissionDenied):
            get_event_for_viewer(self.staff.id, self.anna)
        with self.assertRaises(NotFound):
            get_event_for_viewer(999999, self.admin)
