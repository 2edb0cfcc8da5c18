from datetime import datetime, time, timedelta

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from audit.models import AuditLogEntry
from booking.models import Reservation
from events.models import Event
from halls.models import Block, Resource

User = get_user_model()


def at(hour, minute=0, days=3):
    day = timezone.localdate() + timedelta(days=days)
    return timezone.make_aware(datetime.combine(day, time(hour, minute)))


@override_settings(TELEGRAM_BOT_TOKEN=None)
class ApiTestCase(TestCase):

    def setUp(self):
        self.anna = User.objects.create_user(email="anna@example.com", password="x", name="Anna")
        self.bob = User.objects.create_user(email="bob@example.com", password="x", name="Bob")
        self.admin = User.objects.create_user(
            email="admin@example.com", password="x", name="Admin", role=User.Role.ADMIN
        )
        self.resource = Resource.objects.create(name="Indoor hall", slug="indoor")
        Resource.objects.create(name="Outdoor arena", slug="outdoor", is_active=False)

        self.client = APIClient()
        self.client.force_authenticate(self.anna)

    def as_user(self, user):
        self.client.force_authenticate(user)

    def reserve(self, user, start, end):
        return Reservation.objects.create(
            resource=self.resource,
            user=user,
            start_time=start,
            end_time=end,
            purpose=Reservation.Purpose.TRAINING,
        )

    def booking_body(self, start, end, **extra):
        return {
            "resource_id": self.resource.id,
            "start_time": start.isoformat(),
            "end_time": end.isoformat(),
            "purpose": "TRAINING",
            **extra,
        }


class MemberApiTestCase(ApiTestCase):

    def test_anonymous_is_refused(self):
        self.client.force_authenticate(None)
        response = self.client.get(reverse("api:reservation-list"))
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_disabled_member_is_refused(self):
        self.anna.status = User.Status.DISABLED
        self.anna.save()
        response = self.client.get(reverse("api:resource-list"))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_resources_lists_active_only(self):
        response = self.client.get(reverse("api:resource-list"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([r["slug"] for r in response.json()], ["indoor"])

    def test_create_reservation(self):
        response = self.client.post(
            reverse("api:reservation-list"), self.booking_body(at(10), at(11)), format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        body = response.json()["reservation"]
        self.assertEqual(body["status"], "CONFIRMED")
        self.assertEqual(body["user_name"], "Anna")

    def test_invalid_window_is_400(self):
        response = self.client.post(
            reverse("api:reservation-list"), self.booking_body(at(11), at(10)), format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("end_time", response.json())

    def test_overlap_is_a_warning_until_acknowledged(self):
        self.reserve(self.bob, at(10), at(11))
        url = reverse("api:reservation-list")

        response = self.client.post(url, self.booking_body(at(10, 30), at(11, 30)), format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body = response.json()
        self.assertEqual(body["error"], "OVERLAP_EXISTS")
        self.assertTrue(body["requires_acknowledge"])
        self.assertEqual(body["overlaps"][0]["user_name"], "Bob")
        self.assertEqual(Reservation.objects.count(), 1)

        response = self.client.post(
            url, self.booking_body(at(10, 30), at(11, 30), acknowledge_overlap=True), format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(Reservation.objects.count(), 2)

    def test_blocked_time_is_409(self):
        Block.objects.create(
            resource=self.resource, reason="Farrier", start_time=at(9), end_time=at(12),
            created_by=self.admin,
        )
        response = self.client.post(
            reverse("api:reservation-list"),
            self.booking_body(at(10), at(11), acknowledge_overlap=True),
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        body = response.json()
        self.assertEqual(body["error"], "TIME_BLOCKED")
        self.assertEqual(body["block"]["reason"], "Farrier")

    def test_detail_permissions(self):
        reservation = self.reserve(self.bob, at(10), at(11))
        url = reverse("api:reservation-detail", args=[reservation.id])

        self.assertEqual(self.client.get(url).status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(
            self.client.get(reverse("api:reservation-detail", args=[999999])).status_code,
            status.HTTP_404_NOT_FOUND,
        )

        self.as_user(self.admin)
        self.assertEqual(self.client.get(url).status_code, status.HTTP_200_OK)

    def test_update_and_cancel(self):
        reservation = self.reserve(self.anna, at(10), at(11))
        url = reverse("api:reservation-detail", args=[reservation.id])

        response = self.client.patch(url, {"notes": "Bring cones"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["reservation"]["notes"], "Bring cones")

        response = self.client.delete(f"{url}?reason=Lame%20horse")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["reservation"]["cancel_reason"], "Lame horse")

        response = self.client.delete(url)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()["error"], "INVALID_STATE")

    def test_history_flag(self):
        self.reserve(self.anna, at(10), at(11))
        cancelled = self.reserve(self.anna, at(12), at(13))
        cancelled.status = Reservation.Status.CANCELLED
        cancelled.save()
        url = reverse("api:reservation-list")

        self.assertEqual(len(self.client.get(url).json()), 1)
        self.assertEqual(len(self.client.get(url, {"history": "true"}).json()), 2)

    def test_check_overlaps(self):
        self.reserve(self.bob, at(10), at(11))
        response = self.client.get(
            reverse("api:reservation-check-overlaps"),
            {
                "resource_id": self.resource.id,
                "start_time": at(10, 30).isoformat(),
                "end_time": at(11, 30).isoformat(),
            },
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body = response.json()
        self.assertFalse(body["has_block"])
        self.assertTrue(body["has_overlaps"])
        self.assertIsNone(body["block"])
        self.assertEqual(len(body["overlapping_reservations"]), 1)

    def test_calendar(self):
        self.reserve(self.anna, at(10), at(11))
        other = self.reserve(self.bob, at(12), at(13))
        other.notes = "Private"
        other.save()
        Block.objects.create(
            resource=self.resource, reason="Vet", start_time=at(15), end_time=at(16),
            created_by=self.admin,
        )

        response = self.client.get(
            reverse("api:calendar"),
            {"resource_id": self.resource.id, "start": at(0).isoformat(), "end": at(23).isoformat()},
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body = response.json()
        self.assertEqual([r["is_own"] for r in body["reservations"]], [True, False])
        self.assertIsNone(body["reservations"][1]["notes"])
        self.assertEqual(body["blocks"][0]["reason"], "Vet")

        self.assertEqual(
            self.client.get(reverse("api:calendar")).status_code, status.HTTP_400_BAD_REQUEST
        )


class AdminApiTestCase(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.as_user(self.admin)

    def block_body(self, start, end, **extra):
        return {
            "resource_id": self.resource.id,
            "reason": "Competition",
            "start_time": start.isoformat(),
            "end_time": end.isoformat(),
            **extra,
        }

    def test_members_cannot_use_admin_endpoints(self):
        self.as_user(self.anna)
        for name in ("api:admin-block-list", "api:admin-reservation-list", "api:admin-user-list", "api:admin-audit"):
            with self.subTest(name=name):
                self.assertEqual(self.client.get(reverse(name)).status_code, status.HTTP_403_FORBIDDEN)

    def test_block_conflicts_then_confirm(self):
        reservation = self.reserve(self.anna, at(10), at(11))
        url = reverse("api:admin-block-list")

        response = self.client.post(url, self.block_body(at(9), at(12)), format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body = response.json()
        self.assertEqual(body["error"], "CONFLICTS_EXIST")
        self.assertTrue(body["requires_confirmation"])
        self.assertEqual(body["conflicts"][0]["reservation_id"], reservation.id)
        self.assertFalse(Block.objects.exists())

        response = self.client.post(
            url, self.block_body(at(9), at(12), confirm_conflicts=True), format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.json()["impacted_reservations"], 1)
        block_id = response.json()["block"]["id"]

        response = self.client.delete(reverse("api:admin-block-detail", args=[block_id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), {"deleted_id": block_id, "restored_reservations": 1})

        self.assertEqual(
            self.client.delete(reverse("api:admin-block-detail", args=[block_id])).status_code,
            status.HTTP_404_NOT_FOUND,
        )

    def test_block_update(self):
        block = Block.objects.create(
            resource=self.resource, reason="Vet", start_time=at(9), end_time=at(10),
            created_by=self.admin,
        )
        response = self.client.patch(
            reverse("api:admin-block-detail", args=[block.id]), {"reason": "Farrier"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["reason"], "Farrier")

    def test_reservation_listing_by_status(self):
        self.reserve(self.anna, at(10), at(11))
        impacted = self.reserve(self.bob, at(12), at(13))
        impacted.status = Reservation.Status.IMPACTED
        impacted.save()

        response = self.client.get(reverse("api:admin-reservation-list"), {"status": "IMPACTED"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([r["id"] for r in response.json()], [impacted.id])

    def test_disable_and_enable_user(self):
        self.reserve(self.anna, timezone.now() + timedelta(days=1), timezone.now() + timedelta(days=1, hours=1))
        url = reverse("api:admin-user-detail", args=[self.anna.id])

        response = self.client.patch(url, {"status": "DISABLED", "reason": "Left the club"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["cancelled_reservations"], 1)
        self.assertEqual(response.json()["user"]["status"], "DISABLED")

        response = self.client.patch(url, {"status": "DISABLED"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.patch(url, {"status": "ACTIVE"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["user"]["status"], "ACTIVE")

        self.assertEqual(
            self.client.patch(
                reverse("api:admin-user-detail", args=[999999]), {"role": "ADMIN"}, format="json"
            ).status_code,
            status.HTTP_404_NOT_FOUND,
        )

    def test_role_change(self):
        response = self.client.patch(
            reverse("api:admin-user-detail", args=[self.bob.id]), {"role": "ORGANIZER"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["user"]["role"], "ORGANIZER")

    def test_audit_query(self):
        self.client.post(
            reverse("api:admin-block-list"), self.block_body(at(9), at(10)), format="json"
        )

        response = self.client.get(reverse("api:admin-audit"), {"entity_type": "Block", "limit": 10})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        body = response.json()
        self.assertEqual(body["total"], 1)
        self.assertFalse(body["has_more"])
        self.assertEqual(body["logs"][0]["action"], "CREATE")
        self.assertEqual(body["logs"][0]["actor_name"], "Admin")
        self.assertEqual(AuditLogEntry.objects.count(), 1)


class EventApiTestCase(ApiTestCase):

    def setUp(self):
        super().setUp()
        self.open_day = Event.objects.create(
            title="Open day", start_time=at(10), end_time=at(16), created_by=self.admin
        )
        self.clinic = Event.objects.create(
            title="Members clinic", start_time=at(10, days=4), end_time=at(12, days=4),
            visibility=Event.Visibility.MEMBERS, created_by=self.admin,
        )
        self.meeting = Event.objects.create(
            title="Board meeting", start_time=at(19), end_time=at(21),
            visibility=Event.Visibility.ADMIN, created_by=self.admin,
        )
        self.open_day.resources.set([self.resource])

    def titles(self, response):
        return [event["title"] for event in response.json()["events"]]

    def test_anonymous_sees_public_events_only(self):
        self.client.force_authenticate(None)

        response = self.client.get(reverse("api:event-list"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(self.titles(response), ["Open day"])
        self.assertEqual(response.json()["events"][0]["resources"], [{"id": self.resource.id, "name": "Indoor hall"}])

        public = self.client.get(reverse("api:event-public-list"))
        self.assertEqual(self.titles(public), ["Open day"])

        hidden = self.client.get(reverse("api:event-detail", args=[self.clinic.id]))
        self.assertEqual(hidden.status_code, status.HTTP_403_FORBIDDEN)

    def test_visibility_follows_role(self):
        member = self.client.get(reverse("api:event-list"))
        self.assertEqual(self.titles(member), ["Open day", "Members clinic"])
        self.assertEqual(
            self.titles(self.client.get(reverse("api:event-list"), {"public": "true"})), ["Open day"]
        )

        self.as_user(self.admin)
        admin = self.client.get(reverse("api:event-list"))
        self.assertEqual(self.titles(admin), ["Open day", "Board meeting", "Members clinic"])

    def test_filter_by_resource(self):
        response = self.client.get(reverse("api:event-list"), {"resource_id": self.resource.id})
        self.assertEqual(self.titles(response), ["Open day"])

    def test_admin_crud_is_audited(self):
        self.as_user(self.admin)

        response = self.client.post(
            reverse("api:admin-event-list"),
            {
                "title": "Dressage competition",
                "start_time": at(9, days=5).isoformat(),
                "end_time": at(17, days=5).isoformat(),
                "resource_ids": [self.resource.id],
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        event_id = response.json()["id"]
        self.assertEqual(response.json()["visibility"], "PUBLIC")

        response = self.client.patch(
            reverse("api:admin-event-detail", args=[event_id]),
            {"visibility": "MEMBERS", "resource_ids": []},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["visibility"], "MEMBERS")
        self.assertEqual(response.json()["resources"], [])

        response = self.client.delete(reverse("api:admin-event-detail", args=[event_id]))
        self.assertEqual(response.json(), {"deleted_id": event_id})

        actions = list(
            AuditLogEntry.objects.filter(entity_type="Event", entity_id=str(event_id))
            .order_by("id")
            .values_list("action", flat=True)
        )
        self.assertEqual(actions, ["CREATE", "UPDATE", "DELETE"])

    def test_unknown_resource_is_400(self):
        self.as_user(self.admin)
        response = self.client.post(
            reverse("api:admin-event-list"),
            {
                "title": "Clinic",
                "start_time": at(9).isoformat(),
                "end_time": at(10).isoformat(),
                "resource_ids": [999999],
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("resource_ids", response.json()["errors"])

    def test_members_cannot_manage_events(self):
        response = self.client.delete(reverse("api:admin-event-detail", args=[self.open_day.id]))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertTrue(Event.objects.filter(pk=self.open_day.id).exists())
