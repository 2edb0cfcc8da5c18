from django.contrib.auth import get_user_model
from django.test import TestCase

from .models import AuditLogEntry
from .services import Action, EntityType, get_audit_logs, get_entity_history, record

User = get_user_model()


class AuditTrailTestCase(TestCase):

    def setUp(self):
        self.admin = User.objects.create_user(email="admin@example.com", password="x", name="Admin")
        self.user = User.objects.create_user(email="anna@example.com", password="x", name="Anna")

    def test_entries_are_append_only(self):
        entry = record(self.admin, Action.CREATE, EntityType.BLOCK, 7, {"reason": "Show"})

        self.assertEqual(entry.entity_id, "7")
        entry.changes = {"reason": "Changed"}
        with self.assertRaises(ValueError):
            entry.save()
        with self.assertRaises(ValueError):
            entry.delete()

        self.assertEqual(AuditLogEntry.objects.get().changes, {"reason": "Show"})

    def test_query_filters_and_paging(self):
        for i in range(5):
            record(self.admin, Action.UPDATE, EntityType.RESERVATION, i)
        record(self.user, Action.CREATE, EntityType.RESERVATION, 1)

        page = get_audit_logs(entity_type=EntityType.RESERVATION, limit=4)
        self.assertEqual(page["total"], 6)
        self.assertEqual(len(page["logs"]), 4)
        self.assertTrue(page["has_more"])

        rest = get_audit_logs(entity_type=EntityType.RESERVATION, limit=4, offset=4)
        self.assertEqual(len(rest["logs"]), 2)
        self.assertFalse(rest["has_more"])

        by_user = get_audit_logs(user_id=self.user.id)
        self.assertEqual(by_user["total"], 1)

        by_entity = get_audit_logs(entity_type=EntityType.RESERVATION, entity_id=1)
        self.assertEqual(by_entity["total"], 2)

    def test_entity_history_is_newest_first(self):
        first = record(self.admin, Action.CREATE, EntityType.RESERVATION, 3)
        second = record(self.admin, Action.CANCEL, EntityType.RESERVATION, 3)
        record(self.admin, Action.CREATE, EntityType.RESERVATION, 4)

        self.assertEqual(get_entity_history(EntityType.RESERVATION, 3), [second, first])

    def test_actor_may_be_removed(self):
        record(self.user, Action.CREATE, EntityType.RESERVATION, 1)
        self.user.delete()

        self.assertIsNone(AuditLogEntry.objects.get().actor)
