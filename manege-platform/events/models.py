from django.conf import settings
from django.db import models
from django.db.models import F, Q

from halls.models import Resource


class Event(models.Model):
    """Мероприятие клуба: соревнования, клиники, дни открытых дверей."""

    class Visibility(models.TextChoices):
        PUBLIC = "PUBLIC", "Public"
        MEMBERS = "MEMBERS", "Members"
        ADMIN = "ADMIN", "Admin"

    title = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    start_time = models.DateTimeField()
    end_time = models.DateTimeField()
    visibility = models.CharField(
        max_length=10,
        choices=Visibility.choices,
        default=Visibility.PUBLIC,
    )

    # только для информации, бронирование не блокирует
    resources = models.ManyToManyField(Resource, blank=True, related_name="events")

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="created_events",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["start_time", "id"]
        indexes = [
            models.Index(fields=["visibility", "start_time"], name="event_visibility_start_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(end_time__gt=F("start_time")),
                name="event_end_after_start",
            ),
        ]

    def __str__(self):
        return f"{self.title} ({self.start_time:%d.%m.%Y})"
