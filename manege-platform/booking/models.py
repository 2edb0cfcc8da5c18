from django.conf import settings
from django.db import models
from django.db.models import F, Q

from halls.models import Resource


class Reservation(models.Model):
    class Purpose(models.TextChoices):
        TRAINING = "TRAINING", "Training"
        LESSON = "LESSON", "Lesson"
        OTHER = "OTHER", "Other"

    class Status(models.TextChoices):
        CONFIRMED = "CONFIRMED", "Confirmed"
        CANCELLED = "CANCELLED", "Cancelled"
        IMPACTED = "IMPACTED", "Impacted by a block"

    resource = models.ForeignKey(Resource, on_delete=models.PROTECT, related_name="reservations")
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="reservations",
    )

    start_time = models.DateTimeField()
    end_time = models.DateTimeField()

    purpose = models.CharField(max_length=20, choices=Purpose.choices)
    notes = models.TextField(blank=True)

    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.CONFIRMED
    )
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.resource.name} {self.start_time} ({self.user.name})"

    class Meta:
        ordering = ["start_time"]
        indexes = [
            models.Index(fields=["resource", "status", "start_time"], name="reservation_timeline_idx"),
            models.Index(fields=["user", "status"], name="reservation_user_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(end_time__gt=F("start_time")),
                name="reservation_end_after_start",
            ),
        ]
