from django.conf import settings
from django.db import models
from django.db.models import F, Q


class Resource(models.Model):
    name = models.CharField(max_length=100)  # "Крытый манеж"
    slug = models.SlugField(unique=True)
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class Block(models.Model):
    """Период, когда на площадке не должно быть подтверждённых броней."""

    resource = models.ForeignKey(Resource, on_delete=models.CASCADE, related_name="blocks")
    reason = models.CharField(max_length=255)
    start_time = models.DateTimeField()
    end_time = models.DateTimeField()

    # хранится как есть, не разворачивается
    is_recurring = models.BooleanField(default=False)
    recurrence_rule = models.CharField(max_length=255, blank=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="created_blocks",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["start_time"]
        indexes = [
            models.Index(fields=["resource", "start_time", "end_time"], name="block_resource_window_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(end_time__gt=F("start_time")),
                name="block_end_after_start",
            ),
        ]

    def __str__(self):
        return f"{self.resource.name}: {self.start_time} - {self.end_time}"
