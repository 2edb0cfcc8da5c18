from django.conf import settings
from rest_framework import serializers

from accounts.models import User
from audit.models import AuditLogEntry
from booking.models import Reservation
from events.models import Event
from halls.models import Block, Resource


def _check_window(attrs, start_key="start_time", end_key="end_time"):
    start, end = attrs.get(start_key), attrs.get(end_key)
    if start is not None and end is not None and end <= start:
        raise serializers.ValidationError({end_key: "End time must be after start time."})
    return attrs


class ResourceSerializer(serializers.ModelSerializer):
    class Meta:
        model = Resource
        fields = ["id", "name", "slug", "description"]


# === Reservations ===


class ReservationSerializer(serializers.ModelSerializer):
    resource_id = serializers.IntegerField(read_only=True)
    resource_name = serializers.CharField(source="resource.name", read_only=True)
    user_id = serializers.IntegerField(read_only=True)
    user_name = serializers.CharField(source="user.name", read_only=True)

    class Meta:
        model = Reservation
        fields = [
            "id",
            "resource_id",
            "resource_name",
            "user_id",
            "user_name",
            "start_time",
            "end_time",
            "purpose",
            "notes",
            "status",
            "cancelled_at",
            "cancel_reason",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class OverlappingReservationSerializer(serializers.ModelSerializer):
    """Имя видно другим участникам, заметки нет."""

    user_name = serializers.CharField(source="user.name", read_only=True)

    class Meta:
        model = Reservation
        fields = ["id", "start_time", "end_time", "purpose", "user_name"]
        read_only_fields = fields


class ReservationWriteSerializer(serializers.Serializer):
    """
    POST /api/reservations/ and PATCH /api/reservations/<id>/ (partial).
    """

    resource_id = serializers.IntegerField()
    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()
    purpose = serializers.ChoiceField(choices=Reservation.Purpose.choices)
    notes = serializers.CharField(
        required=False,
        allow_blank=True,
        max_length=settings.RESERVATION_NOTES_MAX_LENGTH,
    )
    acknowledge_overlap = serializers.BooleanField(required=False, default=False)

    def validate(self, attrs):
        return _check_window(attrs)


class CancelReservationSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255)


class CheckOverlapsQuerySerializer(serializers.Serializer):
    resource_id = serializers.IntegerField()
    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()
    exclude_id = serializers.IntegerField(required=False)

    def validate(self, attrs):
        return _check_window(attrs)


class CalendarQuerySerializer(serializers.Serializer):
    resource_id = serializers.IntegerField()
    start = serializers.DateTimeField()
    end = serializers.DateTimeField()

    def validate(self, attrs):
        return _check_window(attrs, "start", "end")


class CalendarReservationSerializer(serializers.Serializer):
    id = serializers.IntegerField()
    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()
    purpose = serializers.CharField()
    status = serializers.CharField()
    is_own = serializers.BooleanField()
    user_name = serializers.CharField()
    notes = serializers.CharField(allow_null=True)


# === Blocks ===


class BlockSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Block
        fields = ["id", "reason", "start_time", "end_time"]
        read_only_fields = fields


class BlockSerializer(serializers.ModelSerializer):
    resource_id = serializers.IntegerField(read_only=True)
    resource_name = serializers.CharField(source="resource.name", read_only=True)
    created_by_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = Block
        fields = [
            "id",
            "resource_id",
            "resource_name",
            "reason",
            "start_time",
            "end_time",
            "is_recurring",
            "recurrence_rule",
            "created_by_id",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class BlockWriteSerializer(serializers.Serializer):
    resource_id = serializers.IntegerField()
    reason = serializers.CharField(max_length=255)
    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()
    is_recurring = serializers.BooleanField(required=False, default=False)
    recurrence_rule = serializers.CharField(required=False, allow_blank=True, max_length=255)
    confirm_conflicts = serializers.BooleanField(required=False, default=False)

    def validate(self, attrs):
        return _check_window(attrs)


class ConflictSerializer(serializers.Serializer):
    reservation_id = serializers.IntegerField()
    user_id = serializers.IntegerField()
    user_name = serializers.CharField()
    user_email = serializers.EmailField()
    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()
    purpose = serializers.CharField()


# === Users ===


class UserSerializer(serializers.ModelSerializer):
    confirmed_reservations = serializers.IntegerField(read_only=True, default=0)

    class Meta:
        model = User
        fields = [
            "id",
            "email",
            "name",
            "phone",
            "role",
            "status",
            "is_active",
            "date_joined",
            "confirmed_reservations",
        ]
        read_only_fields = fields


class UserUpdateSerializer(serializers.Serializer):
    role = serializers.ChoiceField(choices=User.Role.choices, required=False)
    status = serializers.ChoiceField(choices=User.Status.choices, required=False)
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255)

    def validate(self, attrs):
        if "role" not in attrs and "status" not in attrs:
            raise serializers.ValidationError("Provide role or status.")
        return attrs


# === Events ===


class EventResourceSerializer(serializers.ModelSerializer):
    class Meta:
        model = Resource
        fields = ["id", "name"]


class EventSerializer(serializers.ModelSerializer):
    resources = EventResourceSerializer(many=True, read_only=True)
    created_by_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = Event
        fields = [
            "id",
            "title",
            "description",
            "start_time",
            "end_time",
            "visibility",
            "resources",
            "created_by_id",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class EventWriteSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=200)
    description = serializers.CharField(required=False, allow_blank=True)
    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField()
    visibility = serializers.ChoiceField(
        choices=Event.Visibility.choices,
        required=False,
        default=Event.Visibility.PUBLIC,
    )
    resource_ids = serializers.ListField(child=serializers.IntegerField(), required=False)

    def validate(self, attrs):
        return _check_window(attrs)


class EventQuerySerializer(serializers.Serializer):
    start = serializers.DateTimeField(required=False)
    end = serializers.DateTimeField(required=False)
    resource_id = serializers.IntegerField(required=False)


# === Audit ===


class AuditLogEntrySerializer(serializers.ModelSerializer):
    actor_id = serializers.IntegerField(read_only=True)
    actor_name = serializers.CharField(source="actor.name", read_only=True, default=None)

    class Meta:
        model = AuditLogEntry
        fields = [
            "id",
            "actor_id",
            "actor_name",
            "action",
            "entity_type",
            "entity_id",
            "changes",
            "created_at",
        ]
        read_only_fields = fields


class AuditQuerySerializer(serializers.Serializer):
    entity_type = serializers.ChoiceField(choices=AuditLogEntry.EntityType.choices, required=False)
    entity_id = serializers.CharField(required=False, max_length=64)
    user_id = serializers.IntegerField(required=False)
    limit = serializers.IntegerField(required=False, default=50, min_value=1, max_value=200)
    offset = serializers.IntegerField(required=False, default=0, min_value=0)
