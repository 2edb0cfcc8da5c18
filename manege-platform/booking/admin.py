from django.contrib import admin
from .models import Reservation


@admin.register(Reservation)
class ReservationAdmin(admin.ModelAdmin):
    list_display = (
        "resource",
        "start_time",
        "end_time",
        "user",
        "purpose",
        "status",
    )
    list_filter = ("resource", "status", "purpose", "start_time")
    search_fields = ("user__name", "user__email", "notes")
    readonly_fields = (
        "resource", "user", "start_time", "end_time",
        "status", "cancelled_at", "cancel_reason", "created_at", "updated_at",
    )
