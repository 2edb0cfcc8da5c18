from django.contrib import admin
from .models import Event


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    # только чтение, изменения идут через events.services (там пишется аудит)
    list_display = ("title", "visibility", "start_time", "end_time", "created_by")
    list_filter = ("visibility", "start_time")
    search_fields = ("title",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
