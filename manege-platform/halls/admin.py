from django.contrib import admin
from .models import Resource, Block


@admin.register(Resource)
class ResourceAdmin(admin.ModelAdmin):
    list_display = ("name", "is_active")
    prepopulated_fields = {"slug": ("name",)}


@admin.register(Block)
class BlockAdmin(admin.ModelAdmin):
    # только чтение, изменения идут через halls.services
    list_display = ("resource", "start_time", "end_time", "reason", "created_by")
    list_filter = ("resource", "start_time")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
