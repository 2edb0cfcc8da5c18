from rest_framework.permissions import BasePermission


class IsActiveMember(BasePermission):
    """Вошёл в систему и не отключён."""

    message = "Your account is disabled."

    def has_permission(self, request, view):
        user = request.user
        return bool(user and user.is_authenticated and not user.is_disabled)


class IsAdminRole(IsActiveMember):
    message = "Administrator role required."

    def has_permission(self, request, view):
        return super().has_permission(request, view) and request.user.is_admin
