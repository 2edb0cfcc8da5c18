from django.urls import path

from .views import (
    AdminAuditLogAPIView,
    AdminBlockDetailAPIView,
    AdminBlockListCreateAPIView,
    AdminEventDetailAPIView,
    AdminEventListCreateAPIView,
    AdminReservationListAPIView,
    AdminUserDetailAPIView,
    AdminUserListAPIView,
    CalendarAPIView,
    CheckOverlapsAPIView,
    EventDetailAPIView,
    EventListAPIView,
    PublicEventListAPIView,
    ReservationDetailAPIView,
    ReservationListCreateAPIView,
    ResourceListAPIView,
)

app_name = "api"

urlpatterns = [
    # Участники
    path("resources/", ResourceListAPIView.as_view(), name="resource-list"),
    path("reservations/", ReservationListCreateAPIView.as_view(), name="reservation-list"),
    path(
        "reservations/check-overlaps/",
        CheckOverlapsAPIView.as_view(),
        name="reservation-check-overlaps",
    ),
    path("reservations/<int:pk>/", ReservationDetailAPIView.as_view(), name="reservation-detail"),
    path("calendar/", CalendarAPIView.as_view(), name="calendar"),

    # Мероприятия
    path("events/", EventListAPIView.as_view(), name="event-list"),
    path("events/public/", PublicEventListAPIView.as_view(), name="event-public-list"),
    path("events/<int:pk>/", EventDetailAPIView.as_view(), name="event-detail"),

    # Админка
    path("admin/blocks/", AdminBlockListCreateAPIView.as_view(), name="admin-block-list"),
    path("admin/blocks/<int:pk>/", AdminBlockDetailAPIView.as_view(), name="admin-block-detail"),
    path("admin/events/", AdminEventListCreateAPIView.as_view(), name="admin-event-list"),
    path("admin/events/<int:pk>/", AdminEventDetailAPIView.as_view(), name="admin-event-detail"),
    path(
        "admin/reservations/",
        AdminReservationListAPIView.as_view(),
        name="admin-reservation-list",
    ),
    path("admin/users/", AdminUserListAPIView.as_view(), name="admin-user-list"),
    path("admin/users/<int:pk>/", AdminUserDetailAPIView.as_view(), name="admin-user-detail"),
    path("admin/audit/", AdminAuditLogAPIView.as_view(), name="admin-audit"),
]
