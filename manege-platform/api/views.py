from django.db import transaction
from rest_framework import generics, status
from rest_framework.filters import OrderingFilter
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView
from django_filters.rest_framework import DjangoFilterBackend

from accounts import services as account_services
from accounts.models import User
from audit.services import get_audit_logs
from booking import services as booking_services
from booking.exceptions import ConflictsExist, OverlapExists
from booking.overlaps import check_overlaps
from events import services as event_services
from events.models import Event
from halls import services as hall_services
from .permissions import IsAdminRole
from .serializers import (
    AuditLogEntrySerializer,
    AuditQuerySerializer,
    BlockSerializer,
    BlockSummarySerializer,
    BlockWriteSerializer,
    CalendarQuerySerializer,
    CalendarReservationSerializer,
    CancelReservationSerializer,
    CheckOverlapsQuerySerializer,
    ConflictSerializer,
    EventQuerySerializer,
    EventSerializer,
    EventWriteSerializer,
    OverlappingReservationSerializer,
    ReservationSerializer,
    ReservationWriteSerializer,
    ResourceSerializer,
    UserSerializer,
    UserUpdateSerializer,
)


def overlap_warning(exc: OverlapExists) -> Response:
    return Response(
        {
            "error": exc.code,
            "warning": exc.message,
            "overlaps": OverlappingReservationSerializer(exc.reservations, many=True).data,
            "requires_acknowledge": True,
        },
        status=status.HTTP_200_OK,
    )


def conflicts_warning(exc: ConflictsExist) -> Response:
    return Response(
        {
            "error": exc.code,
            "warning": exc.message,
            "conflicts": ConflictSerializer(exc.conflicts, many=True).data,
            "requires_confirmation": True,
        },
        status=status.HTTP_200_OK,
    )


class ResourceListAPIView(generics.ListAPIView):
    """
    GET /api/resources/
    """

    serializer_class = ResourceSerializer

    def get_queryset(self):
        return hall_services.get_active_resources()


# === Reservations ===


class ReservationListCreateAPIView(APIView):
    """
    GET  /api/reservations/?history=true
    POST /api/reservations/
    """

    def get(self, request):
        include_history = request.query_params.get("history") in ("1", "true", "True")
        reservations = booking_services.get_user_reservations(request.user, include_history)
        return Response(ReservationSerializer(reservations, many=True).data)

    def post(self, request):
        serializer = ReservationWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            reservation = booking_services.create_reservation(request.user, **serializer.validated_data)
        except OverlapExists as exc:
            return overlap_warning(exc)

        return Response(
            {"reservation": ReservationSerializer(reservation).data},
            status=status.HTTP_201_CREATED,
        )


class ReservationDetailAPIView(APIView):
    """
    GET    /api/reservations/<id>/
    PATCH  /api/reservations/<id>/
    DELETE /api/reservations/<id>/?reason=...
    """

    def get(self, request, pk: int):
        reservation = booking_services.get_reservation_for_viewer(
            pk, request.user, is_admin=request.user.is_admin
        )
        return Response(ReservationSerializer(reservation).data)

    def patch(self, request, pk: int):
        serializer = ReservationWriteSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)

        try:
            reservation = booking_services.update_reservation(
                pk,
                request.user,
                serializer.validated_data,
                is_admin=request.user.is_admin,
            )
        except OverlapExists as exc:
            return overlap_warning(exc)

        return Response({"reservation": ReservationSerializer(reservation).data})

    def delete(self, request, pk: int):
        serializer = CancelReservationSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)

        reservation = booking_services.cancel_reservation(
            pk,
            request.user,
            reason=serializer.validated_data.get("reason") or None,
            is_admin=request.user.is_admin,
        )
        return Response({"reservation": ReservationSerializer(reservation).data})


class CheckOverlapsAPIView(APIView):
    """
    GET /api/reservations/check-overlaps/?resource_id=&start_time=&end_time=&exclude_id=
    """

    def get(self, request):
        serializer = CheckOverlapsQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        params = serializer.validated_data

        result = check_overlaps(
            params["resource_id"],
            params["start_time"],
            params["end_time"],
            exclude_id=params.get("exclude_id"),
        )

        return Response({
            "has_block": result.has_block,
            "has_overlaps": result.has_overlaps,
            "block": BlockSummarySerializer(result.block).data if result.block else None,
            "overlapping_reservations": OverlappingReservationSerializer(
                result.reservations, many=True
            ).data,
        })


class CalendarAPIView(APIView):
    """
    GET /api/calendar/?resource_id=&start=&end=
    """

    def get(self, request):
        serializer = CalendarQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        params = serializer.validated_data

        reservations = booking_services.get_reservations_for_calendar(
            params["resource_id"], params["start"], params["end"], viewer_id=request.user.pk
        )
        blocks = hall_services.get_blocks_for_calendar(
            params["resource_id"], params["start"], params["end"]
        )

        return Response({
            "reservations": CalendarReservationSerializer(reservations, many=True).data,
            "blocks": BlockSummarySerializer(blocks, many=True).data,
        })


# === Events ===


class EventListAPIView(APIView):
    """
    GET /api/events/?start=&end=&resource_id=&public=true
    """

    permission_classes = [AllowAny]

    def get(self, request):
        serializer = EventQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        params = serializer.validated_data

        if request.query_params.get("public") in ("1", "true", "True"):
            visibility = [Event.Visibility.PUBLIC]
        else:
            visibility = event_services.visible_to(request.user)

        events = event_services.get_events(
            visibility=visibility,
            resource_id=params.get("resource_id"),
            start=params.get("start"),
            end=params.get("end"),
        )
        return Response({"events": EventSerializer(events, many=True).data})


class PublicEventListAPIView(APIView):
    """
    GET /api/events/public/?start=&end=
    """

    permission_classes = [AllowAny]

    def get(self, request):
        serializer = EventQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        params = serializer.validated_data

        events = event_services.get_public_events(start=params.get("start"), end=params.get("end"))
        return Response({"events": EventSerializer(events, many=True).data})


class EventDetailAPIView(APIView):
    """
    GET /api/events/<id>/
    """

    permission_classes = [AllowAny]

    def get(self, request, pk: int):
        event = event_services.get_event_for_viewer(pk, request.user)
        return Response(EventSerializer(event).data)


# === Admin ===


class AdminBlockListCreateAPIView(APIView):
    """
    GET  /api/admin/blocks/?resource_id=&include_expired=true
    POST /api/admin/blocks/
    """

    permission_classes = [IsAdminRole]

    def get(self, request):
        blocks = hall_services.get_blocks(
            resource_id=request.query_params.get("resource_id"),
            include_expired=request.query_params.get("include_expired") in ("1", "true", "True"),
        )
        return Response(BlockSerializer(blocks, many=True).data)

    def post(self, request):
        serializer = BlockWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            block, conflicts = hall_services.create_block(request.user, **serializer.validated_data)
        except ConflictsExist as exc:
            return conflicts_warning(exc)

        return Response(
            {"block": BlockSerializer(block).data, "impacted_reservations": len(conflicts)},
            status=status.HTTP_201_CREATED,
        )


class AdminBlockDetailAPIView(APIView):
    """
    GET/PATCH/DELETE /api/admin/blocks/<id>/
    """

    permission_classes = [IsAdminRole]

    def get(self, request, pk: int):
        return Response(BlockSerializer(hall_services.get_block(pk)).data)

    def patch(self, request, pk: int):
        serializer = BlockWriteSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)

        data = dict(serializer.validated_data)
        data.pop("confirm_conflicts", None)

        block = hall_services.update_block(pk, request.user, data)
        return Response(BlockSerializer(block).data)

    def delete(self, request, pk: int):
        return Response(hall_services.delete_block(pk, request.user))


class AdminReservationListAPIView(generics.ListAPIView):
    """
    GET /api/admin/reservations/?status=&resource=&user=
    """

    permission_classes = [IsAdminRole]
    serializer_class = ReservationSerializer
    filter_backends = [DjangoFilterBackend, OrderingFilter]
    filterset_fields = ["resource", "user"]
    ordering_fields = ["start_time", "created_at"]

    def get_queryset(self):
        return booking_services.get_all_reservations(status=self.request.query_params.get("status"))


class AdminUserListAPIView(generics.ListAPIView):
    """
    GET /api/admin/users/?role=&status=
    """

    permission_classes = [IsAdminRole]
    serializer_class = UserSerializer
    filter_backends = [DjangoFilterBackend]
    filterset_fields = ["role", "status"]

    def get_queryset(self):
        return account_services.get_all_users()


class AdminUserDetailAPIView(APIView):
    """
    GET   /api/admin/users/<id>/
    PATCH /api/admin/users/<id>/  body: {"role": ...} or {"status": ..., "reason": ...}
    """

    permission_classes = [IsAdminRole]

    def get(self, request, pk: int):
        user = account_services.get_user_by_id(pk)
        history = account_services.get_user_cancellation_history(pk)
        return Response({
            "user": UserSerializer(user).data,
            "cancelled_reservations": ReservationSerializer(history, many=True).data,
        })

    def patch(self, request, pk: int):
        serializer = UserUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        body = {}
        with transaction.atomic():
            if "role" in data:
                account_services.update_user_role(pk, request.user, data["role"])

            if data.get("status") == User.Status.DISABLED:
                _, cancelled = account_services.disable_user(
                    pk, request.user, reason=data.get("reason") or None
                )
                body["cancelled_reservations"] = cancelled
            elif data.get("status") == User.Status.ACTIVE:
                account_services.enable_user(pk, request.user)

        body["user"] = UserSerializer(account_services.get_user_by_id(pk)).data
        return Response(body)


class AdminAuditLogAPIView(APIView):
    """
    GET /api/admin/audit/?entity_type=&entity_id=&user_id=&limit=&offset=
    """

    permission_classes = [IsAdminRole]

    def get(self, request):
        serializer = AuditQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)

        result = get_audit_logs(**serializer.validated_data)
        result["logs"] = AuditLogEntrySerializer(result["logs"], many=True).data
        return Response(result)


class AdminEventListCreateAPIView(APIView):
    """
    GET  /api/admin/events/?include_expired=true
    POST /api/admin/events/
    """

    permission_classes = [IsAdminRole]

    def get(self, request):
        events = event_services.get_events(
            include_expired=request.query_params.get("include_expired") in ("1", "true", "True"),
        )
        return Response(EventSerializer(events, many=True).data)

    def post(self, request):
        serializer = EventWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        event = event_services.create_event(request.user, **serializer.validated_data)
        return Response(EventSerializer(event).data, status=status.HTTP_201_CREATED)


class AdminEventDetailAPIView(APIView):
    """
    PATCH/DELETE /api/admin/events/<id>/
    """

    permission_classes = [IsAdminRole]

    def patch(self, request, pk: int):
        serializer = EventWriteSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)

        event_services.update_event(pk, request.user, serializer.validated_data)
        return Response(EventSerializer(event_services.get_event(pk)).data)

    def delete(self, request, pk: int):
        return Response(event_services.delete_event(pk, request.user))
