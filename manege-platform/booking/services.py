import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from audit.services import Action, EntityType, record
from halls.services import ensure_available, lock_resource, lock_resources
from notifications.services import (
    send_reservation_cancellation,
    send_reservation_confirmation,
)
from .exceptions import (
    InvalidStateTransition,
    NotFound,
    OverlapExists,
    PermissionDenied,
    TimeBlocked,
    ValidationFailed,
)
from .models import Reservation
from .overlaps import calendar_window_q, check_overlaps, window_errors

logger = logging.getLogger(__name__)


def _validate(start_time, end_time, purpose, notes) -> None:
    errors = window_errors(start_time, end_time)

    if purpose not in Reservation.Purpose.values:
        errors["purpose"] = [f'"{purpose}" is not a valid choice.']

    max_length = settings.RESERVATION_NOTES_MAX_LENGTH
    if notes and len(notes) > max_length:
        errors["notes"] = [f"Ensure this field has no more than {max_length} characters."]

    if errors:
        raise ValidationFailed(errors)


def _ensure_bookable(resource_id, start_time, end_time, acknowledge_overlap, exclude_id=None):
    """Блокировка запрещает всегда, чужие брони только без подтверждения."""
    result = check_overlaps(resource_id, start_time, end_time, exclude_id=exclude_id)

    if result.has_block:
        raise TimeBlocked(result.block)
    if result.has_overlaps and not acknowledge_overlap:
        raise OverlapExists(result.reservations)


def _snapshot(reservation: Reservation) -> dict:
    return {
        "resource_id": reservation.resource_id,
        "start_time": reservation.start_time.isoformat(),
        "end_time": reservation.end_time.isoformat(),
        "purpose": reservation.purpose,
    }


def _get_owned(reservation_id, actor, is_admin: bool, lock: bool = False) -> Reservation:
    qs = Reservation.objects.select_related("resource", "user")
    if lock:
        qs = qs.select_for_update(of=("self",))

    reservation = qs.filter(pk=reservation_id).first()
    if reservation is None:
        raise NotFound("Reservation not found")
    if reservation.user_id != actor.pk and not is_admin:
        raise PermissionDenied()
    return reservation


def _lock_owned(reservation_id, actor, is_admin: bool, target_resource_id=None):
    """
    Тот же порядок блокировок, что и в create_block: сначала площадки
    (текущая и новая, по возрастанию pk), потом сама бронь.
    Возвращает (reservation, {pk: Resource}).
    """
    current = (
        Reservation.objects.filter(pk=reservation_id)
        .values("resource_id", "user_id")
        .first()
    )
    if current is None:
        raise NotFound("Reservation not found")
    if current["user_id"] != actor.pk and not is_admin:
        raise PermissionDenied()

    resource_id = current["resource_id"]
    resources = lock_resources({resource_id, target_resource_id or resource_id})

    reservation = _get_owned(reservation_id, actor, is_admin, lock=True)
    if reservation.resource_id != resource_id:
        # бронь успели перенести на другую площадку
        raise InvalidStateTransition("Reservation was changed by another request, try again")
    return reservation, resources


@transaction.atomic
def create_reservation(
    user,
    resource_id,
    start_time,
    end_time,
    purpose,
    notes="",
    acknowledge_overlap=False,
) -> Reservation:
    notes = notes or ""
    _validate(start_time, end_time, purpose, notes)

    if user.is_disabled:
        raise PermissionDenied("Disabled accounts cannot make reservations")

    resource = lock_resource(resource_id)
    _ensure_bookable(resource.pk, start_time, end_time, acknowledge_overlap)

    reservation = Reservation.objects.create(
        resource=resource,
        user=user,
        start_time=start_time,
        end_time=end_time,
        purpose=purpose,
        notes=notes,
    )

    record(
        user,
        Action.CREATE,
        EntityType.RESERVATION,
        reservation.pk,
        {**_snapshot(reservation), "acknowledged_overlap": bool(acknowledge_overlap)},
    )
    transaction.on_commit(lambda: send_reservation_confirmation(reservation), robust=True)

    logger.info(
        "Reservation %s created on %s by %s (%s - %s)",
        reservation.pk, resource.slug, user.pk, start_time, end_time,
    )
    return reservation


@transaction.atomic
def update_reservation(reservation_id, actor, data: dict, is_admin=False) -> Reservation:
    reservation, resources = _lock_owned(reservation_id, actor, is_admin, data.get("resource_id"))

    if reservation.status == Reservation.Status.CANCELLED:
        raise InvalidStateTransition("Cancelled reservations cannot be changed")

    before = _snapshot(reservation)

    resource_id = data.get("resource_id", reservation.resource_id)
    start_time = data.get("start_time", reservation.start_time)
    end_time = data.get("end_time", reservation.end_time)
    purpose = data.get("purpose", reservation.purpose)
    notes = data.get("notes", reservation.notes) or ""

    _validate(start_time, end_time, purpose, notes)

    moved = (
        resource_id != reservation.resource_id
        or start_time != reservation.start_time
        or end_time != reservation.end_time
    )
    if moved:
        resource = ensure_available(resources[resource_id])
        _ensure_bookable(
            resource.pk,
            start_time,
            end_time,
            data.get("acknowledge_overlap", False),
            exclude_id=reservation.pk,
        )
        reservation.resource = resource
        reservation.start_time = start_time
        reservation.end_time = end_time

        # свободное новое окно снимает отметку о блокировке
        if reservation.status == Reservation.Status.IMPACTED:
            reservation.status = Reservation.Status.CONFIRMED

    reservation.purpose = purpose
    reservation.notes = notes
    reservation.save()

    record(
        actor,
        Action.UPDATE,
        EntityType.RESERVATION,
        reservation.pk,
        {"before": before, "after": _snapshot(reservation)},
    )

    logger.info("Reservation %s updated by %s", reservation.pk, actor.pk)
    return reservation


@transaction.atomic
def cancel_reservation(reservation_id, actor, reason=None, is_admin=False) -> Reservation:
    reservation, _ = _lock_owned(reservation_id, actor, is_admin)

    if reservation.status == Reservation.Status.CANCELLED:
        raise InvalidStateTransition("Reservation is already cancelled")

    previous_status = reservation.status
    reservation.status = Reservation.Status.CANCELLED
    reservation.cancelled_at = timezone.now()
    reservation.cancel_reason = reason or settings.DEFAULT_CANCEL_REASON
    reservation.save(update_fields=["status", "cancelled_at", "cancel_reason", "updated_at"])

    record(
        actor,
        Action.CANCEL,
        EntityType.RESERVATION,
        reservation.pk,
        {
            "status": {"from": previous_status, "to": Reservation.Status.CANCELLED},
            "reason": reservation.cancel_reason,
            "cancelled_at": reservation.cancelled_at.isoformat(),
        },
    )
    transaction.on_commit(
        lambda: send_reservation_cancellation(reservation, reservation.cancel_reason),
        robust=True,
    )

    logger.info("Reservation %s cancelled by %s", reservation.pk, actor.pk)
    return reservation


# === Выборки для чтения ===


def get_reservations_for_calendar(resource_id, start, end, viewer_id):
    """
    Кто занял площадку, видят все; заметки видит только владелец брони.
    """
    qs = (
        Reservation.objects.filter(resource_id=resource_id)
        .exclude(status=Reservation.Status.CANCELLED)
        .filter(calendar_window_q(start, end))
        .select_related("user")
        .order_by("start_time", "id")
    )

    rows = []
    for reservation in qs:
        is_own = reservation.user_id == viewer_id
        rows.append({
            "id": reservation.pk,
            "start_time": reservation.start_time,
            "end_time": reservation.end_time,
            "purpose": reservation.purpose,
            "status": reservation.status,
            "is_own": is_own,
            "user_name": reservation.user.name,
            "notes": reservation.notes if is_own else None,
        })
    return rows


def get_user_reservations(user, include_history=False):
    qs = Reservation.objects.filter(user=user).select_related("resource")
    if not include_history:
        qs = qs.exclude(status=Reservation.Status.CANCELLED)
    return qs.order_by("-start_time", "-id")


def get_reservation_for_viewer(reservation_id, actor, is_admin=False) -> Reservation:
    return _get_owned(reservation_id, actor, is_admin)


def get_all_reservations(status=None):
    qs = Reservation.objects.select_related("resource", "user")
    if status:
        qs = qs.filter(status=status)
    return qs.order_by("-start_time", "-id")
