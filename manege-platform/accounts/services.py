import logging

from django.conf import settings
from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone

from audit.services import Action, EntityType, record
from booking.exceptions import InvalidStateTransition, NotFound, ValidationFailed
from booking.models import Reservation
from halls.services import lock_resources
from .models import User

logger = logging.getLogger(__name__)


def get_all_users():
    return User.objects.annotate(
        confirmed_reservations=Count(
            "reservations",
            filter=Q(reservations__status=Reservation.Status.CONFIRMED),
        )
    ).order_by("name", "id")


def get_user_by_id(user_id) -> User:
    user = get_all_users().filter(pk=user_id).first()
    if user is None:
        raise NotFound("User not found")
    return user


def _lock_user(user_id) -> User:
    # FOR NO KEY UPDATE не мешает вставке броней с внешним ключом на пользователя
    user = User.objects.select_for_update(no_key=True).filter(pk=user_id).first()
    if user is None:
        raise NotFound("User not found")
    return user


@transaction.atomic
def update_user_role(user_id, admin, new_role) -> User:
    if new_role not in User.Role.values:
        raise ValidationFailed({"role": [f'"{new_role}" is not a valid choice.']})

    user = _lock_user(user_id)
    old_role = user.role
    if old_role == new_role:
        return user

    user.role = new_role
    user.save(update_fields=["role", "updated_at"])

    record(admin, Action.UPDATE, EntityType.USER, user.pk, {"field": "role", "from": old_role, "to": new_role})
    logger.info("User %s role changed %s -> %s by %s", user.pk, old_role, new_role, admin.pk)
    return user


def _upcoming(user, now):
    return Reservation.objects.filter(
        user=user,
        status=Reservation.Status.CONFIRMED,
        start_time__gte=now,
    )


@transaction.atomic
def disable_user(user_id, admin, reason=None):
    """
    Отключает аккаунт и отменяет его будущие подтверждённые брони.
    Прошедшие брони не трогаем. Возвращает (user, cancelled_count).
    """
    user = _lock_user(user_id)
    if user.status == User.Status.DISABLED:
        raise InvalidStateTransition("User is already disabled")

    reason = reason or settings.DEFAULT_DISABLE_REASON
    now = timezone.now()

    user.status = User.Status.DISABLED
    user.is_active = False
    user.save(update_fields=["status", "is_active", "updated_at"])

    # площадки раньше броней, как в create_block
    lock_resources(set(_upcoming(user, now).values_list("resource_id", flat=True)))

    upcoming = [
        reservation.pk
        for reservation in _upcoming(user, now).select_for_update()
    ]
    Reservation.objects.filter(pk__in=upcoming, status=Reservation.Status.CONFIRMED).update(
        status=Reservation.Status.CANCELLED,
        cancelled_at=now,
        cancel_reason=reason,
        updated_at=now,
    )

    record(
        admin,
        Action.DISABLE,
        EntityType.USER,
        user.pk,
        {
            "status": {"from": User.Status.ACTIVE, "to": User.Status.DISABLED},
            "reason": reason,
            "cancelled_reservations": len(upcoming),
        },
    )
    for reservation_id in upcoming:
        record(
            admin,
            Action.CANCEL,
            EntityType.RESERVATION,
            reservation_id,
            {
                "status": {"from": Reservation.Status.CONFIRMED, "to": Reservation.Status.CANCELLED},
                "reason": reason,
                "cancelled_at": now.isoformat(),
            },
        )

    logger.info("User %s disabled by %s, %d reservation(s) cancelled", user.pk, admin.pk, len(upcoming))
    return user, len(upcoming)


@transaction.atomic
def enable_user(user_id, admin) -> User:
    # отменённые брони так и остаются отменёнными
    user = _lock_user(user_id)
    if user.status == User.Status.ACTIVE:
        raise InvalidStateTransition("User is already active")

    user.status = User.Status.ACTIVE
    user.is_active = True
    user.save(update_fields=["status", "is_active", "updated_at"])

    record(
        admin,
        Action.UPDATE,
        EntityType.USER,
        user.pk,
        {"field": "status", "from": User.Status.DISABLED, "to": User.Status.ACTIVE},
    )
    logger.info("User %s enabled by %s", user.pk, admin.pk)
    return user


def get_user_cancellation_history(user_id):
    return (
        Reservation.objects.filter(user_id=user_id, status=Reservation.Status.CANCELLED)
        .select_related("resource")
        .order_by("-cancelled_at", "-id")
    )
