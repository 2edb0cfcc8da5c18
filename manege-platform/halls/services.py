import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List

from django.db import transaction
from django.utils import timezone

from audit.services import Action, EntityType, record
from booking.exceptions import (
    ConflictsExist,
    InvalidStateTransition,
    NotFound,
    ValidationFailed,
)
from booking.models import Reservation
from booking.overlaps import (
    calendar_window_q,
    find_overlapping_reservations,
    overlap_q,
    window_errors,
)
from notifications.services import send_block_notifications
from .models import Block, Resource

logger = logging.getLogger(__name__)


@dataclass
class Conflict:
    reservation_id: int
    user_id: int
    user_name: str
    user_email: str
    start_time: object
    end_time: object
    purpose: str


def get_active_resources():
    return Resource.objects.filter(is_active=True)


def ensure_available(resource: Resource) -> Resource:
    if not resource.is_active:
        raise ValidationFailed({"resource_id": ["Resource is not available."]})
    return resource


def lock_resource(resource_id, require_active: bool = True) -> Resource:
    """
    Блокировка строки площадки до конца транзакции.
    Любое изменение расписания площадки сначала проходит здесь,
    и только потом трогает брони и блокировки.
    """
    resource = Resource.objects.select_for_update().filter(pk=resource_id).first()
    if resource is None:
        raise ValidationFailed({"resource_id": ["Resource does not exist."]})
    if require_active:
        ensure_available(resource)
    return resource


def lock_resources(resource_ids: Iterable) -> Dict[int, Resource]:
    """Несколько площадок блокируются строго по возрастанию pk."""
    return {pk: lock_resource(pk, require_active=False) for pk in sorted(set(resource_ids))}


def check_block_conflicts(resource_id, start_time, end_time, lock=False) -> List[Conflict]:
    return [
        Conflict(
            reservation_id=r.pk,
            user_id=r.user_id,
            user_name=r.user.name,
            user_email=r.user.email,
            start_time=r.start_time,
            end_time=r.end_time,
            purpose=r.purpose,
        )
        for r in find_overlapping_reservations(resource_id, start_time, end_time, lock=lock)
    ]


def _window(block: Block) -> dict:
    return {
        "reason": block.reason,
        "start_time": block.start_time.isoformat(),
        "end_time": block.end_time.isoformat(),
    }


def _mark_impacted(conflicts: List[Conflict]) -> List[Conflict]:
    """
    Переводит в IMPACTED только те брони, что всё ещё CONFIRMED.
    Отменённая за это время бронь остаётся отменённой.
    """
    ids = [c.reservation_id for c in conflicts]
    still_confirmed = set(
        Reservation.objects.filter(pk__in=ids, status=Reservation.Status.CONFIRMED)
        .values_list("pk", flat=True)
    )
    Reservation.objects.filter(
        pk__in=still_confirmed,
        status=Reservation.Status.CONFIRMED,
    ).update(
        status=Reservation.Status.IMPACTED,
        updated_at=timezone.now(),
    )
    return [c for c in conflicts if c.reservation_id in still_confirmed]


@transaction.atomic
def create_block(
    created_by,
    resource_id,
    reason,
    start_time,
    end_time,
    is_recurring=False,
    recurrence_rule="",
    confirm_conflicts=False,
):
    errors = window_errors(start_time, end_time)
    if not (reason or "").strip():
        errors["reason"] = ["This field may not be blank."]
    if errors:
        raise ValidationFailed(errors)

    resource = lock_resource(resource_id)

    conflicts = check_block_conflicts(resource.pk, start_time, end_time, lock=True)
    if conflicts and not confirm_conflicts:
        raise ConflictsExist(conflicts)

    if conflicts:
        conflicts = _mark_impacted(conflicts)
        for conflict in conflicts:
            record(
                created_by,
                Action.UPDATE,
                EntityType.RESERVATION,
                conflict.reservation_id,
                {
                    "status": {
                        "from": Reservation.Status.CONFIRMED,
                        "to": Reservation.Status.IMPACTED,
                    },
                    "reason": f"Block created: {reason}",
                },
            )

    block = Block.objects.create(
        resource=resource,
        reason=reason,
        start_time=start_time,
        end_time=end_time,
        is_recurring=is_recurring,
        recurrence_rule=recurrence_rule or "",
        created_by=created_by,
    )

    record(
        created_by,
        Action.CREATE,
        EntityType.BLOCK,
        block.pk,
        {
            "resource_id": resource.pk,
            **_window(block),
            "is_recurring": block.is_recurring,
            "impacted_reservations": len(conflicts),
        },
    )

    if conflicts:
        impacted = list(conflicts)
        transaction.on_commit(lambda: send_block_notifications(block, impacted), robust=True)

    logger.info(
        "Block %s created on %s by %s, %d reservation(s) impacted",
        block.pk, resource.slug, created_by.pk, len(conflicts),
    )
    return block, conflicts


def get_block(block_id) -> Block:
    block = Block.objects.select_related("resource", "created_by").filter(pk=block_id).first()
    if block is None:
        raise NotFound("Block not found")
    return block


def _lock_block(block_id, target_resource_id=None):
    """
    Сначала площадки (текущая и новая, по возрастанию pk), потом сама блокировка.
    Возвращает (block, {pk: Resource}).
    """
    current = Block.objects.filter(pk=block_id).values_list("resource_id", flat=True).first()
    if current is None:
        raise NotFound("Block not found")

    resources = lock_resources({current, target_resource_id or current})

    block = Block.objects.select_for_update().filter(pk=block_id).first()
    if block is None:
        raise NotFound("Block not found")
    if block.resource_id != current:
        # блокировку успели перенести на другую площадку
        raise InvalidStateTransition("Block was changed by another request, try again")
    return block, resources


@transaction.atomic
def update_block(block_id, actor, data: dict) -> Block:
    # конфликты с бронями здесь не пересчитываются
    block, resources = _lock_block(block_id, data.get("resource_id"))

    before = _window(block)

    if "resource_id" in data and data["resource_id"] != block.resource_id:
        block.resource = ensure_available(resources[data["resource_id"]])
    for field in ("reason", "start_time", "end_time", "is_recurring", "recurrence_rule"):
        if field in data:
            setattr(block, field, data[field])

    errors = window_errors(block.start_time, block.end_time)
    if not (block.reason or "").strip():
        errors["reason"] = ["This field may not be blank."]
    if errors:
        raise ValidationFailed(errors)

    block.save()

    record(actor, Action.UPDATE, EntityType.BLOCK, block.pk, {"before": before, "after": _window(block)})
    logger.info("Block %s updated by %s", block.pk, actor.pk)
    return block


@transaction.atomic
def delete_block(block_id, actor) -> dict:
    block, _ = _lock_block(block_id)

    impacted = (
        Reservation.objects.select_for_update()
        .filter(resource_id=block.resource_id, status=Reservation.Status.IMPACTED)
        .filter(overlap_q(block.start_time, block.end_time))
    )
    remaining_blocks = Block.objects.filter(resource_id=block.resource_id).exclude(pk=block.pk)

    restored = 0
    for reservation in impacted:
        # перекрыта другой блокировкой: остаётся IMPACTED
        if remaining_blocks.filter(overlap_q(reservation.start_time, reservation.end_time)).exists():
            continue

        reservation.status = Reservation.Status.CONFIRMED
        reservation.save(update_fields=["status", "updated_at"])
        record(
            actor,
            Action.UPDATE,
            EntityType.RESERVATION,
            reservation.pk,
            {
                "status": {
                    "from": Reservation.Status.IMPACTED,
                    "to": Reservation.Status.CONFIRMED,
                },
                "reason": f"Block deleted: {block.reason}",
            },
        )
        restored += 1

    deleted_id = block.pk
    snapshot = _window(block)
    block.delete()

    record(
        actor,
        Action.DELETE,
        EntityType.BLOCK,
        deleted_id,
        {**snapshot, "restored_reservations": restored},
    )

    logger.info("Block %s deleted by %s, %d reservation(s) restored", deleted_id, actor.pk, restored)
    return {"deleted_id": deleted_id, "restored_reservations": restored}


def get_blocks(resource_id=None, include_expired=False):
    qs = Block.objects.select_related("resource", "created_by").order_by("start_time", "id")
    if resource_id:
        qs = qs.filter(resource_id=resource_id)
    if not include_expired:
        qs = qs.filter(end_time__gte=timezone.now())
    return qs


def get_blocks_for_calendar(resource_id, start, end) -> List[dict]:
    return list(
        Block.objects.filter(resource_id=resource_id)
        .filter(calendar_window_q(start, end))
        .order_by("start_time", "id")
        .values("id", "reason", "start_time", "end_time")
    )
