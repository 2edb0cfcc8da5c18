"""
Поиск пересечений интервалов для броней и блокировок.

Интервалы пересекаются, если у них есть общий момент времени. Интервалы,
которые только соприкасаются (один кончается ровно тогда, когда начинается
другой), не пересекаются. ORM-фильтр и чистая функция проверяют одни и те же три условия.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from django.db.models import Q

from halls.models import Block
from .models import Reservation


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    return (
        (b_start <= a_start and b_end > a_start)
        or (b_start < a_end and b_end >= a_end)
        or (b_start >= a_start and b_end <= a_end)
    )


def overlap_q(start, end) -> Q:
    """Записи, у которых [start_time, end_time) пересекается с [start, end)."""
    return (
        Q(start_time__lte=start, end_time__gt=start)
        | Q(start_time__lt=end, end_time__gte=end)
        | Q(start_time__gte=start, end_time__lte=end)
    )


def window_errors(start, end) -> dict:
    """Ошибки по полям для окна [start, end); пустой словарь, если окно корректно."""
    errors = {}
    if start is None:
        errors["start_time"] = ["This field is required."]
    if end is None:
        errors["end_time"] = ["This field is required."]
    if not errors and end <= start:
        errors["end_time"] = ["End time must be after start time."]
    return errors


def calendar_window_q(start, end) -> Q:
    """Записи, попадающие в окно календаря, границы включительно."""
    return (
        Q(start_time__gte=start, start_time__lte=end)
        | Q(end_time__gte=start, end_time__lte=end)
        | Q(start_time__lte=start, end_time__gte=end)
    )


@dataclass
class OverlapResult:
    block: Optional[Block] = None
    reservations: List[Reservation] = field(default_factory=list)

    @property
    def has_block(self) -> bool:
        return self.block is not None

    @property
    def has_overlaps(self) -> bool:
        return bool(self.reservations)


def find_blocking_block(resource_id, start, end) -> Optional[Block]:
    return (
        Block.objects.filter(resource_id=resource_id)
        .filter(overlap_q(start, end))
        .order_by("start_time", "id")
        .first()
    )


def find_overlapping_reservations(resource_id, start, end, exclude_id=None, lock=False) -> List[Reservation]:
    qs = (
        Reservation.objects.filter(
            resource_id=resource_id,
            status=Reservation.Status.CONFIRMED,
        )
        .filter(overlap_q(start, end))
        .select_related("user")
        .order_by("start_time", "id")
    )
    if exclude_id is not None:
        qs = qs.exclude(pk=exclude_id)
    if lock:
        qs = qs.select_for_update(of=("self",))
    return list(qs)


def check_overlaps(resource_id, start, end, exclude_id=None) -> OverlapResult:
    return OverlapResult(
        block=find_blocking_block(resource_id, start, end),
        reservations=find_overlapping_reservations(resource_id, start, end, exclude_id),
    )
