import logging
from typing import List

from django.db import transaction
from django.utils import timezone

from audit.services import Action, EntityType, record
from booking.exceptions import NotFound, PermissionDenied, ValidationFailed
from booking.overlaps import window_errors
from halls.models import Resource
from .models import Event

logger = logging.getLogger(__name__)

Visibility = Event.Visibility


def visible_to(user) -> List[str]:
    """Аноним и отключённый аккаунт видят только публичные мероприятия."""
    if user is None or not user.is_authenticated or user.is_disabled:
        return [Visibility.PUBLIC]
    if user.is_admin:
        return [Visibility.PUBLIC, Visibility.MEMBERS, Visibility.ADMIN]
    return [Visibility.PUBLIC, Visibility.MEMBERS]


def _validate(title, start_time, end_time, visibility) -> None:
    errors = window_errors(start_time, end_time)
    if not (title or "").strip():
        errors["title"] = ["This field may not be blank."]
    if visibility not in Visibility.values:
        errors["visibility"] = [f'"{visibility}" is not a valid choice.']
    if errors:
        raise ValidationFailed(errors)


def _resolve_resources(resource_ids) -> List[Resource]:
    ids = set(resource_ids)
    resources = list(Resource.objects.filter(pk__in=ids))
    missing = ids - {resource.pk for resource in resources}
    if missing:
        raise ValidationFailed(
            {"resource_ids": [f"Unknown resource: {pk}." for pk in sorted(missing)]}
        )
    return resources


def _snapshot(event: Event) -> dict:
    return {
        "title": event.title,
        "visibility": event.visibility,
        "start_time": event.start_time.isoformat(),
        "end_time": event.end_time.isoformat(),
    }


@transaction.atomic
def create_event(
    created_by,
    title,
    start_time,
    end_time,
    description="",
    visibility=Visibility.PUBLIC,
    resource_ids=None,
) -> Event:
    _validate(title, start_time, end_time, visibility)
    resources = _resolve_resources(resource_ids or [])

    event = Event.objects.create(
        title=title,
        description=description or "",
        start_time=start_time,
        end_time=end_time,
        visibility=visibility,
        created_by=created_by,
    )
    event.resources.set(resources)

    record(
        created_by,
        Action.CREATE,
        EntityType.EVENT,
        event.pk,
        {**_snapshot(event), "resource_ids": sorted(r.pk for r in resources)},
    )

    logger.info("Event %s (%s) created by %s", event.pk, event.visibility, created_by.pk)
    return event


def get_event(event_id) -> Event:
    event = (
        Event.objects.select_related("created_by")
        .prefetch_related("resources")
        .filter(pk=event_id)
        .first()
    )
    if event is None:
        raise NotFound("Event not found")
    return event


def get_event_for_viewer(event_id, viewer) -> Event:
    event = get_event(event_id)
    if event.visibility not in visible_to(viewer):
        raise PermissionDenied("You are not allowed to see this event")
    return event


@transaction.atomic
def update_event(event_id, actor, data: dict) -> Event:
    event = Event.objects.select_for_update().filter(pk=event_id).first()
    if event is None:
        raise NotFound("Event not found")

    before = _snapshot(event)

    for field in ("title", "description", "start_time", "end_time", "visibility"):
        if field in data:
            setattr(event, field, data[field])
    event.description = event.description or ""

    _validate(event.title, event.start_time, event.end_time, event.visibility)

    # список площадок заменяется целиком
    if "resource_ids" in data:
        event.resources.set(_resolve_resources(data["resource_ids"] or []))

    event.save()

    record(actor, Action.UPDATE, EntityType.EVENT, event.pk, {"before": before, "after": _snapshot(event)})
    logger.info("Event %s updated by %s", event.pk, actor.pk)
    return event


@transaction.atomic
def delete_event(event_id, actor) -> dict:
    event = Event.objects.select_for_update().filter(pk=event_id).first()
    if event is None:
        raise NotFound("Event not found")

    deleted_id = event.pk
    changes = {"title": event.title, "visibility": event.visibility}
    event.delete()

    record(actor, Action.DELETE, EntityType.EVENT, deleted_id, changes)
    logger.info("Event %s deleted by %s", deleted_id, actor.pk)
    return {"deleted_id": deleted_id}


def get_events(visibility=None, resource_id=None, start=None, end=None, include_expired=False):
    """
    start/end ограничивают время начала мероприятия.
    Прошедшие (end_time в прошлом) скрыты, если не просили include_expired.
    """
    qs = (
        Event.objects.select_related("created_by")
        .prefetch_related("resources")
        .order_by("start_time", "id")
    )
    if visibility is not None:
        qs = qs.filter(visibility__in=visibility)
    if not include_expired:
        qs = qs.filter(end_time__gte=timezone.now())
    if start:
        qs = qs.filter(start_time__gte=start)
    if end:
        qs = qs.filter(start_time__lte=end)
    if resource_id:
        qs = qs.filter(resources__id=resource_id)
    return qs


def get_public_events(start=None, end=None):
    return get_events(visibility=[Visibility.PUBLIC], start=start, end=end)
