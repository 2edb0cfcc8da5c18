import logging

from .models import AuditLogEntry

logger = logging.getLogger(__name__)

Action = AuditLogEntry.Action
EntityType = AuditLogEntry.EntityType


def record(actor, action: str, entity_type: str, entity_id, changes=None) -> AuditLogEntry:
    """Добавляет строку аудита в рамках транзакции вызывающего."""
    entry = AuditLogEntry.objects.create(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        changes=changes,
    )
    logger.debug("audit %s %s#%s by %s", action, entity_type, entity_id, getattr(actor, "pk", None))
    return entry


def get_audit_logs(entity_type=None, entity_id=None, user_id=None, limit: int = 50, offset: int = 0):
    qs = AuditLogEntry.objects.select_related("actor")

    if entity_type:
        qs = qs.filter(entity_type=entity_type)
    if entity_id:
        qs = qs.filter(entity_id=str(entity_id))
    if user_id:
        qs = qs.filter(actor_id=user_id)

    total = qs.count()
    logs = list(qs[offset:offset + limit])

    return {
        "logs": logs,
        "total": total,
        "has_more": offset + len(logs) < total,
    }


def get_entity_history(entity_type: str, entity_id):
    return list(
        AuditLogEntry.objects.select_related("actor").filter(
            entity_type=entity_type,
            entity_id=str(entity_id),
        )
    )
