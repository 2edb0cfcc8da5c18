import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from booking.exceptions import (
    BookingError,
    InvalidStateTransition,
    NotFound,
    PermissionDenied,
    TimeBlocked,
    ValidationFailed,
)
from .serializers import BlockSummarySerializer

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    ValidationFailed: status.HTTP_400_BAD_REQUEST,
    InvalidStateTransition: status.HTTP_400_BAD_REQUEST,
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    NotFound: status.HTTP_404_NOT_FOUND,
    TimeBlocked: status.HTTP_409_CONFLICT,
}


def error_body(exc: BookingError) -> dict:
    body = {"error": exc.code, "detail": exc.message}

    if isinstance(exc, ValidationFailed):
        body["errors"] = exc.errors
    elif isinstance(exc, TimeBlocked):
        body["block"] = BlockSummarySerializer(exc.block).data

    return body


def booking_exception_handler(exc, context):
    """
    Обработчик ошибок DRF: бизнес-ошибки превращаются в JSON со стабильным
    кодом `error`, всё остальное уходит в стандартный обработчик DRF.
    """
    if isinstance(exc, BookingError):
        code = next(
            (code for cls, code in STATUS_BY_ERROR.items() if isinstance(exc, cls)),
            None,
        )
        if code is None:
            # мягкие конфликты views обрабатывают сами
            logger.error("Unhandled booking error %s in %s", exc.code, context.get("view"))
            code = status.HTTP_400_BAD_REQUEST
        return Response(error_body(exc), status=code)

    return exception_handler(exc, context)
