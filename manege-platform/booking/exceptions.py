"""
Типизированные ошибки бизнес-логики, которые бросают сервисы.

HTTP-слой сопоставляет каждому классу ответ, не разбирая текст сообщения;
атрибуты исключения несут то, что нужно показать клиенту.
"""


class BookingError(Exception):
    code = "BOOKING_ERROR"
    default_message = "Booking operation failed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(BookingError):
    code = "VALIDATION_FAILED"
    default_message = "Invalid data"

    def __init__(self, errors: dict, message=None):
        self.errors = errors
        super().__init__(message)


class NotFound(BookingError):
    code = "NOT_FOUND"
    default_message = "Not found"


class PermissionDenied(BookingError):
    code = "PERMISSION_DENIED"
    default_message = "You are not allowed to change this record"


class InvalidStateTransition(BookingError):
    code = "INVALID_STATE"
    default_message = "Record is already in the requested state"


class TimeBlocked(BookingError):
    """Жёсткий конфликт: запрошенное окно перекрыто блокировкой."""

    code = "TIME_BLOCKED"
    default_message = "This time slot is blocked"

    def __init__(self, block, message=None):
        self.block = block
        super().__init__(message)


class OverlapExists(BookingError):
    """Мягкий конфликт: повторить запрос с acknowledge_overlap, чтобы всё равно забронировать."""

    code = "OVERLAP_EXISTS"
    default_message = "There are already reservations in this period"

    def __init__(self, reservations, message=None):
        self.reservations = list(reservations)
        super().__init__(message)


class ConflictsExist(BookingError):
    """Мягкий конфликт: повторить запрос с confirm_conflicts, чтобы создать блокировку."""

    code = "CONFLICTS_EXIST"
    default_message = "Reservations will be affected by this block"

    def __init__(self, conflicts, message=None):
        self.conflicts = list(conflicts)
        super().__init__(message)
