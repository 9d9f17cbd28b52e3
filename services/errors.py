"""Domain errors raised by the booking services and rendered as JSON by the app."""


class BookingError(Exception):
    status_code = 400
    code = "BOOKING_ERROR"
    message = "No se pudo procesar la solicitud"

    def __init__(self, message=None, **extra):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.extra = extra

    def to_dict(self):
        return {"error": self.message, "code": self.code, **self.extra}


class ValidationError(BookingError):
    code = "VALIDATION_ERROR"
    message = "Faltan datos requeridos"

    def __init__(self, message=None, errors=None, **extra):
        self.errors = list(errors or [])
        if message is None and self.errors:
            message = ", ".join(self.errors)
        super().__init__(message, validationErrors=self.errors, **extra)


class NotFound(BookingError):
    status_code = 404
    code = "NOT_FOUND"
    message = "No encontrado"


class SlotTaken(BookingError):
    status_code = 409
    code = "SLOT_TAKEN"
    message = "horario no disponible, elegí otro"

    def __init__(self, booking_date=None, booking_time=None):
        super().__init__(
            slotTaken=True,
            date=booking_date.isoformat() if booking_date else None,
            time=booking_time,
        )


class QuotaExhausted(BookingError):
    status_code = 422
    code = "QUOTA_EXHAUSTED"
    message = "No te quedan lavados disponibles en este ciclo"


class SubscriptionInactive(BookingError):
    status_code = 422
    code = "SUBSCRIPTION_INACTIVE"
    message = "Tu suscripción no está activa"


class InvalidTransition(BookingError):
    status_code = 409
    code = "INVALID_TRANSITION"
    message = "La reserva no admite este cambio de estado"


class ProviderUnavailable(BookingError):
    """Transient failure talking to the payment provider. Safe to retry reads only."""
    status_code = 503
    code = "PROVIDER_UNAVAILABLE"
    message = "El proveedor de pagos no está disponible, intentá de nuevo"


class OutcomeUnknown(BookingError):
    """The store did not answer in time; the write may or may not have landed."""
    status_code = 503
    code = "OUTCOME_UNKNOWN"
    message = "No pudimos confirmar la operación, revisá el estado antes de reintentar"

    def __init__(self, message=None, **extra):
        super().__init__(message, outcome="unknown", **extra)


class WebhookProcessingFailure(Exception):
    """Raised inside webhook handling; logged and never surfaced to the provider."""


class PaymentProviderError(BookingError):
    """The provider rejected the request; retrying the same request will not help."""
    status_code = 502
    code = "PROVIDER_ERROR"
    message = "No pudimos iniciar el pago"
