# ============================================================
# errors.py - Erreurs métier du service Booking
# ------------------------------------------------------------
# Chaque erreur porte un `kind` stable et un message lisible.
# app.py les convertit en réponse JSON {"kind", "detail"} avec
# le status HTTP indiqué ici.
# ============================================================


class BookingEngineError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"kind": self.kind, "detail": self.message}


# Entrée invalide : le client peut corriger et réessayer
class ValidationError(BookingEngineError):
    kind = "validation_error"
    status_code = 422


class InvalidRangeError(ValidationError):
    kind = "invalid_range"


class UnknownCategoryError(ValidationError):
    kind = "unknown_category"
    status_code = 404


class UnknownCustomerError(ValidationError):
    kind = "unknown_customer"
    status_code = 404


class NoApplicableRateError(ValidationError):
    kind = "no_applicable_rate"


class BookingNotFoundError(BookingEngineError):
    kind = "booking_not_found"
    status_code = 404


# Course perdue ou stock épuisé : relancer une recherche
class AvailabilityConflictError(BookingEngineError):
    kind = "availability_conflict"
    status_code = 409


class InvalidTransitionError(BookingEngineError):
    kind = "invalid_transition"
    status_code = 409


class TerminalStateError(BookingEngineError):
    kind = "terminal_state"
    status_code = 409


class PermissionDeniedError(BookingEngineError):
    kind = "permission_denied"
    status_code = 403


# Utilisée dans discounts.py uniquement, jamais propagée au-delà du validateur
class DiscountInvalidError(BookingEngineError):
    kind = "discount_invalid"
    status_code = 422

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


# Seule erreur transitoire (base injoignable / timeout)
class StoreUnavailableError(BookingEngineError):
    kind = "store_unavailable"
    status_code = 503
