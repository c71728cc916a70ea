"""
Erros de domínio da oficina.
Cada erro carrega o status HTTP e um código estável para o cliente da API.
"""


class GarageError(Exception):
    """Erro base da aplicação."""
    status_code = 500
    code = "GARAGE_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class NotFound(GarageError):
    status_code = 404
    code = "NOT_FOUND"


class Forbidden(GarageError):
    status_code = 403
    code = "FORBIDDEN"


class ValidationError(GarageError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidState(GarageError):
    """Transição pedida a partir de um estado que não a permite."""
    status_code = 409
    code = "INVALID_STATE"


class Conflict(GarageError):
    status_code = 409
    code = "CONFLICT"


# --- Orçamento ---

class AlreadyFinalized(InvalidState):
    code = "ALREADY_FINALIZED"


class AlreadyAccepted(InvalidState):
    code = "ALREADY_ACCEPTED"


class AlreadyRefused(InvalidState):
    code = "ALREADY_REFUSED"


class EmptyQuote(ValidationError):
    code = "EMPTY_QUOTE"


class NoMechanicAssigned(ValidationError):
    code = "NO_MECHANIC_ASSIGNED"


class PastDate(ValidationError):
    code = "PAST_DATE"


class MechanicUnavailable(Conflict):
    code = "MECHANIC_UNAVAILABLE"
