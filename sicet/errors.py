"""
Error taxonomy shared by services and routes.

Services raise these; the handlers registered in ``create_app`` turn them into
``{"error": message}`` responses with the matching status code.
"""


class SicetError(Exception):
    status_code = 500
    default_message = "Errore interno del server"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(SicetError):
    status_code = 400
    default_message = "Dati non validi"


class NotAuthenticated(SicetError):
    status_code = 401
    default_message = "Non autenticato"


class Forbidden(SicetError):
    status_code = 403
    default_message = "Accesso negato"


class NotFound(SicetError):
    status_code = 404
    default_message = "Risorsa non trovata"


class Conflict(SicetError):
    status_code = 409
    default_message = "Conflitto"
