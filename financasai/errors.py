"""Domain exceptions mapped to HTTP responses by app.py."""


class FinancasError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class AuthError(FinancasError):
    status_code = 401


class PermissionDenied(FinancasError):
    status_code = 403


class ValidationError(FinancasError):
    status_code = 400


class NotFound(FinancasError):
    status_code = 404


class BillingError(FinancasError):
    status_code = 500


class ReconnectRequired(FinancasError):
    """Google rejected the refresh token; the user must redo the OAuth consent."""

    status_code = 401

    def __init__(self, message: str = "Conexão com o Google expirada/invalidada. Reconecte.", google_error: str = ""):
        super().__init__(message)
        self.google_error = google_error
