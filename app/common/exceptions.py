"""
Errores de dominio para el core de facturación.

Todos heredan de HTTPException para que los servicios puedan lanzarlos
directamente y la capa HTTP los devuelva sin traducción adicional.
"""
from typing import List, Optional

from fastapi import HTTPException, status


class BillingError(HTTPException):
    """Base de los errores de facturación."""

    status_code_default = status.HTTP_400_BAD_REQUEST
    retriable = False

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.message = message
        self.errors = list(errors) if errors else [message]
        super().__init__(
            status_code=self.status_code_default,
            detail={
                "message": message,
                "errors": self.errors,
                "retriable": self.retriable,
            },
        )

    def __str__(self) -> str:
        return self.message


class NotFoundError(BillingError):
    """Organización, suscripción o plan inexistente o inactivo."""

    status_code_default = status.HTTP_404_NOT_FOUND


class ValidationError(BillingError):
    """Error corregible por el cliente. `errors` enumera todas las violaciones."""

    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY

    @classmethod
    def from_errors(cls, errors: List[str], prefix: str = "Validación fallida") -> "ValidationError":
        return cls(f"{prefix}: {'; '.join(errors)}", errors=errors)


class BusinessRuleError(BillingError):
    """Regla de negocio incumplida (sin suscripción activa, sin días restantes)."""

    status_code_default = status.HTTP_400_BAD_REQUEST


class ConflictError(BillingError):
    """Transición concurrente sobre la misma organización. Reintentable tras releer el estado."""

    status_code_default = status.HTTP_409_CONFLICT
    retriable = True


class DuplicateOperationError(BillingError):
    """Clave de idempotencia reutilizada para una operación distinta."""

    status_code_default = status.HTTP_409_CONFLICT
