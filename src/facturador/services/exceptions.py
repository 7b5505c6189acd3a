from __future__ import annotations


class FacturadorError(Exception):
    """Base class for every error that must abort a document emission."""


class InvalidFormat(FacturadorError):
    """A field arrived malformed (terminal, branch, identification, codes...).

    Never auto-corrected: the caller has to fix the input.
    """

    def __init__(self, field: str, value: object, expected: str) -> None:
        super().__init__(f"{field}: valor invalido {value!r} (esperado: {expected})")
        self.field = field
        self.value = value
        self.expected = expected


class NegativeAmountError(InvalidFormat):
    """A quantity, price or discount was negative (data-entry error, not a missing value)."""

    def __init__(self, field: str, value: object) -> None:
        super().__init__(field, value, "valor mayor o igual a cero")


class KeyLengthError(FacturadorError):
    """A derived identifier does not have its fixed width."""

    def __init__(self, expected: int, actual: int, value: str, field: str = "clave") -> None:
        super().__init__(f"{field} debe tener {expected} digitos, tiene {actual}: {value}")
        self.field = field
        self.expected = expected
        self.actual = actual
        self.value = value


class SequenceUnavailable(FacturadorError):
    """Counter (or security code) storage could not be read or written."""

    def __init__(self, scope: object, reason: str) -> None:
        super().__init__(f"Consecutivo no disponible para {scope}: {reason}")
        self.scope = scope
        self.reason = reason


class SerializationError(FacturadorError):
    """A required field is missing; no partial document is produced."""

    def __init__(self, field: str, message: str | None = None) -> None:
        super().__init__(message or f"Campo requerido ausente: {field}")
        self.field = field


class UnknownClassificationRate(FacturadorError):
    """No tax rate (or rate code) mapping was found."""

    def __init__(self, code: str | None = None, rate: object = None) -> None:
        if code is not None:
            msg = f"Sin tarifa de IVA para el codigo CABYS {code}"
        else:
            msg = f"Sin codigo de tarifa para la tarifa {rate}%"
        super().__init__(msg)
        self.code = code
        self.rate = rate
