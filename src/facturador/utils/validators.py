from __future__ import annotations

import re
from datetime import date
from decimal import Decimal, InvalidOperation

from facturador.services.exceptions import InvalidFormat

# Minimum identification length per type: 01 física, 02 jurídica, 03 DIMEX, 04 NITE
_ID_MIN_LENGTH = {"01": 9, "02": 10, "03": 11, "04": 10}
_ID_MAX_LENGTH = 12

_VALID_SITUATIONS = frozenset({"1", "2", "3"})


def _digits(field: str, value: str, width: int) -> str:
    if not isinstance(value, str) or not re.fullmatch(rf"\d{{{width}}}", value):
        raise InvalidFormat(field, value, f"{width} digitos numericos")
    return value


def validate_document_type(value: str) -> str:
    """Validate a document type code: exactly 2 digits (01 factura, 04 tiquete...)."""
    return _digits("tipo_documento", value, 2)


def validate_terminal(value: str) -> str:
    """Validate a terminal: exactly 2 digits. Never padded or defaulted."""
    return _digits("terminal", value, 2)


def validate_branch(value: str) -> str:
    """Validate a branch (sucursal): exactly 3 digits. Never padded or defaulted."""
    return _digits("sucursal", value, 3)


def validate_security_code(value: str) -> str:
    """Validate a security code: exactly 8 digits."""
    return _digits("codigo_seguridad", value, 8)


def validate_situation(value: str) -> str:
    """Validate the situation code: 1 normal, 2 contingencia, 3 sin internet."""
    if value not in _VALID_SITUATIONS:
        raise InvalidFormat("situacion", value, "1, 2 o 3")
    return value


def validate_identification(tipo: str, numero: str) -> str:
    """Validate an identification number against the minimum length of its type.

    Returns the number unchanged if valid.
    """
    if tipo not in _ID_MIN_LENGTH:
        raise InvalidFormat("identificacion.tipo", tipo, "01, 02, 03 o 04")
    min_len = _ID_MIN_LENGTH[tipo]
    if not re.fullmatch(r"\d+", numero or ""):
        raise InvalidFormat("identificacion.numero", numero, "solo digitos")
    if not min_len <= len(numero) <= _ID_MAX_LENGTH:
        raise InvalidFormat(
            "identificacion.numero",
            numero,
            f"entre {min_len} y {_ID_MAX_LENGTH} digitos para tipo {tipo}",
        )
    return numero


def validate_percent(value: object, field: str = "porcentaje") -> Decimal:
    """Validate a percentage value (0-100) and return it as Decimal."""
    try:
        d = Decimal(str(value))
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise InvalidFormat(field, value, "numero entre 0 y 100") from None
    if d < 0 or d > 100:
        raise InvalidFormat(field, value, "numero entre 0 y 100")
    return d


def validate_date(value: str) -> str:
    """Validate an ISO date string (YYYY-MM-DD).

    Returns the value unchanged if valid.
    """
    try:
        date.fromisoformat(value)
    except (TypeError, ValueError):
        raise InvalidFormat("fecha", value, "YYYY-MM-DD") from None
    return value


def validate_document_key(value: str) -> str:
    """Validate a document key (clave): exactly 50 digits starting with 506."""
    if not re.fullmatch(r"506\d{47}", value or ""):
        raise InvalidFormat("clave", value, "50 digitos iniciando con 506")
    return value


def validate_currency(value: str) -> str:
    """Validate an ISO 4217 currency code: 3 uppercase letters."""
    if not re.fullmatch(r"[A-Z]{3}", value or ""):
        raise InvalidFormat("codigo_moneda", value, "3 letras mayusculas (ISO 4217)")
    return value
