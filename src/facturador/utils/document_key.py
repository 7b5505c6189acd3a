from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

from facturador.services.exceptions import InvalidFormat, KeyLengthError
from facturador.utils.validators import (
    validate_branch,
    validate_document_type,
    validate_security_code,
    validate_situation,
    validate_terminal,
)

CONSECUTIVE_LENGTH = 20
KEY_LENGTH = 50
_SEQUENCE_WIDTH = 13
_ISSUER_WIDTH = 12


def build_consecutive(
    tipo_documento: str,
    terminal: str,
    sucursal: str,
    sequence_value: int,
) -> str:
    """Build the 20-digit consecutive number.

    Format: tipo(2) + terminal(2) + sucursal(3) + consecutivo(13)
    Example: 01010020000000000001
    """
    validate_document_type(tipo_documento)
    validate_terminal(terminal)
    validate_branch(sucursal)
    if sequence_value < 0 or len(str(sequence_value)) > _SEQUENCE_WIDTH:
        raise InvalidFormat("consecutivo", sequence_value, "entero de 0 a 13 digitos")

    consecutive = "".join(
        [tipo_documento, terminal, sucursal, str(sequence_value).zfill(_SEQUENCE_WIDTH)]
    )
    if len(consecutive) != CONSECUTIVE_LENGTH:
        raise KeyLengthError(
            CONSECUTIVE_LENGTH, len(consecutive), consecutive, field="numero_consecutivo"
        )
    return consecutive


def build_document_key(
    country_code: str,
    emission_date: date,
    situation: str,
    issuer_id: str,
    consecutive: str,
    security_code: str,
) -> str:
    """Build the 50-digit document key (clave).

    Format: país(3) + ddMMyy(6) + situación(1) + cédula(12) + consecutivo(20) + seguridad(8)
    A key that does not come out at exactly 50 digits is an error; it is
    never truncated or padded.
    """
    if not re.fullmatch(r"\d{3}", country_code):
        raise InvalidFormat("codigo_pais", country_code, "3 digitos")
    validate_situation(situation)
    if not re.fullmatch(r"\d{1,12}", issuer_id):
        raise InvalidFormat("identificacion.numero", issuer_id, "1 a 12 digitos")
    if not re.fullmatch(r"\d+", consecutive):
        raise InvalidFormat("numero_consecutivo", consecutive, "solo digitos")
    validate_security_code(security_code)

    parts = [
        country_code,
        emission_date.strftime("%d%m%y"),
        situation,
        issuer_id.zfill(_ISSUER_WIDTH),
        consecutive,
        security_code,
    ]
    key = "".join(parts)
    if len(key) != KEY_LENGTH:
        raise KeyLengthError(KEY_LENGTH, len(key), key)
    return key


@dataclass(frozen=True)
class ConsecutiveParts:
    tipo_documento: str
    terminal: str
    sucursal: str
    sequence_value: int


@dataclass(frozen=True)
class DocumentKeyParts:
    country_code: str
    emission_date: date
    situation: str
    issuer_id: str
    consecutive: ConsecutiveParts
    security_code: str


def parse_consecutive(value: str) -> ConsecutiveParts:
    """Split a 20-digit consecutive number into its fields."""
    if len(value) != CONSECUTIVE_LENGTH:
        raise KeyLengthError(CONSECUTIVE_LENGTH, len(value), value, field="numero_consecutivo")
    if not value.isdigit():
        raise InvalidFormat("numero_consecutivo", value, "solo digitos")
    return ConsecutiveParts(
        tipo_documento=value[0:2],
        terminal=value[2:4],
        sucursal=value[4:7],
        sequence_value=int(value[7:]),
    )


def parse_document_key(value: str) -> DocumentKeyParts:
    """Split a 50-digit key into its fields. The issuer id keeps its zero padding stripped."""
    if len(value) != KEY_LENGTH:
        raise KeyLengthError(KEY_LENGTH, len(value), value)
    if not value.isdigit():
        raise InvalidFormat("clave", value, "solo digitos")
    dd, mm, yy = int(value[3:5]), int(value[5:7]), int(value[7:9])
    try:
        emission_date = date(2000 + yy, mm, dd)
    except ValueError:
        raise InvalidFormat("clave", value, "fecha ddMMyy valida en posiciones 4-9") from None
    return DocumentKeyParts(
        country_code=value[0:3],
        emission_date=emission_date,
        situation=value[9],
        issuer_id=value[10:22].lstrip("0") or "0",
        consecutive=parse_consecutive(value[22:42]),
        security_code=value[42:50],
    )
