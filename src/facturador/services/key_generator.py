from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from facturador.config import COUNTRY_CODE, SITUACION_NORMAL
from facturador.models.document import SequenceScope
from facturador.services.exceptions import InvalidFormat
from facturador.utils.document_key import build_consecutive, build_document_key
from facturador.utils.security_code import ReadOnlySecurityCodes, SecurityCodeStore
from facturador.utils.sequence import SequenceStore
from facturador.utils.validators import (
    validate_branch,
    validate_document_type,
    validate_situation,
    validate_terminal,
)


@dataclass(frozen=True)
class DocumentIdentifiers:
    consecutive: str
    key: str
    sequence_value: int


class KeyGenerator:
    """Allocate a counter value and derive the consecutive number and clave from it."""

    def __init__(
        self,
        sequence_store: SequenceStore,
        security_codes: SecurityCodeStore | ReadOnlySecurityCodes,
    ) -> None:
        self.sequence_store = sequence_store
        self.security_codes = security_codes

    def allocate(
        self,
        scope: SequenceScope,
        issuer_id: str,
        emission_date: date,
        situation: str = SITUACION_NORMAL,
    ) -> DocumentIdentifiers:
        # Reject malformed input before a number is consumed
        validate_document_type(scope.tipo_documento)
        validate_terminal(scope.terminal)
        validate_branch(scope.sucursal)
        validate_situation(situation)
        if not issuer_id.isdigit() or len(issuer_id) > 12:
            raise InvalidFormat("identificacion.numero", issuer_id, "1 a 12 digitos")

        security_code = self.security_codes.get_or_create(scope.company_id)
        value = self.sequence_store.allocate_next(scope)
        consecutive = build_consecutive(
            scope.tipo_documento, scope.terminal, scope.sucursal, value
        )
        key = build_document_key(
            COUNTRY_CODE, emission_date, situation, issuer_id, consecutive, security_code
        )
        return DocumentIdentifiers(consecutive=consecutive, key=key, sequence_value=value)
