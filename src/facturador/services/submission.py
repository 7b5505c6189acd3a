"""Contract with the collaborator that delivers documents to Hacienda.

The HTTP client itself lives outside this package: anything with a
``submit(SubmissionRequest) -> SubmissionResult`` method can be plugged in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol

from lxml import etree

from facturador.services.exceptions import SerializationError
from facturador.services.xml_encoder import encode_document

ACCEPTED = "accepted"
REJECTED = "rejected"
PENDING = "pending"

Status = Literal["accepted", "rejected", "pending"]


@dataclass(frozen=True)
class SubmissionRequest:
    clave: str
    fecha: str
    emisor_tipo: str
    emisor_numero: str
    comprobante_xml: str  # base64 of the signed document
    token: str
    receptor_tipo: str | None = None
    receptor_numero: str | None = None

    @classmethod
    def from_xml(cls, xml_bytes: bytes, token: str) -> SubmissionRequest:
        """Read the envelope fields back from serialized document bytes."""
        root = etree.fromstring(xml_bytes)
        ns = {"c": etree.QName(root).namespace}

        def text(path: str) -> str | None:
            return root.findtext(path, namespaces=ns)

        clave = text("c:Clave")
        fecha = text("c:FechaEmision")
        emisor_tipo = text("c:Emisor/c:Identificacion/c:Tipo")
        emisor_numero = text("c:Emisor/c:Identificacion/c:Numero")
        if not clave:
            raise SerializationError("clave")
        if not fecha:
            raise SerializationError("fecha_emision")
        if not emisor_tipo or not emisor_numero:
            raise SerializationError("emisor.identificacion")
        return cls(
            clave=clave,
            fecha=fecha,
            emisor_tipo=emisor_tipo,
            emisor_numero=emisor_numero,
            comprobante_xml=encode_document(xml_bytes),
            token=token,
            receptor_tipo=text("c:Receptor/c:Identificacion/c:Tipo"),
            receptor_numero=text("c:Receptor/c:Identificacion/c:Numero"),
        )


@dataclass(frozen=True)
class SubmissionResult:
    status: Status
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.status == ACCEPTED


class SubmissionGateway(Protocol):
    def submit(self, request: SubmissionRequest) -> SubmissionResult: ...
