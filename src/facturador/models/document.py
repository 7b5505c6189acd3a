from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from facturador.config import TIPO_TIQUETE
from facturador.models.line_item import ZERO, EnrichedLineItem, OtherCharge
from facturador.models.party import Party


@dataclass(frozen=True)
class SequenceScope:
    """Counter scope: one monotonic sequence per company/type/terminal/branch."""

    company_id: str
    tipo_documento: str
    terminal: str
    sucursal: str

    @property
    def counter_key(self) -> str:
        return f"{self.tipo_documento}-{self.terminal}-{self.sucursal}"

    def __str__(self) -> str:
        return f"{self.company_id}/{self.counter_key}"


@dataclass(frozen=True)
class TaxBreakdown:
    codigo: str
    codigo_tarifa: str | None
    monto: Decimal


@dataclass(frozen=True)
class InvoiceSummary:
    codigo_moneda: str
    tipo_cambio: Decimal
    total_serv_gravados: Decimal = ZERO
    total_serv_exentos: Decimal = ZERO
    total_serv_exonerado: Decimal = ZERO
    total_serv_no_sujeto: Decimal = ZERO
    total_merc_gravadas: Decimal = ZERO
    total_merc_exentas: Decimal = ZERO
    total_merc_exonerada: Decimal = ZERO
    total_merc_no_sujeta: Decimal = ZERO
    total_venta: Decimal = ZERO
    total_descuentos: Decimal = ZERO
    total_venta_neta: Decimal = ZERO
    total_impuesto_bruto: Decimal = ZERO
    total_exoneracion: Decimal = ZERO
    total_impuesto: Decimal = ZERO
    total_otros_impuestos: Decimal = ZERO
    total_otros_cargos: Decimal = ZERO
    total_comprobante: Decimal = ZERO
    desglose: tuple[TaxBreakdown, ...] = ()

    @property
    def total_gravado(self) -> Decimal:
        return self.total_serv_gravados + self.total_merc_gravadas

    @property
    def total_exento(self) -> Decimal:
        return self.total_serv_exentos + self.total_merc_exentas

    @property
    def total_exonerado(self) -> Decimal:
        return self.total_serv_exonerado + self.total_merc_exonerada

    @property
    def total_no_sujeto(self) -> Decimal:
        return self.total_serv_no_sujeto + self.total_merc_no_sujeta


@dataclass(frozen=True)
class PaymentMethod:
    tipo: str  # 01 efectivo, 02 tarjeta, 04 transferencia, 06 SINPE, 99 otros
    monto: Decimal | None = None
    otros: str | None = None


@dataclass(frozen=True)
class Reference:
    """InformacionReferencia: a document this one corrects or replaces."""

    tipo_doc: str
    numero: str
    fecha_emision: str
    codigo: str
    razon: str
    tipo_doc_otro: str | None = None
    codigo_otro: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Reference:
        return cls(
            tipo_doc=str(d["tipo_doc"]).zfill(2),
            numero=str(d["numero"]),
            fecha_emision=str(d["fecha_emision"]),
            codigo=str(d["codigo"]).zfill(2),
            razon=str(d["razon"]),
            tipo_doc_otro=d.get("tipo_doc_otro"),
            codigo_otro=d.get("codigo_otro"),
        )


# --- Free-text notes (Otros) ---


@dataclass(frozen=True)
class PlainNote:
    text: str


@dataclass(frozen=True)
class NoteEntry:
    kind: str  # "texto" | "contenido"
    content: str


@dataclass(frozen=True)
class NoteList:
    entries: tuple[NoteEntry, ...]


@dataclass(frozen=True)
class StructuredNotes:
    textos: tuple[str, ...] = ()
    contenidos: tuple[str, ...] = ()


Notes = Union[PlainNote, NoteList, StructuredNotes]


def notes_from_raw(raw: object) -> Notes | None:
    """Build the notes variant from a string, a list of entries, or a textos/contenidos dict."""
    if raw is None or raw == "" or raw == [] or raw == {}:
        return None
    if isinstance(raw, str):
        return PlainNote(raw)
    if isinstance(raw, list):
        entries = []
        for entry in raw:
            if isinstance(entry, str):
                entries.append(NoteEntry("texto", entry))
                continue
            kind = entry.get("tipo", "texto")
            if kind not in ("texto", "contenido"):
                raise ValueError(f"Tipo de nota invalido: {kind!r}")
            entries.append(NoteEntry(kind, str(entry["contenido"])))
        return NoteList(tuple(entries))
    if isinstance(raw, dict):
        return StructuredNotes(
            textos=tuple(str(t) for t in raw.get("textos", ())),
            contenidos=tuple(str(c) for c in raw.get("contenidos", ())),
        )
    raise TypeError(f"Formato de notas no soportado: {type(raw).__name__}")


@dataclass(frozen=True)
class FiscalDocument:
    """A fully composed document. Immutable once serialized."""

    clave: str
    numero_consecutivo: str
    fecha_emision: str  # ISO datetime with offset
    emisor: Party
    receptor: Party | None
    condicion_venta: str
    lineas: tuple[EnrichedLineItem, ...]
    resumen: InvoiceSummary
    medios_pago: tuple[PaymentMethod, ...] = ()
    otros_cargos: tuple[OtherCharge, ...] = ()
    referencias: tuple[Reference, ...] = ()
    otros: Notes | None = None
    condicion_venta_otros: str | None = None
    plazo_credito: int | None = None
    proveedor_sistemas: str | None = None

    @property
    def tipo_documento(self) -> str:
        return self.numero_consecutivo[:2]

    @property
    def is_ticket(self) -> bool:
        return self.tipo_documento == TIPO_TIQUETE
