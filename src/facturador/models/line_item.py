from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal

# Units of measure Hacienda reserves for services; anything else is merchandise.
SERVICE_UNITS = frozenset({"Sp", "Spe", "St", "h", "d", "Al", "Alc", "Cm", "I", "Os"})

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Discount:
    monto: Decimal
    naturaleza: str | None = None


@dataclass(frozen=True)
class TaxExemption:
    tipo_documento: str
    numero_documento: str
    nombre_institucion: str
    fecha_emision: str  # YYYY-MM-DD
    porcentaje: Decimal = HUNDRED

    @classmethod
    def from_dict(cls, d: dict) -> TaxExemption:
        porcentaje = d.get("porcentaje")
        return cls(
            tipo_documento=str(d["tipo_documento"]).zfill(2),
            numero_documento=str(d.get("numero_documento", "")),
            nombre_institucion=str(d.get("nombre_institucion", "")),
            fecha_emision=str(d["fecha_emision"]),
            porcentaje=HUNDRED if porcentaje is None else Decimal(str(porcentaje)),
        )


@dataclass(frozen=True)
class OtherTax:
    """Secondary tax charged on top of IVA (ISC, IEBA, ...)."""

    codigo: str
    tarifa: Decimal


@dataclass(frozen=True)
class LineItem:
    """A sanitized line as entered, before any tax is computed."""

    numero_linea: int
    codigo_cabys: str
    cantidad: Decimal
    unidad_medida: str
    detalle: str
    precio_unitario: Decimal
    descuento: Discount | None = None
    exoneracion: TaxExemption | None = None
    otro_impuesto: OtherTax | None = None
    precio_unitario_base: Decimal | None = None
    tipo: str | None = None  # "bien" | "servicio"

    @property
    def is_service(self) -> bool:
        if self.tipo is not None:
            return self.tipo == "servicio"
        return self.unidad_medida in SERVICE_UNITS

    @property
    def base_price(self) -> Decimal:
        """Unit price in the base currency, kept across currency switches."""
        if self.precio_unitario_base is not None:
            return self.precio_unitario_base
        return self.precio_unitario

    @property
    def monto_descuento(self) -> Decimal:
        return self.descuento.monto if self.descuento else ZERO

    def with_price(self, precio_unitario: Decimal) -> LineItem:
        return replace(
            self,
            precio_unitario=precio_unitario,
            precio_unitario_base=self.base_price,
        )


@dataclass(frozen=True)
class Tax:
    codigo: str  # 01 = IVA
    tarifa: Decimal
    monto: Decimal
    codigo_tarifa: str | None = None
    exoneracion: TaxExemption | None = None
    monto_exoneracion: Decimal = ZERO

    @property
    def neto(self) -> Decimal:
        return self.monto - self.monto_exoneracion


@dataclass(frozen=True)
class EnrichedLineItem:
    """A line with every derived amount, at full precision."""

    item: LineItem
    monto_total: Decimal
    subtotal: Decimal
    impuesto: Tax
    impuesto_neto: Decimal
    monto_total_linea: Decimal
    otro_impuesto: Tax | None = None

    @property
    def numero_linea(self) -> int:
        return self.item.numero_linea

    @property
    def monto_exoneracion(self) -> Decimal:
        return self.impuesto.monto_exoneracion


@dataclass(frozen=True)
class OtherCharge:
    """Additional charge (Cruz Roja stamp, 10% service, ...).

    ``porcentaje`` and ``monto`` are kept consistent by whichever was edited
    last: ``monto_manual`` marks an explicit amount that must not be
    recomputed from the percentage.
    """

    tipo: str
    descripcion: str
    monto: Decimal = ZERO
    porcentaje: Decimal | None = None
    monto_manual: bool = False

    @classmethod
    def from_dict(cls, d: dict) -> OtherCharge:
        monto = d.get("monto")
        porcentaje = d.get("porcentaje")
        return cls(
            tipo=str(d.get("tipo", "99")).zfill(2),
            descripcion=str(d.get("descripcion", "")),
            monto=ZERO if monto is None else Decimal(str(monto)),
            porcentaje=None if porcentaje is None else Decimal(str(porcentaje)),
            monto_manual=monto is not None and d.get("ultimo_editado") != "porcentaje",
        )

    def with_percentage(self, porcentaje: Decimal) -> OtherCharge:
        return replace(self, porcentaje=porcentaje, monto_manual=False)

    def with_amount(self, monto: Decimal) -> OtherCharge:
        return replace(self, monto=monto, monto_manual=True)

    def resolve(self, base: Decimal) -> OtherCharge:
        """Return the charge with ``monto`` derived from ``base`` when percentage-driven."""
        if self.monto_manual or self.porcentaje is None:
            return self
        return replace(self, monto=base * self.porcentaje / HUNDRED)
