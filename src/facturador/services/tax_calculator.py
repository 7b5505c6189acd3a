from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Protocol

from facturador import config as _config
from facturador.models.document import InvoiceSummary, TaxBreakdown
from facturador.models.line_item import (
    HUNDRED,
    ZERO,
    EnrichedLineItem,
    LineItem,
    OtherCharge,
    Tax,
)
from facturador.services.exceptions import InvalidFormat, UnknownClassificationRate

logger = logging.getLogger(__name__)

IVA = "01"

# Rate percent -> CodigoTarifaIVA
RATE_CODES = {
    Decimal("13"): "08",
    Decimal("8"): "04",
    Decimal("4"): "03",
    Decimal("2"): "02",
    Decimal("1"): "01",
}

# 0% lines are coded by why they carry no tax
ZERO_RATE_CODES = {
    "exenta": "10",
    "no_sujeto": "11",
    "transitorio_0": "05",
}

_EXEMPT_CODES = frozenset({"10"})
_NOT_SUBJECT_CODES = frozenset({"11"})

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class RateInfo:
    tarifa: Decimal
    clase_tarifa_0: str | None = None


class RateResolver(Protocol):
    def resolve(self, codigo_cabys: str) -> RateInfo: ...


def _rate_info(code: str, entry: object) -> RateInfo:
    if isinstance(entry, Mapping):
        tarifa, clase = entry.get("tarifa"), entry.get("clase_tarifa_0")
    else:
        tarifa, clase = entry, None
    try:
        return RateInfo(tarifa=Decimal(str(tarifa)), clase_tarifa_0=clase)
    except InvalidOperation:
        raise UnknownClassificationRate(code=code) from None


class StaticRateResolver:
    """Resolve rates from an in-memory mapping ``{cabys: 13}`` or ``{cabys: {"tarifa": 0, ...}}``."""

    def __init__(self, rates: Mapping[str, object]) -> None:
        self._rates = {str(k): v for k, v in rates.items()}

    def resolve(self, codigo_cabys: str) -> RateInfo:
        if codigo_cabys not in self._rates:
            raise UnknownClassificationRate(code=codigo_cabys)
        return _rate_info(codigo_cabys, self._rates[codigo_cabys])


class CatalogRateResolver(StaticRateResolver):
    """Resolve rates from the product catalog in config/productos.yaml."""

    def __init__(self, catalog: Mapping[str, object] | None = None) -> None:
        super().__init__(_config.load_productos() if catalog is None else catalog)


def rate_code(tarifa: Decimal, clase_tarifa_0: str | None = None) -> str:
    """Map a rate percent (and, for 0%, its classification) to its CodigoTarifaIVA."""
    tarifa = Decimal(tarifa)
    if tarifa == ZERO:
        if clase_tarifa_0 not in ZERO_RATE_CODES:
            raise UnknownClassificationRate(rate=tarifa)
        return ZERO_RATE_CODES[clase_tarifa_0]
    if tarifa not in RATE_CODES:
        raise UnknownClassificationRate(rate=tarifa)
    return RATE_CODES[tarifa]


def compute_line(item: LineItem, resolver: RateResolver) -> EnrichedLineItem:
    """Compute every derived amount of a line. Nothing is rounded here."""
    monto_total = item.cantidad * item.precio_unitario
    descuento = item.monto_descuento
    if descuento > monto_total:
        raise InvalidFormat(
            f"linea {item.numero_linea}.descuento", descuento, f"maximo {monto_total}"
        )
    subtotal = monto_total - descuento

    rate = resolver.resolve(item.codigo_cabys)
    codigo_tarifa = rate_code(rate.tarifa, rate.clase_tarifa_0)
    monto_impuesto = subtotal * rate.tarifa / HUNDRED

    exoneracion = item.exoneracion
    monto_exoneracion = ZERO
    if exoneracion is not None:
        if exoneracion.porcentaje == HUNDRED:
            monto_exoneracion = monto_impuesto
        else:
            monto_exoneracion = monto_impuesto * exoneracion.porcentaje / HUNDRED
    impuesto = Tax(
        codigo=IVA,
        tarifa=rate.tarifa,
        monto=monto_impuesto,
        codigo_tarifa=codigo_tarifa,
        exoneracion=exoneracion,
        monto_exoneracion=monto_exoneracion,
    )

    otro = None
    if item.otro_impuesto is not None:
        otro = Tax(
            codigo=item.otro_impuesto.codigo,
            tarifa=item.otro_impuesto.tarifa,
            monto=subtotal * item.otro_impuesto.tarifa / HUNDRED,
        )

    impuesto_neto = impuesto.neto + (otro.monto if otro else ZERO)
    return EnrichedLineItem(
        item=item,
        monto_total=monto_total,
        subtotal=subtotal,
        impuesto=impuesto,
        impuesto_neto=impuesto_neto,
        monto_total_linea=subtotal + impuesto_neto,
        otro_impuesto=otro,
    )


def compute_lines(items: Iterable[LineItem], resolver: RateResolver) -> tuple[EnrichedLineItem, ...]:
    return tuple(compute_line(item, resolver) for item in items)


def _classify(line: EnrichedLineItem) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    """Split a line's gross amount into (gravado, exento, exonerado, no_sujeto)."""
    code = line.impuesto.codigo_tarifa
    if code in _EXEMPT_CODES:
        return ZERO, line.monto_total, ZERO, ZERO
    if code in _NOT_SUBJECT_CODES:
        return ZERO, ZERO, ZERO, line.monto_total
    exoneracion = line.impuesto.exoneracion
    if exoneracion is None:
        return line.monto_total, ZERO, ZERO, ZERO
    exonerado = line.monto_total * exoneracion.porcentaje / HUNDRED
    return line.monto_total - exonerado, ZERO, exonerado, ZERO


def compute_summary(
    lines: Iterable[EnrichedLineItem],
    other_charges: Iterable[OtherCharge] = (),
    currency: str = _config.BASE_CURRENCY,
    exchange_rate: Decimal | str | int = 1,
) -> tuple[InvoiceSummary, tuple[OtherCharge, ...]]:
    """Aggregate the document totals.

    Returns the summary together with the other charges, percentage-driven
    ones resolved against the sum of line subtotals.
    """
    lines = tuple(lines)
    tipo_cambio = validate_exchange_rate(currency, exchange_rate)

    buckets = {
        key: ZERO
        for key in (
            "serv_gravados", "serv_exentos", "serv_exonerado", "serv_no_sujeto",
            "merc_gravadas", "merc_exentas", "merc_exonerada", "merc_no_sujeta",
        )
    }
    total_venta = total_descuentos = total_venta_neta = ZERO
    total_impuesto_bruto = total_exoneracion = total_impuesto = total_otros_impuestos = ZERO
    desglose: dict[tuple[str, str | None], Decimal] = {}

    for line in lines:
        gravado, exento, exonerado, no_sujeto = _classify(line)
        if line.item.is_service:
            buckets["serv_gravados"] += gravado
            buckets["serv_exentos"] += exento
            buckets["serv_exonerado"] += exonerado
            buckets["serv_no_sujeto"] += no_sujeto
        else:
            buckets["merc_gravadas"] += gravado
            buckets["merc_exentas"] += exento
            buckets["merc_exonerada"] += exonerado
            buckets["merc_no_sujeta"] += no_sujeto

        total_venta += line.monto_total
        total_descuentos += line.item.monto_descuento
        total_venta_neta += line.subtotal
        total_impuesto_bruto += line.impuesto.monto
        total_exoneracion += line.monto_exoneracion
        total_impuesto += line.impuesto_neto

        key = (line.impuesto.codigo, line.impuesto.codigo_tarifa)
        desglose[key] = desglose.get(key, ZERO) + line.impuesto.neto
        if line.otro_impuesto is not None:
            total_impuesto_bruto += line.otro_impuesto.monto
            total_otros_impuestos += line.otro_impuesto.monto
            key = (line.otro_impuesto.codigo, None)
            desglose[key] = desglose.get(key, ZERO) + line.otro_impuesto.monto

    charges = tuple(charge.resolve(total_venta_neta) for charge in other_charges)
    total_otros_cargos = sum((c.monto for c in charges), ZERO)

    total_comprobante = (
        total_venta_neta + total_impuesto_bruto - total_exoneracion + total_otros_cargos
    )
    summary = InvoiceSummary(
        codigo_moneda=currency,
        tipo_cambio=tipo_cambio,
        total_serv_gravados=buckets["serv_gravados"],
        total_serv_exentos=buckets["serv_exentos"],
        total_serv_exonerado=buckets["serv_exonerado"],
        total_serv_no_sujeto=buckets["serv_no_sujeto"],
        total_merc_gravadas=buckets["merc_gravadas"],
        total_merc_exentas=buckets["merc_exentas"],
        total_merc_exonerada=buckets["merc_exonerada"],
        total_merc_no_sujeta=buckets["merc_no_sujeta"],
        total_venta=total_venta,
        total_descuentos=total_descuentos,
        total_venta_neta=total_venta_neta,
        total_impuesto_bruto=total_impuesto_bruto,
        total_exoneracion=total_exoneracion,
        total_impuesto=total_impuesto,
        total_otros_impuestos=total_otros_impuestos,
        total_otros_cargos=total_otros_cargos,
        total_comprobante=total_comprobante,
        desglose=tuple(
            TaxBreakdown(codigo=codigo, codigo_tarifa=tarifa, monto=monto)
            for (codigo, tarifa), monto in desglose.items()
        ),
    )
    return summary, charges


# --- Currency ---


def validate_exchange_rate(currency: str, rate: Decimal | str | int) -> Decimal:
    """Return the rate as Decimal. The base currency only accepts a rate of 1."""
    try:
        value = Decimal(str(rate))
    except InvalidOperation:
        raise InvalidFormat("tipo_cambio", rate, "numero mayor que cero") from None
    if not value.is_finite() or value <= ZERO:
        raise InvalidFormat("tipo_cambio", rate, "numero mayor que cero")
    if currency == _config.BASE_CURRENCY and value != 1:
        raise InvalidFormat("tipo_cambio", rate, f"1 para {_config.BASE_CURRENCY}")
    return value


def convert_currency(amount_in_base: Decimal, rate: Decimal | str | int, to_currency: str) -> Decimal:
    """Convert a base-currency amount. Identity for the base currency."""
    if to_currency == _config.BASE_CURRENCY:
        return amount_in_base
    value = validate_exchange_rate(to_currency, rate)
    return (amount_in_base / value).quantize(_CENT, rounding=ROUND_HALF_UP)


def to_base(amount: Decimal, rate: Decimal | str | int) -> Decimal:
    """Express a document-currency amount in the base currency, for display."""
    return amount * Decimal(str(rate))


def convert_line(item: LineItem, rate: Decimal | str | int, to_currency: str) -> LineItem:
    """Reprice a line from its retained base price, never from a converted one."""
    return item.with_price(convert_currency(item.base_price, rate, to_currency))
