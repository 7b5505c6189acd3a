from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from decimal import Decimal, InvalidOperation

from facturador import config as _config
from facturador.models.document import Notes, PaymentMethod, Reference, notes_from_raw
from facturador.models.line_item import (
    ZERO,
    Discount,
    LineItem,
    OtherCharge,
    OtherTax,
    TaxExemption,
)
from facturador.models.party import Party
from facturador.services.document_builder import LINE_PLACES, QUANTITY_PLACES
from facturador.services.exceptions import InvalidFormat, NegativeAmountError
from facturador.utils.validators import validate_date, validate_identification, validate_percent

logger = logging.getLogger(__name__)

_LINE_TYPES = ("bien", "servicio")
_NOTE_KINDS = ("texto", "contenido")


def coerce_amount(value: object, default: Decimal, field: str) -> Decimal:
    """Turn a raw numeric input into Decimal.

    Missing or unparseable values fall back to ``default``; zero is kept as
    is and negatives are rejected.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, str):
        value = value.strip().replace(" ", "")
        if not value:
            return default
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        logger.warning("%s: valor no numerico %r, se usa %s", field, value, default)
        return default
    if not amount.is_finite():
        logger.warning("%s: valor no numerico %r, se usa %s", field, value, default)
        return default
    if amount < 0:
        raise NegativeAmountError(field, value)
    return amount


def limit_places(amount: Decimal, places: int, field: str) -> Decimal:
    """Reject an amount with more significant decimals than its XML field carries.

    Trailing zeros do not count: ``1.5000`` fits in 3 places.
    """
    if amount.quantize(Decimal(1).scaleb(-places)) != amount:
        raise InvalidFormat(field, str(amount), f"maximo {places} decimales")
    return amount


def _line_amount(value: object, default: Decimal, field: str, places: int = LINE_PLACES) -> Decimal:
    return limit_places(coerce_amount(value, default, field), places, field)


def _discount(raw: object, field: str) -> Discount | None:
    if isinstance(raw, Mapping):
        monto = _line_amount(raw.get("monto"), ZERO, field)
        naturaleza = raw.get("naturaleza") or None
    else:
        monto, naturaleza = _line_amount(raw, ZERO, field), None
    if monto == ZERO and naturaleza is None:
        return None
    return Discount(monto=monto, naturaleza=naturaleza)


def _exemption(raw: Mapping, field: str) -> TaxExemption:
    try:
        exoneracion = TaxExemption.from_dict(raw)
    except KeyError as exc:
        raise InvalidFormat(f"{field}.{exc.args[0]}", None, "campo requerido") from None
    except InvalidOperation:
        raise InvalidFormat(f"{field}.porcentaje", raw.get("porcentaje"), "numero entre 0 y 100") from None
    validate_percent(exoneracion.porcentaje, f"{field}.porcentaje")
    validate_date(exoneracion.fecha_emision)
    return exoneracion


def _other_tax(raw: Mapping, field: str) -> OtherTax:
    codigo = str(raw.get("codigo", "")).zfill(2)
    if not codigo.isdigit() or len(codigo) != 2:
        raise InvalidFormat(f"{field}.codigo", raw.get("codigo"), "2 digitos")
    return OtherTax(codigo=codigo, tarifa=validate_percent(raw.get("tarifa"), f"{field}.tarifa"))


def sanitize_line(raw: Mapping, position: int, fallback_unit: str | None = None) -> LineItem:
    """Normalize one raw line (as loaded from YAML or a form) into a LineItem.

    ``position`` is the 1-based place of the line in the document and
    becomes its line number.
    """
    field = f"linea {position}"
    numero = raw.get("numero_linea")
    if numero is not None and str(numero) != str(position):
        logger.warning("%s: numero de linea %s renumerado a %d", field, numero, position)

    codigo_cabys = str(raw.get("codigo_cabys") or "").strip()
    if not codigo_cabys.isdigit() or len(codigo_cabys) != 13:
        raise InvalidFormat(f"{field}.codigo_cabys", raw.get("codigo_cabys"), "13 digitos")

    unidad = str(raw.get("unidad_medida") or "").strip()
    if not unidad:
        unidad = fallback_unit or _config.get_fallback_unit()

    tipo = raw.get("tipo")
    if tipo is not None and tipo not in _LINE_TYPES:
        raise InvalidFormat(f"{field}.tipo", tipo, " o ".join(_LINE_TYPES))

    precio_base = raw.get("precio_unitario_base")
    exoneracion = raw.get("exoneracion")
    otro_impuesto = raw.get("otro_impuesto")
    return LineItem(
        numero_linea=position,
        codigo_cabys=codigo_cabys,
        cantidad=_line_amount(
            raw.get("cantidad"), Decimal("1"), f"{field}.cantidad", QUANTITY_PLACES
        ),
        unidad_medida=unidad,
        detalle=str(raw.get("detalle") or "").strip(),
        precio_unitario=_line_amount(raw.get("precio_unitario"), ZERO, f"{field}.precio_unitario"),
        descuento=_discount(raw.get("descuento"), f"{field}.descuento"),
        exoneracion=_exemption(exoneracion, f"{field}.exoneracion") if exoneracion else None,
        otro_impuesto=_other_tax(otro_impuesto, f"{field}.otro_impuesto") if otro_impuesto else None,
        precio_unitario_base=(
            _line_amount(precio_base, ZERO, f"{field}.precio_unitario_base")
            if precio_base is not None
            else None
        ),
        tipo=tipo,
    )


def sanitize_lines(raw_lines: Iterable[Mapping], fallback_unit: str | None = None) -> tuple[LineItem, ...]:
    return tuple(
        sanitize_line(raw, position, fallback_unit)
        for position, raw in enumerate(raw_lines, start=1)
    )


def sanitize_party(raw: Mapping, field: str = "receptor") -> Party:
    """Build a Party and check its identification number against its type."""
    if not raw.get("nombre"):
        raise InvalidFormat(f"{field}.nombre", raw.get("nombre"), "campo requerido")
    ident = raw.get("identificacion") or {}
    if not ident.get("tipo") or not ident.get("numero"):
        raise InvalidFormat(f"{field}.identificacion", ident, "tipo y numero")
    party = Party.from_dict(raw)
    validate_identification(party.identificacion.tipo, party.identificacion.numero)
    return party


def sanitize_other_charge(raw: Mapping) -> OtherCharge:
    """Normalize a raw other charge, validating its percentage and amount."""
    porcentaje = raw.get("porcentaje")
    monto = raw.get("monto")
    if porcentaje is None and monto is None:
        raise InvalidFormat("otro_cargo", dict(raw), "monto o porcentaje")
    normalized = dict(raw)
    if porcentaje is not None:
        normalized["porcentaje"] = validate_percent(porcentaje, "otro_cargo.porcentaje")
    if monto is not None:
        normalized["monto"] = coerce_amount(monto, ZERO, "otro_cargo.monto")
    return OtherCharge.from_dict(normalized)


# --- Document-level sections of a draft ---


def sanitize_payment_methods(raw: object) -> tuple[PaymentMethod, ...]:
    """Accept ``["04", ...]`` or ``[{"tipo": "04", "monto": ..., "otros": ...}, ...]``."""
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise InvalidFormat("medios_pago", raw, "lista de medios de pago")
    methods = []
    for position, entry in enumerate(raw, start=1):
        field = f"medio_pago {position}"
        if isinstance(entry, Mapping):
            tipo, monto, otros = entry.get("tipo"), entry.get("monto"), entry.get("otros")
        else:
            tipo, monto, otros = entry, None, None
        tipo = str(tipo if tipo is not None else "").strip()
        if not tipo.isdigit() or len(tipo) > 2:
            raise InvalidFormat(f"{field}.tipo", entry, "codigo de 2 digitos")
        methods.append(
            PaymentMethod(
                tipo=tipo.zfill(2),
                monto=coerce_amount(monto, ZERO, f"{field}.monto") if monto is not None else None,
                otros=str(otros) if otros else None,
            )
        )
    return tuple(methods)


def sanitize_references(raw: object) -> tuple[Reference, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise InvalidFormat("referencias", raw, "lista de referencias")
    references = []
    for position, entry in enumerate(raw, start=1):
        field = f"referencia {position}"
        if not isinstance(entry, Mapping):
            raise InvalidFormat(field, entry, "tipo_doc, numero, fecha_emision, codigo y razon")
        entry = dict(entry)
        # PyYAML loads an unquoted timestamp as a datetime
        if isinstance(entry.get("fecha_emision"), datetime):
            entry["fecha_emision"] = entry["fecha_emision"].isoformat(timespec="seconds")
        try:
            reference = Reference.from_dict(entry)
        except KeyError as exc:
            raise InvalidFormat(f"{field}.{exc.args[0]}", None, "campo requerido") from None
        try:
            datetime.fromisoformat(reference.fecha_emision)
        except ValueError:
            raise InvalidFormat(f"{field}.fecha_emision", reference.fecha_emision, "fecha ISO 8601") from None
        references.append(reference)
    return tuple(references)


def sanitize_notes(raw: object) -> Notes | None:
    """Check the ``otros`` section before building its notes variant."""
    if isinstance(raw, list):
        for position, entry in enumerate(raw, start=1):
            if isinstance(entry, str):
                continue
            field = f"otros {position}"
            if not isinstance(entry, Mapping) or entry.get("contenido") is None:
                raise InvalidFormat(f"{field}.contenido", entry, "texto de la nota")
            if entry.get("tipo", "texto") not in _NOTE_KINDS:
                raise InvalidFormat(f"{field}.tipo", entry.get("tipo"), " o ".join(_NOTE_KINDS))
    elif isinstance(raw, Mapping):
        for key in ("textos", "contenidos"):
            if not isinstance(raw.get(key, ()), (list, tuple)):
                raise InvalidFormat(f"otros.{key}", raw.get(key), "lista de textos")
    elif raw is not None and not isinstance(raw, str):
        raise InvalidFormat("otros", raw, "texto, lista o textos/contenidos")
    return notes_from_raw(raw)


def sanitize_credit_term(raw: object) -> int | None:
    """PlazoCredito in days; None when the draft has no credit term."""
    if raw is None or raw == "":
        return None
    try:
        days = int(str(raw).strip())
    except ValueError:
        raise InvalidFormat("plazo_credito", raw, "numero entero de dias") from None
    if days < 0:
        raise InvalidFormat("plazo_credito", raw, "numero entero de dias")
    return days
