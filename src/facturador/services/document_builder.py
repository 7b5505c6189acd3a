from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from lxml import etree

from facturador.config import (
    DEFAULT_PROVEEDOR_SISTEMAS,
    DOCUMENT_VARIANTS,
    DS_NS,
    VC_NS,
    XSI_NS,
)
from facturador.models.document import (
    FiscalDocument,
    InvoiceSummary,
    NoteList,
    Notes,
    PlainNote,
    Reference,
    StructuredNotes,
)
from facturador.models.line_item import ZERO, EnrichedLineItem, OtherCharge, Tax
from facturador.models.party import Party
from facturador.services.exceptions import SerializationError
from facturador.utils.document_key import parse_consecutive

# Decimal places per field family
PERCENT_PLACES = 2
LINE_PLACES = 5
SUMMARY_PLACES = 2
QUANTITY_PLACES = 3
RATE_PLACES = 5


def fmt(value: Decimal, places: int) -> str:
    """Fixed-point rendering with ROUND_HALF_UP, e.g. fmt(Decimal("26"), 5) -> "26.00000"."""
    quantum = Decimal(1).scaleb(-places)
    return str(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    ns = etree.QName(parent).namespace
    el = etree.SubElement(parent, f"{{{ns}}}{tag}" if ns else tag)
    if text is not None:
        el.text = text
    return el


def _require(doc: FiscalDocument) -> tuple[str, str]:
    """Check required upstream fields; returns (root tag, namespace) for the variant."""
    if not doc.clave:
        raise SerializationError("clave")
    if not doc.numero_consecutivo:
        raise SerializationError("numero_consecutivo")
    if doc.emisor is None or not doc.emisor.identificacion.numero:
        raise SerializationError("emisor.identificacion")
    if not doc.lineas:
        raise SerializationError("lineas", "El documento no tiene lineas de detalle")
    if not doc.emisor.actividad_economica:
        raise SerializationError("emisor.actividad_economica")

    tipo = parse_consecutive(doc.numero_consecutivo).tipo_documento
    if tipo not in DOCUMENT_VARIANTS:
        raise SerializationError(
            "numero_consecutivo", f"Tipo de documento no soportado: {tipo}"
        )
    if doc.receptor is None and not doc.is_ticket:
        raise SerializationError("receptor")
    return DOCUMENT_VARIANTS[tipo]


# --- Parties ---


def _add_party(parent: etree._Element, tag: str, party: Party) -> None:
    el = _sub(parent, tag)
    _sub(el, "Nombre", party.nombre)
    ident = _sub(el, "Identificacion")
    _sub(ident, "Tipo", party.identificacion.tipo)
    _sub(ident, "Numero", party.identificacion.numero)
    if party.nombre_comercial:
        _sub(el, "NombreComercial", party.nombre_comercial)
    if party.ubicacion is not None:
        loc = _sub(el, "Ubicacion")
        _sub(loc, "Provincia", party.ubicacion.provincia)
        _sub(loc, "Canton", party.ubicacion.canton)
        _sub(loc, "Distrito", party.ubicacion.distrito)
        if party.ubicacion.barrio:
            _sub(loc, "Barrio", party.ubicacion.barrio)
        _sub(loc, "OtrasSenas", party.ubicacion.otras_senas)
    if party.telefono is not None:
        tel = _sub(el, "Telefono")
        _sub(tel, "CodigoPais", party.telefono.codigo_pais)
        _sub(tel, "NumTelefono", party.telefono.numero)
    if party.correo:
        _sub(el, "CorreoElectronico", party.correo)


# --- Lines ---


def _add_tax(parent: etree._Element, tax: Tax) -> None:
    el = _sub(parent, "Impuesto")
    _sub(el, "Codigo", tax.codigo)
    if tax.codigo_tarifa is not None:
        _sub(el, "CodigoTarifaIVA", tax.codigo_tarifa)
    _sub(el, "Tarifa", fmt(tax.tarifa, PERCENT_PLACES))
    _sub(el, "Monto", fmt(tax.monto, LINE_PLACES))
    ex = tax.exoneracion
    if ex is not None:
        exo = _sub(el, "Exoneracion")
        _sub(exo, "TipoDocumentoEX1", ex.tipo_documento)
        _sub(exo, "NumeroDocumento", ex.numero_documento)
        _sub(exo, "NombreInstitucion", ex.nombre_institucion)
        _sub(exo, "FechaEmisionEX", ex.fecha_emision)
        _sub(exo, "TarifaExonerada", fmt(tax.tarifa * ex.porcentaje / 100, PERCENT_PLACES))
        _sub(exo, "MontoExoneracion", fmt(tax.monto_exoneracion, LINE_PLACES))


def _add_line(parent: etree._Element, line: EnrichedLineItem) -> None:
    item = line.item
    el = _sub(parent, "LineaDetalle")
    _sub(el, "NumeroLinea", str(item.numero_linea))
    _sub(el, "CodigoCABYS", item.codigo_cabys)
    _sub(el, "Cantidad", fmt(item.cantidad, QUANTITY_PLACES))
    _sub(el, "UnidadMedida", item.unidad_medida)
    _sub(el, "Detalle", item.detalle)
    _sub(el, "PrecioUnitario", fmt(item.precio_unitario, LINE_PLACES))
    _sub(el, "MontoTotal", fmt(line.monto_total, LINE_PLACES))
    if item.descuento is not None:
        desc = _sub(el, "Descuento")
        _sub(desc, "MontoDescuento", fmt(item.descuento.monto, LINE_PLACES))
        if item.descuento.naturaleza:
            _sub(desc, "NaturalezaDescuento", item.descuento.naturaleza)
    _sub(el, "SubTotal", fmt(line.subtotal, LINE_PLACES))
    _sub(el, "BaseImponible", fmt(line.subtotal, LINE_PLACES))
    _add_tax(el, line.impuesto)
    if line.otro_impuesto is not None:
        _add_tax(el, line.otro_impuesto)
    _sub(el, "ImpuestoAsumidoEmisorFabrica", fmt(ZERO, LINE_PLACES))
    _sub(el, "ImpuestoNeto", fmt(line.impuesto_neto, LINE_PLACES))
    _sub(el, "MontoTotalLinea", fmt(line.monto_total_linea, LINE_PLACES))


def _add_other_charge(parent: etree._Element, charge: OtherCharge) -> None:
    el = _sub(parent, "OtrosCargos")
    _sub(el, "TipoDocumentoOC", charge.tipo)
    _sub(el, "Detalle", charge.descripcion)
    if charge.porcentaje is not None and not charge.monto_manual:
        _sub(el, "PorcentajeOC", fmt(charge.porcentaje, PERCENT_PLACES))
    _sub(el, "MontoCargo", fmt(charge.monto, LINE_PLACES))


# --- Summary ---


def _cents(value: Decimal) -> Decimal:
    return Decimal(value).quantize(Decimal(1).scaleb(-SUMMARY_PLACES), rounding=ROUND_HALF_UP)


def summary_amounts(s: InvoiceSummary) -> dict[str, Decimal]:
    """ResumenFactura amounts at 2 decimals, keyed by element name.

    Only the leaf buckets, discounts, tax groups and charges are rounded; every
    aggregate is summed from those rounded values so the document adds up to
    the cent (TotalVenta = gravado + exento + exonerado + no sujeto,
    TotalVentaNeta = TotalVenta - TotalDescuentos, TotalImpuesto = sum of the
    breakdown, TotalComprobante = TotalVentaNeta + TotalImpuesto + TotalOtrosCargos).
    """
    amounts = {
        "TotalServGravados": _cents(s.total_serv_gravados),
        "TotalServExentos": _cents(s.total_serv_exentos),
        "TotalServExonerado": _cents(s.total_serv_exonerado),
        "TotalServNoSujeto": _cents(s.total_serv_no_sujeto),
        "TotalMercanciasGravadas": _cents(s.total_merc_gravadas),
        "TotalMercanciasExentas": _cents(s.total_merc_exentas),
        "TotalMercExonerada": _cents(s.total_merc_exonerada),
        "TotalMercNoSujeta": _cents(s.total_merc_no_sujeta),
    }
    amounts["TotalGravado"] = amounts["TotalServGravados"] + amounts["TotalMercanciasGravadas"]
    amounts["TotalExento"] = amounts["TotalServExentos"] + amounts["TotalMercanciasExentas"]
    amounts["TotalExonerado"] = amounts["TotalServExonerado"] + amounts["TotalMercExonerada"]
    amounts["TotalNoSujeto"] = amounts["TotalServNoSujeto"] + amounts["TotalMercNoSujeta"]
    amounts["TotalVenta"] = (
        amounts["TotalGravado"]
        + amounts["TotalExento"]
        + amounts["TotalExonerado"]
        + amounts["TotalNoSujeto"]
    )
    amounts["TotalDescuentos"] = _cents(s.total_descuentos)
    amounts["TotalVentaNeta"] = amounts["TotalVenta"] - amounts["TotalDescuentos"]
    amounts["TotalImpuesto"] = sum((_cents(b.monto) for b in s.desglose), ZERO)
    amounts["TotalOtrosCargos"] = _cents(s.total_otros_cargos)
    amounts["TotalComprobante"] = (
        amounts["TotalVentaNeta"] + amounts["TotalImpuesto"] + amounts["TotalOtrosCargos"]
    )
    return amounts


_SALES_TOTALS = (
    "TotalServGravados",
    "TotalServExentos",
    "TotalServExonerado",
    "TotalServNoSujeto",
    "TotalMercanciasGravadas",
    "TotalMercanciasExentas",
    "TotalMercExonerada",
    "TotalMercNoSujeta",
    "TotalGravado",
    "TotalExento",
    "TotalExonerado",
    "TotalNoSujeto",
    "TotalVenta",
    "TotalDescuentos",
    "TotalVentaNeta",
)


def _add_summary(parent: etree._Element, doc: FiscalDocument) -> None:
    s: InvoiceSummary = doc.resumen
    amounts = summary_amounts(s)
    el = _sub(parent, "ResumenFactura")
    moneda = _sub(el, "CodigoTipoMoneda")
    _sub(moneda, "CodigoMoneda", s.codigo_moneda)
    _sub(moneda, "TipoCambio", fmt(s.tipo_cambio, RATE_PLACES))

    for tag in _SALES_TOTALS:
        _sub(el, tag, fmt(amounts[tag], SUMMARY_PLACES))

    for breakdown in s.desglose:
        desglose = _sub(el, "TotalDesgloseImpuesto")
        _sub(desglose, "Codigo", breakdown.codigo)
        if breakdown.codigo_tarifa is not None:
            _sub(desglose, "CodigoTarifaIVA", breakdown.codigo_tarifa)
        _sub(desglose, "TotalMontoImpuesto", fmt(breakdown.monto, SUMMARY_PLACES))

    _sub(el, "TotalImpuesto", fmt(amounts["TotalImpuesto"], SUMMARY_PLACES))
    _sub(el, "TotalImpAsumEmisorFabrica", fmt(ZERO, SUMMARY_PLACES))
    if s.total_otros_cargos:
        _sub(el, "TotalOtrosCargos", fmt(amounts["TotalOtrosCargos"], SUMMARY_PLACES))

    for medio in doc.medios_pago:
        mp = _sub(el, "MedioPago")
        _sub(mp, "TipoMedioPago", medio.tipo)
        if medio.otros:
            _sub(mp, "MedioPagoOtros", medio.otros)
        if medio.monto is not None:
            _sub(mp, "TotalMedioPago", fmt(medio.monto, SUMMARY_PLACES))

    _sub(el, "TotalComprobante", fmt(amounts["TotalComprobante"], SUMMARY_PLACES))


def _add_reference(parent: etree._Element, ref: Reference) -> None:
    el = _sub(parent, "InformacionReferencia")
    _sub(el, "TipoDocIR", ref.tipo_doc)
    if ref.tipo_doc_otro:
        _sub(el, "TipoDocRefOTRO", ref.tipo_doc_otro)
    _sub(el, "Numero", ref.numero)
    _sub(el, "FechaEmisionIR", ref.fecha_emision)
    _sub(el, "Codigo", ref.codigo)
    if ref.codigo_otro:
        _sub(el, "CodigoReferenciaOTRO", ref.codigo_otro)
    _sub(el, "Razon", ref.razon)


def _add_notes(parent: etree._Element, notes: Notes) -> None:
    el = _sub(parent, "Otros")
    if isinstance(notes, PlainNote):
        _sub(el, "OtroTexto", notes.text)
    elif isinstance(notes, NoteList):
        for entry in notes.entries:
            tag = "OtroContenido" if entry.kind == "contenido" else "OtroTexto"
            _sub(el, tag, entry.content)
    elif isinstance(notes, StructuredNotes):
        for text in notes.textos:
            _sub(el, "OtroTexto", text)
        for content in notes.contenidos:
            _sub(el, "OtroContenido", content)


def build_document(doc: FiscalDocument) -> etree._Element:
    """Build the FacturaElectronica / TiqueteElectronico element ready for signing."""
    root_tag, ns = _require(doc)

    nsmap = {None: ns, "ds": DS_NS, "xsi": XSI_NS, "vc": VC_NS}
    root = etree.Element(f"{{{ns}}}{root_tag}", nsmap=nsmap)  # type: ignore[arg-type]  # lxml stubs don't model None key for default ns
    root.set(f"{{{XSI_NS}}}schemaLocation", f"{ns} schema.xsd")

    _sub(root, "Clave", doc.clave)
    _sub(root, "ProveedorSistemas", doc.proveedor_sistemas or DEFAULT_PROVEEDOR_SISTEMAS)
    _sub(root, "CodigoActividadEmisor", doc.emisor.actividad_economica)
    if not doc.is_ticket and doc.receptor is not None and doc.receptor.actividad_economica:
        _sub(root, "CodigoActividadReceptor", doc.receptor.actividad_economica)
    _sub(root, "NumeroConsecutivo", doc.numero_consecutivo)
    _sub(root, "FechaEmision", doc.fecha_emision)

    _add_party(root, "Emisor", doc.emisor)
    if doc.receptor is not None:
        _add_party(root, "Receptor", doc.receptor)

    _sub(root, "CondicionVenta", doc.condicion_venta)
    if doc.condicion_venta_otros:
        _sub(root, "CondicionVentaOtros", doc.condicion_venta_otros)
    if doc.plazo_credito is not None:
        _sub(root, "PlazoCredito", str(doc.plazo_credito))

    detalle = _sub(root, "DetalleServicio")
    for line in doc.lineas:
        _add_line(detalle, line)

    for charge in doc.otros_cargos:
        _add_other_charge(root, charge)

    _add_summary(root, doc)

    for ref in doc.referencias:
        _add_reference(root, ref)

    if doc.otros is not None:
        _add_notes(root, doc.otros)

    return root


def to_bytes(root: etree._Element) -> bytes:
    return etree.tostring(root, xml_declaration=True, encoding="utf-8")


def serialize(doc: FiscalDocument) -> bytes:
    """Render the document as UTF-8 XML bytes with declaration."""
    return to_bytes(build_document(doc))
