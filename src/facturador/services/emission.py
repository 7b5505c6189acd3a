from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from lxml import etree

from facturador.config import (
    BASE_CURRENCY,
    CRT,
    ENVIRONMENTS,
    SITUACION_NORMAL,
    TIPO_FACTURA,
    TIPO_TIQUETE,
    get_cert_password,
    get_cert_path,
    get_issued_dir,
    has_certificate,
    load_emisor,
    load_receptor,
)
from facturador.models.document import (
    FiscalDocument,
    SequenceScope,
)
from facturador.models.party import Issuer, Party
from facturador.services.document_builder import build_document, summary_amounts, to_bytes
from facturador.services.exceptions import FacturadorError, InvalidFormat, SerializationError
from facturador.services.key_generator import KeyGenerator
from facturador.services.submission import (
    ACCEPTED,
    PENDING,
    REJECTED,
    SubmissionGateway,
    SubmissionRequest,
    SubmissionResult,
)
from facturador.services.tax_calculator import (
    CatalogRateResolver,
    RateResolver,
    compute_lines,
    compute_summary,
    convert_line,
)
from facturador.services.xml_signer import sign_document
from facturador.utils.certificate import load_pfx
from facturador.utils.registry import (
    STATUS_ACCEPTED,
    STATUS_PENDING,
    STATUS_REJECTED,
    add_document,
    find_document,
    update_status,
)
from facturador.utils.sanitizer import (
    sanitize_credit_term,
    sanitize_lines,
    sanitize_notes,
    sanitize_other_charge,
    sanitize_party,
    sanitize_payment_methods,
    sanitize_references,
)
from facturador.utils.security_code import (
    ReadOnlySecurityCodes,
    SecurityCodeStore,
    default_security_codes,
)
from facturador.utils.sequence import MemorySequenceStore, SequenceStore, default_store
from facturador.utils.validators import validate_currency, validate_document_type

logger = logging.getLogger(__name__)

_REGISTRY_STATUS = {
    ACCEPTED: STATUS_ACCEPTED,
    REJECTED: STATUS_REJECTED,
    PENDING: STATUS_PENDING,
}


@dataclass
class PreparedDocument:
    """A composed document with its final bytes, ready to save or submit."""

    document: FiscalDocument
    xml: bytes
    env: str
    sequence_value: int
    signed: bool = False

    @property
    def clave(self) -> str:
        return self.document.clave


def _check_env(env: str) -> str:
    if env not in ENVIRONMENTS:
        raise InvalidFormat("ambiente", env, " o ".join(ENVIRONMENTS))
    return env


def _load_issuer() -> Issuer:
    raw = load_emisor()
    sanitize_party(raw, "emisor")
    return Issuer.from_dict(raw)


def _load_receiver(raw: object) -> Party | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = load_receptor(raw)
    return sanitize_party(raw, "receptor")


def _sign(root: etree._Element) -> etree._Element:
    key_pem, cert_pem, _ = load_pfx(get_cert_path(), get_cert_password())
    return sign_document(root, key_pem, cert_pem)


def _active_environment(store: SequenceStore, company_id: str, env: str | None) -> str:
    """The environment the company is in; asking for another one is an error.

    Moving between environments resets counters, so it only happens through
    switch_environment, never as a side effect of emitting.
    """
    active = store.environment(company_id)
    if env is None:
        return active
    if env != active:
        raise InvalidFormat(
            "ambiente", env, f"{active} (cambie con 'facturador ambiente {env}')"
        )
    return env


def prepare(
    draft: Mapping,
    env: str | None = None,
    *,
    sequence_store: SequenceStore | None = None,
    security_codes: SecurityCodeStore | ReadOnlySecurityCodes | None = None,
    resolver: RateResolver | None = None,
    sign: bool | None = None,
    now: datetime | None = None,
) -> PreparedDocument:
    """Compose a document from a draft and allocate its consecutive and clave.

    ``env`` defaults to the company's current environment and must match it.
    Everything that can reject the input runs before a number is allocated;
    once allocated the number is consumed even if a later step fails.
    """
    if env is not None:
        _check_env(env)
    issuer = _load_issuer()
    if not issuer.party.actividad_economica:
        raise SerializationError("emisor.actividad_economica")
    tipo = validate_document_type(str(draft.get("tipo_documento", TIPO_FACTURA)).zfill(2))
    receptor = _load_receiver(draft.get("receptor"))
    if receptor is None and tipo != TIPO_TIQUETE:
        raise SerializationError("receptor")

    moneda = validate_currency(str(draft.get("moneda", BASE_CURRENCY)))
    tipo_cambio = draft.get("tipo_cambio", 1)

    items = sanitize_lines(draft.get("lineas") or ())
    if not items:
        raise SerializationError("lineas", "El documento no tiene lineas de detalle")
    items = tuple(
        convert_line(item, tipo_cambio, moneda) if item.precio_unitario_base is not None else item
        for item in items
    )

    lines = compute_lines(items, resolver or CatalogRateResolver())
    charges = [sanitize_other_charge(c) for c in draft.get("otros_cargos") or ()]
    summary, charges = compute_summary(lines, charges, moneda, tipo_cambio)

    plazo = sanitize_credit_term(draft.get("plazo_credito"))
    referencias = sanitize_references(draft.get("referencias"))
    otros = sanitize_notes(draft.get("otros"))
    medios_pago = sanitize_payment_methods(draft.get("medios_pago"))

    store = sequence_store or default_store()
    codes = security_codes or default_security_codes()
    env = _active_environment(store, issuer.company_id, env)

    now = now or datetime.now(CRT)
    scope = SequenceScope(
        company_id=issuer.company_id,
        tipo_documento=tipo,
        terminal=issuer.terminal,
        sucursal=issuer.sucursal,
    )
    ids = KeyGenerator(store, codes).allocate(
        scope,
        issuer.party.identificacion.numero,
        now.date(),
        str(draft.get("situacion", SITUACION_NORMAL)),
    )

    document = FiscalDocument(
        clave=ids.key,
        numero_consecutivo=ids.consecutive,
        fecha_emision=now.isoformat(timespec="seconds"),
        emisor=issuer.party,
        receptor=receptor,
        condicion_venta=str(draft.get("condicion_venta", "01")).zfill(2),
        condicion_venta_otros=draft.get("condicion_venta_otros"),
        plazo_credito=plazo,
        medios_pago=medios_pago,
        lineas=lines,
        otros_cargos=charges,
        resumen=summary,
        referencias=referencias,
        otros=otros,
        proveedor_sistemas=issuer.proveedor_sistemas,
    )

    root = build_document(document)
    signed = has_certificate() if sign is None else sign
    if signed:
        root = _sign(root)

    logger.info("Documento %s preparado (%s)", document.clave, env)
    return PreparedDocument(
        document=document,
        xml=to_bytes(root),
        env=env,
        sequence_value=ids.sequence_value,
        signed=signed,
    )


def preview(
    draft: Mapping,
    env: str | None = None,
    *,
    sequence_store: SequenceStore | None = None,
    security_codes: SecurityCodeStore | None = None,
    **kwargs,
) -> PreparedDocument:
    """Compose and render a draft without touching persistent state.

    The number comes from a scratch counter placed in ``env`` (default: the
    company's current environment) and the security code is the stored one,
    or an unsaved random one when the company has none yet. Never signed.
    """
    if env is not None:
        _check_env(env)
    company_id = _load_issuer().company_id
    scratch = MemorySequenceStore()
    target = env or (sequence_store or default_store()).environment(company_id)
    scratch.reset_for_environment(company_id, target)
    codes = ReadOnlySecurityCodes(security_codes or default_security_codes())
    return prepare(
        draft, target, sequence_store=scratch, security_codes=codes, sign=False, **kwargs
    )


def save_xml(prepared: PreparedDocument) -> str:
    """Write the document bytes to the issued dir and record it in the registry."""
    doc = prepared.document
    out_path = get_issued_dir(prepared.env) / f"{doc.clave}.xml"
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(prepared.xml)
    add_document(
        doc.clave,
        consecutivo=doc.numero_consecutivo,
        env=prepared.env,
        receptor=doc.receptor.nombre if doc.receptor else None,
        total=str(summary_amounts(doc.resumen)["TotalComprobante"]),
        moneda=doc.resumen.codigo_moneda,
        emitted_at=doc.fecha_emision,
        xml_path=str(out_path),
    )
    return str(out_path)


def _deliver(xml: bytes, gateway: SubmissionGateway, token: str) -> SubmissionResult:
    request = SubmissionRequest.from_xml(xml, token)
    result = gateway.submit(request)
    update_status(request.clave, _REGISTRY_STATUS[result.status], error=result.reason)
    if result.accepted:
        logger.info("Documento %s aceptado", request.clave)
    else:
        logger.warning("Documento %s: %s %s", request.clave, result.status, result.reason or "")
    return result


def submit(prepared: PreparedDocument, gateway: SubmissionGateway, token: str) -> SubmissionResult:
    """Save the document, hand its bytes to the gateway and record the outcome."""
    save_xml(prepared)
    return _deliver(prepared.xml, gateway, token)


def resend(clave: str, gateway: SubmissionGateway, token: str) -> SubmissionResult:
    """Resubmit the stored bytes of a registered document.

    The clave and consecutive are never regenerated.
    """
    entry = find_document(clave)
    if entry is None or not entry.get("xml_path"):
        raise FacturadorError(f"Documento {clave} no registrado")
    if entry.get("status") == STATUS_ACCEPTED:
        raise FacturadorError(f"Documento {clave} ya fue aceptado")
    xml = Path(entry["xml_path"]).read_bytes()
    return _deliver(xml, gateway, token)


def switch_environment(
    company_id: str, env: str, *, store: SequenceStore | None = None
) -> bool:
    """Move a company to another environment, zeroing its counters if it changes."""
    _check_env(env)
    store = store or default_store()
    changed = store.reset_for_environment(company_id, env)
    if changed:
        logger.info("Ambiente de %s cambiado a %s", company_id, env)
    return changed
