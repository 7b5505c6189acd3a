from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree

from facturador.models.document import FiscalDocument, PaymentMethod, PlainNote
from facturador.models.line_item import Discount, LineItem, OtherCharge
from facturador.models.party import Issuer, Party
from facturador.services.tax_calculator import StaticRateResolver, compute_lines, compute_summary
from facturador.utils.document_key import build_document_key

CABYS_GENERAL = "8399000000000"  # 13%
CABYS_REDUCIDA = "2391000000000"  # 1%
CABYS_EXENTO = "0111000000000"  # 0% exenta
CABYS_NO_SUJETO = "0112000000000"  # 0% no sujeto

CONSECUTIVO = "01010010000000000001"
FECHA = "2024-03-05T10:00:00-06:00"


def xml_text(el: etree._Element, path: str) -> str | None:
    """Extract text by a path of local names, e.g. "Emisor/Identificacion/Numero"."""
    ns = etree.QName(el).namespace
    if ns:
        path = "/".join(f"{{{ns}}}{part}" for part in path.split("/"))
    found = el.find(path)
    return found.text if found is not None else None


def child_names(el: etree._Element) -> list[str]:
    return [etree.QName(child).localname for child in el]


@pytest.fixture(autouse=True)
def _isolated_dirs(monkeypatch, tmp_path):
    """Point config/data dirs at tmp_path and hide any real signing key."""
    monkeypatch.setenv("FACTURADOR_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("FACTURADOR_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("CERT_P12_PATH", raising=False)
    monkeypatch.delenv("CERT_P12_PASSWORD", raising=False)
    monkeypatch.delenv("FACTURADOR_UNIDAD_DEFECTO", raising=False)


# --- Party fixtures ---


@pytest.fixture
def emisor_dict() -> dict:
    return {
        "nombre": "ACME SOFTWARE SOCIEDAD ANONIMA",
        "nombre_comercial": "Acme",
        "identificacion": {"tipo": "02", "numero": "3101123456"},
        "actividad_economica": "741203",
        "ubicacion": {
            "provincia": "1",
            "canton": "1",
            "distrito": "3",
            "otras_senas": "Frente al parque",
        },
        "telefono": {"codigo_pais": "506", "numero": "22223333"},
        "correo": "facturas@acme.cr",
        "terminal": "01",
        "sucursal": "001",
    }


@pytest.fixture
def issuer(emisor_dict: dict) -> Issuer:
    return Issuer.from_dict(emisor_dict)


@pytest.fixture
def receptor_dict() -> dict:
    return {
        "nombre": "CLIENTE EJEMPLO S.A.",
        "identificacion": {"tipo": "02", "numero": "3101654321"},
        "actividad_economica": "620100",
        "correo": "cuentas@cliente.cr",
    }


@pytest.fixture
def receptor(receptor_dict: dict) -> Party:
    return Party.from_dict(receptor_dict)


# --- Tax fixtures ---


@pytest.fixture
def resolver() -> StaticRateResolver:
    return StaticRateResolver(
        {
            CABYS_GENERAL: 13,
            CABYS_REDUCIDA: {"tarifa": 1},
            CABYS_EXENTO: {"tarifa": 0, "clase_tarifa_0": "exenta"},
            CABYS_NO_SUJETO: {"tarifa": 0, "clase_tarifa_0": "no_sujeto"},
        }
    )


@pytest.fixture
def productos_dict() -> dict:
    return {
        CABYS_GENERAL: 13,
        CABYS_EXENTO: {"tarifa": 0, "clase_tarifa_0": "exenta"},
    }


def make_item(**overrides) -> LineItem:
    values = {
        "numero_linea": 1,
        "codigo_cabys": CABYS_GENERAL,
        "cantidad": Decimal("2"),
        "unidad_medida": "Sp",
        "detalle": "Consultoria",
        "precio_unitario": Decimal("100"),
    }
    values.update(overrides)
    return LineItem(**values)


# --- Document fixtures ---


@pytest.fixture
def clave() -> str:
    return build_document_key("506", date(2024, 3, 5), "1", "3101123456", CONSECUTIVO, "12345678")


@pytest.fixture
def sample_document(issuer, receptor, resolver, clave) -> FiscalDocument:
    """Two lines (13% service, exempt goods with discount) and a 10% charge.

    Totals: venta neta 245, impuesto 26, cargos 24.5, comprobante 295.5.
    """
    items = (
        make_item(),
        make_item(
            numero_linea=2,
            codigo_cabys=CABYS_EXENTO,
            cantidad=Decimal("1"),
            unidad_medida="Unid",
            detalle="Arroz",
            precio_unitario=Decimal("50"),
            descuento=Discount(Decimal("5"), "Cliente frecuente"),
        ),
    )
    lines = compute_lines(items, resolver)
    summary, charges = compute_summary(
        lines, [OtherCharge("06", "Servicio 10%", porcentaje=Decimal("10"))]
    )
    return FiscalDocument(
        clave=clave,
        numero_consecutivo=CONSECUTIVO,
        fecha_emision=FECHA,
        emisor=issuer.party,
        receptor=receptor,
        condicion_venta="01",
        lineas=lines,
        resumen=summary,
        medios_pago=(PaymentMethod("04"),),
        otros_cargos=charges,
        otros=PlainNote("Gracias por su compra"),
    )


# --- Config dir fixture ---


@pytest.fixture
def config_dir(tmp_path, emisor_dict, receptor_dict, productos_dict):
    cfg = tmp_path / "config"
    cfg.mkdir(exist_ok=True)
    (cfg / "emisor.yaml").write_text(yaml.dump(emisor_dict))
    (cfg / "productos.yaml").write_text(yaml.dump(productos_dict))
    receptores = cfg / "receptores"
    receptores.mkdir()
    (receptores / "cliente.yaml").write_text(yaml.dump(receptor_dict))
    return cfg


@pytest.fixture
def draft() -> dict:
    return {
        "tipo_documento": "01",
        "receptor": "cliente",
        "condicion_venta": "01",
        "medios_pago": [{"tipo": "04"}],
        "lineas": [
            {
                "codigo_cabys": CABYS_GENERAL,
                "cantidad": "2",
                "unidad_medida": "Sp",
                "detalle": "Consultoria",
                "precio_unitario": "100",
            }
        ],
    }


# --- Certificate / P12 fixtures ---


@pytest.fixture(scope="session")
def test_key_and_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "ACME SOFTWARE SOCIEDAD ANONIMA"),
            x509.NameAttribute(NameOID.SERIAL_NUMBER, "CPJ-3-101-123456"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(UTC) - timedelta(days=1))
        .not_valid_after(datetime.now(UTC) + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def self_signed_pem(test_key_and_cert):
    key, cert = test_key_and_cert
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


@pytest.fixture
def test_p12(tmp_path, test_key_and_cert):
    key, cert = test_key_and_cert
    pin = b"1234"
    p12_data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(pin),
    )
    p12_path = tmp_path / "llave.p12"
    p12_path.write_bytes(p12_data)
    return str(p12_path), "1234"
