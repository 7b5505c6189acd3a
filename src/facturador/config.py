from __future__ import annotations

import os
from datetime import timedelta, timezone
from pathlib import Path

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "facturador-cr"
KEYRING_SERVICE = "facturador-cr"
KEYRING_USERNAME = "cert-p12-password"

_PLATFORM_DIRS = {
    "config": platformdirs.user_config_dir,
    "data": platformdirs.user_data_dir,
}


def _repo_dir(subdir: str) -> Path | None:
    # src/facturador/config.py: the checkout root is three levels up
    candidate = Path(__file__).resolve().parents[2] / subdir
    return candidate if candidate.is_dir() else None


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Pick a directory: the env var if set, a ``config``/``data`` folder in a
    source checkout, otherwise the platformdirs location for this user.
    """
    override = os.environ.get(env_var)
    if override:
        return Path(override)
    return _repo_dir(default_subdir) or Path(_PLATFORM_DIRS[kind](APP_NAME))


def _dotenv_dir() -> Path | None:
    """Config dir as known before any .env is read; None if it does not exist yet."""
    found = _resolve_dir("FACTURADOR_CONFIG_DIR", "config", kind="config")
    if os.environ.get("FACTURADOR_CONFIG_DIR") or found.is_dir():
        return found
    return None


# A .env in the working directory wins over the one in the config dir
load_dotenv()
_env_dir = _dotenv_dir()
if _env_dir is not None:
    load_dotenv(_env_dir / ".env")


def get_config_dir() -> Path:
    return _resolve_dir("FACTURADOR_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Where sequences, security codes, the registry and issued XML live."""
    return _resolve_dir("FACTURADOR_DATA_DIR", "data", kind="data")


# --- Hacienda constants ---

COUNTRY_CODE = "506"
BASE_CURRENCY = "CRC"
FALLBACK_UNIT = "Unid"
DEFAULT_PROVEEDOR_SISTEMAS = "3102928079"

CRT = timezone(timedelta(hours=-6))

TIPO_FACTURA = "01"
TIPO_TIQUETE = "04"

SITUACION_NORMAL = "1"
SITUACION_CONTINGENCIA = "2"
SITUACION_SIN_INTERNET = "3"

ENVIRONMENTS = ("test", "production")

_SCHEMA_BASE = "https://cdn.comprobanteselectronicos.go.cr/xml-schemas/v4.4"

DOCUMENT_VARIANTS = {
    TIPO_FACTURA: ("FacturaElectronica", f"{_SCHEMA_BASE}/facturaElectronica"),
    TIPO_TIQUETE: ("TiqueteElectronico", f"{_SCHEMA_BASE}/tiqueteElectronico"),
}

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
VC_NS = "http://www.w3.org/2007/XMLSchema-versioning"

SEQUENCE_LOCK_TIMEOUT = 10.0


def get_fallback_unit() -> str:
    """Unit of measure used when a line arrives with a blank one."""
    return os.environ.get("FACTURADOR_UNIDAD_DEFECTO", FALLBACK_UNIT)


# --- PIN in the OS keyring ---
# Any keyring failure (missing backend, locked store, dbus) counts as "unavailable".


def _get_keyring_password() -> str | None:
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception:
        return None


def _set_keyring_password(password: str) -> bool:
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, password)
    except Exception:
        return False
    return True


def _delete_keyring_password() -> bool:
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception:
        return False
    return True


# --- Signing key ---


def get_cert_path() -> str:
    """Path of the .p12 signing key (CERT_P12_PATH); KeyError when unset."""
    return os.environ["CERT_P12_PATH"]


def get_cert_password() -> str:
    """PIN of the .p12: CERT_P12_PASSWORD first, then the OS keyring.

    Raises KeyError when neither has it.
    """
    pin = os.environ.get("CERT_P12_PASSWORD")
    if pin is None:
        pin = _get_keyring_password()
    if pin is None:
        raise KeyError("CERT_P12_PASSWORD")
    return pin


def has_certificate() -> bool:
    return bool(os.environ.get("CERT_P12_PATH"))


# --- YAML files under the config dir ---


def load_yaml(path: Path) -> dict:
    """Parse a YAML file; an empty file yields ``{}``."""
    return yaml.safe_load(path.read_text(encoding="utf-8")) or {}


def load_emisor() -> dict:
    """Load issuer configuration from config/emisor.yaml."""
    return load_yaml(get_config_dir() / "emisor.yaml")


def load_receptor(name: str) -> dict:
    """Load a saved receiver from config/receptores/{name}.yaml."""
    return load_yaml(get_config_dir() / "receptores" / f"{name}.yaml")


def list_receptores() -> list[str]:
    """Return sorted receiver names (YAML file stems) from config/receptores/."""
    receptores_dir = get_config_dir() / "receptores"
    if not receptores_dir.exists():
        return []
    return sorted(f.stem for f in receptores_dir.glob("*.yaml"))


def load_productos() -> dict:
    """Load the product catalog (CABYS code -> tax rate) from config/productos.yaml."""
    path = get_config_dir() / "productos.yaml"
    if not path.exists():
        return {}
    return load_yaml(path)


def get_issued_dir(env: str) -> Path:
    """Return the issued-documents directory for the given environment."""
    return get_data_dir() / env / "emitidos"
