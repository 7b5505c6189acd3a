from __future__ import annotations

import json
import logging
import os
import secrets
from pathlib import Path

from filelock import FileLock, Timeout

from facturador import config as _config
from facturador.services.exceptions import SequenceUnavailable
from facturador.utils.validators import validate_security_code

logger = logging.getLogger(__name__)

CODE_LENGTH = 8


def generate_security_code() -> str:
    """Return 8 digits drawn uniformly from 0-9."""
    return "".join(secrets.choice("0123456789") for _ in range(CODE_LENGTH))


class SecurityCodeStore:
    """Per-company security codes in a JSON file ``{company_id: "12345678"}``.

    A code, once persisted, is never regenerated: every issued key embeds it.
    """

    def __init__(self, path: Path, timeout: float = _config.SEQUENCE_LOCK_TIMEOUT) -> None:
        self.path = Path(path)
        self.timeout = timeout

    def _load(self, company_id: str) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SequenceUnavailable(company_id, f"codigos de seguridad ilegibles: {exc}") from exc
        if not isinstance(data, dict):
            raise SequenceUnavailable(company_id, f"archivo corrupto {self.path}")
        return data

    def get(self, company_id: str) -> str | None:
        code = self._load(company_id).get(company_id)
        return validate_security_code(code) if code is not None else None

    def get_or_create(self, company_id: str) -> str:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with FileLock(self.path.with_suffix(".lock"), timeout=self.timeout):
                data = self._load(company_id)
                if company_id in data:
                    return validate_security_code(data[company_id])
                code = generate_security_code()
                data[company_id] = code
                tmp = self.path.with_suffix(".tmp")
                tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
                os.replace(tmp, self.path)
        except Timeout:
            raise SequenceUnavailable(company_id, "tiempo de espera agotado para el bloqueo") from None
        except OSError as exc:
            raise SequenceUnavailable(company_id, str(exc)) from exc
        logger.info("Codigo de seguridad generado para %s", company_id)
        return code


def default_security_codes() -> SecurityCodeStore:
    return SecurityCodeStore(_config.get_data_dir() / "security_codes.json")


class ReadOnlySecurityCodes:
    """Security codes for previews: reuses a stored code but never persists a new one."""

    def __init__(self, store: SecurityCodeStore) -> None:
        self.store = store

    def get_or_create(self, company_id: str) -> str:
        return self.store.get(company_id) or generate_security_code()
