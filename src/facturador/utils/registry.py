"""Local registry of issued documents, keyed by clave.

Every document generated through the CLI is recorded with its consecutive
number, environment and submission status so it can be looked up or resent
later without regenerating its identifiers.

On disk the registry is a JSON object ``{clave: entry}``; it is not the
source of numbering (that is the sequence store), so a corrupt file is set
aside and a fresh registry started.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from filelock import FileLock

from facturador import config as _config

logger = logging.getLogger(__name__)

STATUS_GENERATED = "generado"
STATUS_ACCEPTED = "aceptado"
STATUS_REJECTED = "rechazado"
STATUS_PENDING = "procesando"

Entry = dict[str, Any]


def _registry_path() -> Path:
    return _config.get_data_dir() / "documentos.json"


def _backup_corrupt(path: Path) -> Path:
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{stamp}")
    path.rename(backup)
    logger.warning("Registro corrupto movido a %s", backup)
    return backup


def _read(path: Path) -> dict[str, Entry]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError:
        data = None
    if not isinstance(data, dict):
        _backup_corrupt(path)
        return {}
    return data


def _write(path: Path, documents: dict[str, Entry]) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(documents, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    os.replace(tmp, path)


@contextmanager
def _open_registry(write: bool = False) -> Iterator[dict[str, Entry]]:
    """Yield the registry under its file lock; with ``write`` it is saved on exit."""
    path = _registry_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with FileLock(path.with_suffix(".lock")):
        documents = _read(path)
        yield documents
        if write:
            _write(path, documents)


def _matches(entry: Entry, env: str | None) -> bool:
    return env is None or entry.get("env") == env


def list_documents(env: str | None = None) -> list[Entry]:
    """Registered documents in insertion order, optionally only those of ``env``."""
    with _open_registry() as documents:
        return [e for e in documents.values() if _matches(e, env)]


def find_document(clave: str, env: str | None = None) -> Entry | None:
    with _open_registry() as documents:
        entry = documents.get(clave)
    return entry if entry is not None and _matches(entry, env) else None


def add_document(
    clave: str,
    *,
    consecutivo: str,
    env: str,
    receptor: str | None = None,
    total: str | None = None,
    moneda: str | None = None,
    emitted_at: str | None = None,
    xml_path: str | None = None,
    status: str = STATUS_GENERATED,
) -> Entry:
    """Register a generated document. Registering a known clave again is a no-op."""
    with _open_registry(write=True) as documents:
        if clave in documents:
            return documents[clave]
        entry: Entry = {
            "clave": clave,
            "consecutivo": consecutivo,
            "tipo_documento": consecutivo[:2],
            "env": env,
            "status": status,
        }
        for field, value in (
            ("receptor", receptor),
            ("total", total),
            ("moneda", moneda),
            ("emitted_at", emitted_at),
            ("xml_path", xml_path),
        ):
            if value is not None:
                entry[field] = value
        documents[clave] = entry
        logger.debug("Documento %s registrado", clave)
        return entry


def update_status(
    clave: str,
    status: str,
    *,
    error: str | None = None,
    xml_path: str | None = None,
) -> Entry | None:
    """Record the outcome of a submission.

    A rejection reason is kept until the document is accepted. Returns the
    updated entry, or None for an unknown clave.
    """
    with _open_registry(write=True) as documents:
        entry = documents.get(clave)
        if entry is None:
            return None
        entry["status"] = status
        if xml_path is not None:
            entry["xml_path"] = xml_path
        if error is not None:
            entry["error"] = error
        elif status == STATUS_ACCEPTED:
            entry.pop("error", None)
        return entry
