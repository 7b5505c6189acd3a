from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from filelock import FileLock, Timeout

from facturador import config as _config
from facturador.models.document import SequenceScope
from facturador.services.exceptions import InvalidFormat, SequenceUnavailable

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT = "test"


class SequenceStore(Protocol):
    def allocate_next(self, scope: SequenceScope) -> int: ...

    def reset_for_environment(self, company_id: str, env: str) -> bool: ...

    def current(self, scope: SequenceScope) -> int: ...

    def environment(self, company_id: str) -> str: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _check_env(env: str) -> str:
    if env not in _config.ENVIRONMENTS:
        raise InvalidFormat("ambiente", env, " o ".join(_config.ENVIRONMENTS))
    return env


def _new_company() -> dict:
    return {"environment": DEFAULT_ENVIRONMENT, "updated_at": _now(), "counters": {}}


class FileSequenceStore:
    """Counters persisted in one JSON file, every read-modify-write under a FileLock.

    Layout::

        {company_id: {"environment": "test", "updated_at": "...",
                      "counters": {"01-01-001": {"last_value": 3, "updated_at": "..."}}}}
    """

    def __init__(self, path: Path, timeout: float = _config.SEQUENCE_LOCK_TIMEOUT) -> None:
        self.path = Path(path)
        self.timeout = timeout

    @contextmanager
    def _locked(self, scope: object) -> Iterator[None]:
        """Hold an exclusive file lock during sequence read-modify-write."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            lock = FileLock(self.path.with_suffix(".lock"), timeout=self.timeout)
            lock.acquire()
        except Timeout:
            raise SequenceUnavailable(scope, "tiempo de espera agotado para el bloqueo") from None
        except OSError as exc:
            raise SequenceUnavailable(scope, str(exc)) from exc
        try:
            yield
        finally:
            lock.release()

    def _load(self, scope: object) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise SequenceUnavailable(scope, str(exc)) from exc
        except json.JSONDecodeError as exc:
            raise SequenceUnavailable(scope, f"archivo corrupto {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise SequenceUnavailable(scope, f"archivo corrupto {self.path}")
        return data

    def _save(self, data: dict, scope: object) -> None:
        tmp = self.path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            raise SequenceUnavailable(scope, str(exc)) from exc

    def allocate_next(self, scope: SequenceScope) -> int:
        with self._locked(scope):
            data = self._load(scope)
            company = data.setdefault(scope.company_id, _new_company())
            counter = company["counters"].get(scope.counter_key, {})
            try:
                value = int(counter.get("last_value", 0)) + 1
            except (TypeError, ValueError):
                raise SequenceUnavailable(scope, "valor de contador corrupto") from None
            stamp = _now()
            company["counters"][scope.counter_key] = {"last_value": value, "updated_at": stamp}
            company["updated_at"] = stamp
            self._save(data, scope)
        logger.info("Consecutivo %d asignado para %s", value, scope)
        return value

    def reset_for_environment(self, company_id: str, env: str) -> bool:
        """Zero every counter of the company if its environment changes. Returns True on reset."""
        _check_env(env)
        with self._locked(company_id):
            data = self._load(company_id)
            company = data.get(company_id)
            if company is None:
                company = data[company_id] = _new_company()
                if env == DEFAULT_ENVIRONMENT:
                    self._save(data, company_id)
                    return False
            elif company.get("environment") == env:
                return False
            stamp = _now()
            for counter in company["counters"].values():
                counter["last_value"] = 0
                counter["updated_at"] = stamp
            company["environment"] = env
            company["updated_at"] = stamp
            self._save(data, company_id)
        logger.info("Contadores de %s reiniciados para el ambiente %s", company_id, env)
        return True

    def current(self, scope: SequenceScope) -> int:
        with self._locked(scope):
            company = self._load(scope).get(scope.company_id, {})
        return int(company.get("counters", {}).get(scope.counter_key, {}).get("last_value", 0))

    def environment(self, company_id: str) -> str:
        with self._locked(company_id):
            company = self._load(company_id).get(company_id, {})
        return company.get("environment", DEFAULT_ENVIRONMENT)


class MemorySequenceStore:
    """In-process store with the same contract, guarded by a threading.Lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._environments: dict[str, str] = {}
        self._counters: dict[tuple[str, str], int] = {}

    def allocate_next(self, scope: SequenceScope) -> int:
        key = (scope.company_id, scope.counter_key)
        with self._lock:
            self._environments.setdefault(scope.company_id, DEFAULT_ENVIRONMENT)
            value = self._counters.get(key, 0) + 1
            self._counters[key] = value
        return value

    def reset_for_environment(self, company_id: str, env: str) -> bool:
        _check_env(env)
        with self._lock:
            if self._environments.get(company_id, DEFAULT_ENVIRONMENT) == env:
                self._environments[company_id] = env
                return False
            self._environments[company_id] = env
            for key in self._counters:
                if key[0] == company_id:
                    self._counters[key] = 0
        return True

    def current(self, scope: SequenceScope) -> int:
        with self._lock:
            return self._counters.get((scope.company_id, scope.counter_key), 0)

    def environment(self, company_id: str) -> str:
        with self._lock:
            return self._environments.get(company_id, DEFAULT_ENVIRONMENT)


def default_store() -> FileSequenceStore:
    return FileSequenceStore(_config.get_data_dir() / "sequence.json")
