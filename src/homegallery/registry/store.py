"""
File-backed Service Registry

This module provides:
- ServiceStatus: the three health states a record can be in
- ServiceRecord: one tracked service, with the legacy address/port fields
- JsonServiceStore: thread-safe CRUD over a single JSON document

Every store operation holds one lock for its full read -> mutate -> write
cycle and re-reads the file each time; nothing is cached between calls.
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, asdict, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


class ServiceStatus(Enum):
    """Service health status"""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


def _now() -> str:
    return time.strftime(TIMESTAMP_FORMAT)


@dataclass
class ServiceRecord:
    """A tracked service as persisted in the registry file."""
    id: int
    name: str
    url: Optional[str] = None
    health_check_url: Optional[str] = None
    # Legacy shape, superseded by url once migrated
    address: Optional[str] = None
    port: Optional[int] = None
    display_order: int = 0
    status: str = ServiceStatus.UNKNOWN.value
    last_checked: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_legacy(self) -> bool:
        """True when only the legacy address/port fields locate the service."""
        return not self.url and bool(self.address)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serialisable dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceRecord':
        """Create from dictionary, ignoring keys the record does not know."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values['id'] = int(values['id'])
        if values.get('port') not in (None, ''):
            values['port'] = int(values['port'])
        else:
            values['port'] = None
        if values.get('display_order') is None:
            values['display_order'] = 0
        if values.get('status') is None:
            values['status'] = ServiceStatus.UNKNOWN.value
        values.setdefault('name', '')
        return cls(**values)


_INT_FIELDS = ('port', 'display_order')
_STR_FIELDS = ('name', 'url', 'health_check_url', 'address', 'status')


def _is_optional_int(value: Any) -> bool:
    return value is None or (isinstance(value, int) and not isinstance(value, bool))


def _empty() -> Dict[str, Any]:
    return {'services': [], 'last_id': 0}


class JsonServiceStore:
    """Thread-safe service registry persisted as one JSON document.

    The file holds ``{"services": [...], "last_id": N}``. ``last_id`` is
    the highest id ever issued, so ids are not reused after the newest
    record is deleted.
    """

    def __init__(self, file_path: str | Path = 'db/services.json'):
        self._path = Path(file_path)
        self._lock = threading.Lock()
        # Highest id issued by this instance, in case the file is replaced
        # underneath us with one carrying a lower last_id.
        self._last_issued = 0
        self._ensure_file_exists()

    @property
    def path(self) -> Path:
        return self._path

    # -- queries ------------------------------------------------------------

    def list(self) -> List[ServiceRecord]:
        """All records in insertion order."""
        with self._lock:
            data = self._read_data()
            return [ServiceRecord.from_dict(s) for s in data['services']]

    def find(self, service_id: int) -> Optional[ServiceRecord]:
        with self._lock:
            data = self._read_data()
            entry = self._find_entry(data['services'], service_id)
            return ServiceRecord.from_dict(entry) if entry else None

    # -- mutations ----------------------------------------------------------

    def create(self, service_data: Dict[str, Any]) -> int:
        """Append a new record and return its id."""
        with self._lock:
            data = self._read_data()
            services = data['services']

            max_id = max((s['id'] for s in services), default=0)
            new_id = max(max_id, data.get('last_id') or 0, self._last_issued) + 1

            max_order = max(
                (s['display_order'] for s in services if s.get('display_order') is not None),
                default=0,
            )

            now = _now()
            record = ServiceRecord(
                id=new_id,
                name=service_data.get('name'),
                url=service_data.get('url'),
                health_check_url=service_data.get('health_check_url'),
                address=service_data.get('address'),
                port=service_data.get('port'),
                display_order=max_order + 1,
                status=ServiceStatus.UNKNOWN.value,
                last_checked=now,
                created_at=now,
                updated_at=now,
            )
            services.append(record.to_dict())
            data['last_id'] = new_id
            self._write_data(data)
            self._last_issued = new_id
            logger.debug("Created service %d (%s)", new_id, record.name)
            return new_id

    def update(self, service_id: int, service_data: Dict[str, Any]) -> bool:
        """Apply the fields present in *service_data*.

        ``None`` or missing values leave a field alone. ``health_check_url``
        is the exception: when the key is present, ``None`` or ``""`` clears it.
        """
        with self._lock:
            data = self._read_data()
            entry = self._find_entry(data['services'], service_id)
            if entry is None:
                return False

            for key in ('name', 'url', 'address'):
                if service_data.get(key):
                    entry[key] = service_data[key]
            if service_data.get('port') is not None:
                entry['port'] = service_data['port']
            if 'health_check_url' in service_data:
                entry['health_check_url'] = service_data['health_check_url'] or None

            entry['updated_at'] = _now()
            self._write_data(data)
            return True

    def delete(self, service_id: int) -> bool:
        with self._lock:
            data = self._read_data()
            services = data['services']
            remaining = [s for s in services if s['id'] != service_id]
            if len(remaining) == len(services):
                return False
            data['services'] = remaining
            self._write_data(data)
            logger.debug("Deleted service %d", service_id)
            return True

    def migrate_url(self, service_id: int, url: str) -> bool:
        """Set ``url`` on a record only if it still has none.

        Returns whether the record was rewritten. A record that gained a
        ``url`` since the caller read it is left alone.
        """
        with self._lock:
            data = self._read_data()
            entry = self._find_entry(data['services'], service_id)
            if entry is None or entry.get('url'):
                return False
            entry['url'] = url
            entry['updated_at'] = _now()
            self._write_data(data)
            return True

    def update_health(self, service_id: int, status: ServiceStatus) -> bool:
        with self._lock:
            data = self._read_data()
            entry = self._find_entry(data['services'], service_id)
            if entry is None:
                return False
            entry['status'] = ServiceStatus(status).value
            entry['last_checked'] = _now()
            self._write_data(data)
            return True

    def reorder(self, order_pairs: Iterable[Tuple[int, int]]) -> int:
        """Set ``display_order`` for each ``(id, display_order)`` pair.

        Unknown ids are skipped. Returns the number of records changed.
        """
        with self._lock:
            data = self._read_data()
            services = data['services']
            now = _now()
            changed = 0
            for service_id, display_order in order_pairs:
                entry = self._find_entry(services, service_id)
                if entry is None:
                    continue
                entry['display_order'] = display_order
                entry['updated_at'] = now
                changed += 1
            self._write_data(data)
            return changed

    # -- persistence --------------------------------------------------------

    @staticmethod
    def _find_entry(services: List[Dict[str, Any]], service_id: int) -> Optional[Dict[str, Any]]:
        for entry in services:
            if entry['id'] == service_id:
                return entry
        return None

    def _ensure_file_exists(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if not self._path.exists():
            with self._lock:
                self._write_data(_empty())

    def _read_data(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _empty()

        content = self._path.read_text()
        if not content.strip():
            return _empty()

        try:
            data = json.loads(content)
            self._validate(data)
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Invalid registry data in %s (%s), reinitializing...", self._path, exc)
            return _empty()

        data.setdefault('last_id', 0)
        return data

    @staticmethod
    def _validate(data: Any) -> None:
        if not isinstance(data, dict):
            raise ValueError("top level is not an object")
        services = data.setdefault('services', [])
        if not isinstance(services, list):
            raise ValueError("'services' is not a list")
        if not _is_optional_int(data.get('last_id')):
            raise ValueError("'last_id' is not an integer")
        for entry in services:
            if not isinstance(entry, dict) or not isinstance(entry.get('id'), int):
                raise ValueError("service entry without an integer id")
            for key in _INT_FIELDS:
                if not _is_optional_int(entry.get(key)):
                    raise ValueError(f"service {entry['id']}: {key} is not an integer")
            for key in _STR_FIELDS:
                value = entry.get(key)
                if value is not None and not isinstance(value, str):
                    raise ValueError(f"service {entry['id']}: {key} is not a string")

    def _write_data(self, data: Dict[str, Any]) -> None:
        """Replace the registry file with *data*.

        The document is written to a sibling temp file and renamed over the
        target so readers never observe a partially written file.
        """
        tmp = tempfile.NamedTemporaryFile(
            mode='w', suffix='.tmp', prefix=f'.{self._path.name}.',
            dir=self._path.parent, delete=False,
        )
        try:
            with tmp:
                json.dump(data, tmp, indent=2)
                tmp.write('\n')
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp.name, self._path)
        except BaseException:
            Path(tmp.name).unlink(missing_ok=True)
            raise
