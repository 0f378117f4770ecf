"""Service operations exposed to the HTTP API.

Each mutation that can change where a service lives (create, update) is
followed by an immediate health probe, so a caller never sees a freshly
saved service that has not been checked at least once.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from .errors import ValidationError
from .heartbeat import DEFAULT_TIMEOUT, build_probe_url, refresh_record
from .registry import JsonServiceStore, ServiceRecord, ServiceStatus

logger = logging.getLogger(__name__)


SAMPLE_SERVICES = [
    {'name': 'Home Assistant', 'address': '192.168.0.30', 'port': 8123},
    {'name': 'Plex Server', 'address': '192.168.0.30', 'port': 32400},
    {'name': 'Router Admin', 'address': '192.168.0.1', 'port': 80},
]

_EDITABLE_FIELDS = ('name', 'url', 'health_check_url', 'address', 'port')


class CheckOutcome(Enum):
    CHECKED = "checked"
    NOT_FOUND = "not_found"
    NO_TARGET = "no_target"


@dataclass
class CheckResult:
    outcome: CheckOutcome
    status: Optional[ServiceStatus] = None


def normalize_url(value: Optional[str], field_name: str) -> Optional[str]:
    """Prefix a bare host with ``http://`` and reject values without a hostname."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")
    value = value.strip()
    if not value:
        return None
    url = build_probe_url(value)
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        hostname = None
    if not hostname:
        raise ValidationError(f"{field_name} is not a valid URL: {value!r}")
    return url


def _clean_port(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValidationError("port must be an integer")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValidationError("port must be an integer") from None
    if not 0 < port < 65536:
        raise ValidationError(f"port out of range: {port}")
    return port


def clean_service_data(data: Dict[str, Any], require_name: bool) -> Dict[str, Any]:
    """Validate and normalize submitted service fields.

    Only known fields are returned, and a field absent from *data* stays
    absent so partial updates keep their meaning.
    """
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")

    cleaned = {k: data[k] for k in _EDITABLE_FIELDS if k in data}

    name = cleaned.get('name')
    if name is not None and not isinstance(name, str):
        raise ValidationError("name must be a string")
    if name is not None:
        cleaned['name'] = name.strip()
    if require_name and not cleaned.get('name'):
        raise ValidationError("name is required")

    for key in ('url', 'health_check_url'):
        if key in cleaned:
            cleaned[key] = normalize_url(cleaned[key], key)

    address = cleaned.get('address')
    if address is not None and not isinstance(address, str):
        raise ValidationError("address must be a string")
    if address is not None:
        cleaned['address'] = address.strip() or None

    if 'port' in cleaned:
        cleaned['port'] = _clean_port(cleaned['port'])

    return cleaned


def clean_order_pairs(entries: Any) -> List[Tuple[int, int]]:
    """Turn ``[{"id": .., "display_order": ..}, ...]`` into ``(id, order)`` pairs."""
    if not isinstance(entries, list):
        raise ValidationError("services must be a list of {id, display_order}")
    pairs = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValidationError("each reorder entry must be an object")
        service_id = entry.get('id')
        order = entry.get('display_order')
        if not isinstance(service_id, int) or isinstance(service_id, bool):
            raise ValidationError(f"invalid service id: {service_id!r}")
        if not isinstance(order, int) or isinstance(order, bool):
            raise ValidationError(f"invalid display_order for service {service_id}: {order!r}")
        pairs.append((service_id, order))
    return pairs


class ServiceGallery:
    """CRUD plus on-demand health checks over a :class:`JsonServiceStore`."""

    def __init__(self, store: JsonServiceStore, probe_timeout: float = DEFAULT_TIMEOUT):
        self.store = store
        self.probe_timeout = probe_timeout

    def list_services(self) -> List[ServiceRecord]:
        """All services, sorted by ``display_order`` (ties keep insertion order)."""
        return sorted(self.store.list(), key=lambda s: s.display_order or 0)

    def get_service(self, service_id: int) -> Optional[ServiceRecord]:
        return self.store.find(service_id)

    def create_service(self, data: Dict[str, Any]) -> ServiceRecord:
        cleaned = clean_service_data(data, require_name=True)
        service_id = self.store.create(cleaned)
        self._probe(service_id)
        return self.store.find(service_id)

    def update_service(self, service_id: int, data: Dict[str, Any]) -> Optional[ServiceRecord]:
        cleaned = clean_service_data(data, require_name=False)
        if not self.store.update(service_id, cleaned):
            return None
        self._probe(service_id)
        return self.store.find(service_id)

    def delete_service(self, service_id: int) -> bool:
        return self.store.delete(service_id)

    def reorder_services(self, entries: Any) -> int:
        return self.store.reorder(clean_order_pairs(entries))

    def check_service(self, service_id: int) -> CheckResult:
        record = self.store.find(service_id)
        if record is None:
            return CheckResult(CheckOutcome.NOT_FOUND)
        status = refresh_record(self.store, record, timeout=self.probe_timeout)
        if status is None:
            return CheckResult(CheckOutcome.NO_TARGET)
        return CheckResult(CheckOutcome.CHECKED, status)

    def seed_samples(self) -> int:
        """Populate an empty registry with the example services."""
        if self.store.list():
            return 0
        logger.info("Initializing registry with sample data...")
        for service_data in SAMPLE_SERVICES:
            self.store.create(service_data)
        logger.info("Created %d sample services", len(SAMPLE_SERVICES))
        return len(SAMPLE_SERVICES)

    def _probe(self, service_id: int) -> Optional[ServiceStatus]:
        record = self.store.find(service_id)
        if record is None:
            return None
        return refresh_record(self.store, record, timeout=self.probe_timeout)
