"""Health probing and the background heartbeat loop for registered services."""

import logging
import threading
import urllib.error
import urllib.request
from typing import Optional

from .registry import JsonServiceStore, ServiceRecord, ServiceStatus

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60
DEFAULT_TIMEOUT = 5

_SCHEMES = ("http://", "https://")


def has_scheme(value: str) -> bool:
    return value.startswith(_SCHEMES)


def build_probe_url(target: str) -> str:
    """Turn a bare ``host[:port]`` into an http URL; full URLs pass through.

    A bare host without a port probes the HTTP default port (80).
    """
    target = target.strip()
    if has_scheme(target):
        return target
    return f"http://{target}"


def url_from_address(address: str, port: Optional[int] = None) -> str:
    """Synthesize the canonical URL for a legacy ``address``/``port`` pair."""
    if has_scheme(address):
        return address
    if port:
        return f"http://{address}:{port}"
    return f"http://{address}"


def resolve_target(record: ServiceRecord) -> Optional[str]:
    """Return the URL to probe for *record*, or None if it has nothing usable.

    Precedence: ``health_check_url``, then ``url``, then the legacy
    ``address`` (+``port``).
    """
    if record.health_check_url:
        return record.health_check_url
    if record.url:
        return record.url
    if record.address:
        return url_from_address(record.address, record.port)
    return None


def probe(target: str, timeout: float = DEFAULT_TIMEOUT) -> ServiceStatus:
    """Issue one GET against *target* and classify the outcome.

    Returns HEALTHY for a response below 400 and UNHEALTHY for anything
    else, including every kind of failure. Never raises.
    """
    url = build_probe_url(target)
    # Home services are on the LAN; skip any http_proxy from the environment.
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    try:
        with opener.open(url, timeout=timeout) as resp:
            return ServiceStatus.HEALTHY if resp.status < 400 else ServiceStatus.UNHEALTHY
    except urllib.error.HTTPError as exc:
        logger.debug("Health check for %s returned HTTP %s", url, exc.code)
        return ServiceStatus.UNHEALTHY
    except Exception as exc:
        reason = getattr(exc, "reason", exc)
        logger.debug("Health check failed for %s - %s", url, reason)
        return ServiceStatus.UNHEALTHY


def migrate_record(store: JsonServiceStore, record: ServiceRecord) -> ServiceRecord:
    """Persist a ``url`` for a record that only has legacy address/port.

    ``address`` and ``port`` are kept. Records that already have a ``url``
    are returned as-is without touching the store. *record* may be a stale
    snapshot; the store re-checks under its lock, so a ``url`` set in the
    meantime wins and the current record is returned.
    """
    if not record.is_legacy:
        return record

    url = url_from_address(record.address, record.port)
    if store.migrate_url(record.id, url):
        logger.info("Migrated service %d (%s) to url %s", record.id, record.name, url)
    return store.find(record.id) or record


def refresh_record(store: JsonServiceStore, record: ServiceRecord,
                   timeout: float = DEFAULT_TIMEOUT) -> Optional[ServiceStatus]:
    """Migrate, probe and persist the status of one record.

    Returns the probe result, or None when the record has no target, in
    which case no network call is made and the stored status is untouched.
    The store lock is not held while the probe runs.
    """
    record = migrate_record(store, record)
    target = resolve_target(record)
    if target is None:
        logger.debug("Service %d (%s) has no health check target", record.id, record.name)
        return None

    status = probe(target, timeout=timeout)
    store.update_health(record.id, status)
    return status


class HealthScheduler:
    """Periodically probe every registered service from a background thread.

    Each cycle lists the registry, refreshes every record and then sleeps
    for *interval* seconds. A failure on one record is logged and the
    sweep moves on; the loop only ends when :meth:`stop` is called.
    """

    def __init__(self, store: JsonServiceStore, interval: float = DEFAULT_INTERVAL,
                 timeout: float = DEFAULT_TIMEOUT):
        self.store = store
        self.interval = interval
        self.timeout = timeout
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_statuses: dict[int, ServiceStatus] = {}

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="health-scheduler", daemon=True,
        )
        self._thread.start()
        logger.info("Health scheduler started (interval=%ss, timeout=%ss)",
                    self.interval, self.timeout)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the loop to exit and wait for the current cycle to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Health scheduler stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_cycle()
            self._stop.wait(self.interval)

    def run_cycle(self) -> int:
        """Probe every record once. Returns how many records were probed."""
        try:
            records = self.store.list()
        except Exception:
            logger.exception("Error in health check cycle: could not list services")
            return 0

        probed = 0
        for record in records:
            if self._stop.is_set():
                break
            try:
                status = refresh_record(self.store, record, timeout=self.timeout)
            except Exception:
                logger.exception("Health check failed for service %d (%s)", record.id, record.name)
                continue
            if status is None:
                continue
            probed += 1
            self._log_transition(record, status)

        live_ids = {record.id for record in records}
        for service_id in list(self._last_statuses):
            if service_id not in live_ids:
                del self._last_statuses[service_id]
        return probed

    def _log_transition(self, record: ServiceRecord, status: ServiceStatus) -> None:
        last_status = self._last_statuses.get(record.id)
        if status != last_status:
            logger.info(
                "[heartbeat] %s (%d): %s -> %s",
                record.name, record.id,
                last_status.value if last_status else "init", status.value,
            )
            self._last_statuses[record.id] = status
