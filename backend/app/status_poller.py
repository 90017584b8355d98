"""
Client-side status polling for in-flight analyses.

Tracks files the caller has uploaded and, while any of them is still
waiting on the pipeline, asks the server for their status at a fixed
interval.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import requests

from .models import IN_FLIGHT_STATUSES

logger = logging.getLogger('callguard.poller')


class StatusPoller:
    """
    Polls ``POST /api/files/status`` for tracked files.

    Args:
        base_url: Server root, e.g. ``http://127.0.0.1:8001``
        interval: Seconds between polls
        session: requests session to use (a new one by default)
        on_update: Called with each update dict the server returns
    """

    def __init__(
        self,
        base_url: str,
        interval: float = 5.0,
        session: Optional[requests.Session] = None,
        on_update: Optional[Callable[[Dict[str, Any]], None]] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.interval = interval
        self.session = session or requests.Session()
        self.on_update = on_update
        self.timeout = timeout
        self.files: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def track(self, name: str, status: str = "uploaded", uploaded_at: Optional[str] = None) -> None:
        """Start (or refresh) tracking of a file."""
        with self._lock:
            self.files[name] = {"name": name, "status": status, "uploadedAt": uploaded_at}
        if status in IN_FLIGHT_STATUSES:
            self._wake.set()

    def status_of(self, name: str) -> Optional[str]:
        with self._lock:
            entry = self.files.get(name)
            return entry["status"] if entry else None

    def in_flight(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(f) for f in self.files.values() if f["status"] in IN_FLIGHT_STATUSES]

    @property
    def is_polling(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and bool(self.in_flight())

    def poll_once(self) -> List[Dict[str, Any]]:
        """Ask for the status of in-flight files once and apply the answers."""
        pending = self.in_flight()
        if not pending:
            return []

        payload = {"files": [
            {"name": f["name"], **({"uploadedAt": f["uploadedAt"]} if f["uploadedAt"] else {})}
            for f in pending
        ]}
        try:
            response = self.session.post(f"{self.base_url}/api/files/status", json=payload, timeout=self.timeout)
            response.raise_for_status()
            updates = response.json().get("updates", [])
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Status polling error: {e}")
            return []

        for update in updates:
            with self._lock:
                entry = self.files.get(update.get("name"))
                if entry is None:
                    continue
                entry["status"] = update.get("status", entry["status"])
                for key in ("riskScore", "errorMessage"):
                    if key in update:
                        entry[key] = update[key]
            if self.on_update:
                self.on_update(update)

        logger.debug(f"Polled {len(pending)} files, {len(updates)} updates")
        return updates

    def _run(self) -> None:
        while not self._stop.is_set():
            if not self.in_flight():
                self._wake.clear()
                # a track() between the check and clear() must not be missed
                if not self.in_flight():
                    self._wake.wait()
                continue
            if self._stop.wait(self.interval):
                break
            self.poll_once()

    def start(self) -> None:
        """Poll in a daemon thread until stop() is called."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="callguard-status-poller", daemon=True)
        self._thread.start()
        logger.info(f"Status poller started (interval {self.interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Status poller stopped")
