"""
TradeBridge Infrastructure: State Store

Persistent state for orders, escrow records and offer records.
Atomic JSON writes (temp file + rename); records are never deleted.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


SECTIONS = ("orders", "escrows", "offers")

DEFAULT_STATE = {
    "orders": {},    # order_id -> Order.to_dict()
    "escrows": {},   # escrow_id -> EscrowRecord.to_dict()
    "offers": {},    # offer_id -> OfferRecord.to_dict()
    "saved_at": None,
}


class StateStore:
    """
    Section-keyed record store backed by a JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - In-memory mode when no path is given (tests, dry runs)
    - Thread-safe: one lock serializes every read-modify-write
    """

    def __init__(self, state_file: Optional[str] = None):
        """
        Args:
            state_file: Path to state JSON file. None keeps state in memory only.
        """
        self.state_file = Path(state_file) if state_file else None
        self._lock = threading.Lock()
        self._state: Dict[str, Any] = copy.deepcopy(DEFAULT_STATE)

        if self.state_file is not None:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self._state = self._load_file()
            logger.info(f"Initialized StateStore at {self.state_file}")
        else:
            logger.info("Initialized in-memory StateStore")

    @property
    def persistent(self) -> bool:
        return self.state_file is not None

    def _load_file(self) -> Dict[str, Any]:
        if not self.state_file.exists():
            logger.debug("No state file found, using defaults")
            return copy.deepcopy(DEFAULT_STATE)

        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load state from {self.state_file}: {e}")
            raise

        if not isinstance(data, dict):
            raise ValueError(f"Invalid state file format in {self.state_file}")

        state = copy.deepcopy(DEFAULT_STATE)
        for section in SECTIONS:
            state[section] = dict(data.get(section) or {})
        state["saved_at"] = data.get("saved_at")
        return state

    def _save_locked(self) -> None:
        if self.state_file is None:
            return

        self._state["saved_at"] = datetime.now(timezone.utc).isoformat()
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.state_file.parent,
            prefix=".state_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(self._state, f, indent=2, default=str)
            os.replace(temp_path, self.state_file)
        except OSError:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug("Saved state to file")

    def put(self, section: str, key: str, record: Dict[str, Any]) -> None:
        """Insert or replace one record and persist."""
        self._check_section(section)
        with self._lock:
            self._state[section][key] = copy.deepcopy(record)
            self._save_locked()

    def get(self, section: str, key: str) -> Optional[Dict[str, Any]]:
        self._check_section(section)
        with self._lock:
            record = self._state[section].get(key)
            return copy.deepcopy(record) if record is not None else None

    def all(self, section: str) -> Dict[str, Dict[str, Any]]:
        self._check_section(section)
        with self._lock:
            return copy.deepcopy(self._state[section])

    def keys(self, section: str) -> List[str]:
        self._check_section(section)
        with self._lock:
            return list(self._state[section].keys())

    @staticmethod
    def _check_section(section: str) -> None:
        if section not in SECTIONS:
            raise ValueError(f"Unknown state section: {section}")


def create_state_store_from_config(state_cfg: Optional[Dict[str, Any]]) -> StateStore:
    """Build a store from the ``state`` block of app.yaml."""
    state_cfg = state_cfg or {}
    backend = (state_cfg.get("store") or "json").lower()
    if backend == "memory":
        return StateStore()
    if backend != "json":
        raise ValueError(f"Unsupported state store backend: {backend}")

    path = state_cfg.get("path") or os.getenv("STATE_FILE", "data/.orders.json")
    return StateStore(state_file=path)
