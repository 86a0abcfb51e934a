"""
Virtual device persistence service
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import settings
from ..models.api import StoredDevice

logger = logging.getLogger(__name__)

MAX_RECORDS = 1000


class DeviceStore:
    """Persists virtual device records to a JSON file"""

    def __init__(self, storage_path: Optional[str] = None):
        if storage_path:
            self.storage_path = Path(storage_path)
        else:
            self.storage_path = settings.device_store_path
        self._ensure_storage()

    def _ensure_storage(self):
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            if not self.storage_path.exists():
                self.storage_path.write_text("[]")
        except OSError as e:
            logger.error(f"Failed to prepare device store {self.storage_path}: {e}")

    def _load_records(self) -> List[Dict[str, Any]]:
        try:
            return json.loads(self.storage_path.read_text())
        except Exception as e:
            logger.error(f"Failed to load device store: {e}")
            return []

    def _save_records(self, records: List[Dict[str, Any]]) -> bool:
        try:
            records = records[-MAX_RECORDS:]
            tmp_path = self.storage_path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(records, indent=2, default=str))
            tmp_path.replace(self.storage_path)
            return True
        except Exception as e:
            logger.error(f"Failed to save device store: {e}")
            return False

    async def upsert(self, device: StoredDevice) -> bool:
        """Insert or replace the record for ``device.uid``"""
        try:
            records = [r for r in self._load_records() if r.get("uid") != device.uid]
            records.append(device.model_dump(mode="json"))
            if not self._save_records(records):
                return False
            logger.info(f"Stored virtual device {device.uid}")
            return True
        except Exception as e:
            logger.error(f"Failed to store device {device.uid}: {e}")
            return False

    async def remove(self, uid: str) -> bool:
        records = self._load_records()
        remaining = [r for r in records if r.get("uid") != uid]
        if len(remaining) == len(records):
            return False
        return self._save_records(remaining)

    async def get(self, uid: str) -> Optional[StoredDevice]:
        for record in self._load_records():
            if record.get("uid") == uid:
                try:
                    return StoredDevice(**record)
                except Exception as e:
                    logger.error(f"Invalid stored device {uid}: {e}")
                    return None
        return None

    async def list(self) -> List[StoredDevice]:
        result = []
        for record in self._load_records():
            try:
                result.append(StoredDevice(**record))
            except Exception as e:
                logger.warning(f"Skipping invalid stored device record: {e}")
        return result
