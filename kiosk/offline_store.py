"""
Durable buffer for check-ins taken while the API is unreachable.

Items wait with exponential backoff between failed sync attempts. After
``max_attempts`` failures an item is marked ``failed`` and stays in the file
for staff to review; it is only sent again after an explicit ``retry_failed``.
A queue file that cannot be parsed is moved aside as ``<path>.corrupt-<time>``
rather than overwritten.
"""

import json
import logging
import os
import random
import shutil
import string
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field

from kiosk.api_client import ApiError, ApiOfflineError

logger = logging.getLogger(__name__)

STORAGE_KEY = "matlinks_offline_checkins"
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_SECONDS = 30
DEFAULT_MAX_DELAY_SECONDS = 3600
SYNC_BATCH_SIZE = 100

ItemStatus = Literal["pending", "failed"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_offline_id(now: Optional[datetime] = None) -> str:
    millis = int((now or _utcnow()).timestamp() * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"offline_{millis}_{suffix}"


class QueuedCheckIn(BaseModel):
    id: str
    profile_id: int
    location_id: int
    class_id: Optional[int] = None
    check_in_method: str = "KIOSK"
    timestamp: datetime
    member_name: Optional[str] = None
    class_name: Optional[str] = None
    synced: bool = False
    retry_count: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    status: ItemStatus = "pending"

    def is_due(self, now: datetime) -> bool:
        return self.status == "pending" and (self.next_attempt_at is None or self.next_attempt_at <= now)

    def to_payload(self) -> dict:
        return {
            "profile_id": self.profile_id,
            "location_id": self.location_id,
            "class_id": self.class_id,
            "check_in_method": self.check_in_method,
            "checked_in_at": self.timestamp.isoformat(),
            "client_ref": self.id,
        }


class SyncResult(BaseModel):
    synced: int = 0
    failed: int = 0
    permanently_failed: int = 0
    total: int = 0
    offline: bool = False
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0 and not self.offline


def backoff_delay(retry_count: int, base_seconds: float, max_seconds: float) -> timedelta:
    if retry_count <= 0:
        return timedelta(0)
    return timedelta(seconds=min(base_seconds * 2 ** (retry_count - 1), max_seconds))


class OfflineCheckInStore:
    def __init__(
        self,
        path: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.path = path
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    def _set_aside(self, keep_original: bool) -> str:
        """Move (or copy) the queue file out of the way so a later write cannot overwrite it."""
        target = f"{self.path}.corrupt-{_utcnow().strftime('%Y%m%dT%H%M%S%f')}"
        if keep_original:
            shutil.copy2(self.path, target)
        else:
            os.replace(self.path, target)
        return target

    def _read(self) -> list[QueuedCheckIn]:
        # OSError other than a missing file propagates; writing over a file we
        # could not read would drop the queue.
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return []
        except ValueError:
            data = None
        if not isinstance(data, dict) or not isinstance(data.get(STORAGE_KEY, []), list):
            kept = self._set_aside(keep_original=False)
            logger.error("offline check-in file %s is corrupt, moved to %s", self.path, kept)
            return []

        items = []
        malformed = 0
        for raw in data.get(STORAGE_KEY, []):
            try:
                items.append(QueuedCheckIn.model_validate(raw))
            except ValueError:
                malformed += 1
        if malformed:
            kept = self._set_aside(keep_original=True)
            logger.error("%s malformed offline check-ins in %s, original copied to %s", malformed, self.path, kept)
            self._write(items)
        return items

    def _write(self, items: list[QueuedCheckIn]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        payload = {STORAGE_KEY: [item.model_dump(mode="json") for item in items]}
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".offline_", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.unlink(tmp_path)
            raise

    def save(
        self,
        profile_id: int,
        location_id: int,
        class_id: Optional[int] = None,
        check_in_method: str = "KIOSK",
        member_name: Optional[str] = None,
        class_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QueuedCheckIn:
        now = now or _utcnow()
        item = QueuedCheckIn(
            id=new_offline_id(now),
            profile_id=profile_id,
            location_id=location_id,
            class_id=class_id,
            check_in_method=check_in_method,
            timestamp=now,
            member_name=member_name,
            class_name=class_name,
        )
        items = self._read()
        items.append(item)
        self._write(items)
        logger.info("queued offline check-in %s for profile %s", item.id, profile_id)
        return item

    def all(self) -> list[QueuedCheckIn]:
        return self._read()

    def pending(self) -> list[QueuedCheckIn]:
        return [item for item in self._read() if item.status == "pending"]

    def permanently_failed(self) -> list[QueuedCheckIn]:
        return [item for item in self._read() if item.status == "failed"]

    def has_pending(self) -> bool:
        return bool(self.pending())

    def mark_synced(self, item_id: str) -> None:
        self._write([item for item in self._read() if item.id != item_id])

    def record_failure(self, item_id: str, error: str, now: Optional[datetime] = None) -> Optional[QueuedCheckIn]:
        now = now or _utcnow()
        items = self._read()
        updated = None
        for index, item in enumerate(items):
            if item.id != item_id:
                continue
            retry_count = item.retry_count + 1
            if retry_count >= self.max_attempts:
                updated = item.model_copy(
                    update={"retry_count": retry_count, "last_error": error, "status": "failed", "next_attempt_at": None}
                )
                logger.error("offline check-in %s gave up after %s attempts: %s", item_id, retry_count, error)
            else:
                delay = backoff_delay(retry_count, self.base_delay_seconds, self.max_delay_seconds)
                updated = item.model_copy(
                    update={"retry_count": retry_count, "last_error": error, "next_attempt_at": now + delay}
                )
            items[index] = updated
        self._write(items)
        return updated

    def retry_failed(self, item_id: str) -> bool:
        """Put a permanently failed item back in the queue with a fresh attempt count."""
        items = self._read()
        found = False
        for index, item in enumerate(items):
            if item.id == item_id and item.status == "failed":
                items[index] = item.model_copy(
                    update={"status": "pending", "retry_count": 0, "next_attempt_at": None, "last_error": None}
                )
                found = True
        if found:
            self._write(items)
        return found

    def discard(self, item_id: str) -> bool:
        items = self._read()
        kept = [item for item in items if item.id != item_id]
        if len(kept) == len(items):
            return False
        self._write(kept)
        return True

    def clear(self) -> None:
        self._write([])

    def _fail(self, result: SyncResult, item: QueuedCheckIn, error: str, now: datetime) -> None:
        updated = self.record_failure(item.id, error, now)
        result.failed += 1
        result.errors.append(f"{item.id}: {error}")
        if updated is not None and updated.status == "failed":
            result.permanently_failed += 1

    def sync(self, client, now: Optional[datetime] = None) -> SyncResult:
        """Send every due item through ``client.sync_check_ins`` in batches."""
        now = now or _utcnow()
        due = [item for item in self._read() if item.is_due(now)]
        result = SyncResult(total=len(due))
        for start in range(0, len(due), SYNC_BATCH_SIZE):
            batch = due[start:start + SYNC_BATCH_SIZE]
            try:
                response = client.sync_check_ins([item.to_payload() for item in batch])
            except ApiOfflineError as exc:
                logger.info("sync stopped, API still offline: %s", exc)
                result.offline = True
                break
            except ApiError as exc:
                for item in batch:
                    self._fail(result, item, exc.message, now)
                continue

            outcomes = {entry.get("client_ref"): entry for entry in response.get("results", [])}
            for item in batch:
                outcome = outcomes.get(item.id)
                if outcome is None:
                    self._fail(result, item, "No result returned for this check-in", now)
                elif outcome.get("status") in ("created", "duplicate"):
                    self.mark_synced(item.id)
                    result.synced += 1
                else:
                    self._fail(result, item, outcome.get("error") or "Unknown error", now)

        logger.info(
            "offline sync finished synced=%s failed=%s permanent=%s total=%s offline=%s",
            result.synced,
            result.failed,
            result.permanently_failed,
            result.total,
            result.offline,
        )
        return result
