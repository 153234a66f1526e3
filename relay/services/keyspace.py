"""
Key layout for records in the key-value store.
"""
from dataclasses import dataclass

from relay.config import settings


@dataclass(frozen=True)
class KeySpace:
    prefix: str = "webhook:"

    @classmethod
    def from_settings(cls) -> "KeySpace":
        return cls(prefix=settings.KEY_PREFIX)

    def delivery(self, job_id: str) -> str:
        return f"{self.prefix}delivery:{job_id}"

    @property
    def delivery_prefix(self) -> str:
        return f"{self.prefix}delivery:"

    def attempt(self, delivery_id: str, attempt_number: int) -> str:
        return f"{self.prefix}retry:{delivery_id}:{attempt_number}"

    def dedupe(self, event_hash: str) -> str:
        return f"{self.prefix}dedupe:{event_hash}"

    def dead_letter(self, entry_id: str) -> str:
        return f"{self.prefix}dead:{entry_id}"

    @property
    def dead_letter_queue(self) -> str:
        return f"{self.prefix}queue:dead"

    def delivery_lock(self, job_id: str) -> str:
        return f"{self.prefix}lock:delivery:{job_id}"
