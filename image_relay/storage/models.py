"""
Data models for storage layer.

Defines the history entry persisted by the ledger.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional


def _naive_datetime(value: str) -> datetime:
    """Parse a stored timestamp; entries are written in naive local time."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        raise ValueError(f"Unexpected UTC offset in timestamp: {value}")
    return parsed


@dataclass(frozen=True)
class HistoryEntry:
    """Immutable metadata record of one completed generation.

    Only the image url and parameters are kept; image bytes never are.
    Once written, an entry is never modified, only removed.
    """
    id: str
    url: str
    prompt: str
    provider_id: str
    provider_name: str
    model_id: str
    model_name: str
    width: int
    height: int
    steps: int
    seed: int
    timestamp: datetime
    expires_at: datetime
    negative_prompt: str = ""
    duration: str = ""
    source: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["expires_at"] = self.expires_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        """Rebuild an entry from its stored form.

        Unknown keys are ignored for forward compatibility.

        Raises:
            KeyError: If a required field is missing
            ValueError: If a field cannot be converted or a timestamp carries a UTC offset
            TypeError: If a field has the wrong type
        """
        return cls(
            id=str(data["id"]),
            url=str(data["url"]),
            prompt=str(data["prompt"]),
            provider_id=str(data["provider_id"]),
            provider_name=str(data.get("provider_name") or data["provider_id"]),
            model_id=str(data["model_id"]),
            model_name=str(data.get("model_name") or data["model_id"]),
            width=int(data["width"]),
            height=int(data["height"]),
            steps=int(data["steps"]),
            seed=int(data["seed"]),
            timestamp=_naive_datetime(data["timestamp"]),
            expires_at=_naive_datetime(data["expires_at"]),
            negative_prompt=str(data.get("negative_prompt") or ""),
            duration=str(data.get("duration") or ""),
            source=data.get("source"),
        )
