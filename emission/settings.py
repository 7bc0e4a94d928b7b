"""Broadcast schedule settings and their validation."""

from dataclasses import dataclass
from typing import Any, Dict, Tuple

MINUTES_PER_DAY = 24 * 60


class ConfigurationError(ValueError):
    """Operator-supplied settings that cannot be scheduled."""


def parse_hhmm(value: str) -> Tuple[int, int]:
    try:
        hours_str, minutes_str = str(value).strip().split(":")
        hours, minutes = int(hours_str), int(minutes_str)
    except ValueError:
        raise ConfigurationError(f"time must be HH:MM, got {value!r}") from None
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ConfigurationError(f"time out of range: {value!r}")
    return hours, minutes


def format_minutes(minute_of_day: int) -> str:
    minute_of_day %= MINUTES_PER_DAY
    return f"{minute_of_day // 60:02d}:{minute_of_day % 60:02d}"


@dataclass(frozen=True)
class BroadcastSettings:
    min_per_day: int
    max_per_day: int
    start_time: str
    end_time: str
    utc_offset_hours: int = 2

    def __post_init__(self):
        if self.min_per_day < 0 or self.max_per_day < 0:
            raise ConfigurationError("posts per day cannot be negative")
        if self.min_per_day > self.max_per_day:
            raise ConfigurationError(
                f"min_per_day ({self.min_per_day}) is greater than max_per_day ({self.max_per_day})"
            )
        if not -12 <= self.utc_offset_hours <= 14:
            raise ConfigurationError(f"utc_offset_hours out of range: {self.utc_offset_hours}")
        parse_hhmm(self.start_time)
        parse_hhmm(self.end_time)

    @property
    def start_minute(self) -> int:
        hours, minutes = parse_hhmm(self.start_time)
        return hours * 60 + minutes

    @property
    def end_minute(self) -> int:
        hours, minutes = parse_hhmm(self.end_time)
        return hours * 60 + minutes

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BroadcastSettings":
        try:
            return cls(
                min_per_day=int(data["min_per_day"]),
                max_per_day=int(data["max_per_day"]),
                start_time=str(data["start_time"]),
                end_time=str(data["end_time"]),
                utc_offset_hours=int(data.get("utc_offset_hours", 2)),
            )
        except ConfigurationError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"malformed broadcast settings: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min_per_day": self.min_per_day,
            "max_per_day": self.max_per_day,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "utc_offset_hours": self.utc_offset_hours,
        }


def load_broadcast_settings() -> BroadcastSettings:
    """Current settings from MongoDB, falling back to env defaults."""
    from database import BroadcastSettingsStore
    return BroadcastSettings.from_dict(BroadcastSettingsStore.get())
