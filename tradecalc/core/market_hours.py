from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from tradecalc.core.config import get_settings
from tradecalc.core.errors import CalendarError
from tradecalc.core.intervals import MINUTE_INTERVALS, VALUES
from tradecalc.core.time_utils import get_zone

DAY_SECONDS = 24 * 60 * 60

_TIME_RE = re.compile(r"^\d\d:\d\d(:\d\d)?$")
_HOURS_RE = re.compile(r"^(\d\d:\d\d(?::\d\d)?) - (\d\d:\d\d(?::\d\d)?)$")


def parse_time_of_day(value: str) -> int:
    """Return seconds after midnight for ``hh:mm`` or ``hh:mm:ss``.

    ``24:00`` is accepted and means the following midnight.
    """

    if not _TIME_RE.match(value or ""):
        raise CalendarError(f"Invalid time of day: {value}")
    parts = [int(p) for p in value.split(":")]
    hours, minutes = parts[0], parts[1]
    seconds = parts[2] if len(parts) > 2 else 0
    total = hours * 3600 + minutes * 60 + seconds
    if minutes > 59 or seconds > 59 or total > DAY_SECONDS:
        raise CalendarError(f"Invalid time of day: {value}")
    return total


@dataclass(frozen=True)
class SessionHours:
    """Daily session window in wall-clock seconds of the security's zone.

    When ``end <= start`` the session opens on the previous calendar day.
    A window of zero or 24 hours is an always-open market.
    """

    start: int
    end: int

    @classmethod
    def parse(cls, text: str) -> "SessionHours":
        match = _HOURS_RE.match(text or "")
        if not match:
            raise CalendarError(f"Invalid session hours: {text}")
        return cls(parse_time_of_day(match.group(1)), parse_time_of_day(match.group(2)))

    @property
    def is_24h(self) -> bool:
        return (self.end - self.start) % DAY_SECONDS == 0

    @property
    def overnight(self) -> bool:
        return self.end <= self.start

    @property
    def length(self) -> int:
        if self.overnight:
            return self.end + DAY_SECONDS - self.start
        return self.end - self.start

    def contains(self, seconds: float) -> bool:
        """True when a bar ending at ``seconds`` after midnight is in session.

        Sessions are open-start and closed-end: a bar ending at the open
        belongs to the prior session.
        """

        if self.is_24h:
            return True
        if seconds == 0 and self.end == DAY_SECONDS:
            seconds = DAY_SECONDS
        if self.overnight:
            return seconds > self.start or seconds <= self.end
        return self.start < seconds <= self.end


class SessionOptions(BaseModel):
    """Market session descriptor shared by the parser and the calendar."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    interval: Optional[str] = None
    tz: str
    security_tz: str
    open_time: str
    liquid_hours: str
    trading_hours: str
    rth: bool = True
    now: Optional[str] = None
    begin: Optional[str] = None
    end: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _default_security_tz(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("security_tz") and data.get("tz"):
            data = {**data, "security_tz": data["tz"]}
        return data

    @field_validator("interval")
    @classmethod
    def _validate_interval(cls, v: Optional[str]) -> Optional[str]:
        if v in (None, ""):
            return None
        if v not in VALUES:
            raise ValueError(f"interval must be one of {', '.join(VALUES)}")
        return v

    @field_validator("tz", "security_tz")
    @classmethod
    def _validate_zone(cls, v: str) -> str:
        v = str(v or "").strip()
        try:
            get_zone(v)
        except CalendarError as err:
            raise ValueError(str(err)) from err
        return v

    @field_validator("open_time")
    @classmethod
    def _validate_open_time(cls, v: str) -> str:
        if not _TIME_RE.match(v or ""):
            raise ValueError("open_time must look like hh:mm:ss")
        return v

    @field_validator("liquid_hours", "trading_hours")
    @classmethod
    def _validate_hours(cls, v: str) -> str:
        if not _HOURS_RE.match(v or ""):
            raise ValueError("hours must look like 'hh:mm:ss - hh:mm:ss'")
        try:
            SessionHours.parse(v)
        except CalendarError as err:
            raise ValueError(str(err)) from err
        return v

    def with_interval(self, interval: Optional[str]) -> "SessionOptions":
        if interval == self.interval:
            return self
        return SessionOptions.model_validate({**self.model_dump(), "interval": interval})

    def session_hours(self, interval: Optional[str] = None) -> SessionHours:
        """Session window used for ``interval`` (defaults to ``self.interval``).

        Minute and hour intervals follow ``trading_hours``; day and coarser
        intervals follow ``liquid_hours`` unless ``rth`` is off. The rollover
        of an always-open market is ``open_time``.
        """

        interval = interval or self.interval
        if interval in MINUTE_INTERVALS or not self.rth:
            text = self.trading_hours
        else:
            text = self.liquid_hours
        hours = SessionHours.parse(text)
        if hours.is_24h:
            opens = parse_time_of_day(self.open_time)
            return SessionHours(opens, opens)
        return hours

    def filter_hours(self) -> SessionHours:
        """Window used to filter bars to the regular session."""

        hours = SessionHours.parse(self.liquid_hours if self.rth else self.trading_hours)
        if hours.is_24h:
            opens = parse_time_of_day(self.open_time)
            return SessionHours(opens, opens)
        return hours


def default_session_options() -> SessionOptions:
    return SessionOptions.model_validate(get_settings().session_defaults())


def resolve_options(options: Any = None, **overrides: Any) -> SessionOptions:
    """Coerce ``options`` into a validated SessionOptions.

    ``None`` yields the configured defaults, a mapping is layered over them
    and validated, and a SessionOptions instance is used as is.
    """

    if isinstance(options, SessionOptions):
        if not overrides:
            return options
        return SessionOptions.model_validate({**options.model_dump(), **overrides})
    data: dict[str, Any] = dict(get_settings().session_defaults())
    if options is not None:
        if not isinstance(options, Mapping):
            raise TypeError(f"Session options must be a mapping, not {type(options).__name__}")
        given = dict(options)
        if "tz" in given and "security_tz" not in given:
            given["security_tz"] = given["tz"]
        data.update(given)
    data.update(overrides)
    return SessionOptions.model_validate(data)


__all__ = [
    "DAY_SECONDS",
    "SessionHours",
    "SessionOptions",
    "parse_time_of_day",
    "default_session_options",
    "resolve_options",
]
