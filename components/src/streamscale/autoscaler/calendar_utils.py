# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Blackout periods during which scaling decisions are not executed.

Supported expressions:

    "22:00-06:00"            every day, may wrap midnight
    "Mon-Fri 09:00-17:00"    daily window on the given weekdays
    "Sat,Sun"                whole days
"""

import re
from datetime import datetime, time, timezone
from typing import Iterable, List, Optional, Set, Tuple

from streamscale.autoscaler.config import AutoScalerConfig
from streamscale.autoscaler.exceptions import InvalidConfigurationError

_WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]
_TIME_RANGE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?-(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def _parse_days(expr: str) -> Set[int]:
    days: Set[int] = set()
    for part in expr.lower().split(","):
        part = part.strip()
        if "-" in part:
            start, end = (p.strip()[:3] for p in part.split("-", 1))
            if start not in _WEEKDAYS or end not in _WEEKDAYS:
                raise ValueError(f"Unknown weekday range {part!r}")
            i, j = _WEEKDAYS.index(start), _WEEKDAYS.index(end)
            while True:
                days.add(i)
                if i == j:
                    break
                i = (i + 1) % 7
        else:
            if part[:3] not in _WEEKDAYS:
                raise ValueError(f"Unknown weekday {part!r}")
            days.add(_WEEKDAYS.index(part[:3]))
    return days


def _parse_time_range(expr: str) -> Tuple[time, time]:
    match = _TIME_RANGE.match(expr.strip())
    if not match:
        raise ValueError(f"Invalid time range {expr!r}, expected HH:MM-HH:MM")
    h1, m1, s1, h2, m2, s2 = match.groups()
    return (
        time(int(h1), int(m1), int(s1 or 0)),
        time(int(h2), int(m2), int(s2 or 0)),
    )


def parse_period(expr: str) -> Tuple[Optional[Set[int]], Optional[Tuple[time, time]]]:
    expr = expr.strip()
    if not expr:
        raise ValueError("Empty excluded period")
    if _TIME_RANGE.match(expr):
        return None, _parse_time_range(expr)
    parts = expr.split()
    if len(parts) == 1:
        return _parse_days(parts[0]), None
    if len(parts) == 2:
        return _parse_days(parts[0]), _parse_time_range(parts[1])
    raise ValueError(f"Invalid excluded period {expr!r}")


def _in_time_range(now: time, window: Tuple[time, time]) -> bool:
    start, end = window
    if start <= end:
        return start <= now < end
    # wraps midnight
    return now >= start or now < end


def validate_excluded_periods(periods: Iterable[str]) -> None:
    errors: List[str] = []
    for expr in periods:
        try:
            parse_period(expr)
        except ValueError as e:
            errors.append(str(e))
    if errors:
        raise InvalidConfigurationError(errors)


def in_excluded_periods(config: AutoScalerConfig, instant: datetime) -> bool:
    """Whether ``instant`` falls into one of the configured blackout periods.

    Periods are evaluated in UTC; naive datetimes are taken as UTC.
    """
    if not config.excluded_periods:
        return False
    if instant.tzinfo is not None:
        instant = instant.astimezone(timezone.utc)
    for expr in config.excluded_periods:
        days, window = parse_period(expr)
        if days is not None and instant.weekday() not in days:
            continue
        if window is None or _in_time_range(instant.time(), window):
            return True
    return False
