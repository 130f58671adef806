from __future__ import annotations
import logging
import time
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

SHIFT_TZ = ZoneInfo("America/Chicago")

SHIFT_1_START_HOUR = 9    # 09:00-16:59
SHIFT_2_START_HOUR = 17   # 17:00-00:59
SHIFT_3_START_HOUR = 1    # 01:00-08:59

_SHIFT_IDS = {"1ST_SHIFT": 1, "2ND_SHIFT": 2, "3RD_SHIFT": 3}


def local_time(ts: Optional[float] = None) -> datetime:
    return datetime.fromtimestamp(time.time() if ts is None else ts, tz=SHIFT_TZ)


def current_shift(ts: Optional[float] = None) -> str:
    hour = local_time(ts).hour
    if SHIFT_1_START_HOUR <= hour < SHIFT_2_START_HOUR:
        return "1ST_SHIFT"
    if hour >= SHIFT_2_START_HOUR or hour < SHIFT_3_START_HOUR:
        return "2ND_SHIFT"
    return "3RD_SHIFT"


def shift_id(shift: str) -> int:
    return _SHIFT_IDS.get(shift, 3)


class DrillScheduler:
    """
    Decides when a scheduled drill is due.

    Drills fire at the top of the hour for the two shift starts (09:00, 17:00)
    and every hour of the 3rd shift (01:00-08:00), at most once per hour.
    Check more often than once a minute so minute 0 is never skipped.
    """

    def __init__(self):
        self._last_slot: Optional[str] = None

    def due(self, ts: Optional[float] = None) -> bool:
        dt = local_time(ts)
        slot = dt.strftime("%Y-%m-%d %H")
        if dt.minute != 0 or slot == self._last_slot:
            return False
        if dt.hour in (SHIFT_1_START_HOUR, SHIFT_2_START_HOUR):
            logger.info("[Scheduler] Shift start %02d:00 CST; scheduled sentinel protocol", dt.hour)
        elif 1 <= dt.hour <= 8:
            logger.info("[Scheduler] 3rd shift hourly wave %02d:00 CST", dt.hour)
        else:
            return False
        self._last_slot = slot
        return True


REPORT_HOUR = 8                        # end of the 3rd shift
REPORT_MIN_GAP_SECONDS = 20 * 3600


def report_due(ts: float, last_sent: Optional[float]) -> bool:
    """True inside the 08:00-08:59 CST window unless a report went out in the last 20h."""
    if local_time(ts).hour != REPORT_HOUR:
        return False
    return last_sent is None or ts - last_sent >= REPORT_MIN_GAP_SECONDS
