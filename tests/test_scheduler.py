from datetime import datetime

import pytest

from incidentdesk.scheduler import SHIFT_TZ, DrillScheduler, current_shift, shift_id


def _ts(hour, minute=0, second=0, day=5):
    return datetime(2026, 1, day, hour, minute, second, tzinfo=SHIFT_TZ).timestamp()


@pytest.mark.parametrize("hour,minute,shift", [
    (9, 0, "1ST_SHIFT"),
    (16, 59, "1ST_SHIFT"),
    (17, 0, "2ND_SHIFT"),
    (23, 30, "2ND_SHIFT"),
    (0, 59, "2ND_SHIFT"),
    (1, 0, "3RD_SHIFT"),
    (8, 59, "3RD_SHIFT"),
])
def test_current_shift(hour, minute, shift):
    assert current_shift(_ts(hour, minute)) == shift


def test_shift_ids():
    assert [shift_id(s) for s in ("1ST_SHIFT", "2ND_SHIFT", "3RD_SHIFT", "??")] == [1, 2, 3, 3]


def test_drill_fires_once_at_top_of_shift_start():
    sched = DrillScheduler()
    assert sched.due(_ts(9, 0, 5))
    assert not sched.due(_ts(9, 0, 40))
    assert not sched.due(_ts(9, 1))


def test_drill_hours():
    sched = DrillScheduler()
    fired = [h for h in range(24) if sched.due(_ts(h))]
    assert fired == [1, 2, 3, 4, 5, 6, 7, 8, 9, 17]


def test_same_hour_next_day_fires_again():
    sched = DrillScheduler()
    assert sched.due(_ts(3, day=5))
    assert sched.due(_ts(4, day=5))
    assert sched.due(_ts(3, day=6))
