from datetime import date
from typing import List, Optional

from services.context import current_settings, seat_reservations
from utils.timeutil import today_local


def close_stale_bookings(before: Optional[date] = None) -> List[int]:
    """
    Complete held bookings whose travel date has passed (trips that never got
    an explicit completion). Needs an app context. The default cut-off is
    today in the service zone.
    """
    before = before or today_local(current_settings().zone)
    return seat_reservations().close_before(before)
