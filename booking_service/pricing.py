"""
Booking Service - Pricing and refund schedule
"""
import datetime
import math

ONE_DAY = datetime.timedelta(days=1)

# (hours before check-in, share refunded), checked top-down
REFUND_TIERS = (
    (72, 1.0),
    (48, 0.7),
    (24, 0.5),
)


def count_nights(check_in, check_out):
    """ceil((check_out - check_in) / 1 day)"""
    return max(0, math.ceil((check_out - check_in) / ONE_DAY))


def quote(room_price, check_in, check_out, discount_amount=0):
    nights = count_nights(check_in, check_out)
    original_price = float(room_price) * nights
    discount = max(0.0, min(float(discount_amount or 0), original_price))
    return {
        'nights': nights,
        'original_price': original_price,
        'discount_amount': discount,
        'final_price': original_price - discount,
    }


def refund_percentage(check_in, now):
    hours_left = (check_in - now).total_seconds() / 3600
    for min_hours, share in REFUND_TIERS:
        if hours_left >= min_hours:
            return share
    return 0.0


def refund_amount(final_price, check_in, now):
    """Amount returned to the guest when cancelling at `now`"""
    return int(round(float(final_price) * refund_percentage(check_in, now)))
