from typing import Optional
from shared.models import Event, PaymentNotice

CHARGE = "charge"
REFUND = "refund"


def notice_for_event(event: Event) -> Optional[PaymentNotice]:
    """Map a booking event to the settlement notice it calls for, if any."""
    payload = event.payload
    if event.event_type == "BookingCreated":
        kind, amount = CHARGE, payload["amount"]
    elif event.event_type == "BookingCancelled":
        kind, amount = REFUND, payload["refund_amount"]
    elif event.event_type == "BookingRescheduled":
        difference = payload["price_difference"]
        if difference == 0:
            return None
        kind, amount = (CHARGE, difference) if difference > 0 else (REFUND, -difference)
    else:
        return None
    return PaymentNotice(booking_id=payload["booking_id"], event_id=event.event_id, kind=kind, amount=amount)
