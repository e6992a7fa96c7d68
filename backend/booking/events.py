# booking/events.py
#
# Pushes slot changes to everyone watching a doctor's booking page
# (see consumers.SlotConsumer).

import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)

SLOT_LOCKED   = "locked"
SLOT_RELEASED = "released"
SLOT_BOOKED   = "booked"
SLOT_FREED    = "freed"


def slot_group_name(doctor_id):
    return f"slots_{doctor_id}"


def broadcast_slot_event(doctor_id, event, start_at, end_at):
    """Fire-and-forget: a missing or broken channel layer never fails a booking."""
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return

    message = {
        "type"    : "slot_event",
        "event"   : event,
        "start_at": start_at.isoformat(),
        "end_at"  : end_at.isoformat(),
    }
    try:
        async_to_sync(channel_layer.group_send)(slot_group_name(doctor_id), message)
    except Exception:
        logger.warning("Could not broadcast slot %s for doctor %s", event, doctor_id, exc_info=True)
