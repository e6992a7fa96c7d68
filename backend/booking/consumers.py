"""
booking/consumers.py

SlotConsumer – pushes slot lock/booking changes for one doctor  →  ws/slots/<doctor_id>/

Clients only listen; the sole message they may send is {"type": "ping"}.
"""

import json
import logging

from channels.generic.websocket import AsyncWebsocketConsumer

from .events import slot_group_name

logger = logging.getLogger(__name__)


class SlotConsumer(AsyncWebsocketConsumer):

    async def connect(self):
        self.doctor_id  = int(self.scope["url_route"]["kwargs"]["doctor_id"])
        self.group_name = slot_group_name(self.doctor_id)

        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()
        logger.debug("Slot watcher joined %s", self.group_name)

    async def disconnect(self, close_code):
        await self.channel_layer.group_discard(self.group_name, self.channel_name)

    async def receive(self, text_data=None, bytes_data=None):
        try:
            data = json.loads(text_data or "")
        except ValueError:
            return
        if isinstance(data, dict) and data.get("type") == "ping":
            await self.send(text_data=json.dumps({"type": "pong"}))

    # ── group message handlers ───────────────────────────────────────────────

    async def slot_event(self, event):
        await self.send(text_data=json.dumps({
            "type"     : "slot_event",
            "doctor_id": self.doctor_id,
            "event"    : event["event"],
            "start_at" : event["start_at"],
            "end_at"   : event["end_at"],
        }))
