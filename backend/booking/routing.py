# booking/routing.py

from django.urls import re_path
from . import consumers

websocket_urlpatterns = [

    # ── Live slot updates for one doctor's booking page ──────────────────────
    re_path(r"ws/slots/(?P<doctor_id>\d+)/$",   consumers.SlotConsumer.as_asgi()),
]
