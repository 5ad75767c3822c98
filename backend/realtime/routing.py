"""WebSocket URL routing for the realtime app."""

from django.urls import re_path

from .consumers.driver_consumer import DriverConsumer

websocket_urlpatterns = [
    # Driver-specific WebSocket endpoint
    # URL: ws://localhost:8000/ws/driver/<driver_id>/
    re_path(
        r"ws/driver/(?P<driver_id>[\w.-]+)/$",
        DriverConsumer.as_asgi(),
        name="driver-ws"
    ),
]
