"""
ASGI config for dispatch_backend project.

HTTP goes to Django; WebSocket connections are routed to the realtime
consumers, and the `ride-dispatch` channel to the dispatch worker
(`manage.py runworker ride-dispatch`).
"""

import os

from django.core.asgi import get_asgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "dispatch_backend.settings.base")

django_asgi_app = get_asgi_application()

from channels.routing import ChannelNameRouter, ProtocolTypeRouter, URLRouter  # noqa: E402

from realtime.dispatch_worker import DISPATCH_CHANNEL, DispatchWorkerConsumer  # noqa: E402
from realtime.routing import websocket_urlpatterns  # noqa: E402

application = ProtocolTypeRouter({
    "http": django_asgi_app,
    "websocket": URLRouter(websocket_urlpatterns),
    "channel": ChannelNameRouter({
        DISPATCH_CHANNEL: DispatchWorkerConsumer.as_asgi(),
    }),
})
