"""
Realtime app for WebSocket communication with Redis GEO-based driver tracking.

This app provides:
- The driver WebSocket consumer (ride offers, accept/decline)
- Redis GEO-based driver location indexing
- Notification helpers for sending real-time updates

Key Components:
    - geo.py: Redis GEO service for driver locations, RedisGeoIndex for dispatch
    - consumers/: WebSocket consumers
    - notifications.py: ChannelLayerGateway and rider event helpers

Usage:
    from realtime.consumers import DriverConsumer
    from realtime.notifications import ChannelLayerGateway, notify_rider_event
    from realtime.geo import get_driver_location_service
"""
