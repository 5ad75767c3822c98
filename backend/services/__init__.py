"""
Services package - Business logic layer.

This package contains all business logic services that operate on Django models
but are decoupled from the HTTP/WebSocket layer.

Modules:
    - matching: Driver search and offer dispatch engine
    - ride_management: Ride lifecycle operations and the Django-backed request store
"""
