"""Wires a DispatchLoop to the Django, Redis and Channels implementations."""

import logging
from typing import Optional

from django.utils.module_loading import import_string

from .config import DispatchConfig, get_dispatch_config
from .dispatch_loop import DispatchLoop
from .payloads import OfferPayloadBuilder

logger = logging.getLogger(__name__)


def build_geo_index(config: DispatchConfig):
    if config.geo_index_backend == "redis":
        from realtime.geo import RedisGeoIndex
        return RedisGeoIndex()

    from drivers.geo_index import DatabaseGeoIndex
    return DatabaseGeoIndex()


def build_payload_builder(config: DispatchConfig) -> OfferPayloadBuilder:
    pricing = None
    if config.pricing_function:
        pricing = import_string(config.pricing_function)
    return OfferPayloadBuilder(pricing=pricing)


def build_dispatch_loop(config: Optional[DispatchConfig] = None) -> DispatchLoop:
    """Build a DispatchLoop from settings.RIDE_DISPATCH (or the given config)."""
    # Imported here: these modules import Django models.
    from realtime.notifications import ChannelLayerGateway
    from services.ride_management.store import DjangoRequestStore

    config = config or get_dispatch_config()
    logger.debug("Building dispatch loop with %s geo index", config.geo_index_backend)
    return DispatchLoop(
        store=DjangoRequestStore(),
        geo_index=build_geo_index(config),
        gateway=ChannelLayerGateway(),
        config=config,
        payload_builder=build_payload_builder(config),
    )
