import json
import logging

from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand, CommandError

from realtime.dispatch_worker import request_stop
from services.matching import DispatchInProgress, DispatchLoop, get_dispatch_config
from services.matching.factory import build_dispatch_loop, build_geo_index, build_payload_builder
from services.matching.memory import InMemoryRequestStore, RecordingGateway
from services.ride_management import RideNotFoundError, get_ride

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Run the driver search for one ride request in this process."

    def add_arguments(self, parser):
        parser.add_argument("ride_id", type=int)
        parser.add_argument(
            "--timeout",
            type=float,
            default=None,
            help="Seconds each driver has to respond (default: OFFER_TIMEOUT_SECONDS).",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Search on a copy of the ride and record offers instead of sending them. Nothing is saved.",
        )
        parser.add_argument(
            "--stop",
            action="store_true",
            help="Ask the dispatch worker to stop its search for the ride.",
        )

    def handle(self, *args, **options):
        ride_id = options["ride_id"]
        if options["stop"]:
            if not request_stop(ride_id):
                raise CommandError(f"Could not reach the dispatch worker for ride {ride_id}")
            self.stdout.write(self.style.SUCCESS(f"Stop requested for ride {ride_id}"))
            return

        overrides = {}
        if options["timeout"] is not None:
            overrides["OFFER_TIMEOUT_SECONDS"] = options["timeout"]
            overrides["LEASE_SECONDS"] = max(get_dispatch_config().lease_seconds, options["timeout"] * 3)
        config = get_dispatch_config(overrides)

        gateway = None
        if options["dry_run"]:
            try:
                ride = get_ride(ride_id)
            except RideNotFoundError as e:
                raise CommandError(str(e))
            store = InMemoryRequestStore()
            store.add(ride.to_snapshot())
            gateway = RecordingGateway()
            dispatch_loop = DispatchLoop(
                store=store,
                geo_index=build_geo_index(config),
                gateway=gateway,
                config=config,
                payload_builder=build_payload_builder(config),
            )
        else:
            dispatch_loop = build_dispatch_loop(config)

        try:
            result = async_to_sync(dispatch_loop.run)(ride_id)
        except RideNotFoundError as e:
            raise CommandError(str(e))
        except DispatchInProgress as e:
            raise CommandError(f"{e}; use --stop or wait for its lease to expire")

        if gateway is not None:
            self.stdout.write(f"Offers recorded: {', '.join(gateway.offers_to()) or 'none'}")
        self.stdout.write(self.style.SUCCESS(json.dumps(result.as_dict(), default=str)))
