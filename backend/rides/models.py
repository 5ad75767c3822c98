from django.db import models

from common.utils.geo import point_in_polygon
from services.matching.types import GeoPoint, RideSnapshot, RideStatus


class RideRequest(models.Model):
    """A rider's request for a ride, and the state of the driver search for it"""

    STATUS_CHOICES = [
        (RideStatus.CREATED.value, 'Created'),
        (RideStatus.SEARCHING.value, 'Searching'),
        (RideStatus.ACCEPTED.value, 'Accepted'),
        (RideStatus.CANCELED.value, 'Canceled'),
        (RideStatus.EXPIRED.value, 'Expired'),
    ]

    # Participants (identities live in external systems)
    rider_id = models.CharField(max_length=64, db_index=True)
    assigned_driver_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)

    # Pickup location
    pickup_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    pickup_longitude = models.DecimalField(max_digits=9, decimal_places=6)
    pickup_address = models.TextField(blank=True, default='')

    # Dropoff location
    dropoff_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    dropoff_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    dropoff_address = models.TextField(blank=True, default='')

    vehicle_class = models.CharField(max_length=32, default='standard')

    # Status & search progress
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=RideStatus.CREATED.value, db_index=True)
    search_radius_meters = models.FloatField(default=0)
    excluded_driver_ids = models.JSONField(default=list, blank=True)

    # Dispatch lease: only the owner may run the search until it expires
    dispatch_owner = models.CharField(max_length=64, null=True, blank=True)
    dispatch_lease_expires_at = models.DateTimeField(null=True, blank=True)
    dispatch_queued_at = models.DateTimeField(null=True, blank=True)

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    scheduled_time = models.DateTimeField(null=True, blank=True)
    settled_at = models.DateTimeField(null=True, blank=True)

    cancellation_reason = models.TextField(blank=True, default='')

    class Meta:
        db_table = 'ride_requests'
        ordering = ['-created_at']

    def __str__(self):
        return f"Ride #{self.id} - {self.rider_id} - {self.status}"

    @property
    def is_terminal(self):
        return RideStatus(self.status).is_terminal

    def to_snapshot(self) -> RideSnapshot:
        dropoff = None
        if self.dropoff_latitude is not None and self.dropoff_longitude is not None:
            dropoff = GeoPoint(float(self.dropoff_latitude), float(self.dropoff_longitude))
        return RideSnapshot(
            id=self.id,
            rider_id=self.rider_id,
            pickup=GeoPoint(float(self.pickup_latitude), float(self.pickup_longitude)),
            vehicle_class=self.vehicle_class,
            dropoff=dropoff,
            status=RideStatus(self.status),
            assigned_driver_id=self.assigned_driver_id,
            excluded_driver_ids=list(self.excluded_driver_ids or []),
            search_radius_meters=self.search_radius_meters,
            dispatch_owner=self.dispatch_owner,
            created_at=self.created_at,
            scheduled_time=self.scheduled_time,
            pickup_address=self.pickup_address or '',
            dropoff_address=self.dropoff_address or '',
        )


class RedZone(models.Model):
    """An area where new rides cannot be requested for now"""

    name = models.CharField(max_length=100)
    # Polygon vertices: [{"latitude": ..., "longitude": ...}, ...]
    coordinates = models.JSONField(default=list)
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'red_zones'
        ordering = ['name']

    def __str__(self):
        return f"Red zone {self.name}"

    def polygon(self):
        return [(float(p['latitude']), float(p['longitude'])) for p in self.coordinates or []]

    def contains(self, latitude, longitude) -> bool:
        polygon = self.polygon()
        return len(polygon) >= 3 and point_in_polygon(latitude, longitude, polygon)
