"""Tells what to show in the Django admin interface for rides app"""

from django.contrib import admin
from .models import RedZone, RideRequest

@admin.register(RideRequest)
class RideRequestAdmin(admin.ModelAdmin):
    """Ride Request admin"""
    list_display = ['id', 'rider_id', 'assigned_driver_id', 'status', 'vehicle_class', 'search_radius_meters', 'created_at', 'settled_at']
    list_filter = ['status', 'vehicle_class', 'created_at']
    search_fields = ['rider_id', 'assigned_driver_id', 'pickup_address']
    readonly_fields = ['created_at', 'settled_at', 'excluded_driver_ids', 'search_radius_meters',
                       'dispatch_owner', 'dispatch_lease_expires_at', 'dispatch_queued_at']
    date_hierarchy = 'created_at'


@admin.register(RedZone)
class RedZoneAdmin(admin.ModelAdmin):
    """Red zone admin"""
    list_display = ['id', 'name', 'is_active', 'created_at']
    list_filter = ['is_active']
    search_fields = ['name']
