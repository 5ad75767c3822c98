from django.contrib import admin
from drivers.models import DriverProfile


@admin.register(DriverProfile)
class DriverProfileAdmin(admin.ModelAdmin):
    """Admin panel for managing Driver Profiles"""

    list_display = [
        "driver_id",
        "vehicle_number",
        "vehicle_class",
        "status",
        "current_latitude",
        "current_longitude",
        "last_location_update",
    ]

    list_filter = [
        "status",
        "vehicle_class",
        "last_location_update",
    ]

    search_fields = [
        "driver_id",
        "vehicle_number",
    ]

    readonly_fields = [
        "last_location_update",
    ]

    ordering = ("driver_id",)
