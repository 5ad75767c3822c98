from django.db import models
from django.utils import timezone


class DriverProfile(models.Model):
    """Driver vehicle details, availability status and last known location"""
    STATUS_CHOICES = [
        ('available', 'Available'),
        ('busy', 'Busy'),
        ('offline', 'Offline'),
    ]

    # Identity is owned by an external system
    driver_id = models.CharField(max_length=64, unique=True)

    # Vehicle details
    vehicle_number = models.CharField(max_length=20, unique=True)
    vehicle_class = models.CharField(max_length=32, default='standard')

    # Status & location
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='offline')
    current_latitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    current_longitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    last_location_update = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'driver_profiles'

    def __str__(self):
        return f"{self.driver_id} - {self.vehicle_number}"
