from django.urls import path
from .views import (
    DriverProfileView,
    DriverStatusView,
    DriverLocationUpdateView,
)

urlpatterns = [
    path("<str:driver_id>/profile/", DriverProfileView.as_view(), name="driver-profile"),
    path("<str:driver_id>/status/", DriverStatusView.as_view(), name="driver-status"),
    path("<str:driver_id>/location/", DriverLocationUpdateView.as_view(), name="driver-location"),
]
