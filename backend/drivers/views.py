from rest_framework.views import APIView
from rest_framework.response import Response

from drivers.models import DriverProfile
from drivers.serializers import (
    DriverProfileSerializer,
    DriverStatusSerializer,
    LocationUpdateSerializer,
)

from drivers import services


# Utility: look up the driver named in the URL
def require_driver(driver_id):
    try:
        profile = services.get_driver_profile(driver_id)
        return True, profile
    except DriverProfile.DoesNotExist:
        return False, Response({"error": "Driver profile not found"}, status=404)


class DriverProfileView(APIView):

    def get(self, request, driver_id):
        ok, profile = require_driver(driver_id)
        if ok is False:
            return profile  # Response object

        serializer = DriverProfileSerializer(profile)
        return Response(serializer.data)

    def post(self, request, driver_id):
        """Create or update the driver's vehicle details."""
        profile = DriverProfile.objects.filter(driver_id=str(driver_id)).first()
        created = profile is None

        serializer = DriverProfileSerializer(profile, data=request.data, partial=not created)
        serializer.is_valid(raise_exception=True)
        profile = serializer.save(driver_id=str(driver_id))

        return Response(DriverProfileSerializer(profile).data, status=201 if created else 200)


class DriverStatusView(APIView):

    def get(self, request, driver_id):
        ok, profile = require_driver(driver_id)
        if ok is False:
            return profile

        return Response({"status": profile.status})

    def put(self, request, driver_id):
        ok, profile = require_driver(driver_id)
        if ok is False:
            return profile

        serializer = DriverStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        new_status = serializer.validated_data["status"]

        services.update_driver_status(profile, new_status)

        return Response({
            "message": f"Status updated to {new_status}",
            "status": new_status
        })


class DriverLocationUpdateView(APIView):

    def get(self, request, driver_id):
        ok, profile = require_driver(driver_id)
        if ok is False:
            return profile

        return Response({
            "latitude": float(profile.current_latitude) if profile.current_latitude is not None else None,
            "longitude": float(profile.current_longitude) if profile.current_longitude is not None else None,
            "last_updated": profile.last_location_update,
            "status": profile.status,
        })

    def post(self, request, driver_id):
        ok, profile = require_driver(driver_id)
        if ok is False:
            return profile

        serializer = LocationUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        lat = serializer.validated_data["latitude"]
        lon = serializer.validated_data["longitude"]

        services.update_driver_location(profile, lat, lon)

        return Response({
            "message": "Location updated",
            "latitude": float(lat),
            "longitude": float(lon),
            "status": profile.status
        })
