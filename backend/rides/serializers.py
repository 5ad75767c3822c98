from rest_framework import serializers

from .models import RedZone, RideRequest


class RideRequestSerializer(serializers.ModelSerializer):
    """Serializer for Ride Requests"""

    class Meta:
        model = RideRequest
        fields = ['id', 'rider_id', 'assigned_driver_id',
                  'pickup_latitude', 'pickup_longitude', 'pickup_address',
                  'dropoff_latitude', 'dropoff_longitude', 'dropoff_address',
                  'vehicle_class', 'status', 'search_radius_meters',
                  'created_at', 'scheduled_time', 'settled_at', 'cancellation_reason']
        read_only_fields = fields


class RideRequestCreateSerializer(serializers.ModelSerializer):
    """Serializer for creating ride requests"""

    class Meta:
        model = RideRequest
        fields = ['rider_id', 'pickup_latitude', 'pickup_longitude', 'pickup_address',
                  'dropoff_latitude', 'dropoff_longitude', 'dropoff_address',
                  'vehicle_class', 'scheduled_time']

    def validate(self, attrs):
        has_lat = attrs.get('dropoff_latitude') is not None
        has_lon = attrs.get('dropoff_longitude') is not None
        if has_lat != has_lon:
            raise serializers.ValidationError("dropoff_latitude and dropoff_longitude go together")
        return attrs


class RideCancelSerializer(serializers.Serializer):
    """Serializer for ride cancellation"""
    reason = serializers.CharField(required=False, allow_blank=True)
    rider_id = serializers.CharField(required=False)


class DriverActionSerializer(serializers.Serializer):
    """Serializer for a driver's accept/decline"""
    driver_id = serializers.CharField()


class RedZoneSerializer(serializers.ModelSerializer):
    """Serializer for red zones shown to the rider app"""

    class Meta:
        model = RedZone
        fields = ['id', 'name', 'coordinates']
