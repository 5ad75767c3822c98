from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from .serializers import (
    DriverActionSerializer,
    RedZoneSerializer,
    RideCancelSerializer,
    RideRequestCreateSerializer,
    RideRequestSerializer,
)
from services import ride_management
from services.ride_management import (
    ActiveRideExistsError,
    DriverNotAvailableError,
    RideNotAvailableError,
    RideNotFoundError,
    ServiceUnavailableError,
)
from .models import RedZone


# ==================== Rider Ride APIs ====================

@api_view(['POST'])
def create_ride_request(request):
    """Create a new ride request and start searching for a driver"""
    serializer = RideRequestCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = ride_management.create_ride_request(**serializer.validated_data)
    except ActiveRideExistsError as e:
        return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)
    except ServiceUnavailableError as e:
        return Response(
            {'error': 'service_unavailable', 'message': str(e), 'zone': e.zone.name if e.zone else None},
            status=status.HTTP_422_UNPROCESSABLE_ENTITY
        )

    return Response({
        **RideRequestSerializer(result.ride).data,
        'message': result.message,
        'dispatch_queued': result.extra['dispatch_queued'],
    }, status=status.HTTP_201_CREATED)


@api_view(['GET'])
def ride_detail(request, ride_id):
    """
    Get a ride request (POLLING ENDPOINT)

    Rider app polls this to follow the search until a driver is assigned
    """
    try:
        ride = ride_management.get_ride(ride_id)
    except RideNotFoundError as e:
        return Response({'error': str(e)}, status=status.HTTP_404_NOT_FOUND)

    response_data = {
        'ride': RideRequestSerializer(ride).data,
        'status': ride.status,
        'driver_assigned': ride.assigned_driver_id is not None,
    }

    # Add helpful messages based on status
    if ride.status == 'created':
        response_data['message'] = 'Ride scheduled.'
    elif ride.status == 'searching':
        response_data['message'] = 'Searching for nearby drivers...'
    elif ride.status == 'accepted':
        response_data['message'] = 'Driver is on the way!'
    elif ride.status == 'expired':
        response_data['message'] = 'No drivers available at the moment. Please try again later.'
    elif ride.status == 'canceled':
        response_data['message'] = 'Ride was cancelled.'

    return Response(response_data)


@api_view(['POST'])
def cancel_ride(request, ride_id):
    """Cancel a ride request that has no driver yet"""
    serializer = RideCancelSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = ride_management.cancel_ride(
            ride_id,
            reason=serializer.validated_data.get('reason') or 'No reason provided',
            rider_id=serializer.validated_data.get('rider_id'),
        )
    except RideNotFoundError as e:
        return Response({'error': str(e)}, status=status.HTTP_404_NOT_FOUND)
    except RideNotAvailableError as e:
        return Response(
            {'error': 'Cannot cancel this ride', 'message': str(e)},
            status=status.HTTP_409_CONFLICT
        )

    return Response({
        'success': True,
        'message': result.message,
        'ride_id': result.ride.id,
        'cancelled_at': result.ride.settled_at,
    })


@api_view(['GET'])
def red_zones(request):
    """Active red zones, so the rider app can warn before a ride is requested"""
    zones = RedZone.objects.filter(is_active=True)
    return Response({'data': RedZoneSerializer(zones, many=True).data})


# ==================== Driver Ride APIs ====================

@api_view(['POST'])
def accept_ride(request, ride_id):
    """Accept a ride request (any available driver, while the search runs)"""
    serializer = DriverActionSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = ride_management.accept_ride(ride_id, serializer.validated_data['driver_id'])
    except RideNotFoundError as e:
        return Response({'error': str(e)}, status=status.HTTP_404_NOT_FOUND)
    except DriverNotAvailableError as e:
        return Response(
            {'success': False, 'error': 'driver_not_available', 'message': str(e)},
            status=status.HTTP_400_BAD_REQUEST
        )
    except RideNotAvailableError as e:
        return Response(
            {'success': False, 'error': 'ride_not_available', 'message': str(e), 'ride_id': ride_id},
            status=status.HTTP_409_CONFLICT
        )

    return Response({
        'success': True,
        'message': result.message,
        'ride': RideRequestSerializer(result.ride).data,
    })


@api_view(['POST'])
def decline_ride(request, ride_id):
    """Decline a ride offer so the search moves to the next driver"""
    serializer = DriverActionSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = ride_management.decline_offer(ride_id, serializer.validated_data['driver_id'])
    except RideNotFoundError as e:
        return Response({'error': str(e)}, status=status.HTTP_404_NOT_FOUND)
    except RideNotAvailableError as e:
        return Response(
            {'success': False, 'error': 'ride_not_available', 'message': str(e), 'ride_id': ride_id},
            status=status.HTTP_409_CONFLICT
        )

    return Response({'success': True, 'message': result.message, 'ride_id': result.ride.id})
