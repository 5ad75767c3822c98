from django.urls import path

from . import views

urlpatterns = [
    # Rider
    path('', views.create_ride_request, name='ride-create'),
    path('<int:ride_id>/', views.ride_detail, name='ride-detail'),
    path('<int:ride_id>/cancel/', views.cancel_ride, name='ride-cancel'),
    path('red-zones/', views.red_zones, name='red-zones'),

    # Driver
    path('<int:ride_id>/accept/', views.accept_ride, name='ride-accept'),
    path('<int:ride_id>/decline/', views.decline_ride, name='ride-decline'),
]
