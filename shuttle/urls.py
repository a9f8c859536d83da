from django.urls import path
from .views import (
    CallDetailView, CallListView, GeofenceCheckView, LiveStatsView, StopDetailView, StopListView,
    StopVisitView, TaskDetailView, TaskListView, TrackingServerStatusView, VehicleDeviceView,
    VehicleListView, VehicleStatusView
)

app_name = "shuttle"

urlpatterns = [
    path("api/stops/", StopListView.as_view(), name="stop-list"),
    path("api/stops/<int:pk>/", StopDetailView.as_view(), name="stop-detail"),
    path("api/calls/", CallListView.as_view(), name="call-list"),
    path("api/calls/<int:pk>/", CallDetailView.as_view(), name="call-detail"),
    path("api/tasks/", TaskListView.as_view(), name="task-list"),
    path("api/tasks/<int:pk>/", TaskDetailView.as_view(), name="task-detail"),
    path("api/geofence/check/", GeofenceCheckView.as_view(), name="geofence-check"),
    path("api/stop-visits/", StopVisitView.as_view(), name="stop-visits"),
    path("api/vehicles/", VehicleListView.as_view(), name="vehicle-list"),
    path("api/vehicles/<int:pk>/status/", VehicleStatusView.as_view(), name="vehicle-status"),
    path("api/vehicles/<int:pk>/device/", VehicleDeviceView.as_view(), name="vehicle-device"),
    path("api/tracking/status/", TrackingServerStatusView.as_view(), name="tracking-status"),
    path("api/stats/", LiveStatsView.as_view(), name="live-stats"),
]
