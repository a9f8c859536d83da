from django.db import models
from django.db.models import Q


class Stop(models.Model):
    name = models.CharField(max_length=100, unique=True)
    icon = models.CharField(max_length=10, blank=True, default='')
    lat = models.FloatField()
    lng = models.FloatField()
    geofence_radius = models.PositiveIntegerField(default=15)  # meters
    is_active = models.BooleanField(default=True)
    tracking_geofence_id = models.IntegerField(null=True, blank=True, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return self.name

    def as_point(self):
        return {'lat': self.lat, 'lng': self.lng}


class Vehicle(models.Model):
    AVAILABLE = 'available'
    BUSY = 'busy'
    OFFLINE = 'offline'
    MAINTENANCE = 'maintenance'
    STATUS_CHOICES = [
        (AVAILABLE, 'Available'),
        (BUSY, 'Busy'),
        (OFFLINE, 'Offline'),
        (MAINTENANCE, 'Maintenance'),
    ]
    name = models.CharField(max_length=50, unique=True)
    plate_number = models.CharField(max_length=20, unique=True)
    lat = models.FloatField(default=37.1385641)
    lng = models.FloatField(default=27.5607023)
    speed = models.FloatField(default=0.0)  # km/h
    heading = models.FloatField(default=0.0)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=OFFLINE)
    gps_signal = models.BooleanField(default=False)
    tracking_device_id = models.IntegerField(null=True, blank=True, unique=True)
    last_geofence_stop = models.ForeignKey(
        Stop, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    last_update = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return self.name


class Call(models.Model):
    PENDING = 'pending'
    ASSIGNED = 'assigned'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (ASSIGNED, 'Assigned'),
        (COMPLETED, 'Completed'),
        (CANCELLED, 'Cancelled'),
    ]
    stop = models.ForeignKey(Stop, on_delete=models.PROTECT, related_name='calls')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING)
    assigned_vehicle = models.ForeignKey(
        Vehicle, on_delete=models.SET_NULL, null=True, blank=True, related_name='calls'
    )
    assigned_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['stop'],
                condition=Q(status='pending'),
                name='one_pending_call_per_stop',
            ),
        ]

    def __str__(self):
        return f"Call #{self.pk} at {self.stop_id} ({self.status})"


class Task(models.Model):
    ASSIGNED = 'assigned'
    PICKUP = 'pickup'
    DROPOFF = 'dropoff'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    STATUS_CHOICES = [
        (ASSIGNED, 'Assigned'),
        (PICKUP, 'Picked up'),
        (DROPOFF, 'Dropped off'),
        (COMPLETED, 'Completed'),
        (CANCELLED, 'Cancelled'),
    ]
    ACTIVE_STATUSES = (ASSIGNED, PICKUP, DROPOFF)
    TERMINAL_STATUSES = (COMPLETED, CANCELLED)

    vehicle = models.ForeignKey(Vehicle, on_delete=models.PROTECT, related_name='tasks')
    call = models.ForeignKey(Call, on_delete=models.PROTECT, related_name='tasks')
    pickup_stop = models.ForeignKey(Stop, on_delete=models.PROTECT, related_name='pickup_tasks')
    dropoff_stop = models.ForeignKey(
        Stop, on_delete=models.PROTECT, null=True, blank=True, related_name='dropoff_tasks'
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=ASSIGNED)
    pickup_at = models.DateTimeField(null=True, blank=True)
    dropoff_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    auto_completed = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['vehicle'],
                condition=Q(status__in=['assigned', 'pickup', 'dropoff']),
                name='one_active_task_per_vehicle',
            ),
            models.UniqueConstraint(
                fields=['call'],
                condition=Q(status__in=['assigned', 'pickup', 'dropoff']),
                name='one_active_task_per_call',
            ),
        ]

    def __str__(self):
        return f"Task #{self.pk} {self.vehicle_id} ({self.status})"

    @property
    def is_active(self):
        return self.status in self.ACTIVE_STATUSES


class StopVisit(models.Model):
    vehicle = models.ForeignKey(Vehicle, on_delete=models.CASCADE, related_name='stop_visits')
    stop = models.ForeignKey(Stop, on_delete=models.CASCADE, related_name='visits')
    enter_time = models.DateTimeField()
    exit_time = models.DateTimeField(null=True, blank=True)
    duration = models.PositiveIntegerField(null=True, blank=True)  # seconds

    class Meta:
        ordering = ['-enter_time', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['vehicle'],
                condition=Q(exit_time__isnull=True),
                name='one_open_visit_per_vehicle',
            ),
        ]

    def __str__(self):
        return f"{self.vehicle_id}@{self.stop_id} from {self.enter_time}"


class GeofenceEvent(models.Model):
    ENTER = 'enter'
    EXIT = 'exit'
    TYPE_CHOICES = [
        (ENTER, 'Enter'),
        (EXIT, 'Exit'),
    ]
    vehicle = models.ForeignKey(Vehicle, on_delete=models.CASCADE, related_name='geofence_events')
    stop = models.ForeignKey(Stop, on_delete=models.CASCADE, related_name='geofence_events')
    type = models.CharField(max_length=10, choices=TYPE_CHOICES)
    distance = models.FloatField()
    timestamp = models.DateTimeField()

    class Meta:
        ordering = ['-timestamp', '-id']

    def __str__(self):
        return f"{self.type} {self.vehicle_id}@{self.stop_id}"


class VehiclePosition(models.Model):
    vehicle = models.ForeignKey(Vehicle, on_delete=models.CASCADE, related_name='positions')
    lat = models.FloatField()
    lng = models.FloatField()
    speed = models.FloatField()
    heading = models.FloatField()
    correction_type = models.CharField(max_length=10, default='none')
    timestamp = models.DateTimeField()

    class Meta:
        ordering = ['-timestamp', '-id']


class Trip(models.Model):
    vehicle = models.ForeignKey(Vehicle, on_delete=models.CASCADE, related_name='trips')
    start_time = models.DateTimeField()
    end_time = models.DateTimeField(null=True, blank=True)
    start_lat = models.FloatField()
    start_lng = models.FloatField()
    end_lat = models.FloatField(null=True, blank=True)
    end_lng = models.FloatField(null=True, blank=True)
    start_stop = models.ForeignKey(
        Stop, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    end_stop = models.ForeignKey(
        Stop, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    distance = models.FloatField(default=0.0)  # meters
    max_speed = models.FloatField(default=0.0)  # km/h
    average_speed = models.FloatField(default=0.0)
    speed_samples = models.PositiveIntegerField(default=0)
    duration = models.PositiveIntegerField(null=True, blank=True)  # seconds

    class Meta:
        ordering = ['-start_time', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['vehicle'],
                condition=Q(end_time__isnull=True),
                name='one_open_trip_per_vehicle',
            ),
        ]

    def __str__(self):
        return f"Trip #{self.pk} {self.vehicle_id}"
