"""
Call, task and vehicle lifecycle.

Every operation runs in one transaction so cascades (task -> call ->
vehicle) are applied together or not at all. Rows are locked vehicle first,
then task, then call, the same order the position pipeline uses.
"""
from __future__ import annotations

import logging
from typing import Optional

from django.db import IntegrityError, transaction
from django.db.models import Count
from django.utils import timezone

from . import signals
from .exceptions import (
    InvalidInput,
    InvalidTransition,
    NotFound,
    PendingCallExists,
    VehicleUnavailable,
)
from .models import Call, Stop, Task, Vehicle

logger = logging.getLogger(__name__)

OPERATOR_STATUSES = (Vehicle.AVAILABLE, Vehicle.OFFLINE, Vehicle.MAINTENANCE)


def _get(model, pk, label, lock=False):
    queryset = model.objects.select_for_update() if lock else model.objects.all()
    try:
        return queryset.get(pk=pk)
    except (model.DoesNotExist, ValueError, TypeError):
        raise NotFound(f"{label} {pk} not found")


def _get_active_stop(stop_id, label="Stop", lock=False):
    stop = _get(Stop, stop_id, label, lock=lock)
    if not stop.is_active:
        raise InvalidInput(f"{label} {stop_id} is not active")
    return stop


def _notify_vehicle(vehicle, previous_status):
    if vehicle.status == previous_status:
        return
    transaction.on_commit(
        lambda: signals.vehicle_status_changed.send(
            sender=Vehicle,
            vehicle_id=vehicle.pk,
            status=vehicle.status,
            previous_status=previous_status,
        )
    )


def _notify_task(task, action, auto=False):
    transaction.on_commit(
        lambda: signals.task_advanced.send(sender=Task, task=task, action=action, auto=auto)
    )


def _release_vehicle(vehicle):
    # Offline or maintenance set while the task ran wins over "available".
    if vehicle.status != Vehicle.BUSY:
        return
    previous = vehicle.status
    vehicle.status = Vehicle.AVAILABLE
    vehicle.save(update_fields=["status", "updated_at"])
    _notify_vehicle(vehicle, previous)


def _lock_task(task_id):
    task = _get(Task, task_id, "Task")
    vehicle = _get(Vehicle, task.vehicle_id, "Vehicle", lock=True)
    task = _get(Task, task_id, "Task", lock=True)
    return task, vehicle


def active_task_for_vehicle(vehicle_id) -> Optional[Task]:
    return (
        Task.objects.select_related("pickup_stop", "dropoff_stop")
        .filter(vehicle_id=vehicle_id, status__in=Task.ACTIVE_STATUSES)
        .first()
    )


def active_task_for_call(call_id) -> Optional[Task]:
    return Task.objects.filter(call_id=call_id, status__in=Task.ACTIVE_STATUSES).first()


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------
def create_call(stop_id) -> Call:
    with transaction.atomic():
        stop = _get_active_stop(stop_id, lock=True)
        if Call.objects.filter(stop=stop, status=Call.PENDING).exists():
            raise PendingCallExists(f"Stop {stop.name} already has a pending call")
        try:
            with transaction.atomic():
                call = Call.objects.create(stop=stop)
        except IntegrityError:
            raise PendingCallExists(f"Stop {stop.name} already has a pending call")

    logger.info(f"Call {call.pk} created at stop {stop.pk}")
    return call


def assign_call(call_id, vehicle_id, dropoff_stop_id=None) -> Task:
    """
    Assign a pending call to an available vehicle and open its task.
    """
    with transaction.atomic():
        vehicle = _get(Vehicle, vehicle_id, "Vehicle", lock=True)
        call = _get(Call, call_id, "Call", lock=True)
        if call.status != Call.PENDING:
            raise InvalidTransition("Only pending calls can be assigned")
        if vehicle.status != Vehicle.AVAILABLE:
            raise VehicleUnavailable(f"Vehicle {vehicle.name} is {vehicle.status}")
        if active_task_for_vehicle(vehicle.pk) is not None:
            raise VehicleUnavailable(f"Vehicle {vehicle.name} already has an active task")
        if active_task_for_call(call.pk) is not None:
            raise InvalidTransition("Call already has an active task")

        dropoff_stop = None
        if dropoff_stop_id is not None:
            dropoff_stop = _get_active_stop(dropoff_stop_id, "Dropoff stop")

        now = timezone.now()
        task = Task.objects.create(
            vehicle=vehicle,
            call=call,
            pickup_stop_id=call.stop_id,
            dropoff_stop=dropoff_stop,
        )
        call.status = Call.ASSIGNED
        call.assigned_vehicle = vehicle
        call.assigned_at = now
        call.save(update_fields=["status", "assigned_vehicle", "assigned_at", "updated_at"])

        previous = vehicle.status
        vehicle.status = Vehicle.BUSY
        vehicle.save(update_fields=["status", "updated_at"])
        _notify_vehicle(vehicle, previous)
        _notify_task(task, "assign")

    logger.info(f"Call {call.pk} assigned to vehicle {vehicle.pk} as task {task.pk}")
    return task


def complete_call(call_id) -> Call:
    """
    Complete an assigned call. Its active task, if any, is completed with it.
    """
    with transaction.atomic():
        call = _get(Call, call_id, "Call")
        task = active_task_for_call(call.pk)
        if task is not None:
            task, vehicle = _lock_task(task.pk)
        call = _get(Call, call_id, "Call", lock=True)
        if call.status != Call.ASSIGNED:
            raise InvalidTransition("Only assigned calls can be completed")

        if task is not None and task.is_active:
            _finish_task(task, vehicle, call, auto_completed=False)
        else:
            call.status = Call.COMPLETED
            call.completed_at = timezone.now()
            call.save(update_fields=["status", "completed_at", "updated_at"])

    logger.info(f"Call {call.pk} completed")
    return call


def cancel_call(call_id, reason=None, pending_only=False) -> Call:
    """
    Cancel a call and any active task on it. With ``pending_only`` a call
    that was already assigned is refused.
    """
    with transaction.atomic():
        call = _get(Call, call_id, "Call")
        task = active_task_for_call(call.pk)
        vehicle = None
        if task is not None:
            task, vehicle = _lock_task(task.pk)
        call = _get(Call, call_id, "Call", lock=True)
        if call.status not in (Call.PENDING, Call.ASSIGNED):
            raise InvalidTransition("Call is already completed or cancelled")
        if pending_only and call.status != Call.PENDING:
            raise InvalidTransition("Only pending calls can be withdrawn")

        now = timezone.now()
        if task is not None and task.is_active:
            task.status = Task.CANCELLED
            task.cancelled_at = now
            task.save(update_fields=["status", "cancelled_at", "updated_at"])
            _release_vehicle(vehicle)
            _notify_task(task, "cancel")

        call.status = Call.CANCELLED
        call.cancelled_at = now
        call.cancel_reason = reason or ""
        call.save(update_fields=["status", "cancelled_at", "cancel_reason", "updated_at"])

    logger.info(f"Call {call.pk} cancelled")
    return call


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------
def set_dropoff(task_id, stop_id) -> Task:
    with transaction.atomic():
        task, _ = _lock_task(task_id)
        if not task.is_active:
            raise InvalidTransition("Task is already completed or cancelled")
        task.dropoff_stop = _get_active_stop(stop_id, "Dropoff stop")
        task.save(update_fields=["dropoff_stop", "updated_at"])
    return task


def _pickup(task, now):
    task.status = Task.PICKUP
    task.pickup_at = now
    task.save(update_fields=["status", "pickup_at", "updated_at"])


def pickup_task(task_id) -> Task:
    with transaction.atomic():
        task, _ = _lock_task(task_id)
        if task.status != Task.ASSIGNED:
            raise InvalidTransition("Only assigned tasks can be picked up")
        _pickup(task, timezone.now())
        _notify_task(task, "pickup")
    logger.info(f"Task {task.pk} picked up")
    return task


def dropoff_task(task_id) -> Task:
    with transaction.atomic():
        task, _ = _lock_task(task_id)
        if task.status != Task.PICKUP:
            raise InvalidTransition("Guest must be picked up before dropoff")
        if task.dropoff_stop_id is None:
            raise InvalidTransition("Dropoff stop must be set before dropoff")
        task.status = Task.DROPOFF
        task.dropoff_at = timezone.now()
        task.save(update_fields=["status", "dropoff_at", "updated_at"])
        _notify_task(task, "dropoff")
    logger.info(f"Task {task.pk} dropped off")
    return task


def _finish_task(task, vehicle, call=None, auto_completed=False):
    now = timezone.now()
    task.status = Task.COMPLETED
    task.completed_at = now
    task.auto_completed = auto_completed
    task.save(update_fields=["status", "completed_at", "auto_completed", "updated_at"])

    call = call or _get(Call, task.call_id, "Call", lock=True)
    call.status = Call.COMPLETED
    call.completed_at = now
    call.save(update_fields=["status", "completed_at", "updated_at"])

    _release_vehicle(vehicle)
    _notify_task(task, "complete", auto=auto_completed)
    return task


def complete_task(task_id, auto_completed=False) -> Task:
    with transaction.atomic():
        task, vehicle = _lock_task(task_id)
        if task.status not in (Task.PICKUP, Task.DROPOFF):
            raise InvalidTransition("Only picked up tasks can be completed")
        _finish_task(task, vehicle, auto_completed=auto_completed)
    logger.info(f"Task {task.pk} completed (auto={auto_completed})")
    return task


def cancel_task(task_id) -> Task:
    """
    Cancel an active task. The call goes back to pending so it can be
    dispatched again, unless the stop meanwhile got a new pending call.
    """
    with transaction.atomic():
        task, vehicle = _lock_task(task_id)
        if not task.is_active:
            raise InvalidTransition("Task is already completed or cancelled")

        now = timezone.now()
        task.status = Task.CANCELLED
        task.cancelled_at = now
        task.save(update_fields=["status", "cancelled_at", "updated_at"])

        call = _get(Call, task.call_id, "Call", lock=True)
        if Call.objects.filter(stop_id=call.stop_id, status=Call.PENDING).exists():
            call.status = Call.CANCELLED
            call.cancelled_at = now
            call.cancel_reason = "Superseded by a newer pending call"
        else:
            call.status = Call.PENDING
        call.assigned_vehicle = None
        call.assigned_at = None
        call.save()

        _release_vehicle(vehicle)
        _notify_task(task, "cancel")
    logger.info(f"Task {task.pk} cancelled, call {call.pk} is {call.status}")
    return task


def advance_on_arrival(vehicle: Vehicle, stop_id: int) -> Optional[str]:
    """
    Fire the pickup or dropoff transition the vehicle just earned by entering
    ``stop_id``. ``vehicle`` must already be locked by the caller.
    """
    task = (
        Task.objects.select_for_update()
        .filter(vehicle=vehicle, status__in=Task.ACTIVE_STATUSES)
        .first()
    )
    if task is None:
        return None

    if task.status == Task.ASSIGNED and task.pickup_stop_id == stop_id:
        _pickup(task, timezone.now())
        _notify_task(task, "pickup", auto=True)
        logger.info(f"Task {task.pk} auto picked up at stop {stop_id}")
        return "pickup"

    if task.status in (Task.PICKUP, Task.DROPOFF) and task.dropoff_stop_id == stop_id:
        _finish_task(task, vehicle, auto_completed=True)
        logger.info(f"Task {task.pk} auto completed at stop {stop_id}")
        return "complete"

    return None


# ---------------------------------------------------------------------------
# Vehicles
# ---------------------------------------------------------------------------
def set_vehicle_status(vehicle_id, status) -> Vehicle:
    if status not in OPERATOR_STATUSES:
        raise InvalidInput(f"Status must be one of {', '.join(OPERATOR_STATUSES)}")

    with transaction.atomic():
        vehicle = _get(Vehicle, vehicle_id, "Vehicle", lock=True)
        if active_task_for_vehicle(vehicle.pk) is not None:
            raise InvalidTransition(f"Vehicle {vehicle.name} has an active task")
        previous = vehicle.status
        vehicle.status = status
        vehicle.save(update_fields=["status", "updated_at"])
        _notify_vehicle(vehicle, previous)
    return vehicle


def apply_device_status(vehicle: Vehicle, online: bool) -> str:
    """
    Follow the tracking device's connectivity. Coming online only lifts
    ``offline``; busy and maintenance vehicles keep their status.
    ``vehicle`` must already be locked by the caller.
    """
    previous = vehicle.status
    if online:
        if vehicle.status == Vehicle.OFFLINE:
            vehicle.status = Vehicle.AVAILABLE
    else:
        vehicle.status = Vehicle.OFFLINE
    vehicle.gps_signal = online
    vehicle.save(update_fields=["status", "gps_signal", "updated_at"])
    _notify_vehicle(vehicle, previous)
    return vehicle.status


def live_statistics(now=None) -> dict:
    """Today's call counters, active tasks and the fleet by status."""
    now = now or timezone.now()
    today = timezone.localtime(now).replace(hour=0, minute=0, second=0, microsecond=0)
    calls = Call.objects.filter(created_at__gte=today)
    vehicle_counts = dict(
        Vehicle.objects.values_list("status").annotate(total=Count("id")).order_by()
    )
    return {
        "today_calls": calls.count(),
        "completed_calls": calls.filter(status=Call.COMPLETED).count(),
        "pending_calls": calls.filter(status=Call.PENDING).count(),
        "active_tasks": Task.objects.filter(status__in=Task.ACTIVE_STATUSES).count(),
        "vehicles": {status: vehicle_counts.get(status, 0) for status, _ in Vehicle.STATUS_CHOICES},
    }
