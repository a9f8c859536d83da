from __future__ import annotations

import json
import logging
from datetime import timedelta

from django.forms.models import model_to_dict
from django.http import JsonResponse
from django.utils import timezone
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from django.views.generic import View

from . import dispatch
from .exceptions import InvalidInput, NotFound, ShuttleError, TrackingServerError
from .forms import (
    CallActionForm,
    CallForm,
    DeviceLinkForm,
    PositionForm,
    StopForm,
    TaskActionForm,
    VehicleStatusForm,
    VisitQueryForm,
)
from .models import Call, Stop, Task, Vehicle
from .pipeline import process_position
from .tracking_server import (
    TrackingServerClient,
    link_vehicle_device,
    remove_stop_geofence,
    sync_stop_geofence,
    unlink_vehicle_device,
)
from .visits import stop_statistics, vehicle_stop_statistics, visits_between

logger = logging.getLogger(__name__)

VISIT_WINDOW = timedelta(days=7)


def _iso(value):
    return value.isoformat() if value else None


def stop_payload(stop: Stop) -> dict:
    return {
        "id": stop.pk,
        "name": stop.name,
        "icon": stop.icon,
        "lat": stop.lat,
        "lng": stop.lng,
        "geofence_radius": stop.geofence_radius,
        "is_active": stop.is_active,
        "tracking_geofence_id": stop.tracking_geofence_id,
    }


def call_payload(call: Call) -> dict:
    return {
        "id": call.pk,
        "stop_id": call.stop_id,
        "stop_name": call.stop.name,
        "status": call.status,
        "assigned_vehicle_id": call.assigned_vehicle_id,
        "assigned_at": _iso(call.assigned_at),
        "completed_at": _iso(call.completed_at),
        "cancelled_at": _iso(call.cancelled_at),
        "cancel_reason": call.cancel_reason,
        "created_at": _iso(call.created_at),
    }


def task_payload(task: Task) -> dict:
    return {
        "id": task.pk,
        "vehicle_id": task.vehicle_id,
        "call_id": task.call_id,
        "pickup_stop_id": task.pickup_stop_id,
        "dropoff_stop_id": task.dropoff_stop_id,
        "status": task.status,
        "pickup_at": _iso(task.pickup_at),
        "dropoff_at": _iso(task.dropoff_at),
        "completed_at": _iso(task.completed_at),
        "cancelled_at": _iso(task.cancelled_at),
        "auto_completed": task.auto_completed,
        "created_at": _iso(task.created_at),
    }


def vehicle_payload(vehicle: Vehicle, task=None) -> dict:
    return {
        "id": vehicle.pk,
        "name": vehicle.name,
        "plate_number": vehicle.plate_number,
        "lat": vehicle.lat,
        "lng": vehicle.lng,
        "speed": vehicle.speed,
        "heading": vehicle.heading,
        "status": vehicle.status,
        "gps_signal": vehicle.gps_signal,
        "nearest_stop_id": vehicle.last_geofence_stop_id,
        "tracking_device_id": vehicle.tracking_device_id,
        "last_update": _iso(vehicle.last_update),
        "task": task_payload(task) if task is not None else None,
    }


def error_response(error: ShuttleError) -> JsonResponse:
    return JsonResponse({"success": False, "error": error.detail}, status=error.status_code)


def valid_form(form_class, data, **kwargs):
    form = form_class(data, **kwargs)
    if not form.is_valid():
        messages = [
            f"{field}: {' '.join(errors)}" if field != "__all__" else " ".join(errors)
            for field, errors in form.errors.items()
        ]
        raise InvalidInput("; ".join(messages))
    return form


def validated(form_class, data) -> dict:
    return valid_form(form_class, data).cleaned_data


@method_decorator(csrf_exempt, name="dispatch")
class ApiView(View):
    """JSON endpoint base: domain errors become ``{"success": false}`` answers."""

    def dispatch(self, request, *args, **kwargs):
        try:
            return super().dispatch(request, *args, **kwargs)
        except ShuttleError as error:
            logger.info(f"{request.method} {request.path} rejected: {error.detail}")
            return error_response(error)

    def json_body(self, request) -> dict:
        if not request.body:
            return {}
        try:
            data = json.loads(request.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidInput("Invalid JSON")
        if not isinstance(data, dict):
            raise InvalidInput("Expected a JSON object")
        return data


def _get_or_404(queryset, pk, label):
    try:
        return queryset.get(pk=pk)
    except queryset.model.DoesNotExist:
        raise NotFound(f"{label} {pk} not found")


class CallListView(ApiView):
    def get(self, request, *args, **kwargs):
        calls = Call.objects.select_related("stop")
        status = request.GET.get("status")
        if status:
            calls = calls.filter(status=status)
        if request.GET.get("active") == "true":
            calls = calls.filter(status__in=[Call.PENDING, Call.ASSIGNED])
        return JsonResponse({"success": True, "calls": [call_payload(call) for call in calls[:200]]})

    def post(self, request, *args, **kwargs):
        data = validated(CallForm, self.json_body(request))
        call = dispatch.create_call(data["stop_id"])
        return JsonResponse({"success": True, "call": call_payload(call)}, status=201)


class CallDetailView(ApiView):
    def get(self, request, pk, *args, **kwargs):
        call = _get_or_404(Call.objects.select_related("stop"), pk, "Call")
        task = dispatch.active_task_for_call(call.pk)
        return JsonResponse(
            {
                "success": True,
                "call": call_payload(call),
                "task": task_payload(task) if task is not None else None,
            }
        )

    def patch(self, request, pk, *args, **kwargs):
        data = validated(CallActionForm, self.json_body(request))
        action = data["action"]
        task = None
        if action == CallActionForm.ASSIGN:
            task = dispatch.assign_call(pk, data["vehicle_id"], data.get("dropoff_stop_id"))
        elif action == CallActionForm.COMPLETE:
            dispatch.complete_call(pk)
        else:
            dispatch.cancel_call(pk, data.get("reason"))

        call = Call.objects.select_related("stop").get(pk=pk)
        return JsonResponse(
            {
                "success": True,
                "call": call_payload(call),
                "task": task_payload(task) if task is not None else None,
            }
        )

    def delete(self, request, pk, *args, **kwargs):
        call = dispatch.cancel_call(pk, "Withdrawn by guest", pending_only=True)
        return JsonResponse({"success": True, "call": call_payload(call)})


class TaskListView(ApiView):
    def get(self, request, *args, **kwargs):
        tasks = Task.objects.all()
        status = request.GET.get("status")
        if status:
            tasks = tasks.filter(status=status)
        if request.GET.get("active") == "true":
            tasks = tasks.filter(status__in=Task.ACTIVE_STATUSES)
        vehicle_id = request.GET.get("vehicle_id")
        if vehicle_id:
            if not vehicle_id.isdigit():
                raise InvalidInput("vehicle_id must be an integer")
            tasks = tasks.filter(vehicle_id=int(vehicle_id))
        return JsonResponse({"success": True, "tasks": [task_payload(task) for task in tasks[:200]]})


class TaskDetailView(ApiView):
    def get(self, request, pk, *args, **kwargs):
        task = _get_or_404(Task.objects.all(), pk, "Task")
        return JsonResponse({"success": True, "task": task_payload(task)})

    def patch(self, request, pk, *args, **kwargs):
        data = validated(TaskActionForm, self.json_body(request))
        action = data["action"]
        if action == TaskActionForm.SET_DROPOFF:
            task = dispatch.set_dropoff(pk, data["stop_id"])
        elif action == TaskActionForm.PICKUP:
            task = dispatch.pickup_task(pk)
        elif action == TaskActionForm.DROPOFF:
            task = dispatch.dropoff_task(pk)
        elif action == TaskActionForm.COMPLETE:
            task = dispatch.complete_task(pk)
        else:
            task = dispatch.cancel_task(pk)
        return JsonResponse({"success": True, "task": task_payload(task)})


class GeofenceCheckView(ApiView):
    def post(self, request, *args, **kwargs):
        data = validated(PositionForm, self.json_body(request))
        snapshot = process_position(
            data["vehicle_id"],
            data["lat"],
            data["lng"],
            speed_kmh=data.get("speed") or 0.0,
            heading=data.get("heading") or 0.0,
            correct=data.get("correct"),
        )
        if snapshot is None:
            return JsonResponse({"success": True, "stale": True})
        return JsonResponse({"success": True, "stale": False, "vehicle": snapshot})


class StopVisitView(ApiView):
    def get(self, request, *args, **kwargs):
        data = validated(VisitQueryForm, request.GET)
        end = data.get("end") or timezone.now()
        start = data.get("start") or end - VISIT_WINDOW
        vehicle_id = data.get("vehicle_id")

        if data.get("stats"):
            if vehicle_id:
                stats = vehicle_stop_statistics(vehicle_id, start, end)
            else:
                stats = stop_statistics(start, end)
            return JsonResponse({"success": True, "stats": stats})

        visits = visits_between(
            start,
            end,
            vehicle_id=vehicle_id,
            stop_id=data.get("stop_id"),
            limit=data.get("limit") or 500,
        )
        return JsonResponse({"success": True, "visits": visits})


class VehicleListView(ApiView):
    def get(self, request, *args, **kwargs):
        tasks = {
            task.vehicle_id: task
            for task in Task.objects.filter(status__in=Task.ACTIVE_STATUSES)
        }
        vehicles = [vehicle_payload(vehicle, tasks.get(vehicle.pk)) for vehicle in Vehicle.objects.all()]
        return JsonResponse({"success": True, "timestamp": timezone.now().isoformat(), "vehicles": vehicles})


class VehicleStatusView(ApiView):
    def post(self, request, pk, *args, **kwargs):
        data = validated(VehicleStatusForm, self.json_body(request))
        vehicle = dispatch.set_vehicle_status(pk, data["status"])
        return JsonResponse({"success": True, "vehicle": vehicle_payload(vehicle)})


class LiveStatsView(ApiView):
    def get(self, request, *args, **kwargs):
        return JsonResponse({"success": True, "stats": dispatch.live_statistics()})


def _mirror_stop(stop: Stop) -> bool:
    """Push the stop's geofence to the tracking server; a failure leaves the stop saved."""
    try:
        client = TrackingServerClient.from_settings()
        if stop.is_active:
            sync_stop_geofence(stop, client)
        else:
            remove_stop_geofence(stop, client)
    except TrackingServerError as error:
        logger.warning(f"Stop {stop.pk} saved but not mirrored: {error.detail}")
        return False
    return True


class StopListView(ApiView):
    def get(self, request, *args, **kwargs):
        stops = Stop.objects.all()
        if request.GET.get("active") == "true":
            stops = stops.filter(is_active=True)
        return JsonResponse({"success": True, "stops": [stop_payload(stop) for stop in stops]})

    def post(self, request, *args, **kwargs):
        data = {"icon": "", "geofence_radius": 15, "is_active": True, **self.json_body(request)}
        stop = valid_form(StopForm, data).save()
        synced = _mirror_stop(stop)
        return JsonResponse({"success": True, "stop": stop_payload(stop), "synced": synced}, status=201)


class StopDetailView(ApiView):
    def get(self, request, pk, *args, **kwargs):
        stop = _get_or_404(Stop.objects.all(), pk, "Stop")
        return JsonResponse({"success": True, "stop": stop_payload(stop)})

    def patch(self, request, pk, *args, **kwargs):
        stop = _get_or_404(Stop.objects.all(), pk, "Stop")
        data = {**model_to_dict(stop, fields=StopForm.Meta.fields), **self.json_body(request)}
        stop = valid_form(StopForm, data, instance=stop).save()
        synced = _mirror_stop(stop)
        return JsonResponse({"success": True, "stop": stop_payload(stop), "synced": synced})

    def delete(self, request, pk, *args, **kwargs):
        # Retired, not deleted: calls and visits keep referencing the row.
        stop = _get_or_404(Stop.objects.all(), pk, "Stop")
        stop.is_active = False
        stop.save(update_fields=["is_active", "updated_at"])
        synced = _mirror_stop(stop)
        return JsonResponse({"success": True, "stop": stop_payload(stop), "synced": synced})


class VehicleDeviceView(ApiView):
    def post(self, request, pk, *args, **kwargs):
        data = validated(DeviceLinkForm, self.json_body(request))
        vehicle = link_vehicle_device(pk, data["device_id"], TrackingServerClient.from_settings())
        return JsonResponse({"success": True, "vehicle": vehicle_payload(vehicle)})

    def delete(self, request, pk, *args, **kwargs):
        vehicle = unlink_vehicle_device(pk, TrackingServerClient.from_settings())
        return JsonResponse({"success": True, "vehicle": vehicle_payload(vehicle)})


class TrackingServerStatusView(ApiView):
    def get(self, request, *args, **kwargs):
        status = TrackingServerClient.from_settings().check_connection()
        return JsonResponse({"success": True, **status})
