from django.test import TestCase

from shuttle import dispatch
from shuttle.exceptions import (
    InvalidInput,
    InvalidTransition,
    NotFound,
    PendingCallExists,
    VehicleUnavailable,
)
from shuttle.models import Call, Task, Vehicle

from .helpers import make_stop, make_vehicle


class DispatchTestCase(TestCase):
    def setUp(self):
        self.pickup = make_stop("Lobby")
        self.dropoff = make_stop("Beach", lat=0.002)
        self.vehicle = make_vehicle()

    def assign(self, dropoff=None):
        call = dispatch.create_call(self.pickup.pk)
        return dispatch.assign_call(call.pk, self.vehicle.pk, dropoff.pk if dropoff else None)

    def reload(self, *objects):
        for obj in objects:
            obj.refresh_from_db()


class CallCreationTests(DispatchTestCase):
    def test_create_call(self):
        call = dispatch.create_call(self.pickup.pk)
        self.assertEqual(call.status, Call.PENDING)
        self.assertEqual(call.stop, self.pickup)

    def test_second_pending_call_at_stop_is_rejected(self):
        dispatch.create_call(self.pickup.pk)
        with self.assertRaises(PendingCallExists) as ctx:
            dispatch.create_call(self.pickup.pk)
        self.assertEqual(ctx.exception.status_code, 409)
        self.assertIn("already has a pending call", ctx.exception.detail)
        self.assertEqual(Call.objects.count(), 1)

    def test_new_call_allowed_once_previous_is_assigned(self):
        self.assign()
        call = dispatch.create_call(self.pickup.pk)
        self.assertEqual(call.status, Call.PENDING)

    def test_unknown_or_inactive_stop(self):
        with self.assertRaises(NotFound):
            dispatch.create_call(9999)
        closed = make_stop("Closed", is_active=False)
        with self.assertRaises(InvalidInput):
            dispatch.create_call(closed.pk)


class AssignmentTests(DispatchTestCase):
    def test_assign_flips_vehicle_to_busy(self):
        task = self.assign()
        self.reload(self.vehicle, task.call)

        self.assertEqual(task.status, Task.ASSIGNED)
        self.assertEqual(task.pickup_stop, self.pickup)
        self.assertEqual(self.vehicle.status, Vehicle.BUSY)
        self.assertEqual(task.call.status, Call.ASSIGNED)
        self.assertEqual(task.call.assigned_vehicle, self.vehicle)
        self.assertIsNotNone(task.call.assigned_at)

    def test_busy_vehicle_cannot_take_second_call(self):
        self.assign()
        other = dispatch.create_call(self.dropoff.pk)
        with self.assertRaises(VehicleUnavailable):
            dispatch.assign_call(other.pk, self.vehicle.pk)

    def test_offline_vehicle_is_rejected(self):
        offline = make_vehicle(status=Vehicle.OFFLINE)
        call = dispatch.create_call(self.pickup.pk)
        with self.assertRaises(VehicleUnavailable):
            dispatch.assign_call(call.pk, offline.pk)
        self.reload(call)
        self.assertEqual(call.status, Call.PENDING)

    def test_assigned_call_cannot_be_reassigned(self):
        task = self.assign()
        spare = make_vehicle()
        with self.assertRaises(InvalidTransition):
            dispatch.assign_call(task.call_id, spare.pk)

    def test_unknown_vehicle(self):
        call = dispatch.create_call(self.pickup.pk)
        with self.assertRaises(NotFound):
            dispatch.assign_call(call.pk, 9999)


class TaskTransitionTests(DispatchTestCase):
    def test_full_manual_flow(self):
        task = self.assign()
        dispatch.set_dropoff(task.pk, self.dropoff.pk)
        dispatch.pickup_task(task.pk)
        dispatch.dropoff_task(task.pk)
        task = dispatch.complete_task(task.pk)
        self.reload(self.vehicle, task.call)

        self.assertEqual(task.status, Task.COMPLETED)
        self.assertFalse(task.auto_completed)
        self.assertIsNotNone(task.pickup_at)
        self.assertIsNotNone(task.dropoff_at)
        self.assertEqual(task.call.status, Call.COMPLETED)
        self.assertEqual(self.vehicle.status, Vehicle.AVAILABLE)

    def test_dropoff_before_pickup_is_rejected(self):
        task = self.assign(dropoff=self.dropoff)
        with self.assertRaises(InvalidTransition):
            dispatch.dropoff_task(task.pk)
        self.reload(task)
        self.assertEqual(task.status, Task.ASSIGNED)

    def test_dropoff_needs_dropoff_stop(self):
        task = self.assign()
        dispatch.pickup_task(task.pk)
        with self.assertRaises(InvalidTransition):
            dispatch.dropoff_task(task.pk)

    def test_complete_from_assigned_is_rejected(self):
        task = self.assign()
        with self.assertRaises(InvalidTransition):
            dispatch.complete_task(task.pk)

    def test_completed_task_cannot_complete_again(self):
        task = self.assign()
        dispatch.pickup_task(task.pk)
        dispatch.complete_task(task.pk)
        with self.assertRaises(InvalidTransition):
            dispatch.complete_task(task.pk)
        with self.assertRaises(InvalidTransition):
            dispatch.cancel_task(task.pk)

    def test_pickup_twice_is_rejected(self):
        task = self.assign()
        dispatch.pickup_task(task.pk)
        with self.assertRaises(InvalidTransition):
            dispatch.pickup_task(task.pk)

    def test_set_dropoff_to_unknown_stop(self):
        task = self.assign()
        with self.assertRaises(NotFound):
            dispatch.set_dropoff(task.pk, 9999)


class CancellationTests(DispatchTestCase):
    def test_cancel_task_reverts_call_to_pending(self):
        task = self.assign()
        task = dispatch.cancel_task(task.pk)
        call = Call.objects.get(pk=task.call_id)
        self.reload(self.vehicle)

        self.assertEqual(task.status, Task.CANCELLED)
        self.assertEqual(call.status, Call.PENDING)
        self.assertIsNone(call.assigned_vehicle)
        self.assertEqual(self.vehicle.status, Vehicle.AVAILABLE)

        # The call can be dispatched again.
        retry = dispatch.assign_call(call.pk, self.vehicle.pk)
        self.assertEqual(retry.status, Task.ASSIGNED)

    def test_cancel_task_with_newer_pending_call(self):
        task = self.assign()
        newer = dispatch.create_call(self.pickup.pk)
        dispatch.cancel_task(task.pk)

        call = Call.objects.get(pk=task.call_id)
        self.assertEqual(call.status, Call.CANCELLED)
        self.assertTrue(call.cancel_reason)
        self.assertEqual(Call.objects.get(pk=newer.pk).status, Call.PENDING)

    def test_cancel_call_cascades_to_task(self):
        task = self.assign()
        call = dispatch.cancel_call(task.call_id, "Guest left")
        self.reload(task, self.vehicle)

        self.assertEqual(call.status, Call.CANCELLED)
        self.assertEqual(call.cancel_reason, "Guest left")
        self.assertEqual(task.status, Task.CANCELLED)
        self.assertEqual(self.vehicle.status, Vehicle.AVAILABLE)

    def test_withdraw_only_pending_calls(self):
        task = self.assign()
        with self.assertRaises(InvalidTransition):
            dispatch.cancel_call(task.call_id, pending_only=True)

        call = dispatch.create_call(self.dropoff.pk)
        self.assertEqual(dispatch.cancel_call(call.pk, pending_only=True).status, Call.CANCELLED)

    def test_cancelled_call_cannot_be_cancelled_again(self):
        call = dispatch.create_call(self.pickup.pk)
        dispatch.cancel_call(call.pk)
        with self.assertRaises(InvalidTransition):
            dispatch.cancel_call(call.pk)

    def test_complete_call_completes_task(self):
        task = self.assign()
        call = dispatch.complete_call(task.call_id)
        self.reload(task, self.vehicle)

        self.assertEqual(call.status, Call.COMPLETED)
        self.assertEqual(task.status, Task.COMPLETED)
        self.assertEqual(self.vehicle.status, Vehicle.AVAILABLE)

    def test_pending_call_cannot_be_completed(self):
        call = dispatch.create_call(self.pickup.pk)
        with self.assertRaises(InvalidTransition):
            dispatch.complete_call(call.pk)


class VehicleStatusTests(DispatchTestCase):
    def test_operator_status(self):
        vehicle = dispatch.set_vehicle_status(self.vehicle.pk, Vehicle.MAINTENANCE)
        self.assertEqual(vehicle.status, Vehicle.MAINTENANCE)

    def test_busy_is_not_an_operator_status(self):
        with self.assertRaises(InvalidInput):
            dispatch.set_vehicle_status(self.vehicle.pk, Vehicle.BUSY)

    def test_status_locked_while_task_active(self):
        self.assign()
        with self.assertRaises(InvalidTransition):
            dispatch.set_vehicle_status(self.vehicle.pk, Vehicle.AVAILABLE)

    def test_device_going_offline_survives_task_completion(self):
        task = self.assign()
        dispatch.pickup_task(task.pk)
        vehicle = Vehicle.objects.get(pk=self.vehicle.pk)
        self.assertEqual(dispatch.apply_device_status(vehicle, online=False), Vehicle.OFFLINE)

        dispatch.complete_task(task.pk)
        self.reload(self.vehicle)
        self.assertEqual(self.vehicle.status, Vehicle.OFFLINE)

    def test_device_online_only_lifts_offline(self):
        vehicle = make_vehicle(status=Vehicle.OFFLINE)
        self.assertEqual(dispatch.apply_device_status(vehicle, online=True), Vehicle.AVAILABLE)
        maintenance = make_vehicle(status=Vehicle.MAINTENANCE)
        self.assertEqual(dispatch.apply_device_status(maintenance, online=True), Vehicle.MAINTENANCE)
        self.assertTrue(maintenance.gps_signal)


class LiveStatisticsTests(DispatchTestCase):
    def test_counters(self):
        self.assign()
        dispatch.create_call(self.dropoff.pk)
        stats = dispatch.live_statistics()

        self.assertEqual(stats["today_calls"], 2)
        self.assertEqual(stats["pending_calls"], 1)
        self.assertEqual(stats["completed_calls"], 0)
        self.assertEqual(stats["active_tasks"], 1)
        self.assertEqual(stats["vehicles"][Vehicle.BUSY], 1)
        self.assertEqual(stats["vehicles"][Vehicle.OFFLINE], 0)
