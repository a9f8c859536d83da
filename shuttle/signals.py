"""
Change notifications for live consumers. All signals are sent after the
database transaction that produced the change has committed.
"""
from django.dispatch import Signal

# kwargs: snapshot
position_processed = Signal()
# kwargs: vehicle_id, stop_id, type ("enter" or "exit")
stop_visit_changed = Signal()
# kwargs: task, action ("pickup", "complete", ...), auto
task_advanced = Signal()
# kwargs: vehicle_id, status, previous_status
vehicle_status_changed = Signal()
