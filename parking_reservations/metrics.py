"""
Prometheus metrics for the reservation engine

Metrics Categories:
- Reservations: attempts, conflicts, processing time
- Lifecycle: transitions by event and target status, expiries
- Reliability: storage conflict retries, notification and refund failures
"""
import time
from contextlib import contextmanager
from prometheus_client import (
    Counter, Histogram,
    CollectorRegistry, generate_latest
)

# Create custom registry (allows multiple instances for testing)
registry = CollectorRegistry()

# ============================================================
# Reservation Metrics
# ============================================================

reservation_attempts_total = Counter(
    'reservation_attempts_total',
    'Total reservation creation attempts',
    ['status'],  # created, conflict, rejected, error
    registry=registry
)

reservation_conflicts_total = Counter(
    'reservation_conflicts_total',
    'Total reservation requests refused for overlapping an active reservation',
    [],
    registry=registry
)

reservation_processing_duration_seconds = Histogram(
    'reservation_processing_duration_seconds',
    'Reservation creation duration',
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
    registry=registry
)

# ============================================================
# Lifecycle Metrics
# ============================================================

reservation_transitions_total = Counter(
    'reservation_transitions_total',
    'Committed reservation status transitions',
    ['event', 'to_status'],
    registry=registry
)

expired_reservations_total = Counter(
    'expired_reservations_total',
    'Reservations expired by the background job',
    [],
    registry=registry
)

# ============================================================
# Reliability Metrics
# ============================================================

storage_conflicts_total = Counter(
    'storage_conflicts_total',
    'Storage conflicts (transaction aborted by contention)',
    ['operation'],
    registry=registry
)

notification_failures_total = Counter(
    'notification_failures_total',
    'Notifications that could not be delivered to the sink',
    ['type'],
    registry=registry
)

refund_failures_total = Counter(
    'refund_failures_total',
    'Refunds the payment gateway did not complete',
    [],
    registry=registry
)

# ============================================================
# Helper Functions
# ============================================================

def track_reservation_attempt(status: str):
    """Track a reservation creation attempt"""
    reservation_attempts_total.labels(status=status).inc()
    if status == 'conflict':
        reservation_conflicts_total.inc()

@contextmanager
def time_reservation():
    """Time a reservation creation"""
    start = time.perf_counter()
    try:
        yield
    finally:
        reservation_processing_duration_seconds.observe(time.perf_counter() - start)

def track_transition(event: str, to_status: str):
    reservation_transitions_total.labels(event=event, to_status=to_status).inc()

def track_expired(count: int = 1):
    expired_reservations_total.inc(count)

def track_storage_conflict(operation: str):
    storage_conflicts_total.labels(operation=operation).inc()

def track_notification_failure(notification_type: str):
    notification_failures_total.labels(type=notification_type).inc()

def track_refund_failure():
    refund_failures_total.inc()

def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format"""
    return generate_latest(registry)