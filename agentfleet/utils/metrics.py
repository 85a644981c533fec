"""
Prometheus metrics for observability
Exposes metrics for HTTP requests, host capacity, tenant lifecycle and task watchdogs
"""
from prometheus_client import Counter, Gauge, Histogram, generate_latest

# Prometheus content type
CONTENT_TYPE_LATEST = 'text/plain; version=0.0.4; charset=utf-8'

# HTTP Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

http_errors_total = Counter(
    'http_errors_total',
    'Total number of HTTP errors (5xx)',
    ['method', 'endpoint']
)

# Capacity Metrics
host_ram_booked_mb = Gauge(
    'host_ram_booked_mb',
    'Booked RAM per worker host in MB',
    ['host_id']
)

host_ram_total_mb = Gauge(
    'host_ram_total_mb',
    'Declared RAM per worker host in MB',
    ['host_id']
)

capacity_reservations_total = Counter(
    'capacity_reservations_total',
    'Capacity reservation attempts by outcome',
    ['outcome']
)

hosts_created_total = Counter(
    'hosts_created_total',
    'Worker hosts ordered from the cloud provider',
    ['outcome']
)

# Lifecycle Metrics
containers_slept_total = Counter(
    'containers_slept_total',
    'Containers put to sleep by the idle sweep'
)

wake_requests_total = Counter(
    'wake_requests_total',
    'Wake requests by outcome',
    ['outcome']
)

grace_transitions_total = Counter(
    'grace_transitions_total',
    'Grace period stage transitions',
    ['stage']
)

watchdog_decisions_total = Counter(
    'watchdog_decisions_total',
    'Runaway task watchdog decisions',
    ['action']
)

monitored_tasks = Gauge(
    'monitored_tasks',
    'Number of tasks with a running watchdog in this process'
)

sweep_duration_seconds = Histogram(
    'sweep_duration_seconds',
    'Duration of periodic sweeps in seconds',
    ['job'],
    buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0]
)


def get_metrics():
    """Get Prometheus metrics in text format"""
    return generate_latest()


def record_http_request(method: str, endpoint: str, status_code: int, duration: float):
    """Record HTTP request metrics"""
    http_requests_total.labels(method=method, endpoint=endpoint, status_code=status_code).inc()
    http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

    if status_code >= 500:
        http_errors_total.labels(method=method, endpoint=endpoint).inc()


def update_host_ram(host_id: str, booked: int, total: int):
    """Update booked/declared RAM for a host"""
    host_ram_booked_mb.labels(host_id=host_id).set(booked)
    host_ram_total_mb.labels(host_id=host_id).set(total)


def remove_host_ram(host_id: str):
    for gauge in (host_ram_booked_mb, host_ram_total_mb):
        try:
            gauge.remove(host_id)
        except KeyError:
            pass


def record_reservation(outcome: str):
    capacity_reservations_total.labels(outcome=outcome).inc()


def record_host_created(outcome: str):
    hosts_created_total.labels(outcome=outcome).inc()


def record_sleep():
    containers_slept_total.inc()


def record_wake(outcome: str):
    wake_requests_total.labels(outcome=outcome).inc()


def record_grace_transition(stage: str):
    grace_transitions_total.labels(stage=stage).inc()


def record_watchdog_decision(action: str):
    watchdog_decisions_total.labels(action=action).inc()


def update_monitored_tasks(count: int):
    monitored_tasks.set(count)


def record_sweep_duration(job: str, duration: float):
    sweep_duration_seconds.labels(job=job).observe(duration)
