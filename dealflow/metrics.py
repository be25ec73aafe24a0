from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_deal_stage_transitions_total = Counter(
    "crm_deal_stage_transitions_total",
    "Total deal stage transitions by target stage type",
    ["stage_type"],
)

crm_deal_value_recalculations_total = Counter(
    "crm_deal_value_recalculations_total",
    "Total deal value recalculations",
)

crm_lifecycle_progressions_total = Counter(
    "crm_lifecycle_progressions_total",
    "Total contact lifecycle progressions by outcome",
    ["outcome"],
)

crm_activity_append_failures_total = Counter(
    "crm_activity_append_failures_total",
    "Total activity log append failures by activity type",
    ["activity_type"],
)

crm_forecast_duration_seconds = Histogram(
    "crm_forecast_duration_seconds",
    "Forecast generation duration in seconds",
    ["period"],
)

crm_rotten_deals_detected_total = Counter(
    "crm_rotten_deals_detected_total",
    "Total rotten deals found by sweeps",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_transition(stage_type: str) -> None:
    crm_deal_stage_transitions_total.labels(stage_type=stage_type).inc()


def observe_value_recalculation() -> None:
    crm_deal_value_recalculations_total.inc()


def observe_lifecycle_progression(outcome: str) -> None:
    crm_lifecycle_progressions_total.labels(outcome=outcome).inc()


def observe_activity_append_failure(activity_type: str) -> None:
    crm_activity_append_failures_total.labels(activity_type=activity_type).inc()


def observe_forecast(period: str, duration: float) -> None:
    crm_forecast_duration_seconds.labels(period=period).observe(duration)


def observe_rotten_deals(count: int) -> None:
    if count > 0:
        crm_rotten_deals_detected_total.inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
