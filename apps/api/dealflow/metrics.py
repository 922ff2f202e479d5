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

crm_import_rows_total = Counter(
    "crm_import_rows_total",
    "Imported CSV rows by entity type and outcome",
    ["entity_type", "outcome"],
)

crm_import_field_errors_total = Counter(
    "crm_import_field_errors_total",
    "Field-level validation errors raised during CSV import",
    ["entity_type"],
)

crm_import_duration_seconds = Histogram(
    "crm_import_duration_seconds",
    "CSV import batch duration in seconds",
    ["entity_type"],
)

crm_export_rows_total = Counter(
    "crm_export_rows_total",
    "Exported CSV rows by entity type",
    ["entity_type"],
)

crm_promotions_total = Counter(
    "crm_promotions_total",
    "Lead promotions by outcome",
    ["outcome"],
)

crm_promotion_unmapped_fields_total = Counter(
    "crm_promotion_unmapped_fields_total",
    "Lead custom field values dropped during promotion because no investor field matched",
    ["field_name"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    # entity_type segments stay readable in labels
    return _PATH_PARAM_RE.sub(lambda match: match.group(0) if match.group(0) == "{entity_type}" else "{id}", path)


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
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_import_batch(entity_type: str, success_rows: int, failed_rows: int, field_errors: int, duration: float) -> None:
    if success_rows > 0:
        crm_import_rows_total.labels(entity_type=entity_type, outcome="success").inc(success_rows)
    if failed_rows > 0:
        crm_import_rows_total.labels(entity_type=entity_type, outcome="failed").inc(failed_rows)
    if field_errors > 0:
        crm_import_field_errors_total.labels(entity_type=entity_type).inc(field_errors)
    crm_import_duration_seconds.labels(entity_type=entity_type).observe(duration)


def observe_export_rows(entity_type: str, count: int) -> None:
    if count > 0:
        crm_export_rows_total.labels(entity_type=entity_type).inc(count)


def observe_promotion(outcome: str) -> None:
    crm_promotions_total.labels(outcome=outcome).inc()


def observe_promotion_unmapped_field(field_name: str) -> None:
    crm_promotion_unmapped_fields_total.labels(field_name=field_name).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
