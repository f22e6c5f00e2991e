import json
import logging

from opentelemetry import trace

request_logger = logging.getLogger("taskclient.request")
if not request_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    request_logger.addHandler(handler)
request_logger.setLevel(logging.INFO)
upload_logger = logging.getLogger("taskclient.upload")
if not upload_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    upload_logger.addHandler(handler)
upload_logger.setLevel(logging.INFO)


def log_event(payload: dict) -> None:
    payload.setdefault("trace_id", trace_id())
    request_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def upload_event(payload: dict) -> None:
    payload.setdefault("trace_id", trace_id())
    upload_logger.info(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def trace_id() -> str | None:
    span_context = trace.get_current_span().get_span_context()
    if not span_context or not span_context.is_valid:
        return None
    return format(span_context.trace_id, "032x")
