from prometheus_client import Counter, Histogram, generate_latest

requests_total = Counter("taskclient_requests_total", "Total API requests by outcome", ["method", "outcome"])
request_duration_seconds = Histogram(
    "taskclient_request_duration_seconds",
    "API request latency in seconds",
    ["method"],
)

parts_uploaded_total = Counter("taskclient_parts_uploaded_total", "Total file parts uploaded")
part_bytes_uploaded_total = Counter("taskclient_part_bytes_uploaded_total", "Total bytes sent in file parts")
part_upload_failures_total = Counter("taskclient_part_upload_failures_total", "Total failed part uploads")
files_uploaded_total = Counter("taskclient_files_uploaded_total", "Total files registered after upload")


def metrics_text() -> str:
    return generate_latest().decode("utf-8")
