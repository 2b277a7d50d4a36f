"""CloudWatch Logs spans for the sandboxfs lifecycle.

Each build server writes to its own log stream (`<date>/<trace_id>`) inside
the group named by `cloudwatch_log_group` in .mountkeeperconfig. Needs boto3
(`pip install -e ".[aws]"`); without it, or without a log group, every call
here does nothing.

Spans:
    stage    launch, build, teardown with elapsed_ms
    sandbox  start, reuse, restart, crash with pid and mount_path

Follow one server in CloudWatch Insights:
    filter trace_id = "abc12345" | sort @timestamp asc
"""

import json
import threading
import time
from datetime import datetime, timezone

_client = None
_log_group = None
_log_stream = None
_lock = threading.Lock()


def init(log_group, log_stream):
    """Point span output at `log_group`/`log_stream`, creating both if needed."""
    global _client, _log_group, _log_stream
    if not log_group:
        return
    try:
        import boto3
    except ImportError:
        return
    _log_group, _log_stream = log_group, log_stream
    try:
        _client = boto3.client("logs")
        _create_destination()
    except Exception:
        _client = None


def enabled():
    return _client is not None


def emit(trace_id, span_type, name, elapsed_ms=None, **meta):
    """Send one span. Never raises: a tracing outage must not fail a build."""
    client = _client
    if client is None:
        return
    message = json.dumps(_span(trace_id, span_type, name, elapsed_ms, meta))
    with _lock:
        try:
            client.put_log_events(
                logGroupName=_log_group,
                logStreamName=_log_stream,
                logEvents=[{"timestamp": int(time.time() * 1000), "message": message}],
            )
        except Exception:
            pass


def _span(trace_id, span_type, name, elapsed_ms, meta):
    span = {
        "trace_id": trace_id,
        "span_type": span_type,
        "name": name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if elapsed_ms is not None:
        span["elapsed_ms"] = round(elapsed_ms)
    for key, value in meta.items():
        span[key] = str(value) if hasattr(value, "__fspath__") else value
    return span


def _create_destination():
    already_exists = _client.exceptions.ResourceAlreadyExistsException
    try:
        _client.create_log_group(logGroupName=_log_group)
    except already_exists:
        pass
    try:
        _client.create_log_stream(logGroupName=_log_group, logStreamName=_log_stream)
    except already_exists:
        pass
