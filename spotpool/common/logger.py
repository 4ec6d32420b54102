import os
import logging
import json

# Attributes every LogRecord carries; anything else was passed through `extra=`
_RESERVED_ATTRS = frozenset({
    'args', 'asctime', 'created', 'exc_info', 'exc_text', 'filename',
    'funcName', 'id', 'levelname', 'levelno', 'lineno', 'module',
    'msecs', 'message', 'msg', 'name', 'pathname', 'process',
    'processName', 'relativeCreated', 'stack_info', 'thread', 'threadName',
    'taskName'
})


def use_json_logs() -> bool:
    """JSON logs inside AWS (EC2/ECS/Lambda execution env) or when LOG_FORMAT=json."""
    if os.environ.get('LOG_FORMAT', '').lower() == 'json':
        return True
    return os.environ.get('AWS_EXECUTION_ENV') is not None


def setup_logging(level=None, json_format=None):
    """
    Configure the root logger for the autoscaler process.

    Args:
        level: Optional log level name override (default: LOG_LEVEL env var or INFO)
        json_format: Force JSON (True) or plain (False) output; None decides from the environment
    """
    if level is None:
        level = os.environ.get('LOG_LEVEL', 'INFO')

    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s [%(levelname)s] %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logging.getLogger().setLevel(numeric_level)

    if json_format is None:
        json_format = use_json_logs()

    if json_format:
        for handler in logging.getLogger().handlers:
            handler.setFormatter(JsonFormatter(datefmt='%Y-%m-%dT%H:%M:%S'))

    # boto chatter drowns the per-tick scaling lines
    for noisy in ('boto3', 'botocore', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.debug(f"Logging initialized at {logging.getLevelName(numeric_level)}")


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line, so CloudWatch Logs Insights can query tick fields
    (action, desired capacity, stale samples) directly.
    """

    def format(self, record):
        log_record = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'name': record.name,
            'message': record.getMessage(),
            'file': record.pathname,
            'line': record.lineno,
            'function': record.funcName
        }

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_record[key] = value

        return json.dumps(log_record, default=str)
