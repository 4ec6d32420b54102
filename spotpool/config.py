import os
from typing import Dict, Any, Optional, NamedTuple

from spotpool.exceptions import ConfigurationError

ALLOWED_INSTANCE_TYPES = (
    'm1.small',
    'm1.medium',
    'm1.large',
    'm1.xlarge',
    'm2.xlarge',
    'm2.2xlarge',
    'm2.4xlarge',
    'c1.medium',
    'c1.xlarge',
)


class Config(NamedTuple):
    """Configuration for the worker pool and its autoscaler."""
    # Naming
    stack_name: str
    group_name: str
    queue_name: str

    # Worker launch configuration
    instance_type: str
    spot_price: float
    image_id: str
    key_name: Optional[str]
    ssh_cidr: Optional[str]
    min_workers: int
    max_workers: int

    # Queue configuration
    visibility_timeout: int
    message_retention: int
    delay_seconds: int
    receive_wait_seconds: int

    # Scaling rules
    period: int
    evaluation_periods: int
    visible_threshold: int
    empty_receive_threshold: int
    scale_up_cooldown: int
    scale_down_cooldown: int

    # Rolling update policy
    rolling_batch_size: int
    rolling_min_in_service: int
    rolling_pause_time: int
    rolling_timeout: int

    # Worker permissions and bootstrap
    artifact_bucket: str
    results_bucket: str
    iam_path: str
    queue_name_file: str
    work_dir: str
    work_dir_owner: str
    worker_service: str

    # Behaviour switches
    enable_alarms: bool
    drain_on_shutdown: bool

    # AWS configuration
    region: str
    sso_profile: Optional[str]
    request_timeout: float


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('true', '1', 't', 'yes')


def load_config(overrides: Dict[str, Any] = None) -> Config:
    """
    Load configuration from environment variables and an optional overrides mapping.

    Override values (typically command line arguments) win over environment
    variables when present and not None.

    Args:
        overrides: Optional mapping of Config field names to values

    Returns:
        Config: Configuration object; call validate_config before using it

    Raises:
        ConfigurationError: If a numeric setting cannot be parsed
    """
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    def get(field, env_var, default=None):
        if field in overrides:
            return overrides[field]
        return os.environ.get(env_var, default)

    def get_number(cast, field, env_var, default):
        raw = get(field, env_var, default)
        try:
            return cast(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{env_var} must be a number, got {raw!r}")

    stack_name = get('stack_name', 'STACK_NAME', 'spotpool')

    return Config(
        stack_name=stack_name,
        group_name=get('group_name', 'WORKER_GROUP_NAME', f"{stack_name}-workers"),
        queue_name=get('queue_name', 'QUEUE_NAME', f"{stack_name}-input"),
        instance_type=get('instance_type', 'INSTANCE_TYPE', 'm1.xlarge'),
        spot_price=get_number(float, 'spot_price', 'SPOT_PRICE', '0.2'),
        image_id=get('image_id', 'IMAGE_ID', 'ami-c2f194f2'),
        key_name=get('key_name', 'KEY_NAME'),
        ssh_cidr=get('ssh_cidr', 'SSH_CIDR'),
        min_workers=get_number(int, 'min_workers', 'MIN_WORKERS', '0'),
        max_workers=get_number(int, 'max_workers', 'MAX_WORKERS', '50'),
        visibility_timeout=get_number(int, 'visibility_timeout', 'QUEUE_VISIBILITY_TIMEOUT', '1800'),
        message_retention=get_number(int, 'message_retention', 'QUEUE_MESSAGE_RETENTION', '345600'),
        delay_seconds=get_number(int, 'delay_seconds', 'QUEUE_DELAY_SECONDS', '15'),
        receive_wait_seconds=get_number(int, 'receive_wait_seconds', 'QUEUE_RECEIVE_WAIT_SECONDS', '20'),
        period=get_number(int, 'period', 'EVALUATION_PERIOD', '60'),
        evaluation_periods=get_number(int, 'evaluation_periods', 'EVALUATION_PERIODS', '5'),
        visible_threshold=get_number(int, 'visible_threshold', 'VISIBLE_MESSAGES_THRESHOLD', '0'),
        empty_receive_threshold=get_number(int, 'empty_receive_threshold', 'EMPTY_RECEIVES_THRESHOLD', '10'),
        scale_up_cooldown=get_number(int, 'scale_up_cooldown', 'SCALE_UP_COOLDOWN', '60'),
        scale_down_cooldown=get_number(int, 'scale_down_cooldown', 'SCALE_DOWN_COOLDOWN', '60'),
        rolling_batch_size=get_number(int, 'rolling_batch_size', 'ROLLING_BATCH_SIZE', '10'),
        rolling_min_in_service=get_number(int, 'rolling_min_in_service', 'ROLLING_MIN_IN_SERVICE', '0'),
        rolling_pause_time=get_number(int, 'rolling_pause_time', 'ROLLING_PAUSE_TIME', '0'),
        rolling_timeout=get_number(int, 'rolling_timeout', 'ROLLING_TIMEOUT', '900'),
        artifact_bucket=get('artifact_bucket', 'ARTIFACT_BUCKET', 'telemetry-published-v1'),
        results_bucket=get('results_bucket', 'RESULTS_BUCKET', f"{stack_name}-results"),
        iam_path=get('iam_path', 'IAM_PATH', f"/{stack_name}/"),
        queue_name_file=get('queue_name_file', 'QUEUE_NAME_FILE', '/etc/spotpool-input-queue'),
        work_dir=get('work_dir', 'WORK_DIR', '/mnt/work'),
        work_dir_owner=get('work_dir_owner', 'WORK_DIR_OWNER', 'ubuntu'),
        worker_service=get('worker_service', 'WORKER_SERVICE', 'spotpool-worker'),
        enable_alarms=_parse_bool(get('enable_alarms', 'ENABLE_ALARMS', 'true')),
        drain_on_shutdown=_parse_bool(get('drain_on_shutdown', 'DRAIN_ON_SHUTDOWN', 'true')),
        region=get('region', 'AWS_REGION', 'us-east-1'),
        sso_profile=get('sso_profile', 'SSO_PROFILE'),
        request_timeout=get_number(float, 'request_timeout', 'REQUEST_TIMEOUT', '10'),
    )


def validate_config(config: Config) -> Config:
    """
    Check bounds and allow-lists. Any violation is fatal: the loop must not start.

    Raises:
        ConfigurationError: On the first invalid setting found
    """
    if config.instance_type not in ALLOWED_INSTANCE_TYPES:
        raise ConfigurationError(
            f"Unsupported instance type: {config.instance_type}. "
            f"Allowed types: {', '.join(ALLOWED_INSTANCE_TYPES)}")
    if config.spot_price <= 0:
        raise ConfigurationError(f"Spot price must be positive, got {config.spot_price}")
    if config.min_workers < 0:
        raise ConfigurationError(f"Minimum worker count must be >= 0, got {config.min_workers}")
    if config.max_workers < 0:
        raise ConfigurationError(f"Maximum worker count must be >= 0, got {config.max_workers}")
    if config.min_workers > config.max_workers:
        raise ConfigurationError(
            f"Minimum worker count ({config.min_workers}) exceeds maximum ({config.max_workers})")
    if not config.image_id:
        raise ConfigurationError("IMAGE_ID must be configured")
    if not config.group_name or not config.queue_name:
        raise ConfigurationError("WORKER_GROUP_NAME and QUEUE_NAME must be configured")

    if not 0 <= config.visibility_timeout <= 43200:
        raise ConfigurationError(f"Queue visibility timeout must be 0-43200s, got {config.visibility_timeout}")
    if not 60 <= config.message_retention <= 1209600:
        raise ConfigurationError(f"Queue retention must be 60-1209600s, got {config.message_retention}")
    if not 0 <= config.delay_seconds <= 900:
        raise ConfigurationError(f"Queue delay must be 0-900s, got {config.delay_seconds}")
    if not 0 <= config.receive_wait_seconds <= 20:
        raise ConfigurationError(f"Queue receive wait must be 0-20s, got {config.receive_wait_seconds}")

    if config.period <= 0:
        raise ConfigurationError(f"Evaluation period must be positive, got {config.period}")
    if config.evaluation_periods < 1:
        raise ConfigurationError(f"Evaluation periods must be >= 1, got {config.evaluation_periods}")
    if config.visible_threshold < 0 or config.empty_receive_threshold < 0:
        raise ConfigurationError("Scaling thresholds must be >= 0")
    if config.scale_up_cooldown < 0 or config.scale_down_cooldown < 0:
        raise ConfigurationError("Cooldowns must be >= 0")

    if config.rolling_batch_size < 1:
        raise ConfigurationError(f"Rolling update batch size must be >= 1, got {config.rolling_batch_size}")
    if not 0 <= config.rolling_min_in_service <= config.max_workers:
        raise ConfigurationError(
            f"Rolling update minimum in service must be 0-{config.max_workers}, "
            f"got {config.rolling_min_in_service}")
    if config.rolling_pause_time < 0 or config.rolling_timeout <= 0:
        raise ConfigurationError("Rolling update pause must be >= 0 and timeout positive")

    if config.request_timeout <= 0:
        raise ConfigurationError(f"Request timeout must be positive, got {config.request_timeout}")

    return config
