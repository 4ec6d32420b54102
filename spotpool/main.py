import argparse
import json
import logging
import signal
import sys
import threading
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from spotpool.aws.wrapper import AWSWrapper
from spotpool.common.logger import setup_logging
from spotpool.config import ALLOWED_INSTANCE_TYPES, Config, load_config, validate_config
from spotpool.exceptions import ConfigurationError, ProvisioningFailure
from spotpool.fleet.controller import FleetController
from spotpool.fleet.worker_group import WorkerGroup
from spotpool.loop import AlarmLoop
from spotpool.metrics.cloudwatch import MetricSampler
from spotpool.provision import stack
from spotpool.queue import get_queue_url, submit_task

EXIT_OK = 0
EXIT_PROVISIONING_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2


def build_aws_wrapper(config: Config) -> AWSWrapper:
    return AWSWrapper(
        sso_profile_name=config.sso_profile,
        region_name=config.region,
        request_timeout=config.request_timeout
    )


def build_controller(aws_wrapper: AWSWrapper, config: Config) -> FleetController:
    group = WorkerGroup(aws_wrapper, config.group_name, config.min_workers, config.max_workers)
    return FleetController(
        group,
        scale_up_cooldown=config.scale_up_cooldown,
        scale_down_cooldown=config.scale_down_cooldown,
        batch_size=config.rolling_batch_size,
        min_in_service=config.rolling_min_in_service,
        pause_time=config.rolling_pause_time,
        rolling_timeout=config.rolling_timeout
    )


def build_loop(aws_wrapper: AWSWrapper, config: Config) -> AlarmLoop:
    """Wire sampler, decider thresholds and controller into one control loop."""
    sampler = MetricSampler(aws_wrapper, config.queue_name, config.period)
    return AlarmLoop(
        sampler,
        build_controller(aws_wrapper, config),
        period=config.period,
        evaluation_periods=config.evaluation_periods,
        visible_threshold=config.visible_threshold,
        empty_receive_threshold=config.empty_receive_threshold
    )


def install_stop_handlers(stop_event: threading.Event):
    def handle_signal(signum, frame):
        logging.info(f"Received signal {signum}, stopping after the current tick")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def run_autoscaler(config: Config, aws_wrapper: AWSWrapper = None, stop_event: threading.Event = None,
                   max_ticks: int = None) -> AlarmLoop:
    """
    Run the control loop until stopped, then drain the worker group if configured.

    Args:
        config: Validated configuration
        aws_wrapper: Optional AWS wrapper (built from config when omitted)
        stop_event: Event that stops the loop; SIGINT/SIGTERM handlers are installed when omitted
        max_ticks: Optional tick limit

    Returns:
        AlarmLoop: The loop, after it stopped
    """
    aws_wrapper = aws_wrapper or build_aws_wrapper(config)
    loop = build_loop(aws_wrapper, config)
    group = loop.controller.group

    logging.info(f"Starting autoscaler for worker group {config.group_name} on queue {config.queue_name} "
                 f"({config.min_workers}-{config.max_workers} workers)")

    try:
        group.refresh()
    except (ClientError, BotoCoreError, LookupError) as e:
        # the loop re-reads the group before every change anyway
        logging.warning(f"Initial read of worker group {config.group_name} failed: {e}")

    if stop_event is None:
        stop_event = threading.Event()
        install_stop_handlers(stop_event)

    try:
        loop.run(stop_event, max_ticks=max_ticks)
    finally:
        if config.drain_on_shutdown:
            try:
                group.drain()
            except (ClientError, BotoCoreError) as e:
                logging.error(f"Error draining worker group {config.group_name}: {e}", exc_info=True)

    return loop


def rolling_update(config: Config, image_id: str = None, instance_type: str = None,
                   aws_wrapper: AWSWrapper = None) -> Dict[str, Any]:
    """
    Point the worker group at a new launch template version and replace its workers in batches.

    Raises:
        ConfigurationError: If neither an image nor an allowed instance type is given
        ProvisioningFailure: If any AWS call fails or replacements stall
    """
    if not image_id and not instance_type:
        raise ConfigurationError("A rolling update needs a new image id or instance type")
    if instance_type and instance_type not in ALLOWED_INSTANCE_TYPES:
        raise ConfigurationError(f"Unsupported instance type: {instance_type}")

    aws_wrapper = aws_wrapper or build_aws_wrapper(config)
    controller = build_controller(aws_wrapper, config)
    group = controller.group

    try:
        group.refresh()
        if not group.launch_template_id:
            raise ProvisioningFailure(f"Worker group {config.group_name} has no launch template",
                                      step='rolling_update')
        version = stack.new_template_version(aws_wrapper, config, group.launch_template_id,
                                             image_id=image_id, instance_type=instance_type)
        group.set_launch_template(group.launch_template_id, version)
    except (ClientError, BotoCoreError, LookupError) as e:
        raise ProvisioningFailure(f"Could not prepare rolling update: {e}", step='rolling_update') from e

    result = controller.rolling_update(version)
    return {'launch_template_version': version, 'replaced': result.replaced, 'batches': result.batches}


def submit(config: Config, body: str, delay_seconds: int = None, aws_wrapper: AWSWrapper = None) -> str:
    aws_wrapper = aws_wrapper or build_aws_wrapper(config)
    try:
        queue_url = get_queue_url(aws_wrapper, config.queue_name)
        if queue_url is None:
            raise ConfigurationError(f"Queue {config.queue_name} does not exist; run provision first")
        return submit_task(aws_wrapper, queue_url, body, delay_seconds)
    except (ClientError, BotoCoreError) as e:
        raise ProvisioningFailure(f"Could not submit task to {config.queue_name}: {e}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='spotpool',
        description='Spot worker pool that scales with the depth of its work queue.'
    )
    parser.add_argument('--stack-name', dest='stack_name', help='Prefix for every resource name')
    parser.add_argument('--group-name', dest='group_name', help='Worker Auto Scaling group name')
    parser.add_argument('--queue-name', dest='queue_name', help='Work queue name')
    parser.add_argument('--region', dest='region', help='AWS region')
    parser.add_argument('--profile', dest='sso_profile', help='AWS (SSO) profile name')
    parser.add_argument('--max-workers', dest='max_workers', type=int, help='Maximum number of workers')
    parser.add_argument('--log-level', dest='log_level', help='Log level (default: LOG_LEVEL or INFO)')

    subparsers = parser.add_subparsers(dest='command', required=True)

    run_parser = subparsers.add_parser('run', help='Run the autoscaling control loop')
    run_parser.add_argument('--no-drain', dest='drain_on_shutdown', action='store_false', default=None,
                            help='Leave workers running when the loop stops')

    provision_parser = subparsers.add_parser('provision', help='Create the queue, worker group and alarms')
    provision_parser.add_argument('--instance-type', dest='instance_type', choices=ALLOWED_INSTANCE_TYPES)
    provision_parser.add_argument('--spot-price', dest='spot_price', type=float)
    provision_parser.add_argument('--image-id', dest='image_id')
    provision_parser.add_argument('--key-name', dest='key_name')
    provision_parser.add_argument('--no-alarms', dest='enable_alarms', action='store_false', default=None,
                                  help='Skip the CloudWatch alarms and their scaling policies')

    subparsers.add_parser('teardown', help='Delete every resource of the worker pool')

    update_parser = subparsers.add_parser('rolling-update', help='Replace workers with a new image or type')
    update_parser.add_argument('--image-id', dest='new_image_id')
    update_parser.add_argument('--instance-type', dest='new_instance_type', choices=ALLOWED_INSTANCE_TYPES)

    submit_parser = subparsers.add_parser('submit', help='Enqueue a task for the workers')
    submit_parser.add_argument('body', help='Task message body')
    submit_parser.add_argument('--delay-seconds', dest='message_delay', type=int)

    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {field: value for field, value in vars(args).items() if field in Config._fields}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = validate_config(load_config(_overrides(args)))

        if args.command == 'run':
            run_autoscaler(config)
        elif args.command == 'provision':
            outputs = stack.provision(build_aws_wrapper(config), config)
            print(json.dumps(outputs, indent=2))
        elif args.command == 'teardown':
            stack.teardown(build_aws_wrapper(config), config)
        elif args.command == 'rolling-update':
            print(json.dumps(rolling_update(config, args.new_image_id, args.new_instance_type), indent=2))
        elif args.command == 'submit':
            print(submit(config, args.body, args.message_delay))
    except ConfigurationError as e:
        logging.error(f"Configuration error: {e}")
        return EXIT_CONFIGURATION_ERROR
    except ProvisioningFailure as e:
        logging.error(f"Provisioning failed: {e}")
        return EXIT_PROVISIONING_FAILURE

    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
