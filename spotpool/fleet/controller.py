import logging
import time
from typing import Callable, NamedTuple

from botocore.exceptions import BotoCoreError, ClientError

from spotpool.exceptions import ProvisioningFailure
from spotpool.fleet.worker_group import WorkerGroup
from spotpool.scaler import ScalingAction, in_cooldown

ROLLING_POLL_INTERVAL = 15


class AppliedDelta(NamedTuple):
    """Capacity change actually requested from the Auto Scaling service."""
    delta: int
    previous: int
    current: int

    @classmethod
    def unchanged(cls, capacity: int) -> 'AppliedDelta':
        return cls(0, capacity, capacity)


class RollingUpdateResult(NamedTuple):
    replaced: int
    batches: int


class FleetController:
    """
    Applies scaling actions to a WorkerGroup, one worker at a time.

    Cooldowns are tracked per direction on the group. Desired capacity is
    re-read before every change, because CloudWatch alarms may resize the group
    out of band. A failed AWS call leaves the group's local state untouched so
    that the same action is retried on the next period.
    """

    def __init__(self, group: WorkerGroup, scale_up_cooldown: int = 60, scale_down_cooldown: int = 60,
                 batch_size: int = 10, min_in_service: int = 0, pause_time: int = 0,
                 rolling_timeout: int = 900, poll_interval: int = ROLLING_POLL_INTERVAL,
                 sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.monotonic):
        self.group = group
        self.scale_up_cooldown = scale_up_cooldown
        self.scale_down_cooldown = scale_down_cooldown
        self.batch_size = batch_size
        self.min_in_service = min_in_service
        self.pause_time = pause_time
        self.rolling_timeout = rolling_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def apply(self, action: ScalingAction, now: float) -> AppliedDelta:
        """
        Apply one scaling action.

        Args:
            action: Action chosen for this period
            now: Current epoch time, used for cooldowns

        Returns:
            AppliedDelta: The change requested; delta 0 when suppressed, clamped or NO_OP

        Raises:
            ProvisioningFailure: If the group could not be read or resized
        """
        if action is ScalingAction.NO_OP:
            return AppliedDelta.unchanged(self.group.desired_capacity)

        action_type = action.direction
        if action_type == 'up':
            last_time, cooldown = self.group.last_scale_up_at, self.scale_up_cooldown
        else:
            last_time, cooldown = self.group.last_scale_down_at, self.scale_down_cooldown

        if in_cooldown(action_type, last_time, now, cooldown):
            return AppliedDelta.unchanged(self.group.desired_capacity)

        try:
            self.group.refresh()
        except (ClientError, BotoCoreError, LookupError) as e:
            raise ProvisioningFailure(f"Could not read worker group {self.group.group_name}: {e}") from e

        current = self.group.desired_capacity
        target = self.group.clamp(current + action.value)
        if target == current:
            logging.info(f"Scale {action_type} not possible, worker group already at "
                         f"{'maximum' if action_type == 'up' else 'minimum'} ({current})")
            return AppliedDelta.unchanged(current)

        logging.info(f"Scaling {action_type} from {current} to {target} workers")
        try:
            self.group.set_desired_capacity(target)
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningFailure(
                f"Could not set desired capacity of {self.group.group_name} to {target}: {e}") from e

        self.group.record_scale(action_type, now)
        return AppliedDelta(target - current, current, target)

    def rolling_update(self, template_version) -> RollingUpdateResult:
        """
        Replace every in-service worker not running `template_version`.

        At most `batch_size` workers are taken out of service at once, and never
        so many that fewer than `min_in_service` remain in service; with the
        default of 0 the group may briefly have no in-service worker at all.
        After each batch the group must settle (every instance in service, actual
        size back at desired) before the next batch starts.

        Raises:
            ProvisioningFailure: On API failure or when replacements do not settle within `rolling_timeout`
        """
        version = str(template_version)
        terminated = set()
        batches = 0

        while True:
            self._refresh_for_update()
            # the group can report a terminated worker as in service for a moment
            outdated = [instance for instance in self.group.outdated_instances(version)
                        if instance.instance_id not in terminated]
            if not outdated:
                break

            take = min(self.batch_size, len(outdated))
            if self.min_in_service > 0:
                take = min(take, self.group.in_service_count - self.min_in_service)
            if take <= 0:
                logging.info(f"Waiting for {self.min_in_service} workers in service before replacing more")
                self._wait_until_settled()
                if self.group.in_service_count <= self.min_in_service:
                    raise ProvisioningFailure(
                        f"Rolling update cannot proceed: only {self.group.in_service_count} workers in service, "
                        f"{self.min_in_service} required", step='rolling_update')
                continue

            batch = outdated[:take]
            batches += 1
            logging.info(f"Rolling update batch {batches}: replacing {len(batch)} of {len(outdated)} "
                         f"outdated workers")
            for instance in batch:
                try:
                    self.group.terminate_instance(instance.instance_id)
                except (ClientError, BotoCoreError) as e:
                    raise ProvisioningFailure(
                        f"Could not terminate worker {instance.instance_id}: {e}", step='rolling_update') from e
                terminated.add(instance.instance_id)

            self._wait_until_settled(terminated)
            if self.pause_time:
                self._sleep(self.pause_time)

        logging.info(f"Rolling update to version {version} complete: {len(terminated)} workers "
                     f"in {batches} batches")
        return RollingUpdateResult(len(terminated), batches)

    def _refresh_for_update(self):
        try:
            self.group.refresh()
        except (ClientError, BotoCoreError, LookupError) as e:
            raise ProvisioningFailure(f"Could not read worker group {self.group.group_name}: {e}",
                                      step='rolling_update') from e

    def _wait_until_settled(self, terminated=frozenset()):
        deadline = self._clock() + self.rolling_timeout
        while True:
            self._refresh_for_update()
            leaving = [instance for instance in self.group.instances if instance.instance_id in terminated]
            if self.group.settled and not leaving:
                return
            if self._clock() >= deadline:
                raise ProvisioningFailure(
                    f"Worker group {self.group.group_name} did not settle within {self.rolling_timeout}s "
                    f"(desired {self.group.desired_capacity}, in service {self.group.in_service_count}, "
                    f"actual {self.group.actual_size})", step='rolling_update')
            self._sleep(self.poll_interval)
