import logging
from typing import List, NamedTuple, Optional

IN_SERVICE = 'InService'


class WorkerInstance(NamedTuple):
    instance_id: str
    lifecycle_state: str
    health_status: str
    launch_template_version: Optional[str]

    @property
    def in_service(self) -> bool:
        return self.lifecycle_state == IN_SERVICE


class WorkerGroup:
    """
    Local view of the worker Auto Scaling group.

    The group itself lives in AWS and can be changed by others (CloudWatch alarm
    policies, operators), so `refresh()` must be called before any decision that
    depends on the current desired capacity. The actual instance count is only
    ever observed, never set: it converges to the desired capacity on the Auto
    Scaling service's own schedule.
    """

    def __init__(self, aws_wrapper, group_name: str, min_size: int = 0, max_size: int = 50):
        self._aws_wrapper = aws_wrapper
        self._client = None
        self.group_name = group_name
        self.min_size = min_size
        self.max_size = max_size
        self.desired_capacity = min_size
        self.instances: List[WorkerInstance] = []
        self.launch_template_id: Optional[str] = None
        self.launch_template_version: Optional[str] = None
        self.last_scale_up_at: Optional[float] = None
        self.last_scale_down_at: Optional[float] = None

    def _autoscaling(self):
        if self._client is None:
            self._client = self._aws_wrapper.create_aws_client('autoscaling')
        return self._client

    @property
    def actual_size(self) -> int:
        return len(self.instances)

    @property
    def in_service_count(self) -> int:
        return sum(1 for instance in self.instances if instance.in_service)

    @property
    def settled(self) -> bool:
        """Every instance is in service and the group has reached its desired size."""
        return (all(instance.in_service for instance in self.instances)
                and self.actual_size >= self.desired_capacity)

    def clamp(self, capacity: int) -> int:
        bounded = max(self.min_size, min(self.max_size, capacity))
        if bounded != capacity:
            logging.debug(f"Capacity {capacity} clamped to {bounded} (bounds {self.min_size}-{self.max_size})")
        return bounded

    def refresh(self):
        """
        Re-read desired capacity, instances and launch template from the Auto Scaling service.

        Raises:
            LookupError: If the group does not exist
            botocore.exceptions.ClientError, BotoCoreError: On API failure or timeout
        """
        response = self._autoscaling().describe_auto_scaling_groups(AutoScalingGroupNames=[self.group_name])
        groups = response.get('AutoScalingGroups', [])
        if not groups:
            raise LookupError(f"Auto Scaling group {self.group_name} not found")

        group = groups[0]
        self.desired_capacity = self.clamp(group.get('DesiredCapacity', 0))

        template = group.get('LaunchTemplate') or {}
        self.launch_template_id = template.get('LaunchTemplateId')
        self.launch_template_version = template.get('Version')

        self.instances = [
            WorkerInstance(
                instance_id=instance['InstanceId'],
                lifecycle_state=instance.get('LifecycleState', ''),
                health_status=instance.get('HealthStatus', ''),
                launch_template_version=(instance.get('LaunchTemplate') or {}).get('Version'),
            )
            for instance in group.get('Instances', [])
        ]

        logging.info(f"Worker group {self.group_name} - desired: {self.desired_capacity}, "
                     f"actual: {self.actual_size}, in service: {self.in_service_count}")
        return self

    def set_desired_capacity(self, capacity: int) -> int:
        """
        Ask the Auto Scaling service for a new desired capacity (clamped to the bounds).

        The local desired capacity changes only after the call succeeds.
        """
        capacity = self.clamp(capacity)
        self._autoscaling().set_desired_capacity(
            AutoScalingGroupName=self.group_name,
            DesiredCapacity=capacity,
            HonorCooldown=False
        )
        logging.info(f"Set worker group {self.group_name} desired capacity to {capacity}")
        self.desired_capacity = capacity
        return capacity

    def set_launch_template(self, template_id: str, version: str):
        self._autoscaling().update_auto_scaling_group(
            AutoScalingGroupName=self.group_name,
            LaunchTemplate={'LaunchTemplateId': template_id, 'Version': str(version)}
        )
        logging.info(f"Worker group {self.group_name} now launches template {template_id} version {version}")
        self.launch_template_id = template_id
        self.launch_template_version = str(version)

    def terminate_instance(self, instance_id: str):
        """Terminate one worker; the group launches a replacement since desired capacity is kept."""
        self._autoscaling().terminate_instance_in_auto_scaling_group(
            InstanceId=instance_id,
            ShouldDecrementDesiredCapacity=False
        )
        logging.info(f"Terminating worker {instance_id} for replacement")

    def outdated_instances(self, version: str) -> List[WorkerInstance]:
        """In-service workers launched from a template version other than `version`."""
        return [instance for instance in self.instances
                if instance.in_service and instance.launch_template_version != str(version)]

    def record_scale(self, action_type: str, now: float):
        if action_type == 'up':
            self.last_scale_up_at = now
        elif action_type == 'down':
            self.last_scale_down_at = now

    def drain(self) -> int:
        """Force desired capacity down to the minimum size (shutdown)."""
        logging.info(f"Draining worker group {self.group_name} to {self.min_size} workers")
        return self.set_desired_capacity(self.min_size)
