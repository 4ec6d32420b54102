"""
Ordered construction of the worker pool's cloud resources.

Every resource depends only on resources created before it, so the stack is an
explicit list of steps run front to back: queue, security group, role, instance
profile, launch template, worker group, scaling policies, alarms. Each step reads
what it needs from the outputs of earlier steps and adds its own outputs.
Teardown runs the same list back to front, skipping resources that are already gone.
"""
import json
import logging
import time
from typing import Any, Callable, Dict, List, NamedTuple

from botocore.exceptions import BotoCoreError, ClientError
from spotpool.aws.wrapper import retry_on_throttling
from spotpool.config import Config
from spotpool.exceptions import ProvisioningFailure
from spotpool.provision.documents import (
    EC2_ASSUME_ROLE_POLICY, encode_user_data, render_user_data, worker_role_policies
)
from spotpool import queue

NOT_FOUND_CODES = {
    'NoSuchEntity',
    'InvalidGroup.NotFound',
    'InvalidLaunchTemplateName.NotFoundException',
    'AWS.SimpleQueueService.NonExistentQueue',
    'QueueDoesNotExist',
    'ResourceNotFound',
}
GROUP_DELETE_POLL_INTERVAL = 15


class Step(NamedTuple):
    name: str
    create: Callable[[Any, Config, Dict[str, Any]], Dict[str, Any]]
    delete: Callable[[Any, Config], None]
    # False when the step only applies with CloudWatch alarms enabled
    always: bool = True


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def _ignore_missing(error: ClientError, what: str):
    if _error_code(error) in NOT_FOUND_CODES:
        logging.info(f"{what} already gone")
        return
    raise error


def resource_names(config: Config) -> Dict[str, str]:
    prefix = config.stack_name
    return {
        'security_group': f"{prefix}-workers",
        'role': f"{prefix}-worker",
        'instance_profile': f"{prefix}-worker",
        'launch_template': f"{prefix}-worker",
        'scale_up_policy': f"{prefix}-scale-up",
        'scale_down_policy': f"{prefix}-scale-down",
        'messages_available_alarm': f"{prefix}-messages-available",
        'not_enough_messages_alarm': f"{prefix}-not-enough-messages",
    }


# Input queue to which tasks are posted

@retry_on_throttling()
def create_queue(aws_wrapper, config: Config, outputs: Dict[str, Any]) -> Dict[str, Any]:
    queue_url = queue.create_queue(aws_wrapper, config.queue_name, {
        'DelaySeconds': config.delay_seconds,
        'MessageRetentionPeriod': config.message_retention,
        'ReceiveMessageWaitTimeSeconds': config.receive_wait_seconds,
        'VisibilityTimeout': config.visibility_timeout,
    })
    return {
        'queue_name': config.queue_name,
        'queue_url': queue_url,
        'queue_arn': queue.get_queue_arn(aws_wrapper, queue_url),
    }


def delete_queue(aws_wrapper, config: Config):
    queue_url = queue.get_queue_url(aws_wrapper, config.queue_name)
    if queue_url is None:
        logging.info(f"Queue {config.queue_name} already gone")
        return
    try:
        aws_wrapper.create_aws_client('sqs').delete_queue(QueueUrl=queue_url)
    except ClientError as e:
        _ignore_missing(e, f"Queue {config.queue_name}")


# Security group for workers, no ingress unless SSH is explicitly allowed

def _find_security_group(ec2_client, group_name: str):
    response = ec2_client.describe_security_groups(Filters=[{'Name': 'group-name', 'Values': [group_name]}])
    groups = response.get('SecurityGroups', [])
    return groups[0]['GroupId'] if groups else None


@retry_on_throttling()
def create_security_group(aws_wrapper, config: Config, outputs: Dict[str, Any]) -> Dict[str, Any]:
    ec2_client = aws_wrapper.create_aws_client('ec2')
    group_name = resource_names(config)['security_group']

    group_id = _find_security_group(ec2_client, group_name)
    if group_id is None:
        group_id = ec2_client.create_security_group(
            GroupName=group_name,
            Description=f"{config.stack_name} worker security group"
        )['GroupId']

    # applied on every run, the group may exist from a run that failed before this point
    if config.ssh_cidr:
        try:
            ec2_client.authorize_security_group_ingress(
                GroupId=group_id,
                IpPermissions=[{
                    'IpProtocol': 'tcp', 'FromPort': 22, 'ToPort': 22,
                    'IpRanges': [{'CidrIp': config.ssh_cidr}],
                }]
            )
        except ClientError as e:
            if _error_code(e) != 'InvalidPermission.Duplicate':
                raise
            logging.info(f"SSH ingress from {config.ssh_cidr} already allowed on {group_name}")

    return {'security_group_id': group_id}


def delete_security_group(aws_wrapper, config: Config):
    ec2_client = aws_wrapper.create_aws_client('ec2')
    group_id = _find_security_group(ec2_client, resource_names(config)['security_group'])
    if group_id is None:
        logging.info("Worker security group already gone")
        return
    try:
        ec2_client.delete_security_group(GroupId=group_id)
    except ClientError as e:
        _ignore_missing(e, "Worker security group")


# IAM role for workers

@retry_on_throttling()
def create_role(aws_wrapper, config: Config, outputs: Dict[str, Any]) -> Dict[str, Any]:
    iam_client = aws_wrapper.create_aws_client('iam')
    role_name = resource_names(config)['role']

    try:
        role = iam_client.create_role(
            RoleName=role_name,
            Path=config.iam_path,
            AssumeRolePolicyDocument=json.dumps(EC2_ASSUME_ROLE_POLICY)
        )['Role']
    except ClientError as e:
        if _error_code(e) != 'EntityAlreadyExists':
            raise
        role = iam_client.get_role(RoleName=role_name)['Role']

    # put_role_policy overwrites, so re-running brings policies up to date
    for policy_name, document in worker_role_policies(config, outputs['queue_arn']).items():
        iam_client.put_role_policy(RoleName=role_name, PolicyName=policy_name, PolicyDocument=document)

    return {'role_name': role_name, 'role_arn': role['Arn']}


def delete_role(aws_wrapper, config: Config):
    iam_client = aws_wrapper.create_aws_client('iam')
    role_name = resource_names(config)['role']
    try:
        for policy_name in iam_client.list_role_policies(RoleName=role_name).get('PolicyNames', []):
            iam_client.delete_role_policy(RoleName=role_name, PolicyName=policy_name)
        iam_client.delete_role(RoleName=role_name)
    except ClientError as e:
        _ignore_missing(e, f"Role {role_name}")


# Instance profile granting the role to workers

@retry_on_throttling()
def create_instance_profile(aws_wrapper, config: Config, outputs: Dict[str, Any]) -> Dict[str, Any]:
    iam_client = aws_wrapper.create_aws_client('iam')
    profile_name = resource_names(config)['instance_profile']

    try:
        profile = iam_client.create_instance_profile(
            InstanceProfileName=profile_name,
            Path=config.iam_path
        )['InstanceProfile']
    except ClientError as e:
        if _error_code(e) != 'EntityAlreadyExists':
            raise
        profile = iam_client.get_instance_profile(InstanceProfileName=profile_name)['InstanceProfile']

    if not any(role['RoleName'] == outputs['role_name'] for role in profile.get('Roles', [])):
        iam_client.add_role_to_instance_profile(InstanceProfileName=profile_name, RoleName=outputs['role_name'])

    return {'instance_profile_name': profile_name, 'instance_profile_arn': profile['Arn']}


def delete_instance_profile(aws_wrapper, config: Config):
    iam_client = aws_wrapper.create_aws_client('iam')
    names = resource_names(config)
    try:
        iam_client.remove_role_from_instance_profile(
            InstanceProfileName=names['instance_profile'], RoleName=names['role'])
    except ClientError as e:
        _ignore_missing(e, "Role in instance profile")
    try:
        iam_client.delete_instance_profile(InstanceProfileName=names['instance_profile'])
    except ClientError as e:
        _ignore_missing(e, f"Instance profile {names['instance_profile']}")


# Launch template, decides how a spot worker is launched

def launch_template_data(config: Config, outputs: Dict[str, Any]) -> Dict[str, Any]:
    data = {
        'ImageId': config.image_id,
        'InstanceType': config.instance_type,
        'IamInstanceProfile': {'Arn': outputs['instance_profile_arn']},
        'SecurityGroupIds': [outputs['security_group_id']],
        'InstanceMarketOptions': {
            'MarketType': 'spot',
            'SpotOptions': {'MaxPrice': str(config.spot_price)},
        },
        'UserData': encode_user_data(render_user_data(config, outputs['queue_name'])),
    }
    if config.key_name:
        data['KeyName'] = config.key_name
    return data


@retry_on_throttling(delay=5, backoff=2)
def create_launch_template(aws_wrapper, config: Config, outputs: Dict[str, Any]) -> Dict[str, Any]:
    ec2_client = aws_wrapper.create_aws_client('ec2')
    template_name = resource_names(config)['launch_template']

    try:
        template = ec2_client.create_launch_template(
            LaunchTemplateName=template_name,
            LaunchTemplateData=launch_template_data(config, outputs)
        )['LaunchTemplate']
        version = template['LatestVersionNumber']
    except ClientError as e:
        if _error_code(e) != 'InvalidLaunchTemplateName.AlreadyExistsException':
            raise
        template = ec2_client.describe_launch_templates(LaunchTemplateNames=[template_name])['LaunchTemplates'][0]
        version = template['LatestVersionNumber']

    return {'launch_template_id': template['LaunchTemplateId'], 'launch_template_version': str(version)}


def delete_launch_template(aws_wrapper, config: Config):
    template_name = resource_names(config)['launch_template']
    try:
        aws_wrapper.create_aws_client('ec2').delete_launch_template(LaunchTemplateName=template_name)
    except ClientError as e:
        _ignore_missing(e, f"Launch template {template_name}")


# Auto Scaling group for workers, resized by the control loop and the alarm policies

@retry_on_throttling(delay=10, backoff=2)
def create_group(aws_wrapper, config: Config, outputs: Dict[str, Any]) -> Dict[str, Any]:
    autoscaling_client = aws_wrapper.create_aws_client('autoscaling')
    ec2_client = aws_wrapper.create_aws_client('ec2')

    zones = [zone['ZoneName'] for zone in ec2_client.describe_availability_zones(
        Filters=[{'Name': 'state', 'Values': ['available']}])['AvailabilityZones']]

    existing = autoscaling_client.describe_auto_scaling_groups(
        AutoScalingGroupNames=[config.group_name]).get('AutoScalingGroups', [])
    if existing:
        # keep the live desired capacity, it belongs to the control loop
        autoscaling_client.update_auto_scaling_group(
            AutoScalingGroupName=config.group_name,
            MinSize=config.min_workers,
            MaxSize=config.max_workers
        )
    else:
        autoscaling_client.create_auto_scaling_group(
            AutoScalingGroupName=config.group_name,
            LaunchTemplate={
                'LaunchTemplateId': outputs['launch_template_id'],
                'Version': outputs['launch_template_version'],
            },
            MinSize=config.min_workers,
            MaxSize=config.max_workers,
            DesiredCapacity=config.min_workers,
            AvailabilityZones=zones
        )

    return {'group_name': config.group_name}


def delete_group(aws_wrapper, config: Config):
    autoscaling_client = aws_wrapper.create_aws_client('autoscaling')
    try:
        autoscaling_client.delete_auto_scaling_group(AutoScalingGroupName=config.group_name, ForceDelete=True)
    except ClientError as e:
        if _error_code(e) == 'ValidationError':
            logging.info(f"Worker group {config.group_name} already gone")
            return
        raise

    # the security group cannot be deleted while workers still use it
    deadline = time.monotonic() + config.rolling_timeout
    while autoscaling_client.describe_auto_scaling_groups(
            AutoScalingGroupNames=[config.group_name]).get('AutoScalingGroups'):
        if time.monotonic() >= deadline:
            raise ProvisioningFailure(f"Worker group {config.group_name} still deleting after "
                                      f"{config.rolling_timeout}s", step='group')
        logging.info(f"Waiting for worker group {config.group_name} to be deleted")
        time.sleep(GROUP_DELETE_POLL_INTERVAL)


# Scaling policies, +1/-1 worker, executed by the CloudWatch alarms

@retry_on_throttling()
def create_policies(aws_wrapper, config: Config, outputs: Dict[str, Any]) -> Dict[str, Any]:
    autoscaling_client = aws_wrapper.create_aws_client('autoscaling')
    names = resource_names(config)

    def put_policy(policy_name, adjustment, cooldown):
        return autoscaling_client.put_scaling_policy(
            AutoScalingGroupName=outputs['group_name'],
            PolicyName=policy_name,
            PolicyType='SimpleScaling',
            AdjustmentType='ChangeInCapacity',
            ScalingAdjustment=adjustment,
            Cooldown=cooldown
        )['PolicyARN']

    return {
        'scale_up_policy_arn': put_policy(names['scale_up_policy'], 1, config.scale_up_cooldown),
        'scale_down_policy_arn': put_policy(names['scale_down_policy'], -1, config.scale_down_cooldown),
    }


def delete_policies(aws_wrapper, config: Config):
    autoscaling_client = aws_wrapper.create_aws_client('autoscaling')
    names = resource_names(config)
    for policy_name in (names['scale_up_policy'], names['scale_down_policy']):
        try:
            autoscaling_client.delete_policy(AutoScalingGroupName=config.group_name, PolicyName=policy_name)
        except ClientError as e:
            # a missing group or policy is reported as a validation error
            if _error_code(e) != 'ValidationError':
                raise


# CloudWatch alarms, these execute the scaling policies

@retry_on_throttling()
def create_alarms(aws_wrapper, config: Config, outputs: Dict[str, Any]) -> Dict[str, Any]:
    cloudwatch_client = aws_wrapper.create_aws_client('cloudwatch')
    names = resource_names(config)

    alarms = [
        (names['messages_available_alarm'], 'Scale up if messages are available',
         'ApproximateNumberOfMessagesVisible', config.visible_threshold, outputs['scale_up_policy_arn']),
        (names['not_enough_messages_alarm'], 'Scale down if not enough messages',
         'NumberOfEmptyReceives', config.empty_receive_threshold, outputs['scale_down_policy_arn']),
    ]
    for alarm_name, description, metric_name, threshold, policy_arn in alarms:
        cloudwatch_client.put_metric_alarm(
            AlarmName=alarm_name,
            AlarmDescription=description,
            Namespace='AWS/SQS',
            MetricName=metric_name,
            Dimensions=[{'Name': 'QueueName', 'Value': outputs['queue_name']}],
            Statistic='Sum',
            Period=config.period,
            EvaluationPeriods=config.evaluation_periods,
            Threshold=threshold,
            ComparisonOperator='GreaterThanThreshold',
            AlarmActions=[policy_arn]
        )

    return {'alarm_names': [alarm[0] for alarm in alarms]}


def delete_alarms(aws_wrapper, config: Config):
    names = resource_names(config)
    aws_wrapper.create_aws_client('cloudwatch').delete_alarms(
        AlarmNames=[names['messages_available_alarm'], names['not_enough_messages_alarm']])


STEPS: List[Step] = [
    Step('queue', create_queue, delete_queue),
    Step('security_group', create_security_group, delete_security_group),
    Step('role', create_role, delete_role),
    Step('instance_profile', create_instance_profile, delete_instance_profile),
    Step('launch_template', create_launch_template, delete_launch_template),
    Step('group', create_group, delete_group),
    Step('policies', create_policies, delete_policies, always=False),
    Step('alarms', create_alarms, delete_alarms, always=False),
]


def _selected_steps(config: Config) -> List[Step]:
    return [step for step in STEPS if step.always or config.enable_alarms]


def provision(aws_wrapper, config: Config) -> Dict[str, Any]:
    """
    Create (or bring up to date) every resource of the worker pool, in order.

    Returns:
        dict: Outputs of all steps, e.g. 'queue_url', 'launch_template_id', 'group_name'

    Raises:
        ProvisioningFailure: Naming the step that failed; later steps are not attempted
    """
    outputs: Dict[str, Any] = {}
    for step in _selected_steps(config):
        logging.info(f"Provisioning {step.name}")
        try:
            outputs.update(step.create(aws_wrapper, config, outputs))
        except (ClientError, BotoCoreError) as e:
            logging.error(f"Provisioning step {step.name} failed: {e}", exc_info=True)
            raise ProvisioningFailure(f"Provisioning step {step.name} failed: {e}", step=step.name) from e

    logging.info(f"Worker pool {config.stack_name} provisioned, input queue: {outputs['queue_name']}")
    return outputs


def teardown(aws_wrapper, config: Config) -> List[str]:
    """
    Delete the worker pool's resources in reverse creation order.

    Alarms and policies are always removed, even when alarms are disabled now,
    in case an earlier provision created them.

    Returns:
        list: Names of the steps torn down
    """
    removed = []
    for step in reversed(STEPS):
        logging.info(f"Tearing down {step.name}")
        try:
            step.delete(aws_wrapper, config)
        except (ClientError, BotoCoreError) as e:
            logging.error(f"Teardown step {step.name} failed: {e}", exc_info=True)
            raise ProvisioningFailure(f"Teardown step {step.name} failed: {e}", step=step.name) from e
        removed.append(step.name)
    return removed


def new_template_version(aws_wrapper, config: Config, template_id: str, image_id: str = None,
                         instance_type: str = None) -> str:
    """
    Create a launch template version with a new image and/or instance type.

    Returns:
        str: The new version number
    """
    data = {}
    if image_id:
        data['ImageId'] = image_id
    if instance_type:
        data['InstanceType'] = instance_type

    response = aws_wrapper.create_aws_client('ec2').create_launch_template_version(
        LaunchTemplateId=template_id,
        SourceVersion='$Latest',
        LaunchTemplateData=data
    )
    version = str(response['LaunchTemplateVersion']['VersionNumber'])
    logging.info(f"Created launch template {template_id} version {version}")
    return version
