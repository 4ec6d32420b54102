import unittest
from unittest import mock

import boto3
from botocore.stub import Stubber

from spotpool.fleet.worker_group import WorkerGroup


def group_description(desired=2, instances=(), template_version='1'):
    return {
        'AutoScalingGroups': [{
            'AutoScalingGroupName': 'workers',
            'MinSize': 0,
            'MaxSize': 50,
            'DesiredCapacity': desired,
            'LaunchTemplate': {'LaunchTemplateId': 'lt-123', 'Version': template_version},
            'Instances': [
                {'InstanceId': instance_id, 'LifecycleState': state, 'HealthStatus': 'Healthy',
                 'LaunchTemplate': {'LaunchTemplateId': 'lt-123', 'Version': version}}
                for instance_id, state, version in instances
            ],
        }]
    }


class TestWorkerGroup(unittest.TestCase):

    def setUp(self):
        self.aws_wrapper = mock.MagicMock()
        self.autoscaling = self.aws_wrapper.create_aws_client.return_value
        self.group = WorkerGroup(self.aws_wrapper, 'workers', min_size=0, max_size=50)

    def test_starts_at_min_size(self):
        group = WorkerGroup(self.aws_wrapper, 'workers', min_size=2, max_size=5)

        self.assertEqual(group.desired_capacity, 2)
        self.assertIsNone(group.last_scale_up_at)
        self.assertIsNone(group.last_scale_down_at)

    def test_refresh_reads_desired_and_instances(self):
        self.autoscaling.describe_auto_scaling_groups.return_value = group_description(
            desired=3, instances=[('i-1', 'InService', '1'), ('i-2', 'Pending', '1')])

        self.group.refresh()

        self.assertEqual(self.group.desired_capacity, 3)
        self.assertEqual(self.group.actual_size, 2)
        self.assertEqual(self.group.in_service_count, 1)
        self.assertEqual(self.group.launch_template_id, 'lt-123')
        self.assertFalse(self.group.settled)
        self.autoscaling.describe_auto_scaling_groups.assert_called_once_with(AutoScalingGroupNames=['workers'])

    def test_refresh_clamps_external_capacity(self):
        group = WorkerGroup(self.aws_wrapper, 'workers', min_size=1, max_size=4)
        self.autoscaling.describe_auto_scaling_groups.return_value = group_description(desired=9)

        group.refresh()

        self.assertEqual(group.desired_capacity, 4)

    def test_refresh_missing_group(self):
        self.autoscaling.describe_auto_scaling_groups.return_value = {'AutoScalingGroups': []}

        with self.assertRaises(LookupError):
            self.group.refresh()

    def test_set_desired_capacity_is_clamped(self):
        self.assertEqual(self.group.set_desired_capacity(80), 50)

        self.autoscaling.set_desired_capacity.assert_called_once_with(
            AutoScalingGroupName='workers', DesiredCapacity=50, HonorCooldown=False)
        self.assertEqual(self.group.desired_capacity, 50)

    def test_failed_set_keeps_local_capacity(self):
        self.autoscaling.set_desired_capacity.side_effect = RuntimeError('boom')

        with self.assertRaises(RuntimeError):
            self.group.set_desired_capacity(3)

        self.assertEqual(self.group.desired_capacity, 0)

    def test_outdated_instances(self):
        self.autoscaling.describe_auto_scaling_groups.return_value = group_description(
            instances=[('i-1', 'InService', '1'), ('i-2', 'InService', '2'), ('i-3', 'Terminating', '1')])
        self.group.refresh()

        self.assertEqual([instance.instance_id for instance in self.group.outdated_instances(2)], ['i-1'])

    def test_terminate_keeps_desired_capacity(self):
        self.group.terminate_instance('i-1')

        self.autoscaling.terminate_instance_in_auto_scaling_group.assert_called_once_with(
            InstanceId='i-1', ShouldDecrementDesiredCapacity=False)

    def test_drain_sets_min_size(self):
        self.group.desired_capacity = 7

        self.group.drain()

        self.autoscaling.set_desired_capacity.assert_called_once_with(
            AutoScalingGroupName='workers', DesiredCapacity=0, HonorCooldown=False)
        self.assertEqual(self.group.desired_capacity, 0)

    def test_record_scale(self):
        self.group.record_scale('up', 100.0)
        self.group.record_scale('down', 200.0)

        self.assertEqual((self.group.last_scale_up_at, self.group.last_scale_down_at), (100.0, 200.0))


class TestWorkerGroupRequests(unittest.TestCase):
    """Request shapes checked against the real Auto Scaling API model."""

    def setUp(self):
        client = boto3.client('autoscaling', region_name='us-east-1',
                              aws_access_key_id='testing', aws_secret_access_key='testing')
        self.stubber = Stubber(client)
        aws_wrapper = mock.MagicMock()
        aws_wrapper.create_aws_client.return_value = client
        self.group = WorkerGroup(aws_wrapper, 'workers', min_size=0, max_size=10)

    def test_set_desired_capacity_request(self):
        self.stubber.add_response('set_desired_capacity', {},
                                  {'AutoScalingGroupName': 'workers', 'DesiredCapacity': 3, 'HonorCooldown': False})

        with self.stubber:
            self.group.set_desired_capacity(3)

        self.stubber.assert_no_pending_responses()

    def test_set_launch_template_request(self):
        self.stubber.add_response('update_auto_scaling_group', {}, {
            'AutoScalingGroupName': 'workers',
            'LaunchTemplate': {'LaunchTemplateId': 'lt-123', 'Version': '4'},
        })

        with self.stubber:
            self.group.set_launch_template('lt-123', 4)

        self.assertEqual(self.group.launch_template_version, '4')


if __name__ == '__main__':
    unittest.main()
