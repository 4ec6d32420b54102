import unittest
from datetime import datetime, timezone
from unittest import mock

from botocore.exceptions import ClientError, ReadTimeoutError

from spotpool.exceptions import TransientMetricReadFailure
from spotpool.fleet.controller import AppliedDelta
from spotpool.loop import AlarmLoop
from spotpool.metrics.cloudwatch import Datapoint, MetricSampler, get_queue_metrics
from spotpool.scaler import ScalingAction

MINUTE_1 = datetime(2024, 3, 1, 12, 1, tzinfo=timezone.utc)
MINUTE_2 = datetime(2024, 3, 1, 12, 2, tzinfo=timezone.utc)


def metric_response(visible_values, empty_values, timestamps=None):
    timestamps = timestamps or []
    return {
        'MetricDataResults': [
            {'Id': 'visible', 'Label': 'ApproximateNumberOfMessagesVisible',
             'Timestamps': timestamps[:len(visible_values)], 'Values': visible_values, 'StatusCode': 'Complete'},
            {'Id': 'empty_receives', 'Label': 'NumberOfEmptyReceives',
             'Timestamps': timestamps[:len(empty_values)], 'Values': empty_values, 'StatusCode': 'Complete'},
        ]
    }


def throttled():
    return ClientError({'Error': {'Code': 'Throttling', 'Message': 'Rate exceeded'}}, 'GetMetricData')


class TestGetQueueMetrics(unittest.TestCase):

    def setUp(self):
        self.aws_wrapper = mock.MagicMock()
        self.cloudwatch = self.aws_wrapper.create_aws_client.return_value

    def test_newest_datapoint_used(self):
        self.cloudwatch.get_metric_data.return_value = metric_response([7.0, 3.0], [12.0, 1.0],
                                                                       [MINUTE_2, MINUTE_1])

        metrics = get_queue_metrics(self.aws_wrapper, 'work-queue')

        self.assertEqual(metrics, {'visible': Datapoint(7, MINUTE_2), 'empty_receives': Datapoint(12, MINUTE_2)})
        self.aws_wrapper.create_aws_client.assert_called_once_with('cloudwatch')

    def test_query_shape(self):
        self.cloudwatch.get_metric_data.return_value = metric_response([], [])

        get_queue_metrics(self.aws_wrapper, 'work-queue', period=60)

        kwargs = self.cloudwatch.get_metric_data.call_args.kwargs
        self.assertEqual(kwargs['ScanBy'], 'TimestampDescending')
        queries = {query['Id']: query['MetricStat'] for query in kwargs['MetricDataQueries']}
        self.assertEqual(queries['visible']['Metric']['MetricName'], 'ApproximateNumberOfMessagesVisible')
        self.assertEqual(queries['empty_receives']['Metric']['MetricName'], 'NumberOfEmptyReceives')
        for stat in queries.values():
            self.assertEqual(stat['Stat'], 'Sum')
            self.assertEqual(stat['Period'], 60)
            self.assertEqual(stat['Metric']['Namespace'], 'AWS/SQS')
            self.assertEqual(stat['Metric']['Dimensions'], [{'Name': 'QueueName', 'Value': 'work-queue'}])

    def test_missing_datapoints_read_as_zero(self):
        self.cloudwatch.get_metric_data.return_value = metric_response([], [])

        self.assertEqual(get_queue_metrics(self.aws_wrapper, 'work-queue'),
                         {'visible': Datapoint(0), 'empty_receives': Datapoint(0)})

    def test_client_error_is_transient(self):
        self.cloudwatch.get_metric_data.side_effect = throttled()

        with self.assertRaises(TransientMetricReadFailure):
            get_queue_metrics(self.aws_wrapper, 'work-queue')


class TestMetricSampler(unittest.TestCase):

    def setUp(self):
        self.aws_wrapper = mock.MagicMock()
        self.cloudwatch = self.aws_wrapper.create_aws_client.return_value
        self.sampler = MetricSampler(self.aws_wrapper, 'work-queue', clock=lambda: 5000.0)

    def test_fresh_sample(self):
        self.cloudwatch.get_metric_data.return_value = metric_response([4.0], [0.0], [MINUTE_1])

        sample = self.sampler.sample(now=1000.0)

        self.assertEqual((sample.timestamp, sample.visible_messages, sample.empty_receives), (1000.0, 4, 0))
        self.assertFalse(sample.stale)

    def test_repeated_datapoint_counts_once(self):
        """CloudWatch has not published a newer minute yet: the same reading is not counted again."""
        self.cloudwatch.get_metric_data.side_effect = [
            metric_response([2.0], [6.0], [MINUTE_1]),
            metric_response([2.0], [6.0], [MINUTE_1]),
            metric_response([1.0], [3.0], [MINUTE_2]),
        ]

        samples = [self.sampler.sample(now=now) for now in (1000.0, 1060.0, 1120.0)]

        self.assertEqual([(s.visible_messages, s.empty_receives) for s in samples], [(2, 6), (0, 0), (1, 3)])
        self.assertFalse(any(s.stale for s in samples))

    def test_failure_reuses_previous_values(self):
        """A failed read repeats the last values with the new timestamp, flagged stale."""
        self.cloudwatch.get_metric_data.return_value = metric_response([4.0], [9.0], [MINUTE_1])
        self.sampler.sample(now=1000.0)

        self.cloudwatch.get_metric_data.side_effect = throttled()
        sample = self.sampler.sample(now=1060.0)

        self.assertEqual((sample.timestamp, sample.visible_messages, sample.empty_receives), (1060.0, 4, 9))
        self.assertTrue(sample.stale)

    def test_timeout_without_previous_sample(self):
        self.cloudwatch.get_metric_data.side_effect = ReadTimeoutError(endpoint_url='https://monitoring')

        sample = self.sampler.sample()

        self.assertEqual((sample.timestamp, sample.visible_messages, sample.empty_receives), (5000.0, 0, 0))
        self.assertTrue(sample.stale)

    def test_client_reused_between_samples(self):
        self.cloudwatch.get_metric_data.return_value = metric_response([1.0], [1.0])

        self.sampler.sample(now=1.0)
        self.sampler.sample(now=2.0)

        self.aws_wrapper.create_aws_client.assert_called_once_with('cloudwatch')

    def test_one_idle_minute_does_not_scale_down(self):
        """Six empty receives in a single minute stay under the threshold however often they are read."""
        self.cloudwatch.get_metric_data.return_value = metric_response([0.0], [6.0], [MINUTE_1])
        controller = mock.MagicMock()
        controller.apply.return_value = AppliedDelta.unchanged(1)
        loop = AlarmLoop(self.sampler, controller, evaluation_periods=2, empty_receive_threshold=10,
                         clock=mock.MagicMock(side_effect=[1000.0, 1060.0]))

        loop.tick()
        result = loop.tick()

        self.assertEqual(result.action, ScalingAction.NO_OP)
        self.assertEqual(loop.empty_window.total('empty_receives'), 6)


if __name__ == '__main__':
    unittest.main()
