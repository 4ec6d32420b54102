import logging
import time
from datetime import datetime
from typing import Callable, Dict, NamedTuple, Optional

from botocore.exceptions import BotoCoreError, ClientError

from spotpool.exceptions import TransientMetricReadFailure
from spotpool.metrics.window import Sample

SQS_NAMESPACE = 'AWS/SQS'
VISIBLE_METRIC = 'ApproximateNumberOfMessagesVisible'
EMPTY_RECEIVES_METRIC = 'NumberOfEmptyReceives'

# SQS publishes one-minute datapoints a few minutes late; look back far enough
# to always catch the newest complete one.
LOOKBACK_PERIODS = 5


class Datapoint(NamedTuple):
    """Newest per-period Sum of one metric; `timestamp` is None when CloudWatch has no datapoint."""
    value: int
    timestamp: Optional[datetime] = None


def get_queue_metrics(aws_wrapper, queue_name: str, period: int = 60,
                      cloudwatch_client=None) -> Dict[str, Datapoint]:
    """
    Read the newest per-period Sum of the visible-message and empty-receive
    metrics for an SQS queue from CloudWatch.

    Args:
        aws_wrapper: AWS wrapper instance
        queue_name: SQS queue name (the CloudWatch QueueName dimension)
        period: Metric period in seconds
        cloudwatch_client: Optional client to reuse instead of creating one

    Returns:
        dict: {'visible': Datapoint, 'empty_receives': Datapoint}; a metric with no datapoint reads as 0

    Raises:
        TransientMetricReadFailure: If CloudWatch cannot be reached, errors or times out
    """
    def query(query_id, metric_name):
        return {
            'Id': query_id,
            'MetricStat': {
                'Metric': {
                    'Namespace': SQS_NAMESPACE,
                    'MetricName': metric_name,
                    'Dimensions': [{'Name': 'QueueName', 'Value': queue_name}],
                },
                'Period': period,
                'Stat': 'Sum',
            },
            'ReturnData': True,
        }

    try:
        client = cloudwatch_client or aws_wrapper.create_aws_client('cloudwatch')
        response = client.get_metric_data(
            MetricDataQueries=[
                query('visible', VISIBLE_METRIC),
                query('empty_receives', EMPTY_RECEIVES_METRIC),
            ],
            StartTime=aws_wrapper.get_time_minus_minutes(LOOKBACK_PERIODS * period / 60),
            EndTime=aws_wrapper.get_time_now(),
            ScanBy='TimestampDescending',
        )
    except (ClientError, BotoCoreError) as e:
        raise TransientMetricReadFailure(f"Error reading CloudWatch metrics for queue {queue_name}: {e}") from e

    metrics = {'visible': Datapoint(0), 'empty_receives': Datapoint(0)}
    for result in response.get('MetricDataResults', []):
        values = result.get('Values', [])
        if result.get('Id') in metrics and values:
            timestamps = result.get('Timestamps', [])
            # TimestampDescending: the first value is the newest period
            metrics[result['Id']] = Datapoint(max(0, int(values[0])), timestamps[0] if timestamps else None)

    return metrics


class MetricSampler:
    """
    Produces one Sample per call from the queue's CloudWatch metrics.

    Each CloudWatch period is counted once. SQS metrics arrive late, so a read
    can return the same newest datapoint as the previous read; that metric then
    contributes 0 to the sample instead of being summed twice by the windows.

    A failed read never propagates: the previous sample's values are returned
    with the current timestamp and `stale=True`.
    """

    def __init__(self, aws_wrapper, queue_name: str, period: int = 60,
                 clock: Callable[[], float] = time.time):
        self._aws_wrapper = aws_wrapper
        self._queue_name = queue_name
        self._period = period
        self._clock = clock
        self._client = None
        self._counted: Dict[str, Optional[datetime]] = {}
        self.last_sample: Optional[Sample] = None

    def _cloudwatch(self):
        if self._client is None:
            self._client = self._aws_wrapper.create_aws_client('cloudwatch')
        return self._client

    def _new_value(self, metric: str, datapoint: Datapoint) -> int:
        if datapoint.timestamp is not None and datapoint.timestamp == self._counted.get(metric):
            logging.info(f"No new {metric} datapoint since {datapoint.timestamp}, counting 0")
            return 0
        self._counted[metric] = datapoint.timestamp
        return datapoint.value

    def sample(self, now: float = None) -> Sample:
        now = self._clock() if now is None else now

        try:
            metrics = get_queue_metrics(self._aws_wrapper, self._queue_name, self._period,
                                        cloudwatch_client=self._cloudwatch())
            sample = Sample(timestamp=now,
                            visible_messages=self._new_value('visible', metrics['visible']),
                            empty_receives=self._new_value('empty_receives', metrics['empty_receives']))
            logging.info(f"Queue {self._queue_name} metrics - visible: {sample.visible_messages}, "
                         f"empty receives: {sample.empty_receives}")
        except (TransientMetricReadFailure, ClientError, BotoCoreError) as e:
            # client creation can fail the same way the read does
            previous = self.last_sample
            sample = Sample(timestamp=now,
                            visible_messages=previous.visible_messages if previous else 0,
                            empty_receives=previous.empty_receives if previous else 0,
                            stale=True)
            logging.warning(f"Metric read failed, reusing previous values "
                            f"(visible: {sample.visible_messages}, empty receives: {sample.empty_receives}): {e}")

        self.last_sample = sample
        return sample
