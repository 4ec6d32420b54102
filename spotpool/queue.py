import json
import logging
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

MISSING_QUEUE_CODES = ('AWS.SimpleQueueService.NonExistentQueue', 'QueueDoesNotExist')


def create_queue(aws_wrapper, queue_name: str, attributes: Dict[str, Any]) -> str:
    """
    Create the work queue, or return the existing one if it already has these attributes.

    Returns:
        str: The queue URL
    """
    sqs_client = aws_wrapper.create_aws_client('sqs')
    response = sqs_client.create_queue(
        QueueName=queue_name,
        Attributes={key: str(value) for key, value in attributes.items()}
    )
    logging.info(f"Work queue {queue_name} ready at {response['QueueUrl']}")
    return response['QueueUrl']


def get_queue_url(aws_wrapper, queue_name: str) -> Optional[str]:
    """Resolve a queue name to its URL, or None if the queue does not exist."""
    sqs_client = aws_wrapper.create_aws_client('sqs')
    try:
        return sqs_client.get_queue_url(QueueName=queue_name)['QueueUrl']
    except ClientError as e:
        if e.response.get('Error', {}).get('Code') in MISSING_QUEUE_CODES:
            return None
        raise


def get_queue_arn(aws_wrapper, queue_url: str) -> str:
    sqs_client = aws_wrapper.create_aws_client('sqs')
    response = sqs_client.get_queue_attributes(QueueUrl=queue_url, AttributeNames=['QueueArn'])
    return response['Attributes']['QueueArn']


def submit_task(aws_wrapper, queue_url: str, body, delay_seconds: int = None) -> str:
    """
    Enqueue one task for the workers.

    Args:
        aws_wrapper: AWS wrapper instance
        queue_url: Work queue URL
        body: Task payload; anything that is not already a string is sent as JSON
        delay_seconds: Optional per-message delay overriding the queue default

    Returns:
        str: The SQS message id
    """
    if not isinstance(body, str):
        body = json.dumps(body)

    params = {'QueueUrl': queue_url, 'MessageBody': body}
    if delay_seconds is not None:
        params['DelaySeconds'] = delay_seconds

    sqs_client = aws_wrapper.create_aws_client('sqs')
    response = sqs_client.send_message(**params)
    logging.info(f"Submitted task {response['MessageId']} to {queue_url}")
    return response['MessageId']
