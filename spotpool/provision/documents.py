import base64
import json
import shlex

from spotpool.config import Config

EC2_ASSUME_ROLE_POLICY = {
    'Version': '2012-10-17',
    'Statement': [{
        'Effect': 'Allow',
        'Principal': {'Service': ['ec2.amazonaws.com']},
        'Action': ['sts:AssumeRole'],
    }],
}


def render_user_data(config: Config, queue_name: str) -> str:
    """
    Boot script for a worker: record which queue to drain, prepare scratch
    space, then start the worker service that consumes the queue.
    """
    queue_file = shlex.quote(config.queue_name_file)
    work_dir = shlex.quote(config.work_dir)
    return (
        "#!/bin/bash\n"
        f"echo {shlex.quote(queue_name)} > {queue_file}\n"
        f"mkdir -p {work_dir}\n"
        f"chown {shlex.quote(config.work_dir_owner)} {work_dir}\n"
        f"start {shlex.quote(config.worker_service)}\n"
    )


def encode_user_data(script: str) -> str:
    return base64.b64encode(script.encode('utf-8')).decode('ascii')


def worker_role_policies(config: Config, queue_arn: str) -> dict:
    """
    Inline policies for the worker role, keyed by policy name.

    Workers may read artifacts, use the work queue, and write analysis results.
    Nothing else.
    """
    results = f"arn:aws:s3:::{config.results_bucket}"
    policies = {
        'artifactReadAccess': [{
            'Effect': 'Allow',
            'Action': ['s3:GetObject'],
            'Resource': [f"arn:aws:s3:::{config.artifact_bucket}/*"],
        }],
        'inputQueueAccess': [{
            'Effect': 'Allow',
            'Action': ['sqs:*'],
            'Resource': [queue_arn],
        }],
        'resultsBucketAccess': [{
            'Effect': 'Allow',
            'Action': ['s3:*'],
            'Resource': [results, f"{results}/*"],
        }],
    }
    return {name: json.dumps({'Version': '2012-10-17', 'Statement': statements})
            for name, statements in policies.items()}
