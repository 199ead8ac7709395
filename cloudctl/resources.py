"""
Resource provider gateway: EC2 instances and Lambda functions via boto3.

A fresh boto3 session is built for every call from the profile name passed
in, so credentials renewed by `aws sso login` are picked up without restarts
and a profile switch can never reuse the previous profile's clients.
"""
import logging
from datetime import timezone
from functools import wraps
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from cloudctl.clock import utc_now
from cloudctl.errors import translate_botocore_error
from cloudctl.models import Function, Instance, ResourceSnapshot

logger = logging.getLogger("cloudctl.resources")


def translate_errors(f):
    """Decorator that turns botocore exceptions into ApiError subclasses."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except (ClientError, BotoCoreError) as e:
            error = translate_botocore_error(e)
            logger.error(f"AWS API error in {f.__name__}: {error}")
            raise error from e
    return decorated_function


def _instance_from_api(data: dict) -> Instance:
    instance_id = data.get("InstanceId", "N/A")
    name = next(
        (t.get("Value") for t in data.get("Tags", []) if t.get("Key") == "Name" and t.get("Value")),
        instance_id,
    )
    launch_time = data.get("LaunchTime")
    if launch_time is not None and launch_time.tzinfo is None:
        launch_time = launch_time.replace(tzinfo=timezone.utc)
    return Instance(
        id=instance_id,
        name=name,
        instance_type=data.get("InstanceType", "unknown"),
        state=data.get("State", {}).get("Name", "unknown"),
        public_ip=data.get("PublicIpAddress"),
        private_ip=data.get("PrivateIpAddress"),
        launch_time=launch_time,
    )


def _function_from_api(data: dict) -> Function:
    return Function(
        name=data.get("FunctionName", "N/A"),
        runtime=data.get("Runtime", "N/A"),
        memory=data.get("MemorySize", 0),
        last_modified=data.get("LastModified", "N/A"),
        description=data.get("Description", ""),
    )


class ResourceGateway:
    def __init__(self, region: Optional[str] = None, session_factory=None):
        self.region = region
        self.session_factory = session_factory or boto3.Session

    def _client(self, profile: str, service: str):
        if not profile:
            raise ValueError("A profile is required for resource calls")
        session = self.session_factory(profile_name=profile, region_name=self.region)
        return session.client(service)

    @translate_errors
    def list_instances(self, profile: str) -> List[Instance]:
        ec2 = self._client(profile, "ec2")
        instances = []
        for page in ec2.get_paginator("describe_instances").paginate():
            for reservation in page.get("Reservations", []):
                for data in reservation.get("Instances", []):
                    instances.append(_instance_from_api(data))
        return instances

    @translate_errors
    def list_functions(self, profile: str) -> List[Function]:
        lambda_client = self._client(profile, "lambda")
        functions = []
        for page in lambda_client.get_paginator("list_functions").paginate():
            functions.extend(_function_from_api(f) for f in page.get("Functions", []))
        return functions

    @translate_errors
    def start(self, profile: str, instance_id: str) -> None:
        logger.info(f"Starting instance {instance_id} (profile={profile})")
        self._client(profile, "ec2").start_instances(InstanceIds=[instance_id])

    @translate_errors
    def stop(self, profile: str, instance_id: str) -> None:
        logger.info(f"Stopping instance {instance_id} (profile={profile})")
        self._client(profile, "ec2").stop_instances(InstanceIds=[instance_id])

    @translate_errors
    def terminate(self, profile: str, instance_id: str) -> None:
        logger.info(f"Terminating instance {instance_id} (profile={profile})")
        self._client(profile, "ec2").terminate_instances(InstanceIds=[instance_id])

    def snapshot(self, profile: str) -> ResourceSnapshot:
        """Fetch everything; raises before anything is returned, so no partial snapshot."""
        instances = self.list_instances(profile)
        functions = self.list_functions(profile)
        return ResourceSnapshot(
            instances=tuple(instances),
            functions=tuple(functions),
            fetched_at=utc_now(),
            profile=profile,
        )
