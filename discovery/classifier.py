"""
ARN classification.

Maps an ARN to a coarse service-type label, a short local name, and decides
whether the resource is architecturally significant.  The tagging API also
returns many low-level artefacts (snapshots, ENIs, IAM roles, ...) that would
flood the graph without adding meaning; ``is_significant`` filters them out.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Service type labels
# ---------------------------------------------------------------------------

EC2 = "EC2"
VPC = "VPC"
SECURITY_GROUP = "SECURITYGROUP"
SUBNET = "SUBNET"
S3 = "S3"
RDS = "RDS"
LAMBDA = "LAMBDA"
LOAD_BALANCER = "ELASTICLOADBALANCING"
TARGET_GROUP = "TARGETGROUP"
API_GATEWAY = "APIGATEWAY"
DYNAMODB = "DYNAMODB"
SNS = "SNS"
SQS = "SQS"
CLOUDFRONT = "CLOUDFRONT"
STATES = "STATES"
WAF = "WAFV2"
UNKNOWN = "UNKNOWN"

DATABASE_TYPES = frozenset({RDS, DYNAMODB})
COMPUTE_TYPES = frozenset({EC2, LAMBDA})


@dataclass(frozen=True)
class Arn:
    partition: str
    service: str
    region: str
    account: str
    resource: str

    @property
    def resource_type(self) -> str:
        """``function`` for ``function:name``, ``loadbalancer`` for ``loadbalancer/app/..``."""
        parts = re.split(r"[/:]", self.resource, maxsplit=1)
        return parts[0] if len(parts) > 1 else ""


def parse_arn(arn: str) -> Arn | None:
    parts = (arn or "").split(":", 5)
    if len(parts) < 6 or parts[0] != "arn":
        return None
    return Arn(
        partition=parts[1],
        service=parts[2],
        region=parts[3],
        account=parts[4],
        resource=parts[5],
    )


def classify(arn: str) -> str:
    """Return the service-type label for *arn*."""
    parsed = parse_arn(arn)
    if parsed is None or not parsed.service:
        return UNKNOWN

    service = parsed.service.lower()
    resource = parsed.resource

    if service == "ec2":
        if resource.startswith("vpc/"):
            return VPC
        if resource.startswith("security-group/"):
            return SECURITY_GROUP
        if resource.startswith("subnet/"):
            return SUBNET
    if service == "elasticloadbalancing" and resource.startswith("targetgroup/"):
        return TARGET_GROUP

    return service.upper()


def extract_local_name(arn: str) -> str:
    """Final ``:`` segment, preferring the part after the last ``/``."""
    last = (arn or "").split(":")[-1]
    if "/" in last:
        return last.rsplit("/", 1)[-1] or last
    return last


# ---------------------------------------------------------------------------
# Significance filter
# ---------------------------------------------------------------------------

# (service, resource-type prefix) pairs that never carry architectural meaning.
_EXCLUDED_RESOURCE_TYPES: frozenset[tuple[str, str]] = frozenset({
    ("ec2", "snapshot"),
    ("ec2", "image"),
    ("ec2", "volume"),
    ("ec2", "network-interface"),
    ("ec2", "security-group"),
    ("ec2", "security-group-rule"),
    ("ec2", "subnet"),
    ("ec2", "route-table"),
    ("ec2", "internet-gateway"),
    ("ec2", "natgateway"),
    ("ec2", "egress-only-internet-gateway"),
    ("ec2", "transit-gateway"),
    ("ec2", "transit-gateway-attachment"),
    ("ec2", "customer-gateway"),
    ("ec2", "vpn-gateway"),
    ("ec2", "dhcp-options"),
    ("ec2", "launch-template"),
    ("ec2", "network-acl"),
    ("ec2", "elastic-ip"),
    ("ec2", "key-pair"),
    ("rds", "snapshot"),
    ("rds", "cluster-snapshot"),
    ("rds", "subgrp"),
    ("rds", "pg"),
    ("rds", "cluster-pg"),
    ("rds", "og"),
    ("elasticloadbalancing", "listener"),
    ("elasticloadbalancing", "listener-rule"),
    ("lambda", "layer"),
    ("ecs", "task-definition"),
    ("codedeploy", "deploymentgroup"),
    ("codedeploy", "deploymentconfig"),
    ("backup", "backup-vault"),
    ("backup", "recovery-point"),
    ("iam", "policy"),
    ("iam", "role"),
    ("iam", "instance-profile"),
    ("cloudwatch", "alarm"),
    ("events", "rule"),
    ("dlm", "policy"),
})

# Whole services whose resources are always ancillary.
_EXCLUDED_SERVICES = frozenset({"backup", "cloudwatch", "events", "dlm"})

_API_STAGE_RE = re.compile(r"^/(restapis|apis)/[^/]+/stages(/|$)")
_NUMERIC_QUALIFIER_RE = re.compile(r"^\d+$")


def is_significant(arn: str) -> bool:
    """Return False for snapshots, images, IAM roles and other low-signal kinds."""
    parsed = parse_arn(arn)
    if parsed is None:
        return False

    service = parsed.service.lower()
    resource_type = parsed.resource_type.lower()

    if service in _EXCLUDED_SERVICES:
        return False
    if (service, resource_type) in _EXCLUDED_RESOURCE_TYPES:
        return False

    if service == "apigateway" and _API_STAGE_RE.match(parsed.resource):
        return False
    if service == "codedeploy" and "deployment" in parsed.resource.lower():
        return False

    # function:name:7 is a published-version pointer, not a separate function
    if service == "lambda" and resource_type == "function":
        segments = parsed.resource.split(":")
        if len(segments) >= 3 and _NUMERIC_QUALIFIER_RE.match(segments[-1]):
            return False

    return True
