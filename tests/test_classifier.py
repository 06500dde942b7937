"""
Tests for discovery/classifier.py — service-type labels, local names and the
significance filter.
"""

from __future__ import annotations

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from discovery import classifier
from discovery.classifier import classify, extract_local_name, is_significant, parse_arn


ACCOUNT = "123456789012"


# =========================================================================
# Tests: classify
# =========================================================================

class TestClassify:

    @pytest.mark.parametrize("arn, expected", [
        (f"arn:aws:ec2:us-east-1:{ACCOUNT}:instance/i-0abc", classifier.EC2),
        (f"arn:aws:ec2:us-east-1:{ACCOUNT}:vpc/vpc-1", classifier.VPC),
        (f"arn:aws:ec2:us-east-1:{ACCOUNT}:security-group/sg-1", classifier.SECURITY_GROUP),
        (f"arn:aws:ec2:us-east-1:{ACCOUNT}:subnet/subnet-1", classifier.SUBNET),
        ("arn:aws:s3:::my-bucket", classifier.S3),
        (f"arn:aws:rds:us-east-1:{ACCOUNT}:db:orders", classifier.RDS),
        (f"arn:aws:lambda:us-east-1:{ACCOUNT}:function:checkout", classifier.LAMBDA),
        (
            f"arn:aws:elasticloadbalancing:us-east-1:{ACCOUNT}:loadbalancer/app/web/50dc6c495c0c9188",
            classifier.LOAD_BALANCER,
        ),
        (
            f"arn:aws:elasticloadbalancing:us-east-1:{ACCOUNT}:targetgroup/web-tg/73e2d6bc24d8a067",
            classifier.TARGET_GROUP,
        ),
        ("arn:aws:apigateway:us-east-1::/restapis/a1b2c3", classifier.API_GATEWAY),
        (f"arn:aws:dynamodb:us-east-1:{ACCOUNT}:table/carts", classifier.DYNAMODB),
        (f"arn:aws:sns:us-east-1:{ACCOUNT}:orders-topic", classifier.SNS),
        (f"arn:aws:sqs:us-east-1:{ACCOUNT}:orders-queue", classifier.SQS),
        (f"arn:aws:cloudfront::{ACCOUNT}:distribution/E2QWRUHEXAMPLE", classifier.CLOUDFRONT),
        (f"arn:aws:states:us-east-1:{ACCOUNT}:stateMachine:checkout-flow", classifier.STATES),
        (f"arn:aws:wafv2:us-east-1:{ACCOUNT}:regional/webacl/shop/1234", classifier.WAF),
    ])
    def test_known_services(self, arn, expected):
        assert classify(arn) == expected

    def test_other_service_is_uppercased(self):
        assert classify(f"arn:aws:kinesis:us-east-1:{ACCOUNT}:stream/clicks") == "KINESIS"

    @pytest.mark.parametrize("text", ["", "not-an-arn", "arn:aws", "arn::::"])
    def test_malformed_is_unknown(self, text):
        assert classify(text) == classifier.UNKNOWN


# =========================================================================
# Tests: extract_local_name
# =========================================================================

class TestLocalName:

    @pytest.mark.parametrize("arn, expected", [
        (f"arn:aws:lambda:us-east-1:{ACCOUNT}:function:checkout", "checkout"),
        ("arn:aws:s3:::my-bucket", "my-bucket"),
        (f"arn:aws:ec2:us-east-1:{ACCOUNT}:instance/i-0abc", "i-0abc"),
        (f"arn:aws:dynamodb:us-east-1:{ACCOUNT}:table/carts", "carts"),
        ("arn:aws:apigateway:us-east-1::/restapis/a1b2c3", "a1b2c3"),
        (f"arn:aws:sns:us-east-1:{ACCOUNT}:orders-topic", "orders-topic"),
    ])
    def test_local_name(self, arn, expected):
        assert extract_local_name(arn) == expected

    def test_trailing_slash_keeps_segment(self):
        assert extract_local_name("arn:aws:x:r:a:thing/") == "thing/"


# =========================================================================
# Tests: is_significant
# =========================================================================

class TestSignificance:

    @pytest.mark.parametrize("arn", [
        f"arn:aws:ec2:us-east-1:{ACCOUNT}:snapshot/snap-1",
        "arn:aws:ec2:us-east-1::image/ami-1",
        f"arn:aws:ec2:us-east-1:{ACCOUNT}:volume/vol-1",
        f"arn:aws:ec2:us-east-1:{ACCOUNT}:network-interface/eni-1",
        f"arn:aws:ec2:us-east-1:{ACCOUNT}:security-group/sg-1",
        f"arn:aws:ec2:us-east-1:{ACCOUNT}:subnet/subnet-1",
        f"arn:aws:ec2:us-east-1:{ACCOUNT}:route-table/rtb-1",
        f"arn:aws:ec2:us-east-1:{ACCOUNT}:launch-template/lt-1",
        f"arn:aws:rds:us-east-1:{ACCOUNT}:snapshot:rds:orders-2024",
        f"arn:aws:rds:us-east-1:{ACCOUNT}:subgrp:default",
        f"arn:aws:iam::{ACCOUNT}:role/lambda-exec",
        f"arn:aws:iam::{ACCOUNT}:policy/read-only",
        f"arn:aws:backup:us-east-1:{ACCOUNT}:backup-vault:main",
        f"arn:aws:cloudwatch:us-east-1:{ACCOUNT}:alarm:cpu-high",
        f"arn:aws:events:us-east-1:{ACCOUNT}:rule/nightly",
        f"arn:aws:elasticloadbalancing:us-east-1:{ACCOUNT}:listener/app/web/1/2",
        f"arn:aws:lambda:us-east-1:{ACCOUNT}:layer:shared",
        "arn:aws:apigateway:us-east-1::/restapis/a1b2c3/stages/prod",
        "arn:aws:apigateway:us-east-1::/apis/q1w2e3/stages/$default",
        f"arn:aws:codedeploy:us-east-1:{ACCOUNT}:deploymentgroup:app/group",
        f"arn:aws:lambda:us-east-1:{ACCOUNT}:function:checkout:7",
    ])
    def test_low_signal_kinds_are_dropped(self, arn):
        assert is_significant(arn) is False

    @pytest.mark.parametrize("arn", [
        f"arn:aws:ec2:us-east-1:{ACCOUNT}:instance/i-0abc",
        "arn:aws:s3:::my-bucket",
        f"arn:aws:lambda:us-east-1:{ACCOUNT}:function:checkout",
        f"arn:aws:lambda:us-east-1:{ACCOUNT}:function:checkout:live",
        "arn:aws:apigateway:us-east-1::/restapis/a1b2c3",
        f"arn:aws:rds:us-east-1:{ACCOUNT}:db:orders",
        f"arn:aws:ec2:us-east-1:{ACCOUNT}:vpc/vpc-1",
    ])
    def test_architectural_kinds_are_kept(self, arn):
        assert is_significant(arn) is True

    def test_unparseable_is_not_significant(self):
        assert is_significant("garbage") is False


class TestParseArn:

    def test_resource_keeps_colons(self):
        parsed = parse_arn(f"arn:aws:states:us-east-1:{ACCOUNT}:stateMachine:flow")
        assert parsed.service == "states"
        assert parsed.resource == "stateMachine:flow"
        assert parsed.resource_type == "stateMachine"

    def test_slash_resource_type(self):
        parsed = parse_arn(f"arn:aws:elasticloadbalancing:us-east-1:{ACCOUNT}:loadbalancer/app/web/1")
        assert parsed.resource_type == "loadbalancer"

    def test_rejects_short_input(self):
        assert parse_arn("arn:aws:s3") is None
