"""
Tests for topology/matchers.py — reference normalisation and the
exact -> normalized -> containment cascade.
"""

from __future__ import annotations

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from topology.matchers import (
    containment_match,
    exact_match,
    node_aliases,
    normalize,
    normalized_match,
    resolve,
)
from topology.model import Node


ACCOUNT = "123456789012"
FUNCTION_ARN = f"arn:aws:lambda:us-east-1:{ACCOUNT}:function:checkout"
TABLE_ARN = f"arn:aws:dynamodb:us-east-1:{ACCOUNT}:table/orders"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _node(node_id: str, arn: str = "", label: str | None = None, node_type: str = "UNKNOWN") -> Node:
    details = {"arn": arn} if arn else {}
    return Node(id=node_id, label=label or node_id, type=node_type, details=details)


# =========================================================================
# Tests: normalize
# =========================================================================

class TestNormalize:

    @pytest.mark.parametrize("reference, expected", [
        (
            f"arn:aws:apigateway:us-east-1:lambda:path/2015-03-31/functions/{FUNCTION_ARN}/invocations",
            "checkout",
        ),
        (f"{FUNCTION_ARN}:$LATEST", "checkout"),
        (f"{FUNCTION_ARN}:12", "checkout"),
        (FUNCTION_ARN, "checkout"),
        (TABLE_ARN, "orders"),
        (f"arn:aws:sqs:us-east-1:{ACCOUNT}:orders-queue", "orders-queue"),
        (f"https://sqs.us-east-1.amazonaws.com/{ACCOUNT}/orders-queue", "orders-queue"),
        ("assets.s3.amazonaws.com", "assets"),
        ("assets.s3.us-east-1.amazonaws.com", "assets"),
        ("assets.s3-website-us-east-1.amazonaws.com", "assets"),
        ("a1b2c3.execute-api.us-east-1.amazonaws.com", "a1b2c3"),
        ("https://a1b2c3.execute-api.us-east-1.amazonaws.com/prod", "a1b2c3"),
        ("web-123456.us-east-1.elb.amazonaws.com", "web-123456"),
        ("d111111abcdef8.cloudfront.net", "d111111abcdef8"),
        ("Checkout", "checkout"),
        ("", ""),
        ("   ", ""),
    ])
    def test_normalize(self, reference, expected):
        assert normalize(reference) == expected


class TestAliases:

    def test_aliases_cover_arn_id_and_label(self):
        node = _node("checkout", FUNCTION_ARN, label="Checkout Service")
        assert {"checkout", "checkout service"} <= node_aliases(node)

    def test_load_balancer_name_segment(self):
        node = _node(
            "50dc6c495c0c9188",
            f"arn:aws:elasticloadbalancing:us-east-1:{ACCOUNT}:loadbalancer/app/web-alb/50dc6c495c0c9188",
        )
        assert "web-alb" in node_aliases(node)


# =========================================================================
# Tests: individual strategies
# =========================================================================

class TestStrategies:

    def test_exact_needs_full_arn(self):
        node = _node("orders", TABLE_ARN)
        assert exact_match(TABLE_ARN, node)
        assert not exact_match("orders", node)

    def test_exact_never_matches_node_without_arn(self):
        assert not exact_match("", _node("orders"))

    def test_normalized(self):
        node = _node("orders-queue", f"arn:aws:sqs:us-east-1:{ACCOUNT}:orders-queue")
        assert normalized_match(f"https://sqs.us-east-1.amazonaws.com/{ACCOUNT}/orders-queue", node)

    def test_containment_is_case_insensitive(self):
        node = _node("orders", TABLE_ARN)
        assert containment_match("ORDERS-TABLE-PROD", node)

    def test_containment_ignores_short_strings(self):
        node = _node("db", f"arn:aws:rds:us-east-1:{ACCOUNT}:db:db")
        assert not containment_match("my-db-host", node)
        assert not containment_match("abc", _node("abcdef"))


# =========================================================================
# Tests: resolve cascade
# =========================================================================

class TestResolve:

    def setup_method(self):
        self.orders = _node("orders", TABLE_ARN)
        self.archive = _node("orders-archive", "arn:aws:s3:::orders-archive")
        self.nodes = [self.orders, self.archive]

    def test_exact_wins_over_containment(self):
        assert resolve(TABLE_ARN, self.nodes) == [self.orders]

    def test_normalized_stops_cascade(self):
        assert resolve("orders", self.nodes) == [self.orders]

    def test_containment_may_return_several(self):
        assert resolve("orders-arch", self.nodes) == [self.orders, self.archive]

    def test_rds_endpoint_by_containment(self):
        db = _node("orders", f"arn:aws:rds:us-east-1:{ACCOUNT}:db:orders")
        endpoint = "orders.c9akciq32.us-east-1.rds.amazonaws.com"
        assert resolve(endpoint, [db]) == [db]

    def test_blank_reference(self):
        assert resolve("", self.nodes) == []
        assert resolve("   ", self.nodes) == []

    def test_no_match(self):
        assert resolve("payments-service", self.nodes) == []

    def test_custom_matchers(self):
        assert resolve("orders", self.nodes, matchers=(("exact", exact_match),)) == []
