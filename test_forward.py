#!/usr/bin/env python3
"""
目标地址改写测试

使用方法:
    python3 -m pytest test_forward.py -v
"""

import ipaddress
import sys

import pytest

from forward import ForwardRule, build_rewriter, identity, loopback_rewriter, rules_from_config
from protocol import ResolvedEndpoint


def endpoint(host: str, port: int = 80) -> ResolvedEndpoint:
    return ResolvedEndpoint(ipaddress.ip_address(host), port)


def test_identity_without_rules():
    rewrite = build_rewriter([])
    assert rewrite is identity
    assert rewrite(endpoint('127.0.0.1')) == endpoint('127.0.0.1')


def test_loopback_redirected_keeps_port():
    rewrite = loopback_rewriter('172.17.88.204')
    assert rewrite(endpoint('127.0.0.1', 8080)) == endpoint('172.17.88.204', 8080)


def test_non_loopback_unchanged():
    rewrite = loopback_rewriter('172.17.88.204')
    original = endpoint('10.0.0.5', 443)
    assert rewrite(original) == original


def test_rewrite_is_idempotent():
    """对已经改写过的地址再次改写，结果不变"""
    rewrite = loopback_rewriter('172.17.88.204')
    once = rewrite(endpoint('127.0.0.1', 22))
    assert rewrite(once) == once


def test_first_matching_rule_wins():
    rewrite = build_rewriter([
        ForwardRule.parse('10.1.0.0/16', '192.168.0.1'),
        ForwardRule.parse('10.0.0.0/8', '192.168.0.2', 3128),
    ])
    assert rewrite(endpoint('10.1.2.3', 80)) == endpoint('192.168.0.1', 80)
    assert rewrite(endpoint('10.9.9.9', 80)) == endpoint('192.168.0.2', 3128)


def test_ipv6_rule_ignores_ipv4():
    rewrite = build_rewriter([ForwardRule.parse('::1', '2001:db8::10')])
    assert rewrite(endpoint('::1', 80)) == endpoint('2001:db8::10', 80)
    assert rewrite(endpoint('127.0.0.1', 80)) == endpoint('127.0.0.1', 80)


def test_target_inside_match_rejected():
    with pytest.raises(ValueError):
        ForwardRule.parse('10.0.0.0/8', '10.0.0.1')


@pytest.mark.parametrize('spec,match,target,port', [
    ('127.0.0.1=172.17.88.204', '127.0.0.1/32', '172.17.88.204', None),
    ('10.0.0.0/8=192.168.1.10:3128', '10.0.0.0/8', '192.168.1.10', 3128),
    ('::1=[2001:db8::1]:8080', '::1/128', '2001:db8::1', 8080),
    ('::1=2001:db8::1', '::1/128', '2001:db8::1', None),
])
def test_rule_from_spec(spec, match, target, port):
    rule = ForwardRule.from_spec(spec)
    assert rule.match == ipaddress.ip_network(match)
    assert rule.target == ipaddress.ip_address(target)
    assert rule.port == port


def test_rule_from_spec_invalid():
    with pytest.raises(ValueError):
        ForwardRule.from_spec('127.0.0.1')


def test_rules_from_config():
    rules = rules_from_config([
        {'match': '127.0.0.1', 'target': '172.17.88.204'},
        {'match': '10.0.0.0/8', 'target': '192.168.1.1', 'port': 8080},
    ])
    assert len(rules) == 2
    assert rules[1].port == 8080
    assert rules_from_config(None) == []

    with pytest.raises(ValueError):
        rules_from_config([{'match': '127.0.0.1'}])


if __name__ == '__main__':
    sys.exit(pytest.main([__file__, '-v']))
