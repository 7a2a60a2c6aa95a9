#!/usr/bin/env python3
"""
配置与日志测试

使用方法:
    python3 -m pytest test_config.py -v
"""

import ipaddress
import logging
import sys
from pathlib import Path

import pytest

from config import ServerConfig, load_config
from forward import build_rewriter, identity
from logger import ContextFilter, LogConfig, LogFormatter, add_context, reset_context
from protocol import ResolvedEndpoint
from server import build_config, parse_args


CONFIG_YAML = """
server:
  host: 127.0.0.1
  port: 1081
  strict_negotiation: true
  connect_timeout: 3
  idle_timeout: 0
forward:
  rules:
    - match: 127.0.0.1
      target: 172.17.88.204
logging:
  level: DEBUG
"""


def test_missing_file_gives_defaults(tmp_path):
    assert load_config(str(tmp_path / 'missing.yaml')) == {}
    config = ServerConfig.from_dict({})
    assert config.port == 1080
    assert config.strict_negotiation is False
    assert config.forward_rules == []


def test_load_yaml(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(CONFIG_YAML, encoding='utf-8')

    config = ServerConfig.from_dict(load_config(str(path)))
    assert config.host == '127.0.0.1'
    assert config.port == 1081
    assert config.strict_negotiation is True
    assert config.connect_timeout == 3
    assert config.idle_timeout is None
    assert config.forward_rules[0].target == ipaddress.ip_address('172.17.88.204')


def test_example_config_forwards_loopback():
    """示例配置监听 1080，把 127.0.0.1 转发到内部主机并保留端口"""
    example = Path(__file__).parent / 'config.example.yaml'
    config = ServerConfig.from_dict(load_config(str(example)))
    assert config.port == 1080
    assert config.host == '0.0.0.0'

    rewrite = build_rewriter(config.forward_rules)
    endpoint = ResolvedEndpoint(ipaddress.ip_address('127.0.0.1'), 8080)
    assert rewrite(endpoint) == ResolvedEndpoint(ipaddress.ip_address('172.17.88.204'), 8080)


def test_no_config_uses_identity_rewriter(tmp_path):
    config = build_config(parse_args(['-c', str(tmp_path / 'missing.yaml')]))
    assert build_rewriter(config.forward_rules) is identity


def test_invalid_yaml_gives_empty(tmp_path):
    path = tmp_path / 'broken.yaml'
    path.write_text("server: [unclosed", encoding='utf-8')
    assert load_config(str(path)) == {}


def test_invalid_values_rejected():
    with pytest.raises(ValueError):
        ServerConfig(port=70000)
    with pytest.raises(ValueError):
        ServerConfig(connect_timeout=-1)


def test_cli_overrides(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(CONFIG_YAML, encoding='utf-8')

    args = parse_args(['-c', str(path), '--port', '2080', '-f', '10.0.0.0/8=192.168.0.1:3128'])
    config = build_config(args)
    assert config.port == 2080
    assert config.host == '127.0.0.1'
    assert len(config.forward_rules) == 2
    assert config.forward_rules[1].port == 3128


def test_log_config_env_override(monkeypatch):
    monkeypatch.setenv('LOG_LEVEL', 'WARNING')
    monkeypatch.setenv('LOG_ENABLE_FILE', 'true')
    log_config = LogConfig.from_dict({'level': 'DEBUG', 'enable_file': False})
    assert log_config.level == 'WARNING'
    assert log_config.enable_file is True


def test_context_filter_uses_current_context():
    record = logging.LogRecord('test', logging.INFO, __file__, 1, 'hello', None, None)
    context_filter = ContextFilter(['session_id', 'client'])

    token = add_context(session_id='s1', client='127.0.0.1:5000')
    try:
        context_filter.filter(record)
    finally:
        reset_context(token)
    assert record.context == 'session_id=s1 | client=127.0.0.1:5000'

    context_filter.filter(record)
    assert record.context == 'session_id=- | client=-'

    formatted = LogFormatter(fmt='[%(context)s] %(message)s').format(record)
    assert formatted == '[session_id=- | client=-] hello'


if __name__ == '__main__':
    sys.exit(pytest.main([__file__, '-v']))
