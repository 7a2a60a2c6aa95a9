#!/usr/bin/env python3
"""
握手协商测试

使用方法:
    python3 -m pytest test_handshake.py -v
"""

import sys

import pytest

from protocol import (
    SOCKS5, ProtocolError, NoAcceptableMethodError,
    negotiate, parse_method_selection, build_method_selection,
)


def test_no_auth_only():
    """[5,1,0] 协商成功，应答 [5,0]"""
    assert negotiate(bytes([5, 1, 0])) == bytes([5, 0])


@pytest.mark.parametrize('methods', [
    [0],
    [2, 0],
    [1, 2, 0x80, 0],
    [0, 2],
    list(range(255)),
])
def test_no_auth_selected_when_offered(methods):
    """只要方法列表中包含 0，应答方法就是 0"""
    reply = negotiate(build_method_selection(methods))
    assert reply == bytes([SOCKS5.VERSION, SOCKS5.AUTH_NONE])


@pytest.mark.parametrize('methods', [[2], [1, 2], [0x80, 0xFE]])
def test_no_acceptable_method(methods):
    """不包含 0 时协商失败，异常携带 [5,0xFF] 应答"""
    with pytest.raises(NoAcceptableMethodError) as exc_info:
        negotiate(build_method_selection(methods))
    assert isinstance(exc_info.value, ProtocolError)
    assert exc_info.value.reply == bytes([5, 0xFF])
    assert "no acceptable method" in str(exc_info.value)


def test_zero_methods_is_length_error():
    """N=0 的两字节消息返回长度错误而不是越界"""
    with pytest.raises(ProtocolError, match="short handshake"):
        negotiate(bytes([5, 0]))


@pytest.mark.parametrize('data', [b'', b'\x05', b'\x05\x01'])
def test_short_handshake(data):
    with pytest.raises(ProtocolError, match="short handshake"):
        negotiate(data)


def test_unsupported_version():
    with pytest.raises(ProtocolError, match="unsupported version"):
        negotiate(bytes([4, 1, 0]))


@pytest.mark.parametrize('data', [
    bytes([5, 2, 0]),        # 声明 2 个方法，只给 1 个
    bytes([5, 1, 0, 2]),     # 声明 1 个方法，多出 1 个
    bytes([5, 3, 0, 1]),
])
def test_method_count_mismatch(data):
    with pytest.raises(ProtocolError, match="method count mismatch"):
        negotiate(data)


def test_parse_keeps_method_order():
    request = parse_method_selection(bytes([5, 3, 2, 0, 1]))
    assert request.version == 5
    assert request.methods == [2, 0, 1]


if __name__ == '__main__':
    sys.exit(pytest.main([__file__, '-v']))
