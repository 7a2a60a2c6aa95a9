"""
SOCKS5 握手协商

解析客户端的方法选择消息，选择认证方法并生成应答。
本模块只处理字节，不进行任何 I/O。
"""

import logging
from typing import Iterable

from .core import SOCKS5, MIN_HANDSHAKE_SIZE, MethodSelectionRequest, MethodSelectionReply
from .errors import ProtocolError, NoAcceptableMethodError

logger = logging.getLogger('socks5-forward-handshake')


def parse_method_selection(data: bytes) -> MethodSelectionRequest:
    """
    解析方法选择请求

    Args:
        data: 客户端发送的完整方法选择消息

    Returns:
        MethodSelectionRequest: 解析后的请求

    Raises:
        ProtocolError: 长度不足、版本错误或方法数量与长度不符
    """
    if len(data) < MIN_HANDSHAKE_SIZE:
        raise ProtocolError("short handshake")

    version = data[0]
    if version != SOCKS5.VERSION:
        raise ProtocolError("unsupported version")

    nmethods = data[1]
    if len(data) != 2 + nmethods:
        raise ProtocolError("method count mismatch")

    return MethodSelectionRequest(version=version, methods=list(data[2:2 + nmethods]))


def select_method(request: MethodSelectionRequest) -> MethodSelectionReply:
    """
    按客户端给出的顺序查找无认证方法

    Raises:
        NoAcceptableMethodError: 客户端未提供无认证方法
    """
    for method in request.methods:
        if method == SOCKS5.AUTH_NONE:
            return MethodSelectionReply(method=SOCKS5.AUTH_NONE)

    rejected = MethodSelectionReply(method=SOCKS5.AUTH_NO_ACCEPTABLE)
    raise NoAcceptableMethodError(reply=rejected.encode())


def negotiate(data: bytes) -> bytes:
    """
    完成握手协商

    Args:
        data: 客户端发送的完整方法选择消息

    Returns:
        bytes: 两字节应答 [0x05, 选中的方法]

    Raises:
        ProtocolError: 消息格式错误
        NoAcceptableMethodError: 没有可接受的方法，异常中携带 [0x05, 0xFF] 应答
    """
    request = parse_method_selection(data)
    logger.debug(f"客户端提供的认证方法: {[hex(m) for m in request.methods]}")
    return select_method(request).encode()


def build_method_selection(methods: Iterable[int] = (SOCKS5.AUTH_NONE,)) -> bytes:
    """构造客户端方法选择消息"""
    methods = bytes(methods)
    return bytes([SOCKS5.VERSION, len(methods)]) + methods
