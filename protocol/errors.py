"""
SOCKS5 转发代理 - 错误类型

所有错误都只影响单个会话，会话在顶层捕获 ProxyError 并关闭连接。
携带 reply_code 的错误在关闭前会向客户端发送对应的失败应答。

    ProxyError
    ├── ProtocolError
    │   ├── NoAcceptableMethodError
    │   ├── UnsupportedCommandError   (REP=0x07)
    │   └── AddressTypeError          (REP=0x08)
    ├── ResolutionError               (REP=0x04)
    ├── DialError                     (REP 由系统错误码决定)
    └── TransportError
"""

from typing import Optional

from .core import ReplyCode


class ProxyError(Exception):
    """
    代理错误基类

    Attributes:
        reply_code: 关闭连接前需要发送的 SOCKS5 应答码，None 表示不发送
    """
    reply_code: Optional[int] = None

    def __init__(self, message: str = '', reply_code: Optional[int] = None):
        super().__init__(message)
        if reply_code is not None:
            self.reply_code = reply_code


class ProtocolError(ProxyError):
    """握手或请求字节格式错误、版本不支持等协议错误"""


class NoAcceptableMethodError(ProtocolError):
    """
    客户端没有提供可接受的认证方法

    reply 为 RFC 1928 规定的 [0x05, 0xFF] 应答，是否发送由
    strict_negotiation 配置决定。
    """

    def __init__(self, message: str = 'no acceptable method', reply: bytes = b'\x05\xff'):
        super().__init__(message)
        self.reply = reply


class UnsupportedCommandError(ProtocolError):
    """请求命令不是 CONNECT（BIND、UDP ASSOCIATE 均不支持）"""
    reply_code = ReplyCode.COMMAND_NOT_SUPPORTED

    def __init__(self, command: int):
        super().__init__(f"unsupported command: {command:#04x}")
        self.command = command


class AddressTypeError(ProtocolError):
    """未知的地址类型"""
    reply_code = ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED

    def __init__(self, address_type: int):
        super().__init__(f"bad address type: {address_type:#04x}")
        self.address_type = address_type


class ResolutionError(ProxyError):
    """域名解析失败或超时"""
    reply_code = ReplyCode.HOST_UNREACHABLE

    def __init__(self, domain: str, reason: str = ''):
        message = f"cannot resolve {domain!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.domain = domain


class DialError(ProxyError):
    """连接目标主机失败或超时"""
    reply_code = ReplyCode.GENERAL_FAILURE


class TransportError(ProxyError):
    """客户端或目标连接上的读写失败"""
