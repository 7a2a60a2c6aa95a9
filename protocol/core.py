"""
SOCKS5 转发代理 - 核心协议模块
定义 SOCKS5 协议常量、枚举和消息数据结构。

功能概述:
本模块是握手协商器和请求解码器共享的基础定义，只描述数据，
不进行任何 I/O。

线路格式（RFC 1928）:

方法选择请求:
┌─────┬──────────┬──────────┐
│ VER │ NMETHODS │ METHODS  │
│  1  │    1     │ 1 到 255 │
└─────┴──────────┴──────────┘

方法选择应答:
┌─────┬────────┐
│ VER │ METHOD │
│  1  │   1    │
└─────┴────────┘

代理请求 / 应答:
┌─────┬─────────┬─────┬──────┬──────────┬──────────┐
│ VER │ CMD/REP │ RSV │ ATYP │   ADDR   │   PORT   │
│  1  │    1    │  1  │  1   │  可变长度 │    2     │
└─────┴─────────┴─────┴──────┴──────────┴──────────┘

所有多字节字段使用大端序（网络字节序）。
"""

import ipaddress
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Union


# ============================================================================
# 协议常量
# ============================================================================

class SOCKS5:
    """
    SOCKS5 协议常量定义

    本实现只支持无认证方法和 CONNECT 命令。
    """
    VERSION = 0x05
    AUTH_NONE = 0x00
    AUTH_NO_ACCEPTABLE = 0xFF
    CMD_CONNECT = 0x01
    ATYP_IPV4 = 0x01
    ATYP_DOMAIN = 0x03
    ATYP_IPV6 = 0x04


MIN_HANDSHAKE_SIZE = 3   # VER + NMETHODS + 至少 1 个方法
MIN_REQUEST_SIZE = 7     # VER + CMD + RSV + ATYP + 至少 1 字节地址 + PORT
REQUEST_HEADER_SIZE = 4  # VER + CMD + RSV + ATYP
PORT_SIZE = 2
IPV4_SIZE = 4
IPV6_SIZE = 16


class AuthMethod(IntEnum):
    NO_AUTH = 0x00
    GSSAPI = 0x01
    USERNAME_PASSWORD = 0x02
    NO_ACCEPTABLE = 0xFF


class Command(IntEnum):
    CONNECT = 0x01
    BIND = 0x02
    UDP_ASSOCIATE = 0x03


class AddressType(IntEnum):
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class ReplyCode(IntEnum):
    """代理应答的 REP 字段"""
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


# ============================================================================
# 握手消息
# ============================================================================

@dataclass
class MethodSelectionRequest:
    """
    客户端的方法选择请求

    Attributes:
        version: 协议版本，必须为 5
        methods: 按客户端给出顺序排列的方法标识列表
    """
    version: int
    methods: List[int] = field(default_factory=list)


@dataclass
class MethodSelectionReply:
    """服务器选择的认证方法"""
    method: int
    version: int = SOCKS5.VERSION

    def encode(self) -> bytes:
        return bytes([self.version, self.method])


# ============================================================================
# 请求与应答
# ============================================================================

@dataclass(frozen=True)
class ResolvedEndpoint:
    """
    已解析的目标地址

    只包含 IP 地址和端口，由 ProxyRequest 生成，拨号时使用一次。
    """
    address: IPAddress
    port: int

    @property
    def host(self) -> str:
        return str(self.address)

    @property
    def packed(self) -> bytes:
        return self.address.packed

    def replace(self, address: Optional[IPAddress] = None, port: Optional[int] = None) -> 'ResolvedEndpoint':
        return ResolvedEndpoint(
            address=self.address if address is None else address,
            port=self.port if port is None else port,
        )

    def __str__(self) -> str:
        if self.address.version == 6:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"


@dataclass
class ProxyRequest:
    """
    客户端代理请求

    Attributes:
        version: 协议版本
        command: 命令码（只支持 CONNECT）
        reserved: 保留字节，忽略
        address_type: 地址类型
        address: 原始地址字节（IPv4/IPv6 为网络序地址，域名为文本字节）
        port: 目标端口
        domain: 域名文本，仅用于日志诊断
        endpoint: 解析后的目标地址，解析完成前为 None
    """
    version: int
    command: int
    reserved: int
    address_type: int
    address: bytes
    port: int
    domain: Optional[str] = None
    endpoint: Optional[ResolvedEndpoint] = None

    @property
    def target(self) -> str:
        """用于日志的目标描述"""
        if self.domain is not None:
            return f"{self.domain}:{self.port}"
        if self.endpoint is not None:
            return str(self.endpoint)
        return f"<{self.address.hex()}>:{self.port}"


@dataclass
class ProxyReply:
    """
    服务器代理应答

    默认值即最简成功应答：绑定地址 0.0.0.0，端口 0。
    """
    status: int = ReplyCode.SUCCEEDED
    address_type: int = AddressType.IPV4
    bound_address: bytes = b'\x00\x00\x00\x00'
    bound_port: int = 0
    version: int = SOCKS5.VERSION
    reserved: int = 0x00

    def encode(self) -> bytes:
        header = struct.pack('>BBBB', self.version, self.status, self.reserved, self.address_type)
        return header + self.bound_address + struct.pack('>H', self.bound_port)

    @classmethod
    def success(cls) -> 'ProxyReply':
        return cls()

    @classmethod
    def failure(cls, code: int = ReplyCode.GENERAL_FAILURE) -> 'ProxyReply':
        return cls(status=code)


SUCCESS_REPLY = ProxyReply.success().encode()
