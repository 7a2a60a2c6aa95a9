"""
SOCKS5 请求解码

解析客户端 CONNECT 请求，把目标地址解析为具体的 IP 和端口，
并生成成功应答。

域名在解码阶段就解析为 IP 地址，之后的拨号和地址改写只使用 IP，
避免后续环节再次经过 DNS。域名文本只保留用于日志。

地址字段的取法:
- IPv4 (0x01): data[4:8]，请求总长必须为 10
- 域名 (0x03): data[5:len-2]，长度前缀字节不参与截取
- IPv6 (0x04): data[4:20]，请求总长必须为 22
端口总是最后两个字节。
"""

import asyncio
import ipaddress
import logging
import socket
import struct
from typing import Awaitable, Callable, Optional, Tuple, Union

from .core import (
    SOCKS5, MIN_REQUEST_SIZE, REQUEST_HEADER_SIZE, PORT_SIZE, IPV4_SIZE, IPV6_SIZE,
    AddressType, Command, IPAddress, ProxyRequest, ResolvedEndpoint, SUCCESS_REPLY,
)
from .errors import ProtocolError, UnsupportedCommandError, AddressTypeError, ResolutionError

logger = logging.getLogger('socks5-forward-request')

Resolver = Callable[[str], Awaitable[Union[str, IPAddress]]]


def request_length(header: bytes, domain_length: Optional[int] = None) -> int:
    """
    根据请求头计算完整请求的字节数

    Args:
        header: 请求的前 4 个字节（VER, CMD, RSV, ATYP）
        domain_length: 域名请求的长度前缀字节，仅 ATYP=0x03 时需要

    Returns:
        int: 完整请求长度

    检查顺序与 parse_request() 一致：版本、命令、地址类型。
    地址类型已知时不检查命令，由 parse_request() 在读完整个请求后报告。

    Raises:
        ProtocolError: 请求头不足 4 字节或版本不是 5
        UnsupportedCommandError: 地址类型未知且命令不是 CONNECT
        AddressTypeError: 未知的地址类型
    """
    if len(header) < REQUEST_HEADER_SIZE:
        raise ProtocolError("short request")

    version, command, _, atyp = header[:REQUEST_HEADER_SIZE]
    if version != SOCKS5.VERSION:
        raise ProtocolError("unsupported version")
    if atyp == SOCKS5.ATYP_IPV4:
        return REQUEST_HEADER_SIZE + IPV4_SIZE + PORT_SIZE
    if atyp == SOCKS5.ATYP_IPV6:
        return REQUEST_HEADER_SIZE + IPV6_SIZE + PORT_SIZE
    if atyp == SOCKS5.ATYP_DOMAIN:
        if domain_length is None:
            raise ValueError("domain_length is required for domain requests")
        return REQUEST_HEADER_SIZE + 1 + domain_length + PORT_SIZE
    if command != SOCKS5.CMD_CONNECT:
        raise UnsupportedCommandError(command)
    raise AddressTypeError(atyp)


def parse_request(data: bytes) -> ProxyRequest:
    """
    解析代理请求，不进行域名解析

    IPv4 和 IPv6 请求直接生成 endpoint；域名请求只填充 domain，
    endpoint 为 None，需要再调用 resolve_request()。

    Raises:
        ProtocolError: 长度错误、版本错误、域名为空或无法解码
        UnsupportedCommandError: 命令不是 CONNECT
        AddressTypeError: 未知的地址类型
    """
    n = len(data)
    if n < MIN_REQUEST_SIZE:
        raise ProtocolError("short request")

    version, command, reserved, atyp = data[:REQUEST_HEADER_SIZE]
    if version != SOCKS5.VERSION:
        raise ProtocolError("unsupported version")

    if command != SOCKS5.CMD_CONNECT:
        raise UnsupportedCommandError(command)

    port = struct.unpack('>H', data[n - PORT_SIZE:n])[0]
    domain = None
    endpoint = None

    if atyp == SOCKS5.ATYP_IPV4:
        if n != REQUEST_HEADER_SIZE + IPV4_SIZE + PORT_SIZE:
            raise ProtocolError("request length mismatch")
        address = bytes(data[4:4 + IPV4_SIZE])
        endpoint = ResolvedEndpoint(ipaddress.IPv4Address(address), port)
    elif atyp == SOCKS5.ATYP_DOMAIN:
        address = bytes(data[5:n - PORT_SIZE])
        if not address:
            raise ProtocolError("empty domain")
        try:
            domain = address.decode('utf-8')
        except UnicodeDecodeError:
            raise ProtocolError("bad domain encoding")
    elif atyp == SOCKS5.ATYP_IPV6:
        if n != REQUEST_HEADER_SIZE + IPV6_SIZE + PORT_SIZE:
            raise ProtocolError("request length mismatch")
        address = bytes(data[4:4 + IPV6_SIZE])
        endpoint = ResolvedEndpoint(ipaddress.IPv6Address(address), port)
    else:
        raise AddressTypeError(atyp)

    return ProxyRequest(
        version=version,
        command=command,
        reserved=reserved,
        address_type=atyp,
        address=address,
        port=port,
        domain=domain,
        endpoint=endpoint,
    )


async def system_resolver(domain: str) -> str:
    """使用事件循环的 getaddrinfo 解析域名，返回第一个地址"""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(domain, None, type=socket.SOCK_STREAM)
    if not infos:
        raise socket.gaierror(f"no address for {domain}")
    return infos[0][4][0]


async def resolve_request(request: ProxyRequest, timeout: Optional[float] = None,
                          resolver: Optional[Resolver] = None) -> ResolvedEndpoint:
    """
    把域名请求解析为具体地址

    已有 endpoint 的请求（IPv4/IPv6）原样返回。

    Args:
        request: parse_request() 的结果
        timeout: 解析超时（秒），None 表示不限制
        resolver: 异步解析函数，默认使用 system_resolver

    Raises:
        ResolutionError: 解析失败、超时或返回了无效地址
    """
    if request.endpoint is not None:
        return request.endpoint

    resolver = resolver or system_resolver
    domain = request.domain
    try:
        result = await asyncio.wait_for(resolver(domain), timeout=timeout)
        address = ipaddress.ip_address(result)
    except asyncio.TimeoutError:
        raise ResolutionError(domain, "timed out")
    except (OSError, UnicodeError, ValueError) as e:
        raise ResolutionError(domain, str(e))

    logger.debug(f"域名解析: {domain} -> {address}")
    request.endpoint = ResolvedEndpoint(address, request.port)
    return request.endpoint


async def decode_request(data: bytes, timeout: Optional[float] = None,
                         resolver: Optional[Resolver] = None) -> Tuple[ProxyRequest, bytes]:
    """
    解码代理请求并解析目标地址

    Args:
        data: 客户端发送的完整请求
        timeout: 域名解析超时（秒）
        resolver: 异步解析函数

    Returns:
        tuple: (ProxyRequest, 成功应答字节)。应答必须在拨号成功后才发送。

    Raises:
        ProtocolError, UnsupportedCommandError, AddressTypeError, ResolutionError
    """
    request = parse_request(data)
    await resolve_request(request, timeout=timeout, resolver=resolver)
    return request, SUCCESS_REPLY


def build_request(host: str, port: int, command: int = Command.CONNECT) -> bytes:
    """
    构造客户端代理请求

    host 为 IP 地址时使用 IPv4/IPv6 地址类型，否则按域名编码。
    """
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        address = None

    if address is None:
        name = host.encode('utf-8')
        if len(name) > 255:
            raise ValueError(f"domain too long: {len(name)} bytes (max 255)")
        atyp = AddressType.DOMAIN
        payload = bytes([len(name)]) + name
    elif address.version == 4:
        atyp = AddressType.IPV4
        payload = address.packed
    else:
        atyp = AddressType.IPV6
        payload = address.packed

    return struct.pack('>BBBB', SOCKS5.VERSION, command, 0x00, atyp) + payload + struct.pack('>H', port)
