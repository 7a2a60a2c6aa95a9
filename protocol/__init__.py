"""
SOCKS5 协议包

本包提供 SOCKS5 转发代理的协议定义和实现，包括：
- 协议常量、枚举和消息数据结构
- 握手协商（方法选择）
- 代理请求解码与应答编码
- 错误类型

使用示例：
    from protocol import negotiate, decode_request

    reply = negotiate(b'\\x05\\x01\\x00')          # b'\\x05\\x00'
    request, reply = await decode_request(data)
    print(request.endpoint)
"""

from .core import (
    # 协议常量
    SOCKS5,
    MIN_HANDSHAKE_SIZE,
    MIN_REQUEST_SIZE,
    REQUEST_HEADER_SIZE,

    # 枚举
    AuthMethod,
    Command,
    AddressType,
    ReplyCode,
    IPAddress,

    # 数据结构
    MethodSelectionRequest,
    MethodSelectionReply,
    ProxyRequest,
    ProxyReply,
    ResolvedEndpoint,
    SUCCESS_REPLY,
)
from .errors import (
    ProxyError,
    ProtocolError,
    NoAcceptableMethodError,
    UnsupportedCommandError,
    AddressTypeError,
    ResolutionError,
    DialError,
    TransportError,
)
from .handshake import (
    parse_method_selection,
    select_method,
    negotiate,
    build_method_selection,
)
from .request import (
    request_length,
    parse_request,
    resolve_request,
    decode_request,
    system_resolver,
    build_request,
)
