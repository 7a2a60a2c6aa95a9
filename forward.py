"""
SOCKS5 转发代理 - 目标地址改写

地址改写器是一个纯函数 (ResolvedEndpoint) -> ResolvedEndpoint，
在拨号前由会话调用。典型用法是把访问本机回环地址的请求转发到
一台固定的内部主机。

改写器按会话注入，不使用全局状态；未配置任何规则时为恒等函数。

规则格式（config.yaml）:
    forward:
      rules:
        - match: 127.0.0.1           # 单个地址或 CIDR
          target: 172.17.88.204      # 改写后的地址
          port: 8080                 # 可选，省略则保留原端口
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from protocol import IPAddress, ResolvedEndpoint

logger = logging.getLogger('socks5-forward-rewrite')

Rewriter = Callable[[ResolvedEndpoint], ResolvedEndpoint]

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def identity(endpoint: ResolvedEndpoint) -> ResolvedEndpoint:
    """默认改写器：原样返回"""
    return endpoint


@dataclass(frozen=True)
class ForwardRule:
    """
    单条转发规则

    Attributes:
        match: 需要改写的目标网络
        target: 改写后的目标地址
        port: 改写后的端口，None 表示保留原端口
    """
    match: IPNetwork
    target: IPAddress
    port: Optional[int] = None

    def __post_init__(self):
        if self.target.version == self.match.version and self.target in self.match:
            # 目标落在匹配网络内时改写不再幂等
            raise ValueError(f"转发目标 {self.target} 位于匹配网络 {self.match} 内")
        if self.port is not None and not 0 < self.port < 65536:
            raise ValueError(f"无效的转发端口: {self.port}")

    def matches(self, endpoint: ResolvedEndpoint) -> bool:
        return endpoint.address.version == self.match.version and endpoint.address in self.match

    def apply(self, endpoint: ResolvedEndpoint) -> ResolvedEndpoint:
        return endpoint.replace(address=self.target, port=self.port)

    @classmethod
    def parse(cls, match: str, target: str, port: Optional[int] = None) -> 'ForwardRule':
        """从字符串构造规则，match 可以是单个地址或 CIDR"""
        return cls(
            match=ipaddress.ip_network(match, strict=False),
            target=ipaddress.ip_address(target),
            port=port,
        )

    @classmethod
    def from_spec(cls, spec: str) -> 'ForwardRule':
        """
        解析命令行规则 "MATCH=TARGET[:PORT]"

        Example:
            >>> ForwardRule.from_spec("127.0.0.1=172.17.88.204")
            >>> ForwardRule.from_spec("10.0.0.0/8=192.168.1.10:3128")
        """
        if '=' not in spec:
            raise ValueError(f"无效的转发规则: {spec!r}，格式应为 MATCH=TARGET[:PORT]")
        match, target = spec.split('=', 1)
        port = None
        if target.startswith('['):
            # [IPv6]:PORT
            host, _, rest = target[1:].partition(']')
            target = host
            if rest.startswith(':'):
                port = int(rest[1:])
        elif target.count(':') == 1:
            target, port_text = target.split(':')
            port = int(port_text)
        return cls.parse(match.strip(), target.strip(), port)


def build_rewriter(rules: Iterable[ForwardRule]) -> Rewriter:
    """
    由规则列表构造改写器

    按顺序匹配，第一条命中的规则生效；没有命中时原样返回。
    所有规则的目标都不在自身匹配网络内，因此对改写结果再次改写
    （在目标不被其他规则命中时）返回原值。
    """
    rules = list(rules)
    if not rules:
        return identity

    def rewrite(endpoint: ResolvedEndpoint) -> ResolvedEndpoint:
        for rule in rules:
            if rule.matches(endpoint):
                result = rule.apply(endpoint)
                logger.info(f"开启转发: {endpoint} -> {result}")
                return result
        return endpoint

    return rewrite


def loopback_rewriter(target: str, port: Optional[int] = None) -> Rewriter:
    """把访问 127.0.0.1 的请求转发到 target"""
    return build_rewriter([ForwardRule.parse('127.0.0.1', target, port)])


def rules_from_config(entries: Optional[List[Dict[str, Any]]]) -> List[ForwardRule]:
    """
    从配置字典列表构造规则

    Args:
        entries: [{'match': ..., 'target': ..., 'port': ...}, ...]

    Raises:
        ValueError: 规则缺少字段或地址无效
    """
    rules = []
    for entry in entries or []:
        if 'match' not in entry or 'target' not in entry:
            raise ValueError(f"转发规则缺少 match 或 target: {entry}")
        port = entry.get('port')
        rules.append(ForwardRule.parse(str(entry['match']), str(entry['target']),
                                       int(port) if port is not None else None))
    return rules
