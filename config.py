"""
SOCKS5 转发代理 - 配置管理模块
加载 YAML 配置文件，构造服务器配置。

配置文件格式（config.yaml）:

    server:
      host: 0.0.0.0
      port: 1080
      buffer_size: 32768
      strict_negotiation: false   # true: 无可用方法时先回复 [05 FF] 再关闭
      handshake_timeout: 10       # 握手与请求读取超时（秒）
      resolve_timeout: 5          # 域名解析超时（秒）
      connect_timeout: 10         # 拨号超时（秒）
      idle_timeout: null          # 转发阶段空闲超时（秒，两个方向均无数据），null 表示不限制
      stats_interval: 60          # 连接统计输出间隔（秒），0 表示关闭

    forward:
      rules:
        - match: 127.0.0.1
          target: 172.17.88.204

    logging:
      level: INFO
      ...

超时字段为 null 或 0 时表示不限制。
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from forward import ForwardRule, rules_from_config

logger = logging.getLogger(__name__)


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class ServerConfig:
    """
    服务器配置数据类

    Attributes:
        host: 监听地址（默认: "0.0.0.0"）
        port: 监听端口（默认: 1080）
        buffer_size: 每次读取的最大字节数（默认: 32768）
        strict_negotiation: 无可用认证方法时是否按 RFC 回复 [05 FF] 后再关闭（默认: False）
        handshake_timeout: 握手和请求读取超时（秒，默认: 10）
        resolve_timeout: 域名解析超时（秒，默认: 5）
        connect_timeout: 拨号超时（秒，默认: 10）
        idle_timeout: 转发阶段空闲超时，两个方向均无数据时关闭（秒，默认: None 不限制）
        stats_interval: 连接统计输出间隔（秒，默认: 60，0 关闭）
        forward_rules: 目标地址改写规则
    """
    host: str = "0.0.0.0"
    port: int = 1080
    buffer_size: int = 32768
    strict_negotiation: bool = False
    handshake_timeout: Optional[float] = 10.0
    resolve_timeout: Optional[float] = 5.0
    connect_timeout: Optional[float] = 10.0
    idle_timeout: Optional[float] = None
    stats_interval: int = 60
    forward_rules: List[ForwardRule] = field(default_factory=list)

    def __post_init__(self):
        if not 0 <= self.port < 65536:
            raise ValueError(f"无效的监听端口: {self.port}")
        if self.buffer_size <= 0:
            raise ValueError(f"无效的缓冲区大小: {self.buffer_size}")
        for name in ('handshake_timeout', 'resolve_timeout', 'connect_timeout', 'idle_timeout'):
            value = getattr(self, name)
            if not value:
                setattr(self, name, None)
            elif value < 0:
                raise ValueError(f"{name} 不能为负数: {value}")

    @classmethod
    def from_dict(cls, config_data: Optional[Dict[str, Any]]) -> 'ServerConfig':
        """
        从配置字典构造

        Args:
            config_data: load_config() 返回的完整配置字典

        Returns:
            ServerConfig: 未出现的字段使用默认值
        """
        config_data = config_data or {}
        server_conf = config_data.get('server') or {}
        forward_conf = config_data.get('forward') or {}
        defaults = cls()

        return cls(
            host=server_conf.get('host', defaults.host),
            port=int(server_conf.get('port', defaults.port)),
            buffer_size=int(server_conf.get('buffer_size', defaults.buffer_size)),
            strict_negotiation=bool(server_conf.get('strict_negotiation', defaults.strict_negotiation)),
            handshake_timeout=server_conf.get('handshake_timeout', defaults.handshake_timeout),
            resolve_timeout=server_conf.get('resolve_timeout', defaults.resolve_timeout),
            connect_timeout=server_conf.get('connect_timeout', defaults.connect_timeout),
            idle_timeout=server_conf.get('idle_timeout', defaults.idle_timeout),
            stats_interval=int(server_conf.get('stats_interval', defaults.stats_interval)),
            forward_rules=rules_from_config(forward_conf.get('rules')),
        )


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: str) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或格式错误则返回空字典
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"配置文件格式错误: {e}")
        return {}
