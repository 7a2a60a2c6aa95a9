#!/usr/bin/env python3
"""
SOCKS5 转发代理 - 服务端

监听本地端口，为每个接受的连接创建一个 RelaySession。
会话之间不共享可变状态；监听器只维护连接统计计数。

功能:
- 无认证 SOCKS5 CONNECT 代理
- 可配置的目标地址改写（例如把 127.0.0.1 转发到内部主机）
- 握手、解析、拨号、空闲超时
- 定期输出连接统计和进程资源使用
"""

import argparse
import asyncio
import itertools
import logging
import os
from dataclasses import dataclass, replace
from typing import Dict, Optional, Set

import psutil

from config import ServerConfig, load_config
from forward import ForwardRule, Rewriter, build_rewriter
from logger import LoggerManager
from protocol.request import Resolver
from session import Dialer, RelaySession, SessionResult, open_tcp_connection

logger = logging.getLogger('socks5-forward-server')


@dataclass
class ServerStats:
    """监听器的连接统计"""
    total: int = 0
    active: int = 0
    failed: int = 0
    bytes_up: int = 0
    bytes_down: int = 0

    def record(self, result: SessionResult):
        if not result.ok:
            self.failed += 1
        self.bytes_up += result.bytes_up
        self.bytes_down += result.bytes_down


def process_stats() -> Dict[str, float]:
    """当前进程的文件描述符数和内存占用"""
    proc = psutil.Process(os.getpid())
    return {
        'num_fds': proc.num_fds() if hasattr(proc, 'num_fds') else 0,
        'memory_mb': proc.memory_info().rss / 1024 / 1024,
    }


class Socks5Server:
    """
    SOCKS5 代理服务器

    Attributes:
        config: 服务器配置
        rewrite: 地址改写器，由 config.forward_rules 构造
        stats: 连接统计
    """

    def __init__(self, config: ServerConfig, rewrite: Optional[Rewriter] = None,
                 resolver: Optional[Resolver] = None, dialer: Dialer = open_tcp_connection):
        logger.info(f"初始化 SOCKS5 服务器: host={config.host}, port={config.port}")
        self.config = config
        self.rewrite = rewrite or build_rewriter(config.forward_rules)
        self.resolver = resolver
        self.dialer = dialer
        self.stats = ServerStats()
        self._ids = itertools.count(1)
        self._sessions: Set[asyncio.Task] = set()
        self._server: Optional[asyncio.AbstractServer] = None

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> SessionResult:
        """
        处理一个客户端连接，直到会话结束

        从不抛出异常；会话结果计入统计后返回。
        """
        self.stats.total += 1
        self.stats.active += 1
        task = asyncio.current_task()
        self._sessions.add(task)

        session = RelaySession(
            reader, writer,
            config=self.config,
            rewrite=self.rewrite,
            resolver=self.resolver,
            dialer=self.dialer,
            session_id=f"s{next(self._ids)}",
        )
        try:
            result = await session.run()
            self.stats.record(result)
            return result
        finally:
            self.stats.active -= 1
            self._sessions.discard(task)

    async def start(self) -> asyncio.AbstractServer:
        """启动监听，返回 asyncio 服务器对象"""
        self._server = await asyncio.start_server(self.handle_client, self.config.host, self.config.port)
        addr = self._server.sockets[0].getsockname()
        logger.info(f"SOCKS5 代理在 {addr[0]}:{addr[1]}")
        return self._server

    @property
    def address(self):
        """实际监听的 (host, port)，port=0 时可用于获取系统分配的端口"""
        if self._server is None:
            return None
        return self._server.sockets[0].getsockname()[:2]

    async def serve_forever(self):
        """启动服务器并持续运行"""
        server = await self.start()
        stats_task = None
        if self.config.stats_interval > 0:
            stats_task = asyncio.create_task(self._report_stats())

        try:
            await server.serve_forever()
        finally:
            if stats_task:
                stats_task.cancel()
            await self.close()

    async def close(self):
        """停止监听并取消仍在运行的会话"""
        if self._server is None:
            return
        self._server.close()
        sessions = list(self._sessions)
        for task in sessions:
            task.cancel()
        if sessions:
            await asyncio.gather(*sessions, return_exceptions=True)
        # wait_closed 会等待所有客户端连接结束，必须在会话取消之后
        await self._server.wait_closed()

    def format_stats(self) -> str:
        stats = self.stats
        proc = process_stats()
        return (f"连接统计: 总计={stats.total}, "
                f"活跃={stats.active}, "
                f"失败={stats.failed}, "
                f"上行={stats.bytes_up}B, "
                f"下行={stats.bytes_down}B, "
                f"文件描述符={proc['num_fds']}, "
                f"内存={proc['memory_mb']:.1f}MB")

    async def _report_stats(self):
        """定期报告连接统计"""
        while True:
            try:
                await asyncio.sleep(self.config.stats_interval)
                logger.info(self.format_stats())
            except asyncio.CancelledError:
                break
            except psutil.Error as e:
                logger.error(f"报告连接统计时出错: {e}")


def build_config(args: argparse.Namespace) -> ServerConfig:
    """读取配置文件并应用命令行覆盖"""
    config = ServerConfig.from_dict(load_config(args.config))
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        # replace() 重新执行 __post_init__ 校验端口
        config = replace(config, port=args.port)
    if args.strict:
        config.strict_negotiation = True
    for spec in args.forward or []:
        config.forward_rules.append(ForwardRule.from_spec(spec))
    return config


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='SOCKS5 转发代理')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--host', default=None, help='监听地址（覆盖配置文件）')
    parser.add_argument('--port', '-p', type=int, default=None, help='监听端口（覆盖配置文件）')
    parser.add_argument('--forward', '-f', action='append', metavar='MATCH=TARGET[:PORT]',
                        help='目标地址改写规则，可重复，例如 127.0.0.1=172.17.88.204')
    parser.add_argument('--strict', action='store_true', help='无可用认证方法时回复 [05 FF] 后再关闭')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    """主函数"""
    args = parse_args(argv)

    manager = LoggerManager()
    manager.initialize(config_file=args.config)
    if args.debug:
        manager.set_level(logging.DEBUG)

    try:
        config = build_config(args)
    except ValueError as e:
        logger.error(f"配置错误: {e}")
        return 1

    for rule in config.forward_rules:
        logger.info(f"转发规则: {rule.match} -> {rule.target}{':' + str(rule.port) if rule.port else ''}")

    server = Socks5Server(config)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("服务端已停止")
    except OSError as e:
        logger.error(f"监听 {config.host}:{config.port} 失败: {e}")
        return 1

    return 0


if __name__ == '__main__':
    exit(main())
