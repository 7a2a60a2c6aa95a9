"""
SOCKS5 转发代理 - 转发会话

每个客户端连接对应一个 RelaySession，负责完整的生命周期:

    LISTENING → HANDSHAKING → REQUEST_PENDING → DIALING → RELAYING → CLOSED

1. 读取方法选择消息并协商（HANDSHAKING）
2. 读取代理请求、解码并解析域名（REQUEST_PENDING）
3. 经地址改写器改写目标后拨号（DIALING）
4. 拨号成功后才发送成功应答，然后双向转发（RELAYING）
5. 两个方向都结束后关闭两个连接（CLOSED）

任何状态下的协议错误、读写错误、解析失败或拨号失败都直接进入 CLOSED，
并关闭客户端连接和已打开的目标连接。会话从不向调用者抛出异常，
结果通过 SessionResult 返回。
"""

import asyncio
import errno
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple

from config import ServerConfig
from forward import Rewriter, identity
from logger import add_context, reset_context
from protocol import (
    SOCKS5, REQUEST_HEADER_SIZE, ReplyCode, ProxyReply, ProxyRequest, ResolvedEndpoint,
    ProxyError, ProtocolError, NoAcceptableMethodError, DialError, TransportError,
    negotiate, decode_request, request_length,
)
from protocol.request import Resolver

logger = logging.getLogger('socks5-forward-session')

Dialer = Callable[[ResolvedEndpoint], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class SessionState(Enum):
    LISTENING = 'listening'
    HANDSHAKING = 'handshaking'
    REQUEST_PENDING = 'request_pending'
    DIALING = 'dialing'
    RELAYING = 'relaying'
    CLOSED = 'closed'


_TRANSITIONS = {
    SessionState.LISTENING: {SessionState.HANDSHAKING, SessionState.CLOSED},
    SessionState.HANDSHAKING: {SessionState.REQUEST_PENDING, SessionState.CLOSED},
    SessionState.REQUEST_PENDING: {SessionState.DIALING, SessionState.CLOSED},
    SessionState.DIALING: {SessionState.RELAYING, SessionState.CLOSED},
    SessionState.RELAYING: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}

_DIAL_REPLY_CODES = {
    errno.ECONNREFUSED: ReplyCode.CONNECTION_REFUSED,
    errno.ENETUNREACH: ReplyCode.NETWORK_UNREACHABLE,
    errno.EHOSTUNREACH: ReplyCode.HOST_UNREACHABLE,
    errno.ETIMEDOUT: ReplyCode.HOST_UNREACHABLE,
}


def dial_reply_code(error: OSError) -> int:
    """把拨号时的系统错误映射为 SOCKS5 应答码"""
    if isinstance(error, ConnectionRefusedError):
        return ReplyCode.CONNECTION_REFUSED
    return _DIAL_REPLY_CODES.get(error.errno, ReplyCode.GENERAL_FAILURE)


async def open_tcp_connection(endpoint: ResolvedEndpoint) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """默认拨号器"""
    return await asyncio.open_connection(endpoint.host, endpoint.port)


@dataclass
class SessionResult:
    """
    会话结束时的结果

    Attributes:
        session_id: 会话标识
        client: 客户端地址
        reached: 关闭前到达的最后一个状态
        error: 导致会话结束的错误，正常结束为 None
        request: 解码后的代理请求（如果已解码）
        endpoint: 实际拨号的目标地址（改写之后）
        bytes_up: 客户端 → 目标 的字节数
        bytes_down: 目标 → 客户端 的字节数
    """
    session_id: str
    client: Optional[str]
    reached: SessionState
    error: Optional[ProxyError] = None
    request: Optional[ProxyRequest] = None
    endpoint: Optional[ResolvedEndpoint] = None
    bytes_up: int = 0
    bytes_down: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class RelaySession:
    """
    单个客户端连接的转发会话

    Attributes:
        reader: 客户端读取流
        writer: 客户端写入流
        config: 服务器配置（超时、缓冲区大小、协商模式）
        rewrite: 地址改写器
        resolver: 域名解析函数，None 使用系统解析
        dialer: 拨号函数
        state: 当前状态
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 config: Optional[ServerConfig] = None, rewrite: Rewriter = identity,
                 resolver: Optional[Resolver] = None, dialer: Dialer = open_tcp_connection,
                 session_id: Optional[str] = None):
        self.reader = reader
        self.writer = writer
        self.config = config or ServerConfig()
        self.rewrite = rewrite
        self.resolver = resolver
        self.dialer = dialer
        self.session_id = session_id or uuid.uuid4().hex[:8]

        self.remote_reader: Optional[asyncio.StreamReader] = None
        self.remote_writer: Optional[asyncio.StreamWriter] = None
        self.request: Optional[ProxyRequest] = None
        self.endpoint: Optional[ResolvedEndpoint] = None
        self.bytes_up = 0
        self.bytes_down = 0

        self._state = SessionState.LISTENING
        self._reached = SessionState.LISTENING
        self._last_activity = 0.0
        self._success_reply = b''

        peer = writer.get_extra_info('peername')
        self.client = f"{peer[0]}:{peer[1]}" if peer else None

    @property
    def state(self) -> SessionState:
        return self._state

    def _transition(self, new_state: SessionState):
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"非法状态转换: {self._state.value} -> {new_state.value}")
        logger.debug(f"状态转换: {self._state.value} -> {new_state.value}")
        if new_state is not SessionState.CLOSED:
            self._reached = new_state
        self._state = new_state

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def run(self) -> SessionResult:
        """
        执行完整的会话生命周期，直到两个连接都关闭

        Returns:
            SessionResult: 会话结果，错误记录在 result.error 中
        """
        token = add_context(session_id=self.session_id, client=self.client or '-')
        error = None
        try:
            try:
                self._transition(SessionState.HANDSHAKING)
                await self._handshake()
                self._transition(SessionState.REQUEST_PENDING)
                await self._read_request()
                self._transition(SessionState.DIALING)
                await self._dial()
                self._transition(SessionState.RELAYING)
                await self._write(self._success_reply, "success reply")
                await self._relay()
            except ProxyError as e:
                error = e
            except OSError as e:
                error = TransportError(str(e))
            except Exception as e:
                logger.exception(f"会话内部错误: {e}")
                error = ProxyError(f"internal error: {e}")

            if error is not None:
                self._log_error(error)
                await self._send_failure(error)
        finally:
            # 被取消（服务器关闭）时同样释放两个连接
            await self._close()
            self._transition(SessionState.CLOSED)
            logger.info(f"会话结束: 目标={self.endpoint or '-'}, 上行={self.bytes_up}, 下行={self.bytes_down}")
            reset_context(token)

        return SessionResult(
            session_id=self.session_id,
            client=self.client,
            reached=self._reached,
            error=error,
            request=self.request,
            endpoint=self.endpoint,
            bytes_up=self.bytes_up,
            bytes_down=self.bytes_down,
        )

    def _log_error(self, error: ProxyError):
        name = type(error).__name__
        if isinstance(error, (ProtocolError, DialError)):
            logger.warning(f"{self._reached.value} 阶段失败: {name}: {error}")
        else:
            logger.info(f"{self._reached.value} 阶段失败: {name}: {error}")

    # ------------------------------------------------------------------
    # 握手与请求
    # ------------------------------------------------------------------

    async def _handshake(self):
        header = await self._read_exactly(2, "handshake")
        if header[0] != SOCKS5.VERSION:
            raise ProtocolError("unsupported version")

        methods = await self._read_exactly(header[1], "handshake") if header[1] else b''
        reply = negotiate(header + methods)
        await self._write(reply, "handshake reply")

    async def _read_request(self):
        header = await self._read_exactly(REQUEST_HEADER_SIZE, "request")
        if header[0] != SOCKS5.VERSION:
            raise ProtocolError("unsupported version")

        if header[3] == SOCKS5.ATYP_DOMAIN:
            prefix = await self._read_exactly(1, "request")
            total = request_length(header, prefix[0])
            header += prefix
        else:
            total = request_length(header)

        data = header + await self._read_exactly(total - len(header), "request")
        self.request, self._success_reply = await decode_request(
            data, timeout=self.config.resolve_timeout, resolver=self.resolver
        )
        logger.info(f"CONNECT {self.request.target}")

    async def _dial(self):
        candidate = self.request.endpoint
        self.endpoint = self.rewrite(candidate)
        if self.endpoint != candidate:
            logger.info(f"目标改写: {candidate} -> {self.endpoint}")

        try:
            self.remote_reader, self.remote_writer = await asyncio.wait_for(
                self.dialer(self.endpoint), timeout=self.config.connect_timeout
            )
        except asyncio.TimeoutError:
            raise DialError(f"connect {self.endpoint} timed out", ReplyCode.HOST_UNREACHABLE)
        except OSError as e:
            raise DialError(f"connect {self.endpoint}: {e}", dial_reply_code(e))

        logger.debug(f"已连接目标: {self.endpoint}")

    # ------------------------------------------------------------------
    # 双向转发
    # ------------------------------------------------------------------

    async def _relay(self):
        """
        启动两个方向的复制任务并等待两者都结束

        一个方向读到 EOF 时只半关闭对端写方向，另一个方向继续转发。
        任一方向出错时关闭两个连接，使另一个方向随之结束。
        """
        loop = asyncio.get_running_loop()
        self._last_activity = loop.time()

        results = await asyncio.gather(
            self._pipe(self.reader, self.remote_writer, 'up'),
            self._pipe(self.remote_reader, self.writer, 'down'),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _pipe(self, source: asyncio.StreamReader, sink: asyncio.StreamWriter, direction: str):
        try:
            while True:
                data = await self._read_chunk(source)
                if not data:
                    break
                sink.write(data)
                await sink.drain()
                if direction == 'up':
                    self.bytes_up += len(data)
                else:
                    self.bytes_down += len(data)
        except (OSError, asyncio.TimeoutError) as e:
            self._abort()
            raise TransportError(f"{direction}: {str(e) or type(e).__name__}")

        logger.debug(f"{direction} 方向读到 EOF")
        if sink.can_write_eof() and not sink.is_closing():
            try:
                sink.write_eof()
            except OSError as e:
                logger.debug(f"半关闭失败 ({direction}): {e}")

    async def _read_chunk(self, source: asyncio.StreamReader) -> bytes:
        """读取一块数据；idle_timeout 按两个方向最后一次活动计算"""
        idle_timeout = self.config.idle_timeout
        loop = asyncio.get_running_loop()
        while True:
            if idle_timeout is None:
                data = await source.read(self.config.buffer_size)
            else:
                try:
                    data = await asyncio.wait_for(source.read(self.config.buffer_size), timeout=idle_timeout)
                except asyncio.TimeoutError:
                    if loop.time() - self._last_activity < idle_timeout:
                        continue
                    raise
            self._last_activity = loop.time()
            return data

    # ------------------------------------------------------------------
    # I/O 辅助
    # ------------------------------------------------------------------

    async def _read_exactly(self, n: int, what: str) -> bytes:
        try:
            return await asyncio.wait_for(self.reader.readexactly(n), timeout=self.config.handshake_timeout)
        except asyncio.IncompleteReadError as e:
            raise TransportError(f"{what}: connection closed after {len(e.partial)} of {n} bytes")
        except asyncio.TimeoutError:
            raise TransportError(f"{what}: read timed out")
        except OSError as e:
            raise TransportError(f"{what}: {e}")

    async def _write(self, data: bytes, what: str):
        try:
            self.writer.write(data)
            await asyncio.wait_for(self.writer.drain(), timeout=self.config.handshake_timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"{what}: write timed out")
        except OSError as e:
            raise TransportError(f"{what}: {e}")

    async def _send_failure(self, error: ProxyError):
        """
        在关闭前发送失败应答

        - 握手阶段：仅在 strict_negotiation 下发送 [05 FF]
        - 请求/拨号阶段：错误带有 reply_code 时发送对应的失败应答
        """
        if isinstance(error, NoAcceptableMethodError):
            if not self.config.strict_negotiation:
                return
            reply = error.reply
        elif self._reached in (SessionState.REQUEST_PENDING, SessionState.DIALING) and error.reply_code is not None:
            reply = ProxyReply.failure(error.reply_code).encode()
        else:
            return

        if self.writer.is_closing():
            return
        try:
            await self._write(reply, "failure reply")
            logger.debug(f"已发送失败应答: {reply.hex()}")
        except TransportError as e:
            logger.debug(f"发送失败应答出错: {e}")

    def _abort(self):
        for writer in (self.writer, self.remote_writer):
            if writer is not None and not writer.is_closing():
                writer.close()

    async def _close(self):
        """关闭目标连接和客户端连接"""
        for writer in (self.remote_writer, self.writer):
            if writer is None:
                continue
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError, OSError):
                pass  # 连接已断开
