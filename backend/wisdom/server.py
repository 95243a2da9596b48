"""
TCP server: one challenge/response round per connection.

Flow: rate check -> send challenge -> read solution -> verify -> send quote
or error -> close. The whole exchange runs under a single deadline.
"""

import asyncio
import enum
import secrets
from collections.abc import Callable

import structlog

from wisdom.config import Settings, split_addr
from wisdom.logging_config import get_logger
from wisdom.schemas.messages import (
    MAX_MESSAGE_BYTES,
    TYPE_SOLUTION,
    ChallengeMessage,
    MalformedMessageError,
    Message,
    ProtocolError,
    QuoteMessage,
    SolutionMessage,
    UnknownMessageTypeError,
    decode_message,
    encode_message,
    error_message,
)
from wisdom.services import pow_service
from wisdom.services.pow_service import VerificationError
from wisdom.services.quote_service import random_quote
from wisdom.services.rate_limiter import RateLimiter, adaptive_difficulty

logger = get_logger(__name__)

CLOSE_TIMEOUT_SECONDS = 1.0

ERR_RATE_LIMITED = "rate limit exceeded, please try again later"
ERR_INTERNAL = "internal server error"
ERR_INVALID_FORMAT = "invalid solution format"
ERR_EXPECTED_SOLUTION = "expected solution message"
ERR_QUOTE_FAILED = "failed to generate quote"


class ConnectionState(enum.Enum):
    ACCEPTED = "accepted"
    RATE_CHECKED = "rate_checked"
    CHALLENGE_SENT = "challenge_sent"
    SOLUTION_RECEIVED = "solution_received"
    VERIFIED = "verified"
    CLOSED = "closed"


class ConnectionClosed(ConnectionError):
    """The peer went away before sending a complete message."""


def generate_connection_id() -> str:
    """Generate an 8-character connection ID."""
    return secrets.token_hex(4)


class ConnectionHandler:
    """Drives a single client connection through the protocol states."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        settings: Settings,
        limiter: RateLimiter | None = None,
        provider: Callable[[], str] = random_quote,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.settings = settings
        self.limiter = limiter
        self.provider = provider
        self.state = ConnectionState.ACCEPTED
        self.verified = False

        peer = writer.get_extra_info("peername")
        self.client_ip: str | None = peer[0] if peer else None
        self.remote = f"{peer[0]}:{peer[1]}" if peer else "unknown"

    async def run(self) -> None:
        try:
            async with asyncio.timeout(self.settings.conn_timeout):
                await self._exchange()
        except TimeoutError:
            logger.warning("connection_timeout", state=self.state.value)
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.info("connection_dropped", state=self.state.value, error=str(e))
        except Exception:
            logger.exception("connection_failed", state=self.state.value)
        finally:
            await self._close()

    async def _exchange(self) -> None:
        attempts = 0
        if self.limiter is not None and self.client_ip:
            allowed, attempts = self.limiter.allow(self.client_ip)
            if not allowed:
                logger.warning("rate_limited", attempts=attempts)
                await self._send(error_message(ERR_RATE_LIMITED))
                return
        self.state = ConnectionState.RATE_CHECKED

        logger.info("connection_accepted", attempts=attempts)

        bits = self.effective_bits(attempts)
        try:
            challenge = pow_service.generate_challenge(
                bits, self.settings.expires, self.settings.resource
            )
        except Exception:
            logger.exception("challenge_generation_failed")
            await self._send(error_message(ERR_INTERNAL))
            return

        await self._send(ChallengeMessage(challenge=challenge))
        self.state = ConnectionState.CHALLENGE_SENT
        logger.debug("challenge_sent", bits=challenge.bits, salt=challenge.salt, attempts=attempts)

        try:
            message = await self._receive()
        except ProtocolError as e:
            logger.warning("solution_read_failed", error=str(e))
            reply = ERR_INVALID_FORMAT
            if isinstance(e, UnknownMessageTypeError) or (
                isinstance(e, MalformedMessageError)
                and e.message_type not in (None, TYPE_SOLUTION)
            ):
                reply = ERR_EXPECTED_SOLUTION
            await self._send(error_message(reply))
            return

        if not isinstance(message, SolutionMessage):
            logger.warning("invalid_message_type", type=message.type)
            await self._send(error_message(ERR_EXPECTED_SOLUTION))
            return
        self.state = ConnectionState.SOLUTION_RECEIVED

        try:
            pow_service.verify(challenge, message.nonce, self.settings.resource)
        except VerificationError as e:
            self.state = ConnectionState.VERIFIED
            logger.warning("invalid_solution", error=str(e))
            await self._send(error_message(f"invalid solution: {e}"))
            return
        self.state = ConnectionState.VERIFIED
        self.verified = True

        logger.info("solution_verified", nonce=message.nonce)

        if self.limiter is not None:
            self.limiter.reset(self.client_ip)

        try:
            quote = self.provider()
        except Exception as e:
            logger.error("quote_failed", error=str(e))
            await self._send(error_message(ERR_QUOTE_FAILED))
            return

        await self._send(QuoteMessage(quote=quote))
        logger.info("quote_sent")

    def effective_bits(self, attempts: int) -> int:
        bits = self.settings.bits
        if self.settings.adaptive_bits and attempts > 0:
            bits = adaptive_difficulty(self.settings.bits, attempts)
            if bits > self.settings.bits:
                logger.info(
                    "adaptive_difficulty_increased",
                    base_bits=self.settings.bits,
                    new_bits=bits,
                    attempts=attempts,
                )
        return bits

    async def _send(self, message: Message) -> None:
        self.writer.write(encode_message(message))
        await self.writer.drain()

    async def _receive(self) -> Message:
        """
        Read one newline-terminated message.

        The type tag is judged before the fields: an unknown or non-solution
        tag is answered with "expected solution message" even when its fields
        are invalid, while a solution with missing or mistyped fields counts as
        an invalid format.
        """
        try:
            line = await self.reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            # Peer closed without a newline; a complete object is still usable
            if not e.partial.strip():
                raise ConnectionClosed("peer closed the connection") from e
            line = e.partial
        except asyncio.LimitOverrunError as e:
            raise MalformedMessageError(f"message exceeds {MAX_MESSAGE_BYTES} bytes") from e
        return decode_message(line)

    async def _close(self) -> None:
        self.state = ConnectionState.CLOSED
        self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), CLOSE_TIMEOUT_SECONDS)
        except TimeoutError:
            # Peer is not draining its side; drop the socket
            self.writer.transport.abort()
        except (ConnectionError, OSError):
            pass
        logger.debug("connection_closed", verified=self.verified)


class QuoteServer:
    """Listener that hands every accepted connection to a ConnectionHandler.

    Builds its own RateLimiter (burst = 2x rate) when ``settings.rate_limit``
    is set and none is supplied.
    """

    def __init__(
        self,
        settings: Settings,
        provider: Callable[[], str] = random_quote,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.settings = settings
        self.provider = provider
        if limiter is None and settings.rate_limit > 0:
            limiter = RateLimiter(
                rate=settings.rate_limit,
                capacity=settings.rate_limit * 2,
                sweep_interval=settings.sweep_interval,
            )
        self.limiter = limiter
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Bind the listener. Bind errors (OSError) propagate to the caller."""
        host, port = split_addr(self.settings.addr)
        self._server = await asyncio.start_server(
            self._handle_client, host, port, limit=MAX_MESSAGE_BYTES
        )

        if self.limiter is not None:
            self.limiter.start()
            logger.info(
                "rate_limiter_enabled", rate=self.limiter.rate, burst=self.limiter.capacity
            )

        bound_host, bound_port = self.address
        logger.info(
            "server_started",
            addr=f"{bound_host}:{bound_port}",
            bits=self.settings.bits,
            expires_in=self.settings.expires,
            rate_limit=self.settings.rate_limit,
            adaptive_bits=self.settings.adaptive_bits,
        )

    @property
    def address(self) -> tuple[str, int]:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("server is not started")
        sockname = self._server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        await self._server.wait_closed()
        self._server = None

        if self.limiter is not None:
            self.limiter.shutdown()
        logger.info("server_stopped")

    async def __aenter__(self) -> "QuoteServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        self._connections.add(task)

        handler = ConnectionHandler(
            reader, writer, self.settings, limiter=self.limiter, provider=self.provider
        )
        # Each connection runs in its own task, so these bindings stay local to it
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            connection_id=generate_connection_id(), remote=handler.remote
        )
        try:
            await handler.run()
        finally:
            self._connections.discard(task)
