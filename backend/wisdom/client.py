"""
Word of Wisdom client.

Connects to the server, solves the PoW challenge on all CPU cores and prints
the quote it gets back.

Usage:
    wow-client --addr 127.0.0.1:8080
    SERVER_ADDR=quotes.example.com:8080 wow-client --timeout 60
"""

import argparse
import asyncio
import sys
import time
from dataclasses import dataclass

from wisdom.config import ClientSettings, split_addr
from wisdom.logging_config import get_logger, setup_logging
from wisdom.schemas.messages import (
    MAX_MESSAGE_BYTES,
    ChallengeMessage,
    ErrorMessage,
    MalformedMessageError,
    Message,
    ProtocolError,
    QuoteMessage,
    SolutionMessage,
    decode_message,
    encode_message,
)
from wisdom.solver import solve_parallel

logger = get_logger(__name__)

BOX_WIDTH = 68


class ClientError(RuntimeError):
    pass


class ServerRejectedError(ClientError):
    def __init__(self, reason: str):
        super().__init__(f"server error: {reason}")
        self.reason = reason


@dataclass
class QuoteResult:
    quote: str
    bits: int
    nonce: str
    solve_seconds: float


async def _read_message(reader: asyncio.StreamReader) -> Message:
    try:
        line = await reader.readuntil(b"\n")
    except asyncio.IncompleteReadError as e:
        if not e.partial.strip():
            raise ClientError("server closed the connection") from e
        line = e.partial
    except asyncio.LimitOverrunError as e:
        raise MalformedMessageError(f"message exceeds {MAX_MESSAGE_BYTES} bytes") from e
    return decode_message(line)


async def fetch_quote(
    host: str,
    port: int,
    *,
    connect_timeout: float = 10.0,
    timeout: float = 120.0,
    workers: int | None = None,
) -> QuoteResult:
    """
    Run one challenge/response round and return the quote.

    Raises ServerRejectedError when the server answers with an error message,
    ClientError or ProtocolError for anything else that goes wrong.
    """
    logger.info("connecting_to_server", addr=f"{host}:{port}")
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, limit=MAX_MESSAGE_BYTES), connect_timeout
        )
    except (OSError, TimeoutError) as e:
        raise ClientError(f"failed to connect: {e}") from e

    try:
        async with asyncio.timeout(timeout):
            message = await _read_message(reader)
            if isinstance(message, ErrorMessage):
                raise ServerRejectedError(message.error)
            if not isinstance(message, ChallengeMessage):
                raise ProtocolError(f"unexpected message type: {message.type}")

            challenge = message.challenge
            logger.info(
                "challenge_received", bits=challenge.bits, expires_in=challenge.expires_in
            )

            started = time.perf_counter()
            nonce = await asyncio.to_thread(
                solve_parallel, challenge, timeout=timeout, workers=workers
            )
            solve_seconds = time.perf_counter() - started
            logger.info("pow_solved", nonce=nonce, duration_ms=round(solve_seconds * 1000))

            writer.write(encode_message(SolutionMessage(nonce=nonce)))
            await writer.drain()

            response = await _read_message(reader)
    except TimeoutError as e:
        raise ClientError(f"timed out after {timeout} seconds") from e
    except ConnectionError as e:
        raise ClientError(f"connection lost: {e}") from e
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    if isinstance(response, ErrorMessage):
        raise ServerRejectedError(response.error)
    if not isinstance(response, QuoteMessage):
        raise ProtocolError(f"unexpected response type: {response.type}")

    logger.info("quote_received")
    return QuoteResult(
        quote=response.quote, bits=challenge.bits, nonce=nonce, solve_seconds=solve_seconds
    )


def format_quote(result: QuoteResult) -> str:
    """Render the quote in a framed box."""
    inner = BOX_WIDTH - 4
    text = result.quote
    if len(text) > inner:
        text = text[: inner - 3] + "..."
    border = "═" * (BOX_WIDTH - 2)
    return "\n".join(
        [
            f"╔{border}╗",
            f"║ {'Word of Wisdom':<{inner}} ║",
            f"╠{border}╣",
            f"║ {text:<{inner}} ║",
            f"╠{border}╣",
            f"║ {f'PoW solved in {result.solve_seconds:.3f}s (bits: {result.bits})':<{inner}} ║",
            f"╚{border}╝",
        ]
    )


def main(argv: list[str] | None = None) -> int:
    settings = ClientSettings()
    parser = argparse.ArgumentParser(description="Fetch a quote from a Word of Wisdom server")
    parser.add_argument("--addr", default=settings.server_addr, help="server host:port")
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.solve_timeout,
        help="overall timeout in seconds",
    )
    parser.add_argument("--workers", type=int, default=None, help="solver processes")
    args = parser.parse_args(argv)

    setup_logging(settings)

    try:
        host, port = split_addr(args.addr)
    except ValueError as e:
        parser.error(str(e))

    try:
        result = asyncio.run(
            fetch_quote(
                host or "127.0.0.1",
                port,
                connect_timeout=settings.connect_timeout,
                timeout=args.timeout,
                workers=args.workers,
            )
        )
    except (ClientError, ProtocolError) as e:
        logger.error("client_failed", error=str(e))
        return 1

    print(format_quote(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
