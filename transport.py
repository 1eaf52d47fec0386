import asyncio
import logging
from typing import Callable, Optional

from errors import MalformedMessage, TransportError
from protocol import Message
from stats_manager import StatsManager

logger = logging.getLogger(__name__)


class UDPTransport:
    """
    One datagram socket shared by every role in the process.
    Tracker traffic and peer-to-peer traffic multiplex on the same port.
    """

    def __init__(self,
                 on_message_received: Optional[Callable[[Message, tuple], None]] = None,
                 on_error: Optional[Callable[[TransportError], None]] = None):
        """
        :param on_message_received: Callback function (message, addr) -> None
        :param on_error: Called once when the socket fails and is closed
        """
        self.transport = None
        self.protocol = None
        self.on_message_received = on_message_received
        self.on_error = on_error
        self.closed = False

    class _Protocol(asyncio.DatagramProtocol):
        def __init__(self, outer):
            self.outer = outer

        def connection_made(self, transport):
            self.outer.transport = transport
            logger.info("UDP Transport connection made")

        def datagram_received(self, data, addr):
            StatsManager().add_download(len(data), f"{addr[0]}:{addr[1]}")

            try:
                message = Message.unpack(data)
            except MalformedMessage as e:
                logger.warning(f"Dropped malformed datagram from {addr}: {e}")
                return

            if self.outer.on_message_received:
                try:
                    self.outer.on_message_received(message, addr)
                except Exception:
                    logger.exception(f"Error handling {message.msg_type} from {addr}")

        def error_received(self, exc):
            # ICMP port unreachable from a vanished peer surfaces here on the next receive.
            if isinstance(exc, ConnectionRefusedError):
                logger.warning(f"UDP Transport: destination unreachable ({exc})")
                return
            logger.error(f"UDP Transport error received: {exc}")
            self.outer.fail(exc)

        def connection_lost(self, exc):
            logger.info("UDP Transport connection lost")

    async def start_server(self, host: str, port: int):
        """
        Binds the UDP socket to the given host and port.
        """
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            lambda: self._Protocol(self),
            local_addr=(host, port)
        )
        self.transport = transport
        self.protocol = protocol
        self.closed = False
        logger.info(f"UDP Server started on {self.local_address[0]}:{self.local_address[1]}")

    @property
    def local_address(self) -> Optional[tuple]:
        if self.transport is None:
            return None
        return self.transport.get_extra_info("sockname")[:2]

    def send_message(self, message: Message, addr: tuple):
        """
        Serializes and sends a message to the specified address.
        An envelope too large for one datagram fails only this send (TransportError, socket stays open).
        A socket failure is fatal: the socket is closed and TransportError is raised.
        """
        if self.transport is None or self.closed:
            raise TransportError("Transport is not open. Cannot send message.")

        try:
            data = message.pack()
        except ValueError as e:
            logger.error(f"Not sending {message.msg_type} to {addr}: {e}")
            raise TransportError(str(e)) from e

        try:
            self.transport.sendto(data, addr)
        except OSError as e:
            logger.error(f"Failed to send {message.msg_type} to {addr}: {e}")
            error = self.fail(e)
            raise error from e

        StatsManager().add_upload(len(data))

    def fail(self, exc: Exception) -> TransportError:
        """
        Closes the socket after a send/receive failure and notifies the owner once.
        """
        error = exc if isinstance(exc, TransportError) else TransportError(str(exc))
        if self.closed:
            return error
        self.close()
        if self.on_error:
            self.on_error(error)
        return error

    def close(self):
        """
        Closes the transport.
        """
        if self.transport and not self.closed:
            self.transport.close()
            logger.info("UDP Transport closed")
        self.closed = True
