import asyncio
import logging
import sys
import os

import pytest

# Ensure the parent directory is in the path to import protocol and transport
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import p2p_protocol as P2P
from errors import TransportError
from protocol import Message
from transport import UDPTransport

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger("TransportTest")

HOST = "127.0.0.1"
TOTAL_MESSAGES = 20


def test_messages_cross_the_socket():
    async def run_test():
        received = []
        done = asyncio.Event()

        def receiver_callback(message: Message, addr: tuple):
            received.append((message, addr))
            if len(received) == TOTAL_MESSAGES:
                done.set()

        receiver = UDPTransport(on_message_received=receiver_callback)
        await receiver.start_server(HOST, 0)
        sender = UDPTransport()
        await sender.start_server(HOST, 0)

        for i in range(TOTAL_MESSAGES):
            sender.send_message(Message(P2P.TYPE_FILE_SECTION_RECEIVED, {"offset": i, "hash": "H"}),
                                receiver.local_address)
            await asyncio.sleep(0.001)

        await asyncio.wait_for(done.wait(), 2)
        sender_addr = sender.local_address
        sender.close()
        receiver.close()
        return received, sender_addr

    received, sender_addr = asyncio.run(run_test())

    # Loopback does not drop, but UDP may reorder in theory
    assert sorted(m.payload["offset"] for m, _ in received) == list(range(TOTAL_MESSAGES))
    assert all(tuple(addr[:2]) == sender_addr for _, addr in received)
    logger.info(f"Received {len(received)} messages.")


def test_malformed_datagrams_are_dropped():
    async def run_test():
        received = []
        got_valid = asyncio.Event()

        def receiver_callback(message, addr):
            received.append(message)
            got_valid.set()

        receiver = UDPTransport(on_message_received=receiver_callback)
        await receiver.start_server(HOST, 0)

        loop = asyncio.get_running_loop()
        raw_transport, _ = await loop.create_datagram_endpoint(asyncio.DatagramProtocol, local_addr=(HOST, 0))
        raw_transport.sendto(b"{garbage", receiver.local_address)
        raw_transport.sendto(b'{"type": "FILE_SECTION", "payload": {"offset": 5, "total": 1}}', receiver.local_address)
        raw_transport.sendto(Message(P2P.TYPE_REFRESH).pack(), receiver.local_address)

        await asyncio.wait_for(got_valid.wait(), 2)
        await asyncio.sleep(0.05)
        raw_transport.close()
        receiver.close()
        return received

    received = asyncio.run(run_test())
    assert [m.msg_type for m in received] == [P2P.TYPE_REFRESH]


def test_handler_errors_do_not_close_the_socket():
    async def run_test():
        calls = []
        second = asyncio.Event()

        def receiver_callback(message, addr):
            calls.append(message.msg_type)
            if len(calls) == 1:
                raise RuntimeError("handler bug")
            second.set()

        receiver = UDPTransport(on_message_received=receiver_callback)
        await receiver.start_server(HOST, 0)
        sender = UDPTransport()
        await sender.start_server(HOST, 0)

        sender.send_message(Message(P2P.TYPE_REFRESH), receiver.local_address)
        await asyncio.sleep(0.05)
        sender.send_message(Message(P2P.TYPE_REFRESH), receiver.local_address)
        await asyncio.wait_for(second.wait(), 2)
        closed = receiver.closed
        sender.close()
        receiver.close()
        return calls, closed

    calls, closed = asyncio.run(run_test())
    assert calls == [P2P.TYPE_REFRESH, P2P.TYPE_REFRESH]
    assert closed is False


def test_oversized_message_fails_only_that_send():
    async def run_test():
        errors = []
        received = asyncio.Event()
        receiver = UDPTransport(on_message_received=lambda m, a: received.set())
        await receiver.start_server(HOST, 0)
        transport = UDPTransport(on_error=errors.append)
        await transport.start_server(HOST, 0)

        too_big = Message(P2P.TYPE_REGISTER, [{"file": "x" * P2P.MAX_DATAGRAM_SIZE, "hash": "h", "size": 1}])
        with pytest.raises(TransportError):
            transport.send_message(too_big, receiver.local_address)

        transport.send_message(Message(P2P.TYPE_REFRESH), receiver.local_address)
        await asyncio.wait_for(received.wait(), 2)
        closed = transport.closed
        transport.close()
        receiver.close()
        return closed, errors

    closed, errors = asyncio.run(run_test())
    assert closed is False
    assert errors == []


def test_socket_error_closes_socket_and_reports():
    async def run_test():
        errors = []
        transport = UDPTransport(on_error=errors.append)
        await transport.start_server(HOST, 0)

        transport.protocol.error_received(OSError("network is down"))
        transport.protocol.error_received(OSError("still down"))

        # Fatal for the socket: no automatic reconnect
        with pytest.raises(TransportError):
            transport.send_message(Message(P2P.TYPE_REFRESH), (HOST, 9))
        return transport, errors

    transport, errors = asyncio.run(run_test())
    assert transport.closed
    assert len(errors) == 1
    assert isinstance(errors[0], TransportError)


def test_refused_destination_is_not_fatal():
    async def run_test():
        transport = UDPTransport()
        await transport.start_server(HOST, 0)
        transport.protocol.error_received(ConnectionRefusedError("port unreachable"))
        closed = transport.closed
        transport.close()
        return closed

    assert asyncio.run(run_test()) is False


def test_send_before_start_raises():
    transport = UDPTransport()
    with pytest.raises(TransportError):
        transport.send_message(Message(P2P.TYPE_REFRESH), (HOST, 9))


if __name__ == "__main__":
    test_messages_cross_the_socket()
    logger.info("Test Completed Successfully.")
