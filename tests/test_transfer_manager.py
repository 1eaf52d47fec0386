import asyncio
import logging
import os
import sys

import pytest

# Ensure parent directory is in path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import p2p_protocol as P2P
from errors import TransferAbandoned
from file_store import DownloadWriter, FileCatalog, hash_bytes
from protocol import Message
from registry import ResourceRecord
from transfer import DuplicateTransfer, TransferManager

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(message)s')

ADDR_A = ("127.0.0.1", 9201)
ADDR_B = ("127.0.0.1", 9202)


class FakeNetwork:
    """
    Delivers messages between TransferManagers on the next loop iteration,
    through the real codec. 'drop(message, src, dst)' can simulate loss.
    """

    def __init__(self, drop=None):
        self.nodes = {}
        self.drop = drop
        self.delivered = []

    def attach(self, addr, manager):
        self.nodes[addr] = manager

    def sender(self, src):
        def send(message, dst):
            data = message.pack()
            if self.drop and self.drop(message, src, dst):
                return
            self.delivered.append((src, dst, message))
            asyncio.get_running_loop().call_soon(self.nodes[dst].handle_message, Message.unpack(data), src)
        return send


def make_peer(network, addr, root, files=None, **kwargs):
    shared = root / f"shared-{addr[1]}"
    shared.mkdir()
    for name, data in (files or {}).items():
        (shared / name).write_bytes(data)
    catalog = FileCatalog(str(shared))
    catalog.scan()
    options = dict(fragment_size=1024, retransmit_timeout=0.05, max_retries=20)
    options.update(kwargs)
    manager = TransferManager(network.sender(addr), catalog, DownloadWriter(str(root / f"downloads-{addr[1]}")),
                              **options)
    network.attach(addr, manager)
    return manager


def offer(owner_addr, name, data):
    return ResourceRecord(name, hash_bytes(data), len(data), owner_addr)


def test_download_multi_fragment_file(tmp_path):
    data = os.urandom(5000)

    async def scenario():
        network = FakeNetwork()
        owner = make_peer(network, ADDR_A, tmp_path, {"movie.bin": data})
        requester = make_peer(network, ADDR_B, tmp_path)

        result = await asyncio.wait_for(requester.download(offer(ADDR_A, "movie.bin", data)), 5)
        await asyncio.sleep(0.01)
        return owner, requester, result, network

    owner, requester, result, network = asyncio.run(scenario())

    assert result.verified
    assert open(result.path, "rb").read() == data
    assert os.path.dirname(result.path) == str(tmp_path / f"downloads-{ADDR_B[1]}")
    sections = [m for _, _, m in network.delivered if m.msg_type == P2P.TYPE_FILE_SECTION]
    assert [m.payload["offset"] for m in sections] == [0, 1, 2, 3, 4]
    assert owner.senders == {}
    assert requester.receivers == {}


def test_download_survives_lost_sections_acks_and_request(tmp_path):
    data = os.urandom(3000)
    seen = set()

    def drop_first_of_each(message, src, dst):
        if message.msg_type == P2P.TYPE_FILE_REQUEST:
            key = (message.msg_type, None)
        elif message.msg_type in (P2P.TYPE_FILE_SECTION, P2P.TYPE_FILE_SECTION_RECEIVED):
            key = (message.msg_type, message.payload["offset"])
        else:
            return False
        if key in seen:
            return False
        seen.add(key)
        return True

    async def scenario():
        network = FakeNetwork(drop=drop_first_of_each)
        owner = make_peer(network, ADDR_A, tmp_path, {"a.bin": data})
        requester = make_peer(network, ADDR_B, tmp_path)
        result = await asyncio.wait_for(requester.download(offer(ADDR_A, "a.bin", data)), 10)
        return result, network

    result, network = asyncio.run(scenario())

    assert result.verified
    assert result.data == data
    requests = [m for _, _, m in network.delivered if m.msg_type == P2P.TYPE_FILE_REQUEST]
    assert len(requests) >= 1


def test_simultaneous_upload_and_downloads(tmp_path):
    one, two, three = os.urandom(2500), os.urandom(4000), os.urandom(1500)

    async def scenario():
        network = FakeNetwork()
        peer_a = make_peer(network, ADDR_A, tmp_path, {"one.bin": one, "two.bin": two})
        peer_b = make_peer(network, ADDR_B, tmp_path, {"three.bin": three})

        return await asyncio.wait_for(asyncio.gather(
            peer_b.download(offer(ADDR_A, "one.bin", one)),
            peer_b.download(offer(ADDR_A, "two.bin", two)),
            peer_a.download(offer(ADDR_B, "three.bin", three)),
        ), 10)

    results = asyncio.run(scenario())

    assert [r.verified for r in results] == [True, True, True]
    assert [r.data for r in results] == [one, two, three]


def test_concurrency_limit_queues_sessions(tmp_path):
    one, two = os.urandom(3000), os.urandom(3000)

    async def scenario():
        network = FakeNetwork()
        peer_a = make_peer(network, ADDR_A, tmp_path, {"one.bin": one, "two.bin": two}, max_concurrent=1)
        peer_b = make_peer(network, ADDR_B, tmp_path)

        running = []

        async def watch():
            while True:
                running.append(sum(1 for s in peer_a.senders.values() if s.state.value != "idle"))
                await asyncio.sleep(0.001)

        watcher = asyncio.create_task(watch())
        results = await asyncio.wait_for(asyncio.gather(
            peer_b.download(offer(ADDR_A, "one.bin", one)),
            peer_b.download(offer(ADDR_A, "two.bin", two)),
        ), 10)
        watcher.cancel()
        return results, running

    results, running = asyncio.run(scenario())

    assert all(r.verified for r in results)
    assert max(running) == 1


def test_crossed_downloads_with_single_slot(tmp_path):
    a_data, b_data = os.urandom(3000), os.urandom(2000)

    async def scenario():
        network = FakeNetwork()
        peer_a = make_peer(network, ADDR_A, tmp_path, {"a.bin": a_data}, max_concurrent=1)
        peer_b = make_peer(network, ADDR_B, tmp_path, {"b.bin": b_data}, max_concurrent=1)

        # Each side's only download slot waits on the other side's upload
        return await asyncio.wait_for(asyncio.gather(
            peer_a.download(offer(ADDR_B, "b.bin", b_data)),
            peer_b.download(offer(ADDR_A, "a.bin", a_data)),
        ), 5)

    to_a, to_b = asyncio.run(scenario())

    assert to_a.verified and to_a.data == b_data
    assert to_b.verified and to_b.data == a_data


def test_unknown_file_is_refused(tmp_path):
    async def scenario():
        network = FakeNetwork()
        make_peer(network, ADDR_A, tmp_path, {"real.bin": b"data"})
        requester = make_peer(network, ADDR_B, tmp_path)
        with pytest.raises(TransferAbandoned) as excinfo:
            await asyncio.wait_for(requester.download(offer(ADDR_A, "ghost.bin", b"???")), 2)
        return excinfo.value, network

    error, network = asyncio.run(scenario())

    assert "File not found" in str(error)
    errors = [m for _, _, m in network.delivered if m.msg_type == P2P.TYPE_FILE_ERROR]
    assert errors[0].payload["fileName"] == "ghost.bin"


def test_changed_file_is_kept_with_mismatch(tmp_path):
    original = b"version one" * 100

    async def scenario():
        network = FakeNetwork()
        owner = make_peer(network, ADDR_A, tmp_path, {"doc.txt": original})
        requester = make_peer(network, ADDR_B, tmp_path)
        # Content changes after the catalog advertised its hash
        with open(owner.catalog.entries[0].path, "wb") as f:
            f.write(b"version two" * 100)
        return await asyncio.wait_for(requester.download(offer(ADDR_A, "doc.txt", original)), 5)

    result = asyncio.run(scenario())

    assert result.verified is False
    assert result.content_hash == hash_bytes(original)
    assert result.mismatch.expected == hash_bytes(original)
    assert result.mismatch.actual == hash_bytes(b"version two" * 100)
    assert open(result.path, "rb").read() == b"version two" * 100


def test_duplicate_download_is_rejected(tmp_path):
    data = os.urandom(2000)

    async def scenario():
        network = FakeNetwork()
        make_peer(network, ADDR_A, tmp_path, {"a.bin": data})
        requester = make_peer(network, ADDR_B, tmp_path)
        first = asyncio.create_task(requester.download(offer(ADDR_A, "a.bin", data)))
        await asyncio.sleep(0)
        with pytest.raises(DuplicateTransfer):
            await requester.download(offer(ADDR_A, "a.bin", data))
        return await asyncio.wait_for(first, 5)

    assert asyncio.run(scenario()).verified


def test_duplicate_file_request_does_not_start_second_upload(tmp_path):
    data = os.urandom(4000)

    async def scenario():
        network = FakeNetwork()
        owner = make_peer(network, ADDR_A, tmp_path, {"a.bin": data}, retransmit_timeout=5.0)
        request = Message(P2P.TYPE_FILE_REQUEST, {"fileName": "a.bin", "hash": hash_bytes(data)})
        # Nobody is listening at ADDR_B, sections go nowhere
        network.attach(ADDR_B, type("Sink", (), {"handle_message": lambda self, m, a: None})())

        owner.handle_message(request, ADDR_B)
        first = owner.senders[(ADDR_B, hash_bytes(data))]
        owner.handle_message(request, ADDR_B)
        assert owner.senders[(ADDR_B, hash_bytes(data))] is first
        assert len(owner.senders) == 1
        await owner.close()

    asyncio.run(scenario())


def test_bare_offset_ack_routes_to_single_session(tmp_path):
    data = os.urandom(2000)

    async def scenario():
        network = FakeNetwork()
        owner = make_peer(network, ADDR_A, tmp_path, {"a.bin": data}, retransmit_timeout=5.0)
        network.attach(ADDR_B, type("Sink", (), {"handle_message": lambda self, m, a: None})())

        owner.handle_message(Message(P2P.TYPE_FILE_REQUEST, {"fileName": "a.bin", "hash": hash_bytes(data)}), ADDR_B)
        session = owner.senders[(ADDR_B, hash_bytes(data))]
        await asyncio.sleep(0.01)
        assert owner.handle_message(Message(P2P.TYPE_FILE_SECTION_RECEIVED, 0), ADDR_B)
        cursor = session.cursor_offset
        await owner.close()
        return cursor

    assert asyncio.run(scenario()) == 1


def test_foreign_messages_are_not_claimed(tmp_path):
    async def scenario():
        network = FakeNetwork()
        manager = make_peer(network, ADDR_A, tmp_path)
        return manager.handle_message(Message(P2P.TYPE_REFRESH_RESPONSE), ADDR_B)

    assert asyncio.run(scenario()) is False
