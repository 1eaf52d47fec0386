"""
Reliable file transfer between two peers over the shared datagram socket.

Stop-and-wait ARQ: the owner (sender) keeps exactly one FILE_SECTION in flight
and only advances once the requester (receiver) acknowledges that exact offset.
Every transfer is an independent session keyed by (peer endpoint, content hash),
so a peer can upload and download several files at once.
"""
import asyncio
import logging
import math
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Callable, Dict, List, Optional, Set, Tuple

import p2p_protocol as P2P
from errors import IntegrityMismatch, P2PError, TransferAbandoned, TransportError
from file_store import DownloadWriter, FileCatalog, hash_bytes
from protocol import Message, decode_section, decode_section_ack, make_section, make_section_ack
from registry import Endpoint, ResourceRecord
from stats_manager import StatsManager

logger = logging.getLogger(__name__)

SessionKey = Tuple[Endpoint, str]  # (peer endpoint, content hash)


class DuplicateTransfer(P2PError):
    """Raised when a download of the same file from the same owner is already running."""
    pass


def fragment_count(size_bytes: int, fragment_size: int = P2P.FRAGMENT_SIZE) -> int:
    """
    Number of FILE_SECTIONs for a file. An empty file still travels as one empty fragment.
    """
    if size_bytes <= 0:
        return 1
    return math.ceil(size_bytes / fragment_size)


def _stats_key(key: SessionKey) -> str:
    (host, port), content_hash = key
    return f"{host}:{port}/{content_hash}"


# ==========================================
# SENDER (owner of the file)
# ==========================================

class SenderState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    AWAITING_ACK = "awaiting_ack"
    DONE = "done"
    ABANDONED = "abandoned"


class SenderSession:
    def __init__(self, peer: Endpoint, file_name: str, content_hash: str,
                 stream: BinaryIO, size_bytes: int,
                 send: Callable[[Message], None],
                 fragment_size: int = P2P.FRAGMENT_SIZE,
                 retransmit_timeout: float = P2P.RETRANSMIT_TIMEOUT,
                 max_retries: Optional[int] = P2P.MAX_RETRANSMISSIONS):
        """
        :param send: Delivers a message to 'peer'
        :param max_retries: Retransmissions of one fragment before giving up (None = never)
        """
        self.peer = peer
        self.file_name = file_name
        self.content_hash = content_hash
        self.stream = stream
        self.send = send
        self.fragment_size = fragment_size
        self.retransmit_timeout = retransmit_timeout
        self.max_retries = max_retries

        self.total_fragments = fragment_count(size_bytes, fragment_size)
        self.cursor_offset = 0
        self.pending_fragment: Optional[Message] = None
        self.retries = 0
        self.retransmits = 0
        self.state = SenderState.IDLE
        self._progress = asyncio.Event()

    @property
    def key(self) -> SessionKey:
        return (self.peer, self.content_hash)

    def on_ack(self, offset: int) -> bool:
        """
        Acknowledgement transition. Only an ack for the fragment in flight advances the cursor;
        anything else (late duplicate, wrong offset) leaves the session untouched.
        """
        if self.state != SenderState.AWAITING_ACK or offset != self.cursor_offset:
            logger.debug(f"Ignoring ack {offset} for {self.file_name} (cursor {self.cursor_offset}, {self.state.value})")
            return False

        if self.cursor_offset == self.total_fragments - 1:
            self.state = SenderState.DONE
        else:
            self.cursor_offset += 1
            self.state = SenderState.SENDING
        self.pending_fragment = None
        self._progress.set()
        return True

    def _send_next(self):
        data = self.stream.read(self.fragment_size)
        self.pending_fragment = make_section(self.cursor_offset, self.total_fragments, data, self.content_hash)
        self.retries = 0
        self.state = SenderState.AWAITING_ACK
        self.send(self.pending_fragment)
        StatsManager().update_transfer(_stats_key(self.key), "upload", self.file_name,
                                       self.cursor_offset + 1, self.total_fragments)

    def _on_timeout(self):
        if self.max_retries is not None and self.retries >= self.max_retries:
            self.state = SenderState.ABANDONED
            raise TransferAbandoned(
                f"{self.file_name}: fragment {self.cursor_offset}/{self.total_fragments} "
                f"unacknowledged after {self.retries} retransmissions",
                peer=self.peer, content_hash=self.content_hash)

        self.retries += 1
        self.retransmits += 1
        StatsManager().add_retransmit()
        logger.info(f"Sent again: {self.file_name} fragment {self.cursor_offset} to {self.peer} (retry {self.retries})")
        self.send(self.pending_fragment)

    async def run(self):
        """
        Drives the transfer to DONE. Raises TransferAbandoned when the retry budget runs out.
        """
        try:
            self.state = SenderState.SENDING
            while self.state not in (SenderState.DONE, SenderState.ABANDONED):
                self._progress.clear()
                if self.state == SenderState.SENDING:
                    self._send_next()
                try:
                    await asyncio.wait_for(self._progress.wait(), self.retransmit_timeout)
                except asyncio.TimeoutError:
                    self._on_timeout()
        finally:
            self.close()

    def close(self):
        if not self.stream.closed:
            self.stream.close()

    def __repr__(self):
        return f"<SenderSession {self.file_name} -> {self.peer} {self.cursor_offset}/{self.total_fragments} ({self.state.value})>"


# ==========================================
# RECEIVER (requester of the file)
# ==========================================

class ReceiverState(Enum):
    REQUESTING = "requesting"
    RECEIVING = "receiving"
    VERIFYING = "verifying"
    DONE = "done"
    MISMATCH = "mismatch"
    FAILED = "failed"


@dataclass
class TransferResult:
    file_name: str
    content_hash: str
    actual_hash: str
    size_bytes: int
    data: bytes = field(repr=False)
    path: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.actual_hash == self.content_hash

    @property
    def mismatch(self) -> Optional[IntegrityMismatch]:
        if self.verified:
            return None
        return IntegrityMismatch(self.file_name, self.content_hash, self.actual_hash)


class ReceiverSession:
    def __init__(self, peer: Endpoint, file_name: str, content_hash: str,
                 send: Callable[[Message], None],
                 retransmit_timeout: float = P2P.RETRANSMIT_TIMEOUT,
                 max_retries: Optional[int] = P2P.MAX_RETRANSMISSIONS,
                 idle_timeout: Optional[float] = None):
        self.peer = peer
        self.file_name = file_name
        self.content_hash = content_hash
        self.send = send
        self.retransmit_timeout = retransmit_timeout
        self.max_retries = max_retries
        if idle_timeout is None and max_retries is not None:
            idle_timeout = retransmit_timeout * (max_retries + 1)
        self.idle_timeout = idle_timeout

        self.total_fragments: Optional[int] = None
        self.next_offset = 0
        self.received_buffer: List[bytes] = []
        self.requests_sent = 0
        self.state = ReceiverState.REQUESTING
        self.result: Optional[TransferResult] = None
        self.error: Optional[TransferAbandoned] = None
        self._progress = asyncio.Event()

    @property
    def key(self) -> SessionKey:
        return (self.peer, self.content_hash)

    @property
    def finished(self) -> bool:
        return self.state in (ReceiverState.DONE, ReceiverState.MISMATCH, ReceiverState.FAILED)

    def request(self):
        self.requests_sent += 1
        self.send(Message(P2P.TYPE_FILE_REQUEST, {"fileName": self.file_name, "hash": self.content_hash}))
        logger.info(f"Request for {self.file_name} sent to {self.peer[0]}:{self.peer[1]}")

    def _ack(self, offset: int):
        self.send(make_section_ack(offset, self.content_hash))

    def on_fragment(self, offset: int, total: int, data: bytes) -> bool:
        """
        Appends the fragment if it is the next expected one. Returns True if it was appended.
        Duplicates are re-acknowledged (our earlier ack may have been lost); fragments from
        the future or with a different total are dropped and left to the sender's timer.
        """
        if self.state == ReceiverState.FAILED:
            return False

        if offset < self.next_offset:
            logger.debug(f"Duplicate fragment {offset} of {self.file_name}, re-acknowledging")
            self._ack(offset)
            return False

        if self.finished:
            return False

        if self.total_fragments is not None and total != self.total_fragments:
            logger.warning(f"Fragment {offset} of {self.file_name} claims total {total}, expected {self.total_fragments}")
            return False

        if offset > self.next_offset:
            logger.debug(f"Out-of-sequence fragment {offset} of {self.file_name} (expected {self.next_offset})")
            return False

        self.total_fragments = total
        self.received_buffer.append(data)
        self.next_offset += 1
        self.state = ReceiverState.RECEIVING
        self._ack(offset)
        StatsManager().update_transfer(_stats_key(self.key), "download", self.file_name, self.next_offset, total)

        if offset == total - 1:
            self._verify()
        self._progress.set()
        return True

    def _verify(self):
        self.state = ReceiverState.VERIFYING
        data = b"".join(self.received_buffer)
        actual_hash = hash_bytes(data)
        self.result = TransferResult(self.file_name, self.content_hash, actual_hash, len(data), data)
        self.state = ReceiverState.DONE if self.result.verified else ReceiverState.MISMATCH

    def fail(self, reason: str):
        if self.finished:
            return
        self.state = ReceiverState.FAILED
        self.error = TransferAbandoned(f"{self.file_name}: {reason}", peer=self.peer, content_hash=self.content_hash)
        self._progress.set()

    async def run(self) -> TransferResult:
        """
        Requests the file and waits for it to complete. Raises TransferAbandoned on failure.
        """
        self.request()
        while not self.finished:
            self._progress.clear()
            if self.state == ReceiverState.REQUESTING:
                timeout = self.retransmit_timeout
            else:
                timeout = self.idle_timeout
            try:
                await asyncio.wait_for(self._progress.wait(), timeout)
            except asyncio.TimeoutError:
                if self.state != ReceiverState.REQUESTING:
                    self.fail(f"no fragment from {self.peer[0]}:{self.peer[1]} for {timeout}s")
                elif self.max_retries is not None and self.requests_sent > self.max_retries:
                    self.fail(f"owner {self.peer[0]}:{self.peer[1]} never answered")
                else:
                    self.request()

        if self.state == ReceiverState.FAILED:
            raise self.error
        return self.result

    def __repr__(self):
        return f"<ReceiverSession {self.file_name} <- {self.peer} {self.next_offset}/{self.total_fragments} ({self.state.value})>"


# ==========================================
# SESSION TABLE
# ==========================================

class TransferManager:
    """
    Dispatches peer-to-peer transfer messages to the session they belong to.
    """
    COMPLETED_MEMORY = 64

    def __init__(self, send: Callable[[Message, tuple], None],
                 catalog: FileCatalog, writer: DownloadWriter,
                 max_concurrent: int = P2P.MAX_CONCURRENT_TRANSFERS,
                 fragment_size: int = P2P.FRAGMENT_SIZE,
                 retransmit_timeout: float = P2P.RETRANSMIT_TIMEOUT,
                 max_retries: Optional[int] = P2P.MAX_RETRANSMISSIONS):
        self.send = send
        self.catalog = catalog
        self.writer = writer
        self.fragment_size = fragment_size
        self.retransmit_timeout = retransmit_timeout
        self.max_retries = max_retries

        self.senders: Dict[SessionKey, SenderSession] = {}
        self.receivers: Dict[SessionKey, ReceiverSession] = {}
        # Finished downloads: key -> last offset, so a lost final ack can still be repeated.
        self.completed: Dict[SessionKey, int] = {}
        # Uploads and downloads are bounded independently.
        self._upload_slots = asyncio.Semaphore(max_concurrent)
        self._download_slots = asyncio.Semaphore(max_concurrent)
        self._tasks: Set[asyncio.Task] = set()

    def _sender_for(self, addr: Endpoint) -> Callable[[Message], None]:
        return lambda message: self.send(message, addr)

    @staticmethod
    def _find(table: dict, addr: Endpoint, content_hash: Optional[str]):
        if content_hash is not None:
            return table.get((addr, content_hash))
        # Legacy payloads carry no hash: only route when the peer has a single session.
        matches = [session for (peer, _), session in table.items() if peer == addr]
        return matches[0] if len(matches) == 1 else None

    def handle_message(self, message: Message, addr: tuple) -> bool:
        """
        Returns True if the message belonged to the transfer engine.
        """
        addr = tuple(addr[:2])

        if message.msg_type == P2P.TYPE_FILE_REQUEST:
            self.handle_file_request(message.payload["fileName"], message.payload["hash"], addr)

        elif message.msg_type == P2P.TYPE_FILE_SECTION:
            offset, total, data, content_hash = decode_section(message.payload)
            session = self._find(self.receivers, addr, content_hash)
            if session is not None:
                session.on_fragment(offset, total, data)
            elif content_hash is not None and offset <= self.completed.get((addr, content_hash), -1):
                self.send(make_section_ack(offset, content_hash), addr)
            else:
                logger.debug(f"FILE_SECTION {offset} from {addr} matches no download")

        elif message.msg_type == P2P.TYPE_FILE_SECTION_RECEIVED:
            offset, content_hash = decode_section_ack(message.payload)
            session = self._find(self.senders, addr, content_hash)
            if session is not None:
                session.on_ack(offset)
            else:
                logger.debug(f"Ack {offset} from {addr} matches no upload")

        elif message.msg_type == P2P.TYPE_FILE_ERROR:
            session = self._find(self.receivers, addr, message.payload["hash"])
            if session is not None:
                session.fail(f"owner refused: {message.payload['reason']}")

        else:
            return False
        return True

    # ---------- uploads ----------

    def handle_file_request(self, file_name: str, content_hash: str, addr: Endpoint):
        key = (addr, content_hash)
        if key in self.senders:
            logger.debug(f"Duplicate FILE_REQUEST for {file_name} from {addr}, already serving")
            return

        entry = self.catalog.lookup(file_name, content_hash)
        if entry is None:
            self._refuse(file_name, content_hash, addr, "File not found")
            return

        try:
            stream = self.catalog.open(entry)
            size_bytes = os.fstat(stream.fileno()).st_size
        except OSError as e:
            self._refuse(file_name, content_hash, addr, f"Unreadable file: {e.strerror}")
            return

        session = SenderSession(addr, file_name, content_hash, stream, size_bytes,
                                self._sender_for(addr),
                                fragment_size=self.fragment_size,
                                retransmit_timeout=self.retransmit_timeout,
                                max_retries=self.max_retries)
        self.senders[key] = session
        self._spawn(self._run_sender(session))

    def _refuse(self, file_name: str, content_hash: str, addr: Endpoint, reason: str):
        logger.warning(f"Refusing {file_name} ({content_hash}) to {addr[0]}:{addr[1]}: {reason}")
        payload = {"fileName": file_name, "hash": content_hash, "reason": reason}
        self.send(Message(P2P.TYPE_FILE_ERROR, payload), addr)

    async def _run_sender(self, session: SenderSession):
        stats_key = _stats_key(session.key)
        try:
            async with self._upload_slots:
                logger.info(f"Sending {session.file_name} to {session.peer[0]}:{session.peer[1]} "
                            f"({session.total_fragments} fragments)")
                await session.run()
            logger.info(f"Finished sending {session.file_name} to {session.peer[0]}:{session.peer[1]}")
            StatsManager().finish_transfer(stats_key, "done")
        except TransferAbandoned as e:
            logger.warning(f"Transfer abandoned: {e}")
            StatsManager().finish_transfer(stats_key, "failed")
        except TransportError as e:
            logger.error(f"Upload of {session.file_name} stopped, transport failed: {e}")
            StatsManager().finish_transfer(stats_key, "failed")
        finally:
            session.close()
            self.senders.pop(session.key, None)

    # ---------- downloads ----------

    async def download(self, resource: ResourceRecord) -> TransferResult:
        """
        Downloads 'resource' from its owner and writes it to the downloads directory.
        The file is kept even if its hash doesn't match; check TransferResult.verified.
        """
        key = (tuple(resource.owner), resource.content_hash)
        if key in self.receivers:
            raise DuplicateTransfer(f"Already downloading {resource.file_name} from {key[0][0]}:{key[0][1]}")

        session = ReceiverSession(key[0], resource.file_name, resource.content_hash,
                                  self._sender_for(key[0]),
                                  retransmit_timeout=self.retransmit_timeout,
                                  max_retries=self.max_retries)
        self.receivers[key] = session
        stats_key = _stats_key(key)
        try:
            async with self._download_slots:
                result = await session.run()
        except (TransferAbandoned, TransportError):
            StatsManager().finish_transfer(stats_key, "failed")
            raise
        finally:
            self.receivers.pop(key, None)

        self._remember_completed(key, session.total_fragments - 1)
        result.path = self.writer.write(result.file_name, result.data)
        if result.verified:
            logger.info(f"Download of {result.file_name} verified ({result.size_bytes} bytes)")
            StatsManager().finish_transfer(stats_key, "done")
        else:
            logger.warning(f"Kept {result.path} with a different hash ({result.mismatch})")
            StatsManager().finish_transfer(stats_key, "mismatch")
        return result

    def _remember_completed(self, key: SessionKey, last_offset: int):
        self.completed[key] = last_offset
        while len(self.completed) > self.COMPLETED_MEMORY:
            del self.completed[next(iter(self.completed))]

    # ---------- lifecycle ----------

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
