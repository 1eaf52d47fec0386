import asyncio
import logging
from typing import List, Optional

import p2p_protocol as P2P
from discovery import DiscoveryClient
from errors import LookupFailure, TransportError
from file_store import DownloadWriter, FileCatalog
from protocol import Message
from registry import ResourceRecord
from stats_manager import StatsManager
from transfer import TransferManager, TransferResult
from transport import UDPTransport

logger = logging.getLogger(__name__)


class PeerNode:
    """
    A peer: registers its files with the tracker, serves them to other peers and
    downloads theirs. Tracker traffic and peer traffic share one UDP socket.
    """

    def __init__(self, host: str, port: int, tracker_addr: tuple, files_dir: str,
                 downloads_dir: str = "downloads",
                 max_concurrent: int = P2P.MAX_CONCURRENT_TRANSFERS,
                 fragment_size: int = P2P.FRAGMENT_SIZE,
                 retransmit_timeout: float = P2P.RETRANSMIT_TIMEOUT,
                 max_retries: Optional[int] = P2P.MAX_RETRANSMISSIONS,
                 **discovery_options):
        self.host = host
        self.port = port
        self.tracker_addr = tracker_addr

        self.transport = UDPTransport(on_message_received=self.handle_message,
                                      on_error=self.handle_transport_error)
        self.catalog = FileCatalog(files_dir)
        self.writer = DownloadWriter(downloads_dir)
        self.discovery = DiscoveryClient(self.transport, tracker_addr, **discovery_options)
        self.transfers = TransferManager(self.transport.send_message, self.catalog, self.writer,
                                         max_concurrent=max_concurrent,
                                         fragment_size=fragment_size,
                                         retransmit_timeout=retransmit_timeout,
                                         max_retries=max_retries)

        self.running = False
        self.fatal_error: Optional[Exception] = None
        self.stopped = asyncio.Event()

    async def start(self):
        """
        Scans the shared directory, binds the socket and registers with the tracker.
        Raises FileNotFoundError, TransportError or RegistrationTimeout; all are fatal.
        """
        self.running = True
        StatsManager().set_role("peer")
        self.catalog.scan()
        await self.transport.start_server(self.host, self.port)
        self.port = self.transport.local_address[1]
        logger.info(f"PeerNode started on {self.host}:{self.port}")

        await self.discovery.bootstrap_register(self.catalog.to_wire())

    async def stop(self):
        self.running = False
        await self.discovery.close()
        await self.transfers.close()
        self.transport.close()
        self.stopped.set()

    def handle_message(self, message: Message, addr: tuple):
        """
        Callback from UDPTransport. Tracker responses go to discovery, everything else to transfers.
        """
        if self.discovery.handle_message(message, addr):
            return
        if self.transfers.handle_message(message, addr):
            return
        logger.debug(f"Ignoring {message.msg_type} from {addr}")

    def handle_transport_error(self, error: TransportError):
        logger.error(f"Transport failed, shutting down: {error}")
        self.fatal_error = error
        self.running = False
        self.stopped.set()

    async def list_resources(self) -> List[ResourceRecord]:
        return await self.discovery.fetch_resource_list()

    async def download(self, file_name: str) -> TransferResult:
        """
        Resolves 'file_name' against the last resource list, asks the tracker for its
        owner and downloads it directly from that peer.
        """
        resource = self.discovery.find_resource(file_name)
        if resource is None:
            raise LookupFailure("File not found.", file_name)
        owner = await self.discovery.request_owner(resource)
        logger.info(f"Downloading {owner.file_name} from {owner.owner[0]}:{owner.owner[1]}")
        return await self.transfers.download(owner)
