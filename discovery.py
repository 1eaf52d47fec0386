import asyncio
import logging
import socket
from typing import Dict, List, Optional, Set, Tuple

import p2p_protocol as P2P
from errors import LookupFailure, RegistrationTimeout
from protocol import Message
from registry import ResourceRecord
from transport import UDPTransport

logger = logging.getLogger(__name__)


class DiscoveryClient:
    """
    Peer side of the tracker conversation: registration, heartbeats and lookups.
    Shares the peer's UDPTransport; responses are fed in through handle_message.
    """

    def __init__(self, transport: UDPTransport, tracker_addr: tuple,
                 register_attempts: int = P2P.REGISTER_ATTEMPTS,
                 register_interval: float = P2P.REGISTER_INTERVAL,
                 heartbeat_interval: float = P2P.HEARTBEAT_INTERVAL,
                 max_missed_heartbeats: Optional[int] = P2P.MAX_MISSED_HEARTBEATS,
                 request_timeout: float = P2P.REQUEST_TIMEOUT):
        self.transport = transport
        self.tracker_addr = tracker_addr
        self.register_attempts = register_attempts
        self.register_interval = register_interval
        self.heartbeat_interval = heartbeat_interval
        self.max_missed_heartbeats = max_missed_heartbeats
        self.request_timeout = request_timeout

        self.registered = False
        self.catalog: List[dict] = []
        self.missed_heartbeats = 0
        self.reregistrations = 0
        self.resources: List[ResourceRecord] = []

        self._registered_event = asyncio.Event()
        self._listing_waiters: List[asyncio.Future] = []
        self._owner_waiters: Dict[Tuple[str, str], List[asyncio.Future]] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None
        # Source addresses tracker responses are accepted from
        self.tracker_endpoints: Set[Tuple[str, int]] = {tuple(tracker_addr[:2])}

    async def resolve_tracker(self):
        """
        Adds every address the tracker host name resolves to, so replies from
        e.g. 127.0.0.1 are recognised when the tracker was given as "localhost".
        """
        host, port = self.tracker_addr[:2]
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
        except socket.gaierror as e:
            logger.warning(f"Couldn't resolve tracker host {host}: {e}")
            return
        for _, _, _, _, sockaddr in infos:
            self.tracker_endpoints.add(tuple(sockaddr[:2]))

    def _send(self, message: Message):
        self.transport.send_message(message, self.tracker_addr)

    # ---------- registration ----------

    async def bootstrap_register(self, catalog: List[dict]):
        """
        Registers our catalog ([{file, hash, size}, ...]) with the tracker.
        Raises RegistrationTimeout if no REGISTER_RESPONSE arrives after all attempts.
        """
        self.catalog = catalog
        await self.resolve_tracker()
        message = Message(P2P.TYPE_REGISTER, catalog)

        for attempt in range(1, self.register_attempts + 1):
            self._send(message)
            if attempt == 1:
                logger.info(f"Waiting for tracker response from {self.tracker_addr[0]}:{self.tracker_addr[1]}.")
            else:
                logger.warning(f"The tracker did not respond ({attempt - 1}). Trying again...")
            try:
                await asyncio.wait_for(self._registered_event.wait(), self.register_interval)
                break
            except asyncio.TimeoutError:
                continue
        else:
            logger.error(f"Couldn't connect to the tracker after {self.register_attempts} tries.")
            raise RegistrationTimeout(self.register_attempts)

        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self.loop_heartbeat())

    def handle_register_response(self):
        if not self.registered:
            logger.info("Successfully registered to tracker.")
        self.registered = True
        self.missed_heartbeats = 0
        self._registered_event.set()

    # ---------- liveness ----------

    async def loop_heartbeat(self):
        """
        Sends REFRESH every interval for the rest of the process lifetime.
        Too many unanswered refreshes re-send our registration (the tracker upserts).
        """
        while True:
            await asyncio.sleep(self.heartbeat_interval)

            if self.max_missed_heartbeats is not None and self.missed_heartbeats >= self.max_missed_heartbeats:
                logger.warning(f"Tracker missed {self.missed_heartbeats} heartbeats, registering again")
                self.reregistrations += 1
                self.missed_heartbeats = 0
                self._send(Message(P2P.TYPE_REGISTER, self.catalog))
                continue

            self._send(Message(P2P.TYPE_REFRESH))
            self.missed_heartbeats += 1

    def handle_refresh_response(self):
        self.missed_heartbeats = 0

    # ---------- lookups ----------

    async def fetch_resource_list(self) -> List[ResourceRecord]:
        """
        Asks the tracker for every resource offered by other peers and caches the answer.
        """
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._listing_waiters.append(waiter)
        try:
            logger.info("Fetching resource list.")
            self._send(Message(P2P.TYPE_FETCH_RESOURCES))
            return await asyncio.wait_for(waiter, self.request_timeout)
        except asyncio.TimeoutError:
            raise LookupFailure("The tracker did not send the resource list.") from None
        finally:
            if waiter in self._listing_waiters:
                self._listing_waiters.remove(waiter)

    def handle_resource_list(self, payload: list):
        self.resources = [ResourceRecord.from_listing(item) for item in payload]
        logger.info(f"Received {len(self.resources)} resources.")
        waiters, self._listing_waiters = self._listing_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(list(self.resources))

    def find_resource(self, file_name: str) -> Optional[ResourceRecord]:
        for resource in self.resources:
            if resource.file_name == file_name:
                return resource
        return None

    async def request_owner(self, resource: ResourceRecord) -> ResourceRecord:
        """
        Resolves the current owner endpoint of a listed resource.
        Raises LookupFailure when the tracker has no owner or doesn't answer.
        """
        key = (resource.file_name, resource.content_hash)
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._owner_waiters.setdefault(key, []).append(waiter)
        try:
            logger.info(f"Requesting info for \"{resource.file_name}\" from the tracker.")
            self._send(Message(P2P.TYPE_RESOURCE_REQUEST, resource.to_listing()))
            owner = await asyncio.wait_for(waiter, self.request_timeout)
        except asyncio.TimeoutError:
            raise LookupFailure(f"The tracker did not answer for \"{resource.file_name}\".",
                                resource.file_name, resource.content_hash) from None
        finally:
            waiters = self._owner_waiters.get(key, [])
            if waiter in waiters:
                waiters.remove(waiter)
            if not waiters:
                self._owner_waiters.pop(key, None)

        if owner is None:
            raise LookupFailure(f"No peer currently offers \"{resource.file_name}\".",
                                resource.file_name, resource.content_hash)
        return owner

    def handle_resource_response(self, payload: dict):
        key = (payload["fileName"], payload["hash"])
        owner = None if payload.get("found", True) is False else ResourceRecord.from_wire(payload)
        waiters = self._owner_waiters.pop(key, [])
        if not waiters:
            logger.debug(f"Unsolicited owner info for {key[0]}")
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(owner)

    # ---------- dispatch ----------

    def handle_message(self, message: Message, addr: tuple) -> bool:
        """
        Returns True if the message was a tracker response.
        Responses from anywhere but the tracker are claimed and dropped.
        """
        if message.msg_type not in P2P.DISCOVERY_TYPES:
            return False

        if tuple(addr[:2]) not in self.tracker_endpoints:
            logger.warning(f"Dropped {message.msg_type} from {addr[0]}:{addr[1]}, not the tracker")
            return True

        if message.msg_type == P2P.TYPE_REGISTER_RESPONSE:
            self.handle_register_response()

        elif message.msg_type == P2P.TYPE_REFRESH_RESPONSE:
            self.handle_refresh_response()

        elif message.msg_type == P2P.TYPE_FETCH_RESOURCES_RESPONSE:
            self.handle_resource_list(message.payload)

        elif message.msg_type == P2P.TYPE_RESOURCE_REQUEST_RESPONSE:
            self.handle_resource_response(message.payload)

        else:
            return False
        return True

    async def close(self):
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
