import asyncio
import logging
from typing import Optional

import p2p_protocol as P2P
from protocol import Message
from registry import TrackerRegistry
from stats_manager import StatsManager
from transport import UDPTransport

logger = logging.getLogger(__name__)


class TrackerNode:
    """
    Rendezvous service: keeps the registry of live peers and answers discovery queries.
    Never touches file bytes.
    """

    def __init__(self, host: str, port: int = P2P.DEFAULT_TRACKER_PORT,
                 registry: Optional[TrackerRegistry] = None,
                 sweep_interval: float = P2P.SWEEP_INTERVAL,
                 stale_threshold: float = P2P.STALE_THRESHOLD):
        self.host = host
        self.port = port
        self.registry = registry if registry is not None else TrackerRegistry()
        self.sweep_interval = sweep_interval
        self.stale_threshold = stale_threshold

        self.transport = UDPTransport(on_message_received=self.handle_message)
        self.running = False
        self._tasks = []

    async def start(self):
        self.running = True
        StatsManager().set_role("tracker")
        await self.transport.start_server(self.host, self.port)
        self.port = self.transport.local_address[1]
        logger.info(f"Tracker listening on {self.host}:{self.port}")

        self._tasks.append(asyncio.create_task(self.loop_sweep_stale()))

    async def stop(self):
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.transport.close()

    def handle_message(self, message: Message, addr: tuple):
        """
        Callback from UDPTransport. Dispatches based on msg_type.
        Errors are logged; they never take the tracker down.
        """
        try:
            if message.msg_type == P2P.TYPE_REGISTER:
                self.handle_register(message, addr)

            elif message.msg_type == P2P.TYPE_REFRESH:
                self.handle_refresh(addr)

            elif message.msg_type == P2P.TYPE_FETCH_RESOURCES:
                self.handle_fetch_resources(addr)

            elif message.msg_type == P2P.TYPE_RESOURCE_REQUEST:
                self.handle_resource_request(message, addr)

            else:
                logger.debug(f"Ignoring {message.msg_type} from {addr}")
        except Exception:
            logger.exception(f"Failed to handle {message.msg_type} from {addr}")

    def handle_register(self, message: Message, addr: tuple):
        is_new = self.registry.register(addr, message.payload)
        StatsManager().update_registry(len(self.registry))
        self.transport.send_message(Message(P2P.TYPE_REGISTER_RESPONSE), addr)
        if is_new:
            logger.info(f"Registered a new client at {addr[0]}:{addr[1]} with {len(message.payload)} files")
        else:
            logger.info(f"Client {addr[0]}:{addr[1]} re-registered with {len(message.payload)} files")

    def handle_refresh(self, addr: tuple):
        if self.registry.heartbeat(addr):
            self.transport.send_message(Message(P2P.TYPE_REFRESH_RESPONSE), addr)
            logger.debug(f"Refreshed {addr[0]}:{addr[1]}")
        else:
            # Unknown or already evicted: stay silent, the peer will re-register.
            logger.debug(f"REFRESH from unregistered {addr[0]}:{addr[1]}")

    def handle_fetch_resources(self, addr: tuple):
        resources = self.registry.list_resources_excluding(addr)
        payload = [resource.to_listing() for resource in resources]
        message = Message.fitting(P2P.TYPE_FETCH_RESOURCES_RESPONSE, payload)
        if len(message.payload) < len(payload):
            logger.warning(f"Resource list cut to {len(message.payload)} of {len(payload)} items "
                           f"to fit in one datagram")
        self.transport.send_message(message, addr)
        logger.info(f"Resource list ({len(message.payload)} items) sent to {addr[0]}:{addr[1]}.")

    def handle_resource_request(self, message: Message, addr: tuple):
        file_name = message.payload["fileName"]
        content_hash = message.payload["hash"]
        owner = self.registry.resolve_owner(addr, file_name, content_hash)

        if owner is None:
            logger.warning(f"No owner for \"{file_name}\" ({content_hash}) requested by {addr[0]}:{addr[1]}")
            payload = {"fileName": file_name, "hash": content_hash, "found": False}
        else:
            logger.info(f"Sending info for \"{file_name}\" to {addr[0]}:{addr[1]}.")
            payload = owner.to_wire()

        self.transport.send_message(Message(P2P.TYPE_RESOURCE_REQUEST_RESPONSE, payload), addr)

    async def loop_sweep_stale(self):
        """
        Periodically evicts peers that stopped refreshing. Evicted peers are not notified.
        """
        while self.running:
            await asyncio.sleep(self.sweep_interval)
            evicted = self.registry.sweep_stale(threshold=self.stale_threshold)
            for addr in evicted:
                logger.info(f"Removed \"{addr[0]}:{addr[1]}\" due to inactivity.")
            StatsManager().update_registry(len(self.registry), evicted=len(evicted))
