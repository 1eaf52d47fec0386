import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

Endpoint = Tuple[str, int]


@dataclass(frozen=True)
class ResourceRecord:
    file_name: str
    content_hash: str
    size_bytes: int
    owner: Optional[Endpoint] = None

    def to_listing(self) -> dict:
        return {"fileName": self.file_name, "size": self.size_bytes, "hash": self.content_hash}

    def to_wire(self) -> dict:
        address, port = self.owner
        return {
            "fileName": self.file_name,
            "hash": self.content_hash,
            "size": self.size_bytes,
            "address": address,
            "port": port,
        }

    @classmethod
    def from_listing(cls, data: dict) -> 'ResourceRecord':
        return cls(data["fileName"], data["hash"], data["size"])

    @classmethod
    def from_wire(cls, data: dict) -> 'ResourceRecord':
        return cls(data["fileName"], data["hash"], data["size"], (data["address"], data["port"]))


@dataclass
class PeerRecord:
    endpoint: Endpoint
    last_heartbeat: float
    resources: List[ResourceRecord] = field(default_factory=list)

    def __repr__(self):
        return f"<PeerRecord {self.endpoint[0]}:{self.endpoint[1]} ({len(self.resources)} resources)>"


class TrackerRegistry:
    """
    Ephemeral registry of live peers and the files they advertise, keyed by endpoint.
    Owned by one TrackerNode; nothing here is process-global.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.peers: Dict[Endpoint, PeerRecord] = {}  # (host, port) -> PeerRecord

    def __len__(self):
        return len(self.peers)

    def __contains__(self, endpoint: Endpoint):
        return endpoint in self.peers

    def register(self, endpoint: Endpoint, catalog: List[dict], now: Optional[float] = None) -> bool:
        """
        Upserts the peer with the catalog it reported ([{file, hash, size}, ...]).
        Returns True if the peer was not known before.
        """
        now = self.clock() if now is None else now
        resources = [
            ResourceRecord(item["file"], item["hash"], item["size"], endpoint)
            for item in catalog
        ]
        is_new = endpoint not in self.peers
        if is_new:
            self.peers[endpoint] = PeerRecord(endpoint, now, resources)
        else:
            record = self.peers[endpoint]
            record.resources = resources
            record.last_heartbeat = now
        return is_new

    def heartbeat(self, endpoint: Endpoint, now: Optional[float] = None) -> bool:
        """
        Refreshes a known peer. Unknown endpoints are ignored and return False.
        """
        record = self.peers.get(endpoint)
        if record is None:
            return False
        record.last_heartbeat = self.clock() if now is None else now
        return True

    def sweep_stale(self, now: Optional[float] = None, threshold: float = 10.0) -> List[Endpoint]:
        """
        Removes peers that haven't refreshed for more than 'threshold' seconds.
        """
        now = self.clock() if now is None else now
        stale = [addr for addr, record in self.peers.items() if now - record.last_heartbeat > threshold]
        for addr in stale:
            del self.peers[addr]
        return stale

    def list_resources_excluding(self, requester: Endpoint) -> List[ResourceRecord]:
        resources = []
        for addr, record in self.peers.items():
            if addr != requester:
                resources.extend(record.resources)
        return resources

    def resolve_owner(self, requester: Endpoint, file_name: str, content_hash: str) -> Optional[ResourceRecord]:
        """
        Finds an offer of (file_name, content_hash) from a peer other than the requester.
        Several offers resolve to the most recently refreshed peer; none returns None.
        """
        best: Optional[ResourceRecord] = None
        best_seen = None
        for addr, record in self.peers.items():
            if addr == requester:
                continue
            for resource in record.resources:
                if resource.file_name == file_name and resource.content_hash == content_hash:
                    if best is None or record.last_heartbeat > best_seen:
                        best = resource
                        best_seen = record.last_heartbeat
                    break
        return best

    def snapshot(self, now: Optional[float] = None) -> List[dict]:
        now = self.clock() if now is None else now
        return [
            {
                "address": f"{addr[0]}:{addr[1]}",
                "last_heartbeat_age": round(now - record.last_heartbeat, 1),
                "resources": [r.to_listing() for r in record.resources],
            }
            for addr, record in self.peers.items()
        ]
