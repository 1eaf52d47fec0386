import time
from typing import Dict, List, Any


class StatsManager:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(StatsManager, cls).__new__(cls)
            cls._instance._init()
        return cls._instance

    def _init(self):
        self.role = "peer"
        self.upload_bytes = 0
        self.download_bytes = 0
        self.start_time = time.time()

        # Recent throughput calculation
        self.last_calc_time = time.time()
        self.last_upload_bytes = 0
        self.last_download_bytes = 0
        self.current_upload_rate = 0.0
        self.current_download_rate = 0.0

        # Source tracking: "host:port" -> bytes
        self.download_by_source: Dict[str, int] = {}

        # Tracker side
        self.registered_peers = 0
        self.evicted_peers = 0

        # Transfer engine
        self.active_transfers: Dict[str, Dict[str, Any]] = {}
        self.completed_transfers = 0
        self.failed_transfers = 0
        self.integrity_mismatches = 0
        self.retransmits = 0
        self.recent_transfers: List[Dict[str, Any]] = []

    def reset(self):
        self._init()

    def set_role(self, role: str):
        self.role = role

    def add_upload(self, num_bytes: int):
        self.upload_bytes += num_bytes

    def add_download(self, num_bytes: int, source: str = "unknown"):
        self.download_bytes += num_bytes
        self.download_by_source[source] = self.download_by_source.get(source, 0) + num_bytes

    def update_registry(self, peer_count: int, evicted: int = 0):
        self.registered_peers = peer_count
        self.evicted_peers += evicted

    def update_transfer(self, key: str, direction: str, file_name: str, offset: int, total: int):
        self.active_transfers[key] = {
            "direction": direction,
            "file": file_name,
            "progress": f"{offset}/{total}",
        }

    def add_retransmit(self):
        self.retransmits += 1

    def finish_transfer(self, key: str, outcome: str):
        """
        outcome: "done", "mismatch" or "failed"
        """
        info = self.active_transfers.pop(key, {})
        if outcome == "done":
            self.completed_transfers += 1
        elif outcome == "mismatch":
            self.completed_transfers += 1
            self.integrity_mismatches += 1
        else:
            self.failed_transfers += 1

        self.recent_transfers.append({"key": key, "file": info.get("file"), "outcome": outcome, "at": time.time()})
        # Keep list small
        self.recent_transfers = self.recent_transfers[-20:]

    def get_stats(self) -> Dict[str, Any]:
        now = time.time()

        # Update rates every second roughly
        dt = now - self.last_calc_time
        if dt >= 1.0:
            self.current_upload_rate = (self.upload_bytes - self.last_upload_bytes) / dt
            self.current_download_rate = (self.download_bytes - self.last_download_bytes) / dt

            self.last_upload_bytes = self.upload_bytes
            self.last_download_bytes = self.download_bytes
            self.last_calc_time = now

        return {
            "role": self.role,
            "uptime": int(now - self.start_time),
            "upload_rate": self.current_upload_rate,
            "download_rate": self.current_download_rate,
            "total_upload": self.upload_bytes,
            "total_download": self.download_bytes,
            "source_distribution": self.download_by_source,
            "registered_peers": self.registered_peers,
            "evicted_peers": self.evicted_peers,
            "active_transfers": self.active_transfers,
            "completed_transfers": self.completed_transfers,
            "failed_transfers": self.failed_transfers,
            "integrity_mismatches": self.integrity_mismatches,
            "retransmits": self.retransmits,
            "recent_transfers": self.recent_transfers,
        }
