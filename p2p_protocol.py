# p2p_protocol.py

# Message Type Constants
# Tracker <-> Peer
TYPE_REGISTER = "REGISTER"                                     # Payload: [{file, hash, size}, ...]
TYPE_REGISTER_RESPONSE = "REGISTER_RESPONSE"                   # No payload
TYPE_REFRESH = "REFRESH"                                       # Keep-alive, no payload
TYPE_REFRESH_RESPONSE = "REFRESH_RESPONSE"                     # No payload
TYPE_FETCH_RESOURCES = "FETCH_RESOURCES"                       # No payload
TYPE_FETCH_RESOURCES_RESPONSE = "FETCH_RESOURCES_RESPONSE"     # Payload: [{fileName, size, hash}, ...]
TYPE_RESOURCE_REQUEST = "RESOURCE_REQUEST"                     # Payload: {fileName, size, hash}
TYPE_RESOURCE_REQUEST_RESPONSE = "RESOURCE_REQUEST_RESPONSE"   # Payload: owner record, or {fileName, hash, found: false}

# Peer <-> Peer
TYPE_FILE_REQUEST = "FILE_REQUEST"                             # Payload: {fileName, hash}
TYPE_FILE_SECTION = "FILE_SECTION"                             # Payload: {offset, total, data(base64), hash}
TYPE_FILE_SECTION_RECEIVED = "FILE_SECTION_RECEIVED"           # Payload: {offset, hash} or bare offset
TYPE_FILE_ERROR = "FILE_ERROR"                                 # Payload: {fileName, hash, reason}

TRACKER_TYPES = (
    TYPE_REGISTER,
    TYPE_REFRESH,
    TYPE_FETCH_RESOURCES,
    TYPE_RESOURCE_REQUEST,
)

DISCOVERY_TYPES = (
    TYPE_REGISTER_RESPONSE,
    TYPE_REFRESH_RESPONSE,
    TYPE_FETCH_RESOURCES_RESPONSE,
    TYPE_RESOURCE_REQUEST_RESPONSE,
)

TRANSFER_TYPES = (
    TYPE_FILE_REQUEST,
    TYPE_FILE_SECTION,
    TYPE_FILE_SECTION_RECEIVED,
    TYPE_FILE_ERROR,
)

ALL_TYPES = TRACKER_TYPES + DISCOVERY_TYPES + TRANSFER_TYPES

# Network
DEFAULT_TRACKER_PORT = 7000
MAX_DATAGRAM_SIZE = 65507     # Largest UDP payload over IPv4

# Transfer (stop-and-wait, one fragment in flight)
FRAGMENT_SIZE = 44 * 1024     # base64 + envelope stays under MAX_DATAGRAM_SIZE
RETRANSMIT_TIMEOUT = 10.0     # seconds
MAX_RETRANSMISSIONS = 10      # per fragment, before the transfer is abandoned
MAX_CONCURRENT_TRANSFERS = 4

# Registration / liveness
REGISTER_ATTEMPTS = 3
REGISTER_INTERVAL = 10.0
HEARTBEAT_INTERVAL = 5.0
MAX_MISSED_HEARTBEATS = 3
REQUEST_TIMEOUT = 5.0

# Tracker housekeeping
SWEEP_INTERVAL = 5.0
STALE_THRESHOLD = 10.0
