import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import p2p_protocol as P2P
from errors import MalformedMessage

# Envelope format:
# {"type": <TYPE NAME>, "payload": <value>}   (payload omitted when empty)
# UTF-8 JSON, one envelope per datagram, no length prefix.
ENCODING = "utf-8"


@dataclass
class Message:
    msg_type: str
    payload: Any = None

    def pack(self) -> bytes:
        """
        Serializes the message into a single datagram.
        Raises ValueError if the envelope would not fit in one datagram.
        """
        envelope: Dict[str, Any] = {"type": self.msg_type}
        if self.payload is not None:
            envelope["payload"] = self.payload
        data = json.dumps(envelope, separators=(",", ":")).encode(ENCODING)
        if len(data) > P2P.MAX_DATAGRAM_SIZE:
            raise ValueError(f"{self.msg_type} envelope is {len(data)} bytes, limit is {P2P.MAX_DATAGRAM_SIZE}")
        return data

    @classmethod
    def fitting(cls, msg_type: str, items: list) -> 'Message':
        """
        Builds a list-payload message with as many leading 'items' as fit in one datagram.
        """
        budget = P2P.MAX_DATAGRAM_SIZE - len(cls(msg_type, []).pack())
        kept = []
        for item in items:
            size = len(json.dumps(item, separators=(",", ":")).encode(ENCODING))
            if kept:
                size += 1  # separating comma
            if size > budget:
                break
            budget -= size
            kept.append(item)
        return cls(msg_type, kept)

    @classmethod
    def unpack(cls, data: bytes) -> 'Message':
        """
        Deserializes a datagram into a Message.
        Raises MalformedMessage if the envelope or its payload is invalid.
        """
        try:
            envelope = json.loads(data.decode(ENCODING))
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedMessage(f"Undecodable envelope: {e}") from e

        if not isinstance(envelope, dict):
            raise MalformedMessage("Envelope is not an object")

        msg_type = envelope.get("type")
        if msg_type not in P2P.ALL_TYPES:
            raise MalformedMessage(f"Unknown message type: {msg_type!r}")

        payload = envelope.get("payload")
        validator = _VALIDATORS.get(msg_type)
        if validator:
            validator(payload)
        else:
            payload = None

        return cls(msg_type=msg_type, payload=payload)


# ==========================================
# Payload schemas
# ==========================================

def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _require_str(obj: dict, key: str):
    if not isinstance(obj.get(key), str):
        raise MalformedMessage(f"Field {key!r} must be a string")


def _require_count(obj: dict, key: str):
    value = obj.get(key)
    if not _is_int(value) or value < 0:
        raise MalformedMessage(f"Field {key!r} must be a non-negative integer")


def _require_object(payload, what: str) -> dict:
    if not isinstance(payload, dict):
        raise MalformedMessage(f"{what} payload must be an object")
    return payload


def _require_list(payload, what: str) -> list:
    if not isinstance(payload, list):
        raise MalformedMessage(f"{what} payload must be a list")
    return payload


def _validate_register(payload):
    for item in _require_list(payload, P2P.TYPE_REGISTER):
        _require_object(item, "REGISTER entry")
        _require_str(item, "file")
        _require_str(item, "hash")
        _require_count(item, "size")


def _validate_listing(payload):
    for item in _require_list(payload, P2P.TYPE_FETCH_RESOURCES_RESPONSE):
        _require_object(item, "Resource entry")
        _require_str(item, "fileName")
        _require_str(item, "hash")
        _require_count(item, "size")


def _validate_resource_request(payload):
    obj = _require_object(payload, P2P.TYPE_RESOURCE_REQUEST)
    _require_str(obj, "fileName")
    _require_str(obj, "hash")


def _validate_resource_response(payload):
    obj = _require_object(payload, P2P.TYPE_RESOURCE_REQUEST_RESPONSE)
    _require_str(obj, "fileName")
    _require_str(obj, "hash")
    if obj.get("found", True) is False:
        return
    _require_count(obj, "size")
    _require_str(obj, "address")
    port = obj.get("port")
    if not _is_int(port) or not 0 < port < 65536:
        raise MalformedMessage("Field 'port' must be a valid port number")


def _validate_file_request(payload):
    obj = _require_object(payload, P2P.TYPE_FILE_REQUEST)
    _require_str(obj, "fileName")
    _require_str(obj, "hash")


def _validate_file_section(payload):
    obj = _require_object(payload, P2P.TYPE_FILE_SECTION)
    _require_count(obj, "offset")
    _require_count(obj, "total")
    if obj["offset"] >= obj["total"]:
        raise MalformedMessage(f"Offset {obj['offset']} out of range for total {obj['total']}")
    _require_str(obj, "data")
    try:
        base64.b64decode(obj["data"], validate=True)
    except binascii.Error as e:
        raise MalformedMessage(f"Section data is not valid base64: {e}") from e
    if "hash" in obj:
        _require_str(obj, "hash")


def _validate_section_received(payload):
    if _is_int(payload):
        if payload < 0:
            raise MalformedMessage("Acknowledged offset must be non-negative")
        return
    obj = _require_object(payload, P2P.TYPE_FILE_SECTION_RECEIVED)
    _require_count(obj, "offset")
    _require_str(obj, "hash")


def _validate_file_error(payload):
    obj = _require_object(payload, P2P.TYPE_FILE_ERROR)
    _require_str(obj, "fileName")
    _require_str(obj, "hash")
    _require_str(obj, "reason")


_VALIDATORS: Dict[str, Callable[[Any], None]] = {
    P2P.TYPE_REGISTER: _validate_register,
    P2P.TYPE_FETCH_RESOURCES_RESPONSE: _validate_listing,
    P2P.TYPE_RESOURCE_REQUEST: _validate_resource_request,
    P2P.TYPE_RESOURCE_REQUEST_RESPONSE: _validate_resource_response,
    P2P.TYPE_FILE_REQUEST: _validate_file_request,
    P2P.TYPE_FILE_SECTION: _validate_file_section,
    P2P.TYPE_FILE_SECTION_RECEIVED: _validate_section_received,
    P2P.TYPE_FILE_ERROR: _validate_file_error,
}


# ==========================================
# Section helpers
# ==========================================

def make_section(offset: int, total: int, data: bytes, content_hash: Optional[str] = None) -> Message:
    payload = {
        "offset": offset,
        "total": total,
        "data": base64.b64encode(data).decode("ascii"),
    }
    if content_hash is not None:
        payload["hash"] = content_hash
    return Message(P2P.TYPE_FILE_SECTION, payload)


def decode_section(payload: dict) -> tuple:
    """
    Returns (offset, total, data_bytes, hash_or_None) from a validated FILE_SECTION payload.
    """
    return (
        payload["offset"],
        payload["total"],
        base64.b64decode(payload["data"]),
        payload.get("hash"),
    )


def make_section_ack(offset: int, content_hash: str) -> Message:
    return Message(P2P.TYPE_FILE_SECTION_RECEIVED, {"offset": offset, "hash": content_hash})


def decode_section_ack(payload) -> tuple:
    """
    Returns (offset, hash_or_None); the bare-integer form carries no hash.
    """
    if _is_int(payload):
        return payload, None
    return payload["offset"], payload["hash"]
