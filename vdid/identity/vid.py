"""V-ID and DID generation.

V-ID format: VID-XXXX-XXXX-XXXX (19 characters)
- Segment 1: current timestamp (milliseconds) in the V-ID alphabet
- Segment 2: cryptographically random symbols
- Segment 3: checksum, first 32 bits of SHA-256(segment1 + segment2)

The alphabet drops the visually ambiguous 0/O, 1/I and L.
"""

import hashlib
import re
import secrets
import time

VID_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
VID_SEGMENT_LENGTH = 4
VID_PATTERN = re.compile(
    r"^VID-([A-HJ-NP-Z2-9]{4})-([A-HJ-NP-Z2-9]{4})-([A-HJ-NP-Z2-9]{4})$"
)

DID_METHOD = "vdid"
DID_NETWORKS = ("base", "polygon", "arbitrum", "ethereum", "optimism", "bnb")
DID_PATTERN = re.compile(
    rf"^did:{DID_METHOD}:({'|'.join(DID_NETWORKS)}):([a-fA-F0-9]{{32,42}})$"
)

# Chain id -> DID network name
CHAIN_NETWORKS: dict[int, str] = {
    1: "ethereum",
    10: "optimism",
    56: "bnb",
    137: "polygon",
    8453: "base",
    42161: "arbitrum",
}


def _encode_number(num: int, length: int) -> str:
    """Encode the low ``length`` digits of ``num`` in the V-ID alphabet."""
    base = len(VID_ALPHABET)
    chars = []
    for _ in range(length):
        num, rem = divmod(num, base)
        chars.append(VID_ALPHABET[rem])
    return "".join(reversed(chars))


def _random_segment(length: int) -> str:
    return "".join(secrets.choice(VID_ALPHABET) for _ in range(length))


def _checksum(segment1: str, segment2: str) -> str:
    digest = hashlib.sha256((segment1 + segment2).encode()).digest()
    return _encode_number(int.from_bytes(digest[:4], "big"), VID_SEGMENT_LENGTH)


def generate_vid(timestamp_ms: int | None = None) -> str:
    """Generate a new V-ID.

    Args:
        timestamp_ms: Override for the clock (milliseconds since epoch)

    Returns:
        Identifier of the form VID-XXXX-XXXX-XXXX
    """
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    segment1 = _encode_number(timestamp_ms, VID_SEGMENT_LENGTH)
    segment2 = _random_segment(VID_SEGMENT_LENGTH)
    return f"VID-{segment1}-{segment2}-{_checksum(segment1, segment2)}"


def validate_vid(vid: object) -> bool:
    """Check V-ID shape and checksum.

    Fails closed: any non-string, malformed or mis-checksummed input
    returns False.
    """
    if not isinstance(vid, str):
        return False
    match = VID_PATTERN.match(vid)
    if not match:
        return False
    segment1, segment2, segment3 = match.groups()
    if any(c not in VID_ALPHABET for c in segment1 + segment2 + segment3):
        return False
    return secrets.compare_digest(segment3, _checksum(segment1, segment2))


def network_for_chain(chain_id: int | None) -> str:
    """Map a chain id onto a DID network name (unknown chains -> base)."""
    if chain_id is None:
        return "base"
    return CHAIN_NETWORKS.get(chain_id, "base")


def generate_did(network: str = "base", address: str | None = None) -> str:
    """Generate a DID of the form did:vdid:<network>:<identifier>.

    Args:
        network: One of DID_NETWORKS
        address: Checksummed wallet address; its hex body is the identifier.
            When omitted a random 16-byte hex identifier is used.

    Raises:
        ValueError: If the network is not in the allow-list
    """
    if network not in DID_NETWORKS:
        raise ValueError(f"Unsupported DID network: {network}")
    if address:
        identifier = address[2:] if address.lower().startswith("0x") else address
    else:
        identifier = secrets.token_hex(16)
    return f"did:{DID_METHOD}:{network}:{identifier}"


def validate_did(did: object) -> bool:
    """Check DID shape against the network allow-list."""
    return isinstance(did, str) and DID_PATTERN.match(did) is not None


def parse_did(did: object) -> tuple[str, str] | None:
    """Split a DID into (network, identifier), or None if malformed."""
    if not isinstance(did, str):
        return None
    match = DID_PATTERN.match(did)
    if not match:
        return None
    return match.group(1), match.group(2)


def generate_secure_token(nbytes: int = 32) -> str:
    """Random hex token (2 * nbytes characters)."""
    return secrets.token_hex(nbytes)


def generate_session_id() -> str:
    return secrets.token_hex(16)
