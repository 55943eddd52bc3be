"""Decoding of ``bfgroup`` / ``bfshare`` signer credentials.

Both credentials are bech32m strings wrapping a fixed binary layout. Only the
framing and field layout are handled here; nothing in this module touches
threshold-signature math beyond deriving the public key of a share.
"""
from typing import Dict, List

import bech32
from cryptography.hazmat.primitives.asymmetric import ec

BECH32M_CONST = 0x2BC830A3

GROUP_HRP = "bfgroup"
SHARE_HRP = "bfshare"

GROUP_PUBKEY_SIZE = 33
GROUP_THOLD_SIZE = 4
COMMIT_IDX_SIZE = 4
COMMIT_DATA_SIZE = 103
SHARE_DATA_SIZE = 100

_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class CredentialError(ValueError):
    """Raised when a credential string cannot be decoded."""


def _bech32m_decode(value: str, expected_hrp: str) -> bytes:
    # bech32.bech32_decode caps input at 90 characters and only knows the
    # original checksum constant, so the framing is checked here with the
    # library's primitives instead.
    if not isinstance(value, str) or not value:
        raise CredentialError("Empty credential")
    if value.lower() != value and value.upper() != value:
        raise CredentialError("Mixed-case credential")
    value = value.lower()
    pos = value.rfind("1")
    if pos < 1 or pos + 7 > len(value):
        raise CredentialError("Missing bech32 separator")
    hrp = value[:pos]
    if hrp != expected_hrp:
        raise CredentialError("Expected %s credential, got %s" % (expected_hrp, hrp))
    try:
        data = [bech32.CHARSET.index(c) for c in value[pos + 1:]]
    except ValueError:
        raise CredentialError("Invalid bech32 character")
    if bech32.bech32_polymod(bech32.bech32_hrp_expand(hrp) + data) != BECH32M_CONST:
        raise CredentialError("Invalid bech32m checksum")
    decoded = bech32.convertbits(data[:-6], 5, 8, False)
    if decoded is None:
        raise CredentialError("Invalid bech32 padding")
    return bytes(decoded)


def encode_credential(hrp: str, payload: bytes) -> str:
    """Wrap ``payload`` in a bech32m string under ``hrp``."""
    data = bech32.convertbits(payload, 8, 5)
    values = bech32.bech32_hrp_expand(hrp) + data
    polymod = bech32.bech32_polymod(values + [0] * 6) ^ BECH32M_CONST
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(bech32.CHARSET[d] for d in data + checksum)


def decode_group(value: str) -> Dict:
    """Decode a ``bfgroup1...`` credential.

    Returns ``{"group_pk", "threshold", "commits"}``; each commit carries
    ``idx``, ``pubkey``, ``hidden_pn`` and ``binder_pn`` as hex strings.
    """
    raw = _bech32m_decode(value.strip(), GROUP_HRP)
    head = GROUP_PUBKEY_SIZE + GROUP_THOLD_SIZE
    if len(raw) < head + COMMIT_DATA_SIZE or (len(raw) - head) % COMMIT_DATA_SIZE:
        raise CredentialError("Invalid group length: %d" % len(raw))
    commits: List[Dict] = []
    for offset in range(head, len(raw), COMMIT_DATA_SIZE):
        chunk = raw[offset:offset + COMMIT_DATA_SIZE]
        keys = chunk[COMMIT_IDX_SIZE:]
        commits.append({
            "idx": int.from_bytes(chunk[:COMMIT_IDX_SIZE], "big"),
            "pubkey": keys[:33].hex(),
            "hidden_pn": keys[33:66].hex(),
            "binder_pn": keys[66:99].hex(),
        })
    return {
        "group_pk": raw[:GROUP_PUBKEY_SIZE].hex(),
        "threshold": int.from_bytes(raw[GROUP_PUBKEY_SIZE:head], "big"),
        "commits": commits,
    }


def decode_share(value: str) -> Dict:
    """Decode a ``bfshare1...`` credential into ``idx``, ``seckey`` and nonces."""
    raw = _bech32m_decode(value.strip(), SHARE_HRP)
    if len(raw) != SHARE_DATA_SIZE:
        raise CredentialError("Invalid share length: %d" % len(raw))
    return {
        "idx": int.from_bytes(raw[:4], "big"),
        "seckey": raw[4:36].hex(),
        "binder_sn": raw[36:68].hex(),
        "hidden_sn": raw[68:100].hex(),
    }


def derive_public_key_hex(priv_hex: str) -> str:
    """Return the x-only public key for ``priv_hex``."""
    priv_int = int(priv_hex, 16)
    if not 0 < priv_int < _N:
        raise CredentialError("Secret key out of range")
    key = ec.derive_private_key(priv_int, ec.SECP256K1())
    return f"{key.public_key().public_numbers().x:064x}"


def share_pubkey(share_credential: str) -> str:
    return derive_public_key_hex(decode_share(share_credential)["seckey"])
