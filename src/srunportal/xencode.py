"""Opaque ``info`` payload encoder (``srun_bx1``).

The portal's login page builds the ``info`` field as::

    "{SRBX1}" + base64(xencode(json(credentials), challenge))

where ``xencode`` is an XXTEA-style block transform keyed by the challenge and
``base64`` uses a permuted alphabet. The gateway decodes the value and also
recomputes the checksum over it, so the output has to match the browser's
encoder bit for bit.

Main functions:
    xencode:
        Encrypt a message with a challenge-derived key.

    b64encode:
        Base64 with the portal alphabet.

    param_i:
        Build the full ``info`` value from credentials and a challenge.
"""

import base64
import json

from srunportal.protocol import DEFAULT_ENC, INFO_TAG

DELTA = 0x9E3779B9
MASK = 0xFFFFFFFF
PORTAL_ALPHABET = b"LVoJPiCN2R8G90yg+hmFHuacZ1OWMnrsSTXkYpUq/3dlbfKwv6xztjI7DeBE45QA"
STANDARD_ALPHABET = (
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
)
_TO_PORTAL = bytes.maketrans(STANDARD_ALPHABET, PORTAL_ALPHABET)


def _to_words(data: bytes, include_length: bool) -> list[int]:
    # little-endian 32-bit words, zero padded
    words = [
        int.from_bytes(data[i : i + 4].ljust(4, b"\0"), "little")
        for i in range(0, len(data), 4)
    ]
    if include_length:
        words.append(len(data))
    return words


def _from_words(words: list[int]) -> bytes:
    return b"".join(w.to_bytes(4, "little") for w in words)


def xencode(message: bytes, key: bytes) -> bytes:
    """Encrypt ``message`` with ``key`` using the portal's XXTEA variant.

    The message length is appended as an extra word before encryption, and keys
    shorter than 16 bytes are zero-extended. An empty message encodes to ``b""``.

    Args:
        message (bytes): Plaintext.
        key (bytes): Key material (the challenge).

    Returns:
        bytes: Ciphertext, a multiple of 4 bytes long.
    """
    if not message:
        return b""

    v = _to_words(message, True)
    k = _to_words(key, False)
    if len(k) < 4:
        k += [0] * (4 - len(k))

    n = len(v) - 1
    z = v[n]
    d = 0
    rounds = 6 + 52 // (n + 1)
    while rounds > 0:
        d = (d + DELTA) & MASK
        e = (d >> 2) & 3
        for p in range(n + 1):
            y = v[(p + 1) % (n + 1)]
            m = (z >> 5) ^ (y << 2)
            m += ((y >> 3) ^ (z << 4)) ^ (d ^ y)
            m += k[(p & 3) ^ e] ^ z
            v[p] = (v[p] + m) & MASK
            z = v[p]
        rounds -= 1

    return _from_words(v)


def b64encode(data: bytes) -> str:
    """Base64-encode ``data`` with the portal alphabet (``=`` padding kept).

    Examples:
        >>> b64encode(b"\\x00\\x00\\x00")
        'LLLL'
    """
    return base64.b64encode(data).translate(_TO_PORTAL).decode("ascii")


def param_i(
    username: str,
    password: str,
    ip: str,
    acid: int | str,
    challenge: str,
    enc: str = DEFAULT_ENC,
) -> str:
    """Build the opaque ``info`` field for a login request.

    Same inputs always give the same output, and the challenge is the key, so a
    captured value is useless against a new challenge.

    Args:
        username (str): Portal username.
        password (str): Cleartext password (only ever sent encrypted).
        ip (str): Client IPv4 address sent as ``ip``.
        acid (int | str): Access-control id sent as ``ac_id``.
        challenge (str): Challenge token for this attempt.
        enc (str, optional): Encoder version tag.

    Returns:
        str: ``"{SRBX1}"`` followed by the encoded ciphertext.
    """
    # field order matches the portal page's JSON.stringify call
    credentials = json.dumps(
        {
            "username": username,
            "password": password,
            "ip": ip,
            "acid": str(acid),
            "enc_ver": enc,
        },
        separators=(",", ":"),
    )
    ciphertext = xencode(credentials.encode("utf-8"), challenge.encode("utf-8"))
    return INFO_TAG + b64encode(ciphertext)
