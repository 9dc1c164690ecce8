"""
AES Block Cipher Core
=====================
Forward-direction AES (FIPS-197) for 128/192/256-bit keys.

Only encryption is provided: the GCM engine runs the cipher in counter
mode, so both message directions use E_K.  The round-key schedule is a
list of Nr+1 16-byte round keys.

    Key bits   Nk   Nr
    --------   --   --
      128       4   10
      192       6   12
      256       8   14
"""

from __future__ import annotations

KEY_SIZES = (128, 192, 256)
BLOCK_SIZE = 16


class AESError(Exception):
    """Base for errors raised by the AES-GCM engine."""
    pass


class InvalidKeyLength(AESError, ValueError):
    def __init__(self, bits, message: str = ""):
        self.bits = bits
        super().__init__(message or f"Unsupported AES key length: {bits} bits")


# --- S-Box ---
_AES_SBOX = bytes([
    0x63,0x7C,0x77,0x7B,0xF2,0x6B,0x6F,0xC5,0x30,0x01,0x67,0x2B,0xFE,0xD7,0xAB,0x76,
    0xCA,0x82,0xC9,0x7D,0xFA,0x59,0x47,0xF0,0xAD,0xD4,0xA2,0xAF,0x9C,0xA4,0x72,0xC0,
    0xB7,0xFD,0x93,0x26,0x36,0x3F,0xF7,0xCC,0x34,0xA5,0xE5,0xF1,0x71,0xD8,0x31,0x15,
    0x04,0xC7,0x23,0xC3,0x18,0x96,0x05,0x9A,0x07,0x12,0x80,0xE2,0xEB,0x27,0xB2,0x75,
    0x09,0x83,0x2C,0x1A,0x1B,0x6E,0x5A,0xA0,0x52,0x3B,0xD6,0xB3,0x29,0xE3,0x2F,0x84,
    0x53,0xD1,0x00,0xED,0x20,0xFC,0xB1,0x5B,0x6A,0xCB,0xBE,0x39,0x4A,0x4C,0x58,0xCF,
    0xD0,0xEF,0xAA,0xFB,0x43,0x4D,0x33,0x85,0x45,0xF9,0x02,0x7F,0x50,0x3C,0x9F,0xA8,
    0x51,0xA3,0x40,0x8F,0x92,0x9D,0x38,0xF5,0xBC,0xB6,0xDA,0x21,0x10,0xFF,0xF3,0xD2,
    0xCD,0x0C,0x13,0xEC,0x5F,0x97,0x44,0x17,0xC4,0xA7,0x7E,0x3D,0x64,0x5D,0x19,0x73,
    0x60,0x81,0x4F,0xDC,0x22,0x2A,0x90,0x88,0x46,0xEE,0xB8,0x14,0xDE,0x5E,0x0B,0xDB,
    0xE0,0x32,0x3A,0x0A,0x49,0x06,0x24,0x5C,0xC2,0xD3,0xAC,0x62,0x91,0x95,0xE4,0x79,
    0xE7,0xC8,0x37,0x6D,0x8D,0xD5,0x4E,0xA9,0x6C,0x56,0xF4,0xEA,0x65,0x7A,0xAE,0x08,
    0xBA,0x78,0x25,0x2E,0x1C,0xA6,0xB4,0xC6,0xE8,0xDD,0x74,0x1F,0x4B,0xBD,0x8B,0x8A,
    0x70,0x3E,0xB5,0x66,0x48,0x03,0xF6,0x0E,0x61,0x35,0x57,0xB9,0x86,0xC1,0x1D,0x9E,
    0xE1,0xF8,0x98,0x11,0x69,0xD9,0x8E,0x94,0x9B,0x1E,0x87,0xE9,0xCE,0x55,0x28,0xDF,
    0x8C,0xA1,0x89,0x0D,0xBF,0xE6,0x42,0x68,0x41,0x99,0x2D,0x0F,0xB0,0x54,0xBB,0x16,
])

_AES_RCON = [0x01,0x02,0x04,0x08,0x10,0x20,0x40,0x80,0x1B,0x36]

# ShiftRows as a byte permutation over the column-major state
_SHIFT_ROWS = (0, 5, 10, 15, 4, 9, 14, 3, 8, 13, 2, 7, 12, 1, 6, 11)


def num_rounds(bits: int) -> int:
    """Number of cipher rounds for a key of *bits* bits."""
    if bits not in KEY_SIZES:
        raise InvalidKeyLength(bits)
    return bits // 32 + 6


def expand_key(key: bytes, bits: int | None = None) -> list[bytes]:
    """Expand *key* into Nr+1 round keys (each 16 bytes).

    *bits* defaults to ``len(key) * 8``; when given it must agree with the
    key length.
    """
    if bits is None:
        bits = len(key) * 8
    nr = num_rounds(bits)
    if len(key) * 8 != bits:
        raise InvalidKeyLength(bits, f"{len(key)}-byte key does not match "
                                     f"declared length of {bits} bits")
    nk = bits // 32
    w = []
    for i in range(nk):
        w.append(bytes(key[4*i:4*i+4]))
    for i in range(nk, 4 * (nr + 1)):
        t = bytearray(w[i-1])
        if i % nk == 0:
            t = bytearray([_AES_SBOX[t[1]], _AES_SBOX[t[2]],
                           _AES_SBOX[t[3]], _AES_SBOX[t[0]]])
            t[0] ^= _AES_RCON[i // nk - 1]
        elif nk > 6 and i % nk == 4:
            t = bytearray([_AES_SBOX[b] for b in t])
        w.append(bytes(a ^ b for a, b in zip(w[i - nk], t)))
    rkeys = []
    for r in range(nr + 1):
        rkeys.append(b''.join(w[4*r:4*r+4]))
    return rkeys


def encrypt_block(rkeys: list[bytes], block: bytes) -> bytes:
    """Encrypt a single 16-byte block under an expanded schedule."""
    if len(block) != BLOCK_SIZE:
        raise ValueError(f"AES block must be {BLOCK_SIZE} bytes, got {len(block)}")
    nr = len(rkeys) - 1
    s = bytearray(a ^ b for a, b in zip(block, rkeys[0]))
    for r in range(1, nr):
        # SubBytes + ShiftRows
        s = bytearray(_AES_SBOX[s[i]] for i in _SHIFT_ROWS)
        # MixColumns
        t = bytearray(16)
        for c in range(4):
            a0, a1, a2, a3 = s[4*c], s[4*c+1], s[4*c+2], s[4*c+3]
            t[4*c]   = _gm2(a0) ^ _gm3(a1) ^ a2 ^ a3
            t[4*c+1] = a0 ^ _gm2(a1) ^ _gm3(a2) ^ a3
            t[4*c+2] = a0 ^ a1 ^ _gm2(a2) ^ _gm3(a3)
            t[4*c+3] = _gm3(a0) ^ a1 ^ a2 ^ _gm2(a3)
        # AddRoundKey
        s = bytearray(a ^ b for a, b in zip(t, rkeys[r]))
    # Final round (no MixColumns)
    s = bytearray(_AES_SBOX[s[i]] for i in _SHIFT_ROWS)
    return bytes(a ^ b for a, b in zip(s, rkeys[nr]))


def _gm2(v):
    """Galois field multiply by 2 in GF(2^8)."""
    return ((v << 1) ^ (0x1B if v & 0x80 else 0)) & 0xFF

def _gm3(v):
    """Galois field multiply by 3 in GF(2^8)."""
    return _gm2(v) ^ v
