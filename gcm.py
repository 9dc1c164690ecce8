"""
GCM Context: GHASH + Counter Mode
=================================
Galois/Counter Mode (NIST SP 800-38D) on top of the forward AES core.

Data flow for one message:

  1. begin(nonce)         H = E_K(0^128), J0 from the nonce, counter = J0
  2. absorb_aad(...)      AAD into GHASH (any number of calls)
  3. process_payload(...) CTR keystream XOR, ciphertext into GHASH
  4. finish()             length block into GHASH, tag = S ^ E_K(J0)

All lengths are streamed: AAD and payload may arrive in pieces of any
size.  Partial GHASH blocks are buffered and zero-padded only when the
section is closed, and leftover keystream carries across calls.
"""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from aes_core import AESError, BLOCK_SIZE, encrypt_block, expand_key

log = logging.getLogger(__name__)

TAG_SIZE = 16
NONCE_SIZE = 12

# GHASH reduction polynomial x^128 + x^7 + x^2 + x + 1, bit-reflected
_GHASH_R = 0xE1000000000000000000000000000000


class KeyNotLoaded(AESError):
    """A cryptographic operation was attempted without a loaded key."""
    pass


class ProtocolViolation(AESError):
    """Operation issued out of protocol order."""
    pass


class AuthenticationFailed(AESError):
    """Computed tag does not match the expected tag."""
    pass


def _ghash_mult(x: int, h: int) -> int:
    """GF(2^128) multiplication for GHASH (big-endian bit order)."""
    # x, h are 128-bit integers (MSB-first, SP 800-38D bit order)
    z = 0
    v = h
    for i in range(128):
        if (x >> (127 - i)) & 1:
            z ^= v
        if v & 1:
            v = (v >> 1) ^ _GHASH_R
        else:
            v >>= 1
    return z


def _inc32(counter: bytearray):
    """Increment the rightmost 32 bits of a 16-byte counter."""
    for i in range(15, 11, -1):
        counter[i] = (counter[i] + 1) & 0xFF
        if counter[i] != 0:
            break


def _xor(a: bytes, b: bytes) -> bytes:
    return bytes(x ^ y for x, y in zip(a, b))


class GHash:
    """Running GHASH accumulator under a fixed subkey H."""

    def __init__(self, h: int, state: int = 0):
        self.h = h
        self.state = state

    def update(self, block: bytes):
        """Feed one 16-byte block."""
        x = int.from_bytes(block, 'big')
        self.state = _ghash_mult(self.state ^ x, self.h)

    def update_padded(self, data: bytes):
        """Feed *data* as whole blocks, zero-padding the last partial one."""
        for i in range(0, len(data), BLOCK_SIZE):
            self.update(data[i:i+BLOCK_SIZE].ljust(BLOCK_SIZE, b'\x00'))

    def digest(self) -> bytes:
        return self.state.to_bytes(16, 'big')


class GcmContext:
    """AES-GCM working state for one message at a time.

    The round-key schedule is pushed in by the key store (``set_key``) and
    survives ``begin``; everything else is per-message and is rebuilt by
    ``begin``.
    """

    def __init__(self):
        self._rkeys: Optional[list[bytes]] = None
        self.reset()

    def reset(self):
        self.encrypt = True
        self.started = False
        self.finished = False
        self.aad_closed = False
        self.aad_len = 0        # bytes of AAD absorbed
        self.data_len = 0       # bytes of payload processed
        self.tag: Optional[bytes] = None
        self._j0 = bytes(16)
        self._counter = bytearray(16)
        self._ghash = GHash(0)
        self._aad_buf = bytearray()   # AAD bytes short of a full block
        self._ct_buf = bytearray()    # ciphertext bytes short of a full block
        self._keystream = b''         # unused tail of the current keystream block

    # -- key binding --

    @property
    def has_key(self) -> bool:
        return self._rkeys is not None

    def set_key(self, rkeys: list[bytes]):
        self._rkeys = list(rkeys)

    def clear_key(self):
        """Drop the schedule and all derived working state."""
        self._rkeys = None
        self.reset()

    def _require_key(self):
        if self._rkeys is None:
            raise KeyNotLoaded("no AES key loaded")

    # -- message --

    def begin(self, nonce: bytes, encrypt: bool = True):
        """Start a message: derive H and J0, reset counters and GHASH."""
        self._require_key()
        if not nonce:
            raise ValueError("GCM nonce must not be empty")
        self.reset()
        self.encrypt = bool(encrypt)
        h = int.from_bytes(encrypt_block(self._rkeys, bytes(16)), 'big')
        self._ghash = GHash(h)
        if len(nonce) == NONCE_SIZE:
            # J0 = IV || 0x00000001
            self._j0 = bytes(nonce) + b'\x00\x00\x00\x01'
        else:
            g = GHash(h)
            g.update_padded(bytes(nonce))
            g.update(bytes(8) + (len(nonce) * 8).to_bytes(8, 'big'))
            self._j0 = g.digest()
        self._counter = bytearray(self._j0)
        self.started = True

    def _require_open(self):
        self._require_key()
        if not self.started:
            raise ProtocolViolation("GCM message not started")
        if self.finished:
            raise ProtocolViolation("GCM message already finished")

    def absorb_aad(self, data: bytes):
        """Feed additional authenticated data into GHASH."""
        self._require_open()
        if self.aad_closed:
            raise ProtocolViolation("AAD after payload")
        if not data:
            return
        self._aad_buf += data
        self.aad_len += len(data)
        full = len(self._aad_buf) - len(self._aad_buf) % BLOCK_SIZE
        for i in range(0, full, BLOCK_SIZE):
            self._ghash.update(bytes(self._aad_buf[i:i+BLOCK_SIZE]))
        del self._aad_buf[:full]

    def close_aad(self):
        """Pad and hash the last partial AAD block; no more AAD after this."""
        self._require_open()
        if self.aad_closed:
            return
        if self._aad_buf:
            self._ghash.update_padded(bytes(self._aad_buf))
            self._aad_buf.clear()
        self.aad_closed = True

    def process_payload(self, data: bytes) -> bytes:
        """Encrypt or decrypt *data* (CTR mode) and hash the ciphertext."""
        self._require_open()
        self.close_aad()
        data = bytes(data)
        out = bytearray()
        pos = 0
        while pos < len(data):
            if not self._keystream:
                _inc32(self._counter)
                self._keystream = encrypt_block(self._rkeys, bytes(self._counter))
            n = min(len(self._keystream), len(data) - pos)
            out += _xor(data[pos:pos+n], self._keystream)
            self._keystream = self._keystream[n:]
            pos += n
        out = bytes(out)
        # GHASH always runs over ciphertext
        self._hash_ciphertext(out if self.encrypt else data)
        self.data_len += len(data)
        return out

    def _hash_ciphertext(self, ct: bytes):
        self._ct_buf += ct
        full = len(self._ct_buf) - len(self._ct_buf) % BLOCK_SIZE
        for i in range(0, full, BLOCK_SIZE):
            self._ghash.update(bytes(self._ct_buf[i:i+BLOCK_SIZE]))
        del self._ct_buf[:full]

    def finish(self) -> bytes:
        """Compute the authentication tag."""
        self._require_open()
        self.close_aad()
        if self._ct_buf:
            self._ghash.update_padded(bytes(self._ct_buf))
            self._ct_buf.clear()
        # Final GHASH block: lengths (AAD bits || data bits), each 64-bit BE
        len_block = (self.aad_len * 8).to_bytes(8, 'big') + \
                    (self.data_len * 8).to_bytes(8, 'big')
        self._ghash.update(len_block)
        self.tag = _xor(self._ghash.digest(), encrypt_block(self._rkeys, self._j0))
        self.finished = True
        log.debug("GCM tag computed: aad=%d bytes, payload=%d bytes",
                  self.aad_len, self.data_len)
        return self.tag

    def verify(self, expected: bytes) -> bool:
        """Compare the computed tag against *expected*."""
        if self.tag is None:
            raise ProtocolViolation("tag not computed yet")
        return hmac.compare_digest(self.tag, bytes(expected))

    # -- save / restore --

    def export_state(self) -> dict:
        """Working values that cannot be rederived from key and nonce."""
        return {
            "started": self.started,
            "finished": self.finished,
            "aad_closed": self.aad_closed,
            "aad_len": self.aad_len,
            "data_len": self.data_len,
            "counter": bytes(self._counter).hex(),
            "ghash": f"{self._ghash.state:032x}",
            "aad_buf": bytes(self._aad_buf).hex(),
            "ct_buf": bytes(self._ct_buf).hex(),
            "tag": self.tag.hex() if self.tag is not None else None,
        }

    def import_state(self, state: dict, nonce: bytes, encrypt: bool):
        """Rebuild a message in flight.  H, J0 and the pending keystream are
        rederived from the schedule, *nonce* and the saved counter."""
        if not state.get("started"):
            self.reset()
            return
        self.begin(nonce, encrypt)
        self.finished = bool(state["finished"])
        self.aad_closed = bool(state["aad_closed"])
        self.aad_len = int(state["aad_len"])
        self.data_len = int(state["data_len"])
        self._counter = bytearray.fromhex(state["counter"])
        self._ghash.state = int(state["ghash"], 16)
        self._aad_buf = bytearray.fromhex(state["aad_buf"])
        self._ct_buf = bytearray.fromhex(state["ct_buf"])
        self.tag = bytes.fromhex(state["tag"]) if state.get("tag") else None
        used = self.data_len % BLOCK_SIZE
        if used:
            self._keystream = encrypt_block(self._rkeys, bytes(self._counter))[used:]


# ---------------------------------------------------------------------------
#  One-shot helpers
# ---------------------------------------------------------------------------

def gcm_encrypt(key: bytes, nonce: bytes, plaintext: bytes,
                aad: bytes = b"") -> tuple[bytes, bytes]:
    """Encrypt in one call.  Returns ``(ciphertext, tag)``."""
    ctx = GcmContext()
    ctx.set_key(expand_key(bytes(key)))
    ctx.begin(nonce, encrypt=True)
    ctx.absorb_aad(aad)
    ct = ctx.process_payload(plaintext)
    return ct, ctx.finish()


def gcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes,
                aad: bytes = b"") -> bytes:
    """Decrypt and verify in one call.  Raises AuthenticationFailed."""
    ctx = GcmContext()
    ctx.set_key(expand_key(bytes(key)))
    ctx.begin(nonce, encrypt=False)
    ctx.absorb_aad(aad)
    pt = ctx.process_payload(ciphertext)
    ctx.finish()
    if not ctx.verify(tag):
        raise AuthenticationFailed("GCM tag mismatch")
    return pt
