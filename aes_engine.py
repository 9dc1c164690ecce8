"""
Streaming AES-GCM Engine
========================
Register-driven model of an AES-GCM accelerator core.

The host programs it through a handful of operations:

  1. write_key(i, word)       fill KEY0..KEY7 (32-bit, MSB-first)
  2. load_key(bits)           latch 128/192/256 bits and expand the schedule
  3. start_message(encrypt)   arm the phase machine at IV0
  4. push_data(bytes, ...)    stream IV words, AAD, payload and tag

Everything after start_message goes through push_data.  Bytes are
assembled into 32-bit words; each committed word feeds the current phase:

  IDLE -> IV0 -> IV1 -> IV2 -> IV3 -> AAD -> PAYLOAD -> TAG0..TAG3 -> IDLE

IV and tag phases take exactly one word each and roll over on their own,
so one push may span several phases.  AAD and PAYLOAD have no quota: the
host closes them with finish_aad()/finish_payload() or by marking the last
word of a push.  On encrypt the tag is produced as soon as the payload is
closed; on decrypt the four tag phases consume the expected tag and the
verdict is latched in ``tag_ok``.
"""

from __future__ import annotations

import enum
import logging
from typing import Optional

from aes_core import AESError, InvalidKeyLength, KEY_SIZES, expand_key
from gcm import (
    GcmContext, KeyNotLoaded, ProtocolViolation, AuthenticationFailed,
    TAG_SIZE,
)

__all__ = [
    "AESEngine", "KeyStore", "EngineState", "Phase", "PushResult",
    "AESError", "InvalidKeyLength", "KeyNotLoaded", "ProtocolViolation",
    "AuthenticationFailed", "NUM_KEY_REGS", "run_message",
]

log = logging.getLogger(__name__)

NUM_KEY_REGS = 8
MASK32 = 0xFFFFFFFF
SNAPSHOT_VERSION = 1


class Phase(enum.IntEnum):
    IDLE = 0
    IV0 = 1
    IV1 = 2
    IV2 = 3
    IV3 = 4
    AAD = 5
    PAYLOAD = 6
    TAG0 = 7
    TAG1 = 8
    TAG2 = 9
    TAG3 = 10


_IV_PHASES = (Phase.IV0, Phase.IV1, Phase.IV2, Phase.IV3)
_TAG_PHASES = (Phase.TAG0, Phase.TAG1, Phase.TAG2, Phase.TAG3)

# One explicit successor per phase
_NEXT_PHASE = {
    Phase.IDLE: Phase.IV0,
    Phase.IV0: Phase.IV1,
    Phase.IV1: Phase.IV2,
    Phase.IV2: Phase.IV3,
    Phase.IV3: Phase.AAD,
    Phase.AAD: Phase.PAYLOAD,
    Phase.PAYLOAD: Phase.TAG0,
    Phase.TAG0: Phase.TAG1,
    Phase.TAG1: Phase.TAG2,
    Phase.TAG2: Phase.TAG3,
    Phase.TAG3: Phase.IDLE,
}


def _words_to_bytes(words) -> bytes:
    return b''.join((w & MASK32).to_bytes(4, 'big') for w in words)


def _bytes_to_words(data: bytes) -> list[int]:
    return [int.from_bytes(data[i:i+4], 'big') for i in range(0, len(data), 4)]


# ---------------------------------------------------------------------------
#  Key store
# ---------------------------------------------------------------------------

class KeyStore:
    """Eight 32-bit key registers plus the load/zeroize controls.

    ``load_key`` latches the leading registers into ``active``; writes to
    the registers after that do not reach the cipher until the next load.
    The schedule is pushed into the GCM context on load and pulled out
    again on ``zero_key``.
    """

    def __init__(self, gcm: GcmContext):
        self._gcm = gcm
        self.reset()

    def reset(self):
        self.registers: list[int] = [0] * NUM_KEY_REGS
        self.active: list[int] = []
        self.keylen: int = 0
        self.loaded: bool = False
        self.key_zeroed: bool = False
        self._gcm.clear_key()

    def write_key(self, index: int, value: int):
        if not 0 <= index < NUM_KEY_REGS:
            raise IndexError(f"key register {index} out of range "
                             f"(0..{NUM_KEY_REGS - 1})")
        self.registers[index] = value & MASK32
        self.key_zeroed = False

    def load_key(self, bits: int):
        """Latch the leading ``bits // 32`` registers as the active key."""
        if bits not in KEY_SIZES:
            self._unload()
            raise InvalidKeyLength(bits)
        if self.key_zeroed:
            # Wiped registers are not key material until rewritten
            log.warning("load_key(%d) after zeroize without new key words; "
                        "key stays unloaded", bits)
            self._unload()
            return
        self.latch(self.registers[:bits // 32])
        log.debug("AES-%d key loaded", bits)

    def latch(self, words):
        """Make *words* the active key and expand its schedule."""
        words = [int(w) & MASK32 for w in words]
        bits = len(words) * 32
        if bits not in KEY_SIZES:
            raise InvalidKeyLength(bits)
        self._gcm.set_key(expand_key(_words_to_bytes(words), bits))
        self.active = words
        self.keylen = bits
        self.loaded = True

    def zero_key(self):
        self.registers = [0] * NUM_KEY_REGS
        self._unload()
        self.key_zeroed = True
        log.debug("key registers zeroized")

    def key_bytes(self) -> bytes:
        """The active key, MSB-first."""
        if not self.loaded:
            raise KeyNotLoaded("no AES key loaded")
        return _words_to_bytes(self.active)

    def _unload(self):
        self.active = []
        self.keylen = 0
        self.loaded = False
        self._gcm.clear_key()


# ---------------------------------------------------------------------------
#  Engine state
# ---------------------------------------------------------------------------

class EngineState:
    """Per-message registers and flags of the stream processor.

    A fresh instance is the reset state; ``reset()`` returns an existing
    one to it.
    """

    def __init__(self):
        self.reset()

    def reset(self):
        self.phase: Phase = Phase.IDLE
        self.encrypt: bool = False
        self.tag_ok: bool = False
        self.done: bool = False
        self.iv: list[int] = [0] * 4
        self.tag: list[int] = [0] * 4
        self.pending = bytearray()   # bytes short of a full word

    @property
    def nonce(self) -> bytes:
        """96-bit GCM nonce: IV words 0..2."""
        return _words_to_bytes(self.iv[:3])


class PushResult:
    """Outcome of one streaming call."""

    __slots__ = ("output", "tag", "done")

    def __init__(self, output: bytes = b"", tag: Optional[bytes] = None,
                 done: bool = False):
        self.output = output
        self.tag = tag       # computed tag, encrypt direction only
        self.done = done

    def __len__(self):
        return len(self.output)

    def __repr__(self):
        tag = self.tag.hex() if self.tag is not None else None
        return f"PushResult(output={len(self.output)} bytes, tag={tag}, done={self.done})"


# ---------------------------------------------------------------------------
#  Stream processor
# ---------------------------------------------------------------------------

class AESEngine:
    """AES-GCM accelerator core: key store + GCM context + phase machine."""

    def __init__(self):
        self.gcm = GcmContext()
        self.keys = KeyStore(self.gcm)
        self.state = EngineState()
        self.busy: bool = False

        # Callbacks (interrupt glue lives outside the core)
        self.on_busy: Optional[callable] = None   # called with True/False
        self.on_done: Optional[callable] = None   # called when a message completes

    def reset(self):
        """Device reset: wipe keys and return to IDLE."""
        self.keys.reset()
        self.state.reset()
        self.busy = False

    # -- status --

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def encrypt(self) -> bool:
        return self.state.encrypt

    @property
    def done(self) -> bool:
        return self.state.done

    @property
    def tag_ok(self) -> bool:
        return self.state.tag_ok

    @property
    def key_zeroed(self) -> bool:
        return self.keys.key_zeroed

    @property
    def key_loaded(self) -> bool:
        return self.keys.loaded

    @property
    def inp_ready(self) -> bool:
        return self.state.phase != Phase.IDLE

    @property
    def iv(self) -> list[int]:
        return list(self.state.iv)

    @property
    def tag(self) -> list[int]:
        return list(self.state.tag)

    @property
    def in_message(self) -> bool:
        """True once the key has been consumed by the current message."""
        return self.state.phase != Phase.IDLE and self.gcm.started

    # -- key store --

    def write_key(self, index: int, value: int):
        self.keys.write_key(index, value)

    def load_key(self, bits: int):
        if self.in_message:
            raise ProtocolViolation("load_key while a message is in progress")
        self.keys.load_key(bits)

    def zero_key(self):
        if self.in_message:
            log.warning("key zeroized in %s; message can no longer complete",
                        self.state.phase.name)
        self.keys.zero_key()

    # -- message --

    def start_message(self, encrypt: bool):
        self.state.reset()
        self.gcm.reset()
        self.state.encrypt = bool(encrypt)
        self._advance()
        log.debug("start %s message", "encrypt" if encrypt else "decrypt")

    def push_data(self, data: bytes, last_word: Optional[int] = None) -> PushResult:
        """Stream *data* into the current phase.

        *last_word* marks the end of a variable-length phase: it gives the
        number of valid bytes (1..4) in the final word of this call.
        """
        data = bytes(data)
        if last_word is not None and not 1 <= last_word <= 4:
            raise ValueError(f"last_word must be 1..4, got {last_word}")
        self._check_push(len(data), last_word)

        self._set_busy(True)
        try:
            out = bytearray()
            tag = None
            buf = self.state.pending + data
            full = len(buf) - len(buf) % 4
            for i in range(0, full, 4):
                out += self._commit(buf[i:i+4])
            self.state.pending = bytearray(buf[full:])
            if last_word is not None and self.state.phase in (Phase.AAD, Phase.PAYLOAD):
                out_tail, tag = self._close_phase()
                out += out_tail
            return PushResult(bytes(out), tag, self.state.done)
        finally:
            self._set_busy(False)

    def finish_aad(self) -> PushResult:
        """Close the AAD phase; the next bytes pushed are payload."""
        if self.state.phase == Phase.PAYLOAD:
            return PushResult(done=self.state.done)
        if self.state.phase != Phase.AAD:
            raise ProtocolViolation(f"finish_aad in phase {self.state.phase.name}")
        self._require_gcm()
        self._set_busy(True)
        try:
            out, tag = self._close_phase()
            return PushResult(out, tag, self.state.done)
        finally:
            self._set_busy(False)

    def finish_payload(self) -> PushResult:
        """Close the payload (and AAD, if still open) and move to the tag."""
        if self.state.phase not in (Phase.AAD, Phase.PAYLOAD):
            raise ProtocolViolation(f"finish_payload in phase {self.state.phase.name}")
        self._require_gcm()
        self._set_busy(True)
        try:
            out = bytearray()
            tag = None
            while self.state.phase in (Phase.AAD, Phase.PAYLOAD):
                chunk, tag = self._close_phase()
                out += chunk
            return PushResult(bytes(out), tag, self.state.done)
        finally:
            self._set_busy(False)

    # -- internals --

    def _set_busy(self, busy: bool):
        self.busy = busy
        if self.on_busy:
            self.on_busy(busy)

    def _require_gcm(self):
        if not self.gcm.started:
            raise ProtocolViolation("key zeroed mid-message")

    def _check_push(self, nbytes: int, last_word: Optional[int]):
        """Validate a push up front so a rejected call mutates nothing."""
        phase = self.state.phase
        if phase == Phase.IDLE:
            raise ProtocolViolation("push_data with no active message")
        total = len(self.state.pending) + nbytes
        nwords, rem = divmod(total, 4)
        if phase in _IV_PHASES:
            to_aad = Phase.IV3 - phase + 1
            if nwords >= to_aad and not self.keys.loaded:
                raise KeyNotLoaded("IV complete but no AES key loaded")
            landing = Phase.AAD if nwords >= to_aad else Phase(phase + nwords)
        else:
            self._require_gcm()
            landing = phase
            if phase in _TAG_PHASES:
                left = Phase.TAG3 - phase + 1
                if nwords > left or (nwords == left and rem):
                    raise ProtocolViolation("data pushed past the end of the tag")
                landing = Phase.IDLE if nwords == left else Phase(phase + nwords)
        if last_word is not None:
            if rem != last_word % 4:
                raise ProtocolViolation(
                    f"last word declares {last_word} bytes but {rem or 4} remain")
            if rem and landing not in (Phase.AAD, Phase.PAYLOAD):
                raise ProtocolViolation(
                    f"short last word in fixed-size phase {landing.name}")

    def _advance(self):
        self.state.phase = _NEXT_PHASE[self.state.phase]
        log.debug("phase -> %s", self.state.phase.name)

    def _commit(self, word: bytes) -> bytes:
        """Feed one (possibly short) word to the current phase."""
        phase = self.state.phase
        if phase in _IV_PHASES:
            self.state.iv[phase - Phase.IV0] = int.from_bytes(word, 'big')
            if phase == Phase.IV3:
                self.gcm.begin(self.state.nonce, self.state.encrypt)
            self._advance()
        elif phase == Phase.AAD:
            self.gcm.absorb_aad(word)
        elif phase == Phase.PAYLOAD:
            return self.gcm.process_payload(word)
        elif phase in _TAG_PHASES:
            self.state.tag[phase - Phase.TAG0] = int.from_bytes(word, 'big')
            if phase == Phase.TAG3:
                self._verify_tag()
            self._advance()
        else:
            raise ProtocolViolation(f"data in phase {phase.name}")
        return b''

    def _close_phase(self) -> tuple[bytes, Optional[bytes]]:
        """Commit the pending short word and leave AAD or PAYLOAD."""
        out = b''
        if self.state.pending:
            word = bytes(self.state.pending)
            self.state.pending.clear()
            out = self._commit(word)
        if self.state.phase == Phase.AAD:
            self.gcm.close_aad()
            self._advance()
            return out, None
        self._advance()
        if not self.state.encrypt:
            return out, None
        # Encrypt: the tag phases emit the computed tag one word per phase
        tag = self.gcm.finish()
        for i, word in enumerate(_bytes_to_words(tag)):
            self.state.tag[i] = word
            self._advance()
        self._complete()
        return out, tag

    def _verify_tag(self):
        self.gcm.finish()
        self.state.tag_ok = self.gcm.verify(_words_to_bytes(self.state.tag))
        if not self.state.tag_ok:
            log.warning("GCM authentication failed: payload must be discarded")
        self._complete()

    def _complete(self):
        self.state.done = True
        log.info("%s message done: aad=%d payload=%d bytes",
                 "encrypt" if self.state.encrypt else "decrypt",
                 self.gcm.aad_len, self.gcm.data_len)
        if self.on_done:
            self.on_done()

    # -- save / restore --

    def snapshot(self) -> dict:
        """Flat, JSON-serializable device state.

        The round-key schedule and the hash subkey are left out; restore
        derives them again from the latched key words and the IV.
        """
        return {
            "version": SNAPSHOT_VERSION,
            "key": list(self.keys.registers),
            "active_key": list(self.keys.active),
            "key_loaded": self.keys.loaded,
            "key_zeroed": self.keys.key_zeroed,
            "phase": self.state.phase.name,
            "encrypt": self.state.encrypt,
            "iv": list(self.state.iv),
            "tag": list(self.state.tag),
            "tag_ok": self.state.tag_ok,
            "done": self.state.done,
            "pending": bytes(self.state.pending).hex(),
            "gcm": self.gcm.export_state(),
        }

    def load_snapshot(self, snap: dict):
        if snap.get("version") != SNAPSHOT_VERSION:
            raise ValueError(f"unsupported snapshot version {snap.get('version')!r}")
        try:
            phase = Phase[snap["phase"]]
        except KeyError:
            raise ValueError(f"unknown phase {snap['phase']!r}") from None
        self.reset()
        keys = self.keys
        keys.registers = [int(w) & MASK32 for w in snap["key"]]
        if len(keys.registers) != NUM_KEY_REGS:
            raise ValueError("snapshot must hold 8 key registers")
        if snap["key_loaded"]:
            keys.latch(snap["active_key"])
        keys.key_zeroed = bool(snap["key_zeroed"])

        st = self.state
        st.phase = phase
        st.encrypt = bool(snap["encrypt"])
        st.iv = [int(w) & MASK32 for w in snap["iv"]]
        st.tag = [int(w) & MASK32 for w in snap["tag"]]
        st.tag_ok = bool(snap["tag_ok"])
        st.done = bool(snap["done"])
        st.pending = bytearray.fromhex(snap["pending"])
        self.gcm.import_state(snap["gcm"], st.nonce, st.encrypt)

    @classmethod
    def restore(cls, snap: dict) -> AESEngine:
        eng = cls()
        eng.load_snapshot(snap)
        return eng


# ---------------------------------------------------------------------------
#  Host driver
# ---------------------------------------------------------------------------

def _chunks(data: bytes, size: Optional[int]):
    if not size:
        yield data
        return
    for i in range(0, len(data), size):
        yield data[i:i+size]


def run_message(engine: AESEngine, key: bytes, iv: bytes, data: bytes,
                aad: bytes = b"", encrypt: bool = True,
                tag: Optional[bytes] = None,
                chunk: Optional[int] = None) -> tuple[bytes, bytes, bool]:
    """Drive one complete message through *engine*, the way host firmware
    would.  Returns ``(output, tag, tag_ok)``; *tag* is the tag the engine
    computed, in both directions.

    *iv* is the 96-bit nonce (the fourth IV word is sent as zero) or all
    four IV words.  Without *chunk* each section goes out in a single push
    with a last-word marker; with *chunk* the stream is cut into pieces of
    that size and the sections are closed with finish_aad/finish_payload.
    """
    if len(key) * 8 not in KEY_SIZES:
        raise InvalidKeyLength(len(key) * 8)
    if len(iv) not in (12, 16):
        raise ValueError(f"IV must be 12 or 16 bytes, got {len(iv)}")
    if not encrypt and (tag is None or len(tag) != TAG_SIZE):
        raise ValueError("decrypt needs the 16-byte expected tag")
    iv = bytes(iv).ljust(16, b'\x00')

    for i, word in enumerate(_bytes_to_words(bytes(key))):
        engine.write_key(i, word)
    engine.load_key(len(key) * 8)
    engine.start_message(encrypt)

    out = bytearray()
    if chunk:
        for piece in _chunks(iv + bytes(aad), chunk):
            out += engine.push_data(piece).output
        engine.finish_aad()
        for piece in _chunks(bytes(data), chunk):
            out += engine.push_data(piece).output
        res = engine.finish_payload()
    else:
        engine.push_data(iv + bytes(aad), last_word=len(aad) % 4 or 4)
        res = engine.push_data(bytes(data), last_word=len(data) % 4 or 4)
    out += res.output
    tag_out = res.tag
    if not encrypt:
        for piece in _chunks(bytes(tag), chunk):
            engine.push_data(piece)
        tag_out = engine.gcm.tag
    return bytes(out), tag_out, engine.tag_ok
