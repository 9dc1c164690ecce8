"""
AES-GCM Accelerator: MMIO Device Layer
======================================
Memory-mapped register front end for the streaming AES-GCM engine.

The engine itself (aes_engine.py) only exposes plain operations.  This
layer maps them onto a byte-wide register window, latches engine errors
into an ERROR register, and raises the done/error interrupt lines.

All registers are 8-bit accessed.  Multi-byte registers are little-endian
byte lanes, as everywhere else on the bus.
"""

from __future__ import annotations
import logging
import threading
from typing import Optional
from collections import deque

from aes_core import KEY_SIZES
from aes_engine import (
    AESEngine, AESError, InvalidKeyLength, KeyNotLoaded, ProtocolViolation,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Base address (offset on the device bus)
# ---------------------------------------------------------------------------

AES_BASE  = 0x0700


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """A register window on the bus."""

    def __init__(self, name: str, base: int, size: int):
        self.name = name
        self.base = base   # bus offset of register 0
        self.size = size   # bytes in the window

    def overlaps(self, other: Device) -> bool:
        return self.base < other.base + other.size and other.base < self.base + self.size

    def read8(self, offset: int) -> int:
        raise NotImplementedError

    def write8(self, offset: int, value: int):
        raise NotImplementedError


# ---------------------------------------------------------------------------
#  AES-GCM Accelerator
# ---------------------------------------------------------------------------
# Register map (offsets from AES_BASE = 0x0700):
#   0x00..0x1F  KEY0..KEY7 (W)   — key register i at 4*i (32-bit LE lanes)
#   0x20        KEY_CTRL   (W)   — 0x01/0x02/0x03 load 128/192/256, 0x80 zeroize
#   0x21        MSG_CTRL   (W)   — 0x01 start encrypt, 0x02 start decrypt,
#                                  0x04 finish AAD, 0x08 finish payload,
#                                  0x80 device reset
#   0x22        LAST_LEN   (RW)  — valid bytes in the next DIN flush, 0 = not last
#   0x23        STATUS     (R)   — bit 0: busy        bit 1: done
#                                  bit 2: tag_ok      bit 3: key zeroed
#                                  bit 4: key loaded  bit 5: input ready
#                                  bit 7: error latched
#   0x24        PHASE      (R)   — phase number (0=IDLE .. 10=TAG3)
#   0x25        ERROR      (RW)  — last error code (write 1 to clear bits)
#   0x26        IRQ        (RW)  — bit 0: done, bit 1: error (write 1 to clear)
#   0x28..0x2B  DIN        (W)   — data bytes in stream order; writing 0x2B
#                                  pushes them (first LAST_LEN bytes if set)
#   0x2C..0x2F  DOUT_COUNT (R)   — bytes waiting in the output FIFO
#   0x30        DOUT       (R)   — pop one output byte
#   0x40..0x4F  TAG        (R)   — tag computed by the last message
#
# Data flow:
#   1. Write key words, write KEY_CTRL to load
#   2. Write MSG_CTRL (start encrypt / decrypt)
#   3. Write IV (4 words) then AAD through DIN
#   4. MSG_CTRL finish AAD (or LAST_LEN on the final AAD word)
#   5. Write payload through DIN, drain DOUT
#   6. MSG_CTRL finish payload (or LAST_LEN on the final payload word)
#   7. Encrypt: read TAG.  Decrypt: write the expected tag through DIN,
#      then check STATUS.tag_ok

ERR_NONE = 0
ERR_KEY_LENGTH = 1
ERR_KEY_NOT_LOADED = 2
ERR_PROTOCOL = 3

IRQ_DONE = 0x01
IRQ_ERROR = 0x02

_KEY_CTRL_BITS = {0x01: 128, 0x02: 192, 0x03: 256}


def _error_code(exc: Exception) -> int:
    if isinstance(exc, InvalidKeyLength):
        return ERR_KEY_LENGTH
    if isinstance(exc, KeyNotLoaded):
        return ERR_KEY_NOT_LOADED
    return ERR_PROTOCOL


class AESDevice(Device):
    """AES-GCM hardware accelerator (128/192/256-bit keys, streaming).

    *key* presets the key registers, MSB-first, the way a board fuses a
    key in.  A device reset writes it back; the host still has to load it
    through KEY_CTRL.
    """

    def __init__(self, base: int = AES_BASE, name: str = "AES",
                 key: Optional[bytes] = None):
        super().__init__(name, base, 0x50)
        if key is not None and len(key) * 8 not in KEY_SIZES:
            raise InvalidKeyLength(len(key) * 8)
        self.preset_key = bytes(key) if key is not None else None
        self.engine = AESEngine()
        self.engine.on_done = self._on_done
        self.engine.on_busy = self._on_busy
        self._lock = threading.RLock()
        self._depth = 0          # nested bus writes on the owning thread
        self._held_irq = 0       # raised during a write, delivered after it

        # Callbacks
        self.on_irq: Optional[callable] = None   # called with newly raised IRQ bits
        self.on_busy: Optional[callable] = None  # called with True/False
        self._reset()

    def _reset(self):
        self.engine.reset()
        if self.preset_key is not None:
            for i in range(0, len(self.preset_key), 4):
                self.engine.write_key(
                    i // 4, int.from_bytes(self.preset_key[i:i+4], 'big'))
        self.last_len: int = 0
        self.error: int = ERR_NONE
        self.irq: int = 0
        self.din = bytearray(4)
        self.dout: deque[int] = deque()
        self.tag = bytearray(16)

    # -- bus access --

    def read8(self, offset: int) -> int:
        with self._lock:
            return self._read8(offset)

    def write8(self, offset: int, value: int):
        with self._lock:
            self._depth += 1
            try:
                self._write8(offset, value & 0xFF)
            finally:
                self._depth -= 1
            bits = 0
            if self._depth == 0:
                bits, self._held_irq = self._held_irq, 0
        # Handlers run with the bus free so they can read STATUS/ERROR
        if bits and self.on_irq:
            self.on_irq(bits)

    def _read8(self, offset: int) -> int:
        if offset == 0x22:
            return self.last_len
        elif offset == 0x23:
            return self.status
        elif offset == 0x24:
            return int(self.engine.phase)
        elif offset == 0x25:
            return self.error
        elif offset == 0x26:
            return self.irq
        elif 0x2C <= offset <= 0x2F:
            return (len(self.dout) >> (8 * (offset - 0x2C))) & 0xFF
        elif offset == 0x30:
            if self.dout:
                return self.dout.popleft()
            return 0
        elif 0x40 <= offset < 0x50:
            return self.tag[offset - 0x40]
        return 0

    def _write8(self, offset: int, value: int):
        if 0x00 <= offset < 0x20:
            idx, lane = divmod(offset, 4)
            shift = 8 * lane
            word = self.engine.keys.registers[idx]
            word = (word & ~(0xFF << shift)) | (value << shift)
            self.engine.write_key(idx, word & 0xFFFFFFFF)
        elif offset == 0x20:
            if value & 0x80:
                self.engine.zero_key()
            else:
                bits = _KEY_CTRL_BITS.get(value, 0)
                self._run(self.engine.load_key, bits)
        elif offset == 0x21:
            self._msg_ctrl(value)
        elif offset == 0x22:
            self.last_len = value
        elif offset == 0x25:
            # Write-1-to-clear
            self.error &= ~value
        elif offset == 0x26:
            self.irq &= ~value
        elif 0x28 <= offset < 0x2C:
            self.din[offset - 0x28] = value
            if offset == 0x2B:
                self._flush_din()

    @property
    def status(self) -> int:
        eng = self.engine
        return (int(eng.busy)
                | (int(eng.done) << 1)
                | (int(eng.tag_ok) << 2)
                | (int(eng.key_zeroed) << 3)
                | (int(eng.key_loaded) << 4)
                | (int(eng.inp_ready) << 5)
                | (int(self.error != ERR_NONE) << 7))

    def _msg_ctrl(self, value: int):
        if value & 0x80:
            self._reset()
            return
        if value & 0x01:
            self._start(True)
        elif value & 0x02:
            self._start(False)
        if value & 0x04:
            self._run(self.engine.finish_aad)
        if value & 0x08:
            self._run(self.engine.finish_payload)

    def _start(self, encrypt: bool):
        self.dout.clear()
        self.last_len = 0
        self.engine.start_message(encrypt)

    def _flush_din(self):
        n = self.last_len
        self.last_len = 0
        if n > 4:
            self._latch_error(ProtocolViolation(f"LAST_LEN {n} out of range"))
            return
        self._run(self.engine.push_data, bytes(self.din[:n or 4]), n or None)

    def _run(self, op, *args):
        """Run an engine operation; errors land in ERROR and raise IRQ."""
        try:
            res = op(*args)
        except AESError as e:
            self._latch_error(e)
            return None
        if res is not None:
            self.dout.extend(res.output)
            if res.tag is not None:
                self.tag[:] = res.tag
        return res

    def _latch_error(self, exc: Exception):
        self.error = _error_code(exc)
        log.warning("%s: %s (%s)", self.name, exc, type(exc).__name__)
        self._raise_irq(IRQ_ERROR)

    def _on_done(self):
        gcm_tag = self.engine.gcm.tag
        if gcm_tag is not None:
            self.tag[:] = gcm_tag
        self._raise_irq(IRQ_DONE)

    def _on_busy(self, busy: bool):
        if self.on_busy:
            self.on_busy(busy)

    def _raise_irq(self, bits: int):
        self.irq |= bits
        if self._depth:
            self._held_irq |= bits
        elif self.on_irq:
            self.on_irq(bits)

    # -- host-side helpers --

    def snapshot(self) -> dict:
        """Engine snapshot plus the register-window latches."""
        snap = self.engine.snapshot()
        snap["device"] = {
            "last_len": self.last_len,
            "error": self.error,
            "irq": self.irq,
            "din": bytes(self.din).hex(),
            "dout": bytes(self.dout).hex(),
            "tag": bytes(self.tag).hex(),
        }
        return snap

    def restore(self, snap: dict):
        with self._lock:
            self._reset()
            self.engine.load_snapshot(snap)
            dev = snap.get("device", {})
            self.last_len = int(dev.get("last_len", 0))
            self.error = int(dev.get("error", ERR_NONE))
            self.irq = int(dev.get("irq", 0))
            self.din = bytearray.fromhex(dev.get("din", "00" * 4))
            self.dout = deque(bytes.fromhex(dev.get("dout", "")))
            self.tag = bytearray.fromhex(dev.get("tag", "00" * 16))

    def dump_state(self) -> str:
        eng = self.engine
        lines = [
            f"  [{self.name}] base={self.base:#06x} phase={eng.phase.name} "
            f"mode={'encrypt' if eng.encrypt else 'decrypt'}",
            f"  key: loaded={'Y' if eng.key_loaded else 'N'} "
            f"bits={eng.keys.keylen} zeroed={'Y' if eng.key_zeroed else 'N'}",
            f"  status={self.status:#04x} error={self.error} irq={self.irq:#04x} "
            f"done={'Y' if eng.done else 'N'} tag_ok={'Y' if eng.tag_ok else 'N'}",
            f"  iv={' '.join(f'{w:08x}' for w in eng.iv)}",
            f"  dout={len(self.dout)} bytes pending",
        ]
        return "\n".join(lines)


# ---------------------------------------------------------------------------
#  Device bus
# ---------------------------------------------------------------------------

class DeviceBus:
    """Routes byte accesses to registered register windows."""

    def __init__(self):
        self.devices: list[Device] = []

    def register(self, device: Device):
        for dev in self.devices:
            if device.overlaps(dev):
                raise ValueError(f"{device.name} window overlaps {dev.name}")
        self.devices.append(device)

    def find_device(self, offset: int) -> tuple[Optional[Device], int]:
        """Given a bus offset, find the device and
        the offset within that device. Returns (device, local_offset)."""
        for dev in self.devices:
            if dev.base <= offset < dev.base + dev.size:
                return dev, offset - dev.base
        return None, 0

    def read8(self, offset: int) -> int:
        dev, local = self.find_device(offset)
        if dev:
            return dev.read8(local)
        return 0xFF  # open bus

    def write8(self, offset: int, value: int):
        dev, local = self.find_device(offset)
        if dev:
            dev.write8(local, value)

    def write_bytes(self, offset: int, data: bytes):
        for i, b in enumerate(data):
            self.write8(offset + i, b)

    def read_bytes(self, offset: int, count: int) -> bytes:
        return bytes(self.read8(offset + i) for i in range(count))
