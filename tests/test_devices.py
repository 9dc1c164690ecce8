"""
MMIO front end tests: drive the accelerator purely through byte-wide
register accesses on a DeviceBus, the way firmware would.
"""

import json
import threading
import unittest

from devices import (
    AESDevice, DeviceBus, AES_BASE,
    ERR_NONE, ERR_KEY_LENGTH, ERR_KEY_NOT_LOADED, ERR_PROTOCOL,
    IRQ_DONE, IRQ_ERROR,
)
from aes_engine import Phase, InvalidKeyLength
from gcm import gcm_encrypt
from vectors import vector_bytes

KEY_CTRL = AES_BASE + 0x20
MSG_CTRL = AES_BASE + 0x21
LAST_LEN = AES_BASE + 0x22
STATUS = AES_BASE + 0x23
PHASE = AES_BASE + 0x24
ERROR = AES_BASE + 0x25
IRQ = AES_BASE + 0x26
DIN = AES_BASE + 0x28
DOUT_COUNT = AES_BASE + 0x2C
DOUT = AES_BASE + 0x30
TAG = AES_BASE + 0x40

ST_BUSY, ST_DONE, ST_TAG_OK = 0x01, 0x02, 0x04
ST_ZEROED, ST_LOADED, ST_READY, ST_ERROR = 0x08, 0x10, 0x20, 0x80


class MMIOTestBase(unittest.TestCase):
    def setUp(self):
        self.dev = AESDevice()
        self.bus = DeviceBus()
        self.bus.register(self.dev)

    # -- firmware-style helpers --

    def load_key(self, key: bytes):
        for i in range(0, len(key), 4):
            word = int.from_bytes(key[i:i+4], 'big')
            self.bus.write_bytes(AES_BASE + i, word.to_bytes(4, 'little'))
        self.bus.write8(KEY_CTRL, {16: 0x01, 24: 0x02, 32: 0x03}[len(key)])

    def stream(self, data: bytes, last: bool = False):
        """Write *data* through DIN; mark the final word when *last*."""
        for i in range(0, len(data), 4):
            piece = data[i:i+4]
            if last and i + 4 >= len(data):
                self.bus.write8(LAST_LEN, len(piece))
            self.bus.write_bytes(DIN, piece.ljust(4, b"\x00"))

    def drain(self) -> bytes:
        count = int.from_bytes(self.bus.read_bytes(DOUT_COUNT, 4), 'little')
        return bytes(self.bus.read8(DOUT) for _ in range(count))

    def read_tag(self) -> bytes:
        return self.bus.read_bytes(TAG, 16)


class TestMMIOEncrypt(MMIOTestBase):
    def test_vector_with_aad(self):
        key, iv, aad, pt, ct, tag = vector_bytes("tc4-aes128-aad")
        self.load_key(key)
        self.assertTrue(self.bus.read8(STATUS) & ST_LOADED)

        self.bus.write8(MSG_CTRL, 0x01)
        self.assertEqual(self.bus.read8(PHASE), Phase.IV0)
        self.assertTrue(self.bus.read8(STATUS) & ST_READY)
        self.stream(iv + bytes(4))
        self.stream(aad)
        self.bus.write8(MSG_CTRL, 0x04)
        self.assertEqual(self.bus.read8(PHASE), Phase.PAYLOAD)
        self.stream(pt)
        self.bus.write8(MSG_CTRL, 0x08)

        self.assertEqual(self.drain(), ct)
        self.assertEqual(self.read_tag(), tag)
        status = self.bus.read8(STATUS)
        self.assertTrue(status & ST_DONE)
        self.assertFalse(status & (ST_BUSY | ST_ERROR | ST_READY))
        self.assertEqual(self.bus.read8(IRQ), IRQ_DONE)
        self.assertEqual(self.bus.read8(PHASE), Phase.IDLE)

    def test_short_words_via_last_len(self):
        key, iv = bytes(range(16)), bytes.fromhex("000102030405060708090a0b")
        ct, tag = gcm_encrypt(key, iv, b"hello", b"hdr")
        self.load_key(key)
        self.bus.write8(MSG_CTRL, 0x01)
        self.stream(iv + bytes(4))
        self.stream(b"hdr", last=True)
        self.assertEqual(self.bus.read8(PHASE), Phase.PAYLOAD)
        self.assertEqual(self.bus.read8(LAST_LEN), 0)
        self.stream(b"hello", last=True)
        self.assertEqual(self.drain(), ct)
        self.assertEqual(self.read_tag(), tag)

    def test_aes256_key_lanes(self):
        key, iv, aad, pt, ct, tag = vector_bytes("tc16-aes256-aad")
        self.load_key(key)
        self.assertEqual(self.dev.engine.keys.key_bytes(), key)
        self.bus.write8(MSG_CTRL, 0x01)
        self.stream(iv + bytes(4) + aad, last=True)
        self.stream(pt, last=True)
        self.assertEqual(self.drain(), ct)
        self.assertEqual(self.read_tag(), tag)

    def test_empty_dout_reads_zero(self):
        self.assertEqual(self.bus.read8(DOUT), 0)


class TestMMIODecrypt(MMIOTestBase):
    key = bytes(range(16, 32))
    iv = bytes(range(12))
    pt = b"register level!!"

    def _decrypt(self, tag: bytes) -> bytes:
        ct, _ = gcm_encrypt(self.key, self.iv, self.pt)
        self.load_key(self.key)
        self.bus.write8(MSG_CTRL, 0x02)
        self.stream(self.iv + bytes(4))
        self.bus.write8(MSG_CTRL, 0x04)
        self.stream(ct)
        self.bus.write8(MSG_CTRL, 0x08)
        self.assertEqual(self.bus.read8(PHASE), Phase.TAG0)
        self.stream(tag)
        return self.drain()

    def test_good_tag(self):
        _, tag = gcm_encrypt(self.key, self.iv, self.pt)
        self.assertEqual(self._decrypt(tag), self.pt)
        status = self.bus.read8(STATUS)
        self.assertTrue(status & ST_DONE)
        self.assertTrue(status & ST_TAG_OK)

    def test_bad_tag(self):
        _, tag = gcm_encrypt(self.key, self.iv, self.pt)
        bad = tag[:15] + bytes([tag[15] ^ 0x01])
        self.assertEqual(self._decrypt(bad), self.pt)
        status = self.bus.read8(STATUS)
        self.assertTrue(status & ST_DONE)
        self.assertFalse(status & ST_TAG_OK)
        self.assertEqual(self.bus.read8(ERROR), ERR_NONE)
        self.assertEqual(self.bus.read8(IRQ), IRQ_DONE)


class TestMMIOErrors(MMIOTestBase):
    def test_key_not_loaded(self):
        self.bus.write8(MSG_CTRL, 0x01)
        self.stream(bytes(16))
        self.assertEqual(self.bus.read8(ERROR), ERR_KEY_NOT_LOADED)
        self.assertEqual(self.bus.read8(PHASE), Phase.IV3)
        self.assertTrue(self.bus.read8(STATUS) & ST_ERROR)
        self.assertEqual(self.bus.read8(IRQ), IRQ_ERROR)

    def test_bad_key_ctrl(self):
        self.bus.write8(KEY_CTRL, 0x05)
        self.assertEqual(self.bus.read8(ERROR), ERR_KEY_LENGTH)
        self.assertFalse(self.bus.read8(STATUS) & ST_LOADED)

    def test_push_when_idle(self):
        self.stream(bytes(4))
        self.assertEqual(self.bus.read8(ERROR), ERR_PROTOCOL)

    def test_last_len_out_of_range(self):
        self.load_key(bytes(16))
        self.bus.write8(MSG_CTRL, 0x01)
        self.bus.write8(LAST_LEN, 5)
        self.stream(bytes(4))
        self.assertEqual(self.bus.read8(ERROR), ERR_PROTOCOL)
        self.assertEqual(self.bus.read8(PHASE), Phase.IV0)

    def test_write_one_to_clear(self):
        self.bus.write8(KEY_CTRL, 0x05)
        self.bus.write8(IRQ, IRQ_DONE)          # other bit stays
        self.assertEqual(self.bus.read8(IRQ), IRQ_ERROR)
        self.bus.write8(IRQ, IRQ_ERROR)
        self.assertEqual(self.bus.read8(IRQ), 0)
        self.bus.write8(ERROR, 0xFF)
        self.assertEqual(self.bus.read8(ERROR), ERR_NONE)
        self.assertFalse(self.bus.read8(STATUS) & ST_ERROR)

    def test_irq_callback(self):
        raised = []
        self.dev.on_irq = raised.append
        self.bus.write8(KEY_CTRL, 0x05)
        self.assertEqual(raised, [IRQ_ERROR])
        self.assertEqual(self.bus.read8(IRQ), IRQ_ERROR)

    def test_handler_reads_registers(self):
        seen = []

        def isr(bits):
            seen.append((bits, self.bus.read8(STATUS), self.bus.read8(ERROR)))
            self.bus.write8(IRQ, bits)

        self.dev.on_irq = isr
        worker = threading.Thread(target=self.bus.write8, args=(KEY_CTRL, 0x07),
                                  daemon=True)
        worker.start()
        worker.join(timeout=5)
        self.assertFalse(worker.is_alive(), "KEY_CTRL write blocked in the handler")
        self.assertEqual(seen, [(IRQ_ERROR, ST_ERROR, ERR_KEY_LENGTH)])
        self.assertEqual(self.bus.read8(IRQ), 0)

    def test_done_handler_sees_all_output(self):
        counts = []
        self.dev.on_irq = lambda bits: counts.append(
            int.from_bytes(self.bus.read_bytes(DOUT_COUNT, 4), 'little'))
        self.load_key(bytes(16))
        self.bus.write8(MSG_CTRL, 0x01)
        self.stream(bytes(16))
        self.bus.write8(MSG_CTRL, 0x04)
        self.stream(bytes(16), last=True)
        self.assertEqual(counts, [16])

    def test_busy_line(self):
        seen = []
        self.dev.on_busy = lambda busy: seen.append(
            (busy, bool(self.bus.read8(STATUS) & ST_BUSY)))
        self.load_key(bytes(16))
        self.bus.write8(MSG_CTRL, 0x01)
        self.stream(bytes(4))
        self.assertEqual(seen, [(True, True), (False, False)])
        self.assertFalse(self.bus.read8(STATUS) & ST_BUSY)


class TestPresetKey(MMIOTestBase):
    key = vector_bytes("tc16-aes256-aad")[0]

    def setUp(self):
        self.dev = AESDevice(key=self.key)
        self.bus = DeviceBus()
        self.bus.register(self.dev)

    def test_registers_preset_but_not_loaded(self):
        words = [int.from_bytes(self.key[i:i+4], 'big') for i in range(0, 32, 4)]
        self.assertEqual(self.dev.engine.keys.registers, words)
        self.assertFalse(self.bus.read8(STATUS) & ST_LOADED)
        self.bus.write8(KEY_CTRL, 0x03)
        self.assertEqual(self.dev.engine.keys.key_bytes(), self.key)

    def test_vector_with_preset(self):
        _, iv, aad, pt, ct, tag = vector_bytes("tc16-aes256-aad")
        self.bus.write8(KEY_CTRL, 0x03)
        self.bus.write8(MSG_CTRL, 0x01)
        self.stream(iv + bytes(4) + aad, last=True)
        self.stream(pt, last=True)
        self.assertEqual(self.drain(), ct)
        self.assertEqual(self.read_tag(), tag)

    def test_reset_restores_preset(self):
        self.bus.write8(KEY_CTRL, 0x80)
        self.assertEqual(self.dev.engine.keys.registers, [0] * 8)
        self.bus.write8(MSG_CTRL, 0x80)
        self.assertEqual(self.dev.engine.keys.registers[0],
                         int.from_bytes(self.key[:4], 'big'))
        self.assertFalse(self.bus.read8(STATUS) & (ST_ZEROED | ST_LOADED))

    def test_bad_preset_length(self):
        with self.assertRaises(InvalidKeyLength):
            AESDevice(key=bytes(10))


class TestMMIOKeyControl(MMIOTestBase):
    def test_zeroize(self):
        self.load_key(bytes(range(32)))
        self.bus.write8(KEY_CTRL, 0x80)
        status = self.bus.read8(STATUS)
        self.assertTrue(status & ST_ZEROED)
        self.assertFalse(status & ST_LOADED)
        self.assertEqual(self.dev.engine.keys.registers, [0] * 8)

        # Reload without rewriting stays unloaded
        self.bus.write8(KEY_CTRL, 0x01)
        self.assertFalse(self.bus.read8(STATUS) & ST_LOADED)

    def test_device_reset(self):
        self.load_key(bytes(16))
        self.bus.write8(MSG_CTRL, 0x01)
        self.stream(bytes(20))
        self.bus.write8(MSG_CTRL, 0x80)
        self.assertEqual(self.bus.read8(PHASE), Phase.IDLE)
        self.assertEqual(self.bus.read8(STATUS), 0)

    def test_dump_state(self):
        self.load_key(bytes(16))
        text = self.dev.dump_state()
        self.assertIn("phase=IDLE", text)
        self.assertIn("bits=128", text)


class TestMMIOSnapshot(MMIOTestBase):
    def test_resume_mid_payload(self):
        key, iv, aad, pt, ct, tag = vector_bytes("tc10-aes192-aad")
        self.load_key(key)
        self.bus.write8(MSG_CTRL, 0x01)
        self.stream(iv + bytes(4))
        self.stream(aad, last=True)
        self.stream(pt[:24])
        head = self.drain()

        snap = json.loads(json.dumps(self.dev.snapshot()))
        other = AESDevice()
        other.restore(snap)
        self.dev, self.bus = other, DeviceBus()
        self.bus.register(other)

        self.assertEqual(self.bus.read8(PHASE), Phase.PAYLOAD)
        self.stream(pt[24:], last=True)
        self.assertEqual(head + self.drain(), ct)
        self.assertEqual(self.read_tag(), tag)

    def test_latches_survive(self):
        self.bus.write8(KEY_CTRL, 0x05)
        self.bus.write8(LAST_LEN, 3)
        other = AESDevice()
        other.restore(self.dev.snapshot())
        self.assertEqual(other.error, ERR_KEY_LENGTH)
        self.assertEqual(other.irq, IRQ_ERROR)
        self.assertEqual(other.last_len, 3)


class TestDeviceBus(unittest.TestCase):
    def test_open_bus(self):
        bus = DeviceBus()
        bus.register(AESDevice())
        self.assertEqual(bus.read8(0x0000), 0xFF)
        bus.write8(0x0000, 0x12)            # ignored

    def test_overlap_rejected(self):
        bus = DeviceBus()
        bus.register(AESDevice())
        with self.assertRaises(ValueError):
            bus.register(AESDevice(base=AES_BASE + 0x20, name="AES1"))
        bus.register(AESDevice(base=AES_BASE + 0x100, name="AES1"))
        self.assertEqual(len(bus.devices), 2)

    def test_find_device(self):
        bus = DeviceBus()
        dev = AESDevice()
        bus.register(dev)
        self.assertEqual(bus.find_device(AES_BASE + 0x24), (dev, 0x24))
        self.assertEqual(bus.find_device(AES_BASE + 0x50), (None, 0))
