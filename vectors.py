"""
AES-GCM known-answer vectors
============================
Test cases from "The Galois/Counter Mode of Operation" (McGrew & Viega),
the set reproduced in NIST SP 800-38D validation material.  Only the
96-bit-IV cases are listed; those are the ones the engine's IV registers
can express.

``run_selftest()`` pushes each vector through a fresh engine in both
directions and reports per-vector results.
"""

from __future__ import annotations

import logging

from aes_engine import AESEngine, run_message

log = logging.getLogger(__name__)

_K1 = "feffe9928665731c6d6a8f9467308308"
_IV = "cafebabefacedbaddecaf888"
_AAD = "feedfacedeadbeeffeedfacedeadbeefabaddad2"
_PT = ("d9313225f88406e5a55909c5aff5269a86a7a9531534f7da2e4c303d8a318a72"
       "1c3c0c95956809532fcf0e2449a6b525b16aedf5aa0de657ba637b391aafd255")
_PT60 = _PT[:120]

# name -> (key, iv, aad, plaintext, ciphertext, tag), all hex
GCM_VECTORS = {
    "tc1-aes128-empty": (
        "00" * 16, "00" * 12, "", "", "",
        "58e2fccefa7e3061367f1d57a4e7455a"),
    "tc2-aes128-zero-block": (
        "00" * 16, "00" * 12, "", "00" * 16,
        "0388dace60b6a392f328c2b971b2fe78",
        "ab6e47d42cec13bdf53a67b21257bddf"),
    "tc3-aes128": (
        _K1, _IV, "", _PT,
        "42831ec2217774244b7221b784d0d49ce3aa212f2c02a4e035c17e2329aca12e"
        "21d514b25466931c7d8f6a5aac84aa051ba30b396a0aac973d58e091473f5985",
        "4d5c2af327cd64a62cf35abd2ba6fab4"),
    "tc4-aes128-aad": (
        _K1, _IV, _AAD, _PT60,
        "42831ec2217774244b7221b784d0d49ce3aa212f2c02a4e035c17e2329aca12e"
        "21d514b25466931c7d8f6a5aac84aa051ba30b396a0aac973d58e091",
        "5bc94fbc3221a5db94fae95ae7121a47"),
    "tc7-aes192-empty": (
        "00" * 24, "00" * 12, "", "", "",
        "cd33b28ac773f74ba00ed1f312572435"),
    "tc8-aes192-zero-block": (
        "00" * 24, "00" * 12, "", "00" * 16,
        "98e7247c07f0fe411c267e4384b0f600",
        "2ff58d80033927ab8ef4d4587514f0fb"),
    "tc9-aes192": (
        _K1 + _K1[:16], _IV, "", _PT,
        "3980ca0b3c00e841eb06fac4872a2757859e1ceaa6efd984628593b40ca1e19c"
        "7d773d00c144c525ac619d18c84a3f4718e2448b2fe324d9ccda2710acade256",
        "9924a7c8587336bfb118024db8674a14"),
    "tc10-aes192-aad": (
        _K1 + _K1[:16], _IV, _AAD, _PT60,
        "3980ca0b3c00e841eb06fac4872a2757859e1ceaa6efd984628593b40ca1e19c"
        "7d773d00c144c525ac619d18c84a3f4718e2448b2fe324d9ccda2710",
        "2519498e80f1478f37ba55bd6d27618c"),
    "tc13-aes256-empty": (
        "00" * 32, "00" * 12, "", "", "",
        "530f8afbc74536b9a963b4f1c4cb738b"),
    "tc14-aes256-zero-block": (
        "00" * 32, "00" * 12, "", "00" * 16,
        "cea7403d4d606b6e074ec5d3baf39d18",
        "d0d1c8a799996bf0265b98b5d48ab919"),
    "tc15-aes256": (
        _K1 * 2, _IV, "", _PT,
        "522dc1f099567d07f47f37a32a84427d643a8cdcbfe5c0c97598a2bd2555d1aa"
        "8cb08e48590dbb3da7b08b1056828838c5f61e6393ba7a0abcc9f662898015ad",
        "b094dac5d93471bdec1a502270e3cc6c"),
    "tc16-aes256-aad": (
        _K1 * 2, _IV, _AAD, _PT60,
        "522dc1f099567d07f47f37a32a84427d643a8cdcbfe5c0c97598a2bd2555d1aa"
        "8cb08e48590dbb3da7b08b1056828838c5f61e6393ba7a0abcc9f662",
        "76fc6ece0f4e1768cddf8853bb2d551b"),
}


def vector_bytes(name: str) -> tuple[bytes, ...]:
    """(key, iv, aad, plaintext, ciphertext, tag) as bytes."""
    return tuple(bytes.fromhex(h) for h in GCM_VECTORS[name])


def run_selftest(chunk: int | None = None) -> list[tuple[str, bool, str]]:
    """Run every vector through the engine.  Returns ``(name, ok, detail)``."""
    results = []
    for name in GCM_VECTORS:
        key, iv, aad, pt, ct, tag = vector_bytes(name)
        eng = AESEngine()
        out, got_tag, _ = run_message(eng, key, iv, pt, aad=aad,
                                      encrypt=True, chunk=chunk)
        problems = []
        if out != ct:
            problems.append(f"ciphertext {out.hex()} != {ct.hex()}")
        if got_tag != tag:
            problems.append(f"tag {got_tag.hex()} != {tag.hex()}")
        back, _, tag_ok = run_message(eng, key, iv, ct, aad=aad,
                                      encrypt=False, tag=tag, chunk=chunk)
        if back != pt:
            problems.append("decrypt did not reproduce the plaintext")
        if not tag_ok:
            problems.append("decrypt rejected the published tag")
        ok = not problems
        if not ok:
            log.error("vector %s failed: %s", name, "; ".join(problems))
        results.append((name, ok, "; ".join(problems)))
    return results
