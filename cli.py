#!/usr/bin/env python3
"""
AES-GCM Accelerator Monitor / CLI
=================================
Command-line front end for the streaming AES-GCM engine model.

Provides:
  - One-shot encrypt / decrypt of hex inputs through the engine
  - Known-answer self test
  - Interactive register-level monitor (key, load, start, push, ...)
  - Snapshot save / restore of the device state

Usage:
  python cli.py encrypt --key HEX --iv HEX [--aad HEX] --data HEX [--chunk N]
  python cli.py decrypt --key HEX --iv HEX [--aad HEX] --data HEX --tag HEX
  python cli.py selftest [--chunk N]
  python cli.py monitor [--state FILE]

Environment:
  AESGCM_LOG_LEVEL   default for --log-level (WARNING)
  AESGCM_CHUNK       default for --chunk (0 = one push per section)
"""

from __future__ import annotations
import argparse
import cmd
import json
import logging
import os
import shlex
import sys
from typing import Optional

from aes_engine import AESEngine, AESError, run_message
from devices import AESDevice
from vectors import run_selftest

log = logging.getLogger(__name__)


def _hex(s: str) -> bytes:
    """Parse hex, tolerating spaces, colons and a 0x prefix."""
    s = s.strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    return bytes.fromhex(s.replace(" ", "").replace(":", ""))


def _save_state(path: str, snap: dict):
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(snap, f, indent=2)
    os.replace(tmp, path)


def _load_state(path: str) -> dict:
    with open(path) as f:
        return json.load(f)


# ---------------------------------------------------------------------------
#  Monitor
# ---------------------------------------------------------------------------

class AESMonitor(cmd.Cmd):
    """Interactive monitor for the AES-GCM accelerator."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║          AES-GCM Accelerator Monitor                     ║\n"
        "║   Type 'help' for commands.  'quit' to exit.             ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
    )
    prompt = "AES> "

    def __init__(self, device: Optional[AESDevice] = None, stdout=None):
        super().__init__(stdout=stdout)
        self.dev = device or AESDevice()
        self.dev.on_irq = self._irq_handler

    @property
    def engine(self) -> AESEngine:
        return self.dev.engine

    def _print(self, *args):
        print(*args, file=self.stdout)

    def _irq_handler(self, bits: int):
        names = []
        if bits & 0x01:
            names.append("DONE")
        if bits & 0x02:
            names.append("ERROR")
        self._print(f"  [irq {'+'.join(names)}]")

    def _call(self, op, *args):
        """Run an engine operation, reporting errors instead of raising."""
        try:
            return op(*args)
        except (AESError, ValueError, IndexError) as e:
            self._print(f"Error: {type(e).__name__}: {e}")
            return None

    def _show_result(self, res):
        if res is None:
            return
        if res.output:
            self._print(f"  out: {res.output.hex()}")
        if res.tag is not None:
            self._print(f"  tag: {res.tag.hex()}")
        if res.done:
            self._print(f"  done (tag_ok={'Y' if self.engine.tag_ok else 'N'})")

    # ================================================================
    #  Commands
    # ================================================================

    # -- Key store --

    def do_key(self, arg):
        """Write key register: key <index 0-7> <32-bit value>
        Or the whole key at once: key -x <hex>"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self._print("Usage: key <index> <value>  OR  key -x <hex>")
            return
        if parts[0] == "-x":
            try:
                key = _hex(parts[1])
            except ValueError as e:
                self._print(f"Error: {e}")
                return
            if len(key) % 4 or len(key) > 32:
                self._print("Key must be a whole number of 32-bit words, at most 32 bytes.")
                return
            for i in range(0, len(key), 4):
                self.engine.write_key(i // 4, int.from_bytes(key[i:i+4], 'big'))
            self._print(f"  Wrote {len(key) // 4} key words")
            return
        try:
            idx, val = int(parts[0], 0), int(parts[1], 0)
        except ValueError as e:
            self._print(f"Error: {e}")
            return
        try:
            self.engine.write_key(idx, val)
        except IndexError as e:
            self._print(f"Error: {e}")
            return
        self._print(f"  KEY{idx} = {val & 0xFFFFFFFF:#010x}")

    def do_load(self, arg):
        """Load the key: load <128|192|256>"""
        try:
            bits = int(arg.strip() or "256", 0)
        except ValueError as e:
            self._print(f"Error: {e}")
            return
        self._call(self.engine.load_key, bits)
        self._print(f"  key loaded: {'Y' if self.engine.key_loaded else 'N'}")

    def do_zero(self, arg):
        """Zeroize the key registers."""
        self.engine.zero_key()
        self._print("  Key registers zeroized.")

    def do_regs(self, arg):
        """Show the key registers."""
        for i, w in enumerate(self.engine.keys.registers):
            self._print(f"  KEY{i} = {w:#010x}")

    # -- Message --

    def do_start(self, arg):
        """Start a message: start <enc|dec>"""
        mode = arg.strip().lower()
        if mode not in ("enc", "dec", "encrypt", "decrypt"):
            self._print("Usage: start <enc|dec>")
            return
        self.engine.start_message(mode.startswith("enc"))
        self._print(f"  phase: {self.engine.phase.name}")

    def do_push(self, arg):
        """Push bytes: push <hex> [last_len]
        last_len (1-4) marks the final word of an AAD or payload section."""
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: push <hex> [last_len]")
            return
        try:
            data = _hex(parts[0])
            last = int(parts[1], 0) if len(parts) > 1 else None
        except ValueError as e:
            self._print(f"Error: {e}")
            return
        self._show_result(self._call(self.engine.push_data, data, last))
        self._print(f"  phase: {self.engine.phase.name}")

    def do_aad_end(self, arg):
        """Close the AAD section."""
        self._show_result(self._call(self.engine.finish_aad))
        self._print(f"  phase: {self.engine.phase.name}")

    def do_payload_end(self, arg):
        """Close the payload section (the tag follows)."""
        self._show_result(self._call(self.engine.finish_payload))
        self._print(f"  phase: {self.engine.phase.name}")

    # -- Inspection --

    def do_status(self, arg):
        """Show device status."""
        self._print(self.dev.dump_state())

    # -- State --

    def do_save(self, arg):
        """Save device state to a JSON file: save <file>"""
        path = arg.strip()
        if not path:
            self._print("Usage: save <file>")
            return
        try:
            _save_state(path, self.dev.snapshot())
        except OSError as e:
            self._print(f"Error: {e}")
            return
        self._print(f"  Saved state to '{path}'")

    def do_restore(self, arg):
        """Restore device state from a JSON file: restore <file>"""
        path = arg.strip()
        if not path:
            self._print("Usage: restore <file>")
            return
        try:
            self.dev.restore(_load_state(path))
        except (OSError, ValueError, KeyError, AESError) as e:
            self._print(f"Error: {e}")
            return
        self._print(f"  Restored state from '{path}' "
                    f"(phase {self.engine.phase.name})")

    def do_reset(self, arg):
        """Reset the device (wipes the key)."""
        self.dev.write8(0x21, 0x80)
        self._print("  Device reset.")

    def do_quit(self, arg):
        """Exit the monitor."""
        return True

    def do_EOF(self, arg):
        self._print()
        return True

    # cmd.Cmd only dispatches identifier characters; accept dashed aliases
    def default(self, line):
        name, _, rest = line.partition(" ")
        handler = getattr(self, "do_" + name.replace("-", "_"), None)
        if handler and "-" in name:
            return handler(rest)
        self._print(f"Unknown command: {name}")


# ---------------------------------------------------------------------------
#  One-shot commands
# ---------------------------------------------------------------------------

def _cmd_crypt(args, encrypt: bool) -> int:
    try:
        key, iv, aad, data = (_hex(args.key), _hex(args.iv),
                              _hex(args.aad), _hex(args.data))
        tag = None if encrypt else _hex(args.tag)
    except ValueError as e:
        print(f"Error: bad hex input: {e}", file=sys.stderr)
        return 2
    engine = AESEngine()
    try:
        out, got_tag, tag_ok = run_message(engine, key, iv, data, aad=aad,
                                           encrypt=encrypt, tag=tag,
                                           chunk=args.chunk or None)
    except (AESError, ValueError) as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return 2
    if args.save_state:
        _save_state(args.save_state, engine.snapshot())
    if encrypt:
        print(f"ciphertext: {out.hex()}")
        print(f"tag:        {got_tag.hex()}")
        return 0
    print(f"plaintext:  {out.hex()}")
    print(f"tag_ok:     {'yes' if tag_ok else 'NO'}")
    return 0 if tag_ok else 1


def _cmd_selftest(args) -> int:
    failed = 0
    for name, ok, detail in run_selftest(chunk=args.chunk or None):
        mark = "✓" if ok else "✗"
        msg = f"  {mark} {name}"
        if detail:
            msg += f": {detail}"
        print(msg)
        failed += not ok
    print(f"{failed} failed" if failed else "All vectors passed")
    return 1 if failed else 0


def _cmd_monitor(args) -> int:
    dev = AESDevice()
    mon = AESMonitor(dev)
    if args.state:
        mon.do_restore(args.state)
    try:
        mon.cmdloop()
    except KeyboardInterrupt:
        print("\nInterrupted. Goodbye.")
    return 0


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="AES-GCM accelerator model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py encrypt --key 000102030405060708090a0b0c0d0e0f \\\n"
               "      --iv cafebabefacedbaddecaf888 --data 48656c6c6f\n"
               "  python cli.py selftest --chunk 1\n"
               "  python cli.py monitor --state saved.json\n"
    )
    parser.add_argument("--log-level", type=str,
                        default=os.environ.get("AESGCM_LOG_LEVEL", "WARNING"),
                        help="Logging level (default: $AESGCM_LOG_LEVEL or WARNING)")
    sub = parser.add_subparsers(dest="command", required=True)

    default_chunk = int(os.environ.get("AESGCM_CHUNK", "0"))
    for name in ("encrypt", "decrypt"):
        p = sub.add_parser(name, help=f"{name} hex input through the engine")
        p.add_argument("--key", required=True, help="Key, 16/24/32 bytes hex")
        p.add_argument("--iv", required=True, help="Nonce, 12 bytes hex (or 16 for all IV words)")
        p.add_argument("--aad", default="", help="Additional authenticated data, hex")
        p.add_argument("--data", default="", help="Plaintext / ciphertext, hex")
        if name == "decrypt":
            p.add_argument("--tag", required=True, help="Expected tag, 16 bytes hex")
        p.add_argument("--chunk", type=int, default=default_chunk, metavar="N",
                       help="Push N bytes per call (default: $AESGCM_CHUNK or one push per section)")
        p.add_argument("--save-state", type=str, default=None, metavar="FILE",
                       help="Write the final device snapshot as JSON")

    p = sub.add_parser("selftest", help="Run the built-in AES-GCM vectors")
    p.add_argument("--chunk", type=int, default=default_chunk, metavar="N",
                   help="Push N bytes per call")

    p = sub.add_parser("monitor", help="Interactive register monitor")
    p.add_argument("--state", type=str, default=None, metavar="FILE",
                   help="Restore a saved snapshot before starting")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(),
                        format="%(levelname)s %(name)s: %(message)s")
    if args.command == "encrypt":
        return _cmd_crypt(args, True)
    if args.command == "decrypt":
        return _cmd_crypt(args, False)
    if args.command == "selftest":
        return _cmd_selftest(args)
    return _cmd_monitor(args)


if __name__ == "__main__":
    sys.exit(main())
