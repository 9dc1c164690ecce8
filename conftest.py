"""
Pytest configuration for the AES-GCM accelerator test suite.

    python -m pytest                 # full suite
    python -m pytest -n auto         # spread over all cores (pytest-xdist)
    python -m pytest -m "not slow"   # skip the exhaustive bit-flip sweeps
    python -m pytest -k Vectors      # known-answer tests only

The modules are flat at the repository root; this file sitting at the
root puts that directory on sys.path for the tests/ directory.
"""

import logging


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "slow: exhaustive sweeps (every bit of a ciphertext / tag)")
    config.addinivalue_line("markers",
        "vectors: published AES / AES-GCM known-answer tests")

    # Engine logs at DEBUG on every phase change; keep captured logs short
    logging.getLogger("aes_engine").setLevel(logging.INFO)
