"""
Host identification: OS check and CPU architecture class.
"""
from __future__ import annotations

import subprocess

from watchav.types import Architecture


def get_architecture() -> Architecture:
    """
    Return ARM64 when `uname -m` says arm64, otherwise X86_64.
    Errors running uname propagate; callers treat them as fatal.
    """
    out = subprocess.run(
        ["uname", "-m"],
        capture_output=True,
        text=True,
        timeout=5,
        check=True,
    )
    return Architecture.ARM64 if out.stdout.strip() == "arm64" else Architecture.X86_64


def is_macos() -> bool:
    try:
        out = subprocess.run(
            ["uname", "-s"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return out.stdout.strip() == "Darwin"
