"""Utility functions for vm-images."""

from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from vmimages.constants import (
    _LOG_VERBOSE,
    ARCH_ALIASES,
    DISK_SIZE_RE,
    SHA256_RE,
    SUPPORTED_ARCHES,
    TRUTHY,
)
from vmimages.exceptions import ConfigInvalid, InvalidDigest, ToolFailed, ToolMissing, UnsupportedArch
from vmimages.models import CommandResult


def log(level: str, message: str) -> None:
    """Lightweight leveled logging with coloured prefixes."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;32m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "STEP": "\033[0;34m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    stream = sys.stderr if level == "ERROR" else sys.stdout
    print(f"{colour}[{level}]{reset} {message}", file=stream, flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def validate_disk_size(raw: str) -> str:
    match = DISK_SIZE_RE.match(raw or "")
    if not match or int(match.group(1)) <= 0:
        raise ConfigInvalid(
            f"Invalid disk size '{raw}'. Use a positive number with optional suffix K, M, G, T (e.g. '10G')"
        )
    return raw


def normalize_arch(raw: str) -> str:
    arch = (raw or "").strip().lower()
    arch = ARCH_ALIASES.get(arch, arch)
    if arch not in SUPPORTED_ARCHES:
        raise UnsupportedArch(f"Unsupported architecture '{raw}'. Supported: {', '.join(SUPPORTED_ARCHES)}")
    return arch


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def normalize_digest(raw: str) -> str:
    """Validate a SHA-256 hex digest and return it lower-cased."""
    candidate = (raw or "").strip()
    if not SHA256_RE.match(candidate):
        raise InvalidDigest(f"Invalid SHA-256 digest '{raw}': expected 64 hexadecimal characters")
    return candidate.lower()


def parse_checksum_file(text: str) -> str:
    """Extract the digest from a ``sha256sum``-style file.

    Only a bare digest or a single ``<hex> <filename>`` line (with the two-space
    or ``*`` binary marker variants) is accepted.
    """
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if len(lines) != 1:
        raise InvalidDigest("Checksum file must contain exactly one entry")
    parts = lines[0].split(None, 1)
    if len(parts) == 2 and not parts[1].lstrip("*").strip():
        raise InvalidDigest(f"Malformed checksum entry: '{lines[0]}'")
    return normalize_digest(parts[0])


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(path: Path) -> Path:
    """Write ``<path>.sha256`` in ``sha256sum`` format and return its path."""
    checksum_path = path.with_name(path.name + ".sha256")
    checksum_path.write_text(f"{sha256_file(path)}  {path.name}\n", encoding="utf-8")
    log("INFO", f"Checksum written: {checksum_path}")
    return checksum_path


def require_tools(tools: Iterable[str]) -> None:
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise ToolMissing(f"Missing required tools: {', '.join(missing)}")


def first_available_tool(candidates: Iterable[str]) -> str:
    candidates = list(candidates)
    for tool in candidates:
        if shutil.which(tool):
            return tool
    raise ToolMissing(f"Missing required tool: one of {'/'.join(candidates)}")


def run(
    cmd: List[str],
    check: bool = True,
    env: Optional[Dict[str, str]] = None,
    mask: Iterable[str] = (),
    **kwargs,
) -> CommandResult:
    """Run a command, capture its output and classify the outcome.

    Values listed in ``mask`` are replaced in the logged and recorded arguments.
    """
    hidden = {value for value in mask if value}
    shown = ["********" if arg in hidden else arg for arg in cmd]
    log("DEBUG", f"Running: {' '.join(shown)}")
    if env is not None:
        env = {**os.environ, **env}
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, env=env, **kwargs)
    except FileNotFoundError:
        raise ToolMissing(f"Command not found: {cmd[0]}")
    result = CommandResult(
        args=shown,
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )
    if check and not result.ok:
        raise ToolFailed(result)
    return result
