"""Debug port derivation and reservation.

Two derivation strategies coexist: a hash of the session id's random suffix
(canonical) and the launch timestamp modulo the range. Neither is
collision-free; collisions are settled by ``reserve_port``, which evicts
whatever is listening on the candidate port. The allocator owns its port range
and will kill unrelated processes squatting on it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import sys
from dataclasses import dataclass, field

import psutil

from ..config import BASE_DEBUG_PORT, PORT_RANGE, PORT_STRATEGY
from ..constants import PORT_EVICTION_GRACE, PORT_ROTATION_STEP
from ..errors import ProcessConflictError
from .ids import now_millis, session_timestamp
from .process import pid_alive, terminate_pid

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


@dataclass
class PortReservation:
    port: int
    evicted: list[int] = field(default_factory=list)


# ── Derivation ───────────────────────────────────────────────────────────────


def derive_port_from_session_id(session_id: str, base_port: int = BASE_DEBUG_PORT, port_range: int = PORT_RANGE) -> int:
    suffix = session_id.rsplit("-", 1)[-1]
    digest = hashlib.sha1(suffix.encode("utf-8")).hexdigest()
    return base_port + int(digest, 16) % port_range


def derive_port_from_timestamp(timestamp_ms: int | None = None, base_port: int = BASE_DEBUG_PORT, port_range: int = PORT_RANGE) -> int:
    if timestamp_ms is None:
        timestamp_ms = now_millis()
    return base_port + timestamp_ms % port_range


def derive_port(session_id: str, base_port: int = BASE_DEBUG_PORT, strategy: str = PORT_STRATEGY) -> int:
    """Pick a candidate port for a new session using the configured strategy."""
    if strategy == "timestamp":
        return derive_port_from_timestamp(session_timestamp(session_id), base_port)
    return derive_port_from_session_id(session_id, base_port)


def rotate_port(current: int, attempt: int, base_port: int = BASE_DEBUG_PORT, port_range: int = PORT_RANGE) -> int:
    """Next candidate after a failed launch attempt, wrapped into the managed range."""
    candidate = current + attempt * PORT_ROTATION_STEP
    return base_port + (candidate - base_port) % port_range


# ── Occupancy ────────────────────────────────────────────────────────────────


async def _run(cmd: str) -> str:
    proc = await asyncio.create_subprocess_shell(
        cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    stdout, _ = await proc.communicate()
    return stdout.decode("utf-8", errors="replace")


def _parse_lsof(output: str) -> list[int]:
    return [int(line.strip()) for line in output.splitlines() if line.strip().isdigit()]


def _parse_netstat(output: str, port: int) -> list[int]:
    pids = []
    for line in output.splitlines():
        parts = line.split()
        # Proto  Local Address  Foreign Address  State  PID
        if len(parts) >= 5 and parts[1].endswith(f":{port}") and parts[-1].isdigit():
            pids.append(int(parts[-1]))
    return pids


def _psutil_listeners(port: int) -> list[int]:
    pids = []
    try:
        for conn in psutil.net_connections(kind="inet"):
            if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN and conn.pid:
                pids.append(conn.pid)
    except psutil.AccessDenied:
        logger.warning("Not permitted to enumerate sockets; assuming port is free")
    return pids


async def find_port_owners(port: int) -> list[int]:
    """Pids listening on ``port``, excluding this process."""
    if sys.platform == "win32":
        pids = _parse_netstat(await _run(f"netstat -ano | findstr :{port}"), port)
    elif shutil.which("lsof"):
        pids = _parse_lsof(await _run(f"lsof -ti tcp:{port} -sTCP:LISTEN"))
    else:
        pids = _psutil_listeners(port)
    own = os.getpid()
    return sorted({pid for pid in pids if pid != own and pid > 0})


async def reserve_port(port: int) -> PortReservation:
    """Free ``port`` by terminating whatever listens on it.

    Owners get SIGTERM and, after a short grace window, SIGKILL.
    """
    owners = await find_port_owners(port)
    if not owners:
        logger.info(f"Port {port} is available")
        return PortReservation(port=port)

    logger.warning(
        f"[CLOSE-CONFLICT] Port conflict detected - killing {len(owners)} process(es) "
        f"on port {port}: {', '.join(str(p) for p in owners)}"
    )
    await asyncio.gather(*(terminate_pid(pid, grace=PORT_EVICTION_GRACE) for pid in owners))

    survivors = [pid for pid in owners if pid_alive(pid)]
    if survivors:
        raise ProcessConflictError(
            f"Port {port} is still held by process(es) {', '.join(str(p) for p in survivors)}"
        )
    logger.info(f"[CLOSE-CONFLICT] Port {port} freed")
    return PortReservation(port=port, evicted=owners)
