"""Parsers for /proc text files and uptime formatting."""

import re
from typing import Optional

MEMTOTAL_RE = re.compile(r'MemTotal:\s+(\d+)\s*kB')
CPU_MODEL_RE = re.compile(r'model name\s*:\s*(.*)')
TRUENAS_KERNEL_RE = re.compile(r'truenas-(\d+\.\d+\.\d+)', re.IGNORECASE)


def parse_meminfo_total(text: str) -> int:
    """MemTotal from /proc/meminfo, in bytes (0 if absent)."""
    match = MEMTOTAL_RE.search(text or '')
    return int(match.group(1)) * 1024 if match else 0


def parse_cpu_model(text: str) -> Optional[str]:
    match = CPU_MODEL_RE.search(text or '')
    return match.group(1).strip() if match else None


def parse_uptime_seconds(text: str) -> float:
    """First field of /proc/uptime."""
    try:
        return float((text or '').split()[0])
    except (IndexError, ValueError):
        return 0.0


def format_uptime(seconds: float) -> str:
    """`3 days, 4:05`; the day part is omitted under one day."""
    seconds = int(seconds)
    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    minutes = (seconds % 3600) // 60
    prefix = f"{days} day{'s' if days != 1 else ''}, " if days > 0 else ""
    return f"{prefix}{hours}:{minutes:02d}"


def truenas_version_from_kernel(kernel_version: str) -> Optional[str]:
    match = TRUENAS_KERNEL_RE.search(kernel_version or '')
    return match.group(1) if match else None
