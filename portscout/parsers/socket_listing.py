"""
Parsers for OS socket listings: `ss`, Linux `netstat` and Windows `netstat`.

All functions are pure: the same text always yields the same entries, and
malformed lines are skipped.
"""

import logging
import re
from typing import List, Optional, Tuple

from ..models import PortEntry, WILDCARD_IP, MAX_PORT, normalize_port_entry

logger = logging.getLogger('collector.parsers')

SS_PROCESS_RE = re.compile(r'\("([^"]+)",pid=(\d+)')
NETSTAT_PROCESS_RE = re.compile(r'^(\d+)/(.+)$')
BRACKETED_ADDR_RE = re.compile(r'^\[([^\]]+)\]:(\d+)$')


def split_local_address(address: str) -> Optional[Tuple[str, int]]:
    """
    Split `ip:port` into (host_ip, port).

    Handles `*:22`, `[::]:22`, `0.0.0.0%lo:53` and bare IPv6 `:::80`.
    Returns None when no valid port in 1-65535 is present.
    """
    if not address or ':' not in address:
        return None

    match = BRACKETED_ADDR_RE.match(address)
    if match:
        host_ip, port_str = match.group(1), match.group(2)
    else:
        host_ip, _, port_str = address.rpartition(':')

    # Strip interface scope (e.g. 127.0.0.53%lo)
    host_ip = host_ip.split('%', 1)[0]

    try:
        port = int(port_str)
    except ValueError:
        return None
    if port <= 0 or port > MAX_PORT:
        return None

    if host_ip in ('*', ''):
        host_ip = WILDCARD_IP
    return host_ip, port


def _protocol(column: str) -> Optional[str]:
    column = column.lower()
    if 'tcp' in column:
        return 'tcp'
    if 'udp' in column:
        return 'udp'
    return None


def _system_entry(protocol: str, host_ip: str, port: int, owner: str, pid: Optional[int]) -> PortEntry:
    return normalize_port_entry({
        'source': 'system',
        'owner': owner,
        'protocol': protocol,
        'host_ip': host_ip,
        'host_port': port,
        'pids': [pid] if pid is not None else [],
        'platform_data': {'process': owner, 'pid': pid},
    })


def parse_ss_output(output: str) -> List[PortEntry]:
    """
    Parse `ss -tunlp` output.

    Columns: Netid State Recv-Q Send-Q Local Peer Process. The process trailer
    looks like users:(("sshd",pid=812,fd=3)).
    """
    entries = []
    for line in (output or '').splitlines()[1:]:
        line = line.strip()
        if not line:
            continue
        cols = line.split()
        if len(cols) < 5:
            logger.debug(f"Skipping short ss line: {line}")
            continue

        protocol = _protocol(cols[0])
        address = split_local_address(cols[4])
        if not protocol or not address:
            continue

        owner, pid = 'unknown', None
        match = SS_PROCESS_RE.search(cols[-1]) if len(cols) > 6 else None
        if match:
            owner, pid = match.group(1), int(match.group(2))

        entries.append(_system_entry(protocol, address[0], address[1], owner, pid))
    return entries


def parse_netstat_output(output: str) -> List[PortEntry]:
    """Parse Linux `netstat -tulpn` output (two header lines, PID/NAME in column 7)."""
    entries = []
    for line in (output or '').splitlines()[2:]:
        line = line.strip()
        if not line:
            continue
        cols = line.split()
        if len(cols) < 4:
            continue

        protocol = _protocol(cols[0])
        address = split_local_address(cols[3])
        if not protocol or not address:
            continue

        owner, pid = 'unknown', None
        # UDP rows have no State column, so the process is always the last column
        if len(cols) >= 6:
            proc = cols[-1]
            match = NETSTAT_PROCESS_RE.match(proc)
            if match:
                pid, owner = int(match.group(1)), match.group(2)
            elif proc.isdigit():
                pid = int(proc)
                owner = f"Process (pid {pid})"

        entries.append(_system_entry(protocol, address[0], address[1], owner, pid))
    return entries


def parse_windows_netstat_output(output: str) -> List[PortEntry]:
    """Parse Windows `netstat -ano`/`-an` output; only LISTENING rows are kept."""
    entries = []
    for line in (output or '').splitlines()[4:]:
        line = line.strip()
        if not line or 'LISTENING' not in line:
            continue
        cols = line.split()
        if len(cols) < 4:
            continue

        protocol = _protocol(cols[0])
        address = split_local_address(cols[1])
        if not protocol or not address:
            continue

        pid = int(cols[-1]) if cols[-1].isdigit() else None
        owner = f"Process (pid {pid})" if pid is not None else 'unknown'
        entries.append(_system_entry(protocol, address[0], address[1], owner, pid))
    return entries


def parse_ps_processes(output: str) -> List[dict]:
    """Parse `ps -e -o pid,ppid,cmd` into {pid, name, command} dicts."""
    processes = []
    for line in (output or '').splitlines()[1:]:
        parts = line.split()
        if len(parts) < 3 or not parts[0].isdigit():
            continue
        command = ' '.join(parts[2:])
        name = command.split()[0].rsplit('/', 1)[-1]
        processes.append({'pid': int(parts[0]), 'name': name, 'command': command})
    return processes


def parse_tasklist_csv(output: str) -> List[dict]:
    """Parse Windows `tasklist /FO CSV` output."""
    processes = []
    for line in (output or '').splitlines()[1:]:
        if not line.strip():
            continue
        parts = [part.strip().strip('"') for part in line.split(',')]
        if len(parts) >= 2 and parts[1].isdigit():
            processes.append({'pid': int(parts[1]), 'name': parts[0], 'command': parts[0]})
    return processes
