"""
Parsers for Docker CLI output.

Covers `docker ps` port strings, `docker version`/`docker info` text,
`docker top` listings, `docker inspect` JSON and the PID inspect lines used
for container attribution.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from ..models import PortEntry, WILDCARD_IP, normalize_port_entry

logger = logging.getLogger('collector.parsers')

TARGET_RE = re.compile(r'^(\d+)(?:-(\d+))?/(tcp|udp|sctp)$')

MEMORY_UNITS = {
    'GIB': 1024 ** 3,
    'GB': 1000 ** 3,
    'MIB': 1024 ** 2,
    'MB': 1000 ** 2,
    'KIB': 1024,
    'KB': 1000,
    'B': 1,
}

# `docker info` label -> (key, kind)
DOCKER_INFO_FIELDS = {
    'Name': ('name', str),
    'Containers': ('containers', int),
    'Running': ('containers_running', int),
    'Images': ('images', int),
    'Kernel Version': ('kernel_version', str),
    'Operating System': ('operating_system', str),
    'OSType': ('os_type', str),
    'Architecture': ('architecture', str),
    'CPUs': ('cpus', int),
    'Storage Driver': ('storage_driver', str),
    'Logging Driver': ('logging_driver', str),
    'Cgroup Driver': ('cgroup_driver', str),
    'Swarm': ('swarm_status', str),
}


def strip_container_name(name: str) -> str:
    return name[1:] if name and name.startswith('/') else (name or '')


def _split_host_part(host_part: str) -> Tuple[str, str]:
    """`0.0.0.0:8080` / `[::]:8080` / `:::8080` / `8080` -> (ip, port_text)"""
    if ':' not in host_part:
        return WILDCARD_IP, host_part
    host_ip, _, port_text = host_part.rpartition(':')
    host_ip = host_ip.strip('[]')
    if host_ip in ('', '*'):
        host_ip = WILDCARD_IP
    return host_ip, port_text


def _port_range(text: str) -> List[int]:
    if '-' in text:
        start, _, end = text.partition('-')
        try:
            return list(range(int(start), int(end) + 1))
        except ValueError:
            return []
    try:
        return [int(text)]
    except ValueError:
        return []


def parse_port_mapping(mapping: str) -> List[Dict[str, Any]]:
    """
    Parse one `hostIP:hostPort->containerPort/proto` mapping.

    Ranges (`8000-8001->8000-8001/tcp`) expand to one dict per port. Exposed-only
    ports (`80/tcp`) have no host side and yield nothing.
    """
    mapping = mapping.strip()
    if '->' not in mapping:
        return []

    host_part, _, target_part = mapping.partition('->')
    match = TARGET_RE.match(target_part.strip())
    if not match:
        return []

    protocol = match.group(3)
    targets = _port_range(f"{match.group(1)}-{match.group(2)}" if match.group(2) else match.group(1))
    host_ip, port_text = _split_host_part(host_part.strip())
    host_ports = _port_range(port_text)
    if not host_ports or not targets:
        return []

    if len(host_ports) != len(targets):
        targets = [targets[0]] * len(host_ports)

    return [
        {'host_ip': host_ip, 'host_port': host_port, 'target': target, 'protocol': protocol}
        for host_port, target in zip(host_ports, targets)
    ]


def parse_docker_ps_ports(output: str, separator: str = ':::') -> List[PortEntry]:
    """
    Parse `docker ps --format "{{.Names}}<sep>{{.Ports}}<sep>{{.ID}}"` output.

    Mappings within one line are separated by ", ". IPv6 bindings such as
    `:::8080->80/tcp` can contain the separator, so the name is the first field,
    the ID the last, and everything between is the ports column.
    """
    entries = []
    for line in (output or '').strip().splitlines():
        if not line.strip():
            continue
        parts = line.split(separator)
        if len(parts) < 3:
            continue
        name, container_id = parts[0].strip(), parts[-1].strip()
        ports_str = separator.join(parts[1:-1])
        if not ports_str.strip():
            continue

        for mapping in ports_str.split(', '):
            for binding in parse_port_mapping(mapping):
                entries.append(normalize_port_entry({
                    'source': 'docker',
                    'owner': name,
                    'protocol': binding['protocol'],
                    'host_ip': binding['host_ip'],
                    'host_port': binding['host_port'],
                    'target': binding['target'],
                    'container_id': container_id,
                    'app_id': container_id,
                }))
    return entries


def parse_container_ports(ports: Union[str, Dict[str, Any], None]) -> List[Dict[str, Any]]:
    """
    Structured port list for a container's platform_data.

    Accepts either a `docker ps` Ports string or an inspect
    `HostConfig.PortBindings` mapping.
    """
    if not ports:
        return []

    result = []
    if isinstance(ports, dict):
        for spec, bindings in ports.items():
            container_port, _, proto = spec.partition('/')
            for binding in bindings or [{}]:
                host_port = binding.get('HostPort')
                result.append({
                    'host_ip': binding.get('HostIp') or '*',
                    'host_port': int(host_port) if host_port and host_port.isdigit() else None,
                    'container_port': int(container_port) if container_port.isdigit() else None,
                    'protocol': proto or 'tcp',
                })
        return result

    if not isinstance(ports, str):
        return []

    for mapping in ports.split(', '):
        mapping = mapping.strip()
        if not mapping:
            continue
        if '->' in mapping:
            for binding in parse_port_mapping(mapping):
                result.append({
                    'host_ip': '*' if binding['host_ip'] in (WILDCARD_IP, '::') else binding['host_ip'],
                    'host_port': binding['host_port'],
                    'container_port': binding['target'],
                    'protocol': binding['protocol'],
                })
        else:
            port, _, proto = mapping.partition('/')
            if port.isdigit():
                result.append({'container_port': int(port), 'protocol': proto or 'tcp'})
    return result


def extract_docker_version(output: str) -> str:
    """Server version from `docker version` text output."""
    in_server_section = False
    for line in (output or '').splitlines():
        stripped = line.strip()
        if stripped.startswith('Server:'):
            in_server_section = True
            continue
        if in_server_section and stripped.startswith('Version:'):
            return stripped.split(':', 1)[1].strip()
    return 'unknown'


def parse_memory_string(text: str) -> int:
    """`31.27GiB` / `2 GB` / `512MiB` -> bytes. A unitless value under 1024 is taken as GiB."""
    match = re.search(r'([\d.]+)\s*([a-zA-Z]*)', text or '')
    if not match:
        return 0
    try:
        value = float(match.group(1))
    except ValueError:
        return 0
    unit = match.group(2).upper()
    if unit in MEMORY_UNITS:
        return round(value * MEMORY_UNITS[unit])
    if value < 1024:
        return round(value * MEMORY_UNITS['GIB'])
    return round(value)


def parse_docker_info(output: str) -> Dict[str, Any]:
    """Parse `docker info` text into a flat dict of host facts."""
    info = {
        'name': '',
        'containers': 0,
        'containers_running': 0,
        'images': 0,
        'kernel_version': '',
        'operating_system': '',
        'os_type': '',
        'architecture': '',
        'cpus': 0,
        'memory': 0,
        'storage_driver': '',
        'logging_driver': '',
        'cgroup_driver': '',
        'swarm_status': 'inactive',
    }
    seen = set()

    for line in (output or '').splitlines():
        label, sep, value = line.strip().partition(':')
        if not sep:
            continue
        value = value.strip()

        if label == 'Total Memory':
            info['memory'] = parse_memory_string(value)
            continue

        field = DOCKER_INFO_FIELDS.get(label)
        # Only the first occurrence counts (e.g. "Name:" also appears under plugins)
        if not field or field[0] in seen:
            continue
        key, kind = field
        seen.add(key)
        if kind is int:
            try:
                info[key] = int(value)
            except ValueError:
                info[key] = 0
        else:
            info[key] = value
    return info


def parse_docker_top_pids(output: str) -> List[int]:
    """PIDs from `docker top <id> -o pid` (header line skipped)."""
    pids = []
    for line in (output or '').strip().splitlines()[1:]:
        text = line.strip()
        if text.isdigit():
            pids.append(int(text))
    return pids


def parse_docker_top_processes(output: str) -> List[Tuple[int, str]]:
    """(pid, command) pairs from `docker top <id> -eo pid,comm`."""
    processes = []
    for line in (output or '').strip().splitlines()[1:]:
        parts = line.split()
        if not parts or not parts[0].isdigit():
            continue
        pid = int(parts[0])
        if pid > 0:
            processes.append((pid, ' '.join(parts[1:])))
    return processes


def parse_pid_inspect_lines(output: str) -> Dict[int, Dict[str, str]]:
    """
    Parse `docker inspect --format '{{.State.Pid}}::{{.Id}}::{{.Name}}'` lines.

    Stopped containers report PID 0 and are skipped.
    """
    pid_map = {}
    for line in (output or '').strip().splitlines():
        parts = line.strip().split('::')
        if len(parts) < 3:
            continue
        pid_text, container_id, raw_name = parts[0], parts[1], parts[2]
        if not pid_text.isdigit() or pid_text == '0' or not container_id or not raw_name:
            continue
        pid_map[int(pid_text)] = {'id': container_id, 'name': strip_container_name(raw_name)}
    return pid_map


def map_docker_status(status: Optional[str]) -> str:
    lower = (status or '').lower()
    if 'up' in lower or 'running' in lower:
        return 'running'
    if 'exited' in lower or 'stopped' in lower:
        return 'stopped'
    if 'restarting' in lower:
        return 'restarting'
    if 'created' in lower:
        return 'created'
    if 'paused' in lower:
        return 'paused'
    return 'unknown'


def parse_inspect_containers(output: str) -> List[Dict[str, Any]]:
    """
    Flatten `docker inspect <ids>` JSON into container dicts.

    Raises ValueError on malformed JSON so the caller can fall back.
    """
    containers = []
    for container in json.loads(output):
        state = container.get('State') or {}
        config = container.get('Config') or {}
        host_config = container.get('HostConfig') or {}
        networks = ((container.get('NetworkSettings') or {}).get('Networks') or {})
        args = container.get('Args') or []
        containers.append({
            'id': container.get('Id', ''),
            'name': strip_container_name(container.get('Name', '')),
            'status': map_docker_status(state.get('Status')),
            'image': config.get('Image'),
            'command': ' '.join([container.get('Path') or ''] + list(args)).strip(),
            'created': container.get('Created'),
            'ports': host_config.get('PortBindings'),
            'networks': ', '.join(networks.keys()),
            'network_mode': host_config.get('NetworkMode'),
        })
    return containers


def parse_json_lines(output: str) -> List[Dict[str, Any]]:
    """Parse `--format "{{json .}}"` output, skipping lines that are not JSON objects."""
    rows = []
    for line in (output or '').splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            row = json.loads(line)
        except ValueError:
            logger.debug(f"Skipping malformed JSON line: {line[:80]}")
            continue
        if isinstance(row, dict):
            rows.append(row)
    return rows


def parse_ps_container_rows(output: str) -> List[Dict[str, Any]]:
    """`docker ps -a --format "{{json .}}"` rows as container dicts."""
    return [
        {
            'id': row.get('ID', ''),
            'name': row.get('Names', ''),
            'status': map_docker_status(row.get('Status') or row.get('State')),
            'image': row.get('Image'),
            'command': row.get('Command'),
            'created': row.get('CreatedAt'),
            'ports': row.get('Ports'),
            'networks': row.get('Networks'),
        }
        for row in parse_json_lines(output)
    ]


def parse_lstart_output(output: str) -> Dict[int, str]:
    """
    Parse `ps -o pid,lstart --no-headers -p ...` into pid -> ISO-8601 UTC.

    lstart looks like `Mon Oct  6 12:34:56 2025` in local time.
    """
    start_times = {}
    for line in (output or '').strip().splitlines():
        parts = line.split()
        if len(parts) < 6 or not parts[0].isdigit():
            continue
        try:
            started = datetime.strptime(' '.join(parts[1:6]), '%a %b %d %H:%M:%S %Y')
        except ValueError:
            logger.debug(f"Unparsable lstart line: {line.strip()}")
            continue
        start_times[int(parts[0])] = started.astimezone(timezone.utc).isoformat()
    return start_times


def parse_name_id_lines(output: str, separator: str = ':::') -> List[Tuple[str, ...]]:
    """Split `--format` output whose fields are joined by separator."""
    rows = []
    for line in (output or '').strip().splitlines():
        if line.strip():
            rows.append(tuple(part.strip() for part in line.split(separator)))
    return rows
