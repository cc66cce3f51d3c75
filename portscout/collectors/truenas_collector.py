# portscout/collectors/truenas_collector.py
"""
TrueNAS SCALE collector.

Core data (host facts, Docker containers, ports) comes from local commands and
needs no credentials. With an API key, native apps, VMs and richer system info
are added through the middleware client. Expensive lookups are cached per
collector instance.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional

from .base_collector import BaseCollector, CollectionStrategy, error_message
from ..connectors.truenas_rpc import TrueNASClient
from ..connectors.truenas_discovery import MIDDLEWARE_SOCKET_PATHS
from ..exceptions import PortscoutError
from ..models import Application, CollectionResult, PortEntry, SystemInfo, VirtualMachine, WILDCARD_IP
from ..parsers import (
    parse_docker_ps_ports, parse_container_ports, extract_docker_version, parse_docker_info,
    parse_docker_top_processes, parse_pid_inspect_lines, parse_inspect_containers,
    parse_ps_container_rows, parse_lstart_output, parse_ss_output,
    parse_meminfo_total, parse_cpu_model, parse_uptime_seconds, format_uptime,
    truenas_version_from_kernel,
)
from ..utils.cache import TTLCache
from ..utils.performance import PerformanceTracker

TRUENAS_CONFIG_DIRS = ('/usr/local/etc/ix', '/etc/netcli', '/data/truenas-config')

SYSTEM_INFO_TTL_MS = 30000
CONTAINERS_TTL_MS = 45000
SYSTEM_PORTS_TTL_MS = 30000
HOST_NETWORK_TTL_MS = 120000

SELF_CONTAINER_NAME = 'portscout'
# Owners a socket of our own process can show up under
SELF_OWNERS = ('system', 'unknown', 'python', 'python3', 'portscout')
SHELL_COMMANDS = ('sh', 'bash')

# Well-known service ports: port -> (service, protocol)
IMPORTANT_PORTS = {
    51820: ('WireGuard', 'udp'),
    51821: ('WireGuard-UI', 'tcp'),
    51822: ('WireGuard', 'udp'),
    500: ('IPsec IKE', 'udp'),
    4500: ('IPsec NAT-T', 'udp'),
    1194: ('OpenVPN', 'udp'),
    1198: ('OpenVPN', 'udp'),
    53: ('DNS', 'udp'),
    67: ('DHCP', 'udp'),
    68: ('DHCP', 'udp'),
}
IMPORTANT_UDP_PORTS = {port for port, (_, proto) in IMPORTANT_PORTS.items() if proto == 'udp'}

# service -> (name/image keywords, preferred exact names)
SERVICE_MATCHERS = {
    'WireGuard': (('wireguard', 'wg-', 'wg_', 'wg-easy'), ('wg-easy', 'wireguard')),
    'WireGuard-UI': (('wireguard', 'wg-', 'wg_', 'wg-easy'), ('wg-easy', 'wireguard')),
    'OpenVPN': (('openvpn', 'ovpn'), ('openvpn',)),
    'IPsec IKE': (('ipsec', 'strongswan'), ('strongswan', 'ipsec')),
    'IPsec NAT-T': (('ipsec', 'strongswan'), ('strongswan', 'ipsec')),
    'DNS': (('pihole', 'pi-hole', 'adguard', 'unbound', 'bind', 'dns'), ('pihole', 'adguard', 'unbound')),
    'DHCP': (('dhcp', 'dnsmasq', 'pihole'), ('dnsmasq', 'pihole')),
}

API_KEY_REQUIRED_FOR = ['vms', 'native_apps', 'detailed_system_info']


def resolve_host_ip(host_ip: str) -> str:
    if host_ip in ('*', ''):
        return WILDCARD_IP
    if host_ip == 'localhost':
        return '127.0.0.1'
    return host_ip


def map_app_status(status: Optional[str]) -> str:
    status = (status or '').lower()
    return status if status in ('running', 'stopped', 'error') else 'unknown'


def map_vm_status(status: Optional[str]) -> str:
    status = (status or '').lower()
    return status if status in ('running', 'stopped', 'paused') else 'unknown'


def extract_app_ports(app: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Port mappings of a native app, from the app or its config"""
    mappings = list(app.get('port_mappings') or [])
    config = app.get('config')
    if isinstance(config, dict):
        mappings.extend(config.get('port_mappings') or [])

    return [
        {
            'host_ip': mapping.get('host_ip') or '*',
            'host_port': mapping.get('host_port'),
            'container_port': mapping.get('container_port'),
            'protocol': mapping.get('protocol') or 'tcp',
        }
        for mapping in mappings if isinstance(mapping, dict)
    ]


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TrueNASCollector(BaseCollector):
    """
    Hybrid TrueNAS SCALE collector with a unified collect() pass.
    """

    platform = 'truenas'
    platform_name = 'TrueNAS'
    strategy = CollectionStrategy.UNIFIED

    def __init__(self, config=None, connector=None, client: Optional[TrueNASClient] = None):
        super().__init__(config, connector)
        self.client = client or TrueNASClient(settings=self.settings)
        self.cache = TTLCache(
            default_ttl_ms=self.settings.cache_timeout_ms,
            disabled=self.settings.disable_cache,
            logger=self.logger,
        )
        if self.settings.disable_cache:
            self.logger.warning("Caching is globally disabled via DISABLE_CACHE.")
        self.detection_reasons: List[str] = []

    @property
    def enhanced_features_enabled(self) -> bool:
        return self.settings.has_api_key

    async def is_compatible(self, server_config: Optional[Dict[str, Any]] = None) -> int:
        """Sum of weighted TrueNAS signals, not clamped to 100"""
        score = 0
        reasons = []
        self.logger.info("Checking TrueNAS compatibility...")

        kernel = await self.connector.execute_command('uname -a')
        if kernel.success and 'truenas' in kernel.output.lower():
            score += 60
            reasons.append("TrueNAS kernel signature found")

        os_release = self.connector.read_file('/etc/os-release') or ''
        if 'truenas' in os_release.lower():
            score += 40
            reasons.append("TrueNAS OS release identifier found")

        for socket_path in MIDDLEWARE_SOCKET_PATHS:
            if self.connector.path_exists(socket_path):
                score += 10
                reasons.append(f"Found middleware socket at {socket_path}")
                break

        for directory in TRUENAS_CONFIG_DIRS:
            if self.connector.path_exists(directory):
                score += 10
                reasons.append(f"TrueNAS directory found: {directory}")
                break

        provided = server_config.get('truenas_api_key') if isinstance(server_config, dict) else None
        if provided or self.settings.has_api_key:
            score += 20
            reasons.append("TrueNAS API key provided")

        self.detection_reasons = reasons
        self.logger.info(f"TrueNAS detector final score: {score}. Reasons: {'; '.join(reasons) or 'none'}")
        return score

    # ------------------------------------------------------------------
    # Contract getters
    # ------------------------------------------------------------------

    async def get_system_info(self) -> SystemInfo:
        return copy.deepcopy(await self._get_system_info_cached())

    async def get_applications(self) -> List[Application]:
        applications = self._container_applications(await self._get_containers_cached())
        if self.enhanced_features_enabled:
            applications.extend(self._native_applications(await self._call_enhanced('app.query') or []))
        return applications

    async def get_ports(self) -> List[PortEntry]:
        containers = await self._get_containers_cached()
        return await self._collect_ports(containers, self._container_applications(containers))

    async def get_vms(self) -> List[VirtualMachine]:
        if not self.enhanced_features_enabled:
            return []
        return self._map_vms(await self._call_enhanced('virt.instance.query') or [])

    # ------------------------------------------------------------------
    # Unified collection
    # ------------------------------------------------------------------

    async def collect(self) -> CollectionResult:
        """Collect everything in one pass; never raises"""
        perf = PerformanceTracker(self.logger)
        perf.start('total-collection')

        result = CollectionResult(
            platform=self.platform,
            platform_name=self.platform_name,
            enhanced_features_enabled=self.enhanced_features_enabled,
        )

        self.logger.info("Starting core functionality collection (Docker + System)")

        # Each stage degrades only its own field
        perf.start('system-info-collection')
        try:
            result.system_info = copy.deepcopy(await self._get_system_info_cached())
        except Exception as e:
            self.logger.exception(f"Basic system info collection failed: {e}")
            result.errors['systemInfo'] = error_message(e)
            result.system_info = self._fallback_system_info()
        perf.end('system-info-collection')

        perf.start('docker-containers-collection')
        containers = []
        try:
            containers = await self._get_containers_cached()
            result.applications.extend(self._container_applications(containers))
            self.logger.info(f"Collected {len(containers)} Docker containers")
        except Exception as e:
            self.logger.exception(f"Docker container collection failed: {e}")
            result.errors['applications'] = error_message(e)
        perf.end('docker-containers-collection')

        perf.start('port-collection-and-reconciliation')
        try:
            result.ports = await self._collect_ports(containers, result.applications, perf)
        except Exception as e:
            self.logger.exception(f"Port collection failed: {e}")
            result.errors['ports'] = error_message(e)
        perf.end('port-collection-and-reconciliation')

        perf.start('enhanced-features-collection')
        if self.enhanced_features_enabled:
            try:
                await self._collect_enhanced_features(result)
            except Exception as e:
                self.logger.exception(f"Enhanced features collection failed: {e}")
                result.errors['enhanced'] = error_message(e)
        else:
            self.logger.info("No TRUENAS_API_KEY provided - enhanced features disabled")
        perf.end('enhanced-features-collection')

        perf.end('total-collection')
        perf.log_summary()
        self._log_cache_status()
        self.logger.info(
            f"Collection complete: {len(result.applications)} apps, {len(result.ports)} ports, "
            f"{len(result.vms)} VMs (enhanced features {'ENABLED' if result.enhanced_features_enabled else 'DISABLED'})"
        )
        return result

    def _log_cache_status(self):
        status = self.cache.status()
        if status:
            parts = ", ".join(f"{key}: {entry['age_seconds']}s old" for key, entry in status.items())
            self.logger.info(f"Cache status: {parts}")

    # ------------------------------------------------------------------
    # System info
    # ------------------------------------------------------------------

    async def _get_system_info_cached(self) -> SystemInfo:
        return await self.cache.get_or_fetch('systemInfo', self._get_basic_system_info, SYSTEM_INFO_TTL_MS)

    async def _get_basic_system_info(self) -> SystemInfo:
        """Host facts from docker version/info and /proc, falling back to canned data"""
        version_result, info_result = await asyncio.gather(
            self.connector.execute_command('docker version'),
            self.connector.execute_command('docker info'),
        )
        if not (version_result.success and info_result.success):
            failed = version_result if not version_result.success else info_result
            self.logger.error(f"Error getting system info via Docker: {failed.error.strip() or failed.command}")
            return self._fallback_system_info()

        docker_version = extract_docker_version(version_result.output)
        docker_info = parse_docker_info(info_result.output)

        memory = parse_meminfo_total(self.connector.read_file('/proc/meminfo') or '')
        if not memory:
            self.logger.warning("Failed to get memory info from /proc/meminfo, using docker info")
            memory = docker_info['memory']

        cpu_model = parse_cpu_model(self.connector.read_file('/proc/cpuinfo') or '') or 'Unknown'

        uptime_text = self.connector.read_file('/proc/uptime')
        uptime_seconds = parse_uptime_seconds(uptime_text) if uptime_text else 0.0
        uptime = format_uptime(uptime_seconds) if uptime_text else None

        system_product = 'TrueNAS SCALE'
        dmidecode = await self.connector.execute_command('dmidecode -s system-product-name 2>/dev/null')
        if dmidecode.success and dmidecode.output.strip():
            system_product = dmidecode.output.strip()

        version = self._detect_truenas_version(docker_info.get('kernel_version', ''))
        description = f"TrueNAS SCALE{f' {version}' if version else ''}"

        info = SystemInfo(
            hostname=docker_info['name'] or 'truenas-system',
            version=version,
            platform=self.platform,
            architecture=docker_info['architecture'],
            ncpu=docker_info['cpus'],
            cpu_model=cpu_model,
            memory=memory,
            uptime=uptime,
            uptime_seconds=uptime_seconds,
            platform_data={
                'description': description,
                'deployment_method': 'native',
                'container_runtime': 'docker',
                'source': 'docker-host-info',
                'api_key_required_for': list(API_KEY_REQUIRED_FOR),
            },
        )
        info.details.update({
            'system_product': system_product,
            'docker_version': docker_version,
            'enhanced': False,
            'kernel_version': docker_info['kernel_version'],
            'operating_system': description,
            'os_type': docker_info['os_type'],
            'containers_running': docker_info['containers_running'],
            'containers_total': docker_info['containers'],
            'docker_images': docker_info['images'],
        })
        return info

    def _detect_truenas_version(self, kernel_version: str) -> str:
        """/etc/version, then the kernel string, then /etc/truenas-release"""
        version = (self.connector.read_file('/etc/version') or '').strip()
        if version:
            return version
        version = truenas_version_from_kernel(kernel_version)
        if version:
            return version
        return (self.connector.read_file('/etc/truenas-release') or '').strip()

    def _fallback_system_info(self) -> SystemInfo:
        self.logger.warning("Using fallback system information for TrueNASCollector.")
        info = SystemInfo(
            hostname='truenas-system',
            version='unknown',
            platform=self.platform,
            architecture='unknown',
            cpu_model='Unknown',
            uptime='N/A',
            platform_data={
                'description': 'TrueNAS SCALE (fallback data)',
                'deployment_method': 'native',
                'container_runtime': 'docker',
                'source': 'fallback',
                'api_key_required_for': list(API_KEY_REQUIRED_FOR),
            },
        )
        info.details.update({
            'system_product': 'TrueNAS SCALE',
            'enhanced': False,
            'kernel_version': 'unknown',
            'operating_system': 'unknown',
            'os_type': 'Linux',
            'containers_running': 0,
            'containers_total': 0,
            'docker_images': 0,
        })
        return info

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    async def _get_containers_cached(self) -> List[Dict[str, Any]]:
        return await self.cache.get_or_fetch('dockerContainers', self._get_docker_containers, CONTAINERS_TTL_MS)

    async def _get_docker_containers(self) -> List[Dict[str, Any]]:
        """All containers via docker inspect, falling back to docker ps JSON lines"""
        ids_result = await self.connector.execute_command('docker ps -aq')
        if ids_result.success:
            ids = ids_result.output.split()
            if not ids:
                return []
            inspect_result = await self.connector.execute_command(f"docker inspect {' '.join(ids)}")
            if inspect_result.success:
                try:
                    return parse_inspect_containers(inspect_result.output)
                except (ValueError, TypeError, AttributeError) as e:
                    self.logger.error(f'Error parsing "docker inspect" output: {e}')
            else:
                self.logger.error(f'Error getting Docker containers via "docker inspect": {inspect_result.error.strip()}')

        self.logger.warning('Falling back to "docker ps" for container collection.')
        ps_result = await self.connector.execute_command('docker ps -a --format "{{json .}}"')
        if not ps_result.success:
            self.logger.error(f'Error getting Docker containers via fallback "docker ps": {ps_result.error.strip()}')
            return []
        return parse_ps_container_rows(ps_result.output)

    def _container_applications(self, containers: List[Dict[str, Any]]) -> List[Application]:
        return [
            Application(
                id=container['id'],
                name=container['name'],
                status=container['status'],
                image=container.get('image'),
                command=container.get('command'),
                created=container.get('created'),
                platform='docker',
                platform_data={
                    'type': 'container',
                    'size': 'N/A',
                    'mounts': 'N/A',
                    'networks': container.get('networks') or 'N/A',
                    'ports': parse_container_ports(container.get('ports')),
                },
            )
            for container in containers
        ]

    # ------------------------------------------------------------------
    # Ports
    # ------------------------------------------------------------------

    async def _collect_ports(self, containers: List[Dict[str, Any]], applications: List[Application],
                             perf: Optional[PerformanceTracker] = None) -> List[PortEntry]:
        """Declared ports, OS sockets, PID maps, merge, then filtering"""
        perf = perf or PerformanceTracker(self.logger)
        created_by_id = {c['id']: c.get('created') for c in containers if c.get('id')}

        perf.start('docker-ports-collection')
        docker_ports = await self._get_docker_ports()
        perf.end('docker-ports-collection')

        perf.start('system-ports-collection')
        system_ports = await self.cache.get_or_fetch('systemPorts', self._get_system_ports, SYSTEM_PORTS_TTL_MS)
        # Cached entries are mutated during the merge
        system_ports = copy.deepcopy(system_ports)
        perf.end('system-ports-collection')

        perf.start('pid-to-container-mapping')
        pid_map = await self._build_pid_to_container_map()
        host_proc_map = await self._build_host_proc_to_container_map(containers)
        perf.end('pid-to-container-mapping')

        perf.start('port-reconciliation')
        unique = self._merge_ports(docker_ports, system_ports, pid_map, host_proc_map, created_by_id)
        await self._apply_process_start_times(unique.values())
        await self._attribute_self_port(unique, created_by_id)
        ports = self._filter_ports(unique.values(), applications)
        perf.end('port-reconciliation')

        self.logger.info(
            f"Collected {len(docker_ports)} Docker ports and {len(system_ports)} system ports = "
            f"{len(ports)} unique ports after reconciliation."
        )
        return ports

    async def _get_docker_ports(self) -> List[PortEntry]:
        result = await self.connector.execute_command(
            'docker ps -a --no-trunc --format "{{.Names}}|{{.Ports}}|{{.ID}}"'
        )
        if not result.success:
            self.logger.error(f"Error getting Docker port mappings: {result.error.strip()}")
            return []

        ports = []
        for port in parse_docker_ps_ports(result.output, separator='|'):
            port.host_ip = resolve_host_ip(port.host_ip)
            if port.host_ip.endswith('.255'):
                self.logger.debug(f"Skipping broadcast address port for {port.owner}: {port.host_ip}:{port.host_port}")
                continue
            ports.append(port)
        return ports

    async def _get_system_ports(self) -> List[PortEntry]:
        """Listening sockets from ss; UDP only for well-known services unless INCLUDE_UDP"""
        result = await self.connector.execute_command('ss -tulpn')
        if not result.success:
            self.logger.error(f'Error getting system ports via "ss": {result.error.strip()}')
            return []

        ports = []
        for port in parse_ss_output(result.output):
            if port.protocol != 'tcp' and not self.settings.include_udp \
                    and port.host_port not in IMPORTANT_UDP_PORTS:
                continue
            if port.owner == 'unknown':
                port.owner = 'system'
            ports.append(port)
        return ports

    async def _build_pid_to_container_map(self) -> Dict[int, Dict[str, str]]:
        result = await self.connector.execute_command(
            "docker ps -q | xargs docker inspect --format '{{.State.Pid}}::{{.Id}}::{{.Name}}'"
        )
        if not result.success:
            self.logger.warning("Could not build PID-to-Container map. Host-networked apps may be misidentified.")
            return {}
        pid_map = parse_pid_inspect_lines(result.output)
        self.logger.debug(f"Built PID-to-Container map with {len(pid_map)} entries.")
        return pid_map

    async def _get_host_network_container_ids(self) -> List[str]:
        result = await self.connector.execute_command("docker ps --filter network=host --format '{{.ID}}'")
        if not result.success:
            self.logger.warning(f"Could not list host-network containers: {result.error.strip()}")
            return []
        return result.output.split()

    async def _build_host_proc_to_container_map(self, containers: List[Dict[str, Any]]) -> Dict[int, Dict[str, str]]:
        """Processes inside host-network containers keep their host PIDs"""
        host_ids = await self.cache.get_or_fetch(
            'hostNetworkContainers', self._get_host_network_container_ids, HOST_NETWORK_TTL_MS
        )
        if not host_ids:
            return {}

        tops = await asyncio.gather(
            *(self.connector.execute_command(f"docker top {container_id} -eo pid,comm") for container_id in host_ids)
        )

        proc_map = {}
        for container_id, top in zip(host_ids, tops):
            if not top.success:
                self.logger.warning(f"Could not run 'docker top' for container {container_id[:12]}. It may have stopped.")
                continue
            container = next((c for c in containers if c['id'].startswith(container_id)), None)
            if not container:
                continue
            for pid, command in parse_docker_top_processes(top.output):
                if command in SHELL_COMMANDS:
                    continue
                proc_map[pid] = {'id': container['id'], 'name': container['name']}

        self.logger.debug(f"Built host process map with {len(proc_map)} PIDs from {len(host_ids)} containers.")
        return proc_map

    def _merge_ports(self, docker_ports: List[PortEntry], system_ports: List[PortEntry],
                     pid_map: Dict[int, Dict[str, str]], host_proc_map: Dict[int, Dict[str, str]],
                     created_by_id: Dict[str, str]) -> Dict[tuple, PortEntry]:
        """Declared ports win by (host_ip, host_port); OS sockets are re-owned by PID"""
        unique: Dict[tuple, PortEntry] = {}
        for port in docker_ports:
            port.created = created_by_id.get(port.container_id)
            unique[port.key] = port

        for port in system_ports:
            existing = unique.get(port.key)
            if existing is not None:
                if not existing.pids and port.pids:
                    existing.pids = list(port.pids)
                continue

            pid = port.pid
            if pid is not None and pid in pid_map:
                container = pid_map[pid]
                port.attribute_to(container['id'], container['name'], created=created_by_id.get(container['id']))
                self.logger.debug(f"Re-classified port {port.host_port} to owner {container['name']} via PID map.")
            elif pid is not None and pid in host_proc_map:
                container = host_proc_map[pid]
                port.attribute_to(container['id'], container['name'], target=port.host_port,
                                  created=created_by_id.get(container['id']))
                self.logger.debug(f"Re-classified port {port.host_port} to owner {container['name']} via HOST-PROC map.")

            unique[port.key] = port
        return unique

    async def _apply_process_start_times(self, ports):
        """Unattributed system ports get their process start time as `created`"""
        targets = [port for port in ports if port.source == 'system' and port.pid is not None]
        pids = sorted({port.pid for port in targets})
        if not pids:
            return

        result = await self.connector.execute_command(
            f"ps -o pid,lstart --no-headers -p {','.join(str(pid) for pid in pids)}"
        )
        if not result.success:
            self.logger.warning(f"Could not fetch process start times: {result.error.strip()}")
            return

        start_times = parse_lstart_output(result.output)
        for port in targets:
            port.created = start_times.get(port.pid, port.created)

    async def _attribute_self_port(self, unique: Dict[tuple, PortEntry], created_by_id: Dict[str, str]):
        """Re-own our own listening port to our container when we run in one"""
        own_port = self.settings.self_port
        candidates = [
            port for port in unique.values()
            if port.host_port == own_port and port.source == 'system' and port.owner in SELF_OWNERS
        ]
        if not candidates:
            return

        result = await self.connector.execute_command(
            f'docker ps --no-trunc --filter "name={SELF_CONTAINER_NAME}" --format "{{{{.ID}}}}|{{{{.Names}}}}"'
        )
        lines = result.output.strip().splitlines() if result.success else []
        if not lines or not lines[0]:
            return

        container_id, _, container_name = lines[0].partition('|')
        if not container_id:
            return
        for port in candidates:
            self.logger.debug(f"Re-classifying our own application port {own_port} to {container_name}")
            port.attribute_to(container_id, container_name, target=port.host_port,
                              created=created_by_id.get(container_id) or port.created)

    def _filter_ports(self, ports, applications: List[Application]) -> List[PortEntry]:
        """TCP always; UDP when docker-sourced, well-known, or INCLUDE_UDP is set"""
        kept = []
        for port in ports:
            known = IMPORTANT_PORTS.get(port.host_port)
            unattributed = port.source == 'system' and not port.container_id

            if port.protocol == 'tcp':
                if known and known[1] == 'tcp' and unattributed:
                    self._enhance_known_port(port, applications)
                kept.append(port)
            elif port.source == 'docker':
                kept.append(port)
            elif port.protocol == 'udp' and port.host_port in IMPORTANT_UDP_PORTS:
                if unattributed:
                    self._enhance_known_port(port, applications)
                kept.append(port)
            elif port.protocol == 'udp' and self.settings.include_udp:
                kept.append(port)
        return [self.normalize_port_entry(port) for port in kept]

    def _enhance_known_port(self, port: PortEntry, applications: List[Application]):
        """Best-effort attribution of a well-known service port by name/image keywords"""
        service = IMPORTANT_PORTS[port.host_port][0]
        keywords, preferred = SERVICE_MATCHERS.get(service, ((), ()))

        candidates = [
            app for app in applications
            if app.id and any(
                keyword in (app.name or '').lower() or keyword in (app.image or '').lower()
                for keyword in keywords
            )
        ]
        if not candidates:
            return

        if len(candidates) == 1:
            match = candidates[0]
        else:
            match = next((app for app in candidates if app.name in preferred), candidates[0])

        port.attribute_to(match.id, match.name, target=port.host_port, created=match.created)
        self.logger.debug(f"Enhanced attribution for {service} port {port.host_port} to {match.name}")

    # ------------------------------------------------------------------
    # Enhanced features
    # ------------------------------------------------------------------

    async def _call_enhanced(self, method: str):
        try:
            return await self.client.call(method)
        except PortscoutError as e:
            self.logger.warning(f"{method} API call failed: {str(e)[:100]}")
            return None

    async def _collect_enhanced_features(self, result: CollectionResult):
        """system.info, app.query and virt.instance.query, each failing on its own"""
        self.logger.info("API key detected - collecting enhanced TrueNAS features")

        system_info = await self._call_enhanced('system.info')
        if system_info and result.system_info is not None:
            result.system_info.merge(system_info)
            result.system_info.details['enhanced'] = True

        apps = await self._call_enhanced('app.query') or []
        if apps:
            native = self._native_applications(apps)
            result.applications.extend(native)
            self.logger.info(f"Collected {len(native)} TrueNAS native apps")

        vms = await self._call_enhanced('virt.instance.query') or []
        if vms:
            result.vms = self._map_vms(vms)
            self.logger.info(f"Collected {len(result.vms)} virtual machines")

    def _native_applications(self, apps: List[Dict[str, Any]]) -> List[Application]:
        return [
            Application(
                id=str(app.get('id') or app.get('name') or ''),
                name=app.get('name') or str(app.get('id') or ''),
                status=map_app_status(app.get('state') or app.get('status')),
                version=app.get('version') or 'N/A',
                image=app.get('image') or 'N/A',
                command='N/A',
                created=app.get('started'),
                platform='truenas',
                platform_data={
                    'type': 'truenas_app',
                    'app_type': app.get('catalog') or 'unknown',
                    'catalog': app.get('catalog'),
                    'ports': extract_app_ports(app),
                    'orig_data': app,
                },
            )
            for app in apps if isinstance(app, dict)
        ]

    def _map_vms(self, vms: List[Dict[str, Any]]) -> List[VirtualMachine]:
        mapped = []
        for vm in vms:
            if not isinstance(vm, dict):
                continue
            image = vm.get('image') if isinstance(vm.get('image'), dict) else {}
            mapped.append(VirtualMachine(
                id=str(vm.get('id') or vm.get('name') or ''),
                name=vm.get('name') or str(vm.get('id') or ''),
                status=map_vm_status(vm.get('status')),
                vcpus=_int_or_none(vm.get('cpu')),
                memory=_int_or_none(vm.get('memory')),
                autostart=bool(vm.get('autostart')),
                platform='truenas',
                platform_data={
                    'aliases': vm.get('aliases'),
                    'image': vm.get('image'),
                    'os': image.get('os') or 'unknown',
                    'vnc_enabled': vm.get('vnc_enabled'),
                    'storage_pool': vm.get('storage_pool'),
                    'orig_data': vm,
                },
            ))
        return mapped

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def clear_cache(self, key: str) -> bool:
        return self.cache.clear(key)

    def clear_all_cache(self):
        self.cache.clear_all()
