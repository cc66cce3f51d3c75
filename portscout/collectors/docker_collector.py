# portscout/collectors/docker_collector.py
"""
Docker collector for containers and their ports.

Declared port bindings come from `docker ps`; ports opened by host-network
containers only show up as OS sockets and are attributed back to their
container by PID, published-port filter or process name.
"""

import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

import docker

from .base_collector import BaseCollector, error_message
from .system_collector import list_os_ports
from ..exceptions import CommandExecutionError
from ..models import Application, PortEntry, SystemInfo
from ..parsers import (
    parse_docker_ps_ports, extract_docker_version, parse_docker_info,
    parse_docker_top_pids, parse_json_lines, parse_name_id_lines,
)

SELF_NAME = 'portscout'
SELF_PROCESSES = ('python', SELF_NAME)


class DockerCollector(BaseCollector):
    """
    Collects Docker container information and reconciles container and OS ports.

    System info is read through the Docker SDK when the control socket is
    reachable, otherwise through the docker CLI.
    """

    platform = 'docker'
    platform_name = 'Docker'

    def __init__(self, config=None, connector=None):
        super().__init__(config, connector)
        self.docker_socket = self.settings.docker_socket
        self.is_windows = sys.platform.startswith('win')

    async def is_compatible(self, server_config=None) -> int:
        self.logger.info("--- Docker Collector Compatibility Check ---")

        if self.connector.is_socket(self.docker_socket):
            self.logger.info(f"Docker socket found at {self.docker_socket}. Assigning compatibility score (50).")
            return 50
        self.logger.debug(f"No Docker socket at {self.docker_socket}")

        result = await self.connector.execute_command('docker version')
        if result.success:
            self.logger.info("Docker command is available on the host. Assigning compatibility score (40).")
            return 40

        self.logger.info("No Docker indicators found. Incompatible (score 0).")
        return 0

    async def get_system_info(self) -> SystemInfo:
        """Get Docker host information"""
        try:
            if self.connector.is_socket(self.docker_socket):
                try:
                    return await asyncio.to_thread(self._system_info_via_sdk)
                except (docker.errors.DockerException, OSError) as e:
                    self.logger.warning(f"Docker SDK unavailable ({e}), falling back to CLI")
            return await self._system_info_via_cli()
        except CommandExecutionError as e:
            self.logger.error(f"Error collecting Docker system info: {e}")
            return SystemInfo(
                hostname="Unknown Docker host",
                platform=self.platform,
                error=str(e),
            )

    def _system_info_via_sdk(self) -> SystemInfo:
        client = docker.DockerClient(base_url=f"unix://{self.docker_socket}")
        try:
            version = client.version().get('Version', 'unknown')
            raw = client.info()
        finally:
            client.close()

        swarm = raw.get('Swarm') or {}
        info = {
            'name': raw.get('Name', ''),
            'containers': raw.get('Containers', 0),
            'containers_running': raw.get('ContainersRunning', 0),
            'images': raw.get('Images', 0),
            'kernel_version': raw.get('KernelVersion', ''),
            'operating_system': raw.get('OperatingSystem', ''),
            'os_type': raw.get('OSType', ''),
            'architecture': raw.get('Architecture', ''),
            'cpus': raw.get('NCPU', 0),
            'memory': raw.get('MemTotal', 0),
            'storage_driver': raw.get('Driver', ''),
            'logging_driver': raw.get('LoggingDriver', ''),
            'cgroup_driver': raw.get('CgroupDriver', ''),
            'swarm_status': swarm.get('LocalNodeState') or 'inactive',
        }
        return self._build_system_info(version, info)

    async def _system_info_via_cli(self) -> SystemInfo:
        version_result, info_result = await asyncio.gather(
            self.connector.execute_command('docker version'),
            self.connector.execute_command('docker info'),
        )
        version_result.raise_for_status()
        info_result.raise_for_status()
        return self._build_system_info(
            extract_docker_version(version_result.output),
            parse_docker_info(info_result.output),
        )

    def _build_system_info(self, server_version: str, info: Dict[str, Any]) -> SystemInfo:
        system_info = SystemInfo(
            hostname=info.get('name') or 'docker-host',
            version=server_version or 'unknown',
            platform=self.platform,
            architecture=info.get('architecture'),
            ncpu=info.get('cpus') or 0,
            memory=info.get('memory') or 0,
            platform_data={
                'description': f"Docker {server_version}",
                'storage_driver': info.get('storage_driver'),
                'logging_driver': info.get('logging_driver'),
                'cgroup_driver': info.get('cgroup_driver'),
                'swarm_status': info.get('swarm_status') or 'inactive',
            },
        )
        system_info.details.update({
            'docker_version': server_version,
            'containers_running': info.get('containers_running') or 0,
            'containers_total': info.get('containers') or 0,
            'images': info.get('images') or 0,
            'kernel_version': info.get('kernel_version'),
            'operating_system': info.get('operating_system'),
            'os_type': info.get('os_type'),
        })
        return system_info

    async def get_applications(self) -> List[Application]:
        """Get all containers; a failure yields one placeholder carrying the error"""
        result = await self.connector.execute_command('docker ps -a --format "{{json .}}"')
        if not result.success:
            message = result.error.strip() or f"exit code {result.exit_code}"
            self.logger.error(f"Error collecting Docker applications: {message}")
            return [Application(
                id='',
                name="Docker containers collection failed",
                platform=self.platform,
                error=message,
            )]

        return [
            Application(
                id=row.get('ID', ''),
                name=row.get('Names', ''),
                status=row.get('State') or 'unknown',
                image=row.get('Image'),
                command=row.get('Command'),
                created=row.get('CreatedAt'),
                platform=self.platform,
                platform_data={
                    'type': 'container',
                    'size': row.get('Size'),
                    'mounts': row.get('Mounts'),
                    'networks': row.get('Networks'),
                },
            )
            for row in parse_json_lines(result.output)
        ]

    async def get_ports(self) -> List[PortEntry]:
        """
        Get container and OS ports, reconciled.

        Never raises; a failing retrieval only shrinks the result.
        """
        all_ports: List[PortEntry] = []
        seen = {}
        pid_to_container: Dict[int, Dict[str, Any]] = {}
        created_by_id: Dict[str, str] = {}

        try:
            applications, declared, host_containers = await asyncio.gather(
                self.get_applications(),
                self._get_declared_ports(),
                self._get_host_network_containers(),
            )
            created_by_id = {app.id: app.created for app in applications if app.id and app.created}

            for port in declared:
                if port.key in seen:
                    continue
                if port.container_id:
                    port.created = created_by_id.get(port.container_id)
                seen[port.key] = port
                all_ports.append(port)

            for container in host_containers:
                for pid in container['pids']:
                    pid_to_container[pid] = container
        except Exception as e:
            self.logger.warning(f"Failed to collect Docker container-specific data: {error_message(e)}")

        try:
            system_ports = await list_os_ports(self.connector, self.is_windows)
        except CommandExecutionError as e:
            self.logger.error(f"System port listing failed: {e}")
            system_ports = []

        running = None
        for port in system_ports:
            if port.key in seen:
                continue

            attributed = False
            for pid in port.pids:
                container = pid_to_container.get(pid)
                if container:
                    port.attribute_to(
                        container['id'], container['name'],
                        target=f"{container['id'][:12]}:internal(host-net)",
                        created=created_by_id.get(container['id']),
                    )
                    attributed = True
                    break

            if not attributed:
                if running is None:
                    running = await self._get_running_containers()
                match = await self._check_if_port_belongs_to_docker(port, running)
                if match:
                    port.attribute_to(
                        match['id'], match['name'], target=match['target'],
                        created=created_by_id.get(match['id']),
                    )

            seen[port.key] = port
            all_ports.append(port)

        self.logger.info(f"Total unique ports collected: {len(all_ports)}")
        return all_ports

    async def get_vms(self):
        return []

    async def _get_declared_ports(self) -> List[PortEntry]:
        result = await self.connector.execute_command('docker ps --format "{{.Names}}:::{{.Ports}}:::{{.ID}}"')
        if not result.success:
            self.logger.warning(f"Failed to get Docker container ports: {result.error.strip()}")
            return []
        return parse_docker_ps_ports(result.output)

    async def _get_host_network_containers(self) -> List[Dict[str, Any]]:
        """Running containers in host network mode, with their in-container PIDs"""
        result = await self.connector.execute_command('docker ps --format "{{.ID}}:::{{.Names}}:::{{.Image}}"')
        if not result.success:
            self.logger.warning(f"Failed to list running containers: {result.error.strip()}")
            return []

        rows = [row for row in parse_name_id_lines(result.output) if len(row) >= 3]
        inspected = await asyncio.gather(*(self._inspect_container(*row[:3]) for row in rows))
        return [
            container for container in inspected
            if container and container['network_mode'] == 'host'
        ]

    async def _inspect_container(self, container_id: str, name: str, image: str) -> Optional[Dict[str, Any]]:
        inspect_result, top_result = await asyncio.gather(
            self.connector.execute_command(
                f'docker inspect {container_id} --format "{{{{.HostConfig.NetworkMode}}}}:::{{{{json .Config.ExposedPorts}}}}"'
            ),
            self.connector.execute_command(f'docker top {container_id} -o pid'),
        )
        if not inspect_result.success:
            self.logger.warning(f"Failed to inspect container {container_id} ({name}): {inspect_result.error.strip()}")
            return None

        network_mode, _, exposed_json = inspect_result.output.strip().partition(':::')
        try:
            exposed_ports = json.loads(exposed_json or 'null')
        except ValueError:
            self.logger.warning(f"Could not parse ExposedPorts JSON for container {container_id}: {exposed_json}")
            exposed_ports = None

        if not top_result.success:
            self.logger.warning(f"Failed to get processes for container {container_id}")

        return {
            'id': container_id,
            'name': name,
            'image': image,
            'network_mode': network_mode,
            'exposed_ports': exposed_ports,
            'pids': parse_docker_top_pids(top_result.output) if top_result.success else [],
        }

    async def _get_running_containers(self) -> List[tuple]:
        result = await self.connector.execute_command('docker ps --format "{{.Names}}:::{{.ID}}:::{{.Image}}"')
        if not result.success:
            return []
        return [row for row in parse_name_id_lines(result.output) if len(row) >= 3]

    async def _check_if_port_belongs_to_docker(self, port: PortEntry, running: List[tuple]) -> Optional[Dict[str, str]]:
        """Published-port filter first, then a process-name match"""
        result = await self.connector.execute_command(
            f'docker ps --filter "publish={port.host_port}" --format "{{{{.Names}}}}:::{{{{.ID}}}}"'
        )
        if result.success and result.output.strip():
            row = parse_name_id_lines(result.output)[0]
            if len(row) >= 2 and row[1]:
                return {'name': row[0], 'id': row[1], 'target': f"{row[1][:12]}:{port.host_port}"}

        if port.owner and port.owner != 'unknown':
            return self._match_container_by_process_name(port.owner, port.host_port, running)
        return None

    @staticmethod
    def _match_container_by_process_name(process_name: str, host_port: int,
                                         running: List[tuple]) -> Optional[Dict[str, str]]:
        process = process_name.lower()
        for name, container_id, image in running:
            name_lower = name.lower()
            image_lower = image.lower()
            compact_name = ''.join(ch for ch in name_lower if ch.isalnum())

            is_self = (SELF_NAME in name_lower or SELF_NAME in image_lower) and \
                any(proc in process for proc in SELF_PROCESSES)
            is_match = process in name_lower or process in image_lower or \
                (compact_name and compact_name in process)

            if is_self or is_match:
                return {'name': name, 'id': container_id, 'target': f"{container_id[:12]}:{host_port}"}
        return None
