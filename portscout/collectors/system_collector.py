# portscout/collectors/system_collector.py
"""
Generic OS collector. Always available as the fallback collector: host facts
through psutil, listening sockets through ss/netstat.
"""

import platform
import socket
import sys
import time
from typing import List, Optional

import psutil

from .base_collector import BaseCollector
from ..connectors.local_connector import LocalConnector
from ..exceptions import CommandExecutionError
from ..models import Application, PortEntry, SystemInfo
from ..parsers import (
    parse_ss_output, parse_netstat_output, parse_windows_netstat_output,
    parse_ps_processes, parse_tasklist_csv,
)

MAX_PROCESSES = 50

# (primary, fallback) listing commands per platform family
LINUX_PORT_COMMANDS = ('ss -tunlp', 'netstat -tulpn')
WINDOWS_PORT_COMMANDS = ('netstat -ano', 'netstat -an')


def parse_port_listing(result_command: str, output: str) -> List[PortEntry]:
    """Dispatch listing output to the parser for the command that produced it"""
    if result_command.startswith('ss'):
        return parse_ss_output(output)
    if result_command in WINDOWS_PORT_COMMANDS:
        return parse_windows_netstat_output(output)
    return parse_netstat_output(output)


async def list_os_ports(connector: LocalConnector, is_windows: bool = False) -> List[PortEntry]:
    """
    Listening sockets from the primary listing command, or its fallback.

    Raises CommandExecutionError when both commands fail.
    """
    primary, fallback = WINDOWS_PORT_COMMANDS if is_windows else LINUX_PORT_COMMANDS
    result = await connector.execute_command_with_fallback(primary, fallback, context="ports")
    if not result.success:
        family = "Windows" if is_windows else "Linux"
        raise CommandExecutionError(f"Both {primary} and {fallback} failed on {family}", result=result)
    return parse_port_listing(result.command, result.output)


class SystemCollector(BaseCollector):
    """
    Collects data from the local operating system.
    """

    platform = 'system'
    platform_name = 'Local System'

    def __init__(self, config=None, connector=None):
        super().__init__(config, connector)
        self.is_windows = sys.platform.startswith('win')

    async def get_system_info(self) -> SystemInfo:
        """Get local system information"""
        self.log_collection_progress("system_info")
        try:
            hostname = socket.gethostname()
            release = platform.release()
            os_type = platform.system()
            arch = platform.machine()
            memory = psutil.virtual_memory()
            cores = psutil.cpu_count() or 0
            uptime = max(0.0, time.time() - psutil.boot_time())
            cpu_model = platform.processor() or "Unknown"
        except (OSError, psutil.Error) as e:
            self.logger.exception(f"Error collecting system info: {e}")
            return SystemInfo(
                hostname=socket.gethostname() or "Unknown system",
                platform=self.platform,
                error=str(e),
            )

        version = release
        version_command = 'ver' if self.is_windows else 'uname -r'
        result = await self.connector.execute_command(version_command)
        if result.success and result.output.strip():
            version = result.output.strip()
        else:
            self.logger.warning(f"Could not get detailed OS version info: {result.error.strip() or 'no output'}")

        info = SystemInfo(
            hostname=hostname,
            version=version,
            platform=self.platform,
            architecture=arch,
            ncpu=cores,
            cpu_model=cpu_model,
            memory=memory.total,
            uptime=int(uptime),
            uptime_seconds=uptime,
            platform_data={
                'description': f"{os_type} {release} ({arch})",
                'uptime_days': int(uptime // 86400),
                'memory_gb': round(memory.total / (1024 ** 3)),
            },
        )
        info.details.update({
            'os': {'platform': sys.platform, 'release': release, 'type': os_type, 'arch': arch},
            'memory_free': memory.available,
            'memory_usage': round(memory.percent),
        })
        return info

    async def get_applications(self) -> List[Application]:
        """Get up to 50 running processes"""
        self.log_collection_progress("applications", "Collecting system processes")
        try:
            processes = self._processes_via_psutil()
        except (OSError, psutil.Error) as e:
            self.logger.warning(f"psutil process listing failed ({e}), falling back to command output")
            processes = await self._processes_via_command()
            if processes is None:
                return [Application(
                    id='',
                    name="System process collection failed",
                    platform=self.platform,
                    error=str(e),
                )]

        return [
            Application(
                id=str(proc['pid']),
                name=proc['name'],
                status='running',
                command=proc['command'],
                platform=self.platform,
                platform_data={'type': 'process', 'pid': proc['pid'], 'command': proc['command']},
            )
            for proc in processes[:MAX_PROCESSES]
        ]

    def _processes_via_psutil(self) -> List[dict]:
        processes = []
        for proc in psutil.process_iter(['pid', 'name', 'cmdline']):
            cmdline = proc.info.get('cmdline') or []
            name = proc.info.get('name') or ''
            processes.append({
                'pid': proc.info['pid'],
                'name': name,
                'command': ' '.join(cmdline) or name,
            })
            if len(processes) >= MAX_PROCESSES:
                break
        return processes

    async def _processes_via_command(self) -> Optional[List[dict]]:
        if self.is_windows:
            result = await self.connector.execute_command('tasklist /FO CSV')
            return parse_tasklist_csv(result.output) if result.success else None
        result = await self.connector.execute_command('ps -e -o pid,ppid,cmd')
        return parse_ps_processes(result.output) if result.success else None

    async def get_ports(self) -> List[PortEntry]:
        """
        Get listening ports.

        Raises CommandExecutionError if both listing commands fail; this
        collector has no peer to fall back on.
        """
        self.log_collection_progress("ports", "Collecting system ports")
        ports = await list_os_ports(self.connector, self.is_windows)
        self.logger.info(f"Collected {len(ports)} system ports")
        return ports

    async def get_vms(self):
        return []

    async def is_compatible(self, server_config=None) -> int:
        """Always compatible, with a low score so any platform collector wins"""
        self.logger.info("System collector is always available as fallback.")
        return 10
