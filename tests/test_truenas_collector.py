# tests/test_truenas_collector.py
"""
Tests for the TrueNAS collector: detection, the unified collection pass,
port reconciliation, caching and the enhanced middleware features.
"""

import json

import pytest

from portscout.collectors.base_collector import CollectionStrategy
from portscout.collectors.truenas_collector import (
    TrueNASCollector, extract_app_ports, map_app_status, map_vm_status, resolve_host_ip,
)
from portscout.exceptions import MiddlewareCallError

from conftest import FakeConnector
from samples import DOCKER_VERSION_OUTPUT, DOCKER_INFO_OUTPUT

INSPECT_OUTPUT = json.dumps([
    {
        'Id': 'abc123full', 'Name': '/web', 'Created': '2024-05-01T10:00:00Z',
        'Path': 'nginx', 'Args': [], 'State': {'Status': 'running'},
        'Config': {'Image': 'nginx:latest'},
        'HostConfig': {'NetworkMode': 'bridge', 'PortBindings': {'80/tcp': [{'HostIp': '', 'HostPort': '8080'}]}},
        'NetworkSettings': {'Networks': {'bridge': {}}},
    },
    {
        'Id': 'wgc456full', 'Name': '/wg-easy', 'Created': '2024-05-02T10:00:00Z',
        'Path': '/usr/bin/dumb-init', 'Args': ['node', 'server.js'], 'State': {'Status': 'exited'},
        'Config': {'Image': 'ghcr.io/wg-easy/wg-easy'},
        'HostConfig': {'NetworkMode': 'host', 'PortBindings': {}},
        'NetworkSettings': {'Networks': {'host': {}}},
    },
    {
        'Id': 'host789full', 'Name': '/homeassistant', 'Created': '2024-05-03T10:00:00Z',
        'Path': '/init', 'Args': [], 'State': {'Status': 'running'},
        'Config': {'Image': 'homeassistant/home-assistant'},
        'HostConfig': {'NetworkMode': 'host', 'PortBindings': {}},
        'NetworkSettings': {'Networks': {'host': {}}},
    },
])

TRUENAS_SS_OUTPUT = """\
Netid State Recv-Q Send-Q Local Address:Port Peer Address:Port Process
tcp LISTEN 0 4096 0.0.0.0:8080 0.0.0.0:* users:(("docker-proxy",pid=1500,fd=4))
tcp LISTEN 0 4096 0.0.0.0:22 0.0.0.0:* users:(("sshd",pid=812,fd=3))
tcp LISTEN 0 4096 0.0.0.0:8123 0.0.0.0:* users:(("python3",pid=3001,fd=7))
tcp LISTEN 0 4096 0.0.0.0:9443 0.0.0.0:* users:(("caddy",pid=2500,fd=5))
udp UNCONN 0 0 0.0.0.0:51820 0.0.0.0:*
udp UNCONN 0 0 0.0.0.0:5353 0.0.0.0:* users:(("avahi-daemon",pid=700,fd=12))
tcp LISTEN 0 4096 0.0.0.0:4999 0.0.0.0:* users:(("python3",pid=4242,fd=9))
"""

PID_INSPECT_COMMAND = "docker ps -q | xargs docker inspect --format '{{.State.Pid}}::{{.Id}}::{{.Name}}'"
HOST_NETWORK_COMMAND = "docker ps --filter network=host --format '{{.ID}}'"
DOCKER_PORTS_COMMAND = 'docker ps -a --no-trunc --format "{{.Names}}|{{.Ports}}|{{.ID}}"'
SELF_COMMAND = 'docker ps --no-trunc --filter "name=portscout" --format "{{.ID}}|{{.Names}}"'


def truenas_responses():
    return {
        'uname -a': 'Linux truenas 6.6.44-production+truenas #1 SMP x86_64 GNU/Linux\n',
        'docker version': DOCKER_VERSION_OUTPUT,
        'docker info': DOCKER_INFO_OUTPUT,
        'dmidecode -s system-product-name 2>/dev/null': 'ProLiant MicroServer Gen10 Plus\n',
        'docker ps -aq': 'abc123\nwgc456\nhost789\n',
        'docker inspect abc123 wgc456 host789': INSPECT_OUTPUT,
        DOCKER_PORTS_COMMAND: (
            'web|0.0.0.0:8080->80/tcp, :::8080->80/tcp|abc123full\n'
            'wg-easy||wgc456full\n'
            'homeassistant||host789full\n'
            'netbios|192.168.1.255:137->137/udp|nb000full\n'
        ),
        'ss -tulpn': TRUENAS_SS_OUTPUT,
        PID_INSPECT_COMMAND: '2500::abc123full::/web\n0::wgc456full::/wg-easy\n3000::host789full::/homeassistant\n',
        HOST_NETWORK_COMMAND: 'host789\n',
        'docker top host789 -eo pid,comm': 'PID COMMAND\n3000 sh\n3001 python3\n',
        'ps -o pid,lstart --no-headers -p 812,4242': ' 812 Mon Oct  6 12:34:56 2025\n4242 Tue Oct  7 08:00:00 2025\n',
        SELF_COMMAND: 'self000111full|portscout\n',
    }


TRUENAS_FILES = {
    '/proc/meminfo': 'MemTotal:       32768000 kB\n',
    '/proc/cpuinfo': 'model name\t: AMD Ryzen 5 PRO 4650G\n',
    '/proc/uptime': '93784.20 100000.00\n',
    '/etc/version': '25.04.1\n',
    '/etc/os-release': 'NAME="TrueNAS SCALE"\nID=debian\n',
}


class FakeClient:
    """Stands in for TrueNASClient; results maps method -> value or exception"""

    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []

    async def call(self, method, params=None):
        self.calls.append(method)
        result = self.results.get(method)
        if isinstance(result, BaseException):
            raise result
        return result

    async def close(self):
        pass


@pytest.fixture
def make_collector(settings):
    def build(responses=None, files=None, settings_overrides=None, client=None, paths=None):
        collector_settings = settings.with_overrides(settings_overrides)
        connector = FakeConnector(
            truenas_responses() if responses is None else responses,
            files=TRUENAS_FILES if files is None else files,
            paths=paths,
        )
        return TrueNASCollector(collector_settings, connector, client=client or FakeClient())
    return build


class TestHelpers:
    """Tests for the module-level mapping helpers"""

    @pytest.mark.parametrize('value,expected', [('*', '0.0.0.0'), ('', '0.0.0.0'),
                                                ('localhost', '127.0.0.1'), ('10.0.0.2', '10.0.0.2')])
    def test_resolve_host_ip(self, value, expected):
        assert resolve_host_ip(value) == expected

    def test_status_mapping(self):
        assert map_app_status('RUNNING') == 'running'
        assert map_app_status('DEPLOYING') == 'unknown'
        assert map_vm_status('PAUSED') == 'paused'
        assert map_vm_status('error') == 'unknown'
        assert map_vm_status(None) == 'unknown'

    def test_extract_app_ports_from_app_and_config(self):
        app = {
            'port_mappings': [{'host_port': 32400, 'container_port': 32400}],
            'config': {'port_mappings': [{'host_ip': '0.0.0.0', 'host_port': 1900, 'protocol': 'udp'}]},
        }
        assert extract_app_ports(app) == [
            {'host_ip': '*', 'host_port': 32400, 'container_port': 32400, 'protocol': 'tcp'},
            {'host_ip': '0.0.0.0', 'host_port': 1900, 'container_port': None, 'protocol': 'udp'},
        ]


class TestTrueNASDetection:
    """Tests for TrueNAS compatibility scoring"""

    @pytest.mark.asyncio
    async def test_full_signature_is_the_plain_sum(self, make_collector):
        collector = make_collector(
            paths={'/var/run/middlewared.sock', '/usr/local/etc/ix'},
            settings_overrides={'truenas_api_key': 'key'},
        )
        assert await collector.is_compatible() == 140
        assert len(collector.detection_reasons) == 5

    @pytest.mark.asyncio
    async def test_kernel_only(self, make_collector):
        collector = make_collector(files={})
        assert await collector.is_compatible() == 60

    @pytest.mark.asyncio
    async def test_api_key_from_server_config(self, make_collector):
        collector = make_collector(responses={}, files={})
        assert await collector.is_compatible({'truenas_api_key': 'key'}) == 20

    @pytest.mark.asyncio
    async def test_plain_linux_scores_zero(self, make_collector):
        collector = make_collector(responses={'uname -a': 'Linux box 6.8.0 x86_64\n'}, files={})
        assert await collector.is_compatible() == 0


class TestTrueNASCollection:
    """Tests for the unified collection pass without an API key"""

    @pytest.mark.asyncio
    async def test_collect_all_uses_unified_collect(self, make_collector):
        collector = make_collector()
        result = await collector.collect_all()

        assert collector.strategy is CollectionStrategy.UNIFIED
        assert result.platform == 'truenas'
        assert result.platform_name == 'TrueNAS'
        assert result.error is None
        assert result.enhanced_features_enabled is False
        assert result.vms == []

    @pytest.mark.asyncio
    async def test_system_info(self, make_collector):
        info = (await make_collector().collect()).system_info

        assert info.hostname == 'truenas'
        assert info.version == '25.04.1'
        assert info.memory == 32768000 * 1024
        assert info.cpu_model == 'AMD Ryzen 5 PRO 4650G'
        assert info.ncpu == 8
        assert info.uptime == '1 day, 2:03'
        assert info.details['system_product'] == 'ProLiant MicroServer Gen10 Plus'
        assert info.details['docker_version'] == '26.1.4'
        assert info.details['enhanced'] is False
        assert info.platform_data['api_key_required_for'] == ['vms', 'native_apps', 'detailed_system_info']

    @pytest.mark.asyncio
    async def test_version_from_kernel_when_no_version_file(self, make_collector):
        responses = truenas_responses()
        responses['docker info'] = DOCKER_INFO_OUTPUT.replace(
            '6.6.44-production+truenas', '6.6.44-truenas-24.10.2')
        files = {key: value for key, value in TRUENAS_FILES.items() if key != '/etc/version'}
        info = (await make_collector(responses=responses, files=files).collect()).system_info
        assert info.version == '24.10.2'

    @pytest.mark.asyncio
    async def test_fallback_system_info_when_docker_fails(self, make_collector):
        responses = truenas_responses()
        del responses['docker info']
        info = (await make_collector(responses=responses).collect()).system_info

        assert info.hostname == 'truenas-system'
        assert info.platform_data['source'] == 'fallback'

    @pytest.mark.asyncio
    async def test_containers_become_applications(self, make_collector):
        apps = (await make_collector().collect()).applications

        assert [app.name for app in apps] == ['web', 'wg-easy', 'homeassistant']
        web = apps[0]
        assert web.id == 'abc123full'
        assert web.status == 'running'
        assert web.platform == 'docker'
        assert web.platform_data['ports'] == [
            {'host_ip': '*', 'host_port': 8080, 'container_port': 80, 'protocol': 'tcp'},
        ]
        assert apps[1].status == 'stopped'

    @pytest.mark.asyncio
    async def test_containers_fall_back_to_docker_ps(self, make_collector):
        responses = truenas_responses()
        responses['docker inspect abc123 wgc456 host789'] = 'not json'
        responses['docker ps -a --format "{{json .}}"'] = (
            '{"ID":"abc123","Names":"web","Status":"Up 1 hour","Image":"nginx","Ports":"0.0.0.0:8080->80/tcp"}\n'
        )
        apps = (await make_collector(responses=responses).collect()).applications

        assert [(app.id, app.name, app.status) for app in apps] == [('abc123', 'web', 'running')]

    @pytest.mark.asyncio
    async def test_port_reconciliation(self, make_collector):
        """Test the merge of declared ports, OS sockets and the PID maps"""
        ports = (await make_collector().collect()).ports
        by_key = {(port.host_ip, port.host_port): port for port in ports}

        assert list(by_key) == [
            ('0.0.0.0', 8080), ('::', 8080), ('0.0.0.0', 22), ('0.0.0.0', 8123),
            ('0.0.0.0', 9443), ('0.0.0.0', 51820), ('0.0.0.0', 4999),
        ]

        declared = by_key[('0.0.0.0', 8080)]
        assert declared.source == 'docker'
        assert declared.owner == 'web'
        assert declared.pids == [1500]
        assert declared.created == '2024-05-01T10:00:00Z'

        sshd = by_key[('0.0.0.0', 22)]
        assert sshd.source == 'system'
        assert sshd.created.startswith('2025-10-')

        host_proc = by_key[('0.0.0.0', 8123)]
        assert host_proc.owner == 'homeassistant'
        assert host_proc.container_id == 'host789full'
        assert host_proc.target == 8123

        by_pid = by_key[('0.0.0.0', 9443)]
        assert by_pid.owner == 'web'
        assert by_pid.container_id == 'abc123full'

    @pytest.mark.asyncio
    async def test_known_udp_port_is_attributed(self, make_collector):
        """Test that an unowned WireGuard socket is matched to the wg-easy container"""
        ports = (await make_collector().collect()).ports
        [wireguard] = [port for port in ports if port.host_port == 51820]

        assert wireguard.protocol == 'udp'
        assert wireguard.source == 'docker'
        assert wireguard.owner == 'wg-easy'
        assert wireguard.container_id == 'wgc456full'

    @pytest.mark.asyncio
    async def test_own_port_is_attributed_to_own_container(self, make_collector):
        ports = (await make_collector().collect()).ports
        [own] = [port for port in ports if port.host_port == 4999]

        assert own.owner == 'portscout'
        assert own.container_id == 'self000111full'
        assert own.source == 'docker'

    @pytest.mark.asyncio
    async def test_own_container_creation_time_comes_from_inspect(self, make_collector):
        """Test that the full container ID of our own container matches its inspect record"""
        responses = truenas_responses()
        responses[SELF_COMMAND] = 'abc123full|portscout\n'
        ports = (await make_collector(responses=responses).collect()).ports
        [own] = [port for port in ports if port.host_port == 4999]

        assert own.container_id == 'abc123full'
        assert own.created == '2024-05-01T10:00:00Z'

    @pytest.mark.asyncio
    async def test_other_udp_and_broadcast_ports_are_dropped(self, make_collector):
        ports = (await make_collector().collect()).ports
        assert 5353 not in [port.host_port for port in ports]
        assert 137 not in [port.host_port for port in ports]

    @pytest.mark.asyncio
    async def test_include_udp_keeps_other_udp_ports(self, make_collector):
        collector = make_collector(settings_overrides={'include_udp': True})
        ports = (await collector.collect()).ports

        [mdns] = [port for port in ports if port.host_port == 5353]
        assert mdns.owner == 'avahi-daemon'

    @pytest.mark.asyncio
    async def test_container_stage_failure_keeps_other_stages(self, make_collector):
        """Test that a failing container stage only degrades the applications field"""
        responses = truenas_responses()
        responses['docker ps -aq'] = RuntimeError('fork failed')
        result = await make_collector(responses=responses).collect()

        assert result.errors['applications'] == 'fork failed'
        assert result.error is None
        assert result.system_info.hostname == 'truenas'
        assert result.applications == []
        assert 22 in [port.host_port for port in result.ports]

    @pytest.mark.asyncio
    async def test_port_stage_failure_keeps_enhanced_stage(self, make_collector):
        """Test that a failing port stage still lets the enhanced stage run"""
        responses = truenas_responses()
        responses['ss -tulpn'] = RuntimeError('ss crashed')
        client = FakeClient({'virt.instance.query': [{'id': 1, 'name': 'vm1', 'status': 'RUNNING'}]})
        collector = make_collector(responses=responses, settings_overrides={'truenas_api_key': 'key'},
                                   client=client)
        result = await collector.collect()

        assert result.errors['ports'] == 'ss crashed'
        assert result.ports == []
        assert 'web' in [app.name for app in result.applications]
        assert [vm.name for vm in result.vms] == ['vm1']

    @pytest.mark.asyncio
    async def test_enhanced_stage_failure_is_recorded(self, make_collector):
        """Test that an unexpected client failure is confined to the enhanced stage"""
        client = FakeClient({'system.info': RuntimeError('socket reset')})
        collector = make_collector(settings_overrides={'truenas_api_key': 'key'}, client=client)
        result = await collector.collect()

        assert result.errors['enhanced'] == 'socket reset'
        assert result.system_info.details['enhanced'] is False
        assert len(result.ports) > 0


class TestTrueNASCaching:
    """Tests for per-instance caching of expensive lookups"""

    @pytest.mark.asyncio
    async def test_second_pass_uses_cache(self, make_collector):
        collector = make_collector()
        await collector.collect()
        await collector.collect()
        calls = collector.connector.calls

        assert calls.count('docker version') == 1
        assert calls.count('docker ps -aq') == 1
        assert calls.count('ss -tulpn') == 1
        assert calls.count(HOST_NETWORK_COMMAND) == 1
        assert calls.count(DOCKER_PORTS_COMMAND) == 2
        assert set(collector.cache.status()) == {
            'systemInfo', 'dockerContainers', 'systemPorts', 'hostNetworkContainers',
        }

    @pytest.mark.asyncio
    async def test_cached_ports_are_not_mutated(self, make_collector):
        collector = make_collector()
        first = await collector.collect()
        second = await collector.collect()

        assert [p.to_dict() for p in first.ports] == [p.to_dict() for p in second.ports]
        assert all(port.source == 'system' for port in collector.cache.get('systemPorts'))

    @pytest.mark.asyncio
    async def test_disabled_cache_always_refetches(self, make_collector):
        collector = make_collector(settings_overrides={'disable_cache': True})
        await collector.collect()
        await collector.collect()

        assert collector.connector.calls.count('docker ps -aq') == 2
        assert collector.cache.status() == {}

    @pytest.mark.asyncio
    async def test_clear_cache(self, make_collector):
        collector = make_collector()
        await collector.collect()

        assert collector.clear_cache('systemInfo') is True
        assert collector.clear_cache('systemInfo') is False
        collector.clear_all_cache()
        assert collector.cache.status() == {}


class TestTrueNASEnhancedFeatures:
    """Tests for the API-key tier"""

    @pytest.mark.asyncio
    async def test_enhanced_features_merge_into_result(self, make_collector):
        client = FakeClient({
            'system.info': {'version': 'TrueNAS-SCALE-25.04.1', 'physmem': 34359738368, 'model': 'AMD Ryzen'},
            'app.query': [{
                'id': 'plex', 'name': 'plex', 'state': 'RUNNING', 'version': '1.41.0',
                'port_mappings': [{'host_port': 32400, 'container_port': 32400}],
            }],
            'virt.instance.query': [{
                'id': 'vm1', 'name': 'debian', 'status': 'RUNNING', 'cpu': '2', 'memory': 2147483648,
                'autostart': True, 'image': {'os': 'Debian'},
            }],
        })
        collector = make_collector(settings_overrides={'truenas_api_key': 'key'}, client=client)
        result = await collector.collect()

        assert result.enhanced_features_enabled is True
        assert result.system_info.version == 'TrueNAS-SCALE-25.04.1'
        assert result.system_info.details['physmem'] == 34359738368
        assert result.system_info.details['enhanced'] is True

        plex = result.applications[-1]
        assert plex.name == 'plex'
        assert plex.status == 'running'
        assert plex.platform == 'truenas'
        assert plex.platform_data['type'] == 'truenas_app'
        assert plex.platform_data['ports'][0]['host_port'] == 32400

        [vm] = result.vms
        assert vm.name == 'debian'
        assert vm.status == 'running'
        assert vm.vcpus == 2
        assert vm.autostart is True
        assert vm.platform_data['os'] == 'Debian'

    @pytest.mark.asyncio
    async def test_enhanced_info_does_not_leak_into_cache(self, make_collector):
        client = FakeClient({'system.info': {'version': 'TrueNAS-SCALE-25.04.1'}})
        collector = make_collector(settings_overrides={'truenas_api_key': 'key'}, client=client)
        await collector.collect()

        assert collector.cache.get('systemInfo').version == '25.04.1'

    @pytest.mark.asyncio
    async def test_failed_slice_degrades_alone(self, make_collector):
        """Test that one failing middleware call leaves the other slices intact"""
        client = FakeClient({
            'system.info': MiddlewareCallError('system.info', 'ENOMETHOD'),
            'app.query': [{'id': 'plex', 'name': 'plex', 'state': 'STOPPED'}],
            'virt.instance.query': MiddlewareCallError('virt.instance.query', 'EFAULT'),
        })
        collector = make_collector(settings_overrides={'truenas_api_key': 'key'}, client=client)
        result = await collector.collect()

        assert result.error is None
        assert result.system_info.details['enhanced'] is False
        assert result.applications[-1].status == 'stopped'
        assert result.vms == []
        assert client.calls == ['system.info', 'app.query', 'virt.instance.query']

    @pytest.mark.asyncio
    async def test_no_api_key_makes_no_middleware_calls(self, make_collector):
        client = FakeClient()
        await make_collector(client=client).collect()
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_fan_out_getters(self, make_collector):
        client = FakeClient({'virt.instance.query': [{'id': 'vm1', 'name': 'debian', 'status': 'STOPPED'}]})
        collector = make_collector(settings_overrides={'truenas_api_key': 'key'}, client=client)

        assert (await collector.get_system_info()).hostname == 'truenas'
        assert [vm.status for vm in await collector.get_vms()] == ['stopped']
        assert len(await collector.get_applications()) == 3
        assert any(port.host_port == 22 for port in await collector.get_ports())
