# tests/test_parsers.py
"""
Tests for the command and file output parsers.
"""

import pytest

from portscout.parsers import (
    split_local_address, parse_ss_output, parse_netstat_output, parse_windows_netstat_output,
    parse_ps_processes, parse_tasklist_csv, parse_port_mapping, parse_docker_ps_ports,
    parse_container_ports, extract_docker_version, parse_docker_info, parse_memory_string,
    parse_docker_top_pids, parse_docker_top_processes, parse_pid_inspect_lines,
    parse_inspect_containers, parse_ps_container_rows, parse_lstart_output, map_docker_status,
    parse_meminfo_total, parse_cpu_model, parse_uptime_seconds, format_uptime,
    truenas_version_from_kernel,
)

from samples import (
    SS_OUTPUT, NETSTAT_OUTPUT, WINDOWS_NETSTAT_OUTPUT, DOCKER_VERSION_OUTPUT, DOCKER_INFO_OUTPUT,
)


class TestSplitLocalAddress:
    """Tests for split_local_address"""

    @pytest.mark.parametrize('address,expected', [
        ('0.0.0.0:22', ('0.0.0.0', 22)),
        ('*:9000', ('0.0.0.0', 9000)),
        ('[::]:8080', ('::', 8080)),
        (':::80', ('::', 80)),
        ('127.0.0.53%lo:53', ('127.0.0.53', 53)),
        ('[fe80::1%eth0]:546', ('fe80::1', 546)),
    ])
    def test_valid_addresses(self, address, expected):
        assert split_local_address(address) == expected

    @pytest.mark.parametrize('address', ['', '0.0.0.0', '0.0.0.0:*', '0.0.0.0:0', '0.0.0.0:70000'])
    def test_invalid_addresses(self, address):
        assert split_local_address(address) is None


class TestSocketListingParsers:
    """Tests for ss and netstat parsing"""

    def test_parse_ss_output(self):
        """Test that ss rows yield address, owner and pid"""
        entries = parse_ss_output(SS_OUTPUT)

        assert [(e.protocol, e.host_ip, e.host_port) for e in entries] == [
            ('tcp', '0.0.0.0', 22),
            ('tcp', '127.0.0.1', 6379),
            ('tcp', '::', 8080),
            ('udp', '127.0.0.53', 53),
            ('tcp', '0.0.0.0', 9000),
        ]
        sshd = entries[0]
        assert sshd.source == 'system'
        assert sshd.owner == 'sshd'
        assert sshd.pids == [812]
        assert sshd.platform_data == {'process': 'sshd', 'pid': 812}

    def test_parse_ss_row_without_process(self):
        entry = parse_ss_output(SS_OUTPUT)[-1]
        assert entry.owner == 'unknown'
        assert entry.pids == []

    def test_parse_ss_skips_malformed_lines(self):
        output = "Netid State Recv-Q Send-Q Local Peer\ngarbage line\ntcp LISTEN 0 1 nonsense x\n"
        assert parse_ss_output(output) == []

    def test_parse_netstat_output(self):
        entries = parse_netstat_output(NETSTAT_OUTPUT)

        assert [(e.protocol, e.host_ip, e.host_port, e.owner) for e in entries] == [
            ('tcp', '0.0.0.0', 22, 'sshd'),
            ('tcp', '::', 80, 'nginx'),
            ('udp', '0.0.0.0', 68, 'dhclient'),
            ('tcp', '127.0.0.1', 5432, 'unknown'),
        ]
        assert entries[2].pids == [700]
        assert entries[3].pids == []

    def test_parse_windows_netstat_keeps_listening_rows(self):
        entries = parse_windows_netstat_output(WINDOWS_NETSTAT_OUTPUT)

        assert [(e.host_ip, e.host_port) for e in entries] == [('0.0.0.0', 135), ('::', 445)]
        assert entries[0].owner == 'Process (pid 1044)'
        assert entries[0].pids == [1044]

    def test_parse_ps_processes(self):
        output = "  PID  PPID CMD\n    1     0 /sbin/init splash\n  812     1 /usr/sbin/sshd -D\n"
        assert parse_ps_processes(output) == [
            {'pid': 1, 'name': 'init', 'command': '/sbin/init splash'},
            {'pid': 812, 'name': 'sshd', 'command': '/usr/sbin/sshd -D'},
        ]

    def test_parse_tasklist_csv(self):
        output = ('"Image Name","PID","Session Name","Session#","Mem Usage"\n'
                  '"svchost.exe","1044","Services","0","12,345 K"\n')
        assert parse_tasklist_csv(output) == [{'pid': 1044, 'name': 'svchost.exe', 'command': 'svchost.exe'}]


class TestDockerPortParsers:
    """Tests for docker port strings"""

    def test_parse_simple_mapping(self):
        assert parse_port_mapping('0.0.0.0:8080->80/tcp') == [
            {'host_ip': '0.0.0.0', 'host_port': 8080, 'target': 80, 'protocol': 'tcp'},
        ]

    def test_parse_range_mapping(self):
        bindings = parse_port_mapping('0.0.0.0:8000-8001->9000-9001/udp')
        assert [(b['host_port'], b['target'], b['protocol']) for b in bindings] == [
            (8000, 9000, 'udp'), (8001, 9001, 'udp'),
        ]

    def test_parse_ipv6_mapping(self):
        assert parse_port_mapping(':::8080->80/tcp')[0]['host_ip'] == '::'
        assert parse_port_mapping('[::]:8080->80/tcp')[0]['host_ip'] == '::'

    def test_exposed_only_port_has_no_binding(self):
        assert parse_port_mapping('80/tcp') == []

    def test_parse_docker_ps_ports(self):
        """Test that each mapping becomes a docker-sourced entry"""
        output = ("web:::0.0.0.0:8080->80/tcp, :::8080->80/tcp:::abc123\n"
                  "db:::5432/tcp:::def456\n"
                  "idle::::::ghi789\n")
        entries = parse_docker_ps_ports(output)

        assert [(e.owner, e.host_ip, e.host_port, e.target) for e in entries] == [
            ('web', '0.0.0.0', 8080, 80),
            ('web', '::', 8080, 80),
        ]
        assert entries[0].source == 'docker'
        assert entries[0].container_id == 'abc123'
        assert entries[0].app_id == 'abc123'

    def test_parse_docker_ps_ports_with_pipe_separator(self):
        entries = parse_docker_ps_ports("wg-easy|0.0.0.0:51820->51820/udp|abc\n", separator='|')
        assert [(e.host_port, e.protocol) for e in entries] == [(51820, 'udp')]

    def test_parse_container_ports_from_string(self):
        assert parse_container_ports('0.0.0.0:8080->80/tcp, 443/tcp') == [
            {'host_ip': '*', 'host_port': 8080, 'container_port': 80, 'protocol': 'tcp'},
            {'container_port': 443, 'protocol': 'tcp'},
        ]

    def test_parse_container_ports_from_bindings(self):
        bindings = {'80/tcp': [{'HostIp': '', 'HostPort': '8080'}], '53/udp': None}
        assert parse_container_ports(bindings) == [
            {'host_ip': '*', 'host_port': 8080, 'container_port': 80, 'protocol': 'tcp'},
            {'host_ip': '*', 'host_port': None, 'container_port': 53, 'protocol': 'udp'},
        ]

    def test_parse_container_ports_empty(self):
        assert parse_container_ports(None) == []
        assert parse_container_ports('') == []


class TestDockerInfoParsers:
    """Tests for docker version/info/top/inspect output"""

    def test_extract_server_version(self):
        assert extract_docker_version(DOCKER_VERSION_OUTPUT) == '26.1.4'
        assert extract_docker_version('Client:\n Version: 1.0\n') == 'unknown'

    def test_parse_docker_info(self):
        """Test that the first occurrence of a label wins"""
        info = parse_docker_info(DOCKER_INFO_OUTPUT)

        assert info['name'] == 'truenas'
        assert info['containers'] == 12
        assert info['containers_running'] == 9
        assert info['images'] == 20
        assert info['kernel_version'] == '6.6.44-production+truenas'
        assert info['os_type'] == 'linux'
        assert info['architecture'] == 'x86_64'
        assert info['cpus'] == 8
        assert info['memory'] == round(31.27 * 1024 ** 3)
        assert info['storage_driver'] == 'overlay2'
        assert info['swarm_status'] == 'inactive'

    @pytest.mark.parametrize('text,expected', [
        ('2GiB', 2 * 1024 ** 3),
        ('2 GB', 2 * 1000 ** 3),
        ('512MiB', 512 * 1024 ** 2),
        ('4KiB', 4096),
        ('100B', 100),
        ('16', 16 * 1024 ** 3),
        ('', 0),
    ])
    def test_parse_memory_string(self, text, expected):
        assert parse_memory_string(text) == expected

    def test_parse_docker_top_pids(self):
        assert parse_docker_top_pids("PID\n1234\n1250\n") == [1234, 1250]

    def test_parse_docker_top_processes(self):
        output = "PID                 COMMAND\n2001                nginx\n2002                sh\n"
        assert parse_docker_top_processes(output) == [(2001, 'nginx'), (2002, 'sh')]

    def test_parse_pid_inspect_lines_skips_stopped(self):
        output = "4321::abcdef0123456789::/web\n0::fedcba::/stopped\nbroken line\n"
        assert parse_pid_inspect_lines(output) == {4321: {'id': 'abcdef0123456789', 'name': 'web'}}

    @pytest.mark.parametrize('status,expected', [
        ('Up 3 hours', 'running'),
        ('running', 'running'),
        ('Exited (0) 2 days ago', 'stopped'),
        ('Restarting (1) 5 seconds ago', 'restarting'),
        ('Created', 'created'),
        ('paused', 'paused'),
        ('dead', 'unknown'),
        (None, 'unknown'),
    ])
    def test_map_docker_status(self, status, expected):
        assert map_docker_status(status) == expected

    def test_parse_inspect_containers(self):
        output = """[{
            "Id": "abc123",
            "Name": "/web",
            "Created": "2024-05-01T10:00:00Z",
            "Path": "nginx",
            "Args": ["-g", "daemon off;"],
            "State": {"Status": "running"},
            "Config": {"Image": "nginx:latest"},
            "HostConfig": {"NetworkMode": "bridge", "PortBindings": {"80/tcp": [{"HostIp": "", "HostPort": "8080"}]}},
            "NetworkSettings": {"Networks": {"bridge": {}, "frontend": {}}}
        }]"""
        [container] = parse_inspect_containers(output)

        assert container['id'] == 'abc123'
        assert container['name'] == 'web'
        assert container['status'] == 'running'
        assert container['image'] == 'nginx:latest'
        assert container['command'] == 'nginx -g daemon off;'
        assert container['networks'] == 'bridge, frontend'
        assert container['network_mode'] == 'bridge'
        assert container['ports'] == {'80/tcp': [{'HostIp': '', 'HostPort': '8080'}]}

    def test_parse_inspect_containers_rejects_bad_json(self):
        with pytest.raises(ValueError):
            parse_inspect_containers('not json')

    def test_parse_ps_container_rows_skips_bad_lines(self):
        output = ('{"ID":"abc","Names":"web","Status":"Up 2 hours","Image":"nginx","Ports":"80/tcp"}\n'
                  'not json\n')
        [row] = parse_ps_container_rows(output)
        assert row['id'] == 'abc'
        assert row['name'] == 'web'
        assert row['status'] == 'running'

    def test_parse_lstart_output(self):
        start_times = parse_lstart_output(" 812 Mon Oct  6 12:34:56 2025\n 901 garbage\n")
        assert list(start_times) == [812]
        assert start_times[812].startswith('2025-10-')


class TestProcFileParsers:
    """Tests for /proc parsing and uptime formatting"""

    def test_parse_meminfo_total(self):
        assert parse_meminfo_total("MemTotal:       32768000 kB\nMemFree: 1 kB\n") == 32768000 * 1024
        assert parse_meminfo_total("") == 0

    def test_parse_cpu_model(self):
        text = "processor\t: 0\nmodel name\t: AMD Ryzen 7 5700G with Radeon Graphics\n"
        assert parse_cpu_model(text) == 'AMD Ryzen 7 5700G with Radeon Graphics'
        assert parse_cpu_model('') is None

    def test_parse_uptime_seconds(self):
        assert parse_uptime_seconds("350735.47 234388.90\n") == 350735.47
        assert parse_uptime_seconds("") == 0.0

    @pytest.mark.parametrize('seconds,expected', [
        (59, '0:00'),
        (3 * 3600 + 5 * 60, '3:05'),
        (86400 + 3600, '1 day, 1:00'),
        (3 * 86400 + 4 * 3600 + 5 * 60, '3 days, 4:05'),
    ])
    def test_format_uptime(self, seconds, expected):
        assert format_uptime(seconds) == expected

    def test_truenas_version_from_kernel(self):
        assert truenas_version_from_kernel('6.6.44-truenas-24.10.2') == '24.10.2'
        assert truenas_version_from_kernel('6.6.44-production+truenas') is None


DOCKER_PS_OUTPUT = ("web:::0.0.0.0:8080->80/tcp, :::8080->80/tcp:::abc123\n"
                    "db:::5432/tcp:::def456\n")


class TestRepeatableParsing:
    """Tests that parsing the same output twice gives the same port list"""

    @pytest.mark.parametrize('parser,output', [
        (parse_ss_output, SS_OUTPUT),
        (parse_netstat_output, NETSTAT_OUTPUT),
        (parse_windows_netstat_output, WINDOWS_NETSTAT_OUTPUT),
        (parse_docker_ps_ports, DOCKER_PS_OUTPUT),
    ])
    def test_identical_output_gives_identical_ports(self, parser, output):
        first = [entry.to_dict() for entry in parser(output)]
        second = [entry.to_dict() for entry in parser(output)]

        assert first
        assert first == second
