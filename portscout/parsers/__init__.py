"""Pure parsers for command and file output."""

from .socket_listing import (
    parse_ss_output, parse_netstat_output, parse_windows_netstat_output,
    parse_ps_processes, parse_tasklist_csv, split_local_address,
)
from .docker_output import (
    parse_docker_ps_ports, parse_container_ports, parse_port_mapping,
    extract_docker_version, parse_docker_info, parse_memory_string,
    parse_docker_top_pids, parse_docker_top_processes, parse_pid_inspect_lines,
    parse_inspect_containers, parse_ps_container_rows, parse_json_lines,
    parse_lstart_output, parse_name_id_lines, map_docker_status, strip_container_name,
)
from .proc_files import (
    parse_meminfo_total, parse_cpu_model, parse_uptime_seconds, format_uptime,
    truenas_version_from_kernel,
)
