"""
Canonical records handed to the presentation layer.

Every collector produces these shapes; to_dict() gives the wire format.
"""

from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Tuple, Union

WILDCARD_IP = "0.0.0.0"
MAX_PORT = 65535


@dataclass
class PortEntry:
    """A listening socket or declared port binding"""
    source: str = "system"  # 'docker' or 'system'
    owner: str = "unknown"
    protocol: str = "tcp"
    host_ip: str = WILDCARD_IP
    host_port: int = 0
    target: Optional[Union[int, str]] = None
    container_id: Optional[str] = None
    vm_id: Optional[str] = None
    app_id: Optional[str] = None
    created: Optional[str] = None
    pids: List[int] = field(default_factory=list)
    platform_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, int]:
        """Dedup key within one collection pass (protocol deliberately excluded)"""
        return (self.host_ip, self.host_port)

    @property
    def pid(self) -> Optional[int]:
        return self.pids[0] if self.pids else None

    def attribute_to(self, container_id: str, owner: str, target=None, created: Optional[str] = None):
        """Re-own this port to a container"""
        self.source = "docker"
        self.owner = owner
        self.container_id = container_id
        self.app_id = container_id
        if target is not None:
            self.target = target
        if created is not None:
            self.created = created

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['pid'] = self.pid
        return data


@dataclass
class Application:
    """A container, native app or process"""
    id: str
    name: str
    status: str = "unknown"
    image: Optional[str] = None
    version: str = "N/A"
    command: Optional[str] = None
    created: Optional[str] = None
    platform: str = "generic"
    platform_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    type: str = "application"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data['error'] is None:
            del data['error']
        return data


@dataclass
class VirtualMachine:
    """A VM or system container managed by the platform"""
    id: str
    name: str
    status: str = "unknown"
    vcpus: Optional[int] = None
    memory: Optional[int] = None
    autostart: bool = False
    platform: str = "generic"
    platform_data: Dict[str, Any] = field(default_factory=dict)
    type: str = "vm"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SystemInfo:
    """Host facts. Platform-specific extras live in `details` and are flattened by to_dict()."""
    hostname: str = "unknown"
    version: str = "unknown"
    platform: str = "generic"
    architecture: Optional[str] = None
    ncpu: int = 0
    cpu_model: Optional[str] = None
    memory: int = 0
    uptime: Optional[Any] = None
    uptime_seconds: float = 0
    platform_data: Dict[str, Any] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    type: str = "system"

    def merge(self, extra: Dict[str, Any]):
        """Overlay another source's facts; known fields are replaced, the rest land in details"""
        known = {f.name for f in fields(self)} - {'details', 'platform_data', 'type'}
        for key, value in (extra or {}).items():
            if value is None:
                continue
            if key in known:
                setattr(self, key, value)
            else:
                self.details[key] = value

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.details)
        for f in fields(self):
            if f.name == 'details':
                continue
            value = getattr(self, f.name)
            if f.name == 'error' and value is None:
                continue
            data[f.name] = value
        return data


@dataclass
class CollectionResult:
    """Everything one collection pass produced. Always well-formed."""
    platform: str
    platform_name: str
    system_info: Optional[SystemInfo] = None
    applications: List[Application] = field(default_factory=list)
    ports: List[PortEntry] = field(default_factory=list)
    vms: List[VirtualMachine] = field(default_factory=list)
    errors: Dict[str, Optional[str]] = field(default_factory=dict)
    error: Optional[str] = None
    enhanced_features_enabled: bool = False
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary for serialization"""
        return {
            'platform': self.platform,
            'platformName': self.platform_name,
            'systemInfo': self.system_info.to_dict() if self.system_info else None,
            'applications': [app.to_dict() for app in self.applications],
            'ports': [port.to_dict() for port in self.ports],
            'vms': [vm.to_dict() for vm in self.vms],
            'errors': self.errors,
            'error': self.error,
            'timestamp': self.timestamp,
            'enhancedFeaturesEnabled': self.enhanced_features_enabled,
        }


def _coerce_port(value) -> int:
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        return 0
    if port < 0 or port > MAX_PORT:
        return 0
    return port


def _coerce_pids(entry: Dict[str, Any]) -> List[int]:
    raw = entry.get('pids')
    if raw is None:
        raw = [entry['pid']] if entry.get('pid') is not None else []
    pids = []
    for pid in raw:
        try:
            pids.append(int(pid))
        except (TypeError, ValueError):
            continue
    return pids


def normalize_port_entry(entry: Union[Dict[str, Any], PortEntry], default_source: str = "system") -> PortEntry:
    """
    Fill every PortEntry field with a safe default.

    host_port always ends up an int in [0, 65535]; anything unparsable or out
    of range becomes 0.
    """
    if isinstance(entry, PortEntry):
        entry = entry.to_dict()

    return PortEntry(
        source=entry.get('source') or default_source,
        owner=entry.get('owner') or "unknown",
        protocol=(entry.get('protocol') or "tcp").lower(),
        host_ip=entry.get('host_ip') or WILDCARD_IP,
        host_port=_coerce_port(entry.get('host_port')),
        target=entry.get('target') or None,
        container_id=entry.get('container_id') or None,
        vm_id=entry.get('vm_id') or None,
        app_id=entry.get('app_id') or None,
        created=entry.get('created') or None,
        pids=_coerce_pids(entry),
        platform_data=dict(entry.get('platform_data') or {}),
    )
