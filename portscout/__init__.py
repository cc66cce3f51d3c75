"""Host and service discovery for Docker, TrueNAS and plain OS hosts."""

__version__ = '0.1.0'

from .collectors import create_collector, detect_collector, register_collector
from .config import CollectorSettings, load_settings
from .models import Application, CollectionResult, PortEntry, SystemInfo, VirtualMachine
