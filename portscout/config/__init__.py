from .settings import CollectorSettings, load_settings, get_settings, initialize_settings, resolve_settings

__all__ = ['CollectorSettings', 'load_settings', 'get_settings', 'initialize_settings', 'resolve_settings']
