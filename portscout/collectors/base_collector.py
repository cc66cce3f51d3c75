# portscout/collectors/base_collector.py
"""
Base collector class that all platform collectors inherit from.
Provides the discovery contract, the default fan-out collection strategy and
shared logging helpers.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..config.settings import CollectorSettings, resolve_settings
from ..connectors.local_connector import LocalConnector
from ..models import (
    Application, CollectionResult, PortEntry, SystemInfo, VirtualMachine,
    normalize_port_entry,
)
from ..utils.logging_config import LoggingConfig


class CollectionStrategy(Enum):
    """How collect_all() gathers data for a collector"""
    FAN_OUT = 'fan_out'   # run the four getters independently
    UNIFIED = 'unified'   # delegate to the collector's own collect()


# Result field -> getter, in fan-out order
FAN_OUT_FIELDS = (
    ('systemInfo', 'get_system_info'),
    ('applications', 'get_applications'),
    ('ports', 'get_ports'),
    ('vms', 'get_vms'),
)


def error_message(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


class BaseCollector:
    """
    Base class for all platform collectors.

    Subclasses implement the four getters and is_compatible(). The base class
    itself is a valid (if useless) collector: every getter raises
    NotImplementedError and the compatibility score is 0.
    """

    platform = 'generic'
    platform_name = 'Generic Platform'
    strategy = CollectionStrategy.FAN_OUT

    def __init__(self, config: Union[Dict[str, Any], CollectorSettings, None] = None,
                 connector: Optional[LocalConnector] = None):
        self.config = config if isinstance(config, dict) else {}
        self.settings = resolve_settings(config)
        self.connector = connector or LocalConnector(timeout=self.settings.command_timeout)
        self.logger = logging.getLogger(f"collector.{self.platform}")
        if self.settings.debug:
            LoggingConfig.enable_collector_debug()
        self.detection_info: Optional[Dict[str, Any]] = None

    async def get_system_info(self) -> SystemInfo:
        raise NotImplementedError("Method not implemented: get_system_info()")

    async def get_applications(self) -> List[Application]:
        raise NotImplementedError("Method not implemented: get_applications()")

    async def get_ports(self) -> List[PortEntry]:
        raise NotImplementedError("Method not implemented: get_ports()")

    async def get_vms(self) -> List[VirtualMachine]:
        raise NotImplementedError("Method not implemented: get_vms()")

    async def collect(self) -> CollectionResult:
        """Unified collection for UNIFIED collectors; the default is the fan-out"""
        return await self._fan_out()

    async def is_compatible(self, server_config: Optional[Dict[str, Any]] = None) -> int:
        """Confidence score 0-100 that this collector fits the current host"""
        return 0

    def set_detection_info(self, info: Dict[str, Any]):
        """Store detection information for API access"""
        self.logger.debug(f"Setting detection info: {info}")
        self.detection_info = info

    async def collect_all(self) -> CollectionResult:
        """
        Collect everything this collector can see.

        Never raises: a failing getter degrades its field to None/[] and its
        message lands in result.errors.
        """
        if self.strategy is CollectionStrategy.UNIFIED:
            return await self.collect()
        return await self._fan_out()

    async def _fan_out(self) -> CollectionResult:
        try:
            outcomes = await asyncio.gather(
                *(getattr(self, getter)() for _, getter in FAN_OUT_FIELDS),
                return_exceptions=True
            )
        except Exception as e:
            self.logger.exception(f"Error collecting all data: {e}")
            return self.empty_result(errors={'general': error_message(e)})

        values = {}
        errors = {}
        for (field, _), outcome in zip(FAN_OUT_FIELDS, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                self.logger.warning(f"{field} collection failed: {error_message(outcome)}")
                values[field] = None
                errors[field] = error_message(outcome)
            else:
                values[field] = outcome
                errors[field] = None

        return CollectionResult(
            platform=self.platform,
            platform_name=self.platform_name,
            system_info=values['systemInfo'],
            applications=values['applications'] or [],
            ports=values['ports'] or [],
            vms=values['vms'] or [],
            errors=errors,
        )

    def empty_result(self, **overrides) -> CollectionResult:
        result = CollectionResult(platform=self.platform, platform_name=self.platform_name)
        for key, value in overrides.items():
            setattr(result, key, value)
        return result

    def normalize_port_entry(self, entry) -> PortEntry:
        return normalize_port_entry(entry)

    def log_collection_progress(self, step: str, detail: str = None):
        """Log collection progress"""
        if detail:
            self.logger.debug(f"[{step}] {detail}")
        else:
            self.logger.debug(f"Starting: {step}")
