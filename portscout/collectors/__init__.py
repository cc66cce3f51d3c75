# portscout/collectors/__init__.py
"""
Collector registry and platform auto-detection.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Type

from .base_collector import BaseCollector, CollectionStrategy
from .docker_collector import DockerCollector
from .system_collector import SystemCollector
from .truenas_collector import TrueNASCollector

logger = logging.getLogger('collector.registry')

COLLECTORS: Dict[str, Type[BaseCollector]] = {
    'base': BaseCollector,
    'truenas': TrueNASCollector,
    'docker': DockerCollector,
    'system': SystemCollector,
}

# Probe order; on equal scores the earlier entry wins
DETECTION_ORDER = ('truenas', 'docker', 'system')


def register_collector(platform: str, collector_class: Type[BaseCollector]):
    """Add or replace a platform in the registry"""
    COLLECTORS[platform] = collector_class


def create_collector(platform: str = 'base', config: Optional[Dict[str, Any]] = None,
                     connector=None) -> BaseCollector:
    """Instantiate the collector for a platform; unknown names fall back to the base collector"""
    collector_class = COLLECTORS.get(platform)
    if collector_class is None:
        logger.warning(f"No collector available for platform '{platform}', using base collector")
        collector_class = BaseCollector
    return collector_class(config, connector)


async def _score(collector: BaseCollector, config: Optional[Dict[str, Any]]) -> int:
    try:
        return int(await collector.is_compatible(config) or 0)
    except Exception as e:
        logger.warning(f"Compatibility check failed for {collector.platform}: {e}")
        return 0


async def detect_collector(config: Optional[Dict[str, Any]] = None, connector=None) -> BaseCollector:
    """
    Pick the collector with the highest compatibility score.

    Candidates are scored concurrently. A check that raises scores 0. When every
    candidate scores 0 a fresh SystemCollector is returned.
    """
    candidates = [COLLECTORS[platform](config, connector) for platform in DETECTION_ORDER]
    scores = await asyncio.gather(*(_score(collector, config) for collector in candidates))

    best, best_score = None, 0
    for collector, score in zip(candidates, scores):
        logger.debug(f"{collector.platform} compatibility score: {score}")
        if score > best_score:
            best, best_score = collector, score

    if best is None:
        logger.info("No collector reported compatibility, falling back to system collector")
        best = SystemCollector(config, connector)

    best.set_detection_info({
        'type': best.platform,
        'name': best.platform_name,
        'score': best_score,
        'scores': {collector.platform: score for collector, score in zip(candidates, scores)},
    })
    logger.info(f"Detected platform: {best.platform_name} (score {best_score})")
    return best


__all__ = [
    'BaseCollector', 'CollectionStrategy', 'DockerCollector', 'SystemCollector', 'TrueNASCollector',
    'COLLECTORS', 'create_collector', 'detect_collector', 'register_collector',
]
