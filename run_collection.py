#!/usr/bin/env python3
"""
On-demand host discovery run
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from portscout.collectors import COLLECTORS, create_collector, detect_collector
from portscout.config.settings import initialize_settings
from portscout.utils.logging_config import setup_logging, get_logger

PLATFORM_CHOICES = ['auto', 'truenas', 'docker', 'system']


async def run_collection(platform='auto', config=None, logger=None, connector=None):
    """Create or detect a collector and run one collection pass"""
    if platform == 'auto':
        collector = await detect_collector(config, connector)
    else:
        collector = create_collector(platform, config, connector)
        score = await collector.is_compatible(config)
        collector.set_detection_info({
            'type': collector.platform,
            'name': collector.platform_name,
            'score': score,
            'scores': {collector.platform: score},
        })

    if logger:
        logger.info(f"Collecting with {collector.platform_name} collector")

    try:
        return collector, await collector.collect_all()
    finally:
        client = getattr(collector, 'client', None)
        if client is not None:
            await client.close()


def print_summary(collector, result):
    print(f"\n📡 Platform: {result.platform_name} ({result.platform})")
    if collector.detection_info:
        print(f"   🔍 Detection score: {collector.detection_info.get('score')}")
    if result.system_info:
        print(f"   🖥️  Host: {result.system_info.hostname} ({result.system_info.version})")
    print(f"   📦 Applications: {len(result.applications)}")
    print(f"   🌐 Ports: {len(result.ports)}")
    print(f"   💽 VMs: {len(result.vms)}")
    if result.enhanced_features_enabled:
        print("   ✨ Enhanced features enabled")

    failed = {field: message for field, message in result.errors.items() if message}
    for field, message in failed.items():
        print(f"   ⚠️  {field}: {message}")
    if result.error:
        print(f"   ❌ {result.error}")


def main():
    """Main function with command line arguments"""
    parser = argparse.ArgumentParser(description='Host and service discovery')
    parser.add_argument('--platform', default='auto', choices=PLATFORM_CHOICES,
                        help='Collector to use (default: auto-detect)')
    parser.add_argument('--output', help='Write the JSON result to this file')
    parser.add_argument('--config', help='Path to a portscout.yml configuration file')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug logging')
    parser.add_argument('--no-log-file', action='store_true',
                        help='Log to the console only')

    args = parser.parse_args()

    setup_logging(enable_debug=args.debug, log_to_file=not args.no_log_file)
    logger = get_logger('collection_main')

    settings = initialize_settings(args.config)
    if args.debug:
        settings.debug = True

    if args.platform != 'auto' and args.platform not in COLLECTORS:
        logger.error(f"Unknown platform '{args.platform}'")
        return 1

    collector, result = asyncio.run(run_collection(args.platform, settings, logger))
    print_summary(collector, result)

    data = json.dumps(result.to_dict(), indent=2, default=str)
    if args.output:
        output_file = Path(args.output)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        output_file.write_text(data)
        print(f"💾 Saved to {output_file}")
        logger.info(f"Collection result written to {output_file}")
    else:
        print(data)

    return 0 if not result.error else 1


if __name__ == "__main__":
    sys.exit(main())
