# portscout/utils/logging_config.py
"""
Centralized logging configuration for host discovery.
"""

import logging
import logging.handlers
from pathlib import Path
from datetime import datetime

# Third-party libraries that are too verbose at INFO
QUIET_LOGGERS = ('aiohttp', 'docker', 'urllib3')

# Parents of collector.<platform>, connector.local and truenas.{ws,rpc,discovery}
DISCOVERY_LOGGERS = ('collector', 'connector', 'truenas')


class LoggingConfig:
    """Manages logging configuration for the entire application"""

    @staticmethod
    def setup_logging(log_level='INFO', enable_debug=False, log_to_file=True, log_dir='logs'):
        """
        Set up logging for the application

        Args:
            log_level: Default log level ('DEBUG', 'INFO', 'WARNING', 'ERROR')
            enable_debug: Enable debug logging for troubleshooting
            log_to_file: Whether to log to files
            log_dir: Directory for the rotating log files
        """
        root_logger = logging.getLogger()
        root_logger.setLevel(logging.DEBUG if enable_debug else getattr(logging, log_level.upper()))

        # Clear existing handlers
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        simple_formatter = logging.Formatter(
            '%(levelname)s: %(message)s'
        )

        # Console handler (always present)
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG if enable_debug else logging.INFO)
        console_handler.setFormatter(simple_formatter)
        root_logger.addHandler(console_handler)

        if log_to_file:
            log_path = Path(log_dir)
            log_path.mkdir(parents=True, exist_ok=True)

            # Main application log file (rotating)
            file_handler = logging.handlers.RotatingFileHandler(
                log_path / 'portscout.log', maxBytes=10 * 1024 * 1024, backupCount=5
            )
            file_handler.setLevel(logging.DEBUG if enable_debug else logging.INFO)
            file_handler.setFormatter(detailed_formatter)
            root_logger.addHandler(file_handler)

            # Error log file (errors only)
            error_handler = logging.handlers.RotatingFileHandler(
                log_path / 'errors.log', maxBytes=5 * 1024 * 1024, backupCount=3
            )
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(detailed_formatter)
            root_logger.addHandler(error_handler)

            # Per-run debug log
            if enable_debug:
                debug_log_file = log_path / f'debug_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log'
                debug_handler = logging.FileHandler(debug_log_file)
                debug_handler.setLevel(logging.DEBUG)
                debug_handler.setFormatter(detailed_formatter)
                root_logger.addHandler(debug_handler)

        LoggingConfig._configure_component_loggers(enable_debug)

    @staticmethod
    def _configure_component_loggers(enable_debug):
        """Configure logging levels for specific components"""
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        logging.getLogger('config_manager').setLevel(logging.INFO)
        for name in DISCOVERY_LOGGERS:
            logging.getLogger(name).setLevel(logging.DEBUG if enable_debug else logging.INFO)

    @staticmethod
    def enable_collector_debug():
        """Lower the collector, connector and middleware loggers to DEBUG without touching handlers"""
        for name in DISCOVERY_LOGGERS:
            logging.getLogger(name).setLevel(logging.DEBUG)

    @staticmethod
    def get_logger(name):
        """Get a logger for a specific component"""
        return logging.getLogger(name)


# Convenience functions
def setup_logging(log_level='INFO', enable_debug=False, log_to_file=True, log_dir='logs'):
    """Convenience function to set up logging"""
    LoggingConfig.setup_logging(log_level, enable_debug, log_to_file, log_dir)


def get_logger(name):
    """Convenience function to get a logger"""
    return LoggingConfig.get_logger(name)
