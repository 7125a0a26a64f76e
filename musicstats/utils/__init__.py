"""
Utilities package
Logging, helpers, validation and background timers
"""

from .logger import (
    get_logger,
    configure_from_settings,
    setup_logging,
    OperationLogger,
    create_operation_logger,
    log_performance,
    get_current_log_file,
    parse_size,
)
from .helpers import (
    now_ms,
    local_date_key,
    year_month_key,
    round_half_up,
    format_duration,
    format_minutes,
    format_timestamp,
    sha256_hex,
    create_export_filename,
)
from .scheduler import IntervalTimer

__all__ = [
    # Logger exports
    'get_logger',
    'configure_from_settings',
    'setup_logging',
    'OperationLogger',
    'create_operation_logger',
    'log_performance',
    'get_current_log_file',
    'parse_size',

    # Helper exports
    'now_ms',
    'local_date_key',
    'year_month_key',
    'round_half_up',
    'format_duration',
    'format_minutes',
    'format_timestamp',
    'sha256_hex',
    'create_export_filename',

    'IntervalTimer',
]
