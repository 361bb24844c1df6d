"""Utilities for the election system."""

from .utils import (
    setup_logging,
    save_results,
    to_serializable,
    PerformanceMonitor,
    PerformanceMetrics,
    create_performance_report,
    create_results_summary,
    get_system_info,
    format_duration,
    format_bytes,
)

__all__ = [
    'setup_logging',
    'save_results',
    'to_serializable',
    'PerformanceMonitor',
    'PerformanceMetrics',
    'create_performance_report',
    'create_results_summary',
    'get_system_info',
    'format_duration',
    'format_bytes',
]
