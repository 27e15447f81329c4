"""Shared utilities and helpers."""
from shared.diagnostics import (
    get_store_file_info,
    log_memory_usage,
    log_store_diagnostics,
    log_thread_status,
)

__all__ = [
    'get_store_file_info',
    'log_memory_usage',
    'log_store_diagnostics',
    'log_thread_status',
]
