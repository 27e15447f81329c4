"""
Diagnostic utilities.

This module reports process memory usage and the on-disk footprint of tile
stores, for long-running exports and imports.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Any

import psutil

logger = logging.getLogger(__name__)


def get_memory_info() -> dict[str, Any]:
    """Get comprehensive memory usage information."""
    try:
        process = psutil.Process()
        memory_info = process.memory_info()
        system_memory = psutil.virtual_memory()

        return {
            'process_rss_mb': round(memory_info.rss / 1024 / 1024, 2),
            'process_vms_mb': round(memory_info.vms / 1024 / 1024, 2),
            'system_total_mb': round(system_memory.total / 1024 / 1024, 2),
            'system_available_mb': round(
                system_memory.available / 1024 / 1024,
                2,
            ),
            'system_used_percent': system_memory.percent,
            'process_memory_percent': round(process.memory_percent(), 2),
        }
    except psutil.Error as e:
        return {'error': f'Failed to get memory info: {e}'}


def get_thread_info() -> dict[str, Any]:
    """Get information about active threads."""
    info: dict[str, Any] = {
        'active_count': threading.active_count(),
        'thread_names': [t.name for t in threading.enumerate()],
    }
    try:
        info['system_threads'] = psutil.Process().num_threads()
    except psutil.Error as e:
        logger.debug('Failed to get system thread count: %s', e)
    return info


def get_store_file_info(path: str | Path) -> dict[str, Any]:
    """Get size and modification time of the files of a tile store directory.

    Args:
        path: Store directory.

    Returns:
        Dict with the directory, per-file entries and the total size in MB.
        A missing directory yields an empty file list.
    """
    store_dir = Path(path)
    files = []
    total_bytes = 0
    if store_dir.is_dir():
        for entry in sorted(store_dir.iterdir()):
            if not entry.is_file():
                continue
            stat = entry.stat()
            total_bytes += stat.st_size
            files.append(
                {
                    'file': entry.name,
                    'size_mb': round(stat.st_size / 1024 / 1024, 2),
                    'modified': time.ctime(stat.st_mtime),
                },
            )
    return {
        'store_dir': str(store_dir),
        'files': files,
        'total_files': len(files),
        'total_size_mb': round(total_bytes / 1024 / 1024, 2),
    }


def log_memory_usage(context: str = '') -> None:
    """Quick memory usage logging."""
    memory_info = get_memory_info()
    context_label = f' ({context})' if context else ''
    logger.info(
        'Memory usage%s: RSS=%sMB, Available=%sMB',
        context_label,
        memory_info.get('process_rss_mb', 'N/A'),
        memory_info.get('system_available_mb', 'N/A'),
    )


def log_thread_status(context: str = '') -> None:
    """Quick thread status logging."""
    thread_info = get_thread_info()
    context_label = f' ({context})' if context else ''
    logger.info(
        'Thread status%s: Active=%s, System=%s',
        context_label,
        thread_info.get('active_count', 'N/A'),
        thread_info.get('system_threads', 'N/A'),
    )


def log_store_diagnostics(path: str | Path, level: int = logging.INFO) -> None:
    """Log memory, thread and file information for one tile store."""
    logger.log(level, '=== DIAGNOSTIC INFO: %s ===', path)

    memory_info = get_memory_info()
    logger.log(
        level,
        'Memory - RSS: %sMB, VMS: %sMB, System Available: %sMB (%s%% used)',
        memory_info.get('process_rss_mb', 'N/A'),
        memory_info.get('process_vms_mb', 'N/A'),
        memory_info.get('system_available_mb', 'N/A'),
        memory_info.get('system_used_percent', 'N/A'),
    )

    thread_info = get_thread_info()
    logger.log(
        level,
        'Threads - Active: %s, System: %s',
        thread_info.get('active_count', 'N/A'),
        thread_info.get('system_threads', 'N/A'),
    )

    store_info = get_store_file_info(path)
    logger.log(
        level,
        'Store - Files: %s, Size: %sMB',
        store_info['total_files'],
        store_info['total_size_mb'],
    )

    logger.log(level, '=== END DIAGNOSTIC INFO: %s ===', path)
