#!/usr/bin/env python3
"""Pretty-print CentralizedLogger JSON lines with colors and filters.

Usage:
    tail -f logs/application-2024-05-01.log | python scripts/format_logs.py
    python scripts/format_logs.py --level WARN --category access < logs/access-2024-05-01.log
"""

import argparse
import json
import sys
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

LEVEL_ORDER = {'ERROR': 0, 'WARN': 1, 'INFO': 2, 'DEBUG': 3}


# ANSI color codes
class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'

    WHITE = '\033[37m'
    BRIGHT_RED = '\033[91m'
    BRIGHT_GREEN = '\033[92m'
    BRIGHT_YELLOW = '\033[93m'
    BRIGHT_BLUE = '\033[94m'
    BRIGHT_MAGENTA = '\033[95m'
    BRIGHT_CYAN = '\033[96m'

    BG_RED = '\033[41m'


def format_timestamp(timestamp_str: str) -> str:
    """Format ISO timestamp to readable format."""
    try:
        dt = datetime.fromisoformat(timestamp_str.replace('Z', '+00:00'))
    except ValueError:
        return f'{Colors.DIM}{timestamp_str}{Colors.RESET}'
    return f"{Colors.DIM}{dt.strftime('%Y-%m-%d %H:%M:%S')}{Colors.RESET}"


def get_level_color(level: str) -> str:
    level = level.upper()
    if level == 'ERROR':
        return f'{Colors.BG_RED}{Colors.WHITE}{Colors.BOLD}'
    if level in ('WARN', 'WARNING'):
        return f'{Colors.BRIGHT_YELLOW}{Colors.BOLD}'
    if level == 'INFO':
        return Colors.BRIGHT_CYAN
    return Colors.DIM


def status_color(status: int) -> str:
    if 200 <= status < 300:
        return Colors.BRIGHT_GREEN
    if 400 <= status < 500:
        return Colors.BRIGHT_YELLOW
    return Colors.BRIGHT_RED


def duration_color(duration_ms: float) -> str:
    if duration_ms < 100:
        return Colors.BRIGHT_GREEN
    if duration_ms < 1000:
        return Colors.BRIGHT_YELLOW
    return Colors.BRIGHT_RED


def matches(entry: Dict[str, Any], level: Optional[str], category: Optional[str], correlation_id: Optional[str]) -> bool:
    """Whether an entry passes the command line filters.

    The level filter keeps entries at or above the given severity.
    """
    if level is not None:
        entry_level = str(entry.get('level', '')).upper().replace('WARNING', 'WARN')
        if LEVEL_ORDER.get(entry_level, len(LEVEL_ORDER)) > LEVEL_ORDER[level]:
            return False
    if category is not None and entry.get('category') != category:
        return False
    if correlation_id is not None and entry.get('correlation_id') != correlation_id:
        return False
    return True


def format_entry(entry: Dict[str, Any]) -> str:
    """Format a single log entry with colors."""
    parts = []
    if 'timestamp' in entry:
        parts.append(format_timestamp(str(entry['timestamp'])))
    if 'level' in entry:
        level = str(entry['level'])
        parts.append(f'{get_level_color(level)}{level:5s}{Colors.RESET}')
    if 'category' in entry:
        parts.append(f"{Colors.BRIGHT_BLUE}[{entry['category']}]{Colors.RESET}")
    parts.append(str(entry.get('message', '')))
    main_line = ' │ '.join(parts)

    context = []
    if entry.get('correlation_id'):
        context.append(f"{Colors.DIM}correlation_id:{Colors.RESET} {entry['correlation_id']}")

    metadata = entry.get('metadata') or {}
    for key, value in metadata.items():
        if key in ('statusCode', 'status_code') and isinstance(value, int):
            context.append(f'{Colors.DIM}{key}:{Colors.RESET} {status_color(value)}{value}{Colors.RESET}')
        elif key in ('responseTime', 'duration_ms', 'duration') and isinstance(value, (int, float)):
            context.append(f'{Colors.DIM}{key}:{Colors.RESET} {duration_color(value)}{value}ms{Colors.RESET}')
        elif key in ('method',):
            context.append(f'{Colors.DIM}{key}:{Colors.RESET} {Colors.BOLD}{Colors.BRIGHT_MAGENTA}{value}{Colors.RESET}')
        else:
            # Don't show super long values
            str_value = str(value)
            if len(str_value) > 100:
                str_value = str_value[:97] + '...'
            context.append(f'{Colors.DIM}{key}:{Colors.RESET} {str_value}')

    if not context:
        return main_line
    return main_line + f'\n  {Colors.DIM}↳{Colors.RESET} ' + f' {Colors.DIM}•{Colors.RESET} '.join(context)


def format_lines(
    lines: Iterable[str],
    level: Optional[str] = None,
    category: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Iterable[str]:
    """Format log lines, dropping filtered entries.

    Lines that are not JSON objects pass through dimmed unless a filter is active.
    """
    filtering = any(value is not None for value in (level, category, correlation_id))
    for line in lines:
        line = line.rstrip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            entry = None
        if not isinstance(entry, dict):
            if not filtering:
                yield f'{Colors.DIM}{line}{Colors.RESET}'
            continue
        if matches(entry, level, category, correlation_id):
            yield format_entry(entry)


def main():
    """Main entry point - read from stdin and format output."""
    parser = argparse.ArgumentParser(description='Format structured log lines')
    parser.add_argument('--level', type=str.upper, choices=list(LEVEL_ORDER), help='Minimum severity to show')
    parser.add_argument('--category', help='Only show this category (application, error, access, ...)')
    parser.add_argument('--correlation-id', help='Only show entries of one request or job')
    args = parser.parse_args()

    sys.stdout.reconfigure(line_buffering=True)
    try:
        for formatted in format_lines(sys.stdin, args.level, args.category, args.correlation_id):
            print(formatted, flush=True)
    except KeyboardInterrupt:
        pass
    except BrokenPipeError:
        # Handle graceful shutdown when pipe is closed
        sys.stderr.close()


if __name__ == '__main__':
    main()
