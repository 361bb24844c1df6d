"""
Utilities for the Election System
Logging setup, stage timing with resource sampling, and result reports
"""

import json
import logging
import platform
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import psutil

logger = logging.getLogger(__name__)


@dataclass
class PerformanceMetrics:
    operation: str
    duration_seconds: float
    cpu_percent: float
    memory_mb: float
    timestamp: float
    additional_data: Dict[str, Any] = field(default_factory=dict)


def setup_logging(log_level: str = "INFO", log_file: Optional[Path] = None):
    """Configure the root logger with a file and a console handler"""
    if log_file is None:
        log_file = Path("logs") / \
            f"election_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Clear existing handlers to avoid duplicates
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )

    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logger.info(f"Logging initialized. Log file: {log_file}")
    return logger


class PerformanceMonitor:
    """Collects one PerformanceMetrics entry per timed election stage"""

    def __init__(self):
        self.metrics: List[PerformanceMetrics] = []
        self.process = psutil.Process()

    def start_operation(self, operation_name: str, **additional_data) -> 'OperationContext':
        return OperationContext(self, operation_name, additional_data)

    def record_metric(self, metric: PerformanceMetrics):
        self.metrics.append(metric)

    def get_summary(self) -> Dict[str, Any]:
        """Per-stage statistics; stages appear in the order they first ran"""
        stages: Dict[str, List[PerformanceMetrics]] = {}
        for metric in self.metrics:
            stages.setdefault(metric.operation, []).append(metric)

        operations = {}
        for stage, entries in stages.items():
            durations = np.array([entry.duration_seconds for entry in entries])
            memory = np.array([entry.memory_mb for entry in entries])
            cpu = np.array([entry.cpu_percent for entry in entries])
            stage_total = float(durations.sum())
            operations[stage] = {
                'count': len(entries),
                'failures': sum(1 for entry in entries if entry.additional_data.get('exception')),
                'total_duration': stage_total,
                'avg_duration': float(durations.mean()),
                'p95_duration': float(np.percentile(durations, 95)),
                'max_duration': float(durations.max()),
                'avg_cpu_percent': float(cpu[cpu > 0].mean()) if (cpu > 0).any() else 0.0,
                'peak_memory_mb': float(memory.max()),
                'throughput_ops_per_sec': len(entries) / stage_total if stage_total > 0 else 0.0,
            }

        return {
            'total_operations': len(self.metrics),
            'total_duration': sum(stage['total_duration'] for stage in operations.values()),
            'operations': operations,
        }

    def save_metrics(self, filepath: Path):
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        metrics_data = {
            'metrics': [asdict(m) for m in self.metrics],
            'summary': self.get_summary(),
            'system_info': get_system_info(),
            'timestamp': datetime.now().isoformat()
        }

        with open(filepath, 'w') as f:
            json.dump(metrics_data, f, indent=2, default=str)

    def reset(self):
        self.metrics.clear()


class OperationContext:
    """Context manager timing one stage and sampling CPU and RSS"""

    def __init__(self, monitor: PerformanceMonitor, operation_name: str,
                 additional_data: Optional[Dict[str, Any]] = None):
        self.monitor = monitor
        self.operation_name = operation_name
        self.additional_data = dict(additional_data or {})
        self.start_time = 0.0
        self.start_cpu = 0.0
        self.start_memory = 0.0
        self._start_counter = 0.0

    def _sample(self):
        try:
            return (
                self.monitor.process.cpu_percent(),
                self.monitor.process.memory_info().rss / 1024 / 1024,
            )
        except psutil.Error as e:
            logger.debug(f"Performance monitoring error: {e}")
            return 0.0, 0.0

    def __enter__(self):
        self.start_time = time.time()
        self._start_counter = time.perf_counter()
        self.start_cpu, self.start_memory = self._sample()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.perf_counter() - self._start_counter
        end_cpu, end_memory = self._sample()

        self.additional_data['exception'] = exc_type is not None
        metric = PerformanceMetrics(
            operation=self.operation_name,
            duration_seconds=duration,
            cpu_percent=(self.start_cpu + end_cpu) /
            2 if self.start_cpu > 0 and end_cpu > 0 else end_cpu,
            memory_mb=max(self.start_memory, end_memory),
            timestamp=self.start_time,
            additional_data=self.additional_data
        )
        self.monitor.record_metric(metric)

        if exc_type is None:
            logger.debug(f"{self.operation_name} took {format_duration(duration)}")
        return False


def get_system_info() -> Dict[str, Any]:
    """Host description stored next to results so timings can be compared"""
    info: Dict[str, Any] = {
        'platform': platform.platform(),
        'python_version': platform.python_version(),
        'cpu_count': psutil.cpu_count(logical=True),
        'collected_at': datetime.now().isoformat(),
    }
    try:
        info['total_memory_gb'] = round(psutil.virtual_memory().total / 1024 ** 3, 2)
        info['load_average'] = list(psutil.getloadavg())
    except (psutil.Error, OSError) as e:
        logger.debug(f"System info unavailable: {e}")
    return info


def to_serializable(obj: Any) -> Any:
    """Convert election records, group elements and numpy values to JSON types"""
    if isinstance(obj, (np.integer, np.floating)):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if hasattr(obj, 'to_bytes') and not isinstance(obj, int):
        return obj.to_bytes().hex()
    if isinstance(obj, Enum):
        return obj.value
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f: to_serializable(getattr(obj, f)) for f in obj.__dataclass_fields__}
    if isinstance(obj, dict):
        return {str(k): to_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_serializable(item) for item in obj]
    if isinstance(obj, bytes):
        return obj.hex()
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    return obj


def save_results(results: Dict[str, Any], filepath: Path):
    """Write results as JSON plus a human-readable summary beside it"""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    enhanced_results = {
        'metadata': {
            'generated_at': datetime.now().isoformat(),
            'system_info': get_system_info(),
            'file_path': str(filepath)
        },
        'data': to_serializable(results)
    }

    with open(filepath, 'w') as f:
        json.dump(enhanced_results, f, indent=2, default=str)

    summary_path = filepath.parent / f"{filepath.stem}_summary.txt"
    with open(summary_path, 'w') as f:
        f.write(create_results_summary(results))

    logger.info(f"Results saved to {filepath}")
    logger.info(f"Summary saved to {summary_path}")


def create_results_summary(results: Dict[str, Any]) -> str:
    summary = []
    summary.append("=" * 80)
    summary.append("VERIFIABLE ELECTION - RESULTS SUMMARY")
    summary.append("=" * 80)
    summary.append(
        f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    summary.append("")

    if 'election' in results:
        summary.append("ELECTION:")
        for key, value in results['election'].items():
            summary.append(f"  {key}: {value}")
        summary.append("")

    if 'tally' in results and results['tally']:
        summary.append("ELECTION TALLY:")
        for contest_id, counts in results['tally'].items():
            total_votes = sum(counts.values())
            summary.append(f"  {contest_id}:")
            for choice_id, count in counts.items():
                percentage = (count / total_votes * 100) if total_votes > 0 else 0
                summary.append(f"    {choice_id}: {count} votes ({percentage:.1f}%)")
            summary.append(f"    Total Votes: {total_votes}")
        summary.append("")

    if 'verification' in results:
        summary.append("VERIFICATION:")
        for check, passed in results['verification'].items():
            status = "PASSED" if passed else "FAILED"
            summary.append(f"  {check}: {status}")
        summary.append("")

    if 'performance_metrics' in results:
        summary.append("PERFORMANCE METRICS:")
        for metric, value in results['performance_metrics'].items():
            if isinstance(value, float):
                summary.append(f"  {metric}: {value:.4f}")
            else:
                summary.append(f"  {metric}: {value}")
        summary.append("")

    summary.append("=" * 80)
    return "\n".join(summary)


def create_performance_report(monitor: PerformanceMonitor) -> str:
    """Fixed-width table with one row per election stage"""
    summary = monitor.get_summary()
    lines = [
        "=" * 80,
        "VERIFIABLE ELECTION - PERFORMANCE REPORT",
        "=" * 80,
        f"{summary['total_operations']} timed operations, "
        f"{format_duration(summary['total_duration'])} in total",
        "",
    ]

    if not summary['operations']:
        lines.append("No stages were timed.")
    else:
        lines.append(f"{'stage':<30}{'runs':>6}{'total':>12}{'mean':>12}{'p95':>12}{'peak mem':>10}")
        lines.append("-" * 82)
        for stage, stats in summary['operations'].items():
            lines.append(
                f"{stage:<30}{stats['count']:>6}"
                f"{format_duration(stats['total_duration']):>12}"
                f"{format_duration(stats['avg_duration']):>12}"
                f"{format_duration(stats['p95_duration']):>12}"
                f"{format_bytes(stats['peak_memory_mb'] * 1024 * 1024):>10}")
            if stats['failures']:
                lines.append(f"  {stats['failures']} of {stats['count']} runs raised")

    lines.append("=" * 80)
    return "\n".join(lines)


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds*1000:.1f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = seconds % 60
        return f"{minutes}m {secs:.1f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {minutes}m {secs:.1f}s"


def format_bytes(bytes_value: float) -> str:
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_value < 1024.0:
            return f"{bytes_value:.1f}{unit}"
        bytes_value /= 1024.0
    return f"{bytes_value:.1f}PB"


__all__ = [
    'PerformanceMetrics',
    'PerformanceMonitor',
    'OperationContext',
    'setup_logging',
    'get_system_info',
    'to_serializable',
    'save_results',
    'create_results_summary',
    'create_performance_report',
    'format_duration',
    'format_bytes',
]
