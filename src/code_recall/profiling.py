"""Opt-in pyinstrument profiling of the async indexing and search paths.

Operations decorated with @profile_async ("detect_changes", "index",
"hybrid_search") keep a text report of each call that was slower than the
configured threshold, so slow searches and index cycles can be inspected
after the fact without profiling every fast call.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import wraps
from pathlib import Path
from typing import ParamSpec, TypeVar

import structlog

log = structlog.get_logger()

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class ProfilingConfig:
    enabled: bool = False
    reports_dir: Path = Path("profiles")
    threshold_ms: float = 0.0


# Replaced wholesale by configure_profiling(); read once per decorated call
_config = ProfilingConfig()


def configure_profiling(
    enabled: bool, reports_dir: Path | None = None, threshold_ms: float = 0.0
) -> None:
    """Turn profiling of decorated operations on or off.

    Args:
        enabled: Whether decorated operations are profiled.
        reports_dir: Where text reports go. Defaults to ./profiles.
        threshold_ms: Calls faster than this leave no report.
    """
    global _config
    _config = ProfilingConfig(
        enabled=enabled,
        reports_dir=reports_dir or Path("profiles"),
        threshold_ms=threshold_ms,
    )
    if enabled:
        _config.reports_dir.mkdir(parents=True, exist_ok=True)
        log.info(
            "profiling_enabled", reports_dir=str(_config.reports_dir), threshold_ms=threshold_ms
        )


def is_profiling_enabled() -> bool:
    return _config.enabled


def profile_async(
    operation: str,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Profile an async operation when profiling is enabled.

    Args:
        operation: Operation name, used as the report file prefix.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            config = _config
            if not config.enabled:
                return await func(*args, **kwargs)

            from pyinstrument import Profiler  # noqa: PLC0415

            profiler = Profiler(async_mode="enabled")
            start = time.perf_counter()
            profiler.start()
            try:
                return await func(*args, **kwargs)
            finally:
                profiler.stop()
                elapsed_ms = (time.perf_counter() - start) * 1000
                if elapsed_ms >= config.threshold_ms:
                    _write_report(config, profiler, operation, elapsed_ms)

        return wrapper

    return decorator


def _write_report(config: ProfilingConfig, profiler, operation: str, elapsed_ms: float) -> Path:
    timestamp = datetime.now(tz=UTC).strftime("%Y%m%d_%H%M%S_%f")
    report_path = config.reports_dir / f"{operation}_{timestamp}.txt"
    report_path.write_text(profiler.output_text(unicode=True, color=False))
    log.debug(
        "operation_profiled",
        operation=operation,
        duration_ms=round(elapsed_ms, 1),
        report=str(report_path),
    )
    return report_path
