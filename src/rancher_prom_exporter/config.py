"""Runtime configuration for the Rancher exporter, read from environment variables."""
import os
from dataclasses import dataclass
from typing import Optional

from .rancher_client import RANCHER_RELEASES_URL

_TRUE_VALUES = ('true', '1', 'yes', 'on')


def _get_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {name}: {value}") from exc


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid number for {name}: {value}") from exc


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


@dataclass
class ExporterConfig:
    """Settings for the metrics server, the polling loops and the Rancher client."""

    metrics_port: int = 8080
    metrics_addr: str = '0.0.0.0'
    fast_interval_seconds: float = 10.0
    slow_interval_seconds: float = 60.0
    allow_overlap: bool = True
    max_workers: Optional[int] = None
    kubeconfig: Optional[str] = None
    request_timeout_seconds: float = 15.0
    github_releases_url: str = RANCHER_RELEASES_URL
    github_token: Optional[str] = None
    debug: bool = False

    @classmethod
    def from_env(cls) -> 'ExporterConfig':
        """
        Load configuration from environment variables.

        Raises:
            ValueError: If a numeric variable cannot be parsed or an interval is not positive
        """
        exporter_config = cls(
            metrics_port=_get_int('METRICS_PORT', 8080),
            metrics_addr=os.getenv('METRICS_ADDR', '0.0.0.0'),
            fast_interval_seconds=_get_float('FAST_INTERVAL_SECONDS', 10.0),
            slow_interval_seconds=_get_float('SLOW_INTERVAL_SECONDS', 60.0),
            allow_overlap=_get_bool('ALLOW_OVERLAP', True),
            max_workers=_get_int('MAX_WORKERS', None),
            kubeconfig=os.getenv('KUBECONFIG') or None,
            request_timeout_seconds=_get_float('REQUEST_TIMEOUT_SECONDS', 15.0),
            github_releases_url=os.getenv('GITHUB_RELEASES_URL', RANCHER_RELEASES_URL),
            github_token=os.getenv('GITHUB_TOKEN') or None,
            debug=_get_bool('DEBUG', False),
        )
        if exporter_config.fast_interval_seconds <= 0 or exporter_config.slow_interval_seconds <= 0:
            raise ValueError("Polling intervals must be positive")
        return exporter_config
