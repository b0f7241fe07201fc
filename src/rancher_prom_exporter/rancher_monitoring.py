"""
Rancher Prometheus Exporter - Main Entry Point

This exporter periodically queries a Rancher installation and republishes its
state (versions, managed clusters and nodes, cluster connectivity, users, tokens,
projects and custom resource counts) as Prometheus metrics.

Monitoring Schedule:
    - Fast cycle (default: every 10 seconds): all Rancher metrics
    - Slow cycle (default: every 60 seconds): latest Rancher release from GitHub,
      polled separately because the GitHub API is rate limited
    - Initial runs of both cycles execute on startup
    - Uses APScheduler for reliable scheduling

The exporter exposes metrics via Prometheus on port 8080 (configurable via METRICS_PORT).

Environment Variables:
    - METRICS_PORT / METRICS_ADDR: Prometheus metrics server port and bind address
    - FAST_INTERVAL_SECONDS / SLOW_INTERVAL_SECONDS: Polling intervals
    - ALLOW_OVERLAP: Allow a new fast wave while the previous one is running (default: true)
    - MAX_WORKERS: Size of the fetcher worker pool
    - KUBECONFIG: Kubeconfig path (default: in-cluster service account)
    - REQUEST_TIMEOUT_SECONDS: Timeout of each Rancher or GitHub request
    - GITHUB_RELEASES_URL / GITHUB_TOKEN: Latest release endpoint and optional token
    - DEBUG: Enable debug logging (set to 'true' to enable, default: false/INFO level)
"""
import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from prometheus_client import start_http_server

from .config import ExporterConfig
from .gauges import MetricRegistry
from .rancher_client import RancherClient
from .rancher_monitor import RancherMonitor

logger = logging.getLogger(__name__)


def configure_logging(debug=False):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def schedule_tasks(scheduler, monitor, exporter_config):
    """
    Schedule the fast and slow polling cycles using APScheduler.

    Args:
        scheduler: APScheduler scheduler instance
        monitor: RancherMonitor running the fetchers
        exporter_config: ExporterConfig with the cycle intervals
    """
    # The fast job only launches a wave and returns, so max_instances=1
    # never prevents fetchers from overlapping.
    scheduler.add_job(
        monitor.collect,
        IntervalTrigger(seconds=exporter_config.fast_interval_seconds),
        id='collect_rancher_metrics',
        replace_existing=True,
        max_instances=1
    )
    scheduler.add_job(
        monitor.update_latest_version,
        IntervalTrigger(seconds=exporter_config.slow_interval_seconds),
        id='update_latest_rancher_version',
        replace_existing=True,
        max_instances=1
    )

    logger.info("Scheduled tasks:")
    logger.info(f"  - Rancher metrics: Every {exporter_config.fast_interval_seconds:g} seconds")
    logger.info(f"  - Latest Rancher release: Every {exporter_config.slow_interval_seconds:g} seconds")


def main():
    """
    Main entry point for the exporter.
    """
    exporter_config = ExporterConfig.from_env()
    configure_logging(exporter_config.debug)
    logger.info("Starting Rancher Prometheus Exporter...")
    logger.info(f"Logging level: {'DEBUG' if exporter_config.debug else 'INFO'}")

    metrics = MetricRegistry()
    client = RancherClient.from_config(exporter_config)
    monitor = RancherMonitor(
        client,
        metrics,
        max_workers=exporter_config.max_workers,
        allow_overlap=exporter_config.allow_overlap,
    )

    start_http_server(exporter_config.metrics_port, addr=exporter_config.metrics_addr,
                      registry=metrics.registry)
    logger.info(f"Prometheus metrics server started on port {exporter_config.metrics_port}")

    scheduler = BlockingScheduler()
    schedule_tasks(scheduler, monitor, exporter_config)

    logger.info("Executing initial monitoring run...")
    monitor.collect()
    monitor.update_latest_version()

    logger.info("Starting scheduler...")
    try:
        scheduler.start()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
        scheduler.shutdown()
        logger.info("Scheduler stopped")
    finally:
        monitor.shutdown()


if __name__ == "__main__":
    main()
