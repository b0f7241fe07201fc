"""
Rancher Monitoring Orchestration Module

This module turns Rancher state into Prometheus metrics. Each fetcher queries one
domain through RancherClient and writes the result into the metrics it owns in
the MetricRegistry. RancherMonitor runs one wave of fetchers per fast-cycle tick.

Process Flow (fast cycle):
    1. Clear the label vectors whose entities can disappear between cycles
    2. Submit every fetcher to the worker pool
    3. Return immediately; fetchers complete independently and in any order

Process Flow (slow cycle):
    1. Clear latest_rancher_version
    2. Query the GitHub releases API and set the latest version

Failure Handling:
    - A fetcher whose query fails logs the error and writes nothing
    - Scalar gauges therefore keep their previous value during an outage
    - Label vectors already cleared for this cycle stay empty until the next
      successful cycle repopulates them
    - A failing fetcher never affects its siblings or the scheduler

Overlapping Waves:
    Waves are not joined. If Rancher is slower than the fast interval, the next
    wave starts while the previous one is still in flight, and writes to the same
    metric from both waves are last-write-wins. The connectivity pair is written
    under both of its locks, so overlapping waves still leave each cluster 1 in
    exactly one of the two vectors. Setting allow_overlap=False skips a tick
    (reset included) while the previous wave is still running.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait as wait_futures

from .gauges import LABEL_VECTORS_RESET_EACH_CYCLE, Distribution, distribution_gauge_name
from .rancher_client import RancherAPIError

logger = logging.getLogger(__name__)


def get_installed_rancher_version(client, metrics):
    try:
        installed_version = client.get_installed_rancher_version()
    except RancherAPIError as e:
        logger.error(f"error retrieving the installed Rancher version: {e}")
        return
    metrics.set('installed_rancher_version', 1, installed_version)


def get_cluster_connected_state(client, metrics):
    """
    Publish connectivity of every downstream cluster.

    Both sides of a cluster are written as one locked step, the 0 side first.
    Overlapping waves therefore cannot interleave into a 1/1 pair, and a scrape
    landing mid-write sees at most 0/0.
    """
    try:
        state = client.get_cluster_connected_state()
    except RancherAPIError as e:
        logger.error(f"error retrieving cluster connected states: {e}")
        return
    for name, connected in state.items():
        if connected:
            metrics.set_pair('cluster_not_connected', 0, 'cluster_connected', 1, name)
        else:
            metrics.set_pair('cluster_connected', 0, 'cluster_not_connected', 1, name)


def get_number_of_clusters(client, metrics):
    try:
        number_of_clusters = client.get_number_of_managed_clusters()
    except RancherAPIError as e:
        logger.error(f"error retrieving number of managed clusters: {e}")
        return
    metrics.set('managed_cluster_count', number_of_clusters)


def get_distributions(client, metrics):
    """
    Publish the number of managed clusters per distribution.

    Every known distribution is written, 0 when absent from the result. Provider
    names outside the Distribution enum are logged and not published.
    """
    try:
        distributions = client.get_k8s_distributions()
    except RancherAPIError as e:
        logger.error(f"error retrieving cluster k8s distributions: {e}")
        return

    counts = {distribution: 0 for distribution in Distribution}
    for name, count in distributions.items():
        try:
            counts[Distribution.from_name(name)] += count
        except ValueError:
            logger.warning(f"ignoring {count} cluster(s) with unknown distribution '{name}'")

    for distribution, count in counts.items():
        metrics.set(distribution_gauge_name(distribution), count)


def get_number_of_nodes(client, metrics):
    try:
        number_of_nodes = client.get_number_of_managed_nodes()
    except RancherAPIError as e:
        logger.error(f"error retrieving number of managed nodes: {e}")
        return
    metrics.set('managed_node_count', number_of_nodes)


def get_downstream_cluster_versions(client, metrics):
    try:
        downstream_cluster_versions = client.get_downstream_cluster_versions()
    except RancherAPIError as e:
        logger.error(f"error retrieving downstream k8s cluster versions: {e}")
        return
    for cluster in downstream_cluster_versions:
        metrics.set('downstream_cluster_version', 1, cluster.name, cluster.version)


def get_number_of_users(client, metrics):
    try:
        users = client.get_number_of_users()
    except RancherAPIError as e:
        logger.error(f"error retrieving number of users: {e}")
        return
    metrics.set('user_count', users)


def get_number_of_tokens(client, metrics):
    try:
        tokens = client.get_number_of_tokens()
    except RancherAPIError as e:
        logger.error(f"error retrieving number of tokens: {e}")
        return
    metrics.set('token_count', tokens)


def get_number_of_projects(client, metrics):
    try:
        projects = client.get_number_of_projects()
    except RancherAPIError as e:
        logger.error(f"error retrieving number of projects: {e}")
        return
    metrics.set('project_count', projects)


def get_project_labels(client, metrics):
    try:
        project_labels = client.get_project_labels()
    except RancherAPIError as e:
        logger.error(f"error retrieving project labels: {e}")
        return
    for label in project_labels:
        metrics.set('project_labels', 1, label.cluster_name, label.project_id,
                    label.project_display_name, label.key, label.value)


def get_project_annotations(client, metrics):
    try:
        project_annotations = client.get_project_annotations()
    except RancherAPIError as e:
        logger.error(f"error retrieving project annotations: {e}")
        return
    for annotation in project_annotations:
        metrics.set('project_annotations', 1, annotation.cluster_name, annotation.project_id,
                    annotation.project_display_name, annotation.key, annotation.value)


def get_project_resources(client, metrics):
    try:
        project_resources = client.get_project_resource_quota()
    except RancherAPIError as e:
        logger.error(f"error retrieving project resources: {e}")
        return
    for quota in project_resources:
        metrics.set('project_resources', quota.value, quota.cluster_name, quota.project_id,
                    quota.project_display_name, quota.resource_key, quota.resource_type)


def get_rancher_custom_resources(client, metrics):
    # Not part of the per-cycle reset: kinds that disappear keep their last count.
    try:
        resources = client.get_rancher_custom_resource_count()
    except RancherAPIError as e:
        logger.error(f"error retrieving Rancher custom resource counts: {e}")
        return
    for name, count in resources.items():
        metrics.set('rancher_custom_resources', count, name)


FAST_CYCLE_FETCHERS = (
    get_installed_rancher_version,
    get_cluster_connected_state,
    get_number_of_clusters,
    get_distributions,
    get_number_of_nodes,
    get_downstream_cluster_versions,
    get_number_of_tokens,
    get_number_of_users,
    get_number_of_projects,
    get_project_labels,
    get_project_annotations,
    get_project_resources,
    get_rancher_custom_resources,
)


def reset_label_vectors(metrics):
    """Empty every label vector that is fully repopulated by each fast cycle."""
    for name in LABEL_VECTORS_RESET_EACH_CYCLE:
        metrics.clear(name)


def update_latest_rancher_version(client, metrics):
    """Slow-cycle job: replace latest_rancher_version with the current GitHub release."""
    metrics.clear('latest_rancher_version')
    try:
        latest_version = client.get_latest_rancher_version()
    except RancherAPIError as e:
        logger.error(f"error retrieving latest Rancher version: {e}")
        return
    metrics.set('latest_rancher_version', 1, latest_version)
    logger.debug(f"Latest Rancher release is {latest_version}")


class RancherMonitor:
    """Launches fast-cycle waves of fetchers on a shared worker pool."""

    def __init__(self, client, metrics, max_workers=None, allow_overlap=True,
                 fetchers=FAST_CYCLE_FETCHERS):
        self.client = client
        self.metrics = metrics
        self.fetchers = tuple(fetchers)
        self.allow_overlap = allow_overlap
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers or 4 * len(self.fetchers),
            thread_name_prefix='rancher-fetcher',
        )
        self._lock = threading.Lock()
        self._wave = []

    def _run_fetcher(self, fetcher):
        start = time.monotonic()
        try:
            fetcher(self.client, self.metrics)
        except Exception:
            logger.exception(f"{fetcher.__name__} failed unexpectedly")
        logger.debug(f"{fetcher.__name__} metric collection took {time.monotonic() - start:.3f}s")

    def in_flight(self) -> bool:
        """Return True while any fetcher of the latest wave is still running."""
        with self._lock:
            return any(not future.done() for future in self._wave)

    def collect(self):
        """
        Run one fast-cycle tick: reset the label vectors, then launch every fetcher.

        Returns:
            List of futures for the launched wave, or an empty list if the tick
            was skipped because the previous wave is still running
        """
        with self._lock:
            if not self.allow_overlap and any(not f.done() for f in self._wave):
                logger.warning("Previous collection wave still running, skipping this tick")
                return []
            reset_label_vectors(self.metrics)
            logger.info("updating rancher metrics")
            self._wave = [self.executor.submit(self._run_fetcher, fetcher)
                          for fetcher in self.fetchers]
            return list(self._wave)

    def update_latest_version(self):
        update_latest_rancher_version(self.client, self.metrics)

    def wait(self, timeout=None) -> bool:
        """Block until the latest wave completes. Returns False on timeout."""
        with self._lock:
            wave = list(self._wave)
        _, not_done = wait_futures(wave, timeout=timeout)
        return not not_done

    def shutdown(self, wait=False):
        self.executor.shutdown(wait=wait)
