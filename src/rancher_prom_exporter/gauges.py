"""
Prometheus Metrics Definitions Module - Rancher Exporter

This module defines every Prometheus gauge published by the Rancher exporter and
the MetricRegistry that owns them. A single MetricRegistry is created at process
start and handed to every fetcher; there are no module-level gauges, so tests and
multiple exporters in one process never collide on the default registry.

Metrics:
    - installed_rancher_version: Version of the installed Rancher instance
        Labels: version
        Values: Always 1 for the current version

    - latest_rancher_version: Version of the most recent Rancher release
        Labels: version
        Values: Always 1 for the latest version

    - rancher_managed_clusters / rancher_managed_nodes: Managed inventory counts

    - rancher_managed_{rke,rke2,k3s,eks,aks,gke}_clusters: Managed clusters per distribution

    - cluster_connected / cluster_not_connected: Downstream cluster connectivity
        Labels: Name
        Values: Exactly one of the pair is 1 for each cluster, the other is 0

    - cluster_k8s_version: Kubernetes version of each downstream cluster
        Labels: Name, Version
        Values: Always 1

    - rancher_users / rancher_tokens / rancher_projects: Global object counts

    - rancher_project_labels / rancher_project_annotations: Project metadata
        Labels: cluster_name, project_id, project_display_name, key, value
        Values: Always 1

    - rancher_project_resourcequota: Resource quota limits set on projects
        Labels: cluster_name, project_id, project_display_name,
                project_resource_key, project_resource_type
        Values: Quota value

    - rancher_custom_resource_count: Raw count of Rancher custom resources
        Labels: resource_name
        Values: Number of objects of that kind

Thread Safety:
    Each metric has its own lock. Writes to different metrics never contend,
    and a clear() on a label vector can never interleave with a set() on the
    same vector.
"""
import logging
import threading
from enum import Enum
from typing import Dict, Optional, Tuple

from prometheus_client import CollectorRegistry, Gauge

logger = logging.getLogger(__name__)


class Distribution(Enum):
    """Kubernetes distributions Rancher reports a dedicated cluster count for."""

    RKE = 'rke'
    RKE2 = 'rke2'
    K3S = 'k3s'
    EKS = 'eks'
    AKS = 'aks'
    GKE = 'gke'

    @classmethod
    def from_name(cls, name: str) -> 'Distribution':
        """
        Resolve a provider name reported by Rancher.

        Raises:
            ValueError: If the name is not one of the known distributions
        """
        return cls(name.strip().lower())


# Label vectors whose entity set can shrink between cycles. These are emptied
# before every fast-cycle wave. rancher_custom_resource_count is left out so a
# resource kind keeps its last count even after it disappears.
LABEL_VECTORS_RESET_EACH_CYCLE = (
    'installed_rancher_version',
    'cluster_connected',
    'cluster_not_connected',
    'downstream_cluster_version',
    'project_labels',
    'project_annotations',
    'project_resources',
)

_DISTRIBUTION_GAUGES = {
    Distribution.RKE: 'managed_rke_cluster_count',
    Distribution.RKE2: 'managed_rke2_cluster_count',
    Distribution.K3S: 'managed_k3s_cluster_count',
    Distribution.EKS: 'managed_eks_cluster_count',
    Distribution.AKS: 'managed_aks_cluster_count',
    Distribution.GKE: 'managed_gke_cluster_count',
}

_PROJECT_LABELS = ('cluster_name', 'project_id', 'project_display_name')


def distribution_gauge_name(distribution: Distribution) -> str:
    """Return the registry name of the scalar gauge counting clusters of a distribution."""
    return _DISTRIBUTION_GAUGES[distribution]


class MetricRegistry:
    """
    Owner of every metric published by the exporter.

    Metrics are addressed by their attribute name (e.g. 'managed_node_count'),
    not by their exposition name. All scalars start at 0 and all label vectors
    start empty.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Gauge] = {}
        self._labelnames: Dict[str, Tuple[str, ...]] = {}
        self._locks: Dict[str, threading.Lock] = {}

        self._vector('installed_rancher_version', 'installed_rancher_version',
                     'version of the installed Rancher instance', ('version',))
        self._vector('latest_rancher_version', 'latest_rancher_version',
                     'version of the most recent Rancher release', ('version',))

        self._scalar('managed_cluster_count', 'rancher_managed_clusters',
                     'number of clusters this Rancher instance is currently managing')
        for distribution, name in _DISTRIBUTION_GAUGES.items():
            self._scalar(name, f'rancher_managed_{distribution.value}_clusters',
                         f'number of {distribution.name} clusters this Rancher instance '
                         f'is currently managing')
        self._scalar('managed_node_count', 'rancher_managed_nodes',
                     'number of managed nodes this Rancher instance is currently managing')

        # Cluster level metrics
        self._vector('cluster_connected', 'cluster_connected',
                     'identify if a downstream cluster is connected to Rancher', ('Name',))
        self._vector('cluster_not_connected', 'cluster_not_connected',
                     'identify if a downstream cluster is not connected to Rancher', ('Name',))
        self._vector('downstream_cluster_version', 'cluster_k8s_version',
                     'version of K8s running in the downstream cluster', ('Name', 'Version'))

        # User related
        self._scalar('token_count', 'rancher_tokens', 'number of tokens issued by Rancher')
        self._scalar('user_count', 'rancher_users', 'number of users in this Rancher instance')

        # Project related
        self._scalar('project_count', 'rancher_projects', 'number of Projects globally')
        self._vector('project_labels', 'rancher_project_labels',
                     'labels associated with Rancher Projects',
                     _PROJECT_LABELS + ('project_label_key', 'project_label_value'))
        self._vector('project_annotations', 'rancher_project_annotations',
                     'annotations associated with Rancher Projects',
                     _PROJECT_LABELS + ('project_annotation_key', 'project_annotation_value'))
        self._vector('project_resources', 'rancher_project_resourcequota',
                     'resource quota limits set for the project',
                     _PROJECT_LABELS + ('project_resource_key', 'project_resource_type'))

        # Extended metrics for Rancher custom resources
        self._vector('rancher_custom_resources', 'rancher_custom_resource_count',
                     'raw count of Rancher custom resources by name', ('resource_name',))

        logger.debug(f"Registered {len(self._metrics)} metrics")

    def _scalar(self, key, name, documentation):
        gauge = Gauge(name, documentation, registry=self.registry)
        gauge.set(0)
        self._register(key, gauge, ())

    def _vector(self, key, name, documentation, labelnames):
        gauge = Gauge(name, documentation, labelnames, registry=self.registry)
        self._register(key, gauge, tuple(labelnames))

    def _register(self, key, gauge, labelnames):
        self._metrics[key] = gauge
        self._labelnames[key] = labelnames
        self._locks[key] = threading.Lock()

    def names(self):
        """Return the registry names of all metrics."""
        return list(self._metrics)

    def is_vector(self, name: str) -> bool:
        """Return True if the metric is a label vector, False for a scalar gauge."""
        return bool(self._labelnames[name])

    def _check_labels(self, name, label_values):
        labelnames = self._labelnames[name]
        if len(label_values) != len(labelnames):
            raise ValueError(
                f"{name} expects {len(labelnames)} label value(s), got {len(label_values)}"
            )

    def _write(self, name, value, label_values):
        gauge = self._metrics[name]
        if self._labelnames[name]:
            gauge.labels(*[str(v) for v in label_values]).set(value)
        else:
            gauge.set(value)

    def set(self, name: str, value: float, *label_values: str) -> None:
        """
        Set a scalar gauge, or one label tuple of a label vector.

        Args:
            name: Registry name of the metric
            value: New value
            *label_values: Label values in declaration order (none for scalars)

        Raises:
            KeyError: If the metric does not exist
            ValueError: If the number of label values does not match the metric
        """
        self._check_labels(name, label_values)
        with self._locks[name]:
            self._write(name, value, label_values)

    def set_pair(self, first: str, first_value: float, second: str, second_value: float,
                 *label_values: str) -> None:
        """
        Set the same label tuple in two metrics as one step.

        Both metric locks are held for the whole write, taken in name order, so
        two writers of the same pair never interleave. Values are written in
        argument order; the exposition endpoint reads without these locks and
        may observe the first write before the second.

        Raises:
            KeyError: If either metric does not exist
            ValueError: If the metrics are the same or the label count does not match
        """
        if first == second:
            raise ValueError(f"set_pair needs two distinct metrics, got {first} twice")
        self._check_labels(first, label_values)
        self._check_labels(second, label_values)
        low, high = sorted((first, second))
        with self._locks[low], self._locks[high]:
            self._write(first, first_value, label_values)
            self._write(second, second_value, label_values)

    def clear(self, name: str) -> None:
        """Remove every label tuple from a label vector."""
        if not self.is_vector(name):
            raise ValueError(f"{name} is a scalar gauge and cannot be cleared")
        with self._locks[name]:
            self._metrics[name].clear()

    def samples(self, name: str) -> Dict[Tuple[str, ...], float]:
        """
        Return the current values of a metric keyed by label tuple.

        Scalars are returned as {(): value}.
        """
        labelnames = self._labelnames[name]
        with self._locks[name]:
            collected = self._metrics[name].collect()
        values = {}
        for metric in collected:
            for sample in metric.samples:
                values[tuple(sample.labels[label] for label in labelnames)] = sample.value
        return values

    def value(self, name: str, *label_values: str):
        """Return the value of one scalar or label tuple, or None if it is not set."""
        return self.samples(name).get(tuple(label_values))
