"""
Rancher Query Module

This module provides RancherClient, the read-only view of a Rancher installation
used by the fetchers. Rancher stores its state as Kubernetes custom resources in
the local (upstream) cluster, so almost every query is a list or get against the
Kubernetes API. The latest available Rancher release is read from the GitHub
releases API, which is rate limited and therefore polled on a slower interval.

Data Sources:
    - management.cattle.io/v3 settings, clusters, nodes, users, tokens, projects
    - apiextensions.k8s.io/v1 CustomResourceDefinitions (for cattle.io CR counts)
    - https://api.github.com/repos/rancher/rancher/releases/latest

Error Handling:
    - Every failure (Kubernetes API errors, network errors, HTTP errors, malformed
      payloads) is raised as RancherAPIError naming the failed operation
    - GitHub requests use a retry session: 3 attempts, exponential backoff
      (0.5s base factor), retried on connect/read timeouts and 5xx codes
    - Kubernetes list calls are paged with limit/continue

Thread Safety:
    A single RancherClient is shared by all fetchers. The Kubernetes ApiClient is
    backed by a urllib3 pool manager and may be used concurrently.
"""
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional

import requests
import urllib3
from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.utils import parse_quantity
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .models import (DownstreamClusterVersion, ProjectAnnotation, ProjectLabel,
                     ProjectResourceQuota)

logger = logging.getLogger(__name__)

MANAGEMENT_GROUP = 'management.cattle.io'
MANAGEMENT_VERSION = 'v3'
RANCHER_RELEASES_URL = 'https://api.github.com/repos/rancher/rancher/releases/latest'
PROVIDER_LABEL = 'provider.cattle.io'
CUSTOM_RESOURCE_GROUP_SUFFIX = 'cattle.io'


class RancherAPIError(Exception):
    """Raised when a query against Rancher or GitHub fails."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


def create_retry_session(retries=3, backoff_factor=0.5, status_forcelist=(500, 502, 503, 504)):
    """
    Create a requests session with retry logic.

    Args:
        retries: Number of retry attempts (default: 3)
        backoff_factor: Backoff factor for exponential delay between retries (default: 0.5)
        status_forcelist: HTTP status codes to retry on (default: 500, 502, 503, 504)

    Returns:
        requests.Session object configured with retry adapter
    """
    session = requests.Session()
    retry_strategy = Retry(
        total=retries,
        read=retries,
        connect=retries,
        backoff_factor=backoff_factor,
        status_forcelist=status_forcelist,
        allowed_methods=["GET", "HEAD", "OPTIONS"]
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def load_api_client(kubeconfig_path=None) -> client.ApiClient:
    """
    Build a Kubernetes ApiClient for the cluster Rancher runs in.

    Uses the given kubeconfig if provided, otherwise the in-cluster service
    account, falling back to the default kubeconfig when not running in a pod.
    """
    configuration = client.Configuration()
    if kubeconfig_path:
        config.load_kube_config(config_file=kubeconfig_path, client_configuration=configuration)
        logger.info(f"Using Kubernetes configuration from {kubeconfig_path}")
    else:
        try:
            config.load_incluster_config(client_configuration=configuration)
            logger.info("Using in-cluster Kubernetes configuration")
        except config.ConfigException:
            config.load_kube_config(client_configuration=configuration)
            logger.info("Using local Kubernetes configuration")
    return client.ApiClient(configuration)


@contextmanager
def _api_call(operation):
    """Translate any backend failure inside the block into RancherAPIError."""
    try:
        yield
    except ApiException as e:
        raise RancherAPIError(operation, f"Kubernetes API returned {e.status} ({e.reason})") from e
    except requests.RequestException as e:
        raise RancherAPIError(operation, f"request failed: {e}") from e
    except urllib3.exceptions.HTTPError as e:
        raise RancherAPIError(operation, f"connection failed: {e}") from e
    except (KeyError, TypeError, ValueError, ArithmeticError) as e:
        raise RancherAPIError(operation, f"unexpected response: {e!r}") from e


def _display_name(obj):
    return obj.get('spec', {}).get('displayName') or obj['metadata']['name']


class RancherClient:
    """Read-only queries against a Rancher installation."""

    def __init__(self, api_client: client.ApiClient, session: Optional[requests.Session] = None,
                 releases_url: str = RANCHER_RELEASES_URL, github_token: Optional[str] = None,
                 timeout: float = 15, page_size: int = 500):
        self.custom_objects = client.CustomObjectsApi(api_client)
        self.extensions = client.ApiextensionsV1Api(api_client)
        self.session = session or create_retry_session()
        self.releases_url = releases_url
        self.github_token = github_token
        self.timeout = timeout
        self.page_size = page_size

    @classmethod
    def from_config(cls, exporter_config) -> 'RancherClient':
        """Create a client from an ExporterConfig."""
        return cls(
            load_api_client(exporter_config.kubeconfig),
            releases_url=exporter_config.github_releases_url,
            github_token=exporter_config.github_token,
            timeout=exporter_config.request_timeout_seconds,
        )

    def _list_items(self, plural, group=MANAGEMENT_GROUP, version=MANAGEMENT_VERSION) -> List[dict]:
        items = []
        continue_token = None
        while True:
            kwargs = {'limit': self.page_size, '_request_timeout': self.timeout}
            if continue_token:
                kwargs['_continue'] = continue_token
            response = self.custom_objects.list_cluster_custom_object(group, version, plural, **kwargs)
            items.extend(response.get('items') or [])
            continue_token = (response.get('metadata') or {}).get('continue')
            if not continue_token:
                logger.debug(f"Listed {len(items)} {plural}.{group}")
                return items

    def get_installed_rancher_version(self) -> str:
        with _api_call('get installed Rancher version'):
            setting = self.custom_objects.get_cluster_custom_object(
                MANAGEMENT_GROUP, MANAGEMENT_VERSION, 'settings', 'server-version',
                _request_timeout=self.timeout)
            return setting['value']

    def get_latest_rancher_version(self) -> str:
        headers = {
            'Accept': 'application/vnd.github+json',
            'User-Agent': 'RancherPromExporter/1.0',
        }
        if self.github_token:
            headers['Authorization'] = f"Bearer {self.github_token}"
        with _api_call('get latest Rancher version'):
            response = self.session.get(self.releases_url, timeout=self.timeout, headers=headers)
            response.raise_for_status()
            return response.json()['tag_name']

    def get_number_of_managed_clusters(self) -> int:
        with _api_call('count managed clusters'):
            return len(self._list_items('clusters'))

    def get_k8s_distributions(self) -> Dict[str, int]:
        """Count clusters per provider, e.g. {'rke2': 3, 'eks': 1}."""
        distributions = {}
        with _api_call('get cluster distributions'):
            for cluster in self._list_items('clusters'):
                labels = cluster['metadata'].get('labels') or {}
                provider = labels.get(PROVIDER_LABEL) or cluster.get('status', {}).get('provider')
                if not provider:
                    continue
                distributions[provider] = distributions.get(provider, 0) + 1
        return distributions

    def get_number_of_managed_nodes(self) -> int:
        with _api_call('count managed nodes'):
            return len(self._list_items('nodes'))

    def get_cluster_connected_state(self) -> Dict[str, bool]:
        """Map each cluster's display name to whether its Connected condition is True."""
        states = {}
        with _api_call('get cluster connected state'):
            for cluster in self._list_items('clusters'):
                conditions = cluster.get('status', {}).get('conditions') or []
                states[_display_name(cluster)] = any(
                    c.get('type') == 'Connected' and c.get('status') == 'True'
                    for c in conditions
                )
        return states

    def get_downstream_cluster_versions(self) -> List[DownstreamClusterVersion]:
        versions = []
        with _api_call('get downstream cluster versions'):
            for cluster in self._list_items('clusters'):
                version = (cluster.get('status', {}).get('version') or {}).get('gitVersion')
                if not version:
                    logger.debug(f"Cluster {cluster['metadata']['name']} does not report a version yet")
                    continue
                versions.append(DownstreamClusterVersion(_display_name(cluster), version))
        return versions

    def get_number_of_users(self) -> int:
        with _api_call('count users'):
            return len(self._list_items('users'))

    def get_number_of_tokens(self) -> int:
        with _api_call('count tokens'):
            return len(self._list_items('tokens'))

    def get_number_of_projects(self) -> int:
        with _api_call('count projects'):
            return len(self._list_items('projects'))

    def get_project_labels(self) -> List[ProjectLabel]:
        labels = []
        with _api_call('get project labels'):
            for project in self._list_items('projects'):
                metadata = project['metadata']
                for key, value in (metadata.get('labels') or {}).items():
                    labels.append(ProjectLabel(metadata['namespace'], metadata['name'],
                                               _display_name(project), key, value))
        return labels

    def get_project_annotations(self) -> List[ProjectAnnotation]:
        annotations = []
        with _api_call('get project annotations'):
            for project in self._list_items('projects'):
                metadata = project['metadata']
                for key, value in (metadata.get('annotations') or {}).items():
                    annotations.append(ProjectAnnotation(metadata['namespace'], metadata['name'],
                                                         _display_name(project), key, value))
        return annotations

    def get_project_resource_quota(self) -> List[ProjectResourceQuota]:
        """
        Collect the quota limits of every project.

        Project-wide limits come from spec.resourceQuota (type 'project') and the
        per-namespace defaults from spec.namespaceDefaultResourceQuota (type 'namespace').
        """
        quotas = []
        with _api_call('get project resource quotas'):
            for project in self._list_items('projects'):
                metadata = project['metadata']
                spec = project.get('spec', {})
                for field, resource_type in (('resourceQuota', 'project'),
                                             ('namespaceDefaultResourceQuota', 'namespace')):
                    limits = (spec.get(field) or {}).get('limit') or {}
                    for key, quantity in limits.items():
                        quotas.append(ProjectResourceQuota(
                            metadata['namespace'], metadata['name'], _display_name(project),
                            key, resource_type, float(parse_quantity(quantity))))
        return quotas

    def get_rancher_custom_resource_count(self) -> Dict[str, int]:
        """Count the objects of every cattle.io custom resource kind, keyed by CRD name."""
        counts = {}
        with _api_call('count Rancher custom resources'):
            crds = self.extensions.list_custom_resource_definition(_request_timeout=self.timeout)
            for crd in crds.items:
                if not crd.spec.group.endswith(CUSTOM_RESOURCE_GROUP_SUFFIX):
                    continue
                served = [v.name for v in crd.spec.versions if v.served]
                if not served:
                    continue
                counts[crd.metadata.name] = len(
                    self._list_items(crd.spec.names.plural, group=crd.spec.group, version=served[0]))
        return counts
