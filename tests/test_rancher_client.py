"""
Unit tests for RancherClient response parsing and error translation.
"""
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

import requests
from kubernetes.client.exceptions import ApiException

from rancher_prom_exporter.models import DownstreamClusterVersion, ProjectLabel
from rancher_prom_exporter.rancher_client import RancherAPIError, RancherClient


def cluster(name, display_name=None, provider=None, connected=None, version=None,
            status_provider=None):
    labels = {'provider.cattle.io': provider} if provider else {}
    status = {}
    if connected is not None:
        status['conditions'] = [
            {'type': 'Ready', 'status': 'True'},
            {'type': 'Connected', 'status': 'True' if connected else 'False'},
        ]
    if version:
        status['version'] = {'gitVersion': version}
    if status_provider:
        status['provider'] = status_provider
    return {
        'metadata': {'name': name, 'labels': labels},
        'spec': {'displayName': display_name or name},
        'status': status,
    }


def project(namespace, name, display_name, labels=None, annotations=None, spec=None):
    body = {'displayName': display_name}
    body.update(spec or {})
    return {
        'metadata': {'namespace': namespace, 'name': name,
                     'labels': labels, 'annotations': annotations},
        'spec': body,
    }


def crd(name, group, plural, versions):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        spec=SimpleNamespace(
            group=group,
            names=SimpleNamespace(plural=plural),
            versions=[SimpleNamespace(name=v, served=served) for v, served in versions],
        ),
    )


class TestRancherClient(unittest.TestCase):
    """Tests for RancherClient."""

    def setUp(self):
        self.session = MagicMock()
        self.client = RancherClient(MagicMock(), session=self.session, timeout=5, page_size=2)
        self.client.custom_objects = MagicMock()
        self.client.extensions = MagicMock()
        self.list_objects = self.client.custom_objects.list_cluster_custom_object

    def list_returns(self, items):
        self.list_objects.return_value = {'items': items, 'metadata': {}}

    def test_counts_follow_continue_tokens(self):
        self.list_objects.side_effect = [
            {'items': [{}, {}], 'metadata': {'continue': 'page-2'}},
            {'items': [{}], 'metadata': {}},
        ]

        self.assertEqual(self.client.get_number_of_managed_nodes(), 3)

        first, second = self.list_objects.call_args_list
        self.assertEqual(first.args, ('management.cattle.io', 'v3', 'nodes'))
        self.assertNotIn('_continue', first.kwargs)
        self.assertEqual(second.kwargs['_continue'], 'page-2')
        self.assertEqual(second.kwargs['limit'], 2)
        self.assertEqual(second.kwargs['_request_timeout'], 5)

    def test_count_queries_use_management_resources(self):
        self.list_returns([{}])
        self.client.get_number_of_users()
        self.client.get_number_of_tokens()
        self.client.get_number_of_projects()
        self.client.get_number_of_managed_clusters()

        plurals = [call.args[2] for call in self.list_objects.call_args_list]
        self.assertEqual(plurals, ['users', 'tokens', 'projects', 'clusters'])

    def test_installed_version(self):
        self.client.custom_objects.get_cluster_custom_object.return_value = {
            'metadata': {'name': 'server-version'}, 'value': 'v2.8.5'}

        self.assertEqual(self.client.get_installed_rancher_version(), 'v2.8.5')
        args = self.client.custom_objects.get_cluster_custom_object.call_args.args
        self.assertEqual(args, ('management.cattle.io', 'v3', 'settings', 'server-version'))

    def test_malformed_setting_raises(self):
        self.client.custom_objects.get_cluster_custom_object.return_value = {'metadata': {}}

        with self.assertRaises(RancherAPIError) as ctx:
            self.client.get_installed_rancher_version()
        self.assertEqual(ctx.exception.operation, 'get installed Rancher version')

    def test_api_exception_is_translated(self):
        self.list_objects.side_effect = ApiException(status=503, reason='Service Unavailable')

        with self.assertRaises(RancherAPIError) as ctx:
            self.client.get_number_of_users()
        self.assertIn('503', str(ctx.exception))

    def test_distributions(self):
        self.list_returns([
            cluster('local', provider='rke2'),
            cluster('c-1', provider='rke2'),
            cluster('c-2', status_provider='eks'),
            cluster('c-3'),
        ])

        self.assertEqual(self.client.get_k8s_distributions(), {'rke2': 2, 'eks': 1})

    def test_connected_state_uses_display_name(self):
        self.list_returns([
            cluster('local', display_name='local', connected=True),
            cluster('c-m-abc', display_name='edge', connected=False),
            cluster('c-m-new', display_name='pending'),
        ])

        self.assertEqual(self.client.get_cluster_connected_state(),
                         {'local': True, 'edge': False, 'pending': False})

    def test_downstream_versions_skip_clusters_without_version(self):
        self.list_returns([
            cluster('local', version='v1.28.9+rke2r1'),
            cluster('c-m-new', display_name='provisioning'),
        ])

        self.assertEqual(self.client.get_downstream_cluster_versions(),
                         [DownstreamClusterVersion('local', 'v1.28.9+rke2r1')])

    def test_project_labels_and_annotations(self):
        self.list_returns([
            project('c-m-1', 'p-abc', 'Default', labels={'team': 'platform'},
                    annotations={'owner': 'ops', 'tier': 'gold'}),
            project('local', 'p-sys', 'System'),
        ])

        self.assertEqual(self.client.get_project_labels(),
                         [ProjectLabel('c-m-1', 'p-abc', 'Default', 'team', 'platform')])
        annotations = self.client.get_project_annotations()
        self.assertEqual([(a.key, a.value) for a in annotations], [('owner', 'ops'), ('tier', 'gold')])
        self.assertEqual({a.project_display_name for a in annotations}, {'Default'})

    def test_project_resource_quota_parses_quantities(self):
        self.list_returns([
            project('c-m-1', 'p-abc', 'Default', spec={
                'resourceQuota': {'limit': {'limitsCpu': '2000m', 'limitsMemory': '1Gi'}},
                'namespaceDefaultResourceQuota': {'limit': {'pods': '10'}},
            }),
        ])

        quotas = {(q.resource_key, q.resource_type): q.value
                  for q in self.client.get_project_resource_quota()}

        self.assertEqual(quotas, {
            ('limitsCpu', 'project'): 2.0,
            ('limitsMemory', 'project'): 1073741824.0,
            ('pods', 'namespace'): 10.0,
        })

    def test_invalid_quantity_raises(self):
        self.list_returns([
            project('c-m-1', 'p-abc', 'Default', spec={
                'resourceQuota': {'limit': {'limitsCpu': 'lots'}},
            }),
        ])

        with self.assertRaises(RancherAPIError):
            self.client.get_project_resource_quota()

    def test_custom_resource_count(self):
        self.client.extensions.list_custom_resource_definition.return_value = SimpleNamespace(items=[
            crd('clusters.management.cattle.io', 'management.cattle.io', 'clusters', [('v3', True)]),
            crd('clusters.provisioning.cattle.io', 'provisioning.cattle.io', 'clusters',
                [('v1alpha1', False), ('v1', True)]),
            crd('certificates.cert-manager.io', 'cert-manager.io', 'certificates', [('v1', True)]),
        ])
        self.list_objects.side_effect = [
            {'items': [{}, {}], 'metadata': {}},
            {'items': [{}], 'metadata': {}},
        ]

        self.assertEqual(self.client.get_rancher_custom_resource_count(), {
            'clusters.management.cattle.io': 2,
            'clusters.provisioning.cattle.io': 1,
        })
        second = self.list_objects.call_args_list[1]
        self.assertEqual(second.args, ('provisioning.cattle.io', 'v1', 'clusters'))

    def test_latest_version(self):
        response = MagicMock()
        response.json.return_value = {'tag_name': 'v2.9.0', 'name': 'Release v2.9.0'}
        self.session.get.return_value = response

        self.assertEqual(self.client.get_latest_rancher_version(), 'v2.9.0')
        headers = self.session.get.call_args.kwargs['headers']
        self.assertNotIn('Authorization', headers)
        self.assertEqual(self.session.get.call_args.kwargs['timeout'], 5)

    def test_latest_version_sends_token(self):
        self.client.github_token = 'ghp_example'
        self.session.get.return_value.json.return_value = {'tag_name': 'v2.9.0'}

        self.client.get_latest_rancher_version()

        headers = self.session.get.call_args.kwargs['headers']
        self.assertEqual(headers['Authorization'], 'Bearer ghp_example')

    def test_latest_version_http_error(self):
        self.session.get.return_value.raise_for_status.side_effect = requests.HTTPError('403 rate limited')

        with self.assertRaises(RancherAPIError) as ctx:
            self.client.get_latest_rancher_version()
        self.assertEqual(ctx.exception.operation, 'get latest Rancher version')

    def test_latest_version_connection_error(self):
        self.session.get.side_effect = requests.ConnectionError('unreachable')

        with self.assertRaises(RancherAPIError):
            self.client.get_latest_rancher_version()


if __name__ == '__main__':
    unittest.main()
