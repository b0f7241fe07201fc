"""Records returned by RancherClient for the label-vector metrics."""
from dataclasses import dataclass


@dataclass(frozen=True)
class DownstreamClusterVersion:
    name: str
    version: str


@dataclass(frozen=True)
class ProjectLabel:
    cluster_name: str
    project_id: str
    project_display_name: str
    key: str
    value: str


@dataclass(frozen=True)
class ProjectAnnotation:
    cluster_name: str
    project_id: str
    project_display_name: str
    key: str
    value: str


@dataclass(frozen=True)
class ProjectResourceQuota:
    cluster_name: str
    project_id: str
    project_display_name: str
    resource_key: str
    resource_type: str
    value: float
